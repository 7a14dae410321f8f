import os
import sys
import getpass

import bcrypt
from dotenv import load_dotenv

load_dotenv()

import database


def set_admin(email, password=None, name="Super Admin"):
    """Grant the admin role to email, creating the user when missing."""
    email = email.strip().lower()
    password_hash = None
    if password:
        password_hash = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')

    user = database.get_user_by_email(email)
    if user:
        fields = {"role": "admin", "is_active": 1}
        if password_hash:
            fields["password_hash"] = password_hash
        user = database.update_user(user["id"], **fields)
        print(f"Updated existing user to admin: {email}")
    else:
        user = database.create_user(email, name, password_hash=password_hash, role="admin")
        print(f"Created new admin user: {email}")
    return user


def main():
    database.ensure_schema()
    print(f"Connecting to database at: {database.DB_PATH}")

    email = (sys.argv[1] if len(sys.argv) > 1 else os.environ.get("ADMIN_EMAIL") or "").strip()
    if not email:
        email = input("Enter the admin email: ").strip()
    if not email:
        print("Email cannot be empty.")
        return 1

    password = getpass.getpass("Enter new password (leave empty to keep current): ").strip()
    if password and len(password) < 8:
        print("Password must be at least 8 characters.")
        return 1

    set_admin(email, password or None)
    return 0


if __name__ == "__main__":
    sys.exit(main())
