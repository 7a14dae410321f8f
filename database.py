"""
Data access helpers for the Tenant Committee Portal.

Every function opens its own short-lived connection, the same way the
route handlers do. Rows come back as plain dicts.
"""
import logging
import os
import sqlite3
from datetime import datetime

from init_db import BASE_DIR, create_schema, missing_tables

logger = logging.getLogger(__name__)

DB_PATH = os.environ.get("DB_PATH") or os.path.join(BASE_DIR, "portal.db")

INVENTORY_EDITABLE_FIELDS = ("name", "location", "category", "description")
TRANSACTION_EDITABLE_FIELDS = ("description", "category")


def dict_factory(cursor, row):
    return {col[0]: row[idx] for idx, col in enumerate(cursor.description)}


def connect_db():
    conn = sqlite3.connect(DB_PATH)
    conn.row_factory = dict_factory
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def run_transaction(ops):
    """Execute database operations within a transaction with rollback on error."""
    conn = connect_db()
    try:
        result = ops(conn)
        conn.commit()
        return result
    except Exception:
        conn.rollback()
        raise
    finally:
        conn.close()


def ensure_schema():
    conn = sqlite3.connect(DB_PATH)
    try:
        missing = missing_tables(conn)
        if missing:
            logger.warning(f"Missing tables: {', '.join(missing)} - creating schema")
            create_schema(conn)
    finally:
        conn.close()


def local_timestamp() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def _fetch_all(sql, params=()):
    conn = connect_db()
    try:
        return conn.execute(sql, params).fetchall()
    finally:
        conn.close()


def _fetch_one(sql, params=()):
    conn = connect_db()
    try:
        return conn.execute(sql, params).fetchone()
    finally:
        conn.close()


def _normalize_item(item):
    if item is not None:
        item["show_in_info_reel"] = bool(item["show_in_info_reel"])
    return item


# Settings

def get_setting(key):
    row = _fetch_one("SELECT value FROM settings WHERE key = ?", (key,))
    return row["value"] if row else None


def set_setting(key, value, description=None):
    def ops(conn):
        conn.execute("""
            INSERT INTO settings (key, value, description, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(key) DO UPDATE SET
                value = excluded.value,
                description = COALESCE(excluded.description, settings.description),
                updated_at = excluded.updated_at
        """, (key, value, description, local_timestamp()))
    run_transaction(ops)


# Users

def get_user_by_id(user_id):
    return _fetch_one("SELECT * FROM users WHERE id = ?", (user_id,))


def get_user_by_email(email):
    return _fetch_one("SELECT * FROM users WHERE email = ?", ((email or "").strip().lower(),))


def create_user(email, name, password_hash=None, role="resident",
                primary_language="fi", secondary_language="en"):
    def ops(conn):
        cur = conn.execute("""
            INSERT INTO users (email, name, password_hash, role, primary_language, secondary_language)
            VALUES (?, ?, ?, ?, ?, ?)
        """, (email.strip().lower(), name, password_hash, role, primary_language, secondary_language))
        return cur.lastrowid
    return get_user_by_id(run_transaction(ops))


def update_user(user_id, **fields):
    allowed = {"name", "password_hash", "role", "apartment_number",
               "primary_language", "secondary_language", "is_active", "last_login"}
    updates = {k: v for k, v in fields.items() if k in allowed}
    if not updates:
        return get_user_by_id(user_id)
    assignments = ", ".join(f"{column} = ?" for column in updates)

    def ops(conn):
        conn.execute(
            f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?",
            (*updates.values(), local_timestamp(), user_id),
        )
    run_transaction(ops)
    return get_user_by_id(user_id)


# Inventory

def get_inventory_items():
    rows = _fetch_all("SELECT * FROM inventory_items ORDER BY id")
    return [_normalize_item(row) for row in rows]


def get_inventory_item_by_id(item_id):
    return _normalize_item(_fetch_one("SELECT * FROM inventory_items WHERE id = ?", (item_id,)))


def create_inventory_item(name, location, quantity=1, category=None, description=None,
                          value="0", show_in_info_reel=False, purchased_at=None):
    def ops(conn):
        cur = conn.execute("""
            INSERT INTO inventory_items
                (name, quantity, location, category, description, value, show_in_info_reel, purchased_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """, (name, quantity, location, category, description, value or "0",
              1 if show_in_info_reel else 0, purchased_at))
        return cur.lastrowid
    return get_inventory_item_by_id(run_transaction(ops))


def bulk_create_inventory_items(items):
    if not items:
        return 0

    def ops(conn):
        conn.executemany("""
            INSERT INTO inventory_items
                (name, quantity, location, category, description, value, show_in_info_reel)
            VALUES (:name, :quantity, :location, :category, :description, :value, :show_in_info_reel)
        """, items)
        return len(items)
    return run_transaction(ops)


def update_inventory_item(item_id, **fields):
    allowed = set(INVENTORY_EDITABLE_FIELDS) | {"quantity", "value", "show_in_info_reel", "purchased_at"}
    updates = {k: v for k, v in fields.items() if k in allowed}
    if "show_in_info_reel" in updates:
        updates["show_in_info_reel"] = 1 if updates["show_in_info_reel"] else 0
    if not updates:
        return get_inventory_item_by_id(item_id)
    assignments = ", ".join(f"{column} = ?" for column in updates)

    def ops(conn):
        conn.execute(
            f"UPDATE inventory_items SET {assignments}, updated_at = ? WHERE id = ?",
            (*updates.values(), local_timestamp(), item_id),
        )
    run_transaction(ops)
    return get_inventory_item_by_id(item_id)


def delete_inventory_item(item_id) -> bool:
    """Delete an item together with its purchases and transaction links."""
    def ops(conn):
        conn.execute("UPDATE transactions SET purchase_id = NULL WHERE purchase_id IN "
                     "(SELECT id FROM purchases WHERE inventory_item_id = ?)", (item_id,))
        conn.execute("DELETE FROM purchases WHERE inventory_item_id = ?", (item_id,))
        conn.execute("DELETE FROM inventory_item_transactions WHERE inventory_item_id = ?", (item_id,))
        cur = conn.execute("DELETE FROM inventory_items WHERE id = ?", (item_id,))
        return cur.rowcount > 0
    return run_transaction(ops)


def get_inventory_items_without_transactions():
    rows = _fetch_all("""
        SELECT i.* FROM inventory_items i
        LEFT JOIN inventory_item_transactions l ON l.inventory_item_id = i.id
        WHERE l.id IS NULL
        ORDER BY i.name
    """)
    return [_normalize_item(row) for row in rows]


def link_inventory_item_to_transaction(item_id, transaction_id, quantity=1):
    def ops(conn):
        conn.execute("""
            INSERT OR IGNORE INTO inventory_item_transactions (inventory_item_id, transaction_id, quantity)
            VALUES (?, ?, ?)
        """, (item_id, transaction_id, quantity))
    run_transaction(ops)


# Purchases

def get_purchases():
    return _fetch_all("SELECT * FROM purchases ORDER BY created_at DESC, id DESC")


def get_purchase_by_id(purchase_id):
    return _fetch_one("SELECT * FROM purchases WHERE id = ?", (purchase_id,))


def get_purchases_by_inventory_item(item_id):
    return _fetch_all("SELECT * FROM purchases WHERE inventory_item_id = ?", (item_id,))


def create_purchase(description, amount, purchaser_name, bank_account, year,
                    inventory_item_id=None, minutes_id=None, minutes_name=None,
                    notes=None, status="pending"):
    def ops(conn):
        cur = conn.execute("""
            INSERT INTO purchases
                (inventory_item_id, description, amount, purchaser_name, bank_account,
                 minutes_id, minutes_name, notes, status, year)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (inventory_item_id, description, amount, purchaser_name, bank_account,
              minutes_id, minutes_name, notes, status, year))
        return cur.lastrowid
    return get_purchase_by_id(run_transaction(ops))


def update_purchase(purchase_id, **fields):
    allowed = {"status", "email_sent", "email_message_id", "email_error", "notes"}
    updates = {k: v for k, v in fields.items() if k in allowed}
    if "email_sent" in updates:
        updates["email_sent"] = 1 if updates["email_sent"] else 0
    if not updates:
        return get_purchase_by_id(purchase_id)
    assignments = ", ".join(f"{column} = ?" for column in updates)

    def ops(conn):
        conn.execute(
            f"UPDATE purchases SET {assignments}, updated_at = ? WHERE id = ?",
            (*updates.values(), local_timestamp(), purchase_id),
        )
    run_transaction(ops)
    return get_purchase_by_id(purchase_id)


# Budgets & transactions

def get_budget_by_year(year):
    return _fetch_one("SELECT * FROM budgets WHERE year = ?", (year,))


def upsert_budget(year, allocation, notes=None):
    def ops(conn):
        conn.execute("""
            INSERT INTO budgets (year, allocation, notes, updated_at)
            VALUES (?, ?, ?, ?)
            ON CONFLICT(year) DO UPDATE SET
                allocation = excluded.allocation,
                notes = excluded.notes,
                updated_at = excluded.updated_at
        """, (year, allocation, notes, local_timestamp()))
    run_transaction(ops)
    return get_budget_by_year(year)


def get_transactions_by_year(year):
    return _fetch_all(
        "SELECT * FROM transactions WHERE year = ? ORDER BY date DESC, id DESC", (year,)
    )


def get_transaction_by_id(transaction_id):
    return _fetch_one("SELECT * FROM transactions WHERE id = ?", (transaction_id,))


def get_transaction_years():
    rows = _fetch_all("SELECT DISTINCT year FROM transactions ORDER BY year DESC")
    return [row["year"] for row in rows]


def create_transaction(type, amount, description, date, year, category=None,
                       status="complete", reimbursement_status="not_requested", purchase_id=None):
    def ops(conn):
        cur = conn.execute("""
            INSERT INTO transactions
                (type, amount, description, category, date, year, status, reimbursement_status, purchase_id)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (type, amount, description, category, date, year, status,
              reimbursement_status, purchase_id))
        return cur.lastrowid
    return get_transaction_by_id(run_transaction(ops))


def update_transaction(transaction_id, **fields):
    allowed = set(TRANSACTION_EDITABLE_FIELDS) | {"status", "reimbursement_status", "amount"}
    updates = {k: v for k, v in fields.items() if k in allowed}
    if not updates:
        return get_transaction_by_id(transaction_id)
    assignments = ", ".join(f"{column} = ?" for column in updates)

    def ops(conn):
        conn.execute(
            f"UPDATE transactions SET {assignments}, updated_at = ? WHERE id = ?",
            (*updates.values(), local_timestamp(), transaction_id),
        )
    run_transaction(ops)
    return get_transaction_by_id(transaction_id)


def delete_transaction(transaction_id) -> bool:
    def ops(conn):
        conn.execute("DELETE FROM inventory_item_transactions WHERE transaction_id = ?", (transaction_id,))
        cur = conn.execute("DELETE FROM transactions WHERE id = ?", (transaction_id,))
        return cur.rowcount > 0
    return run_transaction(ops)


def get_budget_summary(year):
    """Total allocation plus this year's completed income and expenses."""
    budget = get_budget_by_year(year)
    conn = connect_db()
    rows = conn.execute("""
        SELECT type, amount FROM transactions
        WHERE year = ? AND status = 'complete'
    """, (year,)).fetchall()
    conn.close()

    income = 0.0
    expenses = 0.0
    for row in rows:
        try:
            amount = float(row["amount"])
        except (TypeError, ValueError):
            logger.warning(f"Skipping transaction with invalid amount: {row['amount']!r}")
            continue
        if row["type"] == "income":
            income += amount
        else:
            expenses += amount

    if budget is None:
        return None

    try:
        total = float(budget["allocation"])
    except (TypeError, ValueError):
        total = 0.0
    return {
        "year": year,
        "total": total,
        "income": income,
        "expenses": expenses,
        "remaining": total + income - expenses,
        "updated_at": budget["updated_at"] or budget["created_at"],
    }


# Submissions

def get_submissions():
    return _fetch_all("SELECT * FROM submissions ORDER BY created_at DESC, id DESC")


def create_submission(type, name, email, message, apartment_number=None):
    def ops(conn):
        cur = conn.execute("""
            INSERT INTO submissions (type, name, email, apartment_number, message)
            VALUES (?, ?, ?, ?, ?)
        """, (type, name, email, apartment_number, message))
        return cur.lastrowid
    submission_id = run_transaction(ops)
    return _fetch_one("SELECT * FROM submissions WHERE id = ?", (submission_id,))


# Social links

def get_social_links(active_only=True):
    sql = "SELECT * FROM social_links"
    if active_only:
        sql += " WHERE is_active = 1"
    sql += " ORDER BY sort_order, id"
    return _fetch_all(sql)


def create_social_link(name, url, icon="link", color="bg-primary", sort_order=0):
    def ops(conn):
        cur = conn.execute("""
            INSERT INTO social_links (name, icon, url, color, sort_order)
            VALUES (?, ?, ?, ?, ?)
        """, (name, icon, url, color, sort_order))
        return cur.lastrowid
    link_id = run_transaction(ops)
    return _fetch_one("SELECT * FROM social_links WHERE id = ?", (link_id,))
