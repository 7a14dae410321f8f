"""
Database schema for the Tenant Committee Portal.

Run this file directly to create (or, with --reset, recreate) the local
development database. The app calls ensure_schema() on startup.
"""
import os
import sqlite3
import sys

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
DB_PATH = os.environ.get("DB_PATH") or os.path.join(BASE_DIR, "portal.db")

TABLES = [
    "settings",
    "users",
    "inventory_items",
    "purchases",
    "budgets",
    "transactions",
    "inventory_item_transactions",
    "submissions",
    "social_links",
]


def create_schema(conn):
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT,
            description TEXT,
            updated_at TIMESTAMP DEFAULT (datetime('now','localtime'))
        )
    """)

    # role: 'admin', 'board_member', 'resident'
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS users (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            name TEXT NOT NULL,
            password_hash TEXT,
            role TEXT NOT NULL DEFAULT 'resident' CHECK(role IN ('admin', 'board_member', 'resident')),
            apartment_number TEXT,
            primary_language TEXT NOT NULL DEFAULT 'fi',
            secondary_language TEXT NOT NULL DEFAULT 'en',
            is_active INTEGER NOT NULL DEFAULT 1,
            last_login TIMESTAMP,
            created_at TIMESTAMP DEFAULT (datetime('now','localtime')),
            updated_at TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS inventory_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            location TEXT NOT NULL,
            category TEXT,
            description TEXT,
            value TEXT NOT NULL DEFAULT '0',
            show_in_info_reel INTEGER NOT NULL DEFAULT 0,
            purchased_at TEXT,
            created_at TIMESTAMP DEFAULT (datetime('now','localtime')),
            updated_at TIMESTAMP
        )
    """)

    # status: 'pending', 'approved', 'reimbursed', 'rejected'
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS purchases (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inventory_item_id INTEGER,
            description TEXT NOT NULL,
            amount TEXT NOT NULL,
            purchaser_name TEXT NOT NULL,
            bank_account TEXT NOT NULL,
            minutes_id TEXT,
            minutes_name TEXT,
            notes TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            year INTEGER NOT NULL,
            email_sent INTEGER NOT NULL DEFAULT 0,
            email_message_id TEXT,
            email_error TEXT,
            created_at TIMESTAMP DEFAULT (datetime('now','localtime')),
            updated_at TIMESTAMP,
            FOREIGN KEY (inventory_item_id) REFERENCES inventory_items(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS budgets (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            year INTEGER NOT NULL UNIQUE,
            allocation TEXT NOT NULL,
            notes TEXT,
            created_at TIMESTAMP DEFAULT (datetime('now','localtime')),
            updated_at TIMESTAMP
        )
    """)

    # type: 'income', 'expense'; status: 'pending', 'complete'
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL CHECK(type IN ('income', 'expense')),
            amount TEXT NOT NULL,
            description TEXT NOT NULL,
            category TEXT,
            date TEXT NOT NULL,
            year INTEGER NOT NULL,
            status TEXT NOT NULL DEFAULT 'complete',
            reimbursement_status TEXT NOT NULL DEFAULT 'not_requested',
            purchase_id INTEGER,
            created_at TIMESTAMP DEFAULT (datetime('now','localtime')),
            updated_at TIMESTAMP,
            FOREIGN KEY (purchase_id) REFERENCES purchases(id)
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS inventory_item_transactions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            inventory_item_id INTEGER NOT NULL,
            transaction_id INTEGER NOT NULL,
            quantity INTEGER NOT NULL DEFAULT 1,
            FOREIGN KEY (inventory_item_id) REFERENCES inventory_items(id),
            FOREIGN KEY (transaction_id) REFERENCES transactions(id)
        )
    """)

    # type: 'committee', 'events', 'purchases', 'questions'
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS submissions (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            type TEXT NOT NULL,
            name TEXT NOT NULL,
            email TEXT NOT NULL,
            apartment_number TEXT,
            message TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'new',
            created_at TIMESTAMP DEFAULT (datetime('now','localtime')),
            updated_at TIMESTAMP
        )
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS social_links (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            name TEXT NOT NULL,
            icon TEXT NOT NULL DEFAULT 'link',
            url TEXT NOT NULL,
            color TEXT NOT NULL DEFAULT 'bg-primary',
            sort_order INTEGER NOT NULL DEFAULT 0,
            is_active INTEGER NOT NULL DEFAULT 1,
            created_at TIMESTAMP DEFAULT (datetime('now','localtime')),
            updated_at TIMESTAMP
        )
    """)

    cursor.execute("CREATE INDEX IF NOT EXISTS idx_transactions_year ON transactions(year)")
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_purchases_item ON purchases(inventory_item_id)")
    cursor.execute("""
        CREATE UNIQUE INDEX IF NOT EXISTS idx_item_transaction
        ON inventory_item_transactions(inventory_item_id, transaction_id)
    """)

    conn.commit()


def missing_tables(conn) -> list[str]:
    rows = conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
    existing = {row[0] for row in rows}
    return sorted(set(TABLES) - existing)


def init_db(db_path=DB_PATH, reset=False):
    conn = sqlite3.connect(db_path)
    if reset:
        # Drop in reverse dependency order
        for table in reversed(TABLES):
            conn.execute(f"DROP TABLE IF EXISTS {table}")
    create_schema(conn)
    conn.close()


if __name__ == "__main__":
    reset = "--reset" in sys.argv
    init_db(reset=reset)
    print(f"Database {'reset' if reset else 'initialized'} at: {DB_PATH}")
