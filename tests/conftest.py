"""
Pytest configuration and fixtures for the portal tests.

The app module reads DB_PATH and FLASK_ENV at import time, so the
environment is prepared here before anything imports it.
"""
import os
import sys
import tempfile

import pytest

TEST_DB_DIR = tempfile.mkdtemp(prefix="portal-tests-")
os.environ["DB_PATH"] = os.path.join(TEST_DB_DIR, "test_portal.db")
os.environ["SECRET_KEY"] = "test-secret-key"
os.environ["FLASK_ENV"] = "testing"

# External services stay unconfigured unless a test sets them
for var in ("GOOGLE_API_KEY", "GOOGLE_CALENDAR_ID", "GOOGLE_MINUTES_FOLDER_ID",
            "SMTP_HOST", "SMTP_USER", "SMTP_PASSWORD", "SMTP_FROM", "REIMBURSEMENT_EMAIL",
            "BUDGET_DETAILS_URL"):
    os.environ.pop(var, None)

# Add parent directory to path to import the app modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import bcrypt

import database
import google_client
from app import app as flask_app

# Test credentials
TEST_PASSWORD = "testpassword123"
ADMIN_EMAIL = "admin@example.com"
BOARD_EMAIL = "board@example.com"
RESIDENT_EMAIL = "resident@example.com"

TABLES = [
    "inventory_item_transactions",
    "transactions",
    "purchases",
    "inventory_items",
    "budgets",
    "submissions",
    "social_links",
    "settings",
    "users",
]


def pytest_collection_modifyitems(config, items):
    """Browser tests only run when RUN_E2E=1."""
    if os.environ.get("RUN_E2E") == "1":
        return
    skip_e2e = pytest.mark.skip(reason="set RUN_E2E=1 to run browser tests")
    for item in items:
        if "e2e" in item.keywords:
            item.add_marker(skip_e2e)


@pytest.fixture
def app():
    flask_app.config['TESTING'] = True
    flask_app.config['WTF_CSRF_ENABLED'] = False  # Disable CSRF for testing
    return flask_app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture(autouse=True)
def clean_db():
    """Start every test with empty tables and a cold Google cache."""
    conn = database.connect_db()
    for table in TABLES:
        conn.execute(f"DELETE FROM {table}")
    conn.commit()
    conn.close()
    google_client.clear_cache()
    yield


def create_test_user(email, role, name=None):
    password_hash = bcrypt.hashpw(TEST_PASSWORD.encode('utf-8'), bcrypt.gensalt(rounds=4)).decode('utf-8')
    return database.create_user(email, name or role.replace("_", " ").title(), password_hash=password_hash, role=role)


def login_as(client, user):
    with client.session_transaction() as sess:
        sess['user_id'] = user['id']
        sess['role'] = user['role']


@pytest.fixture
def admin_user():
    return create_test_user(ADMIN_EMAIL, "admin")


@pytest.fixture
def board_user():
    return create_test_user(BOARD_EMAIL, "board_member")


@pytest.fixture
def resident_user():
    return create_test_user(RESIDENT_EMAIL, "resident")


@pytest.fixture
def admin_client(client, admin_user):
    login_as(client, admin_user)
    return client


@pytest.fixture
def staff_client(client, board_user):
    login_as(client, board_user)
    return client


@pytest.fixture
def resident_client(client, resident_user):
    login_as(client, resident_user)
    return client
