"""
Tenant Committee Portal
Bilingual (Finnish/English) website of a student housing tenant committee,
doubling as an unattended lobby display ("info reel").

Security Features:
- bcrypt password hashing with salt
- CSRF protection via Flask-WTF
- Rate limiting on authentication and write endpoints
- Secure session configuration
- Security headers (CSP, X-Frame-Options, etc.)
- Upload validation for receipts and CSV imports
"""
import os
import base64
import csv
import io
import json
import random
import secrets
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from functools import wraps
from urllib.parse import urlsplit

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[
        logging.FileHandler('app.log'),
        logging.StreamHandler()
    ]
)
logger = logging.getLogger(__name__)

import bcrypt
import qrcode
from babel.dates import format_date
from babel.numbers import format_currency
from dotenv import load_dotenv
from flask import Flask, request, jsonify, render_template, session, redirect, url_for, g, Response, send_file
from flask_babel import Babel, format_datetime
from flask_wtf.csrf import CSRFProtect
from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

# Load environment variables from .env file
load_dotenv()

import database
import google_client
import mailer
import openrouter
from info_reel import REEL_ROUTES, REEL_DURATION_MS, is_info_reel, reel_snapshot
from language import (
    LOCALE_COOKIE, SUPPORTED_LANGUAGES, BilingualText, build_language_context, resolve_language,
    serialize_locale_cookie,
)
from record_table import ColumnDef, RecordTable, InlineEditLedger, parse_visible_columns, toggle_column_param

app = Flask(__name__)
app.config['MAX_CONTENT_LENGTH'] = 16 * 1024 * 1024  # 16MB max upload

# Security: Require SECRET_KEY from environment, no fallback to insecure default
secret_key = os.environ.get('SECRET_KEY')
if not secret_key:
    secret_key = secrets.token_hex(32)
    logger.warning("SECRET_KEY not set in environment. Using generated key.")
    logger.warning("For production, set SECRET_KEY in .env file or environment variable.")
app.secret_key = secret_key

# Session security configuration
app.config['SESSION_COOKIE_SECURE'] = os.environ.get('FLASK_ENV') == 'production'
app.config['SESSION_COOKIE_HTTPONLY'] = True
app.config['SESSION_COOKIE_SAMESITE'] = 'Lax'
app.config['PERMANENT_SESSION_LIFETIME'] = timedelta(hours=8)

# CSRF Protection
app.config['WTF_CSRF_TIME_LIMIT'] = 3600
app.config['WTF_CSRF_SSL_STRICT'] = os.environ.get('FLASK_ENV') == 'production'
csrf = CSRFProtect(app)

# Rate limiting
if os.environ.get('FLASK_ENV') == 'testing':
    app.config['RATELIMIT_ENABLED'] = False

# No default limits: the lobby display reloads a page every 30 seconds all day
limiter = Limiter(
    key_func=get_remote_address,
    app=app,
    default_limits=[],
    storage_uri="memory://",
)

# Info reel
app.config['INFO_REEL_ROUTES'] = REEL_ROUTES
app.config['INFO_REEL_DURATION_MS'] = int(os.environ.get('INFO_REEL_DURATION_MS', REEL_DURATION_MS))

SITE_NAME = os.environ.get("SITE_NAME", "Tenant Committee Portal")
BUDGET_DETAILS_URL = os.environ.get("BUDGET_DETAILS_URL")

PAGE_SIZE = 20
STAFF_ROLES = ("admin", "board_member")
ALLOWED_RECEIPT_EXTENSIONS = {'pdf', 'jpg', 'jpeg', 'png', 'webp'}
RECEIPT_MIME_TYPES = {
    'pdf': 'application/pdf',
    'jpg': 'image/jpeg',
    'jpeg': 'image/jpeg',
    'png': 'image/png',
    'webp': 'image/webp',
}

SUBMISSION_TYPES = ["committee", "events", "purchases", "questions"]
INVOLVEMENT_OPTIONS = [
    {"id": "committee", "icon": "diversity_3"},
    {"id": "events", "icon": "celebration"},
    {"id": "purchases", "icon": "shopping_cart"},
    {"id": "questions", "icon": "question_mark"},
]

TRANSACTION_CATEGORIES = [
    ("inventory", "Tavarat / Inventory"),
    ("snacks", "Eväät / Snacks"),
    ("supplies", "Tarvikkeet / Supplies"),
    ("event", "Tapahtuma / Event"),
    ("other", "Muu / Other"),
]

INVENTORY_COLUMN_KEYS = ["name", "quantity", "location", "category", "description",
                         "unitValue", "totalValue", "showInInfoReel"]
INVENTORY_STAFF_COLUMNS = {"unitValue", "totalValue", "showInInfoReel"}
INVENTORY_COLUMN_LABELS = {
    "name": "Nimi / Name",
    "quantity": "Määrä / Qty",
    "location": "Sijainti / Location",
    "category": "Kategoria / Category",
    "description": "Kuvaus / Description",
    "unitValue": "Kpl-arvo / Unit Value",
    "totalValue": "Yht. arvo / Total Value",
    "showInInfoReel": "Info Reel",
}
INVENTORY_CSV_FIELDS = ["name", "quantity", "location", "category", "description", "value",
                        "show_in_info_reel", "purchased_at"]
INFO_REEL_ITEM_COUNT = 3
NOT_SPECIFIED = "Ei määritetty / Not specified"

# Newest inline edit per client and (table, row, field)
INLINE_EDITS = InlineEditLedger()


def get_locale():
    return resolve_language(request.cookies.get(LOCALE_COOKIE), request.accept_languages.values())


babel = Babel(app, locale_selector=get_locale)

database.ensure_schema()


def hash_password(password: str) -> str:
    """Hash a password using bcrypt with automatic salt generation."""
    return bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, hashed: str) -> bool:
    """Verify a password against a bcrypt hash."""
    try:
        return bcrypt.checkpw(password.encode('utf-8'), hashed.encode('utf-8'))
    except Exception:
        return False


def verify_user_credentials(email, password):
    """
    Verify user credentials with timing-attack resistance.
    Always performs bcrypt check even if user doesn't exist.
    """
    user = database.get_user_by_email(email)

    # bcrypt hash of a throwaway password
    dummy_hash = "$2b$12$LQv3c1yqBWVHxkd0LHAkCOYz6TtxMQJqhN8/LewY5GyYU5x6RqVQy"

    if user and user['is_active'] and user['password_hash']:
        if verify_password(password or "", user['password_hash']):
            return user
        return None
    verify_password(password or "", dummy_hash)
    return None


def get_current_user():
    if 'current_user' not in g:
        user = None
        if 'user_id' in session:
            user = database.get_user_by_id(session['user_id'])
            if user and not user['is_active']:
                session.clear()
                user = None
        g.current_user = user
    return g.current_user


def is_staff(user) -> bool:
    return bool(user) and user['role'] in STAFF_ROLES


def is_admin(user) -> bool:
    return bool(user) and user['role'] == 'admin'


def _forbidden():
    if request.path.startswith('/api/'):
        return jsonify({"error": "Forbidden"}), 403
    return render_template('403.html'), 403


# Auth Decorators
def login_required(f):
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if get_current_user() is None:
            if request.path.startswith('/api/'):
                return jsonify({"error": "Unauthorized"}), 401
            return redirect(url_for('login', next=request.full_path))
        return f(*args, **kwargs)
    return decorated_function


def staff_required(f):
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not is_staff(get_current_user()):
            return _forbidden()
        return f(*args, **kwargs)
    return decorated_function


def admin_required(f):
    @wraps(f)
    @login_required
    def decorated_function(*args, **kwargs):
        if not is_admin(get_current_user()):
            return _forbidden()
        return f(*args, **kwargs)
    return decorated_function


def get_guest_languages():
    return {
        "primary": database.get_setting("guest_primary_language"),
        "secondary": database.get_setting("guest_secondary_language"),
    }


@app.before_request
def load_language_context():
    user = get_current_user()
    reel = is_info_reel(request.args)
    g.language = get_locale()
    g.lang = build_language_context(
        g.language,
        user=user,
        guest_languages=None if user else get_guest_languages(),
        is_info_reel=reel,
    )


@app.context_processor
def inject_portal_context():
    user = get_current_user()
    lang = g.get('lang') or build_language_context(get_locale())
    reel = reel_snapshot(
        request.full_path,
        routes=app.config['INFO_REEL_ROUTES'],
        duration_ms=app.config['INFO_REEL_DURATION_MS'],
    )
    return dict(
        current_user=user,
        is_staff=is_staff(user),
        is_admin=is_admin(user),
        reel=reel,
        lang=lang,
        t=lang.t,
        site_name=SITE_NAME,
        supported_languages=SUPPORTED_LANGUAGES,
    )


# Formatting helpers
def parse_amount(value) -> Decimal | None:
    """Parse a euro amount typed with either decimal separator."""
    if value is None:
        return None
    text = str(value).strip().replace(" ", "").replace("€", "").replace(",", ".")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None
    if not amount.is_finite():
        return None
    return amount.quantize(Decimal("0.01"))


def format_euro(value) -> str:
    return format_currency(value, "EUR", locale="fi_FI")


def format_item_value(value):
    """Unit value cell: None for missing or zero so the table shows a placeholder."""
    amount = parse_amount(value)
    if amount is None or amount == 0:
        return None
    return format_euro(amount)


def format_item_total(item):
    amount = parse_amount(item.get("value"))
    if amount is None or amount == 0:
        return None
    return format_euro(amount * int(item.get("quantity") or 0))


def month_names(d):
    return BilingualText(
        finnish=format_date(d, "LLLL", locale="fi").capitalize(),
        english=format_date(d, "LLLL", locale="en"),
    )


app.jinja_env.filters['euro'] = format_euro


def safe_redirect_target(target):
    """Only same-site relative paths are allowed as redirect targets."""
    if not target:
        return None
    parts = urlsplit(target)
    if parts.scheme or parts.netloc or not target.startswith('/') or target.startswith('//'):
        return None
    return target


def referer_path():
    referer = request.headers.get('Referer')
    if not referer:
        return None
    parts = urlsplit(referer)
    if parts.netloc and parts.netloc != request.host:
        return None
    path = parts.path or '/'
    return f"{path}?{parts.query}" if parts.query else path


def allowed_file(filename: str) -> bool:
    """Check if file extension is allowed."""
    return '.' in filename and filename.rsplit('.', 1)[1].lower() in ALLOWED_RECEIPT_EXTENSIONS


def read_receipts(files):
    """
    Turn uploaded receipts into mail attachments.

    Returns:
        tuple: (attachments, error). Empty file inputs are skipped.
    """
    attachments = []
    for file in files:
        if not file or not file.filename:
            continue
        if not allowed_file(file.filename):
            return [], f"File type not allowed: {file.filename}"
        content = file.read()
        if not content:
            continue
        extension = file.filename.rsplit('.', 1)[1].lower()
        attachments.append(mailer.Attachment(
            name=file.filename,
            type=RECEIPT_MIME_TYPES[extension],
            content=base64.b64encode(content).decode("ascii"),
        ))
    return attachments, None


def recent_minutes(limit=20):
    files = []
    for year in google_client.get_minutes_by_year():
        for file in year["files"]:
            files.append({"id": file["id"], "name": file["name"], "url": file["url"], "year": year["year"]})
    return files[:limit]


def send_purchase_email(purchase, details, receipts=None, minutes_attachment=None):
    """Send the reimbursement mail and record the outcome on the purchase."""
    result = mailer.send_reimbursement_email(
        details,
        purchase_id=purchase['id'],
        receipts=receipts,
        minutes_attachment=minutes_attachment,
    )
    if result.success:
        database.update_purchase(purchase['id'], email_sent=True, email_message_id=result.message_id)
    else:
        database.update_purchase(purchase['id'], email_error=result.error or "Email sending failed")
    return result


def edit_client_id():
    """Per-session id that scopes the browser-supplied rev of inline edits."""
    if "edit_client" not in session:
        session["edit_client"] = secrets.token_hex(8)
    return session["edit_client"]


def parse_rev(value):
    try:
        return int(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None


def parse_id_list(value):
    """JSON list of ids as posted by the table's delete/report buttons."""
    try:
        ids = json.loads(value or "[]")
    except (TypeError, ValueError):
        return None
    if not isinstance(ids, list):
        return None
    try:
        return [int(i) for i in ids]
    except (TypeError, ValueError):
        return None


# Security headers middleware
@app.after_request
def add_security_headers(response):
    """Add security headers to all responses."""
    response.headers['X-Frame-Options'] = 'DENY'
    response.headers['X-Content-Type-Options'] = 'nosniff'
    response.headers['X-XSS-Protection'] = '1; mode=block'
    response.headers['Referrer-Policy'] = 'strict-origin-when-cross-origin'
    response.headers['Content-Security-Policy'] = (
        "default-src 'self'; "
        "script-src 'self' 'unsafe-inline'; "
        "style-src 'self' 'unsafe-inline'; "
        "img-src 'self' data: blob:; "
        "font-src 'self'; "
        "frame-ancestors 'none'; "
        "form-action 'self';"
    )
    response.headers['Permissions-Policy'] = 'geolocation=(), microphone=(), camera=()'
    return response


# Public pages
@app.get("/")
def home():
    return render_template("home.html", options=INVOLVEMENT_OPTIONS)


def group_events_by_month(events):
    groups = []
    for event in events:
        start = event["start"]
        key = (start.year, start.month)
        if not groups or groups[-1]["key"] != key:
            names = month_names(start)
            groups.append({
                "key": key,
                "year": start.year,
                "finnish": names.finnish,
                "english": names.english,
                "events": [],
            })
        groups[-1]["events"].append({
            **event,
            "day": start.day,
            "weekday": format_date(start, "EEE", locale="fi").capitalize(),
            "time": "Koko päivä / All Day" if event["all_day"] else start.strftime("%H:%M"),
        })
    return groups


@app.get("/events")
def events():
    groups = group_events_by_month(google_client.get_calendar_events())
    return render_template(
        "events.html",
        groups=groups,
        calendar_url=google_client.get_calendar_url(),
    )


@app.get("/budget")
def budget():
    year = date.today().year
    summary = database.get_budget_summary(year)
    last_updated = ""
    if summary and summary["updated_at"]:
        try:
            last_updated = format_datetime(datetime.fromisoformat(summary["updated_at"]), "short")
        except ValueError:
            last_updated = summary["updated_at"]
    return render_template(
        "budget.html",
        year=year,
        remaining=format_euro(summary["remaining"]) if summary else "--- €",
        total=format_euro(summary["total"]) if summary else "--- €",
        last_updated=last_updated,
        details_url=BUDGET_DETAILS_URL or url_for('treasury', year=year),
    )


@app.get("/minutes")
def minutes():
    minutes_by_year = google_client.get_minutes_by_year()
    archive_url = next((y["folder_url"] for y in minutes_by_year if y["files"]), None)
    return render_template(
        "minutes.html",
        minutes_by_year=minutes_by_year,
        current_year=str(date.today().year),
        archive_url=archive_url,
    )


@app.get("/social")
def social():
    links = database.get_social_links()
    channel = request.args.get("channel")
    active = next((link for link in links if str(link["id"]) == channel), links[0] if links else None)
    return render_template("social.html", links=links, active=active)


@app.get("/qr.png")
def qr_code():
    """QR code for the info reel side panel; relative paths resolve against this site."""
    target = request.args.get("url", "/")
    if len(target) > 512:
        return jsonify({"error": "URL too long"}), 400
    if target.startswith('/') and not target.startswith('//'):
        target = request.host_url.rstrip('/') + target
    elif urlsplit(target).scheme not in ('http', 'https'):
        return jsonify({"error": "Invalid URL"}), 400
    img = qrcode.make(target)
    bio = io.BytesIO()
    img.save(bio, format="PNG")
    bio.seek(0)
    return send_file(bio, mimetype="image/png", max_age=300)


@app.route("/contact", methods=["GET", "POST"])
@limiter.limit("5 per minute", methods=["POST"])
def contact():
    submission_type = request.values.get("type")
    if submission_type not in SUBMISSION_TYPES:
        submission_type = "questions"

    if request.method == "POST":
        name = (request.form.get("name") or "").strip()
        email = (request.form.get("email") or "").strip()
        message = (request.form.get("message") or "").strip()
        apartment = (request.form.get("apartment_number") or "").strip() or None
        if not name or not email or not message:
            return render_template(
                "contact.html", submission_type=submission_type, form=request.form,
                error="Täytä pakolliset kentät / Fill in the required fields",
            ), 400
        database.create_submission(submission_type, name, email, message, apartment_number=apartment)
        logger.info(f"Contact submission received ({submission_type})")
        return redirect(url_for('contact', type=submission_type, success='true'))

    return render_template(
        "contact.html",
        submission_type=submission_type,
        form={},
        success=request.args.get("success") == "true",
    )


# Inventory
def build_inventory_columns(visible, staff):
    columns = {
        "name": ColumnDef("name", INVENTORY_COLUMN_LABELS["name"], editable=staff),
        "quantity": ColumnDef("quantity", INVENTORY_COLUMN_LABELS["quantity"],
                              cell=lambda value, row: f"{value} kpl"),
        "location": ColumnDef("location", INVENTORY_COLUMN_LABELS["location"], editable=staff),
        "category": ColumnDef("category", INVENTORY_COLUMN_LABELS["category"], editable=staff),
        "description": ColumnDef("description", INVENTORY_COLUMN_LABELS["description"], editable=staff),
        "unitValue": ColumnDef("unitValue", INVENTORY_COLUMN_LABELS["unitValue"], accessor="value",
                               cell=lambda value, row: format_item_value(value), css_class="numeric"),
        "totalValue": ColumnDef("totalValue", INVENTORY_COLUMN_LABELS["totalValue"], accessor=lambda row: row,
                                cell=lambda value, row: format_item_total(row), css_class="numeric strong"),
        "showInInfoReel": ColumnDef("showInInfoReel", INVENTORY_COLUMN_LABELS["showInInfoReel"],
                                    accessor="show_in_info_reel", css_class="toggle"),
    }
    return [columns[key] for key in visible]


def filter_inventory(items, name="", location="", category=""):
    if name:
        term = name.lower()
        items = [item for item in items if term in item["name"].lower()]
    if location:
        term = location.lower()
        items = [item for item in items if (item["location"] or "").lower() == term]
    if category:
        term = category.lower()
        items = [item for item in items if (item["category"] or "").lower() == term]
    return sorted(items, key=lambda item: item["name"].casefold())


def parse_page(value) -> int:
    try:
        return max(1, int(value))
    except (TypeError, ValueError):
        return 1


@app.get("/inventory")
def inventory():
    user = get_current_user()
    staff = is_staff(user)
    filters = {
        "name": request.args.get("name", ""),
        "location": request.args.get("location", ""),
        "category": request.args.get("category", ""),
    }
    all_items = database.get_inventory_items()
    locations = sorted({item["location"] for item in all_items if item["location"]})
    categories = sorted({item["category"] for item in all_items if item["category"]})

    if is_info_reel(request.args):
        flagged = [item for item in all_items if item["show_in_info_reel"]]
        reel_items = random.sample(flagged, min(INFO_REEL_ITEM_COUNT, len(flagged)))
        return render_template("inventory.html", reel_items=reel_items, filters=filters)

    allowed = [k for k in INVENTORY_COLUMN_KEYS if staff or k not in INVENTORY_STAFF_COLUMNS]
    visible = parse_visible_columns(request.args.get("cols"), allowed, allowed)
    items = filter_inventory(all_items, **filters)
    page = parse_page(request.args.get("page"))
    start = (page - 1) * PAGE_SIZE

    table = RecordTable(
        columns=build_inventory_columns(visible, staff),
        rows=items[start:start + PAGE_SIZE],
        total_count=len(items),
        page=page,
        page_size=PAGE_SIZE,
        get_row_id=lambda item: item["id"],
        enable_selection=True,
        enable_delete=staff,
        table_id="inventory-table",
        edit_url=url_for('inventory_action'),
    )
    column_toggles = [
        {
            "key": key,
            "label": INVENTORY_COLUMN_LABELS[key],
            "visible": key in visible,
            "url": url_for('inventory', **{**request.args.to_dict(), "cols": toggle_column_param(visible, key, allowed)}),
        }
        for key in allowed
    ]
    return render_template(
        "inventory.html",
        table=table,
        filters=filters,
        locations=locations,
        categories=categories,
        column_toggles=column_toggles,
        args=request.args.to_dict(),
    )


@app.post("/inventory")
@limiter.limit("120 per minute")
def inventory_action():
    user = get_current_user()
    action = request.form.get("_action")
    back = safe_redirect_target(request.form.get("redirectTo")) or url_for('inventory')

    if action == "report":
        ids = parse_id_list(request.form.get("reportItemIds"))
        message = (request.form.get("reportMessage") or "").strip()
        if not ids or not message:
            return redirect(url_for('inventory', error="report"))
        names = [item["name"] for item in (database.get_inventory_item_by_id(i) for i in ids) if item]
        database.create_submission(
            "questions",
            "Tavaraluettelo / Inventory Report",
            "inventory@report",
            f"Ilmoitus tavaroista / Report for items:\n{', '.join(names)}\n\nViesti / Message:\n{message}",
        )
        logger.info(f"Inventory report filed for {len(names)} items")
        return redirect(back)

    if not is_staff(user):
        if action == "updateField":
            return jsonify({"error": "Forbidden"}), 403
        return _forbidden()

    if action == "delete":
        item_id = request.form.get("itemId", type=int)
        if item_id is None:
            return redirect(url_for('inventory', error="missing"))
        database.delete_inventory_item(item_id)
        logger.info(f"Inventory item {item_id} deleted by {user['email']}")
        return redirect(back)

    if action == "deleteMany":
        ids = parse_id_list(request.form.get("itemIds"))
        if ids is None:
            return redirect(url_for('inventory', error="invalid"))
        for item_id in ids:
            database.delete_inventory_item(item_id)
        logger.info(f"{len(ids)} inventory items deleted by {user['email']}")
        return redirect(back)

    if action == "toggleInfoReel":
        item = database.get_inventory_item_by_id(request.form.get("itemId", type=int))
        if item:
            database.update_inventory_item(item["id"], show_in_info_reel=not item["show_in_info_reel"])
        return redirect(back)

    if action == "updateField":
        item_id = request.form.get("itemId", type=int)
        field = request.form.get("field")
        if item_id is None or field not in database.INVENTORY_EDITABLE_FIELDS:
            return jsonify({"error": "Field not editable"}), 400
        value = (request.form.get("value") or "").strip() or None
        if field in ("name", "location") and value is None:
            return jsonify({"error": f"{field} is required"}), 400
        target = ("inventory", item_id, field)
        rev = parse_rev(request.form.get("rev"))
        if not INLINE_EDITS.accept(target, rev, client=edit_client_id()):
            logger.info(f"Ignoring stale edit of {field} on inventory item {item_id}")
            return jsonify({"success": True, "applied": False})
        database.update_inventory_item(item_id, **{field: value})
        return jsonify({"success": True, "applied": True})

    return redirect(url_for('inventory', error="unknown"))


@app.get("/api/inventory/export")
@admin_required
def export_inventory():
    output = io.StringIO()
    writer = csv.DictWriter(output, fieldnames=INVENTORY_CSV_FIELDS, extrasaction="ignore")
    writer.writeheader()
    for item in database.get_inventory_items():
        writer.writerow({**item, "show_in_info_reel": 1 if item["show_in_info_reel"] else 0})
    resp = Response(output.getvalue(), mimetype="text/csv")
    resp.headers["Content-Disposition"] = f"attachment; filename=inventory-{date.today().isoformat()}.csv"
    return resp


def parse_inventory_csv(text):
    """
    Rows of an inventory CSV as insert parameters.

    Raises:
        ValueError: when the header lacks the required columns.
    """
    reader = csv.DictReader(io.StringIO(text))
    headers = {h.strip().lower() for h in reader.fieldnames or []}
    if not {"name", "location"} <= headers:
        raise ValueError("CSV must have name and location columns")
    items = []
    for raw in reader:
        # Fields beyond the header land under the None key
        row = {k.strip().lower(): (v or "").strip() for k, v in raw.items() if k is not None}
        if not row.get("name") or not row.get("location"):
            continue
        try:
            quantity = int(row.get("quantity") or 1)
        except ValueError:
            quantity = 1
        amount = parse_amount(row.get("value"))
        items.append({
            "name": row["name"],
            "quantity": quantity,
            "location": row["location"],
            "category": row.get("category") or None,
            "description": row.get("description") or None,
            "value": str(amount) if amount is not None else "0",
            "show_in_info_reel": 1 if row.get("show_in_info_reel", "").lower() in ("1", "true", "yes") else 0,
        })
    return items


@app.post("/api/inventory/import")
@admin_required
@limiter.limit("10 per hour")
def import_inventory():
    file = request.files.get("file")
    if not file or not file.filename:
        return jsonify({"success": False, "error": "No file uploaded"}), 400
    if not file.filename.lower().endswith(".csv"):
        return jsonify({"success": False, "error": "Only CSV files are supported"}), 400
    try:
        items = parse_inventory_csv(file.read().decode("utf-8-sig"))
    except (UnicodeDecodeError, ValueError, csv.Error) as e:
        return jsonify({"success": False, "error": str(e)}), 400
    if not items:
        return jsonify({"success": False, "error": "No valid rows found"}), 400
    imported = database.bulk_create_inventory_items(items)
    logger.info(f"Imported {imported} inventory items")
    return jsonify({"success": True, "imported": imported})


@app.route("/inventory/new", methods=["GET", "POST"])
@staff_required
@limiter.limit("30 per hour", methods=["POST"])
def inventory_new():
    context = dict(
        recent_minutes=recent_minutes(),
        email_configured=mailer.is_email_configured(),
        today=date.today().isoformat(),
    )
    if request.method == "GET":
        return render_template("inventory_new.html", form={}, **context)

    form = request.form
    name = (form.get("name") or "").strip()
    location = (form.get("location") or "").strip()
    if not name or not location:
        return render_template("inventory_new.html", form=form,
                               error="Nimi ja sijainti vaaditaan / Name and location are required",
                               **context), 400
    try:
        quantity = max(1, int(form.get("quantity") or 1))
    except ValueError:
        quantity = 1
    amount = parse_amount(form.get("value"))
    value = str(amount) if amount is not None else "0"
    was_purchased = form.get("wasPurchased") == "on"

    receipts = []
    if was_purchased:
        receipts, error = read_receipts(request.files.getlist("receipt"))
        if error:
            return render_template("inventory_new.html", form=form, error=error, **context), 400

    item = database.create_inventory_item(
        name=name,
        location=location,
        quantity=quantity,
        category=(form.get("category") or "").strip() or None,
        description=(form.get("description") or "").strip() or None,
        value=value,
        purchased_at=form.get("purchasedAt") or None,
    )
    logger.info(f"Inventory item {item['id']} created")

    if was_purchased:
        minutes_id = form.get("minutesId") or None
        purchase = database.create_purchase(
            description=name,
            amount=value,
            purchaser_name=(form.get("purchaserName") or "").strip(),
            bank_account=(form.get("bankAccount") or "").strip(),
            year=date.today().year,
            inventory_item_id=item["id"],
            minutes_id=minutes_id,
            notes=form.get("notes") or None,
        )
        send_purchase_email(purchase, {
            "item_name": name,
            "item_value": value,
            "purchaser_name": purchase["purchaser_name"],
            "bank_account": purchase["bank_account"],
            "minutes_reference": minutes_id or NOT_SPECIFIED,
            "notes": form.get("notes"),
        }, receipts=receipts or None)

    return redirect(url_for('inventory'))


# Treasury
def transaction_amount_cell(value, row):
    amount = parse_amount(value)
    if amount is None:
        return None
    sign = "+" if row["type"] == "income" else "−"
    return f"{sign}{format_euro(amount)}"


def build_transaction_columns(staff):
    category_labels = dict(TRANSACTION_CATEGORIES)
    return [
        ColumnDef("date", "Päivä / Date", cell=lambda value, row: (value or "")[:10]),
        ColumnDef("description", "Kuvaus / Description", editable=staff),
        ColumnDef("category", "Kategoria / Category", editable=staff,
                  cell=lambda value, row: category_labels.get(value, value) if value else None),
        ColumnDef("type", "Tyyppi / Type",
                  cell=lambda value, row: "Tulo / Income" if value == "income" else "Meno / Expense"),
        ColumnDef("amount", "Summa / Amount", cell=transaction_amount_cell, css_class="numeric"),
        ColumnDef("status", "Tila / Status",
                  cell=lambda value, row: "Valmis / Complete" if value == "complete" else "Odottaa / Pending"),
    ]


def transaction_totals(transactions):
    income = Decimal("0")
    expenses = Decimal("0")
    for tx in transactions:
        if tx["status"] != "complete":
            continue
        amount = parse_amount(tx["amount"]) or Decimal("0")
        if tx["type"] == "income":
            income += amount
        else:
            expenses += amount
    return {"income": income, "expenses": expenses, "balance": income - expenses}


@app.get("/treasury")
def treasury():
    staff = is_staff(get_current_user())
    current_year = date.today().year
    year = request.args.get("year", type=int) or current_year
    years = sorted(set(database.get_transaction_years()) | {current_year, year}, reverse=True)
    transactions = database.get_transactions_by_year(year)
    page = parse_page(request.args.get("page"))
    start = (page - 1) * PAGE_SIZE

    table = RecordTable(
        columns=build_transaction_columns(staff),
        rows=transactions[start:start + PAGE_SIZE],
        total_count=len(transactions),
        page=page,
        page_size=PAGE_SIZE,
        get_row_id=lambda tx: tx["id"],
        enable_selection=staff,
        enable_delete=staff,
        table_id="treasury-table",
        edit_url=url_for('treasury_action'),
    )
    return render_template(
        "treasury.html",
        table=table,
        year=year,
        years=years,
        totals=transaction_totals(transactions),
        args=request.args.to_dict(),
    )


@app.post("/treasury")
@staff_required
@limiter.limit("120 per minute")
def treasury_action():
    user = get_current_user()
    action = request.form.get("_action")
    back = safe_redirect_target(request.form.get("redirectTo")) or url_for('treasury')

    if action == "updateField":
        tx_id = request.form.get("itemId", type=int)
        field = request.form.get("field")
        if tx_id is None or field not in database.TRANSACTION_EDITABLE_FIELDS:
            return jsonify({"error": "Field not editable"}), 400
        value = (request.form.get("value") or "").strip() or None
        if field == "description" and value is None:
            return jsonify({"error": "description is required"}), 400
        target = ("transactions", tx_id, field)
        rev = parse_rev(request.form.get("rev"))
        if not INLINE_EDITS.accept(target, rev, client=edit_client_id()):
            return jsonify({"success": True, "applied": False})
        database.update_transaction(tx_id, **{field: value})
        return jsonify({"success": True, "applied": True})

    if action == "deleteMany":
        ids = parse_id_list(request.form.get("itemIds"))
        if ids is None:
            return redirect(url_for('treasury', error="invalid"))
        for tx_id in ids:
            database.delete_transaction(tx_id)
        logger.info(f"{len(ids)} transactions deleted by {user['email']}")
        return redirect(back)

    return redirect(url_for('treasury', error="unknown"))


def treasury_new_context():
    ids = [i for i in (request.args.get("items") or "").split(",") if i.strip().isdigit()]
    linked_items = [item for item in (database.get_inventory_item_by_id(int(i)) for i in ids) if item]
    all_items = database.get_inventory_items()
    return dict(
        current_year=date.today().year,
        today=date.today().isoformat(),
        recent_minutes=recent_minutes(),
        email_configured=mailer.is_email_configured(),
        categories=TRANSACTION_CATEGORIES,
        prefill={
            "amount": request.args.get("amount", ""),
            "description": request.args.get("description", ""),
            "type": request.args.get("type") if request.args.get("type") in ("income", "expense") else "expense",
            "category": request.args.get("category") or ("inventory" if ids else ""),
            "item_ids": ",".join(ids),
        },
        linked_items=linked_items,
        unlinked_items=database.get_inventory_items_without_transactions(),
        locations=sorted({item["location"] for item in all_items if item["location"]}),
        item_categories=sorted({item["category"] for item in all_items if item["category"]}),
    )


@app.route("/treasury/new", methods=["GET", "POST"])
@staff_required
@limiter.limit("60 per hour", methods=["POST"])
def treasury_new():
    if request.method == "GET":
        return render_template("treasury_new.html", form={}, **treasury_new_context())

    form = request.form

    # Inventory picker creates items without leaving the page
    if form.get("_action") == "createItem":
        name = (form.get("name") or "").strip()
        location = (form.get("location") or "").strip()
        if not name or not location:
            return jsonify({"success": False, "error": "Name and location are required"}), 400
        try:
            quantity = max(1, int(form.get("quantity") or 1))
        except ValueError:
            quantity = 1
        amount = parse_amount(form.get("value"))
        item = database.create_inventory_item(
            name=name,
            location=location,
            quantity=quantity,
            category=form.get("category") or None,
            description=form.get("description") or None,
            value=str(amount) if amount is not None else "0",
        )
        return jsonify({"success": True, "item": item})

    tx_type = form.get("type")
    amount = parse_amount(form.get("amount"))
    description = (form.get("description") or "").strip()
    try:
        tx_date = date.fromisoformat(form.get("date") or date.today().isoformat())
    except ValueError:
        tx_date = None
    errors = []
    if tx_type not in ("income", "expense"):
        errors.append("Tyyppi / Type")
    if amount is None or amount <= 0:
        errors.append("Summa / Amount")
    if not description:
        errors.append("Kuvaus / Description")
    if tx_date is None:
        errors.append("Päivä / Date")
    if errors:
        return render_template("treasury_new.html", form=form,
                               error="Tarkista kentät / Check fields: " + ", ".join(errors),
                               **treasury_new_context()), 400

    year = form.get("year", type=int) or tx_date.year
    request_reimbursement = form.get("requestReimbursement") == "on"
    receipts = []
    if request_reimbursement:
        receipts, error = read_receipts(request.files.getlist("receipt"))
        if error:
            return render_template("treasury_new.html", form=form, error=error,
                                   **treasury_new_context()), 400

    purchase_id = None
    if request_reimbursement:
        minutes_id = form.get("minutesId") or None
        purchase = database.create_purchase(
            description=description,
            amount=str(amount),
            purchaser_name=(form.get("purchaserName") or "").strip(),
            bank_account=(form.get("bankAccount") or "").strip(),
            year=year,
            minutes_id=minutes_id,
            notes=form.get("notes") or None,
        )
        purchase_id = purchase["id"]
        send_purchase_email(purchase, {
            "item_name": description,
            "item_value": str(amount),
            "purchaser_name": purchase["purchaser_name"],
            "bank_account": purchase["bank_account"],
            "minutes_reference": minutes_id or NOT_SPECIFIED,
            "notes": form.get("notes"),
        }, receipts=receipts or None)

    transaction = database.create_transaction(
        type=tx_type,
        amount=str(amount),
        description=description,
        date=tx_date.isoformat(),
        year=year,
        category=form.get("category") or None,
        status="pending" if request_reimbursement else "complete",
        reimbursement_status="requested" if request_reimbursement else "not_requested",
        purchase_id=purchase_id,
    )

    for item_id in (form.get("linkedItemIds") or "").split(","):
        if not item_id.strip().isdigit():
            continue
        item = database.get_inventory_item_by_id(int(item_id))
        if item:
            database.link_inventory_item_to_transaction(item["id"], transaction["id"], item["quantity"])

    logger.info(f"Transaction {transaction['id']} created ({tx_type} {amount})")
    return redirect(url_for('treasury', year=year))


@app.route("/treasury/reimbursement/new", methods=["GET", "POST"])
@staff_required
@limiter.limit("30 per hour", methods=["POST"])
def reimbursement_new():
    minutes_files = recent_minutes()
    context = dict(
        recent_minutes=minutes_files,
        email_configured=mailer.is_email_configured(),
        current_year=date.today().year,
    )
    if request.method == "GET":
        return render_template("reimbursement_new.html", form={}, **context)

    form = request.form
    description = (form.get("description") or "").strip()
    amount = parse_amount(form.get("amount"))
    purchaser_name = (form.get("purchaserName") or "").strip()
    bank_account = (form.get("bankAccount") or "").strip()
    if not description or amount is None or amount <= 0 or not purchaser_name or not bank_account:
        return render_template("reimbursement_new.html", form=form,
                               error="Täytä pakolliset kentät / Fill in the required fields",
                               **context), 400
    receipts, error = read_receipts(request.files.getlist("receipt"))
    if error:
        return render_template("reimbursement_new.html", form=form, error=error, **context), 400

    minutes_id = form.get("minutesId") or None
    minutes_name = form.get("minutesName") or None
    minutes_url = form.get("minutesUrl") or None
    if not minutes_url and minutes_id:
        minutes_url = f"https://drive.google.com/file/d/{minutes_id}/view"

    inventory_item_id = None
    if form.get("addToInventory") == "on":
        item = database.create_inventory_item(
            name=description,
            location=(form.get("location") or "").strip() or "Ei määritetty",
            quantity=1,
            category=(form.get("category") or "").strip() or None,
            value=str(amount),
            purchased_at=date.today().isoformat(),
        )
        inventory_item_id = item["id"]

    purchase = database.create_purchase(
        description=description,
        amount=str(amount),
        purchaser_name=purchaser_name,
        bank_account=bank_account,
        year=date.today().year,
        inventory_item_id=inventory_item_id,
        minutes_id=minutes_id,
        minutes_name=minutes_name,
        notes=form.get("notes") or None,
    )

    minutes_attachment = None
    if minutes_id:
        content = google_client.get_file_as_base64(minutes_id)
        if content:
            minutes_attachment = mailer.Attachment(
                name=f"{minutes_name or 'poytakirja'}.pdf",
                type="application/pdf",
                content=content,
            )

    send_purchase_email(purchase, {
        "item_name": description,
        "item_value": str(amount),
        "purchaser_name": purchaser_name,
        "bank_account": bank_account,
        "minutes_reference": minutes_name or minutes_id,
        "minutes_url": minutes_url,
        "notes": form.get("notes"),
    }, receipts=receipts or None, minutes_attachment=minutes_attachment)

    return redirect("/budget/reimbursements?success=true")


def reimbursement_email_cell(value, row):
    if row["email_sent"]:
        return "Lähetetty / Sent"
    if row["email_error"]:
        return f"Virhe / Error: {row['email_error']}"
    return None


@app.get("/budget/reimbursements")
@staff_required
def reimbursements():
    purchases = database.get_purchases()
    page = parse_page(request.args.get("page"))
    start = (page - 1) * PAGE_SIZE
    table = RecordTable(
        columns=[
            ColumnDef("created_at", "Päivä / Date", cell=lambda value, row: (value or "")[:10]),
            ColumnDef("description", "Kuvaus / Description"),
            ColumnDef("amount", "Summa / Amount", cell=lambda value, row: format_item_value(value),
                      css_class="numeric"),
            ColumnDef("purchaser_name", "Ostaja / Purchaser"),
            ColumnDef("minutes_name", "Pöytäkirja / Minutes",
                      accessor=lambda row: row["minutes_name"] or row["minutes_id"]),
            ColumnDef("status", "Tila / Status"),
            ColumnDef("email", "Sähköposti / Email", accessor=lambda row: row, cell=reimbursement_email_cell),
        ],
        rows=purchases[start:start + PAGE_SIZE],
        total_count=len(purchases),
        page=page,
        page_size=PAGE_SIZE,
        get_row_id=lambda purchase: purchase["id"],
        table_id="reimbursements-table",
    )
    return render_template(
        "reimbursements.html",
        table=table,
        success=request.args.get("success") == "true",
        args=request.args.to_dict(),
    )


# Analytics
@app.route("/settings/analytics", methods=["GET", "POST"])
@admin_required
def settings_analytics():
    keys = openrouter.SETTINGS_KEYS
    message = None
    error = None

    if request.method == "POST":
        intent = request.form.get("intent")
        if intent == "save-analytics-settings":
            model = request.form.get("analyticsModel")
            if model:
                database.set_setting(keys["ANALYTICS_AI_MODEL"], model, "AI model for analytics word counting")
            message = "Analytics settings saved"
        elif intent == "save-api-key":
            api_key = (request.form.get("apiKey") or "").strip()
            if api_key:
                database.set_setting(keys["OPENROUTER_API_KEY"], api_key, "OpenRouter API key")
                message = "API key saved"
            else:
                error = "API key is required"
        else:
            error = "Unknown action"

    api_key = database.get_setting(keys["OPENROUTER_API_KEY"])
    sort_by = "name" if request.args.get("sort") == "name" else "price"
    models = openrouter.sort_models(openrouter.get_available_models(api_key), sort_by) if api_key else []
    return render_template(
        "settings_analytics.html",
        api_key=openrouter.mask_api_key(api_key),
        has_api_key=bool(api_key),
        analytics_model=database.get_setting(keys["ANALYTICS_AI_MODEL"]) or "",
        models=models,
        sort_by=sort_by,
        format_price=openrouter.format_price,
        message=message,
        error=error,
    ), 400 if error else 200


@app.post("/api/analytics/analyze")
@staff_required
@limiter.limit("20 per hour")
def analytics_analyze():
    payload = request.get_json(silent=True) or {}
    texts = payload.get("texts")
    if texts is None and request.form.get("texts"):
        try:
            texts = json.loads(request.form["texts"])
        except ValueError:
            texts = None
    if not isinstance(texts, list):
        return jsonify({"error": "texts must be a list"}), 400

    if payload.get("mode") == "exact":
        return jsonify({"data": openrouter.count_values(texts)})

    keys = openrouter.SETTINGS_KEYS
    try:
        data = openrouter.analyze_word_counts(
            database.get_setting(keys["OPENROUTER_API_KEY"]),
            database.get_setting(keys["ANALYTICS_AI_MODEL"]),
            texts,
        )
    except openrouter.AnalyticsError as e:
        return jsonify({"error": str(e)}), 502
    return jsonify({"data": data})


# Language
@app.post("/api/set-language")
def set_language():
    language = request.form.get("language")
    target = (
        safe_redirect_target(request.form.get("redirectTo"))
        or referer_path()
        or "/"
    )
    response = redirect(target)
    if not language:
        return response
    if language not in SUPPORTED_LANGUAGES:
        logger.warning(f"Unsupported language requested: {language}")
        return response

    user = get_current_user()
    if user and user["primary_language"] != language:
        database.update_user(user["id"], primary_language=language)
    response.headers.add("Set-Cookie", serialize_locale_cookie(language))
    return response


# Authentication
@app.route('/login', methods=['GET', 'POST'])
@limiter.limit("10 per minute", methods=["POST"])
def login():
    if get_current_user() is not None:
        return redirect(url_for('home'))

    if request.method == 'POST':
        email = (request.form.get('email') or '').strip()
        password = request.form.get('password') or ''
        user = verify_user_credentials(email, password)

        if user:
            next_page = safe_redirect_target(request.args.get('next'))
            # Regenerate session to prevent session fixation
            session.clear()
            session.permanent = True
            session['user_id'] = user['id']
            session['role'] = user['role']
            database.update_user(user['id'], last_login=database.local_timestamp())
            logger.info(f"User {user['email']} logged in")
            return redirect(next_page or url_for('home'))

        logger.warning(f"Failed login for {email}")
        return render_template('login.html', error="Virheellinen sähköposti tai salasana / Invalid email or password"), 401

    return render_template('login.html')


@app.route('/logout')
def logout():
    session.clear()
    return redirect(url_for('home'))


# Error handlers
@app.errorhandler(403)
def forbidden_handler(e):
    return render_template('403.html'), 403


@app.errorhandler(404)
def not_found_handler(e):
    if request.path.startswith('/api/'):
        return jsonify({"error": "Not found"}), 404
    return render_template('404.html'), 404


@app.errorhandler(429)
def ratelimit_handler(e):
    return jsonify({"error": "Too many requests. Please try again later."}), 429


@app.errorhandler(400)
def bad_request_handler(e):
    return jsonify({"error": "Bad request"}), 400


@app.errorhandler(500)
def internal_error_handler(e):
    return jsonify({"error": "Internal server error"}), 500


if __name__ == "__main__":
    is_production = os.environ.get('FLASK_ENV') == 'production'

    if not is_production:
        logger.info(f"[DEV MODE] Database: {database.DB_PATH}")
        logger.warning("[DEV MODE] Debug mode enabled - DO NOT USE IN PRODUCTION")

    port = int(os.environ.get("PORT", "5000"))
    app.run(debug=not is_production, host='127.0.0.1', port=port)
