"""SQLite-backed persistence layer for a multi-church management workspace."""

from __future__ import annotations

import json
import logging
import re
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from difflib import SequenceMatcher
from pathlib import Path
from typing import Any, Iterable

from .privacy import normalize_email, normalize_phone


logger = logging.getLogger(__name__)

MEMBERSHIP_STATUSES = ("Active", "Inactive", "Visitor", "Transferred", "Deceased", "Merged")
MEMBERSHIP_ROLES = ("Member", "Regular Attender", "Visitor", "Staff", "Elder", "Deacon", "Volunteer")
DONATION_STATUSES = ("pending", "completed", "failed", "refunded")
PAYMENT_METHODS = ("card", "ach", "cash", "check", "other")
PROFILE_STATUSES = ("unverified", "verified", "pending_review", "duplicate", "merged")

DEFAULT_CATEGORIES = (
    ("Tithe", "Regular tithe offering"),
    ("Offering", "General offering"),
    ("Missions", "Missions and outreach support"),
    ("Building", "Building fund and facility improvements"),
    ("Other", "Other designated giving"),
)

_SLUG_PATTERN = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    stripped = value.strip()
    return stripped or None


def _normalize_token(value: str | None) -> str:
    if value is None:
        return ""
    return re.sub(r"[^a-z0-9]", "", value.lower())


def _normalize_digits(value: str | None) -> str:
    if value is None:
        return ""
    return re.sub(r"\D", "", value)


def _build_alias_lookup() -> dict[str, set[str]]:
    groups = (
        ("abigail", "abby", "gail"),
        ("andrew", "andy", "drew"),
        ("benjamin", "ben", "benji"),
        ("catherine", "katherine", "cathy", "kathy", "kate", "katie"),
        ("christopher", "chris", "topher"),
        ("deborah", "debra", "deb", "debbie"),
        ("elizabeth", "liz", "beth", "betsy", "eliza"),
        ("jacob", "jake"),
        ("james", "jim", "jimmy", "jamie"),
        ("jonathan", "jon", "johnny"),
        ("joseph", "joe", "joey"),
        ("joshua", "josh"),
        ("margaret", "maggie", "meg", "peggy"),
        ("matthew", "matt"),
        ("michael", "mike", "mikey"),
        ("nathaniel", "nathan", "nate"),
        ("patricia", "pat", "patty", "trish"),
        ("rebecca", "becky", "becca"),
        ("richard", "rick", "rich", "dick"),
        ("robert", "rob", "bob", "bobby"),
        ("samuel", "sam", "sammy"),
        ("susan", "sue", "susie"),
        ("thomas", "tom", "tommy"),
        ("timothy", "tim", "timmy"),
        ("william", "will", "bill", "billy", "liam"),
    )

    lookup: dict[str, set[str]] = {}
    for group in groups:
        normalized_group = {token for token in (_normalize_token(name) for name in group) if token}
        for token in normalized_group:
            lookup.setdefault(token, set()).update(normalized_group)
    return lookup


_ALIAS_LOOKUP = _build_alias_lookup()


def _name_aliases(value: str | None) -> set[str]:
    token = _normalize_token(value)
    if not token:
        return set()
    return {token} | _ALIAS_LOOKUP.get(token, set())


def _similarity(left: str, right: str) -> float:
    if not left or not right:
        return 0.0
    return SequenceMatcher(None, left, right).ratio()


def _member_search_score(row: sqlite3.Row, search_term: str) -> float:
    query_norm = _normalize_token(search_term)
    if not query_norm:
        return 0.0

    query_digits = _normalize_digits(search_term)
    search_tokens = [token for token in search_term.strip().split() if token]

    first_norm = _normalize_token(row["first_name"])
    last_norm = _normalize_token(row["last_name"])
    preferred_norm = _normalize_token(row["preferred_name"])
    full_norm = first_norm + last_norm
    email_norm = _normalize_token(row["email"])
    phone_digits = _normalize_digits(row["mobile_phone"]) or _normalize_digits(row["work_phone"])

    searchable = [field for field in (full_norm, first_norm, last_norm, preferred_norm, email_norm) if field]

    score = 0.0
    if query_norm in searchable:
        score += 240
    elif any(query_norm in field for field in searchable):
        score += 150

    if len(query_digits) >= 4 and phone_digits:
        if query_digits == phone_digits:
            score += 240
        elif query_digits in phone_digits:
            score += 150

    for token in search_tokens:
        token_aliases = _name_aliases(token)
        if first_norm in token_aliases or (preferred_norm and preferred_norm in token_aliases):
            score += 130
        if last_norm in token_aliases:
            score += 90

    best_ratio = max(_similarity(query_norm, field) for field in searchable) if searchable else 0.0
    if best_ratio >= 0.9:
        score += 120
    elif best_ratio >= 0.8:
        score += 80
    elif best_ratio >= 0.7:
        score += 45

    if first_norm.startswith(query_norm) or last_norm.startswith(query_norm):
        score += 70

    return score


def _lastrowid(cursor: sqlite3.Cursor) -> int:
    row_id = cursor.lastrowid
    if row_id is None:
        raise RuntimeError("Insert did not return a row id.")
    return row_id


def _timestamp(moment: datetime | None = None) -> str:
    return (moment or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")


def _json_dumps(value: Any) -> str | None:
    if value is None:
        return None
    return json.dumps(value, default=str, sort_keys=True)


def json_field(value: str | None, default: Any = None) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        logger.warning("Ignoring malformed JSON column value")
        return default


def cents_from_amount(amount: float) -> int:
    return int(round(amount * 100))


def amount_from_cents(cents: int) -> float:
    return cents / 100


def format_currency(cents: int) -> str:
    return f"${amount_from_cents(cents):,.2f}"


def member_display_name(row: sqlite3.Row | dict[str, Any]) -> str:
    first_name = (row["preferred_name"] or row["first_name"] or "").strip()
    last_name = (row["last_name"] or "").strip()
    return f"{first_name} {last_name}".strip() or "Unnamed member"


def slugify(value: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", value.strip().lower()).strip("-")


@dataclass(frozen=True)
class MonthRange:
    start: date
    end: date


def month_bounds(anchor: date) -> MonthRange:
    first_day = anchor.replace(day=1)
    if first_day.month == 12:
        next_month = date(first_day.year + 1, 1, 1)
    else:
        next_month = date(first_day.year, first_day.month + 1, 1)
    return MonthRange(start=first_day, end=next_month - timedelta(days=1))


def _month_shift(first_day_of_month: date, months_back: int) -> date:
    year = first_day_of_month.year
    month = first_day_of_month.month - months_back
    while month <= 0:
        month += 12
        year -= 1
    return date(year, month, 1)


def _table_columns(connection: sqlite3.Connection, table_name: str) -> set[str]:
    rows = connection.execute(f"PRAGMA table_info({table_name})").fetchall()
    return {str(row["name"]) for row in rows}


def _ensure_column(
    connection: sqlite3.Connection,
    table_name: str,
    column_name: str,
    definition: str,
) -> None:
    if column_name in _table_columns(connection, table_name):
        return
    connection.execute(
        f"ALTER TABLE {table_name} ADD COLUMN {column_name} {definition}"
    )


_MEMBER_COLUMNS = (
    "family_id",
    "first_name",
    "last_name",
    "preferred_name",
    "email",
    "mobile_phone",
    "work_phone",
    "date_of_birth",
    "gender",
    "marital_status",
    "membership_status",
    "membership_role",
    "join_date",
    "baptism_date",
    "address",
    "city",
    "state",
    "zip_code",
    "emergency_contact_name",
    "emergency_contact_phone",
    "occupation",
    "employer",
    "notes",
    "is_head_of_household",
    "is_minor",
    "inactive_date",
    "inactive_reason",
)

_PROFILE_SYNC_COLUMNS = {
    "first_name": "first_name",
    "last_name": "last_name",
    "email": "email",
    "mobile_phone": "phone",
    "date_of_birth": "date_of_birth",
    "address": "address",
    "city": "city",
    "state": "state",
    "zip_code": "zip_code",
    "family_id": "family_id",
}


def _member_value(column: str, value: Any) -> Any:
    if column in {"is_head_of_household", "is_minor"}:
        return 1 if value else 0
    if column == "family_id":
        return value
    if isinstance(value, date):
        return value.isoformat()
    if column == "email":
        return normalize_email(value)
    if isinstance(value, str):
        return _clean(value)
    return value


class ChurchStore:
    """Persistence operations for churches, people, giving, forms, and messaging."""

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)

    def _connect(self) -> sqlite3.Connection:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        connection = sqlite3.connect(self.db_path)
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON")
        return connection

    def init_db(self) -> None:
        with self._connect() as connection:
            connection.executescript(
                """
                CREATE TABLE IF NOT EXISTS churches (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL UNIQUE,
                    email TEXT,
                    phone TEXT,
                    website TEXT,
                    address TEXT,
                    city TEXT,
                    state TEXT,
                    zip_code TEXT,
                    timezone TEXT NOT NULL DEFAULT 'America/New_York',
                    settings TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
                );

                CREATE TABLE IF NOT EXISTS families (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    family_name TEXT NOT NULL,
                    address TEXT,
                    city TEXT,
                    state TEXT,
                    zip_code TEXT,
                    home_phone TEXT,
                    notes TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS members (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    family_id INTEGER,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    preferred_name TEXT,
                    email TEXT,
                    mobile_phone TEXT,
                    work_phone TEXT,
                    date_of_birth TEXT,
                    gender TEXT,
                    marital_status TEXT,
                    membership_status TEXT NOT NULL DEFAULT 'Active',
                    membership_role TEXT NOT NULL DEFAULT 'Member',
                    join_date TEXT,
                    baptism_date TEXT,
                    address TEXT,
                    city TEXT,
                    state TEXT,
                    zip_code TEXT,
                    emergency_contact_name TEXT,
                    emergency_contact_phone TEXT,
                    occupation TEXT,
                    employer TEXT,
                    notes TEXT,
                    custom_fields TEXT,
                    is_head_of_household INTEGER NOT NULL DEFAULT 0,
                    is_minor INTEGER NOT NULL DEFAULT 0,
                    inactive_date TEXT,
                    inactive_reason TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE,
                    FOREIGN KEY (family_id) REFERENCES families(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS donation_categories (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    description TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS donations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    category_id INTEGER NOT NULL,
                    member_id INTEGER,
                    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                    currency TEXT NOT NULL DEFAULT 'USD',
                    status TEXT NOT NULL DEFAULT 'pending',
                    payment_method TEXT NOT NULL,
                    processor TEXT,
                    processor_transaction_id TEXT,
                    processor_customer_id TEXT,
                    processor_fee_cents INTEGER NOT NULL DEFAULT 0,
                    net_amount_cents INTEGER,
                    donor_name TEXT,
                    donor_email TEXT,
                    donor_phone TEXT,
                    is_anonymous INTEGER NOT NULL DEFAULT 0,
                    check_number TEXT,
                    note TEXT,
                    donation_date TEXT NOT NULL,
                    processed_at TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE,
                    FOREIGN KEY (category_id) REFERENCES donation_categories(id),
                    FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS donation_splits (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    donation_id INTEGER NOT NULL,
                    category_id INTEGER NOT NULL,
                    amount_cents INTEGER NOT NULL CHECK (amount_cents > 0),
                    FOREIGN KEY (donation_id) REFERENCES donations(id) ON DELETE CASCADE,
                    FOREIGN KEY (category_id) REFERENCES donation_categories(id)
                );

                CREATE TABLE IF NOT EXISTS donation_forms (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    description TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    allow_anonymous INTEGER NOT NULL DEFAULT 1,
                    require_donor_info INTEGER NOT NULL DEFAULT 1,
                    enable_fee_coverage INTEGER NOT NULL DEFAULT 0,
                    enable_multi_fund INTEGER NOT NULL DEFAULT 0,
                    primary_color TEXT NOT NULL DEFAULT '#3B82F6',
                    button_text TEXT NOT NULL DEFAULT 'Give Now',
                    thank_you_message TEXT,
                    minimum_amount_cents INTEGER NOT NULL DEFAULT 100,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (church_id, slug),
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS donation_form_categories (
                    form_id INTEGER NOT NULL,
                    category_id INTEGER NOT NULL,
                    is_default INTEGER NOT NULL DEFAULT 0,
                    sort_order INTEGER NOT NULL DEFAULT 0,
                    PRIMARY KEY (form_id, category_id),
                    FOREIGN KEY (form_id) REFERENCES donation_forms(id) ON DELETE CASCADE,
                    FOREIGN KEY (category_id) REFERENCES donation_categories(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS registration_forms (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    slug TEXT NOT NULL,
                    description TEXT,
                    form_type TEXT NOT NULL DEFAULT 'general',
                    form_schema TEXT NOT NULL,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    requires_auth INTEGER NOT NULL DEFAULT 0,
                    allow_anonymous INTEGER NOT NULL DEFAULT 1,
                    enable_progressive_recognition INTEGER NOT NULL DEFAULT 1,
                    enable_family_registration INTEGER NOT NULL DEFAULT 0,
                    enable_waitlist INTEGER NOT NULL DEFAULT 0,
                    max_submissions INTEGER,
                    current_submissions INTEGER NOT NULL DEFAULT 0,
                    requires_payment INTEGER NOT NULL DEFAULT 0,
                    payment_amount_cents INTEGER,
                    brand_color TEXT NOT NULL DEFAULT '#3B82F6',
                    confirmation_message TEXT,
                    redirect_url TEXT,
                    opens_at TEXT,
                    closes_at TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    UNIQUE (church_id, slug),
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS person_profiles (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    member_id INTEGER,
                    family_id INTEGER,
                    first_name TEXT,
                    last_name TEXT,
                    email TEXT,
                    phone TEXT,
                    date_of_birth TEXT,
                    address TEXT,
                    city TEXT,
                    state TEXT,
                    zip_code TEXT,
                    profile_status TEXT NOT NULL DEFAULT 'unverified',
                    confidence_score INTEGER NOT NULL DEFAULT 0,
                    merged_into INTEGER,
                    original_profiles TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    verified_at TEXT,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE,
                    FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE SET NULL,
                    FOREIGN KEY (family_id) REFERENCES families(id) ON DELETE SET NULL,
                    FOREIGN KEY (merged_into) REFERENCES person_profiles(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS form_submissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    form_id INTEGER,
                    person_profile_id INTEGER,
                    member_id INTEGER,
                    family_id INTEGER,
                    form_data TEXT NOT NULL,
                    submission_type TEXT NOT NULL DEFAULT 'individual',
                    submitter_email TEXT,
                    submitter_phone TEXT,
                    submitter_name TEXT,
                    status TEXT NOT NULL DEFAULT 'submitted',
                    is_verified INTEGER NOT NULL DEFAULT 0,
                    requires_review INTEGER NOT NULL DEFAULT 0,
                    submitted_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    confirmed_at TEXT,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE,
                    FOREIGN KEY (form_id) REFERENCES registration_forms(id) ON DELETE CASCADE,
                    FOREIGN KEY (person_profile_id) REFERENCES person_profiles(id) ON DELETE SET NULL,
                    FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE SET NULL,
                    FOREIGN KEY (family_id) REFERENCES families(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS family_member_submissions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    submission_id INTEGER NOT NULL,
                    member_id INTEGER,
                    first_name TEXT NOT NULL,
                    last_name TEXT NOT NULL,
                    email TEXT,
                    phone TEXT,
                    date_of_birth TEXT,
                    relationship TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (submission_id) REFERENCES form_submissions(id) ON DELETE CASCADE,
                    FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS profile_match_suggestions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    source_profile_id INTEGER NOT NULL,
                    target_profile_id INTEGER,
                    target_member_id INTEGER,
                    match_type TEXT NOT NULL,
                    confidence_score INTEGER NOT NULL,
                    match_reasons TEXT NOT NULL,
                    suggested_action TEXT NOT NULL,
                    review_status TEXT NOT NULL DEFAULT 'pending',
                    reviewed_by TEXT,
                    reviewed_at TEXT,
                    review_notes TEXT,
                    processed_at TEXT,
                    processing_result TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE,
                    FOREIGN KEY (source_profile_id) REFERENCES person_profiles(id) ON DELETE CASCADE,
                    FOREIGN KEY (target_profile_id) REFERENCES person_profiles(id) ON DELETE CASCADE,
                    FOREIGN KEY (target_member_id) REFERENCES members(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS admin_review_queue (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    item_type TEXT NOT NULL,
                    item_id INTEGER NOT NULL,
                    priority TEXT NOT NULL DEFAULT 'medium',
                    status TEXT NOT NULL DEFAULT 'pending',
                    title TEXT NOT NULL,
                    description TEXT,
                    review_data TEXT,
                    reviewed_by TEXT,
                    reviewed_at TEXT,
                    review_action TEXT,
                    review_notes TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS recognition_events (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    event_type TEXT NOT NULL,
                    profile_id INTEGER,
                    submission_id INTEGER,
                    confidence INTEGER,
                    details TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS communication_settings (
                    church_id INTEGER PRIMARY KEY,
                    email_provider TEXT NOT NULL DEFAULT 'sendgrid',
                    email_api_key TEXT,
                    from_email TEXT,
                    from_name TEXT,
                    reply_to_email TEXT,
                    sending_domain TEXT,
                    domain_verified INTEGER NOT NULL DEFAULT 0,
                    sms_provider TEXT NOT NULL DEFAULT 'twilio',
                    sms_account_sid TEXT,
                    sms_auth_token TEXT,
                    sms_phone_number TEXT,
                    enable_two_way_sms INTEGER NOT NULL DEFAULT 0,
                    sms_auto_reply TEXT,
                    sms_quiet_hours_start TEXT NOT NULL DEFAULT '21:00',
                    sms_quiet_hours_end TEXT NOT NULL DEFAULT '08:00',
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS message_templates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    name TEXT NOT NULL,
                    template_type TEXT NOT NULL,
                    subject TEXT,
                    content TEXT NOT NULL,
                    category TEXT,
                    is_active INTEGER NOT NULL DEFAULT 1,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    message_type TEXT NOT NULL CHECK (message_type IN ('email', 'sms')),
                    subject TEXT,
                    content TEXT NOT NULL,
                    recipient_type TEXT NOT NULL,
                    recipient_ids TEXT,
                    status TEXT NOT NULL DEFAULT 'draft',
                    scheduled_for TEXT,
                    sent_at TEXT,
                    total_recipients INTEGER NOT NULL DEFAULT 0,
                    delivered_count INTEGER NOT NULL DEFAULT 0,
                    failed_count INTEGER NOT NULL DEFAULT 0,
                    opened_count INTEGER NOT NULL DEFAULT 0,
                    clicked_count INTEGER NOT NULL DEFAULT 0,
                    cost_cents INTEGER NOT NULL DEFAULT 0,
                    sent_by TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS message_recipients (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    message_id INTEGER NOT NULL,
                    member_id INTEGER,
                    email TEXT,
                    phone TEXT,
                    status TEXT NOT NULL DEFAULT 'pending',
                    provider_message_id TEXT,
                    merge_data TEXT,
                    error_code TEXT,
                    error_message TEXT,
                    cost_cents INTEGER NOT NULL DEFAULT 0,
                    sent_at TEXT,
                    delivered_at TEXT,
                    opened_at TEXT,
                    first_clicked_at TEXT,
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (message_id) REFERENCES messages(id) ON DELETE CASCADE,
                    FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS sms_conversations (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    member_id INTEGER,
                    member_phone TEXT NOT NULL,
                    church_phone TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    last_message_at TEXT,
                    message_count INTEGER NOT NULL DEFAULT 0,
                    unread_count INTEGER NOT NULL DEFAULT 0,
                    auto_reply_enabled INTEGER NOT NULL DEFAULT 1,
                    last_auto_reply TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE,
                    FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE SET NULL
                );

                CREATE TABLE IF NOT EXISTS sms_messages (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    conversation_id INTEGER NOT NULL,
                    direction TEXT NOT NULL CHECK (direction IN ('inbound', 'outbound')),
                    content TEXT NOT NULL,
                    from_phone TEXT NOT NULL,
                    to_phone TEXT NOT NULL,
                    status TEXT NOT NULL,
                    message_type TEXT NOT NULL DEFAULT 'text',
                    media_urls TEXT,
                    is_auto_reply INTEGER NOT NULL DEFAULT 0,
                    provider_message_id TEXT,
                    cost_cents INTEGER NOT NULL DEFAULT 0,
                    sent_by TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (conversation_id) REFERENCES sms_conversations(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS communication_preferences (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    member_id INTEGER NOT NULL UNIQUE,
                    email_opt_in INTEGER NOT NULL DEFAULT 1,
                    sms_opt_in INTEGER NOT NULL DEFAULT 0,
                    email_consent_date TEXT,
                    sms_consent_date TEXT,
                    consent_method TEXT,
                    email_unsubscribed_at TEXT,
                    sms_unsubscribed_at TEXT,
                    unsubscribe_reason TEXT,
                    unsubscribe_feedback TEXT,
                    email_bounce_count INTEGER NOT NULL DEFAULT 0,
                    soft_bounce_count INTEGER NOT NULL DEFAULT 0,
                    last_bounce_at TEXT,
                    preferred_method TEXT NOT NULL DEFAULT 'email',
                    updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE,
                    FOREIGN KEY (member_id) REFERENCES members(id) ON DELETE CASCADE
                );

                CREATE TABLE IF NOT EXISTS communication_webhooks (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    church_id INTEGER NOT NULL,
                    provider TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    provider_event_id TEXT,
                    raw_payload TEXT NOT NULL,
                    processed INTEGER NOT NULL DEFAULT 0,
                    processed_at TEXT,
                    created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
                    FOREIGN KEY (church_id) REFERENCES churches(id) ON DELETE CASCADE
                );

                CREATE INDEX IF NOT EXISTS idx_members_church ON members (church_id);
                CREATE INDEX IF NOT EXISTS idx_members_family ON members (family_id);
                CREATE INDEX IF NOT EXISTS idx_members_email ON members (email);
                CREATE INDEX IF NOT EXISTS idx_families_church ON families (church_id);
                CREATE INDEX IF NOT EXISTS idx_donations_church_date ON donations (church_id, donation_date);
                CREATE INDEX IF NOT EXISTS idx_donations_intent ON donations (processor_transaction_id);
                CREATE INDEX IF NOT EXISTS idx_profiles_church_email ON person_profiles (church_id, email);
                CREATE INDEX IF NOT EXISTS idx_profiles_church_phone ON person_profiles (church_id, phone);
                CREATE INDEX IF NOT EXISTS idx_profiles_member ON person_profiles (member_id);
                CREATE INDEX IF NOT EXISTS idx_submissions_profile ON form_submissions (person_profile_id);
                CREATE INDEX IF NOT EXISTS idx_review_queue_status ON admin_review_queue (church_id, status);
                CREATE INDEX IF NOT EXISTS idx_recipients_provider ON message_recipients (provider_message_id);
                CREATE INDEX IF NOT EXISTS idx_conversations_phone ON sms_conversations (church_id, member_phone);
                """
            )

            _ensure_column(
                connection=connection,
                table_name="members",
                column_name="photo_url",
                definition="TEXT",
            )
            _ensure_column(
                connection=connection,
                table_name="form_submissions",
                column_name="source",
                definition="TEXT NOT NULL DEFAULT 'web'",
            )

    # ------------------------------------------------------------------
    # Churches

    def add_church(
        self,
        name: str,
        slug: str | None = None,
        email: str | None = None,
        phone: str | None = None,
        website: str | None = None,
        address: str | None = None,
        city: str | None = None,
        state: str | None = None,
        zip_code: str | None = None,
        timezone: str = "America/New_York",
    ) -> int:
        clean_name = _clean(name)
        if not clean_name:
            raise ValueError("Church name is required.")

        clean_slug = (_clean(slug) or slugify(clean_name)).lower()
        if not _SLUG_PATTERN.match(clean_slug):
            raise ValueError("Church slug may only contain lowercase letters, numbers, and dashes.")

        with self._connect() as connection:
            existing = connection.execute(
                "SELECT id FROM churches WHERE slug = ?",
                (clean_slug,),
            ).fetchone()
            if existing is not None:
                raise ValueError(f"A church with slug '{clean_slug}' already exists.")

            cursor = connection.execute(
                """
                INSERT INTO churches (
                    name, slug, email, phone, website, address, city, state, zip_code, timezone
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    clean_name,
                    clean_slug,
                    normalize_email(email),
                    _clean(phone),
                    _clean(website),
                    _clean(address),
                    _clean(city),
                    _clean(state),
                    _clean(zip_code),
                    _clean(timezone) or "America/New_York",
                ),
            )
            church_id = _lastrowid(cursor)

        self._seed_giving_defaults(church_id)
        logger.info("Created church %s (%s)", church_id, clean_slug)
        return church_id

    def _seed_giving_defaults(self, church_id: int) -> None:
        with self._connect() as connection:
            category_ids: list[int] = []
            for sort_order, (name, description) in enumerate(DEFAULT_CATEGORIES, start=1):
                cursor = connection.execute(
                    """
                    INSERT INTO donation_categories (church_id, name, description, sort_order)
                    VALUES (?, ?, ?, ?)
                    """,
                    (church_id, name, description, sort_order),
                )
                category_ids.append(_lastrowid(cursor))

            cursor = connection.execute(
                """
                INSERT INTO donation_forms (
                    church_id,
                    name,
                    slug,
                    description,
                    is_default,
                    allow_anonymous,
                    require_donor_info,
                    enable_fee_coverage,
                    enable_multi_fund,
                    primary_color,
                    button_text,
                    thank_you_message,
                    minimum_amount_cents
                )
                VALUES (?, ?, ?, ?, 1, 1, 1, 1, 1, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    "General Giving",
                    "give",
                    "Support our church with a one-time gift.",
                    "#3B82F6",
                    "Give Now",
                    "Thank you for your generous gift! Your support makes a difference in our community.",
                    100,
                ),
            )
            form_id = _lastrowid(cursor)

            for index, category_id in enumerate(category_ids):
                connection.execute(
                    """
                    INSERT INTO donation_form_categories (form_id, category_id, is_default, sort_order)
                    VALUES (?, ?, ?, ?)
                    """,
                    (form_id, category_id, 1 if index == 0 else 0, index + 1),
                )

    def get_church(self, church_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM churches WHERE id = ?",
                (church_id,),
            ).fetchone()

    def get_church_by_slug(self, slug: str) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM churches WHERE slug = ?",
                (slug.strip().lower(),),
            ).fetchone()

    def list_churches(self) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM churches ORDER BY name ASC, id ASC"
            ).fetchall()

    # ------------------------------------------------------------------
    # Families

    def add_family(
        self,
        church_id: int,
        family_name: str,
        address: str | None = None,
        city: str | None = None,
        state: str | None = None,
        zip_code: str | None = None,
        home_phone: str | None = None,
        notes: str | None = None,
    ) -> int:
        clean_name = _clean(family_name)
        if not clean_name:
            raise ValueError("Family name is required.")

        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO families (
                    church_id, family_name, address, city, state, zip_code, home_phone, notes
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    clean_name,
                    _clean(address),
                    _clean(city),
                    _clean(state),
                    _clean(zip_code),
                    _clean(home_phone),
                    _clean(notes),
                ),
            )
            return _lastrowid(cursor)

    def get_family(self, family_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM families WHERE id = ?",
                (family_id,),
            ).fetchone()

    def list_families(self, church_id: int) -> list[sqlite3.Row]:
        query = """
            SELECT
                f.*,
                COUNT(m.id) AS member_count,
                (
                    SELECT h.first_name || ' ' || h.last_name
                    FROM members h
                    WHERE h.family_id = f.id AND h.is_head_of_household = 1
                    ORDER BY h.id ASC
                    LIMIT 1
                ) AS head_of_household
            FROM families f
            LEFT JOIN members m ON m.family_id = f.id
            WHERE f.church_id = ?
            GROUP BY f.id
            ORDER BY f.family_name ASC, f.id ASC
        """
        with self._connect() as connection:
            return connection.execute(query, (church_id,)).fetchall()

    def assign_member_to_family(
        self,
        member_id: int,
        family_id: int | None,
        is_head_of_household: bool = False,
    ) -> None:
        member = self.get_member(member_id)
        if member is None:
            raise ValueError("Member record was not found.")

        if family_id is not None:
            family = self.get_family(family_id)
            if family is None:
                raise ValueError("Family record was not found.")
            if family["church_id"] != member["church_id"]:
                raise ValueError("Family belongs to a different church.")

        self.update_member(
            member_id,
            family_id=family_id,
            is_head_of_household=bool(is_head_of_household and family_id is not None),
        )

    def family_members(self, family_id: int, active_only: bool = True) -> list[sqlite3.Row]:
        where_sql = "AND membership_status = 'Active'" if active_only else ""
        query = f"""
            SELECT *
            FROM members
            WHERE family_id = ? {where_sql}
            ORDER BY
                is_head_of_household DESC,
                CASE WHEN date_of_birth IS NULL THEN 1 ELSE 0 END,
                date_of_birth ASC,
                id ASC
        """
        with self._connect() as connection:
            return connection.execute(query, (family_id,)).fetchall()

    # ------------------------------------------------------------------
    # Members

    def add_member(
        self,
        church_id: int,
        first_name: str,
        last_name: str,
        email: str | None = None,
        mobile_phone: str | None = None,
        membership_status: str = "Active",
        membership_role: str = "Member",
        family_id: int | None = None,
        profile_status: str = "verified",
        profile_confidence: int = 100,
        profile_id: int | None = None,
        **details: Any,
    ) -> int:
        clean_first = _clean(first_name)
        clean_last = _clean(last_name)
        if not clean_first or not clean_last:
            raise ValueError("Members require first and last name.")
        if membership_status not in MEMBERSHIP_STATUSES:
            raise ValueError(
                "Membership status must be one of: " + ", ".join(MEMBERSHIP_STATUSES) + "."
            )

        unknown = set(details) - set(_MEMBER_COLUMNS)
        if unknown:
            raise ValueError("Unknown member fields: " + ", ".join(sorted(unknown)) + ".")

        values: dict[str, Any] = {
            column: _member_value(column, value) for column, value in details.items()
        }
        values.update(
            {
                "church_id": church_id,
                "first_name": clean_first,
                "last_name": clean_last,
                "email": normalize_email(email),
                "mobile_phone": _clean(mobile_phone),
                "membership_status": membership_status,
                "membership_role": _clean(membership_role) or "Member",
                "family_id": family_id,
            }
        )

        columns = list(values.keys())
        placeholders = ", ".join("?" for _ in columns)
        with self._connect() as connection:
            cursor = connection.execute(
                f"INSERT INTO members ({', '.join(columns)}) VALUES ({placeholders})",
                [values[column] for column in columns],
            )
            member_id = _lastrowid(cursor)

            if profile_id is not None:
                attached = connection.execute(
                    """
                    UPDATE person_profiles
                    SET member_id = ?, updated_at = ?
                    WHERE id = ? AND church_id = ? AND member_id IS NULL
                    """,
                    (member_id, _timestamp(), profile_id, church_id),
                ).rowcount
                if attached == 0:
                    raise ValueError("Profile record was not found.")
            else:
                connection.execute(
                    """
                    INSERT INTO person_profiles (
                        church_id,
                        member_id,
                        family_id,
                        first_name,
                        last_name,
                        email,
                        phone,
                        date_of_birth,
                        address,
                        city,
                        state,
                        zip_code,
                        profile_status,
                        confidence_score,
                        verified_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        church_id,
                        member_id,
                        family_id,
                        clean_first,
                        clean_last,
                        values["email"],
                        normalize_phone(values["mobile_phone"]),
                        values.get("date_of_birth"),
                        values.get("address"),
                        values.get("city"),
                        values.get("state"),
                        values.get("zip_code"),
                        profile_status,
                        max(0, min(profile_confidence, 100)),
                        _timestamp() if profile_status == "verified" else None,
                    ),
                )
            connection.execute(
                """
                INSERT INTO communication_preferences (church_id, member_id)
                VALUES (?, ?)
                """,
                (church_id, member_id),
            )
            return member_id

    def get_member(self, member_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT m.*, f.family_name
                FROM members m
                LEFT JOIN families f ON f.id = m.family_id
                WHERE m.id = ?
                """,
                (member_id,),
            ).fetchone()

    def update_member(self, member_id: int, **fields: Any) -> None:
        if not fields:
            return

        unknown = set(fields) - set(_MEMBER_COLUMNS)
        if unknown:
            raise ValueError("Unknown member fields: " + ", ".join(sorted(unknown)) + ".")

        values = {column: _member_value(column, value) for column, value in fields.items()}
        for required in ("first_name", "last_name"):
            if required in values and not values[required]:
                raise ValueError("Members require first and last name.")
        status = values.get("membership_status")
        if status is not None and status not in MEMBERSHIP_STATUSES:
            raise ValueError(
                "Membership status must be one of: " + ", ".join(MEMBERSHIP_STATUSES) + "."
            )

        assignments = ", ".join(f"{column} = ?" for column in values)
        parameters = [*values.values(), _timestamp(), member_id]

        profile_values = {
            _PROFILE_SYNC_COLUMNS[column]: value
            for column, value in values.items()
            if column in _PROFILE_SYNC_COLUMNS
        }
        if "phone" in profile_values:
            profile_values["phone"] = normalize_phone(profile_values["phone"])

        with self._connect() as connection:
            cursor = connection.execute(
                f"UPDATE members SET {assignments}, updated_at = ? WHERE id = ?",
                parameters,
            )
            if cursor.rowcount == 0:
                raise ValueError("Member record was not found.")

            if profile_values:
                profile_assignments = ", ".join(f"{column} = ?" for column in profile_values)
                connection.execute(
                    f"""
                    UPDATE person_profiles
                    SET {profile_assignments}, updated_at = ?
                    WHERE member_id = ? AND profile_status IN ('verified', 'unverified')
                    """,
                    [*profile_values.values(), _timestamp(), member_id],
                )

    def delete_member(self, member_id: int) -> None:
        with self._connect() as connection:
            connection.execute("DELETE FROM person_profiles WHERE member_id = ?", (member_id,))
            connection.execute("DELETE FROM members WHERE id = ?", (member_id,))

    def set_custom_field(self, member_id: int, key: str, value: Any) -> None:
        clean_key = _clean(key)
        if not clean_key:
            raise ValueError("Custom field name is required.")

        member = self.get_member(member_id)
        if member is None:
            raise ValueError("Member record was not found.")

        custom_fields = json_field(member["custom_fields"], {})
        custom_fields[clean_key] = value
        with self._connect() as connection:
            connection.execute(
                "UPDATE members SET custom_fields = ?, updated_at = ? WHERE id = ?",
                (_json_dumps(custom_fields), _timestamp(), member_id),
            )

    def remove_custom_field(self, member_id: int, key: str) -> None:
        member = self.get_member(member_id)
        if member is None:
            raise ValueError("Member record was not found.")

        custom_fields = json_field(member["custom_fields"], {})
        custom_fields.pop(key, None)
        with self._connect() as connection:
            connection.execute(
                "UPDATE members SET custom_fields = ?, updated_at = ? WHERE id = ?",
                (_json_dumps(custom_fields) if custom_fields else None, _timestamp(), member_id),
            )

    def list_members(
        self,
        church_id: int,
        search_term: str = "",
        status: str | None = None,
        role: str | None = None,
        smart_search: bool = False,
    ) -> list[sqlite3.Row]:
        cleaned_search = search_term.strip()

        where_clauses = ["m.church_id = ?"]
        parameters: list[Any] = [church_id]
        if status:
            where_clauses.append("m.membership_status = ?")
            parameters.append(status)
        if role:
            where_clauses.append("m.membership_role = ?")
            parameters.append(role)

        if cleaned_search and not smart_search:
            wildcard = f"%{cleaned_search}%"
            where_clauses.append(
                """
                (
                    m.first_name LIKE ? OR
                    m.last_name LIKE ? OR
                    COALESCE(m.preferred_name, '') LIKE ? OR
                    (m.first_name || ' ' || m.last_name) LIKE ? OR
                    COALESCE(m.email, '') LIKE ? OR
                    COALESCE(m.mobile_phone, '') LIKE ?
                )
                """
            )
            parameters.extend([wildcard] * 6)

        query = f"""
            SELECT
                m.*,
                f.family_name,
                (
                    SELECT COALESCE(SUM(dn.amount_cents), 0)
                    FROM donations dn
                    WHERE dn.member_id = m.id AND dn.status = 'completed'
                ) AS total_given_cents
            FROM members m
            LEFT JOIN families f ON f.id = m.family_id
            WHERE {' AND '.join(where_clauses)}
            ORDER BY m.last_name ASC, m.first_name ASC, m.id ASC
        """

        with self._connect() as connection:
            rows = connection.execute(query, parameters).fetchall()

        if not cleaned_search or not smart_search:
            return rows

        scored_rows: list[tuple[float, sqlite3.Row]] = []
        for row in rows:
            score = _member_search_score(row, cleaned_search)
            if score >= 55:
                scored_rows.append((score, row))

        scored_rows.sort(key=lambda scored: (scored[0], scored[1]["id"]), reverse=True)
        return [row for _, row in scored_rows]

    def convert_visitor_to_member(self, member_id: int, today: date | None = None) -> None:
        self.update_member(
            member_id,
            membership_status="Active",
            membership_role="Member",
            join_date=today or date.today(),
        )

    def church_stats(self, church_id: int) -> dict[str, int]:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT
                    COUNT(*) AS total,
                    COALESCE(SUM(CASE WHEN membership_status = 'Active' THEN 1 ELSE 0 END), 0) AS active,
                    COALESCE(SUM(CASE WHEN membership_status = 'Visitor' THEN 1 ELSE 0 END), 0) AS visitors,
                    COALESCE(SUM(CASE WHEN membership_status = 'Inactive' THEN 1 ELSE 0 END), 0) AS inactive
                FROM members
                WHERE church_id = ?
                """,
                (church_id,),
            ).fetchone()

        return {
            "total_members": int(row["total"]),
            "active_members": int(row["active"]),
            "visitors": int(row["visitors"]),
            "inactive_members": int(row["inactive"]),
        }

    def search_potential_matches(
        self,
        church_id: int,
        email: str | None = None,
        phone: str | None = None,
        first_name: str | None = None,
        last_name: str | None = None,
        limit: int = 10,
    ) -> list[sqlite3.Row]:
        where_clauses = ["m.church_id = ?"]
        parameters: list[Any] = [church_id]

        clean_email = _clean(email)
        clean_phone = _clean(phone)
        clean_first = _clean(first_name)
        clean_last = _clean(last_name)

        if clean_email:
            where_clauses.append("COALESCE(m.email, '') LIKE ?")
            parameters.append(f"%{clean_email.lower()}%")
        if clean_phone:
            where_clauses.append("COALESCE(m.mobile_phone, '') LIKE ?")
            parameters.append(f"%{clean_phone}%")
        if clean_first and clean_last:
            where_clauses.append("m.first_name LIKE ? AND m.last_name LIKE ?")
            parameters.extend([f"%{clean_first}%", f"%{clean_last}%"])

        query = f"""
            SELECT m.*, f.family_name
            FROM members m
            LEFT JOIN families f ON f.id = m.family_id
            WHERE {' AND '.join(where_clauses)}
            ORDER BY m.updated_at DESC, m.id DESC
            LIMIT ?
        """
        parameters.append(limit)

        with self._connect() as connection:
            return connection.execute(query, parameters).fetchall()

    def merge_members(self, primary_id: int, duplicate_id: int, today: date | None = None) -> None:
        if primary_id == duplicate_id:
            raise ValueError("Cannot merge a member record into itself.")

        primary = self.get_member(primary_id)
        duplicate = self.get_member(duplicate_id)
        if primary is None or duplicate is None:
            raise ValueError("One or both member records were not found.")
        if primary["church_id"] != duplicate["church_id"]:
            raise ValueError("Members from different churches cannot be merged.")

        backfill: dict[str, Any] = {}
        for column in ("email", "mobile_phone", "date_of_birth"):
            if not primary[column] and duplicate[column]:
                backfill[column] = duplicate[column]
        if backfill:
            self.update_member(primary_id, **backfill)

        self.update_member(
            duplicate_id,
            membership_status="Merged",
            inactive_date=today or date.today(),
            inactive_reason=f"Merged into profile {primary_id}",
        )

        primary_profile = self.profile_for_member(primary_id)
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE person_profiles
                SET profile_status = 'merged', merged_into = ?, updated_at = ?
                WHERE member_id = ? AND profile_status != 'merged'
                """,
                (primary_profile["id"] if primary_profile is not None else None, _timestamp(), duplicate_id),
            )
        logger.info("Merged member %s into %s", duplicate_id, primary_id)

    def create_or_update_member_from_submission(
        self,
        church_id: int,
        first_name: str,
        last_name: str,
        email: str | None = None,
        phone: str | None = None,
        date_of_birth: str | None = None,
        existing_member_id: int | None = None,
        profile_id: int | None = None,
    ) -> int:
        """Create a Visitor from form answers, or refresh a known member without touching status."""

        if existing_member_id is not None:
            existing = self.get_member(existing_member_id)
            if existing is None or existing["church_id"] != church_id:
                raise ValueError("Member record was not found.")

            updates: dict[str, Any] = {"first_name": first_name, "last_name": last_name}
            if _clean(email):
                updates["email"] = email
            if _clean(phone):
                updates["mobile_phone"] = phone
            if _clean(date_of_birth):
                updates["date_of_birth"] = date_of_birth
            self.update_member(existing_member_id, **updates)
            return existing_member_id

        return self.add_member(
            church_id=church_id,
            first_name=first_name,
            last_name=last_name,
            email=email,
            mobile_phone=phone,
            membership_status="Visitor",
            membership_role="Visitor",
            date_of_birth=_clean(date_of_birth),
            profile_status="unverified",
            profile_confidence=0,
            profile_id=profile_id,
        )

    # ------------------------------------------------------------------
    # Giving

    def add_category(
        self,
        church_id: int,
        name: str,
        description: str | None = None,
        sort_order: int | None = None,
    ) -> int:
        clean_name = _clean(name)
        if not clean_name:
            raise ValueError("Category name is required.")

        with self._connect() as connection:
            duplicate = connection.execute(
                "SELECT id FROM donation_categories WHERE church_id = ? AND LOWER(name) = LOWER(?)",
                (church_id, clean_name),
            ).fetchone()
            if duplicate is not None:
                raise ValueError(f"Category '{clean_name}' already exists.")

            if sort_order is None:
                sort_order = int(
                    connection.execute(
                        "SELECT COALESCE(MAX(sort_order), 0) + 1 AS next FROM donation_categories WHERE church_id = ?",
                        (church_id,),
                    ).fetchone()["next"]
                )

            cursor = connection.execute(
                """
                INSERT INTO donation_categories (church_id, name, description, sort_order)
                VALUES (?, ?, ?, ?)
                """,
                (church_id, clean_name, _clean(description), sort_order),
            )
            return _lastrowid(cursor)

    def list_categories(self, church_id: int, active_only: bool = True) -> list[sqlite3.Row]:
        query = "SELECT * FROM donation_categories WHERE church_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY sort_order ASC, id ASC"
        with self._connect() as connection:
            return connection.execute(query, (church_id,)).fetchall()

    def get_category(self, category_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM donation_categories WHERE id = ?",
                (category_id,),
            ).fetchone()

    def get_donation_form(self, church_slug: str, form_slug: str = "give") -> dict[str, Any] | None:
        with self._connect() as connection:
            form = connection.execute(
                """
                SELECT
                    df.*,
                    c.name AS church_name,
                    c.slug AS church_slug,
                    c.email AS church_email,
                    c.phone AS church_phone,
                    c.website AS church_website
                FROM donation_forms df
                JOIN churches c ON c.id = df.church_id
                WHERE c.slug = ? AND df.slug = ? AND df.is_active = 1
                """,
                (church_slug.strip().lower(), form_slug.strip().lower()),
            ).fetchone()
            if form is None:
                return None

            categories = connection.execute(
                """
                SELECT dc.*, dfc.is_default
                FROM donation_form_categories dfc
                JOIN donation_categories dc ON dc.id = dfc.category_id
                WHERE dfc.form_id = ? AND dc.is_active = 1
                ORDER BY dc.sort_order ASC, dc.id ASC
                """,
                (form["id"],),
            ).fetchall()

        payload = dict(form)
        payload["categories"] = [dict(row) for row in categories]
        return payload

    def insert_donation(
        self,
        church_id: int,
        category_id: int,
        amount_cents: int,
        payment_method: str,
        status: str,
        donation_date: date,
        donor_name: str | None = None,
        donor_email: str | None = None,
        donor_phone: str | None = None,
        member_id: int | None = None,
        is_anonymous: bool = False,
        check_number: str | None = None,
        note: str | None = None,
        processor: str | None = None,
        processor_transaction_id: str | None = None,
        processor_fee_cents: int = 0,
        processed_at: datetime | None = None,
        currency: str = "USD",
    ) -> int:
        if amount_cents <= 0:
            raise ValueError("Donation amount must be greater than zero.")
        if status not in DONATION_STATUSES:
            raise ValueError("Donation status is not recognized.")
        if payment_method not in PAYMENT_METHODS:
            raise ValueError("Payment method must be one of: " + ", ".join(PAYMENT_METHODS) + ".")

        category = self.get_category(category_id)
        if category is None or category["church_id"] != church_id:
            raise ValueError("Donation category was not found.")

        if is_anonymous:
            donor_name = None
            donor_email = None
            donor_phone = None
            member_id = None

        net_amount = amount_cents - processor_fee_cents if status == "completed" else None

        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO donations (
                    church_id,
                    category_id,
                    member_id,
                    amount_cents,
                    currency,
                    status,
                    payment_method,
                    processor,
                    processor_transaction_id,
                    processor_fee_cents,
                    net_amount_cents,
                    donor_name,
                    donor_email,
                    donor_phone,
                    is_anonymous,
                    check_number,
                    note,
                    donation_date,
                    processed_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    category_id,
                    member_id,
                    amount_cents,
                    (currency or "USD").strip().upper(),
                    status,
                    payment_method,
                    _clean(processor),
                    _clean(processor_transaction_id),
                    processor_fee_cents,
                    net_amount,
                    _clean(donor_name),
                    normalize_email(donor_email),
                    _clean(donor_phone),
                    1 if is_anonymous else 0,
                    _clean(check_number),
                    _clean(note),
                    donation_date.isoformat(),
                    _timestamp(processed_at) if processed_at else None,
                ),
            )
            return _lastrowid(cursor)

    def add_manual_donation(
        self,
        church_id: int,
        category_id: int,
        amount_cents: int,
        payment_method: str,
        donor_name: str | None,
        donor_email: str | None = None,
        donor_phone: str | None = None,
        check_number: str | None = None,
        is_anonymous: bool = False,
        note: str | None = None,
        donation_date: date | None = None,
        member_id: int | None = None,
    ) -> int:
        if amount_cents < 1:
            raise ValueError("Donation amount must be at least $0.01.")
        if not is_anonymous and not _clean(donor_name):
            raise ValueError("Donor name is required for non-anonymous donations.")
        if payment_method == "check" and not _clean(check_number):
            raise ValueError("Check number is required for check donations.")

        donation_id = self.insert_donation(
            church_id=church_id,
            category_id=category_id,
            amount_cents=amount_cents,
            payment_method=payment_method,
            status="completed",
            donation_date=donation_date or date.today(),
            donor_name=donor_name,
            donor_email=donor_email,
            donor_phone=donor_phone,
            member_id=member_id,
            is_anonymous=is_anonymous,
            check_number=check_number if payment_method == "check" else None,
            note=note,
            processor="manual",
            processed_at=datetime.now(),
        )
        logger.info("Recorded manual %s donation %s for church %s", payment_method, donation_id, church_id)
        return donation_id

    def get_donation(self, donation_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM donations WHERE id = ?",
                (donation_id,),
            ).fetchone()

    def get_donation_by_intent(self, payment_intent_id: str) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM donations WHERE processor_transaction_id = ?",
                (payment_intent_id,),
            ).fetchone()

    def update_donation_payment(
        self,
        payment_intent_id: str,
        status: str,
        processor_fee_cents: int | None = None,
        processor_customer_id: str | None = None,
        processed_at: datetime | None = None,
    ) -> bool:
        if status not in DONATION_STATUSES:
            raise ValueError("Donation status is not recognized.")

        with self._connect() as connection:
            if status == "completed":
                fee = processor_fee_cents or 0
                cursor = connection.execute(
                    """
                    UPDATE donations
                    SET
                        status = ?,
                        processor_fee_cents = ?,
                        net_amount_cents = amount_cents - ?,
                        processor_customer_id = COALESCE(?, processor_customer_id),
                        processed_at = ?,
                        updated_at = ?
                    WHERE processor_transaction_id = ?
                    """,
                    (
                        status,
                        fee,
                        fee,
                        _clean(processor_customer_id),
                        _timestamp(processed_at),
                        _timestamp(),
                        payment_intent_id,
                    ),
                )
            else:
                cursor = connection.execute(
                    """
                    UPDATE donations
                    SET status = ?, updated_at = ?
                    WHERE processor_transaction_id = ?
                    """,
                    (status, _timestamp(), payment_intent_id),
                )
            return cursor.rowcount > 0

    def list_donations(
        self,
        church_id: int,
        status: str | None = None,
        category_id: int | None = None,
        member_id: int | None = None,
        month_start: date | None = None,
        month_end: date | None = None,
        limit: int = 500,
    ) -> list[sqlite3.Row]:
        where_clauses = ["dn.church_id = ?"]
        parameters: list[Any] = [church_id]

        if status is not None:
            where_clauses.append("dn.status = ?")
            parameters.append(status)
        if category_id is not None:
            where_clauses.append("dn.category_id = ?")
            parameters.append(category_id)
        if member_id is not None:
            where_clauses.append("dn.member_id = ?")
            parameters.append(member_id)
        if month_start is not None:
            where_clauses.append("dn.donation_date >= ?")
            parameters.append(month_start.isoformat())
        if month_end is not None:
            where_clauses.append("dn.donation_date <= ?")
            parameters.append(month_end.isoformat())

        query = f"""
            SELECT
                dn.*,
                dc.name AS category_name,
                (
                    SELECT COUNT(*)
                    FROM donation_splits ds
                    WHERE ds.donation_id = dn.id
                ) AS split_count
            FROM donations dn
            JOIN donation_categories dc ON dc.id = dn.category_id
            WHERE {' AND '.join(where_clauses)}
            ORDER BY dn.created_at DESC, dn.id DESC
            LIMIT ?
        """
        parameters.append(limit)

        with self._connect() as connection:
            return connection.execute(query, parameters).fetchall()

    def add_donation_split(self, donation_id: int, category_id: int, amount_cents: int) -> int:
        if amount_cents <= 0:
            raise ValueError("Split amount must be greater than zero.")

        donation = self.get_donation(donation_id)
        if donation is None:
            raise ValueError("Donation record was not found.")
        category = self.get_category(category_id)
        if category is None or category["church_id"] != donation["church_id"]:
            raise ValueError("Donation category was not found.")

        with self._connect() as connection:
            allocated = connection.execute(
                "SELECT COALESCE(SUM(amount_cents), 0) AS total FROM donation_splits WHERE donation_id = ?",
                (donation_id,),
            ).fetchone()["total"]
            if int(allocated) + amount_cents > int(donation["amount_cents"]):
                raise ValueError("Split amounts cannot exceed the donation total.")

            cursor = connection.execute(
                """
                INSERT INTO donation_splits (donation_id, category_id, amount_cents)
                VALUES (?, ?, ?)
                """,
                (donation_id, category_id, amount_cents),
            )
            return _lastrowid(cursor)

    def list_donation_splits(self, donation_id: int) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT ds.*, dc.name AS category_name
                FROM donation_splits ds
                JOIN donation_categories dc ON dc.id = ds.category_id
                WHERE ds.donation_id = ?
                ORDER BY ds.id ASC
                """,
                (donation_id,),
            ).fetchall()

    def giving_stats(self, church_id: int, today: date | None = None) -> dict[str, int]:
        report_date = today or date.today()
        month = month_bounds(report_date)
        year_start = date(report_date.year, 1, 1)

        with self._connect() as connection:
            ytd = connection.execute(
                """
                SELECT
                    COUNT(*) AS count,
                    COALESCE(SUM(amount_cents), 0) AS total,
                    COALESCE(SUM(processor_fee_cents), 0) AS fees
                FROM donations
                WHERE church_id = ? AND status = 'completed' AND donation_date >= ?
                """,
                (church_id, year_start.isoformat()),
            ).fetchone()
            month_row = connection.execute(
                """
                SELECT COUNT(*) AS count, COALESCE(SUM(amount_cents), 0) AS total
                FROM donations
                WHERE church_id = ? AND status = 'completed'
                    AND donation_date >= ? AND donation_date <= ?
                """,
                (church_id, month.start.isoformat(), month.end.isoformat()),
            ).fetchone()
            pending = connection.execute(
                "SELECT COUNT(*) AS count FROM donations WHERE church_id = ? AND status = 'pending'",
                (church_id,),
            ).fetchone()
            donors = connection.execute(
                """
                SELECT COUNT(DISTINCT COALESCE(CAST(member_id AS TEXT), donor_email, donor_name)) AS count
                FROM donations
                WHERE church_id = ? AND status = 'completed' AND is_anonymous = 0
                    AND donation_date >= ?
                """,
                (church_id, year_start.isoformat()),
            ).fetchone()

        return {
            "ytd_total_cents": int(ytd["total"]),
            "ytd_gift_count": int(ytd["count"]),
            "ytd_fees_cents": int(ytd["fees"]),
            "month_total_cents": int(month_row["total"]),
            "month_gift_count": int(month_row["count"]),
            "pending_count": int(pending["count"]),
            "ytd_donor_count": int(donors["count"]),
        }

    def donations_by_month(
        self,
        church_id: int,
        months: int = 12,
        today: date | None = None,
    ) -> list[dict[str, Any]]:
        if months <= 0:
            return []

        anchor = (today or date.today()).replace(day=1)
        start_month = _month_shift(anchor, months - 1)

        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT
                    substr(donation_date, 1, 7) AS month_key,
                    COALESCE(SUM(amount_cents), 0) AS total_cents
                FROM donations
                WHERE church_id = ? AND status = 'completed' AND donation_date >= ?
                GROUP BY month_key
                ORDER BY month_key ASC
                """,
                (church_id, start_month.isoformat()),
            ).fetchall()

        totals = {row["month_key"]: int(row["total_cents"]) for row in rows}
        output: list[dict[str, Any]] = []
        for month_offset in range(months - 1, -1, -1):
            key = _month_shift(anchor, month_offset).strftime("%Y-%m")
            output.append({"month_key": key, "total_cents": totals.get(key, 0)})
        return output

    def giving_by_category(self, church_id: int, year: int | None = None) -> list[sqlite3.Row]:
        report_year = year or date.today().year
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT
                    dc.id AS category_id,
                    dc.name AS category_name,
                    COUNT(dn.id) AS gift_count,
                    COALESCE(SUM(dn.amount_cents), 0) AS total_cents
                FROM donation_categories dc
                LEFT JOIN donations dn
                    ON dn.category_id = dc.id
                    AND dn.status = 'completed'
                    AND substr(dn.donation_date, 1, 4) = ?
                WHERE dc.church_id = ?
                GROUP BY dc.id
                ORDER BY dc.sort_order ASC, dc.id ASC
                """,
                (str(report_year), church_id),
            ).fetchall()

    # ------------------------------------------------------------------
    # Registration forms and submissions

    def add_registration_form(
        self,
        church_id: int,
        name: str,
        form_schema: dict[str, Any],
        form_type: str = "general",
        slug: str | None = None,
        description: str | None = None,
        settings: dict[str, Any] | None = None,
        opens_at: datetime | None = None,
        closes_at: datetime | None = None,
    ) -> int:
        clean_name = _clean(name)
        if not clean_name:
            raise ValueError("Form name is required.")
        if form_type not in {"general", "registration"}:
            raise ValueError("Form type must be general or registration.")
        if opens_at and closes_at and closes_at <= opens_at:
            raise ValueError("Form closing time must be after its opening time.")

        options = settings or {}
        clean_slug = _clean(slug) or slugify(clean_name)

        with self._connect() as connection:
            existing = connection.execute(
                "SELECT id FROM registration_forms WHERE church_id = ? AND slug = ?",
                (church_id, clean_slug),
            ).fetchone()
            if existing is not None:
                raise ValueError(f"A form with slug '{clean_slug}' already exists.")

            cursor = connection.execute(
                """
                INSERT INTO registration_forms (
                    church_id,
                    name,
                    slug,
                    description,
                    form_type,
                    form_schema,
                    requires_auth,
                    allow_anonymous,
                    enable_progressive_recognition,
                    enable_family_registration,
                    enable_waitlist,
                    max_submissions,
                    requires_payment,
                    payment_amount_cents,
                    brand_color,
                    confirmation_message,
                    redirect_url,
                    opens_at,
                    closes_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    clean_name,
                    clean_slug,
                    _clean(description),
                    form_type,
                    _json_dumps(form_schema),
                    1 if options.get("requires_auth") else 0,
                    1 if options.get("allow_anonymous", True) else 0,
                    1 if options.get("enable_progressive_recognition", True) else 0,
                    1 if options.get("enable_family_registration") else 0,
                    1 if options.get("enable_waitlist") else 0,
                    options.get("max_capacity"),
                    1 if options.get("requires_payment") else 0,
                    options.get("payment_amount_cents"),
                    options.get("brand_color") or "#3B82F6",
                    _clean(options.get("confirmation_message")),
                    _clean(options.get("redirect_url")),
                    _timestamp(opens_at) if opens_at else None,
                    _timestamp(closes_at) if closes_at else None,
                ),
            )
            return _lastrowid(cursor)

    def get_registration_form(self, form_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM registration_forms WHERE id = ?",
                (form_id,),
            ).fetchone()

    def list_registration_forms(self, church_id: int, active_only: bool = False) -> list[sqlite3.Row]:
        query = "SELECT * FROM registration_forms WHERE church_id = ?"
        if active_only:
            query += " AND is_active = 1"
        query += " ORDER BY created_at DESC, id DESC"
        with self._connect() as connection:
            return connection.execute(query, (church_id,)).fetchall()

    def set_form_active(self, form_id: int, is_active: bool) -> None:
        with self._connect() as connection:
            connection.execute(
                "UPDATE registration_forms SET is_active = ?, updated_at = ? WHERE id = ?",
                (1 if is_active else 0, _timestamp(), form_id),
            )

    def add_form_submission(
        self,
        church_id: int,
        form_id: int | None,
        form_data: dict[str, Any],
        member_id: int | None,
        person_profile_id: int | None,
        family_id: int | None = None,
        submission_type: str = "individual",
        is_verified: bool = False,
        requires_review: bool = False,
        submitted_at: datetime | None = None,
        status: str = "submitted",
    ) -> int:
        first_name = _clean(str(form_data.get("first_name") or ""))
        last_name = _clean(str(form_data.get("last_name") or ""))
        submitter_name = " ".join(part for part in (first_name, last_name) if part) or None

        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO form_submissions (
                    church_id,
                    form_id,
                    person_profile_id,
                    member_id,
                    family_id,
                    form_data,
                    submission_type,
                    submitter_email,
                    submitter_phone,
                    submitter_name,
                    status,
                    is_verified,
                    requires_review,
                    submitted_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    form_id,
                    person_profile_id,
                    member_id,
                    family_id,
                    _json_dumps(form_data),
                    submission_type,
                    normalize_email(form_data.get("email")),
                    _clean(form_data.get("phone")),
                    submitter_name,
                    status,
                    1 if is_verified else 0,
                    1 if requires_review else 0,
                    _timestamp(submitted_at),
                ),
            )
            submission_id = _lastrowid(cursor)

            if form_id is not None and status != "waitlisted":
                connection.execute(
                    """
                    UPDATE registration_forms
                    SET current_submissions = current_submissions + 1, updated_at = ?
                    WHERE id = ?
                    """,
                    (_timestamp(), form_id),
                )
            return submission_id

    def add_family_member_submission(
        self,
        submission_id: int,
        first_name: str,
        last_name: str,
        member_id: int | None = None,
        email: str | None = None,
        phone: str | None = None,
        date_of_birth: str | None = None,
        relationship: str | None = None,
    ) -> int:
        clean_first = _clean(first_name)
        clean_last = _clean(last_name)
        if not clean_first or not clean_last:
            raise ValueError("Family members require first and last name.")

        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO family_member_submissions (
                    submission_id, member_id, first_name, last_name, email, phone, date_of_birth, relationship
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    submission_id,
                    member_id,
                    clean_first,
                    clean_last,
                    normalize_email(email),
                    _clean(phone),
                    _clean(date_of_birth),
                    _clean(relationship),
                ),
            )
            return _lastrowid(cursor)

    def get_submission(self, submission_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM form_submissions WHERE id = ?",
                (submission_id,),
            ).fetchone()

    def list_submissions(
        self,
        church_id: int,
        form_id: int | None = None,
        limit: int = 200,
    ) -> list[sqlite3.Row]:
        where_clauses = ["s.church_id = ?"]
        parameters: list[Any] = [church_id]
        if form_id is not None:
            where_clauses.append("s.form_id = ?")
            parameters.append(form_id)

        query = f"""
            SELECT
                s.*,
                rf.name AS form_name,
                p.profile_status,
                p.confidence_score,
                (
                    SELECT COUNT(*)
                    FROM family_member_submissions fms
                    WHERE fms.submission_id = s.id
                ) AS family_member_count
            FROM form_submissions s
            LEFT JOIN registration_forms rf ON rf.id = s.form_id
            LEFT JOIN person_profiles p ON p.id = s.person_profile_id
            WHERE {' AND '.join(where_clauses)}
            ORDER BY s.submitted_at DESC, s.id DESC
            LIMIT ?
        """
        parameters.append(limit)
        with self._connect() as connection:
            return connection.execute(query, parameters).fetchall()

    # ------------------------------------------------------------------
    # Person profiles and recognition

    def add_person_profile(
        self,
        church_id: int,
        first_name: str | None,
        last_name: str | None,
        email: str | None = None,
        phone: str | None = None,
        member_id: int | None = None,
        family_id: int | None = None,
        address: str | None = None,
        city: str | None = None,
        state: str | None = None,
        zip_code: str | None = None,
        date_of_birth: str | None = None,
        profile_status: str = "unverified",
        confidence_score: int = 0,
    ) -> int:
        if profile_status not in PROFILE_STATUSES:
            raise ValueError("Profile status is not recognized.")

        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO person_profiles (
                    church_id,
                    member_id,
                    family_id,
                    first_name,
                    last_name,
                    email,
                    phone,
                    date_of_birth,
                    address,
                    city,
                    state,
                    zip_code,
                    profile_status,
                    confidence_score,
                    verified_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    member_id,
                    family_id,
                    _clean(first_name),
                    _clean(last_name),
                    normalize_email(email),
                    normalize_phone(phone),
                    _clean(date_of_birth),
                    _clean(address),
                    _clean(city),
                    _clean(state),
                    _clean(zip_code),
                    profile_status,
                    max(0, min(confidence_score, 100)),
                    _timestamp() if profile_status == "verified" else None,
                ),
            )
            return _lastrowid(cursor)

    def get_profile(self, profile_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM person_profiles WHERE id = ?",
                (profile_id,),
            ).fetchone()

    def profile_for_member(self, member_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT *
                FROM person_profiles
                WHERE member_id = ? AND profile_status IN ('verified', 'unverified')
                ORDER BY profile_status = 'verified' DESC, id ASC
                LIMIT 1
                """,
                (member_id,),
            ).fetchone()

    def list_profiles(self, church_id: int, status: str | None = None) -> list[sqlite3.Row]:
        query = "SELECT * FROM person_profiles WHERE church_id = ?"
        parameters: list[Any] = [church_id]
        if status:
            query += " AND profile_status = ?"
            parameters.append(status)
        query += " ORDER BY updated_at DESC, id DESC"
        with self._connect() as connection:
            return connection.execute(query, parameters).fetchall()

    def recognition_candidates(
        self,
        church_id: int,
        email: str | None,
        phone: str | None,
        first_name: str | None,
        last_name: str | None,
        limit: int,
    ) -> list[sqlite3.Row]:
        base_select = """
            SELECT
                p.*,
                m.marital_status AS member_marital_status,
                m.membership_status AS member_status,
                f.family_name
            FROM person_profiles p
            LEFT JOIN members m ON m.id = p.member_id
            LEFT JOIN families f ON f.id = p.family_id
            WHERE p.church_id = ? AND p.profile_status IN ('verified', 'unverified')
        """

        candidates: dict[int, sqlite3.Row] = {}

        def collect(rows: Iterable[sqlite3.Row]) -> None:
            for row in rows:
                candidates.setdefault(int(row["id"]), row)

        with self._connect() as connection:
            if email:
                collect(
                    connection.execute(
                        f"{base_select} AND p.email = ? LIMIT ?",
                        (church_id, email.strip().lower(), limit),
                    ).fetchall()
                )

            normalized = normalize_phone(phone)
            if normalized:
                collect(
                    connection.execute(
                        f"{base_select} AND p.phone = ? LIMIT ?",
                        (church_id, normalized, limit),
                    ).fetchall()
                )

            name_clauses: list[str] = []
            name_parameters: list[Any] = []
            if first_name:
                name_clauses.append("p.first_name LIKE ?")
                name_parameters.append(f"%{first_name}%")
            if last_name:
                name_clauses.append("p.last_name LIKE ?")
                name_parameters.append(f"%{last_name}%")

            if len(candidates) < 3 and name_clauses:
                collect(
                    connection.execute(
                        f"{base_select} AND ({' OR '.join(name_clauses)}) LIMIT ?",
                        (church_id, *name_parameters, limit),
                    ).fetchall()
                )

        return list(candidates.values())[:limit]

    def has_previous_submission(self, church_id: int, profile_id: int) -> bool:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT 1
                FROM form_submissions
                WHERE church_id = ? AND person_profile_id = ?
                LIMIT 1
                """,
                (church_id, profile_id),
            ).fetchone()
        return row is not None

    def profile_family_members(self, church_id: int, profile_id: int, limit: int = 10) -> list[sqlite3.Row]:
        profile = self.get_profile(profile_id)
        if profile is None or profile["family_id"] is None:
            return []

        with self._connect() as connection:
            return connection.execute(
                """
                SELECT p.*, m.marital_status AS member_marital_status
                FROM person_profiles p
                LEFT JOIN members m ON m.id = p.member_id
                WHERE p.church_id = ? AND p.family_id = ? AND p.id != ?
                    AND p.profile_status IN ('verified', 'unverified')
                ORDER BY p.id ASC
                LIMIT ?
                """,
                (church_id, profile["family_id"], profile_id, limit),
            ).fetchall()

    def adjust_profile_confidence(self, profile_id: int, delta: int) -> int:
        with self._connect() as connection:
            row = connection.execute(
                "SELECT confidence_score FROM person_profiles WHERE id = ?",
                (profile_id,),
            ).fetchone()
            if row is None:
                raise ValueError("Profile record was not found.")

            updated = max(0, min(int(row["confidence_score"]) + delta, 100))
            connection.execute(
                "UPDATE person_profiles SET confidence_score = ?, updated_at = ? WHERE id = ?",
                (updated, _timestamp(), profile_id),
            )
            return updated

    def verify_profile(
        self,
        profile_id: int,
        confidence_delta: int = 0,
        member_id: int | None = None,
        confidence: int | None = None,
    ) -> None:
        profile = self.get_profile(profile_id)
        if profile is None:
            raise ValueError("Profile record was not found.")

        if confidence is None:
            confidence = int(profile["confidence_score"]) + confidence_delta
        bounded = max(0, min(confidence, 100))

        with self._connect() as connection:
            connection.execute(
                """
                UPDATE person_profiles
                SET
                    profile_status = 'verified',
                    confidence_score = ?,
                    member_id = COALESCE(?, member_id),
                    verified_at = ?,
                    updated_at = ?
                WHERE id = ?
                """,
                (bounded, member_id, _timestamp(), _timestamp(), profile_id),
            )

    def link_submission_to_profile(self, submission_id: int, profile_id: int) -> None:
        profile = self.get_profile(profile_id)
        if profile is None:
            raise ValueError("Profile record was not found.")

        with self._connect() as connection:
            cursor = connection.execute(
                """
                UPDATE form_submissions
                SET
                    person_profile_id = ?,
                    member_id = COALESCE(?, member_id),
                    family_id = COALESCE(?, family_id),
                    is_verified = 1,
                    status = 'confirmed',
                    confirmed_at = ?
                WHERE id = ?
                """,
                (profile_id, profile["member_id"], profile["family_id"], _timestamp(), submission_id),
            )
            if cursor.rowcount == 0:
                raise ValueError("Form submission was not found.")

    def queue_profile_review(
        self,
        church_id: int,
        source_profile_id: int,
        target_profile_id: int | None,
        target_member_id: int | None,
        confidence: int,
        match_reasons: list[str],
        title: str,
        description: str,
        review_data: dict[str, Any],
        match_type: str = "profile_merge",
    ) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO profile_match_suggestions (
                    church_id,
                    source_profile_id,
                    target_profile_id,
                    target_member_id,
                    match_type,
                    confidence_score,
                    match_reasons,
                    suggested_action
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 'review_required')
                """,
                (
                    church_id,
                    source_profile_id,
                    target_profile_id,
                    target_member_id,
                    match_type,
                    confidence,
                    _json_dumps(match_reasons),
                ),
            )
            suggestion_id = _lastrowid(cursor)

            cursor = connection.execute(
                """
                INSERT INTO admin_review_queue (
                    church_id, item_type, item_id, priority, title, description, review_data
                )
                VALUES (?, 'profile_match', ?, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    suggestion_id,
                    "high" if confidence > 90 else "medium",
                    title,
                    description,
                    _json_dumps(review_data),
                ),
            )
            return _lastrowid(cursor)

    def list_reviews(
        self,
        church_id: int,
        status: str = "pending",
        limit: int = 20,
        offset: int = 0,
    ) -> dict[str, Any]:
        bounded_limit = max(1, min(limit, 100))
        bounded_offset = max(0, offset)

        with self._connect() as connection:
            total = connection.execute(
                "SELECT COUNT(*) AS count FROM admin_review_queue WHERE church_id = ? AND status = ?",
                (church_id, status),
            ).fetchone()["count"]
            rows = connection.execute(
                """
                SELECT
                    q.*,
                    s.source_profile_id,
                    s.target_profile_id,
                    s.target_member_id,
                    s.match_type,
                    s.confidence_score,
                    s.match_reasons,
                    s.review_status AS suggestion_status,
                    src.first_name AS source_first_name,
                    src.last_name AS source_last_name,
                    src.email AS source_email,
                    src.phone AS source_phone,
                    tgt.first_name AS target_first_name,
                    tgt.last_name AS target_last_name,
                    tgt.email AS target_email,
                    tgt.phone AS target_phone
                FROM admin_review_queue q
                LEFT JOIN profile_match_suggestions s
                    ON s.id = q.item_id AND q.item_type = 'profile_match'
                LEFT JOIN person_profiles src ON src.id = s.source_profile_id
                LEFT JOIN person_profiles tgt ON tgt.id = s.target_profile_id
                WHERE q.church_id = ? AND q.status = ?
                ORDER BY
                    CASE q.priority WHEN 'high' THEN 0 WHEN 'medium' THEN 1 ELSE 2 END,
                    q.created_at ASC,
                    q.id ASC
                LIMIT ? OFFSET ?
                """,
                (church_id, status, bounded_limit, bounded_offset),
            ).fetchall()

        return {
            "reviews": rows,
            "total": int(total),
            "limit": bounded_limit,
            "offset": bounded_offset,
            "has_more": bounded_offset + bounded_limit < int(total),
        }

    def review_source_profile(self, church_id: int, review_id: int) -> sqlite3.Row | None:
        """Return the profile a pending review was opened for, if it is still awaiting a decision."""
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT p.*
                FROM admin_review_queue q
                JOIN profile_match_suggestions s ON s.id = q.item_id AND q.item_type = 'profile_match'
                JOIN person_profiles p ON p.id = s.source_profile_id
                WHERE q.id = ? AND q.church_id = ? AND q.status = 'pending'
                    AND p.profile_status = 'pending_review'
                """,
                (review_id, church_id),
            ).fetchone()

    def _pending_review(self, connection: sqlite3.Connection, review_id: int) -> tuple[sqlite3.Row, sqlite3.Row]:
        review = connection.execute(
            "SELECT * FROM admin_review_queue WHERE id = ?",
            (review_id,),
        ).fetchone()
        if review is None:
            raise ValueError("Review item was not found.")
        if review["status"] != "pending":
            raise ValueError("Review item has already been processed.")
        if review["item_type"] != "profile_match":
            raise ValueError("Review item is not a profile match.")

        suggestion = connection.execute(
            "SELECT * FROM profile_match_suggestions WHERE id = ?",
            (review["item_id"],),
        ).fetchone()
        if suggestion is None:
            raise ValueError("Match suggestion was not found.")
        return review, suggestion

    def _complete_review(
        self,
        connection: sqlite3.Connection,
        review: sqlite3.Row,
        suggestion_status: str,
        review_action: str,
        reviewer: str | None,
        notes: str | None,
        processing_result: dict[str, Any] | None = None,
    ) -> None:
        now = _timestamp()
        connection.execute(
            """
            UPDATE profile_match_suggestions
            SET
                review_status = ?,
                reviewed_by = ?,
                reviewed_at = ?,
                review_notes = ?,
                processed_at = ?,
                processing_result = ?
            WHERE id = ?
            """,
            (
                suggestion_status,
                _clean(reviewer),
                now,
                _clean(notes),
                now,
                _json_dumps(processing_result),
                review["item_id"],
            ),
        )
        connection.execute(
            """
            UPDATE admin_review_queue
            SET status = 'completed', reviewed_by = ?, reviewed_at = ?, review_action = ?, review_notes = ?
            WHERE id = ?
            """,
            (_clean(reviewer), now, review_action, _clean(notes), review["id"]),
        )

    def approve_review(self, review_id: int, reviewer: str | None = None, notes: str | None = None) -> dict[str, Any]:
        with self._connect() as connection:
            review, suggestion = self._pending_review(connection, review_id)

            result: dict[str, Any] = {"action": "approved", "match_type": suggestion["match_type"]}
            if suggestion["match_type"] == "member_link" and suggestion["target_member_id"] is not None:
                connection.execute(
                    """
                    UPDATE person_profiles
                    SET member_id = ?, profile_status = 'verified', confidence_score = 100,
                        verified_at = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (suggestion["target_member_id"], _timestamp(), _timestamp(), suggestion["source_profile_id"]),
                )
                result["linked_member_id"] = suggestion["target_member_id"]
            else:
                connection.execute(
                    """
                    UPDATE person_profiles
                    SET profile_status = 'duplicate', merged_into = ?, updated_at = ?
                    WHERE id = ? AND profile_status = 'pending_review'
                    """,
                    (suggestion["target_profile_id"], _timestamp(), suggestion["source_profile_id"]),
                )

            self._complete_review(connection, review, "approved", "approved", reviewer, notes, result)
        return result

    def reject_review(self, review_id: int, reviewer: str | None = None, notes: str | None = None) -> dict[str, Any]:
        with self._connect() as connection:
            review, suggestion = self._pending_review(connection, review_id)
            connection.execute(
                """
                UPDATE person_profiles
                SET
                    confidence_score = MAX(0, confidence_score - 30),
                    profile_status = CASE
                        WHEN profile_status = 'pending_review' THEN 'unverified'
                        ELSE profile_status
                    END,
                    updated_at = ?
                WHERE id = ?
                """,
                (_timestamp(), suggestion["source_profile_id"]),
            )
            result = {"action": "rejected", "source_profile_id": suggestion["source_profile_id"]}
            self._complete_review(connection, review, "rejected", "rejected", reviewer, notes, result)
        return result

    def merge_review(
        self,
        review_id: int,
        keep_data: str = "merge",
        reviewer: str | None = None,
        notes: str | None = None,
    ) -> dict[str, Any]:
        if keep_data not in {"source", "target", "merge"}:
            raise ValueError("Merge mode must be source, target, or merge.")

        with self._connect() as connection:
            review, suggestion = self._pending_review(connection, review_id)
            if suggestion["target_profile_id"] is None:
                raise ValueError("Match suggestion has no target profile to merge into.")

            source = connection.execute(
                "SELECT * FROM person_profiles WHERE id = ?",
                (suggestion["source_profile_id"],),
            ).fetchone()
            target = connection.execute(
                "SELECT * FROM person_profiles WHERE id = ?",
                (suggestion["target_profile_id"],),
            ).fetchone()
            if source is None or target is None:
                raise ValueError("Profile record was not found.")

            merge_columns = (
                "member_id",
                "family_id",
                "first_name",
                "last_name",
                "email",
                "phone",
                "date_of_birth",
                "address",
                "city",
                "state",
                "zip_code",
            )
            merged: dict[str, Any] = {}
            for column in merge_columns:
                if keep_data == "source":
                    merged[column] = source[column]
                elif keep_data == "target":
                    merged[column] = target[column]
                elif column in ("member_id", "family_id"):
                    merged[column] = target[column] if target[column] is not None else source[column]
                else:
                    merged[column] = source[column] if source[column] not in (None, "") else target[column]

            if keep_data == "target":
                confidence = int(target["confidence_score"])
            elif keep_data == "source":
                confidence = int(source["confidence_score"])
            else:
                confidence = max(int(source["confidence_score"]), int(target["confidence_score"]))

            original_profiles = json_field(target["original_profiles"], [])
            for profile_id in (source["id"], target["id"]):
                if profile_id not in original_profiles:
                    original_profiles.append(profile_id)

            now = _timestamp()
            assignments = ", ".join(f"{column} = ?" for column in merged)
            connection.execute(
                f"""
                UPDATE person_profiles
                SET {assignments}, confidence_score = ?, profile_status = 'verified',
                    original_profiles = ?, verified_at = ?, updated_at = ?
                WHERE id = ?
                """,
                [*merged.values(), confidence, _json_dumps(original_profiles), now, now, target["id"]],
            )
            connection.execute(
                """
                UPDATE person_profiles
                SET profile_status = 'merged', merged_into = ?, updated_at = ?
                WHERE id = ?
                """,
                (target["id"], now, source["id"]),
            )
            moved = connection.execute(
                "UPDATE form_submissions SET person_profile_id = ? WHERE person_profile_id = ?",
                (target["id"], source["id"]),
            ).rowcount

            result = {
                "action": "merged",
                "keep_data": keep_data,
                "target_profile_id": target["id"],
                "merged_profile_id": source["id"],
                "submissions_moved": moved,
            }
            self._complete_review(connection, review, "approved", "merged", reviewer, notes, result)
        return result

    def log_recognition_event(
        self,
        church_id: int,
        event_type: str,
        profile_id: int | None = None,
        submission_id: int | None = None,
        confidence: int | None = None,
        details: dict[str, Any] | None = None,
    ) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO recognition_events (
                    church_id, event_type, profile_id, submission_id, confidence, details
                )
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (church_id, event_type, profile_id, submission_id, confidence, _json_dumps(details)),
            )
            return _lastrowid(cursor)

    def list_recognition_events(self, church_id: int, limit: int = 100) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT *
                FROM recognition_events
                WHERE church_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (church_id, limit),
            ).fetchall()

    def recognition_analytics(self, church_id: int, start: datetime, end: datetime) -> dict[str, Any]:
        window = (church_id, _timestamp(start), _timestamp(end))
        submissions_sql = """
            FROM form_submissions s
            LEFT JOIN person_profiles p ON p.id = s.person_profile_id
            WHERE s.church_id = ? AND s.submitted_at >= ? AND s.submitted_at <= ?
        """

        with self._connect() as connection:
            overview = connection.execute(
                f"""
                SELECT
                    COUNT(*) AS attempts,
                    AVG(CASE WHEN p.confidence_score > 0 THEN p.confidence_score END) AS avg_confidence,
                    COUNT(CASE WHEN p.confidence_score >= 85 THEN 1 END) AS successes,
                    COUNT(CASE WHEN p.confidence_score >= 98 THEN 1 END) AS auto_linked,
                    COUNT(CASE WHEN p.confidence_score >= 85 AND p.confidence_score < 98 THEN 1 END) AS suggested,
                    COUNT(CASE WHEN p.confidence_score >= 70 AND p.confidence_score < 85 THEN 1 END) AS reviews,
                    COUNT(CASE WHEN p.confidence_score < 70 OR p.confidence_score IS NULL THEN 1 END) AS no_match,
                    COUNT(CASE WHEN p.profile_status = 'verified' THEN 1 END) AS verified
                {submissions_sql}
                """,
                window,
            ).fetchone()

            distribution: list[dict[str, Any]] = []
            for label, low, high in (
                ("90-100%", 90, 100),
                ("80-89%", 80, 89),
                ("70-79%", 70, 79),
                ("60-69%", 60, 69),
                ("Below 60%", 0, 59),
            ):
                bucket = connection.execute(
                    f"""
                    SELECT
                        COUNT(*) AS count,
                        COUNT(CASE WHEN p.profile_status = 'verified' THEN 1 END) AS confirmations
                    {submissions_sql}
                        AND p.confidence_score >= ? AND p.confidence_score <= ?
                    """,
                    (*window, low, high),
                ).fetchone()
                count = int(bucket["count"])
                distribution.append(
                    {
                        "range": label,
                        "count": count,
                        "success_rate": round(int(bucket["confirmations"]) / count * 100, 1) if count else 0.0,
                    }
                )

            pending_reviews = connection.execute(
                """
                SELECT COUNT(*) AS count
                FROM admin_review_queue
                WHERE church_id = ? AND status = 'pending' AND item_type = 'profile_match'
                """,
                (church_id,),
            ).fetchone()["count"]
            completed = connection.execute(
                """
                SELECT
                    COUNT(*) AS count,
                    AVG((julianday(reviewed_at) - julianday(created_at)) * 24.0) AS avg_hours,
                    COUNT(CASE WHEN review_action IN ('approved', 'merged') THEN 1 END) AS approvals
                FROM admin_review_queue
                WHERE church_id = ? AND status = 'completed' AND item_type = 'profile_match'
                    AND created_at >= ? AND created_at <= ?
                """,
                window,
            ).fetchone()
            rejections = connection.execute(
                """
                SELECT COUNT(*) AS count
                FROM recognition_events
                WHERE church_id = ? AND event_type = 'match_rejected'
                    AND created_at >= ? AND created_at <= ?
                """,
                window,
            ).fetchone()["count"]
            confirmations = connection.execute(
                """
                SELECT COUNT(*) AS count
                FROM recognition_events
                WHERE church_id = ? AND event_type = 'match_confirmed'
                    AND created_at >= ? AND created_at <= ?
                """,
                window,
            ).fetchone()["count"]
            trends = connection.execute(
                f"""
                SELECT
                    DATE(s.submitted_at) AS day,
                    COUNT(*) AS attempts,
                    COUNT(CASE WHEN p.confidence_score >= 85 THEN 1 END) AS successes,
                    AVG(CASE WHEN p.confidence_score > 0 THEN p.confidence_score END) AS avg_confidence
                {submissions_sql}
                GROUP BY DATE(s.submitted_at)
                ORDER BY day ASC
                """,
                window,
            ).fetchall()

        attempts = int(overview["attempts"])
        successes = int(overview["successes"])
        feedback_total = int(confirmations) + int(rejections)
        completed_count = int(completed["count"])

        return {
            "overview": {
                "total_recognition_attempts": attempts,
                "successful_recognitions": successes,
                "success_rate": round(successes / attempts * 100, 1) if attempts else 0.0,
                "average_confidence_score": round(float(overview["avg_confidence"] or 0), 1),
                "minutes_saved": successes * 2,
            },
            "breakdown": {
                "auto_linked": int(overview["auto_linked"]),
                "suggested_matches": int(overview["suggested"]),
                "admin_reviews": int(overview["reviews"]),
                "no_matches": int(overview["no_match"]),
            },
            "confidence_distribution": distribution,
            "user_feedback": {
                "confirmations": int(confirmations),
                "rejections": int(rejections),
                "confirmation_rate": round(int(confirmations) / feedback_total * 100, 1) if feedback_total else 0.0,
            },
            "admin_performance": {
                "pending_reviews": int(pending_reviews),
                "average_review_hours": round(float(completed["avg_hours"] or 0), 2),
                "approval_rate": round(int(completed["approvals"]) / completed_count * 100, 1) if completed_count else 0.0,
            },
            "trends": [
                {
                    "date": row["day"],
                    "attempts": int(row["attempts"]),
                    "successes": int(row["successes"]),
                    "avg_confidence": round(float(row["avg_confidence"] or 0), 1),
                }
                for row in trends
            ],
        }

    # ------------------------------------------------------------------
    # Communication settings, templates, and messages

    def get_communication_settings(self, church_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM communication_settings WHERE church_id = ?",
                (church_id,),
            ).fetchone()

    def save_communication_settings(self, church_id: int, **settings: Any) -> None:
        allowed = {
            "email_provider",
            "email_api_key",
            "from_email",
            "from_name",
            "reply_to_email",
            "sending_domain",
            "domain_verified",
            "sms_provider",
            "sms_account_sid",
            "sms_auth_token",
            "sms_phone_number",
            "enable_two_way_sms",
            "sms_auto_reply",
            "sms_quiet_hours_start",
            "sms_quiet_hours_end",
        }
        unknown = set(settings) - allowed
        if unknown:
            raise ValueError("Unknown communication settings: " + ", ".join(sorted(unknown)) + ".")

        for key in ("sms_quiet_hours_start", "sms_quiet_hours_end"):
            value = settings.get(key)
            if value is not None and not re.match(r"^([01]\d|2[0-3]):[0-5]\d$", str(value)):
                raise ValueError("Quiet hours must use HH:MM 24-hour time.")

        values = {
            key: (1 if value else 0) if isinstance(value, bool) else value
            for key, value in settings.items()
        }

        with self._connect() as connection:
            connection.execute(
                "INSERT OR IGNORE INTO communication_settings (church_id) VALUES (?)",
                (church_id,),
            )
            if values:
                assignments = ", ".join(f"{column} = ?" for column in values)
                connection.execute(
                    f"UPDATE communication_settings SET {assignments}, updated_at = ? WHERE church_id = ?",
                    [*values.values(), _timestamp(), church_id],
                )

    def add_message_template(
        self,
        church_id: int,
        name: str,
        template_type: str,
        content: str,
        subject: str | None = None,
        category: str | None = None,
    ) -> int:
        clean_name = _clean(name)
        if not clean_name:
            raise ValueError("Template name is required.")
        if template_type not in {"email", "sms"}:
            raise ValueError("Template type must be email or sms.")
        if not _clean(content):
            raise ValueError("Template content is required.")

        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO message_templates (church_id, name, template_type, subject, content, category)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (church_id, clean_name, template_type, _clean(subject), content.strip(), _clean(category)),
            )
            return _lastrowid(cursor)

    def list_message_templates(self, church_id: int, template_type: str | None = None) -> list[sqlite3.Row]:
        query = "SELECT * FROM message_templates WHERE church_id = ? AND is_active = 1"
        parameters: list[Any] = [church_id]
        if template_type:
            query += " AND template_type = ?"
            parameters.append(template_type)
        query += " ORDER BY name ASC, id ASC"
        with self._connect() as connection:
            return connection.execute(query, parameters).fetchall()

    def messaging_audience(
        self,
        church_id: int,
        recipient_type: str,
        recipient_ids: list[int] | None = None,
    ) -> list[sqlite3.Row]:
        """Members addressed by a recipient type, joined with their preferences."""

        where_clauses = ["m.church_id = ?"]
        parameters: list[Any] = [church_id]

        if recipient_type == "all_members":
            where_clauses.append("m.membership_status != 'Merged'")
        elif recipient_type == "active_members":
            where_clauses.append("m.membership_status = 'Active'")
        elif recipient_type == "visitors":
            where_clauses.append("m.membership_status = 'Visitor'")
        elif recipient_type in {"custom_selection", "individual"}:
            if not recipient_ids:
                return []
            placeholders = ", ".join("?" for _ in recipient_ids)
            where_clauses.append(f"m.id IN ({placeholders})")
            parameters.extend(recipient_ids)
        else:
            raise ValueError(f"Unknown recipient type '{recipient_type}'.")

        query = f"""
            SELECT
                m.*,
                cp.email_opt_in,
                cp.sms_opt_in,
                cp.email_unsubscribed_at,
                cp.sms_unsubscribed_at
            FROM members m
            LEFT JOIN communication_preferences cp ON cp.member_id = m.id
            WHERE {' AND '.join(where_clauses)}
            ORDER BY m.last_name ASC, m.first_name ASC, m.id ASC
        """
        with self._connect() as connection:
            return connection.execute(query, parameters).fetchall()

    def add_message(
        self,
        church_id: int,
        message_type: str,
        subject: str | None,
        content: str,
        recipient_type: str,
        recipient_ids: list[int] | None,
        status: str,
        total_recipients: int,
        scheduled_for: datetime | None = None,
        sent_by: str | None = None,
    ) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO messages (
                    church_id,
                    message_type,
                    subject,
                    content,
                    recipient_type,
                    recipient_ids,
                    status,
                    scheduled_for,
                    total_recipients,
                    sent_by
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    church_id,
                    message_type,
                    _clean(subject),
                    content,
                    recipient_type,
                    _json_dumps(recipient_ids),
                    status,
                    _timestamp(scheduled_for) if scheduled_for else None,
                    total_recipients,
                    _clean(sent_by),
                ),
            )
            return _lastrowid(cursor)

    def add_message_recipient(
        self,
        message_id: int,
        member_id: int | None,
        email: str | None,
        phone: str | None,
        merge_data: dict[str, Any],
        status: str = "pending",
    ) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO message_recipients (message_id, member_id, email, phone, merge_data, status)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (message_id, member_id, email, phone, _json_dumps(merge_data), status),
            )
            return _lastrowid(cursor)

    def record_recipient_delivery(
        self,
        recipient_id: int,
        status: str,
        provider_message_id: str | None = None,
        error_message: str | None = None,
        cost_cents: int = 0,
    ) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE message_recipients
                SET
                    status = ?,
                    provider_message_id = ?,
                    error_message = ?,
                    cost_cents = ?,
                    sent_at = CASE WHEN ? IN ('sent', 'queued') THEN ? ELSE sent_at END,
                    updated_at = ?
                WHERE id = ?
                """,
                (
                    status,
                    _clean(provider_message_id),
                    _clean(error_message),
                    cost_cents,
                    status,
                    _timestamp(),
                    _timestamp(),
                    recipient_id,
                ),
            )

    def finalize_message(
        self,
        message_id: int,
        status: str,
        delivered_count: int,
        failed_count: int,
        cost_cents: int,
    ) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE messages
                SET status = ?, delivered_count = ?, failed_count = ?, cost_cents = ?, sent_at = ?
                WHERE id = ?
                """,
                (status, delivered_count, failed_count, cost_cents, _timestamp(), message_id),
            )

    def get_message(self, message_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM messages WHERE id = ?",
                (message_id,),
            ).fetchone()

    def list_messages(self, church_id: int, limit: int = 100) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT *
                FROM messages
                WHERE church_id = ?
                ORDER BY created_at DESC, id DESC
                LIMIT ?
                """,
                (church_id, limit),
            ).fetchall()

    def list_message_recipients(self, message_id: int) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM message_recipients WHERE message_id = ? ORDER BY id ASC",
                (message_id,),
            ).fetchall()

    def find_recipient_by_provider_id(self, email: str, provider_message_id: str) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT mr.*, msg.church_id
                FROM message_recipients mr
                JOIN messages msg ON msg.id = mr.message_id
                WHERE mr.email = ? AND mr.provider_message_id = ?
                LIMIT 1
                """,
                (normalize_email(email), provider_message_id),
            ).fetchone()

    def update_recipient_event(self, recipient_id: int, **fields: Any) -> None:
        allowed = {"status", "delivered_at", "opened_at", "first_clicked_at", "sent_at", "error_code", "error_message"}
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError("Unknown recipient fields: " + ", ".join(sorted(unknown)) + ".")
        if not fields:
            return

        assignments = ", ".join(f"{column} = ?" for column in fields)
        with self._connect() as connection:
            connection.execute(
                f"UPDATE message_recipients SET {assignments}, updated_at = ? WHERE id = ?",
                [*fields.values(), _timestamp(), recipient_id],
            )

    def refresh_message_engagement(self, message_id: int) -> None:
        with self._connect() as connection:
            connection.execute(
                """
                UPDATE messages
                SET
                    delivered_count = (
                        SELECT COUNT(*) FROM message_recipients
                        WHERE message_id = ? AND status IN ('sent', 'delivered', 'opened', 'clicked')
                    ),
                    failed_count = (
                        SELECT COUNT(*) FROM message_recipients
                        WHERE message_id = ? AND status IN ('failed', 'bounced')
                    ),
                    opened_count = (
                        SELECT COUNT(*) FROM message_recipients
                        WHERE message_id = ? AND opened_at IS NOT NULL
                    ),
                    clicked_count = (
                        SELECT COUNT(*) FROM message_recipients
                        WHERE message_id = ? AND first_clicked_at IS NOT NULL
                    )
                WHERE id = ?
                """,
                (message_id, message_id, message_id, message_id, message_id),
            )

    def log_webhook(
        self,
        church_id: int,
        provider: str,
        event_type: str,
        provider_event_id: str | None,
        raw_payload: dict[str, Any],
    ) -> int:
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO communication_webhooks (church_id, provider, event_type, provider_event_id, raw_payload)
                VALUES (?, ?, ?, ?, ?)
                """,
                (church_id, provider, event_type, provider_event_id, _json_dumps(raw_payload)),
            )
            return _lastrowid(cursor)

    def mark_webhook_processed(self, webhook_id: int) -> None:
        with self._connect() as connection:
            connection.execute(
                "UPDATE communication_webhooks SET processed = 1, processed_at = ? WHERE id = ?",
                (_timestamp(), webhook_id),
            )

    # ------------------------------------------------------------------
    # SMS conversations

    def member_by_phone(self, church_id: int, phone: str) -> sqlite3.Row | None:
        digits = _normalize_digits(phone)
        if len(digits) < 10:
            return None
        tail = digits[-10:]
        with self._connect() as connection:
            rows = connection.execute(
                """
                SELECT *
                FROM members
                WHERE church_id = ? AND mobile_phone IS NOT NULL
                    AND membership_status != 'Merged'
                ORDER BY id ASC
                """,
                (church_id,),
            ).fetchall()
        for row in rows:
            if _normalize_digits(row["mobile_phone"])[-10:] == tail:
                return row
        return None

    def get_or_create_conversation(
        self,
        church_id: int,
        member_phone: str,
        church_phone: str,
        member_id: int | None = None,
    ) -> sqlite3.Row:
        with self._connect() as connection:
            row = connection.execute(
                """
                SELECT *
                FROM sms_conversations
                WHERE church_id = ? AND member_phone = ? AND church_phone = ?
                """,
                (church_id, member_phone, church_phone),
            ).fetchone()
            if row is not None:
                return row

            cursor = connection.execute(
                """
                INSERT INTO sms_conversations (church_id, member_id, member_phone, church_phone)
                VALUES (?, ?, ?, ?)
                """,
                (church_id, member_id, member_phone, church_phone),
            )
            return connection.execute(
                "SELECT * FROM sms_conversations WHERE id = ?",
                (_lastrowid(cursor),),
            ).fetchone()

    def get_conversation(self, conversation_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM sms_conversations WHERE id = ?",
                (conversation_id,),
            ).fetchone()

    def add_sms_message(
        self,
        conversation_id: int,
        direction: str,
        content: str,
        from_phone: str,
        to_phone: str,
        status: str,
        media_urls: list[str] | None = None,
        is_auto_reply: bool = False,
        provider_message_id: str | None = None,
        cost_cents: int = 0,
        sent_by: str | None = None,
        unread: bool = False,
        moment: datetime | None = None,
    ) -> int:
        now = _timestamp(moment)
        with self._connect() as connection:
            cursor = connection.execute(
                """
                INSERT INTO sms_messages (
                    conversation_id,
                    direction,
                    content,
                    from_phone,
                    to_phone,
                    status,
                    message_type,
                    media_urls,
                    is_auto_reply,
                    provider_message_id,
                    cost_cents,
                    sent_by,
                    created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    conversation_id,
                    direction,
                    content,
                    from_phone,
                    to_phone,
                    status,
                    "media" if media_urls else "text",
                    _json_dumps(media_urls) if media_urls else None,
                    1 if is_auto_reply else 0,
                    _clean(provider_message_id),
                    cost_cents,
                    _clean(sent_by),
                    now,
                ),
            )
            connection.execute(
                """
                UPDATE sms_conversations
                SET
                    message_count = message_count + 1,
                    unread_count = unread_count + ?,
                    last_message_at = ?,
                    last_auto_reply = CASE WHEN ? = 1 THEN ? ELSE last_auto_reply END
                WHERE id = ?
                """,
                (1 if unread else 0, now, 1 if is_auto_reply else 0, now, conversation_id),
            )
            return _lastrowid(cursor)

    def list_conversations(self, church_id: int, status: str | None = "active") -> list[sqlite3.Row]:
        where_clauses = ["c.church_id = ?"]
        parameters: list[Any] = [church_id]
        if status:
            where_clauses.append("c.status = ?")
            parameters.append(status)

        query = f"""
            SELECT
                c.*,
                m.first_name,
                m.last_name,
                m.preferred_name,
                (
                    SELECT sm.content
                    FROM sms_messages sm
                    WHERE sm.conversation_id = c.id
                    ORDER BY sm.created_at DESC, sm.id DESC
                    LIMIT 1
                ) AS last_message
            FROM sms_conversations c
            LEFT JOIN members m ON m.id = c.member_id
            WHERE {' AND '.join(where_clauses)}
            ORDER BY c.last_message_at DESC, c.id DESC
        """
        with self._connect() as connection:
            return connection.execute(query, parameters).fetchall()

    def list_sms_messages(self, conversation_id: int) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT *
                FROM sms_messages
                WHERE conversation_id = ?
                ORDER BY created_at ASC, id ASC
                """,
                (conversation_id,),
            ).fetchall()

    def mark_conversation_read(self, conversation_id: int) -> None:
        with self._connect() as connection:
            connection.execute(
                "UPDATE sms_conversations SET unread_count = 0 WHERE id = ?",
                (conversation_id,),
            )

    def archive_conversations_for_phone(self, church_id: int, member_phone: str) -> int:
        with self._connect() as connection:
            return connection.execute(
                """
                UPDATE sms_conversations
                SET status = 'archived'
                WHERE church_id = ? AND member_phone = ?
                """,
                (church_id, member_phone),
            ).rowcount

    # ------------------------------------------------------------------
    # Communication preferences

    def get_preferences(self, member_id: int) -> sqlite3.Row | None:
        with self._connect() as connection:
            return connection.execute(
                "SELECT * FROM communication_preferences WHERE member_id = ?",
                (member_id,),
            ).fetchone()

    def update_preferences(self, member_id: int, **fields: Any) -> None:
        allowed = {
            "email_opt_in",
            "sms_opt_in",
            "email_consent_date",
            "sms_consent_date",
            "consent_method",
            "email_unsubscribed_at",
            "sms_unsubscribed_at",
            "unsubscribe_reason",
            "unsubscribe_feedback",
            "email_bounce_count",
            "soft_bounce_count",
            "last_bounce_at",
            "preferred_method",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError("Unknown preference fields: " + ", ".join(sorted(unknown)) + ".")

        member = self.get_member(member_id)
        if member is None:
            raise ValueError("Member record was not found.")

        values = {
            key: (1 if value else 0) if isinstance(value, bool) else value
            for key, value in fields.items()
        }
        with self._connect() as connection:
            connection.execute(
                "INSERT OR IGNORE INTO communication_preferences (church_id, member_id) VALUES (?, ?)",
                (member["church_id"], member_id),
            )
            if values:
                assignments = ", ".join(f"{column} = ?" for column in values)
                connection.execute(
                    f"UPDATE communication_preferences SET {assignments}, updated_at = ? WHERE member_id = ?",
                    [*values.values(), _timestamp(), member_id],
                )

    def list_preferences(self, church_id: int) -> list[sqlite3.Row]:
        with self._connect() as connection:
            return connection.execute(
                """
                SELECT
                    cp.*,
                    m.first_name,
                    m.last_name,
                    m.email,
                    m.mobile_phone
                FROM communication_preferences cp
                JOIN members m ON m.id = cp.member_id
                WHERE cp.church_id = ?
                ORDER BY m.last_name ASC, m.first_name ASC, m.id ASC
                """,
                (church_id,),
            ).fetchall()

    # ------------------------------------------------------------------
    # Dashboard

    def dashboard_stats(self, church_id: int, today: date | None = None) -> dict[str, int]:
        stats: dict[str, int] = {}
        stats.update(self.church_stats(church_id))
        stats.update(self.giving_stats(church_id, today=today))

        with self._connect() as connection:
            stats["families_total"] = int(
                connection.execute(
                    "SELECT COUNT(*) AS count FROM families WHERE church_id = ?",
                    (church_id,),
                ).fetchone()["count"]
            )
            stats["pending_reviews"] = int(
                connection.execute(
                    "SELECT COUNT(*) AS count FROM admin_review_queue WHERE church_id = ? AND status = 'pending'",
                    (church_id,),
                ).fetchone()["count"]
            )
            stats["unread_conversations"] = int(
                connection.execute(
                    """
                    SELECT COUNT(*) AS count
                    FROM sms_conversations
                    WHERE church_id = ? AND status = 'active' AND unread_count > 0
                    """,
                    (church_id,),
                ).fetchone()["count"]
            )
            stats["active_forms"] = int(
                connection.execute(
                    "SELECT COUNT(*) AS count FROM registration_forms WHERE church_id = ? AND is_active = 1",
                    (church_id,),
                ).fetchone()["count"]
            )
        return stats
