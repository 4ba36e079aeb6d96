"""
Ledgerflow — Configuration & Constants
Environment variables, feature flags, routing table and static lookup tables.
"""
import os
from pathlib import Path

# ============================================================
# PATHS
# ============================================================
BASE_DIR = Path(__file__).parent.parent.parent
DATA_DIR = Path(os.environ.get("LEDGERFLOW_DATA_DIR", str(BASE_DIR / "data")))
DB_PATH = DATA_DIR / "db.json"

# ============================================================
# FEATURE FLAGS
# ============================================================
PERSIST_DATA = os.environ.get("PERSIST_DATA", "true").lower() == "true"
RESET_ON_START = os.environ.get("RESET_ON_START", "false").lower() == "true"
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

if PERSIST_DATA:
    DATA_DIR.mkdir(parents=True, exist_ok=True)

# ============================================================
# AUTH
# ============================================================
JWT_SECRET = os.environ.get("JWT_SECRET", os.urandom(32).hex())
JWT_ALGORITHM = "HS256"
JWT_EXPIRY_HOURS = 72
SERVICE_ROLE_HEADER = "x-service-role"
SERVICE_ROLE_KEY = os.environ.get("SERVICE_ROLE_KEY", "")

# ============================================================
# AI SERVICE
# ============================================================
USE_REAL_API = bool(os.environ.get("ANTHROPIC_API_KEY"))
RECEIPT_MODEL = os.environ.get("RECEIPT_MODEL", "claude-sonnet-4-20250514")
RECEIPT_MAX_TOKENS = 1000

# ============================================================
# EVENTS
# ============================================================
VALID_SOURCES = ["manual", "bank", "stripe", "email", "calendar", "crawler", "docs", "integration"]
EVENT_STATUSES = ["NEW", "PROCESSING", "PROCESSED", "FAILED"]

# ============================================================
# PIPELINE ROUTING
# ============================================================
PIPELINES = {
    "transaction.created": ["normalization", "deduplication", "classification", "policy", "anomaly", "action"],
    "transaction.updated": ["normalization", "classification", "policy", "anomaly"],
    "payment.received": ["normalization", "deduplication", "classification", "policy", "action", "briefing"],
    "invoice.created": ["normalization", "classification", "policy", "action"],
    "bank_statement.imported": ["normalization", "deduplication", "classification", "policy", "anomaly", "briefing"],
    "receipt.scanned": ["normalization", "classification", "action"],
    "briefing.requested": ["briefing"],
    "briefing.morning": ["briefing"],
    "briefing.evening": ["briefing"],
    "growth.analyze": ["growth"],
    "marketing.campaign": ["growth", "action"],
    "content.generate": ["growth"],
    "system.audit": ["policy", "anomaly"],
    "system.healthcheck": ["anomaly"],
}
DEFAULT_PIPELINE = ["normalization", "classification"]

# ============================================================
# NORMALIZATION TABLES
# ============================================================
DEFAULT_CURRENCY = "CAD"
CURRENCY_MAP = {
    "$": "CAD", "CAD": "CAD", "C$": "CAD",
    "US$": "USD", "USD": "USD",
    "R$": "BRL", "BRL": "BRL",
    "€": "EUR", "EUR": "EUR",
}
CURRENCY_SYMBOLS = {"CAD": "$", "USD": "US$", "BRL": "R$", "EUR": "€"}

OPERATION_TYPE_MAP = {
    "credit": "income", "debit": "expense",
    "income": "income", "expense": "expense",
    "deposit": "income", "withdrawal": "expense",
    "payment": "expense", "receive": "income",
    "transfer_in": "income", "transfer_out": "expense",
}

DATE_FIELDS = ["date", "transaction_date", "created_at", "timestamp"]
DESCRIPTION_FIELDS = ["description", "memo", "note", "reference"]
COUNTERPARTY_FIELDS = ["counterparty", "merchant", "vendor", "payee", "payer", "name"]
OPERATION_TYPE_FIELDS = ["type", "operation_type", "transaction_type"]

# Payload markers → source_type, checked in order
SOURCE_MARKERS = [
    ("stripe", ["stripe_id", "payment_intent"]),
    ("bank", ["bank_id", "account_number"]),
    ("receipt", ["receipt_url", "scanned"]),
    ("csv", ["csv_row", "import_batch"]),
]

# ============================================================
# CLASSIFICATION KEYWORDS
# ============================================================
CATEGORIES = {
    "income": {
        "sales": ["sale", "payment", "invoice", "revenue", "product", "service"],
        "consulting": ["consulting", "advisory", "professional", "hourly", "project"],
        "subscription": ["subscription", "recurring", "monthly", "annual", "plan"],
        "refund_received": ["refund", "reimbursement", "credit"],
        "interest": ["interest", "dividend", "yield"],
        "other_income": [],
    },
    "expense": {
        "payroll": ["salary", "wage", "payroll", "bonus", "employee"],
        "rent": ["rent", "lease", "office", "space"],
        "utilities": ["electric", "water", "gas", "internet", "phone", "utility"],
        "software": ["software", "saas", "subscription", "tool", "app"],
        "marketing": ["marketing", "ads", "advertising", "campaign", "facebook", "google"],
        "travel": ["travel", "flight", "hotel", "uber", "taxi", "transport"],
        "meals": ["meal", "food", "restaurant", "lunch", "dinner", "coffee"],
        "supplies": ["supplies", "office", "materials", "equipment"],
        "professional_services": ["legal", "accounting", "consulting", "lawyer", "cpa"],
        "insurance": ["insurance", "coverage", "policy"],
        "taxes": ["tax", "gst", "hst", "vat", "government"],
        "bank_fees": ["fee", "charge", "bank", "interest", "overdraft"],
        "other_expense": [],
    },
}

# ============================================================
# WORKFLOW
# ============================================================
SEVERITIES = ["low", "medium", "high", "critical"]
TASK_PRIORITIES = ["critical", "high", "medium", "low"]

# Allowed master-operation status moves; never backward
STATUS_TRANSITIONS = {
    "pending_review": ["pending_approval", "flagged_for_review", "approved"],
    "pending_approval": ["flagged_for_review", "approved"],
    "flagged_for_review": ["approved"],
    "approved": [],
}
