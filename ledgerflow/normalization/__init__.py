"""
Ledgerflow — Normalization Stage

Maps heterogeneous payloads (bank rows, payment-provider objects, receipt
scans, manual entries) to one canonical record. Pure transform, no I/O.

Canonical record:
  amount          — absolute value; numeric or string source (non-numeric chars stripped)
  currency        — symbol/code table, CAD when absent or unrecognized
  transaction_date — YYYY-MM-DD from date | transaction_date | created_at | timestamp
  description     — description | memo | note | reference, cleaned
  counterparty    — counterparty | merchant | vendor | payee | payer | name, cleaned
  operation_type  — income | expense (expense when absent)
  source_type     — stripe | bank | receipt | csv | manual, from payload markers
  confidence      — 100 minus penalties for missing fields, floor 50
"""
import re
from datetime import datetime, date

from ledgerflow.config import (
    CURRENCY_MAP, DEFAULT_CURRENCY, OPERATION_TYPE_MAP, SOURCE_MARKERS,
    DATE_FIELDS, DESCRIPTION_FIELDS, COUNTERPARTY_FIELDS, OPERATION_TYPE_FIELDS,
)
from ledgerflow.counterparty import clean_text
from ledgerflow.stages import StageContext

# Fallback formats tried after ISO-8601, in order
DATE_FORMATS = ["%d/%m/%Y", "%Y-%m-%d", "%d-%m-%Y"]


def _first_present(payload: dict, fields: list):
    for f in fields:
        v = payload.get(f)
        if v not in (None, ""):
            return v
    return None


# ============================================================
# FIELD NORMALIZERS
# ============================================================
def normalize_amount(value) -> float:
    """Non-negative float from a number or a formatted string ("$1,234.50" → 1234.5)."""
    if isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return abs(float(value))
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.\-]", "", value)
        try:
            return abs(float(cleaned))
        except ValueError:
            return 0.0
    return 0.0


def normalize_currency(value) -> str:
    if not value:
        return DEFAULT_CURRENCY
    v = str(value).strip()
    return CURRENCY_MAP.get(v) or CURRENCY_MAP.get(v.upper()) or DEFAULT_CURRENCY


def normalize_date(value, today: date = None) -> str:
    """YYYY-MM-DD. ISO-8601 first, then DD/MM/YYYY, YYYY-MM-DD, DD-MM-YYYY; today when unparseable."""
    today = today or date.today()
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        ts = value / 1000 if value > 1e12 else value
        try:
            return datetime.fromtimestamp(ts).date().isoformat()
        except (OverflowError, OSError, ValueError):
            return today.isoformat()
    s = str(value).strip()
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00")).date().isoformat()
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(s[:10], fmt).date().isoformat()
        except ValueError:
            continue
    return today.isoformat()


def normalize_operation_type(value) -> str:
    return OPERATION_TYPE_MAP.get(str(value).strip().lower(), "expense")


def detect_source_type(payload: dict) -> str:
    for source_type, markers in SOURCE_MARKERS:
        if any(payload.get(m) for m in markers):
            return source_type
    return "manual"


def compute_confidence(found: dict) -> int:
    score = 100
    if not found.get("amount"): score -= 20
    if not found.get("transaction_date"): score -= 15
    if not found.get("counterparty"): score -= 10
    if not found.get("description"): score -= 10
    if not found.get("operation_type"): score -= 10
    return max(score, 50)


# ============================================================
# PUBLIC API
# ============================================================
def normalize(payload: dict, event_type: str = "") -> dict:
    """Map a raw payload to the canonical record."""
    payload = payload or {}
    record = {
        "original": payload,
        "normalized_at": datetime.now().isoformat(),
        "source_type": detect_source_type(payload),
        "amount": None, "currency": DEFAULT_CURRENCY,
        "transaction_date": None, "description": None, "counterparty": None,
        "operation_type": None,
    }

    if payload.get("amount") is not None:
        record["amount"] = normalize_amount(payload["amount"])
    record["currency"] = normalize_currency(payload.get("currency"))

    raw_date = _first_present(payload, DATE_FIELDS)
    if raw_date is not None:
        record["transaction_date"] = normalize_date(raw_date)

    raw_desc = _first_present(payload, DESCRIPTION_FIELDS)
    if raw_desc is not None:
        record["description"] = clean_text(raw_desc) or None

    raw_cp = _first_present(payload, COUNTERPARTY_FIELDS)
    if raw_cp is not None:
        record["counterparty"] = clean_text(raw_cp) or None

    raw_type = _first_present(payload, OPERATION_TYPE_FIELDS)
    if raw_type is not None:
        record["operation_type"] = normalize_operation_type(raw_type)

    # Penalties reflect what the payload carried, before defaults fill in
    record["confidence"] = compute_confidence(record)
    if record["operation_type"] is None:
        record["operation_type"] = "expense"

    for key in ("external_id", "id"):
        if payload.get(key):
            record["external_id"] = str(payload[key])
            break
    if payload.get("potential_duplicate"):
        record["potential_duplicate"] = True
    return record


def run(ctx: StageContext) -> dict:
    normalized = normalize(ctx.payload, ctx.event_type)
    return {
        "normalized_data": normalized,
        "_audit": {
            "action_type": "normalize_data",
            "input_data": {"event_type": ctx.event_type, "source_type": normalized["source_type"]},
            "confidence_score": normalized["confidence"],
        },
    }
