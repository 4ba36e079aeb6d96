"""
Ledgerflow — Deduplication Matching Module

Links a normalized record to an existing MasterOperation or creates a new one.
Deterministic multi-signal scoring over a narrow candidate window.

Candidates: same user, identical amount, transaction_date within ±3 days.

Matching signals (0-100):
  - Amount exact match (+40)
  - Date exact (+30), ≤1 day (+25), ≤3 days (+15)
  - Counterparty token similarity (×20)
  - Description token similarity (×10)

Best candidate ≥ 85 → duplicate (new OperationSource on the existing record).
"""

import time
import logging
from datetime import date

from ledgerflow import db
from ledgerflow.db import _n
from ledgerflow.counterparty import word_similarity
from ledgerflow.policy import get_policy
from ledgerflow.stages import StageContext

logger = logging.getLogger(__name__)


def _to_date(value):
    if not value:
        return None
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None


def _base36(n: int) -> str:
    chars = "0123456789abcdefghijklmnopqrstuvwxyz"
    out = ""
    while n:
        n, r = divmod(n, 36)
        out = chars[r] + out
    return out or "0"


def master_tx_id(normalized: dict) -> str:
    """Human-readable traceability id. Logging only, never matched on."""
    amount = normalized.get("amount")
    parts = [
        normalized.get("transaction_date") or date.today().isoformat(),
        f"{amount:g}" if isinstance(amount, (int, float)) else str(amount or 0),
        (normalized.get("counterparty") or "unknown")[:10],
        normalized.get("source_type") or "manual",
    ]
    body = "-".join(parts).replace(" ", "_").lower()
    return f"MTX-{body}-{_base36(int(time.time() * 1000))}"


# ============================================================
# SCORING
# ============================================================
def match_score(existing: dict, incoming: dict) -> int:
    """Weighted match score between a stored operation and an incoming record."""
    score = 0.0

    if _n(existing.get("amount")) == _n(incoming.get("amount")):
        score += 40

    d1, d2 = _to_date(existing.get("transaction_date")), _to_date(incoming.get("transaction_date"))
    if existing.get("transaction_date") == incoming.get("transaction_date"):
        score += 30
    elif d1 and d2:
        days = abs((d1 - d2).days)
        if days <= 1: score += 25
        elif days <= 3: score += 15

    if existing.get("counterparty") and incoming.get("counterparty"):
        score += word_similarity(existing["counterparty"], incoming["counterparty"]) * 20

    if existing.get("description") and incoming.get("description"):
        score += word_similarity(existing["description"], incoming["description"]) * 10

    return round(score)


def find_candidates(normalized: dict, user_id: str) -> list:
    """Every same-user, same-amount operation inside the date window, oldest first."""
    policy = get_policy()
    window = policy["duplicate_window_days"]
    amount = _n(normalized.get("amount"))
    target = _to_date(normalized.get("transaction_date"))

    def in_window(op):
        if target is None:
            return True
        d = _to_date(op.get("transaction_date"))
        return d is not None and abs((d - target).days) <= window

    return db.find("master_operations", user_id=user_id,
                   where=lambda op: _n(op.get("amount")) == amount and in_window(op),
                   order_by="created_at")


def best_match(normalized: dict, candidates: list) -> tuple:
    """(operation, score) for the highest-scoring candidate; first wins ties."""
    best, best_score = None, 0
    for op in candidates:
        s = match_score(op, normalized)
        if s > best_score:
            best, best_score = op, s
    return best, best_score


# ============================================================
# PUBLIC API
# ============================================================
def dedup(normalized: dict, user_id: str, event_id: str = None, raw_data: dict = None) -> dict:
    """Link to an existing MasterOperation (score ≥ threshold) or create one."""
    threshold = get_policy()["duplicate_match_threshold"]
    tx_id = master_tx_id(normalized)
    source_type = normalized.get("source_type") or "manual"
    external_id = normalized.get("external_id") or event_id

    # Candidate lookup and the resulting insert run under one store lock
    with db.transaction():
        existing, score = best_match(normalized, find_candidates(normalized, user_id))

        if existing is not None and score >= threshold:
            db.insert("operation_sources", {
                "master_operation_id": existing["id"], "source_type": source_type,
                "external_id": external_id, "raw_data": raw_data or normalized.get("original") or {},
                "match_type": "duplicate", "match_confidence": score,
            })
            logger.info("[Dedup] %s linked to %s (score %d)", tx_id, existing["id"], score)
            return {"is_duplicate": True, "master_operation_id": existing["id"],
                    "master_tx_id": tx_id, "match_confidence": score, "action": "linked_to_existing"}

        op = db.insert("master_operations", {
            "user_id": user_id,
            "operation_type": normalized.get("operation_type") or "expense",
            "amount": _n(normalized.get("amount")),
            "currency": normalized.get("currency") or "CAD",
            "description": normalized.get("description"),
            "counterparty": normalized.get("counterparty"),
            "transaction_date": normalized.get("transaction_date") or date.today().isoformat(),
            "category": None, "status": "pending_review",
            "auto_classified": False, "confidence_score": None,
            "master_tx_id": tx_id,
        })
        db.insert("operation_sources", {
            "master_operation_id": op["id"], "source_type": source_type,
            "external_id": external_id, "raw_data": raw_data or normalized.get("original") or {},
            "match_type": "new", "match_confidence": 100,
        })
    logger.info("[Dedup] %s created master operation %s", tx_id, op["id"])
    return {"is_duplicate": False, "master_operation_id": op["id"], "master_tx_id": tx_id,
            "match_confidence": 100, "action": "created_new"}


def run(ctx: StageContext) -> dict:
    normalized = ctx.normalized()
    result = dedup(normalized, ctx.user_id, event_id=ctx.event_id, raw_data=ctx.payload)
    result["_audit"] = {
        "action_type": result["action"],
        "input_data": {"amount": normalized.get("amount"), "counterparty": normalized.get("counterparty")},
        "confidence_score": result["match_confidence"],
    }
    return result
