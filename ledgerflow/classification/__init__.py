"""
Ledgerflow — Classification Stage

Assigns a category to a normalized record. Fully deterministic.

  1. User BusinessRules (rule_type=classification, active, highest priority
     first). A rule matches when every condition field string-contains
     (case-insensitive) or equals the record value. First match wins, 95%.
  2. Keyword tables per operation type. Each keyword found in
     "description counterparty" scores 10; the strictly highest score wins,
     ties keep the earlier category, no hit falls back to other_income /
     other_expense. Confidence = min(90, 50 + 2 × score).
"""

import logging

from ledgerflow import db
from ledgerflow.config import CATEGORIES
from ledgerflow.policy import active_rules
from ledgerflow.stages import StageContext

logger = logging.getLogger(__name__)

RULE_CONFIDENCE = 95
KEYWORD_CONFIDENCE_CAP = 90


def matches_rule(data: dict, conditions: dict) -> bool:
    for key, expected in (conditions or {}).items():
        if key in ("category", "subcategory"):
            continue
        actual = data.get(key)
        if isinstance(expected, str) and isinstance(actual, str):
            if expected.lower() not in actual.lower():
                return False
        elif expected != actual:
            return False
    return True


def classify(normalized: dict, business_rules: list = None) -> dict:
    description = (normalized.get("description") or "").lower()
    counterparty = (normalized.get("counterparty") or "").lower()
    operation_type = normalized.get("operation_type") or "expense"
    search_text = f"{description} {counterparty}"

    for rule in sorted(business_rules or [], key=lambda r: r.get("priority", 0), reverse=True):
        conditions = rule.get("conditions") or {}
        if matches_rule(normalized, conditions):
            out = {"category": conditions.get("category"), "confidence": RULE_CONFIDENCE,
                   "reasons": [f"Matched business rule: {rule.get('name')}"]}
            if conditions.get("subcategory"):
                out["subcategory"] = conditions["subcategory"]
            return out

    table = CATEGORIES.get(operation_type, CATEGORIES["expense"])
    best_name = "other_income" if operation_type == "income" else "other_expense"
    best_score, reasons = 0, []
    for name, keywords in table.items():
        hits = [k for k in keywords if k in search_text]
        score = 10 * len(hits)
        if score > best_score:
            best_name, best_score = name, score
            reasons = [f"Matched keywords: {', '.join(hits)}"]

    if not reasons:
        reasons = ["No specific keywords matched, using default category"]
    return {"category": best_name,
            "confidence": min(KEYWORD_CONFIDENCE_CAP, 50 + best_score * 2),
            "reasons": reasons}


def run(ctx: StageContext) -> dict:
    normalized = ctx.normalized()
    result = classify(normalized, active_rules(ctx.user_id, "classification"))

    op_id = ctx.master_operation_id()
    if op_id:
        db.update("master_operations", op_id, {
            "category": result["category"], "auto_classified": True,
            "confidence_score": result["confidence"],
            "classification_reason": result["reasons"],
        })
    logger.info("[Classification] event=%s → %s (%s%%)", ctx.event_id, result["category"], result["confidence"])
    result["master_operation_id"] = op_id
    result["_audit"] = {
        "action_type": "auto_classify",
        "input_data": {"description": normalized.get("description"), "counterparty": normalized.get("counterparty")},
        "confidence_score": result["confidence"],
    }
    return result
