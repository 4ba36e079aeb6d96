"""
Ledgerflow — Policy Module

Two responsibilities:

  1. Runtime thresholds. DEFAULT_POLICY holds every tunable number the
     pipeline uses (approval threshold, dedup window and match cut-off,
     anomaly z-score bands, stage timeout), each with an env var override.
     get_policy() / update_policy() / reset_policy() manage the live copy.

  2. The Policy stage. Built-in compliance checks plus user-defined
     BusinessRules (rule_type=policy) with $gt/$lt/$gte/$lte operators.

Built-in checks:
  1. Approval Threshold Exceeded — amount > threshold (high), > 5x (critical)
  2. Missing Documentation — amount > 500 without description or counterparty (medium)
  3. Weekend Large Transaction — Saturday/Sunday and amount > 1000 (low)
  4. Category Amount Mismatch — meals over 200 (low)
  5. Potential Duplicate — upstream duplicate flag (medium)
"""

import os
import copy as _copy
import logging
from datetime import datetime

from ledgerflow import db
from ledgerflow.db import _n
from ledgerflow.counterparty import format_money
from ledgerflow.stages import StageContext, Stage
from ledgerflow.workflow import create_alert, transition_status

logger = logging.getLogger(__name__)


# ============================================================
# DEFAULT POLICY — base configuration with env var overrides
# ============================================================
DEFAULT_POLICY = {
    # ── APPROVALS ──
    "approval_threshold": float(os.environ.get("APPROVAL_THRESHOLD", "1000")),
    "critical_threshold_multiplier": 5,
    "missing_docs_min_amount": 500,
    "weekend_min_amount": 1000,
    "meals_max_amount": 200,

    # ── DEDUPLICATION ──
    "duplicate_match_threshold": float(os.environ.get("DUPLICATE_MATCH_THRESHOLD", "85")),
    "duplicate_window_days": int(os.environ.get("DUPLICATE_WINDOW_DAYS", "3")),

    # ── ANOMALY DETECTION ──
    "anomaly_min_history": int(os.environ.get("ANOMALY_MIN_HISTORY", "5")),
    "anomaly_history_limit": int(os.environ.get("ANOMALY_HISTORY_LIMIT", "100")),
    "outlier_z": float(os.environ.get("OUTLIER_Z", "3")),
    "critical_z": float(os.environ.get("CRITICAL_Z", "5")),
    "unusual_z": float(os.environ.get("UNUSUAL_Z", "2")),

    # ── ORCHESTRATION ──
    "stage_timeout_seconds": float(os.environ["STAGE_TIMEOUT_SECONDS"]) if os.environ.get("STAGE_TIMEOUT_SECONDS") else None,
}


# ============================================================
# RUNTIME STATE — mutable, updated via API
# ============================================================
_active_policy = _copy.deepcopy(DEFAULT_POLICY)


def get_policy() -> dict:
    """Get the active pipeline policy."""
    return _active_policy


def update_policy(updates: dict) -> dict:
    """Update known numeric fields. Returns the full updated policy."""
    for key, value in updates.items():
        if key not in _active_policy:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            if key == "stage_timeout_seconds" and value is None:
                _active_policy[key] = None
            continue
        if isinstance(DEFAULT_POLICY[key], int) and not isinstance(DEFAULT_POLICY[key], bool):
            value = max(0, int(value))
        else:
            value = max(0.0, float(value))
        _active_policy[key] = value
    return _active_policy


def reset_policy():
    """Reset policy to defaults. Used in testing."""
    _active_policy.clear()
    _active_policy.update(_copy.deepcopy(DEFAULT_POLICY))


def get_approval_threshold(user_id: str) -> float:
    """Per-user threshold from the profile, else the policy default."""
    profile = db.find_one("profiles", id=user_id) if user_id else None
    threshold = _n((profile or {}).get("approval_threshold"))
    return threshold if threshold > 0 else _active_policy["approval_threshold"]


# ============================================================
# CUSTOM RULES
# ============================================================
RULE_META_KEYS = ("severity", "message", "action")


def matches_policy_conditions(data: dict, conditions: dict) -> bool:
    """Every condition holds. Dict values are operator maps, anything else is equality."""
    for key, expected in (conditions or {}).items():
        if key in RULE_META_KEYS:
            continue
        actual = data.get(key)
        if isinstance(expected, dict):
            try:
                if "$gt" in expected and not actual > expected["$gt"]: return False
                if "$lt" in expected and not actual < expected["$lt"]: return False
                if "$gte" in expected and not actual >= expected["$gte"]: return False
                if "$lte" in expected and not actual <= expected["$lte"]: return False
            except TypeError:
                return False
        elif actual != expected:
            return False
    return True


# ============================================================
# EVALUATION
# ============================================================
def evaluate(normalized: dict, approval_threshold: float, business_rules: list = None,
             category: str = None, potential_duplicate: bool = False) -> dict:
    """Run built-in and custom checks. Pure; no side effects."""
    policy = get_policy()
    data = dict(normalized or {})
    if category is not None:
        data["category"] = category
    amount = _n(data.get("amount"))
    currency = data.get("currency") or "CAD"
    violations = []

    # ── 1. APPROVAL THRESHOLD ──
    if amount > approval_threshold:
        critical = amount > approval_threshold * policy["critical_threshold_multiplier"]
        violations.append({
            "rule": "Approval Threshold Exceeded",
            "severity": "critical" if critical else "high",
            "message": f"Transaction amount {format_money(amount, currency)} exceeds approval threshold of {format_money(approval_threshold, currency)}",
            "action_required": "Manual approval required"})

    # ── 2. MISSING DOCUMENTATION ──
    if amount > policy["missing_docs_min_amount"] and not data.get("description") and not data.get("counterparty"):
        violations.append({
            "rule": "Missing Documentation", "severity": "medium",
            "message": "Large transaction without description or counterparty information",
            "action_required": "Add transaction details"})

    # ── 3. WEEKEND ──
    if data.get("transaction_date"):
        try:
            weekday = datetime.fromisoformat(str(data["transaction_date"])[:10]).weekday()
        except ValueError:
            weekday = None
        if weekday in (5, 6) and amount > policy["weekend_min_amount"]:
            violations.append({
                "rule": "Weekend Large Transaction", "severity": "low",
                "message": "Large transaction on weekend may require verification"})

    # ── 4. CATEGORY / AMOUNT ──
    if data.get("category") == "meals" and amount > policy["meals_max_amount"]:
        violations.append({
            "rule": "Category Amount Mismatch", "severity": "low",
            "message": f"Meals expense of {format_money(amount, currency)} is unusually high"})

    # ── 5. DUPLICATE FLAG ──
    if potential_duplicate or data.get("potential_duplicate"):
        violations.append({
            "rule": "Potential Duplicate", "severity": "medium",
            "message": "This transaction may be a duplicate of an existing entry",
            "action_required": "Verify transaction is not duplicated"})

    # ── CUSTOM RULES ──
    rules = sorted(business_rules or [], key=lambda r: r.get("priority", 0), reverse=True)
    for rule in rules:
        conditions = rule.get("conditions") or {}
        if matches_policy_conditions(data, conditions):
            v = {"rule": rule.get("name", "Custom rule"),
                 "severity": conditions.get("severity") or "medium",
                 "message": conditions.get("message") or f'Policy rule "{rule.get("name")}" triggered'}
            if conditions.get("action"):
                v["action_required"] = conditions["action"]
            violations.append(v)

    requires_approval = any(v["severity"] in ("high", "critical") for v in violations)
    return {"is_compliant": not violations, "requires_approval": requires_approval,
            "violations": violations, "policies_checked": 5 + len(rules)}


def active_rules(user_id: str, rule_type: str) -> list:
    return db.find("business_rules", user_id=user_id, rule_type=rule_type, is_active=True,
                   order_by="priority", descending=True)


def run(ctx: StageContext) -> dict:
    normalized = ctx.normalized()
    category = ctx.result(Stage.CLASSIFICATION).get("category")
    duplicate = bool(ctx.result(Stage.DEDUPLICATION).get("is_duplicate"))
    threshold = get_approval_threshold(ctx.user_id)
    result = evaluate(normalized, threshold, active_rules(ctx.user_id, "policy"),
                      category=category, potential_duplicate=duplicate)

    op_id = ctx.master_operation_id()
    if op_id and result["requires_approval"]:
        transition_status(op_id, "pending_approval")

    for v in result["violations"]:
        if v["severity"] in ("high", "critical"):
            create_alert(ctx.user_id, "policy_violation", v["severity"], v["rule"], v["message"],
                         {"violation": v, "event_id": ctx.event_id, "master_operation_id": op_id})

    logger.info("[Policy] event=%s compliant=%s violations=%d",
                ctx.event_id, result["is_compliant"], len(result["violations"]))
    result["_audit"] = {
        "action_type": "compliance_check_passed" if result["is_compliant"] else "compliance_violations_found",
        "input_data": {"amount": normalized.get("amount"), "category": category, "approval_threshold": threshold},
        "confidence_score": max(0, 100 - 10 * len(result["violations"])),
    }
    return result
