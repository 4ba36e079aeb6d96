"""
Ledgerflow — Anomaly Detection Module

Deterministic statistical and pattern checks against the user's recent
history (≤100 master operations, newest transaction_date first). Needs at
least 5 historical points; with fewer, nothing is ever flagged.

Rules:
  1. Amount Outlier — |z| > 3 (high), |z| > 5 (critical); confidence 70 + 5|z|, cap 95
     Unusual Amount — 2 < |z| ≤ 3 (medium)
  2. Category Spending Spike — ≥3 same-category points, amount > 3× their mean (medium)
  3. High Transaction Frequency — ≥5 other transactions on the same date (low)
  4. Round Number Transaction — amount > 100 and a multiple of 100 (low)
  5. Large Expense Relative to Income — ≥10 expenses, ≥3 incomes, expense > 50% of mean income (high)

z-score uses the population standard deviation.
"""

import logging

import numpy as np

from ledgerflow import db
from ledgerflow.db import _n
from ledgerflow.counterparty import format_money
from ledgerflow.policy import get_policy
from ledgerflow.stages import StageContext, Stage
from ledgerflow.workflow import create_alert

logger = logging.getLogger(__name__)


def load_history(user_id: str, exclude_id: str = None, limit: int = None) -> list:
    limit = limit or get_policy()["anomaly_history_limit"]
    return db.find("master_operations", user_id=user_id,
                   where=lambda op: op.get("id") != exclude_id,
                   order_by="transaction_date", descending=True, limit=limit)


def detect(normalized: dict, historical: list, category: str = None) -> dict:
    """Run every rule. Pure; returns {has_anomalies, anomaly_count, critical_count, anomalies}."""
    policy = get_policy()
    anomalies = []
    amount = _n(normalized.get("amount"))
    currency = normalized.get("currency") or "CAD"
    operation_type = normalized.get("operation_type")

    if len(historical) >= policy["anomaly_min_history"]:
        amounts = np.array([_n(h.get("amount")) for h in historical], dtype=float)
        mean = float(amounts.mean())
        std = float(amounts.std())

        # ── 1. AMOUNT OUTLIER ──
        z = (amount - mean) / std if std > 0 else 0.0
        if abs(z) > policy["outlier_z"]:
            anomalies.append({
                "type": "Amount Outlier",
                "severity": "critical" if abs(z) > policy["critical_z"] else "high",
                "description": f"Transaction amount {format_money(amount, currency)} is "
                               f"{'significantly higher' if z > 0 else 'significantly lower'} "
                               f"than historical average ({format_money(mean, currency)})",
                "confidence": round(min(95.0, 70 + abs(z) * 5), 1),
                "z_score": round(z, 2),
                "recommendation": "Review this transaction for accuracy"})
        elif abs(z) > policy["unusual_z"]:
            anomalies.append({
                "type": "Unusual Amount", "severity": "medium",
                "description": f"Transaction amount is {'higher' if z > 0 else 'lower'} than typical",
                "confidence": 75, "z_score": round(z, 2)})

        # ── 2. CATEGORY SPIKE ──
        if category:
            cat_amounts = [_n(h.get("amount")) for h in historical if h.get("category") == category]
            if len(cat_amounts) >= 3:
                cat_mean = float(np.mean(cat_amounts))
                if amount > cat_mean * 3:
                    anomalies.append({
                        "type": "Category Spending Spike", "severity": "medium",
                        "description": f"This {category} transaction is 3x higher than your average",
                        "confidence": 80,
                        "recommendation": f"Your typical {category} amount is around {format_money(cat_mean, currency)}"})

        # ── 3. SAME-DAY FREQUENCY ──
        tx_date = normalized.get("transaction_date")
        if tx_date:
            same_day = sum(1 for h in historical if h.get("transaction_date") == tx_date)
            if same_day >= 5:
                anomalies.append({
                    "type": "High Transaction Frequency", "severity": "low",
                    "description": f"Multiple transactions on the same day ({same_day + 1} total)",
                    "confidence": 70})

        # ── 4. ROUND NUMBER ──
        if amount > 100 and amount % 100 == 0:
            anomalies.append({
                "type": "Round Number Transaction", "severity": "low",
                "description": "Perfectly round amount may indicate an estimate rather than actual expense",
                "confidence": 60})

        # ── 5. EXPENSE / INCOME RATIO ──
        expenses = [h for h in historical if h.get("operation_type") == "expense"]
        incomes = [_n(h.get("amount")) for h in historical if h.get("operation_type") == "income"]
        if len(expenses) >= 10 and len(incomes) >= 3 and operation_type == "expense":
            if amount > float(np.mean(incomes)) * 0.5:
                anomalies.append({
                    "type": "Large Expense Relative to Income", "severity": "high",
                    "description": "This single expense represents more than 50% of your average income",
                    "confidence": 85,
                    "recommendation": "Ensure you have sufficient cash flow for this expense"})

    critical = [a for a in anomalies if a["severity"] in ("high", "critical")]
    return {"has_anomalies": bool(anomalies), "anomaly_count": len(anomalies),
            "critical_count": len(critical), "anomalies": anomalies}


def run(ctx: StageContext) -> dict:
    normalized = ctx.normalized()
    category = ctx.result(Stage.CLASSIFICATION).get("category")
    history = load_history(ctx.user_id, exclude_id=ctx.master_operation_id())
    result = detect(normalized, history, category)

    for a in result["anomalies"]:
        if a["severity"] in ("high", "critical"):
            create_alert(ctx.user_id, "anomaly_detected", a["severity"], f"Anomaly: {a['type']}",
                         a["description"], {"anomaly": a, "event_id": ctx.event_id,
                                            "transaction_amount": normalized.get("amount"),
                                            "transaction_date": normalized.get("transaction_date")})

    logger.info("[Anomaly] event=%s detected %d (%d critical/high) over %d history points",
                ctx.event_id, result["anomaly_count"], result["critical_count"], len(history))
    result["_audit"] = {
        "action_type": "anomalies_detected" if result["has_anomalies"] else "no_anomalies",
        "input_data": {"amount": normalized.get("amount"), "category": category,
                       "historical_count": len(history)},
        "confidence_score": result["anomalies"][0]["confidence"] if result["anomalies"] else 100,
    }
    return result
