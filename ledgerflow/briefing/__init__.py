"""
Ledgerflow — Briefing Stage
Executive morning/evening summary compiled from tasks, alerts and recent operations.
"""

import logging
from datetime import datetime, timedelta

from ledgerflow import db
from ledgerflow.db import _n
from ledgerflow.workflow import pending_tasks
from ledgerflow.stages import StageContext

logger = logging.getLogger(__name__)

BRIEFING_CURRENCY = "CAD"


def briefing_type_for(now: datetime) -> str:
    return "morning" if now.hour < 12 else "evening"


def gather(user_id: str, now: datetime) -> dict:
    """Pull the raw inputs: top tasks, unread alerts, 7-day operations, 30-day cash flow."""
    week_ago = (now - timedelta(days=7)).isoformat()
    month_ago = (now - timedelta(days=30)).date().isoformat()
    return {
        "tasks": pending_tasks(user_id, limit=5),
        "alerts": db.find("alerts", user_id=user_id, is_read=False,
                          order_by="created_at", descending=True, limit=5),
        "recent": db.find("master_operations", user_id=user_id,
                          where=lambda op: (op.get("created_at") or "") >= week_ago,
                          order_by="created_at", descending=True),
        "month": db.find("master_operations", user_id=user_id,
                         where=lambda op: (op.get("transaction_date") or "") >= month_ago),
    }


def build_content(briefing_type: str, tasks: list, alerts: list, recent: list, month: list,
                  now: datetime) -> dict:
    income = sum(_n(o.get("amount")) for o in month if o.get("operation_type") == "income")
    expenses = sum(_n(o.get("amount")) for o in month if o.get("operation_type") == "expense")
    net = income - expenses
    pending_approvals = sum(1 for o in recent if o.get("status") == "pending_approval")
    flagged = sum(1 for o in recent if o.get("status") == "flagged_for_review")
    high_tasks = [t for t in tasks if t.get("priority") in ("high", "critical")]
    critical_alerts = [a for a in alerts if a.get("severity") in ("high", "critical")]

    if briefing_type == "morning":
        summary = "Good morning! Here's your executive briefing for today. "
    else:
        summary = "Good evening! Here's your end-of-day summary. "
    if net >= 0:
        summary += f"Your 30-day cash flow is positive at ${net:,.2f} {BRIEFING_CURRENCY}. "
    else:
        summary += f"Attention: Your 30-day cash flow is negative at -${abs(net):,.2f} {BRIEFING_CURRENCY}. "
    if pending_approvals:
        summary += f"You have {pending_approvals} transaction(s) pending approval. "
    if flagged:
        summary += f"{flagged} item(s) flagged for review. "
    if high_tasks:
        summary += f"{len(high_tasks)} high-priority task(s) require attention."

    action_items = []
    if pending_approvals:
        action_items.append(f"Review {pending_approvals} pending approval(s)")
    if flagged:
        action_items.append(f"Investigate {flagged} flagged transaction(s)")
    if critical_alerts:
        action_items.append(f"Address {len(critical_alerts)} critical alert(s)")
    if high_tasks:
        action_items.append(f"Complete {len(high_tasks)} high-priority task(s)")

    return {
        "summary": summary.strip(),
        "generated_at": now.isoformat(),
        "briefing_type": briefing_type,
        "priorities": [{"rank": i + 1, "title": t.get("title"), "priority": t.get("priority"),
                        "due_date": t.get("due_date")} for i, t in enumerate(tasks[:3])],
        "alerts": {
            "total": len(alerts), "critical": len(critical_alerts),
            "items": [{"title": a.get("title"), "severity": a.get("severity"), "type": a.get("alert_type")}
                      for a in alerts[:3]],
        },
        "financial_snapshot": {
            "period": "Last 30 days", "income": round(income, 2), "expenses": round(expenses, 2),
            "net_cash_flow": round(net, 2), "currency": BRIEFING_CURRENCY,
            "trend": "positive" if net >= 0 else "negative",
        },
        "action_items": action_items,
        "metrics": {
            "pending_tasks": len(tasks), "pending_approvals": pending_approvals,
            "flagged_items": flagged, "recent_operations": len(recent),
        },
    }


def compile_briefing(user_id: str, now: datetime = None) -> dict:
    """Build and persist a briefing. Returns {briefing_id, briefing_type, content}."""
    now = now or datetime.now()
    briefing_type = briefing_type_for(now)
    inputs = gather(user_id, now)
    content = build_content(briefing_type, inputs["tasks"], inputs["alerts"],
                            inputs["recent"], inputs["month"], now)
    row = db.insert("briefings", {"user_id": user_id, "briefing_type": briefing_type,
                                  "content": content, "generated_at": content["generated_at"]})
    logger.info("[Briefing] created %s briefing %s for %s", briefing_type, row["id"], user_id)
    return {"briefing_id": row["id"], "briefing_type": briefing_type, "content": content}


def run(ctx: StageContext) -> dict:
    result = compile_briefing(ctx.user_id)
    metrics = result["content"]["metrics"]
    result["_audit"] = {"action_type": f"generate_{result['briefing_type']}_briefing",
                        "input_data": {"pending_tasks": metrics["pending_tasks"],
                                       "recent_alerts": result["content"]["alerts"]["total"]},
                        "confidence_score": 100}
    return result
