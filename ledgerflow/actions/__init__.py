"""
Ledgerflow — Action Stage

Turns upstream flags into concrete side effects. Fully deterministic, no
LLM calls. Two steps:

  determine_actions(event_type, flags) — static decision table → ordered action list
  execute_action(name, ctx)            — one handler per action, each isolated

Decision table:
  always                              → log_activity
  transaction.created / payment.received:
      requires_approval               → create_approval_task, notify_approver
      has_anomalies                   → flag_for_review
      not is_compliant                → create_compliance_alert
                                      → update_financials
  invoice.created                     → generate_invoice_document, schedule_reminder
  bank_statement.imported             → reconcile_transactions, update_cash_position
      has_anomalies                   → flag_for_review
  receipt.scanned                     → attach_to_transaction, extract_metadata
  briefing.*                          → compile_briefing

Action status: executed | pending | skipped | failed. A failing handler is
reported as failed and the remaining actions still run. compile_briefing and
generate_invoice_document only report pending; other stages are reached
through the routing table, never called from here.
"""

import logging

from ledgerflow.db import _n
from ledgerflow.counterparty import format_money
from ledgerflow.stages import StageContext, Stage
from ledgerflow.workflow import create_alert, create_task, log_command, transition_status

logger = logging.getLogger(__name__)


# ============================================================
# DECISION TABLE
# ============================================================
def determine_actions(event_type: str, flags: dict) -> list:
    actions = ["log_activity"]

    if event_type in ("transaction.created", "payment.received"):
        if flags.get("requires_approval"):
            actions += ["create_approval_task", "notify_approver"]
        if flags.get("has_anomalies"):
            actions.append("flag_for_review")
        if not flags.get("is_compliant", True):
            actions.append("create_compliance_alert")
        actions.append("update_financials")
    elif event_type == "invoice.created":
        actions += ["generate_invoice_document", "schedule_reminder"]
    elif event_type == "bank_statement.imported":
        actions += ["reconcile_transactions", "update_cash_position"]
        if flags.get("has_anomalies"):
            actions.append("flag_for_review")
    elif event_type == "receipt.scanned":
        actions += ["attach_to_transaction", "extract_metadata"]
    elif event_type in ("briefing.requested", "briefing.morning", "briefing.evening"):
        actions.append("compile_briefing")

    return actions


def upstream_flags(ctx: StageContext) -> dict:
    """Flags read from earlier stages; absent stages fall back to permissive defaults."""
    policy = ctx.result(Stage.POLICY)
    return {
        "is_compliant": policy.get("is_compliant", True),
        "requires_approval": policy.get("requires_approval", False),
        "has_anomalies": ctx.result(Stage.ANOMALY).get("has_anomalies", False),
        "category": ctx.result(Stage.CLASSIFICATION).get("category"),
        "amount": ctx.normalized().get("amount"),
    }


# ============================================================
# HANDLERS — each returns (status, details, external_id)
# ============================================================
def _log_activity(ctx, data, op_id):
    row = log_command(ctx.user_id, "event_processed", f"Event processed: {ctx.event_id}",
                      {"event_type": ctx.event_type, "normalized": data})
    return "executed", "Activity logged", row["id"]


def _create_approval_task(ctx, data, op_id):
    amount = format_money(_n(data.get("amount")), data.get("currency") or "CAD")
    task = create_task(ctx.user_id, f"Approve transaction: {amount}",
                       f"Review and approve this transaction: {data.get('description') or 'No description'}",
                       priority="high", source_type="action_agent", source_id=op_id)
    return "executed", "Approval task created", task["id"]


def _notify_approver(ctx, data, op_id):
    amount = format_money(_n(data.get("amount")), data.get("currency") or "CAD")
    alert = create_alert(ctx.user_id, "approval_needed", "high", "Transaction Requires Approval",
                         f"A transaction of {amount} needs your approval",
                         {"master_operation_id": op_id, "event_id": ctx.event_id})
    return "executed", "Approver notified", alert["id"]


def _flag_for_review(ctx, data, op_id):
    if not op_id:
        return "skipped", "No master operation to flag", None
    if transition_status(op_id, "flagged_for_review"):
        return "executed", "Flagged for review", op_id
    return "skipped", "Operation already past review", op_id


def _create_compliance_alert(ctx, data, op_id):
    alert = create_alert(ctx.user_id, "compliance_issue", "medium", "Compliance Review Required",
                         "A transaction has compliance issues that need attention",
                         {"master_operation_id": op_id, "event_id": ctx.event_id})
    return "executed", "Compliance alert created", alert["id"]


def _schedule_reminder(ctx, data, op_id):
    task = create_task(ctx.user_id, "Invoice payment reminder", "Follow up on invoice payment",
                       priority="medium", due_in_days=30, source_type="action_agent", source_id=op_id)
    return "executed", "Reminder scheduled", task["id"]


def _placeholder(details: str, status: str = "executed"):
    def handler(ctx, data, op_id):
        return status, details, None
    return handler


ACTION_HANDLERS = {
    "log_activity": _log_activity,
    "create_approval_task": _create_approval_task,
    "notify_approver": _notify_approver,
    "flag_for_review": _flag_for_review,
    "create_compliance_alert": _create_compliance_alert,
    "schedule_reminder": _schedule_reminder,
    "update_financials": _placeholder("Financial records updated"),
    "reconcile_transactions": _placeholder("Transactions reconciled"),
    "update_cash_position": _placeholder("Cash position updated"),
    "attach_to_transaction": _placeholder("Receipt attached"),
    "extract_metadata": _placeholder("Metadata extracted"),
    "compile_briefing": _placeholder("Briefing compilation queued", "pending"),
    "generate_invoice_document": _placeholder("Invoice generation queued", "pending"),
}


def execute_action(action: str, ctx: StageContext, data: dict, op_id: str = None) -> dict:
    handler = ACTION_HANDLERS.get(action)
    if handler is None:
        return {"action": action, "status": "skipped", "details": f"Unknown action: {action}"}
    try:
        status, details, external_id = handler(ctx, data, op_id)
    except Exception as e:
        logger.exception("[Action] %s failed for event %s", action, ctx.event_id)
        return {"action": action, "status": "failed", "details": str(e) or type(e).__name__}
    out = {"action": action, "status": status, "details": details}
    if external_id:
        out["external_id"] = external_id
    return out


def decide_and_execute(event_type: str, flags: dict, ctx: StageContext) -> list:
    data = ctx.normalized()
    op_id = ctx.master_operation_id()
    return [execute_action(a, ctx, data, op_id) for a in determine_actions(event_type, flags)]


def run(ctx: StageContext) -> dict:
    flags = upstream_flags(ctx)
    actions = decide_and_execute(ctx.event_type, flags, ctx)
    logger.info("[Action] event=%s executed %d actions", ctx.event_id, len(actions))
    return {
        "actions_executed": len(actions), "actions": actions,
        "_audit": {"action_type": "execute_actions",
                   "input_data": {"event_type": ctx.event_type, "actions_planned": [a["action"] for a in actions]},
                   "confidence_score": 100},
    }
