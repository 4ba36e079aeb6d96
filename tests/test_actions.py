"""Unit tests for the action decision table and handler isolation."""

from ledgerflow import actions, db
from ledgerflow.actions import determine_actions, run
from ledgerflow.matching import dedup
from ledgerflow.stages import StageContext

USER = "user-act"


def _ctx(event_type: str = "transaction.created", normalized: dict = None, **previous) -> StageContext:
    results = {"normalization": {"normalized_data": normalized or {"amount": 1500.0, "currency": "CAD",
                                                                    "description": "Laptop purchase"}}}
    results.update(previous)
    return StageContext("evt-act", event_type, {}, USER, results)


def _statuses(result: dict) -> dict:
    return {a["action"]: a["status"] for a in result["actions"]}


def test_decision_table_for_transactions() -> None:
    """Ensure flags select approval, review and compliance actions in order."""
    planned = determine_actions("transaction.created", {
        "requires_approval": True, "has_anomalies": True, "is_compliant": False})

    assert planned == ["log_activity", "create_approval_task", "notify_approver",
                       "flag_for_review", "create_compliance_alert", "update_financials"]


def test_decision_table_other_event_types() -> None:
    """Ensure each event family gets its fixed actions."""
    assert determine_actions("invoice.created", {}) == [
        "log_activity", "generate_invoice_document", "schedule_reminder"]
    assert determine_actions("receipt.scanned", {}) == [
        "log_activity", "attach_to_transaction", "extract_metadata"]
    assert determine_actions("briefing.requested", {}) == ["log_activity", "compile_briefing"]
    assert determine_actions("unknown.type", {}) == ["log_activity"]


def test_requires_approval_creates_task_and_alert() -> None:
    """Ensure approval actions write a high-priority task and an approval alert."""
    dd = dedup({"amount": 1500.0, "description": "Laptop purchase", "transaction_date": "2024-05-01"}, USER)
    ctx = _ctx(policy={"is_compliant": False, "requires_approval": True}, deduplication=dd)

    result = run(ctx)

    statuses = _statuses(result)
    assert statuses["log_activity"] == "executed"
    assert statuses["create_approval_task"] == "executed"
    assert statuses["notify_approver"] == "executed"
    task = db.find_one("tasks", user_id=USER)
    assert task["priority"] == "high"
    assert task["title"] == "Approve transaction: $1,500.00"
    assert task["source_id"] == dd["master_operation_id"]
    assert db.find("alerts", user_id=USER, alert_type="approval_needed")
    assert len(db.find("command_logs", user_id=USER)) == 1


def test_flag_for_review_transitions_status() -> None:
    """Ensure anomalies move the master operation to flagged_for_review."""
    dd = dedup({"amount": 75.0, "transaction_date": "2024-05-02"}, USER)

    result = run(_ctx(anomaly={"has_anomalies": True}, deduplication=dd))

    assert _statuses(result)["flag_for_review"] == "executed"
    assert db.find_one("master_operations", id=dd["master_operation_id"])["status"] == "flagged_for_review"


def test_flag_for_review_without_operation_is_skipped() -> None:
    """Ensure flagging is skipped when deduplication did not run."""
    result = run(_ctx(anomaly={"has_anomalies": True}))

    assert _statuses(result)["flag_for_review"] == "skipped"


def test_failing_action_does_not_stop_the_rest(monkeypatch) -> None:
    """Ensure one handler raising is reported failed and later actions still run."""
    def explode(ctx, data, op_id):
        raise RuntimeError("approver service down")

    monkeypatch.setitem(actions.ACTION_HANDLERS, "notify_approver", explode)

    result = run(_ctx(policy={"is_compliant": True, "requires_approval": True}))

    statuses = _statuses(result)
    assert statuses["notify_approver"] == "failed"
    assert statuses["create_approval_task"] == "executed"
    assert statuses["update_financials"] == "executed"
    failed = next(a for a in result["actions"] if a["action"] == "notify_approver")
    assert failed["details"] == "approver service down"


def test_pending_actions_report_pending() -> None:
    """Ensure queued-only actions report pending rather than executed."""
    result = run(_ctx("invoice.created"))

    assert _statuses(result)["generate_invoice_document"] == "pending"
    assert _statuses(result)["schedule_reminder"] == "executed"
    assert result["actions_executed"] == 3
