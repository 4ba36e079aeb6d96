"""Unit tests for the pipeline orchestrator."""

import time

from ledgerflow import db, events, pipeline
from ledgerflow.pipeline import execute_stage, pipeline_for, process_event, route
from ledgerflow.policy import update_policy
from ledgerflow.stages import StageContext

USER = "user-pipe"

CONSULTING = {"amount": 150, "description": "Consulting fee from Acme Inc", "type": "income"}


def _admit(event_type: str, payload: dict) -> str:
    key = events.idempotency_key(USER, "manual", event_type, None, payload)
    event, _ = events.admit_event(key, "manual", event_type, payload, user_id=USER)
    return event["id"]


def test_routing_table_and_default() -> None:
    """Ensure known event types route to their stage list and unknown ones get the default."""
    assert pipeline_for("transaction.created") == [
        "normalization", "deduplication", "classification", "policy", "anomaly", "action"]
    assert pipeline_for("briefing.requested") == ["briefing"]
    assert pipeline_for("something.new") == ["normalization", "classification"]


def test_end_to_end_manual_income() -> None:
    """Ensure a small consulting income flows through every stage cleanly."""
    event_id = _admit("transaction.created", CONSULTING)

    out = process_event(event_id)

    results = out["results"]
    assert out["success"] is True
    assert out["agents_invoked"] == pipeline_for("transaction.created")
    assert results["normalization"]["normalized_data"]["operation_type"] == "income"
    assert results["classification"]["category"] == "consulting"
    assert results["policy"]["is_compliant"] is True
    assert results["policy"]["requires_approval"] is False
    assert results["anomaly"]["has_anomalies"] is False
    log_activity = next(a for a in results["action"]["actions"] if a["action"] == "log_activity")
    assert log_activity["status"] == "executed"
    assert all(r["success"] is True and "execution_time_ms" in r for r in results.values())

    event = events.get_event(event_id)
    assert event["status"] == "PROCESSED"
    assert event["processed_at"]
    assert event["payload"]["agent_results"]["classification"]["category"] == "consulting"
    assert event["payload"]["amount"] == 150


def test_one_agent_log_per_stage() -> None:
    """Ensure every stage call writes exactly one AgentLog row."""
    event_id = _admit("transaction.created", CONSULTING)

    process_event(event_id)

    logs = db.find("agent_logs", event_id=event_id)
    assert sorted(l["agent_type"] for l in logs) == sorted(pipeline_for("transaction.created"))
    classification = next(l for l in logs if l["agent_type"] == "classification")
    assert classification["action_type"] == "auto_classify"
    assert classification["confidence_score"] == 70
    assert "_audit" not in classification["output_data"]


def test_failing_stage_is_isolated(monkeypatch) -> None:
    """Ensure a raising stage is recorded as an error and the rest still run."""
    def broken(ctx):
        raise RuntimeError("classifier unavailable")

    monkeypatch.setitem(pipeline.STAGES, "classification", broken)
    event_id = _admit("transaction.created", CONSULTING)

    out = process_event(event_id)

    assert out["results"]["classification"] == {"error": "classifier unavailable"}
    assert out["results"]["policy"]["success"] is True
    assert out["results"]["action"]["success"] is True
    assert events.get_event(event_id)["status"] == "PROCESSED"
    failed_log = db.find_one("agent_logs", event_id=event_id, agent_type="classification")
    assert failed_log["output_data"] == {"error": "classifier unavailable"}


def test_every_stage_failing_still_processes(monkeypatch) -> None:
    """Ensure even total stage failure ends PROCESSED, never FAILED."""
    def broken(ctx):
        raise ValueError("down")

    for name in list(pipeline.STAGES):
        monkeypatch.setitem(pipeline.STAGES, name, broken)
    event_id = _admit("transaction.created", CONSULTING)

    out = process_event(event_id)

    assert all(r == {"error": "down"} for r in out["results"].values())
    assert events.get_event(event_id)["status"] == "PROCESSED"


def test_downstream_stage_sees_failed_upstream_as_empty(monkeypatch) -> None:
    """Ensure later stages fall back to defaults when an upstream slot holds an error."""
    def broken(ctx):
        raise RuntimeError("no policy today")

    monkeypatch.setitem(pipeline.STAGES, "policy", broken)
    event_id = _admit("transaction.created", {**CONSULTING, "amount": 9000})

    out = process_event(event_id)

    planned = [a["action"] for a in out["results"]["action"]["actions"]]
    assert "create_approval_task" not in planned


def test_stage_timeout(monkeypatch) -> None:
    """Ensure a stage exceeding stage_timeout_seconds is recorded as failed."""
    def slow(ctx):
        time.sleep(0.5)
        return {}

    monkeypatch.setitem(pipeline.STAGES, "growth", slow)
    update_policy({"stage_timeout_seconds": 0.05})
    event_id = _admit("growth.analyze", {})

    out = process_event(event_id)

    assert "timed out" in out["results"]["growth"]["error"]
    assert events.get_event(event_id)["status"] == "PROCESSED"


def test_execute_stage_direct() -> None:
    """Ensure a single stage call adds success and timing to its output."""
    ctx = StageContext("evt-x", "transaction.created", {"amount": "42", "memo": "Coffee"}, USER)

    out = execute_stage("normalization", ctx)

    assert out["success"] is True
    assert isinstance(out["execution_time_ms"], int)
    assert out["normalized_data"]["amount"] == 42.0
    assert "_audit" not in out


def test_route_is_idempotent() -> None:
    """Ensure a repeated route call returns stored results without re-running stages."""
    first = route("transaction.created", "manual", CONSULTING, external_id="ext-1", user_id=USER)
    second = route("transaction.created", "manual", CONSULTING, external_id="ext-1", user_id=USER)

    assert first["is_duplicate"] is False
    assert second["is_duplicate"] is True
    assert second["event_id"] == first["event_id"]
    assert second["results"]["classification"]["category"] == "consulting"
    assert second["agents_invoked"] == first["agents_invoked"]
    assert len(db.find("events")) == 1
    assert len(db.find("master_operations", user_id=USER)) == 1
    assert len(db.find("agent_logs", event_id=first["event_id"])) == 6
