"""
Ledgerflow — Pipeline Orchestrator

Routes an admitted event to its ordered stage list and calls each stage in
turn, in process and synchronously.

Flow:
  1. Look up the stage list for the event type (DEFAULT_PIPELINE when unknown)
  2. Event status NEW → PROCESSING
  3. For each stage: build a StageContext holding every earlier result and
     call it. A stage that raises (or exceeds stage_timeout_seconds, when set)
     is recorded as {"error": message} and the loop continues.
  4. One AgentLog row per stage call, success or failure
  5. Event status → PROCESSED with payload.agent_results, however many
     stages failed. FAILED is reserved for orchestrator-level errors
     (event missing, store write failure).

route() is the orchestrator entry point for direct submissions. It admits
the event through the same idempotency check as the ingestion gateway, so a
repeated route call returns the stored results instead of re-running.
"""

import time
import logging
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from datetime import datetime

from ledgerflow import db
from ledgerflow import events
from ledgerflow.config import PIPELINES, DEFAULT_PIPELINE
from ledgerflow.errors import StageError, ValidationError, LedgerflowError
from ledgerflow.policy import get_policy
from ledgerflow.stages import Stage, StageContext
from ledgerflow import (normalization, matching, classification, policy as policy_stage,
                        anomalies, actions, briefing, growth)

logger = logging.getLogger(__name__)

STAGES = {
    Stage.NORMALIZATION.value: normalization.run,
    Stage.DEDUPLICATION.value: matching.run,
    Stage.CLASSIFICATION.value: classification.run,
    Stage.POLICY.value: policy_stage.run,
    Stage.ANOMALY.value: anomalies.run,
    Stage.ACTION.value: actions.run,
    Stage.BRIEFING.value: briefing.run,
    Stage.GROWTH.value: growth.run,
}


def pipeline_for(event_type: str) -> list:
    return list(PIPELINES.get(event_type, DEFAULT_PIPELINE))


# ============================================================
# SINGLE STAGE
# ============================================================
def _call(fn, ctx: StageContext, timeout):
    if not timeout:
        return fn(ctx)
    pool = ThreadPoolExecutor(max_workers=1)
    try:
        return pool.submit(fn, ctx).result(timeout=timeout)
    finally:
        # A timed-out stage thread is abandoned, not killed
        pool.shutdown(wait=False)


def _write_log(name: str, ctx: StageContext, audit: dict, output: dict, elapsed_ms: int):
    db.insert("agent_logs", {
        "agent_type": name, "action_type": audit.get("action_type") or name,
        "user_id": ctx.user_id, "event_id": ctx.event_id,
        "input_data": audit.get("input_data") or {}, "output_data": output,
        "execution_time_ms": elapsed_ms, "confidence_score": audit.get("confidence_score"),
    })


def execute_stage(name: str, ctx: StageContext) -> dict:
    """Run one stage and write its AgentLog row. Raises StageError on any failure."""
    fn = STAGES.get(name)
    if fn is None:
        raise StageError(name, f"Unknown stage: {name}")

    timeout = get_policy().get("stage_timeout_seconds")
    t0 = time.time()
    try:
        result = _call(fn, ctx, timeout)
        if not isinstance(result, dict):
            raise StageError(name, f"Stage {name} returned {type(result).__name__}, expected an object")
    except FutureTimeout:
        elapsed = round((time.time() - t0) * 1000)
        _write_log(name, ctx, {"action_type": "stage_failed"}, {"error": f"timed out after {timeout}s"}, elapsed)
        raise StageError(name, f"Stage {name} timed out after {timeout}s")
    except Exception as e:
        elapsed = round((time.time() - t0) * 1000)
        message = e.message if isinstance(e, LedgerflowError) else (str(e) or type(e).__name__)
        _write_log(name, ctx, {"action_type": "stage_failed"}, {"error": message}, elapsed)
        if isinstance(e, StageError):
            raise
        raise StageError(name, message) from e

    elapsed = round((time.time() - t0) * 1000)
    audit = result.pop("_audit", {})
    output = {"success": True, **result, "execution_time_ms": elapsed}
    _write_log(name, ctx, audit, result, elapsed)
    return output


# ============================================================
# FULL PIPELINE
# ============================================================
def _stage_payload(payload: dict) -> dict:
    return {k: v for k, v in (payload or {}).items() if k not in ("_metadata", "agent_results")}


def process_event(event_id: str) -> dict:
    """Run the routed stages for an admitted event. Returns {success, event_id, agents_invoked, results}."""
    event = events.get_event(event_id)
    if event is None:
        raise ValidationError("Event not found", {"event_id": event_id}, status_code=404)

    stages = pipeline_for(event["event_type"])
    events.set_status(event_id, "PROCESSING")
    logger.info("[Pipeline] event=%s type=%s stages=%s", event_id, event["event_type"], stages)

    payload = _stage_payload(event.get("payload"))
    results = {}
    try:
        for name in stages:
            ctx = StageContext(event_id=event_id, event_type=event["event_type"], payload=payload,
                               user_id=event.get("user_id"), previous_results=dict(results))
            try:
                results[name] = execute_stage(name, ctx)
            except StageError as e:
                logger.exception("[Pipeline] stage %s failed for event %s", name, event_id)
                results[name] = {"error": e.message}

        events.set_status(event_id, "PROCESSED", processed_at=datetime.now().isoformat(),
                          agents_invoked=stages,
                          payload={**(event.get("payload") or {}), "agent_results": results})
    except LedgerflowError:
        logger.exception("[Pipeline] event %s could not be completed", event_id)
        try:
            events.set_status(event_id, "FAILED")
        except LedgerflowError:
            logger.exception("[Pipeline] could not mark event %s FAILED", event_id)
        raise

    failed = [n for n, r in results.items() if "error" in r]
    logger.info("[Pipeline] event=%s processed (%d stages, %d failed)", event_id, len(stages), len(failed))
    return {"success": True, "event_id": event_id, "agents_invoked": stages, "results": results}


def route(event_type: str, source: str, payload: dict, external_id=None, user_id: str = None) -> dict:
    """Admit (idempotently) and process an event in one call."""
    events.validate_event_fields(source, event_type, payload)
    key = events.idempotency_key(user_id or "anonymous", source, event_type, external_id, payload)
    event, created = events.admit_event(key, source, event_type,
                                        {**payload, "_metadata": {"original_external_id": external_id,
                                                                  "ingested_at": datetime.now().isoformat()}},
                                        user_id=user_id)
    if not created:
        stored = (event.get("payload") or {}).get("agent_results") or {}
        return {"success": True, "event_id": event["id"], "is_duplicate": True,
                "agents_invoked": event.get("agents_invoked") or [], "results": stored}
    out = process_event(event["id"])
    out["is_duplicate"] = False
    return out
