"""
Ledgerflow — Event Records
Idempotency keys, exactly-once admission and status bookkeeping for events.
"""
import json
import hashlib
import logging
from datetime import datetime

from ledgerflow import db
from ledgerflow.config import VALID_SOURCES, EVENT_STATUSES
from ledgerflow.errors import ValidationError

logger = logging.getLogger(__name__)


def idempotency_key(scope: str, source: str, event_type: str, external_id=None, payload: dict = None) -> str:
    """sha256 over scope:source:event_type:(external_id or canonical payload JSON)."""
    token = str(external_id) if external_id else json.dumps(payload or {}, sort_keys=True, separators=(",", ":"), default=str)
    raw = f"{scope}:{source}:{event_type}:{token}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def validate_event_fields(source, event_type, payload):
    if not event_type or not isinstance(event_type, str):
        raise ValidationError("Missing required fields", {"event_type": "required"})
    if not isinstance(payload, dict):
        raise ValidationError("Payload must be an object", {"payload": "must be a JSON object"})
    if source not in VALID_SOURCES:
        raise ValidationError(f"Invalid source. Must be one of: {', '.join(VALID_SOURCES)}",
                              {"source": source, "valid_sources": VALID_SOURCES})


def admit_event(key: str, source: str, event_type: str, payload: dict, user_id: str = None,
                tenant_id: str = None, created_at: str = None) -> tuple:
    """Insert a NEW event unless one with the same (external_id, source) exists. Returns (event, created)."""
    record = {
        "event_type": event_type, "source": source, "external_id": key,
        "payload": payload, "user_id": user_id, "tenant_id": tenant_id,
        "status": "NEW", "created_at": created_at or datetime.now().isoformat(),
        "processed_at": None,
    }
    event, created = db.insert_if_absent("events", {"external_id": key, "source": source}, record)
    if not created:
        logger.info("[Events] duplicate %s/%s → %s", source, event_type, event["id"])
    return event, created


def get_event(event_id: str):
    return db.find_one("events", id=event_id)


def set_status(event_id: str, status: str, **fields) -> dict:
    if status not in EVENT_STATUSES:
        raise ValueError(f"Unknown event status: {status}")
    return db.update("events", event_id, {"status": status, **fields})
