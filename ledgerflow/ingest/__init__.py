"""
Ledgerflow — Ingestion Gateway

Single admission point for external events. Every submission is validated,
attributed to a user and tenant, keyed by a sha256 idempotency digest and
stored at most once per (idempotency key, source). A newly admitted event is
handed to the dispatcher exactly once; a duplicate returns the stored event
and never re-runs the pipeline.
"""

import logging
from datetime import datetime

from ledgerflow import db
from ledgerflow import events
from ledgerflow.auth import assert_company_owner
from ledgerflow.errors import ValidationError
from ledgerflow.pipeline import process_event

logger = logging.getLogger(__name__)


def validate_request(company_id, source, event_type, payload):
    missing = [name for name, value in (("company_id", company_id), ("source", source),
                                        ("event_type", event_type)) if not value]
    if payload is None:
        missing.append("payload")
    if missing:
        raise ValidationError("Missing required fields", {"missing": missing})
    events.validate_event_fields(source, event_type, payload)


def resolve_user(company: dict, caller: dict, metadata: dict) -> str:
    """Authenticated caller first, then metadata.user_id, then the company owner."""
    user_id = (caller or {}).get("user_id") or (metadata or {}).get("user_id") or company.get("user_id")
    if not user_id:
        raise ValidationError("Cannot determine user for this event")
    return user_id


def ingest(company_id: str, source: str, event_type: str, payload: dict, external_id=None,
           occurred_at: str = None, metadata: dict = None, caller: dict = None, dispatch=None) -> dict:
    """
    Admit an event exactly once.

    caller is {user_id, is_service, authenticated} from ledgerflow.auth;
    None means an in-process call with no end-user identity. dispatch is
    called with the new event id; it defaults to in-process process_event.
    """
    validate_request(company_id, source, event_type, payload)

    company = db.find_one("companies", id=company_id)
    if company is None:
        raise ValidationError("Company not found", {"company_id": company_id}, status_code=404)

    caller = caller or {}
    if source == "manual" and caller.get("authenticated") and not caller.get("is_service"):
        assert_company_owner(company, caller.get("user_id"))

    user_id = resolve_user(company, caller, metadata)
    key = events.idempotency_key(company_id, source, event_type, external_id, payload)
    now = datetime.now().isoformat()
    stored_payload = {
        **payload,
        "_metadata": {**(metadata or {}), "original_external_id": external_id,
                      "ingested_at": now, "company_id": company_id},
    }

    event, created = events.admit_event(key, source, event_type, stored_payload, user_id=user_id,
                                        tenant_id=company.get("tenant_id"),
                                        created_at=occurred_at or now)
    if not created:
        return {"event_id": event["id"], "is_duplicate": True, "idempotency_key": key}

    logger.info("[Gateway] admitted %s/%s as %s for user %s", source, event_type, event["id"], user_id)
    (dispatch or process_event)(event["id"])
    return {"event_id": event["id"], "is_duplicate": False, "idempotency_key": key}
