"""
Ledgerflow — Stripe Event Adapter
Maps an already-verified Stripe event onto the ingestion gateway: the company
is found from the Stripe customer, and the event is admitted as a service call
under stripe.{type}, deduplicated on the Stripe event id.
"""

import logging
from datetime import datetime, timezone

from ledgerflow import db
from ledgerflow.errors import ValidationError
from ledgerflow.ingest import ingest

logger = logging.getLogger(__name__)

SERVICE_CALLER = {"user_id": None, "is_service": True, "authenticated": False}


def customer_id(event: dict):
    """Customer on the event object, or the object itself for customer.* events."""
    obj = event["data"]["object"]
    if isinstance(obj.get("customer"), str):
        return obj["customer"]
    if isinstance(obj.get("id"), str) and event["type"].startswith("customer."):
        return obj["id"]
    return None


def find_company(customer: str):
    """Company linked to a Stripe customer through its stripe integration.

    With no linked integration, a store holding exactly one company is treated
    as single-tenant and that company is used.
    """
    if customer:
        for integration in db.find("integrations", integration_type="stripe"):
            if (integration.get("config") or {}).get("customer_id") == customer:
                return integration.get("company_id")
    companies = db.find("companies")
    if len(companies) == 1:
        return companies[0]["id"]
    return None


def _validate(event):
    if not isinstance(event, dict):
        raise ValidationError("Stripe event must be an object")
    missing = [k for k in ("id", "type") if not event.get(k)]
    if not isinstance((event.get("data") or {}).get("object"), dict):
        missing.append("data.object")
    if missing:
        raise ValidationError("Missing required fields", {"missing": missing})


def ingest_stripe_event(event: dict, dispatch=None) -> dict:
    _validate(event)
    customer = customer_id(event)
    company_id = find_company(customer)
    logger.info("[Stripe] %s %s (customer %s)", event["type"], event["id"], customer)

    if company_id is None:
        logger.info("[Stripe] no company for customer %s, event %s not ingested", customer, event["id"])
        return {"received": True, "ingested": False, "event_type": event["type"]}

    created = event.get("created")
    occurred_at = datetime.fromtimestamp(created, tz=timezone.utc).isoformat() if created else None
    metadata = {"stripe_event_id": event["id"], "stripe_api_version": event.get("api_version"),
                "stripe_livemode": event.get("livemode")}
    admitted = ingest(company_id, "stripe", f"stripe.{event['type']}", event["data"]["object"],
                      external_id=event["id"], occurred_at=occurred_at, metadata=metadata,
                      caller=SERVICE_CALLER, dispatch=dispatch)
    return {"received": True, "ingested": True, "event_type": event["type"], "company_id": company_id, **admitted}
