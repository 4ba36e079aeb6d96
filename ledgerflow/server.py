"""
Ledgerflow — Event Ingestion & Agent Pipeline API
JSON-over-HTTP surface for the gateway, the orchestrator, single stage calls,
receipt scanning and bank statement import.
"""

import os
import logging

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

from ledgerflow import db, events
from ledgerflow.auth import caller_from_request, optional_caller, require_service
from ledgerflow.config import USE_REAL_API, RESET_ON_START, LOG_LEVEL, PIPELINES, DEFAULT_PIPELINE
from ledgerflow.errors import LedgerflowError, ValidationError, StageError
from ledgerflow.ingest import ingest
from ledgerflow.payments import ingest_stripe_event
from ledgerflow.pipeline import route, execute_stage, STAGES
from ledgerflow.policy import get_policy, update_policy
from ledgerflow.receipts import scan_receipt, scan_and_ingest
from ledgerflow.stages import StageContext
from ledgerflow.statements import parse_statement, import_statement

logger = logging.getLogger(__name__)

VERSION = "1.0.0"

app = FastAPI(title="Ledgerflow", version=VERSION)
app.add_middleware(CORSMiddleware, allow_origins=["*"], allow_credentials=True, allow_methods=["*"], allow_headers=["*"])

if RESET_ON_START:
    db.reset_db()
    logger.info("[Server] RESET_ON_START: store cleared")


# ============================================================
# ERROR MAPPING
# ============================================================
@app.exception_handler(LedgerflowError)
async def ledgerflow_error(request: Request, exc: LedgerflowError):
    if exc.status_code >= 500:
        logger.error("[Server] %s %s → %s: %s", request.method, request.url.path, exc.status_code, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


# ============================================================
# ROUTES
# ============================================================
@app.get("/health")
async def health():
    return {"status": "ok", "product": "Ledgerflow", "version": VERSION,
            "claude_api": "connected" if USE_REAL_API else "not_configured",
            "stages": list(STAGES), "event_types": sorted(PIPELINES), "default_pipeline": DEFAULT_PIPELINE}


@app.post("/ingest")
async def ingest_event(request: Request):
    caller = caller_from_request(request)
    body = await _json_body(request)
    result = await run_in_threadpool(
        ingest, body.get("company_id"), body.get("source"), body.get("event_type"), body.get("payload"),
        external_id=body.get("external_id"), occurred_at=body.get("occurred_at"),
        metadata=body.get("metadata"), caller=caller)
    return {"success": True, **result}


@app.post("/route")
async def route_event(request: Request):
    caller = optional_caller(request) or {}
    body = await _json_body(request)
    return await run_in_threadpool(
        route, body.get("event_type"), body.get("source") or "integration", body.get("payload"),
        external_id=body.get("external_id"), user_id=body.get("user_id") or caller.get("user_id"))


@app.post("/stage/{name}")
async def run_stage(name: str, request: Request):
    if name not in STAGES:
        return JSONResponse({"error": f"Unknown stage: {name}"}, status_code=404)
    body = await _json_body(request)
    try:
        return await run_in_threadpool(execute_stage, name, StageContext.from_dict(body))
    except StageError as e:
        logger.exception("[Server] stage %s failed", name)
        return JSONResponse({"error": e.message}, status_code=500)


@app.post("/receipts/scan")
async def scan(request: Request):
    body = await _json_body(request)
    image = body.get("imageBase64") or body.get("image_base64")
    if body.get("company_id"):
        caller = caller_from_request(request)
        return {"success": True, **(await scan_and_ingest(body["company_id"], image, caller=caller))}
    return {"success": True, "data": await scan_receipt(image)}


@app.post("/statements/parse")
async def parse(request: Request):
    body = await _json_body(request)
    rows = parse_statement(body.get("content"), body.get("fileName") or body.get("filename") or "",
                           body.get("fileType") or body.get("file_type"))
    return {"transactions": rows}


@app.post("/statements/import")
async def import_(request: Request):
    caller = caller_from_request(request)
    body = await _json_body(request)
    if not body.get("company_id"):
        raise ValidationError("Missing required fields", {"missing": ["company_id"]})
    result = await run_in_threadpool(
        import_statement, body["company_id"], body.get("content"),
        body.get("fileName") or body.get("filename") or "",
        caller=caller, file_type=body.get("fileType") or body.get("file_type"))
    return {"success": True, **result}


@app.get("/events/{event_id}")
async def get_event(event_id: str, request: Request):
    caller = caller_from_request(request)
    event = events.get_event(event_id)
    if event is None or (not caller["is_service"] and event.get("user_id") != caller["user_id"]):
        return JSONResponse({"error": "Event not found"}, status_code=404)
    return event


@app.get("/policy")
async def read_policy():
    return get_policy()


@app.put("/policy")
async def write_policy(request: Request):
    require_service(caller_from_request(request))
    body = await _json_body(request)
    return update_policy(body)


@app.post("/webhooks/stripe")
async def stripe_event(request: Request):
    require_service(caller_from_request(request))
    body = await _json_body(request)
    return await run_in_threadpool(ingest_stripe_event, body)


def main():
    import uvicorn
    logging.basicConfig(level=LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    port = int(os.environ.get("PORT", 8000))
    logger.info("Starting Ledgerflow v%s on port %d (Claude API: %s)", VERSION, port,
                "connected" if USE_REAL_API else "not configured")
    uvicorn.run(app, host="0.0.0.0", port=port)


if __name__ == "__main__":
    main()
