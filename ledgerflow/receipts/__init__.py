"""
Ledgerflow — Receipt Scanning
Vision extraction of receipt/invoice images through the Anthropic Messages API.
The model returns a constrained JSON object which may then be admitted through
the gateway as a receipt.scanned event.
"""

import re
import json
import time
import logging

import anthropic
from starlette.concurrency import run_in_threadpool

from ledgerflow.config import USE_REAL_API, RECEIPT_MODEL, RECEIPT_MAX_TOKENS
from ledgerflow.errors import ValidationError, UpstreamServiceError
from ledgerflow.ingest import ingest

logger = logging.getLogger(__name__)

RECEIPT_PROMPT = """You are an OCR assistant that extracts data from receipts and invoices.
Analyze the image and extract the following information in JSON format:
{
  "total": number (the total amount, use 0 if not found),
  "date": "YYYY-MM-DD" (the date on the receipt, use null if not found),
  "merchant": "string" (establishment/vendor name, use "Unknown" if not found),
  "type": "income" or "expense" (income like a payment received, expense like a purchase),
  "suggested_category": "string" (a category like "Food", "Transport", "Office", "Services"),
  "items": [{"name": "string", "amount": number}] (list of items if visible, empty array if not)
}
IMPORTANT: Return ONLY valid JSON, no markdown, no explanation."""

IMAGE_TYPES = ["image/jpeg", "image/png", "image/gif", "image/webp"]
DATA_URL = re.compile(r"^data:(?P<media>[\w/+.-]+);base64,(?P<data>.*)$", re.S)


def default_receipt() -> dict:
    return {"total": 0, "date": None, "merchant": "Unknown", "type": "expense",
            "suggested_category": "Other", "items": []}


def image_block(image_base64: str) -> dict:
    """Anthropic image content block from raw base64 or a data: URL."""
    media_type, data = "image/jpeg", image_base64
    m = DATA_URL.match(image_base64)
    if m:
        media_type, data = m.group("media"), m.group("data")
    if media_type not in IMAGE_TYPES:
        media_type = "image/jpeg"
    return {"type": "image", "source": {"type": "base64", "media_type": media_type, "data": data}}


def parse_reply(text: str) -> dict:
    """Strip markdown fences and parse; unparseable replies become the default receipt."""
    text = (text or "").strip()
    if text.startswith("```"):
        first_nl = text.index("\n") if "\n" in text else len(text)
        text = text[first_nl + 1:]
        if text.endswith("```"):
            text = text[:-3]
        text = text.strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        logger.warning("[Receipt] could not parse model reply: %s", e)
        return default_receipt()
    if not isinstance(data, dict):
        return default_receipt()
    return {**default_receipt(), **data}


def _is_quota_error(e: anthropic.APIStatusError) -> bool:
    if e.status_code == 402:
        return True
    text = str(e).lower()
    return any(w in text for w in ("credit balance", "billing", "quota"))


async def scan_receipt(image_base64: str, client=None) -> dict:
    """Extract {total, date, merchant, type, suggested_category, items} from a receipt image."""
    if not image_base64:
        raise ValidationError("No image provided")
    if client is None:
        if not USE_REAL_API:
            raise UpstreamServiceError("AI service not configured", status_code=500)
        client = anthropic.AsyncAnthropic()

    t0 = time.time()
    try:
        msg = await client.messages.create(
            model=RECEIPT_MODEL, max_tokens=RECEIPT_MAX_TOKENS,
            messages=[{"role": "user", "content": [
                image_block(image_base64),
                {"type": "text", "text": RECEIPT_PROMPT + "\n\nExtract the data from this receipt/invoice image:"},
            ]}])
    except anthropic.RateLimitError as e:
        logger.warning("[Receipt] rate limited: %s", e)
        raise UpstreamServiceError("Rate limit exceeded. Please try again later.", status_code=429) from e
    except anthropic.APIStatusError as e:
        if _is_quota_error(e):
            logger.error("[Receipt] AI credits exhausted: %s", e)
            raise UpstreamServiceError("AI credits exhausted. Please add funds.", status_code=402) from e
        logger.error("[Receipt] AI API error %s: %s", e.status_code, e)
        raise UpstreamServiceError("Failed to analyze receipt", status_code=502) from e
    except anthropic.APIError as e:
        logger.error("[Receipt] AI API error: %s", e)
        raise UpstreamServiceError("Failed to analyze receipt", status_code=502) from e

    text = msg.content[0].text if msg.content else ""
    data = parse_reply(text)
    logger.info("[Receipt] extracted merchant=%s total=%s in %dms",
                data.get("merchant"), data.get("total"), round((time.time() - t0) * 1000))
    return data


def receipt_payload(data: dict) -> dict:
    """Event payload for a scanned receipt; normalization reads amount/date/merchant/type."""
    return {
        "amount": data.get("total"), "date": data.get("date"), "merchant": data.get("merchant"),
        "description": f"Receipt: {data.get('merchant') or 'Unknown'}",
        "type": data.get("type") or "expense", "category_hint": data.get("suggested_category"),
        "items": data.get("items") or [], "scanned": True,
    }


async def scan_and_ingest(company_id: str, image_base64: str, caller: dict = None, client=None) -> dict:
    data = await scan_receipt(image_base64, client=client)
    admitted = await run_in_threadpool(ingest, company_id, "docs", "receipt.scanned", receipt_payload(data),
                                       caller=caller)
    return {"data": data, **admitted}
