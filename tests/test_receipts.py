"""Unit tests for receipt scanning with a stubbed Anthropic client."""

import asyncio
from types import SimpleNamespace

import anthropic
import httpx
import pytest

from ledgerflow import db, events
from ledgerflow.errors import UpstreamServiceError, ValidationError
from ledgerflow.receipts import image_block, parse_reply, scan_and_ingest, scan_receipt

REQUEST = httpx.Request("POST", "https://api.anthropic.com/v1/messages")


class StubMessages:
    def __init__(self, reply: str = None, error: Exception = None) -> None:
        self.reply = reply
        self.error = error
        self.calls = []

    async def create(self, **kwargs):
        self.calls.append(kwargs)
        if self.error is not None:
            raise self.error
        return SimpleNamespace(content=[SimpleNamespace(text=self.reply)])


class StubClient:
    def __init__(self, reply: str = None, error: Exception = None) -> None:
        self.messages = StubMessages(reply, error)


def _status_error(cls, status: int, message: str = "error"):
    return cls(message, response=httpx.Response(status, request=REQUEST), body=None)


def test_fenced_json_reply_is_parsed() -> None:
    """Ensure markdown fences around the JSON object are stripped."""
    reply = '```json\n{"total": 42.5, "merchant": "Cafe Uno", "type": "expense", "items": []}\n```'

    data = parse_reply(reply)

    assert data["total"] == 42.5
    assert data["merchant"] == "Cafe Uno"
    assert data["suggested_category"] == "Other"


def test_unparseable_reply_falls_back_to_default() -> None:
    """Ensure prose replies produce the default receipt object."""
    assert parse_reply("I could not read this receipt.") == {
        "total": 0, "date": None, "merchant": "Unknown", "type": "expense",
        "suggested_category": "Other", "items": []}


def test_data_url_media_type() -> None:
    """Ensure a data: URL keeps its media type and loses its prefix."""
    block = image_block("data:image/png;base64,AAAA")

    assert block["source"] == {"type": "base64", "media_type": "image/png", "data": "AAAA"}
    assert image_block("BBBB")["source"]["media_type"] == "image/jpeg"


def test_scan_sends_image_and_prompt() -> None:
    """Ensure the request carries one image block and the extraction prompt."""
    client = StubClient('{"total": 10, "merchant": "Shop"}')

    data = asyncio.run(scan_receipt("AAAA", client=client))

    assert data["merchant"] == "Shop"
    content = client.messages.calls[0]["messages"][0]["content"]
    assert content[0]["type"] == "image"
    assert "Return ONLY valid JSON" in content[1]["text"]


def test_missing_image() -> None:
    """Ensure an empty image is a validation error."""
    with pytest.raises(ValidationError):
        asyncio.run(scan_receipt("", client=StubClient("{}")))


def test_missing_api_key() -> None:
    """Ensure no configured key and no client is a 500 upstream error."""
    with pytest.raises(UpstreamServiceError) as exc:
        asyncio.run(scan_receipt("AAAA"))

    assert exc.value.status_code == 500
    assert exc.value.message == "AI service not configured"


@pytest.mark.parametrize(
    ("error", "status", "message"),
    [
        (_status_error(anthropic.RateLimitError, 429), 429, "Rate limit exceeded. Please try again later."),
        (_status_error(anthropic.APIStatusError, 402), 402, "AI credits exhausted. Please add funds."),
        (_status_error(anthropic.BadRequestError, 400, "Your credit balance is too low"), 402,
         "AI credits exhausted. Please add funds."),
        (_status_error(anthropic.InternalServerError, 500), 502, "Failed to analyze receipt"),
    ],
)
def test_upstream_errors_are_mapped(error, status, message) -> None:
    """Ensure rate limit, quota and generic failures surface distinctly."""
    with pytest.raises(UpstreamServiceError) as exc:
        asyncio.run(scan_receipt("AAAA", client=StubClient(error=error)))

    assert exc.value.status_code == status
    assert exc.value.message == message


def test_scan_and_ingest_creates_receipt_event(company) -> None:
    """Ensure a scanned receipt is admitted as receipt.scanned and processed."""
    client = StubClient('{"total": 18.75, "date": "2024-05-01", "merchant": "Lunch Spot", '
                        '"type": "expense", "suggested_category": "Food", "items": []}')

    result = asyncio.run(scan_and_ingest(company["id"], "AAAA", client=client))

    event = events.get_event(result["event_id"])
    assert event["event_type"] == "receipt.scanned"
    assert event["source"] == "docs"
    assert event["status"] == "PROCESSED"
    normalized = event["payload"]["agent_results"]["normalization"]["normalized_data"]
    assert normalized["amount"] == 18.75
    assert normalized["source_type"] == "receipt"
    assert event["payload"]["agent_results"]["classification"]["category"] == "meals"
    assert db.find("master_operations") == []
