"""Pytest configuration for the Ledgerflow test suite."""

import os

SERVICE_KEY = "ledgerflow-test-service-key"


def _ensure_test_env() -> None:
    """Seed environment variables before any ledgerflow import reads them."""
    os.environ["PERSIST_DATA"] = "false"
    os.environ["RESET_ON_START"] = "false"
    os.environ.setdefault("JWT_SECRET", "ledgerflow-test-secret")
    os.environ["SERVICE_ROLE_KEY"] = SERVICE_KEY
    os.environ.pop("DATABASE_URL", None)
    os.environ.pop("ANTHROPIC_API_KEY", None)
    os.environ.pop("STAGE_TIMEOUT_SECONDS", None)


_ensure_test_env()

import pytest  # noqa: E402

from ledgerflow import db  # noqa: E402
from ledgerflow.auth import create_jwt  # noqa: E402
from ledgerflow.policy import reset_policy  # noqa: E402

OWNER_ID = "user-owner"
OTHER_ID = "user-other"
COMPANY_ID = "company-1"


@pytest.fixture(autouse=True)
def clean_store():
    """Start every test from an empty store and default policy."""
    db.reset_db()
    reset_policy()
    yield
    reset_policy()


@pytest.fixture
def company() -> dict:
    """A company owned by OWNER_ID with a profile on the default threshold."""
    db.insert("profiles", {"id": OWNER_ID, "email": "owner@example.com"})
    return db.insert("companies", {"id": COMPANY_ID, "user_id": OWNER_ID,
                                   "tenant_id": "tenant-1", "name": "Acme Holdings"})


@pytest.fixture
def owner_headers() -> dict:
    return {"Authorization": f"Bearer {create_jwt(OWNER_ID, 'owner@example.com')}"}


@pytest.fixture
def other_headers() -> dict:
    return {"Authorization": f"Bearer {create_jwt(OTHER_ID, 'other@example.com')}"}


@pytest.fixture
def service_headers() -> dict:
    return {"x-service-role": "true", "Authorization": f"Bearer {SERVICE_KEY}"}


def _seed_operations(user_id: str, amounts: list, operation_type: str = "expense",
                     category: str = None, dates: list = None) -> list:
    rows = []
    for i, amount in enumerate(amounts):
        tx_date = dates[i] if dates else f"2024-01-{(i % 28) + 1:02d}"
        rows.append(db.insert("master_operations", {
            "user_id": user_id, "operation_type": operation_type, "amount": amount,
            "currency": "CAD", "transaction_date": tx_date, "category": category,
            "status": "pending_review",
        }))
    return rows


@pytest.fixture
def seed_operations():
    """Insert master operations directly, bypassing the pipeline."""
    return _seed_operations
