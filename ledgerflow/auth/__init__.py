"""
Ledgerflow — Caller Identity
JWT bearer tokens for end users, a header flag for internal service calls,
and the company-ownership check applied to manual submissions.
"""
import hmac
from datetime import datetime, timedelta

import jwt as pyjwt
from fastapi import Request

from ledgerflow.config import (JWT_SECRET, JWT_ALGORITHM, JWT_EXPIRY_HOURS,
                               SERVICE_ROLE_HEADER, SERVICE_ROLE_KEY)
from ledgerflow.errors import AuthorizationError


# ============================================================
# JWT
# ============================================================
def create_jwt(user_id: str, email: str = "") -> str:
    payload = {
        "sub": user_id, "email": email,
        "exp": datetime.utcnow() + timedelta(hours=JWT_EXPIRY_HOURS),
        "iat": datetime.utcnow(),
    }
    return pyjwt.encode(payload, JWT_SECRET, algorithm=JWT_ALGORITHM)


def decode_jwt(token: str) -> dict:
    try:
        return pyjwt.decode(token, JWT_SECRET, algorithms=[JWT_ALGORITHM])
    except pyjwt.ExpiredSignatureError:
        raise AuthorizationError("Token expired", status_code=401)
    except pyjwt.InvalidTokenError:
        raise AuthorizationError("Invalid token", status_code=401)


# ============================================================
# REQUEST HELPERS
# ============================================================
def _bearer(request: Request) -> str:
    auth = request.headers.get("Authorization", "")
    return auth[7:] if auth.startswith("Bearer ") else ""


def is_service_call(request: Request) -> bool:
    """The service flag only counts when the bearer is the configured service key."""
    if request.headers.get(SERVICE_ROLE_HEADER, "").lower() != "true":
        return False
    if not SERVICE_ROLE_KEY:
        raise AuthorizationError("Service calls are not enabled", status_code=401)
    if not hmac.compare_digest(_bearer(request).encode(), SERVICE_ROLE_KEY.encode()):
        raise AuthorizationError("Invalid service credentials", status_code=401)
    return True


def caller_from_request(request: Request) -> dict:
    """Resolve who is calling. Non-service calls must carry a valid bearer token."""
    if is_service_call(request):
        return {"user_id": None, "is_service": True, "authenticated": False}
    token = _bearer(request)
    if not token:
        raise AuthorizationError("Missing authorization header", status_code=401)
    claims = decode_jwt(token)
    return {"user_id": claims["sub"], "is_service": False, "authenticated": True}


def optional_caller(request: Request):
    """Like caller_from_request, but None when no credentials were sent at all."""
    if not request.headers.get("Authorization") and not request.headers.get(SERVICE_ROLE_HEADER):
        return None
    return caller_from_request(request)


def require_service(caller: dict):
    if not caller.get("is_service"):
        raise AuthorizationError("Service credentials required", status_code=403)


# ============================================================
# OWNERSHIP
# ============================================================
def assert_company_owner(company: dict, user_id: str):
    """End users may only submit events for companies they own."""
    if not company or company.get("user_id") != user_id:
        raise AuthorizationError("Access denied to this company", status_code=403)
