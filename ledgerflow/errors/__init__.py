"""
Ledgerflow — Error Taxonomy

  Validation   — malformed ingestion fields, rejected before persistence (400)
  Authorization — missing credentials (401) or cross-company access (403)
  Persistence  — store read/write failure, fatal to the request (500)
  Stage        — one pipeline stage failed; captured by the orchestrator
  Upstream     — external AI service failure, mapped per failure mode
"""


class LedgerflowError(Exception):
    """Base class for all ledgerflow errors."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"error": self.message}


class ValidationError(LedgerflowError):
    status_code = 400

    def __init__(self, message: str, details=None, status_code: int = 400):
        super().__init__(message)
        self.details = details
        self.status_code = status_code

    def to_dict(self) -> dict:
        body = {"error": self.message}
        if self.details is not None:
            body["details"] = self.details
        return body


class AuthorizationError(LedgerflowError):
    status_code = 403

    def __init__(self, message: str, status_code: int = 403):
        super().__init__(message)
        self.status_code = status_code


class PersistenceError(LedgerflowError):
    status_code = 500


class StageError(LedgerflowError):
    """A stage failed; the orchestrator records it and moves on."""

    def __init__(self, stage: str, message: str):
        super().__init__(message)
        self.stage = stage


class UpstreamServiceError(LedgerflowError):
    """External AI service returned a non-success response."""

    def __init__(self, message: str, status_code: int = 502):
        super().__init__(message)
        self.status_code = status_code
