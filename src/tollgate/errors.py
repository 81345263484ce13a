"""
Gateway Errors

Every user-visible failure carries a machine-readable reason code and the HTTP
status the API layer answers with. Upstream detail (raw provider bodies) rides
along in ``detail`` for diagnostics only.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional


class GatewayError(Exception):
    """Base class for errors surfaced to gateway callers."""

    code = "gateway_error"
    status_code = 500

    def __init__(self, message: str = "", detail: Optional[str] = None, code: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.detail = detail
        if code:
            self.code = code

    def extra(self) -> Dict[str, Any]:
        """Additional machine-readable fields for the error body."""
        return {}

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.detail:
            body["detail"] = self.detail
        body.update(self.extra())
        return body


class InvalidRequest(GatewayError):
    code = "invalid_request"
    status_code = 400


class UnknownSkill(GatewayError):
    code = "unknown_skill"
    status_code = 400

    def __init__(self, skill: str):
        super().__init__(f"Unknown skill: {skill}")
        self.skill = skill

    def extra(self) -> Dict[str, Any]:
        return {"skill": self.skill}


class MissingIdentity(GatewayError):
    code = "missing_email"
    status_code = 400


class Unauthorized(GatewayError):
    code = "forbidden"
    status_code = 403


class InsufficientCredits(GatewayError):
    """Balance is below the hard-stop floor. Nothing was charged."""

    code = "insufficient_credits"
    status_code = 402

    def __init__(self, balance: Decimal, floor: Decimal):
        super().__init__(f"Balance {balance} is below the minimum of {floor}")
        self.balance = balance
        self.floor = floor

    def extra(self) -> Dict[str, Any]:
        return {"balance": float(self.balance)}


class PayloadTooLarge(GatewayError):
    code = "payload_too_large"
    status_code = 413

    def __init__(self, limit: int):
        super().__init__(f"Upload exceeds {limit} bytes")
        self.limit = limit

    def extra(self) -> Dict[str, Any]:
        return {"max_bytes": self.limit}


class JobNotFound(GatewayError):
    code = "not_found"
    status_code = 404

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class AllProvidersFailed(GatewayError):
    """Every candidate in the fallback chain failed for this request."""

    code = "upstream_error"
    status_code = 502

    def __init__(self, last_error: Optional[Exception], attempts: List[Dict[str, Any]]):
        super().__init__(
            "All providers failed",
            detail=str(last_error) if last_error else None,
        )
        self.last_error = last_error
        self.attempts = attempts

    def extra(self) -> Dict[str, Any]:
        return {"attempts": [a.get("provider") for a in self.attempts]}


class DuplicateRequest(GatewayError):
    """A usage event for this request id was already recorded."""

    code = "duplicate_request"
    status_code = 409

    def __init__(self, request_id: str):
        super().__init__(f"Request already billed: {request_id}")
        self.request_id = request_id


class StoreUnavailable(GatewayError):
    """The backing database could not be read or written."""

    code = "store_unavailable"
    status_code = 503


class LedgerUnavailable(StoreUnavailable):
    """The credit ledger or usage store could not be read or written."""

    code = "ledger_unavailable"
