"""
Data Models for Persistence Layer

These models mirror the gateway's domain objects but are shaped for database
storage. Credit amounts are stored as signed integer micro-credits and exposed
as ``Decimal`` credits.
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
import json

MICROS_PER_CREDIT = 1_000_000

JOB_QUEUED = "queued"
JOB_PROCESSING = "processing"
JOB_DONE = "done"
JOB_FAILED = "failed"


def utcnow() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def to_micros(credits: Decimal) -> int:
    """Convert credits to integer micro-credits (half-up)."""
    return int((Decimal(credits) * MICROS_PER_CREDIT).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_micros(micros: Optional[int]) -> Decimal:
    if not micros:
        return Decimal("0")
    return Decimal(int(micros)) / MICROS_PER_CREDIT


def _load_json(value: Any) -> Any:
    # PostgreSQL JSONB columns come back decoded; SQLite TEXT columns do not
    if isinstance(value, str) and value:
        return json.loads(value)
    return value


@dataclass
class UserRecord:
    """A billed caller, identified by email."""
    id: str
    email: str
    created_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "created_at": self.created_at}

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UserRecord":
        return cls(id=row["id"], email=row["email"], created_at=row["created_at"])


@dataclass
class CreditTransactionRecord:
    """One immutable ledger row. Positive amounts credit, negative debit."""
    user_id: str
    amount: Decimal
    reason: str
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: str = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "user_id": self.user_id,
            "amount": float(self.amount),
            "reason": self.reason,
            "metadata": self.metadata,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        """Convert to database insert tuple."""
        return (
            self.user_id,
            to_micros(self.amount),
            self.reason,
            json.dumps(self.metadata or {}, sort_keys=True),
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "CreditTransactionRecord":
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            amount=from_micros(row["amount_micros"]),
            reason=row["reason"],
            metadata=_load_json(row.get("metadata")) or {},
            created_at=row["created_at"],
        )


@dataclass
class UsageEventRecord:
    """One billable call."""
    user_id: str
    route: str
    provider: str
    model: str
    request_id: str
    tokens_in: int = 0
    tokens_out: int = 0
    cost: Decimal = Decimal("0")
    created_at: str = field(default_factory=utcnow)
    id: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "route": self.route,
            "provider": self.provider,
            "model": self.model,
            "tokens_in": self.tokens_in,
            "tokens_out": self.tokens_out,
            "cost": float(self.cost),
            "request_id": self.request_id,
            "created_at": self.created_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.user_id,
            self.route,
            self.provider,
            self.model,
            self.tokens_in,
            self.tokens_out,
            to_micros(self.cost),
            self.request_id,
            self.created_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "UsageEventRecord":
        return cls(
            id=row.get("id"),
            user_id=row["user_id"],
            route=row["route"],
            provider=row["provider"],
            model=row["model"],
            tokens_in=row.get("tokens_in", 0),
            tokens_out=row.get("tokens_out", 0),
            cost=from_micros(row.get("cost_micros")),
            request_id=row["request_id"],
            created_at=row["created_at"],
        )


@dataclass
class JobRecord:
    """A queued unit of generation work."""
    id: str
    owner_email: str
    type: str
    payload: Dict[str, Any] = field(default_factory=dict)
    status: str = JOB_QUEUED
    progress: int = 0
    result_ref: Optional[str] = None
    result_payload: Any = None
    error: Optional[str] = None
    claim_token: Optional[str] = None
    claimed_at: Optional[str] = None
    created_at: str = field(default_factory=utcnow)
    updated_at: str = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "owner_email": self.owner_email,
            "type": self.type,
            "status": self.status,
            "progress": self.progress,
            "result_ref": self.result_ref,
            "result": self.result_payload,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    def to_db_tuple(self) -> tuple:
        return (
            self.id,
            self.owner_email,
            self.type,
            json.dumps(self.payload or {}),
            self.status,
            self.progress,
            self.created_at,
            self.updated_at,
        )

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "JobRecord":
        return cls(
            id=row["id"],
            owner_email=row["owner_email"],
            type=row["type"],
            payload=_load_json(row.get("payload")) or {},
            status=row.get("status", JOB_QUEUED),
            progress=row.get("progress", 0),
            result_ref=row.get("result_ref"),
            result_payload=_load_json(row.get("result_payload")),
            error=row.get("error"),
            claim_token=row.get("claim_token"),
            claimed_at=row.get("claimed_at"),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )
