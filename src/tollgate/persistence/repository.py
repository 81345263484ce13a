"""
Repository Layer for Tollgate

Lookups and inserts for users and usage events. Ledger writes live in
``tollgate.billing`` because they must share a transaction with usage rows.
"""

from typing import List, Optional
import uuid
import structlog

from ..errors import LedgerUnavailable, MissingIdentity
from .database import Database, get_database
from .models import UserRecord, UsageEventRecord, utcnow

logger = structlog.get_logger()


def normalize_email(email: Optional[str]) -> str:
    """Lower-case and trim; an empty result means no identity."""
    normalized = (email or "").strip().lower()
    if not normalized:
        raise MissingIdentity("Caller email is required")
    return normalized


class UserRepository:
    """Repository for user records."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def get_by_email(self, email: str) -> Optional[UserRecord]:
        with self.db.guard("get_user", LedgerUnavailable):
            results = self.db.execute(
                "SELECT * FROM users WHERE email = ?",
                (normalize_email(email),)
            )
        return UserRecord.from_row(results[0]) if results else None

    def ensure_user(self, email: str) -> UserRecord:
        """Return the user for an email, creating it on first sight."""
        email = normalize_email(email)
        existing = self.get_by_email(email)
        if existing:
            return existing

        user = UserRecord(id=uuid.uuid4().hex, email=email, created_at=utcnow())
        with self.db.guard("create_user", LedgerUnavailable):
            # Two first requests can race here; the loser's insert is a no-op
            self.db.execute(
                """INSERT INTO users (id, email, created_at) VALUES (?, ?, ?)
                   ON CONFLICT (email) DO NOTHING""",
                (user.id, user.email, user.created_at)
            )
        stored = self.get_by_email(email)
        if stored.id == user.id:
            logger.info("user_created", user_id=user.id, email=email)
        return stored


class UsageRepository:
    """Read access to usage events. Inserts go through UsageMeter."""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def list_recent(self, user_id: str, limit: int = 50) -> List[UsageEventRecord]:
        """Usage events for a user, newest first."""
        with self.db.guard("list_usage", LedgerUnavailable):
            results = self.db.execute(
                "SELECT * FROM usage_event WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit)
            )
        return [UsageEventRecord.from_row(r) for r in results]

    def get_by_request_id(self, request_id: str) -> Optional[UsageEventRecord]:
        with self.db.guard("get_usage", LedgerUnavailable):
            results = self.db.execute(
                "SELECT * FROM usage_event WHERE request_id = ?",
                (request_id,)
            )
        return UsageEventRecord.from_row(results[0]) if results else None
