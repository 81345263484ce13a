"""
Credit Ledger

Append-only record of credit movements per user. There is no stored balance:
a user's balance is always the sum of their transactions, so the ledger can be
audited and replayed. Negative balances are recorded as-is; the floor check
belongs to UsageMeter.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional
import structlog

from ..errors import InvalidRequest, LedgerUnavailable
from ..persistence.database import Database, Transaction, get_database
from ..persistence.models import CreditTransactionRecord, from_micros

logger = structlog.get_logger()

USAGE_REASON_PREFIX = "usage:"


def usage_reason(route: str, request_id: str) -> str:
    """Ledger reason that pairs a debit with its usage event."""
    return f"{USAGE_REASON_PREFIX}{route}:{request_id}"


class CreditLedger:
    """
    Credit ledger over the ``credit_txn`` table.

    Every write is a single INSERT. Methods that accept ``tx`` join a caller's
    transaction instead of opening their own.
    """

    INSERT_SQL = """INSERT INTO credit_txn (user_id, amount_micros, reason, metadata, created_at)
                    VALUES (?, ?, ?, ?, ?) RETURNING id"""

    def __init__(self, db: Optional[Database] = None):
        self.db = db or get_database()

    def record_transaction(
        self,
        user_id: str,
        amount: Decimal,
        reason: str,
        metadata: Optional[Dict[str, Any]] = None,
        tx: Optional[Transaction] = None,
    ) -> int:
        """Append one immutable row and return its id."""
        record = CreditTransactionRecord(
            user_id=user_id,
            amount=Decimal(amount),
            reason=reason,
            metadata=metadata or {},
        )
        with self.db.guard("record_transaction", LedgerUnavailable):
            if tx is not None:
                rows = tx.execute(self.INSERT_SQL, record.to_db_tuple())
            else:
                rows = self.db.execute(self.INSERT_SQL, record.to_db_tuple())

        txn_id = rows[0]["id"]
        logger.info(
            "credit_transaction_recorded",
            txn_id=txn_id,
            user_id=user_id,
            amount=str(record.amount),
            reason=reason,
        )
        return txn_id

    def get_balance(self, user_id: str, tx: Optional[Transaction] = None) -> Decimal:
        """Sum of all of a user's transactions; zero when there are none."""
        query = "SELECT COALESCE(SUM(amount_micros), 0) as total FROM credit_txn WHERE user_id = ?"
        with self.db.guard("get_balance", LedgerUnavailable):
            if tx is not None:
                rows = tx.execute(query, (user_id,))
            else:
                rows = self.db.execute(query, (user_id,))
        return from_micros(rows[0]["total"] if rows else 0)

    def top_up(
        self,
        user_id: str,
        amount: Decimal,
        reason: str = "manual-topup",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Credit a user. Only positive amounts are accepted."""
        amount = Decimal(amount)
        if not amount.is_finite() or amount <= 0:
            raise InvalidRequest("Top-up amount must be positive", code="invalid_amount")
        return self.record_transaction(user_id, amount, reason, metadata)

    def list_transactions(self, user_id: str, limit: int = 50) -> List[CreditTransactionRecord]:
        """Newest first."""
        with self.db.guard("list_transactions", LedgerUnavailable):
            rows = self.db.execute(
                "SELECT * FROM credit_txn WHERE user_id = ? ORDER BY created_at DESC, id DESC LIMIT ?",
                (user_id, limit)
            )
        return [CreditTransactionRecord.from_row(r) for r in rows]

    def find_usage_debits(self, request_id: str) -> List[CreditTransactionRecord]:
        """Usage debits that reference a request id."""
        with self.db.guard("find_usage_debits", LedgerUnavailable):
            rows = self.db.execute(
                "SELECT * FROM credit_txn WHERE reason LIKE ? ORDER BY id",
                (f"{USAGE_REASON_PREFIX}%:{request_id}",)
            )
        suffix = f":{request_id}"
        return [CreditTransactionRecord.from_row(r) for r in rows if r["reason"].endswith(suffix)]
