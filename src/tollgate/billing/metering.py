"""
Usage Metering for Text Generation

Turns a completed provider call into a priced usage event and the matching
ledger debit. Token counts are estimated from text length when the provider
does not report them; this is an approximation, not tokenizer-accurate billing.
"""

from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional
import math
import structlog

from ..config import GatewayConfig
from ..errors import DuplicateRequest, InsufficientCredits, LedgerUnavailable
from ..persistence.database import Database, get_database
from ..persistence.models import UsageEventRecord
from .ledger import CreditLedger, usage_reason

logger = structlog.get_logger()

CREDIT_QUANTUM = Decimal("0.001")


def estimate_tokens(text: Optional[str]) -> int:
    """Roughly one token per four characters."""
    if not text:
        return 0
    return math.ceil(len(text) / 4)


def compute_cost(tokens_in: int, tokens_out: int, tokens_per_credit: int = 1000) -> Decimal:
    """
    Price a call in credits, rounded half-up to three decimals.

    >>> compute_cost(40, 20)
    Decimal('0.060')
    """
    total = Decimal(max(0, tokens_in) + max(0, tokens_out))
    return (total / Decimal(tokens_per_credit)).quantize(CREDIT_QUANTUM, rounding=ROUND_HALF_UP)


@dataclass
class ChargeResult:
    """Outcome of a successful charge."""
    cost: Decimal
    new_balance: Decimal
    usage_event_id: int
    transaction_id: int


class UsageMeter:
    """
    Gatekeeper and recorder for billable calls.

    ``ensure_can_spend`` is the cheap pre-check before calling a provider.
    ``charge_and_record`` repeats the floor check under the write lock and
    writes the usage event and its debit together, so either both rows exist
    or neither does, and a balance already under the floor is never debited.
    """

    def __init__(
        self,
        db: Optional[Database] = None,
        ledger: Optional[CreditLedger] = None,
        config: Optional[GatewayConfig] = None,
    ):
        self.db = db or get_database()
        self.ledger = ledger or CreditLedger(self.db)
        self.config = config or GatewayConfig()

    @property
    def floor(self) -> Decimal:
        return self.config.hard_stop_below

    def ensure_can_spend(self, user_id: str) -> Decimal:
        """Return the current balance, or raise if it is below the floor."""
        balance = self.ledger.get_balance(user_id)
        if balance < self.floor:
            logger.info("charge_rejected_floor", user_id=user_id, balance=str(balance), stage="precheck")
            raise InsufficientCredits(balance, self.floor)
        return balance

    def price(self, tokens_in: int, tokens_out: int) -> Decimal:
        return compute_cost(tokens_in, tokens_out, self.config.tokens_per_credit)

    def charge_and_record(
        self,
        user_id: str,
        route: str,
        provider: str,
        model: str,
        tokens_in: int,
        tokens_out: int,
        request_id: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> ChargeResult:
        """Record one usage event and its paired debit atomically."""
        cost = self.price(tokens_in, tokens_out)
        event = UsageEventRecord(
            user_id=user_id,
            route=route,
            provider=provider,
            model=model,
            request_id=request_id,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=cost,
        )
        txn_metadata = dict(metadata or {})
        txn_metadata.update({
            "request_id": request_id,
            "provider": provider,
            "model": model,
            "tokens_in": tokens_in,
            "tokens_out": tokens_out,
        })

        with self.db.guard("charge_and_record", LedgerUnavailable):
            try:
                with self.db.transaction() as tx:
                    if tx.is_postgres:
                        tx.execute("SELECT id FROM users WHERE id = ? FOR UPDATE", (user_id,))

                    balance = self.ledger.get_balance(user_id, tx=tx)
                    if balance < self.floor:
                        logger.info(
                            "charge_rejected_floor",
                            user_id=user_id,
                            balance=str(balance),
                            request_id=request_id,
                            stage="commit",
                        )
                        raise InsufficientCredits(balance, self.floor)

                    rows = tx.execute(
                        """INSERT INTO usage_event
                           (user_id, route, provider, model, tokens_in, tokens_out,
                            cost_micros, request_id, created_at)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?) RETURNING id""",
                        event.to_db_tuple()
                    )
                    usage_event_id = rows[0]["id"]

                    txn_id = self.ledger.record_transaction(
                        user_id,
                        -cost,
                        usage_reason(route, request_id),
                        txn_metadata,
                        tx=tx,
                    )
            except self.db.integrity_errors as e:
                raise DuplicateRequest(request_id) from e

        new_balance = balance - cost
        logger.info(
            "usage_charged",
            user_id=user_id,
            route=route,
            provider=provider,
            model=model,
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=str(cost),
            balance=str(new_balance),
            request_id=request_id,
        )
        return ChargeResult(
            cost=cost,
            new_balance=new_balance,
            usage_event_id=usage_event_id,
            transaction_id=txn_id,
        )
