"""
Tests for the Credit Ledger and Usage Meter

Validates:
- Balance is always the sum of transactions
- Cost is deterministic for given token counts
- Usage events and debits are written together or not at all
- No charge when the balance is below the floor
"""

import threading
from decimal import Decimal

import pytest

from tollgate.billing.ledger import CreditLedger, usage_reason
from tollgate.billing.metering import UsageMeter, compute_cost, estimate_tokens
from tollgate.errors import (
    DuplicateRequest,
    InsufficientCredits,
    InvalidRequest,
    LedgerUnavailable,
)
from tollgate.persistence.repository import UserRepository, UsageRepository


@pytest.fixture
def user_id(temp_db):
    return UserRepository(temp_db).ensure_user("Bob@Example.com ").id


@pytest.fixture
def ledger(temp_db):
    return CreditLedger(temp_db)


@pytest.fixture
def meter(temp_db, ledger, config):
    return UsageMeter(temp_db, ledger, config)


def row_count(db, table):
    return db.execute(f"SELECT COUNT(*) as count FROM {table}")[0]["count"]


class TestCreditLedger:
    """Test the append-only ledger."""

    def test_balance_of_new_user_is_zero(self, ledger, user_id):
        assert ledger.get_balance(user_id) == Decimal("0")

    def test_balance_is_sum_of_transactions(self, ledger, user_id):
        ledger.record_transaction(user_id, Decimal("10"), "grant")
        ledger.record_transaction(user_id, Decimal("-0.060"), "usage:/x:1")
        ledger.record_transaction(user_id, Decimal("2.5"), "grant")

        assert ledger.get_balance(user_id) == Decimal("12.44")
        total = sum(t.amount for t in ledger.list_transactions(user_id))
        assert total == ledger.get_balance(user_id)

    def test_negative_balance_is_recorded(self, ledger, user_id):
        """The ledger itself never rejects a debit."""
        ledger.record_transaction(user_id, Decimal("-3"), "adjustment")
        assert ledger.get_balance(user_id) == Decimal("-3")

    def test_top_up_rejects_non_positive(self, ledger, user_id):
        with pytest.raises(InvalidRequest):
            ledger.top_up(user_id, Decimal("0"))
        with pytest.raises(InvalidRequest):
            ledger.top_up(user_id, Decimal("-5"))
        assert ledger.list_transactions(user_id) == []

    def test_top_up_rejects_non_finite(self, ledger, user_id):
        for amount in ("NaN", "Infinity", "-Infinity"):
            with pytest.raises(InvalidRequest):
                ledger.top_up(user_id, Decimal(amount))
        assert ledger.list_transactions(user_id) == []

    def test_list_transactions_newest_first(self, ledger, user_id):
        first = ledger.top_up(user_id, Decimal("1"), reason="first")
        second = ledger.top_up(user_id, Decimal("2"), reason="second")

        txns = ledger.list_transactions(user_id)
        assert [t.id for t in txns] == [second, first]
        assert txns[0].reason == "second"

    def test_metadata_round_trips(self, ledger, user_id):
        ledger.top_up(user_id, Decimal("1"), metadata={"source": "test"})
        assert ledger.list_transactions(user_id)[0].metadata == {"source": "test"}

    def test_storage_failure_is_ledger_unavailable(self, temp_db, ledger, user_id):
        temp_db.execute("DROP TABLE credit_txn")
        with pytest.raises(LedgerUnavailable):
            ledger.get_balance(user_id)


class TestUsers:
    """Test lazy user creation."""

    def test_email_is_normalized(self, temp_db):
        users = UserRepository(temp_db)
        first = users.ensure_user("  Carol@Example.COM")
        second = users.ensure_user("carol@example.com")
        assert first.id == second.id
        assert first.email == "carol@example.com"


class TestPricing:
    """Test token estimation and cost."""

    def test_estimate_tokens_rounds_up(self):
        assert estimate_tokens("") == 0
        assert estimate_tokens("a") == 1
        assert estimate_tokens("abcd") == 1
        assert estimate_tokens("abcde") == 2
        assert estimate_tokens("x" * 160) == 40

    def test_cost_example(self):
        assert compute_cost(40, 20) == Decimal("0.060")

    def test_cost_is_deterministic(self):
        assert compute_cost(1234, 567) == compute_cost(1234, 567) == Decimal("1.801")

    def test_cost_rounds_half_up_to_three_places(self):
        assert compute_cost(1, 0, tokens_per_credit=3) == Decimal("0.333")
        assert compute_cost(2, 0, tokens_per_credit=3) == Decimal("0.667")
        assert compute_cost(1, 0, tokens_per_credit=2000) == Decimal("0.001")

    def test_zero_tokens_cost_nothing(self):
        assert compute_cost(0, 0) == Decimal("0.000")


class TestChargeAndRecord:
    """Test the atomic charge."""

    def test_charge_pairs_usage_and_debit(self, ledger, meter, user_id, temp_db):
        ledger.top_up(user_id, Decimal("10"))

        result = meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 40, 20, "req-1")

        assert result.cost == Decimal("0.060")
        assert result.new_balance == Decimal("9.940")
        assert ledger.get_balance(user_id) == Decimal("9.940")

        event = UsageRepository(temp_db).get_by_request_id("req-1")
        assert event.route == "/skills/ask"
        assert event.cost == Decimal("0.060")

        debits = ledger.find_usage_debits("req-1")
        assert len(debits) == 1
        assert debits[0].amount == -event.cost
        assert debits[0].reason == usage_reason("/skills/ask", "req-1")
        assert debits[0].metadata["request_id"] == "req-1"

    def test_no_rows_when_below_floor(self, ledger, meter, user_id, temp_db):
        ledger.top_up(user_id, Decimal("0.5"))

        with pytest.raises(InsufficientCredits) as exc_info:
            meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 40, 20, "req-2")

        assert exc_info.value.balance == Decimal("0.5")
        assert row_count(temp_db, "usage_event") == 0
        assert ledger.get_balance(user_id) == Decimal("0.5")

    def test_precheck_rejects_below_floor(self, ledger, meter, user_id):
        ledger.top_up(user_id, Decimal("0.999"))
        with pytest.raises(InsufficientCredits):
            meter.ensure_can_spend(user_id)

    def test_precheck_allows_exactly_floor(self, ledger, meter, user_id):
        ledger.top_up(user_id, Decimal("1"))
        assert meter.ensure_can_spend(user_id) == Decimal("1")

    def test_failed_debit_leaves_no_usage_row(self, ledger, meter, user_id, temp_db, monkeypatch):
        ledger.top_up(user_id, Decimal("10"))
        original = ledger.record_transaction

        def failing_record(*args, **kwargs):
            if kwargs.get("tx") is not None:
                raise LedgerUnavailable("record_transaction failed")
            return original(*args, **kwargs)

        monkeypatch.setattr(ledger, "record_transaction", failing_record)

        with pytest.raises(LedgerUnavailable):
            meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 40, 20, "req-3")

        assert row_count(temp_db, "usage_event") == 0
        assert ledger.get_balance(user_id) == Decimal("10")

    def test_duplicate_request_id_is_rejected(self, ledger, meter, user_id, temp_db):
        ledger.top_up(user_id, Decimal("10"))
        meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 40, 20, "req-dup")

        with pytest.raises(DuplicateRequest):
            meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 40, 20, "req-dup")

        assert row_count(temp_db, "usage_event") == 1
        assert ledger.get_balance(user_id) == Decimal("9.940")

    def test_charge_can_cross_floor_once(self, ledger, meter, user_id):
        """A balance at or above the floor may be debited below it, but only once."""
        ledger.top_up(user_id, Decimal("1.05"))

        first = meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 40, 20, "req-a")
        assert first.new_balance == Decimal("0.990")

        with pytest.raises(InsufficientCredits):
            meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 40, 20, "req-b")


class TestBalanceRace:
    """Concurrent charges against one balance."""

    def test_only_one_concurrent_charge_crosses_floor(self, ledger, meter, user_id, temp_db):
        ledger.top_up(user_id, Decimal("1.5"))

        # Every thread passes the pre-check before any of them charges
        for _ in range(8):
            meter.ensure_can_spend(user_id)

        barrier = threading.Barrier(8)
        outcomes = []
        lock = threading.Lock()

        def charge(i):
            barrier.wait()
            try:
                meter.charge_and_record(user_id, "/skills/ask", "groq", "m", 600, 0, f"race-{i}")
                result = "charged"
            except InsufficientCredits:
                result = "rejected"
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=charge, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert outcomes.count("charged") == 1
        assert outcomes.count("rejected") == 7
        assert ledger.get_balance(user_id) == Decimal("0.9")
        assert row_count(temp_db, "usage_event") == 1
