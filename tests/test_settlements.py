"""
Test suite for cash settlements

Tests settlement numbering, unloadings, supervisor validation with its
tolerance check, rejection and the mirror transaction recorded once a
settlement is decided.
"""

import logging
import pytest
from datetime import date, datetime, timezone
from decimal import Decimal

from forex_ledger.storage import InMemoryStorage
from forex_ledger.errors import InvalidOperation, NotFound, PermissionDenied, ValidationError
from forex_ledger.notifications import NotificationEvent, RecordingNotificationSink
from forex_ledger.rbac import Actor, Role
from forex_ledger.settlements import SettlementStatus
from forex_ledger.state_machine import TransactionStatus, TransactionType
from forex_ledger.system import BackOffice


CASHIER = Actor(id="cashier-1", role=Role.CASHIER, name="Awa")
OTHER_CASHIER = Actor(id="cashier-2", role=Role.CASHIER)
SUPERVISOR = Actor(id="accounting-1", role=Role.ACCOUNTING, name="Supervisor")
AUDITOR = Actor(id="auditor-1", role=Role.AUDITOR)


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def back_office(sink):
    system = BackOffice(storage=InMemoryStorage(), sinks=[sink])
    yield system
    system.close()


@pytest.fixture
def manager(back_office):
    return back_office.settlements


def today_prefix():
    return f"ARR-{datetime.now(timezone.utc):%Y%m%d}-"


class TestCreateSettlement:
    """Test settlement creation"""

    def test_create_with_unloading(self, manager):
        settlement = manager.create_settlement(CASHIER, date(2024, 5, 1), 500000, 50000,
                                               reason="Mid-day bank deposit")

        assert settlement.status is SettlementStatus.PENDING
        assert settlement.final_amount == Decimal("450000")
        assert settlement.settlement_date == "2024-05-01"
        assert settlement.cashier_name == "Awa"
        assert settlement.settlement_number == today_prefix() + "0001"

        unloadings = manager.get_unloadings(settlement.id)
        assert len(unloadings) == 1
        assert unloadings[0].amount == Decimal("50000")
        assert unloadings[0].reason == "Mid-day bank deposit"

    def test_numbers_increase_per_day(self, manager):
        first = manager.create_settlement(CASHIER, "2024-05-01", 1000)
        second = manager.create_settlement(OTHER_CASHIER, "2024-05-01", 2000)
        assert first.settlement_number.endswith("-0001")
        assert second.settlement_number.endswith("-0002")
        assert manager.get_unloadings(first.id) == []

    def test_validation(self, manager):
        with pytest.raises(ValidationError):
            manager.create_settlement(CASHIER, "2024-05-01", -1)
        with pytest.raises(ValidationError, match="exceed"):
            manager.create_settlement(CASHIER, "2024-05-01", 1000, 2000)
        with pytest.raises(ValidationError, match="date"):
            manager.create_settlement(CASHIER, "", 1000)

    def test_only_cashiers_create(self, manager):
        with pytest.raises(PermissionDenied):
            manager.create_settlement(SUPERVISOR, "2024-05-01", 1000)


class TestUnloadings:
    """Test unloadings added during the day"""

    def test_add_unloading_recomputes_final(self, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 500000)
        manager.add_unloading(settlement.id, 100000, "Bank deposit", CASHIER)
        manager.add_unloading(settlement.id, "20 000", "Petty cash", SUPERVISOR)

        updated = manager.get_settlement(settlement.id)
        assert updated.unloading_amount == Decimal("120000")
        assert updated.final_amount == Decimal("380000")
        assert [u.reason for u in manager.get_unloadings(settlement.id)] == ["Bank deposit", "Petty cash"]

    def test_unloading_rules(self, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 1000)
        with pytest.raises(ValidationError):
            manager.add_unloading(settlement.id, 100, " ", CASHIER)
        with pytest.raises(ValidationError):
            manager.add_unloading(settlement.id, 0, "Nothing", CASHIER)
        with pytest.raises(ValidationError, match="exceed"):
            manager.add_unloading(settlement.id, 1001, "Too much", CASHIER)
        with pytest.raises(PermissionDenied):
            manager.add_unloading(settlement.id, 100, "Not allowed", AUDITOR)

    def test_no_unloading_after_decision(self, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 1000)
        manager.validate_settlement(settlement.id, 1000, SUPERVISOR)
        with pytest.raises(InvalidOperation):
            manager.add_unloading(settlement.id, 100, "Late", CASHIER)


class TestDecision:
    """Test validation, exceptions and rejection"""

    def test_validate_and_mirror(self, back_office, manager, sink):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 500000, 50000, reason="Deposit")
        decided = manager.validate_settlement(settlement.id, "450 000", SUPERVISOR, notes="Counted twice")

        assert decided.status is SettlementStatus.VALIDATED
        assert decided.received_amount == Decimal("450000")
        assert decided.validated_by == SUPERVISOR.id
        assert decided.validated_by_name == "Supervisor"

        stored = manager.get_settlement(settlement.id)
        assert stored.mirror_transaction_id is not None
        mirror = back_office.transactions.get_transaction(stored.mirror_transaction_id)
        assert mirror.type is TransactionType.SETTLEMENT
        assert mirror.status is TransactionStatus.COMPLETED
        assert mirror.amount == Decimal("450000")
        assert mirror.agency == "System"
        assert mirror.details.settlement_number == settlement.settlement_number
        assert "validated" in mirror.description

        decided_events = [n for n in sink.notifications if n.event is NotificationEvent.SETTLEMENT_DECIDED]
        assert decided_events[0].payload["recipients"] == [CASHIER.id]

    def test_mismatch_needs_exception_reason(self, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 500000, 50000)
        with pytest.raises(ValidationError, match="exception reason"):
            manager.validate_settlement(settlement.id, 440000, SUPERVISOR)
        assert manager.get_settlement(settlement.id).status is SettlementStatus.PENDING

        decided = manager.validate_settlement(settlement.id, 440000, SUPERVISOR,
                                              exception_reason="10,000 short, cashier notified")
        assert decided.status is SettlementStatus.EXCEPTION
        assert decided.exception_reason == "10,000 short, cashier notified"

    def test_reject(self, back_office, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 1000)
        with pytest.raises(ValidationError):
            manager.reject_settlement(settlement.id, "", SUPERVISOR)

        rejected = manager.reject_settlement(settlement.id, "Wrong day", SUPERVISOR)
        assert rejected.status is SettlementStatus.REJECTED
        assert rejected.rejection_reason == "Wrong day"

        mirror_id = manager.get_settlement(settlement.id).mirror_transaction_id
        assert "rejected" in back_office.transactions.get_transaction(mirror_id).description

    def test_decided_once(self, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 1000)
        manager.validate_settlement(settlement.id, 1000, SUPERVISOR)
        with pytest.raises(InvalidOperation, match="already validated"):
            manager.validate_settlement(settlement.id, 1000, SUPERVISOR)
        with pytest.raises(InvalidOperation):
            manager.reject_settlement(settlement.id, "Too late", SUPERVISOR)

    def test_validator_needs_permission(self, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 1000)
        with pytest.raises(PermissionDenied):
            manager.validate_settlement(settlement.id, 1000, CASHIER)

    def test_zero_final_amount_is_mirrored(self, back_office, manager):
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 1000, 1000, reason="All handed over")
        assert settlement.final_amount == Decimal("0")

        decided = manager.validate_settlement(settlement.id, 0, SUPERVISOR)

        assert decided.status is SettlementStatus.VALIDATED
        mirror_id = manager.get_settlement(settlement.id).mirror_transaction_id
        assert mirror_id is not None
        mirror = back_office.transactions.get_transaction(mirror_id)
        assert mirror.type is TransactionType.SETTLEMENT
        assert mirror.amount == Decimal("0")
        assert mirror.details.received_amount == Decimal("0")

    def test_mirror_failure_is_logged(self, manager, monkeypatch, caplog):
        def unavailable(*args, **kwargs):
            raise InvalidOperation("transaction log unavailable")

        monkeypatch.setattr(manager.transactions, "create_transaction", unavailable)
        settlement = manager.create_settlement(CASHIER, "2024-05-01", 1000)

        with caplog.at_level(logging.ERROR, logger="forex.settlements"):
            decided = manager.validate_settlement(settlement.id, 1000, SUPERVISOR)

        assert decided.status is SettlementStatus.VALIDATED
        assert manager.get_settlement(settlement.id).status is SettlementStatus.VALIDATED
        assert manager.get_settlement(settlement.id).mirror_transaction_id is None
        assert any("Could not mirror settlement" in r.getMessage() for r in caplog.records)

    def test_unknown_settlement(self, manager):
        with pytest.raises(NotFound):
            manager.get_settlement("missing")


class TestQueries:
    """Test listings and statistics"""

    def test_list_and_stats(self, manager):
        first = manager.create_settlement(CASHIER, "2024-05-01", 1000)
        second = manager.create_settlement(CASHIER, "2024-05-02", 2000)
        third = manager.create_settlement(OTHER_CASHIER, "2024-05-02", 3000)
        manager.validate_settlement(first.id, 1000, SUPERVISOR)
        manager.validate_settlement(second.id, 1500, SUPERVISOR, exception_reason="Short")

        assert {s.id for s in manager.list_settlements(cashier_id=CASHIER.id)} == {first.id, second.id}
        assert [s.id for s in manager.list_settlements(status="pending")] == [third.id]

        stats = manager.settlement_stats()
        assert stats["total_settlements"] == 3
        assert stats["validated_settlements"] == 1
        assert stats["exception_settlements"] == 1
        assert stats["pending_settlements"] == 1
        assert stats["rejected_settlements"] == 0
        assert stats["total_validated_amount"] == Decimal("1000")
        assert stats["total_exception_amount"] == Decimal("2000")
