"""
Test suite for reconciliation

Tests log replay of accounts and tills, drift detection, pool refresh and
the backfill of commissions missing from their pool.
"""

import pytest
from decimal import Decimal

from forex_ledger.storage import InMemoryStorage
from forex_ledger.cash_accounts import AccountKind, CashLedger, MovementKind
from forex_ledger.currency import Currency
from forex_ledger.errors import PermissionDenied
from forex_ledger.exchange_desk import ExchangeDesk, FundingSource
from forex_ledger.rbac import Actor, Role, StaticExecutorDirectory
from forex_ledger.state_machine import TransactionType
from forex_ledger.system import BackOffice
from forex_ledger.transactions import ReceiptDetails, TransferDetails


DIRECTOR = Actor(id="director-1", role=Role.DIRECTOR)
CASHIER = Actor(id="cashier-1", role=Role.CASHIER)
AUDITOR = Actor(id="auditor-1", role=Role.AUDITOR)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def back_office(storage):
    system = BackOffice(storage=storage, sinks=[], executors=StaticExecutorDirectory(["exec-1"]))
    system.update_settings(DIRECTOR, eur_rate="640")
    yield system
    system.close()


@pytest.fixture
def busy_day(back_office):
    """A day of activity touching every account kind and till"""
    back_office.deposit_account(AccountKind.BANK_A, 1000000, DIRECTOR, "Opening")
    back_office.transfer_between_accounts(AccountKind.BANK_A, AccountKind.VAULT, 300000, DIRECTOR, "Cash")
    back_office.adjust_exchange_till(Currency.XAF, 500000, DIRECTOR, "Opening float")
    back_office.record_exchange_replenishment(Currency.XAF, 58000, Currency.USD, 580, CASHIER,
                                              funding_source=FundingSource.LOCAL_TILL)
    back_office.record_exchange_replenishment(Currency.XAF, 65596, Currency.EUR, "655.96", CASHIER,
                                              funding_source=FundingSource.VAULT)
    back_office.record_exchange_sale(Currency.USD, 40, 590, CASHIER)

    transfer = back_office.create_transaction(
        TransactionType.TRANSFER, "Transfer", 65000, Currency.XAF, CASHIER,
        details=TransferDetails(beneficiary_name="Jean", destination_country="France",
                                transfer_method="bank", withdrawal_mode="cash")
    )
    back_office.validate_transfer_real_amount(transfer.id, 100, AUDITOR)
    back_office.create_transaction(
        TransactionType.RECEIPT, "Receipt", 10000, Currency.XAF, CASHIER,
        details=ReceiptDetails(receipt_number="R-1", commission=Decimal("300"))
    )
    return transfer


class TestReplay:
    """Test log replay on a consistent ledger"""

    def test_consistent_state(self, back_office, busy_day):
        service = back_office.reconciliation
        assert all(check.consistent for check in service.check_accounts())
        assert all(check.consistent for check in service.check_tills())
        assert service.detect_drift() == []

        assert service.replay_account(AccountKind.VAULT) == Decimal("234404")
        assert service.replay_account(AccountKind.TRANSFER_COMMISSION_POOL) == Decimal("1000")
        assert service.replay_till(Currency.USD) == Decimal("60.00")
        assert service.replay_till(Currency.EUR) == Decimal("100.00")

    def test_run_on_consistent_state(self, back_office, busy_day):
        report = back_office.run_reconciliation(DIRECTOR)
        assert report["consistent"]
        assert report["drift"] == []
        assert report["synced_commissions"] == []
        assert report["pools"]["transfer_commission_pool"] == "1000"
        assert report["pools"]["receipt_commission_pool"] == "300"


class TestDrift:
    """Test detection and repair of cached balance drift"""

    def test_tampered_vault_reported(self, storage, back_office, busy_day):
        row = storage.load(CashLedger.ACCOUNTS_TABLE, "vault")
        row["balance"] = "1"
        storage.save(CashLedger.ACCOUNTS_TABLE, "vault", row)

        drifted = back_office.reconciliation.detect_drift()
        assert [check.name for check in drifted] == ["vault"]
        assert drifted[0].drift == Decimal("1") - Decimal("234404")
        assert drifted[0].to_dict()["consistent"] is False

    def test_pool_drift_repaired_by_run(self, storage, back_office, busy_day):
        row = storage.load(CashLedger.ACCOUNTS_TABLE, "transfer_commission_pool")
        row["balance"] = "5"
        storage.save(CashLedger.ACCOUNTS_TABLE, "transfer_commission_pool", row)

        report = back_office.run_reconciliation(DIRECTOR, sync_commissions=False)
        assert report["consistent"]
        assert back_office.ledger.get_balance(AccountKind.TRANSFER_COMMISSION_POOL) == Decimal("1000")

    def test_till_drift_reported(self, storage, back_office, busy_day):
        row = storage.load(ExchangeDesk.TILLS_TABLE, "USD")
        row["balance"] = "999"
        storage.save(ExchangeDesk.TILLS_TABLE, "USD", row)

        report = back_office.run_reconciliation(DIRECTOR)
        assert not report["consistent"]
        assert [entry["name"] for entry in report["drift"]] == ["till_USD"]


class TestCommissionSync:
    """Test backfill of commissions missing from their pool"""

    def test_missing_commission_backfilled_once(self, storage, back_office, busy_day):
        ledger = back_office.ledger
        movement = ledger.get_movements(AccountKind.TRANSFER_COMMISSION_POOL,
                                        movement_kind=MovementKind.COMMISSION,
                                        reference=busy_day.id)[0]
        storage.delete(CashLedger.MOVEMENTS_TABLE, movement.id)

        synced = back_office.reconciliation.sync_missing_commissions(DIRECTOR)
        assert synced == [busy_day.id]
        assert ledger.pool_total(AccountKind.TRANSFER_COMMISSION_POOL) == Decimal("1000")
        assert ledger.get_balance(AccountKind.TRANSFER_COMMISSION_POOL) == Decimal("1000")

        assert back_office.reconciliation.sync_missing_commissions(DIRECTOR) == []

    def test_rejected_transfers_are_skipped(self, back_office):
        transfer = back_office.create_transaction(
            TransactionType.TRANSFER, "Transfer", 64000, Currency.XAF, CASHIER,
            details=TransferDetails(beneficiary_name="Jean", destination_country="France",
                                    transfer_method="bank", withdrawal_mode="cash")
        )
        back_office.validate_transfer_real_amount(transfer.id, 100, AUDITOR)
        assert back_office.reconciliation.sync_missing_commissions(DIRECTOR) == []

    def test_requires_permission(self, back_office):
        with pytest.raises(PermissionDenied):
            back_office.reconciliation.sync_missing_commissions(CASHIER)
        with pytest.raises(PermissionDenied):
            back_office.run_reconciliation(CASHIER)
        with pytest.raises(PermissionDenied):
            back_office.reconcile_pool(AccountKind.RECEIPT_COMMISSION_POOL, CASHIER)
