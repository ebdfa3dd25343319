"""
Back-office system wiring

Builds every engine component over one storage backend and exposes the
external operations as methods. Raw ledger operations are permission-checked
here; the workflow components check their own permissions.
"""

from decimal import Decimal
from typing import Any, Dict, List, Optional

from .audit import AuditTrail
from .cash_accounts import CashAccount, CashLedger, CashMovement
from .config import get_config
from .errors import InvalidOperation
from .exchange_desk import ExchangeDesk, ExchangeOperation, FundingSource
from .expenses import Expense, ExpenseWorkflow
from .logging_config import get_logger, log_action
from .notifications import (
    LogNotificationSink, NotificationDispatcher, NotificationSink, WebhookNotificationSink
)
from .rbac import Actor, ExecutorDirectory, Permission, StaticExecutorDirectory, SYSTEM_ACTOR, require_permission
from .reconciliation import ReconciliationService
from .settings import SettingsProvider, SettingsSnapshot, StoredSettingsProvider
from .settlements import CashSettlement, CashUnloading, SettlementManager
from .state_machine import TransactionType
from .storage import StorageInterface, create_storage
from .transactions import Transaction, TransactionDetails, TransactionEngine


class BackOffice:
    """Forex back-office engine with all components initialized"""

    def __init__(
        self,
        storage: Optional[StorageInterface] = None,
        settings_provider: Optional[SettingsProvider] = None,
        sinks: Optional[List[NotificationSink]] = None,
        executors: Optional[ExecutorDirectory] = None
    ):
        config = get_config()
        self.logger = get_logger("forex.system")

        # Initialize storage
        self.storage = storage or create_storage(config.database_url)

        # Initialize core components
        self.audit_trail = AuditTrail(self.storage)
        self.settings = settings_provider or StoredSettingsProvider(self.storage, self.audit_trail)
        self.notifier = NotificationDispatcher(self.storage, sinks if sinks is not None else self._default_sinks())
        self.executors = executors or StaticExecutorDirectory()

        self.ledger = CashLedger(self.storage, self.audit_trail)
        self.desk = ExchangeDesk(self.storage, self.ledger, self.audit_trail)
        self.transactions = TransactionEngine(
            self.storage, self.ledger, self.settings, self.audit_trail, self.notifier, self.executors
        )
        self.expenses = ExpenseWorkflow(self.storage, self.ledger, self.audit_trail, self.notifier)
        self.settlements = SettlementManager(self.storage, self.transactions, self.audit_trail, self.notifier)
        self.reconciliation = ReconciliationService(self.ledger, self.desk, self.transactions, self.audit_trail)

    def _default_sinks(self) -> List[NotificationSink]:
        """Log sink always; webhook sink when configured"""
        config = get_config()
        sinks: List[NotificationSink] = [LogNotificationSink()]
        if config.notification_webhook_url:
            sinks.append(WebhookNotificationSink(config.notification_webhook_url,
                                                 timeout=config.notification_timeout))
        return sinks

    # Transactions

    def create_transaction(self, type: TransactionType, description: str, amount, currency,
                           creator: Actor, agency: Optional[str] = None,
                           details: Optional[TransactionDetails] = None) -> Transaction:
        return self.transactions.create_transaction(type, description, amount, currency,
                                                    creator, agency, details)

    def update_transaction_status(self, transaction_id: str, status, actor: Actor,
                                  reason: Optional[str] = None) -> Transaction:
        return self.transactions.update_transaction_status(transaction_id, status, actor, reason)

    def validate_transfer_real_amount(self, transaction_id: str, real_amount, validator: Actor) -> Transaction:
        return self.transactions.validate_transfer_real_amount(transaction_id, real_amount, validator)

    def execute_transaction(self, transaction_id: str, executor: Actor, receipt_ref: str,
                            comment: Optional[str] = None, as_auditor: bool = False) -> Transaction:
        return self.transactions.execute_transaction(transaction_id, executor, receipt_ref,
                                                     comment, as_auditor)

    def request_deletion(self, transaction_id: str, requester: Actor,
                         reason: Optional[str] = None) -> Transaction:
        return self.transactions.request_deletion(transaction_id, requester, reason)

    def validate_deletion(self, transaction_id: str, validator: Actor) -> Transaction:
        return self.transactions.validate_deletion(transaction_id, validator)

    # Exchange desk

    def record_exchange_replenishment(self, funding_currency, amount, target_currency, purchase_rate,
                                      actor: Actor, funding_source: Optional[FundingSource] = None,
                                      transport_expense=Decimal('0'), handling_expense=Decimal('0'),
                                      note_exchange_fee=Decimal('0'),
                                      note: Optional[str] = None) -> ExchangeOperation:
        return self.desk.replenish(funding_currency, amount, target_currency, purchase_rate, actor,
                                   funding_source=funding_source,
                                   transport_expense=transport_expense,
                                   handling_expense=handling_expense,
                                   note_exchange_fee=note_exchange_fee,
                                   note=note)

    def record_exchange_sale(self, currency, sold_amount, today_rate, actor: Actor,
                             received_local=None, client: Optional[str] = None) -> ExchangeOperation:
        return self.desk.sell(currency, sold_amount, today_rate, actor,
                              received_local=received_local, client=client)

    def record_exchange_cession(self, currency, amount, actor: Actor, note: Optional[str] = None,
                                beneficiary: Optional[str] = None) -> ExchangeOperation:
        return self.desk.cede(currency, amount, actor, note=note, beneficiary=beneficiary)

    def adjust_exchange_till(self, currency, new_balance, actor: Actor, note: str) -> ExchangeOperation:
        return self.desk.adjust_till(currency, new_balance, actor, note)

    # Cash accounts

    def get_accounts(self, actor: Actor) -> List[CashAccount]:
        require_permission(actor, Permission.VIEW_CASH_ACCOUNTS)
        return self.ledger.get_accounts()

    def get_movements(self, actor: Actor, kind=None, **filters: Any) -> List[CashMovement]:
        require_permission(actor, Permission.VIEW_CASH_ACCOUNTS)
        return self.ledger.get_movements(kind, **filters)

    def set_account_balance(self, kind, new_balance, actor: Actor, note: str) -> CashAccount:
        require_permission(actor, Permission.MANAGE_CASH_ACCOUNTS)
        return self.ledger.set_account_balance(kind, new_balance, actor, note)

    def deposit_account(self, kind, amount, actor: Actor, note: str,
                        reference: Optional[str] = None) -> CashMovement:
        require_permission(actor, Permission.MANAGE_CASH_ACCOUNTS)
        return self.ledger.deposit(kind, amount, actor, note, reference)

    def debit_account(self, kind, amount, actor: Actor, note: str,
                      reference: Optional[str] = None) -> CashMovement:
        require_permission(actor, Permission.MANAGE_CASH_ACCOUNTS)
        return self.ledger.debit(kind, amount, actor, note, reference)

    def transfer_between_accounts(self, from_kind, to_kind, amount, actor: Actor, note: str,
                                  reference: Optional[str] = None) -> List[CashMovement]:
        require_permission(actor, Permission.MANAGE_CASH_ACCOUNTS)
        return self.ledger.transfer(from_kind, to_kind, amount, actor, note, reference)

    def post_commission(self, kind, amount, actor: Actor, note: str,
                        reference: Optional[str] = None) -> CashMovement:
        require_permission(actor, Permission.MANAGE_CASH_ACCOUNTS)
        return self.ledger.post_commission(kind, amount, actor, note, reference)

    def reconcile_pool(self, kind, actor: Actor = SYSTEM_ACTOR) -> Decimal:
        require_permission(actor, Permission.RUN_RECONCILIATION)
        return self.ledger.reconcile_pool(kind)

    # Expenses

    def submit_expense(self, description: str, amount, category: str, requester: Actor,
                       agency: Optional[str] = None, comment: Optional[str] = None,
                       deduct_from_surplus: bool = False, cashier_id: Optional[str] = None) -> Expense:
        return self.expenses.submit_expense(description, amount, category, requester, agency, comment,
                                            deduct_from_surplus, cashier_id)

    def approve_expense_by_control(self, expense_id: str, approve: bool, approver: Actor,
                                   reason: Optional[str] = None) -> Expense:
        return self.expenses.approve_expense_by_control(expense_id, approve, approver, reason)

    def approve_expense_by_executive(self, expense_id: str, approve: bool, approver: Actor,
                                     reason: Optional[str] = None) -> Expense:
        return self.expenses.approve_expense_by_executive(expense_id, approve, approver, reason)

    def record_cashier_surplus(self, cashier_id: str, amount, actor: Actor,
                               note: Optional[str] = None) -> CashMovement:
        return self.expenses.record_cashier_surplus(cashier_id, amount, actor, note)

    # Settlements

    def create_settlement(self, cashier: Actor, settlement_date, total, unloading=Decimal('0'),
                          reason: Optional[str] = None) -> CashSettlement:
        return self.settlements.create_settlement(cashier, settlement_date, total, unloading, reason)

    def add_unloading(self, settlement_id: str, amount, reason: str, actor: Actor) -> CashUnloading:
        return self.settlements.add_unloading(settlement_id, amount, reason, actor)

    def validate_settlement(self, settlement_id: str, received, validator: Actor,
                            notes: Optional[str] = None,
                            exception_reason: Optional[str] = None) -> CashSettlement:
        return self.settlements.validate_settlement(settlement_id, received, validator, notes, exception_reason)

    def reject_settlement(self, settlement_id: str, reason: str, validator: Actor) -> CashSettlement:
        return self.settlements.reject_settlement(settlement_id, reason, validator)

    # Administration

    def update_settings(self, actor: Actor, **changes: Any) -> SettingsSnapshot:
        if not isinstance(self.settings, StoredSettingsProvider):
            raise InvalidOperation("settings provider is read-only")
        return self.settings.update_settings(actor, **changes)

    def run_reconciliation(self, actor: Actor = SYSTEM_ACTOR, sync_commissions: bool = True) -> Dict[str, Any]:
        report = self.reconciliation.run(actor, sync_commissions=sync_commissions)
        log_action(self.logger, "info" if report["consistent"] else "warning",
                   "Reconciliation run", user_id=actor.id, action="reconcile", resource="ledger",
                   extra={"drift": len(report["drift"]), "synced": len(report["synced_commissions"])})
        return report

    def verify_audit_integrity(self) -> Dict[str, Any]:
        return self.audit_trail.verify_integrity()

    def close(self) -> None:
        self.storage.close()


# Global back-office instance, created on first use
_back_office: Optional[BackOffice] = None


def get_back_office() -> BackOffice:
    """Shared BackOffice built from configuration"""
    global _back_office
    if _back_office is None:
        _back_office = BackOffice()
    return _back_office
