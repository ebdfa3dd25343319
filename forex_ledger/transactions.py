"""
Transaction Workflow Module

Creates transactions (reception, exchange, transfer, card, receipt,
settlement) and advances them through the role-gated state machine.
Transfers carry the audit gate: an auditor enters the real amount paid out
abroad, the commission is derived from the reference rate and posted to the
transfer commission pool, and the transfer is handed to an executor.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, fields, asdict
from typing import Any, ClassVar, Dict, List, Optional, Tuple, Type
import random
import re
import threading

from .audit import AuditTrail, AuditEventType
from .cash_accounts import AccountKind, CashLedger
from .currency import Currency, LOCAL_CURRENCY, quantize, to_decimal
from .errors import InvalidOperation, NotFound, PermissionDenied, ValidationError
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationEvent
from .rbac import Actor, ExecutorDirectory, Permission, Role, require_permission
from .settings import SettingsProvider
from .state_machine import TRANSACTION_FSM, TransactionStatus, TransactionType
from .storage import StorageInterface, StorageRecord, parse_datetime


# Transaction details: one frozen variant per transaction type

@dataclass(frozen=True)
class TransactionDetails:
    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {name: (str(value) if isinstance(value, Decimal) else value)
                for name, value in asdict(self).items()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TransactionDetails':
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for name in cls.DECIMAL_FIELDS:
            if values.get(name) is not None:
                values[name] = to_decimal(values[name])
        return cls(**values)


@dataclass(frozen=True)
class ReceptionDetails(TransactionDetails):
    """Money received from abroad and paid out to a local receiver"""
    sender_name: str
    receiver_name: str
    sender_phone: Optional[str] = None
    receiver_phone: Optional[str] = None
    amount_received: Optional[Decimal] = None
    received_currency: Optional[str] = None
    fees: Optional[Decimal] = None

    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('amount_received', 'fees')


@dataclass(frozen=True)
class ExchangeDetails(TransactionDetails):
    """Over-the-counter currency exchange"""
    client_name: str
    from_currency: str
    to_currency: str
    from_amount: Decimal
    to_amount: Decimal
    exchange_rate: Decimal
    client_phone: Optional[str] = None

    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('from_amount', 'to_amount', 'exchange_rate')


@dataclass(frozen=True)
class TransferDetails(TransactionDetails):
    """International transfer; settled abroad in settlement_currency"""
    beneficiary_name: str
    destination_country: str
    transfer_method: str
    withdrawal_mode: str
    amount_received: Optional[Decimal] = None   # local currency collected from the client
    settlement_currency: str = "EUR"
    destination_city: Optional[str] = None
    beneficiary_phone: Optional[str] = None
    document_ref: Optional[str] = None
    fees: Optional[Decimal] = None

    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('amount_received', 'fees')


@dataclass(frozen=True)
class CardDetails(TransactionDetails):
    """Prepaid card recharge"""
    card_number: str
    client_name: Optional[str] = None
    client_phone: Optional[str] = None
    fees: Optional[Decimal] = None

    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('fees',)


@dataclass(frozen=True)
class ReceiptDetails(TransactionDetails):
    """Receipt issued to a client"""
    receipt_number: str
    client_name: Optional[str] = None
    commission: Optional[Decimal] = None

    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('commission',)


@dataclass(frozen=True)
class SettlementDetails(TransactionDetails):
    """Mirror of a decided cash settlement"""
    settlement_id: str
    settlement_number: str
    cashier_id: str
    settlement_status: str
    received_amount: Optional[Decimal] = None

    DECIMAL_FIELDS: ClassVar[Tuple[str, ...]] = ('received_amount',)


DETAIL_TYPES: Dict[TransactionType, Type[TransactionDetails]] = {
    TransactionType.RECEPTION: ReceptionDetails,
    TransactionType.EXCHANGE: ExchangeDetails,
    TransactionType.TRANSFER: TransferDetails,
    TransactionType.CARD: CardDetails,
    TransactionType.RECEIPT: ReceiptDetails,
    TransactionType.SETTLEMENT: SettlementDetails,
}


def parse_details(type: TransactionType, data: Dict[str, Any]) -> TransactionDetails:
    """Build the detail variant of a transaction type from a plain mapping"""
    variant = DETAIL_TYPES[TransactionType(type)]
    try:
        return variant.from_dict(data or {})
    except TypeError as e:
        raise ValidationError(f"Invalid {variant.__name__}: {e}")


# Recorded after the fact, so they skip the pending stage
STARTS_COMPLETED = frozenset({TransactionType.RECEIPT, TransactionType.SETTLEMENT})

# Transaction types whose commission belongs in a pool
COMMISSION_POOLS = {
    TransactionType.TRANSFER: AccountKind.TRANSFER_COMMISSION_POOL,
    TransactionType.RECEIPT: AccountKind.RECEIPT_COMMISSION_POOL,
}

# Statuses in which a pooled commission stays posted
COMMISSIONED_STATUSES = frozenset({
    TransactionStatus.VALIDATED,
    TransactionStatus.EXECUTED,
    TransactionStatus.COMPLETED,
    TransactionStatus.PENDING_DELETE,
})


# Transaction IDs: TRX-YYYYMMDD-HHMM-NNN

TRANSACTION_ID_PATTERN = re.compile(r'^TRX-(\d{8})-(\d{4})-(\d{3})$')


def generate_transaction_id(now: Optional[datetime] = None) -> str:
    now = now or datetime.now(timezone.utc)
    return f"TRX-{now:%Y%m%d}-{now:%H%M}-{random.randint(0, 999):03d}"


def is_valid_transaction_id(transaction_id: str) -> bool:
    return bool(TRANSACTION_ID_PATTERN.match(transaction_id or ""))


def transaction_id_date(transaction_id: str) -> Optional[str]:
    """YYYYMMDD part of a transaction id, or None if malformed"""
    match = TRANSACTION_ID_PATTERN.match(transaction_id or "")
    return match.group(1) if match else None


def transaction_id_time(transaction_id: str) -> Optional[str]:
    """HHMM part of a transaction id, or None if malformed"""
    match = TRANSACTION_ID_PATTERN.match(transaction_id or "")
    return match.group(2) if match else None


@dataclass
class Transaction(StorageRecord):
    """Business transaction record"""
    type: TransactionType
    status: TransactionStatus
    description: str
    amount: Decimal
    currency: Currency
    created_by: str
    details: TransactionDetails
    agency: Optional[str] = None
    rejection_reason: Optional[str] = None

    # Transfer audit gate and execution
    real_amount: Optional[Decimal] = None
    commission: Optional[Decimal] = None
    executor_id: Optional[str] = None
    receipt_reference: Optional[str] = None
    execution_comment: Optional[str] = None
    validated_by: Optional[str] = None
    validated_at: Optional[datetime] = None
    executed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    # Deletion workflow
    deletion_requested_by: Optional[str] = None
    deletion_reason: Optional[str] = None
    delete_validated_by: Optional[str] = None
    delete_validated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        result['details'] = self.details.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Transaction':
        data = dict(data)
        data['type'] = TransactionType(data['type'])
        data['status'] = TransactionStatus(data['status'])
        data['currency'] = Currency.from_code(data['currency'])
        data['amount'] = Decimal(data['amount'])
        data['details'] = DETAIL_TYPES[data['type']].from_dict(data.get('details') or {})
        for name in ('real_amount', 'commission'):
            if data.get(name) is not None:
                data[name] = Decimal(data[name])
        for name in ('validated_at', 'executed_at', 'completed_at', 'delete_validated_at'):
            data[name] = parse_datetime(data.get(name))
        return super().from_dict(data)


class TransactionEngine:
    """
    Transaction creation and status workflow.

    Every status change goes through TRANSACTION_FSM, is audited and fires a
    notification once committed.
    """

    TABLE = "transactions"

    def __init__(
        self,
        storage: StorageInterface,
        ledger: CashLedger,
        settings: SettingsProvider,
        audit_trail: AuditTrail,
        notifier: NotificationDispatcher,
        executors: ExecutorDirectory
    ):
        self.storage = storage
        self.ledger = ledger
        self.settings = settings
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.executors = executors
        self.logger = get_logger("forex.transactions")
        self._id_lock = threading.Lock()

    def create_transaction(
        self,
        type: TransactionType,
        description: str,
        amount,
        currency,
        creator: Actor,
        agency: Optional[str] = None,
        details: Optional[TransactionDetails] = None
    ) -> Transaction:
        """
        Create a transaction.

        Receipts (which post their commission to the receipt commission pool)
        and settlement mirrors start completed; everything else starts pending.

        Raises:
            ValidationError: Non-positive amount (settlement mirrors may be zero),
                or details not matching the type
        """
        type = TransactionType(type)
        if type is not TransactionType.SETTLEMENT:
            require_permission(creator, Permission.CREATE_TRANSACTION)
        currency = currency if isinstance(currency, Currency) else Currency.from_code(str(currency or LOCAL_CURRENCY.code))
        expected = DETAIL_TYPES[type]
        if not isinstance(details, expected):
            raise ValidationError(f"{type.value} transactions require {expected.__name__}")
        if not description or not description.strip():
            raise ValidationError("Description is required")
        amount = quantize(to_decimal(amount), currency)
        if amount < 0 or (amount == 0 and type is not TransactionType.SETTLEMENT):
            raise ValidationError("Amount must be positive")

        now = datetime.now(timezone.utc)
        status = TransactionStatus.COMPLETED if type in STARTS_COMPLETED else TransactionStatus.PENDING
        receipt_commission = None
        if type is TransactionType.RECEIPT and details.commission:
            receipt_commission = quantize(details.commission, LOCAL_CURRENCY)

        with self._id_lock:
            transaction_id = self._new_id(now)
            transaction = Transaction(
                id=transaction_id,
                created_at=now,
                updated_at=now,
                type=type,
                status=status,
                description=description.strip(),
                amount=amount,
                currency=currency,
                created_by=creator.id,
                agency=agency or creator.agency,
                details=details,
                completed_at=now if status is TransactionStatus.COMPLETED else None,
                commission=receipt_commission if receipt_commission and receipt_commission > 0 else None,
            )

            lock_accounts = [AccountKind.RECEIPT_COMMISSION_POOL.value] if transaction.commission else []
            with self.storage.row_lock(CashLedger.ACCOUNTS_TABLE, *lock_accounts):
                with self.storage.atomic():
                    self._save(transaction)
                    if transaction.commission:
                        self.ledger.post_commission(
                            AccountKind.RECEIPT_COMMISSION_POOL, transaction.commission, creator,
                            f"Receipt commission {transaction.id}", reference=transaction.id
                        )
                    self.audit_trail.log_event(
                        event_type=AuditEventType.TRANSACTION_CREATED,
                        entity_type="transaction",
                        entity_id=transaction.id,
                        metadata={"type": type.value, "amount": amount, "currency": currency.code,
                                  "status": status.value},
                        user_id=creator.id
                    )
                    self.notifier.notify(NotificationEvent.TRANSACTION_CREATED, transaction.id,
                                         {"type": type.value, "amount": amount, "currency": currency.code,
                                          "created_by": creator.id})

        log_action(self.logger, "info", f"Created {type.value} transaction {transaction.id}",
                   user_id=creator.id, action="create_transaction", resource=transaction.id,
                   extra={"amount": str(amount), "currency": currency.code})
        return transaction

    def update_transaction_status(self, transaction_id: str, status, actor: Actor,
                                  reason: Optional[str] = None) -> Transaction:
        """
        Generic status change, dispatched to the dedicated operation for the target.

        Validating a transfer needs the real amount and executing one needs a
        receipt reference, so those go through their own operations.
        """
        status = TransactionStatus(status)
        if status is TransactionStatus.VALIDATED:
            return self.validate_transaction(transaction_id, actor)
        if status is TransactionStatus.REJECTED:
            current = self.get_transaction(transaction_id)
            if current.status is TransactionStatus.PENDING_DELETE:
                return self.validate_deletion(transaction_id, actor)
            return self.reject_transaction(transaction_id, actor, reason)
        if status is TransactionStatus.COMPLETED:
            return self.complete_transaction(transaction_id, actor)
        if status is TransactionStatus.PENDING_DELETE:
            return self.request_deletion(transaction_id, actor, reason)
        if status is TransactionStatus.EXECUTED:
            raise InvalidOperation("Executing a transfer requires a receipt reference")
        raise InvalidOperation(f"Cannot move a transaction to {status.value}")

    def validate_transaction(self, transaction_id: str, validator: Actor) -> Transaction:
        """Audit approval of a non-transfer transaction"""
        require_permission(validator, Permission.VALIDATE_TRANSACTION)
        with self.storage.row_lock(self.TABLE, transaction_id):
            with self.storage.atomic():
                transaction = self.get_transaction(transaction_id)
                if transaction.type is TransactionType.TRANSFER:
                    raise InvalidOperation("Transfers are validated with their real amount")
                previous = self._check(transaction, TransactionStatus.VALIDATED, validator)
                now = datetime.now(timezone.utc)
                transaction.status = TransactionStatus.VALIDATED
                transaction.validated_by = validator.id
                transaction.validated_at = now
                self._record_transition(transaction, previous, validator, NotificationEvent.TRANSACTION_VALIDATED)
        return transaction

    def validate_transfer_real_amount(self, transaction_id: str, real_amount, validator: Actor) -> Transaction:
        """
        Audit gate of a transfer.

        commission = received_local - real_amount x reference rate of the
        settlement currency. The transfer is validated (and assigned to an
        executor) only when the commission is strictly above the configured
        minimum, otherwise it is rejected with the shortfall. A positive
        commission is posted to the transfer commission pool.

        Args:
            transaction_id: Pending transfer
            real_amount: Amount actually paid out abroad, in the settlement currency
            validator: Auditor (or admin) entering it

        Returns:
            The validated or rejected transaction
        """
        require_permission(validator, Permission.VALIDATE_TRANSACTION)
        real_amount = to_decimal(real_amount)
        if real_amount <= 0:
            raise ValidationError("Real amount must be positive")

        with self.storage.row_lock(self.TABLE, transaction_id):
            with self.storage.row_lock(CashLedger.ACCOUNTS_TABLE, AccountKind.TRANSFER_COMMISSION_POOL.value):
                with self.storage.atomic():
                    transaction = self.get_transaction(transaction_id)
                    if transaction.type is not TransactionType.TRANSFER:
                        raise InvalidOperation("Only transfers carry a real amount")
                    if transaction.status is not TransactionStatus.PENDING:
                        raise InvalidOperation(f"Transaction {transaction_id} is {transaction.status.value}, not pending")

                    snapshot = self.settings.current()
                    settlement_currency = Currency.from_code(transaction.details.settlement_currency)
                    fx_rate = snapshot.reference_rate(settlement_currency)
                    minimum = snapshot.transfer_commission_min
                    received_local = self._received_local(transaction)
                    commission = quantize(received_local - real_amount * fx_rate, LOCAL_CURRENCY)

                    target = (TransactionStatus.VALIDATED if commission > minimum
                              else TransactionStatus.REJECTED)
                    previous = self._check(transaction, target, validator)

                    now = datetime.now(timezone.utc)
                    transaction.real_amount = real_amount
                    transaction.commission = max(Decimal('0'), commission)
                    transaction.validated_by = validator.id
                    transaction.validated_at = now
                    transaction.status = target

                    if target is TransactionStatus.VALIDATED:
                        transaction.executor_id = self.assign_executor()
                        if transaction.commission > 0:
                            self.ledger.post_commission(
                                AccountKind.TRANSFER_COMMISSION_POOL, transaction.commission, validator,
                                f"Transfer commission {transaction.id}", reference=transaction.id
                            )
                        self.audit_trail.log_event(
                            event_type=AuditEventType.TRANSFER_VALIDATED,
                            entity_type="transaction",
                            entity_id=transaction.id,
                            metadata={"real_amount": real_amount, "fx_rate": fx_rate,
                                      "commission": transaction.commission,
                                      "executor_id": transaction.executor_id},
                            user_id=validator.id
                        )
                        event = NotificationEvent.TRANSACTION_VALIDATED
                    else:
                        transaction.rejection_reason = (
                            f"Commission {commission} {LOCAL_CURRENCY.code} does not exceed the minimum "
                            f"of {minimum} {LOCAL_CURRENCY.code}"
                        )
                        event = NotificationEvent.TRANSACTION_REJECTED

                    self._record_transition(transaction, previous, validator, event,
                                            {"commission": transaction.commission})

        log_action(self.logger, "info",
                   f"Transfer {transaction.id} {transaction.status.value} with commission {commission}",
                   user_id=validator.id, action="validate_transfer", resource=transaction.id,
                   extra={"real_amount": str(real_amount), "fx_rate": str(fx_rate),
                          "executor_id": transaction.executor_id})
        return transaction

    def assign_executor(self) -> Optional[str]:
        """Available executor with the fewest validated transfers waiting, or None"""
        executors = self.executors.available_executors()
        if not executors:
            self.logger.warning("No executor available for validated transfer")
            return None
        open_counts = {executor_id: 0 for executor_id in executors}
        for data in self.storage.find(self.TABLE, {'type': TransactionType.TRANSFER.value,
                                                   'status': TransactionStatus.VALIDATED.value}):
            executor_id = data.get('executor_id')
            if executor_id in open_counts:
                open_counts[executor_id] += 1
        return min(executors, key=lambda executor_id: open_counts[executor_id])

    def execute_transaction(self, transaction_id: str, executor: Actor, receipt_ref: str,
                            comment: Optional[str] = None, as_auditor: bool = False) -> Transaction:
        """
        Mark a validated transfer as paid out abroad.

        Raises:
            InvalidOperation: Not a validated transfer, or assigned to another executor
        """
        require_permission(executor, Permission.EXECUTE_TRANSFER)
        if as_auditor and executor.role not in (Role.AUDITOR, Role.SUPER_ADMIN):
            raise PermissionDenied("Only auditors can execute on behalf of an executor")
        if not receipt_ref or not receipt_ref.strip():
            raise ValidationError("A receipt reference is required")

        with self.storage.row_lock(self.TABLE, transaction_id):
            with self.storage.atomic():
                transaction = self.get_transaction(transaction_id)
                if transaction.type is not TransactionType.TRANSFER:
                    raise InvalidOperation("Only transfers are executed")
                if transaction.status is not TransactionStatus.VALIDATED:
                    raise InvalidOperation(f"Transaction {transaction_id} is {transaction.status.value}, not validated")
                if not as_auditor and transaction.executor_id != executor.id:
                    raise InvalidOperation(f"Transaction {transaction_id} is not assigned to {executor.id}")
                previous = self._check(transaction, TransactionStatus.EXECUTED, executor)

                transaction.status = TransactionStatus.EXECUTED
                transaction.receipt_reference = receipt_ref.strip()
                transaction.execution_comment = comment
                transaction.executed_at = datetime.now(timezone.utc)
                if transaction.executor_id is None:
                    transaction.executor_id = executor.id
                self.audit_trail.log_event(
                    event_type=AuditEventType.TRANSACTION_EXECUTED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={"receipt_reference": transaction.receipt_reference, "as_auditor": as_auditor},
                    user_id=executor.id
                )
                self._record_transition(transaction, previous, executor, NotificationEvent.TRANSACTION_EXECUTED,
                                        {"receipt_reference": transaction.receipt_reference})
        return transaction

    def complete_transaction(self, transaction_id: str, actor: Actor) -> Transaction:
        """Close a transaction; no funds effect"""
        require_permission(actor, Permission.COMPLETE_TRANSACTION)
        with self.storage.row_lock(self.TABLE, transaction_id):
            with self.storage.atomic():
                transaction = self.get_transaction(transaction_id)
                previous = self._check(transaction, TransactionStatus.COMPLETED, actor)
                transaction.status = TransactionStatus.COMPLETED
                transaction.completed_at = datetime.now(timezone.utc)
                self._record_transition(transaction, previous, actor, NotificationEvent.TRANSACTION_COMPLETED)
        return transaction

    def reject_transaction(self, transaction_id: str, actor: Actor, reason: Optional[str]) -> Transaction:
        """
        Reject a transaction with a reason.

        Rejecting a validated transfer withdraws its commission from the
        transfer commission pool in the same atomic unit.

        Raises:
            InsufficientFunds: The pool no longer covers the commission; nothing changes
        """
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        with self.storage.row_lock(self.TABLE, transaction_id):
            with self.storage.atomic():
                transaction = self.get_transaction(transaction_id)
                previous = self._check(transaction, TransactionStatus.REJECTED, actor)
                transaction.status = TransactionStatus.REJECTED
                transaction.rejection_reason = reason.strip()
                self._reverse_commission(transaction, previous, actor)
                self._record_transition(transaction, previous, actor, NotificationEvent.TRANSACTION_REJECTED,
                                        {"reason": transaction.rejection_reason})
        return transaction

    def request_deletion(self, transaction_id: str, requester: Actor,
                         reason: Optional[str] = None) -> Transaction:
        """Ask for a completed transaction to be struck off; creator only"""
        require_permission(requester, Permission.REQUEST_DELETION)
        with self.storage.row_lock(self.TABLE, transaction_id):
            with self.storage.atomic():
                transaction = self.get_transaction(transaction_id)
                if transaction.created_by != requester.id and requester.role is not Role.SUPER_ADMIN:
                    raise PermissionDenied("Only the creator can request deletion of a transaction")
                if transaction.status is not TransactionStatus.COMPLETED:
                    raise InvalidOperation("Only completed transactions can be deleted")
                previous = self._check(transaction, TransactionStatus.PENDING_DELETE, requester)
                transaction.status = TransactionStatus.PENDING_DELETE
                transaction.deletion_requested_by = requester.id
                transaction.deletion_reason = reason
                self.audit_trail.log_event(
                    event_type=AuditEventType.DELETION_REQUESTED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={"reason": reason},
                    user_id=requester.id
                )
                self._record_transition(transaction, previous, requester, NotificationEvent.DELETION_REQUESTED,
                                        {"reason": reason})
        return transaction

    def validate_deletion(self, transaction_id: str, validator: Actor) -> Transaction:
        """Approve a deletion request; the transaction ends rejected and its pooled commission is withdrawn"""
        require_permission(validator, Permission.VALIDATE_DELETION)
        with self.storage.row_lock(self.TABLE, transaction_id):
            with self.storage.atomic():
                transaction = self.get_transaction(transaction_id)
                if transaction.status is not TransactionStatus.PENDING_DELETE:
                    raise InvalidOperation(f"Transaction {transaction_id} has no pending deletion request")
                previous = self._check(transaction, TransactionStatus.REJECTED, validator)
                transaction.status = TransactionStatus.REJECTED
                transaction.rejection_reason = transaction.deletion_reason or "Deleted"
                transaction.delete_validated_by = validator.id
                transaction.delete_validated_at = datetime.now(timezone.utc)
                self._reverse_commission(transaction, previous, validator)
                self.audit_trail.log_event(
                    event_type=AuditEventType.DELETION_VALIDATED,
                    entity_type="transaction",
                    entity_id=transaction.id,
                    metadata={"requested_by": transaction.deletion_requested_by},
                    user_id=validator.id
                )
                self._record_transition(transaction, previous, validator, NotificationEvent.DELETION_VALIDATED)
        return transaction

    # Queries

    def get_transaction(self, transaction_id: str) -> Transaction:
        data = self.storage.load(self.TABLE, transaction_id)
        if not data:
            raise NotFound("transaction", transaction_id)
        return Transaction.from_dict(data)

    def list_transactions(
        self,
        status: Optional[TransactionStatus] = None,
        type: Optional[TransactionType] = None,
        creator: Optional[str] = None,
        agency: Optional[str] = None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None
    ) -> List[Transaction]:
        """Transactions matching the filters, most recent first"""
        filters: Dict[str, Any] = {}
        if status is not None:
            filters['status'] = TransactionStatus(status).value
        if type is not None:
            filters['type'] = TransactionType(type).value
        if creator is not None:
            filters['created_by'] = creator
        if agency is not None:
            filters['agency'] = agency
        rows = self.storage.find_between(self.TABLE, filters, start, end)
        transactions = [Transaction.from_dict(row) for row in rows]
        transactions.sort(key=lambda t: t.created_at, reverse=True)
        return transactions

    def get_pending_transactions(self) -> List[Transaction]:
        return self.list_transactions(status=TransactionStatus.PENDING)

    def get_transactions_for_executor(self, executor_id: str,
                                      include_executed: bool = False) -> List[Transaction]:
        """Transfers assigned to an executor, waiting for execution"""
        statuses = {TransactionStatus.VALIDATED}
        if include_executed:
            statuses.add(TransactionStatus.EXECUTED)
        return [t for t in self.list_transactions(type=TransactionType.TRANSFER)
                if t.executor_id == executor_id and t.status in statuses]

    def transaction_stats(self) -> Dict[str, Any]:
        """Counts by status and type, and total transfer commission"""
        by_status = {status.value: 0 for status in TransactionStatus}
        by_type = {kind.value: 0 for kind in TransactionType}
        commission = Decimal('0')
        for transaction in self.list_transactions():
            by_status[transaction.status.value] += 1
            by_type[transaction.type.value] += 1
            if (transaction.type is TransactionType.TRANSFER and transaction.commission
                    and transaction.status in COMMISSIONED_STATUSES):
                commission += transaction.commission
        return {"by_status": by_status, "by_type": by_type, "transfer_commission": commission}

    # Internals

    def _new_id(self, now: datetime) -> str:
        for _ in range(1000):
            candidate = generate_transaction_id(now)
            if not self.storage.exists(self.TABLE, candidate):
                return candidate
        raise InvalidOperation("Transaction id space exhausted for this minute")

    def _received_local(self, transaction: Transaction) -> Decimal:
        received = transaction.details.amount_received
        if received is not None:
            return to_decimal(received)
        if transaction.currency is LOCAL_CURRENCY:
            return transaction.amount
        raise ValidationError(f"Transfer {transaction.id} has no amount received in {LOCAL_CURRENCY.code}")

    def _check(self, transaction: Transaction, target: TransactionStatus, actor: Actor) -> TransactionStatus:
        TRANSACTION_FSM.assert_can_transition(transaction.status, target, actor.role, transaction.type)
        return transaction.status

    def _reverse_commission(self, transaction: Transaction, previous: TransactionStatus, actor: Actor) -> None:
        """Withdraw a posted commission from its pool; caller holds the transaction row lock"""
        pool = COMMISSION_POOLS.get(transaction.type)
        if pool is None or previous not in COMMISSIONED_STATUSES:
            return
        if not transaction.commission or transaction.commission <= 0:
            return
        with self.storage.row_lock(CashLedger.ACCOUNTS_TABLE, pool.value):
            self.ledger.debit(pool, transaction.commission, actor,
                              f"Commission reversal {transaction.id}", reference=transaction.id)

    def _save(self, transaction: Transaction) -> None:
        self.storage.save(self.TABLE, transaction.id, transaction.to_dict())

    def _record_transition(self, transaction: Transaction, previous: TransactionStatus, actor: Actor,
                           event: NotificationEvent, extra: Optional[Dict[str, Any]] = None) -> None:
        """Persist a status change with its audit entry and queued notification"""
        transaction.updated_at = datetime.now(timezone.utc)
        self._save(transaction)
        self.audit_trail.log_event(
            event_type=AuditEventType.TRANSACTION_STATUS_CHANGED,
            entity_type="transaction",
            entity_id=transaction.id,
            metadata={"from": previous.value, "to": transaction.status.value,
                      "reason": transaction.rejection_reason},
            user_id=actor.id
        )
        data = {"type": transaction.type.value, "from": previous.value, "to": transaction.status.value}
        data.update(extra or {})
        self.notifier.notify(event, transaction.id, data,
                             recipients=[transaction.created_by, transaction.executor_id])
        log_action(self.logger, "info",
                   f"Transaction {transaction.id} {previous.value} -> {transaction.status.value}",
                   user_id=actor.id, action="update_status", resource=transaction.id)
