"""
Cash Settlement Module

Daily cash closeout ("arrêté de caisse") of a cashier: the day's takings,
less unloadings handed over during the day, checked by a supervisor against
the cash actually received. Decided settlements are mirrored into the
transaction log as completed settlement transactions.
"""

from decimal import Decimal
from datetime import date, datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import threading
import uuid

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .currency import LOCAL_CURRENCY, quantize, to_decimal
from .errors import InvalidOperation, NotFound, PermissionDenied, ValidationError
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationEvent
from .rbac import Actor, Permission, require_permission
from .state_machine import TransactionType
from .storage import StorageInterface, StorageRecord, parse_datetime
from .transactions import SettlementDetails, TransactionEngine


class SettlementStatus(Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    EXCEPTION = "exception"


@dataclass
class CashSettlement(StorageRecord):
    """Daily closeout of one cashier"""
    settlement_number: str
    cashier_id: str
    cashier_name: str
    settlement_date: str
    total_transactions_amount: Decimal
    unloading_amount: Decimal
    final_amount: Decimal
    status: SettlementStatus
    unloading_reason: Optional[str] = None
    received_amount: Optional[Decimal] = None
    validation_notes: Optional[str] = None
    exception_reason: Optional[str] = None
    rejection_reason: Optional[str] = None
    validated_by: Optional[str] = None
    validated_by_name: Optional[str] = None
    validated_at: Optional[datetime] = None
    mirror_transaction_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CashSettlement':
        data = dict(data)
        data['status'] = SettlementStatus(data['status'])
        for name in ('total_transactions_amount', 'unloading_amount', 'final_amount'):
            data[name] = Decimal(data[name])
        if data.get('received_amount') is not None:
            data['received_amount'] = Decimal(data['received_amount'])
        data['validated_at'] = parse_datetime(data.get('validated_at'))
        return super().from_dict(data)


@dataclass
class CashUnloading(StorageRecord):
    """Cash handed over by a cashier during the day"""
    settlement_id: str
    amount: Decimal
    reason: str
    created_by: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CashUnloading':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        return super().from_dict(data)


class SettlementManager:
    """Creation, unloadings and supervisor decision of cash settlements"""

    def __init__(self, storage: StorageInterface, transactions: TransactionEngine,
                 audit_trail: AuditTrail, notifier: NotificationDispatcher):
        self.storage = storage
        self.transactions = transactions
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.table_name = "cash_settlements"
        self.unloadings_table = "cash_unloadings"
        self.logger = get_logger("forex.settlements")
        self._number_lock = threading.Lock()

    def create_settlement(self, cashier: Actor, settlement_date, total, unloading=Decimal('0'),
                          reason: Optional[str] = None) -> CashSettlement:
        """
        Open a settlement for a cashier's day.

        Args:
            cashier: Cashier closing their till
            settlement_date: Business day (date or ISO string)
            total: Sum of the day's transactions, XAF
            unloading: Cash already handed over during the day
            reason: Why it was unloaded
        """
        require_permission(cashier, Permission.CREATE_SETTLEMENT)
        total = self._amount(total, "Total transactions amount")
        unloading = self._amount(unloading or Decimal('0'), "Unloading amount")
        if unloading > total:
            raise ValidationError("Unloading cannot exceed the total transactions amount")
        if isinstance(settlement_date, (date, datetime)):
            settlement_date = settlement_date.isoformat()[:10]
        if not settlement_date:
            raise ValidationError("Settlement date is required")

        now = datetime.now(timezone.utc)
        with self._number_lock:
            with self.storage.atomic():
                settlement = CashSettlement(
                    id=str(uuid.uuid4()),
                    created_at=now,
                    updated_at=now,
                    settlement_number=self._next_number(now),
                    cashier_id=cashier.id,
                    cashier_name=cashier.display_name,
                    settlement_date=str(settlement_date),
                    total_transactions_amount=total,
                    unloading_amount=unloading,
                    unloading_reason=reason,
                    final_amount=total - unloading,
                    status=SettlementStatus.PENDING,
                )
                self._save(settlement)
                if unloading > 0:
                    self._save_unloading(settlement.id, unloading, reason or "Unloading", cashier)
                self.audit_trail.log_event(
                    event_type=AuditEventType.SETTLEMENT_CREATED,
                    entity_type="settlement",
                    entity_id=settlement.id,
                    metadata={"settlement_number": settlement.settlement_number,
                              "total": total, "unloading": unloading},
                    user_id=cashier.id
                )

        log_action(self.logger, "info", f"Settlement {settlement.settlement_number} created",
                   user_id=cashier.id, action="create_settlement", resource=settlement.id,
                   extra={"final_amount": str(settlement.final_amount)})
        return settlement

    def add_unloading(self, settlement_id: str, amount, reason: str, actor: Actor) -> CashUnloading:
        """Record an unloading on a pending settlement and recompute its final amount"""
        if not (actor.has_permission(Permission.CREATE_SETTLEMENT)
                or actor.has_permission(Permission.VALIDATE_SETTLEMENT)):
            raise PermissionDenied(f"Role {actor.role.value} cannot record unloadings")
        if not reason or not reason.strip():
            raise ValidationError("An unloading reason is required")
        amount = self._amount(amount, "Unloading amount")
        if amount <= 0:
            raise ValidationError("Unloading amount must be positive")

        with self.storage.row_lock(self.table_name, settlement_id):
            with self.storage.atomic():
                settlement = self.get_settlement(settlement_id)
                if settlement.status is not SettlementStatus.PENDING:
                    raise InvalidOperation(f"Settlement {settlement.settlement_number} is {settlement.status.value}")
                if settlement.unloading_amount + amount > settlement.total_transactions_amount:
                    raise ValidationError("Unloadings cannot exceed the total transactions amount")

                unloading = self._save_unloading(settlement_id, amount, reason.strip(), actor)
                settlement.unloading_amount += amount
                settlement.final_amount = settlement.total_transactions_amount - settlement.unloading_amount
                settlement.updated_at = datetime.now(timezone.utc)
                self._save(settlement)
                self.audit_trail.log_event(
                    event_type=AuditEventType.SETTLEMENT_UNLOADING_ADDED,
                    entity_type="settlement",
                    entity_id=settlement_id,
                    metadata={"amount": amount, "reason": unloading.reason,
                              "final_amount": settlement.final_amount},
                    user_id=actor.id
                )
        return unloading

    def validate_settlement(self, settlement_id: str, received, validator: Actor,
                            notes: Optional[str] = None,
                            exception_reason: Optional[str] = None) -> CashSettlement:
        """
        Check the cash received against the final amount.

        Within tolerance the settlement is validated; otherwise it becomes an
        exception, which requires a reason.

        Raises:
            ValidationError: Mismatch without an exception reason
            InvalidOperation: Settlement already decided
        """
        require_permission(validator, Permission.VALIDATE_SETTLEMENT)
        received = quantize(to_decimal(received), LOCAL_CURRENCY)
        if received < 0:
            raise ValidationError("Received amount cannot be negative")
        tolerance = Decimal(get_config().settlement_tolerance)

        with self.storage.row_lock(self.table_name, settlement_id):
            with self.storage.atomic():
                settlement = self._pending(settlement_id)
                if abs(received - settlement.final_amount) <= tolerance:
                    settlement.status = SettlementStatus.VALIDATED
                else:
                    if not exception_reason or not exception_reason.strip():
                        raise ValidationError(
                            f"Received {received} does not match final amount {settlement.final_amount}; "
                            f"an exception reason is required"
                        )
                    settlement.status = SettlementStatus.EXCEPTION
                    settlement.exception_reason = exception_reason.strip()
                settlement.received_amount = received
                settlement.validation_notes = notes
                self._decide(settlement, validator)
        return settlement

    def reject_settlement(self, settlement_id: str, reason: str, validator: Actor) -> CashSettlement:
        require_permission(validator, Permission.VALIDATE_SETTLEMENT)
        if not reason or not reason.strip():
            raise ValidationError("A rejection reason is required")
        with self.storage.row_lock(self.table_name, settlement_id):
            with self.storage.atomic():
                settlement = self._pending(settlement_id)
                settlement.status = SettlementStatus.REJECTED
                settlement.rejection_reason = reason.strip()
                self._decide(settlement, validator)
        return settlement

    def get_settlement(self, settlement_id: str) -> CashSettlement:
        data = self.storage.load(self.table_name, settlement_id)
        if not data:
            raise NotFound("settlement", settlement_id)
        return CashSettlement.from_dict(data)

    def list_settlements(self, cashier_id: Optional[str] = None,
                         status: Optional[SettlementStatus] = None) -> List[CashSettlement]:
        """Settlements matching the filters, most recent first"""
        filters: Dict[str, Any] = {}
        if cashier_id is not None:
            filters['cashier_id'] = cashier_id
        if status is not None:
            filters['status'] = SettlementStatus(status).value
        settlements = [CashSettlement.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        settlements.sort(key=lambda s: s.created_at, reverse=True)
        return settlements

    def get_unloadings(self, settlement_id: str) -> List[CashUnloading]:
        unloadings = [CashUnloading.from_dict(data)
                      for data in self.storage.find(self.unloadings_table, {'settlement_id': settlement_id})]
        unloadings.sort(key=lambda u: u.created_at)
        return unloadings

    def settlement_stats(self) -> Dict[str, Any]:
        """Counts per status and amounts of validated and exception settlements"""
        stats: Dict[str, Any] = {"total_settlements": 0}
        for status in SettlementStatus:
            stats[f"{status.value}_settlements"] = 0
        stats["total_validated_amount"] = Decimal('0')
        stats["total_exception_amount"] = Decimal('0')

        for settlement in self.list_settlements():
            stats["total_settlements"] += 1
            stats[f"{settlement.status.value}_settlements"] += 1
            if settlement.status is SettlementStatus.VALIDATED:
                stats["total_validated_amount"] += settlement.final_amount
            elif settlement.status is SettlementStatus.EXCEPTION:
                stats["total_exception_amount"] += settlement.final_amount
        return stats

    def _pending(self, settlement_id: str) -> CashSettlement:
        settlement = self.get_settlement(settlement_id)
        if settlement.status is not SettlementStatus.PENDING:
            raise InvalidOperation(f"Settlement {settlement.settlement_number} is already {settlement.status.value}")
        return settlement

    def _decide(self, settlement: CashSettlement, validator: Actor) -> None:
        now = datetime.now(timezone.utc)
        settlement.validated_by = validator.id
        settlement.validated_by_name = validator.display_name
        settlement.validated_at = now
        settlement.updated_at = now
        self._save(settlement)

        self.audit_trail.log_event(
            event_type=AuditEventType.SETTLEMENT_DECIDED,
            entity_type="settlement",
            entity_id=settlement.id,
            metadata={"status": settlement.status.value, "received": settlement.received_amount,
                      "final_amount": settlement.final_amount,
                      "reason": settlement.exception_reason or settlement.rejection_reason},
            user_id=validator.id
        )
        self.notifier.notify(NotificationEvent.SETTLEMENT_DECIDED, settlement.id,
                             {"settlement_number": settlement.settlement_number,
                              "status": settlement.status.value},
                             recipients=[settlement.cashier_id])
        decided = CashSettlement.from_dict(settlement.to_dict())
        self.storage.on_commit(lambda: self._mirror(decided, validator))

        log_action(self.logger, "info",
                   f"Settlement {settlement.settlement_number} {settlement.status.value}",
                   user_id=validator.id, action="decide_settlement", resource=settlement.id)

    def _mirror(self, settlement: CashSettlement, validator: Actor) -> None:
        """Record a decided settlement in the transaction log; failures are logged only"""
        labels = {
            SettlementStatus.VALIDATED: "validated",
            SettlementStatus.EXCEPTION: "validated with exception",
            SettlementStatus.REJECTED: "rejected",
        }
        try:
            transaction = self.transactions.create_transaction(
                TransactionType.SETTLEMENT,
                f"Cash settlement {settlement.settlement_number} - {labels[settlement.status]}",
                settlement.final_amount,
                LOCAL_CURRENCY,
                validator,
                agency="System",
                details=SettlementDetails(
                    settlement_id=settlement.id,
                    settlement_number=settlement.settlement_number,
                    cashier_id=settlement.cashier_id,
                    settlement_status=settlement.status.value,
                    received_amount=settlement.received_amount,
                ),
            )
            with self.storage.row_lock(self.table_name, settlement.id):
                current = self.get_settlement(settlement.id)
                current.mirror_transaction_id = transaction.id
                self._save(current)
        except Exception:
            self.logger.exception(f"Could not mirror settlement {settlement.settlement_number} as a transaction")

    def _next_number(self, now: datetime) -> str:
        """ARR-YYYYMMDD-NNNN, numbered per day"""
        prefix = f"{get_config().settlement_number_prefix}-{now:%Y%m%d}-"
        taken = [data['settlement_number'] for data in self.storage.load_all(self.table_name)
                 if data.get('settlement_number', '').startswith(prefix)]
        sequence = max((int(number[len(prefix):]) for number in taken), default=0) + 1
        return f"{prefix}{sequence:04d}"

    def _save(self, settlement: CashSettlement) -> None:
        self.storage.save(self.table_name, settlement.id, settlement.to_dict())

    def _save_unloading(self, settlement_id: str, amount: Decimal, reason: str, actor: Actor) -> CashUnloading:
        now = datetime.now(timezone.utc)
        unloading = CashUnloading(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            settlement_id=settlement_id,
            amount=amount,
            reason=reason,
            created_by=actor.id,
        )
        self.storage.save(self.unloadings_table, unloading.id, unloading.to_dict())
        return unloading

    @staticmethod
    def _amount(value, label: str) -> Decimal:
        amount = quantize(to_decimal(value), LOCAL_CURRENCY)
        if amount < 0:
            raise ValidationError(f"{label} cannot be negative")
        return amount
