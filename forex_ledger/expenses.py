"""
Expense Approval Module

Two-stage approval of expenses: financial control (accounting) first, then
executive (director). The final approval debits the vault, or the exchange
surplus pool when the expense is flagged to be covered by a cashier's
declared surplus, exactly once and in the same atomic unit as the status
change.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .cash_accounts import AccountKind, CashLedger, CashMovement, MovementKind
from .currency import LOCAL_CURRENCY, quantize, to_decimal
from .errors import InsufficientFunds, InvalidOperation, NotFound, ValidationError
from .logging_config import get_logger, log_action
from .notifications import NotificationDispatcher, NotificationEvent
from .rbac import Actor, Permission, Role, require_permission
from .storage import StorageInterface, StorageRecord, parse_datetime


class ExpenseStatus(Enum):
    PENDING = "pending"
    ACCOUNTING_APPROVED = "accounting_approved"
    ACCOUNTING_REJECTED = "accounting_rejected"
    DIRECTOR_APPROVED = "director_approved"
    DIRECTOR_REJECTED = "director_rejected"


DECIDED_STATUSES = frozenset({
    ExpenseStatus.ACCOUNTING_REJECTED,
    ExpenseStatus.DIRECTOR_APPROVED,
    ExpenseStatus.DIRECTOR_REJECTED,
})


@dataclass
class Expense(StorageRecord):
    """Expense request"""
    description: str
    amount: Decimal
    category: str
    status: ExpenseStatus
    requested_by: str
    agency: Optional[str] = None
    comment: Optional[str] = None
    deduct_from_surplus: bool = False
    cashier_id: Optional[str] = None
    accounting_validated_by: Optional[str] = None
    accounting_validated_at: Optional[datetime] = None
    director_validated_by: Optional[str] = None
    director_validated_at: Optional[datetime] = None
    rejection_reason: Optional[str] = None
    debit_movement_id: Optional[str] = None

    @property
    def debit_account(self) -> AccountKind:
        """Account charged on final approval"""
        return AccountKind.EXCHANGE_SURPLUS_POOL if self.deduct_from_surplus else AccountKind.VAULT

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Expense':
        data = dict(data)
        data['amount'] = Decimal(data['amount'])
        data['status'] = ExpenseStatus(data['status'])
        for name in ('accounting_validated_at', 'director_validated_at'):
            data[name] = parse_datetime(data.get(name))
        return super().from_dict(data)


class ExpenseWorkflow:
    """Expense submission and the two approval stages"""

    def __init__(self, storage: StorageInterface, ledger: CashLedger,
                 audit_trail: AuditTrail, notifier: NotificationDispatcher):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.notifier = notifier
        self.table_name = "expenses"
        self.logger = get_logger("forex.expenses")

    def submit_expense(
        self,
        description: str,
        amount,
        category: str,
        requester: Actor,
        agency: Optional[str] = None,
        comment: Optional[str] = None,
        deduct_from_surplus: bool = False,
        cashier_id: Optional[str] = None
    ) -> Expense:
        """
        Submit an expense for approval.

        Args:
            description: What the money is for
            amount: Positive amount in XAF
            category: Free-form category
            requester: Caller
            deduct_from_surplus: Cover the expense from a cashier's declared
                exchange surplus instead of the vault
            cashier_id: Cashier whose surplus is used; defaults to the
                requester when the requester is a cashier
        """
        require_permission(requester, Permission.SUBMIT_EXPENSE)
        if not description or not description.strip():
            raise ValidationError("Description is required")
        amount = quantize(to_decimal(amount), LOCAL_CURRENCY)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        if deduct_from_surplus and not cashier_id:
            if requester.role is not Role.CASHIER:
                raise ValidationError("A cashier must be given for an expense covered by surplus")
            cashier_id = requester.id

        now = datetime.now(timezone.utc)
        expense = Expense(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            description=description.strip(),
            amount=amount,
            category=category or "other",
            status=ExpenseStatus.PENDING,
            requested_by=requester.id,
            agency=agency or requester.agency,
            comment=comment,
            deduct_from_surplus=deduct_from_surplus,
            cashier_id=cashier_id if deduct_from_surplus else None,
        )

        with self.storage.atomic():
            self.storage.save(self.table_name, expense.id, expense.to_dict())
            self.audit_trail.log_event(
                event_type=AuditEventType.EXPENSE_SUBMITTED,
                entity_type="expense",
                entity_id=expense.id,
                metadata={"amount": amount, "category": expense.category,
                          "deduct_from_surplus": deduct_from_surplus, "cashier_id": expense.cashier_id},
                user_id=requester.id
            )
            self.notifier.notify(NotificationEvent.EXPENSE_SUBMITTED, expense.id,
                                 {"amount": amount, "description": expense.description,
                                  "requested_by": requester.id})

        log_action(self.logger, "info", f"Expense {expense.id} submitted for {amount}",
                   user_id=requester.id, action="submit_expense", resource=expense.id)
        return expense

    def approve_expense_by_control(self, expense_id: str, approve: bool, approver: Actor,
                                   reason: Optional[str] = None) -> Expense:
        """
        First stage: accounting approves or rejects a pending expense.

        Raises:
            InvalidOperation: If the expense is not pending
            ValidationError: Rejection without a reason
        """
        require_permission(approver, Permission.APPROVE_EXPENSE_CONTROL)
        if not approve and (not reason or not reason.strip()):
            raise ValidationError("A rejection reason is required")

        with self.storage.row_lock(self.table_name, expense_id):
            with self.storage.atomic():
                expense = self.get_expense(expense_id)
                if expense.status is not ExpenseStatus.PENDING:
                    raise InvalidOperation(f"Expense {expense_id} is already {expense.status.value}")

                now = datetime.now(timezone.utc)
                expense.accounting_validated_by = approver.id
                expense.accounting_validated_at = now
                if approve:
                    expense.status = ExpenseStatus.ACCOUNTING_APPROVED
                else:
                    expense.status = ExpenseStatus.ACCOUNTING_REJECTED
                    expense.rejection_reason = reason.strip()
                self._record_decision(expense, approver, "control")
        return expense

    def approve_expense_by_executive(self, expense_id: str, approve: bool, approver: Actor,
                                     reason: Optional[str] = None) -> Expense:
        """
        Second stage: the director approves (debiting the expense's account)
        or rejects an expense already approved by accounting.

        Raises:
            InvalidOperation: Accounting has not approved it, or it is already decided
            InsufficientFunds: Account (or the cashier's surplus) does not cover
                the amount; the expense stays accounting_approved
        """
        require_permission(approver, Permission.APPROVE_EXPENSE_EXECUTIVE)
        if not approve and (not reason or not reason.strip()):
            raise ValidationError("A rejection reason is required")

        expense = self.get_expense(expense_id)
        with self.storage.row_lock(self.table_name, expense_id):
            with self.storage.row_lock(CashLedger.ACCOUNTS_TABLE, expense.debit_account.value):
                with self.storage.atomic():
                    expense = self.get_expense(expense_id)
                    if expense.status is ExpenseStatus.PENDING:
                        raise InvalidOperation(f"Expense {expense_id} has not been approved by accounting")
                    if expense.status is not ExpenseStatus.ACCOUNTING_APPROVED:
                        raise InvalidOperation(f"Expense {expense_id} is already {expense.status.value}")

                    now = datetime.now(timezone.utc)
                    if approve:
                        movement = self._debit(expense, approver)
                        expense.debit_movement_id = movement.id
                        expense.status = ExpenseStatus.DIRECTOR_APPROVED
                    else:
                        expense.status = ExpenseStatus.DIRECTOR_REJECTED
                        expense.rejection_reason = reason.strip()
                    expense.director_validated_by = approver.id
                    expense.director_validated_at = now
                    self._record_decision(expense, approver, "executive")
        return expense

    def record_cashier_surplus(self, cashier_id: str, amount, actor: Actor,
                               note: Optional[str] = None) -> CashMovement:
        """Deposit a cashier's declared exchange surplus into the surplus pool"""
        require_permission(actor, Permission.OPERATE_EXCHANGE_DESK)
        if not cashier_id:
            raise ValidationError("A cashier is required")
        return self.ledger.deposit(AccountKind.EXCHANGE_SURPLUS_POOL, amount, actor,
                                   note or f"Exchange surplus declared by {cashier_id}",
                                   reference=cashier_id)

    def cashier_surplus_available(self, cashier_id: str) -> Decimal:
        """Surplus a cashier declared, less what approved expenses already used"""
        declared = sum(
            (m.amount for m in self.ledger.get_movements(AccountKind.EXCHANGE_SURPLUS_POOL,
                                                         movement_kind=MovementKind.DEPOSIT,
                                                         reference=cashier_id)),
            Decimal('0')
        )
        used = sum(
            (e.amount for e in self.list_expenses(status=ExpenseStatus.DIRECTOR_APPROVED)
             if e.deduct_from_surplus and e.cashier_id == cashier_id),
            Decimal('0')
        )
        return declared - used

    def get_expense(self, expense_id: str) -> Expense:
        data = self.storage.load(self.table_name, expense_id)
        if not data:
            raise NotFound("expense", expense_id)
        return Expense.from_dict(data)

    def list_expenses(self, requester: Optional[str] = None,
                      status: Optional[ExpenseStatus] = None,
                      agency: Optional[str] = None) -> List[Expense]:
        """Expenses matching the filters, most recent first"""
        filters: Dict[str, Any] = {}
        if requester is not None:
            filters['requested_by'] = requester
        if status is not None:
            filters['status'] = ExpenseStatus(status).value
        if agency is not None:
            filters['agency'] = agency
        expenses = [Expense.from_dict(data) for data in self.storage.find(self.table_name, filters)]
        expenses.sort(key=lambda e: e.created_at, reverse=True)
        return expenses

    def _debit(self, expense: Expense, approver: Actor) -> CashMovement:
        if expense.deduct_from_surplus:
            available = self.cashier_surplus_available(expense.cashier_id)
            if expense.amount > available:
                raise InsufficientFunds(f"surplus of {expense.cashier_id}", available, expense.amount)
        return self.ledger.debit(expense.debit_account, expense.amount, approver,
                                 f"Expense: {expense.description}", reference=expense.id,
                                 movement_kind=MovementKind.EXPENSE)

    def _record_decision(self, expense: Expense, approver: Actor, stage: str) -> None:
        expense.updated_at = datetime.now(timezone.utc)
        self.storage.save(self.table_name, expense.id, expense.to_dict())
        self.audit_trail.log_event(
            event_type=AuditEventType.EXPENSE_DECIDED,
            entity_type="expense",
            entity_id=expense.id,
            metadata={"stage": stage, "status": expense.status.value,
                      "reason": expense.rejection_reason, "debit_movement_id": expense.debit_movement_id},
            user_id=approver.id
        )
        self.notifier.notify(NotificationEvent.EXPENSE_DECIDED, expense.id,
                             {"stage": stage, "status": expense.status.value,
                              "amount": expense.amount, "reason": expense.rejection_reason},
                             recipients=[expense.requested_by])
        log_action(self.logger, "info", f"Expense {expense.id} {expense.status.value}",
                   user_id=approver.id, action=f"approve_expense_{stage}", resource=expense.id)
