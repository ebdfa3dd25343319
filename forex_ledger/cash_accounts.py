"""
Cash Account Ledger Module

Fixed set of named cash accounts (banks, vault, commission and surplus pools)
and their append-only movement log. Every balance change writes exactly one
movement in the same atomic unit, under a lock on the account row, so
balance == sum of signed movements holds for every account at all times.

Pool balances are defined as the reconciled sum of their log and are never
set directly. Debits never clamp: an overdraft raises InsufficientFunds.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional
from enum import Enum
import uuid

from .audit import AuditTrail, AuditEventType
from .currency import Currency, quantize, to_decimal
from .errors import InsufficientFunds, InvalidOperation, NotFound, ValidationError
from .logging_config import get_logger, log_action
from .rbac import Actor
from .storage import StorageInterface, StorageRecord


class AccountKind(Enum):
    """Named cash accounts"""
    BANK_A = "bank_a"
    BANK_B = "bank_b"
    VAULT = "vault"
    TRANSFER_COMMISSION_POOL = "transfer_commission_pool"
    RECEIPT_COMMISSION_POOL = "receipt_commission_pool"
    EXCHANGE_SURPLUS_POOL = "exchange_surplus_pool"

    @property
    def is_pool(self) -> bool:
        """Pools are reconciled from their log, never set directly"""
        return self in POOL_ACCOUNTS


POOL_ACCOUNTS = frozenset({
    AccountKind.TRANSFER_COMMISSION_POOL,
    AccountKind.RECEIPT_COMMISSION_POOL,
    AccountKind.EXCHANGE_SURPLUS_POOL,
})

DISPLAY_NAMES: Dict[AccountKind, str] = {
    AccountKind.BANK_A: "Bank account A",
    AccountKind.BANK_B: "Bank account B",
    AccountKind.VAULT: "Vault",
    AccountKind.TRANSFER_COMMISSION_POOL: "Transfer commissions",
    AccountKind.RECEIPT_COMMISSION_POOL: "Receipt commissions",
    AccountKind.EXCHANGE_SURPLUS_POOL: "Exchange surplus",
}


class MovementKind(Enum):
    """Kinds of cash movement"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    TRANSFER = "transfer"
    EXPENSE = "expense"
    COMMISSION = "commission"


def parse_account_kind(kind) -> AccountKind:
    """Accept an AccountKind or its string value"""
    if isinstance(kind, AccountKind):
        return kind
    try:
        return AccountKind(kind)
    except ValueError:
        raise NotFound("account", str(kind))


@dataclass
class CashAccount(StorageRecord):
    """Balance of one named account (XAF, whole units)"""
    kind: AccountKind
    display_name: str
    balance: Decimal
    updated_by: Optional[str] = None

    @property
    def last_updated(self) -> datetime:
        return self.updated_at

    @classmethod
    def from_dict(cls, data: Dict) -> 'CashAccount':
        data = dict(data)
        data['kind'] = AccountKind(data['kind'])
        data['balance'] = Decimal(data['balance'])
        return super().from_dict(data)


@dataclass
class CashMovement(StorageRecord):
    """
    Append-only movement row. Amount is signed: deposits and commissions are
    positive, withdrawals and expenses negative, transfers either way.
    """
    account_kind: AccountKind
    movement_kind: MovementKind
    amount: Decimal
    description: str
    actor_id: str
    reference: Optional[str] = None
    balance_after: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Dict) -> 'CashMovement':
        data = dict(data)
        data['account_kind'] = AccountKind(data['account_kind'])
        data['movement_kind'] = MovementKind(data['movement_kind'])
        data['amount'] = Decimal(data['amount'])
        if data.get('balance_after') is not None:
            data['balance_after'] = Decimal(data['balance_after'])
        return super().from_dict(data)


# Movement kinds counted positively / negatively when reconciling a pool
POOL_CREDIT_KINDS = (MovementKind.COMMISSION, MovementKind.DEPOSIT)
POOL_DEBIT_KINDS = (MovementKind.WITHDRAWAL, MovementKind.EXPENSE)


class CashLedger:
    """
    Cash account balances and their movement log.

    Knows nothing about transactions or exchange rates; workflows call it to
    move money and it guarantees that each balance stays equal to its log.
    """

    ACCOUNTS_TABLE = "cash_accounts"
    MOVEMENTS_TABLE = "cash_movements"

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.logger = get_logger("forex.cash_accounts")
        self.initialize_accounts()

    def initialize_accounts(self) -> List[CashAccount]:
        """Create any missing account row with a zero balance"""
        created = []
        for kind in AccountKind:
            with self.storage.row_lock(self.ACCOUNTS_TABLE, kind.value):
                if self.storage.exists(self.ACCOUNTS_TABLE, kind.value):
                    continue
                now = datetime.now(timezone.utc)
                account = CashAccount(
                    id=kind.value,
                    created_at=now,
                    updated_at=now,
                    kind=kind,
                    display_name=DISPLAY_NAMES[kind],
                    balance=Decimal('0'),
                )
                self.storage.save(self.ACCOUNTS_TABLE, account.id, account.to_dict())
                created.append(account)

        for account in created:
            self.audit_trail.log_event(
                event_type=AuditEventType.ACCOUNT_INITIALIZED,
                entity_type="cash_account",
                entity_id=account.id,
                metadata={"display_name": account.display_name}
            )
        return created

    def get_accounts(self) -> List[CashAccount]:
        """All accounts, in declaration order"""
        return [self.get_account(kind) for kind in AccountKind]

    def get_account(self, kind) -> CashAccount:
        kind = parse_account_kind(kind)
        data = self.storage.load(self.ACCOUNTS_TABLE, kind.value)
        if not data:
            raise NotFound("account", kind.value)
        return CashAccount.from_dict(data)

    def get_balance(self, kind) -> Decimal:
        return self.get_account(kind).balance

    def set_account_balance(self, kind, new_balance, actor: Actor, note: str) -> CashAccount:
        """
        Administrative override of a bank or vault balance.

        The difference with the current balance is logged as a deposit or
        withdrawal so the log still sums to the balance.

        Raises:
            InvalidOperation: For pool accounts
            ValidationError: If the new balance is negative
        """
        kind = parse_account_kind(kind)
        if kind.is_pool:
            raise InvalidOperation(f"{kind.value} is reconciled from its movements and cannot be set directly")
        new_balance = quantize(to_decimal(new_balance), Currency.XAF)
        if new_balance < 0:
            raise ValidationError("Account balance cannot be negative")

        with self.storage.row_lock(self.ACCOUNTS_TABLE, kind.value):
            with self.storage.atomic():
                account = self.get_account(kind)
                delta = new_balance - account.balance
                if delta == 0:
                    return account
                movement_kind = MovementKind.DEPOSIT if delta > 0 else MovementKind.WITHDRAWAL
                self._write_movement(account, delta, movement_kind, actor,
                                     note or "Balance correction", None)
                self.audit_trail.log_event(
                    event_type=AuditEventType.ACCOUNT_BALANCE_SET,
                    entity_type="cash_account",
                    entity_id=kind.value,
                    metadata={"previous_balance": account.balance - delta,
                              "new_balance": new_balance, "note": note},
                    user_id=actor.id
                )

        log_action(self.logger, "info", f"Balance of {kind.value} set to {new_balance}",
                   user_id=actor.id, action="set_account_balance", resource=kind.value,
                   extra={"delta": str(delta)})
        return account

    def deposit(self, kind, amount, actor: Actor, note: str,
                reference: Optional[str] = None) -> CashMovement:
        """Credit an account"""
        kind = parse_account_kind(kind)
        amount = self._positive_amount(amount)
        movement = self._mutate(kind, amount, MovementKind.DEPOSIT, actor, note, reference)
        self._audit_movement(AuditEventType.ACCOUNT_CREDITED, movement, actor)
        return movement

    def debit(self, kind, amount, actor: Actor, note: str,
              reference: Optional[str] = None,
              movement_kind: MovementKind = MovementKind.WITHDRAWAL) -> CashMovement:
        """
        Withdraw from an account, failing if the balance does not cover it.

        Args:
            kind: Account to debit
            amount: Positive amount in XAF
            actor: Caller
            note: Free-text description
            reference: Originating transaction, expense or operation id
            movement_kind: WITHDRAWAL (default) or EXPENSE

        Raises:
            InsufficientFunds: If amount exceeds the balance; nothing is written
        """
        if movement_kind not in (MovementKind.WITHDRAWAL, MovementKind.EXPENSE):
            raise ValidationError(f"Cannot debit with a {movement_kind.value} movement")
        kind = parse_account_kind(kind)
        amount = self._positive_amount(amount)
        movement = self._mutate(kind, -amount, movement_kind, actor, note, reference)
        self._audit_movement(AuditEventType.ACCOUNT_DEBITED, movement, actor)
        return movement

    def post_commission(self, kind, amount, actor: Actor, note: str,
                        reference: Optional[str] = None) -> CashMovement:
        """Credit a commission to an account, usually one of the pools"""
        kind = parse_account_kind(kind)
        amount = self._positive_amount(amount)
        movement = self._mutate(kind, amount, MovementKind.COMMISSION, actor, note, reference)
        self._audit_movement(AuditEventType.COMMISSION_POSTED, movement, actor)
        return movement

    def transfer(self, from_kind, to_kind, amount, actor: Actor, note: str,
                 reference: Optional[str] = None) -> List[CashMovement]:
        """Move funds between two accounts as a pair of transfer movements"""
        from_kind = parse_account_kind(from_kind)
        to_kind = parse_account_kind(to_kind)
        if from_kind == to_kind:
            raise ValidationError("Cannot transfer an account to itself")
        amount = self._positive_amount(amount)

        with self.storage.row_lock(self.ACCOUNTS_TABLE, from_kind.value, to_kind.value):
            with self.storage.atomic():
                outgoing = self._apply(from_kind, -amount, MovementKind.TRANSFER, actor,
                                       note, reference)
                incoming = self._apply(to_kind, amount, MovementKind.TRANSFER, actor,
                                       note, reference)
                self._audit_movement(AuditEventType.ACCOUNT_DEBITED, outgoing, actor)
                self._audit_movement(AuditEventType.ACCOUNT_CREDITED, incoming, actor)
        return [outgoing, incoming]

    def reconcile_pool(self, kind) -> Decimal:
        """
        Recompute a pool balance from its movement log and persist it.

        Balance = sum(commission + deposit) - sum(withdrawal + expense). A
        disagreement with the cached balance is logged and corrected, never
        raised. Idempotent.
        """
        kind = parse_account_kind(kind)
        if not kind.is_pool:
            raise InvalidOperation(f"{kind.value} is not a pool account")

        with self.storage.row_lock(self.ACCOUNTS_TABLE, kind.value):
            with self.storage.atomic():
                account = self.get_account(kind)
                total = self.pool_total(kind)
                if total != account.balance:
                    self.logger.warning(
                        f"Pool {kind.value} drifted: cached {account.balance}, log {total}"
                    )
                    account.balance = total
                    account.updated_at = datetime.now(timezone.utc)
                    self.storage.save(self.ACCOUNTS_TABLE, account.id, account.to_dict())
                    self.audit_trail.log_event(
                        event_type=AuditEventType.POOL_RECONCILED,
                        entity_type="cash_account",
                        entity_id=kind.value,
                        metadata={"recomputed_balance": total}
                    )
        return total

    def pool_total(self, kind) -> Decimal:
        """Pool balance as defined by its log, without persisting it"""
        kind = parse_account_kind(kind)
        total = Decimal('0')
        for movement in self.get_movements(kind):
            if movement.movement_kind in POOL_CREDIT_KINDS:
                total += abs(movement.amount)
            elif movement.movement_kind in POOL_DEBIT_KINDS:
                total -= abs(movement.amount)
            else:
                total += movement.amount
        return total

    def movement_total(self, kind, movement_kinds: Optional[Iterable[MovementKind]] = None) -> Decimal:
        """Signed sum of an account's movements, optionally restricted to some kinds"""
        kinds = set(movement_kinds) if movement_kinds else None
        return sum(
            (m.amount for m in self.get_movements(kind) if kinds is None or m.movement_kind in kinds),
            Decimal('0')
        )

    def get_movements(
        self,
        kind=None,
        start: Optional[datetime] = None,
        end: Optional[datetime] = None,
        movement_kind: Optional[MovementKind] = None,
        reference: Optional[str] = None,
        limit: Optional[int] = None
    ) -> List[CashMovement]:
        """
        Movements in chronological order, optionally filtered

        Args:
            kind: Restrict to one account
            start: Inclusive lower bound on creation time
            end: Inclusive upper bound on creation time
            movement_kind: Restrict to one movement kind
            reference: Restrict to movements of one originating entity
            limit: Keep only the most recent N movements
        """
        filters = {}
        if kind is not None:
            filters['account_kind'] = parse_account_kind(kind).value
        if movement_kind is not None:
            filters['movement_kind'] = movement_kind.value
        if reference is not None:
            filters['reference'] = reference

        rows = self.storage.find_between(self.MOVEMENTS_TABLE, filters, start, end)
        movements = [CashMovement.from_dict(row) for row in rows]
        movements.sort(key=lambda m: m.created_at)
        if limit:
            movements = movements[-limit:]
        return movements

    def _positive_amount(self, amount) -> Decimal:
        amount = quantize(to_decimal(amount), Currency.XAF)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        return amount

    def _mutate(self, kind: AccountKind, delta: Decimal, movement_kind: MovementKind,
                actor: Actor, note: str, reference: Optional[str]) -> CashMovement:
        with self.storage.row_lock(self.ACCOUNTS_TABLE, kind.value):
            with self.storage.atomic():
                return self._apply(kind, delta, movement_kind, actor, note, reference)

    def _apply(self, kind: AccountKind, delta: Decimal, movement_kind: MovementKind,
               actor: Actor, note: str, reference: Optional[str]) -> CashMovement:
        """Read-check-write of one account; caller holds its row lock inside an atomic unit"""
        account = self.get_account(kind)
        if kind.is_pool:
            account.balance = self.pool_total(kind)
        if delta < 0 and account.balance + delta < 0:
            raise InsufficientFunds(kind.value, account.balance, -delta)
        return self._write_movement(account, delta, movement_kind, actor, note, reference)

    def _write_movement(self, account: CashAccount, delta: Decimal, movement_kind: MovementKind,
                        actor: Actor, note: str, reference: Optional[str]) -> CashMovement:
        now = datetime.now(timezone.utc)
        account.balance += delta
        account.updated_at = now
        account.updated_by = actor.id

        movement = CashMovement(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            account_kind=account.kind,
            movement_kind=movement_kind,
            amount=delta,
            description=note or movement_kind.value,
            actor_id=actor.id,
            reference=reference,
            balance_after=account.balance,
        )
        self.storage.save(self.MOVEMENTS_TABLE, movement.id, movement.to_dict())
        self.storage.save(self.ACCOUNTS_TABLE, account.id, account.to_dict())
        return movement

    def _audit_movement(self, event_type: AuditEventType, movement: CashMovement, actor: Actor) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="cash_account",
            entity_id=movement.account_kind.value,
            metadata={
                "movement_id": movement.id,
                "movement_kind": movement.movement_kind,
                "amount": movement.amount,
                "balance_after": movement.balance_after,
                "reference": movement.reference,
            },
            user_id=actor.id
        )
        log_action(self.logger, "info",
                   f"{movement.movement_kind.value} of {movement.amount} on {movement.account_kind.value}",
                   user_id=actor.id, action=movement.movement_kind.value,
                   resource=movement.account_kind.value,
                   extra={"movement_id": movement.id, "reference": movement.reference})
