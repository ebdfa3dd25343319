"""
Currency Exchange Desk Module

Per-currency till balances (local XAF plus USD and EUR) and the append-only
log of desk operations: replenishment, sale, cession and manual adjustment.

Each operation payload records its inputs, derived values (effective rate,
commission) and the signed balance change it made to every till, so a till
can be replayed from the log.
"""

from decimal import Decimal
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from enum import Enum
from contextlib import ExitStack
import uuid

from .audit import AuditTrail, AuditEventType
from .cash_accounts import AccountKind, CashLedger, MovementKind
from .currency import Currency, FOREIGN_CURRENCIES, LOCAL_CURRENCY, quantize, round_rate, to_decimal
from .errors import InsufficientFunds, InvalidSelection, NotFound, ValidationError
from .logging_config import get_logger, log_action
from .rbac import Actor, Permission, require_permission
from .storage import StorageInterface, StorageRecord


class OperationKind(Enum):
    """Kinds of exchange desk operation"""
    REPLENISH = "replenish"
    SELL = "sell"
    CEDE = "cede"
    MANUAL_ADJUST = "manual_adjust"


class FundingSource(Enum):
    """Where the money paid for a replenishment comes from"""
    LOCAL_TILL = "local_till"        # the XAF till
    FOREIGN_TILL = "foreign_till"    # the till of the (foreign) funding currency
    VAULT = "vault"                  # the vault cash account, XAF only


@dataclass
class ExchangeTill(StorageRecord):
    """Cash held by the desk in one currency"""
    currency: Currency
    balance: Decimal
    last_acquisition_rate: Optional[Decimal] = None
    last_adjustment_note: Optional[str] = None
    updated_by: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result['currency'] = self.currency.code
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExchangeTill':
        data = dict(data)
        data['currency'] = Currency.from_code(data['currency'])
        data['balance'] = Decimal(data['balance'])
        if data.get('last_acquisition_rate') is not None:
            data['last_acquisition_rate'] = Decimal(data['last_acquisition_rate'])
        return super().from_dict(data)


@dataclass
class ExchangeOperation(StorageRecord):
    """Immutable record of one desk operation"""
    kind: OperationKind
    actor_id: str
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def balance_changes(self) -> Dict[Currency, Decimal]:
        return {Currency.from_code(code): Decimal(delta)
                for code, delta in self.payload.get('balance_changes', {}).items()}

    def decimal(self, key: str) -> Optional[Decimal]:
        value = self.payload.get(key)
        return Decimal(value) if value is not None else None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ExchangeOperation':
        data = dict(data)
        data['kind'] = OperationKind(data['kind'])
        return super().from_dict(data)


@dataclass(frozen=True)
class ReplenishmentQuote:
    """Derived figures of a replenishment"""
    acquired: Decimal        # amount / purchase rate, before expenses
    expenses: Decimal        # transport + handling + note-exchange fee, target units
    net: Decimal             # what actually reaches the till
    effective_rate: Decimal  # purchase rate with expenses amortized over net


def quote_replenishment(amount: Decimal, purchase_rate: Decimal, target: Currency,
                        transport: Decimal = Decimal('0'), handling: Decimal = Decimal('0'),
                        note_exchange_fee: Decimal = Decimal('0')) -> ReplenishmentQuote:
    """
    Compute acquired and net quantities and the effective acquisition rate.

    effective = purchase_rate + expenses / net, rounded to two decimals; with
    nothing left after expenses the purchase rate itself is booked.
    """
    if purchase_rate <= 0:
        raise ValidationError("Purchase rate must be positive")
    expenses = transport + handling + note_exchange_fee
    if expenses < 0:
        raise ValidationError("Ancillary expenses cannot be negative")

    acquired = quantize(amount / purchase_rate, target)
    net = max(Decimal('0'), acquired - expenses)
    if net > 0:
        effective = round_rate(purchase_rate + expenses / net)
    else:
        effective = round_rate(purchase_rate)
    return ReplenishmentQuote(acquired=acquired, expenses=expenses, net=net, effective_rate=effective)


def sale_commission(sold_amount: Decimal, today_rate: Decimal,
                    last_acquisition_rate: Optional[Decimal]) -> Decimal:
    """max(0, sold x today - sold x cost basis), cost basis falling back to today's rate"""
    cost_basis = last_acquisition_rate if last_acquisition_rate else today_rate
    commission = sold_amount * today_rate - sold_amount * cost_basis
    return quantize(max(Decimal('0'), commission), LOCAL_CURRENCY)


class ExchangeDesk:
    """
    Till balances and desk operations.

    Draws on the cash ledger only when a replenishment is funded from the vault.
    """

    TILLS_TABLE = "exchange_tills"
    OPERATIONS_TABLE = "exchange_operations"

    def __init__(self, storage: StorageInterface, ledger: CashLedger, audit_trail: AuditTrail):
        self.storage = storage
        self.ledger = ledger
        self.audit_trail = audit_trail
        self.logger = get_logger("forex.exchange_desk")
        self._initialize_tills()

    def _initialize_tills(self) -> None:
        for currency in (LOCAL_CURRENCY,) + FOREIGN_CURRENCIES:
            with self.storage.row_lock(self.TILLS_TABLE, currency.code):
                if self.storage.exists(self.TILLS_TABLE, currency.code):
                    continue
                now = datetime.now(timezone.utc)
                till = ExchangeTill(id=currency.code, created_at=now, updated_at=now,
                                    currency=currency, balance=Decimal('0'))
                self.storage.save(self.TILLS_TABLE, till.id, till.to_dict())

    def get_tills(self) -> List[ExchangeTill]:
        return [self.get_till(currency) for currency in (LOCAL_CURRENCY,) + FOREIGN_CURRENCIES]

    def get_till(self, currency) -> ExchangeTill:
        currency = self._currency(currency)
        data = self.storage.load(self.TILLS_TABLE, currency.code)
        if not data:
            raise NotFound("till", currency.code)
        return ExchangeTill.from_dict(data)

    def last_acquisition_rate(self, currency) -> Optional[Decimal]:
        """Rate of the latest replenishment, from the till or else from the operation log"""
        currency = self._currency(currency)
        till = self.get_till(currency)
        if till.last_acquisition_rate and till.last_acquisition_rate > 0:
            return till.last_acquisition_rate
        for operation in reversed(self.get_operations(OperationKind.REPLENISH)):
            if operation.payload.get('target_currency') == currency.code:
                return operation.decimal('effective_rate')
        return None

    def replenish(
        self,
        funding_currency,
        amount,
        target_currency,
        purchase_rate,
        actor: Actor,
        funding_source: Optional[FundingSource] = None,
        transport_expense=Decimal('0'),
        handling_expense=Decimal('0'),
        note_exchange_fee=Decimal('0'),
        note: Optional[str] = None
    ) -> ExchangeOperation:
        """
        Buy a foreign currency to restock its till.

        Args:
            funding_currency: Currency paid
            amount: Amount paid, in the funding currency
            target_currency: Foreign currency bought
            purchase_rate: Funding-currency units per unit bought
            actor: Caller
            funding_source: Till or account the payment is drawn from
            transport_expense, handling_expense, note_exchange_fee: Ancillary
                expenses in units of the target currency

        Raises:
            InvalidSelection: No funding source, or one that cannot pay in the funding currency
            InsufficientFunds: Funding source balance below amount
        """
        require_permission(actor, Permission.OPERATE_EXCHANGE_DESK)
        funding_currency = self._currency(funding_currency)
        target_currency = self._currency(target_currency)
        if target_currency not in FOREIGN_CURRENCIES:
            raise ValidationError("Only foreign currencies can be replenished")
        if funding_currency == target_currency:
            raise ValidationError("Funding and target currencies must differ")
        self._check_funding_source(funding_source, funding_currency)

        amount = self._positive(amount, funding_currency)
        quote = quote_replenishment(
            amount, to_decimal(purchase_rate), target_currency,
            to_decimal(transport_expense), to_decimal(handling_expense), to_decimal(note_exchange_fee)
        )

        operation_id = str(uuid.uuid4())
        tills = {target_currency.code}
        if funding_source is not FundingSource.VAULT:
            tills.add(funding_currency.code)

        with ExitStack() as locks:
            locks.enter_context(self.storage.row_lock(self.TILLS_TABLE, *tills))
            if funding_source is FundingSource.VAULT:
                locks.enter_context(self.storage.row_lock(CashLedger.ACCOUNTS_TABLE, AccountKind.VAULT.value))

            with self.storage.atomic():
                changes: Dict[Currency, Decimal] = {}
                if funding_source is FundingSource.VAULT:
                    self.ledger.debit(AccountKind.VAULT, amount, actor,
                                      f"Replenishment of {target_currency.code} till",
                                      reference=operation_id, movement_kind=MovementKind.WITHDRAWAL)
                else:
                    self._move_till(funding_currency, -amount, actor)
                    changes[funding_currency] = -amount

                self._move_till(target_currency, quote.net, actor,
                                last_acquisition_rate=quote.effective_rate)
                changes[target_currency] = quote.net

                operation = self._record(operation_id, OperationKind.REPLENISH, actor, {
                    'funding_currency': funding_currency.code,
                    'funding_source': funding_source.value,
                    'amount': amount,
                    'target_currency': target_currency.code,
                    'purchase_rate': to_decimal(purchase_rate),
                    'transport_expense': to_decimal(transport_expense),
                    'handling_expense': to_decimal(handling_expense),
                    'note_exchange_fee': to_decimal(note_exchange_fee),
                    'acquired_quantity': quote.acquired,
                    'net_quantity': quote.net,
                    'effective_rate': quote.effective_rate,
                    'note': note,
                }, changes)
                self._audit(AuditEventType.TILL_REPLENISHED, operation, actor)

        log_action(self.logger, "info",
                   f"Replenished {quote.net} {target_currency.code} at {quote.effective_rate}",
                   user_id=actor.id, action="replenish", resource=target_currency.code,
                   extra={"operation_id": operation.id, "funding_source": funding_source.value})
        return operation

    def sell(self, currency, sold_amount, today_rate, actor: Actor,
             received_local=None, client: Optional[str] = None) -> ExchangeOperation:
        """
        Sell foreign currency to a client.

        The foreign till is debited, the local till credited with what the
        client paid, and the commission over the last acquisition rate is
        recorded on the operation.

        Raises:
            InsufficientFunds: If sold_amount exceeds the till balance
        """
        require_permission(actor, Permission.OPERATE_EXCHANGE_DESK)
        currency = self._currency(currency)
        if currency not in FOREIGN_CURRENCIES:
            raise ValidationError("Only foreign currencies can be sold")
        sold_amount = self._positive(sold_amount, currency)
        today_rate = to_decimal(today_rate)
        if today_rate <= 0:
            raise ValidationError("Today's rate must be positive")

        if received_local is None:
            received_local = quantize(sold_amount * today_rate, LOCAL_CURRENCY)
        else:
            received_local = self._positive(received_local, LOCAL_CURRENCY)

        with self.storage.row_lock(self.TILLS_TABLE, currency.code, LOCAL_CURRENCY.code):
            with self.storage.atomic():
                last_rate = self.last_acquisition_rate(currency)
                commission = sale_commission(sold_amount, today_rate, last_rate)

                self._move_till(currency, -sold_amount, actor)
                self._move_till(LOCAL_CURRENCY, received_local, actor)

                operation = self._record(str(uuid.uuid4()), OperationKind.SELL, actor, {
                    'currency': currency.code,
                    'sold_amount': sold_amount,
                    'today_rate': today_rate,
                    'cost_basis_rate': last_rate if last_rate else today_rate,
                    'received_local': received_local,
                    'commission': commission,
                    'client': client,
                }, {currency: -sold_amount, LOCAL_CURRENCY: received_local})
                self._audit(AuditEventType.TILL_SALE, operation, actor)

        log_action(self.logger, "info", f"Sold {sold_amount} {currency.code}, commission {commission}",
                   user_id=actor.id, action="sell", resource=currency.code,
                   extra={"operation_id": operation.id})
        return operation

    def cede(self, currency, amount, actor: Actor, note: Optional[str] = None,
             beneficiary: Optional[str] = None) -> ExchangeOperation:
        """Transfer till funds out for an internal or administrative purpose"""
        require_permission(actor, Permission.OPERATE_EXCHANGE_DESK)
        currency = self._currency(currency)
        amount = self._positive(amount, currency)

        with self.storage.row_lock(self.TILLS_TABLE, currency.code):
            with self.storage.atomic():
                self._move_till(currency, -amount, actor)
                operation = self._record(str(uuid.uuid4()), OperationKind.CEDE, actor, {
                    'currency': currency.code,
                    'amount': amount,
                    'beneficiary': beneficiary,
                    'note': note,
                }, {currency: -amount})
                self._audit(AuditEventType.TILL_CESSION, operation, actor)

        log_action(self.logger, "info", f"Ceded {amount} {currency.code}",
                   user_id=actor.id, action="cede", resource=currency.code,
                   extra={"operation_id": operation.id})
        return operation

    def adjust_till(self, currency, new_balance, actor: Actor, note: str) -> ExchangeOperation:
        """
        Administrative override of a till balance.

        No funds check, but a note is mandatory and the balance cannot go
        negative. Never touches the last acquisition rate.
        """
        require_permission(actor, Permission.ADJUST_TILL)
        if not note or not note.strip():
            raise ValidationError("A note is required to adjust a till")
        currency = self._currency(currency)
        new_balance = quantize(to_decimal(new_balance), currency)
        if new_balance < 0:
            raise ValidationError("Till balance cannot be negative")

        with self.storage.row_lock(self.TILLS_TABLE, currency.code):
            with self.storage.atomic():
                till = self.get_till(currency)
                previous = till.balance
                delta = new_balance - previous
                self._move_till(currency, delta, actor, adjustment_note=note.strip())
                operation = self._record(str(uuid.uuid4()), OperationKind.MANUAL_ADJUST, actor, {
                    'currency': currency.code,
                    'previous_balance': previous,
                    'new_balance': new_balance,
                    'note': note.strip(),
                }, {currency: delta})
                self._audit(AuditEventType.TILL_ADJUSTED, operation, actor)

        log_action(self.logger, "warning",
                   f"Till {currency.code} adjusted from {previous} to {new_balance}",
                   user_id=actor.id, action="adjust_till", resource=currency.code,
                   extra={"operation_id": operation.id, "note": note.strip()})
        return operation

    def get_operations(self, kind: Optional[OperationKind] = None,
                       start: Optional[datetime] = None, end: Optional[datetime] = None,
                       limit: Optional[int] = None) -> List[ExchangeOperation]:
        """Operations in chronological order"""
        filters = {'kind': kind.value} if kind else {}
        rows = self.storage.find_between(self.OPERATIONS_TABLE, filters, start, end)
        operations = sorted((ExchangeOperation.from_dict(row) for row in rows),
                            key=lambda op: op.created_at)
        if limit:
            operations = operations[-limit:]
        return operations

    def commissions_generated(self) -> Dict[str, Decimal]:
        """Sale commissions realized, per foreign currency, in XAF"""
        totals = {currency.code: Decimal('0') for currency in FOREIGN_CURRENCIES}
        for operation in self.get_operations(OperationKind.SELL):
            code = operation.payload.get('currency')
            if code in totals:
                totals[code] += operation.decimal('commission') or Decimal('0')
        return totals

    def _check_funding_source(self, source: Optional[FundingSource], funding_currency: Currency) -> None:
        if source is None:
            raise InvalidSelection(f"Select a funding source for {funding_currency.code}")
        if source in (FundingSource.LOCAL_TILL, FundingSource.VAULT) and funding_currency != LOCAL_CURRENCY:
            raise InvalidSelection(f"{source.value} can only fund payments in {LOCAL_CURRENCY.code}")
        if source is FundingSource.FOREIGN_TILL and funding_currency == LOCAL_CURRENCY:
            raise InvalidSelection(f"Select the {LOCAL_CURRENCY.code} till or the vault to pay in {LOCAL_CURRENCY.code}")

    def _move_till(self, currency: Currency, delta: Decimal, actor: Actor,
                   last_acquisition_rate: Optional[Decimal] = None,
                   adjustment_note: Optional[str] = None) -> ExchangeTill:
        """Read-check-write of one till; caller holds its row lock inside an atomic unit"""
        till = self.get_till(currency)
        if delta < 0 and adjustment_note is None and till.balance + delta < 0:
            raise InsufficientFunds(f"{currency.code} till", till.balance, -delta)
        till.balance += delta
        if last_acquisition_rate is not None:
            till.last_acquisition_rate = last_acquisition_rate
        if adjustment_note is not None:
            till.last_adjustment_note = adjustment_note
        till.updated_at = datetime.now(timezone.utc)
        till.updated_by = actor.id
        self.storage.save(self.TILLS_TABLE, till.id, till.to_dict())
        return till

    def _record(self, operation_id: str, kind: OperationKind, actor: Actor,
                payload: Dict[str, Any], changes: Dict[Currency, Decimal]) -> ExchangeOperation:
        now = datetime.now(timezone.utc)
        payload = dict(payload)
        payload['balance_changes'] = {currency.code: str(delta) for currency, delta in changes.items()}
        operation = ExchangeOperation(
            id=operation_id,
            created_at=now,
            updated_at=now,
            kind=kind,
            actor_id=actor.id,
            payload=payload,
        )
        data = operation.to_dict()
        self.storage.save(self.OPERATIONS_TABLE, operation.id, data)
        return ExchangeOperation.from_dict(data)

    def _audit(self, event_type: AuditEventType, operation: ExchangeOperation, actor: Actor) -> None:
        self.audit_trail.log_event(
            event_type=event_type,
            entity_type="exchange_operation",
            entity_id=operation.id,
            metadata=operation.payload,
            user_id=actor.id
        )

    @staticmethod
    def _currency(currency) -> Currency:
        if isinstance(currency, Currency):
            return currency
        try:
            return Currency.from_code(str(currency))
        except ValueError:
            raise NotFound("till", str(currency))

    @staticmethod
    def _positive(amount, currency: Currency) -> Decimal:
        amount = quantize(to_decimal(amount), currency)
        if amount <= 0:
            raise ValidationError("Amount must be positive")
        return amount
