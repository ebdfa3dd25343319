"""
Reconciliation Module

Replays the movement and operation logs to check cached balances, refreshes
pool balances, and backfills commission movements that a transaction carries
but the ledger never received.
"""

from decimal import Decimal
from dataclasses import dataclass
from typing import Any, Dict, List

from .audit import AuditTrail, AuditEventType
from .cash_accounts import AccountKind, CashLedger, MovementKind, POOL_ACCOUNTS, parse_account_kind
from .currency import FOREIGN_CURRENCIES, LOCAL_CURRENCY
from .exchange_desk import ExchangeDesk
from .logging_config import get_logger, log_action
from .rbac import Actor, Permission, SYSTEM_ACTOR, require_permission
from .transactions import COMMISSION_POOLS, COMMISSIONED_STATUSES, TransactionEngine


@dataclass(frozen=True)
class BalanceCheck:
    """Cached balance against the balance replayed from the log"""
    name: str
    cached: Decimal
    replayed: Decimal

    @property
    def drift(self) -> Decimal:
        return self.cached - self.replayed

    @property
    def consistent(self) -> bool:
        return self.drift == 0

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "cached": str(self.cached), "replayed": str(self.replayed),
                "drift": str(self.drift), "consistent": self.consistent}


class ReconciliationService:
    """Log replay and repair routines over the ledger and the exchange desk"""

    def __init__(self, ledger: CashLedger, desk: ExchangeDesk,
                 transactions: TransactionEngine, audit_trail: AuditTrail):
        self.ledger = ledger
        self.desk = desk
        self.transactions = transactions
        self.audit_trail = audit_trail
        self.logger = get_logger("forex.reconciliation")

    def replay_account(self, kind) -> Decimal:
        """Balance of an account as its movement log defines it"""
        kind = parse_account_kind(kind)
        if kind in POOL_ACCOUNTS:
            return self.ledger.pool_total(kind)
        return self.ledger.movement_total(kind)

    def check_account(self, kind) -> BalanceCheck:
        account = self.ledger.get_account(kind)
        return BalanceCheck(account.kind.value, account.balance, self.replay_account(account.kind))

    def check_accounts(self) -> List[BalanceCheck]:
        return [self.check_account(kind) for kind in AccountKind]

    def replay_till(self, currency) -> Decimal:
        """Balance of a till as the sum of its operations' balance changes"""
        till = self.desk.get_till(currency)
        total = Decimal('0')
        for operation in self.desk.get_operations():
            total += operation.balance_changes.get(till.currency, Decimal('0'))
        return total

    def check_tills(self) -> List[BalanceCheck]:
        checks = []
        for currency in (LOCAL_CURRENCY,) + FOREIGN_CURRENCIES:
            till = self.desk.get_till(currency)
            checks.append(BalanceCheck(f"till_{currency.code}", till.balance, self.replay_till(currency)))
        return checks

    def detect_drift(self) -> List[BalanceCheck]:
        """Every account and till whose cached balance disagrees with its log"""
        drifted = [check for check in self.check_accounts() + self.check_tills() if not check.consistent]
        for check in drifted:
            self.logger.warning(f"Balance drift on {check.name}: cached {check.cached}, log {check.replayed}")
        return drifted

    def reconcile_all_pools(self, actor: Actor = SYSTEM_ACTOR) -> Dict[str, Decimal]:
        """Refresh every pool balance from its log"""
        require_permission(actor, Permission.RUN_RECONCILIATION)
        return {kind.value: self.ledger.reconcile_pool(kind)
                for kind in AccountKind if kind in POOL_ACCOUNTS}

    def sync_missing_commissions(self, actor: Actor = SYSTEM_ACTOR) -> List[str]:
        """
        Post the commission of every transaction that carries one but has no
        commission movement in its pool.

        Returns:
            IDs of the transactions whose commission was backfilled
        """
        require_permission(actor, Permission.RUN_RECONCILIATION)
        synced = []
        for transaction_type, pool in COMMISSION_POOLS.items():
            posted = {m.reference for m in self.ledger.get_movements(pool, movement_kind=MovementKind.COMMISSION)}
            for transaction in self.transactions.list_transactions(type=transaction_type):
                if transaction.status not in COMMISSIONED_STATUSES:
                    continue
                if not transaction.commission or transaction.commission <= 0:
                    continue
                if transaction.id in posted:
                    continue
                self.ledger.post_commission(pool, transaction.commission, actor,
                                            f"Backfilled commission {transaction.id}",
                                            reference=transaction.id)
                synced.append(transaction.id)

        if synced:
            self.audit_trail.log_event(
                event_type=AuditEventType.COMMISSIONS_SYNCED,
                entity_type="reconciliation",
                entity_id="commissions",
                metadata={"transactions": synced},
                user_id=actor.id
            )
            log_action(self.logger, "warning", f"Backfilled {len(synced)} missing commissions",
                       user_id=actor.id, action="sync_commissions", resource="commissions",
                       extra={"transactions": synced})
        return synced

    def run(self, actor: Actor = SYSTEM_ACTOR, sync_commissions: bool = True) -> Dict[str, Any]:
        """Full pass: backfill commissions, refresh pools, report remaining drift"""
        require_permission(actor, Permission.RUN_RECONCILIATION)
        synced = self.sync_missing_commissions(actor) if sync_commissions else []
        pools = self.reconcile_all_pools(actor)
        drifted = self.detect_drift()
        return {
            "synced_commissions": synced,
            "pools": {kind: str(balance) for kind, balance in pools.items()},
            "drift": [check.to_dict() for check in drifted],
            "consistent": not drifted,
        }

