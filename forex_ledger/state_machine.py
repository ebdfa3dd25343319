"""
Transaction state machine.

Usage:
    TRANSACTION_FSM.assert_can_transition(
        TransactionStatus.PENDING, TransactionStatus.VALIDATED, actor.role, TransactionType.TRANSFER
    )

Legality of every status change is decided here, from a table keyed by
current status and caller role, narrowed by per-type restrictions (a transfer
must go through the audit gate and execution before completion).
"""

from enum import Enum
from typing import Dict, FrozenSet, Optional, Set, Tuple

from .errors import InvalidOperation
from .rbac import Role


class TransactionType(Enum):
    RECEPTION = "reception"
    EXCHANGE = "exchange"
    TRANSFER = "transfer"
    CARD = "card"
    RECEIPT = "receipt"
    SETTLEMENT = "settlement"


class TransactionStatus(Enum):
    PENDING = "pending"
    VALIDATED = "validated"
    REJECTED = "rejected"
    EXECUTED = "executed"
    COMPLETED = "completed"
    PENDING_DELETE = "pending_delete"
    EXCEPTION = "exception"


S = TransactionStatus

TERMINAL_STATUSES = frozenset({S.REJECTED, S.EXCEPTION})

# current status -> role -> statuses that role may move the transaction to
TRANSACTION_TRANSITIONS: Dict[TransactionStatus, Dict[Role, FrozenSet[TransactionStatus]]] = {
    S.PENDING: {
        Role.AUDITOR: frozenset({S.VALIDATED, S.REJECTED}),
        Role.CASHIER: frozenset({S.COMPLETED}),
    },
    S.VALIDATED: {
        Role.AUDITOR: frozenset({S.EXECUTED, S.REJECTED}),
        Role.EXECUTOR: frozenset({S.EXECUTED}),
        Role.CASHIER: frozenset({S.COMPLETED}),
    },
    S.EXECUTED: {
        Role.CASHIER: frozenset({S.COMPLETED}),
        Role.EXECUTOR: frozenset({S.COMPLETED}),
    },
    S.COMPLETED: {
        Role.CASHIER: frozenset({S.PENDING_DELETE}),
    },
    S.PENDING_DELETE: {
        Role.ACCOUNTING: frozenset({S.REJECTED}),
        Role.DIRECTOR: frozenset({S.REJECTED}),
        Role.DELEGATE: frozenset({S.REJECTED}),
    },
    S.REJECTED: {},
    S.EXCEPTION: {},
}

# (type, from, to) moves forbidden whatever the role
FORBIDDEN_FOR_TYPE: Dict[TransactionType, Set[Tuple[TransactionStatus, TransactionStatus]]] = {
    TransactionType.TRANSFER: {(S.PENDING, S.COMPLETED), (S.VALIDATED, S.COMPLETED)},
    TransactionType.RECEPTION: {(S.VALIDATED, S.EXECUTED)},
    TransactionType.EXCHANGE: {(S.VALIDATED, S.EXECUTED)},
    TransactionType.CARD: {(S.VALIDATED, S.EXECUTED)},
    TransactionType.RECEIPT: {(S.VALIDATED, S.EXECUTED)},
    TransactionType.SETTLEMENT: {(S.VALIDATED, S.EXECUTED)},
}


class TransitionValidator:
    def __init__(self, graph: Dict[TransactionStatus, Dict[Role, FrozenSet[TransactionStatus]]],
                 forbidden: Optional[Dict[TransactionType, Set[Tuple[TransactionStatus, TransactionStatus]]]] = None,
                 field_name: str = 'status'):
        self.graph = graph
        self.forbidden = forbidden or {}
        self.field_name = field_name

    def allowed_targets(self, current: TransactionStatus, role: Role,
                        transaction_type: Optional[TransactionType] = None) -> FrozenSet[TransactionStatus]:
        """Statuses a role may move a transaction to from its current status"""
        by_role = self.graph.get(current, {})
        if role is Role.SUPER_ADMIN:
            targets = frozenset().union(*by_role.values()) if by_role else frozenset()
        else:
            targets = by_role.get(role, frozenset())
        if transaction_type is not None:
            blocked = {to for (frm, to) in self.forbidden.get(transaction_type, ()) if frm == current}
            targets = targets - blocked
        return frozenset(targets)

    def can_transition(self, current: TransactionStatus, target: TransactionStatus, role: Role,
                       transaction_type: Optional[TransactionType] = None) -> bool:
        return target in self.allowed_targets(current, role, transaction_type)

    def assert_can_transition(self, current: TransactionStatus, target: TransactionStatus, role: Role,
                              transaction_type: Optional[TransactionType] = None) -> bool:
        if current in TERMINAL_STATUSES:
            raise InvalidOperation(f"{self.field_name} {current.value} is final")
        if not self.can_transition(current, target, role, transaction_type):
            kind = f" {transaction_type.value}" if transaction_type else ""
            raise InvalidOperation(
                f"Invalid{kind} {self.field_name} transition {current.value} -> {target.value} "
                f"for role {role.value}"
            )
        return True


TRANSACTION_FSM = TransitionValidator(TRANSACTION_TRANSITIONS, FORBIDDEN_FOR_TYPE)

__all__ = [
    'TransactionType', 'TransactionStatus', 'TERMINAL_STATUSES',
    'TRANSACTION_TRANSITIONS', 'FORBIDDEN_FOR_TYPE', 'TransitionValidator', 'TRANSACTION_FSM',
]
