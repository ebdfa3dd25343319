"""
Role-Based Access Control Module

Closed set of back-office roles, the permissions each role carries, and the
caller identity (Actor) supplied on every engine operation. The engine is
role-aware but not session-aware: authentication happens upstream.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, List, Optional

from .errors import PermissionDenied


class Role(Enum):
    """Back-office roles"""
    SUPER_ADMIN = "super_admin"
    DIRECTOR = "director"
    DELEGATE = "delegate"
    ACCOUNTING = "accounting"
    CASHIER = "cashier"
    AUDITOR = "auditor"
    EXECUTOR = "executor"


class Permission(Enum):
    """Engine permissions"""
    # Cash account permissions
    MANAGE_CASH_ACCOUNTS = "manage_cash_accounts"
    VIEW_CASH_ACCOUNTS = "view_cash_accounts"

    # Exchange desk permissions
    OPERATE_EXCHANGE_DESK = "operate_exchange_desk"
    ADJUST_TILL = "adjust_till"

    # Transaction permissions
    CREATE_TRANSACTION = "create_transaction"
    VALIDATE_TRANSACTION = "validate_transaction"
    EXECUTE_TRANSFER = "execute_transfer"
    COMPLETE_TRANSACTION = "complete_transaction"
    REQUEST_DELETION = "request_deletion"
    VALIDATE_DELETION = "validate_deletion"

    # Expense permissions
    SUBMIT_EXPENSE = "submit_expense"
    APPROVE_EXPENSE_CONTROL = "approve_expense_control"
    APPROVE_EXPENSE_EXECUTIVE = "approve_expense_executive"

    # Settlement permissions
    CREATE_SETTLEMENT = "create_settlement"
    VALIDATE_SETTLEMENT = "validate_settlement"

    # Administration
    MANAGE_SETTINGS = "manage_settings"
    RUN_RECONCILIATION = "run_reconciliation"


_MANAGEMENT = frozenset({
    Permission.MANAGE_CASH_ACCOUNTS,
    Permission.VIEW_CASH_ACCOUNTS,
    Permission.OPERATE_EXCHANGE_DESK,
    Permission.ADJUST_TILL,
    Permission.VALIDATE_DELETION,
    Permission.SUBMIT_EXPENSE,
    Permission.VALIDATE_SETTLEMENT,
    Permission.MANAGE_SETTINGS,
    Permission.RUN_RECONCILIATION,
})

ROLE_PERMISSIONS: Dict[Role, FrozenSet[Permission]] = {
    Role.SUPER_ADMIN: frozenset(Permission),
    Role.DIRECTOR: _MANAGEMENT | {Permission.APPROVE_EXPENSE_EXECUTIVE},
    Role.DELEGATE: _MANAGEMENT,
    Role.ACCOUNTING: _MANAGEMENT | {Permission.APPROVE_EXPENSE_CONTROL},
    Role.CASHIER: frozenset({
        Permission.OPERATE_EXCHANGE_DESK,
        Permission.CREATE_TRANSACTION,
        Permission.COMPLETE_TRANSACTION,
        Permission.REQUEST_DELETION,
        Permission.SUBMIT_EXPENSE,
        Permission.CREATE_SETTLEMENT,
    }),
    Role.AUDITOR: frozenset({
        Permission.VIEW_CASH_ACCOUNTS,
        Permission.VALIDATE_TRANSACTION,
        Permission.EXECUTE_TRANSFER,
        Permission.RUN_RECONCILIATION,
    }),
    Role.EXECUTOR: frozenset({
        Permission.EXECUTE_TRANSFER,
        Permission.COMPLETE_TRANSACTION,
    }),
}


@dataclass(frozen=True)
class Actor:
    """Identity and role of the caller of an engine operation"""
    id: str
    role: Role
    name: Optional[str] = None
    agency: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.id

    def has_permission(self, permission: Permission) -> bool:
        """Check if the actor's role carries a permission"""
        return permission in ROLE_PERMISSIONS[self.role]


def require_permission(actor: Actor, permission: Permission) -> None:
    """Raise PermissionDenied unless the actor's role carries the permission"""
    if not actor.has_permission(permission):
        raise PermissionDenied(
            f"Role {actor.role.value} is not allowed to {permission.value.replace('_', ' ')}"
        )


class ExecutorDirectory(ABC):
    """Source of executors available to take validated transfers"""

    @abstractmethod
    def available_executors(self) -> List[str]:
        """IDs of executors currently able to take work"""
        pass


class StaticExecutorDirectory(ExecutorDirectory):
    """Executor directory backed by a fixed list"""

    def __init__(self, executor_ids: Optional[List[str]] = None):
        self._executor_ids = list(executor_ids or [])

    def available_executors(self) -> List[str]:
        return list(self._executor_ids)

    def add(self, executor_id: str) -> None:
        if executor_id not in self._executor_ids:
            self._executor_ids.append(executor_id)

    def remove(self, executor_id: str) -> None:
        if executor_id in self._executor_ids:
            self._executor_ids.remove(executor_id)


# Identity used for maintenance routines (reconciliation, commission backfill)
SYSTEM_ACTOR = Actor(id="system", role=Role.SUPER_ADMIN, name="System")
