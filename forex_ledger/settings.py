"""
Settings Provider Module

Exchange rates and business thresholds consulted by the engine. Settings are
read fresh on every operation; every update is kept in a history table with
the actor who made it.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
import uuid

from .audit import AuditTrail, AuditEventType
from .config import get_config
from .currency import Currency, to_decimal
from .errors import ValidationError
from .logging_config import get_logger, log_action
from .rbac import Actor, Permission, require_permission
from .storage import StorageInterface, StorageRecord

RATE_FIELDS = ('usd_rate', 'eur_rate', 'usd_buy_rate', 'usd_sell_rate', 'eur_buy_rate', 'eur_sell_rate')


@dataclass
class SettingsSnapshot(StorageRecord):
    """Rates and thresholds in force at one point in time"""
    usd_rate: Decimal          # reference rates used to price transfers
    eur_rate: Decimal
    usd_buy_rate: Decimal      # exchange desk rates
    usd_sell_rate: Decimal
    eur_buy_rate: Decimal
    eur_sell_rate: Decimal
    transfer_commission_min: Decimal
    updated_by: Optional[str] = None

    def reference_rate(self, currency: Currency) -> Decimal:
        """Local-currency value of one unit of a foreign currency"""
        if currency is Currency.USD:
            return self.usd_rate
        if currency is Currency.EUR:
            return self.eur_rate
        if currency is Currency.XAF:
            return Decimal('1')
        raise ValidationError(f"No reference rate for {currency.code}")

    def desk_rates(self, currency: Currency) -> Dict[str, Decimal]:
        if currency is Currency.USD:
            return {'buy': self.usd_buy_rate, 'sell': self.usd_sell_rate}
        if currency is Currency.EUR:
            return {'buy': self.eur_buy_rate, 'sell': self.eur_sell_rate}
        raise ValidationError(f"No desk rates for {currency.code}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SettingsSnapshot':
        data = dict(data)
        for name in RATE_FIELDS + ('transfer_commission_min',):
            data[name] = Decimal(data[name])
        return super().from_dict(data)


def default_settings() -> SettingsSnapshot:
    """Settings built from configuration, used until an update is recorded"""
    config = get_config()
    now = datetime.now(timezone.utc)
    return SettingsSnapshot(
        id="current",
        created_at=now,
        updated_at=now,
        usd_rate=Decimal(config.usd_rate),
        eur_rate=Decimal(config.eur_rate),
        usd_buy_rate=Decimal(config.usd_buy_rate),
        usd_sell_rate=Decimal(config.usd_sell_rate),
        eur_buy_rate=Decimal(config.eur_buy_rate),
        eur_sell_rate=Decimal(config.eur_sell_rate),
        transfer_commission_min=Decimal(config.transfer_commission_min),
    )


class SettingsProvider(ABC):
    """Source of current exchange rates and the minimum transfer commission"""

    @abstractmethod
    def current(self) -> SettingsSnapshot:
        """Settings in force right now"""
        pass


class StoredSettingsProvider(SettingsProvider):
    """Settings kept in storage, with a change history"""

    def __init__(self, storage: StorageInterface, audit_trail: AuditTrail):
        self.storage = storage
        self.audit_trail = audit_trail
        self.table_name = "settings"
        self.history_table = "settings_history"
        self.logger = get_logger("forex.settings")

    def current(self) -> SettingsSnapshot:
        data = self.storage.load(self.table_name, "current")
        if data:
            return SettingsSnapshot.from_dict(data)
        return default_settings()

    def update_settings(self, actor: Actor, **changes: Any) -> SettingsSnapshot:
        """
        Update one or more rates or the minimum transfer commission.

        Args:
            actor: Caller, must be allowed to manage settings
            **changes: Any of the SettingsSnapshot rate fields or transfer_commission_min

        Returns:
            The new SettingsSnapshot
        """
        require_permission(actor, Permission.MANAGE_SETTINGS)

        allowed = set(RATE_FIELDS) | {'transfer_commission_min'}
        unknown = set(changes) - allowed
        if unknown:
            raise ValidationError(f"Unknown settings: {', '.join(sorted(unknown))}")

        values = {}
        for name, value in changes.items():
            amount = to_decimal(value)
            if name in RATE_FIELDS and amount <= 0:
                raise ValidationError(f"{name} must be positive")
            if name == 'transfer_commission_min' and amount < 0:
                raise ValidationError("transfer_commission_min cannot be negative")
            values[name] = amount

        now = datetime.now(timezone.utc)
        with self.storage.row_lock(self.table_name, "current"):
            with self.storage.atomic():
                snapshot = replace(self.current(), updated_at=now, updated_by=actor.id, **values)
                self.storage.save(self.table_name, "current", snapshot.to_dict())

                history = replace(snapshot, id=str(uuid.uuid4()), created_at=now)
                self.storage.save(self.history_table, history.id, history.to_dict())

                self.audit_trail.log_event(
                    event_type=AuditEventType.SETTINGS_UPDATED,
                    entity_type="settings",
                    entity_id="current",
                    metadata={name: str(value) for name, value in values.items()},
                    user_id=actor.id
                )

        log_action(self.logger, "info", "Settings updated", user_id=actor.id,
                   action="update_settings", resource="settings",
                   extra={name: str(value) for name, value in values.items()})
        return snapshot

    def get_history(self, limit: int = 50, changed_by: Optional[str] = None) -> List[SettingsSnapshot]:
        """Recorded settings changes, most recent first"""
        filters = {'updated_by': changed_by} if changed_by else {}
        history = [SettingsSnapshot.from_dict(data)
                   for data in self.storage.find(self.history_table, filters)]
        history.sort(key=lambda s: s.created_at, reverse=True)
        return history[:limit]

