"""
Tests for settings, configuration and structured logging
"""

import json
import logging
import pytest
from decimal import Decimal

from forex_ledger import config as config_module
from forex_ledger.audit import AuditTrail, AuditEventType
from forex_ledger.currency import Currency
from forex_ledger.errors import InvalidOperation, PermissionDenied, ValidationError
from forex_ledger.logging_config import JSONFormatter, log_action, setup_logging
from forex_ledger.rbac import Actor, Role, StaticExecutorDirectory
from forex_ledger.settings import SettingsProvider, StoredSettingsProvider, default_settings
from forex_ledger.settlements import SettlementStatus
from forex_ledger.state_machine import TransactionStatus, TransactionType
from forex_ledger.storage import InMemoryStorage
from forex_ledger.system import BackOffice
from forex_ledger.transactions import TransferDetails


DIRECTOR = Actor(id="director-1", role=Role.DIRECTOR)
DELEGATE = Actor(id="delegate-1", role=Role.DELEGATE)
CASHIER = Actor(id="cashier-1", role=Role.CASHIER)
AUDITOR = Actor(id="auditor-1", role=Role.AUDITOR)


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def audit_trail(storage):
    return AuditTrail(storage)


@pytest.fixture
def provider(storage, audit_trail):
    return StoredSettingsProvider(storage, audit_trail)


@pytest.fixture
def env_config(monkeypatch):
    """Reload configuration from patched environment variables, restoring it afterwards"""
    def apply(**values):
        for name, value in values.items():
            monkeypatch.setenv(f"FOREX_{name.upper()}", str(value))
        return config_module.reload_config()

    yield apply
    monkeypatch.undo()
    config_module.reload_config()


class TestDefaults:
    """Defaults come from configuration"""

    def test_default_snapshot(self, provider):
        snapshot = provider.current()
        assert snapshot.usd_rate == Decimal("600")
        assert snapshot.eur_rate == Decimal("655.96")
        assert snapshot.desk_rates(Currency.USD) == {"buy": Decimal("590"), "sell": Decimal("610")}
        assert snapshot.desk_rates(Currency.EUR) == {"buy": Decimal("650"), "sell": Decimal("665")}
        assert snapshot.transfer_commission_min == Decimal("0")

    def test_reference_rates(self):
        snapshot = default_settings()
        assert snapshot.reference_rate(Currency.EUR) == Decimal("655.96")
        assert snapshot.reference_rate(Currency.XAF) == Decimal("1")
        with pytest.raises(ValidationError):
            snapshot.desk_rates(Currency.XAF)

    def test_environment_overrides(self, env_config):
        config = env_config(eur_rate="700", settlement_number_prefix="CLS")
        assert config.eur_rate == "700"
        assert default_settings().eur_rate == Decimal("700")


class TestUpdates:
    """Settings updates and their history"""

    def test_update_and_history(self, provider, audit_trail):
        provider.update_settings(DIRECTOR, eur_rate="640")
        updated = provider.update_settings(DELEGATE, usd_rate=590, transfer_commission_min="500")

        current = provider.current()
        assert current.eur_rate == Decimal("640")
        assert current.usd_rate == Decimal("590")
        assert current.transfer_commission_min == Decimal("500")
        assert current.updated_by == DELEGATE.id
        assert updated.usd_rate == Decimal("590")

        history = provider.get_history()
        assert [h.updated_by for h in history] == [DELEGATE.id, DIRECTOR.id]
        assert history[1].eur_rate == Decimal("640")
        assert history[1].usd_rate == Decimal("600")
        assert [h.updated_by for h in provider.get_history(changed_by=DIRECTOR.id)] == [DIRECTOR.id]
        assert len(provider.get_history(limit=1)) == 1

        events = audit_trail.get_events_by_type(AuditEventType.SETTINGS_UPDATED)
        assert events[0].metadata == {"eur_rate": "640"}

    def test_permission(self, provider):
        with pytest.raises(PermissionDenied):
            provider.update_settings(CASHIER, eur_rate="640")

    def test_validation(self, provider):
        with pytest.raises(ValidationError, match="Unknown settings"):
            provider.update_settings(DIRECTOR, gbp_rate="800")
        with pytest.raises(ValidationError, match="must be positive"):
            provider.update_settings(DIRECTOR, usd_rate="0")
        with pytest.raises(ValidationError, match="cannot be negative"):
            provider.update_settings(DIRECTOR, transfer_commission_min="-1")
        assert provider.get_history() == []


class TestSettingsInWorkflows:
    """Operations read settings fresh each time"""

    def test_rate_change_applies_to_next_validation(self):
        system = BackOffice(storage=InMemoryStorage(), sinks=[],
                            executors=StaticExecutorDirectory(["exec-1"]))
        details = TransferDetails(beneficiary_name="Jean", destination_country="France",
                                  transfer_method="bank", withdrawal_mode="cash")
        first = system.create_transaction(TransactionType.TRANSFER, "Transfer", 65000, "XAF", CASHIER,
                                          details=details)
        second = system.create_transaction(TransactionType.TRANSFER, "Transfer", 65000, "XAF", CASHIER,
                                           details=details)

        assert system.validate_transfer_real_amount(first.id, 100, AUDITOR).status \
            is TransactionStatus.REJECTED
        system.update_settings(DIRECTOR, eur_rate="640")
        assert system.validate_transfer_real_amount(second.id, 100, AUDITOR).status \
            is TransactionStatus.VALIDATED

    def test_read_only_provider_refuses_updates(self):
        class ReadOnlySettings(SettingsProvider):
            def current(self):
                return default_settings()

        system = BackOffice(storage=InMemoryStorage(), settings_provider=ReadOnlySettings(), sinks=[])
        with pytest.raises(InvalidOperation, match="read-only"):
            system.update_settings(DIRECTOR, eur_rate="640")
        assert system.settings.current().eur_rate == Decimal("655.96")

    def test_settlement_tolerance_from_config(self, env_config):
        env_config(settlement_tolerance="500")
        system = BackOffice(storage=InMemoryStorage(), sinks=[])
        settlement = system.create_settlement(CASHIER, "2024-05-01", 10000)
        decided = system.validate_settlement(settlement.id, 9600, DIRECTOR)
        assert decided.status is SettlementStatus.VALIDATED


class TestLogging:
    """JSON structured logging"""

    def test_json_formatter(self):
        record = logging.LogRecord("forex.test", logging.INFO, __file__, 1, "Sold 100 USD", (), None)
        record.user_id = "cashier-1"
        record.action = "sell"
        entry = json.loads(JSONFormatter().format(record))

        assert entry["level"] == "INFO"
        assert entry["logger"] == "forex.test"
        assert entry["message"] == "Sold 100 USD"
        assert entry["user_id"] == "cashier-1"
        assert entry["action"] == "sell"
        assert "resource" not in entry
        assert "extra" not in entry

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging("DEBUG", logger_name="forex.test_logging")
        logger = setup_logging("WARNING", logger_name="forex.test_logging", log_format="text")
        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not logger.propagate
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_log_action_attaches_fields(self, caplog):
        logger = logging.getLogger("forex.test_log_action")
        with caplog.at_level(logging.INFO, logger="forex.test_log_action"):
            log_action(logger, "info", "Till adjusted", user_id="director-1", action="adjust_till",
                       resource="USD", extra={"note": "Count"})
            log_action(logger, "debug", "Not emitted")

        assert len(caplog.records) == 1
        record = caplog.records[0]
        assert record.user_id == "director-1"
        assert record.resource == "USD"
        assert record.extra == {"note": "Count"}

    def test_setup_logging_defaults_from_config(self, env_config):
        env_config(log_level="ERROR", log_format="text")
        logger = setup_logging(logger_name="forex.test_logging_config")
        assert logger.level == logging.ERROR
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)

    def test_amounts_serialized_as_strings(self):
        record = logging.LogRecord("forex.test", logging.INFO, __file__, 1, "Commission posted", (), None)
        record.extra = {"amount": Decimal("1000")}
        entry = json.loads(JSONFormatter().format(record))
        assert entry["extra"] == {"amount": "1000"}
