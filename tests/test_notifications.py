"""
Tests for notification dispatch and sinks
"""

import logging
import pytest

from forex_ledger import notifications
from forex_ledger.notifications import (
    LogNotificationSink, NotificationDispatcher, NotificationEvent, NotificationSink,
    RecordingNotificationSink, WebhookNotificationSink
)
from forex_ledger.rbac import Role
from forex_ledger.storage import InMemoryStorage


class RaisingSink(NotificationSink):
    def send(self, event, payload):
        raise ConnectionError("sink unreachable")


class RefusingSink(NotificationSink):
    def send(self, event, payload):
        return False


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code


@pytest.fixture
def storage():
    return InMemoryStorage()


@pytest.fixture
def sink():
    return RecordingNotificationSink()


@pytest.fixture
def dispatcher(storage, sink):
    return NotificationDispatcher(storage, [sink])


class TestDispatcher:
    """Delivery timing and failure isolation"""

    def test_outside_transaction_delivers_immediately(self, dispatcher, sink):
        dispatcher.notify(NotificationEvent.TRANSACTION_CREATED, "TRX-1", {"amount": "100"})
        assert sink.events() == [NotificationEvent.TRANSACTION_CREATED]

        payload = sink.notifications[0].payload
        assert payload["entity_id"] == "TRX-1"
        assert payload["target_roles"] == ["auditor"]
        assert payload["data"] == {"amount": "100"}

    def test_delivered_after_commit(self, storage, dispatcher, sink):
        with storage.atomic():
            dispatcher.notify(NotificationEvent.EXPENSE_SUBMITTED, "EXP-1")
            assert sink.events() == []
        assert sink.events() == [NotificationEvent.EXPENSE_SUBMITTED]

    def test_dropped_on_rollback(self, storage, dispatcher, sink):
        with pytest.raises(RuntimeError):
            with storage.atomic():
                dispatcher.notify(NotificationEvent.EXPENSE_SUBMITTED, "EXP-1")
                raise RuntimeError("boom")
        assert sink.events() == []

    def test_recipients_drop_empty_values(self, dispatcher, sink):
        dispatcher.notify(NotificationEvent.TRANSACTION_VALIDATED, "TRX-1",
                          recipients=["cashier-1", None, ""])
        assert sink.notifications[0].payload["recipients"] == ["cashier-1"]

    def test_raising_sink_does_not_block_others(self, storage, sink, caplog):
        dispatcher = NotificationDispatcher(storage, [RaisingSink(), sink])
        with caplog.at_level(logging.ERROR, logger="forex.notifications"):
            dispatcher.notify(NotificationEvent.SETTLEMENT_DECIDED, "SET-1")
        assert sink.events() == [NotificationEvent.SETTLEMENT_DECIDED]
        assert any("failed in RaisingSink" in r.getMessage() for r in caplog.records)

    def test_refusing_sink_logged(self, storage, caplog):
        dispatcher = NotificationDispatcher(storage, [RefusingSink()])
        with caplog.at_level(logging.WARNING, logger="forex.notifications"):
            dispatcher.notify(NotificationEvent.SETTLEMENT_DECIDED, "SET-1")
        assert any("was not accepted" in r.getMessage() for r in caplog.records)

    def test_register_sink(self, storage, sink):
        dispatcher = NotificationDispatcher(storage)
        dispatcher.register_sink(sink)
        dispatcher.notify(NotificationEvent.DELETION_REQUESTED, "TRX-1")
        assert len(sink.for_role(Role.DIRECTOR)) == 1
        assert sink.for_role(Role.EXECUTOR) == []


class TestSinks:
    """Concrete sinks"""

    def test_webhook_posts_json(self, monkeypatch):
        calls = []

        def fake_post(url, json=None, timeout=None, headers=None):
            calls.append({"url": url, "json": json, "timeout": timeout})
            return FakeResponse(204)

        monkeypatch.setattr(notifications.requests, "post", fake_post)
        sink = WebhookNotificationSink("https://hooks.example.com/forex", timeout=2.0)

        assert sink.send(NotificationEvent.TRANSACTION_EXECUTED, {"entity_id": "TRX-1"})
        assert calls == [{
            "url": "https://hooks.example.com/forex",
            "json": {"event": "transaction_executed", "payload": {"entity_id": "TRX-1"}},
            "timeout": 2.0,
        }]

    def test_webhook_error_status(self, monkeypatch):
        monkeypatch.setattr(notifications.requests, "post", lambda *args, **kwargs: FakeResponse(500))
        sink = WebhookNotificationSink("https://hooks.example.com/forex")
        assert not sink.send(NotificationEvent.TRANSACTION_EXECUTED, {"entity_id": "TRX-1"})

    def test_log_sink(self, caplog):
        sink = LogNotificationSink()
        with caplog.at_level(logging.INFO, logger="forex.notifications.log"):
            assert sink.send(NotificationEvent.TRANSACTION_CREATED,
                             {"entity_id": "TRX-1", "target_roles": ["auditor"]})
        assert "[transaction_created] to auditor: TRX-1" in caplog.text
