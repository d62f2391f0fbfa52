"""Tests for bank feed synchronisation."""

import threading
from datetime import timedelta

import pytest

from bank_feed_recon.models.connection import ConnectionStatus
from bank_feed_recon.storage.database import utc_now
from bank_feed_recon.storage.tables import BankConnectionRow
from bank_feed_recon.utils.exceptions import (
    AuthorizationExpiredError,
    ConnectionExpiredError,
    ConnectionNotActiveError,
    OperationCancelledError,
    ProviderError,
    ProviderTimeoutError,
)

from conftest import ORG, make_txn


def feed(day_offset, amount, ref):
    return make_txn(utc_now().date() - timedelta(days=day_offset), amount, ref)


def update_connection(database, connection_id, **values):
    with database.session_scope() as session:
        row = session.get(BankConnectionRow, connection_id)
        for key, value in values.items():
            setattr(row, key, value)


class TestDueSelection:
    def test_new_connection_is_due(self, scheduler, active_connection):
        assert [c.id for c in scheduler.due_connections()] == [active_connection.id]

    def test_disabled_or_future_connections_are_not_due(
        self, scheduler, orchestrator, database, active_connection
    ):
        orchestrator.set_sync_enabled(ORG, active_connection.id, False)
        assert scheduler.due_connections() == []

        orchestrator.set_sync_enabled(ORG, active_connection.id, True)
        update_connection(
            database, active_connection.id, next_sync_at=utc_now() + timedelta(hours=1)
        )
        assert scheduler.due_connections() == []

    def test_no_due_connections(self, scheduler):
        summary = scheduler.run_due()
        assert summary.outcomes == []


class TestSync:
    def test_run_due_imports_fetched_transactions(
        self, scheduler, fake_adapter, store, account, active_connection, orchestrator
    ):
        fake_adapter.transactions = [feed(3, "120.00", "INV-1"), feed(2, "-9.99", "Fee")]

        summary = scheduler.run_due()

        assert summary.succeeded == 1
        assert summary.imported == 2
        rows = store.list_transactions(ORG, account.id)
        assert {r.source for r in rows} == {"fakebank"}

        connection = orchestrator.get_connection(ORG, active_connection.id)
        assert connection.last_sync_at is not None
        assert connection.next_sync_at > connection.last_sync_at
        assert fake_adapter.fetch_calls == [utc_now().date() - timedelta(days=30)]

        history = scheduler.sync_history(active_connection.id)
        assert history[0]["status"] == "success"
        assert history[0]["imported"] == 2

    def test_overlapping_windows_are_deduplicated(
        self, scheduler, fake_adapter, store, account, active_connection
    ):
        fake_adapter.transactions = [feed(1, "50.00", "A"), feed(0, "60.00", "B")]
        scheduler.sync_connection(active_connection.id, manual=True)

        fake_adapter.transactions.append(feed(0, "70.00", "C"))
        outcome = scheduler.sync_connection(active_connection.id, manual=True)

        assert outcome.imported == 1
        assert outcome.skipped == 2
        assert len(store.list_transactions(ORG, account.id)) == 3
        assert fake_adapter.fetch_calls[1] == utc_now().date() - timedelta(days=1)

    def test_provider_failure_keeps_window_for_retry(
        self, scheduler, fake_adapter, orchestrator, active_connection
    ):
        fake_adapter.fetch_error = ProviderTimeoutError("bank is slow", error_type="timeout")

        summary = scheduler.run_due()

        assert summary.failed == 1
        assert "bank is slow" in summary.outcomes[0].error
        failed = orchestrator.get_connection(ORG, active_connection.id)
        assert failed.status == ConnectionStatus.ERROR
        assert failed.last_sync_at is None
        assert scheduler.sync_history(active_connection.id)[0]["status"] == "error"

        # error connections wait for a manual retry
        assert scheduler.due_connections() == []
        outcome = scheduler.sync_connection(active_connection.id)
        assert not outcome.success

        fake_adapter.fetch_error = None
        retried = scheduler.sync_connection(active_connection.id, manual=True)

        assert retried.success
        assert fake_adapter.fetch_calls[0] == fake_adapter.fetch_calls[-1]
        assert orchestrator.get_connection(ORG, active_connection.id).status == (
            ConnectionStatus.ACTIVE
        )

    def test_busy_import_keeps_connection_active(
        self, scheduler, pipeline, config, fake_adapter, orchestrator, account, active_connection
    ):
        config.importing.lock_timeout_seconds = 0.05
        fake_adapter.transactions = [feed(1, "50.00", "A")]
        lock = pipeline._lock_for(account.id)
        lock.acquire()
        try:
            summary = scheduler.run_due()
        finally:
            lock.release()

        assert summary.failed == 1
        connection = orchestrator.get_connection(ORG, active_connection.id)
        assert connection.status == ConnectionStatus.ACTIVE
        assert connection.error_message is None
        assert scheduler.sync_history(active_connection.id)[0]["status"] == "error"
        assert [c.id for c in scheduler.due_connections()] == [active_connection.id]

        summary = scheduler.run_due()
        assert summary.succeeded == 1
        assert summary.imported == 1

    def test_unexpected_transport_error_marks_connection(
        self, scheduler, fake_adapter, orchestrator, active_connection
    ):
        fake_adapter.fetch_error = ProviderError(
            "Request to Fake Bank failed: redirects", error_type="request_error"
        )

        summary = scheduler.run_due()

        assert summary.failed == 1
        failed = orchestrator.get_connection(ORG, active_connection.id)
        assert failed.status == ConnectionStatus.ERROR
        assert "redirects" in failed.error_message

    def test_manual_sync_raises(self, scheduler, fake_adapter, active_connection):
        fake_adapter.fetch_error = ProviderTimeoutError("bank is slow")
        with pytest.raises(ProviderTimeoutError):
            scheduler.sync_connection(active_connection.id, manual=True)

    def test_revoked_grant_expires_connection(
        self, scheduler, fake_adapter, orchestrator, active_connection
    ):
        fake_adapter.fetch_error = AuthorizationExpiredError("consent revoked", 401)

        outcome = scheduler.sync_connection(active_connection.id)

        assert not outcome.success
        connection = orchestrator.get_connection(ORG, active_connection.id)
        assert connection.status == ConnectionStatus.EXPIRED
        assert not connection.sync_enabled

    def test_grant_past_expiry_is_not_fetched(
        self, scheduler, fake_adapter, orchestrator, database, active_connection
    ):
        update_connection(database, active_connection.id, expires_at=utc_now() - timedelta(days=1))

        with pytest.raises(ConnectionExpiredError):
            scheduler.sync_connection(active_connection.id, manual=True)

        assert fake_adapter.fetch_calls == []
        connection = orchestrator.get_connection(ORG, active_connection.id)
        assert connection.status == ConnectionStatus.EXPIRED

    def test_revoked_connection_cannot_sync(
        self, scheduler, orchestrator, active_connection
    ):
        orchestrator.disconnect(ORG, active_connection.id)
        with pytest.raises(ConnectionNotActiveError):
            scheduler.sync_connection(active_connection.id, manual=True)

    def test_cancelled_sync_writes_nothing(
        self, scheduler, fake_adapter, store, account, active_connection
    ):
        fake_adapter.transactions = [feed(1, "10.00", "X")]
        cancel = threading.Event()
        cancel.set()

        outcome = scheduler.sync_connection(active_connection.id, cancel_event=cancel)

        assert not outcome.success
        assert store.list_transactions(ORG, account.id) == []

    def test_manual_cancel_raises(self, scheduler, fake_adapter, active_connection):
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(OperationCancelledError):
            scheduler.sync_connection(active_connection.id, manual=True, cancel_event=cancel)
