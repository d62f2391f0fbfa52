"""
Periodic synchronisation of connected bank feeds.
"""

from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date, datetime, timedelta
from typing import Optional
import logging
import threading

from sqlalchemy import or_, select

from .orchestrator import to_connection
from .providers.base import ProviderAdapter
from ..config import ReconConfig
from ..importing.pipeline import ImportPipeline
from ..models.connection import (
    ConnectionInfo,
    ConnectionStatus,
    SyncOutcome,
    SyncRunSummary,
)
from ..storage.database import Database, utc_now
from ..storage.tables import BankConnectionRow, ConnectionSyncLogRow
from ..utils.exceptions import (
    AuthorizationExpiredError,
    BankReconError,
    ConnectionExpiredError,
    ConnectionNotActiveError,
    ConnectionNotFoundError,
    OperationCancelledError,
    ProviderError,
    ProviderNotConfiguredError,
)

logger = logging.getLogger(__name__)


class SyncScheduler:
    """
    Pulls new transactions for connections that are due.

    Each connection is synced in its own worker; one failing connection
    never affects the others. Imports go through the same pipeline as
    statement files so re-fetched transactions are deduplicated.
    """

    def __init__(
        self,
        database: Database,
        pipeline: ImportPipeline,
        adapters: dict[str, ProviderAdapter],
        config: Optional[ReconConfig] = None,
    ):
        self.database = database
        self.pipeline = pipeline
        self.adapters = adapters
        self.config = config or ReconConfig()

    def due_connections(self, now: Optional[datetime] = None) -> list[ConnectionInfo]:
        """Active, sync-enabled connections whose next sync time has passed."""
        now = now or utc_now()
        with self.database.session_scope() as session:
            rows = session.scalars(
                select(BankConnectionRow)
                .where(
                    BankConnectionRow.sync_enabled.is_(True),
                    BankConnectionRow.status == ConnectionStatus.ACTIVE.value,
                    or_(
                        BankConnectionRow.next_sync_at.is_(None),
                        BankConnectionRow.next_sync_at <= now,
                    ),
                )
                .order_by(BankConnectionRow.next_sync_at, BankConnectionRow.id)
            ).all()
            return [to_connection(r) for r in rows]

    def run_due(
        self,
        now: Optional[datetime] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> SyncRunSummary:
        """
        Sync every due connection with a bounded worker pool.

        Args:
            now: Reference time for due selection (defaults to utcnow)
            cancel_event: Set to stop connections that have not written yet

        Returns:
            SyncRunSummary with one outcome per connection
        """
        due = self.due_connections(now)
        summary = SyncRunSummary()
        if not due:
            logger.info("No bank connections due for sync")
            return summary

        workers = max(1, min(self.config.sync.max_workers, len(due)))
        logger.info(f"Syncing {len(due)} bank connection(s) with {workers} worker(s)")

        with ThreadPoolExecutor(max_workers=workers) as executor:
            futures = {
                executor.submit(self.sync_connection, c.id, False, cancel_event): c.id
                for c in due
            }
            for future in as_completed(futures):
                connection_id = futures[future]
                try:
                    summary.outcomes.append(future.result())
                except Exception as e:
                    logger.exception(f"Unexpected failure syncing connection {connection_id}")
                    summary.outcomes.append(
                        SyncOutcome(connection_id=connection_id, success=False, error=str(e))
                    )

        summary.outcomes.sort(key=lambda o: o.connection_id)
        logger.info(
            f"Sync run finished: {summary.succeeded} succeeded, {summary.failed} failed, "
            f"{summary.imported} transactions imported"
        )
        return summary

    def sync_connection(
        self,
        connection_id: int,
        manual: bool = False,
        cancel_event: Optional[threading.Event] = None,
        organization_id: Optional[str] = None,
    ) -> SyncOutcome:
        """
        Fetch and import new transactions for one connection.

        Args:
            connection_id: Connection to sync
            manual: True when triggered by a user; allows retrying connections
                in error status and re-raises failures
            cancel_event: Set by the caller to abandon the sync before writing
            organization_id: When given, the connection must belong to it

        Returns:
            SyncOutcome

        Raises:
            ConnectionExpiredError: If the grant expired (manual only)
            ConnectionNotActiveError: If the connection is pending or revoked (manual only)
            ProviderError: If the aggregator failed (manual only)
        """
        try:
            return self._sync(connection_id, manual, cancel_event, organization_id)
        except BankReconError as e:
            if manual:
                raise
            return SyncOutcome(connection_id=connection_id, success=False, error=str(e))

    def _sync(
        self,
        connection_id: int,
        manual: bool,
        cancel_event: Optional[threading.Event],
        organization_id: Optional[str],
    ) -> SyncOutcome:
        now = utc_now()
        expired = False

        with self.database.session_scope() as session:
            row = session.get(BankConnectionRow, connection_id)
            if row is None or (
                organization_id is not None and row.organization_id != organization_id
            ):
                raise ConnectionNotFoundError(f"Bank connection {connection_id} not found")

            if (
                row.status in (ConnectionStatus.ACTIVE.value, ConnectionStatus.ERROR.value)
                and row.expires_at is not None
                and row.expires_at < now
            ):
                row.status = ConnectionStatus.EXPIRED.value
                row.sync_enabled = False
                row.error_message = "Access grant expired"
                expired = True
                logger.warning(f"Connection {connection_id} access grant expired")
            else:
                self._check_status(row, manual)

            connection = to_connection(row)
            credentials = dict(row.credentials or {})

        if expired or connection.status == ConnectionStatus.EXPIRED:
            raise ConnectionExpiredError(
                f"Connection {connection_id} has expired, re-authorize it"
            )

        adapter = self.adapters.get(connection.provider)
        if adapter is None:
            raise ProviderNotConfiguredError(f"Unknown provider '{connection.provider}'")

        since = self._window_start(connection, now.date())
        logger.info(f"Syncing connection {connection_id} from {since}")

        try:
            fetched = adapter.fetch_transactions(credentials, since)
            result = self.pipeline.commit_transactions(
                connection.organization_id,
                connection.account_id,
                fetched.transactions,
                source=connection.provider,
                cancel_event=cancel_event,
            )
        except OperationCancelledError:
            logger.info(f"Sync of connection {connection_id} cancelled")
            raise
        except AuthorizationExpiredError as e:
            self._record_failure(connection_id, ConnectionStatus.EXPIRED, str(e), manual, since)
            raise
        except ProviderError as e:
            self._record_failure(connection_id, ConnectionStatus.ERROR, str(e), manual, since)
            raise
        except BankReconError as e:
            # Lock contention or database failure leaves the connection status alone
            self._record_failure(connection_id, None, str(e), manual, since)
            raise

        with self.database.session_scope() as session:
            row = session.get(BankConnectionRow, connection_id)
            finished = utc_now()
            row.last_sync_at = finished
            row.next_sync_at = finished + timedelta(hours=row.sync_interval_hours)
            row.status = ConnectionStatus.ACTIVE.value
            row.error_message = None
            session.add(
                ConnectionSyncLogRow(
                    connection_id=connection_id,
                    status="success",
                    manual=manual,
                    since=since,
                    transactions_count=len(fetched.transactions),
                    imported=result.imported,
                )
            )

        logger.info(
            f"Connection {connection_id} synced: {result.imported} imported, "
            f"{result.skipped} duplicates, {fetched.pending_skipped} pending skipped"
        )
        return SyncOutcome(
            connection_id=connection_id,
            success=True,
            imported=result.imported,
            skipped=result.skipped,
        )

    def _check_status(self, row: BankConnectionRow, manual: bool) -> None:
        status = ConnectionStatus(row.status)
        if status in (ConnectionStatus.PENDING, ConnectionStatus.REVOKED):
            raise ConnectionNotActiveError(
                f"Connection {row.id} is {status.value} and cannot sync"
            )
        if status == ConnectionStatus.ERROR and not manual:
            raise ConnectionNotActiveError(
                f"Connection {row.id} is in error; retry it manually"
            )

    def _window_start(self, connection: ConnectionInfo, today: date) -> date:
        sync = self.config.sync
        if connection.last_sync_at is None:
            return today - timedelta(days=sync.initial_lookback_days)
        return connection.last_sync_at.date() - timedelta(days=sync.overlap_days)

    def _record_failure(
        self,
        connection_id: int,
        status: Optional[ConnectionStatus],
        message: str,
        manual: bool,
        since: date,
    ) -> None:
        """
        Write an error sync log and, when a status is given, mark the connection with it.

        last_sync_at is untouched so the next attempt covers the same window.
        """
        logger.error(f"Sync of connection {connection_id} failed: {message}")
        with self.database.session_scope() as session:
            if status is not None:
                row = session.get(BankConnectionRow, connection_id)
                row.status = status.value
                row.error_message = message[:2000]
                if status == ConnectionStatus.EXPIRED:
                    row.sync_enabled = False
            session.add(
                ConnectionSyncLogRow(
                    connection_id=connection_id,
                    status="error",
                    manual=manual,
                    since=since,
                    error_message=message[:2000],
                )
            )

    def sync_history(self, connection_id: int, limit: int = 20) -> list[dict]:
        """Most recent sync log entries, newest first."""
        with self.database.session_scope() as session:
            rows = session.scalars(
                select(ConnectionSyncLogRow)
                .where(ConnectionSyncLogRow.connection_id == connection_id)
                .order_by(ConnectionSyncLogRow.id.desc())
                .limit(limit)
            ).all()
            return [
                {
                    "id": r.id,
                    "status": r.status,
                    "manual": r.manual,
                    "since": r.since,
                    "transactions_count": r.transactions_count,
                    "imported": r.imported,
                    "error_message": r.error_message,
                    "created_at": r.created_at,
                }
                for r in rows
            ]
