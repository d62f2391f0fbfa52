"""
Engine facade wiring parsers, storage, matching, reconciliation and bank feeds.
"""

from pathlib import Path
from typing import Optional, Union
import logging
import threading

from .banking.orchestrator import ConnectionOrchestrator
from .banking.providers import build_adapters
from .banking.providers.base import ProviderAdapter
from .banking.scheduler import SyncScheduler
from .config import ReconConfig
from .importing.pipeline import ImportPipeline
from .matching.suggester import MatchSuggester
from .models.connection import (
    ConnectionInfo,
    Institution,
    PendingFlow,
    ProviderInfo,
    SyncOutcome,
    SyncRunSummary,
)
from .models.matching import CandidateMatch, MatchSelection, ReconciliationResult
from .models.transaction import ImportResult, StatementPreview
from .reconciliation.coordinator import ReconciliationCoordinator
from .storage.counterparts import SqlCounterpartService
from .storage.database import Database
from .storage.transaction_store import TransactionStore

logger = logging.getLogger(__name__)


class ReconEngine:
    """
    Single entry point over the engine components.

    Every operation takes the acting organization explicitly.
    """

    def __init__(
        self,
        config: Optional[ReconConfig] = None,
        database: Optional[Database] = None,
        adapters: Optional[dict[str, ProviderAdapter]] = None,
    ):
        self.config = config or ReconConfig()
        self.database = database or Database(self.config.database)
        self.store = TransactionStore(self.database)
        self.counterparts = SqlCounterpartService(self.database)
        self.pipeline = ImportPipeline(self.database, self.store, self.config)
        self.suggester = MatchSuggester(
            self.database, self.store, self.counterparts, self.config
        )
        self.coordinator = ReconciliationCoordinator(
            self.database, self.store, self.counterparts, self.suggester, self.config
        )
        self.adapters = adapters if adapters is not None else build_adapters(self.config)
        self.orchestrator = ConnectionOrchestrator(
            self.database, self.store, self.adapters, self.config
        )
        self.scheduler = SyncScheduler(
            self.database, self.pipeline, self.adapters, self.config
        )

    def initialize(self) -> None:
        """Create the schema if it does not exist yet."""
        self.database.create_all()

    def close(self) -> None:
        self.database.dispose()

    # Statement import

    def preview_import(
        self,
        organization_id: str,
        account_id: int,
        source: Union[Path, bytes],
        filename: Optional[str] = None,
        format_hint: Optional[str] = None,
    ) -> StatementPreview:
        content, filename = _read_source(source, filename)
        return self.pipeline.preview(
            organization_id, account_id, content, filename, format_hint
        )

    def commit_import(
        self,
        organization_id: str,
        account_id: int,
        source: Union[Path, bytes],
        filename: Optional[str] = None,
        format_hint: Optional[str] = None,
        preview: Optional[StatementPreview] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ImportResult:
        content, filename = _read_source(source, filename)
        return self.pipeline.commit(
            organization_id,
            account_id,
            content,
            filename,
            format_hint,
            preview=preview,
            cancel_event=cancel_event,
        )

    # Matching and reconciliation

    def suggest(self, organization_id: str, transaction_id: int) -> list[CandidateMatch]:
        return self.suggester.suggest(organization_id, transaction_id)

    def reconcile(
        self,
        organization_id: str,
        transaction_id: int,
        matches: list[MatchSelection],
    ) -> ReconciliationResult:
        return self.coordinator.reconcile(organization_id, transaction_id, matches)

    def get_reconciliation(
        self, organization_id: str, transaction_id: int
    ) -> Optional[ReconciliationResult]:
        return self.coordinator.get_reconciliation(organization_id, transaction_id)

    def auto_reconcile(self, organization_id: str, account_id: int) -> dict[str, int]:
        return self.coordinator.auto_reconcile(organization_id, account_id)

    # Bank connections

    def list_providers(self) -> list[ProviderInfo]:
        return self.orchestrator.list_providers()

    def start_connection(
        self,
        organization_id: str,
        provider: str,
        account_id: Optional[int] = None,
    ) -> PendingFlow:
        return self.orchestrator.select_provider(organization_id, provider, account_id)

    def select_country(self, request_token: str, country: str) -> PendingFlow:
        return self.orchestrator.select_country(request_token, country)

    def list_institutions(self, request_token: str) -> list[Institution]:
        return self.orchestrator.list_institutions(request_token)

    def select_institution(self, request_token: str, institution_id: str) -> PendingFlow:
        return self.orchestrator.select_institution(request_token, institution_id)

    def select_account(self, request_token: str, account_id: int) -> PendingFlow:
        return self.orchestrator.select_account(request_token, account_id)

    def initiate_connection(self, request_token: str, redirect_uri: str) -> PendingFlow:
        return self.orchestrator.initiate(request_token, redirect_uri)

    def confirm_connection(
        self, request_token: str, authorization_code: Optional[str] = None
    ) -> ConnectionInfo:
        return self.orchestrator.confirm(request_token, authorization_code)

    def reauthorize(self, organization_id: str, connection_id: int) -> PendingFlow:
        return self.orchestrator.reauthorize(organization_id, connection_id)

    def get_connection(self, organization_id: str, connection_id: int) -> ConnectionInfo:
        return self.orchestrator.get_connection(organization_id, connection_id)

    def list_connections(
        self, organization_id: str, account_id: Optional[int] = None
    ) -> list[ConnectionInfo]:
        return self.orchestrator.list_connections(organization_id, account_id)

    def set_sync_enabled(
        self, organization_id: str, connection_id: int, enabled: bool
    ) -> ConnectionInfo:
        return self.orchestrator.set_sync_enabled(organization_id, connection_id, enabled)

    def disconnect(self, organization_id: str, connection_id: int) -> ConnectionInfo:
        return self.orchestrator.disconnect(organization_id, connection_id)

    # Sync

    def sync_now(self, organization_id: str, connection_id: int) -> SyncOutcome:
        """Manually sync one connection; failures are raised."""
        return self.scheduler.sync_connection(
            connection_id, manual=True, organization_id=organization_id
        )

    def run_due_syncs(
        self, cancel_event: Optional[threading.Event] = None
    ) -> SyncRunSummary:
        return self.scheduler.run_due(cancel_event=cancel_event)


def _read_source(
    source: Union[Path, bytes], filename: Optional[str]
) -> tuple[bytes, Optional[str]]:
    if isinstance(source, (bytes, bytearray)):
        return bytes(source), filename
    path = Path(source)
    return path.read_bytes(), filename or path.name
