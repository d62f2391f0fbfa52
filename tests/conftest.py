"""Shared fixtures: a throwaway SQLite database and the services built on it."""

from datetime import date
from decimal import Decimal
from typing import Optional

import pytest

from bank_feed_recon.banking.orchestrator import ConnectionOrchestrator
from bank_feed_recon.banking.providers.base import ProviderAdapter
from bank_feed_recon.banking.scheduler import SyncScheduler
from bank_feed_recon.config import DatabaseConfig, ReconConfig
from bank_feed_recon.importing.pipeline import ImportPipeline
from bank_feed_recon.matching.suggester import MatchSuggester
from bank_feed_recon.models.connection import (
    AuthorizationModel,
    ConnectionGrant,
    FetchedTransactions,
    InitiationResult,
    Institution,
)
from bank_feed_recon.models.transaction import ParsedTransaction
from bank_feed_recon.reconciliation.coordinator import ReconciliationCoordinator
from bank_feed_recon.storage.counterparts import SqlCounterpartService
from bank_feed_recon.storage.database import Database
from bank_feed_recon.storage.transaction_store import TransactionStore

ORG = "org-1"
OTHER_ORG = "org-2"


class FakeAdapter(ProviderAdapter):
    """In-memory aggregator with switchable failures."""

    key = "fakebank"
    display_name = "Fake Bank"
    supported_countries = ("DE", "FR")
    authorization_model = AuthorizationModel.REDIRECT

    def __init__(self, config=None, authorization_model: Optional[AuthorizationModel] = None):
        super().__init__(config)
        if authorization_model is not None:
            self.authorization_model = authorization_model
        self.configured = True
        self.transactions: list[ParsedTransaction] = []
        self.expires_at = None
        self.initiate_error: Optional[Exception] = None
        self.complete_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.fetch_calls: list[date] = []
        self.revoked: list[dict] = []

    @property
    def base_url(self) -> str:
        return "https://fakebank.invalid"

    def is_configured(self) -> bool:
        return self.configured

    def list_institutions(self, country):
        return [
            Institution(id="FAKE_BANK_DE", name="Fake Bank Deutschland", countries=[country]),
            Institution(id="OTHER_BANK_DE", name="Other Bank", countries=[country]),
        ]

    def initiate_connection(self, institution_id, account_reference, redirect_uri):
        if self.initiate_error is not None:
            raise self.initiate_error
        if self.authorization_model == AuthorizationModel.TOKEN:
            return InitiationResult(link_token="link-sandbox-123")
        return InitiationResult(
            requisition_id="req-1",
            authorization_url=f"https://fakebank.invalid/auth?ref={account_reference}",
        )

    def complete_connection(self, requisition_id, authorization_code=None):
        if self.complete_error is not None:
            raise self.complete_error
        return ConnectionGrant(
            credentials={"requisition_id": requisition_id, "accounts": ["acc-1"]},
            expires_at=self.expires_at,
        )

    def fetch_transactions(self, credentials, since):
        self.fetch_calls.append(since)
        if self.fetch_error is not None:
            raise self.fetch_error
        return FetchedTransactions(transactions=list(self.transactions), since=since)

    def revoke(self, credentials):
        self.revoked.append(credentials)
        return True


@pytest.fixture
def config(tmp_path):
    recon_config = ReconConfig()
    recon_config.database = DatabaseConfig(
        url=f"sqlite:///{tmp_path / 'recon.db'}", timeout_seconds=15
    )
    recon_config.importing.lock_timeout_seconds = 5
    return recon_config


@pytest.fixture
def database(config):
    db = Database(config.database)
    db.create_all()
    yield db
    db.dispose()


@pytest.fixture
def store(database):
    return TransactionStore(database)


@pytest.fixture
def counterparts(database):
    return SqlCounterpartService(database)


@pytest.fixture
def pipeline(database, store, config):
    return ImportPipeline(database, store, config)


@pytest.fixture
def suggester(database, store, counterparts, config):
    return MatchSuggester(database, store, counterparts, config)


@pytest.fixture
def coordinator(database, store, counterparts, suggester, config):
    return ReconciliationCoordinator(database, store, counterparts, suggester, config)


@pytest.fixture
def account(store):
    return store.create_account(ORG, "Main account", "EUR", "DE89370400440532013000")


@pytest.fixture
def fake_adapter(config):
    return FakeAdapter(config)


@pytest.fixture
def orchestrator(database, store, fake_adapter, config):
    return ConnectionOrchestrator(
        database, store, {fake_adapter.key: fake_adapter}, config
    )


@pytest.fixture
def scheduler(database, pipeline, fake_adapter, config):
    return SyncScheduler(database, pipeline, {fake_adapter.key: fake_adapter}, config)


@pytest.fixture
def active_connection(orchestrator, account):
    """Run the whole redirect flow and return the active connection."""
    flow = orchestrator.select_provider(ORG, "fakebank")
    token = flow.request_token
    orchestrator.select_country(token, "DE")
    orchestrator.select_institution(token, "FAKE_BANK_DE")
    orchestrator.select_account(token, account.id)
    orchestrator.initiate(token, "https://app.invalid/callback")
    return orchestrator.confirm(token, "req-1")


def make_txn(day: date, amount: str, ref: str, partner: Optional[str] = None) -> ParsedTransaction:
    return ParsedTransaction(
        date=day, amount=Decimal(amount), payment_ref=ref, partner_name=partner
    )
