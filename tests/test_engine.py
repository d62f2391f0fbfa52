"""Tests for the engine facade wiring."""

from decimal import Decimal

import pytest

from bank_feed_recon.engine import ReconEngine
from bank_feed_recon.models.connection import ConnectionStatus
from bank_feed_recon.models.matching import CandidateType, Direction, MatchSelection
from bank_feed_recon.utils.exceptions import ConnectionNotFoundError

from conftest import ORG, OTHER_ORG, FakeAdapter

STATEMENT = b"""Date,Description,Amount
2024-06-03,INV-2024-7 thanks,250.00
"""


@pytest.fixture
def engine(config):
    adapter = FakeAdapter(config)
    recon = ReconEngine(config, adapters={adapter.key: adapter})
    recon.initialize()
    yield recon
    recon.close()


def test_connection_lifecycle_through_facade(engine):
    account = engine.store.create_account(ORG, "Main account", "EUR")

    flow = engine.start_connection(ORG, "fakebank")
    token = flow.request_token
    engine.select_country(token, "DE")
    engine.select_institution(token, "FAKE_BANK_DE")
    engine.select_account(token, account.id)
    engine.initiate_connection(token, "https://app.invalid/callback")
    connection = engine.confirm_connection(token, "req-1")

    fetched = engine.get_connection(ORG, connection.id)
    assert fetched.status == ConnectionStatus.ACTIVE
    assert fetched.account_id == account.id
    with pytest.raises(ConnectionNotFoundError):
        engine.get_connection(OTHER_ORG, connection.id)


def test_import_and_reconcile_through_facade(engine):
    account = engine.store.create_account(ORG, "Main account", "EUR")
    engine.commit_import(ORG, account.id, STATEMENT, "june.csv")
    txn = engine.store.list_transactions(ORG, account.id)[0]
    invoice = engine.counterparts.add_counterpart(
        ORG, CandidateType.INVOICE, "INV-2024-7", Decimal("250.00"), "EUR", Direction.INBOUND
    )

    best = engine.suggest(ORG, txn.id)[0]
    engine.reconcile(
        ORG,
        txn.id,
        [MatchSelection(best.type, best.id, Decimal("250.00"), expected_version=best.version)],
    )

    stored = engine.get_reconciliation(ORG, txn.id)
    assert best.id == invoice.id
    assert stored.residual == Decimal("0.00")
