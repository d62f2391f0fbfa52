"""Tests for atomic reconciliation and concurrent claims."""

import threading
from datetime import date
from decimal import Decimal

import pytest

from bank_feed_recon.models.matching import CandidateType, Direction, MatchSelection
from bank_feed_recon.utils.exceptions import (
    AlreadyReconciledError,
    InvalidMatchSelectionError,
    MatchAlreadyClaimedError,
    MatchNotFoundError,
    NoMatchesProvidedError,
    TransactionNotFoundError,
)

from conftest import ORG, OTHER_ORG, make_txn

DAY = date(2024, 4, 2)


@pytest.fixture
def transactions(pipeline, store, account):
    pipeline.commit_transactions(
        ORG,
        account.id,
        [
            make_txn(DAY, "100.00", "INV-100 settlement"),
            make_txn(DAY, "100.00", "second transfer"),
        ],
        source="file",
    )
    return store.list_transactions(ORG, account.id)


def invoice(counterparts, reference, amount, organization_id=ORG, **kwargs):
    return counterparts.add_counterpart(
        organization_id,
        CandidateType.INVOICE,
        reference,
        Decimal(amount),
        "EUR",
        Direction.INBOUND,
        doc_date=DAY,
        **kwargs,
    )


def select(item, amount):
    return MatchSelection(type=item.kind, id=item.id, allocated_amount=Decimal(amount))


def open_amount(database, counterparts, item):
    with database.session_scope() as session:
        return counterparts.get_open_item(session, ORG, item.kind, item.id).open_amount


class TestReconcile:
    def test_split_across_two_invoices(
        self, coordinator, counterparts, database, store, transactions
    ):
        txn = transactions[0]
        first = invoice(counterparts, "INV-100", "60.00")
        second = invoice(counterparts, "INV-101", "40.00")

        result = coordinator.reconcile(
            ORG, txn.id, [select(first, "60.00"), select(second, "40.00")]
        )

        assert result.total_allocated == Decimal("100.00")
        assert result.residual == Decimal("0.00")
        assert result.is_full
        assert [line.counterpart_id for line in result.lines] == [first.id, second.id]
        assert store.get_transaction(ORG, txn.id).is_reconciled
        assert open_amount(database, counterparts, first) == Decimal("0.00")
        assert open_amount(database, counterparts, second) == Decimal("0.00")

    def test_partial_allocation_leaves_residual(
        self, coordinator, counterparts, database, transactions
    ):
        item = invoice(counterparts, "INV-200", "100.00")

        result = coordinator.reconcile(ORG, transactions[0].id, [select(item, "80.00")])

        assert result.residual == Decimal("20.00")
        assert not result.is_full
        assert open_amount(database, counterparts, item) == Decimal("20.00")

    def test_record_can_be_read_back(self, coordinator, counterparts, transactions):
        item = invoice(counterparts, "INV-300", "100.00")
        coordinator.reconcile(ORG, transactions[0].id, [select(item, "100.00")])

        stored = coordinator.get_reconciliation(ORG, transactions[0].id)

        assert stored.total_allocated == Decimal("100.00")
        assert stored.lines[0].type == CandidateType.INVOICE
        assert coordinator.get_reconciliation(ORG, transactions[1].id) is None

    def test_recurring_model_selection(self, coordinator, counterparts, transactions):
        rule = counterparts.add_recurring_model(ORG, "Bank fees", "EUR")

        result = coordinator.reconcile(
            ORG,
            transactions[0].id,
            [MatchSelection(CandidateType.RECURRING_MODEL, rule.id, Decimal("100.00"))],
        )

        assert result.lines[0].type == CandidateType.RECURRING_MODEL

    def test_over_allocation_of_transaction_commits_negative_residual(
        self, coordinator, counterparts, database, transactions
    ):
        first = invoice(counterparts, "INV-600", "100.00")
        second = invoice(counterparts, "INV-601", "100.00")

        result = coordinator.reconcile(
            ORG, transactions[0].id, [select(first, "70.00"), select(second, "70.00")]
        )

        assert result.total_allocated == Decimal("140.00")
        assert result.residual == Decimal("-40.00")
        assert not result.is_full
        assert coordinator.get_reconciliation(ORG, transactions[0].id).residual == Decimal(
            "-40.00"
        )
        assert open_amount(database, counterparts, second) == Decimal("30.00")


class TestRejections:
    def test_empty_selection(self, coordinator, transactions):
        with pytest.raises(NoMatchesProvidedError):
            coordinator.reconcile(ORG, transactions[0].id, [])

    def test_already_reconciled(self, coordinator, counterparts, transactions):
        item = invoice(counterparts, "INV-400", "200.00")
        coordinator.reconcile(ORG, transactions[0].id, [select(item, "50.00")])

        with pytest.raises(AlreadyReconciledError):
            coordinator.reconcile(ORG, transactions[0].id, [select(item, "50.00")])

    @pytest.mark.parametrize("amount", ["0", "-5.00"])
    def test_non_positive_allocation(self, coordinator, counterparts, transactions, amount):
        item = invoice(counterparts, "INV-500", "100.00")
        with pytest.raises(InvalidMatchSelectionError):
            coordinator.reconcile(ORG, transactions[0].id, [select(item, amount)])

    def test_over_allocation_of_invoice(self, coordinator, counterparts, transactions):
        item = invoice(counterparts, "INV-700", "30.00")
        with pytest.raises(InvalidMatchSelectionError):
            coordinator.reconcile(ORG, transactions[0].id, [select(item, "50.00")])

    def test_duplicate_selection(self, coordinator, counterparts, transactions):
        item = invoice(counterparts, "INV-800", "100.00")
        with pytest.raises(InvalidMatchSelectionError):
            coordinator.reconcile(
                ORG, transactions[0].id, [select(item, "10.00"), select(item, "10.00")]
            )

    def test_other_organization(self, coordinator, counterparts, transactions):
        item = invoice(counterparts, "INV-900", "100.00", organization_id=OTHER_ORG)

        with pytest.raises(TransactionNotFoundError):
            coordinator.reconcile(OTHER_ORG, transactions[0].id, [select(item, "10.00")])
        with pytest.raises(MatchNotFoundError):
            coordinator.reconcile(ORG, transactions[0].id, [select(item, "10.00")])

    def test_failed_claim_rolls_back_everything(
        self, coordinator, counterparts, database, store, transactions
    ):
        good = invoice(counterparts, "INV-1000", "50.00")
        settled = invoice(counterparts, "INV-1001", "50.00", open_amount=Decimal("0"))

        with pytest.raises(MatchAlreadyClaimedError):
            coordinator.reconcile(
                ORG, transactions[0].id, [select(good, "50.00"), select(settled, "50.00")]
            )

        assert not store.get_transaction(ORG, transactions[0].id).is_reconciled
        assert open_amount(database, counterparts, good) == Decimal("50.00")
        assert coordinator.get_reconciliation(ORG, transactions[0].id) is None


class TestConcurrency:
    def test_two_transactions_race_for_one_invoice(
        self, coordinator, counterparts, database, store, transactions
    ):
        item = invoice(counterparts, "INV-RACE", "100.00")
        barrier = threading.Barrier(len(transactions))
        results = []
        errors = []

        def run(txn_id):
            barrier.wait()
            try:
                results.append(coordinator.reconcile(ORG, txn_id, [select(item, "100.00")]))
            except MatchAlreadyClaimedError as e:
                errors.append(e)

        threads = [threading.Thread(target=run, args=(t.id,)) for t in transactions]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(results) == 1
        assert len(errors) == 1
        assert open_amount(database, counterparts, item) == Decimal("0.00")
        reconciled = store.list_transactions(
            ORG, transactions[0].account_id, reconciled=True
        )
        assert [t.id for t in reconciled] == [results[0].transaction_id]

    def test_partly_taken_invoice_is_reported_as_claimed(
        self, coordinator, counterparts, database, store, transactions
    ):
        item = invoice(counterparts, "INV-100", "100.00")
        coordinator.reconcile(ORG, transactions[0].id, [select(item, "60.00")])

        with pytest.raises(MatchAlreadyClaimedError):
            coordinator.reconcile(ORG, transactions[1].id, [select(item, "100.00")])

        assert not store.get_transaction(ORG, transactions[1].id).is_reconciled
        assert open_amount(database, counterparts, item) == Decimal("40.00")

    def test_stale_suggestion_is_reported_as_claimed(
        self, coordinator, counterparts, database, suggester, transactions
    ):
        item = invoice(counterparts, "INV-100", "100.00")
        suggestion = suggester.suggest(ORG, transactions[1].id)[0]
        assert suggestion.id == item.id

        coordinator.reconcile(ORG, transactions[0].id, [select(item, "10.00")])

        stale = MatchSelection(
            type=suggestion.type,
            id=suggestion.id,
            allocated_amount=Decimal("10.00"),
            expected_version=suggestion.version,
        )
        with pytest.raises(MatchAlreadyClaimedError):
            coordinator.reconcile(ORG, transactions[1].id, [stale])

        with database.session_scope() as session:
            current = counterparts.get_open_item(session, ORG, item.kind, item.id)
        assert current.version == suggestion.version + 1
        stale.expected_version = current.version
        result = coordinator.reconcile(ORG, transactions[1].id, [stale])
        assert result.residual == Decimal("90.00")


class TestAutoReconcile:
    def test_only_unambiguous_perfect_matches(self, coordinator, counterparts, store, transactions):
        invoice(counterparts, "INV-100", "100.00")

        summary = coordinator.auto_reconcile(ORG, transactions[0].account_id)

        assert summary == {"reconciled": 1, "skipped": 1, "errors": 0}
        assert store.get_transaction(ORG, transactions[0].id).is_reconciled
        assert not store.get_transaction(ORG, transactions[1].id).is_reconciled
