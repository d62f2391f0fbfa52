"""Tests for transaction edits, deletion and counterpart deactivation."""

from datetime import date
from decimal import Decimal

import pytest

from bank_feed_recon.models.matching import CandidateType, Direction, MatchSelection
from bank_feed_recon.utils.exceptions import (
    MatchNotFoundError,
    TransactionNotFoundError,
    TransactionReconciledError,
)

from conftest import ORG, OTHER_ORG, make_txn


@pytest.fixture
def float_account(store):
    return store.create_account(ORG, "Float", "EUR", opening_balance=Decimal("100.00"))


@pytest.fixture
def rows(pipeline, store, float_account):
    pipeline.commit_transactions(
        ORG,
        float_account.id,
        [
            make_txn(date(2024, 3, 1), "50.00", "first"),
            make_txn(date(2024, 3, 2), "-20.00", "second"),
            make_txn(date(2024, 3, 3), "10.00", "third"),
        ],
        source="file",
    )
    return store.list_transactions(ORG, float_account.id)


def reconcile_with_model(coordinator, counterparts, txn):
    rule = counterparts.add_recurring_model(ORG, "Sundry", "EUR")
    return coordinator.reconcile(
        ORG, txn.id, [MatchSelection(CandidateType.RECURRING_MODEL, rule.id, txn.abs_amount)]
    )


class TestDelete:
    def test_delete_rebalances_later_rows(self, store, float_account, rows):
        assert [r.running_balance for r in rows] == [
            Decimal("150.00"),
            Decimal("130.00"),
            Decimal("140.00"),
        ]

        store.delete_transaction(ORG, rows[1].id)

        remaining = store.list_transactions(ORG, float_account.id)
        assert [r.payment_ref for r in remaining] == ["first", "third"]
        assert [r.running_balance for r in remaining] == [
            Decimal("150.00"),
            Decimal("160.00"),
        ]

    def test_reconciled_transaction_cannot_be_deleted(
        self, store, coordinator, counterparts, float_account, rows
    ):
        reconcile_with_model(coordinator, counterparts, rows[0])

        with pytest.raises(TransactionReconciledError):
            store.delete_transaction(ORG, rows[0].id)

        assert len(store.list_transactions(ORG, float_account.id)) == 3

    def test_other_organization_cannot_delete(self, store, rows):
        with pytest.raises(TransactionNotFoundError):
            store.delete_transaction(OTHER_ORG, rows[0].id)


class TestMetadata:
    def test_reconciled_transaction_metadata_is_editable(
        self, store, coordinator, counterparts, rows
    ):
        reconcile_with_model(coordinator, counterparts, rows[0])

        updated = store.update_metadata(
            ORG, rows[0].id, partner_name="Acme GmbH", notes="checked by AP", checked=True
        )

        assert updated.is_reconciled
        assert updated.partner_name == "Acme GmbH"
        assert updated.notes == "checked by AP"
        assert updated.checked
        assert store.get_transaction(ORG, rows[0].id).notes == "checked by AP"


class TestDeactivation:
    def test_deactivated_invoice_is_neither_suggested_nor_reconcilable(
        self, store, counterparts, suggester, coordinator, rows
    ):
        item = counterparts.add_counterpart(
            ORG,
            CandidateType.INVOICE,
            "INV-77",
            Decimal("50.00"),
            "EUR",
            Direction.INBOUND,
            doc_date=date(2024, 3, 1),
        )
        assert [c.id for c in suggester.suggest(ORG, rows[0].id)] == [item.id]

        counterparts.deactivate(ORG, CandidateType.INVOICE, item.id)

        assert suggester.suggest(ORG, rows[0].id) == []
        with pytest.raises(MatchNotFoundError):
            coordinator.reconcile(
                ORG,
                rows[0].id,
                [MatchSelection(CandidateType.INVOICE, item.id, Decimal("50.00"))],
            )

    def test_deactivate_checks_organization(self, counterparts):
        rule = counterparts.add_recurring_model(ORG, "Rent", "EUR")
        with pytest.raises(MatchNotFoundError):
            counterparts.deactivate(OTHER_ORG, CandidateType.RECURRING_MODEL, rule.id)
