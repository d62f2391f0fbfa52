"""
Reconciliation of bank transactions against selected counterparts.
"""

from decimal import Decimal
from typing import Optional
import logging

from sqlalchemy.exc import IntegrityError

from ..config import ReconConfig
from ..matching.suggester import MatchSuggester
from ..models.matching import (
    CandidateType,
    MatchSelection,
    MatchTier,
    ReconciliationLine,
    ReconciliationResult,
)
from ..models.transaction import quantize_amount
from ..storage.counterparts import CounterpartService
from ..storage.database import Database, utc_now
from ..storage.tables import ReconciliationLineRow, ReconciliationRow
from ..storage.transaction_store import TransactionStore
from ..utils.exceptions import (
    AlreadyReconciledError,
    BankReconError,
    ConflictError,
    InvalidMatchSelectionError,
    MatchAlreadyClaimedError,
    NoMatchesProvidedError,
    TransactionNotFoundError,
)

logger = logging.getLogger(__name__)


def _to_result(row: ReconciliationRow) -> ReconciliationResult:
    return ReconciliationResult(
        transaction_id=row.transaction_id,
        lines=[
            ReconciliationLine(
                type=CandidateType(line.counterpart_type),
                counterpart_id=line.counterpart_id,
                allocated_amount=Decimal(line.allocated_amount),
            )
            for line in row.lines
        ],
        total_allocated=Decimal(row.total_allocated),
        residual=Decimal(row.residual),
        created_at=row.created_at,
    )


class ReconciliationCoordinator:
    """
    Commits a reconciliation atomically.

    The transaction flag, every counterpart claim and the reconciliation
    record are written in one database transaction: either all of them
    persist or none do.
    """

    def __init__(
        self,
        database: Database,
        store: TransactionStore,
        counterparts: CounterpartService,
        suggester: Optional[MatchSuggester] = None,
        config: Optional[ReconConfig] = None,
    ):
        self.database = database
        self.store = store
        self.counterparts = counterparts
        self.suggester = suggester
        self.config = config or ReconConfig()

    def reconcile(
        self,
        organization_id: str,
        transaction_id: int,
        matches: list[MatchSelection],
    ) -> ReconciliationResult:
        """
        Reconcile a transaction against one or more counterparts.

        Args:
            organization_id: Acting organization
            transaction_id: Bank transaction to reconcile
            matches: Selected counterparts with allocated amounts

        Returns:
            ReconciliationResult with the residual left unallocated

        Raises:
            NoMatchesProvidedError: If matches is empty
            InvalidMatchSelectionError: If an allocation is invalid
            TransactionNotFoundError: If the transaction is not in the organization
            AlreadyReconciledError: If the transaction is already reconciled
            MatchNotFoundError: If a counterpart is unknown or inactive
            MatchAlreadyClaimedError: If a counterpart's open balance was taken
        """
        if not matches:
            raise NoMatchesProvidedError("At least one match must be selected")
        self._validate_selections(matches)

        with self.database.session_scope() as session:
            txn = self.store.load_transaction(session, organization_id, transaction_id)
            if txn.is_reconciled:
                raise AlreadyReconciledError(
                    f"Bank transaction {transaction_id} is already reconciled"
                )

            # Over-allocation is committed as a negative residual
            transaction_amount = abs(Decimal(txn.amount))
            total_allocated = sum(
                (quantize_amount(m.allocated_amount) for m in matches), Decimal("0")
            )

            claims = []
            for selection in matches:
                allocated = quantize_amount(selection.allocated_amount)
                if selection.type == CandidateType.RECURRING_MODEL:
                    self.counterparts.get_recurring_model(
                        session, organization_id, selection.id
                    )
                    continue

                item = self.counterparts.get_open_item(
                    session, organization_id, selection.type, selection.id
                )
                if item.open_amount <= 0:
                    raise MatchAlreadyClaimedError(
                        f"{item.kind.value} {item.id} has no open balance left"
                    )
                if (
                    selection.expected_version is not None
                    and item.version != selection.expected_version
                ):
                    raise MatchAlreadyClaimedError(
                        f"{item.kind.value} {item.id} changed since it was suggested "
                        f"(version {selection.expected_version}, now {item.version})"
                    )
                if allocated > item.open_amount and item.open_amount < item.amount:
                    raise MatchAlreadyClaimedError(
                        f"{item.kind.value} {item.id} was partly claimed, "
                        f"{item.open_amount} of {item.amount} left open"
                    )
                if allocated > item.open_amount:
                    raise InvalidMatchSelectionError(
                        f"Allocation {allocated} exceeds open balance {item.open_amount} "
                        f"of {item.kind.value} {item.id}"
                    )
                claims.append((item, allocated))

            for item, allocated in claims:
                self.counterparts.claim(session, item, allocated)

            if not self.store.mark_reconciled(session, transaction_id):
                raise AlreadyReconciledError(
                    f"Bank transaction {transaction_id} is already reconciled"
                )

            residual = transaction_amount - total_allocated
            record = ReconciliationRow(
                transaction_id=transaction_id,
                organization_id=organization_id,
                total_allocated=total_allocated,
                residual=residual,
                created_at=utc_now(),
                lines=[
                    ReconciliationLineRow(
                        counterpart_type=m.type.value,
                        counterpart_id=m.id,
                        allocated_amount=quantize_amount(m.allocated_amount),
                    )
                    for m in matches
                ],
            )
            session.add(record)
            try:
                session.flush()
            except IntegrityError:
                raise AlreadyReconciledError(
                    f"Bank transaction {transaction_id} is already reconciled"
                )

            result = _to_result(record)

        logger.info(
            f"Reconciled transaction {transaction_id} against {len(matches)} "
            f"counterpart(s), residual {result.residual}"
        )
        return result

    def get_reconciliation(
        self, organization_id: str, transaction_id: int
    ) -> Optional[ReconciliationResult]:
        """Read back the reconciliation of a transaction, if any."""
        with self.database.session_scope() as session:
            self.store.load_transaction(session, organization_id, transaction_id)
            row = session.get(ReconciliationRow, transaction_id)
            return _to_result(row) if row is not None else None

    def auto_reconcile(self, organization_id: str, account_id: int) -> dict[str, int]:
        """
        Reconcile every transaction whose best suggestion is an unambiguous perfect match.

        Conflicts and errors are counted, not raised.

        Returns:
            Dictionary with reconciled, skipped and errors counts
        """
        if self.suggester is None:
            raise BankReconError("Auto-reconcile needs a match suggester")

        summary = {"reconciled": 0, "skipped": 0, "errors": 0}
        pending = self.store.list_transactions(organization_id, account_id, reconciled=False)

        for txn in pending:
            try:
                candidates = self.suggester.suggest(organization_id, txn.id)
                perfect = [c for c in candidates if c.tier == MatchTier.PERFECT]
                if len(perfect) != 1:
                    summary["skipped"] += 1
                    continue

                best = perfect[0]
                allocation = txn.abs_amount
                if best.amount is not None:
                    allocation = min(allocation, abs(best.amount))

                self.reconcile(
                    organization_id,
                    txn.id,
                    [
                        MatchSelection(
                            type=best.type,
                            id=best.id,
                            allocated_amount=allocation,
                            expected_version=best.version,
                        )
                    ],
                )
                summary["reconciled"] += 1
            except (ConflictError, TransactionNotFoundError) as e:
                logger.warning(f"Auto-reconcile skipped transaction {txn.id}: {e}")
                summary["skipped"] += 1
            except BankReconError as e:
                logger.error(f"Auto-reconcile failed for transaction {txn.id}: {e}")
                summary["errors"] += 1

        logger.info(
            f"Auto-reconcile for account {account_id}: {summary['reconciled']} reconciled, "
            f"{summary['skipped']} skipped, {summary['errors']} errors"
        )
        return summary

    @staticmethod
    def _validate_selections(matches: list[MatchSelection]) -> None:
        seen: set[tuple[CandidateType, int]] = set()
        for selection in matches:
            if selection.allocated_amount is None or selection.allocated_amount <= 0:
                raise InvalidMatchSelectionError(
                    f"Allocation for {selection.type.value} {selection.id} must be positive"
                )
            key = (selection.type, selection.id)
            if key in seen:
                raise InvalidMatchSelectionError(
                    f"{selection.type.value} {selection.id} selected more than once"
                )
            seen.add(key)
