"""
Match suggestion for bank transactions.
Ranks open invoices, payments and recurring models against one transaction.
"""

from datetime import date
from typing import Optional
import logging

from .scoring import CandidateScorer, MatchTarget
from ..config import ReconConfig
from ..models.matching import (
    CandidateMatch,
    Direction,
    MatchTier,
    OpenItem,
    RecurringModelRule,
)
from ..models.transaction import BankTransaction
from ..storage.counterparts import CounterpartService
from ..storage.database import Database
from ..storage.transaction_store import TransactionStore, to_transaction

logger = logging.getLogger(__name__)


def months_before(day: date, months: int) -> date:
    """Same day of month, `months` earlier (clamped to the month's length)."""
    month_index = day.year * 12 + day.month - 1 - months
    year, month = divmod(month_index, 12)
    month += 1
    for candidate_day in (day.day, 30, 29, 28):
        try:
            return date(year, month, candidate_day)
        except ValueError:
            continue
    return date(year, month, 28)


class MatchSuggester:
    """
    Proposes counterparts for a bank transaction.

    Suggestions are computed on demand and never persisted; calling suggest()
    twice on unchanged data returns the same list.
    """

    def __init__(
        self,
        database: Database,
        store: TransactionStore,
        counterparts: CounterpartService,
        config: Optional[ReconConfig] = None,
    ):
        self.database = database
        self.store = store
        self.counterparts = counterparts
        self.config = config or ReconConfig()
        self.scorer = CandidateScorer(self.config.matching)

    def suggest(self, organization_id: str, transaction_id: int) -> list[CandidateMatch]:
        """
        Rank candidates for a transaction.

        Args:
            organization_id: Acting organization
            transaction_id: Bank transaction to match

        Returns:
            Candidates sorted by descending score, at most max_suggestions

        Raises:
            TransactionNotFoundError: If the transaction is not in the organization
        """
        matching = self.config.matching

        with self.database.session_scope() as session:
            txn = to_transaction(
                self.store.load_transaction(session, organization_id, transaction_id)
            )
            if txn.is_reconciled:
                logger.info(f"Transaction {transaction_id} is already reconciled")
                return []

            currency = txn.currency_code if matching.match_same_currency else None
            direction = Direction.INBOUND if txn.is_credit else Direction.OUTBOUND
            since = months_before(txn.date, matching.past_months)

            open_items = self.counterparts.list_open(
                session, organization_id, currency, direction, since
            )
            models = self.counterparts.list_recurring_models(
                session, organization_id, currency
            )

        candidates = self.rank(txn, open_items, models)
        logger.info(
            f"Suggested {len(candidates)} candidates for transaction {transaction_id} "
            f"from {len(open_items)} open items and {len(models)} models"
        )
        return candidates

    def rank(
        self,
        txn: BankTransaction,
        open_items: list[OpenItem],
        models: list[RecurringModelRule],
    ) -> list[CandidateMatch]:
        """Score and order candidates without touching the database."""
        matching = self.config.matching
        tiers = matching.tiers

        targets = [MatchTarget.from_open_item(item) for item in open_items]
        targets.extend(
            MatchTarget.from_rule(rule, txn) for rule in models if rule.accepts(txn)
        )

        candidates: list[CandidateMatch] = []
        for target in targets:
            scored = self.scorer.score(txn, target)
            if scored is None:
                continue
            score, reason = scored
            if score < matching.min_score:
                continue

            candidates.append(
                CandidateMatch(
                    type=target.type,
                    id=target.id,
                    reference=target.reference,
                    amount=target.amount,
                    score=score,
                    tier=MatchTier.from_score(
                        score, tiers.perfect, tiers.high, tiers.medium
                    ),
                    partner_name=target.partner_name,
                    date=target.date,
                    reason=reason,
                    version=target.version,
                )
            )

        candidates.sort(key=lambda c: (-c.score, c.type.value, c.id))
        return candidates[: matching.max_suggestions]
