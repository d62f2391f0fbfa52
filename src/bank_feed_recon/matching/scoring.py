"""
Score components for match suggestions.
Each component rates one aspect of a bank transaction / counterpart pair.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Optional
import re

from ..config import MatchingConfig
from ..models.matching import CandidateType, OpenItem, RecurringModelRule
from ..models.transaction import BankTransaction, normalize_reference

# Exact amount comparison allows for rounding below half a cent
EXACT_AMOUNT_EPSILON = Decimal("0.005")

# References shorter than this are too generic to count as a hit
MIN_REFERENCE_LENGTH = 3

NAME_CLEAN_PATTERN = re.compile(r"[^\w\s]")


def normalize_name(name: Optional[str]) -> str:
    """Lowercase, drop punctuation and collapse whitespace."""
    if not name:
        return ""
    cleaned = NAME_CLEAN_PATTERN.sub(" ", name.lower())
    return " ".join(cleaned.split())


@dataclass
class MatchTarget:
    """Uniform view of an invoice, payment or recurring model for scoring."""

    type: CandidateType
    id: int
    reference: str
    amount: Optional[Decimal]
    date: Optional[date]
    partner_name: Optional[str] = None
    label_hit: bool = False
    version: Optional[int] = None

    @classmethod
    def from_open_item(cls, item: OpenItem) -> "MatchTarget":
        return cls(
            type=item.kind,
            id=item.id,
            reference=item.reference,
            amount=item.open_amount,
            date=item.date,
            partner_name=item.partner_name,
            version=item.version,
        )

    @classmethod
    def from_rule(cls, rule: RecurringModelRule, txn: BankTransaction) -> "MatchTarget":
        return cls(
            type=CandidateType.RECURRING_MODEL,
            id=rule.id,
            reference=rule.name,
            amount=rule.amount,
            date=rule.next_date,
            partner_name=rule.partner_name,
            label_hit=rule.label_hit(txn),
        )


class ScoreComponent(ABC):
    """Abstract base class for a weighted score component."""

    name: str = ""

    def __init__(self, weight: float):
        self.weight = weight

    @abstractmethod
    def evaluate(self, txn: BankTransaction, target: MatchTarget) -> Optional[float]:
        """
        Rate the pair.

        Args:
            txn: Bank transaction being matched
            target: Candidate counterpart

        Returns:
            Score in [0, 1], or None when the component does not apply
        """
        pass

    @abstractmethod
    def describe(self, txn: BankTransaction, target: MatchTarget, value: float) -> str:
        """Short human-readable explanation of the component value."""
        pass


class AmountComponent(ScoreComponent):
    """
    Amount proximity.

    Exact amounts score 1.0. Amounts inside the tolerance band decay linearly
    to 0.5 at the band edge; anything outside the band excludes the candidate.
    """

    name = "amount"

    def __init__(
        self,
        weight: float,
        tolerance_percent: float = 2.0,
        tolerance_absolute: float = 0.0,
    ):
        super().__init__(weight)
        self.tolerance_percent = Decimal(str(tolerance_percent))
        self.tolerance_absolute = Decimal(str(tolerance_absolute))

    def band(self, amount: Decimal) -> Decimal:
        return max(self.tolerance_absolute, abs(amount) * self.tolerance_percent / 100)

    def excludes(self, txn: BankTransaction, target: MatchTarget) -> bool:
        if target.amount is None:
            return False
        diff = abs(txn.abs_amount - abs(target.amount))
        return diff >= EXACT_AMOUNT_EPSILON and diff > self.band(target.amount)

    def evaluate(self, txn: BankTransaction, target: MatchTarget) -> Optional[float]:
        if target.amount is None:
            return None

        diff = abs(txn.abs_amount - abs(target.amount))
        if diff < EXACT_AMOUNT_EPSILON:
            return 1.0

        band = self.band(target.amount)
        if band <= 0 or diff > band:
            return 0.0
        return 1.0 - 0.5 * float(diff / band)

    def describe(self, txn: BankTransaction, target: MatchTarget, value: float) -> str:
        if value >= 1.0:
            return "exact amount"
        diff = abs(txn.abs_amount - abs(target.amount or 0))
        return f"amount differs by {diff:.2f}"


class DateComponent(ScoreComponent):
    """
    Date proximity.

    Same day scores 1.0, decaying linearly to the floor at the window edge.
    Beyond the window the component is 0 but never excludes.
    """

    name = "date"

    def __init__(self, weight: float, window_days: int = 60, floor: float = 0.1):
        super().__init__(weight)
        self.window_days = max(1, window_days)
        self.floor = floor

    def evaluate(self, txn: BankTransaction, target: MatchTarget) -> Optional[float]:
        if target.date is None:
            return None

        days = abs((txn.date - target.date).days)
        if days > self.window_days:
            return 0.0
        return 1.0 - (1.0 - self.floor) * days / self.window_days

    def describe(self, txn: BankTransaction, target: MatchTarget, value: float) -> str:
        days = abs((txn.date - target.date).days) if target.date else 0
        if days == 0:
            return "same day"
        return f"{days} day(s) apart"


class NameComponent(ScoreComponent):
    """Partner name similarity; applies only when both sides carry a name."""

    name = "name"

    def __init__(self, weight: float, similarity_threshold: float = 0.5):
        super().__init__(weight)
        self.similarity_threshold = similarity_threshold

    def evaluate(self, txn: BankTransaction, target: MatchTarget) -> Optional[float]:
        left = normalize_name(txn.partner_name)
        right = normalize_name(target.partner_name)
        if not left or not right:
            return None

        if left == right:
            return 1.0

        left_tokens, right_tokens = set(left.split()), set(right.split())
        if left_tokens <= right_tokens or right_tokens <= left_tokens:
            return 0.75

        if SequenceMatcher(None, left, right).ratio() >= self.similarity_threshold:
            return 0.5

        return 0.0

    def describe(self, txn: BankTransaction, target: MatchTarget, value: float) -> str:
        if value >= 1.0:
            return "same partner"
        if value > 0:
            return "similar partner"
        return "different partner"


def reference_hit(txn: BankTransaction, target: MatchTarget) -> bool:
    """
    True if the candidate's reference appears in the payment reference.

    Recurring models count a matching label rule as a hit.
    """
    if target.type == CandidateType.RECURRING_MODEL:
        return target.label_hit

    needle = normalize_reference(target.reference)
    if len(needle) < MIN_REFERENCE_LENGTH:
        return False
    return needle in normalize_reference(txn.payment_ref)


class CandidateScorer:
    """
    Combines the components into a single score.

    The score is the weighted mean of the components that apply, boosted
    towards 1.0 when the reference is found in the payment reference.
    """

    def __init__(self, config: MatchingConfig):
        self.config = config
        self.amount = AmountComponent(
            config.weights.amount,
            config.amount_tolerance_percent,
            config.amount_tolerance_absolute,
        )
        self.components: list[ScoreComponent] = [
            self.amount,
            DateComponent(config.weights.date, config.date_window_days, config.date_floor),
            NameComponent(config.weights.name, config.name_similarity_threshold),
        ]

    def score(
        self, txn: BankTransaction, target: MatchTarget
    ) -> Optional[tuple[float, str]]:
        """
        Score one candidate.

        Returns:
            Tuple of (score 0.0-1.0, reason string), or None if the amount
            falls outside tolerance
        """
        if self.amount.excludes(txn, target):
            return None

        weighted = 0.0
        total_weight = 0.0
        reasons: list[str] = []

        for component in self.components:
            value = component.evaluate(txn, target)
            if value is None or component.weight <= 0:
                continue
            weighted += component.weight * value
            total_weight += component.weight
            reasons.append(component.describe(txn, target, value))

        score = weighted / total_weight if total_weight else 0.0

        if reference_hit(txn, target):
            score += (1.0 - score) * self.config.reference_boost
            reasons.append("reference found")

        score = round(min(max(score, 0.0), 1.0), 4)
        return score, ", ".join(reasons) if reasons else "no comparable fields"
