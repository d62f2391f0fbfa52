"""Data models for match candidates and reconciliation records."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional
import re

from .transaction import BankTransaction


class CandidateType(Enum):
    """Kind of document a bank transaction can be matched against."""

    INVOICE = "invoice"
    PAYMENT = "payment"
    RECURRING_MODEL = "recurring_model"


class MatchTier(Enum):
    """Coarse confidence bucket derived from a candidate score."""

    PERFECT = "perfect"
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"

    @classmethod
    def from_score(
        cls,
        score: float,
        perfect: float = 0.95,
        high: float = 0.75,
        medium: float = 0.5,
    ) -> "MatchTier":
        if score >= perfect:
            return cls.PERFECT
        if score >= high:
            return cls.HIGH
        if score >= medium:
            return cls.MEDIUM
        return cls.LOW


class Direction(Enum):
    """Money flow of a counterpart, seen from the bank account."""

    INBOUND = "inbound"  # customer invoices, received payments
    OUTBOUND = "outbound"  # vendor bills, sent payments


@dataclass
class OpenItem:
    """Open invoice or unapplied payment, as exposed by the counterpart service."""

    kind: CandidateType
    id: int
    organization_id: str
    reference: str
    amount: Decimal
    open_amount: Decimal
    currency_code: str
    direction: Direction
    date: Optional[date] = None
    due_date: Optional[date] = None
    partner_name: Optional[str] = None
    version: int = 1


@dataclass
class RecurringModelRule:
    """
    Recurring allocation model (rent, subscriptions, bank fees).

    Filters decide whether the model applies to a transaction at all;
    the optional expected amount and next date feed the score.
    """

    id: int
    organization_id: str
    name: str
    currency_code: str
    partner_name: Optional[str] = None
    amount: Optional[Decimal] = None
    match_nature: str = "both"
    amount_condition: Optional[str] = None
    amount_min: Optional[Decimal] = None
    amount_max: Optional[Decimal] = None
    label_match: Optional[str] = None
    label_param: Optional[str] = None
    next_date: Optional[date] = None

    def accepts(self, txn: BankTransaction) -> bool:
        """Check nature, amount and label conditions against a transaction."""
        if self.match_nature == "amount_received" and txn.amount < 0:
            return False
        if self.match_nature == "amount_paid" and txn.amount > 0:
            return False

        abs_amount = txn.abs_amount
        if self.amount_condition == "lower":
            if self.amount_min is not None and abs_amount >= self.amount_min:
                return False
        elif self.amount_condition == "greater":
            if self.amount_min is not None and abs_amount <= self.amount_min:
                return False
        elif self.amount_condition == "between":
            if self.amount_min is not None and abs_amount < self.amount_min:
                return False
            if self.amount_max is not None and abs_amount > self.amount_max:
                return False

        if self.label_match and self.label_param:
            return self._matches_label(txn.payment_ref or "")

        return True

    def label_hit(self, txn: BankTransaction) -> bool:
        """True when a positive label rule matches the payment reference."""
        if self.label_match not in ("contains", "match_regex") or not self.label_param:
            return False
        return self._matches_label(txn.payment_ref or "")

    def _matches_label(self, text: str) -> bool:
        param = self.label_param or ""

        if self.label_match == "match_regex":
            # Pattern kept verbatim: lowercasing would turn \D into \d
            try:
                return re.search(param, text, re.IGNORECASE) is not None
            except re.error:
                return False
        if self.label_match == "contains":
            return param.lower() in text.lower()
        if self.label_match == "not_contains":
            return param.lower() not in text.lower()
        return True


@dataclass
class CandidateMatch:
    """Scored proposal for a bank transaction counterpart. Never persisted."""

    type: CandidateType
    id: int
    reference: str
    amount: Optional[Decimal]
    score: float
    tier: MatchTier
    partner_name: Optional[str] = None
    date: Optional[date] = None
    reason: str = ""
    version: Optional[int] = None


@dataclass
class MatchSelection:
    """
    A candidate chosen by the caller, with the amount allocated to it.

    expected_version is the counterpart version the choice was based on,
    usually taken from CandidateMatch.version.
    """

    type: CandidateType
    id: int
    allocated_amount: Decimal
    expected_version: Optional[int] = None


@dataclass
class ReconciliationLine:
    """Allocated amount against one counterpart."""

    type: CandidateType
    counterpart_id: int
    allocated_amount: Decimal


@dataclass
class ReconciliationResult:
    """Committed reconciliation of one bank transaction."""

    transaction_id: int
    lines: list[ReconciliationLine]
    total_allocated: Decimal
    residual: Decimal
    created_at: datetime = field(default_factory=datetime.now)

    @property
    def is_full(self) -> bool:
        return abs(self.residual) < Decimal("0.01")
