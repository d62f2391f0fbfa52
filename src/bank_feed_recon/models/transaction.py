"""Data models for bank transactions, statements and import results."""

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Optional
import re

REFERENCE_NORMALIZE_PATTERN = re.compile(r"[^a-zA-Z0-9]")
CENT = Decimal("0.01")


def normalize_reference(reference: Optional[str]) -> str:
    """Strip special characters and uppercase a payment reference."""
    if not reference:
        return ""
    return REFERENCE_NORMALIZE_PATTERN.sub("", reference).upper()


def quantize_amount(amount: Decimal) -> Decimal:
    """Round a monetary amount to cents."""
    return Decimal(amount).quantize(CENT)


class StatementFormat(Enum):
    """Supported statement file formats."""

    CSV = "csv"
    OFX = "ofx"
    QIF = "qif"
    CAMT = "camt"


class TransactionSourceKind(Enum):
    """Where a persisted transaction came from."""

    FILE = "file"
    MANUAL = "manual"
    PROVIDER = "provider"


@dataclass
class ParsedTransaction:
    """
    Normalized transaction produced by every statement parser and provider adapter.

    Amounts are signed from the account holder's perspective: positive for
    money received, negative for money paid out.
    """

    date: date
    amount: Decimal
    payment_ref: str = ""
    partner_name: Optional[str] = None
    account_number: Optional[str] = None
    transaction_type: Optional[str] = None
    currency: Optional[str] = None

    # FITID for OFX, transaction id for provider feeds
    external_id: Optional[str] = None

    # Balance column when the file carries one
    running_balance: Optional[Decimal] = None

    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def normalized_reference(self) -> str:
        return normalize_reference(self.payment_ref)

    @property
    def is_credit(self) -> bool:
        return self.amount > 0


@dataclass
class StatementPreview:
    """Result of parsing a statement file, before anything is persisted."""

    format: StatementFormat
    transactions: list[ParsedTransaction]
    account_number: Optional[str] = None
    opening_balance: Optional[Decimal] = None
    closing_balance: Optional[Decimal] = None
    currency: Optional[str] = None
    statement_date: Optional[date] = None
    filename: Optional[str] = None

    @property
    def total_count(self) -> int:
        return len(self.transactions)

    @property
    def total_amount(self) -> Decimal:
        return sum((t.amount for t in self.transactions), Decimal("0"))

    def head(self, limit: int = 10) -> list[ParsedTransaction]:
        """First transactions for display."""
        return self.transactions[:limit]


@dataclass
class BankAccount:
    """Bank account owned by an organization."""

    id: int
    organization_id: str
    name: str
    currency_code: str
    account_number: Optional[str] = None
    opening_balance: Decimal = Decimal("0")
    bank_feeds_source: str = "manual"


@dataclass
class BankTransaction:
    """Persisted bank transaction, detached from the database session."""

    id: int
    account_id: int
    date: date
    amount: Decimal
    currency_code: str
    payment_ref: str = ""
    partner_name: Optional[str] = None
    account_number: Optional[str] = None
    transaction_type: Optional[str] = None
    external_id: Optional[str] = None
    source: str = TransactionSourceKind.FILE.value
    sequence: int = 0
    running_balance: Optional[Decimal] = None
    fingerprint: str = ""
    is_reconciled: bool = False
    checked: bool = False
    notes: Optional[str] = None

    @property
    def is_credit(self) -> bool:
        return self.amount > 0

    @property
    def abs_amount(self) -> Decimal:
        return abs(self.amount)


@dataclass
class ImportResult:
    """Outcome of committing a statement or a provider batch."""

    account_id: int
    total_count: int
    imported: int
    skipped: int
    total_amount: Decimal
    import_id: Optional[int] = None
    completed_at: datetime = field(default_factory=datetime.now)

    @property
    def all_skipped(self) -> bool:
        return self.imported == 0 and self.skipped == self.total_count
