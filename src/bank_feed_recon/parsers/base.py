"""
Common base for statement parsers.

Holds the decoding, date and amount normalization shared by every format.
"""

from abc import ABC, abstractmethod
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
import logging
import re

from ..config import ReconConfig
from ..models.transaction import StatementFormat, StatementPreview
from ..utils.exceptions import ParseError

logger = logging.getLogger(__name__)

DEFAULT_DATE_FORMATS = [
    "%Y-%m-%d",
    "%d/%m/%Y",
    "%m/%d/%Y",
    "%Y%m%d",
    "%d-%m-%Y",
    "%Y/%m/%d",
    "%d.%m.%Y",
]

AMOUNT_CLEAN_PATTERN = re.compile(r"[^\d.,\-+]")


def decode_content(content: bytes, encodings: Optional[list[str]] = None) -> str:
    """
    Decode raw statement bytes.

    Args:
        content: Raw file content
        encodings: Encodings to try in order

    Returns:
        Decoded text

    Raises:
        ParseError: If the content is empty or cannot be decoded
    """
    if not content:
        raise ParseError("Statement file is empty")

    for encoding in encodings or ["utf-8-sig", "latin-1"]:
        try:
            return content.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue

    raise ParseError("Statement file could not be decoded as text")


def parse_date(
    value: Optional[str], formats: Optional[list[str]] = None
) -> Optional[date]:
    """Parse a date string against a list of strptime formats."""
    if value is None:
        return None
    value = value.strip()
    if not value:
        return None

    for fmt in formats or DEFAULT_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue

    # ISO timestamps, e.g. 2024-01-15T10:30:00
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
    except ValueError:
        return None


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    """
    Parse a monetary amount written with either decimal separator.

    Handles "1,234.56", "1.234,56", "-12,50", "(45.00)" and trailing signs.

    Returns:
        Decimal amount, or None if the value holds no number
    """
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    if text.endswith("-"):
        negative = True
        text = text[:-1]

    text = AMOUNT_CLEAN_PATTERN.sub("", text)
    if text.startswith("-"):
        negative = not negative
        text = text[1:]
    text = text.lstrip("+")
    if not text:
        return None

    last_comma = text.rfind(",")
    last_dot = text.rfind(".")
    if last_comma > last_dot:
        # Comma is the decimal separator unless it groups thousands ("1,234")
        decimals = len(text) - last_comma - 1
        if last_dot == -1 and decimals == 3 and not text.startswith("0,"):
            text = text.replace(",", "")
        else:
            text = text.replace(".", "").replace(",", ".")
    else:
        text = text.replace(",", "")

    try:
        amount = Decimal(text)
    except InvalidOperation:
        return None

    return -amount if negative else amount


class StatementParser(ABC):
    """
    Abstract base for a single statement format.

    Parsers are stateless: every call to parse() returns a fresh preview and
    never touches persistence.
    """

    format: StatementFormat
    extensions: tuple[str, ...] = ()

    def __init__(self, config: ReconConfig):
        self.config = config

    @property
    def default_currency(self) -> str:
        return self.config.input.default_currency

    @abstractmethod
    def sniff(self, text: str) -> bool:
        """Return True if the text carries this format's signature."""
        pass

    @abstractmethod
    def parse(self, text: str, filename: Optional[str] = None) -> StatementPreview:
        """
        Decode statement text into a preview.

        Raises:
            ParseError: If no usable structure can be decoded
        """
        pass

    def handles_extension(self, filename: Optional[str]) -> bool:
        if not filename:
            return False
        return filename.lower().endswith(self.extensions)

    def _finish(self, preview: StatementPreview) -> StatementPreview:
        """Fill derived preview fields and log the result."""
        if preview.statement_date is None and preview.transactions:
            preview.statement_date = max(t.date for t in preview.transactions)
        if preview.currency is None:
            preview.currency = self.default_currency
        logger.info(
            f"Parsed {preview.total_count} transactions from "
            f"{preview.format.value.upper()} statement"
            + (f" {preview.filename}" if preview.filename else "")
        )
        return preview
