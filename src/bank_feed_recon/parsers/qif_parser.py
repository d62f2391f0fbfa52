"""Quicken Interchange Format (QIF) statement parser."""

from datetime import date
from typing import Optional
import logging
import re

from .base import StatementParser, parse_amount, parse_date
from ..models.transaction import ParsedTransaction, StatementFormat, StatementPreview
from ..utils.exceptions import ParseError

logger = logging.getLogger(__name__)

# Two-digit years above this pivot belong to the 1900s
YEAR_PIVOT = 50

QIF_FIELD_CODES = {
    "D": "date",
    "T": "amount",
    "U": "amount",
    "P": "payee",
    "M": "memo",
    "N": "reference",
    "L": "category",
    "C": "cleared",
}


def parse_qif_date(value: Optional[str]) -> Optional[date]:
    """
    Parse a QIF date.

    Accepts M/D/Y, M/D'YY and M-D-Y. Month-first is tried before day-first.
    """
    if not value:
        return None

    parts = re.split(r"[/'\-.]", value.strip().replace(" ", ""))
    if len(parts) == 3 and all(p.isdigit() for p in parts):
        first, second, year = (int(p) for p in parts)
        if year < 100:
            year += 1900 if year > YEAR_PIVOT else 2000

        for month, day in ((first, second), (second, first)):
            try:
                return date(year, month, day)
            except ValueError:
                continue

    return parse_date(value)


class QifStatementParser(StatementParser):
    """
    Parser for QIF exports.

    Records are blocks of single-letter field codes terminated by a caret.
    """

    format = StatementFormat.QIF
    extensions = (".qif",)

    def sniff(self, text: str) -> bool:
        stripped = text.lstrip()
        return stripped.startswith("!Type") or stripped.startswith("!Account")

    def parse(self, text: str, filename: Optional[str] = None) -> StatementPreview:
        """
        Parse QIF content.

        Raises:
            ParseError: If the header is missing or no record can be decoded
        """
        if not text.lstrip().startswith("!"):
            raise ParseError("QIF statement has no !Type header")

        account_type = None
        transactions: list[ParsedTransaction] = []
        record: dict = {}

        for line in text.splitlines():
            line = line.strip()
            if not line:
                continue

            if line.startswith("!Type:"):
                account_type = line[6:].strip()
                continue
            if line.startswith("!"):
                continue

            if line == "^":
                self._flush(record, transactions)
                record = {}
                continue

            code, value = line[0], line[1:].strip()
            if code == "A":
                record.setdefault("address", []).append(value)
            elif code in QIF_FIELD_CODES:
                record[QIF_FIELD_CODES[code]] = value

        # Last record without a terminating caret
        self._flush(record, transactions)

        if not transactions:
            raise ParseError("QIF statement contains no transactions")

        logger.debug(f"QIF account type: {account_type}")

        return self._finish(
            StatementPreview(
                format=self.format,
                transactions=transactions,
                filename=filename,
            )
        )

    def _flush(self, record: dict, transactions: list[ParsedTransaction]) -> None:
        if not record:
            return

        txn_date = parse_qif_date(record.get("date"))
        amount = parse_amount(record.get("amount"))
        if txn_date is None or amount is None:
            logger.warning(f"Skipping QIF record without date or amount: {record}")
            return

        refs = [r for r in (record.get("reference"), record.get("memo")) if r]
        payee = record.get("payee")

        transactions.append(
            ParsedTransaction(
                date=txn_date,
                amount=amount,
                payment_ref=" - ".join(refs) or payee or "Transaction",
                partner_name=payee,
                transaction_type=record.get("category"),
                raw=dict(record),
            )
        )
