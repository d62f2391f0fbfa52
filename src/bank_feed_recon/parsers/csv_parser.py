"""
Delimited text (CSV) statement parser.
Detects the delimiter and maps header columns by multilingual synonyms.
"""

from decimal import Decimal
from io import StringIO
from typing import Optional
import logging
import re

import pandas as pd

from .base import StatementParser, parse_amount, parse_date
from ..models.transaction import ParsedTransaction, StatementFormat, StatementPreview
from ..utils.exceptions import ParseError

logger = logging.getLogger(__name__)

CANDIDATE_DELIMITERS = [",", ";", "\t", "|"]

# Header synonyms per target field, checked in order
HEADER_SYNONYMS: dict[str, list[str]] = {
    "date": [
        "date",
        "datum",
        "transaction date",
        "booking date",
        "value date",
        "buchungstag",
        "data",
    ],
    "amount": ["amount", "betrag", "sum", "value", "importo", "montant"],
    "debit": ["debit", "withdrawal", "ausgabe", "uscita"],
    "credit": ["credit", "deposit", "einnahme", "entrata"],
    "payment_ref": [
        "description",
        "memo",
        "reference",
        "payment reference",
        "beschreibung",
        "verwendungszweck",
        "descrizione",
        "libelle",
    ],
    "partner_name": [
        "payee",
        "partner",
        "name",
        "beneficiary",
        "counterparty",
        "recipient",
    ],
    "account_number": ["account", "iban", "account number", "counter account"],
    "balance": ["balance", "saldo", "running balance"],
    "currency": ["currency", "währung", "waehrung", "valuta", "devise"],
}


def _normalize_header(header: str) -> str:
    return re.sub(r"\s+", " ", str(header).strip().strip('"').lower())


class CsvStatementParser(StatementParser):
    """
    Parser for delimited bank exports.

    The first non-blank line is the header. Amount comes from an amount
    column, or from a credit/debit column pair.
    """

    format = StatementFormat.CSV
    extensions = (".csv", ".txt")

    def sniff(self, text: str) -> bool:
        header = self._first_line(text)
        if not header:
            return False

        delimiter = self.detect_delimiter(header)
        if delimiter not in header:
            return False

        columns = [_normalize_header(c) for c in header.split(delimiter)]
        mapping = self.map_columns(columns)
        return "date" in mapping and (
            "amount" in mapping or ("debit" in mapping and "credit" in mapping)
        )

    def detect_delimiter(self, header_line: str) -> str:
        """Pick the configured delimiter, or the most frequent candidate."""
        configured = self.config.input.csv.delimiter
        if configured:
            return configured

        best = ","
        best_count = 0
        for delimiter in CANDIDATE_DELIMITERS:
            count = header_line.count(delimiter)
            if count > best_count:
                best, best_count = delimiter, count
        return best

    def map_columns(self, columns: list[str]) -> dict[str, int]:
        """
        Map target fields to column positions.

        Configured column mappings win over synonym detection.

        Args:
            columns: Normalized header names

        Returns:
            Dictionary of field name to column index
        """
        mapping: dict[str, int] = {}

        for field_name, column in self.config.input.csv.column_mappings.items():
            normalized = _normalize_header(column)
            if normalized in columns:
                mapping[field_name] = columns.index(normalized)

        for field_name, synonyms in HEADER_SYNONYMS.items():
            if field_name in mapping:
                continue
            for synonym in synonyms:
                if synonym in columns:
                    index = columns.index(synonym)
                    if index not in mapping.values():
                        mapping[field_name] = index
                        break

        return mapping

    def parse(self, text: str, filename: Optional[str] = None) -> StatementPreview:
        """
        Parse delimited statement text.

        Args:
            text: Decoded file content
            filename: Original file name, for logging

        Returns:
            StatementPreview with all usable rows

        Raises:
            ParseError: If the header cannot be mapped or the table is malformed
        """
        header = self._first_line(text)
        if not header:
            raise ParseError("CSV statement has no header line")

        delimiter = self.detect_delimiter(header)

        try:
            df = pd.read_csv(
                StringIO(text.strip()),
                sep=delimiter,
                dtype=str,
                keep_default_na=False,
                skip_blank_lines=True,
                skipinitialspace=True,
            )
        except (pd.errors.ParserError, pd.errors.EmptyDataError) as e:
            raise ParseError(f"Malformed CSV statement: {e}")

        columns = [_normalize_header(c) for c in df.columns]
        mapping = self.map_columns(columns)

        if "date" not in mapping:
            raise ParseError("CSV statement has no recognizable date column")
        if "amount" not in mapping and not ("debit" in mapping and "credit" in mapping):
            raise ParseError("CSV statement has no recognizable amount column")

        transactions: list[ParsedTransaction] = []
        currencies: set[str] = set()

        for row_number, row in enumerate(df.itertuples(index=False, name=None), start=2):
            txn = self._parse_row(list(row), list(df.columns), mapping)
            if txn is None:
                logger.warning(f"Skipping CSV row {row_number}: missing date or amount")
                continue
            if txn.currency:
                currencies.add(txn.currency)
            transactions.append(txn)

        if not transactions:
            raise ParseError("CSV statement contains no transactions")

        opening_balance = None
        closing_balance = None
        if "balance" in mapping:
            first, last = transactions[0], transactions[-1]
            if first.running_balance is not None:
                opening_balance = first.running_balance - first.amount
            closing_balance = last.running_balance

        return self._finish(
            StatementPreview(
                format=self.format,
                transactions=transactions,
                opening_balance=opening_balance,
                closing_balance=closing_balance,
                currency=currencies.pop() if len(currencies) == 1 else None,
                filename=filename,
            )
        )

    def _parse_row(
        self, row: list[str], headers: list[str], mapping: dict[str, int]
    ) -> Optional[ParsedTransaction]:
        def cell(field_name: str) -> str:
            index = mapping.get(field_name)
            if index is None or index >= len(row):
                return ""
            return str(row[index]).strip()

        txn_date = parse_date(cell("date"), self.config.input.csv.date_formats)
        if txn_date is None:
            return None

        if "amount" in mapping:
            amount = parse_amount(cell("amount"))
        else:
            credit = parse_amount(cell("credit")) or Decimal("0")
            debit = parse_amount(cell("debit")) or Decimal("0")
            amount = abs(credit) - abs(debit)

        if amount is None or amount == 0:
            return None

        return ParsedTransaction(
            date=txn_date,
            amount=amount,
            payment_ref=cell("payment_ref"),
            partner_name=cell("partner_name") or None,
            account_number=cell("account_number") or None,
            currency=cell("currency").upper() or None,
            running_balance=parse_amount(cell("balance")) if "balance" in mapping else None,
            raw=dict(zip(headers, row)),
        )

    @staticmethod
    def _first_line(text: str) -> str:
        for line in text.splitlines():
            if line.strip():
                return line
        return ""
