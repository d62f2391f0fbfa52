"""
OFX / QFX statement parser.
Decoding is delegated to ofxparse, which handles both the SGML and XML flavours.
"""

from decimal import Decimal
from typing import Optional
import io
import logging

from ofxparse import OfxParser
from ofxparse.ofxparse import OfxParserException

from .base import StatementParser
from ..models.transaction import ParsedTransaction, StatementFormat, StatementPreview
from ..utils.exceptions import ParseError

logger = logging.getLogger(__name__)


def _encode_for_ofxparse(text: str) -> bytes:
    """Re-encode decoded text in the charset the OFX header declares."""
    head = text[:1024].upper()
    if "UTF-8" in head or "ENCODING:UNICODE" in head:
        return text.encode("utf-8")
    return text.encode("cp1252", errors="replace")


class OfxStatementParser(StatementParser):
    """Parser for Open Financial Exchange statements."""

    format = StatementFormat.OFX
    extensions = (".ofx", ".qfx")

    def sniff(self, text: str) -> bool:
        head = text[:4096].upper()
        return "OFXHEADER" in head or "<OFX>" in head

    def parse(self, text: str, filename: Optional[str] = None) -> StatementPreview:
        """
        Parse OFX content.

        Args:
            text: Decoded file content
            filename: Original file name, for logging

        Returns:
            StatementPreview

        Raises:
            ParseError: If the document is not valid OFX or has no transactions
        """
        if "<OFX>" not in text.upper():
            raise ParseError("OFX statement has no <OFX> body")

        try:
            ofx = OfxParser.parse(io.BytesIO(_encode_for_ofxparse(text)), fail_fast=False)
        except (OfxParserException, ValueError) as e:
            raise ParseError(f"Invalid OFX statement: {e}") from e

        accounts = [a for a in ofx.accounts if getattr(a, "statement", None)]
        if not accounts:
            raise ParseError("OFX statement contains no account statement")
        if len(accounts) > 1:
            logger.warning(
                f"OFX file holds {len(accounts)} account statements, "
                f"using account {accounts[0].number}"
            )

        account = accounts[0]
        statement = account.statement
        currency = (getattr(statement, "currency", None) or "").upper() or None

        discarded = getattr(statement, "discarded_entries", [])
        if discarded:
            logger.warning(f"Skipping {len(discarded)} malformed OFX transactions")

        transactions = [self._convert(txn, currency) for txn in statement.transactions]
        transactions = [t for t in transactions if t is not None]
        if not transactions:
            raise ParseError("OFX statement contains no transactions")

        closing_balance = getattr(statement, "balance", None)
        opening_balance = None
        if closing_balance is not None:
            closing_balance = Decimal(str(closing_balance))
            opening_balance = closing_balance - sum(
                (t.amount for t in transactions), Decimal("0")
            )

        return self._finish(
            StatementPreview(
                format=self.format,
                transactions=transactions,
                account_number=account.number or None,
                opening_balance=opening_balance,
                closing_balance=closing_balance,
                currency=currency,
                filename=filename,
            )
        )

    def _convert(self, txn, currency: Optional[str]) -> Optional[ParsedTransaction]:
        if txn.date is None or txn.amount is None:
            logger.warning("Skipping OFX transaction without date or amount")
            return None

        name = (txn.payee or "").strip() or None
        memo = (txn.memo or "").strip() or None
        trn_type = (txn.type or "").upper() or None
        check_number = (getattr(txn, "checknum", "") or "").strip() or None

        return ParsedTransaction(
            date=txn.date.date() if hasattr(txn.date, "date") else txn.date,
            amount=Decimal(str(txn.amount)),
            payment_ref=memo or name or trn_type or "Transaction",
            partner_name=name,
            transaction_type=trn_type,
            currency=currency,
            external_id=txn.id or None,
            raw={"check_number": check_number, "payee": txn.payee, "memo": txn.memo},
        )
