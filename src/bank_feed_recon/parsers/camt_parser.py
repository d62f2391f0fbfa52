"""
ISO 20022 camt.053 statement parser.
Namespace-agnostic: elements are matched by local name only.
"""

from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Optional
import logging
import xml.etree.ElementTree as ET

from .base import StatementParser
from ..models.transaction import ParsedTransaction, StatementFormat, StatementPreview
from ..utils.exceptions import ParseError

logger = logging.getLogger(__name__)

OPENING_BALANCE_CODES = ("OPBD", "PRCD")
CLOSING_BALANCE_CODES = ("CLBD", "CLAV")


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _child(element: Optional[ET.Element], path: str) -> Optional[ET.Element]:
    """Follow a slash-separated path of local names."""
    current = element
    for part in path.split("/"):
        if current is None:
            return None
        current = next((c for c in current if _local(c.tag) == part), None)
    return current


def _children(element: Optional[ET.Element], name: str) -> list[ET.Element]:
    if element is None:
        return []
    return [c for c in element if _local(c.tag) == name]


def _text(element: Optional[ET.Element], path: str) -> Optional[str]:
    node = _child(element, path)
    if node is None or node.text is None:
        return None
    value = node.text.strip()
    return value or None


def _decimal(value: Optional[str]) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(value)
    except InvalidOperation:
        return None


def _signed(amount: Decimal, indicator: Optional[str]) -> Decimal:
    if indicator == "DBIT":
        return -abs(amount)
    if indicator == "CRDT":
        return abs(amount)
    return amount


def parse_camt_date(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    try:
        if "T" in value:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        return datetime.strptime(value[:10], "%Y-%m-%d").date()
    except ValueError:
        return None


class CamtStatementParser(StatementParser):
    """Parser for camt.053 bank-to-customer statements."""

    format = StatementFormat.CAMT
    extensions = (".xml", ".camt", ".053", ".camt053")

    def sniff(self, text: str) -> bool:
        head = text[:8192]
        if "BkToCstmrStmt" in head or "camt.053" in head:
            return True
        return "urn:iso:std:iso:20022" in head and "<Ntry>" in text

    def parse(self, text: str, filename: Optional[str] = None) -> StatementPreview:
        """
        Parse camt.053 XML.

        Args:
            text: Decoded file content
            filename: Original file name, for logging

        Returns:
            StatementPreview covering every Stmt element

        Raises:
            ParseError: If the XML is malformed or holds no statement entries
        """
        try:
            root = ET.fromstring(text.lstrip())
        except ET.ParseError as e:
            raise ParseError(f"Malformed CAMT XML: {e}")

        statements = [el for el in root.iter() if _local(el.tag) == "Stmt"]
        if not statements:
            raise ParseError("CAMT document contains no Stmt element")

        preview = StatementPreview(
            format=self.format, transactions=[], filename=filename
        )

        for stmt in statements:
            self._parse_statement(stmt, preview)

        if not preview.transactions:
            raise ParseError("CAMT statement contains no entries")

        created = parse_camt_date(_text(root, "BkToCstmrStmt/GrpHdr/CreDtTm"))
        if created is None:
            created = parse_camt_date(_text(statements[0], "CreDtTm"))
        preview.statement_date = created

        return self._finish(preview)

    def _parse_statement(self, stmt: ET.Element, preview: StatementPreview) -> None:
        acct = _child(stmt, "Acct")
        if preview.account_number is None:
            preview.account_number = _text(acct, "Id/IBAN") or _text(acct, "Id/Othr/Id")
        if preview.currency is None:
            preview.currency = _text(acct, "Ccy")

        for bal in _children(stmt, "Bal"):
            code = _text(bal, "Tp/CdOrPrtry/Cd")
            amount = _decimal(_text(bal, "Amt"))
            if amount is None:
                continue
            amount = _signed(amount, _text(bal, "CdtDbtInd"))
            if code in OPENING_BALANCE_CODES and preview.opening_balance is None:
                preview.opening_balance = amount
            elif code in CLOSING_BALANCE_CODES:
                preview.closing_balance = amount

        for entry in _children(stmt, "Ntry"):
            preview.transactions.extend(self._parse_entry(entry, preview.currency))

    def _parse_entry(
        self, entry: ET.Element, statement_currency: Optional[str]
    ) -> list[ParsedTransaction]:
        amt = _child(entry, "Amt")
        amount = _decimal(_text(entry, "Amt"))
        indicator = _text(entry, "CdtDbtInd")
        booked = parse_camt_date(_text(entry, "BookgDt/Dt") or _text(entry, "BookgDt/DtTm"))
        if booked is None:
            booked = parse_camt_date(_text(entry, "ValDt/Dt") or _text(entry, "ValDt/DtTm"))

        if amount is None or booked is None:
            logger.warning("Skipping CAMT entry without amount or booking date")
            return []

        amount = _signed(amount, indicator)
        currency = amt.get("Ccy") if amt is not None else None
        currency = currency or statement_currency
        entry_ref = _text(entry, "AcctSvcrRef")

        details = []
        for dtls in _children(entry, "NtryDtls"):
            details.extend(_children(dtls, "TxDtls"))

        if not details:
            return [
                ParsedTransaction(
                    date=booked,
                    amount=amount,
                    payment_ref=_text(entry, "AddtlNtryInf") or "Bank Entry",
                    currency=currency,
                    external_id=entry_ref,
                    raw={"entry_reference": entry_ref},
                )
            ]

        return [
            self._parse_details(tx, amount, indicator, currency, booked, entry_ref)
            for tx in details
        ]

    def _parse_details(
        self,
        tx: ET.Element,
        entry_amount: Decimal,
        entry_indicator: Optional[str],
        currency: Optional[str],
        booked: date,
        entry_ref: Optional[str],
    ) -> ParsedTransaction:
        amount = _decimal(_text(tx, "Amt")) or _decimal(_text(tx, "AmtDtls/TxAmt/Amt"))
        if amount is None:
            amount = entry_amount
        else:
            amount = _signed(amount, _text(tx, "CdtDbtInd") or entry_indicator)

        end_to_end = _text(tx, "Refs/EndToEndId")
        if end_to_end == "NOTPROVIDED":
            end_to_end = None

        parties = _child(tx, "RltdPties")
        if amount < 0:
            partner_name = _text(parties, "Cdtr/Nm") or _text(parties, "Cdtr/Pty/Nm")
            account = _child(parties, "CdtrAcct")
        else:
            partner_name = _text(parties, "Dbtr/Nm") or _text(parties, "Dbtr/Pty/Nm")
            account = _child(parties, "DbtrAcct")
        account_number = _text(account, "Id/IBAN") or _text(account, "Id/Othr/Id")

        unstructured = [
            u.text.strip() for u in _children(_child(tx, "RmtInf"), "Ustrd") if u.text
        ]
        payment_ref = (
            " ".join(unstructured)
            or _text(tx, "AddtlTxInf")
            or end_to_end
            or "Transaction"
        )

        return ParsedTransaction(
            date=booked,
            amount=amount,
            payment_ref=payment_ref,
            partner_name=partner_name,
            account_number=account_number,
            transaction_type=_text(tx, "BkTxCd/Domn/Cd"),
            currency=currency,
            external_id=_text(tx, "Refs/AcctSvcrRef") or entry_ref,
            raw={"end_to_end_id": end_to_end, "msg_id": _text(tx, "Refs/MsgId")},
        )
