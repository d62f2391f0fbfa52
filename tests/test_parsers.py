"""Tests for statement parsing and format detection."""

from datetime import date
from decimal import Decimal

import pytest

from bank_feed_recon.config import ReconConfig
from bank_feed_recon.models.transaction import StatementFormat
from bank_feed_recon.parsers import detect_format, parse_amount, parse_statement
from bank_feed_recon.parsers.qif_parser import parse_qif_date
from bank_feed_recon.utils.exceptions import FormatDetectionError, ParseError

CSV_STATEMENT = b"""Date,Description,Partner,Amount,Balance
2024-01-15,INV-1001 payment,Acme GmbH,100.00,1100.00
2024-01-16,Card fee,,-2.50,1097.50
"""

OFX_STATEMENT = b"""OFXHEADER:100
DATA:OFXSGML
VERSION:102

<OFX>
<BANKMSGSRSV1><STMTTRNRS><STMTRS>
<CURDEF>USD
<BANKACCTFROM><BANKID>121000248<ACCTID>000123456789<ACCTTYPE>CHECKING</BANKACCTFROM>
<BANKTRANLIST>
<DTSTART>20240101
<STMTTRN>
<TRNTYPE>CREDIT
<DTPOSTED>20240105120000[-5:EST]
<TRNAMT>1500.00
<FITID>T-0001
<NAME>ACME CORP
<MEMO>Invoice 2024-17
</STMTTRN>
<STMTTRN>
<TRNTYPE>DEBIT
<DTPOSTED>20240107
<TRNAMT>-42.10
<FITID>T-0002
<CHECKNUM>1042
<NAME>Utility Co
</STMTTRN>
</BANKTRANLIST>
<LEDGERBAL><BALAMT>2457.90<DTASOF>20240131</LEDGERBAL>
</STMTRS></STMTTRNRS></BANKMSGSRSV1>
</OFX>
"""

QIF_STATEMENT = b"""!Type:Bank
D01/15/2024
T-45.00
PCoffee Shop
MMorning coffee
^
D01/16'24
T1,200.00
PEmployer Ltd
NSAL-01
^
"""

CAMT_STATEMENT = b"""<?xml version="1.0" encoding="UTF-8"?>
<Document xmlns="urn:iso:std:iso:20022:tech:xsd:camt.053.001.02">
  <BkToCstmrStmt>
    <GrpHdr><MsgId>MSG-1</MsgId><CreDtTm>2024-03-31T18:00:00</CreDtTm></GrpHdr>
    <Stmt>
      <Id>STMT-1</Id>
      <Acct><Id><IBAN>DE89370400440532013000</IBAN></Id><Ccy>EUR</Ccy></Acct>
      <Bal>
        <Tp><CdOrPrtry><Cd>OPBD</Cd></CdOrPrtry></Tp>
        <Amt Ccy="EUR">1000.00</Amt><CdtDbtInd>CRDT</CdtDbtInd>
      </Bal>
      <Bal>
        <Tp><CdOrPrtry><Cd>CLBD</Cd></CdOrPrtry></Tp>
        <Amt Ccy="EUR">1150.00</Amt><CdtDbtInd>CRDT</CdtDbtInd>
      </Bal>
      <Ntry>
        <Amt Ccy="EUR">250.00</Amt>
        <CdtDbtInd>CRDT</CdtDbtInd>
        <BookgDt><Dt>2024-03-02</Dt></BookgDt>
        <AcctSvcrRef>E-1</AcctSvcrRef>
        <NtryDtls><TxDtls>
          <Refs><EndToEndId>E2E-77</EndToEndId></Refs>
          <RltdPties><Dbtr><Nm>Muster AG</Nm></Dbtr></RltdPties>
          <RmtInf><Ustrd>RE 2024-0042</Ustrd></RmtInf>
        </TxDtls></NtryDtls>
      </Ntry>
      <Ntry>
        <Amt Ccy="EUR">100.00</Amt>
        <CdtDbtInd>DBIT</CdtDbtInd>
        <BookgDt><Dt>2024-03-05</Dt></BookgDt>
        <AddtlNtryInf>Kontofuehrung</AddtlNtryInf>
      </Ntry>
    </Stmt>
  </BkToCstmrStmt>
</Document>
"""


class TestCsvParser:
    def test_parses_rows_and_balances(self):
        preview = parse_statement(CSV_STATEMENT, "january.csv")

        assert preview.format == StatementFormat.CSV
        assert preview.total_count == 2
        first, second = preview.transactions
        assert first.date == date(2024, 1, 15)
        assert first.amount == Decimal("100.00")
        assert first.payment_ref == "INV-1001 payment"
        assert first.partner_name == "Acme GmbH"
        assert second.amount == Decimal("-2.50")
        assert second.partner_name is None
        assert preview.opening_balance == Decimal("1000.00")
        assert preview.closing_balance == Decimal("1097.50")
        assert preview.statement_date == date(2024, 1, 16)

    def test_semicolon_export_with_german_headers(self):
        content = "Buchungstag;Verwendungszweck;Betrag\n15.01.2024;Miete Januar;-1.234,56\n"
        preview = parse_statement(content.encode("utf-8"), "umsaetze.csv")

        txn = preview.transactions[0]
        assert txn.date == date(2024, 1, 15)
        assert txn.amount == Decimal("-1234.56")
        assert txn.payment_ref == "Miete Januar"

    def test_debit_and_credit_columns(self):
        content = b"Date,Description,Debit,Credit\n2024-02-01,Salary,,2500.00\n2024-02-02,Rent,800.00,\n"
        preview = parse_statement(content, "export.csv")

        assert [t.amount for t in preview.transactions] == [
            Decimal("2500.00"),
            Decimal("-800.00"),
        ]

    def test_configured_column_mapping(self):
        config = ReconConfig()
        config.input.csv.column_mappings = {"date": "Valuta", "amount": "Umsatz"}
        content = b"Valuta,Umsatz\n2024-05-02,19.99\n"

        preview = parse_statement(content, "custom.csv", format_hint="csv", config=config)

        assert preview.transactions[0].amount == Decimal("19.99")
        assert preview.transactions[0].date == date(2024, 5, 2)

    def test_rows_without_date_or_amount_are_skipped(self):
        content = b"Date,Description,Amount\n2024-01-01,ok,5.00\n,missing date,3.00\n2024-01-02,zero,0\n"
        preview = parse_statement(content, "x.csv")

        assert preview.total_count == 1

    def test_header_only_is_a_parse_error(self):
        with pytest.raises(ParseError):
            parse_statement(b"Date,Description,Amount\n", "empty.csv", format_hint="csv")


class TestOfxParser:
    def test_parses_sgml_statement(self):
        preview = parse_statement(OFX_STATEMENT, "bank.ofx")

        assert preview.format == StatementFormat.OFX
        assert preview.account_number == "000123456789"
        assert preview.currency == "USD"
        credit, debit = preview.transactions
        assert credit.date == date(2024, 1, 5)
        assert credit.amount == Decimal("1500.00")
        assert credit.payment_ref == "Invoice 2024-17"
        assert credit.partner_name == "ACME CORP"
        assert credit.external_id == "T-0001"
        assert debit.payment_ref == "Utility Co"
        assert debit.transaction_type == "DEBIT"
        assert debit.raw["check_number"] == "1042"
        assert preview.closing_balance == Decimal("2457.90")
        assert preview.opening_balance == Decimal("1000.00")


class TestQifParser:
    def test_parses_records(self):
        preview = parse_statement(QIF_STATEMENT, "money.qif")

        assert preview.format == StatementFormat.QIF
        coffee, salary = preview.transactions
        assert coffee.date == date(2024, 1, 15)
        assert coffee.amount == Decimal("-45.00")
        assert coffee.payment_ref == "Morning coffee"
        assert coffee.partner_name == "Coffee Shop"
        assert salary.date == date(2024, 1, 16)
        assert salary.amount == Decimal("1200.00")
        assert salary.payment_ref == "SAL-01"

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("01/15/2024", date(2024, 1, 15)),
            ("1/5'99", date(1999, 1, 5)),
            ("25/12/2023", date(2023, 12, 25)),
        ],
    )
    def test_date_variants(self, value, expected):
        assert parse_qif_date(value) == expected


class TestCamtParser:
    def test_parses_entries_and_balances(self):
        preview = parse_statement(CAMT_STATEMENT, "stmt.xml")

        assert preview.format == StatementFormat.CAMT
        assert preview.account_number == "DE89370400440532013000"
        assert preview.currency == "EUR"
        assert preview.opening_balance == Decimal("1000.00")
        assert preview.closing_balance == Decimal("1150.00")
        assert preview.statement_date == date(2024, 3, 31)

        incoming, fee = preview.transactions
        assert incoming.amount == Decimal("250.00")
        assert incoming.partner_name == "Muster AG"
        assert incoming.payment_ref == "RE 2024-0042"
        assert fee.amount == Decimal("-100.00")
        assert fee.payment_ref == "Kontofuehrung"

    def test_malformed_xml(self):
        broken = CAMT_STATEMENT.replace(b"</Document>", b"")
        with pytest.raises(ParseError):
            parse_statement(broken, "stmt.xml", format_hint="camt")


class TestFormatDetection:
    def test_unrecognized_content_without_hint(self):
        with pytest.raises(FormatDetectionError):
            parse_statement(b"just some notes\nnothing tabular here\n", "notes.dat")

    def test_unknown_hint(self):
        with pytest.raises(FormatDetectionError):
            parse_statement(CSV_STATEMENT, "x.csv", format_hint="xlsx")

    def test_hint_aliases(self):
        preview = parse_statement(OFX_STATEMENT, "download.bin", format_hint="qfx")
        assert preview.format == StatementFormat.OFX

    def test_signature_wins_over_extension(self):
        assert detect_format(QIF_STATEMENT.decode(), "statement.csv") == StatementFormat.QIF

    def test_empty_file(self):
        with pytest.raises(ParseError):
            parse_statement(b"", "empty.csv")


@pytest.mark.parametrize(
    "value,expected",
    [
        ("1,234.56", Decimal("1234.56")),
        ("1.234,56", Decimal("1234.56")),
        ("(45.00)", Decimal("-45.00")),
        ("12.50-", Decimal("-12.50")),
        ("1,234", Decimal("1234")),
        ("0,5", Decimal("0.5")),
        ("EUR -7.10", Decimal("-7.10")),
        ("", None),
    ],
)
def test_parse_amount(value, expected):
    assert parse_amount(value) == expected
