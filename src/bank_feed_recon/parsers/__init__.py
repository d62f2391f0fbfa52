"""
Statement parsers and format detection.

parse_statement() is the entry point: it decodes the bytes, picks the parser
(explicit hint, content signature, then file extension) and returns a preview.
"""

from typing import Optional
import logging

from .base import StatementParser, decode_content, parse_amount, parse_date
from .csv_parser import CsvStatementParser
from .ofx_parser import OfxStatementParser
from .qif_parser import QifStatementParser
from .camt_parser import CamtStatementParser
from ..config import ReconConfig
from ..models.transaction import StatementFormat, StatementPreview
from ..utils.exceptions import FormatDetectionError

logger = logging.getLogger(__name__)

PARSER_CLASSES: dict[StatementFormat, type[StatementParser]] = {
    StatementFormat.CSV: CsvStatementParser,
    StatementFormat.OFX: OfxStatementParser,
    StatementFormat.QIF: QifStatementParser,
    StatementFormat.CAMT: CamtStatementParser,
}

# Aliases accepted as format hints
FORMAT_ALIASES = {
    "qfx": StatementFormat.OFX,
    "camt053": StatementFormat.CAMT,
    "camt.053": StatementFormat.CAMT,
    "xml": StatementFormat.CAMT,
}


def get_parser(fmt: StatementFormat, config: Optional[ReconConfig] = None) -> StatementParser:
    return PARSER_CLASSES[fmt](config or ReconConfig())


def resolve_format_hint(hint: str) -> StatementFormat:
    """
    Translate a caller-supplied format name.

    Raises:
        FormatDetectionError: If the name is not a supported format
    """
    key = hint.strip().lower().lstrip(".")
    if key in FORMAT_ALIASES:
        return FORMAT_ALIASES[key]
    try:
        return StatementFormat(key)
    except ValueError:
        supported = ", ".join(f.value for f in StatementFormat)
        raise FormatDetectionError(
            f"Unsupported statement format '{hint}' (supported: {supported})"
        )


def detect_format(
    text: str,
    filename: Optional[str] = None,
    config: Optional[ReconConfig] = None,
) -> StatementFormat:
    """
    Detect the statement format of decoded text.

    Args:
        text: Decoded file content
        filename: Original file name; its extension breaks ties
        config: Application configuration

    Returns:
        The detected StatementFormat

    Raises:
        FormatDetectionError: If no format or more than one format fits
    """
    parsers = [get_parser(fmt, config) for fmt in PARSER_CLASSES]
    sniffed = [p for p in parsers if p.sniff(text)]

    if len(sniffed) == 1:
        return sniffed[0].format

    if len(sniffed) > 1:
        by_extension = [p for p in sniffed if p.handles_extension(filename)]
        if len(by_extension) == 1:
            return by_extension[0].format
        names = ", ".join(p.format.value for p in sniffed)
        raise FormatDetectionError(
            f"Ambiguous statement format: content matches {names}"
        )

    by_extension = [p for p in parsers if p.handles_extension(filename)]
    if len(by_extension) == 1:
        logger.info(
            f"No format signature found, using {by_extension[0].format.value} "
            f"from file extension"
        )
        return by_extension[0].format

    raise FormatDetectionError(
        "Unrecognized statement format; pass an explicit format"
    )


def parse_statement(
    content: bytes,
    filename: Optional[str] = None,
    format_hint: Optional[str] = None,
    config: Optional[ReconConfig] = None,
) -> StatementPreview:
    """
    Decode a statement file into a preview. Never persists anything.

    Args:
        content: Raw file bytes
        filename: Original file name
        format_hint: Explicit format ("csv", "ofx", "qif", "camt"); skips detection
        config: Application configuration

    Returns:
        StatementPreview

    Raises:
        FormatDetectionError: If the format is unsupported or ambiguous
        ParseError: If the content cannot be decoded
    """
    config = config or ReconConfig()
    text = decode_content(content, config.input.encodings)

    if format_hint:
        fmt = resolve_format_hint(format_hint)
    else:
        fmt = detect_format(text, filename, config)

    return get_parser(fmt, config).parse(text, filename)


__all__ = [
    "StatementParser",
    "CsvStatementParser",
    "OfxStatementParser",
    "QifStatementParser",
    "CamtStatementParser",
    "decode_content",
    "detect_format",
    "get_parser",
    "parse_amount",
    "parse_date",
    "parse_statement",
    "resolve_format_hint",
]
