"""
Ratebook format detection.

Looks at the first rows of an uploaded CSV or workbook and picks the parser
for it. Tabular files (a header row, one rate per row) are matched to a
provider on their column names. Matrix workbooks (payment profiles such as
``3+35`` against mileage bands) go to the Venus reader.
"""

import logging
import re
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ratefeed.core.errors import ValidationError
from ratefeed.core.importer import RateParser
from ratefeed.core.parsing import decode_text, is_workbook, read_csv_rows, read_workbook
from ratefeed.core.schema import ProviderCode

from .ald import AldRatebookParser
from .lex import LexRatebookParser
from .ogilvie import OgilvieRatebookParser
from .venus import VenusRatebookParser

logger = logging.getLogger(__name__)

PAYMENT_PROFILE = re.compile(r'^(\d{1,2})\+(\d{1,2})$')

# Header text fragments that identify a canonical field in tabular files
HEADER_PATTERNS: Dict[str, List[str]] = {
    'cap_code': ['cap code', 'capcode', 'lookup code'],
    'manufacturer': ['manufacturer', 'make', 'brand', 'oem'],
    'model': ['model', 'range'],
    'variant': ['variant', 'derivative', 'vehicle description', 'trim'],
    'term': ['term', 'months', 'duration'],
    'annual_mileage': ['mileage', 'miles'],
    'total_rental': ['rental', 'monthly', 'price', 'rate'],
    'otr_price': ['otr', 'on the road'],
    'p11d': ['p11d', 'list price'],
    'co2': ['co2', 'emissions'],
    'fuel_type': ['fuel'],
    'transmission': ['transmission', 'gearbox'],
}

MIN_RECOGNISED_HEADERS = 3
MIN_MATRIX_LABELS = 3

TABULAR_PARSERS = (LexRatebookParser, OgilvieRatebookParser, AldRatebookParser)
MATRIX_PARSER = VenusRatebookParser


class RatebookLayout(str, Enum):
    TABULAR = "tabular"
    MATRIX = "matrix"
    UNKNOWN = "unknown"


class FormatDetection(BaseModel):
    """What a ratebook looks like, and which provider's parser reads it."""
    layout: RatebookLayout = RatebookLayout.UNKNOWN
    confidence: int = 0
    reason: str = ""
    sheet: Optional[str] = None
    header_row: Optional[int] = None
    headers: List[str] = Field(default_factory=list)
    fields: Dict[str, str] = Field(default_factory=dict)
    provider: Optional[ProviderCode] = None


def _cell(value: Any) -> str:
    return '' if value is None else str(value).strip()


def header_field(header: str) -> Optional[str]:
    """Canonical field a header names, or None."""
    text = header.lower().replace('_', ' ').strip()
    if not text:
        return None
    for field, patterns in HEADER_PATTERNS.items():
        if any(p in text for p in patterns):
            return field
    return None


def detect_sheet(rows: List[List[Any]], sheet: Optional[str] = None) -> FormatDetection:
    """
    Classify one sheet (or CSV file) from its first rows.

    A row within the first five naming at least three canonical fields
    makes the sheet tabular. Otherwise at least three payment profile
    labels, along a row or down the first column, make it a matrix.
    """
    for index, row in enumerate(rows[:5]):
        headers = [_cell(c) for c in row]
        fields = {}
        for header in headers:
            field = header_field(header)
            if field and field not in fields.values():
                fields[header] = field
        if len(fields) >= MIN_RECOGNISED_HEADERS:
            return FormatDetection(
                layout=RatebookLayout.TABULAR,
                confidence=90 if len(fields) >= 5 else 70,
                reason=f"Header row {index + 1} names {len(fields)} known fields",
                sheet=sheet,
                header_row=index,
                headers=[h for h in headers if h],
                fields=fields,
            )

    window = rows[:20]
    across = max((sum(1 for c in row if PAYMENT_PROFILE.match(_cell(c))) for row in window), default=0)
    down = sum(1 for row in window if row and PAYMENT_PROFILE.match(_cell(row[0])))
    if max(across, down) >= MIN_MATRIX_LABELS:
        return FormatDetection(
            layout=RatebookLayout.MATRIX,
            confidence=80,
            reason=f"{max(across, down)} payment profile labels",
            sheet=sheet,
        )
    return FormatDetection(sheet=sheet, reason="No header row or payment profile labels")


def load_sheets(content: Union[str, bytes, Path], file_name: Optional[str] = None) -> Dict[str, List[List[Any]]]:
    """Cells of every sheet; a CSV file is a single sheet."""
    if isinstance(content, Path):
        file_name = file_name or content.name
        content = content.read_bytes()
    if is_workbook(content, file_name):
        return read_workbook(content)
    text = decode_text(content) if isinstance(content, bytes) else content
    return {file_name or 'csv': read_csv_rows(text, header=False)}


def provider_for_headers(headers: List[str]) -> Optional[ProviderCode]:
    """Tabular provider whose column map best covers the header row."""
    present = set(headers)
    best, best_score = None, 0.0
    for parser_class in TABULAR_PARSERS:
        named = [c for c in parser_class.COLUMNS if isinstance(c, str)]
        hits = sum(1 for c in named if c in present)
        if hits < MIN_RECOGNISED_HEADERS:
            continue
        score = hits / len(named)
        if score > best_score:
            best, best_score = parser_class.PROVIDER, score
    return best


def detect_format(content: Union[str, bytes, Path], file_name: Optional[str] = None) -> FormatDetection:
    """
    Detect the layout of a ratebook and the provider it comes from.

    Sheets are classified one by one and the majority layout wins. The
    result is 90% confident when every recognised sheet agrees.
    """
    sheets = load_sheets(content, file_name)
    detections = [detect_sheet(rows, name) for name, rows in sheets.items()]
    tabular = [d for d in detections if d.layout == RatebookLayout.TABULAR]
    matrix = [d for d in detections if d.layout == RatebookLayout.MATRIX]

    if not tabular and not matrix:
        return FormatDetection(confidence=30, reason="Could not determine a format for any sheet")

    if len(matrix) > len(tabular):
        result = matrix[0].model_copy(update={'provider': MATRIX_PARSER.PROVIDER})
        winners = len(matrix)
    else:
        result = tabular[0].model_copy(update={'provider': provider_for_headers(tabular[0].headers)})
        winners = len(tabular)

    unanimous = winners == len(tabular) + len(matrix)
    result = result.model_copy(update={
        'confidence': 90 if unanimous else 70,
        'reason': f"{winners}/{len(detections)} sheets are {result.layout.value}",
    })
    logger.info(
        f"Detected {result.layout.value} ratebook"
        f" ({result.provider.value if result.provider else 'unknown provider'}, {result.confidence}%)"
    )
    return result


def detect_ratebook_parser(content: Union[str, bytes, Path], file_name: Optional[str] = None) -> RateParser:
    """
    Parser instance for an uploaded ratebook of unknown origin.

    Raises:
        ValidationError: the layout or the provider could not be recognised
    """
    detection = detect_format(content, file_name)
    if detection.provider is None:
        raise ValidationError(f"Unrecognised ratebook format: {detection.reason}")
    if detection.provider == MATRIX_PARSER.PROVIDER:
        return MATRIX_PARSER()
    for parser_class in TABULAR_PARSERS:
        if parser_class.PROVIDER == detection.provider:
            return parser_class()
    raise ValidationError(f"No ratebook parser for provider: {detection.provider.value}")
