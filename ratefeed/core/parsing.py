"""
Low-level field parsing for provider exports.

Pure functions: money text to integer pence (and back), percentages,
integers, placeholder detection, RFC4180 CSV and XLSX reading and explicit
column mappings. Nothing here touches the network or the stores.
"""

import csv
import io
import logging
import re
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

import pandas as pd

logger = logging.getLogger(__name__)

# Values providers use to mean "no value"
PLACEHOLDERS = {'', '-', '--', 'n/a', 'na', 'null', 'none', 'poa', 'tba', '.00'}

_MONEY_STRIP = re.compile(r'[£$€,\s]')
_PERCENT_STRIP = re.compile(r'[%\s]')
_INT_STRIP = re.compile(r'[,\s]')


def is_placeholder(value: Any) -> bool:
    """True for None, empty strings and placeholder tokens such as 'N/A'."""
    if value is None:
        return True
    if isinstance(value, str):
        return value.strip().lower() in PLACEHOLDERS
    return False


def to_decimal(value: Any) -> Optional[Decimal]:
    """Parse a numeric-looking value into a Decimal, or None."""
    if is_placeholder(value):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value
    if isinstance(value, int):
        return Decimal(value)
    if isinstance(value, float):
        # Go through repr so 450.1 stays 450.1 rather than its binary expansion
        return Decimal(repr(value))
    text = _MONEY_STRIP.sub('', str(value))
    negative = False
    if text.startswith('(') and text.endswith(')'):
        negative = True
        text = text[1:-1]
    try:
        number = Decimal(text)
    except InvalidOperation:
        return None
    if not number.is_finite():
        return None
    return -number if negative else number


def parse_money_minor(value: Any) -> Optional[int]:
    """
    Convert a currency amount in major units to integer minor units.

    "£12,345.67" -> 1234567, "450" -> 45000, 450.0 -> 45000.
    Placeholders and unparseable text yield None, never zero.
    """
    number = to_decimal(value)
    if number is None:
        return None
    return int((number * 100).quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def format_money_minor(value: Optional[int], symbol: str = '£') -> str:
    """Format integer minor units as currency text: 1234567 -> "£12,345.67"."""
    if value is None:
        return ''
    sign = '-' if value < 0 else ''
    pounds, pence = divmod(abs(value), 100)
    return f"{sign}{symbol}{pounds:,}.{pence:02d}"


def parse_percent(value: Any) -> Optional[Decimal]:
    """'12.5%' -> Decimal('12.5'). Placeholders yield None."""
    if is_placeholder(value):
        return None
    if isinstance(value, (int, float, Decimal)) and not isinstance(value, bool):
        return to_decimal(value)
    text = _PERCENT_STRIP.sub('', str(value))
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def parse_int(value: Any) -> Optional[int]:
    """'10,000' -> 10000, '120.0' -> 120. Placeholders yield None."""
    if is_placeholder(value):
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    number = to_decimal(_INT_STRIP.sub('', str(value)))
    if number is None:
        return None
    return int(number.quantize(Decimal('1'), rounding=ROUND_HALF_UP))


def clean_text(value: Any) -> Optional[str]:
    """Stripped text, or None for placeholders."""
    if is_placeholder(value):
        return None
    return str(value).strip()


# === CSV ===

# Tried in order; latin-1 decodes any byte string
TEXT_ENCODINGS = ('utf-8-sig', 'cp1252', 'latin-1')


def decode_text(data: bytes) -> str:
    """Decode a provider file: UTF-8 (with or without BOM), else Windows-1252."""
    for encoding in TEXT_ENCODINGS:
        try:
            text = data.decode(encoding)
        except UnicodeDecodeError:
            continue
        if encoding != TEXT_ENCODINGS[0]:
            logger.debug(f"Decoded file as {encoding}")
        return text
    raise ValueError("Undecodable file")


def read_csv_rows(
    text: Union[str, bytes],
    header: bool = True,
    delimiter: str = ',',
) -> List[Union[Dict[str, str], List[str]]]:
    """
    Read RFC4180 CSV text.

    Handles quoted fields with embedded delimiters and newlines, doubled
    quotes, CRLF line endings and a UTF-8 BOM. Bytes that are not UTF-8
    are read as Windows-1252, the usual encoding of Excel CSV exports.
    Blank lines are skipped.

    Args:
        text: CSV content
        header: When True, return one dict per row keyed by the stripped
            header names; otherwise return lists of cells
        delimiter: Field separator

    Returns:
        List of row dicts (header=True) or row lists (header=False)
    """
    if isinstance(text, bytes):
        text = decode_text(text)
    elif text.startswith('\ufeff'):
        text = text[1:]

    reader = csv.reader(io.StringIO(text, newline=''), delimiter=delimiter, quotechar='"', doublequote=True)
    rows = [row for row in reader if any(cell.strip() for cell in row)]
    if not header:
        return rows
    if not rows:
        return []

    columns = [c.strip() for c in rows[0]]
    return records_from_rows(columns, rows[1:])


def records_from_rows(columns: List[Any], rows: Iterable[List[Any]]) -> List[Dict[str, Any]]:
    """
    Key each row by the header names. Unnamed columns are dropped and short
    rows are padded with empty strings.
    """
    names = ['' if c is None else str(c).strip() for c in columns]
    records = []
    for row in rows:
        record = {}
        for index, name in enumerate(names):
            if not name:
                continue
            value = row[index] if index < len(row) else ''
            record[name] = value.strip() if isinstance(value, str) else value
        records.append(record)
    return records


# === Workbooks ===

WORKBOOK_SUFFIXES = ('.xlsx', '.xlsm', '.xls')


def is_workbook(content: Union[str, bytes, Path], file_name: Optional[str] = None) -> bool:
    """True for Excel content: by file name when given, else by the zip signature."""
    name = file_name or (str(content) if isinstance(content, Path) else None)
    if name:
        return name.lower().endswith(WORKBOOK_SUFFIXES)
    return isinstance(content, bytes) and content.startswith(b'PK\x03\x04')


def read_workbook(source: Union[bytes, str, Path]) -> Dict[str, List[List[Any]]]:
    """Every sheet of an XLSX workbook as lists of cells (None for blanks)."""
    if isinstance(source, bytes):
        source = io.BytesIO(source)
    frames = pd.read_excel(source, sheet_name=None, header=None, dtype=object)
    sheets = {}
    for name, frame in frames.items():
        frame = frame.astype(object).where(pd.notna(frame), None)
        sheets[str(name)] = frame.values.tolist()
    return sheets


class ColumnMapping:
    """
    Explicit mapping from provider columns to canonical field names.

    Keys are column names (for headed CSV) or zero-based indices (for
    headerless rows). Columns not listed are ignored; there is no
    positional fallback.
    """

    def __init__(self, mapping: Mapping[Union[str, int], str]):
        if not mapping:
            raise ValueError("Column mapping cannot be empty")
        self.mapping = dict(mapping)

    @property
    def fields(self) -> List[str]:
        return list(self.mapping.values())

    def apply(self, row: Union[Mapping[str, Any], List[Any]]) -> Dict[str, Any]:
        """Project a raw row onto canonical field names."""
        out: Dict[str, Any] = {}
        for source, field in self.mapping.items():
            if isinstance(row, Mapping):
                if isinstance(source, int):
                    raise ValueError(f"Index mapping {source} used against a headed row")
                value = row.get(source)
            else:
                if not isinstance(source, int):
                    raise ValueError(f"Column name '{source}' used against a headerless row")
                value = row[source] if source < len(row) else None
            # First non-empty source wins when two columns feed one field
            if field in out and not is_placeholder(out[field]):
                continue
            out[field] = value
        return out

    def missing_columns(self, columns: Iterable[str]) -> List[str]:
        """Named sources that do not appear in a header."""
        present = set(columns)
        return [s for s in self.mapping if isinstance(s, str) and s not in present]
