"""
Venus matrix ratebook reader.

Venus publish an Excel workbook with one sheet per manufacturer. Each sheet
is a matrix: a "Term" header row lists term columns such as ``1+23`` (one
month up front, 23 further rentals), vehicle rows carry the derivative name
and mileage rows (``5k``, ``10k Non-Maintained`` ...) carry one monthly
rental per term column.
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ratefeed.core.importer import RateParser
from ratefeed.core.parsing import parse_money_minor, read_workbook
from ratefeed.core.schema import (
    PaymentPlan,
    ProviderCode,
    RawProviderResponse,
    payment_plan_for_initial_months,
)

logger = logging.getLogger(__name__)

TERM_PATTERN = re.compile(r'^(\d+)\+(\d+)$')

MILEAGE_LABELS = {
    '5k': 5000,
    '8k': 8000,
    '10k': 10000,
    '15k': 15000,
    '20k': 20000,
    '25k': 25000,
    '30k': 30000,
}

MANUFACTURER_NAMES = {
    'Cherry': 'Chery',
    'Omoda & Jaecoo': 'Omoda',
    'Omoda___Jaecoo': 'Omoda',
    'Ford_': 'Ford',
    'Ford EVs': 'Ford',
    'Ford_EVs_with_Ford_Power_': 'Ford',
    'Cupra_': 'Cupra',
    'Cupra_Base_rates': 'Cupra',
    'Mazda_': 'Mazda',
    'Genesis_': 'Genesis',
}

SKIP_SHEETS = ['Bulletins', 'Pre_Reg', 'Pre Reg', 'Summary', 'Index', 'Cover']

# Banner and footnote rows at the top of each sheet
BANNER_MARKERS = [
    'venus fleet', 'all rentals are', 'add vat for', 'base rates',
    'none maintained', 'rates in red', 'click here', 'comms payable',
]

# Paint and contract notes that share the first column with vehicle names
INFO_MARKERS = [
    'free paint', 'metallic', 'business contract', 'personal contract',
    'pre reg', 'solid paint',
]

BODY_TYPES = ['ESTATE', 'HATCHBACK', 'SALOON', 'SUV', 'COUPE', 'CONVERTIBLE']
MODEL_SUFFIXES = {'Mach', 'Pro', 'Max', 'Plus', 'GT', 'RS', 'ST'}

_VEHICLE_ROW = re.compile(r'^\w+\s+\d|^\d+\.\d+|Auto|Manual|Estate|Hatchback|SUV', re.IGNORECASE)


def _cell_text(value: Any) -> str:
    if value is None:
        return ''
    return str(value).strip()


def parse_term(header: Any) -> Optional[Tuple[int, int]]:
    """'1+23' -> (initial_months=1, term=24)."""
    match = TERM_PATTERN.match(_cell_text(header))
    if not match:
        return None
    return int(match.group(1)), int(match.group(2)) + 1


def parse_mileage(label: Any) -> Optional[int]:
    """'10k Non-Maintained' -> 10000."""
    if not isinstance(label, str):
        return None
    lower = label.strip().lower()
    for prefix, mileage in MILEAGE_LABELS.items():
        if lower.startswith(prefix):
            return mileage
    return None


def parse_price_minor(value: Any) -> Optional[int]:
    """Matrix cell to pence; blanks, text and non-positive amounts are None."""
    minor = parse_money_minor(value)
    if minor is None or minor <= 0:
        return None
    return minor


def normalize_manufacturer(sheet_name: str) -> str:
    name = re.sub(r'_+$', '', sheet_name).replace('_', ' ').strip()
    return MANUFACTURER_NAMES.get(sheet_name) or MANUFACTURER_NAMES.get(name) or name


def parse_vehicle_name(name: str, manufacturer: str) -> Tuple[str, str]:
    """
    Split a Venus vehicle label into (model, variant).

    The manufacturer prefix, model year and body type words are removed.
    The model is the first word, or the first two when the second is a
    number or a trim suffix such as "Pro" ("Mach E" takes three).
    """
    cleaned = name.strip()
    if cleaned.lower().startswith(manufacturer.lower()):
        cleaned = cleaned[len(manufacturer):].strip()
    cleaned = re.sub(r'\s*\(\d{4}\)\s*', ' ', cleaned).strip()
    for body in BODY_TYPES:
        cleaned = re.sub(rf'\s+{body}\s*', ' ', cleaned, flags=re.IGNORECASE).strip()

    words = cleaned.split()
    if not words:
        return name, ''

    model_end = 1
    if len(words) > 1:
        if words[1].isdigit() or words[1] in MODEL_SUFFIXES:
            model_end = 2
        if len(words) > 2 and words[1] == 'Mach' and words[2] == 'E':
            model_end = 3
    return ' '.join(words[:model_end]), ' '.join(words[model_end:])


def parse_sheet(rows: List[List[Any]], manufacturer: str) -> List[Dict[str, Any]]:
    """
    Flatten one manufacturer matrix into rate rows.

    Args:
        rows: Sheet cells, row by row, with None for blanks
        manufacturer: Normalized manufacturer name

    Returns:
        One dict per priced (vehicle, mileage, term) cell
    """
    rates: List[Dict[str, Any]] = []
    term_columns: List[Tuple[int, int, int]] = []
    vehicle: Optional[Dict[str, str]] = None

    def emit(row: List[Any], mileage: int):
        for col, initial_months, term in term_columns:
            price = parse_price_minor(row[col]) if col < len(row) else None
            if price is None:
                continue
            rates.append({
                'manufacturer': manufacturer,
                'model': vehicle['model'],
                'variant': vehicle['variant'],
                'vehicle_name': vehicle['name'],
                'term': term,
                'annual_mileage': mileage,
                'initial_months': initial_months,
                'payment_plan': payment_plan_for_initial_months(initial_months).value,
                'monthly_rental': row[col],
            })

    for row in rows:
        if not row:
            continue
        first = _cell_text(row[0]).lower()
        if any(p in first for p in BANNER_MARKERS):
            continue

        term_index = next((i for i, c in enumerate(row) if _cell_text(c).lower() == 'term'), -1)
        if 0 <= term_index <= 2:
            found = []
            for col in range(term_index + 1, len(row)):
                parsed = parse_term(row[col])
                if parsed:
                    found.append((col, parsed[0], parsed[1]))
            if len(found) >= 3:
                term_columns = found
                continue

        if not term_columns:
            continue

        col0 = _cell_text(row[0])
        col1 = _cell_text(row[1]) if len(row) > 1 else ''
        mileage0 = parse_mileage(col0)
        mileage1 = parse_mileage(col1)
        has_price = any(col < len(row) and parse_price_minor(row[col]) is not None for col, _, _ in term_columns)
        is_info = any(marker in col0.lower() for marker in INFO_MARKERS)

        # Vehicle name and mileage on the same row
        if not mileage0 and mileage1 and len(col0) > 3 and has_price and not is_info:
            model, variant = parse_vehicle_name(col0, manufacturer)
            vehicle = {'name': col0, 'model': model, 'variant': variant}
            emit(row, mileage1)
            continue

        # Further mileages for the current vehicle
        if mileage1 and vehicle and has_price and (col0 == '' or is_info):
            emit(row, mileage1)
            continue

        # Vehicle heading with the mileages on following rows
        if not mileage0 and not mileage1 and len(col0) > 3 and not is_info:
            if _VEHICLE_ROW.search(col0):
                model, variant = parse_vehicle_name(col0, manufacturer)
                vehicle = {'name': col0, 'model': model, 'variant': variant}
                continue

        if mileage0 and vehicle and has_price:
            emit(row, mileage0)

    return rates


def is_skipped_sheet(sheet_name: str) -> bool:
    lower = sheet_name.lower()
    return any(skip.lower() in lower for skip in SKIP_SHEETS)


class VenusRatebookParser(RateParser):
    """
    Venus workbook parser.

    ``parse`` accepts the workbook bytes or a file path. Rows come out of
    the matrix already named, so the column map is the identity on the
    flattened keys. Venus quote no CAP codes; every rate goes through the
    vehicle matcher.
    """

    PROVIDER = ProviderCode.VENUS
    COLUMNS = {
        'manufacturer': 'manufacturer',
        'model': 'model',
        'variant': 'variant',
        'term': 'term',
        'annual_mileage': 'annual_mileage',
        'payment_plan': 'payment_plan',
        'monthly_rental': 'total_rental',
        'initial_months': 'initial_months',
        'vehicle_name': 'derivative_name',
    }
    DEFAULT_PAYMENT_PLAN = PaymentPlan.SPREAD_6_DOWN

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.sheets_processed: List[str] = []

    def rows_from(self, raw: Union[RawProviderResponse, bytes, str, Path, List[Any]]) -> List[Any]:
        if isinstance(raw, (bytes, str, Path)):
            return self.rows_from_workbook(read_workbook(raw))
        return super().rows_from(raw)

    def rows_from_workbook(self, sheets: Dict[str, List[List[Any]]]) -> List[Dict[str, Any]]:
        rows = []
        self.sheets_processed = []
        for sheet_name, cells in sheets.items():
            if is_skipped_sheet(sheet_name):
                logger.debug(f"Skipping sheet {sheet_name}")
                continue
            manufacturer = normalize_manufacturer(sheet_name)
            sheet_rows = parse_sheet(cells, manufacturer)
            if not sheet_rows:
                continue
            logger.info(f"Sheet {sheet_name}: {len(sheet_rows)} rates for {manufacturer}")
            self.sheets_processed.append(sheet_name)
            rows.extend(sheet_rows)
        return rows
