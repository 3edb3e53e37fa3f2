"""
ALD Automotive ratebook reader.

ALD send a CSV or XLSX ratebook per contract type. The file opens with a
title line ("... Broker Ratebook, Generated ...") and a record count line
before the header. Each row carries its own TERM and ANNUAL_MILEAGE, so one
file holds several term and mileage bands per vehicle. Rentals come as two
columns, with maintenance (WM) and without (CM).
"""

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

from ratefeed.core.errors import ValidationError
from ratefeed.core.importer import ContractMeta, RateParser
from ratefeed.core.parsing import (
    clean_text,
    decode_text,
    is_workbook,
    parse_money_minor,
    read_csv_rows,
    read_workbook,
    records_from_rows,
)
from ratefeed.core.schema import (
    CanonicalRate,
    ContractType,
    PaymentPlan,
    ProviderCode,
    RawProviderResponse,
)

logger = logging.getLogger(__name__)

TITLE_MARKERS = ('Broker', 'Generated')

# Contract types quoted with the maintenance rental
MAINTAINED_CONTRACTS = {ContractType.CH, ContractType.PCH}

# Mapped for the rental and description logic, not kept in extras
WORKING_FIELDS = {'rental_wm', 'rental_cm', 'vehicle_description'}


def strip_preamble(text: str) -> str:
    """Drop the title line and the record count line that follow it."""
    lines = text.splitlines()
    skip = 0
    if lines and any(marker in lines[0] for marker in TITLE_MARKERS):
        skip = 1
        if len(lines) > 1 and ',' not in lines[1]:
            skip = 2
    return '\n'.join(lines[skip:])


def split_description(description: str) -> Tuple[str, str]:
    """'Golf Hatchback 1.5 TSI Life 5dr' -> ('Golf Hatchback', '1.5 TSI Life 5dr')."""
    words = description.split()
    return ' '.join(words[:2]), ' '.join(words[2:])


def parse_rental(value: Any) -> Optional[int]:
    """Rental in pence; zero means not offered."""
    return parse_money_minor(value) or None


class AldRatebookParser(RateParser):
    """
    ALD ratebook parser.

    Every row must carry a CAP code. Manufacturer names are upper-cased,
    the model is the first two words of VEHICLE DESCRIPTION and the rest is
    the variant.
    """

    PROVIDER = ProviderCode.ALD
    COLUMNS = {
        "CAP CODE": "cap_code",
        "CAP ID": "cap_id",
        "WIN ID": "win_id",
        "MANUFACTURER": "manufacturer",
        "VEHICLE DESCRIPTION": "vehicle_description",
        "TERM": "term",
        "ANNUAL_MILEAGE": "annual_mileage",
        "NET RENTAL WM": "rental_wm",
        "NET RENTAL CM": "rental_cm",
        "CO2": "co2",
        "P11D": "p11d",
        "OTR": "otr_price",
        "FUEL TYPE": "fuel_type",
        "TRANSMISSION": "transmission",
        "BODY STYLE": "body_style",
        "MODELYEAR": "model_year",
        "Excess Mileage": "excess_mileage_ppm",
        "MPG COMBINED": "mpg_combined",
        "WLC": "whole_life_cost",
        "INSURANCE GROUP": "insurance_group",
        "EURO CLASSIFICATION": "euro_rating",
    }
    DEFAULT_PAYMENT_PLAN = PaymentPlan.MONTHLY_IN_ADVANCE

    def rows_from(self, raw: Union[RawProviderResponse, str, bytes, Path, List[Any]]) -> List[Any]:
        if isinstance(raw, Path):
            raw = raw.read_bytes()
        if isinstance(raw, bytes) and is_workbook(raw):
            return self.rows_from_workbook(read_workbook(raw))
        if isinstance(raw, (str, bytes)):
            text = decode_text(raw) if isinstance(raw, bytes) else raw
            return read_csv_rows(strip_preamble(text))
        return super().rows_from(raw)

    @staticmethod
    def rows_from_workbook(sheets: Dict[str, List[List[Any]]]) -> List[Dict[str, Any]]:
        """First sheet: title row, header row, count row, then rates."""
        if not sheets:
            return []
        name, cells = next(iter(sheets.items()))
        if len(cells) < 2:
            return []
        rows = [row for row in cells[2:] if any(c is not None and str(c).strip() for c in row)]
        logger.debug(f"Sheet {name}: {max(len(rows) - 1, 0)} rate rows")
        return records_from_rows(cells[1], rows[1:])

    def build_rate(
        self,
        fields: Dict[str, Any],
        provider: ProviderCode,
        meta: ContractMeta,
        row_number: int,
    ) -> CanonicalRate:
        if not clean_text(fields.get('cap_code')):
            raise ValidationError(f"Row {row_number}: Missing CAP CODE", provider=provider.value)
        model, variant = split_description(clean_text(fields.get('vehicle_description')) or '')
        fields = dict(
            fields,
            manufacturer=(clean_text(fields.get('manufacturer')) or 'UNKNOWN').upper(),
            model=model or 'Unknown',
            variant=variant,
        )
        return super().build_rate(fields, provider, meta, row_number)

    def resolve_rentals(self, fields: Dict[str, Any], contract_type: ContractType) -> Dict[str, Optional[int]]:
        maintained = parse_rental(fields.get('rental_wm'))
        base = parse_rental(fields.get('rental_cm'))
        if contract_type in MAINTAINED_CONTRACTS and maintained is not None:
            return {
                'total_rental_minor': maintained,
                'lease_rental_minor': base,
                'service_rental_minor': maintained - base if base is not None else None,
            }
        return {
            'total_rental_minor': base if base is not None else maintained,
            'lease_rental_minor': base,
            'service_rental_minor': None,
        }

    def extras(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return {k: v for k, v in super().extras(fields).items() if k not in WORKING_FIELDS}
