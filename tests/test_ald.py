"""Tests for the ALD ratebook reader."""

import io

import pandas as pd
import pytest

from ratefeed.core.importer import ContractMeta, RateImporter
from ratefeed.core.schema import ContractType, FuelType, ImportStatus, ProviderCode
from ratefeed.providers import RATEBOOK_PARSERS, get_ratebook_parser
from ratefeed.providers.ald import AldRatebookParser, split_description, strip_preamble

TITLE = "ALD Automotive Broker Ratebook,Generated 01/10/2026"

HEADER = [
    "CAP CODE", "CAP ID", "MANUFACTURER", "VEHICLE DESCRIPTION", "TERM", "ANNUAL_MILEAGE",
    "NET RENTAL WM", "NET RENTAL CM", "P11D", "CO2", "FUEL TYPE", "INSURANCE GROUP",
]

ROWS = [
    ["VWGO15LIF5HPIM", "98765", "Volkswagen", "Golf Hatchback 1.5 TSI Life 5dr",
     "36", "10000", "350.00", "300.00", "28500", "128", "Petrol", "17E"],
    ["KINI16GDI5HCA", "54321", "kia", "Niro Hatchback 1.6 GDi Hybrid 2 5dr DCT",
     "48", "8000", "0", "275.50", "31000", "110", "Hybrid", "20E"],
    ["", "11111", "Ford", "Puma Hatchback 1.0 EcoBoost",
     "36", "10000", "320", "280", "25000", "125", "Petrol", "15E"],
]

ALD_CSV = "\n".join([TITLE, "3", ",".join(HEADER)] + [",".join(row) for row in ROWS]) + "\n"


def ald_workbook() -> bytes:
    buffer = io.BytesIO()
    cells = [[TITLE], HEADER, [3]] + ROWS
    with pd.ExcelWriter(buffer, engine='openpyxl') as writer:
        pd.DataFrame(cells).to_excel(writer, sheet_name='Ratebook', header=False, index=False)
    return buffer.getvalue()


class TestHelpers:

    def test_strip_preamble(self):
        assert strip_preamble(ALD_CSV).splitlines()[0].startswith("CAP CODE,")

    def test_no_preamble(self):
        text = "CAP CODE,MANUFACTURER\nX,Kia"
        assert strip_preamble(text) == text

    def test_split_description(self):
        assert split_description("Golf Hatchback 1.5 TSI Life 5dr") == ("Golf Hatchback", "1.5 TSI Life 5dr")
        assert split_description("Niro") == ("Niro", "")


class TestRatebookParser:

    def test_registered(self):
        assert RATEBOOK_PARSERS[ProviderCode.ALD] is AldRatebookParser
        assert isinstance(get_ratebook_parser("ald"), AldRatebookParser)

    def test_csv_rows_become_rates(self):
        outcome = AldRatebookParser().parse(ALD_CSV, contract_meta=ContractMeta(contract_type=ContractType.CHNM))

        assert outcome.total_rows == 3
        assert outcome.success_rows == 2
        golf = outcome.rates[0]
        assert golf.provider_code == ProviderCode.ALD
        assert golf.cap_code == "VWGO15LIF5HPIM"
        assert golf.manufacturer == "VOLKSWAGEN"
        assert golf.model == "Golf Hatchback"
        assert golf.variant == "1.5 TSI Life 5dr"
        assert golf.term == 36
        assert golf.annual_mileage == 10000
        assert golf.p11d_minor == 2850000
        assert golf.fuel_type == FuelType.PETROL
        assert golf.extras == {'cap_id': "98765", 'insurance_group': "17E"}

        niro = outcome.rates[1]
        assert niro.manufacturer == "KIA"
        assert niro.term == 48
        assert niro.annual_mileage == 8000

    def test_missing_cap_code(self):
        outcome = AldRatebookParser().parse(ALD_CSV)

        assert outcome.error_rows == 1
        assert "Missing CAP CODE" in outcome.errors[0]

    def test_no_maintenance_rental(self):
        outcome = AldRatebookParser().parse(ALD_CSV, contract_meta=ContractMeta(contract_type=ContractType.CHNM))

        golf = outcome.rates[0]
        assert golf.total_rental_minor == 30000
        assert golf.lease_rental_minor == 30000
        assert golf.service_rental_minor is None

    def test_maintained_rental(self):
        outcome = AldRatebookParser().parse(ALD_CSV, contract_meta=ContractMeta(contract_type=ContractType.CH))

        golf, niro = outcome.rates
        assert golf.total_rental_minor == 35000
        assert golf.lease_rental_minor == 30000
        assert golf.service_rental_minor == 5000
        # No maintained rental quoted: the base rental stands
        assert niro.total_rental_minor == 27550
        assert niro.service_rental_minor is None

    def test_personal_rates_are_vat_inclusive(self):
        outcome = AldRatebookParser().parse(ALD_CSV, contract_meta=ContractMeta(contract_type=ContractType.PCH))

        assert all(r.vat_inclusive for r in outcome.rates)
        assert outcome.rates[0].total_rental_minor == 35000

    def test_xlsx_bytes(self):
        outcome = AldRatebookParser().parse(ald_workbook(), contract_meta=ContractMeta(contract_type=ContractType.CHNM))

        assert outcome.total_rows == 3
        assert outcome.success_rows == 2
        assert [r.cap_code for r in outcome.rates] == ["VWGO15LIF5HPIM", "KINI16GDI5HCA"]
        assert outcome.rates[1].total_rental_minor == 27550

    def test_windows_1252_csv(self):
        content = ALD_CSV.replace("Life 5dr", "Life 5dr £").encode('cp1252')

        outcome = AldRatebookParser().parse(content)

        assert outcome.success_rows == 2
        assert outcome.rates[0].variant == "1.5 TSI Life 5dr £"


class TestImport:

    @pytest.fixture
    def importer(self, rate_store):
        return RateImporter(rate_store)

    def test_import_file(self, importer, rate_store):
        batch = importer.import_content(AldRatebookParser(), ALD_CSV, ContractType.CH, file_name="ald_ch.csv")

        assert batch.status == ImportStatus.COMPLETED
        assert batch.provider_code == ProviderCode.ALD
        assert batch.success_rows == 2
        assert batch.error_rows == 1
        assert batch.unique_cap_codes == 2
        stored = rate_store.rates_for_batch(batch.id)
        assert {r.total_rental_minor for r in stored} == {35000, 27550}
