"""Tests for bulk rate import."""

import pytest

from ratefeed.core import storage
from ratefeed.core.importer import RateImporter, RateParser, make_batch_id
from ratefeed.core.matcher import VehicleMatcher
from ratefeed.core.schema import ContractType, ImportStatus, ProviderCode
from ratefeed.core.storage import ReferenceVehicle

MAPPING = {
    'Make': 'manufacturer',
    'Range': 'model',
    'Derivative': 'variant',
    'CAP': 'cap_code',
    'Term': 'term',
    'Mileage': 'annual_mileage',
    'Rental': 'total_rental',
    'P11D': 'p11d',
    'Notes': 'notes',
}

HEADER = "Make,Range,Derivative,CAP,Term,Mileage,Rental,P11D,Notes\n"

RATEBOOK = HEADER + (
    "BMW,3 Series,320d M Sport,,36,10000,299.99,32000,\n"
    "Kia,Niro,4 EV,KINI4EV,24,8000,250.00,35000,in stock\n"
    ",X5,xDrive,,36,10000,500,60000,\n"
)


@pytest.fixture
def parser():
    return RateParser(mapping=MAPPING, provider=ProviderCode.OGILVIE)


@pytest.fixture
def importer(rate_store, match_store, reference_store, mapping_store, audit_log):
    reference_store.add_many([
        ReferenceVehicle(
            cap_code="BM3S20MSP", manufacturer="BMW", model="3 Series",
            variant="320d M Sport", p11d_minor=3200000,
        ),
    ])
    matcher = VehicleMatcher(match_store, reference_store, mapping_store, audit_log)
    return RateImporter(rate_store, matcher)


class TestImport:

    def test_counts_and_matching(self, importer, parser, rate_store):
        batch = importer.import_content(parser, RATEBOOK, ContractType.CHNM, file_name="ratebook.csv")

        assert batch.status == ImportStatus.COMPLETED
        assert batch.is_finalized
        assert batch.started_at.tzinfo is not None
        assert batch.completed_at.tzinfo is not None
        assert batch.total_rows == 3
        assert batch.success_rows == 2
        assert batch.error_rows == 1
        assert batch.unmatched_rows == 0
        assert batch.unique_cap_codes == 2
        assert "Row 4: Missing manufacturer or model" in batch.error_log

        rates = {r.manufacturer: r for r in rate_store.rates_for_batch(batch.id)}
        bmw = rates["BMW"]
        assert bmw.cap_code == "BM3S20MSP"
        assert bmw.total_rental_minor == 29999
        assert bmw.p11d_minor == 3200000
        assert bmw.term == 36
        assert bmw.import_batch_id == batch.id
        assert not bmw.unmatched

        kia = rates["Kia"]
        assert kia.cap_code == "KINI4EV"
        assert kia.annual_mileage == 8000
        assert kia.extras == {'notes': "in stock"}

    def test_batch_id_is_deterministic(self, importer, parser):
        batch = importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        assert batch.id == make_batch_id(ProviderCode.OGILVIE, ContractType.CHNM, RATEBOOK)
        assert batch.id.startswith("ogilvie_chnm_")

    def test_unmatched_rate_still_stored(self, rate_store, parser):
        importer = RateImporter(rate_store)
        content = HEADER + "Skoda,Octavia,SE L,,36,10000,199,28000,\n"

        batch = importer.import_content(parser, content, ContractType.CH)

        assert batch.unmatched_rows == 1
        assert rate_store.rates_for_batch(batch.id)[0].unmatched

    def test_provider_cap_codes_seed_reference_set(self, importer, parser, reference_store):
        importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        assert reference_store.by_cap_code("KINI4EV").model == "Niro"


class TestIdempotency:

    def test_duplicate_content_returns_existing(self, importer, parser, rate_store):
        first = importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        second = importer.import_content(parser, RATEBOOK, ContractType.CHNM)

        assert second.id == first.id
        assert second.started_at == first.started_at
        assert len(rate_store.list_batches(ProviderCode.OGILVIE)) == 1

    def test_force_rebuilds_same_batch(self, importer, parser, rate_store):
        first = importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        again = importer.import_content(parser, RATEBOOK, ContractType.CHNM, force=True)

        assert again.id == first.id
        assert again.success_rows == first.success_rows
        assert len(rate_store.list_batches(ProviderCode.OGILVIE)) == 1
        assert len(rate_store.rates_for_batch(first.id)) == 2

    def test_duplicate_rate_keys_collapse(self, importer, parser, rate_store):
        content = HEADER + (
            "Kia,Niro,4 EV,KINI4EV,24,8000,250.00,35000,\n"
            "Kia,Niro,4 EV,KINI4EV,24,8000,255.00,35000,\n"
        )
        batch = importer.import_content(parser, content, ContractType.CHNM)
        assert batch.success_rows == 1


class TestSupersede:

    def test_new_batch_becomes_latest(self, importer, parser, rate_store):
        old = importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        newer_content = HEADER + "Kia,Niro,4 EV,KINI4EV,24,8000,245.00,35000,\n"
        new = importer.import_content(parser, newer_content, ContractType.CHNM)

        assert not rate_store.get_batch(old.id).is_latest
        assert rate_store.latest_batch(ProviderCode.OGILVIE, ContractType.CHNM).id == new.id
        latest = rate_store.latest_rates(ProviderCode.OGILVIE, ContractType.CHNM)
        assert [r.total_rental_minor for r in latest] == [24500]

    def test_other_contract_types_untouched(self, importer, parser, rate_store):
        chnm = importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        importer.import_content(parser, RATEBOOK, ContractType.PCH)

        assert rate_store.get_batch(chnm.id).is_latest

    def test_failed_import_does_not_supersede(self, importer, parser, rate_store):
        good = importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        bad_content = HEADER + (
            ",Niro,4 EV,,24,8000,250.00,35000,\n"
            "Kia,,4 EV,,24,8000,250.00,35000,\n"
            "Kia,Niro,4 EV,KINI4EV,24,8000,250.00,35000,\n"
        )
        bad = importer.import_content(parser, bad_content, ContractType.CHNM)

        assert bad.status == ImportStatus.FAILED
        assert bad.error_rows == 2
        assert rate_store.get_batch(good.id).is_latest
        assert rate_store.latest_batch(ProviderCode.OGILVIE, ContractType.CHNM).id == good.id


class TestProgress:

    def test_progress_reported_per_rate(self, importer, parser):
        seen = []
        importer.import_content(
            parser, RATEBOOK, ContractType.CHNM,
            on_progress=lambda done, total: seen.append((done, total)),
        )
        assert seen == [(1, 2), (2, 2)]


class TestEncoding:

    def test_windows_1252_export(self, rate_store, parser):
        importer = RateImporter(rate_store)
        content = (HEADER + "Skoda,Octavia,SE L £,,36,10000,£299.99,28000,\n").encode('cp1252')

        batch = importer.import_content(parser, content, ContractType.CHNM)

        assert batch.status == ImportStatus.COMPLETED
        rate = rate_store.rates_for_batch(batch.id)[0]
        assert rate.variant == "SE L £"
        assert rate.total_rental_minor == 29999


class TestContractType:

    def test_rows_for_another_contract_type_rejected(self, rate_store):
        parser = RateParser(mapping=dict(MAPPING, Product='contract_type'), provider=ProviderCode.OGILVIE)
        importer = RateImporter(rate_store)
        content = (
            "Make,Range,Derivative,CAP,Term,Mileage,Rental,P11D,Notes,Product\n"
            "Kia,Niro,4 EV,KINI4EV,24,8000,250.00,35000,,Contract Hire (No Maintenance)\n"
            "Kia,Niro,4 EV,KINI4EV,24,8000,290.00,35000,,Contract Hire\n"
            "Kia,Ceed,GT,KICE16GT,36,10000,230.00,27000,,\n"
        )

        batch = importer.import_content(parser, content, ContractType.CHNM)

        assert batch.success_rows == 2
        assert batch.error_rows == 1
        assert "contract type CH does not match batch CHNM" in batch.error_log[0]
        stored = rate_store.rates_for_batch(batch.id)
        assert {r.contract_type for r in stored} == {ContractType.CHNM}
        assert sorted(r.total_rental_minor for r in stored) == [23000, 25000]


class TestStorageFailure:

    def test_batch_finalized_as_failed(self, importer, parser, rate_store, monkeypatch):
        def broken(batch_id, rates):
            raise OSError("disk full")

        monkeypatch.setattr(rate_store, "replace_batch_rates", broken)

        with pytest.raises(OSError):
            importer.import_content(parser, RATEBOOK, ContractType.CHNM)

        batch = rate_store.get_batch(make_batch_id(ProviderCode.OGILVIE, ContractType.CHNM, RATEBOOK))
        assert batch.is_finalized
        assert batch.status == ImportStatus.FAILED
        assert not batch.is_latest
        assert "Import aborted: disk full" in batch.error_log

    def test_failed_batch_keeps_previous_latest(self, importer, parser, rate_store, monkeypatch):
        good = importer.import_content(parser, RATEBOOK, ContractType.CHNM)
        monkeypatch.setattr(rate_store, "replace_batch_rates", lambda batch_id, rates: 1 / 0)

        with pytest.raises(ZeroDivisionError):
            importer.import_content(parser, HEADER + "Kia,Niro,4 EV,KINI4EV,24,8000,245.00,35000,\n", ContractType.CHNM)

        assert rate_store.latest_batch(ProviderCode.OGILVIE, ContractType.CHNM).id == good.id


class TestBulkMatching:

    def test_stores_touched_once_per_batch(self, importer, parser, match_store, reference_store, monkeypatch):
        writes, reads = [], []
        write_json, load_json = storage.atomic_write_json, storage.read_json

        def counting_write(path, data):
            writes.append(path)
            write_json(path, data)

        def counting_read(path, default):
            reads.append(path)
            return load_json(path, default)

        monkeypatch.setattr(storage, "atomic_write_json", counting_write)
        monkeypatch.setattr(storage, "read_json", counting_read)
        content = HEADER + (
            "BMW,3 Series,320d M Sport,,36,10000,299.99,32000,\n"
            "BMW,3 Series,320d M Sport,,48,10000,289.99,32000,\n"
            "Skoda,Octavia,SE L,,36,10000,199,28000,\n"
            "Kia,Niro,4 EV,KINI4EV,24,8000,250.00,35000,\n"
        )

        batch = importer.import_content(parser, content, ContractType.CHNM)

        assert batch.unique_cap_codes == 2
        assert batch.unmatched_rows == 1
        assert writes.count(match_store.path) == 1
        assert reads.count(reference_store.path) == 1
        assert len(match_store.list()) == 2
