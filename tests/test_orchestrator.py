"""Tests for run orchestration and the library entry points."""

import pytest

from ratefeed.core.base_client import ProviderClient
from ratefeed.core.batch import StopSignal
from ratefeed.core.config import create_fleet_marque_config, create_ogilvie_config
from ratefeed.core.errors import ProtocolStructureError, SessionExpired, ValidationError
from ratefeed.core.orchestrator import (
    Orchestrator,
    create_client,
    run_batch,
    run_bulk_export,
    run_scrape,
    run_single_quote,
)
from ratefeed.core.schema import (
    ContractType,
    FleetDiscountTerm,
    ImportStatus,
    ProgressStage,
    ProviderCode,
    QuoteRequest,
    RunProgress,
    VehicleIdentity,
)
from ratefeed.providers import FleetMarqueClient, OgilvieRatebookParser

CSV = (
    "Manufacturer Name,Range Name,Derivative Name,Product,Payment Plan,Contract Term,"
    "Contract Mileage,Finance Rental Exc. VAT,Non Finance Rental,Regular Rental\n"
    "Kia,Niro,4 EV 64.8kWh Auto,Contract Hire (No Maintenance),Monthly in advance,36,30000,310.00,0,310.00\n"
    "Kia,Sportage,1.6T GDi 2,Contract Hire (No Maintenance),Monthly in advance,36,30000,280.00,0,280.00\n"
)


class FakeExportClient(ProviderClient):
    """Export-capable client that replays a fixed CSV."""

    PROVIDER = ProviderCode.OGILVIE
    RATEBOOK_PARSER = OgilvieRatebookParser

    def __init__(self, csv_text=CSV, error=None, **kwargs):
        kwargs.setdefault('config', create_ogilvie_config())
        super().__init__(**kwargs)
        self.csv_text = csv_text
        self.error = error

    def login(self, credentials):
        raise NotImplementedError

    def extract_session_tokens(self, html_body):
        return {}

    def bulk_export(self, export_config, on_progress=None, stop=None):
        progress = RunProgress(total=3)
        for page in range(3):
            if on_progress:
                on_progress(progress.advance(page, ProgressStage.PREPARING).model_copy())
        if self.error:
            raise self.error
        if stop is not None and stop.is_set():
            return ""
        progress.status = "completed"
        if on_progress:
            on_progress(progress.advance(3, ProgressStage.COMPLETED).model_copy())
        return self.csv_text


class FakeScrapeClient(ProviderClient):
    """Scrape-capable client returning fixed listings."""

    PROVIDER = ProviderCode.FLEET_MARQUE

    def __init__(self, **kwargs):
        kwargs.setdefault('config', create_fleet_marque_config())
        super().__init__(**kwargs)

    def login(self, credentials):
        raise NotImplementedError

    def extract_session_tokens(self, html_body):
        return {}

    def scrape(self, scrape_config=None, on_progress=None, stop=None):
        if on_progress:
            on_progress(RunProgress(current_stage=ProgressStage.SCRAPING, current_index=1, current_make="KIA"))
        return [
            FleetDiscountTerm(cap_code="98765", manufacturer="KIA", model="Niro", derivative="4 EV",
                              list_price_minor=3599500, discount_percent=10.0, discounted_price_minor=3239550),
            FleetDiscountTerm(cap_code="55501", manufacturer="KIA", model="Sportage", derivative="1.6T GDi 2"),
        ]


@pytest.fixture
def export_client(session_store, http, policy):
    return FakeExportClient(session_store=session_store, http=http, policy=policy)


class TestExportRun:

    def test_export_then_import(self, export_client, rate_store):
        seen = []

        summary = Orchestrator(export_client, rate_store).run(on_progress=seen.append)

        assert summary.provider == ProviderCode.OGILVIE
        assert summary.rows_or_vehicles_found == 2
        assert summary.import_batch.status == ImportStatus.COMPLETED
        assert summary.batch_id.startswith("ogilvie_chnm_")
        rates = rate_store.latest_rates(ProviderCode.OGILVIE, ContractType.CHNM)
        assert sorted(r.total_rental_minor for r in rates) == [28000, 31000]
        assert summary.progress.current_stage == ProgressStage.COMPLETED
        assert summary.progress.status == "completed"

    def test_progress_is_monotonic(self, export_client, rate_store):
        seen = []

        Orchestrator(export_client, rate_store).run(on_progress=seen.append)

        stages = [p.current_stage for p in seen]
        assert stages[0] == ProgressStage.STARTING
        assert stages[-2:] == [ProgressStage.IMPORTING, ProgressStage.COMPLETED]
        # The client's own completion is held back until the import is done
        assert stages.count(ProgressStage.COMPLETED) == 1
        indexes = [p.current_index for p in seen]
        assert indexes == sorted(indexes)
        assert seen[-1].vehicles_found == 2

    def test_export_contract_type(self, export_client, rate_store):
        class Config:
            contract_type = ContractType.CH

        summary = Orchestrator(export_client, rate_store).run(Config())

        batch = summary.import_batch
        assert batch.contract_type == ContractType.CH
        # Every row is a no-maintenance product, so none belongs in a CH batch
        assert batch.success_rows == 0
        assert batch.error_rows == 2
        assert batch.status == ImportStatus.FAILED
        assert "does not match batch CH" in batch.error_log[0]
        assert rate_store.rates_for_batch(batch.id) == []

    def test_export_rows_match_contract_type(self, session_store, http, policy, rate_store):
        class Config:
            contract_type = ContractType.CH

        client = FakeExportClient(csv_text=CSV.replace("Contract Hire (No Maintenance)", "Contract Hire"),
                                  session_store=session_store, http=http, policy=policy)

        batch = Orchestrator(client, rate_store).run(Config()).import_batch

        assert batch.status == ImportStatus.COMPLETED
        assert batch.success_rows == 2
        assert {r.contract_type for r in rate_store.rates_for_batch(batch.id)} == {ContractType.CH}

    def test_failure_marks_progress(self, session_store, http, policy, rate_store):
        client = FakeExportClient(error=ProtocolStructureError("PrepareExport failed"),
                                  session_store=session_store, http=http, policy=policy)
        orchestrator = Orchestrator(client, rate_store)

        with pytest.raises(ProtocolStructureError):
            orchestrator.run()

        progress = orchestrator.current_progress()
        assert progress.current_stage == ProgressStage.FAILED
        assert progress.status == "failed"
        assert "PrepareExport failed" in progress.error
        assert progress.current_index == 2

    def test_session_expiry_propagates(self, session_store, http, policy, rate_store):
        client = FakeExportClient(error=SessionExpired("HTTP 403"),
                                  session_store=session_store, http=http, policy=policy)

        with pytest.raises(SessionExpired):
            Orchestrator(client, rate_store).run()

    def test_empty_export_is_an_error(self, session_store, http, policy, rate_store):
        client = FakeExportClient(csv_text="", session_store=session_store, http=http, policy=policy)

        with pytest.raises(ProtocolStructureError):
            Orchestrator(client, rate_store).run()

    def test_stopped_export(self, export_client, rate_store):
        stop = StopSignal()
        stop.stop("user")

        summary = Orchestrator(export_client, rate_store).run(stop=stop)

        assert summary.batch_id is None
        assert summary.progress.current_stage == ProgressStage.STOPPED
        assert rate_store.list_batches() == []


class TestScrapeRun:

    def test_scrape_saved(self, session_store, http, policy, rate_store):
        client = FakeScrapeClient(session_store=session_store, http=http, policy=policy)
        orchestrator = Orchestrator(client, rate_store)
        seen = []

        summary = orchestrator.run(on_progress=seen.append)

        assert summary.rows_or_vehicles_found == 2
        assert summary.batch_id.startswith("fleet_marque_scrape_")
        saved = orchestrator.load_scrape(summary.batch_id)
        assert [s['cap_code'] for s in saved] == ["98765", "55501"]
        assert saved[0]['discounted_price_minor'] == 3239550
        assert seen[-1].current_stage == ProgressStage.COMPLETED
        assert seen[-1].vehicles_found == 2
        assert any(p.current_make == "KIA" for p in seen)

    def test_client_without_capabilities(self, session_store, http, policy, rate_store):
        config = create_fleet_marque_config()
        config.features = {'supports_scrape': False}
        client = FakeScrapeClient(config=config, session_store=session_store, http=http, policy=policy)

        with pytest.raises(ValidationError):
            Orchestrator(client, rate_store).run()


class TestEntryPoints:
    """Capability checks before any network traffic."""

    def quote_request(self):
        return QuoteRequest(
            vehicle=VehicleIdentity(manufacturer="Kia", model="Niro", cap_code="KINI4EV"),
            term=36,
            annual_mileage=10000,
        )

    def test_create_client(self, session_store):
        client = create_client("fleet-marque", session_store)
        try:
            assert isinstance(client, FleetMarqueClient)
            assert client.session_store is session_store
        finally:
            client.close()

    def test_unknown_provider(self, session_store):
        with pytest.raises(ValidationError):
            create_client("trabant", session_store)

    def test_quote_unsupported(self, session_store):
        with pytest.raises(ValidationError, match="does not support quotes"):
            run_single_quote("ogilvie", self.quote_request(), session_store=session_store)

    def test_batch_unsupported(self, session_store):
        with pytest.raises(ValidationError):
            run_batch("fleet_marque", [self.quote_request()], session_store=session_store)

    def test_export_unsupported(self, session_store, rate_store):
        with pytest.raises(ValidationError, match="bulk export"):
            run_bulk_export("lex", store=rate_store, session_store=session_store)

    def test_scrape_unsupported(self, session_store, rate_store):
        with pytest.raises(ValidationError, match="scraping"):
            run_scrape("ogilvie", store=rate_store, session_store=session_store)

    def test_scrape_without_session(self, session_store, rate_store):
        with pytest.raises(SessionExpired):
            run_scrape("fleet_marque", store=rate_store, session_store=session_store)
