"""
Export and scrape orchestration.

The Orchestrator drives one provider client through a whole acquisition
run: bulk export followed by the rate import pipeline, or a scrape whose
results are written to the data directory. Progress from the client is
relayed as RunProgress snapshots whose index never moves backwards.

The ``run_*`` functions are the library entry points used by the CLI and
by anything embedding ratefeed. They raise only RatefeedError subclasses.
"""

import functools
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, List, Optional, Union

from .base_client import ProgressCallback, ProviderClient
from .batch import StopSignal
from .browser import capture_session
from .errors import RatefeedError, ValidationError
from .importer import RateImporter
from .matcher import VehicleMatcher
from .registry import ProviderRegistry
from .schema import (
    BatchResult,
    ContractType,
    ProgressStage,
    ProviderCode,
    QuoteRequest,
    QuoteResult,
    RunProgress,
    RunSummary,
)
from .session_store import SessionStore
from .storage import (
    CapMappingStore,
    MatchAuditLog,
    MatchStore,
    RateStore,
    ReferenceVehicleStore,
    atomic_write_json,
    read_json,
)

logger = logging.getLogger(__name__)

# Progress fields copied from a client's snapshot
_RELAYED_FIELDS = ('total', 'vehicles_found', 'current_make', 'current_model', 'error')


class Orchestrator:
    """
    Runs one export or scrape for a provider client.

    Args:
        client: Provider client; its capabilities pick export or scrape
        store: Canonical rate sink (defaults to the data directory)
        matcher: CAP code resolver used by the import
        importer: Import pipeline; built from ``store`` and ``matcher``
    """

    def __init__(
        self,
        client: ProviderClient,
        store: Optional[RateStore] = None,
        matcher: Optional[VehicleMatcher] = None,
        importer: Optional[RateImporter] = None,
    ):
        self.client = client
        self.store = store or RateStore()
        self.matcher = matcher
        self.importer = importer or RateImporter(self.store, matcher)
        self._progress = RunProgress()
        self._lock = threading.Lock()

    @property
    def scrapes_dir(self) -> Path:
        return self.store.root / "scrapes"

    def current_progress(self) -> RunProgress:
        """Latest progress snapshot, safe to poll from another thread."""
        with self._lock:
            return self._progress.model_copy()

    # === Progress ===

    def _update(
        self,
        on_progress: Optional[ProgressCallback],
        index: Optional[int] = None,
        stage: Optional[ProgressStage] = None,
        **fields,
    ) -> RunProgress:
        with self._lock:
            if index is not None or stage is not None:
                self._progress.advance(self._progress.current_index if index is None else index, stage)
            for name, value in fields.items():
                setattr(self._progress, name, value)
            snapshot = self._progress.model_copy()
        if on_progress:
            on_progress(snapshot)
        return snapshot

    def _relay(self, on_progress: Optional[ProgressCallback], final: bool) -> ProgressCallback:
        """
        Wrap the caller's callback for the client.

        With ``final`` False the client's COMPLETED snapshot is held back,
        since the run still has an import step to do.
        """
        def relay(snapshot: RunProgress):
            stage = snapshot.current_stage
            fields = {name: getattr(snapshot, name) for name in _RELAYED_FIELDS}
            if stage == ProgressStage.COMPLETED and not final:
                stage = None
            elif snapshot.status != "running":
                fields['status'] = snapshot.status
            self._update(on_progress, snapshot.current_index, stage, **fields)
        return relay

    # === Run ===

    def run(
        self,
        config: Any = None,
        on_progress: Optional[ProgressCallback] = None,
        stop: Optional[StopSignal] = None,
    ) -> RunSummary:
        """
        Run an export (then import) or a scrape to completion.

        Args:
            config: Provider-specific export or scrape parameters
            on_progress: Receives a RunProgress snapshot on every change
            stop: Checked by the client at its safe points

        Returns:
            RunSummary with the batch id and the number of rows or vehicles

        Raises:
            ValidationError: the client can neither export nor scrape
            SessionExpired: the session was dropped mid-run
            RatefeedError: any other fatal failure, after progress is
                marked failed
        """
        with self._lock:
            self._progress = RunProgress()
        self._update(on_progress, 0, ProgressStage.STARTING)
        summary = RunSummary(provider=self.client.PROVIDER)

        try:
            if self.client.supports_export:
                self._run_export(config, on_progress, stop, summary)
            elif self.client.supports_scrape:
                self._run_scrape(config, on_progress, stop, summary)
            else:
                raise ValidationError(
                    f"{self.client.provider_id} supports neither export nor scrape",
                    provider=self.client.provider_id,
                )
        except Exception as e:
            logger.error(f"{self.client.provider_id} run failed: {e}")
            self._update(on_progress, stage=ProgressStage.FAILED, status="failed", error=str(e))
            raise

        summary.progress = self.current_progress()
        return summary

    def _run_export(self, config, on_progress, stop, summary: RunSummary) -> None:
        csv_text = self.client.bulk_export(config, self._relay(on_progress, final=False), stop)
        if not csv_text:
            if stop is not None and stop.is_set():
                self._update(on_progress, stage=ProgressStage.STOPPED, status="stopped")
                return
            raise self.client.structure_error("Export returned no data")

        parser_class = self.client.RATEBOOK_PARSER
        if parser_class is None:
            raise ValidationError(f"No ratebook parser for {self.client.provider_id}", provider=self.client.provider_id)
        contract_type = getattr(config, 'contract_type', None) or ContractType.CHNM

        progress = self._update(on_progress, stage=ProgressStage.IMPORTING)
        batch = self.importer.import_content(
            parser_class(),
            csv_text,
            contract_type,
            file_name=f"{self.client.provider_id}_export_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}.csv",
        )
        summary.batch_id = batch.id
        summary.rows_or_vehicles_found = batch.total_rows
        summary.import_batch = batch
        self._update(
            on_progress,
            progress.total or progress.current_index,
            ProgressStage.COMPLETED,
            status="completed",
            vehicles_found=batch.total_rows,
        )

    def _run_scrape(self, config, on_progress, stop, summary: RunSummary) -> None:
        results = self.client.scrape(config, self._relay(on_progress, final=True), stop)
        batch_id = f"{self.client.provider_id}_scrape_{datetime.now(timezone.utc):%Y%m%d_%H%M%S}"
        path = self.scrapes_dir / f"{batch_id}.json"
        atomic_write_json(path, [r.model_dump(mode='json') for r in results])
        logger.info(f"Saved {len(results)} scraped records to {path}")

        summary.batch_id = batch_id
        summary.rows_or_vehicles_found = len(results)
        if stop is None or not stop.is_set():
            self._update(on_progress, stage=ProgressStage.COMPLETED, status="completed", vehicles_found=len(results))

    def load_scrape(self, batch_id: str) -> List[dict]:
        return read_json(self.scrapes_dir / f"{batch_id}.json", [])


# === Library entry points ===

def _taxonomy_errors(func: Callable) -> Callable:
    """Re-raise anything that is not a RatefeedError as one."""
    @functools.wraps(func)
    def wrapper(*args, **kwargs):
        try:
            return func(*args, **kwargs)
        except RatefeedError:
            raise
        except NotImplementedError as e:
            raise ValidationError(str(e)) from e
        except Exception as e:
            logger.exception(f"Unexpected error in {func.__name__}")
            raise RatefeedError(f"{type(e).__name__}: {e}") from e
    return wrapper


def create_client(
    provider: Union[ProviderCode, str],
    session_store: Optional[SessionStore] = None,
    **kwargs,
) -> ProviderClient:
    """Instantiate the registered client for ``provider``."""
    import ratefeed.providers  # noqa: F401  (registers the provider clients)

    if not ProviderRegistry.is_registered(provider):
        raise ValidationError(f"No client registered for provider: {provider}", provider=str(provider))
    return ProviderRegistry.get_client(provider, session_store=session_store, **kwargs)


def default_matcher(root: Optional[Union[str, Path]] = None) -> VehicleMatcher:
    """VehicleMatcher over the stores in the data directory."""
    root = Path(root) if root else RateStore().root
    return VehicleMatcher(
        MatchStore(root / "matches.json"),
        ReferenceVehicleStore(root / "reference_vehicles.json"),
        CapMappingStore(root / "cap_mappings.json"),
        MatchAuditLog(root / "match_audit.jsonl"),
    )


@_taxonomy_errors
def run_single_quote(
    provider: Union[ProviderCode, str],
    request: QuoteRequest,
    session_store: Optional[SessionStore] = None,
) -> QuoteResult:
    """Quote one vehicle with a stored session."""
    with create_client(provider, session_store) as client:
        if not client.supports_quote:
            raise ValidationError(f"{client.provider_id} does not support quotes", provider=client.provider_id)
        return client.quote(request)


@_taxonomy_errors
def run_batch(
    provider: Union[ProviderCode, str],
    requests_: Iterable[QuoteRequest],
    on_progress: Optional[Callable[[int, int, Any], None]] = None,
    stop: Optional[StopSignal] = None,
    session_store: Optional[SessionStore] = None,
) -> BatchResult:
    """Quote many vehicles. Per-item failures are recorded in the result."""
    with create_client(provider, session_store) as client:
        if not client.supports_quote:
            raise ValidationError(f"{client.provider_id} does not support quotes", provider=client.provider_id)
        return client.run_batch_quotes(requests_, on_progress=on_progress, stop=stop)


@_taxonomy_errors
def run_bulk_export(
    provider: Union[ProviderCode, str],
    export_config: Any = None,
    store: Optional[RateStore] = None,
    matcher: Optional[VehicleMatcher] = None,
    on_progress: Optional[ProgressCallback] = None,
    stop: Optional[StopSignal] = None,
    session_store: Optional[SessionStore] = None,
) -> RunSummary:
    """Export a provider's ratebook and import it."""
    with create_client(provider, session_store) as client:
        if not client.supports_export:
            raise ValidationError(f"{client.provider_id} does not support bulk export", provider=client.provider_id)
        return Orchestrator(client, store, matcher).run(export_config, on_progress, stop)


@_taxonomy_errors
def run_scrape(
    provider: Union[ProviderCode, str],
    scrape_config: Any = None,
    store: Optional[RateStore] = None,
    on_progress: Optional[ProgressCallback] = None,
    stop: Optional[StopSignal] = None,
    session_store: Optional[SessionStore] = None,
) -> RunSummary:
    """Scrape a provider portal and save the results."""
    with create_client(provider, session_store) as client:
        if not client.supports_scrape:
            raise ValidationError(f"{client.provider_id} does not support scraping", provider=client.provider_id)
        return Orchestrator(client, store).run(scrape_config, on_progress, stop)


__all__ = [
    'Orchestrator',
    'capture_session',
    'create_client',
    'default_matcher',
    'run_batch',
    'run_bulk_export',
    'run_scrape',
    'run_single_quote',
]
