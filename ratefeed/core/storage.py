"""
JSON record stores.

Stand-ins for the external persistence collaborators: the canonical rate
sink (with import batches), the vehicle match cache, the provider-curated
CAP mapping table, the vehicle reference set and the match audit log.
Each store is a directory of JSON files written atomically.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Union

from pydantic import BaseModel, Field

from .config import get_data_dir
from .schema import (
    CanonicalRate,
    ContractType,
    ImportBatch,
    MatchStatus,
    ProviderCode,
    VehicleMatch,
)

logger = logging.getLogger(__name__)


def atomic_write_json(path: Path, data: Any) -> None:
    """Write JSON to a temporary file and move it over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}-", suffix='.tmp')
    try:
        with os.fdopen(fd, 'w') as f:
            json.dump(data, f, indent=2, default=str)
        os.replace(tmp_path, path)
    except BaseException:
        if os.path.exists(tmp_path):
            os.unlink(tmp_path)
        raise


def read_json(path: Path, default: Any) -> Any:
    """Load JSON from ``path``, returning ``default`` when absent or unreadable."""
    if not path.exists():
        return default
    try:
        with open(path) as f:
            return json.load(f)
    except (OSError, ValueError) as e:
        logger.warning(f"Error reading {path}: {e}")
        return default


# === Canonical rates and import batches ===

class RateStore:
    """
    Write sink for canonical rates, grouped by import batch.

    Layout:
        <root>/imports.json            ImportBatch records keyed by id
        <root>/rates/<batch_id>.json   rates belonging to one batch
    """

    def __init__(self, root: Optional[Union[str, Path]] = None):
        self.root = Path(root) if root else get_data_dir()
        self.rates_dir = self.root / "rates"
        self.imports_file = self.root / "imports.json"
        self._lock = threading.RLock()

    def _load_batches(self) -> Dict[str, ImportBatch]:
        raw = read_json(self.imports_file, {})
        return {k: ImportBatch.model_validate(v) for k, v in raw.items()}

    def _save_batches(self, batches: Dict[str, ImportBatch]) -> None:
        atomic_write_json(self.imports_file, {k: v.model_dump(mode='json') for k, v in batches.items()})

    def _rates_file(self, batch_id: str) -> Path:
        return self.rates_dir / f"{batch_id}.json"

    # --- batches ---

    def save_batch(self, batch: ImportBatch) -> ImportBatch:
        """Insert or replace an import batch record."""
        with self._lock:
            batches = self._load_batches()
            batches[batch.id] = batch
            self._save_batches(batches)
        return batch

    def get_batch(self, batch_id: str) -> Optional[ImportBatch]:
        with self._lock:
            return self._load_batches().get(batch_id)

    def list_batches(self, provider: Optional[Union[ProviderCode, str]] = None) -> List[ImportBatch]:
        """Import batches, newest first."""
        with self._lock:
            batches = list(self._load_batches().values())
        if provider is not None:
            value = provider.value if isinstance(provider, ProviderCode) else provider
            batches = [b for b in batches if b.provider_code.value == value]
        return sorted(batches, key=lambda b: b.started_at, reverse=True)

    def find_by_hash(self, provider: ProviderCode, file_hash: str) -> Optional[ImportBatch]:
        for batch in self.list_batches(provider):
            if batch.file_hash == file_hash:
                return batch
        return None

    def latest_batch(self, provider: ProviderCode, contract_type: ContractType) -> Optional[ImportBatch]:
        for batch in self.list_batches(provider):
            if batch.contract_type == contract_type and batch.is_latest:
                return batch
        return None

    def supersede(self, provider: ProviderCode, contract_type: ContractType, keep_id: str) -> int:
        """Clear ``is_latest`` on every other batch for a provider/contract type."""
        with self._lock:
            batches = self._load_batches()
            count = 0
            for batch in batches.values():
                if (batch.provider_code == provider and batch.contract_type == contract_type
                        and batch.id != keep_id and batch.is_latest):
                    batch.is_latest = False
                    count += 1
            if count:
                self._save_batches(batches)
        if count:
            logger.info(f"Superseded {count} earlier {provider.value}/{contract_type.value} import(s)")
        return count

    # --- rates ---

    def replace_batch_rates(self, batch_id: str, rates: Iterable[CanonicalRate]) -> int:
        """
        Store the full set of rates for a batch, replacing any previous set.

        Rates are keyed by ``rate_key`` so one logical price point appears
        once per batch.
        """
        unique: Dict[str, CanonicalRate] = {}
        for rate in rates:
            unique[rate.rate_key] = rate
        with self._lock:
            atomic_write_json(
                self._rates_file(batch_id),
                [r.model_dump(mode='json') for r in unique.values()],
            )
        return len(unique)

    def rates_for_batch(self, batch_id: str) -> List[CanonicalRate]:
        """Query-by-batch, for verification."""
        with self._lock:
            raw = read_json(self._rates_file(batch_id), [])
        return [CanonicalRate.model_validate(r) for r in raw]

    def latest_rates(
        self,
        provider: Union[ProviderCode, str],
        contract_type: Optional[ContractType] = None,
    ) -> List[CanonicalRate]:
        """Rates from the latest batch per contract type."""
        rates: List[CanonicalRate] = []
        for batch in self.list_batches(provider):
            if not batch.is_latest:
                continue
            if contract_type is not None and batch.contract_type != contract_type:
                continue
            rates.extend(self.rates_for_batch(batch.id))
        return rates


# === Matching collaborators ===

class MatchStore:
    """
    Cache of vehicle matches keyed by source key.

    Inside ``deferred()`` upserts are held in memory and the file is written
    once when the block exits.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_data_dir() / "matches.json"
        self._lock = threading.RLock()
        self._pending: Optional[Dict[str, VehicleMatch]] = None
        self._dirty = False

    def _load(self) -> Dict[str, VehicleMatch]:
        if self._pending is not None:
            return self._pending
        raw = read_json(self.path, {})
        return {k: VehicleMatch.model_validate(v) for k, v in raw.items()}

    def _write(self, matches: Dict[str, VehicleMatch]) -> None:
        atomic_write_json(self.path, {k: v.model_dump(mode='json') for k, v in matches.items()})

    def get(self, source_key: str) -> Optional[VehicleMatch]:
        with self._lock:
            return self._load().get(source_key)

    def upsert(self, match: VehicleMatch) -> VehicleMatch:
        self.upsert_many([match])
        return match

    def upsert_many(self, matches: Iterable[VehicleMatch]) -> int:
        """Insert or replace matches with a single write."""
        with self._lock:
            current = self._load()
            count = 0
            for match in matches:
                current[match.source_key] = match
                count += 1
            if not count:
                return 0
            if self._pending is not None:
                self._dirty = True
            else:
                self._write(current)
        return count

    @contextmanager
    def deferred(self):
        """Hold upserts in memory until the block exits, then write once."""
        with self._lock:
            if self._pending is not None:
                yield self
                return
            self._pending = self._load()
            self._dirty = False
            try:
                yield self
            finally:
                pending, dirty = self._pending, self._dirty
                self._pending = None
                self._dirty = False
                if dirty:
                    self._write(pending)

    def list(self, provider: Optional[str] = None, status: Optional[MatchStatus] = None) -> List[VehicleMatch]:
        with self._lock:
            matches = list(self._load().values())
        if provider:
            matches = [m for m in matches if m.source_provider == provider]
        if status:
            matches = [m for m in matches if m.status == status]
        return matches

    def stats(self, provider: Optional[str] = None) -> Dict[str, int]:
        """Count of matches per status."""
        counts = {s.value: 0 for s in MatchStatus}
        for match in self.list(provider):
            counts[match.status.value] += 1
        return counts


class CapMapping(BaseModel):
    """A provider-curated identity for one derivative."""
    derivative_name: str
    cap_id: str
    cap_code: Optional[str] = None
    provider: Optional[str] = None


class CapMappingStore:
    """
    Exact identity mapping table keyed by normalized full derivative name.

    Populated from provider-confirmed data (e.g. scraped derivative pages).
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_data_dir() / "cap_mappings.json"
        self._lock = threading.RLock()

    @staticmethod
    def normalize(name: str) -> str:
        return ' '.join(name.upper().split())

    def _load(self) -> Dict[str, CapMapping]:
        raw = read_json(self.path, {})
        return {k: CapMapping.model_validate(v) for k, v in raw.items()}

    def lookup(self, derivative_name: Optional[str]) -> Optional[CapMapping]:
        if not derivative_name:
            return None
        with self._lock:
            return self._load().get(self.normalize(derivative_name))

    def add(self, mapping: CapMapping) -> None:
        self.add_many([mapping])

    def add_many(self, mappings: Iterable[CapMapping]) -> int:
        with self._lock:
            table = self._load()
            count = 0
            for mapping in mappings:
                table[self.normalize(mapping.derivative_name)] = mapping
                count += 1
            atomic_write_json(self.path, {k: v.model_dump(mode='json') for k, v in table.items()})
        return count


class ReferenceVehicle(BaseModel):
    """A canonical vehicle with a known CAP code."""
    cap_code: str
    manufacturer: str
    model: str
    variant: str = ""
    p11d_minor: Optional[int] = None


class ReferenceVehicleStore:
    """
    Read-mostly canonical vehicle reference set used by fuzzy matching.

    Inside ``snapshot()`` the set is read from disk once and served from
    memory.
    """

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_data_dir() / "reference_vehicles.json"
        self._lock = threading.RLock()
        self._snapshot: Optional[List[ReferenceVehicle]] = None

    def all(self) -> List[ReferenceVehicle]:
        with self._lock:
            if self._snapshot is not None:
                return list(self._snapshot)
            raw = read_json(self.path, [])
        return [ReferenceVehicle.model_validate(r) for r in raw]

    @contextmanager
    def snapshot(self):
        """Serve ``all()`` from a single read until the block exits."""
        with self._lock:
            if self._snapshot is not None:
                yield self
                return
            self._snapshot = self.all()
            try:
                yield self
            finally:
                self._snapshot = None

    def by_cap_code(self, cap_code: str) -> Optional[ReferenceVehicle]:
        for vehicle in self.all():
            if vehicle.cap_code == cap_code:
                return vehicle
        return None

    def candidates(
        self,
        manufacturer: str,
        key: Callable[[str], str] = str.upper,
        limit: int = 500,
    ) -> List[ReferenceVehicle]:
        """
        Vehicles of one manufacturer.

        Args:
            manufacturer: Manufacturer in the form ``key`` produces
            key: Normalizes each stored manufacturer before comparison
            limit: Maximum number of vehicles returned
        """
        found = []
        for vehicle in self.all():
            if key(vehicle.manufacturer) == manufacturer:
                found.append(vehicle)
                if len(found) >= limit:
                    break
        return found

    def add_many(self, vehicles: Iterable[ReferenceVehicle]) -> int:
        """Merge vehicles into the set, keyed by CAP code."""
        with self._lock:
            current = {v.cap_code: v for v in self.all()}
            count = 0
            for vehicle in vehicles:
                current[vehicle.cap_code] = vehicle
                count += 1
            atomic_write_json(self.path, [v.model_dump(mode='json') for v in current.values()])
            if self._snapshot is not None:
                self._snapshot = list(current.values())
        return count

    def refresh_from_rates(self, rates: Iterable[CanonicalRate]) -> int:
        """Seed the reference set from rates that already carry CAP codes."""
        vehicles = [
            ReferenceVehicle(
                cap_code=r.cap_code,
                manufacturer=r.manufacturer,
                model=r.model,
                variant=r.variant,
                p11d_minor=r.p11d_minor,
            )
            for r in rates if r.cap_code
        ]
        return self.add_many(vehicles)


class MatchAuditLog:
    """Append-only JSON-lines record of every match attempt."""

    def __init__(self, path: Optional[Union[str, Path]] = None):
        self.path = Path(path) if path else get_data_dir() / "match_audit.jsonl"
        self._lock = threading.Lock()

    def record(self, source_text: str, match: VehicleMatch) -> Dict[str, Any]:
        entry = {
            'at': datetime.now(timezone.utc).isoformat(),
            'source_text': source_text,
            'source_key': match.source_key,
            'provider': match.source_provider,
            'cap_code': match.cap_code,
            'confidence': match.confidence,
            'method': match.method.value,
            'status': match.status.value,
        }
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'a') as f:
                f.write(json.dumps(entry) + '\n')
        return entry

    def entries(self) -> List[Dict[str, Any]]:
        if not self.path.exists():
            return []
        with self._lock, open(self.path) as f:
            return [json.loads(line) for line in f if line.strip()]
