"""
Batch queue processing.

process_batch runs acquisition jobs (single quotes, per-model scrapes)
through a worker with pacing, bounded retries for transient failures and
partial-failure accounting. ScrapeQueue persists quote jobs per provider so
interrupted runs can resume.
"""

import hashlib
import json
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import BaseModel, Field

from .config import get_data_dir
from .errors import SessionExpired, TransientNetworkError
from .rate_limiter import RateLimitPolicy
from .schema import BatchResult, ItemOutcome, utc_now
from .storage import atomic_write_json, read_json

logger = logging.getLogger(__name__)

DEFAULT_MAX_ERROR_SAMPLES = 20

ProgressCallback = Callable[[int, int, Any], None]


class StopSignal:
    """External cancellation, honoured between items."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def stop(self, reason: str = "stop requested") -> None:
        self.reason = reason
        self._event.set()

    def is_set(self) -> bool:
        return self._event.is_set()

    def clear(self) -> None:
        self.reason = None
        self._event.clear()


def run_with_retry(
    item: Any,
    worker: Callable[[Any], Any],
    policy: RateLimitPolicy,
) -> tuple:
    """
    Call ``worker(item)``, retrying TransientNetworkError with backoff.

    Returns:
        (value, attempts)

    Raises:
        TransientNetworkError: once ``policy.max_retries`` retries are used up
        Any other exception from the worker, unchanged
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            return worker(item), attempt
        except TransientNetworkError as e:
            if attempt > policy.max_retries:
                e.attempts = attempt
                raise
            logger.warning(f"Transient failure (attempt {attempt}/{policy.max_retries + 1}): {e}")
            policy.sleep_backoff(attempt)


def _describe(item: Any) -> str:
    label = getattr(item, 'label', None)
    if label:
        return str(label)
    return str(item)[:80]


def process_batch(
    items: Sequence[Any],
    worker: Callable[[Any], Any],
    policy: Optional[RateLimitPolicy] = None,
    on_progress: Optional[ProgressCallback] = None,
    stop: Optional[StopSignal] = None,
    concurrency: int = 1,
    max_error_samples: int = DEFAULT_MAX_ERROR_SAMPLES,
) -> BatchResult:
    """
    Process items through a worker with pacing and partial-failure semantics.

    One failing item never aborts the batch, except SessionExpired, which
    stops everything: further calls would fail the same way.

    Args:
        items: Work items, processed in submission order
        worker: Callable doing the full multi-step protocol for one item
        policy: Pacing and retry policy (no pacing, no retries if omitted)
        on_progress: Called with (completed, total, last_result)
        stop: Checked between items
        concurrency: Parallel workers; 1 for providers with session state
        max_error_samples: Bound on ``sample_errors``

    Returns:
        BatchResult with counts, successful results and a bounded error sample
    """
    policy = policy or RateLimitPolicy.immediate()
    items = list(items)
    result = BatchResult(total=len(items))

    if concurrency > 1:
        outcomes = _run_concurrent(items, worker, policy, on_progress, stop, concurrency, result)
    else:
        outcomes = _run_sequential(items, worker, policy, on_progress, stop, result)

    for outcome in outcomes:
        result.outcomes.append(outcome)
        result.attempted += 1
        if outcome.ok:
            result.success_count += 1
            result.results.append(outcome.value)
        else:
            result.error_count += 1
            if len(result.sample_errors) < max_error_samples:
                result.sample_errors.append(outcome.error)

    logger.info(f"Batch finished: {result.summary}")
    return result


def _attempt(index: int, item: Any, worker: Callable[[Any], Any], policy: RateLimitPolicy) -> ItemOutcome:
    try:
        value, attempts = run_with_retry(item, worker, policy)
        return ItemOutcome(index=index, ok=True, value=value, attempts=attempts)
    except SessionExpired:
        raise
    except TransientNetworkError as e:
        logger.error(f"Error processing {_describe(item)}: {e}")
        return ItemOutcome(
            index=index, ok=False, attempts=e.attempts,
            error=f"Item {index + 1}: {e}", error_type=type(e).__name__,
        )
    except Exception as e:
        logger.error(f"Error processing {_describe(item)}: {e}")
        return ItemOutcome(
            index=index, ok=False,
            error=f"Item {index + 1}: {e}", error_type=type(e).__name__,
        )


def _abort(result: BatchResult, index: int, error: SessionExpired) -> ItemOutcome:
    result.aborted = True
    result.abort_reason = str(error)
    logger.error(f"Session expired at item {index + 1}, aborting batch: {error}")
    return ItemOutcome(
        index=index, ok=False,
        error=f"Item {index + 1}: {error}", error_type=type(error).__name__,
    )


def _run_sequential(items, worker, policy, on_progress, stop, result) -> List[ItemOutcome]:
    outcomes: List[ItemOutcome] = []
    for index, item in enumerate(items):
        if stop is not None and stop.is_set():
            result.stopped = True
            logger.info(f"Stop requested after {index} of {len(items)} items")
            break
        if index > 0:
            policy.wait()

        try:
            outcome = _attempt(index, item, worker, policy)
        except SessionExpired as e:
            outcomes.append(_abort(result, index, e))
            break

        outcomes.append(outcome)
        if on_progress:
            on_progress(len(outcomes), len(items), outcome.value if outcome.ok else None)
    return outcomes


def _run_concurrent(items, worker, policy, on_progress, stop, concurrency, result) -> List[ItemOutcome]:
    abort = threading.Event()
    progress_lock = threading.Lock()
    completed = [0]
    slots: Dict[int, ItemOutcome] = {}

    def task(index: int, item: Any) -> None:
        if abort.is_set() or (stop is not None and stop.is_set()):
            return
        policy.throttle(policy.next_delay())
        if abort.is_set():
            return
        try:
            outcome = _attempt(index, item, worker, policy)
        except SessionExpired as e:
            with progress_lock:
                if not abort.is_set():
                    abort.set()
                    slots[index] = _abort(result, index, e)
            return
        with progress_lock:
            slots[index] = outcome
            completed[0] += 1
            if on_progress:
                on_progress(completed[0], len(items), outcome.value if outcome.ok else None)

    with ThreadPoolExecutor(max_workers=concurrency) as executor:
        for index, item in enumerate(items):
            executor.submit(task, index, item)

    if stop is not None and stop.is_set() and len(slots) < len(items):
        result.stopped = True
    # Report in submission order
    return [slots[i] for i in sorted(slots)]


# === Persistent quote queue ===

class Priority(int, Enum):
    """Queue priority levels."""
    HIGH = 1
    NORMAL = 2
    LOW = 3


class QueueItemStatus(str, Enum):
    """Status of a queue item."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"


class QueueItem(BaseModel):
    """A single acquisition job."""
    provider: str
    payload: Dict[str, Any]

    priority: Priority = Priority.NORMAL
    status: QueueItemStatus = QueueItemStatus.PENDING

    added_at: datetime = Field(default_factory=utc_now)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    attempt_count: int = 0
    max_attempts: int = 3
    last_error: Optional[str] = None
    result: Optional[Dict[str, Any]] = None

    @property
    def unique_key(self) -> str:
        data = json.dumps({'provider': self.provider, 'payload': self.payload}, sort_keys=True, default=str)
        return hashlib.md5(data.encode()).hexdigest()[:12]

    @property
    def label(self) -> str:
        return self.payload.get('label') or self.unique_key

    def mark_in_progress(self):
        """Mark item as being processed."""
        self.status = QueueItemStatus.IN_PROGRESS
        self.started_at = datetime.now(timezone.utc)
        self.attempt_count += 1

    def mark_completed(self, result: Optional[Dict[str, Any]] = None):
        """Mark item as successfully completed."""
        self.status = QueueItemStatus.COMPLETED
        self.completed_at = datetime.now(timezone.utc)
        self.result = result

    def mark_failed(self, error: str):
        """Mark item as failed; it goes back to pending until attempts run out."""
        self.last_error = error
        if self.attempt_count >= self.max_attempts:
            self.status = QueueItemStatus.FAILED
        else:
            self.status = QueueItemStatus.PENDING

    def release(self):
        """Return an item that was never attempted to the pending pool."""
        self.status = QueueItemStatus.PENDING
        self.started_at = None
        self.attempt_count = max(0, self.attempt_count - 1)


class ScrapeQueue:
    """
    Persistent per-provider queue of acquisition jobs.

    Completed and failed items stay in the file for inspection until
    ``clear`` is called. Items left in progress by an interrupted run are
    reset to pending on load.
    """

    def __init__(self, queue_dir: Optional[Union[str, Path]] = None):
        """
        Args:
            queue_dir: Directory for queue files. Defaults to <data dir>/queue
        """
        self.queue_dir = Path(queue_dir) if queue_dir else get_data_dir() / "queue"
        self._lock = threading.RLock()
        self._items: Dict[str, QueueItem] = {}
        self._load_queue()

    def _get_queue_file(self, provider: str) -> Path:
        return self.queue_dir / f"queue_{provider}.json"

    def _load_queue(self):
        if not self.queue_dir.exists():
            return
        for queue_file in self.queue_dir.glob("queue_*.json"):
            data = read_json(queue_file, {})
            for item_data in data.get('items', []):
                try:
                    item = QueueItem.model_validate(item_data)
                except ValueError as e:
                    logger.warning(f"Skipping malformed queue item in {queue_file}: {e}")
                    continue
                if item.status == QueueItemStatus.IN_PROGRESS:
                    item.status = QueueItemStatus.PENDING
                self._items[item.unique_key] = item

    def _save_queue(self, provider: str):
        items = [i for i in self._items.values() if i.provider == provider]
        atomic_write_json(self._get_queue_file(provider), {
            'provider': provider,
            'updated_at': datetime.now(timezone.utc).isoformat(),
            'items': [item.model_dump(mode='json') for item in items],
        })

    def add(
        self,
        provider: str,
        payload: Dict[str, Any],
        priority: Priority = Priority.NORMAL,
        max_attempts: int = 3,
    ) -> QueueItem:
        """Add a job, or return the existing one with the same payload."""
        item = QueueItem(provider=provider, payload=payload, priority=priority, max_attempts=max_attempts)
        with self._lock:
            existing = self._items.get(item.unique_key)
            if existing is not None:
                if priority.value < existing.priority.value:
                    existing.priority = priority
                    self._save_queue(provider)
                return existing
            self._items[item.unique_key] = item
            self._save_queue(provider)
        return item

    def add_batch(self, provider: str, payloads: List[Dict[str, Any]], priority: Priority = Priority.NORMAL) -> int:
        """Add many jobs. Returns the number newly queued."""
        added = 0
        with self._lock:
            for payload in payloads:
                item = QueueItem(provider=provider, payload=payload, priority=priority)
                if item.unique_key not in self._items:
                    self._items[item.unique_key] = item
                    added += 1
            if added:
                self._save_queue(provider)
        return added

    def pending(self, provider: Optional[str] = None) -> List[QueueItem]:
        """Pending items, highest priority then oldest first."""
        with self._lock:
            items = [
                item for item in self._items.values()
                if item.status == QueueItemStatus.PENDING
                and (provider is None or item.provider == provider)
            ]
        return sorted(items, key=lambda x: (x.priority.value, x.added_at))

    def get_next(self, provider: Optional[str] = None) -> Optional[QueueItem]:
        """Claim the next pending item."""
        with self._lock:
            pending = self.pending(provider)
            if not pending:
                return None
            item = pending[0]
            item.mark_in_progress()
            self._save_queue(item.provider)
            return item

    def complete(self, item: QueueItem, result: Optional[Dict[str, Any]] = None):
        with self._lock:
            item.mark_completed(result)
            self._save_queue(item.provider)

    def fail(self, item: QueueItem, error: str):
        with self._lock:
            item.mark_failed(error)
            self._save_queue(item.provider)

    def get_pending_count(self, provider: Optional[str] = None) -> int:
        return len(self.pending(provider))

    def get_stats(self, provider: Optional[str] = None) -> Dict[str, int]:
        """Counts per status, plus total."""
        stats = {status.value: 0 for status in QueueItemStatus}
        stats['total'] = 0
        with self._lock:
            for item in self._items.values():
                if provider and item.provider != provider:
                    continue
                stats[item.status.value] += 1
                stats['total'] += 1
        return stats

    def clear(self, provider: Optional[str] = None):
        """Remove items and their queue files."""
        with self._lock:
            if provider:
                self._items = {k: v for k, v in self._items.items() if v.provider != provider}
                queue_file = self._get_queue_file(provider)
                if queue_file.exists():
                    queue_file.unlink()
            else:
                self._items.clear()
                if self.queue_dir.exists():
                    for queue_file in self.queue_dir.glob("queue_*.json"):
                        queue_file.unlink()

    def process(
        self,
        provider: str,
        worker: Callable[[Dict[str, Any]], Any],
        policy: Optional[RateLimitPolicy] = None,
        on_progress: Optional[ProgressCallback] = None,
        stop: Optional[StopSignal] = None,
        limit: Optional[int] = None,
    ) -> BatchResult:
        """
        Run pending items for a provider through ``process_batch``.

        Items run one at a time: queued jobs share the provider session.
        Items not attempted (stop or session expiry) go back to pending.
        """
        items = self.pending(provider)
        if limit is not None:
            items = items[:limit]
        with self._lock:
            for item in items:
                item.mark_in_progress()
            self._save_queue(provider)

        result = process_batch(
            items,
            lambda item: worker(item.payload),
            policy=policy,
            on_progress=on_progress,
            stop=stop,
        )

        attempted = {o.index: o for o in result.outcomes}
        with self._lock:
            for index, item in enumerate(items):
                outcome = attempted.get(index)
                if outcome is None:
                    item.release()
                elif outcome.ok:
                    value = outcome.value
                    item.mark_completed(value.model_dump(mode='json') if isinstance(value, BaseModel) else None)
                elif outcome.error_type == SessionExpired.__name__:
                    # Not the item's fault; retry after re-authentication
                    item.release()
                else:
                    item.mark_failed(outcome.error or "unknown error")
            self._save_queue(provider)
        return result
