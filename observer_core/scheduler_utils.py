import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from observer_core.image_utils import (
    DEFAULT_REGISTRY,
    clean_digest,
    is_default_registry,
    parse_image_ref,
)
from observer_core.models import ImageReference, InventoryRecord


EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)

POLICY_SEQUENTIAL = "sequential"
POLICY_PARALLEL = "parallel"


def _check_time_key(record: InventoryRecord) -> datetime:
    value = record.last_update_check
    if value is None:
        return EPOCH
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def pick_next_records(records: List[InventoryRecord], limit: int) -> List[InventoryRecord]:
    """Return the ``limit`` least recently checked records, never-checked first.

    The sort is stable, so ties keep their input order.
    """
    if limit <= 0:
        return []
    return sorted(records, key=_check_time_key)[:limit]


def record_image_ref(record: InventoryRecord) -> ImageReference:
    prefix = '' if is_default_registry(record.registry) else f"{record.registry}/"
    value = f"{prefix}{record.repo}"
    if record.tag:
        value += f":{record.tag}"
    if record.digest:
        value += f"@{record.digest}"
    return parse_image_ref(value)


def record_registry_host(record: InventoryRecord) -> str:
    if is_default_registry(record.registry):
        return DEFAULT_REGISTRY
    return record.registry.lower()


def check_record_update(record: InventoryRecord, resolver, now: Optional[datetime] = None) -> InventoryRecord:
    """Compare a record's local digest with the registry's current digest.

    ``last_update_check`` is set to the check start time in every outcome,
    including failures.
    """
    now = now or datetime.now(timezone.utc)
    try:
        result = resolver.get_remote_digest(record_image_ref(record))
        if not result.remote_digest:
            return replace(record, last_update_check=now, update_available=None,
                           update_message=result.error or "unknown")
        local = clean_digest(record.digest)
        if not local:
            return replace(record, last_update_check=now, update_available=None,
                           update_message="local digest missing")
        update_available = local != clean_digest(result.remote_digest)
        return replace(
            record,
            last_update_check=now,
            update_available=update_available,
            update_message="digest changed" if update_available else "up to date",
        )
    except Exception as e:
        return replace(record, last_update_check=now, update_available=None,
                       update_message=str(e) or "registry error")


def merge_updates(records: List[InventoryRecord], updates: List[InventoryRecord]) -> List[InventoryRecord]:
    """Apply check results to the records with the same id.

    Only the check fields are taken from an update. Records without an update
    are returned as is, and updates whose id is gone are dropped.
    """
    by_id: Dict[str, InventoryRecord] = {u.id: u for u in updates}
    merged = []
    for record in records:
        update = by_id.get(record.id)
        if update is None:
            merged.append(record)
            continue
        merged.append(replace(
            record,
            last_update_check=update.last_update_check,
            update_available=update.update_available,
            update_message=update.update_message,
        ))
    return merged


class SequentialPolicy:
    """One registry call at a time, in selection order."""

    name = POLICY_SEQUENTIAL

    def run(self, records: List[InventoryRecord], check: Callable[[InventoryRecord], InventoryRecord],
            cancel_event: Optional[threading.Event] = None) -> List[InventoryRecord]:
        results = []
        for record in records:
            if cancel_event is not None and cancel_event.is_set():
                break
            results.append(check(record))
        return results


class BoundedParallelPolicy:
    """Concurrent checks with a cap on in-flight requests per registry host."""

    name = POLICY_PARALLEL

    def __init__(self, max_workers: int = 4, max_per_host: int = 2,
                 host_of: Callable[[InventoryRecord], str] = record_registry_host):
        self.max_workers = max(1, max_workers)
        self.max_per_host = max(1, max_per_host)
        self.host_of = host_of
        self._lock = threading.Lock()
        self._host_slots: Dict[str, threading.BoundedSemaphore] = {}

    def _slot(self, host: str) -> threading.BoundedSemaphore:
        with self._lock:
            slot = self._host_slots.get(host)
            if slot is None:
                slot = threading.BoundedSemaphore(self.max_per_host)
                self._host_slots[host] = slot
            return slot

    def run(self, records: List[InventoryRecord], check: Callable[[InventoryRecord], InventoryRecord],
            cancel_event: Optional[threading.Event] = None) -> List[InventoryRecord]:
        def task(record):
            with self._slot(self.host_of(record)):
                if cancel_event is not None and cancel_event.is_set():
                    return None
                return check(record)

        if not records:
            return []
        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            futures = [pool.submit(task, r) for r in records]
            results = [f.result() for f in futures]
        # Results keep selection order
        return [r for r in results if r is not None]


def build_policy(name: str, max_workers: int = 4, max_per_host: int = 2):
    if name == POLICY_PARALLEL:
        return BoundedParallelPolicy(max_workers=max_workers, max_per_host=max_per_host)
    return SequentialPolicy()
