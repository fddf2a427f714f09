import json
import os
import threading
import time
import fcntl
from copy import deepcopy
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from observer_core.models import InventoryRecord, InventoryState


BACKUP_PREFIX = 'dockobserver_state-'

_RECORD_FIELDS = (
    ('id', 'id'),
    ('repo', 'repo'),
    ('registry', 'registry'),
    ('tag', 'tag'),
    ('digest', 'digest'),
    ('display_name', 'displayName'),
    ('source', 'source'),
    ('stack', 'stack'),
    ('compose_file', 'composeFile'),
    ('service', 'service'),
    ('status', 'status'),
    ('last_seen', 'lastSeen'),
    ('last_update_check', 'lastUpdateCheck'),
    ('update_available', 'updateAvailable'),
    ('update_message', 'updateMessage'),
)
_TIMESTAMP_FIELDS = {'last_seen', 'last_update_check'}


class StateStoreError(RuntimeError):
    """The inventory state could not be persisted."""


def format_timestamp(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.isoformat()


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse ISO-8601; naive values are taken as UTC."""
    if not value:
        return None
    if not isinstance(value, str):
        raise ValueError(f"Invalid timestamp: {value!r}")
    dt = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def record_to_dict(record: InventoryRecord) -> Dict[str, Any]:
    data = {}
    for attr, key in _RECORD_FIELDS:
        value = getattr(record, attr)
        data[key] = format_timestamp(value) if attr in _TIMESTAMP_FIELDS else value
    return data


def record_from_dict(data: Dict[str, Any]) -> InventoryRecord:
    if not isinstance(data, dict):
        raise ValueError(f"Invalid inventory record: {data!r}")
    kwargs = {}
    for attr, key in _RECORD_FIELDS:
        value = data.get(key)
        kwargs[attr] = parse_timestamp(value) if attr in _TIMESTAMP_FIELDS else value
    if not kwargs['id'] or not kwargs['repo']:
        raise ValueError(f"Invalid inventory record: {data!r}")
    return InventoryRecord(**kwargs)


def state_to_dict(state: InventoryState) -> Dict[str, Any]:
    return {
        'records': [record_to_dict(r) for r in state.records],
        'lastRefresh': format_timestamp(state.last_refresh),
    }


def state_from_dict(data: Dict[str, Any]) -> InventoryState:
    if not isinstance(data, dict):
        raise ValueError("State file must hold a JSON object")
    records = data.get('records') or []
    if not isinstance(records, list):
        raise ValueError("State records must be a list")
    return InventoryState(
        records=[record_from_dict(r) for r in records],
        last_refresh=parse_timestamp(data.get('lastRefresh')),
    )


def _list_backups(backup_dir: str):
    try:
        backups = [
            os.path.join(backup_dir, f)
            for f in os.listdir(backup_dir)
            if f.startswith(BACKUP_PREFIX) and f.endswith('.json')
        ]
    except OSError:
        return []
    backups.sort(key=lambda p: os.path.getmtime(p), reverse=True)
    return backups


def _prune_state_backups(backup_dir: str, keep: int, logger) -> None:
    for path in _list_backups(backup_dir)[keep:]:
        try:
            os.remove(path)
        except OSError as e:
            logger.debug(f"Unable to remove old state backup {path}: {e}")


def save_state(state: InventoryState, state_file: str, state_lock_file: Optional[str],
               state_backup_dir: Optional[str], state_backup_count: int, logger) -> None:
    """Atomically write the state file and a rotated timestamped backup."""
    data = json.dumps(state_to_dict(state), indent=2)
    state_dir = os.path.dirname(state_file) or '.'

    def write_within_context():
        tmp_path = os.path.join(state_dir, f'.tmp_state_{int(time.time() * 1000)}_{threading.get_ident()}.json')
        try:
            with open(tmp_path, 'w') as tf:
                tf.write(data)
                tf.flush()
                os.fsync(tf.fileno())
            os.replace(tmp_path, state_file)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
        try:
            dir_fd = os.open(state_dir, os.O_DIRECTORY)
            try:
                os.fsync(dir_fd)
            finally:
                os.close(dir_fd)
        except OSError:
            pass
        if state_backup_count <= 0:
            return
        backup_root = state_backup_dir or state_dir
        ts = datetime.now().strftime('%Y%m%d%H%M%S%f')
        backup_path = os.path.join(backup_root, f'{BACKUP_PREFIX}{ts}.json')
        try:
            os.makedirs(backup_root, exist_ok=True)
            with open(backup_path, 'w') as bf:
                bf.write(data)
            _prune_state_backups(backup_root, state_backup_count, logger)
        except OSError as e:
            logger.debug(f"Unable to write state backup: {e}")

    try:
        os.makedirs(state_dir, exist_ok=True)
        if state_lock_file:
            with open(state_lock_file, 'w') as lock_fd:
                fcntl.flock(lock_fd.fileno(), fcntl.LOCK_EX)
                try:
                    write_within_context()
                finally:
                    fcntl.flock(lock_fd.fileno(), fcntl.LOCK_UN)
        else:
            write_within_context()
    except OSError as e:
        raise StateStoreError(f"Failed to write state to {state_file}: {e}") from e


def load_state(state_file: str, state_backup_dir: Optional[str], logger,
               counter_state_restored=None) -> InventoryState:
    """Load the state file; a missing file gives an empty state.

    A corrupt file falls back to the newest readable backup, then to empty.
    """
    def _load_from_path(path: str) -> Optional[InventoryState]:
        try:
            with open(path, 'r') as f:
                return state_from_dict(json.load(f))
        except (OSError, ValueError, TypeError, KeyError) as e:
            logger.warning(f"Failed loading state from {path}: {e}")
            return None

    if not os.path.exists(state_file):
        logger.info(f"No state file at {state_file}; starting with empty inventory")
        return InventoryState()
    state = _load_from_path(state_file)
    if state is not None:
        return state

    backup_dir = state_backup_dir or (os.path.dirname(state_file) or '.')
    for path in _list_backups(backup_dir):
        state = _load_from_path(path)
        if state is not None:
            logger.info(f"Loaded state from backup: {path}")
            if counter_state_restored is not None:
                counter_state_restored.inc()
            return state
    logger.warning("No readable state backup; starting with empty inventory")
    return InventoryState()


class StateStore:
    """Holds the current inventory snapshot and its on-disk copy.

    ``get`` hands out a copy, so readers never observe a half-applied write.
    ``save`` persists a new snapshot and only then makes it current.
    """

    def __init__(self, state_file: str, logger, state_backup_dir: Optional[str] = None,
                 state_backup_count: int = 5, counter_state_restored=None):
        self.state_file = state_file
        self.state_lock_file = state_file + '.lock'
        self.state_backup_dir = state_backup_dir
        self.state_backup_count = state_backup_count
        self.logger = logger
        self.counter_state_restored = counter_state_restored
        self._state = InventoryState()
        self._lock = threading.Lock()

    def load(self) -> InventoryState:
        state = load_state(self.state_file, self.state_backup_dir, self.logger, self.counter_state_restored)
        with self._lock:
            self._state = state
        return self.get()

    def get(self) -> InventoryState:
        with self._lock:
            return deepcopy(self._state)

    def save(self, state: InventoryState) -> None:
        save_state(
            state,
            self.state_file,
            self.state_lock_file,
            self.state_backup_dir,
            self.state_backup_count,
            self.logger,
        )
        with self._lock:
            self._state = deepcopy(state)
