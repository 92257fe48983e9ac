"""
Replication State Store — last replicated versions per target key.

Persisted as a single JSON document, rewritten atomically on every
change so a crash never leaves a half-written file. Records are only
removed by an explicit decommission: a missing record must mean "never
replicated", never "forgotten".

Storage layout:
    ~/.crossvault/state.json
    {"schema_version": 1, "records": {"<target key>": {...record...}}}

Each target key also has an exclusive lease held for the duration of a
reconciliation pass.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional

from pydantic import ValidationError

from .errors import AlreadyInProgress, StateError
from .models import ReplicationRecord, TargetKey

logger = logging.getLogger("crossvault.state_store")

SCHEMA_VERSION = 1


class ReplicationStateStore:
    """Durable ReplicationRecords plus per-key leases.

    Args:
        path: JSON state file. ``None`` keeps records in memory only.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path).expanduser() if path is not None else None
        self._io_lock = threading.Lock()
        self._leases_lock = threading.Lock()
        self._leases: dict[TargetKey, threading.Lock] = {}
        self._records: dict[TargetKey, ReplicationRecord] = self._load()

    @property
    def path(self) -> Optional[Path]:
        return self._path

    def _load(self) -> dict[TargetKey, ReplicationRecord]:
        if self._path is None or not self._path.exists():
            return {}
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            records: dict[TargetKey, ReplicationRecord] = {}
            for raw in data.get("records", {}).values():
                record = ReplicationRecord.model_validate(raw)
                records[record.target_key] = record
        except (json.JSONDecodeError, ValidationError, ValueError, OSError) as exc:
            raise StateError(f"Cannot load replication state {self._path}: {exc}") from exc
        logger.debug("Loaded %d replication record(s) from %s", len(records), self._path)
        return records

    def _save(self) -> None:
        if self._path is None:
            return
        payload = {
            "schema_version": SCHEMA_VERSION,
            "records": {
                str(key): record.model_dump(mode="json")
                for key, record in sorted(self._records.items(), key=lambda kv: str(kv[0]))
            },
        }
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        tmp.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp, self._path)

    def get(self, key: TargetKey) -> Optional[ReplicationRecord]:
        with self._io_lock:
            return self._records.get(key)

    def put(self, record: ReplicationRecord) -> None:
        """Insert or replace the record for ``record.target_key``."""
        with self._io_lock:
            self._records[record.target_key] = record
            self._save()

    def records(self) -> list[ReplicationRecord]:
        with self._io_lock:
            return [self._records[k] for k in sorted(self._records, key=str)]

    def decommission(self, key: TargetKey) -> bool:
        """Explicitly forget a target. Returns False if no record existed."""
        with self._io_lock:
            if self._records.pop(key, None) is None:
                return False
            self._save()
        logger.info("Decommissioned replication record %s", key)
        return True

    @contextmanager
    def lease(self, key: TargetKey, blocking: bool = True, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the exclusive lease on ``key`` for the body of the block.

        Args:
            key: Target key to serialize on.
            blocking: Wait for a concurrent holder; otherwise fail fast.
            timeout: Maximum wait in seconds when blocking.

        Raises:
            AlreadyInProgress: The lease is held and could not be acquired.
        """
        with self._leases_lock:
            lock = self._leases.setdefault(key, threading.Lock())
        if blocking:
            acquired = lock.acquire(timeout=-1 if timeout is None else timeout)
        else:
            acquired = lock.acquire(blocking=False)
        if not acquired:
            raise AlreadyInProgress(f"Reconciliation of {key} already in progress")
        try:
            yield
        finally:
            lock.release()
