"""Drift history storage.

Two backends behind one protocol:

- ``MemoryHistoryStore``: append-only list; many concurrent readers,
  serialized writers.
- ``FileHistoryStore``: a single JSON document
  ``{"events": [...], "stats": {...}}`` rewritten whole (tmp file, then
  rename) on every append. A missing file is an empty history. All
  operations are serialized by one lock.

Statistics are always recomputed from the (filtered) event window on read;
the ``stats`` block in the file is informational.
"""

from __future__ import annotations

import json
import threading
from collections import Counter
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from driftguard.errors import FatalSetupError, HistoryError
from driftguard.models import DriftEvent, DriftHistory, DriftStats, DriftStatus, as_utc


@runtime_checkable
class HistoryStore(Protocol):
    """Protocol for drift history backends."""

    def store(self, event: DriftEvent) -> None: ...

    def store_many(self, events: Iterable[DriftEvent]) -> None: ...

    def get_history(self, since: datetime | None = None) -> DriftHistory:
        """Events with ``timestamp >= since`` (all if None) plus their stats."""
        ...

    def clear(self) -> None: ...


def compute_stats(events: list[DriftEvent]) -> DriftStats:
    """Derive statistics from an event window."""
    if not events:
        return DriftStats()

    remediated = sum(
        1 for e in events
        if e.remediation is not None and e.remediation.status == DriftStatus.REMEDIATED
    )
    timestamps = [e.timestamp for e in events]
    return DriftStats(
        total_events=len(events),
        events_by_type=dict(Counter(str(e.type) for e in events)),
        events_by_severity=dict(Counter(str(e.severity) for e in events)),
        remediation_success_rate=remediated / len(events),
        first_event=min(timestamps),
        last_event=max(timestamps),
    )


def _window(events: Iterable[DriftEvent], since: datetime | None) -> DriftHistory:
    if since is None:
        filtered = list(events)
    else:
        since = as_utc(since)
        filtered = [e for e in events if as_utc(e.timestamp) >= since]
    return DriftHistory(events=filtered, stats=compute_stats(filtered))


class _ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._readers:
                self._cond.wait()
            yield


class MemoryHistoryStore:
    """In-process drift history."""

    def __init__(self) -> None:
        self._events: list[DriftEvent] = []
        self._lock = _ReadWriteLock()

    def store(self, event: DriftEvent) -> None:
        with self._lock.write():
            self._events.append(event)

    def store_many(self, events: Iterable[DriftEvent]) -> None:
        batch = list(events)
        with self._lock.write():
            self._events.extend(batch)

    def get_history(self, since: datetime | None = None) -> DriftHistory:
        with self._lock.read():
            return _window(self._events, since)

    def clear(self) -> None:
        with self._lock.write():
            self._events = []


class FileHistoryStore:
    """JSON-file drift history. Every write rewrites the whole file."""

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)
        self._lock = threading.Lock()

    @property
    def path(self) -> Path:
        return self._path

    def store(self, event: DriftEvent) -> None:
        self.store_many([event])

    def store_many(self, events: Iterable[DriftEvent]) -> None:
        batch = list(events)
        if not batch:
            return
        with self._lock:
            current = self._read_all()
            current.extend(batch)
            self._write_all(current)

    def get_history(self, since: datetime | None = None) -> DriftHistory:
        with self._lock:
            return _window(self._read_all(), since)

    def clear(self) -> None:
        with self._lock:
            self._path.unlink(missing_ok=True)

    def _read_all(self) -> list[DriftEvent]:
        if not self._path.exists():
            return []
        try:
            text = self._path.read_text(encoding="utf-8")
        except OSError as exc:
            raise HistoryError(f"Cannot read drift history {self._path}: {exc}") from exc
        if not text.strip():
            return []
        try:
            data = json.loads(text)
            return DriftHistory.model_validate(data).events
        except (json.JSONDecodeError, ValidationError) as exc:
            raise HistoryError(f"Corrupt drift history file {self._path}: {exc}") from exc

    def _write_all(self, events: list[DriftEvent]) -> None:
        """Atomic write: write to tmp, then rename."""
        history = DriftHistory(events=events, stats=compute_stats(events))
        tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            tmp_path.write_text(
                json.dumps(history.model_dump(mode="json"), indent=2),
                encoding="utf-8",
            )
            tmp_path.replace(self._path)
        except OSError as exc:
            raise HistoryError(f"Cannot write drift history {self._path}: {exc}") from exc


def open_history_store(
    store_type: str = "memory",
    path: str | Path | None = None,
) -> HistoryStore:
    """Open a history backend.

    Raises:
        FatalSetupError: Unknown type, missing path, or a path that cannot
            hold the history file. A corrupt existing file raises
            ``HistoryError``.
    """
    if store_type == "memory":
        return MemoryHistoryStore()
    if store_type != "file":
        raise FatalSetupError(f"Unsupported history store type: {store_type}")
    if path is None:
        raise FatalSetupError("File history store requires a path")

    target = Path(path)
    if target.is_dir():
        raise FatalSetupError(f"History path is a directory: {target}")
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise FatalSetupError(f"Cannot create history directory {target.parent}: {exc}") from exc

    store = FileHistoryStore(target)
    store.get_history()
    return store
