"""Audit records and the hash-chained audit log.

Engine operations (remediation, fleet sync) never write audit entries
themselves; they return ``AuditRecord`` values built with ``build_record``.
Callers that want durable audit persist those values with ``AuditLogger``.

Each log entry is a JSON line containing the record plus:
- prev_hash: the previous entry's entry_hash (GENESIS_HASH for the first)
- entry_hash: SHA-256 over the entry without its own entry_hash

Modifying or deleting any entry breaks the chain, which ``verify_log``
detects.
"""

from __future__ import annotations

import hashlib
import json
import threading
import uuid
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from driftguard.errors import DriftGuardError
from driftguard.models import AuditRecord

GENESIS_HASH = "0" * 64
_CHAIN_FIELDS = ("prev_hash", "entry_hash")


class AuditError(DriftGuardError):
    """The audit log cannot be read or is corrupt."""


def build_record(
    operation: str,
    status: str,
    *,
    cluster: str = "",
    resource: str = "",
    detail: str = "",
    error: str | None = None,
    dry_run: bool = False,
    timestamp: datetime | None = None,
) -> AuditRecord:
    return AuditRecord(
        record_id=f"aud-{uuid.uuid4().hex[:12]}",
        timestamp=timestamp or datetime.now(tz=UTC),
        operation=operation,
        cluster=cluster,
        resource=resource,
        status=status,
        detail=detail,
        error=error,
        dry_run=dry_run,
    )


def _hash(entry: dict[str, Any]) -> str:
    payload = {k: v for k, v in entry.items() if k != "entry_hash"}
    return hashlib.sha256(
        json.dumps(payload, sort_keys=True).encode("utf-8")
    ).hexdigest()


def _lines(path: Path) -> Iterator[tuple[int, str]]:
    """Yield (1-based entry number, text) for every non-blank line."""
    if not path.exists():
        return
    number = 0
    with path.open("r", encoding="utf-8") as f:
        for raw in f:
            text = raw.strip()
            if text:
                number += 1
                yield number, text


class AuditLogger:
    """Append-only, hash-chained JSON-lines audit log.

    Appends are serialized by a lock; the chain head is cached in memory.
    """

    def __init__(self, log_path: str | Path) -> None:
        self._path = Path(log_path)
        self._lock = threading.Lock()
        self._prev_hash = self._chain_head()

    def _chain_head(self) -> str:
        last = None
        for _, text in _lines(self._path):
            last = text
        if last is None:
            return GENESIS_HASH
        try:
            return json.loads(last).get("entry_hash", GENESIS_HASH)
        except json.JSONDecodeError as exc:
            raise AuditError(
                f"Corrupt audit log, last line is not valid JSON: {self._path}"
            ) from exc

    @property
    def path(self) -> Path:
        return self._path

    @property
    def prev_hash(self) -> str:
        return self._prev_hash

    def log_record(self, record: AuditRecord) -> str:
        """Append one record. Returns its entry hash."""
        entry = record.model_dump(mode="json")
        with self._lock:
            entry["prev_hash"] = self._prev_hash
            entry["entry_hash"] = _hash(entry)
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(entry, sort_keys=True) + "\n")
            self._prev_hash = entry["entry_hash"]
        return entry["entry_hash"]

    def log_records(self, records: Iterable[AuditRecord]) -> int:
        count = 0
        for record in records:
            self.log_record(record)
            count += 1
        return count

    def read_records(self) -> list[AuditRecord]:
        """Every record in the log, without the chain fields."""
        records: list[AuditRecord] = []
        for number, text in _lines(self._path):
            try:
                data = json.loads(text)
                for key in _CHAIN_FIELDS:
                    data.pop(key, None)
                records.append(AuditRecord.model_validate(data))
            except (json.JSONDecodeError, ValidationError) as e:
                raise AuditError(f"Corrupt entry {number} in {self._path}: {e}") from e
        return records


def verify_log(log_path: str | Path) -> tuple[bool, list[str]]:
    """Walk the chain and recompute every hash.

    A missing log is valid. Returns ``(valid, errors)``.
    """
    errors: list[str] = []
    expected_prev = GENESIS_HASH

    for number, text in _lines(Path(log_path)):
        try:
            entry = json.loads(text)
        except json.JSONDecodeError as e:
            errors.append(f"Line {number}: invalid JSON: {e}")
            continue

        prev = entry.get("prev_hash", "")
        if prev != expected_prev:
            errors.append(
                f"Line {number}: chain broken, prev_hash {prev[:16]}... "
                f"does not match {expected_prev[:16]}..."
            )
        stored = entry.get("entry_hash", "")
        if stored != _hash(entry):
            errors.append(f"Line {number}: hash mismatch for entry {stored[:16]}...")
        expected_prev = stored

    return not errors, errors
