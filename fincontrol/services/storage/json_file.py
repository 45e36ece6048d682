"""
JSON File Storage

Snapshot persisted as one JSON document (camelCase keys, money as strings),
audit log as JSON lines.

Writes go to a temporary file in the same directory and are moved into
place with os.replace, so a crash never leaves a half-written snapshot.
Transient OS errors are retried with tenacity.
"""

import json
import os
import tempfile
from pathlib import Path
from typing import Optional
from uuid import UUID

import pydantic
from tenacity import (
    Retrying,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from fincontrol.config import StorageSettings, get_settings
from fincontrol.models.audit import AuditEvent
from fincontrol.models.ledger import LedgerSnapshot
from fincontrol.services.storage.interface import (
    AuditStorageInterface,
    CorruptSnapshotError,
    SnapshotNotFoundError,
    SnapshotStorageInterface,
    StorageError,
)


class JsonFileSnapshotStorage(SnapshotStorageInterface):
    """Ledger snapshot in a single JSON file."""

    def __init__(
        self,
        path: Optional[Path] = None,
        settings: Optional[StorageSettings] = None,
    ):
        self._settings = settings or get_settings().storage
        self._path = Path(path) if path is not None else self._settings.snapshot_path

    @property
    def location(self) -> str:
        return str(self._path)

    def exists(self) -> bool:
        return self._path.is_file()

    def save_snapshot(self, snapshot: LedgerSnapshot) -> None:
        payload = snapshot.model_dump_json(by_alias=True, indent=2)
        retrying = Retrying(
            stop=stop_after_attempt(self._settings.write_retries),
            wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
            retry=retry_if_exception_type(OSError),
            reraise=True,
        )
        try:
            for attempt in retrying:
                with attempt:
                    self._write_atomic(payload)
        except OSError as e:
            raise StorageError(f"Could not write snapshot to {self._path}: {e}") from e

    def _write_atomic(self, payload: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{self._path.name}.",
            suffix=".tmp",
            dir=self._path.parent,
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, self._path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def load_snapshot(self) -> LedgerSnapshot:
        if not self.exists():
            raise SnapshotNotFoundError(f"No snapshot at {self._path}")
        try:
            raw = self._path.read_text(encoding="utf-8")
            return LedgerSnapshot.model_validate_json(raw)
        except pydantic.ValidationError as e:
            raise CorruptSnapshotError(f"Snapshot at {self._path} is invalid: {e}") from e
        except OSError as e:
            raise StorageError(f"Could not read snapshot at {self._path}: {e}") from e


class JsonLinesAuditStorage(AuditStorageInterface):
    """Append-only audit log, one JSON event per line."""

    def __init__(
        self,
        path: Optional[Path] = None,
        settings: Optional[StorageSettings] = None,
    ):
        settings = settings or get_settings().storage
        self._path = Path(path) if path is not None else settings.audit_log_path

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.1, min=0.1, max=2),
        retry=retry_if_exception_type(OSError),
        reraise=True,
    )
    def append_event(self, event: AuditEvent) -> bool:
        """Append an audit event."""
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as fh:
            fh.write(event.to_json_line() + "\n")
        return True

    def _read_all(self) -> list[AuditEvent]:
        if not self._path.is_file():
            return []
        events = []
        with self._path.open(encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    events.append(AuditEvent.model_validate(json.loads(line)))
                except (json.JSONDecodeError, pydantic.ValidationError) as e:
                    raise StorageError(f"Corrupt audit line in {self._path}: {e}") from e
        return events

    def get_events_by_correlation_id(self, correlation_id: UUID) -> list[AuditEvent]:
        return [e for e in self._read_all() if e.correlation_id == correlation_id]

    def get_events_by_entity(self, entity_type: str, entity_id: str) -> list[AuditEvent]:
        return [
            e for e in self._read_all()
            if e.entity_type == entity_type and e.entity_id == entity_id
        ]

    def get_recent_events(self, limit: int = 100) -> list[AuditEvent]:
        return list(reversed(self._read_all()))[:limit]
