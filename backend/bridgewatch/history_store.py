"""Append-only bridge status history stored as JSON lines with bounded on-disk size."""

from __future__ import annotations

import logging
import os
import tempfile
import uuid
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Iterable, Optional

from pydantic import ValidationError

from bridgewatch.errors import PersistenceError
from bridgewatch.models import BridgeRecord, TrafficStatus

logger = logging.getLogger("bridgewatch.history")


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


class HistoryStore:
    """Historical-record collaborator for the status fallback chain.

    Blocking file I/O; call from a worker thread. Every failure is raised as
    :class:`PersistenceError` so callers can degrade without knowing the
    storage details. An empty *path* leaves the store unconfigured, in which
    case every call raises.
    """

    def __init__(self, path: str, max_bytes: int = 5 * 1024 * 1024):
        self.path = Path(path) if path else None
        self.max_bytes = max(1024, int(max_bytes))
        self._lock = Lock()

    def _require_path(self) -> Path:
        if self.path is None:
            raise PersistenceError("History store is not configured")
        return self.path

    def append(self, record: BridgeRecord) -> BridgeRecord:
        """Persist *record* under a store-assigned id and return the stored copy."""
        path = self._require_path()
        stored = record.model_copy(update={"id": uuid.uuid4().hex, "timestamp": _as_utc(record.timestamp)})
        encoded = (stored.model_dump_json(by_alias=True) + "\n").encode("utf-8")

        with self._lock:
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                fd = os.open(path, os.O_APPEND | os.O_CREAT | os.O_WRONLY)
                try:
                    os.write(fd, encoded)
                    os.fsync(fd)
                finally:
                    os.close(fd)
                self._enforce_max_size_unlocked(path)
            except OSError as exc:
                raise PersistenceError(f"Failed appending bridge record: {exc}", str(path)) from exc

        return stored

    def query_recent(
        self,
        statuses: Optional[Iterable[TrafficStatus]] = None,
        since: Optional[datetime] = None,
        limit: int = 19,
    ) -> list[BridgeRecord]:
        """Return up to *limit* records, newest first, optionally filtered by status and age."""
        path = self._require_path()
        wanted = set(statuses) if statuses is not None else None
        cutoff = _as_utc(since) if since is not None else None

        with self._lock:
            if not path.exists():
                return []
            try:
                with path.open("rb") as handle:
                    lines = handle.readlines()
            except OSError as exc:
                raise PersistenceError(f"Failed reading bridge history: {exc}", str(path)) from exc

        records: list[BridgeRecord] = []
        for raw_line in lines:
            line = raw_line.strip()
            if not line:
                continue
            try:
                record = BridgeRecord.model_validate_json(line.decode("utf-8"))
            except (UnicodeDecodeError, ValidationError):
                logger.warning("Skipping malformed history line")
                continue
            if wanted is not None and record.status not in wanted:
                continue
            if cutoff is not None and _as_utc(record.timestamp) < cutoff:
                continue
            records.append(record)

        records.sort(key=lambda record: _as_utc(record.timestamp), reverse=True)
        return records[: max(0, int(limit))]

    def _enforce_max_size_unlocked(self, path: Path) -> None:
        try:
            size_bytes = path.stat().st_size
        except FileNotFoundError:
            return
        if size_bytes <= self.max_bytes:
            return

        # Keep the newest tail, starting at a line boundary.
        with path.open("rb") as handle:
            handle.seek(max(0, size_bytes - self.max_bytes))
            tail = handle.read()
        first_newline = tail.find(b"\n")
        trimmed = tail if first_newline < 0 else tail[first_newline + 1 :]

        with tempfile.NamedTemporaryFile(
            mode="wb",
            dir=path.parent,
            prefix=f"{path.name}.",
            suffix=".tmp",
            delete=False,
        ) as tmp:
            tmp.write(trimmed)
            tmp.flush()
            os.fsync(tmp.fileno())
            tmp_path = Path(tmp.name)
        tmp_path.replace(path)
        logger.info("Trimmed bridge history to %d bytes", len(trimmed))
