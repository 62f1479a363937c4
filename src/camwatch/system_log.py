"""Operational event log for alerts, camera lifecycle and storage housekeeping."""

from __future__ import annotations

import json
import logging
import threading
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Deque, Iterable

logger = logging.getLogger(__name__)


class LogCategory(str, Enum):
    """Kinds of events CamWatch records."""

    SYSTEM = "system"
    CAMERA = "camera"
    ALERT = "alert"
    STORAGE = "storage"

    @classmethod
    def parse(cls, value: LogCategory | str) -> LogCategory:
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        try:
            return cls(text)
        except ValueError:
            choices = ", ".join(member.value for member in cls)
            raise ValueError(f"Unknown log category {value!r}; expected one of {choices}") from None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(slots=True, frozen=True)
class SystemLogEntry:
    timestamp: datetime
    category: LogCategory
    event: str
    message: str
    camera_id: str | None = None
    metadata: dict[str, object] | None = None

    def to_dict(self) -> dict[str, object]:
        payload: dict[str, object] = {
            "timestamp": self.timestamp.isoformat(),
            "category": self.category.value,
            "event": self.event,
            "message": self.message,
        }
        if self.camera_id is not None:
            payload["camera_id"] = self.camera_id
        if self.metadata:
            payload["metadata"] = self.metadata
        return payload

    @classmethod
    def from_dict(cls, payload: object) -> SystemLogEntry | None:
        """Rebuild an entry from a persisted line; ``None`` when it is unusable."""

        if not isinstance(payload, dict):
            return None
        event = payload.get("event")
        message = payload.get("message")
        if not isinstance(event, str) or not isinstance(message, str):
            return None
        try:
            category = LogCategory.parse(payload.get("category", ""))
            timestamp = datetime.fromisoformat(str(payload.get("timestamp")))
        except ValueError:
            return None
        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)
        camera_id = payload.get("camera_id")
        metadata = payload.get("metadata")
        return cls(
            timestamp=timestamp,
            category=category,
            event=event,
            message=message,
            camera_id=camera_id if isinstance(camera_id, str) else None,
            metadata=metadata if isinstance(metadata, dict) else None,
        )


class SystemLog:
    """JSON-lines event log with a bounded in-memory tail.

    Entries are appended to ``path`` when one is given and reloaded on start,
    so the tail survives restarts. Persistence problems are logged and never
    interrupt the caller.
    """

    def __init__(
        self,
        path: Path | str | None = None,
        *,
        max_entries: int = 500,
    ) -> None:
        if max_entries <= 0:
            raise ValueError("max_entries must be positive")
        self._path: Path | None = Path(path) if path is not None else None
        self._entries: Deque[SystemLogEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()
        if self._path is not None:
            try:
                self._path.parent.mkdir(parents=True, exist_ok=True)
            except OSError as exc:  # pragma: no cover - filesystem errors are rare
                logger.warning("Unable to prepare system log directory: %s", exc)
                self._path = None
        self._load_entries()

    @property
    def path(self) -> Path | None:
        return self._path

    def record(
        self,
        category: LogCategory | str,
        event: str,
        message: str,
        *,
        camera_id: str | None = None,
        metadata: dict[str, object | None] | None = None,
    ) -> SystemLogEntry:
        """Append an event; unknown categories raise :class:`ValueError`."""

        cleaned = {key: value for key, value in (metadata or {}).items() if value is not None}
        entry = SystemLogEntry(
            timestamp=_utcnow(),
            category=LogCategory.parse(category),
            event=event,
            message=message,
            camera_id=camera_id,
            metadata=cleaned or None,
        )
        with self._lock:
            self._entries.append(entry)
            self._append_persistent(entry)
        return entry

    def tail(
        self,
        limit: int | None = None,
        *,
        category: LogCategory | str | None = None,
        camera_id: str | None = None,
        since: datetime | None = None,
    ) -> list[SystemLogEntry]:
        """Return the most recent entries, oldest first, optionally filtered."""

        wanted = LogCategory.parse(category) if category else None
        with self._lock:
            entries: Iterable[SystemLogEntry] = list(self._entries)
        entries = [
            entry
            for entry in entries
            if (wanted is None or entry.category is wanted)
            and (camera_id is None or entry.camera_id == camera_id)
            and (since is None or entry.timestamp >= since)
        ]
        if limit is not None:
            entries = entries[-max(1, int(limit)):]
        return entries

    def _load_entries(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            lines = self._path.read_text(encoding="utf-8").splitlines()
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to load system log: %s", exc)
            return
        skipped = 0
        for raw_line in lines:
            if not raw_line.strip():
                continue
            try:
                entry = SystemLogEntry.from_dict(json.loads(raw_line))
            except ValueError:
                entry = None
            if entry is None:
                skipped += 1
                continue
            self._entries.append(entry)
        if skipped:
            logger.warning("Skipped %d unreadable system log line(s) in %s", skipped, self._path)

    def _append_persistent(self, entry: SystemLogEntry) -> None:
        if self._path is None:
            return
        try:
            with self._path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry.to_dict(), separators=(",", ":"), default=str) + "\n")
        except OSError as exc:  # pragma: no cover - best effort logging
            logger.warning("Unable to persist system log: %s", exc)


__all__ = ["LogCategory", "SystemLog", "SystemLogEntry"]
