"""SQLite index of recorded segments and raised alerts."""
from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from threading import RLock
from typing import Sequence

from .events import AlertEvent

logger = logging.getLogger(__name__)


def _encode_ts(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    # Fixed width so that lexical order matches chronological order.
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _decode_ts(value: str | None) -> datetime | None:
    if value is None:
        return None
    return datetime.fromisoformat(value)


@dataclass(frozen=True, slots=True)
class RecordingSegment:
    """A contiguous stored clip; ``end_time`` is ``None`` while it is open."""

    camera_id: str
    segment_id: str
    start_time: datetime
    end_time: datetime | None
    path: str
    thumb_path: str | None = None
    frame_count: int = 0
    size_bytes: int = 0
    failed: bool = False
    reason: str = "motion"

    @property
    def duration(self) -> timedelta | None:
        if self.end_time is None:
            return None
        return self.end_time - self.start_time

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict[str, object]:
        duration = self.duration
        return {
            "camera_id": self.camera_id,
            "segment_id": self.segment_id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_s": duration.total_seconds() if duration is not None else None,
            "path": self.path,
            "thumb_path": self.thumb_path,
            "frame_count": self.frame_count,
            "size_bytes": self.size_bytes,
            "failed": self.failed,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class AlertRecord:
    """A stored alert together with the segment it points at."""

    id: int
    alert: AlertEvent
    segment: RecordingSegment | None

    def to_dict(self) -> dict[str, object]:
        payload = self.alert.to_dict()
        payload.pop("type", None)
        payload["id"] = self.id
        payload["segment"] = self.segment.to_dict() if self.segment is not None else None
        return payload


_SEGMENT_COLUMNS = (
    "segment_id, camera_id, start_ts, end_ts, path, thumb_path, "
    "frame_count, size_bytes, failed, reason"
)


class SegmentIndex:
    """Queryable record of segments keyed by camera and time range."""

    def __init__(self, base_path: Path | str) -> None:
        self._base_path = Path(base_path)
        self._base_path.mkdir(parents=True, exist_ok=True)
        self._db_path = self._base_path / "index.db"
        self._mutex = RLock()
        self._ensure_schema()

    @property
    def base_path(self) -> Path:
        return self._base_path

    # ------------------------------------------------------------------
    # Segments
    # ------------------------------------------------------------------
    def open_segment(self, segment: RecordingSegment) -> None:
        with self._mutex:
            with self._connect() as conn:
                conn.execute(
                    f"INSERT OR REPLACE INTO segments ({_SEGMENT_COLUMNS}) "
                    "VALUES (?, ?, ?, NULL, ?, ?, ?, ?, ?, ?)",
                    (
                        segment.segment_id,
                        segment.camera_id,
                        _encode_ts(segment.start_time),
                        segment.path,
                        segment.thumb_path,
                        int(segment.frame_count),
                        int(segment.size_bytes),
                        1 if segment.failed else 0,
                        segment.reason,
                    ),
                )
                conn.commit()

    def close_segment(self, segment: RecordingSegment) -> None:
        if segment.end_time is None:
            raise ValueError("Closed segments require an end time")
        with self._mutex:
            with self._connect() as conn:
                conn.execute(
                    """
                    UPDATE segments
                    SET end_ts = ?, thumb_path = ?, frame_count = ?, size_bytes = ?, failed = ?
                    WHERE segment_id = ?
                    """,
                    (
                        _encode_ts(segment.end_time),
                        segment.thumb_path,
                        int(segment.frame_count),
                        int(segment.size_bytes),
                        1 if segment.failed else 0,
                        segment.segment_id,
                    ),
                )
                conn.commit()

    def get_segment(self, segment_id: str) -> RecordingSegment | None:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute(
                    f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE segment_id = ?",
                    (segment_id,),
                ).fetchone()
        return self._row_to_segment(row) if row is not None else None

    def list_segments(
        self,
        camera_id: str,
        *,
        from_ts: datetime | None = None,
        to_ts: datetime | None = None,
        limit: int = 500,
    ) -> list[RecordingSegment]:
        """Return segments overlapping ``[from_ts, to_ts]`` ordered by start time."""

        query = f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE camera_id = ?"
        params: list[object] = [camera_id]
        if from_ts is not None:
            # Open segments overlap every range that starts before now.
            query += " AND (end_ts IS NULL OR end_ts >= ?)"
            params.append(_encode_ts(from_ts))
        if to_ts is not None:
            query += " AND start_ts <= ?"
            params.append(_encode_ts(to_ts))
        query += " ORDER BY start_ts ASC LIMIT ?"
        params.append(max(1, min(int(limit), 5000)))
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        return [self._row_to_segment(row) for row in rows]

    def open_segments(self) -> list[RecordingSegment]:
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(
                    f"SELECT {_SEGMENT_COLUMNS} FROM segments WHERE end_ts IS NULL ORDER BY start_ts",
                ).fetchall()
        return [self._row_to_segment(row) for row in rows]

    def mark_interrupted(self) -> int:
        """Close segments left open by a previous process as failed, zero-length clips."""

        with self._mutex:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE segments SET end_ts = start_ts, failed = 1 WHERE end_ts IS NULL"
                )
                conn.commit()
                count = int(cursor.rowcount or 0)
        if count:
            logger.warning("Closed %d segment(s) left open by an earlier run", count)
        return count

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------
    def record_alert(self, alert: AlertEvent) -> int:
        with self._mutex:
            with self._connect() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO alerts (camera_id, trigger_ts, motion_score, segment_id, reason)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (
                        alert.camera_id,
                        _encode_ts(alert.trigger_timestamp),
                        float(alert.motion_score),
                        alert.segment_id,
                        alert.reason,
                    ),
                )
                conn.commit()
                return int(cursor.lastrowid)

    def list_alerts(
        self,
        camera_id: str,
        *,
        since: datetime | None = None,
        limit: int = 500,
    ) -> list[AlertRecord]:
        """Return alerts for *camera_id* at or after *since*, oldest first."""

        query = (
            "SELECT a.id AS alert_id, a.camera_id AS alert_camera, a.trigger_ts, a.motion_score, "
            "a.segment_id AS alert_segment, a.reason AS alert_reason, "
            "s.segment_id, s.camera_id, s.start_ts, s.end_ts, s.path, s.thumb_path, "
            "s.frame_count, s.size_bytes, s.failed, s.reason "
            "FROM alerts a LEFT JOIN segments s ON s.segment_id = a.segment_id "
            "WHERE a.camera_id = ?"
        )
        params: list[object] = [camera_id]
        if since is not None:
            query += " AND a.trigger_ts >= ?"
            params.append(_encode_ts(since))
        query += " ORDER BY a.trigger_ts ASC, a.id ASC LIMIT ?"
        params.append(max(1, min(int(limit), 5000)))
        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(query, params).fetchall()
        records: list[AlertRecord] = []
        for row in rows:
            alert = AlertEvent(
                camera_id=str(row["alert_camera"]),
                trigger_timestamp=_decode_ts(row["trigger_ts"]),
                motion_score=float(row["motion_score"]),
                segment_id=row["alert_segment"],
                reason=str(row["alert_reason"]),
            )
            segment = self._row_to_segment(row) if row["segment_id"] is not None else None
            records.append(AlertRecord(id=int(row["alert_id"]), alert=alert, segment=segment))
        return records

    def last_alert_time(self, camera_id: str) -> datetime | None:
        with self._mutex:
            with self._connect() as conn:
                row = conn.execute(
                    "SELECT MAX(trigger_ts) FROM alerts WHERE camera_id = ?",
                    (camera_id,),
                ).fetchone()
        return _decode_ts(row[0]) if row is not None else None

    # ------------------------------------------------------------------
    # Retention
    # ------------------------------------------------------------------
    def purge_older_than(self, cutoff: datetime) -> int:
        """Delete finalised segments that ended before *cutoff*, with their files."""

        with self._mutex:
            with self._connect() as conn:
                rows = conn.execute(
                    "SELECT segment_id FROM segments WHERE end_ts IS NOT NULL AND end_ts < ?",
                    (_encode_ts(cutoff),),
                ).fetchall()
                removed = self._delete_ids(conn, [str(row[0]) for row in rows])
                conn.execute("DELETE FROM alerts WHERE trigger_ts < ?", (_encode_ts(cutoff),))
                conn.commit()
        if removed:
            logger.info("Retention removed %d segment(s)", removed)
        return removed

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self._db_path)
        conn.row_factory = sqlite3.Row
        return conn

    def _ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS segments (
                    segment_id TEXT PRIMARY KEY,
                    camera_id TEXT NOT NULL,
                    start_ts TEXT NOT NULL,
                    end_ts TEXT,
                    path TEXT NOT NULL,
                    thumb_path TEXT,
                    frame_count INTEGER NOT NULL DEFAULT 0,
                    size_bytes INTEGER NOT NULL DEFAULT 0,
                    failed INTEGER NOT NULL DEFAULT 0,
                    reason TEXT NOT NULL DEFAULT 'motion'
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS alerts (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    camera_id TEXT NOT NULL,
                    trigger_ts TEXT NOT NULL,
                    motion_score REAL NOT NULL,
                    segment_id TEXT,
                    reason TEXT NOT NULL DEFAULT 'motion'
                )
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_segments_camera_start ON segments(camera_id, start_ts)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_alerts_camera_trigger ON alerts(camera_id, trigger_ts)"
            )

    def _delete_ids(self, conn: sqlite3.Connection, segment_ids: Sequence[str]) -> int:
        removed = 0
        for segment_id in segment_ids:
            row = conn.execute(
                "SELECT path, thumb_path FROM segments WHERE segment_id = ?",
                (segment_id,),
            ).fetchone()
            if row is None:
                continue
            path, thumb_path = row
            conn.execute("DELETE FROM segments WHERE segment_id = ?", (segment_id,))
            removed += 1
            for candidate in (path, thumb_path):
                if candidate and Path(candidate).exists():
                    Path(candidate).unlink()
        return removed

    @staticmethod
    def _row_to_segment(row: sqlite3.Row) -> RecordingSegment:
        return RecordingSegment(
            camera_id=str(row["camera_id"]),
            segment_id=str(row["segment_id"]),
            start_time=_decode_ts(row["start_ts"]),
            end_time=_decode_ts(row["end_ts"]),
            path=str(row["path"]),
            thumb_path=row["thumb_path"],
            frame_count=int(row["frame_count"]),
            size_bytes=int(row["size_bytes"]),
            failed=bool(row["failed"]),
            reason=str(row["reason"]),
        )


__all__ = ["AlertRecord", "RecordingSegment", "SegmentIndex"]
