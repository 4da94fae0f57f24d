from __future__ import annotations

import threading
from collections import deque
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from statbatch.batches.types import BatchUpdate, InvariantViolation, SyncSummary


class ActivityCategory(str, Enum):
    STATUS = "status"
    PROGRESS = "progress"
    VIOLATION = "violation"
    SYNC = "sync"


@dataclass(frozen=True, slots=True)
class ActivityEntry:
    recorded_at: datetime
    batch_id: str
    batch_code: str | None
    category: ActivityCategory
    level: str
    message: str


class ActivityLog:
    def __init__(self, max_entries: int = 100):
        self._entries: deque[ActivityEntry] = deque(maxlen=max_entries)
        self._lock = threading.Lock()

    def __call__(self, event: BatchUpdate | InvariantViolation) -> None:
        if isinstance(event, InvariantViolation):
            self._append(
                batch_id=event.batch_id,
                batch_code=event.observed.batch_code,
                category=ActivityCategory.VIOLATION,
                level="error",
                message=event.message,
            )
            return

        current = event.current
        if event.status_changed:
            previous = "new" if event.previous is None else event.previous.status.value
            self._append(
                batch_id=event.batch_id,
                batch_code=current.batch_code,
                category=ActivityCategory.STATUS,
                level="warning" if current.failure_kind is not None else "info",
                message=f"Status {previous} -> {current.status.value}",
            )
        if event.progress_changed and event.previous is not None:
            self._append(
                batch_id=event.batch_id,
                batch_code=current.batch_code,
                category=ActivityCategory.PROGRESS,
                level="info",
                message=(
                    f"Progress {current.progress_percentage}% "
                    f"({current.processed_employees} processed, {current.failed_employees} failed "
                    f"of {current.total_employees})"
                ),
            )

    def record_sync(self, summary: SyncSummary) -> None:
        self._append(
            batch_id=summary.batch_id,
            batch_code=summary.batch_code,
            category=ActivityCategory.SYNC,
            level="warning" if summary.skipped_manual else "info",
            message=(
                f"Synced {summary.applied} {summary.component_code} inputs "
                f"({summary.inserted} inserted, {summary.updated} updated, {summary.unchanged} unchanged, "
                f"{summary.skipped_manual} manual kept)"
            ),
        )

    def _append(
        self,
        *,
        batch_id: str,
        batch_code: str | None,
        category: ActivityCategory,
        level: str,
        message: str,
    ) -> None:
        entry = ActivityEntry(
            recorded_at=datetime.now(tz=timezone.utc),
            batch_id=batch_id,
            batch_code=batch_code,
            category=category,
            level=level,
            message=message,
        )
        with self._lock:
            self._entries.appendleft(entry)

    def entries(self, limit: int | None = None, batch_id: str | None = None) -> list[ActivityEntry]:
        with self._lock:
            snapshot = list(self._entries)
        if batch_id is not None:
            snapshot = [entry for entry in snapshot if entry.batch_id == batch_id]
        return snapshot if limit is None else snapshot[:limit]

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


def activity_entry_to_dict(entry: ActivityEntry) -> dict[str, Any]:
    payload = asdict(entry)
    payload["category"] = entry.category.value
    return payload
