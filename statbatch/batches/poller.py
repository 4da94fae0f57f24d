from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict, deque
from dataclasses import replace
from datetime import datetime, timezone
from typing import Callable, Sequence, Union

from statbatch.batches.types import (
    BatchSnapshot,
    BatchUpdate,
    InvariantViolation,
    PollerStats,
    counter_problems,
)
from statbatch.db.models import BatchStatus

logger = logging.getLogger(__name__)

PollerEvent = Union[BatchUpdate, InvariantViolation]
RefreshFn = Callable[[Sequence[str]], Sequence[BatchSnapshot]]
Listener = Callable[[PollerEvent], None]

MAX_RETAINED_VIOLATIONS = 200
MAX_FINISHED_VIEWS = 100


def observation_problems(previous: BatchSnapshot | None, current: BatchSnapshot) -> list[str]:
    problems = counter_problems(current)
    if previous is None:
        return problems

    if current.total_employees != previous.total_employees:
        problems.append(f"total_employees changed from {previous.total_employees} to {current.total_employees}")
    if previous.is_terminal:
        if (
            current.status != previous.status
            or current.processed_employees != previous.processed_employees
            or current.failed_employees != previous.failed_employees
        ):
            problems.append(f"terminal batch changed after reaching {previous.status.value}")
        return problems

    if current.processed_employees < previous.processed_employees:
        problems.append(
            f"processed_employees decreased from {previous.processed_employees} to {current.processed_employees}"
        )
    if current.failed_employees < previous.failed_employees:
        problems.append(f"failed_employees decreased from {previous.failed_employees} to {current.failed_employees}")
    if previous.status == BatchStatus.RUNNING and current.status == BatchStatus.QUEUED:
        problems.append("status regressed from RUNNING to QUEUED")
    return problems


class ProgressPoller:
    def __init__(
        self,
        refresh: RefreshFn,
        interval_seconds: float = 3.0,
        stop_timeout_seconds: float = 5.0,
        max_finished_views: int = MAX_FINISHED_VIEWS,
    ):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if max_finished_views < 0:
            raise ValueError("max_finished_views must be >= 0")
        self._refresh = refresh
        self._interval = interval_seconds
        self._stop_timeout = stop_timeout_seconds
        self._max_finished_views = max_finished_views

        self._lock = threading.Lock()
        self._refresh_lock = threading.Lock()
        self._watched: dict[str, None] = {}
        self._views: dict[str, BatchSnapshot] = {}
        self._finished: OrderedDict[str, None] = OrderedDict()
        self._listeners: list[Listener] = []
        self._violations: deque[InvariantViolation] = deque(maxlen=MAX_RETAINED_VIOLATIONS)
        self._stats = PollerStats()
        self._thread: threading.Thread | None = None
        self._stop_event: threading.Event | None = None
        self._closed = False

    def __enter__(self) -> "ProgressPoller":
        return self

    def __exit__(self, *_exc_info: object) -> None:
        self.close()

    @property
    def interval_seconds(self) -> float:
        return self._interval

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    @property
    def closed(self) -> bool:
        with self._lock:
            return self._closed

    def watched_ids(self) -> tuple[str, ...]:
        with self._lock:
            return tuple(self._watched)

    def views(self) -> dict[str, BatchSnapshot]:
        with self._lock:
            return dict(self._views)

    def violations(self) -> list[InvariantViolation]:
        with self._lock:
            return list(self._violations)

    def stats(self) -> PollerStats:
        with self._lock:
            return replace(self._stats)

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def watch(self, batch_id: str, snapshot: BatchSnapshot | None = None) -> bool:
        with self._lock:
            if self._closed:
                raise RuntimeError("Progress poller is closed")
            if snapshot is not None:
                self._views.setdefault(batch_id, snapshot)
                if snapshot.is_terminal:
                    self._retire_locked(batch_id)
                    return False
            self._finished.pop(batch_id, None)
            added = batch_id not in self._watched
            self._watched[batch_id] = None
            self._ensure_running_locked()
        if added:
            logger.debug("batch watched", extra={"batch_id": batch_id})
        return added

    def unwatch(self, batch_id: str) -> bool:
        with self._lock:
            self._views.pop(batch_id, None)
            self._finished.pop(batch_id, None)
            if batch_id not in self._watched:
                return False
            del self._watched[batch_id]
            return True

    def _retire_locked(self, batch_id: str) -> None:
        # Finished batches keep their last view until evicted oldest first.
        self._watched.pop(batch_id, None)
        if batch_id not in self._views:
            return
        self._finished[batch_id] = None
        self._finished.move_to_end(batch_id)
        while len(self._finished) > self._max_finished_views:
            evicted, _ = self._finished.popitem(last=False)
            self._views.pop(evicted, None)

    def ensure_running(self) -> bool:
        with self._lock:
            return self._ensure_running_locked()

    def _ensure_running_locked(self) -> bool:
        if self._closed or not self._watched or self._thread is not None:
            return False
        stop_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(stop_event,),
            name="statbatch-progress-poller",
            daemon=True,
        )
        self._stop_event = stop_event
        self._thread = thread
        thread.start()
        logger.info(
            "progress poller started",
            extra={"interval_seconds": self._interval, "watched": len(self._watched)},
        )
        return True

    def stop(self) -> bool:
        with self._lock:
            thread, stop_event = self._thread, self._stop_event
            self._thread = None
            self._stop_event = None
        if thread is None or stop_event is None:
            return False

        stop_event.set()
        if thread is not threading.current_thread():
            thread.join(self._stop_timeout)
            if thread.is_alive():
                logger.warning(
                    "progress poller thread did not exit in time",
                    extra={"timeout_seconds": self._stop_timeout},
                )
        logger.info("progress poller stopped")
        return True

    def close(self) -> bool:
        with self._lock:
            if self._closed:
                return False
            self._closed = True
        self.stop()
        with self._lock:
            self._watched.clear()
            self._listeners.clear()
        logger.info("progress poller closed")
        return True

    def tick(self) -> bool:
        if not self._refresh_lock.acquire(blocking=False):
            with self._lock:
                self._stats.coalesced_ticks += 1
            logger.debug("refresh still in flight, tick coalesced")
            return False
        try:
            with self._lock:
                batch_ids = list(self._watched)
                if not batch_ids:
                    return False
                self._stats.refresh_calls += 1

            try:
                snapshots = self._refresh(batch_ids)
            except Exception:
                with self._lock:
                    self._stats.refresh_failures += 1
                logger.exception("progress refresh failed", extra={"watched": len(batch_ids)})
                return False

            events = self._apply(batch_ids, snapshots)
            self._notify(events)
            return True
        finally:
            self._refresh_lock.release()

    def _apply(self, batch_ids: list[str], snapshots: Sequence[BatchSnapshot]) -> list[PollerEvent]:
        observed_at = datetime.now(tz=timezone.utc)
        by_id = {snapshot.id: snapshot for snapshot in snapshots}
        events: list[PollerEvent] = []

        with self._lock:
            for batch_id in batch_ids:
                if batch_id not in self._watched:
                    continue
                current = by_id.get(batch_id)
                if current is None:
                    self._watched.pop(batch_id, None)
                    self._views.pop(batch_id, None)
                    logger.warning("watched batch is no longer returned by the store", extra={"batch_id": batch_id})
                    continue

                previous = self._views.get(batch_id)
                problems = observation_problems(previous, current)
                if problems:
                    violation = InvariantViolation(
                        batch_id=batch_id,
                        message="; ".join(problems),
                        previous=previous,
                        observed=current,
                        detected_at=observed_at,
                    )
                    self._violations.append(violation)
                    self._stats.violations += 1
                    if current.is_terminal:
                        self._retire_locked(batch_id)
                    logger.error(
                        "batch invariant violation",
                        extra={"batch_id": batch_id, "batch_code": current.batch_code, "problems": problems},
                    )
                    events.append(violation)
                    continue

                self._views[batch_id] = current
                update = BatchUpdate(
                    batch_id=batch_id,
                    previous=previous,
                    current=current,
                    observed_at=observed_at,
                    reached_terminal=current.is_terminal,
                )
                if current.is_terminal:
                    self._retire_locked(batch_id)
                    logger.info(
                        "batch reached terminal state",
                        extra={
                            "batch_id": batch_id,
                            "batch_code": current.batch_code,
                            "status": current.status.value,
                            "processed": current.processed_employees,
                            "failed": current.failed_employees,
                        },
                    )
                if update.reached_terminal or update.status_changed or update.progress_changed:
                    events.append(update)
        return events

    def _notify(self, events: list[PollerEvent]) -> None:
        if not events:
            return
        with self._lock:
            listeners = list(self._listeners)
        for event in events:
            for listener in listeners:
                try:
                    listener(event)
                except Exception:
                    with self._lock:
                        self._stats.listener_failures += 1
                    logger.exception("poller listener failed", extra={"batch_id": event.batch_id})

    def _run(self, stop_event: threading.Event) -> None:
        next_deadline = time.monotonic() + self._interval
        while True:
            if stop_event.wait(max(0.0, next_deadline - time.monotonic())):
                return

            self.tick()

            next_deadline += self._interval
            now = time.monotonic()
            if next_deadline <= now:
                missed = int((now - next_deadline) // self._interval) + 1
                next_deadline += missed * self._interval
                with self._lock:
                    self._stats.skipped_ticks += missed

            with self._lock:
                if stop_event.is_set():
                    return
                if not self._watched:
                    if self._stop_event is stop_event:
                        self._thread = None
                        self._stop_event = None
                    logger.info("watch set empty, progress poller exiting")
                    return
