from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from statbatch.batches.store import BatchStore
from statbatch.core.config import Settings
from statbatch.db.models import BatchStatus

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class HealthReport:
    generated_at: datetime
    healthy: bool
    queued: int
    running: int
    failed: int
    stale_running: int
    healed_batch_codes: list[str] = field(default_factory=list)
    recommendations: list[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchMetrics:
    generated_at: datetime
    total: int
    queued: int
    running: int
    completed: int
    completed_with_warnings: int
    failed: int


class BatchHealthService:
    def __init__(self, settings: Settings, store: BatchStore):
        self._settings = settings
        self._store = store

    def _now(self) -> datetime:
        return datetime.now(tz=timezone.utc)

    def run_health_check(self, *, auto_fix: bool | None = None) -> HealthReport:
        fix = self._settings.health_auto_fix if auto_fix is None else auto_fix
        now = self._now()
        cutoff = now - timedelta(seconds=self._settings.stale_batch_seconds)

        healed_codes: list[str] = []
        if fix:
            healed = self._store.fail_stale_batches(cutoff)
            healed_codes = [batch.batch_code for batch in healed]
            stale_count = len(healed)
            if healed:
                logger.warning(
                    "stale running batches failed by health check",
                    extra={"batch_codes": healed_codes, "stale_after_seconds": self._settings.stale_batch_seconds},
                )
        else:
            stale_count = len(self._store.list_stale_batches(cutoff))

        counts = self._store.count_by_status()
        recommendations: list[str] = []
        if stale_count and not fix:
            recommendations.append(
                f"{stale_count} running batch(es) have not reported progress for "
                f"{self._settings.stale_batch_seconds}s; run the health check with auto-fix to release them"
            )
        if healed_codes:
            recommendations.append("Create new batches for the healed scopes once the worker is back")
        if counts[BatchStatus.QUEUED]:
            recommendations.append(f"{counts[BatchStatus.QUEUED]} batch(es) are queued; trigger the worker to start them")
        if counts[BatchStatus.FAILED]:
            recommendations.append(f"Review {counts[BatchStatus.FAILED]} failed batch(es) before recomputing")

        return HealthReport(
            generated_at=now,
            healthy=stale_count == 0 or fix,
            queued=counts[BatchStatus.QUEUED],
            running=counts[BatchStatus.RUNNING],
            failed=counts[BatchStatus.FAILED],
            stale_running=stale_count,
            healed_batch_codes=healed_codes,
            recommendations=recommendations,
        )

    def get_metrics(self, tenant_id: str | None = None) -> BatchMetrics:
        counts = self._store.count_by_status(tenant_id)
        return BatchMetrics(
            generated_at=self._now(),
            total=sum(counts.values()),
            queued=counts[BatchStatus.QUEUED],
            running=counts[BatchStatus.RUNNING],
            completed=counts[BatchStatus.COMPLETED],
            completed_with_warnings=counts[BatchStatus.COMPLETED_WITH_WARNINGS],
            failed=counts[BatchStatus.FAILED],
        )


def health_report_to_dict(report: HealthReport) -> dict[str, Any]:
    return asdict(report)


def batch_metrics_to_dict(metrics: BatchMetrics) -> dict[str, Any]:
    return asdict(metrics)
