from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, ConfigDict


class HealthCheckRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    auto_fix: bool | None = None


class HealthReportResponse(BaseModel):
    generated_at: datetime
    healthy: bool
    queued: int
    running: int
    failed: int
    stale_running: int
    healed_batch_codes: list[str]
    recommendations: list[str]


class BatchMetricsResponse(BaseModel):
    generated_at: datetime
    total: int
    queued: int
    running: int
    completed: int
    completed_with_warnings: int
    failed: int
