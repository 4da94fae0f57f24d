from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from statbatch.db.models import ComputationKind


class CreateBatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    tenant_id: str = Field(min_length=1, max_length=64)
    kind: ComputationKind
    period: str = Field(min_length=7, max_length=10)
    establishment_id: int | None = Field(default=None, gt=0)
    financial_year: str | None = Field(default=None, max_length=16)
    employee_codes: list[str] = Field(default_factory=list, max_length=5000)
    created_by: str | None = Field(default=None, max_length=128)
    reason: str | None = Field(default=None, max_length=2048)
    force: bool = False


class BatchResponse(BaseModel):
    id: str
    batch_code: str
    tenant_id: str
    kind: str
    scope_key: str
    period: date
    status: str
    total_employees: int
    processed_employees: int
    failed_employees: int
    remaining_employees: int
    progress_percentage: int
    is_terminal: bool
    failure_kind: str | None
    reason: str | None
    created_by: str | None
    trigger_attempts: int
    last_trigger_error: str | None
    worker_id: str | None
    error_code: str | None
    error_message: str | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    finished_at: datetime | None


class BatchListResponse(BaseModel):
    items: list[BatchResponse]
    next_offset: int | None


class DuplicateBatchResponse(BaseModel):
    message: str
    can_supersede: bool
    existing: BatchResponse


class TriggerResponse(BaseModel):
    batch_id: str
    function_name: str
    accepted_at: datetime
    worker_reference: str | None
    attempt: int


class SyncSummaryResponse(BaseModel):
    batch_id: str
    batch_code: str
    period: date
    component_code: str
    inserted: int
    updated: int
    unchanged: int
    skipped_manual: int
    skipped_failed: int
    applied: int
    total_amount: Decimal
    skipped_manual_employee_ids: list[str]


class EmployeeResultResponse(BaseModel):
    employee_id: str
    employee_code: str | None
    status: str
    amount: Decimal | None
    error_type: str | None
    error_message: str | None
    processed_at: datetime | None


class EmployeeResultListResponse(BaseModel):
    batch_id: str
    items: list[EmployeeResultResponse]


class InvariantViolationResponse(BaseModel):
    batch_id: str
    message: str
    detected_at: datetime


class ActivityEntryResponse(BaseModel):
    recorded_at: datetime
    batch_id: str
    batch_code: str | None
    category: str
    level: str
    message: str


class WatchResponse(BaseModel):
    running: bool
    interval_seconds: float
    watched_ids: list[str]
    views: list[BatchResponse]
    stats: dict[str, Any]
    violations: list[InvariantViolationResponse]
    activity: list[ActivityEntryResponse]
