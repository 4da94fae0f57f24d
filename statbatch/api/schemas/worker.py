from __future__ import annotations

from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field


class StartBatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)


class EmployeeResultItem(BaseModel):
    model_config = ConfigDict(extra="forbid")

    employee_id: str = Field(min_length=1, max_length=64)
    success: bool
    amount: Decimal | None = Field(default=None, ge=0, max_digits=14, decimal_places=2)
    error_type: str | None = Field(default=None, max_length=64)
    error_message: str | None = Field(default=None, max_length=4096)


class ReportResultsRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)
    results: list[EmployeeResultItem] = Field(default_factory=list, max_length=5000)


class FailBatchRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    worker_id: str = Field(min_length=1, max_length=128)
    error_message: str | None = Field(default=None, max_length=4096)
