from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    Boolean,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(DeclarativeBase):
    pass


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class ComputationKind(str, Enum):
    PF = "pf"
    ESIC = "esic"
    INCOME_TAX = "income_tax"


class BatchStatus(str, Enum):
    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    COMPLETED_WITH_WARNINGS = "COMPLETED_WITH_WARNINGS"
    FAILED = "FAILED"


ACTIVE_BATCH_STATUSES: frozenset[BatchStatus] = frozenset({BatchStatus.QUEUED, BatchStatus.RUNNING})
TERMINAL_BATCH_STATUSES: frozenset[BatchStatus] = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.COMPLETED_WITH_WARNINGS, BatchStatus.FAILED}
)
SYNCABLE_BATCH_STATUSES: frozenset[BatchStatus] = frozenset(
    {BatchStatus.COMPLETED, BatchStatus.COMPLETED_WITH_WARNINGS}
)


class EmployeeResultStatus(str, Enum):
    PENDING = "PENDING"
    PROCESSED = "PROCESSED"
    FAILED = "FAILED"


class DataSource(str, Enum):
    SYSTEM_COMPUTED = "SYSTEM_COMPUTED"
    MANUAL = "MANUAL"


class ComputationBatch(Base):
    __tablename__ = "computation_batches"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    batch_code: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[ComputationKind] = mapped_column(
        SAEnum(ComputationKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    scope_key: Mapped[str] = mapped_column(String(128), nullable=False)
    period: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[BatchStatus] = mapped_column(
        SAEnum(BatchStatus, native_enum=False, values_callable=_enum_values, length=32),
        nullable=False,
        default=BatchStatus.QUEUED,
    )

    total_employees: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_employees: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    trigger_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_trigger_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    worker_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    error_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "batch_code", name="uq_computation_batches_tenant_code"),
        Index("ix_batches_natural_key", "tenant_id", "kind", "scope_key", "period"),
        Index("ix_batches_status_updated", "status", "updated_at"),
        Index("ix_batches_created_id", "created_at", "id"),
    )


class BatchEmployee(Base):
    __tablename__ = "computation_batch_employees"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    batch_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("computation_batches.id", ondelete="CASCADE"), nullable=False
    )
    employee_id: Mapped[str] = mapped_column(String(64), nullable=False)
    employee_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[EmployeeResultStatus] = mapped_column(
        SAEnum(EmployeeResultStatus, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=EmployeeResultStatus.PENDING,
    )
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    error_type: Mapped[str | None] = mapped_column(String(64), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint("batch_id", "employee_id", name="uq_batch_employees_batch_employee"),
        Index("ix_batch_employees_batch_status", "batch_id", "status", "id"),
    )


class EmployeeEnrollment(Base):
    __tablename__ = "employee_enrollments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    kind: Mapped[ComputationKind] = mapped_column(
        SAEnum(ComputationKind, native_enum=False, values_callable=_enum_values),
        nullable=False,
    )
    employee_id: Mapped[str] = mapped_column(String(64), nullable=False)
    employee_code: Mapped[str | None] = mapped_column(String(64), nullable=True)
    establishment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    financial_year: Mapped[str | None] = mapped_column(String(16), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())

    __table_args__ = (
        Index("ix_enrollments_establishment", "tenant_id", "kind", "establishment_id", "is_active"),
        Index("ix_enrollments_financial_year", "tenant_id", "kind", "financial_year", "is_active"),
        Index("ix_enrollments_employee_code", "tenant_id", "kind", "employee_code"),
    )


class PayrollInput(Base):
    __tablename__ = "payroll_inputs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)
    employee_id: Mapped[str] = mapped_column(String(64), nullable=False)
    period: Mapped[date] = mapped_column(Date, nullable=False)
    component_code: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    data_source: Mapped[DataSource] = mapped_column(
        SAEnum(DataSource, native_enum=False, values_callable=_enum_values),
        nullable=False,
        default=DataSource.SYSTEM_COMPUTED,
    )
    source_batch_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now()
    )

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "employee_id",
            "period",
            "component_code",
            name="uq_payroll_inputs_employee_period_component",
        ),
        Index("ix_payroll_inputs_source_batch", "source_batch_id"),
    )


class SchemaMigration(Base):
    __tablename__ = "schema_migrations"

    version: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    applied_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
