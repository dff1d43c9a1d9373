"""Job SQLAlchemy model: status and escrow state for the lifecycle engine."""

import enum
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import DateTime, Enum, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from marketplace.database import Base


class JobStatus(enum.Enum):
    PENDING_VALIDATION = "pending_validation"
    OPEN = "open"
    ASSIGNED = "assigned"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    DISPUTED = "disputed"
    REJECTED = "rejected"
    REFUNDED = "refunded"
    EXPIRED = "expired"


class EscrowStatus(enum.Enum):
    NOT_FUNDED = "not_funded"
    FUNDED = "funded"
    RELEASED = "released"
    REFUNDED = "refunded"


# Valid state transitions. Open jobs are expired only by the stale-job sweep,
# which bypasses this table.
VALID_TRANSITIONS: dict[JobStatus, set[JobStatus]] = {
    JobStatus.PENDING_VALIDATION: {JobStatus.OPEN, JobStatus.REJECTED},
    JobStatus.OPEN: {JobStatus.ASSIGNED, JobStatus.REJECTED},
    JobStatus.ASSIGNED: {JobStatus.IN_PROGRESS, JobStatus.DISPUTED},
    JobStatus.IN_PROGRESS: {JobStatus.COMPLETED, JobStatus.DISPUTED},
    JobStatus.DISPUTED: {JobStatus.COMPLETED, JobStatus.REFUNDED},
    JobStatus.COMPLETED: set(),
    JobStatus.REJECTED: set(),
    JobStatus.REFUNDED: set(),
    JobStatus.EXPIRED: set(),
}

# Statuses in which the escrow must hold the client's funds
FUNDED_STATUSES: frozenset[JobStatus] = frozenset({
    JobStatus.ASSIGNED,
    JobStatus.IN_PROGRESS,
    JobStatus.COMPLETED,
    JobStatus.DISPUTED,
})


class Job(Base):
    __tablename__ = "jobs"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    client_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    invited_provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    category: Mapped[str] = mapped_column(String(64), nullable=False, default="general")
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    budget: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.PENDING_VALIDATION,
    )
    escrow_status: Mapped[EscrowStatus] = mapped_column(
        Enum(EscrowStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowStatus.NOT_FUNDED,
    )
    risk_score: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    # Amount the client released when settling for less than the full budget
    partial_release_amount: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    schedule_date: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    def parties(self) -> list[uuid.UUID]:
        """Client and (if assigned) provider, for status fan-out."""
        return [uid for uid in (self.client_id, self.provider_id) if uid is not None]
