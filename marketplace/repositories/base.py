"""Store interfaces and command objects consumed by the service layer.

Services never mutate ORM instances directly. Every write goes through a
command dataclass and a repository method that returns the persisted row,
so tests can substitute any object satisfying these protocols.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Protocol

from marketplace.models.dispute import Dispute
from marketplace.models.job import EscrowStatus, Job, JobStatus
from marketplace.models.payment import Payment, Transaction, TransactionStatus
from marketplace.models.payout import Payout, PayoutStatus
from marketplace.models.quote import Quote, QuoteStatus
from marketplace.services.commission import CommissionBreakdown


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------

@dataclass
class NewJob:
    client_id: uuid.UUID
    title: str
    budget: Decimal
    category: str = "general"
    description: str = ""
    risk_score: int = 0
    invited_provider_id: uuid.UUID | None = None
    schedule_date: datetime | None = None


@dataclass
class JobUpdate:
    """Fields to change on a job. ``None`` leaves a field untouched."""

    status: JobStatus | None = None
    escrow_status: EscrowStatus | None = None
    provider_id: uuid.UUID | None = None
    risk_score: int | None = None
    partial_release_amount: Decimal | None = None

    def values(self) -> dict:
        return {k: v for k, v in vars(self).items() if v is not None}


@dataclass
class NewPayment:
    job_id: uuid.UUID
    client_id: uuid.UUID
    provider_id: uuid.UUID | None
    session_id: str
    amount: Decimal
    currency: str
    checkout_url: str | None = None


@dataclass
class NewTransaction:
    job_id: uuid.UUID
    payer_id: uuid.UUID
    payee_id: uuid.UUID | None
    amount: Decimal
    commission: Decimal
    net_amount: Decimal
    status: TransactionStatus = TransactionStatus.PENDING


@dataclass
class NewQuote:
    job_id: uuid.UUID
    provider_id: uuid.UUID
    proposed_amount: Decimal
    timeline: str = ""
    message: str = ""


@dataclass
class NewDispute:
    job_id: uuid.UUID
    raised_by: uuid.UUID
    reason: str


@dataclass
class NewPayout:
    provider_id: uuid.UUID
    amount: Decimal
    bank_name: str
    account_number: str
    account_name: str


@dataclass
class PayoutUpdate:
    status: PayoutStatus
    notes: str | None = None
    processed_at: datetime | None = None


@dataclass
class ActivityEntry:
    event_type: str
    job_id: uuid.UUID | None = None
    user_id: uuid.UUID | None = None
    metadata: dict = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Repositories
# ---------------------------------------------------------------------------

class JobRepository(Protocol):
    async def get(self, job_id: uuid.UUID) -> Job | None: ...

    async def add(self, new: NewJob) -> Job: ...

    async def update(
        self,
        job_id: uuid.UUID,
        changes: JobUpdate,
        *,
        when_escrow: EscrowStatus | None = None,
        when_status: JobStatus | None = None,
    ) -> Job | None:
        """Apply ``changes``, optionally only while the job is still in the given state.

        Returns the persisted job, or None when a guard did not match.
        """
        ...

    async def stale_open_without_accepted_quote(self, before: datetime) -> list[Job]: ...

    async def stale_completed_funded(self, before: datetime) -> list[Job]: ...

    async def stale_assigned_unfunded(self, before: datetime) -> list[Job]: ...

    async def stale_open_without_quotes(self, before: datetime) -> list[Job]: ...

    async def stale_funded_not_started(self, before: datetime) -> list[Job]: ...

    async def stale_in_progress(self, before: datetime) -> list[Job]: ...

    async def stale_released_unreviewed(self, before: datetime) -> list[Job]: ...


class PaymentRepository(Protocol):
    async def get_by_session(self, session_id: str) -> Payment | None: ...

    async def paid_for_job(self, job_id: uuid.UUID) -> Payment | None: ...

    async def add(self, new: NewPayment) -> Payment: ...

    async def mark_paid_if_unpaid(
        self, session_id: str, external_payment_id: str | None, payment_method: str | None
    ) -> Payment | None:
        """Atomically flip an awaiting payment to paid.

        Returns the updated payment, or None if no row changed because another
        caller already confirmed it.
        """
        ...

    async def mark_refunded(self, payment_id: uuid.UUID, refund_id: str | None) -> Payment: ...

    async def paid_with_unfunded_job(self, before: datetime) -> list[Payment]: ...


class TransactionRepository(Protocol):
    async def get_for_job(self, job_id: uuid.UUID) -> Transaction | None: ...

    async def add(self, new: NewTransaction) -> Transaction: ...

    async def settle(
        self,
        job_id: uuid.UUID,
        status: TransactionStatus,
        *,
        split: CommissionBreakdown | None = None,
    ) -> Transaction | None:
        """Move a pending transaction to ``status``. None if nothing was pending.

        ``split`` replaces the recorded amounts, for a release of less than the
        funded total.
        """
        ...

    async def completed_net_total(self, payee_id: uuid.UUID) -> Decimal: ...


class QuoteRepository(Protocol):
    async def get(self, quote_id: uuid.UUID) -> Quote | None: ...

    async def add(self, new: NewQuote) -> Quote: ...

    async def pending_for_provider(self, job_id: uuid.UUID, provider_id: uuid.UUID) -> Quote | None: ...

    async def set_status(self, quote_id: uuid.UUID, status: QuoteStatus) -> Quote: ...

    async def reject_pending_except(self, job_id: uuid.UUID, keep_id: uuid.UUID) -> int: ...

    async def stale_pending(self, before: datetime) -> list[Quote]: ...

    async def reject_many(self, quote_ids: list[uuid.UUID]) -> int:
        """Reject the given quotes if still pending. Returns rows changed."""
        ...


class DisputeRepository(Protocol):
    async def get(self, dispute_id: uuid.UUID) -> Dispute | None: ...

    async def add(self, new: NewDispute) -> Dispute: ...

    async def active_for_job(self, job_id: uuid.UUID) -> Dispute | None: ...

    async def resolve(self, dispute_id: uuid.UUID, notes: str) -> Dispute: ...

    async def stale_active(self, before: datetime) -> list[Dispute]: ...


class PayoutRepository(Protocol):
    async def get(self, payout_id: uuid.UUID) -> Payout | None: ...

    async def add(self, new: NewPayout) -> Payout: ...

    async def outstanding_total(self, provider_id: uuid.UUID) -> Decimal: ...

    async def update(
        self,
        payout_id: uuid.UUID,
        changes: PayoutUpdate,
        *,
        when_status: PayoutStatus | None = None,
    ) -> Payout | None: ...

    async def stale_pending(self, before: datetime) -> list[Payout]: ...


class ActivityRepository(Protocol):
    async def record(self, entry: ActivityEntry) -> None: ...


class ReminderRepository(Protocol):
    async def already_sent(self, subject_id: uuid.UUID, kind: str) -> bool: ...

    async def mark_sent(self, subject_id: uuid.UUID, kind: str) -> None: ...


class Store(Protocol):
    """Unit of work spanning every repository."""

    jobs: JobRepository
    payments: PaymentRepository
    transactions: TransactionRepository
    quotes: QuoteRepository
    disputes: DisputeRepository
    payouts: PayoutRepository
    activity: ActivityRepository
    reminders: ReminderRepository

    async def commit(self) -> None: ...

    async def rollback(self) -> None: ...
