"""SQLAlchemy implementation of the store interfaces."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import exists, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.errors import NotFoundError
from marketplace.models.activity import ActivityLog, ReminderLog
from marketplace.models.dispute import Dispute, DisputeStatus, Review
from marketplace.models.job import EscrowStatus, Job, JobStatus
from marketplace.models.payment import (
    Payment,
    PaymentStatus,
    Transaction,
    TransactionStatus,
)
from marketplace.models.payout import OUTSTANDING_PAYOUT_STATUSES, Payout, PayoutStatus
from marketplace.models.quote import Quote, QuoteStatus
from marketplace.repositories.base import (
    ActivityEntry,
    JobUpdate,
    NewDispute,
    NewJob,
    NewPayment,
    NewPayout,
    NewQuote,
    NewTransaction,
    PayoutUpdate,
)
from marketplace.services.commission import CommissionBreakdown

ACTIVE_DISPUTE_STATUSES = (DisputeStatus.OPEN, DisputeStatus.INVESTIGATING)


class _Repository:
    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def _fresh(self, stmt):  # type: ignore[no-untyped-def]
        """Re-select a row, overwriting any stale copy in the identity map."""
        result = await self.session.execute(
            stmt.execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _all(self, stmt) -> list:  # type: ignore[no-untyped-def]
        result = await self.session.execute(stmt)
        return list(result.scalars().all())

    async def _insert(self, row):  # type: ignore[no-untyped-def]
        self.session.add(row)
        await self.session.flush()
        return row


class SqlJobRepository(_Repository):
    async def get(self, job_id: uuid.UUID) -> Job | None:
        return await self._fresh(select(Job).where(Job.job_id == job_id))

    async def add(self, new: NewJob) -> Job:
        return await self._insert(Job(
            client_id=new.client_id,
            title=new.title,
            budget=new.budget,
            category=new.category,
            description=new.description,
            risk_score=new.risk_score,
            invited_provider_id=new.invited_provider_id,
            schedule_date=new.schedule_date,
            status=JobStatus.PENDING_VALIDATION,
            escrow_status=EscrowStatus.NOT_FUNDED,
        ))

    async def update(
        self,
        job_id: uuid.UUID,
        changes: JobUpdate,
        *,
        when_escrow: EscrowStatus | None = None,
        when_status: JobStatus | None = None,
    ) -> Job | None:
        stmt = update(Job).where(Job.job_id == job_id)
        if when_escrow is not None:
            stmt = stmt.where(Job.escrow_status == when_escrow)
        if when_status is not None:
            stmt = stmt.where(Job.status == when_status)
        result = await self.session.execute(
            stmt.values(**changes.values()).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            if when_escrow is None and when_status is None:
                raise NotFoundError("Job")
            return None
        return await self.get(job_id)

    async def stale_open_without_accepted_quote(self, before: datetime) -> list[Job]:
        accepted = exists().where(
            Quote.job_id == Job.job_id, Quote.status == QuoteStatus.ACCEPTED
        )
        return await self._all(
            select(Job).where(
                Job.status == JobStatus.OPEN, Job.created_at < before, ~accepted
            )
        )

    async def stale_completed_funded(self, before: datetime) -> list[Job]:
        return await self._all(
            select(Job).where(
                Job.status == JobStatus.COMPLETED,
                Job.escrow_status == EscrowStatus.FUNDED,
                Job.updated_at < before,
            )
        )

    async def stale_assigned_unfunded(self, before: datetime) -> list[Job]:
        return await self._all(
            select(Job).where(
                Job.status == JobStatus.ASSIGNED,
                Job.escrow_status == EscrowStatus.NOT_FUNDED,
                Job.updated_at < before,
            )
        )

    async def stale_open_without_quotes(self, before: datetime) -> list[Job]:
        any_quote = exists().where(Quote.job_id == Job.job_id)
        return await self._all(
            select(Job).where(
                Job.status == JobStatus.OPEN, Job.created_at < before, ~any_quote
            )
        )

    async def stale_funded_not_started(self, before: datetime) -> list[Job]:
        return await self._all(
            select(Job).where(
                Job.status == JobStatus.ASSIGNED,
                Job.escrow_status == EscrowStatus.FUNDED,
                Job.updated_at < before,
            )
        )

    async def stale_in_progress(self, before: datetime) -> list[Job]:
        return await self._all(
            select(Job).where(
                Job.status == JobStatus.IN_PROGRESS, Job.updated_at < before
            )
        )

    async def stale_released_unreviewed(self, before: datetime) -> list[Job]:
        reviewed = exists().where(Review.job_id == Job.job_id)
        return await self._all(
            select(Job).where(
                Job.status == JobStatus.COMPLETED,
                Job.escrow_status == EscrowStatus.RELEASED,
                Job.updated_at < before,
                ~reviewed,
            )
        )


class SqlPaymentRepository(_Repository):
    async def get_by_session(self, session_id: str) -> Payment | None:
        return await self._fresh(select(Payment).where(Payment.session_id == session_id))

    async def paid_for_job(self, job_id: uuid.UUID) -> Payment | None:
        return await self._fresh(
            select(Payment)
            .where(Payment.job_id == job_id, Payment.status == PaymentStatus.PAID)
            .order_by(Payment.created_at.desc())
            .limit(1)
        )

    async def add(self, new: NewPayment) -> Payment:
        return await self._insert(Payment(
            job_id=new.job_id,
            client_id=new.client_id,
            provider_id=new.provider_id,
            session_id=new.session_id,
            checkout_url=new.checkout_url,
            amount=new.amount,
            currency=new.currency,
            status=PaymentStatus.AWAITING_PAYMENT,
        ))

    async def mark_paid_if_unpaid(
        self, session_id: str, external_payment_id: str | None, payment_method: str | None
    ) -> Payment | None:
        # Single conditional UPDATE; concurrent callers serialize on the row lock
        # and all but the first see rowcount 0.
        result = await self.session.execute(
            update(Payment)
            .where(
                Payment.session_id == session_id,
                Payment.status == PaymentStatus.AWAITING_PAYMENT,
            )
            .values(
                status=PaymentStatus.PAID,
                external_payment_id=external_payment_id,
                payment_method=payment_method,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return await self.get_by_session(session_id)

    async def mark_refunded(self, payment_id: uuid.UUID, refund_id: str | None) -> Payment:
        await self.session.execute(
            update(Payment)
            .where(Payment.payment_id == payment_id)
            .values(status=PaymentStatus.REFUNDED, refund_id=refund_id)
            .execution_options(synchronize_session=False)
        )
        payment = await self._fresh(select(Payment).where(Payment.payment_id == payment_id))
        if payment is None:
            raise NotFoundError("Payment")
        return payment

    async def paid_with_unfunded_job(self, before: datetime) -> list[Payment]:
        return await self._all(
            select(Payment)
            .join(Job, Job.job_id == Payment.job_id)
            .where(
                Payment.status == PaymentStatus.PAID,
                Payment.updated_at < before,
                Job.status == JobStatus.ASSIGNED,
                Job.escrow_status == EscrowStatus.NOT_FUNDED,
            )
        )


class SqlTransactionRepository(_Repository):
    async def get_for_job(self, job_id: uuid.UUID) -> Transaction | None:
        return await self._fresh(select(Transaction).where(Transaction.job_id == job_id))

    async def add(self, new: NewTransaction) -> Transaction:
        return await self._insert(Transaction(
            job_id=new.job_id,
            payer_id=new.payer_id,
            payee_id=new.payee_id,
            amount=new.amount,
            commission=new.commission,
            net_amount=new.net_amount,
            status=new.status,
        ))

    async def settle(
        self,
        job_id: uuid.UUID,
        status: TransactionStatus,
        *,
        split: CommissionBreakdown | None = None,
    ) -> Transaction | None:
        values: dict = {"status": status}
        if split is not None:
            values.update(amount=split.gross, commission=split.commission, net_amount=split.net_amount)
        result = await self.session.execute(
            update(Transaction)
            .where(
                Transaction.job_id == job_id,
                Transaction.status == TransactionStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return await self.get_for_job(job_id)

    async def completed_net_total(self, payee_id: uuid.UUID) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(Transaction.net_amount), 0)).where(
                Transaction.payee_id == payee_id,
                Transaction.status == TransactionStatus.COMPLETED,
            )
        )
        return Decimal(str(result.scalar_one()))


class SqlQuoteRepository(_Repository):
    async def get(self, quote_id: uuid.UUID) -> Quote | None:
        return await self._fresh(select(Quote).where(Quote.quote_id == quote_id))

    async def add(self, new: NewQuote) -> Quote:
        return await self._insert(Quote(
            job_id=new.job_id,
            provider_id=new.provider_id,
            proposed_amount=new.proposed_amount,
            timeline=new.timeline,
            message=new.message,
            status=QuoteStatus.PENDING,
        ))

    async def pending_for_provider(self, job_id: uuid.UUID, provider_id: uuid.UUID) -> Quote | None:
        return await self._fresh(
            select(Quote).where(
                Quote.job_id == job_id,
                Quote.provider_id == provider_id,
                Quote.status == QuoteStatus.PENDING,
            )
        )

    async def set_status(self, quote_id: uuid.UUID, status: QuoteStatus) -> Quote:
        await self.session.execute(
            update(Quote)
            .where(Quote.quote_id == quote_id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        quote = await self.get(quote_id)
        if quote is None:
            raise NotFoundError("Quote")
        return quote

    async def reject_pending_except(self, job_id: uuid.UUID, keep_id: uuid.UUID) -> int:
        result = await self.session.execute(
            update(Quote)
            .where(
                Quote.job_id == job_id,
                Quote.quote_id != keep_id,
                Quote.status == QuoteStatus.PENDING,
            )
            .values(status=QuoteStatus.REJECTED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def stale_pending(self, before: datetime) -> list[Quote]:
        return await self._all(
            select(Quote).where(
                Quote.status == QuoteStatus.PENDING, Quote.created_at < before
            )
        )

    async def reject_many(self, quote_ids: list[uuid.UUID]) -> int:
        if not quote_ids:
            return 0
        result = await self.session.execute(
            update(Quote)
            .where(Quote.quote_id.in_(quote_ids), Quote.status == QuoteStatus.PENDING)
            .values(status=QuoteStatus.REJECTED)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount


class SqlDisputeRepository(_Repository):
    async def get(self, dispute_id: uuid.UUID) -> Dispute | None:
        return await self._fresh(select(Dispute).where(Dispute.dispute_id == dispute_id))

    async def add(self, new: NewDispute) -> Dispute:
        return await self._insert(Dispute(
            job_id=new.job_id,
            raised_by=new.raised_by,
            reason=new.reason,
            status=DisputeStatus.OPEN,
        ))

    async def active_for_job(self, job_id: uuid.UUID) -> Dispute | None:
        return await self._fresh(
            select(Dispute).where(
                Dispute.job_id == job_id,
                Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
            )
        )

    async def resolve(self, dispute_id: uuid.UUID, notes: str) -> Dispute:
        await self.session.execute(
            update(Dispute)
            .where(Dispute.dispute_id == dispute_id)
            .values(status=DisputeStatus.RESOLVED, resolution_notes=notes)
            .execution_options(synchronize_session=False)
        )
        dispute = await self.get(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute")
        return dispute

    async def stale_active(self, before: datetime) -> list[Dispute]:
        return await self._all(
            select(Dispute).where(
                Dispute.status.in_(ACTIVE_DISPUTE_STATUSES),
                Dispute.created_at < before,
            )
        )


class SqlPayoutRepository(_Repository):
    async def get(self, payout_id: uuid.UUID) -> Payout | None:
        return await self._fresh(select(Payout).where(Payout.payout_id == payout_id))

    async def add(self, new: NewPayout) -> Payout:
        return await self._insert(Payout(
            provider_id=new.provider_id,
            amount=new.amount,
            bank_name=new.bank_name,
            account_number=new.account_number,
            account_name=new.account_name,
            status=PayoutStatus.PENDING,
        ))

    async def outstanding_total(self, provider_id: uuid.UUID) -> Decimal:
        result = await self.session.execute(
            select(func.coalesce(func.sum(Payout.amount), 0)).where(
                Payout.provider_id == provider_id,
                Payout.status.in_(OUTSTANDING_PAYOUT_STATUSES),
            )
        )
        return Decimal(str(result.scalar_one()))

    async def update(
        self,
        payout_id: uuid.UUID,
        changes: PayoutUpdate,
        *,
        when_status: PayoutStatus | None = None,
    ) -> Payout | None:
        values: dict = {"status": changes.status}
        if changes.notes is not None:
            values["notes"] = changes.notes
        if changes.processed_at is not None:
            values["processed_at"] = changes.processed_at

        stmt = update(Payout).where(Payout.payout_id == payout_id)
        if when_status is not None:
            stmt = stmt.where(Payout.status == when_status)
        result = await self.session.execute(
            stmt.values(**values).execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            return None
        return await self.get(payout_id)

    async def stale_pending(self, before: datetime) -> list[Payout]:
        return await self._all(
            select(Payout).where(
                Payout.status == PayoutStatus.PENDING, Payout.created_at < before
            )
        )


class SqlActivityRepository(_Repository):
    async def record(self, entry: ActivityEntry) -> None:
        self.session.add(ActivityLog(
            user_id=entry.user_id,
            event_type=entry.event_type,
            job_id=entry.job_id,
            metadata_=entry.metadata or None,
        ))


class SqlReminderRepository(_Repository):
    async def already_sent(self, subject_id: uuid.UUID, kind: str) -> bool:
        result = await self.session.execute(
            select(
                exists().where(ReminderLog.subject_id == subject_id, ReminderLog.kind == kind)
            )
        )
        return bool(result.scalar())

    async def mark_sent(self, subject_id: uuid.UUID, kind: str) -> None:
        self.session.add(ReminderLog(subject_id=subject_id, kind=kind))
        await self.session.flush()


class SqlStore:
    """All repositories bound to one ``AsyncSession`` (one unit of work)."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session
        self.jobs = SqlJobRepository(session)
        self.payments = SqlPaymentRepository(session)
        self.transactions = SqlTransactionRepository(session)
        self.quotes = SqlQuoteRepository(session)
        self.disputes = SqlDisputeRepository(session)
        self.payouts = SqlPayoutRepository(session)
        self.activity = SqlActivityRepository(session)
        self.reminders = SqlReminderRepository(session)

    async def commit(self) -> None:
        await self.session.commit()

    async def rollback(self) -> None:
        await self.session.rollback()
