"""Reconciliation sweeps: time-based repair of stuck jobs, quotes and payouts.

Each sweep selects the records matching a stale-state predicate and moves
each one out of that predicate (or records that its reminder went out), so
running a sweep again on unchanged data does nothing. Records are processed
one at a time in their own unit of work: a failure is rolled back, logged,
and the sweep carries on with the next record.
"""

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from marketplace.config import settings
from marketplace.models.job import JobStatus
from marketplace.models.payout import PayoutStatus
from marketplace.models.quote import QuoteStatus
from marketplace.repositories.base import ActivityEntry, JobUpdate, PayoutUpdate, Store
from marketplace.services.escrow import EscrowService
from marketplace.services.notifications import Notification, Notifier, StatusUpdate
from marketplace.services.payment import PaymentService

logger = logging.getLogger(__name__)

REMINDER_FUND_ESCROW = "reminder_fund_escrow"
REMINDER_NO_QUOTES = "reminder_no_quotes"
REMINDER_START_JOB = "reminder_start_job"
REMINDER_IN_PROGRESS = "reminder_in_progress"
REMINDER_LEAVE_REVIEW = "reminder_leave_review"
REMINDER_DISPUTE_ESCALATION = "reminder_dispute_escalation"


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ReconciliationService:
    def __init__(
        self,
        store: Store,
        notifier: Notifier,
        escrow: EscrowService,
        payments: PaymentService,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.escrow = escrow
        self.payments = payments
        self.clock = clock

    def _cutoff(self, **delta: float) -> datetime:
        return self.clock() - timedelta(**delta)

    async def _isolated(self, label: str, record_id: uuid.UUID, step) -> bool:  # type: ignore[no-untyped-def]
        """Run one record's step; on failure roll back, log and report False."""
        try:
            return bool(await step())
        except Exception:
            await self.store.rollback()
            logger.exception("%s failed for %s", label, record_id)
            return False

    # ------------------------------------------------------------------
    # State-changing sweeps
    # ------------------------------------------------------------------

    async def expire_stale_jobs(self, days: int | None = None) -> dict[str, int]:
        """Expire open jobs older than ``days`` that never accepted a quote."""
        days = days if days is not None else settings.stale_job_days
        jobs = await self.store.jobs.stale_open_without_accepted_quote(self._cutoff(days=days))
        job_ids = [job.job_id for job in jobs]

        async def expire(job_id: uuid.UUID) -> bool:
            job = await self.store.jobs.update(
                job_id, JobUpdate(status=JobStatus.EXPIRED), when_status=JobStatus.OPEN
            )
            if job is None:
                return False
            await self.store.activity.record(ActivityEntry(
                event_type="job_expired", job_id=job_id, metadata={"days_open": days},
            ))
            await self.store.commit()

            await self.notifier.push(job.client_id, Notification(
                type="job_expired",
                title="Job listing expired",
                message=(
                    f'Your job "{job.title}" expired after {days} days with no accepted quote. '
                    "You can repost it anytime."
                ),
                data={"job_id": str(job_id)},
            ))
            await self.notifier.push_status_update(
                job.client_id,
                StatusUpdate(entity="job", id=str(job_id), fields={"status": job.status.value}),
            )
            return True

        expired = 0
        for job_id in job_ids:
            if await self._isolated("expire_stale_jobs", job_id, lambda: expire(job_id)):
                expired += 1
        if expired:
            logger.info("Expired %d stale jobs", expired)
        return {"expired": expired}

    async def release_stale_escrow(self, days: int | None = None) -> dict[str, int]:
        """Auto-release escrow for jobs completed more than ``days`` ago."""
        days = days if days is not None else settings.stale_escrow_days
        jobs = await self.store.jobs.stale_completed_funded(self._cutoff(days=days))
        job_ids = [job.job_id for job in jobs]

        async def release(job_id: uuid.UUID) -> bool:
            job = await self.store.jobs.get(job_id)
            if job is None:
                return False
            return await self.escrow.auto_release(job, days)

        released = 0
        for job_id in job_ids:
            if await self._isolated("release_stale_escrow", job_id, lambda: release(job_id)):
                released += 1
        if released:
            logger.info("Auto-released escrow for %d jobs", released)
        return {"released": released}

    async def expire_stale_quotes(self, days: int | None = None) -> dict[str, int]:
        """Bulk-reject pending quotes older than ``days`` and tell each provider."""
        days = days if days is not None else settings.stale_quote_days
        quotes = await self.store.quotes.stale_pending(self._cutoff(days=days))
        if not quotes:
            return {"expired": 0}
        snapshot = [(q.quote_id, q.job_id, q.provider_id) for q in quotes]

        try:
            expired = await self.store.quotes.reject_many([quote_id for quote_id, _, _ in snapshot])
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        for quote_id, job_id, provider_id in snapshot:
            quote = await self.store.quotes.get(quote_id)
            if quote is None or quote.status != QuoteStatus.REJECTED:
                continue
            await self.notifier.push(provider_id, Notification(
                type="quote_expired",
                title="Quote expired",
                message=f"Your quote was automatically closed after {days} days with no response from the client.",
                data={"job_id": str(job_id), "quote_id": str(quote_id)},
            ))
            await self.notifier.push_status_update(
                provider_id,
                StatusUpdate(entity="quote", id=str(quote_id), fields={"status": QuoteStatus.REJECTED.value}),
            )
        logger.info("Expired %d stale quotes", expired)
        return {"expired": expired}

    async def expire_stale_pending_payouts(self, days: int | None = None) -> dict[str, int]:
        """Reject payout requests left pending for more than ``days``."""
        days = days if days is not None else settings.stale_payout_days
        payouts = await self.store.payouts.stale_pending(self._cutoff(days=days))
        payout_ids = [payout.payout_id for payout in payouts]
        note = f"Automatically rejected: no action was taken within {days} days. Please submit a new request."

        async def reject(payout_id: uuid.UUID) -> bool:
            payout = await self.store.payouts.update(
                payout_id,
                PayoutUpdate(status=PayoutStatus.REJECTED, notes=note),
                when_status=PayoutStatus.PENDING,
            )
            if payout is None:
                return False
            await self.store.activity.record(ActivityEntry(
                event_type="payout_expired",
                user_id=None,
                metadata={"payout_id": str(payout_id), "days_pending": days},
            ))
            await self.store.commit()

            await self.notifier.push(payout.provider_id, Notification(
                type="payout_status_update",
                title="Payout rejected",
                message=f"Your payout request was rejected. Reason: {note}",
                data={"payout_id": str(payout_id)},
            ))
            return True

        rejected = 0
        for payout_id in payout_ids:
            if await self._isolated("expire_stale_pending_payouts", payout_id, lambda: reject(payout_id)):
                rejected += 1
        if rejected:
            logger.info("Rejected %d stale payout requests", rejected)
        return {"rejected": rejected}

    async def repair_paid_unfunded(self, minutes: int | None = None) -> dict[str, int]:
        """Finish funding for payments marked paid whose job never got funded."""
        minutes = minutes if minutes is not None else settings.repair_unfunded_after_minutes
        payments = await self.store.payments.paid_with_unfunded_job(self._cutoff(minutes=minutes))
        sessions = [(payment.payment_id, payment.session_id) for payment in payments]

        async def repair(session_id: str) -> bool:
            payment = await self.store.payments.get_by_session(session_id)
            if payment is None:
                return False
            logger.warning(
                "Payment %s is paid but job %s is unfunded, completing funding",
                payment.payment_id, payment.job_id,
            )
            return await self.payments.complete_paid_funding(payment)

        repaired = 0
        for payment_id, session_id in sessions:
            if await self._isolated("repair_paid_unfunded", payment_id, lambda: repair(session_id)):
                repaired += 1
        return {"repaired": repaired}

    # ------------------------------------------------------------------
    # Reminders (notifications only)
    # ------------------------------------------------------------------

    async def _remind(self, subject_id: uuid.UUID, kind: str, send) -> bool:  # type: ignore[no-untyped-def]
        if await self.store.reminders.already_sent(subject_id, kind):
            return False
        await self.store.reminders.mark_sent(subject_id, kind)
        await self.store.commit()
        await send()
        return True

    async def _job_reminders(
        self, kind: str, jobs: list, recipient: str, title: str, message: str
    ) -> int:
        """Send one reminder per job to its client or provider."""
        snapshot = [
            (job.job_id, job.client_id if recipient == "client" else job.provider_id, job.title)
            for job in jobs
        ]
        sent = 0
        for job_id, user_id, job_title in snapshot:
            if user_id is None:
                continue

            async def send(job_id=job_id, user_id=user_id, job_title=job_title) -> None:
                await self.notifier.push(user_id, Notification(
                    type=kind,
                    title=title,
                    message=message.format(title=job_title),
                    data={"job_id": str(job_id)},
                ))

            if await self._isolated(kind, job_id, lambda: self._remind(job_id, kind, send)):
                sent += 1
        return sent

    async def send_reminders(self) -> dict[str, int]:
        """Nudge whoever is holding up a job. Never changes job or escrow state."""
        results: dict[str, int] = {}

        results["escrow_reminders"] = await self._job_reminders(
            REMINDER_FUND_ESCROW,
            await self.store.jobs.stale_assigned_unfunded(
                self._cutoff(hours=settings.reminder_unfunded_hours)
            ),
            recipient="client",
            title="Action needed: Fund escrow",
            message='Your job "{title}" has an accepted provider waiting. Please fund escrow to get started.',
        )
        results["no_quote_reminders"] = await self._job_reminders(
            REMINDER_NO_QUOTES,
            await self.store.jobs.stale_open_without_quotes(
                self._cutoff(days=settings.reminder_no_quotes_days)
            ),
            recipient="client",
            title="No quotes yet on your job",
            message=(
                'Your job "{title}" has been open for a few days with no quotes. '
                "Consider adjusting the budget or description."
            ),
        )
        results["start_reminders"] = await self._job_reminders(
            REMINDER_START_JOB,
            await self.store.jobs.stale_funded_not_started(
                self._cutoff(hours=settings.reminder_not_started_hours)
            ),
            recipient="provider",
            title="Escrow is funded: time to start",
            message='Escrow for "{title}" is funded. Please start the job or message the client.',
        )
        results["in_progress_reminders"] = await self._job_reminders(
            REMINDER_IN_PROGRESS,
            await self.store.jobs.stale_in_progress(
                self._cutoff(days=settings.reminder_in_progress_days)
            ),
            recipient="provider",
            title="Job still in progress",
            message='"{title}" has been in progress for a while. Mark it complete when the work is done.',
        )
        results["review_reminders"] = await self._job_reminders(
            REMINDER_LEAVE_REVIEW,
            await self.store.jobs.stale_released_unreviewed(
                self._cutoff(hours=settings.reminder_unreviewed_hours)
            ),
            recipient="client",
            title="How did it go?",
            message='Payment for "{title}" was released. Leave a review for your provider.',
        )

        disputes = await self.store.disputes.stale_active(
            self._cutoff(days=settings.reminder_dispute_days)
        )
        escalated = 0
        for dispute_id, job_id, status in [(d.dispute_id, d.job_id, d.status) for d in disputes]:

            async def escalate(dispute_id=dispute_id, job_id=job_id, status=status) -> None:
                await self.notifier.push_admins(Notification(
                    type=REMINDER_DISPUTE_ESCALATION,
                    title="Dispute awaiting resolution",
                    message=(
                        f"Dispute {dispute_id} has been {status.value} for more than "
                        f"{settings.reminder_dispute_days} days."
                    ),
                    data={"job_id": str(job_id), "dispute_id": str(dispute_id)},
                ))

            if await self._isolated(
                REMINDER_DISPUTE_ESCALATION,
                dispute_id,
                lambda: self._remind(dispute_id, REMINDER_DISPUTE_ESCALATION, escalate),
            ):
                escalated += 1
        results["dispute_escalations"] = escalated

        total = sum(results.values())
        if total:
            logger.info("Sent %d reminders: %s", total, results)
        return results


# Sweep name -> bound-method name, used by the scheduler and the cron router
SWEEPS: dict[str, str] = {
    "expire-jobs": "expire_stale_jobs",
    "release-escrow": "release_stale_escrow",
    "expire-quotes": "expire_stale_quotes",
    "reminders": "send_reminders",
    "expire-payouts": "expire_stale_pending_payouts",
    "repair-funding": "repair_paid_unfunded",
}
