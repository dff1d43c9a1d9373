"""Work progress and escrow release for a funded job.

Besides the normal release, a client may settle for part of the budget, and an
admin may force a release or refund of funded escrow with a stated reason.
"""

import logging
import uuid
from decimal import Decimal

from marketplace.auth import Actor
from marketplace.errors import ForbiddenError, NotFoundError, UnprocessableError
from marketplace.models.dispute import DisputeAction
from marketplace.models.job import EscrowStatus, Job, JobStatus
from marketplace.models.payment import TransactionStatus
from marketplace.repositories.base import ActivityEntry, JobUpdate, NewTransaction, Store
from marketplace.services.commission import calculate_commission
from marketplace.services.lifecycle import (
    can_transition,
    can_transition_escrow,
    ensure_allowed,
)
from marketplace.services.notifications import (
    Notification,
    Notifier,
    StatusUpdate,
    push_status_update_many,
)
from marketplace.services.payment import PaymentService

logger = logging.getLogger(__name__)


class EscrowService:
    def __init__(
        self, store: Store, notifier: Notifier, payments: PaymentService | None = None
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.payments = payments

    async def _get_job(self, job_id: uuid.UUID) -> Job:
        job = await self.store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job")
        return job

    async def start_job(self, actor: Actor, job_id: uuid.UUID) -> Job:
        """Provider begins work on an assigned, funded job."""
        job = await self._get_job(job_id)
        if job.provider_id != actor.user_id:
            raise ForbiddenError()
        ensure_allowed(can_transition(job, JobStatus.IN_PROGRESS))
        if job.escrow_status != EscrowStatus.FUNDED:
            raise UnprocessableError("Escrow must be funded before work can start")

        job = await self.store.jobs.update(job.job_id, JobUpdate(status=JobStatus.IN_PROGRESS))
        await self.store.activity.record(ActivityEntry(
            event_type="job_started", job_id=job.job_id, user_id=actor.user_id,
        ))
        await self.store.commit()

        await push_status_update_many(
            self.notifier,
            job.parties(),
            StatusUpdate(entity="job", id=str(job.job_id), fields={"status": job.status.value}),
        )
        return job

    async def mark_job_complete(self, actor: Actor, job_id: uuid.UUID) -> Job:
        """Provider marks the work done; the client is asked to release payment."""
        job = await self._get_job(job_id)
        if job.provider_id != actor.user_id:
            raise ForbiddenError()
        ensure_allowed(can_transition(job, JobStatus.COMPLETED))

        job = await self.store.jobs.update(job.job_id, JobUpdate(status=JobStatus.COMPLETED))
        await self.store.activity.record(ActivityEntry(
            event_type="job_completed", job_id=job.job_id, user_id=actor.user_id,
        ))
        await self.store.commit()

        await self.notifier.push(job.client_id, Notification(
            type="job_completed",
            title="Job marked as completed",
            message="The provider has marked the job as done. Please review and release payment.",
            data={"job_id": str(job.job_id)},
        ))
        await push_status_update_many(
            self.notifier,
            job.parties(),
            StatusUpdate(entity="job", id=str(job.job_id), fields={"status": job.status.value}),
        )
        return job

    async def release_escrow(self, actor: Actor, job_id: uuid.UUID) -> Job:
        """Client (or an admin) releases the held funds to the provider."""
        job = await self._get_job(job_id)
        if job.client_id != actor.user_id and not actor.is_admin:
            raise ForbiddenError()
        if job.status != JobStatus.COMPLETED:
            raise UnprocessableError("Job must be marked as completed by the provider first")
        ensure_allowed(can_transition_escrow(job, EscrowStatus.RELEASED))

        released = await self._release(job, user_id=actor.user_id, metadata={})
        if released is None:
            raise UnprocessableError("Escrow must be in funded state to be released")
        await self.store.commit()

        if released.provider_id:
            await self.notifier.push(released.provider_id, Notification(
                type="escrow_released",
                title="Payment released!",
                message="The client approved the job. Your payment has been released.",
                data={"job_id": str(released.job_id)},
            ))
        await self._push_released(released)
        return released

    async def partial_release(self, actor: Actor, job_id: uuid.UUID, amount: Decimal) -> Job:
        """Client settles a completed job for part of the escrowed budget.

        The escrow closes as released and the ledger entry is rewritten to the
        released amount, with commission taken from that amount.
        """
        job = await self._get_job(job_id)
        if job.client_id != actor.user_id:
            raise ForbiddenError()
        if amount <= 0:
            raise UnprocessableError("Release amount must be greater than zero")
        if job.status != JobStatus.COMPLETED:
            raise UnprocessableError("Job must be marked as completed by the provider first")
        ensure_allowed(can_transition_escrow(job, EscrowStatus.RELEASED))
        if amount > job.budget:
            raise UnprocessableError(f"Cannot exceed job budget of ₱{job.budget:,}")

        split = calculate_commission(amount)
        try:
            released = await self.store.jobs.update(
                job.job_id,
                JobUpdate(escrow_status=EscrowStatus.RELEASED, partial_release_amount=split.gross),
                when_escrow=EscrowStatus.FUNDED,
            )
            if released is None:
                raise UnprocessableError("Escrow must be in funded state for partial release")
            txn = await self.store.transactions.settle(
                job.job_id, TransactionStatus.COMPLETED, split=split
            )
            if txn is None and await self.store.transactions.get_for_job(job.job_id) is None:
                await self.store.transactions.add(NewTransaction(
                    job_id=job.job_id,
                    payer_id=actor.user_id,
                    payee_id=released.provider_id,
                    amount=split.gross,
                    commission=split.commission,
                    net_amount=split.net_amount,
                    status=TransactionStatus.COMPLETED,
                ))
            await self.store.activity.record(ActivityEntry(
                event_type="escrow_released",
                job_id=job.job_id,
                user_id=actor.user_id,
                metadata={"partial": True, **split.to_dict()},
            ))
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise
        logger.info("Partial release of %s for job %s", split.gross, released.job_id)

        if released.provider_id:
            await self.notifier.push(released.provider_id, Notification(
                type="escrow_released",
                title="Partial payment released",
                message=f"The client released ₱{split.gross:,} of the ₱{released.budget:,} escrow.",
                data={"job_id": str(released.job_id)},
            ))
        await self._push_released(released)
        return released

    async def admin_override(
        self, actor: Actor, job_id: uuid.UUID, action: DisputeAction, reason: str
    ) -> Job:
        """Admin forces funded escrow to be released or refunded.

        Release completes the job and settles (or creates) the ledger entry.
        Refund returns a gateway payment first, then marks the job refunded.
        """
        if not actor.is_admin:
            raise ForbiddenError()
        if len(reason.strip()) < 5:
            raise UnprocessableError("Reason must be at least 5 characters")
        job = await self._get_job(job_id)

        if action == DisputeAction.RELEASE:
            ensure_allowed(can_transition_escrow(job, EscrowStatus.RELEASED, override=True))
            target = JobUpdate(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.RELEASED)
            settlement = TransactionStatus.COMPLETED
        else:
            ensure_allowed(can_transition_escrow(job, EscrowStatus.REFUNDED))
            target = JobUpdate(status=JobStatus.REFUNDED, escrow_status=EscrowStatus.REFUNDED)
            settlement = TransactionStatus.REFUNDED
            if self.payments is not None:
                await self.payments.refund_escrow(job.job_id)

        try:
            updated = await self.store.jobs.update(job.job_id, target, when_escrow=EscrowStatus.FUNDED)
            if updated is None:
                raise UnprocessableError("Escrow must be in 'funded' state to override")
            txn = await self.store.transactions.settle(updated.job_id, settlement)
            if (
                txn is None
                and action == DisputeAction.RELEASE
                and updated.provider_id is not None
                and await self.store.transactions.get_for_job(updated.job_id) is None
            ):
                split = calculate_commission(updated.budget)
                await self.store.transactions.add(NewTransaction(
                    job_id=updated.job_id,
                    payer_id=updated.client_id,
                    payee_id=updated.provider_id,
                    amount=split.gross,
                    commission=split.commission,
                    net_amount=split.net_amount,
                    status=TransactionStatus.COMPLETED,
                ))
            await self.store.activity.record(ActivityEntry(
                event_type="escrow_released" if action == DisputeAction.RELEASE else "escrow_refunded",
                job_id=updated.job_id,
                user_id=actor.user_id,
                metadata={"admin_override": True, "action": action.value, "reason": reason},
            ))
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise
        logger.info("Admin %s overrode escrow for job %s: %s", actor.user_id, updated.job_id, action.value)

        data = {"job_id": str(updated.job_id)}
        if action == DisputeAction.RELEASE:
            await self.notifier.push(updated.client_id, Notification(
                type="escrow_released",
                title="Escrow released by admin",
                message=f"Payment for your job has been released by an admin. Reason: {reason}",
                data=data,
            ))
            if updated.provider_id:
                await self.notifier.push(updated.provider_id, Notification(
                    type="escrow_released",
                    title="Payment released",
                    message=f"Escrow payment has been released to you by admin. Reason: {reason}",
                    data=data,
                ))
        else:
            await self.notifier.push(updated.client_id, Notification(
                type="escrow_refunded",
                title="Escrow refunded by admin",
                message=f"Your escrow payment has been refunded by admin. Reason: {reason}",
                data=data,
            ))
        await push_status_update_many(
            self.notifier,
            updated.parties(),
            StatusUpdate(
                entity="job",
                id=str(updated.job_id),
                fields={"status": updated.status.value, "escrow_status": updated.escrow_status.value},
            ),
        )
        return updated

    async def auto_release(self, job: Job, days: int) -> bool:
        """Release escrow for a completed job the client never released.

        Returns False when the job already left the funded state.
        """
        if not can_transition_escrow(job, EscrowStatus.RELEASED).allowed:
            return False

        released = await self._release(
            job, user_id=None, metadata={"auto_released": True, "days_after_completion": days}
        )
        if released is None:
            return False
        await self.store.commit()

        data = {"job_id": str(released.job_id)}
        if released.provider_id:
            await self.notifier.push(released.provider_id, Notification(
                type="escrow_auto_released",
                title="Payment released",
                message=f'₱{released.budget:,} has been automatically released to your account for "{released.title}".',
                data=data,
            ))
        await self.notifier.push(released.client_id, Notification(
            type="escrow_auto_released",
            title="Escrow auto-released",
            message=f'Payment for "{released.title}" was automatically released to the provider after {days} days.',
            data=data,
        ))
        await self._push_released(released)
        return True

    async def _release(
        self, job: Job, user_id: uuid.UUID | None, metadata: dict
    ) -> Job | None:
        released = await self.store.jobs.update(
            job.job_id,
            JobUpdate(escrow_status=EscrowStatus.RELEASED),
            when_escrow=EscrowStatus.FUNDED,
        )
        if released is None:
            return None
        txn = await self.store.transactions.settle(job.job_id, TransactionStatus.COMPLETED)
        if txn is None:
            logger.warning("Released escrow for job %s with no pending transaction", job.job_id)
        await self.store.activity.record(ActivityEntry(
            event_type="escrow_released", job_id=job.job_id, user_id=user_id, metadata=metadata,
        ))
        return released

    async def _push_released(self, job: Job) -> None:
        await push_status_update_many(
            self.notifier,
            job.parties(),
            StatusUpdate(
                entity="job", id=str(job.job_id),
                fields={"escrow_status": EscrowStatus.RELEASED.value},
            ),
        )
