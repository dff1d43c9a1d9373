"""Dispute opening and admin arbitration.

Resolution settles the held escrow one of two ways: release to the provider
(job completed) or refund to the client (job refunded). A refund goes to the
gateway and is committed before the job and ledger writes, so a retry after
a failed write finds the payment already refunded.
"""

import logging
import uuid

from marketplace.auth import Actor
from marketplace.errors import ConflictError, ForbiddenError, NotFoundError, UnprocessableError
from marketplace.models.dispute import Dispute, DisputeAction, DisputeStatus
from marketplace.models.job import EscrowStatus, Job, JobStatus
from marketplace.models.payment import TransactionStatus
from marketplace.repositories.base import ActivityEntry, JobUpdate, NewDispute, Store
from marketplace.services.lifecycle import can_transition, can_transition_escrow, ensure_allowed
from marketplace.services.notifications import (
    Notification,
    Notifier,
    StatusUpdate,
    push_status_update_many,
)
from marketplace.services.payment import PaymentService

logger = logging.getLogger(__name__)


class DisputeService:
    def __init__(self, store: Store, notifier: Notifier, payments: PaymentService) -> None:
        self.store = store
        self.notifier = notifier
        self.payments = payments

    async def _get_job(self, job_id: uuid.UUID) -> Job:
        job = await self.store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job")
        return job

    async def _get_dispute(self, dispute_id: uuid.UUID) -> Dispute:
        dispute = await self.store.disputes.get(dispute_id)
        if dispute is None:
            raise NotFoundError("Dispute")
        return dispute

    async def open_dispute(self, actor: Actor, job_id: uuid.UUID, reason: str) -> Dispute:
        job = await self._get_job(job_id)
        is_client = job.client_id == actor.user_id
        is_provider = job.provider_id is not None and job.provider_id == actor.user_id
        if not is_client and not is_provider:
            raise ForbiddenError()
        if not reason.strip():
            raise UnprocessableError("A reason is required to open a dispute")
        ensure_allowed(can_transition(job, JobStatus.DISPUTED))
        if job.escrow_status != EscrowStatus.FUNDED:
            raise UnprocessableError("Disputes can only be raised on jobs with funded escrow")
        if await self.store.disputes.active_for_job(job_id) is not None:
            raise ConflictError("A dispute is already open for this job")

        dispute = await self.store.disputes.add(NewDispute(
            job_id=job_id, raised_by=actor.user_id, reason=reason.strip(),
        ))
        job = await self.store.jobs.update(job_id, JobUpdate(status=JobStatus.DISPUTED))
        await self.store.activity.record(ActivityEntry(
            event_type="dispute_opened",
            job_id=job_id,
            user_id=actor.user_id,
            metadata={"dispute_id": str(dispute.dispute_id)},
        ))
        await self.store.commit()

        other_party = job.provider_id if is_client else job.client_id
        if other_party is not None:
            await self.notifier.push(other_party, Notification(
                type="dispute_opened",
                title="A dispute has been opened",
                message="A dispute was raised on one of your jobs. An admin will review it.",
                data={"job_id": str(job_id), "dispute_id": str(dispute.dispute_id)},
            ))
        await self.notifier.push_admins(Notification(
            type="dispute_opened",
            title="New dispute",
            message=f'A dispute was opened on "{job.title}".',
            data={"job_id": str(job_id), "dispute_id": str(dispute.dispute_id)},
        ))
        await push_status_update_many(
            self.notifier,
            job.parties(),
            StatusUpdate(entity="job", id=str(job_id), fields={"status": job.status.value}),
        )
        return dispute

    async def resolve_dispute(
        self,
        actor: Actor,
        dispute_id: uuid.UUID,
        action: DisputeAction,
        notes: str = "",
    ) -> Dispute:
        """Admin settles a dispute by releasing or refunding the escrow."""
        if not actor.is_admin:
            raise ForbiddenError()
        dispute = await self._get_dispute(dispute_id)
        if dispute.status == DisputeStatus.RESOLVED:
            raise UnprocessableError("This dispute has already been resolved")
        job = await self._get_job(dispute.job_id)

        if action == DisputeAction.RELEASE:
            ensure_allowed(can_transition(job, JobStatus.COMPLETED))
            target = JobUpdate(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.RELEASED)
            settlement = TransactionStatus.COMPLETED
        else:
            ensure_allowed(can_transition(job, JobStatus.REFUNDED))
            ensure_allowed(can_transition_escrow(job, EscrowStatus.REFUNDED))
            target = JobUpdate(status=JobStatus.REFUNDED, escrow_status=EscrowStatus.REFUNDED)
            settlement = TransactionStatus.REFUNDED

        if action == DisputeAction.REFUND:
            # A failed gateway refund leaves every local record untouched
            await self.payments.refund_escrow(job.job_id)

        try:
            updated = await self.store.jobs.update(
                job.job_id, target, when_escrow=EscrowStatus.FUNDED
            )
            if updated is None:
                raise UnprocessableError("Escrow is no longer held for this job")
            job = updated
            await self.store.transactions.settle(job.job_id, settlement)
            dispute = await self.store.disputes.resolve(dispute_id, notes)
            await self.store.activity.record(ActivityEntry(
                event_type="dispute_resolved",
                job_id=job.job_id,
                user_id=actor.user_id,
                metadata={"dispute_id": str(dispute_id), "action": action.value},
            ))
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise
        logger.info("Dispute %s resolved with %s", dispute_id, action.value)

        message = (
            "The dispute was resolved. Payment has been released to the provider."
            if action == DisputeAction.RELEASE
            else "The dispute was resolved. A refund has been issued."
        )
        for user_id in job.parties():
            await self.notifier.push(user_id, Notification(
                type="dispute_resolved",
                title="Dispute resolved",
                message=message,
                data={"job_id": str(job.job_id), "dispute_id": str(dispute_id)},
            ))
        await push_status_update_many(
            self.notifier,
            job.parties(),
            StatusUpdate(
                entity="job",
                id=str(job.job_id),
                fields={"status": job.status.value, "escrow_status": job.escrow_status.value},
            ),
        )
        return dispute
