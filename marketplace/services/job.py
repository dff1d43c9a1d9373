"""Job posting and admin validation."""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from marketplace.auth import Actor
from marketplace.errors import ForbiddenError, NotFoundError, UnprocessableError
from marketplace.models.job import Job, JobStatus
from marketplace.repositories.base import ActivityEntry, JobUpdate, NewJob, Store
from marketplace.services.lifecycle import can_transition, ensure_allowed
from marketplace.services.notifications import Notification, Notifier, StatusUpdate

logger = logging.getLogger(__name__)

HIGH_RISK_CATEGORIES = {"electrical", "plumbing", "roofing", "gas"}
HIGH_BUDGET_THRESHOLD = Decimal("5000")
MEDIUM_BUDGET_THRESHOLD = Decimal("1000")


def calculate_risk_score(
    budget: Decimal | None,
    category: str | None,
    description: str | None,
    schedule_date: datetime | None,
    now: datetime | None = None,
) -> int:
    """Heuristic 0-100 review-priority score for a new job (higher = riskier)."""
    score = 0

    if budget is not None:
        if budget > HIGH_BUDGET_THRESHOLD:
            score += 30
        elif budget > MEDIUM_BUDGET_THRESHOLD:
            score += 15

    if category and category.lower() in HIGH_RISK_CATEGORIES:
        score += 25

    # Short descriptions are usually incomplete requests
    if description and len(description) < 50:
        score += 20

    if schedule_date is not None:
        now = now or datetime.now(UTC)
        if schedule_date.tzinfo is None:
            schedule_date = schedule_date.replace(tzinfo=UTC)
        if (schedule_date - now).total_seconds() < 48 * 3600:
            score += 25

    return min(score, 100)


class JobService:
    def __init__(self, store: Store, notifier: Notifier) -> None:
        self.store = store
        self.notifier = notifier

    async def _get_job(self, job_id: uuid.UUID) -> Job:
        job = await self.store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job")
        return job

    async def create_job(
        self,
        actor: Actor,
        title: str,
        budget: Decimal,
        category: str = "general",
        description: str = "",
        schedule_date: datetime | None = None,
        invited_provider_id: uuid.UUID | None = None,
    ) -> Job:
        """Post a job. It waits in pending_validation until an admin approves it."""
        if budget <= 0:
            raise UnprocessableError("Budget must be greater than zero")
        if invited_provider_id is not None and invited_provider_id == actor.user_id:
            raise UnprocessableError("You cannot invite yourself to your own job")

        job = await self.store.jobs.add(NewJob(
            client_id=actor.user_id,
            title=title,
            budget=budget,
            category=category,
            description=description,
            schedule_date=schedule_date,
            invited_provider_id=invited_provider_id,
            risk_score=calculate_risk_score(budget, category, description, schedule_date),
        ))
        await self.store.activity.record(ActivityEntry(
            event_type="job_created",
            job_id=job.job_id,
            user_id=actor.user_id,
            metadata={"budget": str(budget), "risk_score": job.risk_score},
        ))
        await self.store.commit()
        logger.info("Job %s created (risk score %d)", job.job_id, job.risk_score)
        return job

    async def approve_job(
        self, actor: Actor, job_id: uuid.UUID, risk_score: int | None = None
    ) -> Job:
        """Admin approval: open the job for quotes, or assign it to the invited provider."""
        if not actor.is_admin:
            raise ForbiddenError()
        job = await self._get_job(job_id)
        ensure_allowed(can_transition(job, JobStatus.OPEN))

        changes = JobUpdate(status=JobStatus.OPEN, risk_score=risk_score)
        if job.invited_provider_id is not None:
            # Validate the second hop against the job as it will be once open
            opened = Job(status=JobStatus.OPEN, escrow_status=job.escrow_status)
            ensure_allowed(can_transition(opened, JobStatus.ASSIGNED))
            changes = JobUpdate(
                status=JobStatus.ASSIGNED,
                provider_id=job.invited_provider_id,
                risk_score=risk_score,
            )

        job = await self.store.jobs.update(job_id, changes)
        await self.store.activity.record(ActivityEntry(
            event_type="job_approved",
            job_id=job.job_id,
            user_id=actor.user_id,
            metadata={"risk_score": job.risk_score, "status": job.status.value},
        ))
        await self.store.commit()

        data = {"job_id": str(job.job_id)}
        if job.status == JobStatus.ASSIGNED:
            await self.notifier.push(job.client_id, Notification(
                type="job_approved",
                title="Your job has been approved!",
                message=f'"{job.title}" was approved and assigned to your invited provider. Fund escrow to get started.',
                data=data,
            ))
            await self.notifier.push(job.provider_id, Notification(
                type="job_assigned",
                title="You have been hired",
                message=f'You were assigned to "{job.title}". Work can begin once escrow is funded.',
                data=data,
            ))
        else:
            await self.notifier.push(job.client_id, Notification(
                type="job_approved",
                title="Your job has been approved!",
                message=f'"{job.title}" is now live and accepting quotes from providers.',
                data=data,
            ))
        for user_id in job.parties():
            await self.notifier.push_status_update(
                user_id, StatusUpdate(entity="job", id=str(job.job_id), fields={"status": job.status.value})
            )
        return job

    async def reject_job(self, actor: Actor, job_id: uuid.UUID) -> Job:
        if not actor.is_admin:
            raise ForbiddenError()
        job = await self._get_job(job_id)
        if job.status != JobStatus.PENDING_VALIDATION:
            raise UnprocessableError("Only jobs pending validation can be rejected")
        ensure_allowed(can_transition(job, JobStatus.REJECTED))

        job = await self.store.jobs.update(job_id, JobUpdate(status=JobStatus.REJECTED))
        await self.store.activity.record(ActivityEntry(
            event_type="job_rejected", job_id=job.job_id, user_id=actor.user_id,
        ))
        await self.store.commit()

        await self.notifier.push(job.client_id, Notification(
            type="job_rejected",
            title="Job not approved",
            message=f'"{job.title}" was not approved. Please review our guidelines and resubmit.',
            data={"job_id": str(job.job_id)},
        ))
        return job
