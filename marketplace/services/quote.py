"""Provider quotes on open jobs."""

import logging
import uuid
from decimal import Decimal

from marketplace.auth import Actor, Role
from marketplace.errors import ConflictError, ForbiddenError, NotFoundError, UnprocessableError
from marketplace.models.job import Job, JobStatus
from marketplace.models.quote import Quote, QuoteStatus
from marketplace.repositories.base import ActivityEntry, JobUpdate, NewQuote, Store
from marketplace.services.lifecycle import can_transition, ensure_allowed
from marketplace.services.notifications import (
    Notification,
    Notifier,
    StatusUpdate,
    push_status_update_many,
)

logger = logging.getLogger(__name__)


class QuoteService:
    def __init__(self, store: Store, notifier: Notifier) -> None:
        self.store = store
        self.notifier = notifier

    async def _get_quote(self, quote_id: uuid.UUID) -> Quote:
        quote = await self.store.quotes.get(quote_id)
        if quote is None:
            raise NotFoundError("Quote")
        return quote

    async def _get_job(self, job_id: uuid.UUID) -> Job:
        job = await self.store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job")
        return job

    async def submit_quote(
        self,
        actor: Actor,
        job_id: uuid.UUID,
        proposed_amount: Decimal,
        timeline: str = "",
        message: str = "",
    ) -> Quote:
        if actor.role != Role.PROVIDER:
            raise ForbiddenError("Only providers can submit quotes")
        if proposed_amount <= 0:
            raise UnprocessableError("Proposed amount must be greater than zero")

        job = await self._get_job(job_id)
        if job.status != JobStatus.OPEN:
            raise UnprocessableError("This job is not accepting quotes")
        if job.client_id == actor.user_id:
            raise ForbiddenError("You cannot quote on your own job")
        if await self.store.quotes.pending_for_provider(job_id, actor.user_id) is not None:
            raise ConflictError("You have already submitted a quote for this job")

        quote = await self.store.quotes.add(NewQuote(
            job_id=job_id,
            provider_id=actor.user_id,
            proposed_amount=proposed_amount,
            timeline=timeline,
            message=message,
        ))
        await self.store.activity.record(ActivityEntry(
            event_type="quote_submitted",
            job_id=job_id,
            user_id=actor.user_id,
            metadata={"proposed_amount": str(proposed_amount)},
        ))
        await self.store.commit()

        await self.notifier.push(job.client_id, Notification(
            type="quote_received",
            title="New quote received",
            message=f'A provider submitted a quote of ₱{proposed_amount:,} for "{job.title}".',
            data={"job_id": str(job_id), "quote_id": str(quote.quote_id)},
        ))
        await self.notifier.push_status_update(
            job.client_id, StatusUpdate(entity="job", id=str(job_id))
        )
        return quote

    async def accept_quote(self, actor: Actor, quote_id: uuid.UUID) -> tuple[Quote, Job]:
        """Client accepts a quote: the job is assigned and competing quotes are rejected."""
        quote = await self._get_quote(quote_id)
        if quote.status != QuoteStatus.PENDING:
            raise UnprocessableError("This quote has already been processed")

        job = await self._get_job(quote.job_id)
        if job.client_id != actor.user_id:
            raise ForbiddenError()
        if job.status != JobStatus.OPEN:
            raise UnprocessableError("Job is no longer accepting quotes")
        ensure_allowed(can_transition(job, JobStatus.ASSIGNED))

        quote = await self.store.quotes.set_status(quote_id, QuoteStatus.ACCEPTED)
        rejected = await self.store.quotes.reject_pending_except(job.job_id, quote_id)
        job = await self.store.jobs.update(
            job.job_id, JobUpdate(status=JobStatus.ASSIGNED, provider_id=quote.provider_id)
        )
        await self.store.activity.record(ActivityEntry(
            event_type="quote_accepted",
            job_id=job.job_id,
            user_id=actor.user_id,
            metadata={"quote_id": str(quote_id), "provider_id": str(quote.provider_id)},
        ))
        await self.store.commit()
        logger.info("Quote %s accepted for job %s (%d others rejected)", quote_id, job.job_id, rejected)

        await self.notifier.push(quote.provider_id, Notification(
            type="quote_accepted",
            title="Your quote was accepted!",
            message=f'The client accepted your quote for "{job.title}". They\'ll fund escrow to get started.',
            data={"job_id": str(job.job_id), "quote_id": str(quote_id)},
        ))
        await push_status_update_many(
            self.notifier,
            job.parties(),
            StatusUpdate(entity="job", id=str(job.job_id), fields={"status": job.status.value}),
        )
        await self.notifier.push_status_update(
            quote.provider_id,
            StatusUpdate(entity="quote", id=str(quote_id), fields={"status": quote.status.value}),
        )
        return quote, job

    async def reject_quote(self, actor: Actor, quote_id: uuid.UUID) -> Quote:
        quote = await self._get_quote(quote_id)
        if quote.status != QuoteStatus.PENDING:
            raise UnprocessableError("This quote has already been processed")
        job = await self._get_job(quote.job_id)
        if job.client_id != actor.user_id:
            raise ForbiddenError()

        quote = await self.store.quotes.set_status(quote_id, QuoteStatus.REJECTED)
        await self.store.commit()

        await self.notifier.push(quote.provider_id, Notification(
            type="quote_rejected",
            title="Quote not selected",
            message="The client chose a different provider for this job.",
            data={"job_id": str(quote.job_id), "quote_id": str(quote_id)},
        ))
        await self.notifier.push_status_update(
            quote.provider_id,
            StatusUpdate(entity="quote", id=str(quote_id), fields={"status": quote.status.value}),
        )
        return quote
