"""Escrow funding through the payment gateway.

Funding has two paths. In simulation mode (no gateway secret configured) the
escrow is funded immediately. Otherwise a hosted checkout session is created
and the escrow is funded later, when the gateway webhook or a client poll
confirms the payment.

Confirmation is idempotent: the payment row is claimed with a single
conditional UPDATE (awaiting_payment -> paid), and only the caller whose
UPDATE changed the row goes on to fund the job, write the ledger entry and
notify. Duplicate webhook deliveries and a poll racing the webhook all stop
at the claim.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from marketplace.auth import Actor
from marketplace.config import settings
from marketplace.errors import ForbiddenError, NotFoundError, UnprocessableError
from marketplace.models.job import EscrowStatus, Job
from marketplace.models.payment import Payment, PaymentStatus
from marketplace.repositories.base import (
    ActivityEntry,
    JobUpdate,
    NewPayment,
    NewTransaction,
    Store,
)
from marketplace.services.commission import calculate_commission
from marketplace.services.gateway import CheckoutRequest, PaymentGateway
from marketplace.services.lifecycle import can_transition_escrow, ensure_allowed
from marketplace.services.notifications import (
    Notification,
    Notifier,
    StatusUpdate,
    push_status_update_many,
)

logger = logging.getLogger(__name__)


@dataclass
class EscrowPaymentResult:
    simulated: bool
    amount: Decimal
    message: str = ""
    checkout_session_id: str | None = None
    checkout_url: str | None = None
    reference_number: str | None = None


class PaymentService:
    def __init__(self, store: Store, gateway: PaymentGateway, notifier: Notifier) -> None:
        self.store = store
        self.gateway = gateway
        self.notifier = notifier

    async def _get_job(self, job_id: uuid.UUID) -> Job:
        job = await self.store.jobs.get(job_id)
        if job is None:
            raise NotFoundError("Job")
        return job

    async def initiate_escrow_payment(self, actor: Actor, job_id: uuid.UUID) -> EscrowPaymentResult:
        """Start funding escrow for a job the actor owns."""
        job = await self._get_job(job_id)
        if job.client_id != actor.user_id:
            raise ForbiddenError()
        ensure_allowed(can_transition_escrow(job, EscrowStatus.FUNDED))

        if settings.simulation_mode:
            return await self._fund_simulated(actor, job)

        title = job.title or "Service"
        session = await self.gateway.create_checkout_session(CheckoutRequest(
            amount=job.budget,
            description=f"Escrow for: {title}",
            line_item_name=title,
            success_url=f"{settings.app_url}/client/escrow?jobId={job.job_id}&payment=success",
            cancel_url=f"{settings.app_url}/client/jobs/{job.job_id}?payment=cancelled",
            currency=settings.currency,
            metadata={
                "jobId": str(job.job_id),
                "clientId": str(actor.user_id),
                "providerId": str(job.provider_id) if job.provider_id else "",
            },
        ))

        await self.store.payments.add(NewPayment(
            job_id=job.job_id,
            client_id=actor.user_id,
            provider_id=job.provider_id,
            session_id=session.id,
            checkout_url=session.checkout_url,
            amount=job.budget,
            currency=settings.currency,
        ))
        await self.store.commit()
        logger.info("Created checkout session %s for job %s", session.id, job.job_id)

        return EscrowPaymentResult(
            simulated=False,
            amount=job.budget,
            checkout_session_id=session.id,
            checkout_url=session.checkout_url,
            reference_number=session.reference_number,
        )

    async def _fund_simulated(self, actor: Actor, job: Job) -> EscrowPaymentResult:
        funded = await self.store.jobs.update(
            job.job_id,
            JobUpdate(escrow_status=EscrowStatus.FUNDED),
            when_escrow=EscrowStatus.NOT_FUNDED,
        )
        if funded is None:
            raise UnprocessableError("Escrow is already funded or has been processed")

        split = calculate_commission(funded.budget)
        await self.store.transactions.add(NewTransaction(
            job_id=funded.job_id,
            payer_id=actor.user_id,
            payee_id=funded.provider_id,
            amount=split.gross,
            commission=split.commission,
            net_amount=split.net_amount,
        ))
        await self.store.activity.record(ActivityEntry(
            event_type="escrow_funded",
            job_id=funded.job_id,
            user_id=actor.user_id,
            metadata={"amount": str(funded.budget), "simulated": True},
        ))
        await self.store.commit()
        logger.info("Escrow for job %s funded in simulation mode", funded.job_id)

        await self._notify_funded(
            funded,
            client_title="Payment confirmed (simulation)",
            client_message=f"Escrow of ₱{funded.budget:,} has been funded (dev mode).",
        )
        return EscrowPaymentResult(
            simulated=True,
            amount=funded.budget,
            message="Escrow funded (simulation mode)",
        )

    async def confirm_escrow_funding(
        self,
        session_id: str,
        external_payment_id: str | None,
        payment_method: str | None,
    ) -> bool:
        """Confirm a paid checkout session. Safe to call any number of times.

        Returns True only for the call that actually confirmed the payment.
        """
        payment = await self.store.payments.get_by_session(session_id)
        if payment is None:
            logger.info("No payment recorded for checkout session %s, ignoring", session_id)
            return False

        try:
            claimed = await self.store.payments.mark_paid_if_unpaid(
                session_id, external_payment_id or None, payment_method
            )
            if claimed is None:
                logger.info("Checkout session %s already confirmed", session_id)
                return False

            job = await self._fund_from_payment(claimed)
            await self.store.commit()
        except Exception:
            await self.store.rollback()
            raise

        logger.info("Confirmed payment for checkout session %s", session_id)
        if job is not None:
            await self._notify_funded(
                job,
                client_title="Payment confirmed",
                client_message=f"Your payment of ₱{claimed.amount:,} has been confirmed.",
            )
        return True

    async def complete_paid_funding(self, payment: Payment) -> bool:
        """Finish funding for a payment already marked paid whose job is still unfunded."""
        job = await self._fund_from_payment(payment)
        if job is None:
            await self.store.rollback()
            return False
        await self.store.commit()
        await self._notify_funded(
            job,
            client_title="Payment confirmed",
            client_message=f"Your payment of ₱{payment.amount:,} has been confirmed.",
        )
        return True

    async def _fund_from_payment(self, payment: Payment) -> Job | None:
        """Fund the job behind a paid payment and write its ledger entry.

        Returns the funded job, or None if the job can no longer be funded.
        The caller commits.
        """
        job = await self.store.jobs.get(payment.job_id)
        if job is None:
            logger.warning("Payment %s references missing job %s", payment.payment_id, payment.job_id)
            return None

        check = can_transition_escrow(job, EscrowStatus.FUNDED)
        if not check.allowed:
            logger.warning(
                "Payment %s is paid but job %s cannot be funded: %s",
                payment.payment_id, job.job_id, check.reason,
            )
            return None

        funded = await self.store.jobs.update(
            job.job_id,
            JobUpdate(escrow_status=EscrowStatus.FUNDED),
            when_escrow=EscrowStatus.NOT_FUNDED,
        )
        if funded is None:
            return None

        if await self.store.transactions.get_for_job(job.job_id) is None:
            split = calculate_commission(payment.amount)
            await self.store.transactions.add(NewTransaction(
                job_id=job.job_id,
                payer_id=payment.client_id,
                payee_id=payment.provider_id or job.provider_id,
                amount=split.gross,
                commission=split.commission,
                net_amount=split.net_amount,
            ))

        await self.store.activity.record(ActivityEntry(
            event_type="escrow_funded",
            job_id=job.job_id,
            user_id=payment.client_id,
            metadata={
                "session_id": payment.session_id,
                "external_payment_id": payment.external_payment_id,
                "payment_method": payment.payment_method,
            },
        ))
        return funded

    async def _notify_funded(self, job: Job, client_title: str, client_message: str) -> None:
        data = {"job_id": str(job.job_id)}
        if job.provider_id:
            await self.notifier.push(job.provider_id, Notification(
                type="escrow_funded",
                title="Escrow funded",
                message="The client has funded escrow for your job. You may begin work.",
                data=data,
            ))
        await self.notifier.push(job.client_id, Notification(
            type="payment_confirmed",
            title=client_title,
            message=client_message,
            data=data,
        ))
        await push_status_update_many(
            self.notifier,
            job.parties(),
            StatusUpdate(entity="job", id=str(job.job_id), fields={"escrow_status": EscrowStatus.FUNDED.value}),
        )

    async def poll_checkout_session(
        self, actor: Actor, session_id: str, job_id: uuid.UUID
    ) -> PaymentStatus:
        """Check a checkout session after the client returns from the hosted page.

        Returns the persisted payment status; the gateway's own session status
        is never returned.
        """
        payment = await self.store.payments.get_by_session(session_id)
        if payment is None or payment.job_id != job_id:
            raise NotFoundError("Payment")
        if payment.client_id != actor.user_id:
            raise ForbiddenError()

        if payment.status == PaymentStatus.AWAITING_PAYMENT:
            session = await self.gateway.get_checkout_session(session_id)
            # A session stays "active" after payment; only a captured payment counts
            if session.status == "active" and session.paid_payment_id:
                await self.confirm_escrow_funding(
                    session.id, session.paid_payment_id, session.payment_method or "checkout"
                )

        refreshed = await self.store.payments.get_by_session(session_id)
        return refreshed.status if refreshed is not None else payment.status

    async def refund_escrow(
        self,
        job_id: uuid.UUID,
        reason: str = "requested_by_customer",
    ) -> Payment | None:
        """Refund the gateway payment that funded a job.

        No-op (returns None) when the escrow was never paid through the
        gateway, e.g. funded in simulation mode, or was already refunded.
        The refund is committed on its own so a later failure in the
        caller cannot roll it back and lead to a second refund.
        """
        payment = await self.store.payments.paid_for_job(job_id)
        if payment is None or not payment.external_payment_id:
            logger.info("No gateway payment to refund for job %s", job_id)
            return None

        refund = await self.gateway.create_refund(payment.external_payment_id, payment.amount, reason)
        refunded = await self.store.payments.mark_refunded(payment.payment_id, refund.id)
        await self.store.activity.record(ActivityEntry(
            event_type="escrow_refunded",
            job_id=job_id,
            metadata={"refund_id": refund.id, "reason": reason, "amount": str(payment.amount)},
        ))
        await self.store.commit()
        logger.info("Refunded payment %s for job %s (refund %s)", payment.payment_id, job_id, refund.id)
        return refunded
