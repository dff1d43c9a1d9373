"""Provider withdrawals against released earnings."""

import logging
import uuid
from datetime import UTC, datetime
from decimal import Decimal

from marketplace.auth import Actor, Role
from marketplace.errors import ForbiddenError, NotFoundError, UnprocessableError
from marketplace.models.payout import PAYOUT_TRANSITIONS, Payout, PayoutStatus
from marketplace.repositories.base import ActivityEntry, NewPayout, PayoutUpdate, Store
from marketplace.services.notifications import Notification, Notifier

logger = logging.getLogger(__name__)


def payout_status_message(payout: Payout, status: PayoutStatus, notes: str | None) -> str | None:
    if status == PayoutStatus.PROCESSING:
        return "Your payout request is now being processed."
    if status == PayoutStatus.COMPLETED:
        return f"Your payout of ₱{payout.amount:,} has been completed."
    if status == PayoutStatus.REJECTED:
        return "Your payout request was rejected." + (f" Reason: {notes}" if notes else "")
    return None


class PayoutService:
    def __init__(self, store: Store, notifier: Notifier) -> None:
        self.store = store
        self.notifier = notifier

    async def available_balance(self, provider_id: uuid.UUID) -> Decimal:
        """Completed net earnings minus payouts already requested or paid."""
        earned = await self.store.transactions.completed_net_total(provider_id)
        committed = await self.store.payouts.outstanding_total(provider_id)
        return max(Decimal("0"), earned - committed)

    async def request_payout(
        self,
        actor: Actor,
        amount: Decimal,
        bank_name: str,
        account_number: str,
        account_name: str,
    ) -> Payout:
        if actor.role != Role.PROVIDER:
            raise ForbiddenError()
        if amount <= 0:
            raise UnprocessableError("Amount must be greater than zero.")
        if not bank_name.strip() or not account_number.strip() or not account_name.strip():
            raise UnprocessableError("Bank name, account number, and account name are required.")

        available = await self.available_balance(actor.user_id)
        if amount > available:
            raise UnprocessableError(
                f"Requested amount exceeds your available balance of ₱{available:.2f}."
            )

        payout = await self.store.payouts.add(NewPayout(
            provider_id=actor.user_id,
            amount=amount,
            bank_name=bank_name.strip(),
            account_number=account_number.strip(),
            account_name=account_name.strip(),
        ))
        await self.store.activity.record(ActivityEntry(
            event_type="payout_requested",
            user_id=actor.user_id,
            metadata={"payout_id": str(payout.payout_id), "amount": str(amount)},
        ))
        await self.store.commit()

        await self.notifier.push(actor.user_id, Notification(
            type="payout_requested",
            title="Payout request submitted",
            message=f"Your payout of ₱{amount:,} has been submitted and is pending review.",
            data={"payout_id": str(payout.payout_id)},
        ))
        return payout

    async def update_payout_status(
        self,
        actor: Actor,
        payout_id: uuid.UUID,
        status: PayoutStatus,
        notes: str | None = None,
    ) -> Payout:
        if not actor.is_admin:
            raise ForbiddenError()
        payout = await self.store.payouts.get(payout_id)
        if payout is None:
            raise NotFoundError("Payout")
        if status not in PAYOUT_TRANSITIONS[payout.status]:
            raise UnprocessableError(
                f"Cannot move payout from '{payout.status.value}' to '{status.value}'"
            )

        processed_at = None
        if status in (PayoutStatus.PROCESSING, PayoutStatus.COMPLETED):
            processed_at = datetime.now(UTC)
        updated = await self.store.payouts.update(
            payout_id,
            PayoutUpdate(status=status, notes=notes, processed_at=processed_at),
            when_status=payout.status,
        )
        if updated is None:
            raise UnprocessableError("Payout was updated concurrently, reload and retry")
        await self.store.activity.record(ActivityEntry(
            event_type="payout_updated",
            user_id=actor.user_id,
            metadata={"payout_id": str(payout_id), "status": status.value, "notes": notes},
        ))
        await self.store.commit()

        message = payout_status_message(updated, status, notes)
        if message:
            await self.notifier.push(updated.provider_id, Notification(
                type="payout_status_update",
                title=f"Payout {status.value}",
                message=message,
                data={"payout_id": str(payout_id)},
            ))
        return updated
