"""Tests for starting, completing and releasing funded jobs."""

import uuid
from decimal import Decimal

import pytest

from marketplace.auth import Actor, Role
from marketplace.errors import ForbiddenError, UnprocessableError
from marketplace.models.dispute import DisputeAction
from marketplace.models.job import FUNDED_STATUSES, EscrowStatus, JobStatus
from marketplace.models.payment import PaymentStatus, TransactionStatus


@pytest.mark.asyncio
async def test_provider_starts_funded_job(escrow, make_job, provider_actor, client_actor, notifier) -> None:
    job = await make_job(escrow_status=EscrowStatus.FUNDED)

    started = await escrow.start_job(provider_actor, job.job_id)

    assert started.status == JobStatus.IN_PROGRESS
    assert {uid for uid, _ in notifier.status_updates} == {client_actor.user_id, provider_actor.user_id}


@pytest.mark.asyncio
async def test_cannot_start_unfunded_job(escrow, make_job, provider_actor) -> None:
    job = await make_job()
    with pytest.raises(UnprocessableError):
        await escrow.start_job(provider_actor, job.job_id)


@pytest.mark.asyncio
async def test_only_assigned_provider_can_start(escrow, make_job, client_actor) -> None:
    job = await make_job(escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(ForbiddenError):
        await escrow.start_job(client_actor, job.job_id)


@pytest.mark.asyncio
async def test_mark_complete_notifies_client(escrow, store, make_job, provider_actor, client_actor, notifier) -> None:
    job = await make_job(status=JobStatus.IN_PROGRESS, escrow_status=EscrowStatus.FUNDED)

    completed = await escrow.mark_job_complete(provider_actor, job.job_id)

    assert completed.status == JobStatus.COMPLETED
    assert completed.escrow_status == EscrowStatus.FUNDED
    assert notifier.types_for(client_actor.user_id) == ["job_completed"]


@pytest.mark.asyncio
async def test_cannot_complete_assigned_job(escrow, make_job, provider_actor) -> None:
    job = await make_job(escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(UnprocessableError) as exc:
        await escrow.mark_job_complete(provider_actor, job.job_id)
    assert exc.value.detail == "Cannot transition from 'assigned' to 'completed'"


@pytest.mark.asyncio
async def test_client_releases_escrow(
    escrow, store, make_job, make_transaction, client_actor, provider_actor, notifier
) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)
    await make_transaction(job)

    released = await escrow.release_escrow(client_actor, job.job_id)

    assert released.escrow_status == EscrowStatus.RELEASED
    assert (await store.transactions.get_for_job(job.job_id)).status == TransactionStatus.COMPLETED
    assert notifier.types_for(provider_actor.user_id) == ["escrow_released"]


@pytest.mark.asyncio
async def test_admin_may_release(escrow, make_job, make_transaction) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)
    await make_transaction(job)
    admin = Actor(user_id=uuid.uuid4(), role=Role.ADMIN)

    released = await escrow.release_escrow(admin, job.job_id)
    assert released.escrow_status == EscrowStatus.RELEASED


@pytest.mark.asyncio
async def test_provider_cannot_release(escrow, make_job, provider_actor) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(ForbiddenError):
        await escrow.release_escrow(provider_actor, job.job_id)


@pytest.mark.asyncio
async def test_release_before_completion_rejected(escrow, make_job, client_actor) -> None:
    job = await make_job(status=JobStatus.IN_PROGRESS, escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(UnprocessableError) as exc:
        await escrow.release_escrow(client_actor, job.job_id)
    assert exc.value.detail == "Job must be marked as completed by the provider first"


@pytest.mark.asyncio
async def test_release_twice_rejected(escrow, make_job, make_transaction, client_actor, notifier) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)
    await make_transaction(job)
    await escrow.release_escrow(client_actor, job.job_id)

    with pytest.raises(UnprocessableError) as exc:
        await escrow.release_escrow(client_actor, job.job_id)
    assert exc.value.detail == "Escrow must be in funded state to be released"
    assert len(notifier.of_type("escrow_released")) == 1


@pytest.mark.asyncio
async def test_auto_release_skips_already_released(escrow, store, make_job, notifier) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.RELEASED)
    assert await escrow.auto_release(await store.jobs.get(job.job_id), days=7) is False
    assert notifier.notifications == []


@pytest.mark.asyncio
async def test_partial_release_settles_for_the_released_amount(
    escrow, store, make_job, make_transaction, client_actor, provider_actor, notifier
) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)
    await make_transaction(job)

    released = await escrow.partial_release(client_actor, job.job_id, Decimal("1000.00"))

    assert released.escrow_status == EscrowStatus.RELEASED
    assert released.partial_release_amount == Decimal("1000.00")
    txn = await store.transactions.get_for_job(job.job_id)
    assert txn.status == TransactionStatus.COMPLETED
    assert (txn.amount, txn.commission, txn.net_amount) == (
        Decimal("1000.00"), Decimal("100.00"), Decimal("900.00")
    )
    assert notifier.types_for(provider_actor.user_id) == ["escrow_released"]


@pytest.mark.asyncio
async def test_partial_release_rejects_more_than_budget(escrow, store, make_job, client_actor) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)
    job_id = job.job_id

    with pytest.raises(UnprocessableError) as exc:
        await escrow.partial_release(client_actor, job_id, Decimal("1500.01"))
    assert exc.value.detail == "Cannot exceed job budget of ₱1,500.00"
    assert (await store.jobs.get(job_id)).escrow_status == EscrowStatus.FUNDED


@pytest.mark.asyncio
async def test_partial_release_guards(escrow, make_job, client_actor, provider_actor) -> None:
    completed = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(ForbiddenError):
        await escrow.partial_release(provider_actor, completed.job_id, Decimal("500"))
    with pytest.raises(UnprocessableError):
        await escrow.partial_release(client_actor, completed.job_id, Decimal("0"))

    working = await make_job(status=JobStatus.IN_PROGRESS, escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(UnprocessableError) as exc:
        await escrow.partial_release(client_actor, working.job_id, Decimal("500"))
    assert exc.value.detail == "Job must be marked as completed by the provider first"


@pytest.mark.asyncio
@pytest.mark.parametrize("status", [JobStatus.IN_PROGRESS, JobStatus.DISPUTED])
async def test_admin_override_release(
    escrow, store, make_job, make_transaction, admin_actor, client_actor, provider_actor, notifier, status
) -> None:
    job = await make_job(status=status, escrow_status=EscrowStatus.FUNDED)
    await make_transaction(job)

    updated = await escrow.admin_override(admin_actor, job.job_id, DisputeAction.RELEASE, "Work verified by photos")

    assert (updated.status, updated.escrow_status) == (JobStatus.COMPLETED, EscrowStatus.RELEASED)
    assert (await store.transactions.get_for_job(job.job_id)).status == TransactionStatus.COMPLETED
    assert notifier.types_for(client_actor.user_id) == ["escrow_released"]
    assert notifier.types_for(provider_actor.user_id) == ["escrow_released"]


@pytest.mark.asyncio
async def test_admin_override_release_creates_missing_transaction(
    escrow, store, make_job, admin_actor
) -> None:
    job = await make_job(status=JobStatus.COMPLETED, escrow_status=EscrowStatus.FUNDED)

    await escrow.admin_override(admin_actor, job.job_id, DisputeAction.RELEASE, "Client unreachable")

    txn = await store.transactions.get_for_job(job.job_id)
    assert txn.status == TransactionStatus.COMPLETED
    assert txn.net_amount == Decimal("1350.00")


@pytest.mark.asyncio
async def test_admin_override_refund_returns_gateway_payment(
    escrow, store, make_job, make_transaction, make_payment, admin_actor, client_actor, notifier, gateway
) -> None:
    job = await make_job(status=JobStatus.IN_PROGRESS, escrow_status=EscrowStatus.FUNDED)
    await make_transaction(job)
    await make_payment(job, session_id="cs_paid", status=PaymentStatus.PAID, external_payment_id="pay_42")

    updated = await escrow.admin_override(admin_actor, job.job_id, DisputeAction.REFUND, "Provider no-show")

    assert (updated.status, updated.escrow_status) == (JobStatus.REFUNDED, EscrowStatus.REFUNDED)
    assert (await store.transactions.get_for_job(job.job_id)).status == TransactionStatus.REFUNDED
    assert (await store.payments.get_by_session("cs_paid")).status == PaymentStatus.REFUNDED
    assert [r[0] for r in gateway.refunds] == ["pay_42"]
    assert notifier.types_for(client_actor.user_id) == ["escrow_refunded"]


@pytest.mark.asyncio
async def test_admin_override_guards(escrow, make_job, admin_actor, client_actor) -> None:
    job = await make_job(status=JobStatus.IN_PROGRESS, escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(ForbiddenError):
        await escrow.admin_override(client_actor, job.job_id, DisputeAction.RELEASE, "Please pay me")
    with pytest.raises(UnprocessableError):
        await escrow.admin_override(admin_actor, job.job_id, DisputeAction.RELEASE, "ok")

    unfunded = await make_job(status=JobStatus.IN_PROGRESS)
    with pytest.raises(UnprocessableError):
        await escrow.admin_override(admin_actor, unfunded.job_id, DisputeAction.REFUND, "Never paid")

    assigned = await make_job(escrow_status=EscrowStatus.FUNDED)
    with pytest.raises(UnprocessableError) as exc:
        await escrow.admin_override(admin_actor, assigned.job_id, DisputeAction.RELEASE, "Skip the work")
    assert exc.value.detail == "Cannot transition from 'assigned' to 'completed'"


def _assert_funds_held_only_while_working(job) -> None:  # type: ignore[no-untyped-def]
    assert job.escrow_status != EscrowStatus.FUNDED or job.status in FUNDED_STATUSES


@pytest.mark.asyncio
async def test_simulated_job_runs_from_funding_to_release(
    payments, escrow, store, make_job, client_actor, provider_actor
) -> None:
    job = await make_job(budget=Decimal("1500.00"))
    job_id = job.job_id
    _assert_funds_held_only_while_working(await store.jobs.get(job_id))

    result = await payments.initiate_escrow_payment(client_actor, job_id)
    assert result.simulated
    _assert_funds_held_only_while_working(await store.jobs.get(job_id))

    for step in (
        lambda: escrow.start_job(provider_actor, job_id),
        lambda: escrow.mark_job_complete(provider_actor, job_id),
        lambda: escrow.release_escrow(client_actor, job_id),
    ):
        _assert_funds_held_only_while_working(await step())
        _assert_funds_held_only_while_working(await store.jobs.get(job_id))

    final = await store.jobs.get(job_id)
    assert (final.status, final.escrow_status) == (JobStatus.COMPLETED, EscrowStatus.RELEASED)
    txn = await store.transactions.get_for_job(job_id)
    assert txn.status == TransactionStatus.COMPLETED
    assert (txn.amount, txn.commission, txn.net_amount) == (
        Decimal("1500.00"), Decimal("150.00"), Decimal("1350.00")
    )


@pytest.mark.asyncio
async def test_disputed_refund_leaves_no_funds_held(
    payments, escrow, disputes, store, make_job, client_actor, provider_actor, admin_actor
) -> None:
    job = await make_job()
    job_id = job.job_id
    await payments.initiate_escrow_payment(client_actor, job_id)
    await escrow.start_job(provider_actor, job_id)
    dispute = await disputes.open_dispute(client_actor, job_id, "Work left unfinished")
    _assert_funds_held_only_while_working(await store.jobs.get(job_id))

    await disputes.resolve_dispute(admin_actor, dispute.dispute_id, DisputeAction.REFUND)

    final = await store.jobs.get(job_id)
    _assert_funds_held_only_while_working(final)
    assert final.escrow_status == EscrowStatus.REFUNDED
