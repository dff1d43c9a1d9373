"""Service wiring for request handlers and background sweeps."""

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from marketplace.database import get_db
from marketplace.repositories.base import Store
from marketplace.repositories.sql import SqlStore
from marketplace.services.dispute import DisputeService
from marketplace.services.escrow import EscrowService
from marketplace.services.gateway import PaymentGateway, get_gateway
from marketplace.services.job import JobService
from marketplace.services.notifications import Notifier, get_notifier
from marketplace.services.payment import PaymentService
from marketplace.services.payout import PayoutService
from marketplace.services.quote import QuoteService
from marketplace.services.reconciliation import ReconciliationService


def build_payment_service(store: Store, notifier: Notifier, gateway: PaymentGateway) -> PaymentService:
    return PaymentService(store, gateway, notifier)


def build_escrow_service(store: Store, notifier: Notifier, gateway: PaymentGateway) -> EscrowService:
    return EscrowService(store, notifier, payments=build_payment_service(store, notifier, gateway))


def build_reconciliation(
    store: Store, notifier: Notifier, gateway: PaymentGateway
) -> ReconciliationService:
    return ReconciliationService(
        store,
        notifier,
        escrow=build_escrow_service(store, notifier, gateway),
        payments=build_payment_service(store, notifier, gateway),
    )


async def get_store(db: AsyncSession = Depends(get_db)) -> Store:
    return SqlStore(db)


async def get_payment_service(store: Store = Depends(get_store)) -> PaymentService:
    return build_payment_service(store, get_notifier(), get_gateway())


async def get_escrow_service(store: Store = Depends(get_store)) -> EscrowService:
    return build_escrow_service(store, get_notifier(), get_gateway())


async def get_dispute_service(store: Store = Depends(get_store)) -> DisputeService:
    notifier = get_notifier()
    return DisputeService(store, notifier, build_payment_service(store, notifier, get_gateway()))


async def get_job_service(store: Store = Depends(get_store)) -> JobService:
    return JobService(store, get_notifier())


async def get_quote_service(store: Store = Depends(get_store)) -> QuoteService:
    return QuoteService(store, get_notifier())


async def get_payout_service(store: Store = Depends(get_store)) -> PayoutService:
    return PayoutService(store, get_notifier())
