"""Test configuration and fixtures.

Every test gets a fresh in-memory SQLite database (aiosqlite) with all tables
created from the models, so the suite runs without Postgres or Redis. Services
are built against a recording notifier and a fake payment gateway.
"""

import itertools
import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from marketplace.auth import Actor, Role, create_access_token
from marketplace.config import settings
from marketplace.database import Base, get_db
from marketplace.dependencies import (
    get_dispute_service,
    get_escrow_service,
    get_job_service,
    get_payment_service,
    get_payout_service,
    get_quote_service,
)
from marketplace.errors import GatewayError
from marketplace.main import app
from marketplace.models.activity import ActivityLog, ReminderLog  # noqa: F401
from marketplace.models.dispute import Dispute, DisputeStatus, Review  # noqa: F401
from marketplace.models.job import EscrowStatus, Job, JobStatus
from marketplace.models.payment import Payment, PaymentStatus, Transaction, TransactionStatus
from marketplace.models.payout import Payout, PayoutStatus
from marketplace.models.quote import Quote, QuoteStatus
from marketplace.redis import get_redis
from marketplace.repositories.sql import SqlStore
from marketplace.services.dispute import DisputeService
from marketplace.services.escrow import EscrowService
from marketplace.services.gateway import CheckoutRequest, CheckoutSession, Refund
from marketplace.services.job import JobService
from marketplace.services.notifications import Notification, StatusUpdate
from marketplace.services.payment import PaymentService
from marketplace.services.payout import PayoutService
from marketplace.services.quote import QuoteService
from marketplace.services.reconciliation import ReconciliationService


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class RecordingNotifier:
    """Notifier that keeps everything it was asked to send."""

    def __init__(self) -> None:
        self.notifications: list[tuple[uuid.UUID, Notification]] = []
        self.status_updates: list[tuple[uuid.UUID, StatusUpdate]] = []
        self.admin_notifications: list[Notification] = []

    async def push(self, user_id: uuid.UUID, notification: Notification) -> None:
        self.notifications.append((user_id, notification))

    async def push_status_update(self, user_id: uuid.UUID, update: StatusUpdate) -> None:
        self.status_updates.append((user_id, update))

    async def push_admins(self, notification: Notification) -> None:
        self.admin_notifications.append(notification)

    def types_for(self, user_id: uuid.UUID) -> list[str]:
        return [n.type for uid, n in self.notifications if uid == user_id]

    def of_type(self, kind: str) -> list[tuple[uuid.UUID, Notification]]:
        return [(uid, n) for uid, n in self.notifications if n.type == kind]


class FakeGateway:
    """In-memory stand-in for PayMongo."""

    def __init__(self) -> None:
        self._ids = itertools.count(1)
        self.checkout_requests: list[CheckoutRequest] = []
        self.sessions: dict[str, CheckoutSession] = {}
        self.refunds: list[tuple[str, Decimal, str]] = []
        self.fail_refunds = False

    async def create_checkout_session(self, request: CheckoutRequest) -> CheckoutSession:
        self.checkout_requests.append(request)
        n = next(self._ids)
        session = CheckoutSession(
            id=f"cs_test_{n}",
            checkout_url=f"https://checkout.paymongo.test/cs_test_{n}",
            status="active",
            reference_number=f"REF{n:04d}",
        )
        self.sessions[session.id] = session
        return session

    async def get_checkout_session(self, session_id: str) -> CheckoutSession:
        if session_id not in self.sessions:
            raise GatewayError("No such checkout_session", 404)
        return self.sessions[session_id]

    async def create_refund(
        self, payment_id: str, amount: Decimal, reason: str, notes: str | None = None
    ) -> Refund:
        if self.fail_refunds:
            raise GatewayError("The payment cannot be refunded", 400)
        self.refunds.append((payment_id, amount, reason))
        return Refund(id=f"ref_{len(self.refunds)}", status="pending", amount_centavos=int(amount * 100))

    def mark_paid(self, session_id: str, payment_id: str = "pay_test_1", method: str = "gcash") -> None:
        session = self.sessions[session_id]
        session.paid_payment_id = payment_id
        session.payment_method = method


# ---------------------------------------------------------------------------
# Settings, database and HTTP client
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    object.__setattr__(settings, "env", "test")
    object.__setattr__(settings, "paymongo_secret_key", "")
    object.__setattr__(settings, "paymongo_webhook_secret", "")
    object.__setattr__(settings, "notification_backend", "log")
    object.__setattr__(settings, "cron_secret", "test-cron-secret")
    object.__setattr__(settings, "jwt_secret_key", "test-jwt-secret")
    object.__setattr__(settings, "scheduler_enabled", False)
    object.__setattr__(settings, "commission_rate", Decimal("0.10"))
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        settings.test_database_url,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def store(db_session: AsyncSession) -> SqlStore:
    return SqlStore(db_session)


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def redis_mock() -> AsyncMock:
    redis = AsyncMock()
    redis.set.return_value = True
    redis.eval.return_value = 1
    return redis


@pytest_asyncio.fixture
async def client(
    db_session: AsyncSession,
    payments: PaymentService,
    escrow: EscrowService,
    jobs: JobService,
    quotes: QuoteService,
    disputes: DisputeService,
    payouts: PayoutService,
    redis_mock: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with the database, Redis and every service overridden."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield redis_mock

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_payment_service] = lambda: payments
    app.dependency_overrides[get_escrow_service] = lambda: escrow
    app.dependency_overrides[get_job_service] = lambda: jobs
    app.dependency_overrides[get_quote_service] = lambda: quotes
    app.dependency_overrides[get_dispute_service] = lambda: disputes
    app.dependency_overrides[get_payout_service] = lambda: payouts

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------

@pytest.fixture
def payments(store: SqlStore, gateway: FakeGateway, notifier: RecordingNotifier) -> PaymentService:
    return PaymentService(store, gateway, notifier)


@pytest.fixture
def escrow(
    store: SqlStore, notifier: RecordingNotifier, payments: PaymentService
) -> EscrowService:
    return EscrowService(store, notifier, payments)


@pytest.fixture
def jobs(store: SqlStore, notifier: RecordingNotifier) -> JobService:
    return JobService(store, notifier)


@pytest.fixture
def quotes(store: SqlStore, notifier: RecordingNotifier) -> QuoteService:
    return QuoteService(store, notifier)


@pytest.fixture
def disputes(
    store: SqlStore, notifier: RecordingNotifier, payments: PaymentService
) -> DisputeService:
    return DisputeService(store, notifier, payments)


@pytest.fixture
def payouts(store: SqlStore, notifier: RecordingNotifier) -> PayoutService:
    return PayoutService(store, notifier)


@pytest.fixture
def reconciliation(
    store: SqlStore,
    notifier: RecordingNotifier,
    escrow: EscrowService,
    payments: PaymentService,
) -> ReconciliationService:
    return ReconciliationService(store, notifier, escrow=escrow, payments=payments)


# ---------------------------------------------------------------------------
# Actors and factories
# ---------------------------------------------------------------------------

@pytest.fixture
def client_actor() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=Role.CLIENT)


@pytest.fixture
def provider_actor() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=Role.PROVIDER)


@pytest.fixture
def admin_actor() -> Actor:
    return Actor(user_id=uuid.uuid4(), role=Role.ADMIN)


@pytest.fixture
def bearer():  # type: ignore[no-untyped-def]
    """Authorization headers carrying a signed token for an actor."""

    def _headers(actor: Actor) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token(actor.user_id, actor.role)}"}

    return _headers


@pytest.fixture
def make_job(db_session: AsyncSession, client_actor: Actor, provider_actor: Actor):  # type: ignore[no-untyped-def]
    """Insert a job directly in the given state."""

    async def _make(
        status: JobStatus = JobStatus.ASSIGNED,
        escrow_status: EscrowStatus = EscrowStatus.NOT_FUNDED,
        budget: Decimal = Decimal("1500.00"),
        with_provider: bool = True,
        title: str = "Fix kitchen sink",
    ) -> Job:
        job = Job(
            client_id=client_actor.user_id,
            provider_id=provider_actor.user_id if with_provider else None,
            title=title,
            category="plumbing",
            description="Leaking pipe under the kitchen sink needs replacing.",
            budget=budget,
            status=status,
            escrow_status=escrow_status,
        )
        db_session.add(job)
        await db_session.commit()
        return job

    return _make


@pytest.fixture
def make_transaction(db_session: AsyncSession):  # type: ignore[no-untyped-def]
    async def _make(
        job: Job, status: TransactionStatus = TransactionStatus.PENDING
    ) -> Transaction:
        gross = Decimal(job.budget)
        commission = (gross * Decimal("0.10")).quantize(Decimal("0.01"))
        txn = Transaction(
            job_id=job.job_id,
            payer_id=job.client_id,
            payee_id=job.provider_id,
            amount=gross,
            commission=commission,
            net_amount=gross - commission,
            status=status,
        )
        db_session.add(txn)
        await db_session.commit()
        return txn

    return _make


@pytest.fixture
def make_payment(db_session: AsyncSession):  # type: ignore[no-untyped-def]
    async def _make(
        job: Job,
        session_id: str = "cs_test_existing",
        status: PaymentStatus = PaymentStatus.AWAITING_PAYMENT,
        external_payment_id: str | None = None,
    ) -> Payment:
        payment = Payment(
            job_id=job.job_id,
            client_id=job.client_id,
            provider_id=job.provider_id,
            session_id=session_id,
            amount=job.budget,
            currency="PHP",
            status=status,
            external_payment_id=external_payment_id,
        )
        db_session.add(payment)
        await db_session.commit()
        return payment

    return _make


@pytest.fixture
def make_quote(db_session: AsyncSession):  # type: ignore[no-untyped-def]
    async def _make(
        job: Job,
        provider_id: uuid.UUID | None = None,
        status: QuoteStatus = QuoteStatus.PENDING,
        amount: Decimal = Decimal("1400.00"),
    ) -> Quote:
        quote = Quote(
            job_id=job.job_id,
            provider_id=provider_id or uuid.uuid4(),
            proposed_amount=amount,
            status=status,
        )
        db_session.add(quote)
        await db_session.commit()
        return quote

    return _make


@pytest.fixture
def make_payout(db_session: AsyncSession, provider_actor: Actor):  # type: ignore[no-untyped-def]
    async def _make(
        amount: Decimal = Decimal("500.00"), status: PayoutStatus = PayoutStatus.PENDING
    ) -> Payout:
        payout = Payout(
            provider_id=provider_actor.user_id,
            amount=amount,
            bank_name="BDO",
            account_number="001234567890",
            account_name="Juan Dela Cruz",
            status=status,
        )
        db_session.add(payout)
        await db_session.commit()
        return payout

    return _make


@pytest.fixture
def backdate(db_session: AsyncSession):  # type: ignore[no-untyped-def]
    """Move a row's timestamps into the past so the sweeps treat it as stale."""

    async def _backdate(row, **delta: float) -> None:  # type: ignore[no-untyped-def]
        model = type(row)
        pk = model.__mapper__.primary_key[0]
        ts = datetime.now(UTC) - timedelta(**delta)
        values = {"created_at": ts}
        if "updated_at" in model.__table__.c:
            values["updated_at"] = ts
        await db_session.execute(
            update(model)
            .where(pk == getattr(row, pk.key))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db_session.commit()

    return _backdate


@pytest.fixture
def count_rows(db_session: AsyncSession):  # type: ignore[no-untyped-def]
    async def _count(model, *where) -> int:  # type: ignore[no-untyped-def]
        result = await db_session.execute(select(func.count()).select_from(model).where(*where))
        return result.scalar_one()

    return _count
