import asyncio
import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from unittest.mock import patch

import fakeredis
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy import JSON, event
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from homebid.common.enums import JobStatus, UserRole
from homebid.common.exceptions import ExternalServiceError
from homebid.common.security import create_access_token
from homebid.core.bids.service import BidService
from homebid.core.caller import Caller
from homebid.core.completions.service import CompletionService
from homebid.core.contracts.service import ContractService
from homebid.core.disputes.service import DisputeService
from homebid.core.escrow.service import EscrowService
from homebid.db.base import Base
from homebid.db.models import *  # noqa: F401,F403 - ensure all models loaded
from homebid.db.models.job import Job
from homebid.db.models.user import User
from homebid.integrations.base import PaymentGateway

# In-memory SQLite per test - remap JSONB to JSON
TEST_DATABASE_URL = "sqlite+aiosqlite://"


# Make JSONB render as JSON for SQLite
@event.listens_for(Base.metadata, "before_create")
def _remap_jsonb(target, connection, **kw):
    if connection.dialect.name == "sqlite":
        for table in target.tables.values():
            for column in table.columns:
                if isinstance(column.type, JSONB):
                    column.type = JSON()


class FakeGateway(PaymentGateway):
    """Records every gateway call; individual operations can be made to fail.

    ``failing`` operations are declined outright. ``timing_out`` operations
    reach the provider (the call is recorded) but the reply is lost. Replays
    of an idempotency key return the original id, as Stripe does.
    """

    def __init__(self):
        super().__init__("fake")
        self.calls: list[tuple[str, Decimal, str]] = []
        self.failing: set[str] = set()
        self.timing_out: set[str] = set()
        self.delay = 0.0
        self._replies: dict[str, str] = {}

    async def health_check(self) -> bool:
        return True

    async def _record(self, op: str, amount: Decimal, idempotency_key: str) -> str:
        if self.delay:
            await asyncio.sleep(self.delay)
        if op in self.failing:
            raise ExternalServiceError("fake", f"{op} declined", declined=True)
        self.calls.append((op, amount, idempotency_key))
        reply = self._replies.setdefault(idempotency_key, f"{op}_{len(self._replies) + 1}")
        if op in self.timing_out:
            raise ExternalServiceError("fake", "read timeout")
        return reply

    async def charge(self, amount, customer_ref, idempotency_key):
        return await self._record("charge", amount, idempotency_key)

    async def refund(self, charge_id, amount, idempotency_key):
        return await self._record("refund", amount, idempotency_key)

    async def transfer(self, amount, destination_ref, idempotency_key):
        return await self._record("transfer", amount, idempotency_key)

    def amounts(self, op: str) -> list[Decimal]:
        return [amount for name, amount, _ in self.calls if name == op]

    def keys(self, op: str) -> list[str]:
        return [key for name, _, key in self.calls if name == op]


@pytest.fixture
async def test_engine():
    engine = create_async_engine(
        TEST_DATABASE_URL,
        echo=False,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def db_session(test_engine) -> AsyncGenerator[AsyncSession, None]:
    session_factory = async_sessionmaker(
        test_engine, class_=AsyncSession, expire_on_commit=False
    )
    async with session_factory() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reservation_store(monkeypatch):
    """An in-memory Redis for escrow and dispute reservations."""
    store = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    monkeypatch.setattr("homebid.core.locking._redis", store)
    return store


@pytest.fixture(autouse=True)
def notifications():
    """Capture Celery notification hand-offs instead of queueing them."""
    with patch("homebid.tasks.notification_tasks.deliver_notification.delay") as delay:
        yield delay


# ---------- Gateway and services ----------

@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def escrow_service(gateway):
    return EscrowService(gateway)


@pytest.fixture
def bid_service():
    return BidService()


@pytest.fixture
def contract_service(escrow_service):
    return ContractService(escrow_service)


@pytest.fixture
def completion_service(escrow_service):
    return CompletionService(escrow_service)


@pytest.fixture
def dispute_service(escrow_service):
    return DisputeService(escrow_service)


# ---------- Users and jobs ----------

async def make_user(db: AsyncSession, role: UserRole, name: str) -> User:
    user = User(
        id=uuid.uuid4(),
        email=f"{name}_{uuid.uuid4().hex[:8]}@test.com",
        full_name=f"Test {name.title()}",
        role=role.value,
        payment_customer_ref=f"cus_{name}",
        payout_account_ref=f"acct_{name}",
    )
    db.add(user)
    await db.flush()
    return user


@pytest.fixture
async def homeowner(db_session):
    return await make_user(db_session, UserRole.HOMEOWNER, "homeowner")


@pytest.fixture
async def contractor(db_session):
    return await make_user(db_session, UserRole.CONTRACTOR, "contractor")


@pytest.fixture
async def rival(db_session):
    return await make_user(db_session, UserRole.CONTRACTOR, "rival")


@pytest.fixture
async def mediator(db_session):
    return await make_user(db_session, UserRole.MEDIATOR, "mediator")


@pytest.fixture
async def job(db_session, homeowner):
    job = Job(
        id=uuid.uuid4(),
        poster_id=homeowner.id,
        title="Replace kitchen backsplash",
        description="Remove old tile and install subway tile",
        budget=Decimal("600.00"),
        status=JobStatus.OPEN.value,
    )
    db_session.add(job)
    await db_session.flush()
    return job


@pytest.fixture
async def contract(db_session, job, homeowner, contractor, bid_service, contract_service):
    """A $500 bid accepted into an ACTIVE contract with the deposit charged."""
    bid = await bid_service.submit_bid(
        Caller.of(contractor), job.id, Decimal("500.00"), "2 weeks", "Tile work", db_session
    )
    return await contract_service.accept_bid(bid.id, Caller.of(homeowner), db_session)


# ---------- HTTP ----------

@pytest.fixture
async def client(db_session, gateway):
    from homebid.api.deps import get_db, get_payment_gateway
    from homebid.main import app

    async def override_get_db():
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def _headers(user: User) -> dict[str, str]:
        return {"Authorization": f"Bearer {create_access_token({'sub': str(user.id)})}"}

    return _headers
