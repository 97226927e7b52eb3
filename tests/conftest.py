"""
Pytest Configuration and Fixtures

Provides fixtures for:
- Database sessions (async, in-memory SQLite)
- In-memory Redis, controllable clock
- Fake collaborators (catalog, planner, channel adapter)
- Test data factories
"""
from datetime import datetime, timedelta
from typing import Any, AsyncGenerator, Mapping, Optional

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

import app.db.models  # noqa: F401  registers the mappers on Base.metadata
from app.core.circuit_breaker import CircuitBreaker
from app.db.database import Base
from app.db.models.conversation import Conversation
from app.db.models.user import User, UserAccount
from app.domain.services.channels.base_adapter import BaseChannelAdapter, IncomingMessage
from app.domain.services.closure_queue import RedisClosureQueue, RetryPolicy
from app.domain.services.closure_scheduler import ClosureScheduler
from app.domain.services.intent_classifier import IntentClassifier
from app.domain.services.planner import PlannerReply, PlannerRequest
from app.domain.services.tool_executor import ToolExecutor
from app.state_machine.context import Candidate
from app.state_machine.engine import ConversationEngine
from app.state_machine.manager import ConversationStore

# Test database URL (SQLite in memory for fast tests)
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"

START_TIME = datetime(2024, 3, 1, 12, 0, 0)


@pytest.fixture(scope="function")
async def async_engine():
    """Create async test database engine"""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture(scope="function")
def session_maker(async_engine) -> async_sessionmaker:
    return async_sessionmaker(
        async_engine,
        class_=AsyncSession,
        expire_on_commit=False
    )


@pytest.fixture(scope="function")
async def db_session(session_maker) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for tests"""
    async with session_maker() as session:
        yield session
        await session.rollback()


@pytest.fixture(autouse=True)
def reset_circuit_breakers():
    """Breakers are process-wide singletons"""
    CircuitBreaker.reset_all()
    yield
    CircuitBreaker.reset_all()


# ============================================================================
# Time and Redis
# ============================================================================

class FakeClock:
    """Naive-UTC clock that only moves when told to"""

    def __init__(self, start: datetime = START_TIME):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float = 0, **kwargs) -> datetime:
        self.now = self.now + timedelta(seconds=seconds, **kwargs)
        return self.now


class FakeRedis:
    """
    In-memory subset of redis.asyncio used by the closure queue and health checks.

    Values are stored as strings, as with ``decode_responses=True``.
    """

    def __init__(self):
        self.hashes: dict[str, dict[str, str]] = {}
        self.zsets: dict[str, dict[str, float]] = {}
        self.strings: dict[str, str] = {}
        self.fail_with: Optional[Exception] = None
        self.closed = False

    def _check(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    async def ping(self) -> bool:
        self._check()
        return True

    async def aclose(self) -> None:
        self.closed = True

    async def get(self, key: str) -> Optional[str]:
        self._check()
        return self.strings.get(key)

    async def set(self, key: str, value: Any, **kwargs) -> bool:
        self._check()
        if kwargs.get("nx") and key in self.strings:
            return False
        self.strings[key] = str(value)
        return True

    async def hset(self, key: str, field: Optional[str] = None, value: Any = None, mapping: Optional[Mapping] = None) -> int:
        self._check()
        target = self.hashes.setdefault(key, {})
        items = dict(mapping or {})
        if field is not None:
            items[field] = value
        added = sum(1 for k in items if str(k) not in target)
        for k, v in items.items():
            target[str(k)] = str(v)
        return added

    async def hgetall(self, key: str) -> dict[str, str]:
        self._check()
        return dict(self.hashes.get(key, {}))

    async def delete(self, *keys: str) -> int:
        self._check()
        removed = 0
        for key in keys:
            for store in (self.hashes, self.zsets, self.strings):
                if key in store:
                    del store[key]
                    removed += 1
        return removed

    async def zadd(self, key: str, mapping: Mapping[str, float], nx: bool = False) -> int:
        self._check()
        zset = self.zsets.setdefault(key, {})
        added = 0
        for member, score in mapping.items():
            if member in zset:
                if nx:
                    continue
            else:
                added += 1
            zset[member] = float(score)
        return added

    async def zrem(self, key: str, *members: str) -> int:
        self._check()
        zset = self.zsets.get(key, {})
        removed = 0
        for member in members:
            if member in zset:
                del zset[member]
                removed += 1
        return removed

    async def zscore(self, key: str, member: str) -> Optional[float]:
        self._check()
        return self.zsets.get(key, {}).get(member)

    async def zcard(self, key: str) -> int:
        self._check()
        return len(self.zsets.get(key, {}))

    async def zrangebyscore(self, key: str, min: Any, max: Any, start: Optional[int] = None, num: Optional[int] = None) -> list[str]:
        self._check()
        low = float("-inf") if min == "-inf" else float(min)
        high = float("inf") if max == "+inf" else float(max)
        members = sorted(
            (score, member)
            for member, score in self.zsets.get(key, {}).items()
            if low <= score <= high
        )
        result = [member for _, member in members]
        if start is not None and num is not None:
            result = result[start:start + num]
        return result


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_redis() -> FakeRedis:
    return FakeRedis()


@pytest.fixture
def closure_queue(fake_redis: FakeRedis, clock: FakeClock) -> RedisClosureQueue:
    return RedisClosureQueue(fake_redis, clock=clock)


# ============================================================================
# Fake collaborators
# ============================================================================

def movie(title: str, year: Optional[int] = None, external_id: Optional[str] = None) -> Candidate:
    return Candidate(title=title, year=year, item_type="movie", external_id=external_id)


class FakeCatalog:
    """Canned catalog: exact query -> candidates; unknown movie queries find nothing"""

    def __init__(self, results: Optional[dict[str, list[Candidate]]] = None):
        self.results = results or {}
        self.calls: list[tuple[str, str]] = []
        self.fail_with: Optional[Exception] = None

    async def search(self, query: str, item_type: str) -> list[Candidate]:
        self.calls.append((query, item_type))
        if self.fail_with is not None:
            raise self.fail_with
        if query in self.results:
            return list(self.results[query])
        if item_type == "movie":
            return []
        return [Candidate(title=query, item_type=item_type, metadata={"url": query})]


class FakePlanner:
    """Returns queued replies in order; an Exception in the queue is raised"""

    def __init__(self, *replies: Any):
        self.replies = list(replies)
        self.requests: list[PlannerRequest] = []

    async def call(self, request: PlannerRequest) -> PlannerReply:
        self.requests.append(request)
        reply = self.replies.pop(0) if self.replies else PlannerReply(text="Certo!")
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return await reply(request)
        return reply


class FakeChannelAdapter(BaseChannelAdapter):
    def __init__(self, provider: str = "telegram", send_error: Optional[Exception] = None):
        self._provider = provider
        self.send_error = send_error
        self.sent: list[tuple[str, str]] = []
        self.after_send_calls: list[IncomingMessage] = []

    @property
    def provider_name(self) -> str:
        return self._provider

    def parse_incoming(self, payload: dict[str, Any]) -> Optional[IncomingMessage]:
        return None

    def verify(self, headers: Mapping[str, str], body: bytes) -> bool:
        return True

    async def send_text(self, external_id: str, text: str) -> None:
        if self.send_error is not None:
            raise self.send_error
        self.sent.append((external_id, text))

    async def after_send(self, incoming: IncomingMessage) -> None:
        self.after_send_calls.append(incoming)


def incoming_message(text: str, external_id: str = "1001", provider: str = "telegram", **kwargs) -> IncomingMessage:
    return IncomingMessage(
        provider=provider,
        external_id=external_id,
        sender_name=kwargs.pop("sender_name", "Ana"),
        text=text,
        timestamp=START_TIME,
        **kwargs,
    )


@pytest.fixture
def catalog() -> FakeCatalog:
    return FakeCatalog({
        "Matrix": [movie("Matrix", 1999, "603"), movie("Matrix Reloaded", 2003, "604"), movie("Matrix Revolutions", 2003, "605")],
        "Inception": [movie("Inception", 2010, "27205")],
        "Interstellar": [movie("Interstellar", 2014, "157336")],
        "Duna": [movie("Duna", 2021, "438631"), movie("Duna", 1984, "841")],
    })


@pytest.fixture
def planner() -> FakePlanner:
    return FakePlanner()


# ============================================================================
# Service wiring
# ============================================================================

@pytest.fixture
def store(db_session: AsyncSession) -> ConversationStore:
    return ConversationStore(db_session)


@pytest.fixture
def retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, backoff_seconds=5, max_backoff_seconds=300)


@pytest.fixture
def scheduler(store, closure_queue, clock, retry_policy) -> ClosureScheduler:
    return ClosureScheduler(
        store,
        closure_queue,
        close_delay_seconds=180,
        awaiting_timeout_seconds=1800,
        retry=retry_policy,
        clock=clock,
    )


@pytest.fixture
def engine(db_session, store, scheduler, catalog, planner, clock) -> ConversationEngine:
    return ConversationEngine(
        store=store,
        scheduler=scheduler,
        classifier=IntentClassifier(max_batch_items=10),
        tools=ToolExecutor(db_session),
        planner=planner,
        catalog=catalog,
        clock=clock,
    )


# ============================================================================
# Test Data Factories
# ============================================================================

@pytest.fixture
def user_factory(db_session: AsyncSession):
    """Factory for creating test users"""
    async def _create_user(
        name: str = "Test User",
        phone_number: Optional[str] = None,
        provider: str = "telegram",
        external_id: Optional[str] = None,
    ) -> User:
        user = User(name=name, phone_number=phone_number)
        db_session.add(user)
        await db_session.flush()
        if external_id is not None:
            db_session.add(UserAccount(user_id=user.id, provider=provider, external_id=external_id))
        await db_session.commit()
        await db_session.refresh(user)
        return user

    return _create_user


@pytest.fixture
async def user(user_factory) -> User:
    return await user_factory(external_id="1001")


@pytest.fixture
def conversation_factory(db_session: AsyncSession):
    """Insert a conversation row directly, bypassing the store"""
    async def _create(
        user_id: int,
        state: str = "idle",
        context: Optional[dict] = None,
        close_at: Optional[datetime] = None,
        close_job_id: Optional[str] = None,
        updated_at: datetime = START_TIME,
    ) -> Conversation:
        conversation = Conversation(
            user_id=user_id,
            state=state,
            context=context or {"kind": state if state in ("idle", "waiting_close", "closed") else "idle"},
            close_at=close_at,
            close_job_id=close_job_id,
            created_at=updated_at,
            updated_at=updated_at,
        )
        db_session.add(conversation)
        await db_session.commit()
        await db_session.refresh(conversation)
        return conversation

    return _create


# ============================================================================
# HTTP app
# ============================================================================

@pytest.fixture(scope="function")
async def test_client():
    """AsyncClient over the FastAPI app; adapters are overridden per test"""
    from httpx import ASGITransport, AsyncClient

    from app.main import app

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
