"""
Test configuration and fixtures.

Provides:
- Fresh schema per test (SQLite in-memory unless DATABASE_URL is set)
- Contact and sequence factories
- FakeDispatcher that records sends and can fail chosen addresses
- HTTPX AsyncClient with DB and job context overrides
"""
import os
import uuid
from datetime import datetime, timezone
from typing import AsyncGenerator, Awaitable, Callable, Generator

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

# Configure before navi.core.config is imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["INTERNAL_SECRET"] = "test-internal-secret"
os.environ["TOKEN_SECRET"] = "test-token-secret"
os.environ["API_BASE_URL"] = "https://api.test"
os.environ["FRONTEND_URL"] = "https://app.test"
os.environ["DISPATCH_ENABLED"] = "False"

from navi.core.deps import get_db, get_job_context  # noqa: E402
from navi.db import models  # noqa: E402,F401
from navi.db.base import Base  # noqa: E402
from navi.db.enums import Channel  # noqa: E402
from navi.db.models import Contact  # noqa: E402
from navi.db.session import SessionLocal, engine  # noqa: E402
from navi.jobs.context import JobContext  # noqa: E402
from navi.main import app  # noqa: E402
from navi.schemas.automation import SequenceCreate, StepCreate  # noqa: E402
from navi.services import enrollment_service  # noqa: E402
from navi.services.audience_service import DbContactResolver  # noqa: E402
from navi.services.dispatch_service import (  # noqa: E402
    DispatchResult,
    MessageDispatcher,
    OutboundMessage,
)
from navi.services.pollers.inbox import InboxPoller  # noqa: E402
from navi.services.pollers.rankings import RankProvider, RankTracker  # noqa: E402
from navi.services.pollers.reviews import ReviewPoller  # noqa: E402

INTERNAL_HEADERS = {"X-Internal-Secret": "test-internal-secret"}
T0 = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


# =============================================================================
# Test doubles
# =============================================================================

class FakeDispatcher(MessageDispatcher):
    """Records every dispatch; addresses in `failures` get that result instead."""

    def __init__(self):
        self.attempts: list[tuple[str, str, OutboundMessage]] = []
        self.failures: dict[str, DispatchResult] = {}
        self.before_send: Callable[[str, str, OutboundMessage], Awaitable[None]] | None = None

    @property
    def sent(self) -> list[tuple[str, str, OutboundMessage]]:
        return [a for a in self.attempts if a[1] not in self.failures]

    def addresses(self, channel: str | None = None) -> list[str]:
        return [a[1] for a in self.sent if channel is None or a[0] == channel]

    async def dispatch(self, channel, address, message):
        channel = Channel(channel).value
        if self.before_send is not None:
            await self.before_send(channel, address, message)
        self.attempts.append((channel, address, message))
        if address in self.failures:
            return self.failures[address]
        return DispatchResult.ok(f"msg-{len(self.attempts)}")


class FakeRankProvider(RankProvider):
    def __init__(self, ranks: dict[str, int | None] | None = None):
        self.ranks = ranks or {}
        self.calls: list[tuple[str, str]] = []

    async def get_rank(self, keyword, domain, location):
        self.calls.append((keyword, domain))
        return self.ranks.get(domain)


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Creates the schema, yields a session, then drops everything.

    Services commit for real (conditional updates must be visible to
    later statements), so isolation comes from a fresh schema per test.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


_UNSET = object()


@pytest.fixture
def make_contact(db: Session, user_id: uuid.UUID):
    """Factory for contacts of the test tenant."""

    def _make(
        name: str = "Jane Doe",
        email=_UNSET,
        phone: str | None = None,
        tags: list[str] | None = None,
        **kwargs,
    ) -> Contact:
        contact = Contact(
            user_id=kwargs.pop("owner_id", user_id),
            name=name,
            email=f"lead-{uuid.uuid4().hex[:8]}@example.com" if email is _UNSET else email,
            phone=phone,
            tags=tags or [],
            **kwargs,
        )
        db.add(contact)
        db.commit()
        db.refresh(contact)
        return contact

    return _make


@pytest.fixture
def make_sequence(db: Session, user_id: uuid.UUID):
    """Factory: make_sequence([{"type": "send_email", ...}, {"type": "wait", "days": 2}])."""

    def _make(steps: list[dict], name: str = "Welcome", is_active: bool = True):
        return enrollment_service.create_sequence(
            db,
            SequenceCreate(
                user_id=user_id,
                name=name,
                is_active=is_active,
                steps=[StepCreate(step_order=i, payload=p) for i, p in enumerate(steps)],
            ),
        )

    return _make


@pytest.fixture
def dispatcher() -> FakeDispatcher:
    return FakeDispatcher()


@pytest.fixture
def resolver(db: Session) -> DbContactResolver:
    return DbContactResolver(db)


@pytest.fixture
def rank_provider() -> FakeRankProvider:
    return FakeRankProvider()


@pytest.fixture
def job_context(
    dispatcher: FakeDispatcher, resolver: DbContactResolver, rank_provider: FakeRankProvider
) -> JobContext:
    return JobContext(
        dispatcher=dispatcher,
        resolver=resolver,
        inbox_poller=InboxPoller(),
        review_poller=ReviewPoller(),
        rank_tracker=RankTracker(rank_provider),
        now=T0,
    )


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, job_context: JobContext) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient against the app with the test session and job context."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_job_context] = lambda: job_context

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as c:
        yield c

    app.dependency_overrides.clear()
