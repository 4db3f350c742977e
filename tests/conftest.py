"""
Test configuration and fixtures.

Provides:
- A throwaway SQLite database, recreated for every test
- Organization, stage, owner and entity fixtures
- A scripted fake Sender for dispatcher tests
- HTTPX AsyncClient scoped to the test organization
"""
import os
import tempfile
import uuid
from collections import deque
from typing import AsyncGenerator, Generator

# Settings are read at import time; point them at a scratch database first
_DB_DIR = tempfile.mkdtemp(prefix="stageflow-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_DB_DIR, 'test.db')}"
os.environ["RESEND_API_KEY"] = ""
os.environ["TWILIO_ACCOUNT_SID"] = ""
os.environ["SENTRY_DSN"] = ""

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

from stageflow.core.deps import get_db
from stageflow.db.base import Base
from stageflow.db.models import Organization, PipelineStage, TrackedEntity, User
from stageflow.db.session import SessionLocal, engine
from stageflow.main import app
from stageflow.services import entity_service
from stageflow.services.senders import SendResult

import stageflow.db.models  # noqa: F401


# =============================================================================
# Database Fixtures
# =============================================================================

@pytest.fixture(scope="function")
def db() -> Generator[Session, None, None]:
    """
    Fresh schema per test.

    Service code commits freely, so isolation comes from rebuilding the
    tables rather than rolling back a transaction.
    """
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def test_org(db: Session) -> Organization:
    return entity_service.create_org(
        db,
        name="Test Organization",
        slug=f"test-org-{uuid.uuid4().hex[:8]}",
        timezone="America/New_York",
    )


@pytest.fixture(scope="function")
def other_org(db: Session) -> Organization:
    return entity_service.create_org(
        db,
        name="Other Organization",
        slug=f"other-org-{uuid.uuid4().hex[:8]}",
        timezone="Europe/London",
    )


@pytest.fixture(scope="function")
def stages(db: Session, test_org: Organization) -> dict[str, PipelineStage]:
    """Inquiry -> Booked -> Completed."""
    return {
        name: entity_service.upsert_stage(db, test_org.id, name=name, order_index=i)
        for i, name in enumerate(("Inquiry", "Booked", "Completed"))
    }


@pytest.fixture(scope="function")
def test_user(db: Session, test_org: Organization) -> User:
    return entity_service.create_user(
        db,
        test_org.id,
        email=f"owner-{uuid.uuid4().hex[:8]}@test.com",
        display_name="Owner User",
        phone="555-010-2000",
    )


@pytest.fixture(scope="function")
def test_entity(
    db: Session,
    test_org: Organization,
    test_user: User,
    stages: dict[str, PipelineStage],
) -> TrackedEntity:
    """Opted in to email and SMS, owned by test_user, no stage yet."""
    return entity_service.upsert_entity(
        db,
        test_org.id,
        uuid.uuid4(),
        project_type="wedding",
        first_name="Dana",
        last_name="Reyes",
        email="dana@example.com",
        phone="(555) 010-1000",
        email_opt_in=True,
        sms_opt_in=True,
        owner_user_id=test_user.id,
    )


# =============================================================================
# Sender Fixtures
# =============================================================================

class FakeSender:
    """
    Sender that records calls and replays scripted outcomes.

    Each call pops the next outcome: a SendResult is returned, an exception
    is raised. With nothing scripted every call succeeds.
    """

    def __init__(self):
        self.calls: list[dict] = []
        self.outcomes: deque = deque()

    def script(self, *outcomes) -> None:
        self.outcomes.extend(outcomes)

    async def _next(self, call: dict) -> SendResult:
        self.calls.append(call)
        if not self.outcomes:
            return SendResult(message_id=f"fake-{len(self.calls)}")
        outcome = self.outcomes.popleft()
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome

    async def send_email(self, recipient, message, idempotency_key):
        return await self._next(
            {"kind": "email", "recipient": recipient, "message": message, "key": idempotency_key}
        )

    async def send_sms(self, recipient, text, idempotency_key):
        return await self._next(
            {"kind": "sms", "recipient": recipient, "text": text, "key": idempotency_key}
        )

    async def send_document(self, recipient, document_ref, message, idempotency_key):
        return await self._next(
            {
                "kind": "document",
                "recipient": recipient,
                "document_ref": document_ref,
                "message": message,
                "key": idempotency_key,
            }
        )


@pytest.fixture(scope="function")
def fake_sender() -> FakeSender:
    return FakeSender()


# =============================================================================
# Client Fixtures
# =============================================================================

@pytest.fixture(scope="function")
async def client(db: Session, test_org: Organization) -> AsyncGenerator[AsyncClient, None]:
    """AsyncClient acting on behalf of test_org."""
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
        headers={"X-Org-Id": str(test_org.id)},
    ) as c:
        yield c

    app.dependency_overrides.clear()
