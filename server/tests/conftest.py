"""
Shared test configuration and fixtures for the HR letters test suite.
"""

import json
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from app.api.dependencies.database import get_db
from app.core.config import Settings
from app.core.errors import ProviderUnavailable, SignatureInvalid, ValidationError
from app.core.security import Actor, create_access_token
from app.db.base import Base
from app.integrations.esignature import (
    NormalizedCallback,
    ProviderRegistry,
    ProviderSignResult,
    SignatureProvider,
    SignRequest,
    map_vendor_status,
)
from app.integrations.esignature.base import parse_timestamp
from app.main import create_application
from app.models.approval import ApprovalStatus
from app.models.letter import LetterType
from app.schemas.approval import ApprovalStepCreate
from app.schemas.letter import LetterCreate, SignatoryCreate
from app.services import letter_service
from app.services.locks import KeyedLockRegistry


TEST_DATABASE_URL = "sqlite+aiosqlite://"
FAKE_SIGNATURE_HEADER = "X-Fake-Signature"
FAKE_SIGNATURE_VALUE = "trusted"


class FakeSignatureProvider(SignatureProvider):
    """In-memory provider that records sign requests and trusts one fixed header value."""

    def __init__(self, name: str):
        self.name = name
        self.requests: List[SignRequest] = []
        self.fail_with: Optional[Exception] = None
        self.closed = False

    async def initiate_sign(self, request: SignRequest) -> ProviderSignResult:
        if self.fail_with is not None:
            raise self.fail_with
        self.requests.append(request)
        return ProviderSignResult(provider=self.name, provider_reference=f"{self.name}-ref-{len(self.requests)}")

    def validate_callback(self, body: bytes, headers: Mapping[str, str]) -> NormalizedCallback:
        if headers.get(FAKE_SIGNATURE_HEADER) != FAKE_SIGNATURE_VALUE:
            raise SignatureInvalid(f"missing {FAKE_SIGNATURE_HEADER} header")
        try:
            data = json.loads(body)
        except ValueError as exc:
            raise ValidationError("invalid fake webhook JSON") from exc
        if not isinstance(data, dict) or not data.get("request_id") or not data.get("status"):
            raise ValidationError("fake webhook needs request_id and status")
        return NormalizedCallback(
            provider=self.name,
            request_id=data["request_id"],
            status=map_vendor_status(data["status"]),
            vendor_status=data["status"],
            provider_reference=data.get("reference"),
            token=data.get("token"),
            signature_artifact_ref=data.get("artifact"),
            signed_at=parse_timestamp(data.get("signed_at")),
            raw=data,
        )

    def webhook(self, request: SignRequest, status: str = "completed", **extra: Any) -> Dict[str, Any]:
        """Body a provider would post back for ``request``."""
        return {
            "request_id": request.request_id,
            "status": status,
            "token": request.token,
            "reference": f"{self.name}-envelope",
            "artifact": f"{self.name}://artifacts/{request.request_id}",
            **extra,
        }

    async def close(self) -> None:
        self.closed = True


def webhook_headers() -> Dict[str, str]:
    return {FAKE_SIGNATURE_HEADER: FAKE_SIGNATURE_VALUE, "Content-Type": "application/json"}


def employee_binding(**overrides: Any) -> Dict[str, Any]:
    binding: Dict[str, Any] = {
        "employee": {"id": "EMP-1001", "name": "Asha Verma", "designation": "Store Associate"},
        "company": {"name": "Lenskart Solutions", "city": "Indore"},
        "comp": {"ctc": 540000, "currency": "INR"},
    }
    binding.update(overrides)
    return binding


def three_step_workflow() -> List[ApprovalStepCreate]:
    return [
        ApprovalStepCreate(step_number=1, approver_role="hr_manager", sla_hours=24),
        ApprovalStepCreate(step_number=2, approver_role="finance", sla_hours=48),
        ApprovalStepCreate(step_number=3, approver_id="ceo-01", sla_hours=72),
    ]


def offer_letter(**overrides: Any) -> LetterCreate:
    payload: Dict[str, Any] = {
        "letter_type": LetterType.OFFER,
        "template_id": "offer-standard",
        "template_version": "3",
        "data_binding": employee_binding(),
        "issue_date": date(2025, 4, 1),
        "effective_date": date(2025, 4, 15),
        "signatories": [
            SignatoryCreate(name="Ravi Kumar", title="HR Head", email="ravi@example.com", provider="docusign"),
            SignatoryCreate(name="Meera Shah", title="Candidate", email="meera@example.com", provider="docusign"),
        ],
        "approval_steps": three_step_workflow(),
    }
    payload.update(overrides)
    return LetterCreate(**payload)


HR_MANAGER = Actor(id="hr-07", roles=frozenset({"hr_manager"}), ip="10.0.0.7", user_agent="pytest")
FINANCE = Actor(id="fin-02", roles=frozenset({"finance"}))
CEO = Actor(id="ceo-01", roles=frozenset({"executive"}))
ADMIN = Actor(id="admin-01", roles=frozenset({"admin"}))
AUTHOR = Actor(id="hr-author", roles=frozenset({"hr_ops"}), ip="10.0.0.2")
WORKFLOW_APPROVERS = {1: HR_MANAGER, 2: FINANCE, 3: CEO}


@pytest.fixture
def now() -> datetime:
    return datetime(2025, 4, 2, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        environment="test",
        database_url=TEST_DATABASE_URL,
        secret_key="test-secret-key-for-jwt",
        signing_secret="test-signing-secret",
        signing_base_url="https://sign.test",
        public_base_url="https://letters.test",
        serial_brand="LEN",
        serial_store_code="IN-IND-114",
        approval_override_roles=["admin"],
        signing_request_ttl_hours=24,
    )


@pytest.fixture
def providers() -> ProviderRegistry:
    return ProviderRegistry({"docusign": FakeSignatureProvider("docusign"), "digio": FakeSignatureProvider("digio")})


@pytest.fixture
def locks() -> KeyedLockRegistry:
    return KeyedLockRegistry()


@pytest_asyncio.fixture
async def engine():
    test_engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield test_engine
    await test_engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def session(session_factory) -> AsyncSession:
    async with session_factory() as db_session:
        yield db_session


@pytest_asyncio.fixture
async def draft_letter(session, settings, providers, now):
    letter = await letter_service.create_letter(
        session, offer_letter(), actor=AUTHOR, settings=settings, known_providers=providers, now=now
    )
    await session.commit()
    return letter


@pytest_asyncio.fixture
async def pending_letter(session, draft_letter, now):
    letter = await letter_service.submit_for_approval(session, draft_letter, actor=AUTHOR, now=now)
    await session.commit()
    return letter


@pytest_asyncio.fixture
async def approved_letter(session, pending_letter, settings, now):
    for step_number, approver in WORKFLOW_APPROVERS.items():
        await letter_service.decide_step(
            session,
            pending_letter,
            step_number,
            ApprovalStatus.APPROVED,
            actor=approver,
            settings=settings,
            now=now + timedelta(hours=step_number),
        )
    await session.commit()
    return pending_letter


@pytest.fixture
def app(session_factory, providers, locks):
    application = create_application()
    application.state.providers = providers
    application.state.locks = locks
    application.state.renderer = None
    application.state.delivery = None

    async def override_get_db():
        async with session_factory() as db_session:
            yield db_session

    application.dependency_overrides[get_db] = override_get_db
    yield application
    application.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://testserver") as http_client:
        yield http_client


def auth_headers(actor: Actor) -> Dict[str, str]:
    token = create_access_token(actor.id, roles=sorted(actor.roles))
    return {"Authorization": f"Bearer {token}"}


def letter_payload(**overrides: Any) -> Dict[str, Any]:
    payload = offer_letter().model_dump(mode="json")
    payload.update(overrides)
    return payload
