"""Pytest configuration for billing integration tests

WHAT: Shared fixtures for webhook engine, commission and HTTP tests
WHY: Every test gets an isolated in-memory database and recording fakes for
     the outbound collaborators (email, gateway registry, CRM, cloner)
REFERENCES:
    - funnelpay/services/billing/webhook_service.py
    - funnelpay/deps.py: Settings and dependency providers
"""

import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

# Ensure backend is in path
BACKEND_ROOT = Path(__file__).resolve().parents[2]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

# Set test environment
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379")


# ============================================================================
# Database Fixtures
# ============================================================================

@pytest.fixture
def test_db_engine():
    """In-memory SQLite shared by every session in the test (StaticPool)."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )

    from funnelpay.models import Base
    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(test_db_engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=test_db_engine)


@pytest.fixture
def test_db_session(session_factory) -> Generator[Session, None, None]:
    session = session_factory()
    yield session
    session.rollback()
    session.close()


# ============================================================================
# Recording fakes for outbound collaborators
# ============================================================================

class RecordingFake:
    """Records (method, kwargs) for every call."""

    def __init__(self) -> None:
        self.calls: List[Tuple[str, Dict[str, Any]]] = []

    def _record(self, name: str, **kwargs: Any) -> None:
        self.calls.append((name, kwargs))

    def calls_to(self, name: str) -> List[Dict[str, Any]]:
        return [kwargs for method, kwargs in self.calls if method == name]


class FakeNotifier(RecordingFake):
    def send_password_setup(self, **kwargs):
        self._record("send_password_setup", **kwargs)

    def send_signup_welcome(self, **kwargs):
        self._record("send_signup_welcome", **kwargs)

    def send_subscription_confirmation(self, **kwargs):
        self._record("send_subscription_confirmation", **kwargs)

    def send_addon_confirmation(self, **kwargs):
        self._record("send_addon_confirmation", **kwargs)

    def send_affiliate_congratulations(self, **kwargs):
        self._record("send_affiliate_congratulations", **kwargs)

    def send_commission_released(self, **kwargs):
        self._record("send_commission_released", **kwargs)


class FailingNotifier(FakeNotifier):
    """Every email raises after being recorded."""

    def _record(self, name: str, **kwargs: Any) -> None:
        super()._record(name, **kwargs)
        raise RuntimeError(f"{name} exploded")


class FakeSubscriberRegistry(RecordingFake):
    def __init__(self, subscriber_id: Optional[str] = "MPB-SUBSCRIBER-1") -> None:
        super().__init__()
        self.subscriber_id = subscriber_id

    def get_first_subscriber_id(self, subscription_id):
        self._record("get_first_subscriber_id", subscription_id=subscription_id)
        return self.subscriber_id


class FakeCrm(RecordingFake):
    def register_signup(self, **kwargs):
        self._record("register_signup", **kwargs)
        return {"id": "1", "name": "item"}


class FakeCloner(RecordingFake):
    def clone(self, **kwargs):
        self._record("clone", **kwargs)
        return None


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def failing_notifier() -> FailingNotifier:
    return FailingNotifier()


@pytest.fixture
def subscriber_registry() -> FakeSubscriberRegistry:
    return FakeSubscriberRegistry()


@pytest.fixture
def crm() -> FakeCrm:
    return FakeCrm()


@pytest.fixture
def cloner() -> FakeCloner:
    return FakeCloner()


@pytest.fixture
def settings():
    from funnelpay.deps import Settings

    return Settings(
        FRONTEND_URL="https://app.example.com",
        COMMISSION_HOLD_DAYS=30,
        RESEND_API_KEY=None,
    )


@pytest.fixture
def make_service(test_db_session, settings, notifier, subscriber_registry, crm, cloner, session_factory):
    """Factory so tests can swap one collaborator (e.g. a failing notifier)."""
    from funnelpay.services.billing.webhook_service import PaymentWebhookService

    def _make(**overrides):
        kwargs = dict(
            db=test_db_session,
            settings=settings,
            notifier=notifier,
            subscriber_registry=subscriber_registry,
            crm=crm,
            cloner=cloner,
            session_factory=session_factory,
        )
        kwargs.update(overrides)
        return PaymentWebhookService(**kwargs)

    return _make


@pytest.fixture
def service(make_service):
    return make_service()


# ============================================================================
# Model Fixtures
# ============================================================================

@pytest.fixture
def make_user(test_db_session):
    from funnelpay.models import PlanTypeEnum, RegistrationSourceEnum, User

    def _make(
        email: str = "buyer@example.com",
        *,
        username: Optional[str] = None,
        first_name: str = "Jane",
        last_name: str = "Buyer",
        is_verified: bool = True,
        plan: PlanTypeEnum = PlanTypeEnum.free,
        partner_level: int = 1,
        total_sales: int = 0,
        commission_percentage=5,
        referral_link_used_id=None,
    ) -> User:
        user = User(
            email=email,
            username=username or email.split("@", 1)[0].replace(".", ""),
            first_name=first_name,
            last_name=last_name,
            is_verified=is_verified,
            plan=plan,
            registration_source=RegistrationSourceEnum.direct,
            partner_level=partner_level,
            total_sales=total_sales,
            commission_percentage=commission_percentage,
            referral_link_used_id=referral_link_used_id,
        )
        test_db_session.add(user)
        test_db_session.commit()
        test_db_session.refresh(user)
        return user

    return _make


@pytest.fixture
def make_affiliate(test_db_session, make_user):
    """Create an affiliate account and its link. Returns (user, link)."""
    from funnelpay.models import AffiliateLink, PlanTypeEnum

    def _make(
        email: str = "partner@example.com",
        *,
        plan: PlanTypeEnum = PlanTypeEnum.agency,
        partner_level: int = 1,
        total_sales: int = 0,
        commission_percentage=5,
        code: str = "PARTNER1",
        token: Optional[str] = None,
    ):
        referrer = make_user(
            email,
            first_name="Pat",
            last_name="Partner",
            plan=plan,
            partner_level=partner_level,
            total_sales=total_sales,
            commission_percentage=commission_percentage,
        )
        link = AffiliateLink(user_id=referrer.id, code=code, token=token)
        test_db_session.add(link)
        test_db_session.commit()
        test_db_session.refresh(link)
        return referrer, link

    return _make


@pytest.fixture
def make_workspace(test_db_session):
    from funnelpay.models import Workspace

    def _make(owner, name: str = "Main Workspace", slug: Optional[str] = None) -> Workspace:
        workspace = Workspace(
            name=name,
            slug=slug or f"{owner.username}-main",
            owner_id=owner.id,
            created_at=datetime.utcnow(),
        )
        test_db_session.add(workspace)
        test_db_session.commit()
        test_db_session.refresh(workspace)
        return workspace

    return _make


# ============================================================================
# Payload Fixtures
# ============================================================================

@pytest.fixture
def build_payload():
    """Build a charge.succeeded payload the way our checkout links produce them."""

    def _build(
        transaction_id: str = "MPB-CHRG-0001",
        *,
        amount=99,
        email: str = "buyer@example.com",
        payment_type: str = "PLAN_PURCHASE",
        plan_type: Optional[str] = "business",
        frequency: str = "monthly",
        frequency_interval: int = 1,
        subscription_id: Optional[str] = None,
        addon_type: Optional[str] = None,
        workspace_id: Optional[str] = None,
        user_id: Optional[str] = None,
        affiliate_link: Optional[Dict[str, Any]] = None,
        custom: Optional[Dict[str, Any]] = None,
        customer_name: str = "Jane Buyer",
        customer_email: Optional[str] = None,
        phone: Optional[str] = "+971501234567",
        next_payment_date: Optional[str] = None,
        status: str = "captured",
        event_type: str = "charge.succeeded",
    ) -> Dict[str, Any]:
        details: Dict[str, Any] = {
            "email": email,
            "paymentType": payment_type,
            "frequency": frequency,
            "frequencyInterval": frequency_interval,
            "firstName": customer_name.split()[0] if customer_name else None,
            "lastName": " ".join(customer_name.split()[1:]) if customer_name else None,
        }
        if plan_type is not None:
            details["planType"] = plan_type
        if addon_type is not None:
            details["addonType"] = addon_type
        if workspace_id is not None:
            details["workspaceId"] = workspace_id

        custom_data: Dict[str, Any] = {"details": details}
        if user_id is not None:
            custom_data["userId"] = user_id
        if affiliate_link is not None:
            custom_data["affiliateLink"] = affiliate_link
        if custom:
            custom_data.update(custom)

        payload: Dict[str, Any] = {
            "id": transaction_id,
            "status": status,
            "event_type": event_type,
            "amount": amount,
            "amount_currency": "USD",
            "custom_data": custom_data,
            "customer_details": {
                "name": customer_name,
                "email": customer_email or email,
                "phone_number": phone,
            },
        }
        if subscription_id is not None:
            payload["subscription_id"] = subscription_id
        if next_payment_date is not None:
            payload["next_payment_date"] = next_payment_date
        return payload

    return _build
