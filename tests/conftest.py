"""Common test fixtures and configuration for pytest.

Settings are read from the environment at import time, so the required
variables are set here before any project module is imported.
"""

import json
import os
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import Any

os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("AUTH0_DOMAIN", "tenant.example.auth0.com")
os.environ.setdefault("AUTH0_API_AUDIENCE", "https://billing.example.test")
os.environ.setdefault("CRON_API_KEY", "test-cron-key")
os.environ.setdefault("RESEND_API_KEY", "")

import pytest  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from clients.payment_gateway import GatewayAdapter  # noqa: E402
from core.constants import EmploymentStatus, PaymentEventKind, PlanType  # noqa: E402
from core.exceptions import GatewayError, SignatureVerificationError  # noqa: E402
from database.models import Base, Employee, SeatPlan, SubscriptionPlan, User  # noqa: E402
from schemas.payment import InvoiceRef, InvoiceRequest, PaymentEvent  # noqa: E402
from services.notifications import NotificationService  # noqa: E402

FAKE_SIGNATURE = "valid-signature"


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: Any) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway(GatewayAdapter):
    """In-memory gateway: records invoices and accepts a fixed signature."""

    name = "midtrans"
    reference_prefix = "HRIS-"

    def __init__(self, fail: bool = False) -> None:
        super().__init__(timeout=1.0)
        self.fail = fail
        self.requests: list[InvoiceRequest] = []

    async def create_invoice(self, request: InvoiceRequest) -> InvoiceRef:
        self.requests.append(request)
        if self.fail:
            raise GatewayError(self.name, "gateway unavailable", status_code=503)
        reference = self.encode_reference(request.session_id)
        return InvoiceRef(
            gateway=self.name,
            merchant_reference=reference,
            provider_ref=f"snap-{request.session_id[:8]}",
            redirect_url=f"https://pay.example.test/{request.session_id}",
            token=f"token-{request.session_id[:8]}",
        )

    def verify_and_parse(self, raw_body: bytes, signature: str | None) -> PaymentEvent:
        if signature != FAKE_SIGNATURE:
            raise SignatureVerificationError("invalid signature", {"gateway": self.name})
        payload = self._load_json(raw_body)
        reference = str(self._require(payload, "order_id"))
        return PaymentEvent(
            kind=PaymentEventKind(payload.get("kind", "paid")),
            gateway=self.name,
            merchant_reference=reference,
            session_id=self.decode_reference(reference),
            gateway_transaction_id=payload.get("transaction_id"),
            amount_received=Decimal(str(payload["amount"])) if "amount" in payload else None,
            raw=payload,
        )


class RecordingNotifier(NotificationService):
    """Collects dispatched notifications instead of sending them."""

    def __init__(self) -> None:
        super().__init__()
        self.sent: list[tuple[Any, str | None, dict[str, Any]]] = []

    def dispatch(self, notification_type: Any, to: str | None, context: dict | None = None) -> None:
        self.sent.append((notification_type, to, context or {}))

    def of_type(self, notification_type: Any) -> list[tuple[Any, str | None, dict[str, Any]]]:
        return [entry for entry in self.sent if entry[0] == notification_type]


def paid_event(
    session_id: str,
    amount: Decimal,
    transaction_id: str = "tx-1",
    kind: PaymentEventKind = PaymentEventKind.PAID,
) -> PaymentEvent:
    """A verified event as a gateway client would produce it."""
    return PaymentEvent(
        kind=kind,
        gateway="midtrans",
        merchant_reference=f"HRIS-{session_id}",
        session_id=session_id,
        gateway_transaction_id=transaction_id,
        amount_received=amount,
        payment_method="bank_transfer",
        raw={"order_id": f"HRIS-{session_id}", "transaction_id": transaction_id},
    )


def webhook_body(session_id: str, **fields: Any) -> bytes:
    return json.dumps({"order_id": f"HRIS-{session_id}", **fields}).encode()


# ==================== DATABASE ====================


@pytest.fixture
async def db_engine():
    """Fresh in-memory database per test."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(bind=db_engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncSession:
    async with session_factory() as session:
        yield session


# ==================== COLLABORATORS ====================


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 3, 10, 9, 0, tzinfo=UTC))


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


# ==================== DATA ====================


@pytest.fixture
async def catalog(db_session) -> dict[str, Any]:
    """Two plans with two matching seat bands each."""
    standard = SubscriptionPlan(name="Standard", plan_type=PlanType.STANDARD)
    premium = SubscriptionPlan(name="Premium", plan_type=PlanType.PREMIUM)
    db_session.add_all([standard, premium])
    await db_session.flush()

    def seat(plan: SubscriptionPlan, tier: str, low: int, high: int, monthly: int) -> SeatPlan:
        return SeatPlan(
            subscription_plan_id=plan.id,
            size_tier_id=tier,
            min_employees=low,
            max_employees=high,
            price_per_month=Decimal(monthly),
            price_per_year=Decimal(monthly * 10),
        )

    seats = {
        "standard_small": seat(standard, "1-10", 1, 10, 500000),
        "standard_large": seat(standard, "11-50", 11, 50, 1200000),
        "premium_small": seat(premium, "1-10", 1, 10, 800000),
        "premium_large": seat(premium, "11-50", 11, 50, 1800000),
    }
    db_session.add_all(seats.values())
    await db_session.commit()
    return {"standard": standard, "premium": premium, **seats}


@pytest.fixture
async def admin_user(db_session) -> User:
    user = User(auth0_user_id="auth0|admin-1", email="admin@acme.test", name="Acme Admin")
    db_session.add(user)
    await db_session.commit()
    return user


async def add_employees(
    db_session: AsyncSession, admin: User, active: int, inactive: int = 0
) -> None:
    for index in range(active + inactive):
        db_session.add(
            Employee(
                admin_user_id=admin.id,
                full_name=f"Employee {index}",
                employment_status=(
                    EmploymentStatus.ACTIVE if index < active else EmploymentStatus.INACTIVE
                ),
            )
        )
    await db_session.commit()
