"""
Shared fixtures for the token backend test suite

1. A file-backed SQLite database per test (schema created fresh)
2. A seeded game with Cedar Park, Liberty Hill and an always-open location
3. FakeGateway: scriptable in-memory payment provider
4. RecordingSink: notification sink that keeps every event
5. engine_service: reconciliation engine wired to the above with a frozen clock
"""

import os
import sys

# Must be set before any project import: database.py builds its engine at import time
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["BUSINESS_TIMEZONE"] = "America/Chicago"
os.environ["EMAIL_NOTIFICATIONS_ENABLED"] = "false"
os.environ.pop("WEBHOOK_SIGNATURE_BYPASS", None)

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

import logging
from collections import Counter
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

import orjson
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import configure_sqlite_locking
from models import Base, Game, GameStatus, PaymentRecord, PaymentStatus
from services.notification_service import NotificationSink
from services.payment_gateway import (
    CreatedIntent,
    PaymentGateway,
    PaymentNotFoundError,
    ProviderReport,
    WebhookEvent,
    WebhookVerificationError,
)
from services.reconciliation_engine import PaymentReconciliationEngine
from services.token_balances import get_balance

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)

CHICAGO = ZoneInfo("America/Chicago")
TEST_USER = "user-1"


def local_time(hour: int, minute: int = 0, day: int = 15, month: int = 1, year: int = 2026) -> datetime:
    """Aware business-local datetime (January: CST, UTC-6)"""
    return datetime(year, month, day, hour, minute, tzinfo=CHICAGO)


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, now: datetime) -> None:
        self.now = now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeGateway(PaymentGateway):
    """In-memory provider; tests script provider-side state with set_status()"""

    STATUS_MAP = {
        "requires_payment_method": PaymentStatus.CREATED.value,
        "processing": PaymentStatus.PROCESSING.value,
        "succeeded": PaymentStatus.SUCCEEDED.value,
        "payment_failed": PaymentStatus.FAILED.value,
        "canceled": PaymentStatus.CANCELED.value,
        "refunded": PaymentStatus.REFUNDED.value,
    }

    def __init__(self, provider: str = "stripe"):
        super().__init__(timeout_seconds=1)
        self.provider = provider
        self.intents: Dict[str, str] = {}
        self.failures: Dict[str, Dict[str, Any]] = {}
        self.calls = Counter()
        self.create_error: Optional[Exception] = None
        self.fetch_error: Optional[Exception] = None
        self.confirm_error: Optional[Exception] = None
        self._sequence = 0

    def set_status(self, external_ref: str, provider_status: str, failure: Optional[Dict[str, Any]] = None) -> None:
        self.intents[external_ref] = provider_status
        if failure:
            self.failures[external_ref] = failure

    def forget(self, external_ref: str) -> None:
        self.intents.pop(external_ref, None)

    def report(self, external_ref: str, provider_status: Optional[str] = None) -> ProviderReport:
        provider_status = provider_status or self.intents[external_ref]
        status = self.map_status(provider_status)
        return ProviderReport(
            external_ref=external_ref,
            provider_status=provider_status,
            status=status,
            payment_method="card",
            failure=self.failures.get(external_ref) if status == PaymentStatus.FAILED.value else None,
        )

    async def create_intent(self, amount, currency, correlation_id, metadata=None, description=None) -> CreatedIntent:
        self.calls["create_intent"] += 1
        if self.create_error is not None:
            raise self.create_error
        self._sequence += 1
        ref = f"pi_test_{self._sequence}"
        self.intents[ref] = "requires_payment_method"
        return CreatedIntent(external_ref=ref, client_handle=f"{ref}_secret", provider_status="requires_payment_method")

    async def fetch_status(self, external_ref: str) -> ProviderReport:
        self.calls["fetch_status"] += 1
        if self.fetch_error is not None:
            raise self.fetch_error
        if external_ref not in self.intents:
            raise PaymentNotFoundError(f"No such payment_intent: {external_ref}", provider_code="resource_missing")
        return self.report(external_ref)

    async def confirm_or_capture(self, external_ref: str) -> ProviderReport:
        self.calls["confirm_or_capture"] += 1
        if self.confirm_error is not None:
            raise self.confirm_error
        if external_ref not in self.intents:
            raise PaymentNotFoundError(f"No such payment_intent: {external_ref}", provider_code="resource_missing")
        return self.report(external_ref)

    async def parse_webhook(self, body: bytes, headers) -> WebhookEvent:
        self.calls["parse_webhook"] += 1
        if headers.get("x-fake-signature") != "valid":
            raise WebhookVerificationError("bad signature")
        try:
            event = orjson.loads(body)
        except orjson.JSONDecodeError as e:
            raise WebhookVerificationError(str(e))
        report = None
        if event.get("status"):
            report = self.report(event["ref"], provider_status=event["status"])
        return WebhookEvent(
            provider=self.provider,
            event_id=event["id"],
            event_type=event.get("type", "payment_intent.updated"),
            external_ref=event.get("ref"),
            report=report,
            metadata=event.get("metadata") or {},
            receipt_ref=event.get("receipt"),
        )


def webhook_body(event_id: str, ref: str, status: Optional[str] = None, **extra) -> bytes:
    return orjson.dumps({"id": event_id, "ref": ref, "status": status, **extra})


VALID_SIGNATURE = {"x-fake-signature": "valid"}


class RecordingSink(NotificationSink):
    def __init__(self):
        self.events: List[Any] = []
        self.fail = False

    async def send(self, event) -> None:
        if self.fail:
            raise RuntimeError("mail transport down")
        self.events.append(event)

    def names(self) -> List[str]:
        return [event.name for event in self.events]


# ============================================================================
# FIXTURES
# ============================================================================

@pytest.fixture
def db_engine(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'tokens.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    configure_sqlite_locking(engine)
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return sessionmaker(bind=db_engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def game(session_factory) -> Game:
    with session_factory() as session:
        game = Game(
            name="Golden Dragon",
            status=GameStatus.ACTIVE.value,
            locations=[
                {"name": "Cedar Park", "available": True},
                {"name": "Liberty Hill", "available": True},
                {"name": "Round Rock", "available": True},
                {"name": "Leander", "available": False},
            ],
            token_packages=[
                {"tokens": 50, "price": 10.0},
                {"tokens": 120, "price": 20.0},
            ],
        )
        session.add(game)
        session.commit()
        return game


@pytest.fixture
def fake_gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def recording_sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def clock() -> FrozenClock:
    # 14:00 local: outside every closing window
    return FrozenClock(local_time(14))


@pytest.fixture
def engine_service(fake_gateway, session_factory, recording_sink, clock) -> PaymentReconciliationEngine:
    return PaymentReconciliationEngine(
        gateway=fake_gateway,
        session_factory=session_factory,
        notification_sink=recording_sink,
        clock=clock,
        duplicate_window_minutes=30,
    )


# ============================================================================
# HELPERS
# ============================================================================

def add_record(
    session_factory,
    game: Game,
    external_ref: str,
    status: str = PaymentStatus.CREATED.value,
    location: str = "Round Rock",
    tokens: int = 50,
    price: str = "10.00",
    user_id: str = TEST_USER,
    created_at: Optional[datetime] = None,
    provider: str = "stripe",
    **fields,
) -> None:
    with session_factory() as session:
        session.add(PaymentRecord(
            external_ref=external_ref,
            provider=provider,
            client_handle=f"{external_ref}_secret",
            user_id=user_id,
            game_id=game.id,
            location=location,
            token_quantity=tokens,
            unit_price=Decimal(price),
            currency="usd",
            created_at=created_at or local_time(13).astimezone(timezone.utc).replace(tzinfo=None),
            status=status,
            metadata_json={"game_name": game.name},
            **fields,
        ))
        session.commit()


def load_record(session_factory, external_ref: str) -> PaymentRecord:
    with session_factory() as session:
        return session.query(PaymentRecord).filter(PaymentRecord.external_ref == external_ref).one()


def balance_of(session_factory, game: Game, location: str, user_id: str = TEST_USER) -> int:
    with session_factory() as session:
        return get_balance(session, user_id, game.id, location)
