"""Shared fixtures for the test suite."""

import pytest
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from fastapi.testclient import TestClient

from settlement.audit import AuditRecorder
from settlement.fraud.engine import FraudScorer
from settlement.main import app
from settlement.models import (
    Actor,
    ActorType,
    TransactionRecord,
    VerificationConfig,
    utcnow,
)
from settlement.notifications import NotificationDispatcher, OutboxSender
from settlement.storage.files import FileStore
from settlement.storage.memory import MemoryStore
from settlement.workflow.batches import BatchManager
from settlement.workflow.sessions import SessionWorkflow
from settlement.workflow.sweep import DeadlineSweeper


# Monday, week 10 of 2026
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
BUSINESS_ID = "biz-1"
OTHER_BUSINESS_ID = "biz-2"

ADMIN = Actor(actor_type=ActorType.ADMIN_USER, actor_id="admin-1")
BUSINESS = Actor(actor_type=ActorType.BUSINESS_USER, actor_id="user-1", business_id=BUSINESS_ID)
OTHER_BUSINESS = Actor(
    actor_type=ActorType.BUSINESS_USER, actor_id="user-2", business_id=OTHER_BUSINESS_ID
)

ADMIN_HEADERS = {"X-Actor-Type": "admin_user", "X-Actor-Id": "admin-1"}
BUSINESS_HEADERS = {
    "X-Actor-Type": "business_user",
    "X-Actor-Id": "user-1",
    "X-Business-Id": BUSINESS_ID,
}


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = NOW) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def config():
    return VerificationConfig()


@pytest.fixture
def store():
    s = MemoryStore()
    s.register_business(BUSINESS_ID)
    s.register_business(OTHER_BUSINESS_ID)
    return s


@pytest.fixture
def files():
    return FileStore(base_url="https://files.test", secret="test-secret", ttl_seconds=600)


@pytest.fixture
def audit(store):
    return AuditRecorder(store)


@pytest.fixture
def outbox():
    return OutboxSender()


@pytest.fixture
def notifier(outbox, audit):
    return NotificationDispatcher(outbox, audit)


@pytest.fixture
def scorer(store, config, clock):
    return FraudScorer(store, config, clock=clock)


@pytest.fixture
def workflow(store, files, audit, config, clock):
    return SessionWorkflow(store, files, audit, config, clock=clock)


@pytest.fixture
def manager(store, files, audit, scorer, notifier, config, clock):
    return BatchManager(store, files, audit, scorer, notifier, config, clock=clock)


@pytest.fixture
def sweeper(store, workflow, notifier, audit, config, clock):
    return DeadlineSweeper(store, workflow, notifier, audit, config, clock=clock)


@pytest.fixture
def client():
    with TestClient(app) as c:
        yield c


def make_transaction(
    tx_id="VCL-001",
    amount="123.45",
    when="2026-02-27T12:00:00Z",
    phone="1234",
    store_code="STO-1",
    feedback_id="FB-1",
) -> TransactionRecord:
    if isinstance(when, str):
        when = datetime.fromisoformat(when.replace("Z", "+00:00"))
    return TransactionRecord(
        transaction_id=tx_id,
        amount=Decimal(str(amount)),
        transaction_time=when,
        customer_feedback_id=feedback_id,
        phone_last_four=phone,
        store_code=store_code,
        quality_score=8,
        reward_percentage=Decimal("5"),
        reward_amount=(Decimal(str(amount)) * Decimal("0.05")).quantize(Decimal("0.01")),
    )


def make_transactions(count, amount="250", start="2026-02-27T06:00:00Z", spacing_minutes=10):
    """Unremarkable transactions spread far enough apart to avoid every pattern."""
    base = datetime.fromisoformat(start.replace("Z", "+00:00"))
    return [
        make_transaction(
            tx_id=f"VCL-{i:03d}",
            amount=amount,
            when=base + timedelta(minutes=spacing_minutes * i),
            phone=f"{i:04d}",
        )
        for i in range(1, count + 1)
    ]


def make_csv(*rows, header="transaction_id,verified,verification_decision,rejection_reason,business_notes") -> bytes:
    lines = [header]
    for row in rows:
        lines.append(",".join(row))
    return ("\n".join(lines) + "\n").encode("utf-8")


def recent(days=1):
    """Midday a few days before the real current time, for API tests."""
    return (utcnow() - timedelta(days=days)).replace(hour=12, minute=0, second=0, microsecond=0)


def create_batch(manager, transactions=None, week=10, year=2026, **kwargs):
    """Create and release a batch for BUSINESS_ID; return (batch, session, items)."""
    batch = manager.create_batch(
        BUSINESS_ID,
        week,
        year,
        transactions if transactions is not None else make_transactions(2),
        ADMIN,
        **kwargs,
    )
    session = manager.store.get_session_by_batch(batch.id)
    items = manager.store.list_items(session.id)
    return batch, session, items
