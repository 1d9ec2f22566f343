"""
tests/conftest.py
Shared fixtures: an in-memory SQLite database per test, an in-memory Redis
double, recording notification senders and an HTTP client on the app.
"""

import os

# Settings are read at import time, so the environment goes first
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite://")
os.environ.setdefault("SECRET_KEY", "test-secret-key")
os.environ.setdefault("JWT_SECRET_KEY", "test-jwt-secret-key")
os.environ.setdefault("APP_ENV", "test")
for _key in ("RESEND_API_KEY", "TWILIO_AUTH_TOKEN", "WHATSAPP_ACCESS_TOKEN", "MESSENGER_PAGE_ACCESS_TOKEN"):
    os.environ[_key] = ""

import time
from typing import Dict, List, Tuple

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from config.database import AsyncSessionLocal, Base, engine
from config.redis_client import get_redis
from config.settings import settings
from main import app
from services.notification.dispatcher import NotificationManager
from services.notification.messages import OutboundMessage
from services.notification.senders import (
    EmailSender,
    MessengerSender,
    SmsSender,
    WhatsAppSender,
)
from shared.models.models import (
    Congregation,
    ConsentStatus,
    Missionary,
    MissionaryType,
    NotificationMethod,
    User,
    UserCongregation,
    UserRole,
)
from shared.utils.security import create_access_token, hash_password
from tasks.notification_tasks import ReminderDedup


# ── Doubles ───────────────────────────────────────────────────

class FakeRedis:
    """The handful of redis.asyncio commands the app uses, kept in a dict."""

    def __init__(self):
        self.store: Dict[str, Tuple[str, float]] = {}

    def _live(self, key):
        item = self.store.get(key)
        if item and item[1] and item[1] < time.monotonic():
            del self.store[key]
            return None
        return item

    async def get(self, key):
        item = self._live(key)
        return item[0] if item else None

    async def setex(self, key, ttl, value):
        self.store[key] = (str(value), time.monotonic() + ttl)

    async def delete(self, *keys):
        return sum(1 for key in keys if self.store.pop(key, None) is not None)

    async def exists(self, key):
        return 1 if self._live(key) else 0

    async def incr(self, key):
        item = self._live(key)
        value = int(item[0]) + 1 if item else 1
        self.store[key] = (str(value), item[1] if item else 0)
        return value

    async def expire(self, key, ttl):
        item = self._live(key)
        if item:
            self.store[key] = (item[0], time.monotonic() + ttl)

    async def ping(self):
        return True


class SyncFakeRedis:
    """Sync double for the reminder de-duplication keys."""

    def __init__(self):
        self.keys = set()

    def set(self, key, value, nx=False, ex=None):
        if nx and key in self.keys:
            return None
        self.keys.add(key)
        return True


class RecordingMixin:
    """Pretends to be a configured provider and remembers every send."""

    def __init__(self, settings):
        super().__init__(settings)
        self.sent: List[Tuple[str, OutboundMessage]] = []
        self.fail_with = None

    @property
    def configured(self) -> bool:
        return True

    def _send(self, destination, message):
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((destination, message))
        return f"{self.method.value}-{len(self.sent)}"


class RecordingEmail(RecordingMixin, EmailSender):
    pass


class RecordingWhatsApp(RecordingMixin, WhatsAppSender):
    pass


class RecordingSms(RecordingMixin, SmsSender):
    pass


class RecordingMessenger(RecordingMixin, MessengerSender):
    pass


def recording_senders() -> dict:
    return {
        NotificationMethod.EMAIL: RecordingEmail(settings),
        NotificationMethod.WHATSAPP: RecordingWhatsApp(settings),
        NotificationMethod.TEXT: RecordingSms(settings),
        NotificationMethod.MESSENGER: RecordingMessenger(settings),
    }


# ── Core fixtures ─────────────────────────────────────────────

@pytest_asyncio.fixture
async def db():
    """Fresh schema per test; disposing the engine drops the in-memory database."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with AsyncSessionLocal() as session:
        yield session
    await engine.dispose()


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def notifier(db) -> NotificationManager:
    return NotificationManager(recording_senders(), AsyncSessionLocal, settings)


@pytest.fixture
def sent(notifier):
    """Recorded deliveries per channel, e.g. sent[NotificationMethod.EMAIL]."""
    return {method: sender.sent for method, sender in notifier.senders.items()}


@pytest_asyncio.fixture
async def client(db, fake_redis, notifier):
    app.dependency_overrides[get_redis] = lambda: fake_redis
    app.state.notification_manager = notifier
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def auth_headers():
    def make(user: User) -> dict:
        token, _ = create_access_token(user.id, getattr(user.role, "value", user.role), user.username)
        return {"Authorization": f"Bearer {token}"}
    return make


# ── Data fixtures ─────────────────────────────────────────────

@pytest_asyncio.fixture
async def congregation(db) -> Congregation:
    congregation = Congregation(name="Maple Grove Ward", access_code="maple-grove-access")
    db.add(congregation)
    await db.commit()
    await db.refresh(congregation)
    return congregation


@pytest_asyncio.fixture
async def other_congregation(db) -> Congregation:
    congregation = Congregation(name="Cedar Park Ward", access_code="cedar-park-access")
    db.add(congregation)
    await db.commit()
    await db.refresh(congregation)
    return congregation


@pytest_asyncio.fixture
async def elders(db, congregation) -> Missionary:
    missionary = Missionary(
        congregation_id=congregation.id,
        name="Elder Smith & Elder Jones",
        type=MissionaryType.ELDERS,
        phone_number="+15551230001",
        email_address="elders@missionary.org",
        email_verified=True,
        preferred_notification=NotificationMethod.EMAIL,
    )
    db.add(missionary)
    await db.commit()
    await db.refresh(missionary)
    return missionary


@pytest_asyncio.fixture
async def sisters(db, congregation) -> Missionary:
    missionary = Missionary(
        congregation_id=congregation.id,
        name="Sister Lee & Sister Park",
        type=MissionaryType.SISTERS,
        phone_number="+15551230002",
        email_address="sisters@missionary.org",
        email_verified=True,
        preferred_notification=NotificationMethod.TEXT,
        consent_status=ConsentStatus.GRANTED,
    )
    db.add(missionary)
    await db.commit()
    await db.refresh(missionary)
    return missionary


async def make_user(db, username: str, role: UserRole, congregations=(), **fields) -> User:
    user = User(
        username=username,
        email=f"{username}@example.org",
        password_hash=hash_password("password123"),
        role=role,
        **fields,
    )
    db.add(user)
    await db.flush()
    for congregation in congregations:
        db.add(UserCongregation(user_id=user.id, congregation_id=congregation.id))
    await db.commit()
    await db.refresh(user)
    return user


@pytest_asyncio.fixture
async def ultra_user(db) -> User:
    return await make_user(db, "ultra", UserRole.ULTRA, can_use_paid_notifications=True)


@pytest_asyncio.fixture
async def admin_user(db, congregation) -> User:
    """Ward-level admin linked to the test congregation."""
    return await make_user(db, "wardadmin", UserRole.WARD, congregations=[congregation])


@pytest_asyncio.fixture
async def stake_user(db, congregation) -> User:
    return await make_user(db, "stakeadmin", UserRole.STAKE, congregations=[congregation])


@pytest.fixture
def user_factory(db):
    """`await user_factory("name", UserRole.STAKE, congregations=[...])`"""
    def make(username: str, role: UserRole, congregations=(), **fields):
        return make_user(db, username, role, congregations, **fields)
    return make


# ── Worker fixtures ───────────────────────────────────────────

@pytest.fixture
def sync_session():
    """Synchronous session on its own in-memory database, as the Celery jobs use."""
    sync_engine = create_engine("sqlite://")
    Base.metadata.create_all(sync_engine)
    session = sessionmaker(bind=sync_engine, expire_on_commit=False)()
    yield session
    session.close()
    sync_engine.dispose()


@pytest.fixture
def task_notifier() -> NotificationManager:
    return NotificationManager(recording_senders(), None, settings)


@pytest.fixture
def dedup() -> ReminderDedup:
    return ReminderDedup(SyncFakeRedis(), ttl=60)
