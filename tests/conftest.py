import os
import sys
from pathlib import Path
from typing import Callable
from unittest.mock import AsyncMock

import pytest

# КРИТИЧНО: Устанавливаем обязательные переменные ДО импорта imageguard.config,
# иначе модуль конфигурации упадёт с "DISCORD_TOKEN не установлен!"
os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("DISCORD_TOKEN", "test-token-0000")
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

# Гарантируем, что пакет imageguard доступен для импортов из тестов
PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from fakeredis import aioredis as fakeredis_aioredis
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from imageguard.database.models import Base
from imageguard.database import session as db_session_module
from imageguard.messaging.base import ActionResult, Attachment, MessageCreated, RoleRef
from imageguard.services import redis_conn as redis_module
from imageguard.services.community_config import CommunitySettings
from imageguard.services.fingerprint import FingerprintResult, UnhashableReason

# Идентификаторы тестового сообщества
GUILD_ID = 900000000000000001
ACTIVE_CHANNEL_ID = 900000000000000111
NOTIFY_CHANNEL_ID = 900000000000000222
OTHER_CHANNEL_ID = 900000000000000333
CERTIFIED_ROLE_ID = 700
RESTRICTED_ROLE_ID = 701


def _build_database_url(tmp_path: Path) -> str:
    explicit = os.getenv("TEST_DATABASE_URL")
    if explicit:
        return explicit
    # Файл, а не :memory: - конкурентные сессии должны видеть одну БД
    return f"sqlite+aiosqlite:///{tmp_path / 'imageguard_test.db'}"


@pytest.fixture
async def db_engine(tmp_path, monkeypatch):
    """Чистая схема на каждый тест + подмена глобальной фабрики сессий"""
    url = _build_database_url(tmp_path)
    engine = create_async_engine(url, echo=False, poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    monkeypatch.setattr(db_session_module, "engine", engine)
    monkeypatch.setattr(db_session_module, "async_session", async_sessionmaker(engine, expire_on_commit=False))

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return async_sessionmaker(db_engine, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """Глобальный Redis-клиент заменяется на fakeredis в каждом тесте"""
    client = fakeredis_aioredis.FakeRedis(decode_responses=True)
    monkeypatch.setattr(redis_module, "redis", client)
    return client


@pytest.fixture
def messenger_mock():
    """Messenger, у которого все действия успешны"""
    messenger = AsyncMock()
    for name in (
        "send_reply",
        "send_direct_message",
        "send_channel_message",
        "delete_message",
        "grant_role",
        "revoke_role",
    ):
        getattr(messenger, name).return_value = ActionResult.OK
    messenger.has_role.return_value = True
    messenger.find_role.return_value = RoleRef(CERTIFIED_ROLE_ID, "CODE CERTIFIED")
    messenger.find_or_create_role.return_value = RoleRef(RESTRICTED_ROLE_ID, "DUPLICATE TIMEOUT")
    return messenger


@pytest.fixture
def community_settings() -> CommunitySettings:
    return CommunitySettings(GUILD_ID, ACTIVE_CHANNEL_ID, NOTIFY_CHANNEL_ID)


@pytest.fixture
def make_event() -> Callable[..., MessageCreated]:
    """Фабрика входящих сообщений"""
    counter = {"message_id": 1000}

    def _make(
        *,
        author_id: int = 111,
        guild_id=GUILD_ID,
        channel_id: int = ACTIVE_CHANNEL_ID,
        message_id=None,
        content: str = "",
        images: tuple = (),
        embeds: tuple = (),
        attachments: tuple = (),
        author_is_bot: bool = False,
        author_is_admin: bool = False,
    ) -> MessageCreated:
        if message_id is None:
            counter["message_id"] += 1
            message_id = counter["message_id"]
        all_attachments = tuple(attachments) + tuple(
            Attachment(url=url, content_type="image/png", filename=url.rsplit("/", 1)[-1]) for url in images
        )
        return MessageCreated(
            author_id=author_id,
            guild_id=guild_id,
            channel_id=channel_id,
            message_id=message_id,
            content=content,
            attachments=all_attachments,
            embedded_images=tuple(embeds),
            author_is_bot=author_is_bot,
            author_is_admin=author_is_admin,
            author_name=f"user{author_id}",
        )

    return _make


class StubFingerprints:
    """FingerprintService без сети: url -> отпечаток или причина unhashable"""

    def __init__(self, mapping: dict):
        self.mapping = mapping
        self.calls: list[str] = []

    async def compute_fingerprint(self, image_ref) -> FingerprintResult:
        self.calls.append(image_ref.url)
        value = self.mapping.get(image_ref.url, UnhashableReason.FETCH_FAILED)
        if isinstance(value, UnhashableReason):
            return FingerprintResult.unhashable(value)
        if isinstance(value, Exception):
            raise value
        return FingerprintResult(fingerprint=value)

    async def close(self) -> None:
        pass


@pytest.fixture
def stub_fingerprints():
    return StubFingerprints
