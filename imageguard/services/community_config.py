# ============================================================
# СЕРВИС НАСТРОЕК СООБЩЕСТВА
# ============================================================
# CommunityConfig создаётся/перезаписывается командой !setup,
# остальная система только читает. Отсутствие записи = сообщество
# не настроено, изображения не обрабатываются.
#
# Чтения кэшируются в Redis на COMMUNITY_CONFIG_CACHE_TTL секунд
# (допустима короткая устарелость после !setup на другом процессе).
# Ошибки Redis не фатальны - читаем напрямую из БД.
# ============================================================

import json
import logging
from typing import NamedTuple, Optional

from sqlalchemy import select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imageguard.config import COMMUNITY_CONFIG_CACHE_TTL
from imageguard.database.models import CommunityConfig, utcnow
from imageguard.database.session import storage_errors
from imageguard.services import redis_conn

logger = logging.getLogger(__name__)

# Префикс ключей кэша
CACHE_KEY_PREFIX = "imageguard:community_config"
# Маркер "настроек нет" - кэшируем и отрицательный результат
_MISSING = "none"

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}
# Колонки, которые перезаписывает повторный !setup
_UPDATABLE = ("active_channel_id", "notification_channel_id", "updated_by", "updated_at")


class CommunitySettings(NamedTuple):
    """Снимок настроек сообщества, безопасный для передачи между сессиями."""
    community_id: int
    active_channel_id: int
    notification_channel_id: int


def _cache_key(community_id: int) -> str:
    return f"{CACHE_KEY_PREFIX}:{community_id}"


class CommunityConfigService:
    """Чтение и сохранение CommunityConfig с кэшем в Redis."""

    def __init__(self, redis_client=None, cache_ttl: int = COMMUNITY_CONFIG_CACHE_TTL):
        self._redis = redis_client
        self._cache_ttl = cache_ttl

    @property
    def _client(self):
        # Берём клиент на момент вызова - тесты подменяют redis_conn.redis
        return self._redis if self._redis is not None else redis_conn.redis

    async def _cache_get(self, community_id: int) -> tuple[bool, Optional[CommunitySettings]]:
        client = self._client
        if client is None or self._cache_ttl <= 0:
            return False, None
        try:
            raw = await client.get(_cache_key(community_id))
        except Exception as e:
            logger.debug(f"[CONFIG] Redis недоступен при чтении кэша: {e}")
            return False, None
        if raw is None:
            return False, None
        if raw == _MISSING:
            return True, None
        data = json.loads(raw)
        return True, CommunitySettings(**data)

    async def _cache_set(self, community_id: int, settings: Optional[CommunitySettings]) -> None:
        client = self._client
        if client is None or self._cache_ttl <= 0:
            return
        value = _MISSING if settings is None else json.dumps(settings._asdict())
        try:
            await client.set(_cache_key(community_id), value, ex=self._cache_ttl)
        except Exception as e:
            logger.debug(f"[CONFIG] Redis недоступен при записи кэша: {e}")

    async def invalidate(self, community_id: int) -> None:
        client = self._client
        if client is None:
            return
        try:
            await client.delete(_cache_key(community_id))
        except Exception as e:
            logger.warning(f"[CONFIG] Не удалось сбросить кэш сообщества {community_id}: {e}")

    async def get_config(self, session: AsyncSession, community_id: int) -> Optional[CommunitySettings]:
        """
        Возвращает настройки сообщества или None если оно не настроено.

        Raises:
            StorageUnavailableError: БД недоступна (и кэша нет)
        """
        hit, cached = await self._cache_get(community_id)
        if hit:
            return cached

        async with storage_errors("community_config.get"):
            result = await session.execute(
                select(CommunityConfig).where(CommunityConfig.community_id == community_id)
                .execution_options(populate_existing=True)
            )
            row = result.scalar_one_or_none()

        settings = None
        if row is not None:
            settings = CommunitySettings(
                community_id=row.community_id,
                active_channel_id=row.active_channel_id,
                notification_channel_id=row.notification_channel_id,
            )
        await self._cache_set(community_id, settings)
        return settings

    async def save_config(
        self,
        session: AsyncSession,
        community_id: int,
        active_channel_id: int,
        notification_channel_id: int,
        updated_by: Optional[int] = None,
    ) -> CommunitySettings:
        """
        Создаёт или перезаписывает настройки сообщества.

        Args:
            session: Сессия SQLAlchemy
            community_id: ID сообщества
            active_channel_id: Канал, где проверяются изображения
            notification_channel_id: Канал для уведомлений модерации
            updated_by: ID администратора

        Returns:
            Сохранённые настройки
        """
        values = dict(
            community_id=community_id,
            active_channel_id=active_channel_id,
            notification_channel_id=notification_channel_id,
            updated_by=updated_by,
            updated_at=utcnow(),
        )
        async with storage_errors("community_config.save"):
            insert_factory = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
            if insert_factory is not None:
                stmt = insert_factory(CommunityConfig).values(**values)
                stmt = stmt.on_conflict_do_update(
                    index_elements=["community_id"],
                    set_={name: stmt.excluded[name] for name in _UPDATABLE},
                )
                await session.execute(stmt)
                await session.commit()
            else:
                await self._merge_config(session, values)

        await self.invalidate(community_id)
        logger.info(
            f"✅ [CONFIG] Настройки сохранены: community={community_id} "
            f"active={active_channel_id} notify={notification_channel_id} by={updated_by}"
        )
        return CommunitySettings(community_id, active_channel_id, notification_channel_id)

    @staticmethod
    async def _merge_config(session: AsyncSession, values: dict) -> None:
        # Без ON CONFLICT: параллельный !setup мог вставить строку между
        # чтением и записью - повторяем merge, он найдёт её и обновит
        try:
            await session.merge(CommunityConfig(**values))
            await session.commit()
        except IntegrityError:
            await session.rollback()
            await session.merge(CommunityConfig(**values))
            await session.commit()
