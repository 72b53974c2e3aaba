# imageguard/services/penalty/grant_service.py
"""
Хранение временных ограничений (PenaltyGrant).

У участника в сообществе не больше одного активного ограничения.
Повторное нарушение продлевает срок существующего (без суммирования).
Записи переживают рестарт процесса: планировщик восстанавливает
таймеры по expires_at при старте.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy import and_, select, text
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imageguard.database.models import PenaltyGrant, utcnow
from imageguard.database.session import storage_errors

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


def _naive(value: datetime) -> datetime:
    # В БД храним naive UTC
    if value.tzinfo is not None:
        return value.replace(tzinfo=None)
    return value


async def save_grant(
    session: AsyncSession,
    community_id: int,
    member_id: int,
    role_id: int,
    duration_seconds: int,
    source_message_id: Optional[int] = None,
    now: Optional[datetime] = None,
) -> PenaltyGrant:
    """
    Создаёт ограничение или продлевает активное.

    Одновременные нарушения одного участника не создают второе
    активное ограничение: частичный уникальный индекс
    uq_penalty_grants_active_member + INSERT ... ON CONFLICT DO UPDATE.

    Args:
        session: AsyncSession
        community_id: ID сообщества
        member_id: ID участника
        role_id: ID выданной роли
        duration_seconds: Длительность ограничения
        source_message_id: Сообщение, вызвавшее наказание
        now: Текущее время (для тестов)

    Returns:
        PenaltyGrant: Созданная или продлённая запись
    """
    now = _naive(now) if now is not None else utcnow()
    expires_at = now + timedelta(seconds=duration_seconds)
    values = dict(
        community_id=community_id,
        member_id=member_id,
        role_id=role_id,
        source_message_id=source_message_id,
        granted_at=now,
        expires_at=expires_at,
        is_active=True,
    )

    async with storage_errors("grants.save"):
        insert_factory = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
        if insert_factory is not None:
            stmt = insert_factory(PenaltyGrant).values(**values)
            stmt = stmt.on_conflict_do_update(
                index_elements=["community_id", "member_id"],
                index_where=text("is_active"),
                set_=dict(
                    expires_at=stmt.excluded.expires_at,
                    role_id=stmt.excluded.role_id,
                    source_message_id=stmt.excluded.source_message_id,
                ),
            ).returning(PenaltyGrant.id)
            result = await session.execute(stmt)
            grant_id = result.scalar_one()
            await session.commit()
        else:
            grant_id = await _save_plain(session, values)

        # Объект мог остаться в identity map со старым expires_at
        grant = await session.get(PenaltyGrant, grant_id, populate_existing=True)

    logger.info(
        f"[PENALTY] Ограничение сохранено: community={community_id} member={member_id} "
        f"role={role_id} grant={grant_id} до {expires_at}"
    )
    return grant


async def _save_plain(session: AsyncSession, values: dict) -> int:
    # Диалекты без ON CONFLICT: читаем и пишем, конфликт с параллельной
    # вставкой разрешаем повторным продлением уже вставленной записи
    for attempt in range(2):
        existing = await _find_active(session, values["community_id"], values["member_id"])
        if existing is not None:
            existing.expires_at = values["expires_at"]
            existing.role_id = values["role_id"]
            existing.source_message_id = values["source_message_id"]
            grant = existing
        else:
            grant = PenaltyGrant(**values)
            session.add(grant)
        try:
            await session.commit()
            return grant.id
        except IntegrityError:
            await session.rollback()
            if attempt:
                raise
    raise RuntimeError("grants.save: retry loop exited unexpectedly")


async def _find_active(session: AsyncSession, community_id: int, member_id: int) -> Optional[PenaltyGrant]:
    result = await session.execute(
        select(PenaltyGrant)
        .where(
            and_(
                PenaltyGrant.community_id == community_id,
                PenaltyGrant.member_id == member_id,
                PenaltyGrant.is_active == True,
            )
        )
        .order_by(PenaltyGrant.id.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def get_active_grant(
    session: AsyncSession,
    community_id: int,
    member_id: int,
) -> Optional[PenaltyGrant]:
    """Активное ограничение участника или None."""
    async with storage_errors("grants.get_active"):
        return await _find_active(session, community_id, member_id)


async def get_grant(session: AsyncSession, grant_id: int) -> Optional[PenaltyGrant]:
    async with storage_errors("grants.get"):
        return await session.get(PenaltyGrant, grant_id)


async def deactivate_grant(session: AsyncSession, grant: PenaltyGrant) -> None:
    """Помечает ограничение снятым."""
    async with storage_errors("grants.deactivate"):
        grant.is_active = False
        grant.reversed_at = utcnow()
        await session.commit()
    logger.info(
        f"[PENALTY] Ограничение снято: community={grant.community_id} member={grant.member_id}"
    )


async def list_active_grants(session: AsyncSession) -> list[PenaltyGrant]:
    """Все активные ограничения, по возрастанию expires_at."""
    async with storage_errors("grants.list_active"):
        result = await session.execute(
            select(PenaltyGrant)
            .where(PenaltyGrant.is_active == True)
            .order_by(PenaltyGrant.expires_at)
        )
        return list(result.scalars().all())
