# imageguard/services/penalty/violation_service.py
"""
Журнал нарушений - ключ идемпотентности наказания.

Повторная доставка одного и того же события (тот же message_id и
тот же отпечаток) не должна наказывать участника второй раз.
Запись в duplicate_violations делается ДО любых побочных эффектов;
если она уже существует - наказание пропускается целиком.
"""
from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from imageguard.database.models import ViolationRecord
from imageguard.database.session import storage_errors

logger = logging.getLogger(__name__)

_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


async def register_violation(
    session: AsyncSession,
    community_id: int,
    member_id: int,
    message_id: int,
    fingerprint: str,
    policy: str,
    original_record_id: Optional[int] = None,
) -> bool:
    """
    Регистрирует нарушение.

    Args:
        session: AsyncSession
        community_id: ID сообщества
        member_id: ID нарушителя
        message_id: ID сообщения с дубликатом
        fingerprint: Отпечаток изображения
        policy: Применённая политика (revoke_role / temp_role)
        original_record_id: ID первой записи в fingerprint_records

    Returns:
        True если нарушение новое, False если это повтор того же события

    Raises:
        StorageUnavailableError: БД недоступна
    """
    values = dict(
        community_id=community_id,
        member_id=member_id,
        message_id=message_id,
        fingerprint=fingerprint,
        policy=policy,
        original_record_id=original_record_id,
    )

    async with storage_errors("violations.register"):
        insert_factory = _UPSERT_INSERTS.get(session.get_bind().dialect.name)
        if insert_factory is not None:
            stmt = (
                insert_factory(ViolationRecord)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["community_id", "message_id", "fingerprint"])
                .returning(ViolationRecord.id)
            )
            result = await session.execute(stmt)
            inserted_id = result.scalar_one_or_none()
            await session.commit()
            is_new = inserted_id is not None
        else:
            session.add(ViolationRecord(**values))
            try:
                await session.commit()
                is_new = True
            except IntegrityError:
                await session.rollback()
                is_new = False

    if is_new:
        logger.info(
            f"[VIOLATION] Нарушение зарегистрировано: community={community_id} member={member_id} "
            f"message={message_id} policy={policy}"
        )
    else:
        logger.info(
            f"[VIOLATION] Повтор события, наказание уже было: community={community_id} member={member_id} "
            f"message={message_id}"
        )
    return is_new


async def count_violations(
    session: AsyncSession,
    community_id: int,
    member_id: Optional[int] = None,
) -> int:
    """Количество зарегистрированных нарушений (в сообществе или у участника)."""
    stmt = select(func.count()).select_from(ViolationRecord).where(
        ViolationRecord.community_id == community_id
    )
    if member_id is not None:
        stmt = stmt.where(ViolationRecord.member_id == member_id)
    async with storage_errors("violations.count"):
        result = await session.execute(stmt)
    return result.scalar() or 0
