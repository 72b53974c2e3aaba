# ============================================================
# РЕЕСТР ДУБЛИКАТОВ (DUPLICATE LEDGER)
# ============================================================
# Единственный источник истины "новое изображение или повтор".
#
# claim() - атомарный check-and-set по ключу
# (fingerprint, community_id), а не пара "прочитать, потом записать":
# две сессии, одновременно получившие "не найдено", не должны обе
# выиграть.
#
# - PostgreSQL / SQLite: INSERT ... ON CONFLICT DO NOTHING RETURNING id
# - прочие диалекты: обычный INSERT, IntegrityError = "уже существует"
#
# Любая другая ошибка БД -> StorageUnavailableError.
# ============================================================

# Импорт для аннотации типов
from typing import NamedTuple, Optional
# Импорт для логирования
import enum
import logging

# Импорт SQLAlchemy для работы с БД
from sqlalchemy import select, delete, func
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

# Импорт моделей БД
from imageguard.database.models import FingerprintRecord
from imageguard.database.session import storage_errors


# ============================================================
# НАСТРОЙКА ЛОГИРОВАНИЯ
# ============================================================
logger = logging.getLogger(__name__)


# ============================================================
# ТИПЫ ДАННЫХ
# ============================================================
class ClaimOutcome(str, enum.Enum):
    # Отпечаток впервые зарегистрирован этим вызовом
    INSERTED = "INSERTED"
    # Отпечаток уже принадлежит более ранней записи
    ALREADY_EXISTS = "ALREADY_EXISTS"
    # Конфликт уникальности, но запись не нашлась (гонка с удалением)
    VANISHED = "VANISHED"


class Provenance(NamedTuple):
    """Происхождение изображения: где оно было опубликовано."""
    channel_id: int
    message_id: int
    url: Optional[str] = None
    author_id: Optional[int] = None


class ClaimResult(NamedTuple):
    """
    Результат атомарного claim.

    Attributes:
        outcome: INSERTED / ALREADY_EXISTS / VANISHED
        record: Новая запись (INSERTED), первая запись (ALREADY_EXISTS) или None
    """
    outcome: ClaimOutcome
    record: Optional[FingerprintRecord]

    @property
    def is_duplicate(self) -> bool:
        return self.outcome is ClaimOutcome.ALREADY_EXISTS


# Диалекты с нативным INSERT ... ON CONFLICT
_UPSERT_INSERTS = {
    "postgresql": pg_insert,
    "sqlite": sqlite_insert,
}


# ============================================================
# СЕРВИС РЕЕСТРА
# ============================================================
class DuplicateLedger:
    """
    Операции над FingerprintRecord.

    Отпечатки уникальны только в пределах сообщества:
    один и тот же отпечаток в двух сообществах - две независимые записи.
    """

    @staticmethod
    async def claim(
        session: AsyncSession,
        fingerprint: str,
        community_id: int,
        provenance: Provenance,
    ) -> ClaimResult:
        """
        Атомарно регистрирует первое появление отпечатка.

        Args:
            session: Сессия SQLAlchemy
            fingerprint: Отпечаток изображения
            community_id: ID сообщества (гильдии)
            provenance: Канал/сообщение/URL текущего появления

        Returns:
            ClaimResult

        Raises:
            StorageUnavailableError: БД недоступна
        """
        values = dict(
            fingerprint=fingerprint,
            community_id=community_id,
            source_channel_id=provenance.channel_id,
            source_message_id=provenance.message_id,
            source_author_id=provenance.author_id,
            source_url=provenance.url,
        )

        async with storage_errors("ledger.claim"):
            dialect = session.get_bind().dialect.name
            insert_factory = _UPSERT_INSERTS.get(dialect)

            if insert_factory is not None:
                # Нативный upsert-if-absent
                stmt = (
                    insert_factory(FingerprintRecord)
                    .values(**values)
                    .on_conflict_do_nothing(index_elements=["fingerprint", "community_id"])
                    .returning(FingerprintRecord.id)
                )
                result = await session.execute(stmt)
                inserted_id = result.scalar_one_or_none()
                await session.commit()
            else:
                inserted_id = await DuplicateLedger._plain_insert(session, values)

            if inserted_id is not None:
                record = await session.get(FingerprintRecord, inserted_id)
                logger.info(
                    f"✅ [LEDGER] Новый отпечаток: community={community_id} "
                    f"message={provenance.message_id} id={inserted_id}"
                )
                return ClaimResult(ClaimOutcome.INSERTED, record)

            existing = await DuplicateLedger.get_record(session, fingerprint, community_id)

        if existing is None:
            logger.error(
                f"❌ [LEDGER] Конфликт уникальности, но запись не найдена "
                f"(гонка с удалением): community={community_id} fp={fingerprint[:16]}..."
            )
            return ClaimResult(ClaimOutcome.VANISHED, None)

        logger.info(
            f"⚠️ [LEDGER] Повтор отпечатка: community={community_id} "
            f"message={provenance.message_id} -> первая запись id={existing.id} "
            f"(message={existing.source_message_id})"
        )
        return ClaimResult(ClaimOutcome.ALREADY_EXISTS, existing)

    @staticmethod
    async def _plain_insert(session: AsyncSession, values: dict) -> Optional[int]:
        # Нарушение уникальности на обычном INSERT - это тот же сигнал
        # "уже существует", а не фатальная ошибка
        record = FingerprintRecord(**values)
        session.add(record)
        try:
            await session.commit()
        except IntegrityError:
            await session.rollback()
            return None
        return record.id

    @staticmethod
    async def get_record(
        session: AsyncSession,
        fingerprint: str,
        community_id: int,
    ) -> Optional[FingerprintRecord]:
        """Находит запись по отпечатку в сообществе."""
        async with storage_errors("ledger.get_record"):
            result = await session.execute(
                select(FingerprintRecord).where(
                    FingerprintRecord.fingerprint == fingerprint,
                    FingerprintRecord.community_id == community_id,
                )
            )
            return result.scalar_one_or_none()

    @staticmethod
    async def lookup_by_message(
        session: AsyncSession,
        message_id: int,
        community_id: int,
    ) -> Optional[FingerprintRecord]:
        """
        Находит запись по сообщению-источнику.

        Используется при очистке после удаления сообщения.
        """
        async with storage_errors("ledger.lookup_by_message"):
            result = await session.execute(
                select(FingerprintRecord)
                .where(
                    FingerprintRecord.community_id == community_id,
                    FingerprintRecord.source_message_id == message_id,
                )
                .order_by(FingerprintRecord.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    @staticmethod
    async def remove_by_message(
        session: AsyncSession,
        message_id: int,
        community_id: int,
    ) -> int:
        """
        Удаляет все записи, порождённые сообщением (по одной на изображение).

        Returns:
            Количество удалённых записей (0 - ничего не было)
        """
        async with storage_errors("ledger.remove_by_message"):
            result = await session.execute(
                delete(FingerprintRecord).where(
                    FingerprintRecord.community_id == community_id,
                    FingerprintRecord.source_message_id == message_id,
                )
            )
            await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info(
                f"🗑️ [LEDGER] Удалено {removed} записей для сообщения {message_id} "
                f"(community={community_id})"
            )
        return removed

    @staticmethod
    async def count(session: AsyncSession, community_id: Optional[int] = None) -> int:
        """Считает количество отпечатков (всего или в сообществе)."""
        query = select(func.count()).select_from(FingerprintRecord)
        if community_id is not None:
            query = query.where(FingerprintRecord.community_id == community_id)
        async with storage_errors("ledger.count"):
            result = await session.execute(query)
        return result.scalar() or 0
