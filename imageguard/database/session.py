import asyncio
import logging
from contextlib import asynccontextmanager

from sqlalchemy import text
from sqlalchemy.exc import DBAPIError, IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker

from imageguard.config import (
    DATABASE_URL,
    DB_CONNECT_DELAY,
    DB_CONNECT_RETRIES,
    DB_MAX_OVERFLOW,
    DB_POOL_SIZE,
    DEBUG,
)
from imageguard.database.models import Base
from imageguard.errors import StorageUnavailableError

logger = logging.getLogger(__name__)


# создаем движок и фабрику сессий
engine_options = dict(
    echo=DEBUG,
    pool_pre_ping=True,  # Проверка соединения перед использованием
    pool_recycle=3600,   # Переподключение каждый час
)
# У SQLite свой пул без pool_size/max_overflow
if not DATABASE_URL.startswith("sqlite"):
    engine_options.update(pool_size=DB_POOL_SIZE, max_overflow=DB_MAX_OVERFLOW)

engine = create_async_engine(DATABASE_URL, **engine_options)
async_session = async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def get_session():
    """Асинхронный контекстный менеджер для получения сессии БД"""
    session = async_session()
    try:
        yield session
    finally:
        await session.close()


@asynccontextmanager
async def storage_errors(operation: str):
    """
    Переводит ошибки драйвера БД в StorageUnavailableError.

    IntegrityError пробрасывается как есть - это сигнал нарушения
    уникальности, который вызывающий код интерпретирует сам.
    """
    try:
        yield
    except IntegrityError:
        raise
    except (DBAPIError, SQLAlchemyError, OSError, asyncio.TimeoutError) as e:
        logger.error(f"❌ [DB] Хранилище недоступно ({operation}): {e}")
        raise StorageUnavailableError(f"{operation}: {e}") from e


async def init_db():
    """Инициализация базы данных"""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("✅ База данных инициализирована")


async def ping_database() -> bool:
    """Проверяет доступность БД простым запросом"""
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"⚠️ [DB] Ping не прошёл: {e}")
        return False


async def wait_for_database(
    max_retries: int = DB_CONNECT_RETRIES,
    delay: float = DB_CONNECT_DELAY,
    backoff: float = 2.0,
) -> None:
    """
    Ждёт доступности БД при старте.

    Raises:
        StorageUnavailableError: если все попытки исчерпаны
    """
    current_delay = delay
    for attempt in range(max_retries + 1):
        if await ping_database():
            logger.info("✅ Соединение с БД установлено")
            return
        if attempt < max_retries:
            logger.warning(
                f"[DB] Попытка {attempt + 1}/{max_retries + 1} не удалась. "
                f"Повтор через {current_delay:.1f}с..."
            )
            await asyncio.sleep(current_delay)
            current_delay *= backoff
    raise StorageUnavailableError(f"БД недоступна после {max_retries + 1} попыток")


async def keep_database_alive(interval: float, max_delay: float = 300.0) -> None:
    """
    Фоновая задача: периодически пингует БД.

    После старта потеря соединения не роняет процесс - задача
    бесконечно повторяет попытки с экспоненциальной задержкой,
    а пул восстанавливает соединения через pool_pre_ping.
    """
    delay = interval
    was_down = False
    while True:
        await asyncio.sleep(delay)
        if await ping_database():
            if was_down:
                logger.info("✅ [DB] Соединение с БД восстановлено")
            was_down = False
            delay = interval
        else:
            was_down = True
            delay = min(delay * 2, max_delay)
            logger.error(f"❌ [DB] БД недоступна, следующая проверка через {delay:.0f}с")
