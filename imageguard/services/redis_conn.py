from redis.asyncio import Redis
import logging

from imageguard.config import REDIS_HOST, REDIS_PORT, REDIS_PASSWORD

logger = logging.getLogger(__name__)

try:
    redis = Redis(
        host=REDIS_HOST,
        port=REDIS_PORT,
        password=REDIS_PASSWORD,
        db=0,
        decode_responses=True,
    )
except Exception as e:
    logger.error(f"❌ Критическая ошибка Redis при инициализации: {e}")
    redis = None


async def test_connection() -> bool:
    if redis is None:
        return False
    try:
        await redis.ping()
        logger.info(f"✅ Соединение с Redis ({REDIS_HOST}:{REDIS_PORT}) установлено")
        return True
    except Exception as e:
        logger.error(f"❌ Ошибка подключения к Redis ({REDIS_HOST}:{REDIS_PORT}): {e}")
        return False


async def close_connection() -> None:
    if redis is None:
        return
    try:
        await redis.aclose()
    except Exception as e:
        logger.warning(f"⚠️ Ошибка закрытия Redis: {e}")
