# ============================================================
# ФЛАГ ЗАПУСКА (RUN-STATE GATE)
# ============================================================
# Флаг хранится отдельно для каждого сообщества: !stopbot в одной
# гильдии не останавливает модерацию в другой.
#
# Бэкенды:
# - memory (по умолчанию): словарь процесса, после рестарта все
#   сообщества снова включены
# - redis: общий для нескольких процессов и переживает рестарт;
#   при недоступности Redis используется словарь процесса
#
# Ключ redis: imageguard:run_state:{community_id} = "1" | "0"
# Отсутствие ключа = включено.
# ============================================================

import logging
from typing import Optional

from imageguard.config import RUN_STATE_BACKEND
from imageguard.errors import ConfigurationError
from imageguard.services import redis_conn

logger = logging.getLogger(__name__)

RUN_STATE_KEY = "imageguard:run_state:{community_id}"

BACKENDS = ("memory", "redis")


class RunStateGate:
    """Включено ли автоматическое применение правил в сообществе."""

    def __init__(self, backend: str = RUN_STATE_BACKEND, redis_client=None):
        if backend not in BACKENDS:
            raise ConfigurationError(f"Неизвестный RUN_STATE_BACKEND: {backend}")
        self._backend = backend
        self._redis = redis_client
        self._local: dict[int, bool] = {}

    @property
    def backend(self) -> str:
        return self._backend

    def _client(self):
        if self._backend != "redis":
            return None
        return self._redis if self._redis is not None else redis_conn.redis

    async def is_enabled(self, community_id: int) -> bool:
        client = self._client()
        if client is not None:
            try:
                raw: Optional[str] = await client.get(RUN_STATE_KEY.format(community_id=community_id))
                if raw is not None:
                    return raw == "1"
                return self._local.get(community_id, True)
            except Exception as e:
                logger.warning(f"⚠️ [RUN_STATE] Redis недоступен, используем память процесса: {e}")
        return self._local.get(community_id, True)

    async def set_enabled(self, community_id: int, enabled: bool) -> None:
        # Локальная копия обновляется всегда - она же резерв при сбое Redis
        self._local[community_id] = enabled
        client = self._client()
        if client is not None:
            try:
                await client.set(RUN_STATE_KEY.format(community_id=community_id), "1" if enabled else "0")
            except Exception as e:
                logger.warning(f"⚠️ [RUN_STATE] Не удалось записать флаг в Redis: {e}")
        state = "включена" if enabled else "остановлена"
        logger.info(f"[RUN_STATE] Модерация {state}: community={community_id}")
