# middleware/structured_logging.py
"""
Middleware для структурированного логирования входящих событий Discord
"""
import json
import logging
import time
from dataclasses import asdict, is_dataclass
from typing import Any, Awaitable, Callable, Dict

from imageguard.messaging.base import MessageCreated, MessageDeleted

logger = logging.getLogger(__name__)


def describe_event(event: Any) -> Dict[str, Any]:
    """Компактное описание события без содержимого вложений"""
    if isinstance(event, MessageCreated):
        return {
            "type": "message_created",
            "guild_id": event.guild_id,
            "channel_id": event.channel_id,
            "message_id": event.message_id,
            "author_id": event.author_id,
            "author": event.author_name,
            "is_bot": event.author_is_bot,
            "text": event.content[:100] if event.content else None,
            "attachments": len(event.attachments),
            "embedded_images": len(event.embedded_images),
        }
    if isinstance(event, MessageDeleted):
        return {"type": "message_deleted", **asdict(event)}
    if is_dataclass(event):
        return {"type": type(event).__name__, **asdict(event)}
    return {"type": type(event).__name__}


class StructuredLoggingMiddleware:
    """Логирует событие одной JSON-строкой и результат обработки"""

    async def __call__(
        self,
        handler: Callable[[Any, Dict[str, Any]], Awaitable[Any]],
        event: Any,
        data: Dict[str, Any],
    ) -> Any:
        payload = describe_event(event)
        logger.info(f"📩 {json.dumps(payload, ensure_ascii=False, default=str)}")

        started = time.perf_counter()
        try:
            result = await handler(event, data)
        except Exception as e:
            logger.error(f"❌ Ошибка обработки {payload['type']}: {e}")
            raise

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.debug(f"✅ {payload['type']} обработано за {elapsed_ms:.0f} мс")
        return result
