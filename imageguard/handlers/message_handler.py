import logging
from typing import Any, Dict

from imageguard.messaging.base import MessageCreated
from imageguard.services.moderation_session import SessionReport

logger = logging.getLogger(__name__)


async def handle_message_created(event: MessageCreated, data: Dict[str, Any]) -> SessionReport:
    """Входящее сообщение -> сессия модерации (сессия БД из DbSessionMiddleware)"""
    moderation = data["moderation"]
    report = await moderation.handle(data["session"], event)
    if report.duplicates:
        logger.info(
            f"⚠️ [MESSAGE] Дубликатов в сообщении {event.message_id}: {report.duplicates} "
            f"(автор {event.author_name or event.author_id})"
        )
    return report
