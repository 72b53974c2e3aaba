# ============================================================
# ОЧИСТКА РЕЕСТРА ПРИ УДАЛЕНИИ СООБЩЕНИЯ
# ============================================================
# Удалённое сообщение освобождает свои отпечатки: то же
# изображение можно опубликовать снова без наказания.
# Удаления, сделанные самим ботом, тоже приходят сюда и ничего
# не находят - записи дубликата в реестре нет.
# ============================================================

import logging
from typing import Any, Dict

from imageguard.errors import StorageUnavailableError
from imageguard.messaging.base import MessageDeleted
from imageguard.services.duplicate_ledger import DuplicateLedger

logger = logging.getLogger(__name__)


async def handle_message_deleted(event: MessageDeleted, data: Dict[str, Any]) -> int:
    if event.guild_id is None:
        return 0
    try:
        return await DuplicateLedger.remove_by_message(data["session"], event.message_id, event.guild_id)
    except StorageUnavailableError as e:
        logger.error(f"❌ [DELETE] Не удалось очистить реестр для сообщения {event.message_id}: {e}")
        return 0
