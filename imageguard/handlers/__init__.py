# ============================================================
# МАРШРУТИЗАЦИЯ СОБЫТИЙ
# ============================================================
# Платформенный адаптер превращает события discord.py в
# MessageCreated / MessageDeleted и передаёт их в EventRouter.
# Каждый хендлер обёрнут общей цепочкой middleware.
# ============================================================

import logging
from typing import Any, Dict, Optional, Sequence

from imageguard.messaging.base import MessageCreated, MessageDeleted
from imageguard.middleware import Handler, Middleware, wrap_handler

from .admin_commands import AdminCommands, parse_command, parse_channel_id
from .message_delete_handler import handle_message_deleted
from .message_handler import handle_message_created

logger = logging.getLogger(__name__)


class EventRouter:
    """Тип события -> хендлер, обёрнутый middleware."""

    def __init__(self, middlewares: Sequence[Middleware] = (), context: Optional[Dict[str, Any]] = None):
        self._middlewares = list(middlewares)
        self._handlers: Dict[type, Handler] = {}
        # Общие зависимости, попадают в data каждого хендлера
        self.context = dict(context or {})

    def register(self, event_type: type, handler: Handler) -> None:
        self._handlers[event_type] = wrap_handler(handler, self._middlewares)

    async def dispatch(self, event: Any) -> Any:
        handler = self._handlers.get(type(event))
        if handler is None:
            logger.debug(f"Нет хендлера для {type(event).__name__}")
            return None
        return await handler(event, dict(self.context))


def create_router(middlewares: Sequence[Middleware], context: Dict[str, Any]) -> EventRouter:
    router = EventRouter(middlewares, context)
    router.register(MessageCreated, handle_message_created)
    router.register(MessageDeleted, handle_message_deleted)
    return router
