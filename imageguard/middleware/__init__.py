# ============================================================
# MIDDLEWARE
# ============================================================
# Цепочка вызовов вида middleware(handler, event, data), как в
# aiogram: каждый слой может дополнить data и вызывает следующий.
#
# - structured_logging.py: одна JSON-строка на входящее событие
# - db_session.py: AsyncSession на событие в data["session"]
# ============================================================

from functools import partial
from typing import Any, Awaitable, Callable, Dict, Sequence

from .db_session import DbSessionMiddleware
from .structured_logging import StructuredLoggingMiddleware

Handler = Callable[[Any, Dict[str, Any]], Awaitable[Any]]
Middleware = Callable[[Handler, Any, Dict[str, Any]], Awaitable[Any]]


def wrap_handler(handler: Handler, middlewares: Sequence[Middleware]) -> Handler:
    """Оборачивает хендлер: первый middleware в списке вызывается первым."""
    wrapped = handler
    for middleware in reversed(middlewares):
        wrapped = partial(middleware, wrapped)
    return wrapped
