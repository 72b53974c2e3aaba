from typing import Any, Awaitable, Callable, Dict


class DbSessionMiddleware:
    def __init__(self, sessionmaker):
        self.sessionmaker = sessionmaker  # фабрика сессий

    async def __call__(
            self,
            handler: Callable[[Any, Dict[str, Any]], Awaitable[Any]],
            event: Any,
            data: Dict[str, Any],
    ) -> Any:
        async with self.sessionmaker() as session:  # открываем сессию на каждое событие
            data["session"] = session  # передаем сессию в хендлер через context data
            return await handler(event, data)
