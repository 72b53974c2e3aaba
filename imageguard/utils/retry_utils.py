# ============================================================
# RETRY UTILS - УТИЛИТЫ ДЛЯ RETRY ПРИ СЕТЕВЫХ ОШИБКАХ
# ============================================================
# Повторные попытки для вызовов Discord API, упавших из-за
# временных проблем: 5xx от Discord, обрыв соединения, таймаут.
# 4xx (Forbidden, NotFound) не повторяются - это не временные
# ошибки, их обрабатывает вызывающий код.
# Rate limit (429) discord.py обрабатывает сам.
# ============================================================

import asyncio
import logging
from typing import TypeVar, Callable, Awaitable

import aiohttp
import discord

logger = logging.getLogger(__name__)

# Тип для возвращаемого значения
T = TypeVar('T')

# Исключения, которые считаем временными
TRANSIENT_ERRORS = (
    discord.DiscordServerError,
    aiohttp.ClientConnectionError,
    asyncio.TimeoutError,
)


async def retry_on_network_error(
    factory: Callable[[], Awaitable[T]],
    max_retries: int = 2,
    delay: float = 1.0,
    backoff: float = 2.0,
    operation: str = "discord_call",
) -> T:
    """
    Выполняет корутину с retry при сетевых ошибках.

    Args:
        factory: Функция без аргументов, создающая новую корутину
                 (корутину нельзя await-ить дважды)
        max_retries: Максимальное количество повторных попыток
        delay: Начальная задержка между попытками (секунды)
        backoff: Множитель задержки для каждой следующей попытки
        operation: Имя операции для логов

    Returns:
        Результат выполнения корутины

    Raises:
        Последнее исключение если все попытки неудачны

    Example:
        await retry_on_network_error(lambda: channel.send("Hello"))
    """
    current_delay = delay

    for attempt in range(max_retries + 1):
        try:
            return await factory()
        except TRANSIENT_ERRORS as e:
            if attempt >= max_retries:
                logger.error(
                    f"[Retry] {operation}: все {max_retries + 1} попыток исчерпаны. "
                    f"Последняя ошибка: {e!r}"
                )
                raise
            logger.warning(
                f"[Retry] {operation}: сетевая ошибка (попытка {attempt + 1}/{max_retries + 1}): {e!r}. "
                f"Повтор через {current_delay:.1f}с..."
            )
            await asyncio.sleep(current_delay)
            current_delay *= backoff

    # Недостижимо: цикл либо вернул результат, либо пробросил исключение
    raise RuntimeError(f"{operation}: retry loop exited unexpectedly")
