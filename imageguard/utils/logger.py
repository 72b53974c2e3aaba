import asyncio
import logging
from typing import Optional

import aiohttp

# Discord ограничивает content вебхука 2000 символами
WEBHOOK_CONTENT_LIMIT = 1900

LOG_FORMAT = '%(asctime)s - %(levelname)s - %(name)s - %(message)s'


# ==== ОТПРАВКА ЛОГОВ В КАНАЛ DISCORD ЧЕРЕЗ WEBHOOK ====

async def send_formatted_log(webhook_url: str, message: str) -> None:
    """Отправляет отформатированное сообщение в канал логов через webhook"""
    if not webhook_url:
        return

    payload = {
        "content": f"```{message[:WEBHOOK_CONTENT_LIMIT]}```",
        "allowed_mentions": {"parse": []},
    }

    async with aiohttp.ClientSession() as session:
        try:
            async with session.post(webhook_url, json=payload) as resp:
                if resp.status >= 300:
                    text = await resp.text()
                    print(f"❌ Discord webhook error: {resp.status}: {text}")
        except Exception as e:
            print(f"❌ Ошибка при отправке лога в Discord: {e}")


class WebhookLogHandler(logging.Handler):
    """
    Пересылает записи лога в канал Discord через webhook.

    Работает только внутри запущенного event loop: запись
    отправляется фоновой задачей, чтобы не блокировать вызывающий код.
    Вне loop (например при старте процесса) запись молча пропускается -
    она всё равно попадает в консольный обработчик.
    """

    def __init__(self, webhook_url: str, level: int = logging.WARNING):
        super().__init__(level=level)
        self.webhook_url = webhook_url
        self._tasks: set[asyncio.Task] = set()

    def emit(self, record: logging.LogRecord) -> None:
        if not self.webhook_url:
            return
        # Не пересылаем собственные ошибки aiohttp/discord - иначе возможен цикл
        if record.name.startswith(("aiohttp", "discord")):
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        try:
            message = self.format(record)
        except Exception:
            self.handleError(record)
            return
        task = loop.create_task(send_formatted_log(self.webhook_url, message))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def setup_logging(level: str = "INFO", webhook_url: Optional[str] = None) -> logging.Logger:
    """
    Настраивает корневой логгер: консоль + (опционально) webhook.

    Args:
        level: Уровень логирования (INFO, DEBUG, ...)
        webhook_url: URL Discord webhook для WARNING+ записей

    Returns:
        Корневой логгер
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    # Создаем обработчик для консоли
    console_handler = logging.StreamHandler()
    console_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    root.addHandler(console_handler)

    # Создаем обработчик для Discord
    if webhook_url:
        webhook_handler = WebhookLogHandler(webhook_url, level=logging.WARNING)
        webhook_handler.setFormatter(logging.Formatter(LOG_FORMAT))
        root.addHandler(webhook_handler)

    # Отключаем подробное логирование gateway discord.py
    for logger_name in ("discord", "discord.gateway", "discord.client", "discord.http"):
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return root
