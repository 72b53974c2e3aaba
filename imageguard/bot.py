import asyncio
import logging
import signal
from typing import Optional

import discord

from imageguard.config import (
    DB_HEALTHCHECK_INTERVAL,
    DISCORD_TOKEN,
    FINGERPRINT_ALGORITHM,
    FINGERPRINT_HASH_SIZE,
    LOG_LEVEL,
    LOG_WEBHOOK_URL,
    RUN_STATE_BACKEND,
    describe,
)
from imageguard.database import session as db
from imageguard.errors import StorageUnavailableError
from imageguard.handlers import AdminCommands, EventRouter, create_router
from imageguard.messaging.discord_messenger import DiscordMessenger, to_message_created, to_message_deleted
from imageguard.middleware import DbSessionMiddleware, StructuredLoggingMiddleware
from imageguard.services import redis_conn
from imageguard.services.community_config import CommunityConfigService
from imageguard.services.fingerprint import FingerprintService, HashService
from imageguard.services.moderation_session import ModerationSession
from imageguard.services.penalty import PenaltyController, PenaltyScheduler
from imageguard.services.run_state import RunStateGate
from imageguard.utils.logger import setup_logging

logger = logging.getLogger(__name__)


class ImageGuardClient(discord.Client):
    """discord.Client, передающий события в EventRouter"""

    def __init__(self, *, scheduler: PenaltyScheduler, **kwargs):
        super().__init__(**kwargs)
        self.router: Optional[EventRouter] = None
        self._scheduler = scheduler

    async def setup_hook(self) -> None:
        # HTTP уже залогинен, gateway ещё не подключён - восстанавливаем таймеры
        try:
            await self._scheduler.reconcile()
        except StorageUnavailableError as e:
            logger.error(f"❌ [SCHEDULER] Reconcile не выполнен: {e}")

    async def on_ready(self) -> None:
        logger.info(f"✅ Вход выполнен как {self.user} ({len(self.guilds)} гильдий)")

    async def on_message(self, message: discord.Message) -> None:
        if self.router is None:
            return
        try:
            await self.router.dispatch(to_message_created(message))
        except Exception as e:
            logger.exception(f"❌ Необработанная ошибка on_message {message.id}: {e}")

    async def on_raw_message_delete(self, payload: discord.RawMessageDeleteEvent) -> None:
        if self.router is None:
            return
        try:
            await self.router.dispatch(to_message_deleted(payload))
        except Exception as e:
            logger.exception(f"❌ Необработанная ошибка on_raw_message_delete {payload.message_id}: {e}")


def build_intents() -> discord.Intents:
    intents = discord.Intents.default()
    intents.message_content = True  # текст команд и embed
    intents.members = True  # проверка ролей участника
    return intents


async def main() -> int:
    setup_logging(LOG_LEVEL, LOG_WEBHOOK_URL)
    logging.info("🤖 Запуск imageguard...")
    for line in describe():
        logging.info(line)

    # ========================================
    # БАЗА ДАННЫХ
    # ========================================
    try:
        await db.wait_for_database()
        await db.init_db()
    except StorageUnavailableError as e:
        logging.critical(f"❌ База данных недоступна, запуск невозможен: {e}")
        await db.engine.dispose()
        return 1

    # ========================================
    # REDIS
    # ========================================
    redis_ok = await redis_conn.test_connection()
    if not redis_ok:
        logging.warning("⚠️ Redis недоступен: кэш настроек отключён")
        if RUN_STATE_BACKEND == "redis":
            logging.info("ℹ️ Флаг запуска хранится в памяти процесса (сбросится при перезапуске)")

    # ========================================
    # СБОРКА КОМПОНЕНТОВ
    # ========================================
    scheduler = PenaltyScheduler()
    client = ImageGuardClient(scheduler=scheduler, intents=build_intents())
    messenger = DiscordMessenger(client)
    run_state = RunStateGate()
    configs = CommunityConfigService()
    fingerprints = FingerprintService(HashService(FINGERPRINT_ALGORITHM, FINGERPRINT_HASH_SIZE))
    penalties = PenaltyController(messenger, scheduler)
    moderation = ModerationSession(
        messenger,
        fingerprints,
        penalties,
        run_state,
        configs=configs,
        commands=AdminCommands(messenger, run_state, configs, penalties=penalties),
    )
    client.router = create_router(
        [StructuredLoggingMiddleware(), DbSessionMiddleware(db.async_session)],
        {"moderation": moderation},
    )

    # ========================================
    # ЗАПУСК И ОСТАНОВКА
    # ========================================
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: остаётся KeyboardInterrupt
            pass

    keepalive_task = asyncio.create_task(db.keep_database_alive(DB_HEALTHCHECK_INTERVAL), name="db-keepalive")
    client_task = asyncio.create_task(client.start(DISCORD_TOKEN), name="discord-client")
    stop_task = asyncio.create_task(stop_event.wait(), name="stop-signal")

    exit_code = 0
    try:
        done, _ = await asyncio.wait({client_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        if client_task in done and client_task.exception() is not None:
            error = client_task.exception()
            if isinstance(error, discord.LoginFailure):
                logging.critical(f"❌ Неверный DISCORD_TOKEN: {error}")
            else:
                logging.critical(f"❌ Клиент Discord остановился с ошибкой: {error!r}")
            exit_code = 1
        elif stop_task in done:
            logging.info("🛑 Получен сигнал остановки")
    finally:
        logging.info("🔄 Завершение работы...")
        stop_task.cancel()
        keepalive_task.cancel()
        await scheduler.shutdown()
        if not client.is_closed():
            await client.close()
        if not client_task.done():
            client_task.cancel()
        await asyncio.gather(client_task, keepalive_task, stop_task, return_exceptions=True)
        await fingerprints.close()
        await db.engine.dispose()
        await redis_conn.close_connection()
        logging.info("✅ imageguard остановлен")

    return exit_code


def run() -> int:
    try:
        return asyncio.run(main())
    except KeyboardInterrupt:
        print("\n🛑 Бот остановлен пользователем")
        return 0
