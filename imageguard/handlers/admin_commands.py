# ============================================================
# АДМИН-КОМАНДЫ
# ============================================================
# !setup <activeChannelId> <notificationChannelId>
#   сохраняет настройки сообщества (ID или упоминание канала <#id>)
# !startbot / !stopbot
#   включает/выключает модерацию в сообществе
# !clear <member>
#   досрочно снимает временное ограничение (ID или упоминание <@id>)
#
# Все команды только для администраторов. В ненастроенном
# сообществе обрабатывается только !setup.
# ============================================================

import logging
import re
from typing import NamedTuple, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from imageguard.config import COMMAND_PREFIX
from imageguard.errors import StorageUnavailableError
from imageguard.messaging.base import MessageCreated, Messenger
from imageguard.services.community_config import CommunityConfigService, CommunitySettings
from imageguard.services.penalty import PenaltyController
from imageguard.services.run_state import RunStateGate

logger = logging.getLogger(__name__)

# Ответы пользователю
SETUP_OK = "✅ Configuration saved successfully."
SETUP_USAGE = "❌ Usage: `{prefix}setup <activeChannelId> <notificationChannelId>`"
SETUP_NOT_ADMIN = "❌ Only administrators can run this command."
SETUP_STORAGE_ERROR = "❌ Configuration could not be saved right now. Please try again later."
STARTED = "✅ The bot is now running."
STOPPED = "🛑 The bot has been stopped."
NO_PERMISSION = "❌ You do not have permission to run this command."
CLEAR_USAGE = "❌ Usage: `{prefix}clear <member>`"
CLEARED = "✅ Restriction removed for <@{user_id}>."
CLEAR_NOTHING = "ℹ️ <@{user_id}> has no active restriction."
CLEAR_STORAGE_ERROR = "❌ The restriction could not be removed right now. Please try again later."

SETUP = "setup"
STARTBOT = "startbot"
STOPBOT = "stopbot"
CLEAR = "clear"
COMMANDS = (SETUP, STARTBOT, STOPBOT, CLEAR)

# 123456789 или <#123456789>
_CHANNEL_RE = re.compile(r"^(?:<#)?(\d+)>?$")
# 123456789, <@123456789> или <@!123456789>
_MEMBER_RE = re.compile(r"^(?:<@!?)?(\d+)>?$")


class ParsedCommand(NamedTuple):
    name: str
    args: tuple[str, ...]


def parse_command(content: str, prefix: str = COMMAND_PREFIX) -> Optional[ParsedCommand]:
    """Разбирает текст сообщения. None - это не наша команда."""
    if not content or not content.startswith(prefix):
        return None
    parts = content[len(prefix):].split()
    if not parts:
        return None
    name = parts[0].lower()
    if name not in COMMANDS:
        return None
    return ParsedCommand(name, tuple(parts[1:]))


def parse_channel_id(raw: str) -> Optional[int]:
    match = _CHANNEL_RE.match(raw.strip())
    return int(match.group(1)) if match else None


def parse_member_id(raw: str) -> Optional[int]:
    match = _MEMBER_RE.match(raw.strip())
    return int(match.group(1)) if match else None


class AdminCommands:
    """Обработка !setup / !startbot / !stopbot / !clear."""

    def __init__(
        self,
        messenger: Messenger,
        run_state: RunStateGate,
        configs: Optional[CommunityConfigService] = None,
        prefix: str = COMMAND_PREFIX,
        penalties: Optional[PenaltyController] = None,
    ):
        self._messenger = messenger
        self._run_state = run_state
        self._configs = configs or CommunityConfigService()
        self._prefix = prefix
        self._penalties = penalties

    async def handle(
        self,
        session: AsyncSession,
        event: MessageCreated,
        settings: Optional[CommunitySettings],
    ) -> bool:
        """
        Обрабатывает команду, если сообщение - команда.

        Returns:
            True если сообщение поглощено командой
        """
        command = parse_command(event.content, self._prefix)
        if command is None:
            return False

        if command.name == SETUP:
            await self._setup(session, event, command.args)
            return True

        if settings is None:
            # Ненастроенное сообщество: кроме !setup ничего не обрабатываем
            return False
        if command.name == CLEAR and self._penalties is None:
            return False

        if not event.author_is_admin:
            logger.info(f"[COMMAND] {command.name}: отказано пользователю {event.author_id}")
            await self._messenger.send_reply(event.ref, NO_PERMISSION)
            return True

        if command.name == CLEAR:
            await self._clear(event, command.args)
            return True

        enabled = command.name == STARTBOT
        await self._run_state.set_enabled(event.guild_id, enabled)
        await self._messenger.send_reply(event.ref, STARTED if enabled else STOPPED)
        logger.info(
            f"{'✅' if enabled else '🛑'} [COMMAND] {command.name}: community={event.guild_id} "
            f"by={event.author_id}"
        )
        return True

    async def _setup(self, session: AsyncSession, event: MessageCreated, args: tuple[str, ...]) -> None:
        if not event.author_is_admin:
            logger.info(f"[COMMAND] setup: отказано пользователю {event.author_id}")
            await self._messenger.send_reply(event.ref, SETUP_NOT_ADMIN)
            return

        channel_ids = [parse_channel_id(arg) for arg in args[:2]]
        if len(channel_ids) < 2 or None in channel_ids:
            await self._messenger.send_reply(event.ref, SETUP_USAGE.format(prefix=self._prefix))
            return

        active_channel_id, notification_channel_id = channel_ids
        try:
            await self._configs.save_config(
                session,
                community_id=event.guild_id,
                active_channel_id=active_channel_id,
                notification_channel_id=notification_channel_id,
                updated_by=event.author_id,
            )
        except StorageUnavailableError:
            await self._messenger.send_reply(event.ref, SETUP_STORAGE_ERROR)
            return

        await self._messenger.send_reply(event.ref, SETUP_OK)
        logger.info(f"✅ [COMMAND] Настройка завершена: community={event.guild_id}")

    async def _clear(self, event: MessageCreated, args: tuple[str, ...]) -> None:
        member_id = parse_member_id(args[0]) if args else None
        if member_id is None:
            await self._messenger.send_reply(event.ref, CLEAR_USAGE.format(prefix=self._prefix))
            return

        try:
            cleared = await self._penalties.clear(event.guild_id, member_id)
        except StorageUnavailableError:
            await self._messenger.send_reply(event.ref, CLEAR_STORAGE_ERROR)
            return

        reply = CLEARED if cleared else CLEAR_NOTHING
        await self._messenger.send_reply(event.ref, reply.format(user_id=member_id))
        logger.info(
            f"[COMMAND] clear: community={event.guild_id} member={member_id} "
            f"снято={cleared} by={event.author_id}"
        )
