# ============================================================
# АДАПТЕР DISCORD (discord.py)
# ============================================================
# Реализует Messenger поверх discord.Client и переводит
# discord.NotFound / discord.Forbidden / discord.HTTPException
# в ActionResult. Временные сетевые ошибки повторяются через
# retry_on_network_error.
# ============================================================

import asyncio
import logging
from typing import Awaitable, Callable, Optional

import aiohttp
import discord

from imageguard.messaging.base import (
    ActionResult,
    Attachment,
    MessageCreated,
    MessageDeleted,
    MessageRef,
    RoleRef,
)
from imageguard.utils.retry_utils import retry_on_network_error

logger = logging.getLogger(__name__)

# Причина в аудит-логе Discord для всех действий бота
AUDIT_REASON = "imageguard: duplicate image moderation"


class DiscordMessenger:
    """Исходящие операции Discord для ядра модерации."""

    def __init__(self, client: discord.Client):
        self._client = client

    # ------------------------------------------------------------
    # ВНУТРЕННИЕ ХЕЛПЕРЫ
    # ------------------------------------------------------------
    async def _run(self, operation: str, factory: Callable[[], Awaitable[object]]) -> ActionResult:
        try:
            await retry_on_network_error(factory, operation=operation)
            return ActionResult.OK
        except discord.NotFound as e:
            logger.info(f"[Discord] {operation}: не найдено ({e.code})")
            return ActionResult.NOT_FOUND
        except discord.Forbidden as e:
            logger.warning(f"[Discord] {operation}: нет прав ({e.code}: {e.text})")
            return ActionResult.FORBIDDEN
        except (discord.HTTPException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[Discord] {operation}: ошибка {e!r}")
            return ActionResult.FAILED

    async def _channel(self, channel_id: int):
        channel = self._client.get_channel(channel_id)
        if channel is None:
            channel = await self._client.fetch_channel(channel_id)
        return channel

    async def _guild(self, guild_id: int) -> discord.Guild:
        guild = self._client.get_guild(guild_id)
        if guild is None:
            guild = await self._client.fetch_guild(guild_id)
        return guild

    async def _member(self, guild_id: int, user_id: int) -> discord.Member:
        guild = await self._guild(guild_id)
        member = guild.get_member(user_id)
        if member is None:
            member = await guild.fetch_member(user_id)
        return member

    # ------------------------------------------------------------
    # СООБЩЕНИЯ
    # ------------------------------------------------------------
    async def send_reply(self, ref: MessageRef, text: str) -> ActionResult:
        async def _send():
            channel = await self._channel(ref.channel_id)
            await channel.get_partial_message(ref.message_id).reply(text, mention_author=False)
        return await self._run("send_reply", _send)

    async def send_direct_message(self, user_id: int, text: str) -> ActionResult:
        async def _send():
            user = self._client.get_user(user_id) or await self._client.fetch_user(user_id)
            await user.send(text)
        return await self._run("send_direct_message", _send)

    async def send_channel_message(self, channel_id: int, text: str) -> ActionResult:
        async def _send():
            channel = await self._channel(channel_id)
            await channel.send(text)
        return await self._run("send_channel_message", _send)

    async def delete_message(self, ref: MessageRef) -> ActionResult:
        async def _delete():
            channel = await self._channel(ref.channel_id)
            await channel.get_partial_message(ref.message_id).delete()
        return await self._run("delete_message", _delete)

    # ------------------------------------------------------------
    # РОЛИ
    # ------------------------------------------------------------
    async def grant_role(self, guild_id: int, user_id: int, role_id: int) -> ActionResult:
        async def _grant():
            member = await self._member(guild_id, user_id)
            await member.add_roles(discord.Object(id=role_id), reason=AUDIT_REASON)
        return await self._run("grant_role", _grant)

    async def revoke_role(self, guild_id: int, user_id: int, role_id: int) -> ActionResult:
        async def _revoke():
            member = await self._member(guild_id, user_id)
            await member.remove_roles(discord.Object(id=role_id), reason=AUDIT_REASON)
        return await self._run("revoke_role", _revoke)

    async def has_role(self, guild_id: int, user_id: int, role_id: int) -> Optional[bool]:
        """None - состояние неизвестно (участник вышел или API недоступен)."""
        try:
            member = await self._member(guild_id, user_id)
        except (discord.HTTPException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[Discord] has_role: не удалось получить участника {user_id}: {e!r}")
            return None
        return member.get_role(role_id) is not None

    async def find_role(self, guild_id: int, name: str) -> Optional[RoleRef]:
        try:
            guild = await self._guild(guild_id)
            roles = guild.roles or await guild.fetch_roles()
        except (discord.HTTPException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"[Discord] find_role: гильдия {guild_id} недоступна: {e!r}")
            return None
        role = discord.utils.get(roles, name=name)
        if role is None:
            return None
        return RoleRef(id=role.id, name=role.name)

    async def find_or_create_role(self, guild_id: int, name: str) -> Optional[RoleRef]:
        existing = await self.find_role(guild_id, name)
        if existing is not None:
            return existing
        try:
            guild = await self._guild(guild_id)
            role = await guild.create_role(name=name, reason=AUDIT_REASON)
        except (discord.HTTPException, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"[Discord] Не удалось создать роль '{name}' в гильдии {guild_id}: {e!r}")
            return None
        logger.info(f"✅ [Discord] Создана роль '{name}' ({role.id}) в гильдии {guild_id}")
        return RoleRef(id=role.id, name=role.name)


# ============================================================
# ПРЕОБРАЗОВАНИЕ ВХОДЯЩИХ СОБЫТИЙ
# ============================================================
def _embedded_image_urls(message: discord.Message) -> tuple[str, ...]:
    urls = []
    for embed in message.embeds:
        if embed.image and embed.image.url:
            urls.append(embed.image.url)
        # Превью ссылки на картинку Discord кладёт в thumbnail
        elif embed.type == "image" and embed.thumbnail and embed.thumbnail.url:
            urls.append(embed.thumbnail.url)
    return tuple(urls)


def to_message_created(message: discord.Message) -> MessageCreated:
    author = message.author
    is_admin = isinstance(author, discord.Member) and author.guild_permissions.administrator
    return MessageCreated(
        author_id=author.id,
        guild_id=message.guild.id if message.guild else None,
        channel_id=message.channel.id,
        message_id=message.id,
        content=message.content or "",
        attachments=tuple(
            Attachment(url=a.url, content_type=a.content_type, filename=a.filename)
            for a in message.attachments
        ),
        embedded_images=_embedded_image_urls(message),
        author_is_bot=author.bot,
        author_is_admin=is_admin,
        author_name=str(author),
    )


def to_message_deleted(payload: discord.RawMessageDeleteEvent) -> MessageDeleted:
    return MessageDeleted(
        guild_id=payload.guild_id,
        channel_id=payload.channel_id,
        message_id=payload.message_id,
    )
