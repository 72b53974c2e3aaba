# ============================================================
# КОНТРАКТ ПЛАТФОРМЫ СООБЩЕНИЙ
# ============================================================
# Ядро (сессия модерации, контроллер наказаний, админ-команды)
# работает только с этими типами. Discord-специфика живёт в
# discord_messenger.py и переводит исключения discord.py в
# ActionResult - ядро никогда не разбирает коды ошибок платформы.
# ============================================================

import enum
from dataclasses import dataclass, field
from typing import NamedTuple, Optional, Protocol


# ============================================================
# РЕЗУЛЬТАТЫ ДЕЙСТВИЙ
# ============================================================
class ActionResult(str, enum.Enum):
    # Действие выполнено
    OK = "OK"
    # Объект не найден (сообщение уже удалено, пользователь вышел)
    NOT_FOUND = "NOT_FOUND"
    # Нет прав (закрытые ЛС, бот ниже роли в иерархии)
    FORBIDDEN = "FORBIDDEN"
    # Прочая ошибка (сеть, 5xx после retry)
    FAILED = "FAILED"

    @property
    def ok(self) -> bool:
        return self is ActionResult.OK


class MessageRef(NamedTuple):
    """Адрес сообщения на платформе."""
    guild_id: int
    channel_id: int
    message_id: int


class RoleRef(NamedTuple):
    id: int
    name: str


# ============================================================
# ВХОДЯЩИЕ СОБЫТИЯ
# ============================================================
@dataclass(frozen=True)
class Attachment:
    url: str
    content_type: Optional[str] = None
    filename: Optional[str] = None

    @property
    def is_image(self) -> bool:
        return bool(self.content_type) and self.content_type.lower().startswith("image/")


@dataclass(frozen=True)
class MessageCreated:
    author_id: int
    guild_id: Optional[int]
    channel_id: int
    message_id: int
    content: str = ""
    attachments: tuple[Attachment, ...] = field(default_factory=tuple)
    embedded_images: tuple[str, ...] = field(default_factory=tuple)
    author_is_bot: bool = False
    author_is_admin: bool = False
    author_name: Optional[str] = None

    @property
    def ref(self) -> MessageRef:
        return MessageRef(self.guild_id or 0, self.channel_id, self.message_id)


@dataclass(frozen=True)
class MessageDeleted:
    guild_id: Optional[int]
    channel_id: int
    message_id: int


# ============================================================
# ИСХОДЯЩИЙ ИНТЕРФЕЙС
# ============================================================
class Messenger(Protocol):
    """Исходящие операции платформы. Ни один метод не бросает исключений."""

    async def send_reply(self, ref: MessageRef, text: str) -> ActionResult: ...

    async def send_direct_message(self, user_id: int, text: str) -> ActionResult: ...

    async def send_channel_message(self, channel_id: int, text: str) -> ActionResult: ...

    async def delete_message(self, ref: MessageRef) -> ActionResult: ...

    async def grant_role(self, guild_id: int, user_id: int, role_id: int) -> ActionResult: ...

    async def revoke_role(self, guild_id: int, user_id: int, role_id: int) -> ActionResult: ...

    async def has_role(self, guild_id: int, user_id: int, role_id: int) -> Optional[bool]: ...

    async def find_role(self, guild_id: int, name: str) -> Optional[RoleRef]: ...

    async def find_or_create_role(self, guild_id: int, name: str) -> Optional[RoleRef]: ...
