# Экспортируем контракт платформы для удобного импорта
# from imageguard.messaging import Messenger, MessageCreated, ActionResult
from .base import (
    ActionResult,
    Attachment,
    MessageCreated,
    MessageDeleted,
    MessageRef,
    Messenger,
    RoleRef,
)
