# ============================================================
# ИСКЛЮЧЕНИЯ ПРОЕКТА
# ============================================================
# Ядро не разбирает коды ошибок драйверов БД и Discord напрямую:
# коллабораторы переводят их в эти типы (или в ActionResult).
# ============================================================


class ImageGuardError(Exception):
    """Базовое исключение imageguard."""


class StorageUnavailableError(ImageGuardError):
    """
    Хранилище временно недоступно (потеря соединения, таймаут).

    Текущая сессия модерации прерывается и логируется,
    повтор внутри обработчика не делается.
    """


class ConfigurationError(ImageGuardError):
    """Некорректная конфигурация сообщества или процесса."""
