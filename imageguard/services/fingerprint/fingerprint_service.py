# ============================================================
# СЕРВИС ОТПЕЧАТКОВ
# ============================================================
# compute_fingerprint(image_ref) -> FingerprintResult
#
# 1. Отсекает объявленный не-image тип ДО скачивания
# 2. Скачивает изображение целиком (или берёт готовые байты)
# 3. Считает perceptual hash в пуле потоков, чтобы не блокировать
#    event loop
#
# Любая ошибка превращается в unhashable-результат, наружу
# исключения не выходят. Что делать с таким изображением -
# решает вызывающий код (UNHASHABLE_POLICY).
# ============================================================

import asyncio
import logging
from functools import partial
from typing import NamedTuple, Optional

from .fetch_service import ImageFetcher, UnhashableReason, is_image_content_type
from .hash_service import HashService

logger = logging.getLogger(__name__)


class ImageRef(NamedTuple):
    """
    Ссылка на изображение-кандидат.

    Attributes:
        url: Адрес изображения (вложение или embed)
        content_type: Объявленный платформой MIME тип (может быть None для embed)
        data: Уже загруженные байты (если есть - URL не скачивается)
    """
    url: Optional[str]
    content_type: Optional[str] = None
    data: Optional[bytes] = None


class FingerprintResult(NamedTuple):
    fingerprint: Optional[str]
    reason: Optional[UnhashableReason] = None

    @property
    def hashable(self) -> bool:
        return self.fingerprint is not None

    @classmethod
    def unhashable(cls, reason: UnhashableReason) -> "FingerprintResult":
        return cls(fingerprint=None, reason=reason)


class FingerprintService:
    """Превращает ImageRef в отпечаток или unhashable-результат."""

    def __init__(
        self,
        hash_service: Optional[HashService] = None,
        fetcher: Optional[ImageFetcher] = None,
    ):
        self._hash_service = hash_service or HashService()
        self._fetcher = fetcher or ImageFetcher()

    @property
    def hash_service(self) -> HashService:
        return self._hash_service

    async def close(self) -> None:
        await self._fetcher.close()

    async def compute_fingerprint(self, image_ref: ImageRef) -> FingerprintResult:
        try:
            return await self._compute(image_ref)
        except Exception as e:
            logger.warning(f"[Fingerprint] Неожиданная ошибка для {image_ref.url}: {e!r}")
            return FingerprintResult.unhashable(UnhashableReason.DECODE_FAILED)

    async def _compute(self, image_ref: ImageRef) -> FingerprintResult:
        # Объявленный тип проверяем до сети
        if image_ref.content_type is not None and not is_image_content_type(image_ref.content_type):
            return FingerprintResult.unhashable(UnhashableReason.NOT_IMAGE)

        data = image_ref.data
        if data is None:
            if not image_ref.url:
                return FingerprintResult.unhashable(UnhashableReason.FETCH_FAILED)
            fetched = await self._fetcher.fetch(image_ref.url)
            if not fetched.ok:
                return FingerprintResult.unhashable(fetched.reason)
            data = fetched.data

        # Хеширование - CPU-bound, уносим в executor
        loop = asyncio.get_running_loop()
        fingerprint = await loop.run_in_executor(None, partial(self._hash_service.compute, data))
        if fingerprint is None:
            return FingerprintResult.unhashable(UnhashableReason.DECODE_FAILED)
        return FingerprintResult(fingerprint=fingerprint)
