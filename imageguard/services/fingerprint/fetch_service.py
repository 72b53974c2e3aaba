# ============================================================
# СКАЧИВАНИЕ ИЗОБРАЖЕНИЙ ПО URL
# ============================================================
# Изображение скачивается целиком до хеширования.
# Любая ошибка (не-2xx статус, сеть, таймаут, превышение размера,
# не-image Content-Type) возвращается как FetchResult с причиной,
# исключения наружу не выходят.
# ============================================================

import asyncio
import enum
import logging
from typing import NamedTuple, Optional

import aiohttp

from imageguard.config import IMAGE_FETCH_TIMEOUT, IMAGE_MAX_BYTES

logger = logging.getLogger(__name__)

# Размер чанка при чтении тела ответа
CHUNK_SIZE = 64 * 1024


class UnhashableReason(str, enum.Enum):
    # Объявленный или фактический тип контента - не изображение
    NOT_IMAGE = "NOT_IMAGE"
    # Сервер ответил не-2xx статусом
    HTTP_STATUS = "HTTP_STATUS"
    # Сетевая ошибка
    FETCH_FAILED = "FETCH_FAILED"
    # Таймаут скачивания
    TIMEOUT = "TIMEOUT"
    # Файл больше IMAGE_MAX_BYTES
    TOO_LARGE = "TOO_LARGE"
    # Байты не удалось декодировать как изображение
    DECODE_FAILED = "DECODE_FAILED"


class FetchResult(NamedTuple):
    data: Optional[bytes]
    reason: Optional[UnhashableReason] = None
    status: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.data is not None


def is_image_content_type(content_type: Optional[str]) -> bool:
    return bool(content_type) and content_type.split(";")[0].strip().lower().startswith("image/")


class ImageFetcher:
    """Скачивание изображений через общий aiohttp.ClientSession."""

    def __init__(
        self,
        timeout: float = IMAGE_FETCH_TIMEOUT,
        max_bytes: int = IMAGE_MAX_BYTES,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self._timeout = aiohttp.ClientTimeout(total=timeout)
        self._max_bytes = max_bytes
        self._session = session
        self._owns_session = session is None

    def _get_session(self) -> aiohttp.ClientSession:
        # Сессия создаётся лениво внутри event loop
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()

    async def fetch(self, url: str) -> FetchResult:
        """
        Скачивает изображение.

        Args:
            url: Адрес изображения

        Returns:
            FetchResult с байтами или причиной неудачи
        """
        session = self._get_session()
        try:
            async with session.get(url, timeout=self._timeout) as resp:
                if not 200 <= resp.status < 300:
                    logger.info(f"[Fetch] {url}: статус {resp.status}")
                    return FetchResult(None, UnhashableReason.HTTP_STATUS, resp.status)

                if not is_image_content_type(resp.content_type):
                    logger.info(f"[Fetch] {url}: не изображение ({resp.content_type})")
                    return FetchResult(None, UnhashableReason.NOT_IMAGE, resp.status)

                if resp.content_length is not None and resp.content_length > self._max_bytes:
                    logger.info(f"[Fetch] {url}: слишком большой файл ({resp.content_length} байт)")
                    return FetchResult(None, UnhashableReason.TOO_LARGE, resp.status)

                buffer = bytearray()
                async for chunk in resp.content.iter_chunked(CHUNK_SIZE):
                    buffer.extend(chunk)
                    if len(buffer) > self._max_bytes:
                        logger.info(f"[Fetch] {url}: превышен лимит {self._max_bytes} байт")
                        return FetchResult(None, UnhashableReason.TOO_LARGE, resp.status)

                return FetchResult(bytes(buffer), None, resp.status)

        except asyncio.TimeoutError:
            logger.warning(f"[Fetch] {url}: таймаут")
            return FetchResult(None, UnhashableReason.TIMEOUT)
        except aiohttp.ClientError as e:
            logger.warning(f"[Fetch] {url}: сетевая ошибка {e!r}")
            return FetchResult(None, UnhashableReason.FETCH_FAILED)
