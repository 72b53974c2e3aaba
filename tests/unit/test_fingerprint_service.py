# ============================================================
# ТЕСТЫ СЕРВИСА ОТПЕЧАТКОВ (скачивание + хеширование)
# ============================================================
# HTTP проверяется на настоящем aiohttp TestServer:
# 200 image/png, 404, text/html, слишком большой файл, битые байты.
# ============================================================

from io import BytesIO
from unittest.mock import AsyncMock

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer
from PIL import Image

from imageguard.services.fingerprint import (
    FingerprintService,
    HashService,
    ImageFetcher,
    ImageRef,
    UnhashableReason,
    is_image_content_type,
)


def _png_bytes(color=(10, 120, 200)) -> bytes:
    img = Image.new("RGB", (128, 128), color)
    img.paste((250, 250, 0), (0, 0, 64, 64))
    buffer = BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


PNG = _png_bytes()


@pytest.fixture
async def image_server():
    async def image(request):
        return web.Response(body=PNG, content_type="image/png")

    async def missing(request):
        return web.Response(status=404, text="not found")

    async def html(request):
        return web.Response(text="<html></html>", content_type="text/html")

    async def broken(request):
        return web.Response(body=b"\x89PNG garbage", content_type="image/png")

    app = web.Application()
    app.router.add_get("/image.png", image)
    app.router.add_get("/missing.png", missing)
    app.router.add_get("/page", html)
    app.router.add_get("/broken.png", broken)

    server = TestServer(app)
    await server.start_server()
    yield server
    await server.close()


@pytest.fixture
async def service():
    svc = FingerprintService(HashService("phash", 16), ImageFetcher(timeout=5))
    yield svc
    await svc.close()


def test_is_image_content_type():
    assert is_image_content_type("image/png")
    assert is_image_content_type("IMAGE/JPEG; charset=binary")
    assert not is_image_content_type("text/html")
    assert not is_image_content_type(None)


@pytest.mark.asyncio
async def test_fetch_and_hash(image_server, service):
    result = await service.compute_fingerprint(ImageRef(url=str(image_server.make_url("/image.png"))))

    assert result.hashable
    assert result.fingerprint == HashService("phash", 16).compute(PNG)


@pytest.mark.asyncio
async def test_http_404_is_unhashable(image_server, service):
    result = await service.compute_fingerprint(ImageRef(url=str(image_server.make_url("/missing.png"))))

    assert not result.hashable
    assert result.reason is UnhashableReason.HTTP_STATUS


@pytest.mark.asyncio
async def test_non_image_response_is_unhashable(image_server, service):
    result = await service.compute_fingerprint(ImageRef(url=str(image_server.make_url("/page"))))

    assert result.reason is UnhashableReason.NOT_IMAGE


@pytest.mark.asyncio
async def test_corrupt_image_is_unhashable(image_server, service):
    result = await service.compute_fingerprint(ImageRef(url=str(image_server.make_url("/broken.png"))))

    assert result.reason is UnhashableReason.DECODE_FAILED


@pytest.mark.asyncio
async def test_oversized_image_is_unhashable(image_server):
    svc = FingerprintService(HashService(), ImageFetcher(timeout=5, max_bytes=100))
    try:
        result = await svc.compute_fingerprint(ImageRef(url=str(image_server.make_url("/image.png"))))
    finally:
        await svc.close()

    assert result.reason is UnhashableReason.TOO_LARGE


@pytest.mark.asyncio
async def test_connection_error_is_unhashable(service):
    # Порт 1 закрыт - соединение отклоняется
    result = await service.compute_fingerprint(ImageRef(url="http://127.0.0.1:1/image.png"))

    assert result.reason in (UnhashableReason.FETCH_FAILED, UnhashableReason.TIMEOUT)


@pytest.mark.asyncio
async def test_declared_non_image_is_rejected_before_fetch():
    fetcher = AsyncMock(spec=ImageFetcher)
    svc = FingerprintService(HashService(), fetcher)

    result = await svc.compute_fingerprint(ImageRef(url="http://example.invalid/doc.pdf", content_type="application/pdf"))

    assert result.reason is UnhashableReason.NOT_IMAGE
    fetcher.fetch.assert_not_called()


@pytest.mark.asyncio
async def test_raw_bytes_are_hashed_without_fetch():
    fetcher = AsyncMock(spec=ImageFetcher)
    svc = FingerprintService(HashService(), fetcher)

    result = await svc.compute_fingerprint(ImageRef(url=None, content_type="image/png", data=PNG))

    assert result.fingerprint == HashService().compute(PNG)
    fetcher.fetch.assert_not_called()


@pytest.mark.asyncio
async def test_unexpected_error_never_raises():
    fetcher = AsyncMock(spec=ImageFetcher)
    fetcher.fetch.side_effect = RuntimeError("boom")
    svc = FingerprintService(HashService(), fetcher)

    result = await svc.compute_fingerprint(ImageRef(url="http://example.invalid/a.png"))

    assert not result.hashable
