# ============================================================
# UNIT-ТЕСТЫ ДЛЯ СЕРВИСА ХЕШИРОВАНИЯ ИЗОБРАЖЕНИЙ
# ============================================================
# Тестируем:
# - Одинаковые байты -> одинаковый отпечаток
# - Ресайз/пересжатие -> близкий отпечаток
# - Разные изображения -> разные отпечатки
# - Прозрачность, битые данные, неизвестный алгоритм
# ============================================================

from io import BytesIO

import pytest
from PIL import Image, ImageDraw

from imageguard.database.models import FINGERPRINT_MAX_LENGTH
from imageguard.errors import ConfigurationError
from imageguard.services.fingerprint import HashService, HASH_ALGORITHMS
from imageguard.services.fingerprint.hash_service import fingerprint_length


# ============================================================
# ВСПОМОГАТЕЛЬНЫЕ ФУНКЦИИ
# ============================================================
def create_pattern_image(size: int = 256, vertical: bool = True, fmt: str = "PNG") -> bytes:
    """
    Создаёт изображение с контрастным узором.

    Args:
        size: Сторона квадрата в пикселях
        vertical: Делить изображение вертикально (иначе горизонтально)
        fmt: Формат сохранения

    Returns:
        Байты изображения
    """
    img = Image.new("RGB", (size, size), (255, 255, 255))
    draw = ImageDraw.Draw(img)
    if vertical:
        draw.rectangle([0, 0, size // 2, size], fill=(0, 0, 0))
    else:
        draw.rectangle([0, 0, size, size // 2], fill=(0, 0, 0))
    draw.ellipse([size // 4, size // 4, size * 3 // 4, size * 3 // 4], fill=(200, 30, 30))
    buffer = BytesIO()
    img.save(buffer, format=fmt)
    return buffer.getvalue()


def resize_image(data: bytes, size: int, fmt: str = "JPEG") -> bytes:
    with Image.open(BytesIO(data)) as img:
        resized = img.convert("RGB").resize((size, size))
        buffer = BytesIO()
        resized.save(buffer, format=fmt, quality=90)
        return buffer.getvalue()


# ============================================================
# ТЕСТЫ
# ============================================================
class TestHashService:

    def test_same_bytes_same_fingerprint(self):
        service = HashService("phash", 16)
        data = create_pattern_image()
        assert service.compute(data) == service.compute(data)

    def test_fingerprint_length_depends_on_hash_size(self):
        # 16x16 бит = 256 бит = 64 hex символа
        assert len(HashService("phash", 16).compute(create_pattern_image())) == 64
        assert len(HashService("phash", 8).compute(create_pattern_image())) == 16

    def test_resized_copy_is_close(self):
        service = HashService("phash", 16)
        original = create_pattern_image(512)
        copy = resize_image(original, 300)
        distance = service.distance(service.compute(original), service.compute(copy))
        assert distance is not None
        assert distance <= 16

    def test_different_images_differ(self):
        service = HashService("phash", 16)
        first = service.compute(create_pattern_image(vertical=True))
        second = service.compute(create_pattern_image(vertical=False))
        assert first != second
        assert service.distance(first, second) > 16

    def test_transparent_png_is_hashed(self):
        img = Image.new("RGBA", (64, 64), (0, 0, 0, 0))
        ImageDraw.Draw(img).rectangle([0, 0, 32, 64], fill=(0, 0, 255, 255))
        buffer = BytesIO()
        img.save(buffer, format="PNG")

        assert HashService().compute(buffer.getvalue()) is not None

    def test_large_image_is_downscaled(self):
        data = create_pattern_image(size=2048)
        assert HashService().compute(data) is not None

    def test_corrupt_bytes_return_none(self):
        assert HashService().compute(b"definitely not an image") is None

    @pytest.mark.parametrize("algorithm", sorted(HASH_ALGORITHMS))
    def test_all_algorithms_supported(self, algorithm):
        assert HashService(algorithm, 8).compute(create_pattern_image()) is not None

    def test_unknown_algorithm_rejected(self):
        with pytest.raises(ConfigurationError):
            HashService("md5")

    def test_hash_size_too_large_for_column_rejected(self):
        # 32x32 бит = 256 hex-символов, колонка fingerprint уже
        with pytest.raises(ConfigurationError):
            HashService("phash", 32)

    def test_largest_allowed_hash_size_fits_column(self):
        fingerprint = HashService("phash", 22).compute(create_pattern_image())
        assert len(fingerprint) == fingerprint_length(22) <= FINGERPRINT_MAX_LENGTH

    def test_distance_of_identical_is_zero(self):
        fingerprint = HashService().compute(create_pattern_image())
        assert HashService.distance(fingerprint, fingerprint) == 0

    def test_distance_of_incomparable_is_none(self):
        assert HashService.distance("zz", "ff") is None
