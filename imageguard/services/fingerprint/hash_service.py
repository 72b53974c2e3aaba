# ============================================================
# СЕРВИС ХЕШИРОВАНИЯ ИЗОБРАЖЕНИЙ (perceptual hash)
# ============================================================
# Этот файл реализует perceptual hashing для обнаружения
# повторно загруженных изображений даже после ресайза/сжатия.
#
# Визуально похожие изображения дают одинаковый отпечаток,
# побайтно одинаковые - всегда одинаковый.
#
# Алгоритм и размер хеша задаются конфигурацией и должны быть
# постоянными: отпечаток сравнивается с сохранёнными на равенство.
# ============================================================

# Импорт стандартных библиотек
from io import BytesIO
# Импорт для аннотации типов
from typing import Callable, Optional
# Импорт для работы с логами
import logging

# Импорт библиотеки для работы с изображениями
from PIL import Image
# Импорт библиотеки для вычисления perceptual hash
import imagehash

from imageguard.config import FINGERPRINT_ALGORITHM, FINGERPRINT_HASH_SIZE
from imageguard.database.models import FINGERPRINT_MAX_LENGTH
from imageguard.errors import ConfigurationError


# ============================================================
# НАСТРОЙКА ЛОГИРОВАНИЯ
# ============================================================
# Создаём логгер для этого модуля
logger = logging.getLogger(__name__)


# ============================================================
# КОНСТАНТЫ
# ============================================================
# Максимальный размер изображения для обработки (пиксели)
# Большие изображения ресайзятся для экономии памяти
MAX_IMAGE_SIZE: int = 1024

# Поддерживаемые алгоритмы хеширования
HASH_ALGORITHMS: dict[str, Callable] = {
    # DCT-based, устойчив к ресайзу и сжатию (по умолчанию)
    'phash': imagehash.phash,
    # Градиенты яркости между соседними пикселями
    'dhash': imagehash.dhash,
    # Средняя яркость
    'ahash': imagehash.average_hash,
    # Вейвлет-преобразование (hash_size должен быть степенью двойки)
    'whash': imagehash.whash,
}


def fingerprint_length(hash_size: int) -> int:
    """Длина hex-отпечатка: hash_size x hash_size бит, 4 бита на символ."""
    return (hash_size * hash_size + 3) // 4


# ============================================================
# КЛАСС СЕРВИСА ХЕШИРОВАНИЯ
# ============================================================
class HashService:
    """
    Сервис для вычисления и сравнения perceptual hash изображений.

    Пример использования:
        service = HashService()
        fingerprint = service.compute(image_bytes)
        if fingerprint is not None:
            print(f"Отпечаток: {fingerprint}")
    """

    def __init__(
        self,
        algorithm: str = FINGERPRINT_ALGORITHM,
        hash_size: int = FINGERPRINT_HASH_SIZE,
    ) -> None:
        """
        Инициализация сервиса хеширования.

        Args:
            algorithm: Имя алгоритма из HASH_ALGORITHMS
            hash_size: Сторона сетки хеша (16 = 16x16 = 256 бит)

        Raises:
            ConfigurationError: если алгоритм неизвестен или отпечаток
                не помещается в колонку fingerprint
        """
        if algorithm not in HASH_ALGORITHMS:
            raise ConfigurationError(f"Неизвестный алгоритм хеширования: {algorithm}")
        if hash_size < 2 or fingerprint_length(hash_size) > FINGERPRINT_MAX_LENGTH:
            raise ConfigurationError(
                f"FINGERPRINT_HASH_SIZE={hash_size} недопустим: отпечаток "
                f"{fingerprint_length(hash_size)} символов, максимум {FINGERPRINT_MAX_LENGTH}"
            )
        self._algorithm = algorithm
        self._hash_func = HASH_ALGORITHMS[algorithm]
        self._hash_size = hash_size

    @property
    def algorithm(self) -> str:
        return self._algorithm

    @property
    def hash_size(self) -> int:
        return self._hash_size

    @staticmethod
    def _prepare(image: Image.Image) -> Image.Image:
        # Прозрачные изображения накладываем на белый фон,
        # иначе прозрачные пиксели дают случайный цвет
        if image.mode in ('RGBA', 'LA', 'PA') or (image.mode == 'P' and 'transparency' in image.info):
            rgba = image.convert('RGBA')
            background = Image.new('RGB', rgba.size, (255, 255, 255))
            background.paste(rgba, mask=rgba.split()[3])
            image = background
        elif image.mode not in ('RGB', 'L'):
            image = image.convert('RGB')

        # Ресайзим большие изображения для экономии памяти
        # Это не влияет на хеш (алгоритм всё равно ужимает до сетки)
        if max(image.size) > MAX_IMAGE_SIZE:
            ratio = MAX_IMAGE_SIZE / max(image.size)
            new_size = (max(1, int(image.width * ratio)), max(1, int(image.height * ratio)))
            image = image.resize(new_size, Image.Resampling.LANCZOS)
        return image

    def compute(self, image_data: bytes) -> Optional[str]:
        """
        Вычисляет отпечаток изображения.

        Args:
            image_data: Байты изображения (JPEG, PNG, GIF, WEBP...)

        Returns:
            Отпечаток в hex формате (hash_size**2 / 4 символов),
            или None если изображение не удалось обработать
        """
        try:
            # Открываем изображение из байтов
            # Для анимаций берётся первый кадр
            with Image.open(BytesIO(image_data)) as image:
                image.load()
                prepared = self._prepare(image)
                return str(self._hash_func(prepared, hash_size=self._hash_size))
        except Exception as e:
            # Логируем ошибку но не падаем - возвращаем None
            logger.warning(f"Ошибка вычисления хеша изображения: {e}")
            return None

    @staticmethod
    def distance(hash1: str, hash2: str) -> Optional[int]:
        """
        Вычисляет расстояние Хэмминга между двумя отпечатками.

        Returns:
            Количество различающихся битов, или None если
            отпечатки несравнимы (разный размер, битый hex)
        """
        try:
            return imagehash.hex_to_hash(hash1) - imagehash.hex_to_hash(hash2)
        except Exception as e:
            logger.warning(f"Ошибка сравнения хешей: {e}")
            return None
