# ============================================================
# МОДУЛЬ ОТПЕЧАТКОВ ИЗОБРАЖЕНИЙ
# ============================================================
# Компоненты модуля:
# - hash_service.py: perceptual hash байтов изображения
# - fetch_service.py: скачивание изображения по URL (aiohttp)
# - fingerprint_service.py: ImageRef -> отпечаток | unhashable
# ============================================================

from .hash_service import HashService, HASH_ALGORITHMS
from .fetch_service import ImageFetcher, FetchResult, UnhashableReason, is_image_content_type
from .fingerprint_service import FingerprintService, FingerprintResult, ImageRef
