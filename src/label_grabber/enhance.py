"""Улучшение изображения: оттенки серого, контраст, бинаризация, морфология.

Функции не меняют входной буфер и возвращают новый. Раскладка каналов
сохраняется: для RGBA яркость дублируется в R, G, B, альфа не трогается.
"""

import logging

import cv2
import numpy as np

from .buffer import Layout, PixelBuffer
from .config import EQUALIZE_TILE_SIZE

logger = logging.getLogger(__name__)

ERODE = "erode"
DILATE = "dilate"

# Пороги стратегии адаптивного улучшения
LOW_CONTRAST_RANGE = 50
DARK_MEAN = 80
BRIGHT_MEAN = 200

_SHARPEN_KERNEL = np.array(
    [
        [0, -1, 0],
        [-1, 5, -1],
        [0, -1, 0],
    ],
    dtype=np.float32,
)


def _from_gray(buffer: PixelBuffer, gray: np.ndarray) -> PixelBuffer:
    """Собирает буфер исходной раскладки из массива яркости (h, w)."""
    gray = np.clip(gray, 0, 255).astype(np.uint8)
    if buffer.layout is Layout.LUMA:
        return buffer.with_pixels(gray[:, :, None])
    out = np.empty_like(buffer.pixels)
    out[:, :, 0] = gray
    out[:, :, 1] = gray
    out[:, :, 2] = gray
    out[:, :, 3] = buffer.pixels[:, :, 3]
    return buffer.with_pixels(out)


def grayscale(buffer: PixelBuffer) -> PixelBuffer:
    """Яркость 0.299R + 0.587G + 0.114B, продублированная по каналам."""
    if buffer.layout is Layout.LUMA:
        return buffer
    return _from_gray(buffer, buffer.to_gray_array())


def linear_contrast(buffer: PixelBuffer, factor: float, brightness_offset: float = 0.0) -> PixelBuffer:
    """Линейный контраст по каналам: clamp(0, 255, (v - 128) * factor + 128 + offset)."""
    pixels = buffer.pixels.astype(np.float32)
    color = pixels if buffer.layout is Layout.LUMA else pixels[:, :, :3]
    adjusted = np.clip((color - 128.0) * factor + 128.0 + brightness_offset, 0, 255)

    out = buffer.pixels.copy()
    if buffer.layout is Layout.LUMA:
        out[:] = adjusted.astype(np.uint8)
    else:
        out[:, :, :3] = adjusted.astype(np.uint8)
    return buffer.with_pixels(out)


def otsu_threshold(buffer: PixelBuffer) -> int:
    """Порог Оцу по 256-бинной гистограмме яркости.

    Ищет t, максимизирующий межклассовую дисперсию wB·wF·(mB − mF)².
    Для однотонного изображения возвращает 0.
    """
    gray = buffer.to_gray_array()
    hist = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
    levels = np.arange(256, dtype=np.float64)

    total = hist.sum()
    sum_total = (levels * hist).sum()
    w_b = np.cumsum(hist)
    sum_b = np.cumsum(levels * hist)
    w_f = total - w_b

    valid = (w_b > 0) & (w_f > 0)
    if not valid.any():
        return 0

    with np.errstate(divide="ignore", invalid="ignore"):
        m_b = np.where(valid, sum_b / w_b, 0.0)
        m_f = np.where(valid, (sum_total - sum_b) / w_f, 0.0)
    variance = np.where(valid, w_b * w_f * (m_b - m_f) ** 2, -1.0)
    # argmax берёт первый максимум: на плато выбирается наименьший порог
    return int(np.argmax(variance))


def binarize(buffer: PixelBuffer, threshold: int) -> PixelBuffer:
    """Пиксели ярче порога становятся 255, остальные — 0."""
    gray = buffer.to_gray_array()
    return _from_gray(buffer, np.where(gray > threshold, 255, 0))


def local_histogram_equalize(buffer: PixelBuffer, tile_size: int = EQUALIZE_TILE_SIZE) -> PixelBuffer:
    """Поблочное выравнивание гистограммы (упрощённый CLAHE).

    Кадр делится на непересекающиеся блоки tile_size×tile_size, для
    каждого строится своя кумулятивная таблица и применяется только к нему.
    Помогает при неравномерном освещении, где один глобальный порог не работает.
    """
    if tile_size < 1:
        raise ValueError("tile_size must be >= 1")

    gray = buffer.to_gray_array()
    out = np.empty_like(gray)
    height, width = gray.shape

    for ty in range(0, height, tile_size):
        for tx in range(0, width, tile_size):
            tile = gray[ty : ty + tile_size, tx : tx + tile_size]
            hist = np.bincount(tile.ravel(), minlength=256)
            cdf = np.cumsum(hist)
            mapping = np.rint(cdf * 255.0 / tile.size).astype(np.uint8)
            out[ty : ty + tile_size, tx : tx + tile_size] = mapping[tile]

    return _from_gray(buffer, out)


def morphology(buffer: PixelBuffer, op: str, radius: int) -> PixelBuffer:
    """Эрозия (минимум) или дилатация (максимум) яркости в окне (2r+1)²."""
    if op not in (ERODE, DILATE):
        raise ValueError(f"Unknown morphology op: {op}")
    if radius < 0:
        raise ValueError("radius must be >= 0")
    if radius == 0:
        return buffer

    kernel = np.ones((2 * radius + 1, 2 * radius + 1), dtype=np.uint8)
    gray = buffer.to_gray_array()
    if op == ERODE:
        result = cv2.erode(gray, kernel, borderType=cv2.BORDER_REPLICATE)
    else:
        result = cv2.dilate(gray, kernel, borderType=cv2.BORDER_REPLICATE)
    return _from_gray(buffer, result)


def opening(buffer: PixelBuffer, radius: int) -> PixelBuffer:
    """Эрозия, затем дилатация: убирает точечный шум, не разрывая штрихи."""
    return morphology(morphology(buffer, ERODE, radius), DILATE, radius)


def sharpen(buffer: PixelBuffer) -> PixelBuffer:
    """Повышение резкости ядром 3×3."""
    gray = buffer.to_gray_array()
    return _from_gray(buffer, cv2.filter2D(gray, -1, _SHARPEN_KERNEL))


def adaptive_binarize(buffer: PixelBuffer, window: int = 35, offset: int = 15) -> PixelBuffer:
    """Бинаризация по локальному среднему — для неравномерного освещения.

    Пиксель становится чёрным, если он темнее среднего по окну больше чем на offset.
    """
    if window % 2 == 0:
        window += 1
    gray = buffer.to_gray_array()
    binary = cv2.adaptiveThreshold(
        gray, 255, cv2.ADAPTIVE_THRESH_MEAN_C, cv2.THRESH_BINARY, window, offset
    )
    return _from_gray(buffer, binary)


def otsu_binarize(buffer: PixelBuffer, opening_radius: int = 0) -> PixelBuffer:
    """Оттенки серого → бинаризация по Оцу → (опционально) морфологическое открытие."""
    gray = grayscale(buffer)
    binary = binarize(gray, otsu_threshold(gray))
    if opening_radius > 0:
        binary = opening(binary, opening_radius)
    return binary


def adaptive_enhance(buffer: PixelBuffer) -> PixelBuffer:
    """Выбирает стратегию улучшения по статистике яркости кадра.

    - диапазон яркости < 50: поблочное выравнивание гистограммы;
    - слишком темно: яркость +30, контраст ×1.5;
    - пересвет: яркость −20, контраст ×1.3;
    - иначе: умеренный контраст ×1.2.
    """
    luminance = buffer.luminance()
    mean = float(luminance.mean())
    contrast_range = float(luminance.max() - luminance.min())

    if contrast_range < LOW_CONTRAST_RANGE:
        logger.debug("Низкий контраст (%.0f): поблочное выравнивание", contrast_range)
        return local_histogram_equalize(buffer)
    if mean < DARK_MEAN:
        logger.debug("Тёмный кадр (%.0f): яркость и контраст", mean)
        return linear_contrast(buffer, 1.5, 30)
    if mean > BRIGHT_MEAN:
        logger.debug("Пересвет (%.0f): компенсация экспозиции", mean)
        return linear_contrast(buffer, 1.3, -20)
    return linear_contrast(buffer, 1.2)
