"""Геометрические преобразования буфера: обрезка, масштаб, поворот.

Все операции, меняющие размеры, возвращают новый буфер.
Положительный угол поворота — по часовой стрелке (ось Y направлена вниз).
"""

import math

import cv2
import numpy as np

from .buffer import Layout, PixelBuffer
from .config import BACKGROUND_VALUE
from .models import RegionSpec

_RIGHT_ANGLES = {90: -1, 180: 2, 270: 1}  # градусы по часовой -> k для np.rot90
_ANGLE_EPS = 1e-6


def _resize(buffer: PixelBuffer, width: int, height: int, interpolation: int) -> PixelBuffer:
    resized = cv2.resize(buffer.pixels, (width, height), interpolation=interpolation)
    # cv2 теряет ось каналов у одноканальных изображений
    if resized.ndim == 2:
        resized = resized[:, :, None]
    return buffer.with_pixels(resized)


def crop(buffer: PixelBuffer, region: RegionSpec) -> PixelBuffer:
    """Вырезает область в долях кадра.

    Границы: floor(width * x) и т.д., с прижатием к буферу.
    Результат никогда не бывает пустым (минимум 1×1).
    """
    w, h = buffer.width, buffer.height
    x0 = min(max(0, math.floor(w * region.x)), w - 1)
    y0 = min(max(0, math.floor(h * region.y)), h - 1)
    x1 = min(w, max(x0 + 1, math.floor(w * (region.x + region.w))))
    y1 = min(h, max(y0 + 1, math.floor(h * (region.y + region.h))))

    if (x0, y0, x1, y1) == (0, 0, w, h):
        return buffer
    return buffer.with_pixels(buffer.pixels[y0:y1, x0:x1].copy())


def rescale(buffer: PixelBuffer, max_dimension: int) -> PixelBuffer:
    """Уменьшает буфер с сохранением пропорций, если длинная сторона больше max_dimension.

    Иначе возвращает тот же самый объект (без копирования).
    """
    if max_dimension < 1:
        raise ValueError("max_dimension must be >= 1")
    if buffer.max_dimension <= max_dimension:
        return buffer

    scale = max_dimension / buffer.max_dimension
    width = max(1, round(buffer.width * scale))
    height = max(1, round(buffer.height * scale))
    return _resize(buffer, width, height, cv2.INTER_AREA)


def upscale(buffer: PixelBuffer, min_dimension: int) -> PixelBuffer:
    """Увеличивает буфер, если длинная сторона меньше min_dimension.

    Бикубическая интерполяция не даёт «лесенки», которая ломает тонкие штрихи.
    """
    if min_dimension < 1:
        raise ValueError("min_dimension must be >= 1")
    if buffer.max_dimension >= min_dimension:
        return buffer

    scale = min_dimension / buffer.max_dimension
    width = max(1, round(buffer.width * scale))
    height = max(1, round(buffer.height * scale))
    return _resize(buffer, width, height, cv2.INTER_CUBIC)


def scale_by(buffer: PixelBuffer, factor: float) -> PixelBuffer:
    """Масштабирует буфер в factor раз (используется для «быстрого» режима zbar)."""
    if factor <= 0:
        raise ValueError("factor must be positive")
    width = max(1, round(buffer.width * factor))
    height = max(1, round(buffer.height * factor))
    interpolation = cv2.INTER_AREA if factor < 1 else cv2.INTER_CUBIC
    return _resize(buffer, width, height, interpolation)


def rotate(buffer: PixelBuffer, degrees: float) -> PixelBuffer:
    """Поворачивает буфер по часовой стрелке на degrees градусов.

    90/180/270 выполняются без потерь (90 и 270 меняют ширину и высоту).
    Для произвольного угла холст расширяется до
    ceil(w·|cos| + h·|sin|) × ceil(w·|sin| + h·|cos|), чтобы углы
    изображения не обрезались; открывшиеся области заливаются белым фоном.
    """
    normalized = degrees % 360
    if abs(normalized) < _ANGLE_EPS or abs(normalized - 360) < _ANGLE_EPS:
        return buffer

    nearest = round(normalized)
    if abs(normalized - nearest) < _ANGLE_EPS and nearest in _RIGHT_ANGLES:
        rotated = np.rot90(buffer.pixels, k=_RIGHT_ANGLES[nearest], axes=(0, 1))
        return buffer.with_pixels(rotated.copy())

    w, h = buffer.width, buffer.height
    radians = math.radians(normalized)
    cos = abs(math.cos(radians))
    sin = abs(math.sin(radians))
    new_w = max(1, math.ceil(w * cos + h * sin - _ANGLE_EPS))
    new_h = max(1, math.ceil(w * sin + h * cos - _ANGLE_EPS))

    # OpenCV считает положительный угол против часовой стрелки
    matrix = cv2.getRotationMatrix2D((w / 2, h / 2), -normalized, 1.0)
    matrix[0, 2] += new_w / 2 - w / 2
    matrix[1, 2] += new_h / 2 - h / 2

    if buffer.layout is Layout.RGBA:
        border = (BACKGROUND_VALUE,) * 4
    else:
        border = BACKGROUND_VALUE
    rotated = cv2.warpAffine(
        buffer.pixels,
        matrix,
        (new_w, new_h),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border,
    )
    if rotated.ndim == 2:
        rotated = rotated[:, :, None]
    return buffer.with_pixels(rotated)
