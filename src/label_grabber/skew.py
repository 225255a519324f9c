"""Оценка наклона кода по гистограмме направлений градиента."""

import logging

import cv2
import numpy as np

from .buffer import PixelBuffer
from .config import SKEW_ANALYSIS_MAX_DIMENSION, SKEW_MIN_ANGLE
from .enhance import binarize, otsu_threshold
from .models import SkewEstimate
from .transform import rescale, rotate

logger = logging.getLogger(__name__)

# Минимальная величина градиента, чтобы пиксель считался краем
EDGE_MAGNITUDE = 50.0
HISTOGRAM_BINS = 180


def estimate_skew(buffer: PixelBuffer) -> SkewEstimate:
    """Оценивает доминирующий угол штрихов (упрощённый анализ Хафа).

    1. Бинаризация по Оцу.
    2. Направление градиента оператором Собеля 3×3 (только внутренние пиксели).
    3. 180-бинная гистограмма направлений в [0, 180).
    4. Модальный бин — доминирующее направление; бины > 90 сдвигаются на −180,
       а всё, что дальше ±45°, относится к перпендикулярной ориентации
       (её покрывает перебор поворотов на 90°).

    Уверенность растёт с модулем угла: чем сильнее найденный наклон,
    тем вероятнее, что это реальный перекос, а не шум.

    Args:
        buffer: Исходный буфер (не изменяется).

    Returns:
        SkewEstimate: угол в градусах [-45, 45] и уверенность [0, 100].
    """
    small = rescale(buffer, SKEW_ANALYSIS_MAX_DIMENSION)
    if small.width < 3 or small.height < 3:
        return SkewEstimate(angle=0.0, confidence=0.0)

    binary = binarize(small, otsu_threshold(small)).to_gray_array().astype(np.float32)
    # Лёгкое размытие сглаживает «лесенку» бинарных краёв
    smooth = cv2.GaussianBlur(binary, (5, 5), 0)
    gx = cv2.Sobel(smooth, cv2.CV_32F, 1, 0, ksize=3)[1:-1, 1:-1]
    gy = cv2.Sobel(smooth, cv2.CV_32F, 0, 1, ksize=3)[1:-1, 1:-1]

    magnitude = np.hypot(gx, gy)
    edges = magnitude > EDGE_MAGNITUDE
    if not edges.any():
        return SkewEstimate(angle=0.0, confidence=0.0)

    directions = np.degrees(np.arctan2(gy[edges], gx[edges])) % 180.0
    bins = np.floor(directions).astype(np.int64) % HISTOGRAM_BINS
    histogram = np.bincount(bins, minlength=HISTOGRAM_BINS)

    dominant = int(np.argmax(histogram))
    angle = float(dominant - 180 if dominant > 90 else dominant)
    if angle > 45:
        angle -= 90
    elif angle < -45:
        angle += 90

    confidence = min(100.0, abs(angle) * 2)
    logger.debug("Наклон: %.1f° (уверенность %.0f)", angle, confidence)
    return SkewEstimate(angle=angle, confidence=confidence)


def correct_skew(buffer: PixelBuffer, estimate: SkewEstimate | None = None) -> tuple[PixelBuffer, SkewEstimate]:
    """Выравнивает буфер поворотом на −угол, если |угол| > SKEW_MIN_ANGLE.

    Returns:
        Кортеж (буфер, оценка). Если коррекция не нужна — исходный буфер.
    """
    if estimate is None:
        estimate = estimate_skew(buffer)
    if abs(estimate.angle) <= SKEW_MIN_ANGLE:
        return buffer, estimate
    return rotate(buffer, -estimate.angle), estimate
