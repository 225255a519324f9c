"""Оценка качества кадра: яркость, контраст, резкость, заполнение кадра кодом.

`assess` — быстрая оценка для живых подсказок и для отсечения заведомо
плохих кадров; `diagnose` — подробный отчёт с уровнями и рекомендациями.
Обе функции чистые: вход не изменяется.
"""

import numpy as np

from .buffer import PixelBuffer
from .models import DiagnosisReport, MetricLevel, QualityReport
from .skew import estimate_skew
from .transform import rescale

ANALYSIS_MAX_DIMENSION = 480
SAMPLE_STRIDE = 4

DARK_MEAN = 50
OVEREXPOSED_MEAN = 220
MIN_CONTRAST_RANGE = 30
SHARPNESS_DELTA = 20
MIN_SHARPNESS = 0.01
OCCUPANCY_DELTA = 30
MIN_OCCUPANCY = 0.05
MAX_OCCUPANCY = 0.7
READY_SCORE = 70

ISSUE_TOO_DARK = "Слишком темно"
ISSUE_OVEREXPOSED = "Пересвет"
ISSUE_LOW_CONTRAST = "Низкий контраст"
ISSUE_BLURRY = "Нерезко"
ISSUE_TOO_FAR = "Код слишком далеко"
ISSUE_TOO_CLOSE = "Код слишком близко"

# (проблема, штраф, подсказка)
_PENALTIES = {
    ISSUE_TOO_DARK: (30, "Добавьте света или включите вспышку"),
    ISSUE_OVEREXPOSED: (20, "Уменьшите освещение или отойдите от источника света"),
    ISSUE_LOW_CONTRAST: (25, "Измените угол съёмки или освещение"),
    ISSUE_BLURRY: (30, "Держите камеру неподвижно и дождитесь фокусировки"),
    ISSUE_TOO_FAR: (15, "Подойдите ближе к этикетке"),
    ISSUE_TOO_CLOSE: (10, "Немного отодвиньте камеру"),
}


def _sharpness(luminance: np.ndarray) -> float:
    """Доля соседних по горизонтали пар (с шагом), чья яркость отличается больше чем на дельту."""
    width = luminance.shape[1]
    if width < 2:
        return 0.0
    rows = luminance[::SAMPLE_STRIDE]
    left = rows[:, 0 : width - 1 : SAMPLE_STRIDE]
    right = rows[:, 1:width:SAMPLE_STRIDE]
    if left.size == 0:
        return 0.0
    return float(np.mean(np.abs(left - right) > SHARPNESS_DELTA))


def _occupancy(luminance: np.ndarray) -> float:
    """Грубая оценка доли кадра, занятой кодом, по плотности краёв."""
    height, width = luminance.shape
    if height < 2 or width < 2:
        return 0.0
    center = luminance[0 : height - 1 : SAMPLE_STRIDE, 0 : width - 1 : SAMPLE_STRIDE]
    right = luminance[0 : height - 1 : SAMPLE_STRIDE, 1:width:SAMPLE_STRIDE]
    bottom = luminance[1:height:SAMPLE_STRIDE, 0 : width - 1 : SAMPLE_STRIDE]
    edges = (np.abs(center - right) > OCCUPANCY_DELTA) | (np.abs(center - bottom) > OCCUPANCY_DELTA)
    density = edges.sum() * SAMPLE_STRIDE * SAMPLE_STRIDE / (height * width)
    return float(min(1.0, density * 2))


def assess(buffer: PixelBuffer) -> QualityReport:
    """Считает оценку готовности кадра 0–100 с проблемами и подсказками.

    Балл начинается со 100 и уменьшается на фиксированные штрафы.
    `ready` — балл не ниже 70 и нет ни одной проблемы.
    """
    luminance = rescale(buffer, ANALYSIS_MAX_DIMENSION).luminance()
    brightness = float(luminance.mean())
    contrast = float(luminance.max() - luminance.min())
    sharpness = _sharpness(luminance)
    occupancy = _occupancy(luminance)

    issues: list[str] = []
    if brightness < DARK_MEAN:
        issues.append(ISSUE_TOO_DARK)
    elif brightness > OVEREXPOSED_MEAN:
        issues.append(ISSUE_OVEREXPOSED)
    if contrast < MIN_CONTRAST_RANGE:
        issues.append(ISSUE_LOW_CONTRAST)
    if sharpness < MIN_SHARPNESS:
        issues.append(ISSUE_BLURRY)
    if occupancy < MIN_OCCUPANCY:
        issues.append(ISSUE_TOO_FAR)
    elif occupancy > MAX_OCCUPANCY:
        issues.append(ISSUE_TOO_CLOSE)

    score = 100 - sum(_PENALTIES[issue][0] for issue in issues)
    score = max(0, min(100, score))

    return QualityReport(
        score=score,
        issues=issues,
        suggestions=[_PENALTIES[issue][1] for issue in issues],
        ready=score >= READY_SCORE and not issues,
        brightness=brightness,
        contrast=contrast,
        sharpness=sharpness,
        occupancy=occupancy,
    )


# --- Подробная диагностика ---


def _brightness_level(value: float) -> MetricLevel:
    if value < 30:
        return MetricLevel(value, "too-dark", "Кадр слишком тёмный, код не читается. Добавьте света.")
    if value < 80:
        return MetricLevel(value, "dark", "Кадр тёмный, распознавание может быть неуверенным.")
    if value < 200:
        return MetricLevel(value, "normal", "Освещение достаточное.")
    if value < 230:
        return MetricLevel(value, "bright", "Кадр светлый, но код ещё читается.")
    return MetricLevel(value, "overexposed", "Пересвет, детали потеряны. Уменьшите свет или смените угол.")


def _contrast_level(luminance: np.ndarray) -> MetricLevel:
    spread = float(luminance.max() - luminance.min())
    deviation = float(luminance.std())
    if spread < 30:
        return MetricLevel(deviation, "low", "Контраст очень низкий, код почти не виден.")
    if spread < 80:
        return MetricLevel(deviation, "medium", "Контраст средний, успех не гарантирован.")
    return MetricLevel(deviation, "high", "Контраст хороший.")


def _sharpness_level(luminance: np.ndarray) -> MetricLevel:
    height, width = luminance.shape
    edges = int((np.abs(np.diff(luminance, axis=1)) > SHARPNESS_DELTA).sum())
    value = float(min(100, round(edges / (width * height) * 1000)))
    if value < 15:
        return MetricLevel(value, "blurry", "Изображение размыто: проблема фокуса или дрожание рук.")
    if value < 35:
        return MetricLevel(value, "acceptable", "Резкость средняя, держите камеру неподвижно.")
    return MetricLevel(value, "sharp", "Изображение резкое.")


def _noise_level(luminance: np.ndarray) -> MetricLevel:
    flat = luminance.ravel()
    step = max(1, flat.size // 1000)
    idx = np.arange(0, flat.size - 1, step)
    value = float(min(100, round(np.mean(np.abs(flat[idx] - flat[idx + 1])) * 2))) if idx.size else 0.0
    if value < 20:
        return MetricLevel(value, "low", "Шум низкий.")
    if value < 50:
        return MetricLevel(value, "medium", "Небольшой шум, распознавание возможно.")
    return MetricLevel(value, "high", "Сильный шум. Улучшите освещение.")


def _barcode_likelihood(luminance: np.ndarray, min_transitions: int = 20) -> int:
    """Доля строк с частыми перепадами яркости (характерно для штрихов)."""
    transitions = (np.abs(np.diff(luminance, axis=1)) > 50).sum(axis=1)
    striped = float(np.mean(transitions >= min_transitions))
    return int(round(min(100.0, striped * 200)))


def diagnose(buffer: PixelBuffer) -> DiagnosisReport:
    """Подробный диагностический отчёт: почему код может не распознаться.

    Итоговый балл — взвешенная сумма: яркость 20%, контраст 20%,
    резкость 25%, шум 15%, признаки штрихкода 20%.
    """
    luminance = rescale(buffer, ANALYSIS_MAX_DIMENSION).luminance()

    brightness = _brightness_level(float(luminance.mean()))
    contrast = _contrast_level(luminance)
    sharpness = _sharpness_level(luminance)
    noise = _noise_level(luminance)
    barcode_confidence = _barcode_likelihood(luminance)
    skew = estimate_skew(buffer)

    brightness_score = {"normal": 100, "dark": 70, "bright": 70}.get(brightness.level, 0)
    contrast_score = {"high": 100, "medium": 60}.get(contrast.level, 0)
    sharpness_score = {"sharp": 100, "acceptable": 60}.get(sharpness.level, 0)
    noise_score = {"low": 100, "medium": 60}.get(noise.level, 0)
    overall = round(
        brightness_score * 0.2
        + contrast_score * 0.2
        + sharpness_score * 0.25
        + noise_score * 0.15
        + barcode_confidence * 0.2
    )

    has_barcode = barcode_confidence > 30
    recommendations = []
    if brightness.level in ("too-dark", "dark"):
        recommendations.append("Добавьте света: подойдите к окну или включите вспышку")
    if brightness.level == "overexposed":
        recommendations.append("Уменьшите свет: избегайте контрового света, смените угол")
    if contrast.level == "low":
        recommendations.append("Повысьте контраст: измените угол освещения")
    if sharpness.level == "blurry":
        recommendations.append("Держите телефон двумя руками и дождитесь фокусировки")
    if noise.level == "high":
        recommendations.append("Снимайте при стабильном освещении без движения")
    if not has_barcode:
        recommendations.append("Проверьте, что код целиком в кадре и ничем не закрыт")
    if abs(skew.angle) > 15:
        recommendations.append("Держите камеру ровно относительно этикетки")
    if not recommendations:
        recommendations.append("Качество хорошее, можно снимать")

    return DiagnosisReport(
        brightness=brightness,
        contrast=contrast,
        sharpness=sharpness,
        noise=noise,
        barcode_confidence=barcode_confidence,
        has_barcode=has_barcode,
        skew=skew,
        overall_score=overall,
        recommendations=recommendations,
        ready_for_capture=overall >= 60 and barcode_confidence >= 50,
    )
