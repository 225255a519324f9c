"""Разбор распознанных значений: серийный номер, партномер, модель принтера.

Два источника:
- текст OCR — регулярные выражения от самых конкретных к самым общим;
- значения штрихкодов — арбитраж по «похожести» на серийный номер или партномер.
"""

import re
from collections.abc import Iterable
from dataclasses import dataclass

from .models import DecodeCandidate

SERIAL = "serial"
PART = "part"
SCORE_THRESHOLD = 0.75

# Порядок важен: от явной подписи к общему токену, побеждает первое совпадение
SERIAL_PATTERNS = (
    re.compile(r"\b(?:S/N|SN|Serial\s*(?:Number|No\.?)|Serial)[:\s]*([A-Z0-9]+)", re.IGNORECASE),
    re.compile(r"\b(s\d{9})\b", re.IGNORECASE),
    re.compile(r"\b([A-Z]{1,5}\d{6,12})\b"),
    re.compile(r"\b([A-Z0-9]{8,15})\b"),
)
MODEL_PATTERNS = (
    re.compile(r"\b(ZT4[0-9]{2})\b", re.IGNORECASE),
    re.compile(r"(?:Model|Type)[:\s]*(ZT4[0-9]{2})", re.IGNORECASE),
    re.compile(r"\b(ZT\s*4\s*[0-9]\s*[0-9])\b", re.IGNORECASE),
)

# Буквы, которые в серийных номерах почти всегда означают цифры
_DIGIT_LOOKALIKES = str.maketrans({"O": "0", "o": "0", "I": "1", "i": "1", "l": "1", "Z": "2", "z": "2", "S": "5", "s": "5"})
_SERIAL_RE = re.compile(r"^[a-z0-9]{12,18}$")
_PART_RE = re.compile(r"^[a-z0-9-]{8,24}$")
_INVALID_CHARS_RE = re.compile(r"[^a-z0-9-]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass
class Decision:
    """Выбранное значение для режима (серийный номер / партномер)."""

    mode: str
    value: str
    score: float
    votes: int


@dataclass
class SerialAndPart:
    serial_number: str = ""
    part_number: str = ""
    serial: Decision | None = None
    part: Decision | None = None


def _first_match(patterns: Iterable[re.Pattern], text: str) -> str:
    for pattern in patterns:
        match = pattern.search(text)
        if match and match.group(1):
            return _WHITESPACE_RE.sub("", match.group(1)).upper()
    return ""


def extract_printer_info(text: str, default_model: str | None = None) -> tuple[str, str, bool]:
    """Извлекает серийный номер и модель из текста OCR.

    Если модель не найдена, подставляется default_model (если задана) —
    это осознанная эвристика для парка однотипных принтеров.

    Args:
        text: Текст этикетки.
        default_model: Модель по умолчанию или None.

    Returns:
        Кортеж (серийный номер, модель, была ли модель подставлена).
        Ненайденные поля — пустые строки.
    """
    serial = _first_match(SERIAL_PATTERNS, text)
    model = _first_match(MODEL_PATTERNS, text)
    if not model and default_model:
        return serial, default_model, True
    return serial, model, False


def sanitize_text(value: str) -> str:
    """Обрезка, удаление пробелов, «_» → «-», нижний регистр."""
    return _WHITESPACE_RE.sub("", value.strip()).replace("_", "-").lower()


def normalize_numeric_heavy(value: str) -> str:
    """Заменяет похожие на цифры буквы (O→0, I/l→1, Z→2, S→5)."""
    return value.translate(_DIGIT_LOOKALIKES)


def is_likely_serial(value: str) -> bool:
    """12–18 букв/цифр без дефиса, цифр не меньше чем вдвое больше букв."""
    if not _SERIAL_RE.match(value):
        return False
    digits = sum(ch.isdigit() for ch in value)
    letters = sum(ch.isalpha() for ch in value)
    return digits >= letters * 2


def is_likely_part(value: str) -> bool:
    """8–24 символа, 2–4 группы через дефис, в одной из групп хотя бы 2 цифры."""
    if not _PART_RE.match(value) or "-" not in value:
        return False
    groups = value.split("-")
    if not 2 <= len(groups) <= 4:
        return False
    return any(sum(ch.isdigit() for ch in group) >= 2 for group in groups)


def _score(value: str, confidence: float, mode: str) -> float:
    serial_like = is_likely_serial(value)
    part_like = is_likely_part(value)

    score = confidence * 0.6
    if serial_like:
        score += 0.25
    if part_like:
        score += 0.25
    if _INVALID_CHARS_RE.search(value):
        score -= 0.3

    matches_mode = serial_like if mode == SERIAL else part_like
    score += 0.1 if matches_mode else -0.1
    return max(0.0, min(1.2, score))


def _mode_text(value: str, mode: str) -> str:
    cleaned = sanitize_text(value)
    if mode == SERIAL:
        return normalize_numeric_heavy(cleaned)
    return cleaned


def arbitrate(
    candidates: Iterable[DecodeCandidate], mode: str, threshold: float = SCORE_THRESHOLD
) -> Decision | None:
    """Выбирает лучшее значение для режима.

    Кандидаты группируются по нормализованному тексту, балл группы —
    среднее по кандидатам, при равенстве побеждает группа с большим числом
    голосов. Победитель должен пройти проверку формы режима и порог.

    Args:
        candidates: Распознанные значения с уверенностью движка.
        mode: SERIAL или PART.
        threshold: Минимальный балл.

    Returns:
        Decision или None, если ни одно значение не подходит.
    """
    if mode not in (SERIAL, PART):
        raise ValueError(f"Unknown mode: {mode}")

    grouped: dict[str, list[float]] = {}
    for candidate in candidates:
        text = _mode_text(candidate.value, mode)
        if not text:
            continue
        grouped.setdefault(text, []).append(_score(text, candidate.engine_confidence, mode))

    if not grouped:
        return None

    ranked = sorted(
        (Decision(mode=mode, value=text, score=sum(scores) / len(scores), votes=len(scores)) for text, scores in grouped.items()),
        key=lambda d: (-d.score, -d.votes),
    )
    best = ranked[0]
    passes = is_likely_serial(best.value) if mode == SERIAL else is_likely_part(best.value)
    if not passes or best.score < threshold:
        return None
    return best


def extract_serial_and_part(candidates: Iterable[DecodeCandidate]) -> SerialAndPart:
    """Серийный номер и партномер из набора распознанных значений."""
    candidates = list(candidates)
    serial = arbitrate(candidates, SERIAL)
    part = arbitrate(candidates, PART)
    return SerialAndPart(
        serial_number=serial.value if serial else "",
        part_number=part.value if part else "",
        serial=serial,
        part=part,
    )
