"""Модели данных конвейера распознавания и пакетной обработки."""

from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .buffer import PixelBuffer

# Форматы, которые считаются QR (для ключа дедупликации)
_QR_FORMATS = frozenset({"QR_CODE", "MICRO_QR", "RMQR"})
_REGION_EPS = 1e-9


class Status(str, Enum):
    """Статус обработки одного файла."""

    OK = "OK"
    NOT_FOUND = "НЕ НАЙДЕН"
    ERROR = "ОШИБКА"


class VariantKind(str, Enum):
    """Вид производного изображения."""

    RAW = "raw"
    CONTRAST = "contrast"
    BINARIZED = "binarized"


class EngineId(str, Enum):
    """Идентификаторы движков декодирования."""

    NATIVE = "native"
    ZXING = "zxing"
    ZBAR_QUICK = "zbar-quick"
    ZBAR_FULL = "zbar-full"
    DMTX = "dmtx"


class ScanState(str, Enum):
    """Состояния оркестратора."""

    IDLE = "idle"
    SCANNING = "scanning"
    SUCCESS = "success"
    EXHAUSTED = "exhausted"


@dataclass(frozen=True)
class RegionSpec:
    """Именованная область кадра в долях: (x, y, w, h)."""

    name: str
    x: float
    y: float
    w: float
    h: float

    def __post_init__(self) -> None:
        if self.x < 0 or self.y < 0 or self.w <= 0 or self.h <= 0:
            raise ValueError(f"Region {self.name!r}: x, y must be >= 0 and w, h > 0")
        if self.x + self.w > 1 + _REGION_EPS or self.y + self.h > 1 + _REGION_EPS:
            raise ValueError(f"Region {self.name!r} exceeds the frame: x+w and y+h must be <= 1")


@dataclass(frozen=True)
class ImageVariant:
    """Производное изображение области: вариант обработки и поворот.

    `buffer` только для чтения, `transform` — описание цепочки
    преобразований для логов, например «center/upscale/otsu+open(1)@90».
    """

    region: str
    region_index: int
    kind: VariantKind
    buffer: "PixelBuffer"
    transform: str
    rotation: int = 0


@dataclass(frozen=True)
class EngineHit:
    """Сырой ответ движка: текст и формат (без уверенности)."""

    text: str
    format: str


@dataclass(frozen=True)
class DecodeCandidate:
    """Одно успешное декодирование с происхождением."""

    value: str
    format: str
    source_engine: EngineId
    region: str
    region_index: int
    variant: VariantKind
    engine_confidence: float
    rotation: int = 0

    @property
    def code_type(self) -> str:
        """«qrcode» для QR-форматов, иначе «barcode»."""
        return "qrcode" if self.format in _QR_FORMATS else "barcode"

    @property
    def key(self) -> tuple[str, str]:
        return (self.code_type, self.value)

    def to_dict(self) -> dict[str, Any]:
        return {
            "value": self.value,
            "format": self.format,
            "type": self.code_type,
            "confidence": round(self.engine_confidence, 4),
            "region": self.region,
            "region_index": self.region_index,
            "engine": self.source_engine.value,
            "variant": self.variant.value,
            "rotation": self.rotation,
        }


@dataclass(frozen=True)
class SkewEstimate:
    """Оценка наклона: угол в градусах [-45, 45] и уверенность [0, 100]."""

    angle: float
    confidence: float


@dataclass(frozen=True)
class QualityReport:
    """Оценка пригодности кадра для распознавания."""

    score: int
    issues: list[str]
    suggestions: list[str]
    ready: bool
    brightness: float = 0.0
    contrast: float = 0.0
    sharpness: float = 0.0
    occupancy: float = 0.0


@dataclass(frozen=True)
class MetricLevel:
    """Значение метрики диагностики с уровнем и подсказкой."""

    value: float
    level: str
    suggestion: str


@dataclass(frozen=True)
class DiagnosisReport:
    """Подробный диагностический отчёт по кадру."""

    brightness: MetricLevel
    contrast: MetricLevel
    sharpness: MetricLevel
    noise: MetricLevel
    barcode_confidence: int
    has_barcode: bool
    skew: SkewEstimate
    overall_score: int
    recommendations: list[str]
    ready_for_capture: bool


@dataclass(frozen=True)
class OcrExtraction:
    """Результат OCR-запасного пути."""

    text: str
    serial_number: str
    model: str
    confidence: float
    model_defaulted: bool = False


@dataclass
class RecognitionResult:
    """Результат распознавания: уникальные по (тип, значение) кандидаты.

    Для каждого значения хранится происхождение с максимальной уверенностью.
    Уверенность по значению только растёт: дубликат с меньшей или равной
    уверенностью ничего не меняет.
    """

    _entries: dict[tuple[str, str], DecodeCandidate] = field(default_factory=dict)
    state: ScanState = ScanState.IDLE
    attempts: int = 0
    elapsed_ms: float = 0.0
    skew: SkewEstimate | None = None
    quality: QualityReport | None = None
    ocr: OcrExtraction | None = None

    def add(self, candidate: DecodeCandidate) -> bool:
        """Добавляет кандидата. Возвращает True, если значение новое."""
        key = candidate.key
        current = self._entries.get(key)
        if current is None:
            self._entries[key] = candidate
            return True
        if candidate.engine_confidence > current.engine_confidence:
            self._entries[key] = candidate
        return False

    @property
    def distinct_count(self) -> int:
        return len(self._entries)

    @property
    def values(self) -> list[str]:
        return [c.value for c in self.ranked()]

    def ranked(self) -> list[DecodeCandidate]:
        """Кандидаты по убыванию уверенности, при равенстве — в порядке обнаружения."""
        ordered = list(self._entries.values())
        return sorted(ordered, key=lambda c: -c.engine_confidence)

    def get(self, value: str, code_type: str = "barcode") -> DecodeCandidate | None:
        return self._entries.get((code_type, value))

    def to_dicts(self) -> list[dict[str, Any]]:
        return [c.to_dict() for c in self.ranked()]

    def __iter__(self):
        return iter(self.ranked())

    def __len__(self) -> int:
        return len(self._entries)

    def __bool__(self) -> bool:
        return bool(self._entries)


@dataclass
class ProcessingResult:
    """Результат обработки одного файла в пакетном режиме."""

    filename: str
    value: str | None = None
    format: str | None = None
    confidence: float | None = None
    region: str | None = None
    engine: str | None = None
    serial_number: str | None = None
    part_number: str | None = None
    model: str | None = None
    source: str = "barcode"
    status: Status = Status.OK
    error_message: str | None = None


@dataclass
class SessionStats:
    """Общая статистика сессии обработки."""

    total_files: int = 0
    files_processed: int = 0
    total_codes: int = 0
    files_empty: int = 0
    ocr_fallbacks: int = 0
    files_with_errors: int = 0
    errors: list[str] = field(default_factory=list)
    resumed_from: int = 0        # сколько файлов пропущено при resume
    interrupted: bool = False    # было ли прервано по Ctrl+C

    @property
    def success_rate(self) -> float:
        """Процент файлов с найденными кодами."""
        if self.files_processed == 0:
            return 0.0
        found = self.files_processed - self.files_empty - self.files_with_errors
        return max(0, found) / self.files_processed * 100
