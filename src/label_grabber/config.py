"""Параметры конвейера по умолчанию и структуры конфигурации."""

from dataclasses import dataclass

from .models import RegionSpec

# Рабочее разрешение: длинная сторона кадра после нормализации.
# Главный рычаг баланса скорость/точность.
WORKING_MAX_DIMENSION = 2000
# Обрезанные области меньше этого размера увеличиваются перед декодированием
REGION_MIN_DIMENSION = 1400

# Глобальный бюджет распознавания
TIME_BUDGET_MS = 4800
MAX_ATTEMPTS = 100
# Сколько разных значений достаточно (серийный номер + партномер)
MIN_DISTINCT_VALUES = 2
# Кадры с оценкой качества ниже порога не перебираются (0 отключает отсечение)
QUALITY_GATE_SCORE = 30

# Таймауты движков, секунды
NATIVE_TIMEOUT_S = 2.0
ZXING_TIMEOUT_S = 3.0
ZBAR_TIMEOUT_S = 2.0
DMTX_TIMEOUT_S = 5.0
OCR_TIMEOUT_S = 5.0
# Внутренний таймаут libdmtx, мс
DMTX_INTERNAL_TIMEOUT_MS = 800

# Наклон: коррекция применяется только при |угол| > SKEW_MIN_ANGLE
SKEW_MIN_ANGLE = 1.0
SKEW_ANALYSIS_MAX_DIMENSION = 400

# Фон (белый), которым заливаются углы после поворота
BACKGROUND_VALUE = 255

# Контраст по умолчанию, когда адаптивное улучшение выключено
DEFAULT_CONTRAST_FACTOR = 1.5
# Радиус морфологического «открытия» для бинарного варианта (0 выключает)
OPENING_RADIUS = 1
EQUALIZE_TILE_SIZE = 32

# Углы запасного перебора поворотов
FALLBACK_ROTATIONS = (90, 180, 270)

# Порядок обхода областей: полный кадр, затем всё более узкие/альтернативные зоны
REGIONS: tuple[RegionSpec, ...] = (
    RegionSpec("full", 0.0, 0.0, 1.0, 1.0),
    RegionSpec("expanded", 0.15, 0.15, 0.70, 0.70),
    RegionSpec("center", 0.20, 0.20, 0.60, 0.60),
    RegionSpec("top-band", 0.0, 0.08, 1.0, 0.26),
    RegionSpec("mid-band", 0.0, 0.34, 1.0, 0.30),
    RegionSpec("bottom-band", 0.0, 0.62, 1.0, 0.30),
    RegionSpec("left-half", 0.0, 0.18, 0.55, 0.64),
    RegionSpec("right-half", 0.45, 0.18, 0.55, 0.64),
)

# Модель по умолчанию для OCR, если шаблоны модели не сработали
DEFAULT_PRINTER_MODEL = "ZT411"


@dataclass(frozen=True)
class EngineTimeouts:
    """Ограничения ожидания для каждого движка, секунды."""

    native: float = NATIVE_TIMEOUT_S
    zxing: float = ZXING_TIMEOUT_S
    zbar: float = ZBAR_TIMEOUT_S
    dmtx: float = DMTX_TIMEOUT_S
    ocr: float = OCR_TIMEOUT_S

    def __post_init__(self) -> None:
        for name in ("native", "zxing", "zbar", "dmtx", "ocr"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} timeout must be positive")


@dataclass(frozen=True)
class OcrOptions:
    """Настройки OCR-запасного пути.

    `default_model` подставляется, когда модель не извлечена из текста;
    None отключает подстановку.
    """

    language: str = "eng"
    psm: int = 6
    contrast_factor: float = 1.5
    binarize: bool = True
    default_model: str | None = DEFAULT_PRINTER_MODEL


@dataclass(frozen=True)
class DecodeOptions:
    """Конфигурация одного вызова распознавания."""

    try_skew_correction: bool = True
    try_multiple_rotations: bool = True
    enhance_quality: bool = True
    use_parallel_decoding: bool = True
    max_attempts: int = MAX_ATTEMPTS
    time_budget_ms: int = TIME_BUDGET_MS
    min_distinct_values: int = MIN_DISTINCT_VALUES
    working_max_dimension: int = WORKING_MAX_DIMENSION
    region_min_dimension: int = REGION_MIN_DIMENSION
    opening_radius: int = OPENING_RADIUS
    use_datamatrix_engine: bool = True
    ocr_fallback: bool = True
    quality_gate_score: int = QUALITY_GATE_SCORE

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.time_budget_ms <= 0:
            raise ValueError("time_budget_ms must be positive")
        if self.min_distinct_values < 1:
            raise ValueError("min_distinct_values must be >= 1")
        if self.working_max_dimension < 64:
            raise ValueError("working_max_dimension must be >= 64")
        if self.region_min_dimension < 1:
            raise ValueError("region_min_dimension must be >= 1")
        if self.opening_radius < 0:
            raise ValueError("opening_radius must be >= 0")
        if not 0 <= self.quality_gate_score <= 100:
            raise ValueError("quality_gate_score must be within [0, 100]")
