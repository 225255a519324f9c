"""Таблица уверенности: движок × вариант изображения → базовая уверенность.

Движки сами уверенность не сообщают — её назначает оркестратор по этой
таблице. Таблица передаётся в оркестратор и тестируется отдельно.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field

from .models import EngineId, VariantKind

DEFAULT_CONFIDENCE_TABLE: dict[tuple[EngineId, VariantKind], float] = {
    # Нативный детектор возвращает геометрию, самый надёжный
    (EngineId.NATIVE, VariantKind.RAW): 0.90,
    (EngineId.NATIVE, VariantKind.CONTRAST): 0.88,
    (EngineId.NATIVE, VariantKind.BINARIZED): 0.85,
    (EngineId.ZXING, VariantKind.RAW): 0.83,
    (EngineId.ZXING, VariantKind.CONTRAST): 0.80,
    (EngineId.ZXING, VariantKind.BINARIZED): 0.78,
    (EngineId.DMTX, VariantKind.RAW): 0.80,
    (EngineId.DMTX, VariantKind.CONTRAST): 0.78,
    (EngineId.DMTX, VariantKind.BINARIZED): 0.76,
    (EngineId.ZBAR_FULL, VariantKind.RAW): 0.75,
    (EngineId.ZBAR_FULL, VariantKind.CONTRAST): 0.73,
    (EngineId.ZBAR_FULL, VariantKind.BINARIZED): 0.70,
    # Быстрый режим (полуразрешение) ниже полного
    (EngineId.ZBAR_QUICK, VariantKind.RAW): 0.68,
    (EngineId.ZBAR_QUICK, VariantKind.CONTRAST): 0.66,
    (EngineId.ZBAR_QUICK, VariantKind.BINARIZED): 0.64,
}


@dataclass(frozen=True)
class ScoringPolicy:
    """Декларативная политика уверенности."""

    table: Mapping[tuple[EngineId, VariantKind], float] = field(
        default_factory=lambda: dict(DEFAULT_CONFIDENCE_TABLE)
    )
    default: float = 0.5
    rotation_penalty: float = 0.02

    def __post_init__(self) -> None:
        for key, value in self.table.items():
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"Confidence for {key} must be within [0, 1]")
        if not 0.0 <= self.default <= 1.0:
            raise ValueError("default confidence must be within [0, 1]")
        if self.rotation_penalty < 0:
            raise ValueError("rotation_penalty must be >= 0")

    def confidence(self, engine: EngineId, variant: VariantKind, rotation: int = 0) -> float:
        """Уверенность для попадания движка на варианте (с учётом поворота)."""
        base = self.table.get((engine, variant), self.default)
        if rotation % 360:
            base -= self.rotation_penalty
        return max(0.0, min(1.0, base))
