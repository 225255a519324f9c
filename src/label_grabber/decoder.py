"""Движки декодирования штрихкодов и QR-кодов.

Все движки реализуют один интерфейс `attempt_decode(buffer)` и возвращают
список EngineHit (текст + формат). Уверенность движки не назначают.

- native — встроенные детекторы OpenCV (штрихкоды + QR);
- zxing — zxing-cpp, самый тщательный, 1-D и 2-D символики;
- zbar-quick / zbar-full — pyzbar, лёгкий движок для промышленных 1-D кодов;
- dmtx — libdmtx для DataMatrix, в два прохода (как раньше для PDF-страниц).

Нативные библиотеки zbar и libdmtx могут отсутствовать в системе —
тогда движок помечается недоступным один раз и дальше пропускается.
"""

import logging
import re
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterable, Mapping

import cv2
import zxingcpp

from .buffer import PixelBuffer
from .config import DMTX_INTERNAL_TIMEOUT_MS, EngineTimeouts
from .enhance import adaptive_binarize, sharpen
from .errors import EngineUnavailable
from .models import EngineHit, EngineId
from .transform import scale_by

logger = logging.getLogger(__name__)

FIRST_PASS_TIMEOUT_MS = 200
SECOND_PASS_TIMEOUT_MS = DMTX_INTERNAL_TIMEOUT_MS
MAX_DMTX_CODES = 2
# Быстрый режим zbar работает на половинном разрешении
ZBAR_QUICK_SCALE = 0.5
ZBAR_QUICK_MIN_DIMENSION = 400

_FORMAT_ALIASES = {
    "CODE128": "CODE_128",
    "CODE39": "CODE_39",
    "CODE93": "CODE_93",
    "EAN13": "EAN_13",
    "EAN8": "EAN_8",
    "EAN5": "EAN_5",
    "EAN2": "EAN_2",
    "UPCA": "UPC_A",
    "UPCE": "UPC_E",
    "QRCODE": "QR_CODE",
    "QR": "QR_CODE",
    "MICROQRCODE": "MICRO_QR",
    "RMQRCODE": "RMQR",
    "DATAMATRIX": "DATA_MATRIX",
    "PDF417": "PDF_417",
    "AZTEC": "AZTEC",
    "CODABAR": "CODABAR",
    "ITF": "ITF",
    "I25": "ITF",
    "DATABAR": "DATABAR",
    "DATABAREXPANDED": "DATABAR_EXPANDED",
    "DATABAREXP": "DATABAR_EXPANDED",
    "MAXICODE": "MAXICODE",
}
_NON_ALNUM_RE = re.compile(r"[^A-Z0-9]")


def normalize_format(name: object) -> str:
    """Приводит название символики разных библиотек к одному виду (CODE_128, QR_CODE, ...)."""
    if not isinstance(name, str) or not name.strip():
        return "UNKNOWN"
    # "BarcodeFormat.Code128" -> "Code128"
    raw = name.strip().split(".")[-1]
    key = _NON_ALNUM_RE.sub("", raw.upper())
    return _FORMAT_ALIASES.get(key, raw.upper().replace("-", "_"))


def _clean_hits(hits: Iterable[EngineHit]) -> list[EngineHit]:
    """Отбрасывает пустые значения и точные повторы внутри одного ответа."""
    seen: set[tuple[str, str]] = set()
    result = []
    for hit in hits:
        text = hit.text.strip()
        if not text or (text, hit.format) in seen:
            continue
        seen.add((text, hit.format))
        result.append(EngineHit(text=text, format=hit.format))
    return result


class DecodeEngine(ABC):
    """Интерфейс движка декодирования."""

    engine_id: EngineId
    # Имя поля в EngineTimeouts
    timeout_key: str = "zxing"

    def probe(self) -> None:
        """Проверяет, что движок работает в этом окружении.

        Raises:
            EngineUnavailable: Движок не поддерживается.
        """

    @abstractmethod
    def attempt_decode(self, buffer: PixelBuffer) -> list[EngineHit]:
        """Декодирует буфер (только чтение). Пустой список — ничего не найдено."""
        raise NotImplementedError


class NativeEngine(DecodeEngine):
    """Встроенные детекторы OpenCV: BarcodeDetector и QRCodeDetector."""

    engine_id = EngineId.NATIVE
    timeout_key = "native"

    def __init__(self) -> None:
        self._barcode = None
        self._qr = None
        # Детекторы OpenCV не рассчитаны на вызовы из нескольких потоков
        self._lock = threading.Lock()

    def probe(self) -> None:
        factory = None
        barcode_module = getattr(cv2, "barcode", None)
        if barcode_module is not None and hasattr(barcode_module, "BarcodeDetector"):
            factory = barcode_module.BarcodeDetector
        elif hasattr(cv2, "barcode_BarcodeDetector"):
            factory = cv2.barcode_BarcodeDetector

        try:
            self._barcode = factory() if factory is not None else None
            self._qr = cv2.QRCodeDetector() if hasattr(cv2, "QRCodeDetector") else None
        except cv2.error as e:
            raise EngineUnavailable(f"OpenCV detectors failed to initialize: {e}") from e

        if self._barcode is None and self._qr is None:
            raise EngineUnavailable("OpenCV build has neither BarcodeDetector nor QRCodeDetector")

    def _decode_barcodes(self, gray) -> list[EngineHit]:
        if self._barcode is None:
            return []
        if hasattr(self._barcode, "detectAndDecodeWithType"):
            ok, infos, types, _points = self._barcode.detectAndDecodeWithType(gray)
        else:
            result = self._barcode.detectAndDecode(gray)
            # Старый contrib-модуль: (ok, decoded_info, decoded_type, points)
            if len(result) != 4:
                return []
            ok, infos, types, _points = result
        if not ok or infos is None:
            return []
        types = list(types) if types is not None else []
        hits = []
        for i, text in enumerate(infos):
            fmt = types[i] if i < len(types) else None
            hits.append(EngineHit(text=text or "", format=normalize_format(fmt)))
        return hits

    def _decode_qr(self, gray) -> list[EngineHit]:
        if self._qr is None:
            return []
        ok, infos, _points, _straight = self._qr.detectAndDecodeMulti(gray)
        if not ok or infos is None:
            return []
        return [EngineHit(text=text or "", format="QR_CODE") for text in infos]

    def attempt_decode(self, buffer: PixelBuffer) -> list[EngineHit]:
        gray = buffer.to_gray_array()
        with self._lock:
            hits = self._decode_barcodes(gray) + self._decode_qr(gray)
        return _clean_hits(hits)


class ZxingEngine(DecodeEngine):
    """zxing-cpp: тщательный поиск по всем поддерживаемым символикам."""

    engine_id = EngineId.ZXING
    timeout_key = "zxing"

    def attempt_decode(self, buffer: PixelBuffer) -> list[EngineHit]:
        results = zxingcpp.read_barcodes(buffer.to_gray_array())
        hits = []
        for r in results or []:
            fmt = getattr(r.format, "name", None) or str(r.format)
            hits.append(EngineHit(text=r.text or "", format=normalize_format(fmt)))
        return _clean_hits(hits)


class ZbarEngine(DecodeEngine):
    """pyzbar: быстрый движок для промышленных линейных кодов.

    В быстром режиме работает на половинном разрешении и только с 1-D
    символиками, в полном — на исходном разрешении и дополнительно с QR.
    """

    timeout_key = "zbar"

    def __init__(self, quick: bool = False) -> None:
        self.quick = quick
        self.engine_id = EngineId.ZBAR_QUICK if quick else EngineId.ZBAR_FULL
        self._decode: Callable | None = None
        self._symbols: list | None = None

    def probe(self) -> None:
        try:
            from pyzbar.pyzbar import ZBarSymbol, decode
        except ImportError as e:
            raise EngineUnavailable(f"pyzbar/zbar is not installed: {e}") from e

        symbols = [
            ZBarSymbol.CODE128,
            ZBarSymbol.CODE39,
            ZBarSymbol.CODE93,
            ZBarSymbol.EAN13,
            ZBarSymbol.EAN8,
            ZBarSymbol.UPCA,
            ZBarSymbol.UPCE,
            ZBarSymbol.I25,
            ZBarSymbol.CODABAR,
        ]
        if not self.quick:
            symbols.append(ZBarSymbol.QRCODE)
        self._decode = decode
        self._symbols = symbols

    def attempt_decode(self, buffer: PixelBuffer) -> list[EngineHit]:
        if self._decode is None:
            self.probe()
        if self.quick and buffer.max_dimension > ZBAR_QUICK_MIN_DIMENSION:
            buffer = scale_by(buffer, ZBAR_QUICK_SCALE)

        results = self._decode(buffer.to_gray_array(), symbols=self._symbols)
        return _clean_hits(
            EngineHit(
                text=r.data.decode("utf-8", errors="replace"),
                format=normalize_format(r.type),
            )
            for r in results
        )


class DmtxEngine(DecodeEngine):
    """libdmtx для DataMatrix.

    Сначала пытается декодировать без обработки (быстро), если не нашёл —
    повышает резкость, применяет адаптивную бинаризацию и повторяет
    с большим таймаутом.
    """

    engine_id = EngineId.DMTX
    timeout_key = "dmtx"

    def __init__(self) -> None:
        self._decode: Callable | None = None

    def probe(self) -> None:
        try:
            from pylibdmtx.pylibdmtx import decode
        except ImportError as e:
            raise EngineUnavailable(f"pylibdmtx/libdmtx is not installed: {e}") from e
        self._decode = decode

    @staticmethod
    def second_pass(luma: PixelBuffer) -> PixelBuffer:
        """Подготовка ко второму проходу: резкость, затем локальный порог."""
        return adaptive_binarize(sharpen(luma))

    def _run(self, buffer: PixelBuffer, timeout_ms: int) -> list[EngineHit]:
        results = self._decode(buffer.to_pil(), timeout=timeout_ms, max_count=MAX_DMTX_CODES)
        return [
            EngineHit(text=r.data.decode("utf-8", errors="replace"), format="DATA_MATRIX")
            for r in results or []
        ]

    def attempt_decode(self, buffer: PixelBuffer) -> list[EngineHit]:
        if self._decode is None:
            self.probe()
        luma = buffer.to_luma()
        hits = self._run(luma, FIRST_PASS_TIMEOUT_MS)
        if not hits:
            hits = self._run(self.second_pass(luma), SECOND_PASS_TIMEOUT_MS)
        return _clean_hits(hits)


def default_engines() -> dict[EngineId, DecodeEngine]:
    """Набор движков по умолчанию, в порядке приоритета."""
    return {
        EngineId.NATIVE: NativeEngine(),
        EngineId.ZXING: ZxingEngine(),
        EngineId.ZBAR_QUICK: ZbarEngine(quick=True),
        EngineId.ZBAR_FULL: ZbarEngine(quick=False),
        EngineId.DMTX: DmtxEngine(),
    }


class EngineRegistry:
    """Владеет экземплярами движков и кэширует проверку их доступности.

    Создаётся на время жизни оркестратора, а не как глобальное состояние
    модуля: проверка выполняется один раз при первом обращении.
    """

    def __init__(
        self,
        engines: Mapping[EngineId, DecodeEngine] | None = None,
        timeouts: EngineTimeouts | None = None,
    ) -> None:
        self._engines = dict(engines) if engines is not None else default_engines()
        self.timeouts = timeouts or EngineTimeouts()
        self._probed: dict[EngineId, str | None] = {}
        self._lock = threading.Lock()

    def get(self, engine_id: EngineId) -> DecodeEngine | None:
        """Возвращает движок или None, если он не зарегистрирован/недоступен."""
        engine = self._engines.get(engine_id)
        if engine is None:
            return None
        with self._lock:
            if engine_id not in self._probed:
                try:
                    engine.probe()
                    self._probed[engine_id] = None
                except EngineUnavailable as e:
                    logger.info("Движок %s недоступен: %s", engine_id.value, e)
                    self._probed[engine_id] = str(e)
        return engine if self._probed[engine_id] is None else None

    def is_available(self, engine_id: EngineId) -> bool:
        return self.get(engine_id) is not None

    def timeout_for(self, engine: DecodeEngine) -> float:
        return float(getattr(self.timeouts, engine.timeout_key))

    def describe(self) -> dict[str, str]:
        """Состояние всех движков: «ok» или причина недоступности."""
        report = {}
        for engine_id in self._engines:
            self.get(engine_id)
            reason = self._probed.get(engine_id)
            report[engine_id.value] = "ok" if reason is None else reason
        return report
