"""OCR-запасной путь: распознавание текста этикетки через Tesseract."""

import logging
from collections import OrderedDict

import pytesseract
from pytesseract import Output, TesseractNotFoundError

from .buffer import PixelBuffer
from .config import OCR_TIMEOUT_S, OcrOptions
from .enhance import grayscale, linear_contrast, otsu_binarize
from .errors import EngineTimeout, EngineUnavailable
from .models import OcrExtraction
from .parser import extract_printer_info

logger = logging.getLogger(__name__)


class TesseractReader:
    """Обёртка над pytesseract: подготовка кадра, текст и средняя уверенность."""

    def __init__(self, options: OcrOptions | None = None, timeout_s: float = OCR_TIMEOUT_S) -> None:
        self.options = options or OcrOptions()
        self.timeout_s = timeout_s

    def prepare(self, buffer: PixelBuffer) -> PixelBuffer:
        """Те же шаги улучшения, что и для штрихкодов: контраст и бинаризация."""
        prepared = linear_contrast(grayscale(buffer), self.options.contrast_factor)
        if self.options.binarize:
            prepared = otsu_binarize(prepared)
        return prepared.to_luma()

    def read_text(self, buffer: PixelBuffer) -> tuple[str, float]:
        """Распознаёт текст.

        Returns:
            Кортеж (текст построчно, средняя уверенность слов 0.0–1.0).

        Raises:
            EngineUnavailable: Tesseract не установлен.
            EngineTimeout: Tesseract не уложился в таймаут.
        """
        try:
            data = pytesseract.image_to_data(
                buffer.to_pil(),
                lang=self.options.language,
                config=f"--psm {self.options.psm}",
                output_type=Output.DICT,
                timeout=self.timeout_s,
            )
        except TesseractNotFoundError as e:
            raise EngineUnavailable(f"tesseract is not installed: {e}") from e
        except RuntimeError as e:
            # pytesseract сообщает о таймауте через RuntimeError
            if "timeout" in str(e).lower():
                raise EngineTimeout("ocr", self.timeout_s) from e
            raise

        lines: OrderedDict[tuple[int, int, int], list[str]] = OrderedDict()
        confidences = []
        for i, word in enumerate(data.get("text", [])):
            word = (word or "").strip()
            if not word:
                continue
            key = (data["block_num"][i], data["par_num"][i], data["line_num"][i])
            lines.setdefault(key, []).append(word)
            conf = float(data["conf"][i])
            if conf >= 0:
                confidences.append(conf)

        text = "\n".join(" ".join(words) for words in lines.values())
        confidence = sum(confidences) / len(confidences) / 100 if confidences else 0.0
        return text, confidence

    def extract(self, buffer: PixelBuffer) -> OcrExtraction:
        """Текст этикетки → серийный номер и модель."""
        text, confidence = self.read_text(self.prepare(buffer))
        logger.debug("OCR текст: %r (уверенность %.2f)", text, confidence)
        serial, model, defaulted = extract_printer_info(text, self.options.default_model)
        return OcrExtraction(
            text=text,
            serial_number=serial,
            model=model,
            confidence=confidence,
            model_defaulted=defaulted,
        )
