"""
Tests for OCR field extraction and serial/part arbitration
"""
import numpy as np
import pytest
from pytesseract import TesseractNotFoundError

from label_grabber import ocr as ocr_module
from label_grabber.buffer import PixelBuffer
from label_grabber.config import OcrOptions
from label_grabber.errors import EngineTimeout, EngineUnavailable
from label_grabber.models import DecodeCandidate, EngineId, VariantKind
from label_grabber.ocr import TesseractReader
from label_grabber.parser import (
    PART,
    SERIAL,
    arbitrate,
    extract_printer_info,
    extract_serial_and_part,
    is_likely_part,
    is_likely_serial,
    normalize_numeric_heavy,
    sanitize_text,
)


def candidate(value, confidence=0.9):
    return DecodeCandidate(
        value=value,
        format="CODE_128",
        source_engine=EngineId.ZXING,
        region="full",
        region_index=0,
        variant=VariantKind.RAW,
        engine_confidence=confidence,
    )


class TestPrinterInfo:
    """Regex extraction from OCR text"""

    def test_explicit_serial_label(self):
        serial, model, defaulted = extract_printer_info("Model: ZT411\nS/N: 99J203701110")
        assert serial == "99J203701110"
        assert model == "ZT411"
        assert not defaulted

    def test_serial_number_label(self):
        serial, _, _ = extract_printer_info("Serial Number: abcd1234")
        assert serial == "ABCD1234"

    def test_serial_no_label(self):
        serial, _, _ = extract_printer_info("Serial No. 77X1234567")
        assert serial == "77X1234567"

    def test_fixed_length_run_before_prefixed_run(self):
        serial, _, _ = extract_printer_info("TEST123456 s123456789")
        assert serial == "S123456789"

    def test_prefixed_run(self):
        serial, _, _ = extract_printer_info("printer TEST123456 ready")
        assert serial == "TEST123456"

    def test_generic_token(self):
        serial, _, _ = extract_printer_info("lot 4F7K29QX2")
        assert serial == "4F7K29QX2"

    def test_spaced_model(self):
        _, model, _ = extract_printer_info("Type ZT 4 2 1")
        assert model == "ZT421"

    def test_default_model(self):
        serial, model, defaulted = extract_printer_info("nothing useful", default_model="ZT411")
        assert serial == ""
        assert model == "ZT411"
        assert defaulted

    def test_default_model_disabled(self):
        _, model, defaulted = extract_printer_info("nothing useful", default_model=None)
        assert model == ""
        assert not defaulted


class TestShapes:
    """Serial/part heuristics"""

    def test_sanitize(self):
        assert sanitize_text("  AB_12 34 ") == "ab-1234"

    def test_numeric_heavy(self):
        assert normalize_numeric_heavy("OIlZS") == "01125"

    @pytest.mark.parametrize("value", ["99j2037011108", "123456789012", "s12345678901"])
    def test_serial_like(self, value):
        assert is_likely_serial(value)

    @pytest.mark.parametrize("value", ["abc123", "ab-1234567890", "abcdef123456"])
    def test_not_serial_like(self, value):
        assert not is_likely_serial(value)

    @pytest.mark.parametrize("value", ["p1037974-004", "zt411-12-ab", "ab-cd-12"])
    def test_part_like(self, value):
        assert is_likely_part(value)

    @pytest.mark.parametrize("value", ["p1037974004", "a-b-c-d-e12", "ab-cd-ef-gh"])
    def test_not_part_like(self, value):
        assert not is_likely_part(value)


class TestArbitration:
    """Choosing serial and part numbers among decoded values"""

    def test_serial_and_part(self):
        picked = extract_serial_and_part([candidate("99J2037011108"), candidate("P1037974-004")])
        assert picked.serial_number == "99j2037011108"
        assert picked.part_number == "p1037974-004"

    def test_lookalike_letters_in_serial(self):
        decision = arbitrate([candidate("99J2O37O111O8")], SERIAL)
        assert decision is not None
        assert decision.value == "99j2037011108"

    def test_votes_merge_normalized_duplicates(self):
        decision = arbitrate([candidate("P1037974-004"), candidate("p1037974_004")], PART)
        assert decision.votes == 2

    def test_low_confidence_is_rejected(self):
        assert arbitrate([candidate("P1037974-004", confidence=0.1)], PART) is None

    def test_nothing_matches(self):
        picked = extract_serial_and_part([candidate("HELLO")])
        assert picked.serial_number == ""
        assert picked.part_number == ""

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            arbitrate([], "model")


@pytest.fixture
def label_buffer():
    return PixelBuffer.from_array(np.full((40, 120), 230, dtype=np.uint8))


class TestTesseractReader:
    """pytesseract wrapper"""

    def test_reads_lines_and_confidence(self, monkeypatch, label_buffer):
        data = {
            "text": ["Model:", "ZT411", "", "S/N:", "99J203701110"],
            "conf": [90, 80, -1, 70, 60],
            "block_num": [1, 1, 1, 1, 1],
            "par_num": [1, 1, 1, 1, 1],
            "line_num": [1, 1, 1, 2, 2],
        }
        seen = {}

        def fake_image_to_data(image, **kwargs):
            seen.update(kwargs)
            return data

        monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", fake_image_to_data)
        reader = TesseractReader(OcrOptions(psm=4), timeout_s=2.0)

        extraction = reader.extract(label_buffer)

        assert extraction.text == "Model: ZT411\nS/N: 99J203701110"
        assert extraction.serial_number == "99J203701110"
        assert extraction.model == "ZT411"
        assert extraction.confidence == pytest.approx(0.75)
        assert seen["config"] == "--psm 4"
        assert seen["timeout"] == 2.0

    def test_missing_tesseract(self, monkeypatch, label_buffer):
        def missing(image, **kwargs):
            raise TesseractNotFoundError()

        monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", missing)
        with pytest.raises(EngineUnavailable):
            TesseractReader().read_text(label_buffer)

    def test_timeout(self, monkeypatch, label_buffer):
        def slow(image, **kwargs):
            raise RuntimeError("Tesseract process timeout")

        monkeypatch.setattr(ocr_module.pytesseract, "image_to_data", slow)
        with pytest.raises(EngineTimeout):
            TesseractReader().read_text(label_buffer)

    def test_prepare_is_binary(self, label_buffer):
        prepared = TesseractReader().prepare(label_buffer)
        assert prepared.channels == 1
        assert set(np.unique(prepared.to_gray_array())) <= {0, 255}
