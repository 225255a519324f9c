"""
Pytest configuration and fixtures for recognition tests
"""
import io
import sys
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from label_grabber.buffer import PixelBuffer
from label_grabber.decoder import DecodeEngine, EngineRegistry
from label_grabber.models import EngineHit, EngineId

# Code 128: bar/space widths for values 0..106 (106 is the stop pattern)
CODE128_PATTERNS = [
    "212222", "222122", "222221", "121223", "121322", "131222", "122213", "122312", "132212", "221213",
    "221312", "231212", "112232", "122132", "122231", "113222", "123122", "123221", "223211", "221132",
    "221231", "213212", "223112", "312131", "311222", "321122", "321221", "312212", "322112", "322211",
    "212123", "212321", "232121", "111323", "131123", "131321", "112313", "132113", "132311", "211313",
    "231113", "231311", "112133", "112331", "132131", "113123", "113321", "133121", "313121", "211331",
    "231131", "213113", "213311", "213131", "311123", "311321", "331121", "312113", "312311", "332111",
    "314111", "221411", "431111", "111224", "111422", "121124", "121421", "141122", "141221", "112214",
    "112412", "122114", "122411", "142112", "142211", "241211", "221114", "413111", "241112", "134111",
    "111242", "121142", "121241", "114212", "124112", "124211", "411212", "421112", "421211", "212141",
    "214121", "412121", "111143", "111341", "131141", "114113", "114311", "411113", "411311", "113141",
    "114131", "311141", "411131", "211412", "211214", "211232", "2331112",
]
START_B = 104
STOP = 106


def code128_modules(text: str) -> list[int]:
    """Code 128 (set B) as a list of modules: 1 = bar, 0 = space."""
    values = [START_B] + [ord(ch) - 32 for ch in text]
    checksum = (START_B + sum(v * i for i, v in enumerate(values[1:], 1))) % 103
    values += [checksum, STOP]

    modules: list[int] = []
    for value in values:
        for i, width in enumerate(CODE128_PATTERNS[value]):
            modules.extend([1 - i % 2] * int(width))
    return modules


def paint_code128(
    text: str,
    module_px: int = 4,
    bar_height: int = 200,
    margin: int = 60,
    dark: int = 0,
    light: int = 255,
) -> np.ndarray:
    """Renders a Code 128 symbol as a grayscale uint8 array with a quiet zone."""
    modules = np.array(code128_modules(text), dtype=np.uint8)
    row = np.where(np.repeat(modules, module_px) == 1, dark, light).astype(np.uint8)
    bars = np.tile(row, (bar_height, 1))

    canvas = np.full((bar_height + 2 * margin, row.size + 2 * margin), light, dtype=np.uint8)
    canvas[margin : margin + bar_height, margin : margin + row.size] = bars
    return canvas


def to_png(array: np.ndarray) -> bytes:
    out = io.BytesIO()
    Image.fromarray(array).save(out, format="PNG")
    return out.getvalue()


class FakeEngine(DecodeEngine):
    """Scripted engine: `respond(buffer, call_index)` returns hits or raises."""

    def __init__(self, engine_id: EngineId, respond=None, timeout_key: str = "zxing"):
        self.engine_id = engine_id
        self.timeout_key = timeout_key
        self.respond = respond or (lambda buffer, call: [])
        self.calls: list[tuple[int, int]] = []

    def attempt_decode(self, buffer: PixelBuffer) -> list[EngineHit]:
        call = len(self.calls)
        self.calls.append((buffer.width, buffer.height))
        return self.respond(buffer, call)


def hits(*values: str, fmt: str = "CODE_128") -> list[EngineHit]:
    return [EngineHit(text=value, format=fmt) for value in values]


@pytest.fixture
def label_text():
    return "99J2037011108"


@pytest.fixture
def clean_label(label_text):
    """Clean, upright, high-contrast Code 128 label (grayscale array)."""
    return paint_code128(label_text)


@pytest.fixture
def clean_label_png(clean_label):
    return to_png(clean_label)


@pytest.fixture
def clean_buffer(clean_label):
    return PixelBuffer.from_array(clean_label)


@pytest.fixture
def blank_png():
    """Plain white frame."""
    return to_png(np.full((480, 640, 3), 255, dtype=np.uint8))


@pytest.fixture
def corrupt_bytes():
    return b"\x89PNG\r\n\x1a\nthis is not really an image"


@pytest.fixture
def rgba_buffer():
    rng = np.random.default_rng(42)
    return PixelBuffer.from_array(rng.integers(0, 256, size=(60, 90, 4), dtype=np.uint8))


@pytest.fixture
def make_registry():
    """Registry over fake engines; absent engines are simply not registered."""

    def _make(engines, timeouts=None):
        return EngineRegistry({engine.engine_id: engine for engine in engines}, timeouts=timeouts)

    return _make
