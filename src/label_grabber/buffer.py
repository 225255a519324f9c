"""Пиксельный буфер: декодирование байтов изображения и обратное кодирование.

Буфер неизменяем: массив помечен только для чтения, все операции
возвращают новый буфер. Поэтому один буфер можно безопасно отдавать
нескольким движкам одновременно.
"""

import io
from dataclasses import dataclass
from enum import Enum

import numpy as np
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError

# Коэффициенты яркости (ITU-R BT.601)
LUMA_WEIGHTS = (0.299, 0.587, 0.114)

_PIL_FORMATS = {"jpeg": "JPEG", "jpg": "JPEG", "png": "PNG", "webp": "WEBP", "bmp": "BMP"}


class Layout(str, Enum):
    """Раскладка каналов."""

    RGBA = "RGBA"
    LUMA = "L"

    @property
    def channels(self) -> int:
        return 4 if self is Layout.RGBA else 1


@dataclass(frozen=True, eq=False)
class PixelBuffer:
    """Изображение width×height с раскладкой RGBA8 или одноканальной яркостью."""

    pixels: np.ndarray
    layout: Layout

    def __post_init__(self) -> None:
        if self.pixels.dtype != np.uint8 or self.pixels.ndim != 3:
            raise ValueError("pixels must be a uint8 array of shape (h, w, c)")
        if self.pixels.shape[2] != self.layout.channels:
            raise ValueError(
                f"{self.layout.value} expects {self.layout.channels} channels, "
                f"got {self.pixels.shape[2]}"
            )
        if self.pixels.shape[0] < 1 or self.pixels.shape[1] < 1:
            raise ValueError("buffer dimensions must be >= 1")
        if self.pixels.flags.writeable:
            self.pixels.setflags(write=False)

    @classmethod
    def from_array(cls, array: np.ndarray) -> "PixelBuffer":
        """Создаёт буфер из массива (h, w), (h, w, 1), (h, w, 3) или (h, w, 4).

        Массив всегда копируется — вызывающий код может дальше менять свой.
        """
        arr = np.asarray(array)
        if arr.dtype != np.uint8:
            arr = np.clip(arr, 0, 255).astype(np.uint8)
        if arr.ndim == 2:
            return cls(np.ascontiguousarray(arr[:, :, None]).copy(), Layout.LUMA)
        if arr.ndim == 3 and arr.shape[2] == 1:
            return cls(np.ascontiguousarray(arr).copy(), Layout.LUMA)
        if arr.ndim == 3 and arr.shape[2] == 3:
            alpha = np.full(arr.shape[:2] + (1,), 255, dtype=np.uint8)
            return cls(np.concatenate([arr, alpha], axis=2), Layout.RGBA)
        if arr.ndim == 3 and arr.shape[2] == 4:
            return cls(np.ascontiguousarray(arr).copy(), Layout.RGBA)
        raise ValueError(f"Unsupported array shape: {arr.shape}")

    @property
    def width(self) -> int:
        return int(self.pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self.pixels.shape[0])

    @property
    def channels(self) -> int:
        return int(self.pixels.shape[2])

    @property
    def data(self) -> bytes:
        """Сырые байты, длина ровно width * height * channels."""
        return self.pixels.tobytes()

    @property
    def max_dimension(self) -> int:
        return max(self.width, self.height)

    def luminance(self) -> np.ndarray:
        """Яркость как float32 (h, w)."""
        if self.layout is Layout.LUMA:
            return self.pixels[:, :, 0].astype(np.float32)
        rgb = self.pixels[:, :, :3].astype(np.float32)
        r, g, b = LUMA_WEIGHTS
        return rgb[:, :, 0] * r + rgb[:, :, 1] * g + rgb[:, :, 2] * b

    def to_gray_array(self) -> np.ndarray:
        """Собственная (записываемая) копия яркости uint8 (h, w)."""
        if self.layout is Layout.LUMA:
            return self.pixels[:, :, 0].copy()
        return np.clip(np.rint(self.luminance()), 0, 255).astype(np.uint8)

    def to_luma(self) -> "PixelBuffer":
        if self.layout is Layout.LUMA:
            return self
        return PixelBuffer(self.to_gray_array()[:, :, None], Layout.LUMA)

    def to_pil(self) -> Image.Image:
        if self.layout is Layout.LUMA:
            return Image.fromarray(self.to_gray_array())
        return Image.fromarray(self.pixels.copy())

    def with_pixels(self, pixels: np.ndarray) -> "PixelBuffer":
        """Новый буфер той же раскладки с другими пикселями."""
        return PixelBuffer(np.ascontiguousarray(pixels), self.layout)


def decode(data: bytes) -> PixelBuffer:
    """Декодирует байты изображения в RGBA-буфер.

    Args:
        data: Закодированное изображение (JPEG, PNG, WEBP, ...).

    Returns:
        PixelBuffer с раскладкой RGBA.

    Raises:
        DecodeError: Байты не являются изображением или размеры нулевые.
    """
    if not data:
        raise DecodeError("Пустые данные изображения")
    try:
        with Image.open(io.BytesIO(data)) as image:
            image.load()
            rgba = image.convert("RGBA")
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"Не удалось декодировать изображение: {e}") from e

    if rgba.width == 0 or rgba.height == 0:
        raise DecodeError("Изображение имеет нулевой размер")

    return PixelBuffer(np.array(rgba, dtype=np.uint8), Layout.RGBA)


def encode(buffer: PixelBuffer, format: str = "jpeg", quality: float = 0.9) -> bytes:
    """Кодирует буфер обратно в байты изображения.

    Args:
        buffer: Исходный буфер (не изменяется).
        format: jpeg, png, webp или bmp.
        quality: Качество сжатия 0.0–1.0 (для форматов с потерями).

    Returns:
        Закодированные байты.
    """
    pil_format = _PIL_FORMATS.get(format.lower())
    if pil_format is None:
        raise ValueError(f"Unsupported output format: {format}")
    if not 0.0 <= quality <= 1.0:
        raise ValueError("quality must be within [0.0, 1.0]")

    image = buffer.to_pil()
    # JPEG не хранит альфа-канал
    if pil_format == "JPEG" and image.mode == "RGBA":
        image = image.convert("RGB")

    out = io.BytesIO()
    params = {}
    if pil_format in ("JPEG", "WEBP"):
        params["quality"] = max(1, int(round(quality * 100)))
    image.save(out, format=pil_format, **params)
    return out.getvalue()
