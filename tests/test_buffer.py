"""
Tests for the pixel buffer adapter
"""
import io

import numpy as np
import pytest
from PIL import Image

from label_grabber.buffer import Layout, PixelBuffer, decode, encode
from label_grabber.errors import DecodeError


class TestDecode:
    """Decoding image bytes"""

    def test_png_decodes_to_rgba(self, clean_label_png, clean_label):
        buffer = decode(clean_label_png)

        assert buffer.layout is Layout.RGBA
        assert (buffer.height, buffer.width) == clean_label.shape
        assert len(buffer.data) == buffer.width * buffer.height * buffer.channels
        assert np.array_equal(buffer.to_gray_array(), clean_label)

    def test_empty_bytes(self):
        with pytest.raises(DecodeError):
            decode(b"")

    def test_corrupt_bytes(self, corrupt_bytes):
        with pytest.raises(DecodeError):
            decode(corrupt_bytes)

    def test_text_is_not_an_image(self):
        with pytest.raises(DecodeError):
            decode(b"hello world")


class TestEncode:
    """Encoding buffers back to bytes"""

    @pytest.mark.parametrize("fmt", ["jpeg", "png", "webp", "bmp"])
    def test_encode_keeps_dimensions(self, rgba_buffer, fmt):
        data = encode(rgba_buffer, fmt, quality=0.8)
        with Image.open(io.BytesIO(data)) as image:
            assert image.size == (rgba_buffer.width, rgba_buffer.height)

    def test_png_is_lossless(self, clean_buffer):
        restored = decode(encode(clean_buffer, "png"))
        assert np.array_equal(restored.to_gray_array(), clean_buffer.to_gray_array())

    def test_invalid_quality(self, rgba_buffer):
        with pytest.raises(ValueError):
            encode(rgba_buffer, "jpeg", quality=1.5)

    def test_unknown_format(self, rgba_buffer):
        with pytest.raises(ValueError):
            encode(rgba_buffer, "gif")


class TestPixelBuffer:
    """Buffer invariants"""

    def test_pixels_are_read_only(self, rgba_buffer):
        with pytest.raises(ValueError):
            rgba_buffer.pixels[0, 0, 0] = 1

    def test_from_array_copies(self):
        source = np.zeros((4, 5), dtype=np.uint8)
        buffer = PixelBuffer.from_array(source)
        source[:] = 200
        assert buffer.to_gray_array().max() == 0

    def test_rgb_gets_opaque_alpha(self):
        buffer = PixelBuffer.from_array(np.zeros((3, 3, 3), dtype=np.uint8))
        assert buffer.layout is Layout.RGBA
        assert buffer.pixels[:, :, 3].min() == 255

    def test_gray_copy_is_writable(self, clean_buffer):
        gray = clean_buffer.to_gray_array()
        gray[0, 0] = 7
        assert clean_buffer.pixels[0, 0, 0] == 255

    def test_luminance_weights(self):
        buffer = PixelBuffer.from_array(np.array([[[255, 0, 0], [0, 255, 0], [0, 0, 255]]], dtype=np.uint8))
        assert np.allclose(buffer.luminance()[0], [0.299 * 255, 0.587 * 255, 0.114 * 255], atol=0.01)

    def test_channel_mismatch(self):
        with pytest.raises(ValueError):
            PixelBuffer(np.zeros((2, 2, 3), dtype=np.uint8), Layout.RGBA)

    def test_to_luma(self, rgba_buffer):
        luma = rgba_buffer.to_luma()
        assert luma.layout is Layout.LUMA
        assert luma.channels == 1
        assert len(luma.data) == rgba_buffer.width * rgba_buffer.height
