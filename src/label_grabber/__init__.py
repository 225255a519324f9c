"""Label Grabber — распознавание штрихкодов и QR-кодов на фотографиях этикеток."""

__version__ = "1.0.0"

from .buffer import PixelBuffer, decode, encode
from .config import DecodeOptions, EngineTimeouts, OcrOptions
from .errors import DecodeError, EngineTimeout, EngineUnavailable, LabelGrabberError
from .models import DecodeCandidate, QualityReport, RecognitionResult
from .recognizer import Recognizer, assess_quality, recognize, recognize_sync

__all__ = [
    "DecodeCandidate",
    "DecodeError",
    "DecodeOptions",
    "EngineTimeout",
    "EngineTimeouts",
    "EngineUnavailable",
    "LabelGrabberError",
    "OcrOptions",
    "PixelBuffer",
    "QualityReport",
    "RecognitionResult",
    "Recognizer",
    "__version__",
    "assess_quality",
    "decode",
    "encode",
    "recognize",
    "recognize_sync",
]
