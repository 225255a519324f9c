"""
Tests for confidence scoring, deduplication and options
"""
import pytest

from label_grabber.config import DecodeOptions, EngineTimeouts
from label_grabber.models import DecodeCandidate, EngineId, RecognitionResult, VariantKind
from label_grabber.scoring import DEFAULT_CONFIDENCE_TABLE, ScoringPolicy


def candidate(value, confidence, fmt="CODE_128", engine=EngineId.ZXING, region="full"):
    return DecodeCandidate(
        value=value,
        format=fmt,
        source_engine=engine,
        region=region,
        region_index=0,
        variant=VariantKind.RAW,
        engine_confidence=confidence,
    )


class TestScoringPolicy:
    """Engine × variant confidence table"""

    def test_native_beats_thorough_library(self):
        policy = ScoringPolicy()
        for variant in VariantKind:
            assert policy.confidence(EngineId.NATIVE, variant) > policy.confidence(EngineId.ZXING, variant)

    def test_quick_mode_is_below_full_mode(self):
        policy = ScoringPolicy()
        for variant in VariantKind:
            assert policy.confidence(EngineId.ZBAR_QUICK, variant) < policy.confidence(EngineId.ZBAR_FULL, variant)

    def test_raw_is_most_trusted(self):
        policy = ScoringPolicy()
        for engine in EngineId:
            raw = policy.confidence(engine, VariantKind.RAW)
            assert raw >= policy.confidence(engine, VariantKind.CONTRAST) >= policy.confidence(engine, VariantKind.BINARIZED)

    def test_rotation_penalty(self):
        policy = ScoringPolicy()
        base = policy.confidence(EngineId.ZXING, VariantKind.RAW)
        assert policy.confidence(EngineId.ZXING, VariantKind.RAW, rotation=90) == pytest.approx(base - 0.02)
        assert policy.confidence(EngineId.ZXING, VariantKind.RAW, rotation=360) == base

    def test_unknown_pair_uses_default(self):
        policy = ScoringPolicy(table={}, default=0.4)
        assert policy.confidence(EngineId.DMTX, VariantKind.RAW) == 0.4

    def test_table_values_are_validated(self):
        with pytest.raises(ValueError):
            ScoringPolicy(table={(EngineId.NATIVE, VariantKind.RAW): 1.5})

    def test_table_covers_every_pair(self):
        assert len(DEFAULT_CONFIDENCE_TABLE) == len(EngineId) * len(VariantKind)


class TestDeduplication:
    """RecognitionResult merge rule"""

    def test_increasing_confidence_wins(self):
        result = RecognitionResult()
        for i, confidence in enumerate([0.5, 0.6, 0.7, 0.9]):
            result.add(candidate("SN1", confidence, region=f"r{i}"))
        assert len(result) == 1
        assert result.get("SN1").engine_confidence == 0.9
        assert result.get("SN1").region == "r3"

    def test_decreasing_confidence_never_downgrades(self):
        result = RecognitionResult()
        for i, confidence in enumerate([0.9, 0.7, 0.5]):
            result.add(candidate("SN1", confidence, region=f"r{i}"))
        assert result.get("SN1").engine_confidence == 0.9
        assert result.get("SN1").region == "r0"

    def test_equal_confidence_keeps_first(self):
        result = RecognitionResult()
        result.add(candidate("SN1", 0.8, engine=EngineId.ZXING))
        result.add(candidate("SN1", 0.8, engine=EngineId.ZBAR_FULL))
        assert result.get("SN1").source_engine is EngineId.ZXING

    def test_add_reports_new_values(self):
        result = RecognitionResult()
        assert result.add(candidate("A", 0.5))
        assert not result.add(candidate("A", 0.9))
        assert result.add(candidate("B", 0.5))
        assert result.distinct_count == 2

    def test_qr_and_barcode_are_distinct(self):
        result = RecognitionResult()
        result.add(candidate("X", 0.8))
        result.add(candidate("X", 0.7, fmt="QR_CODE"))
        assert len(result) == 2
        assert result.get("X", "qrcode").format == "QR_CODE"

    def test_ranked_by_confidence(self):
        result = RecognitionResult()
        result.add(candidate("LOW", 0.5))
        result.add(candidate("HIGH", 0.9))
        result.add(candidate("MID", 0.7))
        assert result.values == ["HIGH", "MID", "LOW"]
        assert [d["value"] for d in result.to_dicts()] == ["HIGH", "MID", "LOW"]

    def test_empty_result_is_falsy(self):
        assert not RecognitionResult()


class TestOptions:
    """Configuration validation"""

    def test_defaults(self):
        options = DecodeOptions()
        assert options.try_skew_correction
        assert options.try_multiple_rotations
        assert options.enhance_quality
        assert options.max_attempts == 100
        assert 4800 <= options.time_budget_ms <= 5000

    @pytest.mark.parametrize(
        "kwargs",
        [{"max_attempts": 0}, {"time_budget_ms": 0}, {"min_distinct_values": 0}, {"opening_radius": -1}],
    )
    def test_invalid_options(self, kwargs):
        with pytest.raises(ValueError):
            DecodeOptions(**kwargs)

    def test_timeouts_must_be_positive(self):
        with pytest.raises(ValueError):
            EngineTimeouts(zxing=0)
