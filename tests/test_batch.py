"""
Tests for export, batch processing and the command line
"""
from pathlib import Path

import numpy as np
import pandas as pd
import pytest

from label_grabber import cli, processor
from label_grabber.config import MAX_ATTEMPTS, QUALITY_GATE_SCORE
from label_grabber.exporter import COLUMNS, append_results, export_results, load_progress, results_to_frame
from label_grabber.models import (
    DecodeCandidate,
    EngineId,
    OcrExtraction,
    ProcessingResult,
    RecognitionResult,
    SessionStats,
    Status,
    VariantKind,
)

from conftest import to_png


def ok(filename, value="SN1"):
    return ProcessingResult(filename=filename, value=value, format="CODE_128", confidence=0.9, engine="zxing")


class TestExporter:
    """CSV/XLSX export"""

    def test_append_csv_writes_header_once(self, tmp_path):
        output = tmp_path / "out" / "results.csv"
        append_results([ok("a.jpg")], output)
        append_results([ok("b.jpg"), ProcessingResult(filename="c.jpg", status=Status.NOT_FOUND)], output)

        df = pd.read_csv(output)
        assert list(df.columns) == list(COLUMNS.values())
        assert df[COLUMNS["filename"]].tolist() == ["a.jpg", "b.jpg", "c.jpg"]
        assert df[COLUMNS["status"]].tolist() == ["OK", "OK", "НЕ НАЙДЕН"]

    def test_progress_sidecar(self, tmp_path):
        output = tmp_path / "results.csv"
        append_results([ok("a.jpg"), ok("a.jpg", "PN2"), ok("b.jpg")], output)
        assert load_progress(output) == {"a.jpg", "b.jpg"}

    def test_progress_from_result_file(self, tmp_path):
        output = tmp_path / "results.csv"
        results_to_frame([ok("x.jpg")]).to_csv(output, index=False)
        assert load_progress(output) == {"x.jpg"}

    def test_no_progress(self, tmp_path):
        assert load_progress(tmp_path / "missing.csv") == set()

    def test_excel_export_and_append(self, tmp_path):
        pytest.importorskip("openpyxl")
        output = tmp_path / "results.xlsx"
        export_results([ok("a.jpg")], output)
        append_results([ok("b.jpg")], output)

        df = pd.read_excel(output, engine="openpyxl")
        assert df[COLUMNS["filename"]].tolist() == ["a.jpg", "b.jpg"]

    def test_export_starts_a_new_file(self, tmp_path):
        output = tmp_path / "results.csv"
        append_results([ok("old.jpg")], output)
        export_results([ok("new.jpg")], output)

        assert pd.read_csv(output)[COLUMNS["filename"]].tolist() == ["new.jpg"]
        assert load_progress(output) == {"new.jpg"}

    def test_control_characters_are_escaped(self):
        df = results_to_frame([ok("a.jpg", "01\x1d21\x01")])
        assert df[COLUMNS["value"]].iloc[0] == "01<GS>21\\x01"


def candidate(value, confidence=0.9):
    return DecodeCandidate(
        value=value,
        format="CODE_128",
        source_engine=EngineId.NATIVE,
        region="full",
        region_index=0,
        variant=VariantKind.RAW,
        engine_confidence=confidence,
    )


class TestResultsForFile:
    """Recognition result → report rows"""

    def test_codes_with_arbitration(self):
        result = RecognitionResult()
        result.add(candidate("99J2037011108", 0.9))
        result.add(candidate("P1037974-004", 0.88))

        rows = processor.results_for_file("label.jpg", result)

        assert [r.value for r in rows] == ["99J2037011108", "P1037974-004"]
        assert all(r.serial_number == "99j2037011108" for r in rows)
        assert all(r.part_number == "p1037974-004" for r in rows)
        assert rows[0].engine == "native"

    def test_ocr_row(self):
        result = RecognitionResult(ocr=OcrExtraction("S/N S123456789", "S123456789", "ZT411", 0.8, True))
        (row,) = processor.results_for_file("label.jpg", result)
        assert row.source == "ocr"
        assert row.serial_number == "S123456789"
        assert row.model == "ZT411"
        assert row.status == Status.OK

    def test_not_found(self):
        (row,) = processor.results_for_file("label.jpg", RecognitionResult())
        assert row.status == Status.NOT_FOUND


@pytest.fixture
def photo_dir(tmp_path):
    folder = tmp_path / "photos"
    folder.mkdir()
    image = to_png(np.full((20, 20), 255, dtype=np.uint8))
    for name in ("b.png", "a.jpg", "c.PNG"):
        (folder / name).write_bytes(image)
    (folder / "notes.txt").write_text("not an image")
    return folder


class TestRun:
    """Batch run"""

    def test_find_images(self, photo_dir):
        assert [p.name for p in processor.find_images(photo_dir)] == ["a.jpg", "b.png", "c.PNG"]
        assert processor.find_images(photo_dir / "a.jpg") == [photo_dir / "a.jpg"]

    def test_run_and_resume(self, photo_dir, tmp_path, monkeypatch):
        seen = []

        def fake_recognize(path_str, options, ocr_options):
            name = path_str.rsplit("/", 1)[-1]
            seen.append(name)
            if name == "b.png":
                return [ProcessingResult(filename=name, status=Status.NOT_FOUND)]
            if name == "c.PNG":
                return [ProcessingResult(filename=name, status=Status.ERROR, error_message="boom")]
            return [ok(name)]

        monkeypatch.setattr(processor, "_recognize_single_file", fake_recognize)
        output = tmp_path / "results.csv"

        stats = processor.run(photo_dir, output, file_limit=2)
        assert seen == ["a.jpg", "b.png"]
        assert stats.files_processed == 2
        assert stats.total_codes == 1
        assert stats.files_empty == 1

        stats = processor.run(photo_dir, output, resume=True)
        assert seen[2:] == ["c.PNG"]
        assert stats.resumed_from == 2
        assert stats.files_with_errors == 1
        assert stats.errors == ["c.PNG: boom"]
        assert len(pd.read_csv(output)) == 3

    def test_run_without_resume_starts_over(self, photo_dir, tmp_path, monkeypatch):
        monkeypatch.setattr(
            processor, "_recognize_single_file", lambda path_str, options, ocr_options: [ok(Path(path_str).name)]
        )
        output = tmp_path / "results.csv"

        processor.run(photo_dir, output)
        processor.run(photo_dir, output)

        assert pd.read_csv(output)[COLUMNS["filename"]].tolist() == ["a.jpg", "b.png", "c.PNG"]
        assert load_progress(output) == {"a.jpg", "b.png", "c.PNG"}

    def test_unreadable_image_is_an_error_row(self, tmp_path):
        broken = tmp_path / "broken.jpg"
        broken.write_bytes(b"garbage")
        (row,) = processor._recognize_single_file(str(broken), processor.DecodeOptions(), processor.OcrOptions())
        assert row.status == Status.ERROR

    def test_success_rate(self):
        stats = SessionStats(files_processed=4, files_empty=1, files_with_errors=1)
        assert stats.success_rate == 50.0


class TestCli:
    """Command line"""

    def test_defaults(self):
        args = cli.parse_args([])
        options, ocr_options = cli.build_options(args)
        assert options.try_skew_correction and options.try_multiple_rotations
        assert options.max_attempts == MAX_ATTEMPTS
        assert ocr_options.default_model == "ZT411"

    def test_flags(self):
        args = cli.parse_args(
            ["--no-skew", "--no-rotations", "--no-enhance", "--no-parallel", "--no-ocr", "--default-model", "", "--max-attempts", "10"]
        )
        options, ocr_options = cli.build_options(args)
        assert not options.try_skew_correction
        assert not options.try_multiple_rotations
        assert not options.enhance_quality
        assert not options.use_parallel_decoding
        assert not options.ocr_fallback
        assert options.max_attempts == 10
        assert ocr_options.default_model is None

    def test_quality_gate_flag(self):
        options, _ = cli.build_options(cli.parse_args(["--quality-gate", "0"]))
        assert options.quality_gate_score == 0
        defaults, _ = cli.build_options(cli.parse_args([]))
        assert defaults.quality_gate_score == QUALITY_GATE_SCORE

    def test_invalid_quality_gate(self, tmp_path):
        assert cli.main(["-i", str(tmp_path), "--quality-gate", "150"]) == 1

    def test_errors_table(self):
        errors = [f"f{i}.jpg: boom {i}" for i in range(25)]
        table = cli.build_errors_table(errors)
        assert table.row_count == cli.MAX_ERRORS_SHOWN + 1
        assert cli.build_errors_table(["only.jpg: bad"]).row_count == 1

    def test_invalid_budget(self, tmp_path):
        assert cli.main(["-i", str(tmp_path), "--time-budget", "0"]) == 1

    def test_missing_input(self, tmp_path):
        assert cli.main(["-i", str(tmp_path / "nope")]) == 1

    def test_engines(self):
        assert cli.main(["--engines"]) == 0

    def test_quality_mode(self, photo_dir):
        assert cli.main(["-i", str(photo_dir), "--quality"]) == 0

    def test_format_elapsed(self):
        assert cli.format_elapsed(5) == "5.0 сек"
        assert cli.format_elapsed(125) == "2 мин 5 сек"
        assert cli.format_elapsed(3780) == "1 ч 3 мин"
