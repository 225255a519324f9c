"""Экспорт результатов в CSV/Excel и учёт прогресса для resume."""

import re
from pathlib import Path

import pandas as pd

from .models import ProcessingResult, Status

_ILLEGAL_CONTROL_CHARS_RE = re.compile(r"[\x00-\x08\x0B-\x0C\x0E-\x1F]")
_PROGRESS_SUFFIX = ".progress.csv"

COLUMNS = {
    "filename": "Файл",
    "value": "Значение",
    "format": "Формат",
    "confidence": "Уверенность",
    "region": "Область",
    "engine": "Движок",
    "serial_number": "Серийный номер",
    "part_number": "Партномер",
    "model": "Модель",
    "source": "Источник",
    "status": "Статус",
    "error_message": "Ошибка",
}
EXCEL_SUFFIXES = {".xlsx", ".xlsm"}


def _sanitize_string(value: str) -> str:
    """Экранирует управляющие символы, которые Excel не принимает."""

    def _replace(match: re.Match[str]) -> str:
        ch = match.group(0)
        if ch == "\x1d":
            return "<GS>"
        return f"\\x{ord(ch):02x}"

    return _ILLEGAL_CONTROL_CHARS_RE.sub(_replace, value)


def _sanitize_value(value: object) -> object:
    if isinstance(value, Status):
        return value.value
    if isinstance(value, str):
        return _sanitize_string(value)
    return value


def results_to_frame(results: list[ProcessingResult]) -> pd.DataFrame:
    """Строит таблицу с русскими заголовками, по строке на результат."""
    rows = [
        {header: _sanitize_value(getattr(result, attr)) for attr, header in COLUMNS.items()}
        for result in results
    ]
    return pd.DataFrame(rows, columns=list(COLUMNS.values()))


def _is_excel(output_path: Path) -> bool:
    return output_path.suffix.lower() in EXCEL_SUFFIXES


def _get_progress_path(output_path: Path) -> Path:
    """Путь к служебному файлу прогресса рядом с результатом."""
    return output_path.with_suffix(f"{output_path.suffix}{_PROGRESS_SUFFIX}")


def _append_progress(results: list[ProcessingResult], output_path: Path) -> None:
    """Дописывает обработанные файлы в sidecar для resume."""
    done = sorted({result.filename for result in results})
    if not done:
        return

    progress_path = _get_progress_path(output_path)
    pd.DataFrame({"filename": done}).to_csv(
        str(progress_path),
        index=False,
        mode="a",
        header=not progress_path.exists(),
    )


def export_results(results: list[ProcessingResult], output_path: Path) -> Path:
    """Записывает результаты в новый файл (CSV или XLSX по расширению).

    Существующий файл и его прогресс перезаписываются.

    Args:
        results: Результаты обработки.
        output_path: Путь для сохранения.

    Returns:
        Path — путь к созданному файлу.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)
    _get_progress_path(output_path).unlink(missing_ok=True)
    df = results_to_frame(results)
    if _is_excel(output_path):
        df.to_excel(str(output_path), index=False, engine="openpyxl")
    else:
        df.to_csv(str(output_path), index=False)
    _append_progress(results, output_path)
    return output_path


def append_results(results: list[ProcessingResult], output_path: Path) -> None:
    """Дописывает результаты к существующему файлу (или создаёт его).

    CSV дописывается в конец, Excel читается целиком и перезаписывается.
    """
    if not results:
        return

    output_path.parent.mkdir(parents=True, exist_ok=True)
    new_df = results_to_frame(results)

    if _is_excel(output_path):
        if output_path.exists():
            existing_df = pd.read_excel(str(output_path), engine="openpyxl", dtype="string")
            new_df = pd.concat([existing_df, new_df.astype("string")], ignore_index=True)
        new_df.to_excel(str(output_path), index=False, engine="openpyxl")
    else:
        new_df.to_csv(
            str(output_path),
            index=False,
            mode="a",
            header=not output_path.exists(),
        )

    _append_progress(results, output_path)


def load_progress(output_path: Path) -> set[str]:
    """Загружает имена уже обработанных файлов.

    Сначала читает sidecar-файл прогресса, если его нет — столбец «Файл»
    самого результата.

    Returns:
        Множество имён файлов.
    """
    progress_path = _get_progress_path(output_path)
    if progress_path.exists():
        try:
            progress_df = pd.read_csv(str(progress_path), dtype=str)
            return set(progress_df["filename"].dropna())
        except (OSError, ValueError, KeyError, pd.errors.ParserError):
            return set()

    if not output_path.exists():
        return set()

    try:
        if _is_excel(output_path):
            df = pd.read_excel(str(output_path), engine="openpyxl", dtype="string")
        else:
            df = pd.read_csv(str(output_path), dtype=str)
    except (OSError, ValueError, pd.errors.ParserError):
        return set()
    if COLUMNS["filename"] not in df.columns:
        return set()
    return set(df[COLUMNS["filename"]].dropna())
