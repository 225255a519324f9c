"""Пакетная обработка фотографий этикеток.

Поддерживает:
- Параллельное распознавание файлов (multiprocessing)
- Инкрементальную запись результата каждые N файлов
- Возобновление после прерывания (resume)
- Корректное завершение по Ctrl+C с сохранением прогресса
"""

import logging
import signal
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path

from rich.progress import (
    BarColumn,
    MofNCompleteColumn,
    Progress,
    SpinnerColumn,
    TaskProgressColumn,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
)

from .config import DecodeOptions, OcrOptions
from .errors import DecodeError
from .exporter import append_results, export_results, load_progress
from .models import ProcessingResult, RecognitionResult, SessionStats, Status
from .parser import extract_serial_and_part
from .recognizer import Recognizer

logger = logging.getLogger(__name__)

# Каждые SAVE_EVERY результатов дописываются в файл
SAVE_EVERY = 50
IMAGE_SUFFIXES = {".jpg", ".jpeg", ".png", ".webp", ".bmp", ".tif", ".tiff"}


def find_images(input_path: Path) -> list[Path]:
    """Файл изображения или все изображения в директории (по имени)."""
    if input_path.is_file():
        return [input_path] if input_path.suffix.lower() in IMAGE_SUFFIXES else []
    return sorted(p for p in input_path.iterdir() if p.is_file() and p.suffix.lower() in IMAGE_SUFFIXES)


def results_for_file(filename: str, result: RecognitionResult) -> list[ProcessingResult]:
    """Превращает результат распознавания в строки отчёта.

    По строке на каждое найденное значение; серийный номер и партномер
    выбираются арбитражем по всем значениям файла. Если штрихкодов нет,
    но сработал OCR — одна строка с источником «ocr».
    """
    if result:
        picked = extract_serial_and_part(result.ranked())
        return [
            ProcessingResult(
                filename=filename,
                value=candidate.value,
                format=candidate.format,
                confidence=round(candidate.engine_confidence, 4),
                region=candidate.region,
                engine=candidate.source_engine.value,
                serial_number=picked.serial_number or None,
                part_number=picked.part_number or None,
            )
            for candidate in result.ranked()
        ]

    ocr = result.ocr
    if ocr is not None and ocr.serial_number:
        return [
            ProcessingResult(
                filename=filename,
                value=ocr.serial_number,
                confidence=round(ocr.confidence, 4),
                engine="tesseract",
                serial_number=ocr.serial_number,
                model=ocr.model or None,
                source="ocr",
            )
        ]

    return [ProcessingResult(filename=filename, status=Status.NOT_FOUND)]


def _recognize_single_file(
    path_str: str,
    options: DecodeOptions,
    ocr_options: OcrOptions,
) -> list[ProcessingResult]:
    """Обработка одного файла (в том числе в отдельном процессе).

    Args:
        path_str: Путь к изображению (строка — для pickle-совместимости).
        options: Настройки распознавания.
        ocr_options: Настройки OCR.

    Returns:
        Список ProcessingResult для этого файла.
    """
    path = Path(path_str)
    try:
        data = path.read_bytes()
        with Recognizer(options, ocr_options=ocr_options) as recognizer:
            result = recognizer.recognize_sync(data)
        return results_for_file(path.name, result)
    except DecodeError as e:
        return [ProcessingResult(filename=path.name, status=Status.ERROR, error_message=str(e))]
    except Exception as e:
        logger.exception("Ошибка обработки %s", path.name)
        return [ProcessingResult(filename=path.name, status=Status.ERROR, error_message=str(e))]


def _count(session: SessionStats, results: list[ProcessingResult]) -> None:
    for r in results:
        if r.status == Status.OK:
            session.total_codes += 1
            if r.source == "ocr":
                session.ocr_fallbacks += 1
        elif r.status == Status.NOT_FOUND:
            session.files_empty += 1
        elif r.status == Status.ERROR:
            session.files_with_errors += 1
            session.errors.append(f"{r.filename}: {r.error_message}")
    session.files_processed += 1


def run(
    input_path: Path,
    output_path: Path,
    options: DecodeOptions | None = None,
    ocr_options: OcrOptions | None = None,
    file_limit: int | None = None,
    workers: int = 1,
    resume: bool = False,
) -> SessionStats:
    """Запускает пакетное распознавание.

    Args:
        input_path: Директория с фотографиями или один файл.
        output_path: Путь для результата (CSV или XLSX).
        options: Настройки распознавания.
        ocr_options: Настройки OCR.
        file_limit: Макс. кол-во файлов (None = все).
        workers: Количество параллельных процессов (1 = последовательно).
        resume: Продолжить с места прерывания. Без resume существующий
            результат перезаписывается первой же записью.

    Returns:
        SessionStats — общая статистика сессии.
    """
    options = options or DecodeOptions()
    ocr_options = ocr_options or OcrOptions()

    images = find_images(input_path)
    session = SessionStats(total_files=len(images))
    if not images:
        return session

    # --- Resume: пропускаем уже обработанные файлы ---
    if resume:
        done_files = load_progress(output_path)
        queue = [p for p in images if p.name not in done_files]
        session.resumed_from = len(images) - len(queue)
    else:
        queue = images

    if file_limit is not None:
        queue = queue[:file_limit]
    if not queue:
        return session

    buffer: list[ProcessingResult] = []
    interrupted = False
    # Без resume первая запись начинает файл заново
    overwrite = not resume

    def _flush_buffer() -> None:
        nonlocal buffer, overwrite
        if not buffer:
            return
        if overwrite:
            export_results(buffer, output_path)
            overwrite = False
        else:
            append_results(buffer, output_path)
        buffer = []

    progress = Progress(
        SpinnerColumn(),
        TextColumn("[bold blue]{task.description}"),
        BarColumn(bar_width=40),
        TaskProgressColumn(),
        MofNCompleteColumn(),
        TimeElapsedColumn(),
        TimeRemainingColumn(),
        expand=False,
    )

    with progress:
        file_task = progress.add_task("Файлы", total=len(queue))

        if workers <= 1:
            # === Последовательный режим ===
            try:
                for path in queue:
                    results = _recognize_single_file(str(path), options, ocr_options)
                    _count(session, results)
                    buffer.extend(results)
                    progress.advance(file_task)
                    if len(buffer) >= SAVE_EVERY:
                        _flush_buffer()
            except KeyboardInterrupt:
                interrupted = True

        else:
            # === Параллельный режим ===
            original_sigint = signal.getsignal(signal.SIGINT)
            ordered_names = [p.name for p in queue]
            ready: dict[str, list[ProcessingResult]] = {}
            next_idx = 0

            def _drain_ready() -> None:
                """Переносит в буфер готовые результаты строго в порядке файлов."""
                nonlocal next_idx
                while next_idx < len(ordered_names):
                    file_results = ready.pop(ordered_names[next_idx], None)
                    if file_results is None:
                        break
                    buffer.extend(file_results)
                    next_idx += 1
                    if len(buffer) >= SAVE_EVERY:
                        _flush_buffer()

            try:
                with ProcessPoolExecutor(
                    max_workers=workers,
                    initializer=signal.signal,
                    initargs=(signal.SIGINT, signal.SIG_IGN),
                ) as executor:
                    futures = {
                        executor.submit(_recognize_single_file, str(path), options, ocr_options): path.name
                        for path in queue
                    }
                    try:
                        for future in as_completed(futures):
                            name = futures[future]
                            try:
                                results = future.result()
                            except Exception as e:
                                results = [ProcessingResult(filename=name, status=Status.ERROR, error_message=str(e))]

                            _count(session, results)
                            ready[name] = results
                            _drain_ready()
                            progress.advance(file_task)
                    except KeyboardInterrupt:
                        interrupted = True
                        executor.shutdown(wait=False, cancel_futures=True)
            finally:
                signal.signal(signal.SIGINT, original_sigint)

    _flush_buffer()
    session.interrupted = interrupted
    return session
