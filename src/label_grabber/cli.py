"""CLI интерфейс с Rich-оформлением."""

import argparse
import logging
import os
import time
from pathlib import Path

from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from . import __version__
from .config import MAX_ATTEMPTS, QUALITY_GATE_SCORE, TIME_BUDGET_MS, DecodeOptions, OcrOptions
from .decoder import EngineRegistry
from .errors import DecodeError
from .models import DiagnosisReport, QualityReport, SessionStats
from .processor import find_images, run
from .recognizer import Recognizer

console = Console()

MAX_ERRORS_SHOWN = 20


BANNER = r"""
 _      ____  ____  ____  _        ____  ____   ____  ____  ____
| |    / _  ||  _ \|  __|| |      / ___||  _ \ / _  ||  _ \|  _ \
| |__ | |_| || |_) |  _| | |__   | |_| ||   / | |_| || |_) || |_) |
|____||_| |_||____/|____||____|   \____||_|\_\|_| |_||____/|____/
"""


def setup_logging(verbose: bool = False) -> None:
    """Логи библиотеки выводятся через RichHandler в ту же консоль."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)],
        force=True,
    )


def build_stats_table(stats: SessionStats, elapsed: float) -> Table:
    """Строит Rich-таблицу со статистикой сессии."""
    table = Table(
        title="Статистика обработки",
        box=box.ROUNDED,
        show_header=False,
        title_style="bold cyan",
        border_style="cyan",
        padding=(0, 2),
    )
    table.add_column("Метрика", style="bold white", min_width=25)
    table.add_column("Значение", style="bold green", justify="right", min_width=15)

    table.add_row("Всего файлов", str(stats.total_files))
    table.add_row("Обработано файлов", str(stats.files_processed))
    if stats.resumed_from > 0:
        table.add_row("Пропущено (resume)", str(stats.resumed_from))
    table.add_row("Найдено кодов", str(stats.total_codes))
    table.add_row("Из них через OCR", str(stats.ocr_fallbacks))
    table.add_row("Файлов без кодов", str(stats.files_empty))
    table.add_row("Файлов с ошибками", str(stats.files_with_errors))
    table.add_row("Успешность", f"{stats.success_rate:.1f}%")
    table.add_row("Время работы", format_elapsed(elapsed))

    if stats.files_processed > 0:
        speed = elapsed / stats.files_processed
        files_per_min = 60 / speed if speed > 0 else 0
        table.add_row("Скорость", f"{speed:.2f} сек/файл ({files_per_min:.0f} файлов/мин)")

    return table


def build_errors_table(errors: list[str]) -> Table:
    """Ошибки по файлам: первые MAX_ERRORS_SHOWN строк «файл: сообщение»."""
    table = Table(title="Ошибки", box=box.ROUNDED, title_style="bold red", border_style="red")
    table.add_column("Файл", style="bold", no_wrap=True)
    table.add_column("Ошибка", style="red")

    for entry in errors[:MAX_ERRORS_SHOWN]:
        filename, _, message = entry.partition(": ")
        table.add_row(filename, message or "—")

    hidden = len(errors) - MAX_ERRORS_SHOWN
    if hidden > 0:
        table.add_row("[dim]...[/]", f"[dim]не показано: {hidden}[/]")
    return table


def build_engines_table(report: dict[str, str]) -> Table:
    table = Table(title="Движки декодирования", box=box.ROUNDED, border_style="cyan")
    table.add_column("Движок", style="bold")
    table.add_column("Состояние")
    for engine, state in report.items():
        table.add_row(engine, "[green]доступен[/]" if state == "ok" else f"[red]{state}[/]")
    return table


def build_quality_table(name: str, report: QualityReport, diagnosis: DiagnosisReport) -> Table:
    """Таблица оценки качества одного кадра."""
    table = Table(title=name, box=box.ROUNDED, show_header=False, border_style="cyan")
    table.add_column("Метрика", style="bold white")
    table.add_column("Значение")

    ready = "[green]да[/]" if report.ready else "[red]нет[/]"
    table.add_row("Оценка", f"{report.score}/100 (готов: {ready})")
    table.add_row("Яркость", f"{diagnosis.brightness.value:.0f} ({diagnosis.brightness.level})")
    table.add_row("Контраст", f"{diagnosis.contrast.value:.0f} ({diagnosis.contrast.level})")
    table.add_row("Резкость", f"{diagnosis.sharpness.value:.0f} ({diagnosis.sharpness.level})")
    table.add_row("Шум", f"{diagnosis.noise.value:.0f} ({diagnosis.noise.level})")
    table.add_row("Признаки штрихкода", f"{diagnosis.barcode_confidence}%")
    table.add_row("Наклон", f"{diagnosis.skew.angle:.1f}°")
    table.add_row("Общий балл", f"{diagnosis.overall_score}/100")
    for issue, suggestion in zip(report.issues, report.suggestions):
        table.add_row(f"[yellow]{issue}[/]", suggestion)
    for recommendation in diagnosis.recommendations:
        table.add_row("Совет", recommendation)
    return table


def format_elapsed(seconds: float) -> str:
    """5.0 сек / 2 мин 5 сек / 1 ч 3 мин."""
    if seconds < 60:
        return f"{seconds:.1f} сек"
    minutes, secs = divmod(round(seconds), 60)
    hours, minutes = divmod(minutes, 60)
    if hours:
        return f"{hours} ч {minutes} мин"
    return f"{minutes} мин {secs} сек"


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Парсит аргументы командной строки."""
    cpu_count = os.cpu_count() or 4

    parser = argparse.ArgumentParser(
        prog="label-grabber",
        description="Распознавание штрихкодов и QR-кодов на фотографиях этикеток принтеров",
    )
    parser.add_argument(
        "-i", "--input",
        type=Path,
        default=Path("data/input"),
        help="Директория с фотографиями или один файл (по умолчанию: data/input)",
    )
    parser.add_argument(
        "-o", "--output",
        type=Path,
        default=None,
        help="Файл результата .csv или .xlsx (по умолчанию: output/results.csv)",
    )
    parser.add_argument(
        "-w", "--workers",
        type=int,
        default=1,
        help=f"Кол-во параллельных процессов (по умолчанию: 1, доступно ядер: {cpu_count})",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Продолжить с места прерывания (пропустить уже обработанные файлы)",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Макс. количество файлов для обработки (для тестирования)",
    )
    parser.add_argument("--no-skew", action="store_true", help="Не выравнивать наклон")
    parser.add_argument("--no-rotations", action="store_true", help="Не перебирать повороты 90/180/270")
    parser.add_argument("--no-enhance", action="store_true", help="Фиксированный контраст вместо адаптивного")
    parser.add_argument("--no-parallel", action="store_true", help="Не запускать движки наперегонки")
    parser.add_argument("--no-datamatrix", action="store_true", help="Не использовать libdmtx")
    parser.add_argument(
        "--max-attempts",
        type=int,
        default=MAX_ATTEMPTS,
        help=f"Лимит вызовов движков на файл (по умолчанию: {MAX_ATTEMPTS})",
    )
    parser.add_argument(
        "--time-budget",
        type=int,
        default=TIME_BUDGET_MS,
        help=f"Бюджет времени на файл, мс (по умолчанию: {TIME_BUDGET_MS})",
    )
    parser.add_argument(
        "--quality-gate",
        type=int,
        default=QUALITY_GATE_SCORE,
        help=f"Не перебирать кадры с оценкой качества ниже порога, 0 — без отсечения (по умолчанию: {QUALITY_GATE_SCORE})",
    )
    parser.add_argument("--no-ocr", action="store_true", help="Не использовать OCR, если коды не найдены")
    parser.add_argument(
        "--default-model",
        default=OcrOptions.default_model,
        help="Модель принтера, если OCR её не нашёл (пустая строка — не подставлять)",
    )
    parser.add_argument(
        "--quality",
        action="store_true",
        help="Только оценить качество фотографий, без распознавания",
    )
    parser.add_argument(
        "--engines",
        action="store_true",
        help="Показать доступные движки декодирования и выйти",
    )
    parser.add_argument("--verbose", action="store_true", help="Подробный лог")
    parser.add_argument(
        "-v", "--version",
        action="version",
        version=f"%(prog)s {__version__}",
    )

    return parser.parse_args(argv)


def build_options(args: argparse.Namespace) -> tuple[DecodeOptions, OcrOptions]:
    """Флаги командной строки → настройки распознавания и OCR.

    Raises:
        ValueError: Недопустимые значения параметров.
    """
    options = DecodeOptions(
        try_skew_correction=not args.no_skew,
        try_multiple_rotations=not args.no_rotations,
        enhance_quality=not args.no_enhance,
        use_parallel_decoding=not args.no_parallel,
        max_attempts=args.max_attempts,
        time_budget_ms=args.time_budget,
        use_datamatrix_engine=not args.no_datamatrix,
        ocr_fallback=not args.no_ocr,
        quality_gate_score=args.quality_gate,
    )
    ocr_options = OcrOptions(default_model=args.default_model or None)
    return options, ocr_options


def _show_quality(images: list[Path]) -> int:
    with Recognizer() as recognizer:
        for path in images:
            try:
                data = path.read_bytes()
                report = recognizer.assess_quality(data)
                diagnosis = recognizer.diagnose(data)
            except (OSError, DecodeError) as e:
                console.print(f"[bold red]{path.name}:[/] {e}")
                continue
            console.print(build_quality_table(path.name, report, diagnosis))
    return 0


def main(argv: list[str] | None = None) -> int:
    """Главная точка входа."""

    args = parse_args(argv)
    setup_logging(args.verbose)

    if args.engines:
        console.print(build_engines_table(EngineRegistry().describe()))
        return 0

    if args.workers < 1:
        console.print("[bold red]Ошибка:[/] Количество воркеров должно быть не менее 1")
        return 1

    if args.limit is not None and args.limit < 1:
        console.print("[bold red]Ошибка:[/] Лимит файлов должен быть не менее 1")
        return 1

    try:
        options, ocr_options = build_options(args)
    except ValueError as e:
        console.print(f"[bold red]Ошибка:[/] {e}")
        return 1

    # Баннер
    console.print(Text(BANNER, style="bold cyan"))
    console.print(
        Panel(
            f"[bold]Label Grabber[/bold] v{__version__}\n"
            f"Распознавание штрихкодов на фотографиях этикеток",
            border_style="cyan",
            padding=(0, 2),
        )
    )

    # Проверка входных данных
    input_path = args.input.resolve()
    if not input_path.exists():
        console.print(f"\n[bold red]Путь не найден:[/] {input_path}")
        console.print("[dim]Создайте папку и поместите в неё фотографии.[/dim]")
        return 1

    images = find_images(input_path)
    if not images:
        console.print(f"\n[bold yellow]Изображения не найдены в:[/] {input_path}")
        return 1

    if args.quality:
        return _show_quality(images)

    # Формируем путь для результата
    if args.output:
        output_path = args.output.resolve()
        if output_path.suffix.lower() not in (".csv", ".xlsx"):
            output_path = output_path.with_suffix(".csv")
            console.print(f"[yellow]Расширение результата изменено на .csv:[/] {output_path}")
    else:
        output_path = Path("output").resolve() / "results.csv"

    if args.workers > 1:
        mode = f"параллельный ({args.workers} процессов)"
    else:
        mode = "последовательный"

    # Инфо перед запуском
    console.print()
    info_table = Table(box=box.SIMPLE, show_header=False, padding=(0, 2))
    info_table.add_column("", style="bold")
    info_table.add_column("")
    info_table.add_row("Вход:", str(input_path))
    info_table.add_row("Найдено изображений:", str(len(images)))
    info_table.add_row("Результат:", str(output_path))
    info_table.add_row("Режим:", mode)
    info_table.add_row("Бюджет на файл:", f"{options.time_budget_ms} мс / {options.max_attempts} попыток")
    info_table.add_row("Коррекция наклона:", "Да" if options.try_skew_correction else "Нет")
    info_table.add_row("OCR:", "Да" if options.ocr_fallback else "Нет")
    if args.resume:
        info_table.add_row("Resume:", "[green]Да — продолжение с прерванного места[/]")
    if args.limit:
        info_table.add_row("Лимит файлов:", str(args.limit))
    console.print(info_table)
    console.print()

    start_time = time.monotonic()

    stats = run(
        input_path=input_path,
        output_path=output_path,
        options=options,
        ocr_options=ocr_options,
        file_limit=args.limit,
        workers=args.workers,
        resume=args.resume,
    )

    elapsed = time.monotonic() - start_time

    console.print()
    console.print(build_stats_table(stats, elapsed))

    if stats.errors:
        console.print()
        console.print(build_errors_table(stats.errors))

    console.print()

    if stats.interrupted:
        console.print(
            Panel(
                f"[bold yellow]Обработка прервана.[/] Прогресс сохранён в:\n"
                f"  {output_path}\n\n"
                f"Для продолжения запустите с [bold]--resume[/]:\n"
                f"  [dim]python main.py --resume -o {output_path.name}[/]",
                border_style="yellow",
            )
        )
    elif stats.total_codes > 0:
        console.print(
            Panel(
                f"[bold green]Готово![/] Результат сохранён:\n  {output_path}",
                border_style="green",
            )
        )
    else:
        console.print(
            Panel(
                "[bold yellow]Коды не были найдены ни на одном снимке.[/]\n"
                "Проверьте качество фотографий: [bold]--quality[/].",
                border_style="yellow",
            )
        )

    return 0
