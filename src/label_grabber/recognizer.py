"""Оркестратор распознавания: перебор областей × вариантов × движков.

Конвейер одного вызова:
1. Нормализация — декодирование байтов и уменьшение до рабочего разрешения.
2. Быстрый путь — нативный детектор (или гонка native/zxing) на целом кадре.
3. Оценка качества: заведомо плохой кадр не перебирается.
4. Выравнивание наклона исходного кадра для перебора.
5. Перебор областей: обрезка → увеличение → варианты raw/contrast/binarized
   → движки по приоритету; при пустом результате — повороты 90/180/270.
6. Ранний выход: набрано нужное число разных значений, исчерпан бюджет
   времени или лимит попыток. Ожидание одного движка тоже не выходит
   за остаток бюджета.
7. Если ничего не найдено — OCR-запасной путь.

Ошибки отдельных попыток никогда не прерывают распознавание:
наружу выходит только DecodeError при разборе входных байтов.
"""

import asyncio
import logging
import time
from collections.abc import Callable, Iterator, Sequence
from concurrent.futures import ThreadPoolExecutor

from .buffer import PixelBuffer, decode
from .config import (
    DEFAULT_CONTRAST_FACTOR,
    FALLBACK_ROTATIONS,
    REGIONS,
    DecodeOptions,
    EngineTimeouts,
    OcrOptions,
)
from .decoder import DecodeEngine, EngineRegistry
from .enhance import adaptive_enhance, linear_contrast, otsu_binarize
from .errors import EngineTimeout, EngineUnavailable
from .models import (
    DecodeCandidate,
    DiagnosisReport,
    EngineHit,
    EngineId,
    ImageVariant,
    OcrExtraction,
    QualityReport,
    RecognitionResult,
    RegionSpec,
    ScanState,
    VariantKind,
)
from .ocr import TesseractReader
from .quality import assess, diagnose
from .scoring import ScoringPolicy
from .skew import correct_skew
from .transform import crop, rescale, rotate, upscale

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4

# Порядок движков внутри одного варианта
ENGINE_PRIORITY = (
    EngineId.NATIVE,
    EngineId.ZXING,
    EngineId.ZBAR_QUICK,
    EngineId.ZBAR_FULL,
    EngineId.DMTX,
)
# Эти два движка в параллельном режиме запускаются одновременно
RACED_ENGINES = (EngineId.NATIVE, EngineId.ZXING)


def _to_buffer(image: bytes | PixelBuffer) -> PixelBuffer:
    if isinstance(image, PixelBuffer):
        return image
    return decode(image)


class _Scan:
    """Состояние одного вызова recognize: результат, счётчики и бюджет."""

    def __init__(self, options: DecodeOptions, clock: Callable[[], float]) -> None:
        self.options = options
        self.clock = clock
        self.started = clock()
        self.result = RecognitionResult(state=ScanState.SCANNING)

    @property
    def elapsed_ms(self) -> float:
        return (self.clock() - self.started) * 1000

    @property
    def attempts_left(self) -> int:
        return self.options.max_attempts - self.result.attempts

    @property
    def remaining_s(self) -> float:
        """Остаток бюджета времени в секундах (может быть отрицательным)."""
        return (self.options.time_budget_ms - self.elapsed_ms) / 1000

    def stop_reason(self) -> str | None:
        """Причина раннего выхода или None, если перебор продолжается."""
        if self.result.distinct_count >= self.options.min_distinct_values:
            return "набрано достаточно значений"
        if self.elapsed_ms > self.options.time_budget_ms:
            return "исчерпан бюджет времени"
        if self.attempts_left <= 0:
            return "исчерпан лимит попыток"
        return None


class Recognizer:
    """Распознаватель штрихкодов и QR-кодов на фотографиях этикеток.

    Владеет пулом потоков для вызовов движков и реестром движков
    (проверка доступности выполняется один раз за время жизни объекта).
    Используется как контекстный менеджер — обычный или асинхронный.

    Example:
        >>> with Recognizer() as recognizer:
        ...     result = recognizer.recognize_sync(image_bytes)
        >>> [c.value for c in result]
    """

    def __init__(
        self,
        options: DecodeOptions | None = None,
        *,
        timeouts: EngineTimeouts | None = None,
        scoring: ScoringPolicy | None = None,
        registry: EngineRegistry | None = None,
        executor: ThreadPoolExecutor | None = None,
        ocr_options: OcrOptions | None = None,
        ocr_reader: TesseractReader | None = None,
        regions: Sequence[RegionSpec] = REGIONS,
        max_workers: int = DEFAULT_MAX_WORKERS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.options = options or DecodeOptions()
        self.timeouts = timeouts or EngineTimeouts()
        self.scoring = scoring or ScoringPolicy()
        self.registry = registry or EngineRegistry(timeouts=self.timeouts)
        self.ocr_reader = ocr_reader or TesseractReader(ocr_options or OcrOptions(), self.timeouts.ocr)
        self.regions = tuple(regions)
        self.clock = clock

        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="label-grabber"
        )

    # --- Жизненный цикл ---

    def close(self) -> None:
        """Останавливает собственный пул потоков (не дожидаясь зависших движков)."""
        if self._owns_executor:
            self._executor.shutdown(wait=False, cancel_futures=True)

    def __enter__(self) -> "Recognizer":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    async def __aenter__(self) -> "Recognizer":
        return self

    async def __aexit__(self, *exc_info) -> None:
        self.close()

    # --- Оценка качества ---

    def assess_quality(self, image: bytes | PixelBuffer) -> QualityReport:
        """Быстрая оценка готовности кадра (для подсказок до съёмки).

        Raises:
            DecodeError: Байты не являются изображением.
        """
        return assess(_to_buffer(image))

    def diagnose(self, image: bytes | PixelBuffer) -> DiagnosisReport:
        """Подробный отчёт о причинах, мешающих распознаванию."""
        return diagnose(_to_buffer(image))

    # --- Распознавание ---

    def recognize_sync(
        self, image: bytes | PixelBuffer, options: DecodeOptions | None = None
    ) -> RecognitionResult:
        """Синхронная обёртка над recognize (нельзя вызывать из работающего event loop)."""
        return asyncio.run(self.recognize(image, options))

    async def recognize(
        self, image: bytes | PixelBuffer, options: DecodeOptions | None = None
    ) -> RecognitionResult:
        """Распознаёт все коды на изображении.

        Args:
            image: Закодированное изображение (JPEG/PNG/...) или готовый буфер.
            options: Настройки вызова; по умолчанию — настройки распознавателя.

        Returns:
            RecognitionResult — уникальные значения по убыванию уверенности.
            Пустой результат означает «код не найден», а не ошибку.

        Raises:
            DecodeError: Входные байты не являются изображением.
        """
        options = options or self.options
        scan = _Scan(options, self.clock)

        working = await self._offload(self._normalize, image, options.working_max_dimension)
        logger.info("Сканирование: кадр %d×%d", working.width, working.height)

        await self._fast_path(scan, working)
        if scan.result:
            logger.info("Код найден быстрым путём")
        elif await self._passes_quality_gate(scan, working):
            source = await self._deskew(scan, working)
            await self._sweep(scan, source)

        result = scan.result
        result.state = ScanState.SUCCESS if result else ScanState.EXHAUSTED

        if not result and options.ocr_fallback:
            result.ocr = await self._run_ocr(working)

        result.elapsed_ms = scan.elapsed_ms
        logger.info(
            "Итог: %s, значений %d, попыток %d, %.0f мс",
            result.state.value,
            result.distinct_count,
            result.attempts,
            result.elapsed_ms,
        )
        return result

    @staticmethod
    def _normalize(image: bytes | PixelBuffer, max_dimension: int) -> PixelBuffer:
        return rescale(_to_buffer(image), max_dimension)

    async def _offload(self, func: Callable, *args):
        """Выполняет тяжёлую синхронную функцию в пуле потоков."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, func, *args)

    async def _fast_path(self, scan: _Scan, working: PixelBuffer) -> None:
        variant = ImageVariant(
            region=self.regions[0].name if self.regions else "full",
            region_index=0,
            kind=VariantKind.RAW,
            buffer=working,
            transform="fast-path",
        )
        if scan.options.use_parallel_decoding:
            await self._race(scan, RACED_ENGINES, variant)
        else:
            await self._attempt(scan, EngineId.NATIVE, variant)

    async def _passes_quality_gate(self, scan: _Scan, working: PixelBuffer) -> bool:
        """Оценивает кадр перед перебором. False — кадр заведомо непригоден."""
        quality = await self._offload(assess, working)
        scan.result.quality = quality
        threshold = scan.options.quality_gate_score
        if quality.score < threshold:
            logger.info(
                "Перебор пропущен: оценка кадра %d < %d (%s)",
                quality.score,
                threshold,
                ", ".join(quality.issues),
            )
            return False
        return True

    async def _deskew(self, scan: _Scan, working: PixelBuffer) -> PixelBuffer:
        """Выравнивает кадр для перебора. При ошибке перебор идёт по исходному кадру."""
        if not scan.options.try_skew_correction:
            return working
        try:
            source, estimate = await self._offload(correct_skew, working)
        except Exception:
            logger.warning("Не удалось оценить наклон", exc_info=True)
            return working
        scan.result.skew = estimate
        if source is not working:
            logger.info("Коррекция наклона: %.1f°", estimate.angle)
        return source

    async def _sweep(self, scan: _Scan, source: PixelBuffer) -> None:
        options = scan.options
        for index, region in enumerate(self.regions):
            reason = scan.stop_reason()
            if reason:
                logger.info("Ранний выход перед областью %s: %s", region.name, reason)
                return

            try:
                cropped = await self._offload(self._prepare_region, source, region, options.region_min_dimension)
            except Exception:
                logger.warning("Не удалось подготовить область %s", region.name, exc_info=True)
                continue

            if await self._sweep_variants(scan, region, index, cropped, 0):
                continue
            if not options.try_multiple_rotations:
                continue

            for angle in FALLBACK_ROTATIONS:
                if scan.stop_reason():
                    break
                try:
                    rotated = await self._offload(rotate, cropped, angle)
                except Exception:
                    logger.warning("Не удалось повернуть %s на %d°", region.name, angle, exc_info=True)
                    continue
                if await self._sweep_variants(scan, region, index, rotated, angle):
                    break

    @staticmethod
    def _prepare_region(source: PixelBuffer, region: RegionSpec, min_dimension: int) -> PixelBuffer:
        return upscale(crop(source, region), min_dimension)

    def _variants(
        self, scan: _Scan, region: RegionSpec, index: int, buffer: PixelBuffer, rotation: int
    ) -> Iterator[tuple[VariantKind, Callable[[], ImageVariant]]]:
        """Ленивые варианты области: следующий строится, только если предыдущий ничего не дал."""
        options = scan.options
        for kind in VariantKind:

            def build(kind=kind) -> ImageVariant:
                derived, description = _derive_variant(buffer, kind, options)
                suffix = f"@{rotation}" if rotation else ""
                return ImageVariant(
                    region=region.name,
                    region_index=index,
                    kind=kind,
                    buffer=derived,
                    transform=f"{region.name}/{description}{suffix}",
                    rotation=rotation,
                )

            yield kind, build

    async def _sweep_variants(
        self, scan: _Scan, region: RegionSpec, index: int, buffer: PixelBuffer, rotation: int
    ) -> bool:
        """Перебирает варианты одной области. True — хотя бы один движок что-то нашёл."""
        for kind, build in self._variants(scan, region, index, buffer, rotation):
            if scan.stop_reason():
                return False
            try:
                variant = await self._offload(build)
            except Exception:
                logger.warning("Не удалось построить вариант %s/%s", region.name, kind.value, exc_info=True)
                continue
            if await self._try_engines(scan, variant):
                return True
        return False

    async def _try_engines(self, scan: _Scan, variant: ImageVariant) -> bool:
        """Движки по приоритету до первого непустого ответа."""
        order = [
            engine_id
            for engine_id in ENGINE_PRIORITY
            if scan.options.use_datamatrix_engine or engine_id is not EngineId.DMTX
        ]
        if scan.options.use_parallel_decoding:
            if await self._race(scan, RACED_ENGINES, variant):
                return True
            order = [engine_id for engine_id in order if engine_id not in RACED_ENGINES]

        for engine_id in order:
            if scan.stop_reason():
                return False
            if await self._attempt(scan, engine_id, variant):
                return True
        return False

    # --- Вызовы движков ---

    async def _call_engine(self, engine: DecodeEngine, buffer: PixelBuffer, timeout: float) -> list[EngineHit]:
        """Вызов движка в пуле потоков с ограничением по времени.

        По таймауту ожидание прекращается, но сам поток движка продолжает
        работу в фоне: библиотеки декодирования не поддерживают отмену.

        Raises:
            EngineTimeout: Движок не уложился в отведённое время.
        """
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, engine.attempt_decode, buffer)
        try:
            return await asyncio.wait_for(future, timeout)
        except asyncio.TimeoutError as e:
            raise EngineTimeout(engine.engine_id.value, timeout) from e

    async def _dispatch(self, scan: _Scan, engine_id: EngineId, variant: ImageVariant) -> list[EngineHit] | None:
        """Одна попытка. None — движок недоступен (попытка не засчитывается).

        Ожидание ограничено таймаутом движка и остатком общего бюджета;
        при исчерпанном бюджете движок не вызывается.
        """
        engine = self.registry.get(engine_id)
        if engine is None:
            return None
        if scan.attempts_left <= 0:
            return []
        remaining = scan.remaining_s
        if remaining <= 0:
            return []

        scan.result.attempts += 1
        timeout = min(self.registry.timeout_for(engine), remaining)
        try:
            return await self._call_engine(engine, variant.buffer, timeout)
        except EngineTimeout as e:
            logger.debug("%s [%s]", e, variant.transform)
        except EngineUnavailable as e:
            logger.info("%s недоступен: %s", engine_id.value, e)
        except Exception:
            logger.warning(
                "Ошибка движка %s на %s (%s, поворот %d°)",
                engine_id.value,
                variant.region,
                variant.kind.value,
                variant.rotation,
                exc_info=True,
            )
        return []

    def _record(self, scan: _Scan, engine_id: EngineId, variant: ImageVariant, hits: list[EngineHit]) -> int:
        """Добавляет ответы движка в результат. Возвращает число принятых ответов."""
        confidence = self.scoring.confidence(engine_id, variant.kind, variant.rotation)
        for hit in hits:
            candidate = DecodeCandidate(
                value=hit.text,
                format=hit.format,
                source_engine=engine_id,
                region=variant.region,
                region_index=variant.region_index,
                variant=variant.kind,
                engine_confidence=confidence,
                rotation=variant.rotation,
            )
            if scan.result.add(candidate):
                logger.info(
                    "Найдено %s (%s) движком %s [%s]",
                    hit.text,
                    hit.format,
                    engine_id.value,
                    variant.transform,
                )
        return len(hits)

    async def _attempt(self, scan: _Scan, engine_id: EngineId, variant: ImageVariant) -> int:
        hits = await self._dispatch(scan, engine_id, variant)
        if not hits:
            return 0
        return self._record(scan, engine_id, variant, hits)

    async def _race(self, scan: _Scan, engine_ids: Sequence[EngineId], variant: ImageVariant) -> int:
        """Запускает движки одновременно, побеждает первый непустой ответ.

        Проигравшие задачи отменяются на уровне asyncio.
        """
        tasks: dict[asyncio.Task, int] = {}
        for priority, engine_id in enumerate(engine_ids):
            if scan.attempts_left <= 0:
                break
            task = asyncio.ensure_future(self._dispatch(scan, engine_id, variant))
            tasks[task] = priority

        pending = set(tasks)
        try:
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                # Одновременно завершившиеся разбираются по приоритету
                for task in sorted(done, key=tasks.__getitem__):
                    hits = task.result()
                    if hits:
                        return self._record(scan, engine_ids[tasks[task]], variant, hits)
            return 0
        finally:
            for task in pending:
                task.cancel()

    # --- OCR ---

    async def _run_ocr(self, working: PixelBuffer) -> OcrExtraction | None:
        """OCR-запасной путь. Любая ошибка — запись в лог и None."""
        logger.info("Коды не найдены, пробуем OCR")
        loop = asyncio.get_running_loop()
        future = loop.run_in_executor(self._executor, self.ocr_reader.extract, working)
        try:
            extraction = await asyncio.wait_for(future, self.timeouts.ocr)
        except asyncio.TimeoutError:
            logger.warning("OCR: превышено время ожидания %.1f с", self.timeouts.ocr)
            return None
        except (EngineUnavailable, EngineTimeout) as e:
            logger.warning("OCR недоступен: %s", e)
            return None
        except Exception:
            logger.warning("Ошибка OCR", exc_info=True)
            return None

        logger.info(
            "OCR: серийный номер %r, модель %r", extraction.serial_number, extraction.model
        )
        return extraction


def _derive_variant(buffer: PixelBuffer, kind: VariantKind, options: DecodeOptions) -> tuple[PixelBuffer, str]:
    """Строит вариант изображения и его описание для логов."""
    if kind is VariantKind.RAW:
        return buffer, "raw"
    if kind is VariantKind.CONTRAST:
        if options.enhance_quality:
            return adaptive_enhance(buffer), "adaptive"
        return linear_contrast(buffer, DEFAULT_CONTRAST_FACTOR), f"contrast×{DEFAULT_CONTRAST_FACTOR}"
    return otsu_binarize(buffer, options.opening_radius), f"otsu+open({options.opening_radius})"


async def recognize(image: bytes | PixelBuffer, options: DecodeOptions | None = None) -> RecognitionResult:
    """Распознаёт коды одним вызовом (создаёт и закрывает Recognizer)."""
    async with Recognizer(options) as recognizer:
        return await recognizer.recognize(image)


def recognize_sync(image: bytes | PixelBuffer, options: DecodeOptions | None = None) -> RecognitionResult:
    """Синхронный вариант recognize."""
    return asyncio.run(recognize(image, options))


def assess_quality(image: bytes | PixelBuffer) -> QualityReport:
    """Оценка качества кадра без создания распознавателя.

    Raises:
        DecodeError: Байты не являются изображением.
    """
    return assess(_to_buffer(image))
