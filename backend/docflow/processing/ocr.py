"""
Text Recognition  —  Worker Pool + Recognition Service
══════════════════════════════════════════════════════

Design: bounded pool of long-lived engines
──────────────────────────────────────────
A recognition engine (Tesseract with 7 language packs loaded) is expensive
to create and not safe to share between concurrent calls. The pool keeps a
fixed number of them alive for the life of the worker process:

  start()     eagerly builds `size` engines in a thread executor.
              An engine that fails to initialise is logged and left out;
              it is not retried.

  lease()     async context manager handing out one idle engine.
              Waiters are served strictly in arrival order (asyncio.Semaphore
              is FIFO-fair); the engine is returned in `finally`, on success
              and on failure alike.

  shutdown()  terminates every engine, tolerating individual failures.
              Idempotent. Pending and later lease() calls raise
              WorkerPoolClosedError.

TextRecognitionService
──────────────────────
  extract_text()                 one image → RecognitionResult
  extract_text_from_pdf()        rasterise (pdf2image, 300 dpi) → page results
  extract_text_from_multi_page() pdf | multi-frame tiff | single image
  detect_language()              langdetect guess mapped to a loaded language

Image preprocessing (Pillow) happens before a worker is leased, so a slow
disk or a large image never holds an engine. Recognition itself is blocking
and runs in the default thread executor.
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tempfile
import time
from abc import ABC, abstractmethod
from collections import deque
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, fields
from functools import partial
from typing import Any, AsyncIterator, Callable

from langdetect import DetectorFactory, detect_langs
from langdetect.lang_detect_exception import LangDetectException

from docflow.core.exceptions import RecognitionError, WorkerPoolClosedError

logger = logging.getLogger(__name__)

# langdetect is randomised; a fixed seed makes detection repeatable.
DetectorFactory.seed = 0

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

DEFAULT_POOL_SIZE = 4

# Every engine is initialised with all of these; per-call languages must be a subset.
DEFAULT_LANGUAGES: tuple[str, ...] = ("eng", "spa", "fra", "deu", "ita", "por", "rus")

PDF_RASTER_DPI = 300

# Preprocessing resize bound (pixels); smaller images are never enlarged.
MAX_IMAGE_HEIGHT = 2000
BINARIZE_THRESHOLD = 128

TABLE_MARKER = "[TABLE DETECTED]"

_MULTI_SPACE_RE = re.compile(r"\s{3,}")

# Shorter texts give unstable guesses; the requested language is kept instead.
MIN_DETECTION_CHARS = 20

# langdetect (ISO 639-1) → Tesseract language pack
ISO_TO_TESSERACT: dict[str, str] = {
    "en": "eng", "es": "spa", "fr": "fra", "de": "deu", "it": "ita",
    "pt": "por", "ru": "rus", "ja": "jpn", "ko": "kor",
    "zh-cn": "chi_sim", "zh-tw": "chi_tra", "ar": "ara",
}


# ---------------------------------------------------------------------------
# Shared data types
# ---------------------------------------------------------------------------

@dataclass
class BoundingBox:
    x0: int
    y0: int
    x1: int
    y1: int


@dataclass
class RecognizedSpan:
    """A word, line or paragraph with its confidence (0.0–1.0)."""
    text:       str
    confidence: float
    bbox:       BoundingBox


@dataclass
class RecognitionResult:
    """
    Output of one recognition call.

    confidence          : mean word confidence, normalised to 0.0–1.0
    language            : detected language of the text (Tesseract code),
                          the primary requested language when inconclusive
    processing_time_ms  : wall-clock time including preprocessing
    """
    text:               str
    confidence:         float
    words:              list[RecognizedSpan] = field(default_factory=list)
    lines:              list[RecognizedSpan] = field(default_factory=list)
    paragraphs:         list[RecognizedSpan] = field(default_factory=list)
    language:           str = "eng"
    processing_time_ms: int = 0


@dataclass
class RecognitionOptions:
    languages:        list[str] | None = None
    enhance_image:    bool = False
    preprocess_image: bool = False
    detect_tables:    bool = False
    preserve_layout:  bool = False

    @classmethod
    def coerce(cls, value: "RecognitionOptions | dict | None") -> "RecognitionOptions":
        """Accept an options object, a plain dict (unknown keys ignored) or None."""
        if isinstance(value, cls):
            return value
        if not value:
            return cls()
        known = {f.name for f in fields(cls)}
        return cls(**{k: v for k, v in value.items() if k in known})


# ---------------------------------------------------------------------------
# Abstract engine
# ---------------------------------------------------------------------------

class RecognitionEngine(ABC):
    """
    One stateful recognition engine.

    Implementations are blocking and NOT safe for concurrent use; the pool
    guarantees a single caller per engine at a time.
    """

    languages: tuple[str, ...] = ()

    @abstractmethod
    def recognize(
        self,
        image_path: str,
        languages: list[str],
        preserve_layout: bool = False,
    ) -> RecognitionResult:
        """Read one image. Raises on engine failure."""

    @abstractmethod
    def terminate(self) -> None:
        """Release engine resources."""


class TesseractEngine(RecognitionEngine):
    """
    pytesseract-backed engine.

    Construction checks the Tesseract binary and the installed language
    packs, so a misconfigured host fails in start(), not on first use.
    """

    def __init__(self, languages: list[str] | tuple[str, ...] = DEFAULT_LANGUAGES) -> None:
        import pytesseract

        pytesseract.get_tesseract_version()
        installed = set(pytesseract.get_languages(config=""))
        missing = [lang for lang in languages if lang not in installed]
        if missing:
            raise RecognitionError(f"Tesseract language packs not installed: {', '.join(missing)}")
        self.languages = tuple(languages)
        self._terminated = False

    def recognize(
        self,
        image_path: str,
        languages: list[str],
        preserve_layout: bool = False,
    ) -> RecognitionResult:
        import pytesseract
        from PIL import Image

        if self._terminated:
            raise RecognitionError("Engine has been terminated")

        # psm 6: single uniform block (keeps layout); psm 3: fully automatic
        psm = 6 if preserve_layout else 3
        config = f"--oem 3 --psm {psm} -c preserve_interword_spaces=1"

        with Image.open(image_path) as image:
            data = pytesseract.image_to_data(
                image,
                lang="+".join(languages),
                config=config,
                output_type=pytesseract.Output.DICT,
            )
        return _result_from_tesseract_data(data, language=languages[0])

    def terminate(self) -> None:
        # pytesseract spawns a process per call; nothing is held between calls.
        self._terminated = True


def _result_from_tesseract_data(data: dict[str, list], language: str) -> RecognitionResult:
    """Fold image_to_data(Output.DICT) rows into words, lines and paragraphs."""
    words: list[RecognizedSpan] = []
    line_groups: dict[tuple[int, int, int], list[RecognizedSpan]] = {}
    para_groups: dict[tuple[int, int], list[RecognizedSpan]] = {}

    for i, level in enumerate(data.get("level", [])):
        if int(level) != 5:   # 5 == word
            continue
        text = str(data["text"][i]).strip()
        conf = float(data["conf"][i])
        if not text or conf < 0:
            continue
        left, top = int(data["left"][i]), int(data["top"][i])
        span = RecognizedSpan(
            text=text,
            confidence=round(conf / 100.0, 4),
            bbox=BoundingBox(left, top, left + int(data["width"][i]), top + int(data["height"][i])),
        )
        words.append(span)
        block, par, line = int(data["block_num"][i]), int(data["par_num"][i]), int(data["line_num"][i])
        line_groups.setdefault((block, par, line), []).append(span)
        para_groups.setdefault((block, par), []).append(span)

    lines = [_merge_spans(spans, " ") for spans in line_groups.values()]

    paragraphs: list[RecognizedSpan] = []
    for (block, par), spans in para_groups.items():
        para_lines = [
            _merge_spans(s, " ") for key, s in line_groups.items() if key[:2] == (block, par)
        ]
        merged = _merge_spans(spans, " ")
        merged.text = "\n".join(pl.text for pl in para_lines)
        paragraphs.append(merged)

    text = "\n\n".join(p.text for p in paragraphs)
    confidence = sum(w.confidence for w in words) / len(words) if words else 0.0

    return RecognitionResult(
        text=text,
        confidence=round(confidence, 4),
        words=words,
        lines=lines,
        paragraphs=paragraphs,
        language=language,
    )


def _merge_spans(spans: list[RecognizedSpan], sep: str) -> RecognizedSpan:
    return RecognizedSpan(
        text=sep.join(s.text for s in spans),
        confidence=round(sum(s.confidence for s in spans) / len(spans), 4),
        bbox=BoundingBox(
            min(s.bbox.x0 for s in spans),
            min(s.bbox.y0 for s in spans),
            max(s.bbox.x1 for s in spans),
            max(s.bbox.y1 for s in spans),
        ),
    )


# ---------------------------------------------------------------------------
# Worker pool
# ---------------------------------------------------------------------------

EngineFactory = Callable[[tuple[str, ...]], RecognitionEngine]


class RecognitionWorkerPool:
    """
    Fixed-size FIFO pool of recognition engines.

    Invariant while open: semaphore value == number of idle engines.
    """

    def __init__(
        self,
        engine_factory: EngineFactory = TesseractEngine,
        size: int = DEFAULT_POOL_SIZE,
        languages: list[str] | tuple[str, ...] = DEFAULT_LANGUAGES,
    ) -> None:
        self._engine_factory = engine_factory
        self._size = size
        self._languages = tuple(languages)
        self._workers: list[tuple[str, RecognitionEngine]] = []
        self._idle: deque[RecognitionEngine] = deque()
        self._semaphore: asyncio.Semaphore | None = None
        self._closed = False

    @property
    def languages(self) -> tuple[str, ...]:
        return self._languages

    @property
    def size(self) -> int:
        """Engines that initialised successfully."""
        return len(self._workers)

    @property
    def idle_count(self) -> int:
        return len(self._idle)

    @property
    def closed(self) -> bool:
        return self._closed

    async def start(self) -> None:
        if self._semaphore is not None:
            return
        loop = asyncio.get_running_loop()
        for i in range(self._size):
            worker_id = f"worker-{i}"
            try:
                engine = await loop.run_in_executor(None, self._engine_factory, self._languages)
            except Exception:
                logger.exception("Recognition worker init failed | worker=%s", worker_id)
                continue
            self._workers.append((worker_id, engine))
            self._idle.append(engine)
            logger.info("Recognition worker ready | worker=%s languages=%s", worker_id, "+".join(self._languages))

        self._semaphore = asyncio.Semaphore(len(self._idle))
        if not self._workers:
            logger.error("Recognition pool has no workers | requested=%d", self._size)

    @asynccontextmanager
    async def lease(self) -> AsyncIterator[RecognitionEngine]:
        if self._closed:
            raise WorkerPoolClosedError("Recognition worker pool is shut down")
        if self._semaphore is None:
            raise RecognitionError("Recognition worker pool has not been started")
        if not self._workers:
            raise RecognitionError("No recognition workers available")

        await self._semaphore.acquire()
        if self._closed:
            # Pass the wake-up along so every queued waiter observes the shutdown.
            self._semaphore.release()
            raise WorkerPoolClosedError("Recognition worker pool is shut down")

        engine = self._idle.popleft()
        try:
            yield engine
        finally:
            if not self._closed:
                self._idle.append(engine)
            self._semaphore.release()

    async def shutdown(self) -> None:
        if self._closed:
            return
        self._closed = True

        loop = asyncio.get_running_loop()
        for worker_id, engine in self._workers:
            try:
                await loop.run_in_executor(None, engine.terminate)
                logger.info("Recognition worker terminated | worker=%s", worker_id)
            except Exception:
                logger.exception("Recognition worker terminate failed | worker=%s", worker_id)

        self._idle.clear()
        if self._semaphore is not None:
            self._semaphore.release()


# ---------------------------------------------------------------------------
# Image helpers (blocking: run in executor)
# ---------------------------------------------------------------------------

def preprocess_image(image_path: str, enhance: bool, max_height: int = MAX_IMAGE_HEIGHT) -> str:
    """
    Grayscale → (autocontrast) → median(3) → threshold → bounded resize.
    Writes a sibling file and returns its path; the caller deletes it.
    """
    from PIL import Image, ImageFilter, ImageOps

    root, ext = os.path.splitext(image_path)
    output_path = f"{root}_preprocessed{ext or '.png'}"

    with Image.open(image_path) as source:
        image = ImageOps.grayscale(source)
    if enhance:
        image = ImageOps.autocontrast(image)
    image = image.filter(ImageFilter.MedianFilter(3))
    image = image.point(lambda px: 255 if px >= BINARIZE_THRESHOLD else 0)
    if image.height > max_height:
        width = max(1, round(image.width * max_height / image.height))
        image = image.resize((width, max_height), Image.Resampling.LANCZOS)
    image.save(output_path)
    return output_path


def rasterize_pdf(pdf_path: str, output_dir: str, dpi: int = PDF_RASTER_DPI) -> list[str]:
    from pdf2image import convert_from_path

    return sorted(
        convert_from_path(
            pdf_path,
            dpi=dpi,
            output_folder=output_dir,
            fmt="png",
            paths_only=True,
        )
    )


def split_tiff_frames(tiff_path: str, output_dir: str) -> list[str]:
    from PIL import Image, ImageSequence

    paths: list[str] = []
    with Image.open(tiff_path) as image:
        for index, frame in enumerate(ImageSequence.Iterator(image)):
            path = os.path.join(output_dir, f"page-{index + 1:04d}.png")
            frame.convert("RGB").save(path)
            paths.append(path)
    return paths


def annotate_tables(text: str) -> str:
    """Append likely table rows (tab-separated, or 3+ columns split by wide gaps)."""
    table_lines = [
        line for line in text.split("\n")
        if "\t" in line or len(_MULTI_SPACE_RE.split(line)) > 2
    ]
    if not table_lines:
        return text
    return f"{text}\n\n{TABLE_MARKER}\n" + "\n".join(table_lines)


def detect_language(
    text: str,
    candidates: list[str] | tuple[str, ...] = DEFAULT_LANGUAGES,
    default: str = "eng",
) -> str:
    """
    Most probable language of `text` as a Tesseract code, limited to
    `candidates`. Short, empty or unrecognisable text returns `default`.
    """
    sample = text.strip()
    if len(sample) < MIN_DETECTION_CHARS:
        return default
    try:
        guesses = detect_langs(sample)
    except LangDetectException:
        return default
    for guess in guesses:
        code = ISO_TO_TESSERACT.get(guess.lang)
        if code in candidates:
            return code
    return default


def _unlink_quietly(path: str) -> None:
    try:
        os.unlink(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Temp image cleanup failed | path=%s error=%s", path, exc)


# ---------------------------------------------------------------------------
# Recognition service
# ---------------------------------------------------------------------------

class TextRecognitionService:

    def __init__(
        self,
        pool: RecognitionWorkerPool,
        pdf_dpi: int = PDF_RASTER_DPI,
        max_image_height: int = MAX_IMAGE_HEIGHT,
    ) -> None:
        self._pool = pool
        self._pdf_dpi = pdf_dpi
        self._max_image_height = max_image_height

    @property
    def pool(self) -> RecognitionWorkerPool:
        return self._pool

    def detect_language(self, text: str) -> str:
        """Language of `text` among the languages the pool has loaded."""
        loaded = self._pool.languages
        return detect_language(text, loaded, default=loaded[0] if loaded else "eng")

    async def extract_text(
        self,
        image_path: str,
        options: RecognitionOptions | dict[str, Any] | None = None,
    ) -> RecognitionResult:
        opts = RecognitionOptions.coerce(options)
        loop = asyncio.get_running_loop()
        t0 = time.monotonic()

        processed_path = image_path
        if opts.preprocess_image or opts.enhance_image:
            try:
                processed_path = await loop.run_in_executor(
                    None,
                    preprocess_image, image_path, opts.enhance_image, self._max_image_height,
                )
            except Exception as exc:
                logger.warning("Preprocessing failed, using original | path=%s error=%s", image_path, exc)
                processed_path = image_path

        languages = self._select_languages(opts.languages)
        try:
            async with self._pool.lease() as engine:
                result = await loop.run_in_executor(
                    None,
                    partial(engine.recognize, processed_path, languages, opts.preserve_layout),
                )
        except (WorkerPoolClosedError, RecognitionError):
            raise
        except Exception as exc:
            logger.error("Recognition failed | path=%s error=%s", image_path, exc)
            raise RecognitionError(f"Text recognition failed: {exc}") from exc
        finally:
            if processed_path != image_path:
                _unlink_quietly(processed_path)

        result.language = detect_language(result.text, self._pool.languages, default=languages[0])
        if opts.detect_tables:
            result.text = annotate_tables(result.text)

        result.processing_time_ms = int((time.monotonic() - t0) * 1000)
        logger.info(
            "Recognized | path=%s chars=%d confidence=%.2f elapsed_ms=%d",
            image_path, len(result.text), result.confidence, result.processing_time_ms,
        )
        return result

    async def extract_text_from_pdf(
        self,
        pdf_path: str,
        options: RecognitionOptions | dict[str, Any] | None = None,
    ) -> list[RecognitionResult]:
        loop = asyncio.get_running_loop()
        with tempfile.TemporaryDirectory(prefix="docflow-pdf-") as tmp_dir:
            try:
                page_paths = await loop.run_in_executor(
                    None, rasterize_pdf, pdf_path, tmp_dir, self._pdf_dpi,
                )
            except Exception as exc:
                logger.error("PDF rasterization failed | path=%s error=%s", pdf_path, exc)
                raise RecognitionError(f"PDF rasterization failed: {exc}") from exc

            return await self._recognize_pages(pdf_path, page_paths, options)

    async def extract_text_from_multi_page(
        self,
        path: str,
        document_type: str,
        options: RecognitionOptions | dict[str, Any] | None = None,
    ) -> list[RecognitionResult]:
        kind = document_type.lower()
        if kind == "pdf":
            return await self.extract_text_from_pdf(path, options)
        if kind in ("tiff", "tif") or path.lower().endswith((".tif", ".tiff")):
            return await self._extract_text_from_tiff(path, options)
        return [await self.extract_text(path, options)]

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    async def _extract_text_from_tiff(
        self,
        tiff_path: str,
        options: RecognitionOptions | dict[str, Any] | None,
    ) -> list[RecognitionResult]:
        loop = asyncio.get_running_loop()
        with tempfile.TemporaryDirectory(prefix="docflow-tiff-") as tmp_dir:
            try:
                frame_paths = await loop.run_in_executor(None, split_tiff_frames, tiff_path, tmp_dir)
            except Exception as exc:
                raise RecognitionError(f"Multi-page image split failed: {exc}") from exc

            if len(frame_paths) <= 1:
                for path in frame_paths:
                    _unlink_quietly(path)
                return [await self.extract_text(tiff_path, options)]
            return await self._recognize_pages(tiff_path, frame_paths, options)

    async def _recognize_pages(
        self,
        source_path: str,
        page_paths: list[str],
        options: RecognitionOptions | dict[str, Any] | None,
    ) -> list[RecognitionResult]:
        results: list[RecognitionResult] = []
        for number, page_path in enumerate(page_paths, start=1):
            try:
                results.append(await self.extract_text(page_path, options))
            except WorkerPoolClosedError:
                for remaining in page_paths[number:]:
                    _unlink_quietly(remaining)
                raise
            except Exception as exc:
                logger.warning("Page recognition failed | source=%s page=%d error=%s", source_path, number, exc)
            finally:
                _unlink_quietly(page_path)

        logger.info(
            "Multi-page recognition done | source=%s pages=%d recognized=%d",
            source_path, len(page_paths), len(results),
        )
        return results

    def _select_languages(self, requested: list[str] | None) -> list[str]:
        loaded = self._pool.languages
        if not requested:
            return [loaded[0]] if loaded else ["eng"]
        chosen = [lang for lang in requested if lang in loaded]
        if len(chosen) != len(requested):
            logger.warning(
                "Ignoring languages not loaded by the pool | requested=%s loaded=%s",
                requested, "+".join(loaded),
            )
        return chosen or ([loaded[0]] if loaded else ["eng"])
