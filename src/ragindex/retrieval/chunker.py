"""
Content-aware document chunking.

Splits large documents into bounded chunks while respecting:
    - Code structure (block ends, statement ends, declarations)
    - Prose structure (paragraphs, sentences, list items)
    - Forward progress (every loop iteration advances the cursor)

Documents past a size threshold are cut into coarse segments that are
chunked concurrently and concatenated in segment order.
"""

import logging
import os
import statistics
from collections import deque
from concurrent.futures import Executor, ProcessPoolExecutor, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Protocol, Sequence, Union

from ragindex.retrieval import patterns
from ragindex.retrieval.patterns import Breakpoint

logger = logging.getLogger(__name__)

MIN_CHUNK_SIZE = 100
MAX_CHUNK_TOKENS = 1024
CHARS_PER_TOKEN = 4
CODE_SIZE_FACTOR = 0.9
OSCILLATION_WINDOW = 5
MAX_OVERLAP_DIVISOR = 4


class ContentType(str, Enum):
    """Which breakpoint table a document is cut with."""

    CODE = "code"
    TEXT = "text"

    @classmethod
    def coerce(cls, value: Union["ContentType", str, None]) -> Optional["ContentType"]:
        """Map 'code'/'text' (any case) to a member; anything else to None."""
        if value is None or isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return None


@dataclass
class Chunk:
    """A bounded piece of one document."""

    content: str
    """The trimmed text of the chunk."""

    index: int
    """Position of the chunk within its ingestion call."""

    content_type: ContentType = ContentType.TEXT
    """Breakpoint table the chunk was cut with."""


@dataclass
class ChunkStats:
    """Summary of a chunking run, used for inspecting chunk quality."""

    count: int
    average_length: float
    min_length: int
    max_length: int
    std_dev: float
    issues: list[str] = field(default_factory=list)


# =============================================================================
# CPU affinity strategies
# =============================================================================

class AffinityStrategy(Protocol):
    """Optional hint pinning a chunking worker to a CPU."""

    def pin(self, worker_index: int) -> None:
        """Pin the calling worker; must never raise."""
        ...


class NoAffinity:
    """Default strategy: leave scheduling to the OS."""

    def pin(self, worker_index: int) -> None:
        return None


class LinuxAffinity:
    """Pin worker N to the Nth CPU the process may run on."""

    def pin(self, worker_index: int) -> None:
        if not hasattr(os, "sched_setaffinity"):
            return
        try:
            cpus = sorted(os.sched_getaffinity(0))
            if cpus:
                os.sched_setaffinity(0, {cpus[worker_index % len(cpus)]})
        except OSError as e:
            logger.debug(f"CPU affinity not applied for worker {worker_index}: {e}")


# =============================================================================
# Detection and sizing
# =============================================================================

def detect_content_type(text: str) -> ContentType:
    """
    Classify text as code or prose from a bounded sample.

    Scores indicator-token counts plus the ratios of indented lines, lines
    with code punctuation, and comment lines.

    Args:
        text: Document text (only the first few thousand characters are read)

    Returns:
        ContentType.CODE or ContentType.TEXT
    """
    sample = text[: patterns.DETECTION_SAMPLE_SIZE]

    code_score = sum(sample.count(indicator) for indicator in patterns.CODE_INDICATORS)

    lines = sample.splitlines(keepends=True)
    total_lines = max(1, len(lines))
    indentation_ratio = sum(1 for line in lines if patterns.INDENTED_LINE.match(line)) / total_lines
    code_char_ratio = sum(1 for line in lines if patterns.CODE_CHAR_LINE.search(line)) / total_lines
    comment_ratio = sum(1 for line in lines if patterns.COMMENT_LINE.match(line)) / total_lines

    final_score = (
        code_score
        + indentation_ratio * patterns.INDENTATION_WEIGHT
        + code_char_ratio * patterns.CODE_CHAR_WEIGHT
        + comment_ratio * patterns.COMMENT_WEIGHT
    )

    logger.debug(
        f"Content type detection: code_score={code_score}, indent_ratio={indentation_ratio:.2f}, "
        f"code_char_ratio={code_char_ratio:.2f}, comment_ratio={comment_ratio:.2f}, "
        f"final_score={final_score:.2f}"
    )

    if (
        final_score > patterns.CODE_SCORE_THRESHOLD
        or indentation_ratio > patterns.INDENTATION_THRESHOLD
        or code_char_ratio > patterns.CODE_CHAR_THRESHOLD
    ):
        return ContentType.CODE
    return ContentType.TEXT


def breakpoints_for(content_type: ContentType) -> Sequence[Breakpoint]:
    """Return the ordered breakpoint table for a content type."""
    if content_type is ContentType.CODE:
        return patterns.CODE_BREAKPOINTS
    return patterns.TEXT_BREAKPOINTS


def effective_chunk_size(chunk_size: int, content_type: ContentType) -> int:
    """
    Chunk length actually used by the cutting loop.

    Code is cut smaller, everything is capped near MAX_CHUNK_TOKENS tokens
    and floored at MIN_CHUNK_SIZE characters.
    """
    size = int(chunk_size * CODE_SIZE_FACTOR) if content_type is ContentType.CODE else chunk_size
    if size / CHARS_PER_TOKEN > MAX_CHUNK_TOKENS:
        size = MAX_CHUNK_TOKENS * CHARS_PER_TOKEN
    return max(size, MIN_CHUNK_SIZE)


def _find_breakpoint(search_text: str, table: Sequence[Breakpoint]) -> Optional[int]:
    """Offset just past the highest-priority pattern's last occurrence."""
    for bp in table:
        pos = search_text.rfind(bp.pattern)
        if pos != -1:
            return pos + len(bp.pattern)
    return None


def _find_fallback(search_text: str, is_code: bool) -> Optional[int]:
    if is_code:
        last = None
        for last in patterns.CODE_FALLBACK.finditer(search_text):
            pass
        if last is not None:
            return last.start() + 1
    pos = search_text.rfind(patterns.TEXT_FALLBACK)
    return pos + 1 if pos != -1 else None


# =============================================================================
# Sequential algorithm
# =============================================================================

def chunk_segment(
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    content_type: Union[ContentType, str, None] = None,
) -> list[str]:
    """
    Chunk one contiguous piece of text.

    Module-level so process pools can pickle it.

    Args:
        text: Text to split
        chunk_size: Target chunk size in characters (>= 1)
        chunk_overlap: Characters shared by consecutive chunks (< chunk_size),
            capped at a quarter of the effective chunk size
        content_type: Breakpoint table to use; detected when None

    Returns:
        Trimmed, non-empty chunks in document order
    """
    kind = ContentType.coerce(content_type) or detect_content_type(text)

    if len(text) <= chunk_size:
        stripped = text.strip()
        return [stripped] if stripped else []

    is_code = kind is ContentType.CODE
    effective = effective_chunk_size(chunk_size, kind)
    # Overlap is bounded by the size actually cut, not the requested one
    chunk_overlap = min(chunk_overlap, effective // MAX_OVERLAP_DIVISOR)
    table = breakpoints_for(kind)
    window = min(300, effective // 3) if is_code else min(200, effective // 5)
    min_step = 50 if is_code else 10

    chunks: list[str] = []
    text_length = len(text)
    position = 0
    recent: deque[int] = deque(maxlen=OSCILLATION_WINDOW)

    while position < text_length:
        end_pos = min(position + effective, text_length)

        if end_pos < text_length:
            search_start = max(end_pos - window, position)
            search_text = text[search_start:end_pos]
            offset = _find_breakpoint(search_text, table)
            if offset is None:
                offset = _find_fallback(search_text, is_code)
            if offset is not None:
                end_pos = search_start + offset

        chunk = text[position:end_pos].strip()
        if chunk:
            chunks.append(chunk)

        if end_pos >= text_length:
            break

        new_position = end_pos - chunk_overlap
        if new_position <= position:
            new_position = position + min_step
            logger.debug(f"Forced position advance by {min_step} characters to avoid stalling")
        position = new_position

        recent.append(position)
        if len(recent) == OSCILLATION_WINDOW and len(set(recent)) <= 2:
            jump = max(chunk_size // 2, MIN_CHUNK_SIZE)
            logger.warning(f"Detected potential infinite loop, jumping forward {jump} characters")
            position += jump
            recent.clear()

    logger.debug(f"Created {len(chunks)} chunks from {text_length} characters of {kind.value} content")
    return chunks


def _chunk_pinned(
    affinity: AffinityStrategy,
    worker_index: int,
    text: str,
    chunk_size: int,
    chunk_overlap: int,
    content_type: ContentType,
) -> list[str]:
    affinity.pin(worker_index)
    return chunk_segment(text, chunk_size, chunk_overlap, content_type)


# =============================================================================
# Chunker
# =============================================================================

class Chunker:
    """
    Split documents into bounded, content-aware chunks.

    Small and medium documents run the sequential algorithm directly. Very
    large documents are split into overlapping segments, chunked on a
    bounded worker pool, concatenated in segment order and de-duplicated.
    Global order across segments is approximate.

    Example:
        >>> chunker = Chunker()
        >>> chunker.chunk("a" * 50, chunk_size=100, chunk_overlap=10)
        ['aaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaaa']
    """

    def __init__(
        self,
        parallel_threshold: int = 1_000_000,
        max_workers: Optional[int] = None,
        pool_timeout: float = 60.0,
        use_processes: bool = False,
        affinity: Optional[AffinityStrategy] = None,
    ) -> None:
        """
        Initialize the chunker.

        Args:
            parallel_threshold: Documents at least this long use the segment pool
            max_workers: Pool size (default: available CPUs)
            pool_timeout: Seconds to wait for segment workers before abandoning them
            use_processes: Use a process pool instead of threads
            affinity: CPU pinning hint for workers (default: none)
        """
        self.parallel_threshold = parallel_threshold
        self.max_workers = max(1, max_workers or os.cpu_count() or 1)
        self.pool_timeout = pool_timeout
        self.use_processes = use_processes
        self.affinity = affinity or NoAffinity()

    def chunk(
        self,
        text: Optional[str],
        chunk_size: int,
        chunk_overlap: int,
        content_type: Union[ContentType, str, None] = None,
    ) -> list[str]:
        """
        Split text into chunks. Never raises and always terminates.

        Args:
            text: Document text
            chunk_size: Target chunk size in characters
            chunk_overlap: Overlap between consecutive chunks
            content_type: 'code' or 'text'; detected when omitted

        Returns:
            Ordered list of non-empty chunk strings
        """
        if not text:
            return []

        if chunk_size < 1:
            logger.warning(f"chunk_size {chunk_size} is not positive, using 1")
            chunk_size = 1
        if chunk_overlap < 0 or chunk_overlap >= chunk_size:
            clamped = min(max(chunk_overlap, 0), chunk_size - 1)
            logger.warning(f"chunk_overlap {chunk_overlap} out of range, using {clamped}")
            chunk_overlap = clamped

        if len(text) <= chunk_size:
            stripped = text.strip()
            return [stripped] if stripped else []

        kind = ContentType.coerce(content_type)

        if len(text) < self.parallel_threshold:
            logger.debug("Text below parallel threshold, using sequential chunking")
            return chunk_segment(text, chunk_size, chunk_overlap, kind)

        kind = kind or detect_content_type(text)
        logger.debug(f"Detected content type: {kind.value}")
        return self._chunk_parallel(text, chunk_size, chunk_overlap, kind)

    def split(
        self,
        text: Optional[str],
        chunk_size: int,
        chunk_overlap: int,
        content_type: Union[ContentType, str, None] = None,
    ) -> list[Chunk]:
        """Like chunk(), but returns indexed Chunk objects."""
        kind = ContentType.coerce(content_type) or (
            detect_content_type(text) if text else ContentType.TEXT
        )
        return [
            Chunk(content=content, index=i, content_type=kind)
            for i, content in enumerate(self.chunk(text, chunk_size, chunk_overlap, kind))
        ]

    def split_into_segments(
        self,
        text: str,
        chunk_size: int,
        content_type: ContentType,
    ) -> list[str]:
        """
        Cut text into overlapping coarse segments for parallel chunking.

        Aims for twice as many segments as workers, each at least ten chunks
        long, ending at a natural breakpoint where one is close by.
        """
        target_count = self.max_workers * 2
        segment_size = max(len(text) // target_count, chunk_size * 10)
        segment_overlap = chunk_size
        window = min(500, segment_size // 10)
        table = breakpoints_for(content_type)

        segments: list[str] = []
        position = 0
        text_length = len(text)

        while position < text_length:
            end_pos = min(position + segment_size, text_length)

            if end_pos < text_length:
                search_start = max(end_pos - window, position)
                search_text = text[search_start:end_pos]
                offset = _find_breakpoint(search_text, table)
                if offset is None:
                    newline = search_text.rfind(patterns.SEGMENT_FALLBACK)
                    offset = newline + 1 if newline != -1 else None
                if offset is not None:
                    end_pos = search_start + offset

            segment = text[position:end_pos]
            if segment:
                segments.append(segment)

            if end_pos >= text_length:
                break
            position = max(end_pos - segment_overlap, position + 1)

        return segments

    def _executor(self, worker_count: int) -> Executor:
        if self.use_processes:
            return ProcessPoolExecutor(max_workers=worker_count)
        return ThreadPoolExecutor(max_workers=worker_count, thread_name_prefix="chunker")

    def _chunk_parallel(
        self,
        text: str,
        chunk_size: int,
        chunk_overlap: int,
        content_type: ContentType,
    ) -> list[str]:
        segments = self.split_into_segments(text, chunk_size, content_type)
        if not segments:
            return []

        worker_count = min(self.max_workers, len(segments))
        logger.debug(f"Split text into {len(segments)} segments for {worker_count} workers")

        executor = self._executor(worker_count)
        try:
            futures = [
                executor.submit(
                    _chunk_pinned,
                    self.affinity,
                    idx % worker_count,
                    segment,
                    chunk_size,
                    chunk_overlap,
                    content_type,
                )
                for idx, segment in enumerate(segments)
            ]
            done, not_done = wait(futures, timeout=self.pool_timeout)
            if not_done:
                logger.warning(
                    f"{len(not_done)}/{len(futures)} segments unfinished after "
                    f"{self.pool_timeout}s, returning partial results"
                )

            all_chunks: list[str] = []
            for idx, future in enumerate(futures):
                if future not in done:
                    continue
                try:
                    all_chunks.extend(future.result())
                except Exception as e:
                    logger.error(f"Error processing segment {idx + 1}: {e}")
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        unique = list(dict.fromkeys(all_chunks))
        logger.debug(
            f"Parallel chunking completed - {len(all_chunks)} chunks, {len(unique)} after de-duplication"
        )
        return unique


def analyze_chunks(chunks: Sequence[str]) -> Optional[ChunkStats]:
    """
    Compute size statistics and flag likely chunking problems.

    Args:
        chunks: Chunk strings from one document

    Returns:
        ChunkStats, or None for an empty input
    """
    if not chunks:
        return None

    lengths = [len(c) for c in chunks]
    average = sum(lengths) / len(lengths)
    std_dev = statistics.pstdev(lengths)
    issues: list[str] = []

    small = sum(1 for n in lengths if n < 100)
    if small:
        issues.append(f"Found {small} very small chunks (< 100 chars)")

    large = sum(1 for n in lengths if n > 1000)
    if large:
        issues.append(f"Found {large} very large chunks (> 1000 chars)")

    if std_dev > average * 0.5:
        issues.append(f"High variance in chunk sizes (std dev: {std_dev:.2f})")

    duplicates = len(chunks) - len(set(chunks))
    if duplicates:
        issues.append(f"Found {duplicates} duplicate chunks")

    bad_endings = sum(1 for c in chunks if c.endswith((",", " and", " or", " the", " a", " an")))
    if bad_endings:
        issues.append(f"Found {bad_endings} chunks with potentially bad break points")

    return ChunkStats(
        count=len(chunks),
        average_length=average,
        min_length=min(lengths),
        max_length=max(lengths),
        std_dev=std_dev,
        issues=issues,
    )
