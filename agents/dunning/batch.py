"""Chunked batch processing with field-wise result aggregation.

Work is split into fixed-size chunks that are processed sequentially or on
a bounded thread pool. Partial results are merged in chunk-index order, so
neither chunk size nor completion order changes the aggregate.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Sequence
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Generic, Protocol, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R", bound="Mergeable")

DEFAULT_CHUNK_SIZE = 100


class Mergeable(Protocol):
    def merge(self, other): ...


@dataclass(frozen=True)
class ChunkProgress:
    """Progress snapshot passed to the progress callback."""

    chunk_index: int
    chunks_completed: int
    chunks_total: int
    failed: bool = False

    @property
    def fraction(self) -> float:
        if self.chunks_total == 0:
            return 1.0
        return self.chunks_completed / self.chunks_total


@dataclass
class BatchRun(Generic[R]):
    """Aggregate of a batch run."""

    result: R
    chunks_total: int
    chunks_completed: int
    chunks_failed: int = 0
    cancelled: bool = False


def chunked(items: Sequence[T], size: int) -> list[list[T]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [list(items[i : i + size]) for i in range(0, len(items), size)]


class BatchAggregator:
    """Process a collection in chunks and merge the partial results.

    Result types provide ``merge(other)`` plus two constructors: a no-arg
    constructor for the empty result and ``failed_chunk(size, reason)``
    for a chunk whose processing raised.
    """

    def __init__(
        self,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        max_workers: int = 1,
        on_progress: Callable[[ChunkProgress], None] | None = None,
        cancel_event: threading.Event | None = None,
    ):
        if chunk_size < 1:
            raise ValueError("chunk_size must be >= 1")
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.chunk_size = chunk_size
        self.max_workers = max_workers
        self.on_progress = on_progress
        self.cancel_event = cancel_event or threading.Event()

    def cancel(self) -> None:
        """Request cancellation; takes effect before the next chunk starts."""
        self.cancel_event.set()

    def run(
        self,
        items: Sequence[T],
        process_chunk: Callable[[list[T]], R],
        result_type: type[R],
    ) -> BatchRun[R]:
        """Run ``process_chunk`` over all chunks of ``items``.

        Args:
            items: Input collection
            process_chunk: Function computing the partial result of a chunk
            result_type: Result class used for the empty and failed results

        Returns:
            Merged result with chunk progress and the cancellation flag
        """
        chunks = chunked(items, self.chunk_size)
        total = len(chunks)
        partials: dict[int, R] = {}
        failed: set[int] = set()

        if self.max_workers == 1 or total <= 1:
            cancelled = self._run_sequential(chunks, process_chunk, result_type, partials, failed)
        else:
            cancelled = self._run_pooled(chunks, process_chunk, result_type, partials, failed)

        result = result_type()
        for index in sorted(partials):
            result = result.merge(partials[index])

        if cancelled:
            logger.warning(
                "Batch run cancelled",
                extra={"chunks_completed": len(partials), "chunks_total": total},
            )
        return BatchRun(
            result=result,
            chunks_total=total,
            chunks_completed=len(partials),
            chunks_failed=len(failed),
            cancelled=cancelled,
        )

    def _process(
        self,
        index: int,
        chunk: list[T],
        process_chunk: Callable[[list[T]], R],
        result_type: type[R],
    ) -> tuple[R, bool]:
        try:
            return process_chunk(chunk), False
        except Exception as e:
            logger.error(
                "Chunk processing failed",
                extra={"chunk_index": index, "chunk_size": len(chunk), "error": str(e)},
            )
            return result_type.failed_chunk(len(chunk), f"chunk {index}: {e}"), True

    def _record(
        self,
        index: int,
        outcome: tuple[R, bool],
        total: int,
        partials: dict[int, R],
        failed: set[int],
    ) -> None:
        partial, chunk_failed = outcome
        partials[index] = partial
        if chunk_failed:
            failed.add(index)
        if self.on_progress is not None:
            self.on_progress(
                ChunkProgress(
                    chunk_index=index,
                    chunks_completed=len(partials),
                    chunks_total=total,
                    failed=chunk_failed,
                )
            )

    def _run_sequential(self, chunks, process_chunk, result_type, partials, failed) -> bool:
        for index, chunk in enumerate(chunks):
            if self.cancel_event.is_set():
                return True
            outcome = self._process(index, chunk, process_chunk, result_type)
            self._record(index, outcome, len(chunks), partials, failed)
        return False

    def _run_pooled(self, chunks, process_chunk, result_type, partials, failed) -> bool:
        total = len(chunks)
        pending: dict[Future, int] = {}
        next_index = 0
        cancelled = False

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            while next_index < total or pending:
                # Keep at most max_workers chunks in flight
                while next_index < total and len(pending) < self.max_workers:
                    if self.cancel_event.is_set():
                        cancelled = True
                        break
                    future = executor.submit(
                        self._process, next_index, chunks[next_index], process_chunk, result_type
                    )
                    pending[future] = next_index
                    next_index += 1

                if cancelled and not pending:
                    break
                if not pending:
                    continue

                done, _ = wait(pending, return_when=FIRST_COMPLETED)
                for future in done:
                    index = pending.pop(future)
                    self._record(index, future.result(), total, partials, failed)

                if cancelled:
                    next_index = total

        return cancelled
