"""
Concurrency-Bounded Batch Processor

Runs a worker over every item of a batch:

- items are split into sub-batches of chunk_size
- at most max_concurrency sub-batches run at once (semaphore owned by the instance)
- items inside a sub-batch run one after another
- an item failure is recorded and never cancels its siblings
"""
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Generic, List, Optional, Sequence, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")
R = TypeVar("R")

DEFAULT_CHUNK_SIZE = 10
DEFAULT_MAX_CONCURRENCY = 3


@dataclass
class ItemFailure(Generic[T]):
    item: T
    index: int
    error: BaseException


@dataclass
class BatchRunResult(Generic[R]):
    results: List[R] = field(default_factory=list)
    errors: List[ItemFailure] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.results) + len(self.errors)


ProgressCallback = Callable[[int, int], Any]


class BatchProcessor:
    def __init__(self, chunk_size: int = DEFAULT_CHUNK_SIZE, max_concurrency: int = DEFAULT_MAX_CONCURRENCY):
        if chunk_size < 1:
            raise ValueError("chunk_size must be at least 1")
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.chunk_size = chunk_size
        self.max_concurrency = max_concurrency
        self._semaphore = asyncio.Semaphore(max_concurrency)

    def chunks(self, items: Sequence[T]) -> List[List[T]]:
        return [list(items[i:i + self.chunk_size]) for i in range(0, len(items), self.chunk_size)]

    async def run(
        self,
        items: Sequence[T],
        worker: Callable[[T], Awaitable[R]],
        on_progress: Optional[ProgressCallback] = None,
    ) -> BatchRunResult[R]:
        """
        Apply worker to every item.

        Args:
            items: Work items, in queue order
            worker: Async callable for one item
            on_progress: Called with (completed, total) after each item; may be async

        Returns:
            BatchRunResult with the successful results and one ItemFailure per failed item
        """
        items = list(items)
        total = len(items)
        result: BatchRunResult[R] = BatchRunResult()
        if not items:
            return result

        completed = 0

        async def run_chunk(chunk_index: int, chunk: List[T]):
            nonlocal completed
            async with self._semaphore:
                for offset, item in enumerate(chunk):
                    index = chunk_index * self.chunk_size + offset
                    try:
                        result.results.append(await worker(item))
                    except Exception as e:
                        logger.warning(f"[BatchProcessor] Item {index} failed: {type(e).__name__}: {e}")
                        result.errors.append(ItemFailure(item=item, index=index, error=e))
                    completed += 1
                    if on_progress is not None:
                        outcome = on_progress(completed, total)
                        if asyncio.iscoroutine(outcome):
                            await outcome

        chunks = self.chunks(items)
        logger.info(
            f"[BatchProcessor] {total} item(s) in {len(chunks)} sub-batch(es), "
            f"concurrency {self.max_concurrency}"
        )
        await asyncio.gather(*(run_chunk(i, chunk) for i, chunk in enumerate(chunks)))
        return result
