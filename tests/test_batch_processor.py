"""
Tests for the concurrency-bounded batch processor.
"""
import asyncio

import pytest

from bookstack.services.batch_processor import BatchProcessor


async def double(n: int) -> int:
    await asyncio.sleep(0)
    return n * 2


@pytest.mark.asyncio
async def test_processes_every_item():
    result = await BatchProcessor(chunk_size=3, max_concurrency=2).run(range(10), double)

    assert sorted(result.results) == [n * 2 for n in range(10)]
    assert result.errors == []
    assert result.total == 10


@pytest.mark.asyncio
async def test_empty_batch():
    result = await BatchProcessor().run([], double)
    assert result.total == 0


@pytest.mark.asyncio
async def test_failures_are_isolated():
    async def worker(n: int) -> int:
        if n % 4 == 0:
            raise ValueError(f"bad item {n}")
        return n

    result = await BatchProcessor(chunk_size=3, max_concurrency=2).run(range(10), worker)

    assert sorted(result.results) == [1, 2, 3, 5, 6, 7, 9]
    assert sorted(f.index for f in result.errors) == [0, 4, 8]
    assert all(isinstance(f.error, ValueError) for f in result.errors)
    assert {f.item for f in result.errors} == {0, 4, 8}


@pytest.mark.asyncio
async def test_concurrency_is_bounded():
    active = 0
    peak = 0

    async def worker(n: int) -> int:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.001)
        active -= 1
        return n

    await BatchProcessor(chunk_size=2, max_concurrency=3).run(range(20), worker)

    assert peak == 3


@pytest.mark.asyncio
async def test_items_in_a_chunk_run_in_order():
    seen = []

    async def worker(n: int) -> int:
        seen.append(n)
        await asyncio.sleep(0)
        return n

    await BatchProcessor(chunk_size=5, max_concurrency=1).run(range(10), worker)

    assert seen == list(range(10))


@pytest.mark.asyncio
async def test_progress_callbacks():
    sync_calls = []
    async_calls = []

    async def record(completed, total):
        async_calls.append((completed, total))

    processor = BatchProcessor(chunk_size=2, max_concurrency=2)
    await processor.run(range(5), double, on_progress=lambda c, t: sync_calls.append((c, t)))
    await processor.run(range(3), double, on_progress=record)

    assert [c for c, _ in sync_calls] == [1, 2, 3, 4, 5]
    assert {t for _, t in sync_calls} == {5}
    assert async_calls[-1] == (3, 3)


def test_chunks():
    assert BatchProcessor(chunk_size=4).chunks(list(range(10))) == [[0, 1, 2, 3], [4, 5, 6, 7], [8, 9]]


@pytest.mark.parametrize("options", [{"chunk_size": 0}, {"max_concurrency": 0}])
def test_invalid_options(options):
    with pytest.raises(ValueError):
        BatchProcessor(**options)
