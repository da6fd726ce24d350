"""!
@brief Tests for batching, bounded concurrency and cancellation.
"""
from __future__ import annotations

import threading
import time

import pytest

from _fakes import make_item
from winmaint import constants
from winmaint.errors import ConfigurationError
from winmaint.models import FinalStatus, ItemResult
from winmaint.scheduler import BatchScheduler, CancellationToken, chunk


@pytest.mark.parametrize("size", [1, 2, 3, 7, 10])
def test_chunk_preserves_order_and_sizes(size: int) -> None:
    items = list(range(7))

    batches = chunk(items, size)

    assert [value for batch in batches for value in batch] == items
    assert all(len(batch) == size for batch in batches[:-1])
    assert 0 < len(batches[-1]) <= size


def test_chunk_of_empty_list_is_empty() -> None:
    assert chunk([], 3) == []


@pytest.mark.parametrize("size", [0, -1, True, 2.5])
def test_chunk_rejects_invalid_sizes(size) -> None:
    with pytest.raises(ConfigurationError):
        chunk([1, 2], size)


def _pairs(count: int):
    return [(index, make_item(f"item-{index}")) for index in range(count)]


def _applied(index: int, item) -> ItemResult:
    return ItemResult(item=item, final_status=FinalStatus.APPLIED)


def test_results_follow_original_order_despite_completion_order() -> None:
    def worker(index: int, item) -> ItemResult:
        time.sleep(0.02 * (4 - index % 4))
        return _applied(index, item)

    results, cancelled = BatchScheduler(4).run(_pairs(8), worker)

    assert not cancelled
    assert [result.item.name for result in results] == [f"item-{index}" for index in range(8)]
    assert [result.index for result in results] == list(range(8))


def test_concurrency_never_exceeds_batch_size() -> None:
    lock = threading.Lock()
    active = 0
    peak = 0

    def worker(index: int, item) -> ItemResult:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.02)
        with lock:
            active -= 1
        return _applied(index, item)

    BatchScheduler(3).run(_pairs(10), worker)

    assert 1 <= peak <= 3


def test_batches_run_sequentially() -> None:
    finished: list[int] = []
    started_with: dict[int, int] = {}
    lock = threading.Lock()

    def worker(index: int, item) -> ItemResult:
        with lock:
            started_with[index] = len(finished)
        time.sleep(0.01)
        with lock:
            finished.append(index)
        return _applied(index, item)

    BatchScheduler(2).run(_pairs(6), worker)

    # Items of batch n start only after every item of earlier batches finished.
    for index, done_before in started_with.items():
        assert done_before >= (index // 2) * 2


def test_worker_exception_is_isolated() -> None:
    def worker(index: int, item) -> ItemResult:
        if index == 1:
            raise RuntimeError("worker blew up")
        return _applied(index, item)

    results, _ = BatchScheduler(3).run(_pairs(3), worker)

    assert [result.final_status for result in results] == [
        FinalStatus.APPLIED,
        FinalStatus.FAILED,
        FinalStatus.APPLIED,
    ]
    assert "worker blew up" in results[1].last_error
    assert results[1].error_tag == constants.ERROR_TAG_EXECUTION


def test_cancellation_between_batches() -> None:
    token = CancellationToken()

    def worker(index: int, item) -> ItemResult:
        token.cancel()
        return _applied(index, item)

    results, cancelled = BatchScheduler(2, cancel_token=token).run(_pairs(5), worker)

    assert cancelled
    assert [result.final_status for result in results[:2]] == [FinalStatus.APPLIED, FinalStatus.APPLIED]
    assert all(result.final_status is FinalStatus.FAILED for result in results[2:])
    assert all(result.error_tag == constants.ERROR_TAG_CANCELLED for result in results[2:])
    assert [result.index for result in results] == list(range(5))


def test_scheduler_rejects_zero_batch_size() -> None:
    with pytest.raises(ConfigurationError):
        BatchScheduler(0)
