"""!
@brief Batch scheduler with bounded per-batch concurrency.
@details Items are split into fixed-size batches that run one after another.
Inside a batch every item gets its own worker thread from a pool created for
that batch only, so two modules processed in sequence never share a throttle.
Workers hand their result back through the future they run in; only the
scheduler thread writes into the result list, indexed by original position,
which keeps output order independent of completion order.
"""
from __future__ import annotations

import threading
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from typing import Callable, Dict, List, Sequence, Tuple, TypeVar

from . import constants, logging_ext
from .errors import ConfigurationError
from .fallback import describe_exception
from .models import DiffItem, FinalStatus, ItemResult

__all__ = ["CancellationToken", "BatchScheduler", "chunk"]

T = TypeVar("T")


def chunk(items: Sequence[T], size: int) -> List[List[T]]:
    """!
    @brief Split ``items`` into consecutive batches of ``size`` elements.
    @details Pure: concatenating the batches yields ``items`` in order, and
    every batch except possibly the last holds exactly ``size`` elements.
    @throws ConfigurationError When ``size`` is not a positive integer.
    """

    if isinstance(size, bool) or not isinstance(size, int) or size <= 0:
        raise ConfigurationError(f"batch size must be a positive integer, got {size!r}")
    return [list(items[start : start + size]) for start in range(0, len(items), size)]


class CancellationToken:
    """!
    @brief Cooperative cancellation flag checked between batches.
    @details In-flight backend calls are never interrupted; cancellation takes
    effect at the next batch boundary.
    """

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


Worker = Callable[[int, DiffItem], ItemResult]


class BatchScheduler:
    """!
    @brief Run a worker over diff items in sequential, internally parallel batches.
    """

    def __init__(self, batch_size: int, *, cancel_token: CancellationToken | None = None) -> None:
        if isinstance(batch_size, bool) or not isinstance(batch_size, int) or batch_size <= 0:
            raise ConfigurationError(f"batch size must be a positive integer, got {batch_size!r}")
        self._batch_size = batch_size
        self._cancel_token = cancel_token or CancellationToken()
        self._human_logger = logging_ext.get_human_logger()
        self._machine_logger = logging_ext.get_machine_logger()

    @property
    def batch_size(self) -> int:
        return self._batch_size

    def run(self, items: Sequence[Tuple[int, DiffItem]], worker: Worker) -> Tuple[List[ItemResult], bool]:
        """!
        @brief Execute ``worker(index, item)`` for every entry.
        @param items ``(original_index, item)`` pairs in run order.
        @param worker Callable resolving one item; expected not to raise.
        @returns ``(results, cancelled)`` with results sorted by original index.
        Items never started because of cancellation resolve to ``Failed``
        tagged ``cancelled``.
        """

        batches = chunk(list(items), self._batch_size)
        collected: Dict[int, ItemResult] = {}
        cancelled = False

        for number, batch in enumerate(batches, start=1):
            if self._cancel_token.cancelled:
                cancelled = True
                for index, item in batch:
                    collected[index] = self._cancelled_result(index, item)
                continue

            self._machine_logger.info(
                "batch_start",
                extra=logging_ext.build_event_extra(
                    "batch_start", batch=number, batches=len(batches), size=len(batch)
                ),
            )
            with ThreadPoolExecutor(
                max_workers=min(self._batch_size, len(batch)),
                thread_name_prefix=f"winmaint-batch{number}",
            ) as pool:
                futures: Dict[Future[ItemResult], Tuple[int, DiffItem]] = {
                    pool.submit(worker, index, item): (index, item) for index, item in batch
                }
                for future in as_completed(futures):
                    index, item = futures[future]
                    collected[index] = self._collect(future, index, item)
            self._machine_logger.info(
                "batch_complete",
                extra=logging_ext.build_event_extra("batch_complete", batch=number, size=len(batch)),
            )

        if cancelled:
            self._human_logger.warning("Run cancelled; remaining batches were not started")
        return [collected[index] for index in sorted(collected)], cancelled

    def _collect(self, future: "Future[ItemResult]", index: int, item: DiffItem) -> ItemResult:
        try:
            result = future.result()
        except Exception as exc:  # noqa: BLE001
            self._human_logger.error("Worker for %s raised unexpectedly: %s", item.name, exc)
            return ItemResult(
                item=item,
                final_status=FinalStatus.FAILED,
                error_tag=constants.ERROR_TAG_EXECUTION,
                error_detail=describe_exception(exc),
                index=index,
            )
        result.index = index
        return result

    @staticmethod
    def _cancelled_result(index: int, item: DiffItem) -> ItemResult:
        return ItemResult(
            item=item,
            final_status=FinalStatus.FAILED,
            error_tag=constants.ERROR_TAG_CANCELLED,
            error_detail="cancelled before execution",
            index=index,
        )
