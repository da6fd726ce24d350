"""!
@brief Reconciliation engine entry points.
@details :class:`ReconcileEngine` wires the dispatcher, idempotency guard,
fallback chain, batch scheduler and aggregator together for one module run.
The engine performs no I/O of its own; every side effect happens inside a
backend. Only :class:`~winmaint.errors.ConfigurationError` (invalid options or
dispatch table) and :class:`~winmaint.errors.DiffSourceError` abort a run.
"""
from __future__ import annotations

import time
from typing import Iterable, List, Mapping, Sequence, Tuple

from . import constants, logging_ext
from .action_backend import ActionBackend
from .aggregate import aggregate
from .constants import ActionKind
from .diff_source import DiffSource
from .dispatch import ActionDispatcher
from .dry_run import DryRunSimulator
from .errors import ConfigurationError, DiffSourceError
from .fallback import FallbackChainExecutor
from .guard import IdempotencyGuard
from .models import DiffItem, FinalStatus, ItemResult, ModuleResult
from .options import ReconcileOptions
from .scheduler import BatchScheduler, CancellationToken

__all__ = ["ReconcileEngine", "filter_items"]


def _excluded_platforms(item: DiffItem) -> Tuple[str, ...]:
    raw = item.metadata.get("excluded_platforms") or ()
    if isinstance(raw, str):
        raw = raw.split(",")
    return tuple(str(value).strip().lower() for value in raw if str(value).strip())


def filter_items(items: Iterable[DiffItem], options: ReconcileOptions) -> List[DiffItem]:
    """!
    @brief Apply category and platform filters from item metadata.
    @details Items without a category are dropped only when a category
    filter is active. Order is preserved.
    """

    selected: List[DiffItem] = []
    categories = {value.lower() for value in options.control_categories or ()}
    platform = (options.platform or "").strip().lower()
    for item in items:
        if categories and (item.category or "").lower() not in categories:
            continue
        if platform and platform in _excluded_platforms(item):
            continue
        selected.append(item)
    return selected


class ReconcileEngine:
    """!
    @brief Drive diff items through their backends for one module at a time.
    @details The dispatch table is built and validated once, in the
    constructor. ``verify_attempts``/``verify_delay`` apply only to runs
    started without explicit :class:`ReconcileOptions`.
    """

    def __init__(
        self,
        backends: Iterable[ActionBackend],
        *,
        priority: Mapping[ActionKind, Sequence[str]] | None = None,
        verify_attempts: int = constants.DEFAULT_VERIFY_ATTEMPTS,
        verify_delay: float = constants.DEFAULT_VERIFY_DELAY,
    ) -> None:
        self._dispatcher = ActionDispatcher(backends, priority)
        self._verify_attempts = verify_attempts
        self._verify_delay = verify_delay
        self._human_logger = logging_ext.get_human_logger()
        self._machine_logger = logging_ext.get_machine_logger()

    @property
    def dispatcher(self) -> ActionDispatcher:
        return self._dispatcher

    @staticmethod
    def _guard_for(options: ReconcileOptions) -> IdempotencyGuard:
        return IdempotencyGuard(
            verify_attempts=options.verify_attempts, verify_delay=options.verify_delay
        )

    @staticmethod
    def _rejected(index: int, item: DiffItem, exc: ConfigurationError) -> ItemResult:
        return ItemResult(
            item=item,
            final_status=FinalStatus.FAILED,
            error_tag=constants.ERROR_TAG_CONFIGURATION,
            error_detail=str(exc),
            index=index,
        )

    def reconcile(
        self,
        module_name: str,
        items: Sequence[DiffItem],
        options: ReconcileOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ModuleResult:
        """!
        @brief Reconcile ``items`` and fold the outcome into a module result.
        @param module_name Name reported in logs and the result.
        @param items Diff list produced by the audit step.
        @param options Per-run options; defaults when omitted.
        @param cancel_token Checked between batches.
        @throws ConfigurationError For invalid options; raised before any
        backend is touched.
        """

        options = options or ReconcileOptions(
            verify_attempts=self._verify_attempts, verify_delay=self._verify_delay
        )
        options.validate()

        started = time.perf_counter()
        selected = filter_items(items, options)
        self._human_logger.info(
            "Reconciling %s: %d item(s)%s",
            module_name,
            len(selected),
            " [dry-run]" if options.dry_run else "",
        )

        rejected: List[ItemResult] = []
        runnable: List[Tuple[int, DiffItem]] = []
        for index, item in enumerate(selected):
            try:
                self._dispatcher.validate(item)
            except ConfigurationError as exc:
                self._human_logger.error("%s rejected: %s", item.name, exc)
                rejected.append(self._rejected(index, item, exc))
                continue
            runnable.append((index, item))

        results: List[ItemResult] = list(rejected)
        cancelled = False
        if runnable:
            batch_size = options.batch_size or self._dispatcher.batch_size_for(
                item.kind for _, item in runnable
            )
            executor = FallbackChainExecutor(
                self._guard_for(options),
                dry_run=options.dry_run,
                simulator=DryRunSimulator(),
            )

            def _worker(index: int, item: DiffItem) -> ItemResult:
                return executor.execute(self._dispatcher.plan(item), index=index)

            scheduler = BatchScheduler(batch_size, cancel_token=cancel_token)
            scheduled, cancelled = scheduler.run(runnable, _worker)
            results.extend(scheduled)

        duration_ms = (time.perf_counter() - started) * 1000.0
        result = aggregate(
            module_name,
            results,
            items_detected=len(selected),
            duration_ms=duration_ms,
            dry_run=options.dry_run,
            cancelled=cancelled,
        )
        self._human_logger.info(
            "%s: %s (%d processed, %d failed, %d manual)",
            module_name,
            result.status.value,
            result.items_processed,
            result.items_failed,
            result.items_manual_required,
        )
        return result

    def run_module(
        self,
        module_name: str,
        source: DiffSource,
        options: ReconcileOptions | None = None,
        cancel_token: CancellationToken | None = None,
    ) -> ModuleResult:
        """!
        @brief Fetch the diff list for ``module_name`` and reconcile it.
        @throws DiffSourceError When the prober fails.
        """

        try:
            items = list(source.get_diff_list(module_name))
        except DiffSourceError:
            raise
        except Exception as exc:
            self._machine_logger.error(
                "diff_source_error",
                extra=logging_ext.build_event_extra(
                    "diff_source_error", module_name=module_name, error=repr(exc)
                ),
            )
            raise DiffSourceError(module_name, str(exc) or type(exc).__name__) from exc
        return self.reconcile(module_name, items, options, cancel_token)
