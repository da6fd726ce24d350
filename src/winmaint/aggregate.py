"""!
@brief Result aggregator folding item results into a module result.
@details Counting rules: ``Applied``, ``AlreadySatisfied`` and ``Simulated``
are processed; ``Failed`` is failed; ``ManualRequired`` is tracked on its own
and is neither. The error list carries one line per failed item, in original
item order, quoting only the last attempted backend's error so reports stay
scannable.
"""
from __future__ import annotations

from typing import List, Sequence

from . import constants, logging_ext
from .models import PROCESSED_STATUSES, FinalStatus, ItemResult, ModuleResult, ModuleStatus

__all__ = ["derive_status", "format_error", "aggregate"]


def derive_status(items_detected: int, items_processed: int, items_failed: int) -> ModuleStatus:
    """!
    @brief Map item counts to the module status.
    """

    if items_detected == 0:
        return ModuleStatus.SKIPPED
    if items_failed == 0:
        return ModuleStatus.SUCCESS
    if items_processed > 0:
        return ModuleStatus.PARTIAL_SUCCESS
    return ModuleStatus.FAILED


def format_error(result: ItemResult) -> str:
    """!
    @brief ``"[Name] message"`` line for one failed item.
    @details Configuration and cancellation failures are prefixed with their
    tag since no backend ran for them.
    """

    detail = result.last_error or "all backends failed"
    if result.error_tag in (constants.ERROR_TAG_CONFIGURATION, constants.ERROR_TAG_CANCELLED):
        detail = f"{result.error_tag}: {detail}"
    return f"[{result.item.name}] {detail}"


def aggregate(
    module_name: str,
    results: Sequence[ItemResult],
    *,
    items_detected: int | None = None,
    duration_ms: float = 0.0,
    dry_run: bool = False,
    cancelled: bool = False,
) -> ModuleResult:
    """!
    @brief Build the :class:`ModuleResult` for one module run.
    @param module_name Name reported to the orchestrator.
    @param results Item results in any order; sorted by ``index`` here.
    @param items_detected Defaults to ``len(results)``.
    """

    ordered = sorted(results, key=lambda result: result.index)
    detected = len(ordered) if items_detected is None else items_detected
    processed = sum(1 for result in ordered if result.final_status in PROCESSED_STATUSES)
    failed = [result for result in ordered if result.final_status is FinalStatus.FAILED]
    manual = sum(1 for result in ordered if result.final_status is FinalStatus.MANUAL_REQUIRED)
    errors: List[str] = [format_error(result) for result in failed]

    module_result = ModuleResult(
        module_name=module_name,
        status=derive_status(detected, processed, len(failed)),
        items_detected=detected,
        items_processed=processed,
        items_failed=len(failed),
        items_manual_required=manual,
        errors=tuple(errors),
        duration_ms=duration_ms,
        dry_run=dry_run,
        cancelled=cancelled,
        item_results=tuple(ordered),
    )

    logging_ext.get_machine_logger().info(
        "module_summary",
        extra=logging_ext.build_event_extra("module_summary", **module_result.to_dict(include_items=False)),
    )
    return module_result
