"""!
@brief Rendering of module results for consoles and report files.
@details The JSON report groups module results under ``modules`` with a
``summary`` block of totals and a ``metadata`` block tying the report to the
run that produced it, so a dashboard can filter modules by name and status
without reading the logs.
"""
from __future__ import annotations

import datetime
import json
import pathlib
import platform
from typing import Dict, Iterable, List, Mapping

from . import logging_ext, version
from .models import ModuleResult, ModuleStatus

__all__ = ["REPORT_VERSION", "format_summary", "build_report", "write_report"]

REPORT_VERSION = "1"


def format_summary(result: ModuleResult) -> str:
    """!
    @brief One-line console summary for a module run.
    """

    dry_run = " [dry-run]" if result.dry_run else ""
    cancelled = " [cancelled]" if result.cancelled else ""
    line = (
        f"{result.module_name}: {result.status.value}{dry_run}{cancelled} - "
        f"{result.items_processed}/{result.items_detected} processed, "
        f"{result.items_failed} failed"
    )
    if result.items_manual_required:
        line += f", {result.items_manual_required} manual"
    return f"{line} in {result.duration_ms / 1000.0:.1f}s"


def _summary(results: List[ModuleResult]) -> Dict[str, object]:
    by_status = {status.value: 0 for status in ModuleStatus}
    for result in results:
        by_status[result.status.value] += 1
    return {
        "modules": len(results),
        "statuses": by_status,
        "items_detected": sum(result.items_detected for result in results),
        "items_processed": sum(result.items_processed for result in results),
        "items_failed": sum(result.items_failed for result in results),
        "items_manual_required": sum(result.items_manual_required for result in results),
    }


def build_report(results: Iterable[ModuleResult]) -> Dict[str, object]:
    """!
    @brief Assemble the report document for one or more module results.
    """

    ordered = list(results)
    run = logging_ext.get_run_metadata() or {}
    metadata: Mapping[str, object] = {
        "generated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(timespec="seconds"),
        "report_version": REPORT_VERSION,
        "host": platform.node(),
        "run_id": run.get("run_id"),
        **version.build_info(),
    }
    return {
        "metadata": dict(metadata),
        "summary": _summary(ordered),
        "modules": [result.to_dict() for result in ordered],
    }


def write_report(results: Iterable[ModuleResult], destination: str | pathlib.Path) -> pathlib.Path:
    """!
    @brief Write the JSON report to ``destination`` and return the resolved path.
    @details Parent directories are created as needed.
    """

    path = pathlib.Path(destination).expanduser().resolve()
    path.parent.mkdir(parents=True, exist_ok=True)
    document = build_report(results)
    path.write_text(json.dumps(document, indent=2, sort_keys=True, default=str), encoding="utf-8")
    logging_ext.get_human_logger().info("Wrote report to %s", path)
    logging_ext.get_machine_logger().info(
        "report_written",
        extra=logging_ext.build_event_extra("report_written", path=str(path), modules=len(document["modules"])),
    )
    return path
