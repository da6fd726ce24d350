"""!
@brief Dry-run simulator for the fallback chain.
@details In simulate mode the chain still runs every read-only pre-check but
replaces the mutating ``apply`` call with a recorded outcome describing the
action that would have been taken. Nothing here talks to a backend's
mutating path.
"""
from __future__ import annotations

from typing import Any, Dict

from . import logging_ext
from .action_backend import ActionBackend
from .models import ActionOutcome, DiffItem

__all__ = ["DryRunSimulator"]


class DryRunSimulator:
    """!
    @brief Build ``Simulated`` outcomes without invoking backends.
    """

    def __init__(self) -> None:
        self._human_logger = logging_ext.get_human_logger()
        self._machine_logger = logging_ext.get_machine_logger()

    @staticmethod
    def _describe(item: DiffItem, backend: ActionBackend, target: Any) -> str:
        try:
            return backend.describe_action(target, item.desired_value)
        except Exception as exc:  # noqa: BLE001
            return f"{item.kind_name} {target} via {backend.name} (description unavailable: {exc})"

    def simulate(self, item: DiffItem, backend: ActionBackend) -> ActionOutcome:
        target = item.target_for(backend.name)
        action = self._describe(item, backend, target)
        planned: Dict[str, Any] = {
            "backend": backend.name,
            "target": target,
            "desired_value": item.desired_value,
            "action": action,
        }
        self._human_logger.info("Dry-run: would %s (%s)", action, item.name)
        self._machine_logger.info(
            "backend_simulated",
            extra=logging_ext.build_event_extra(
                "backend_simulated", item=item.name, planned_action=planned
            ),
        )
        return ActionOutcome(
            backend_name=backend.name,
            succeeded=True,
            simulated=True,
            planned_action=planned,
        )
