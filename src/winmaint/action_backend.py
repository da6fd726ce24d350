"""!
@brief Contract implemented by every corrective-action backend.
@details A backend wraps one native tool (package manager, registry writer,
service controller, scheduled-task controller, security-policy editor) for
exactly one :class:`~winmaint.constants.ActionKind`. The engine only talks to
this contract and never calls a native tool directly.
"""
from __future__ import annotations

import time
from abc import ABC, abstractmethod
from typing import Any

from . import constants, exec_utils
from .models import ActionOutcome, TriState

__all__ = ["ActionBackend", "outcome_from_command"]


class ActionBackend(ABC):
    """!
    @brief Abstract corrective-action backend.
    @details Subclasses set ``name`` (the key looked up in
    ``DiffItem.target_ref``) and ``kind``. ``default_batch_size`` is a
    backend-level throttle hint; tools that misbehave under concurrency
    declare a lower value. Each implementation owns its call timeouts.
    """

    name: str = ""
    kind: constants.ActionKind
    default_batch_size: int = constants.DEFAULT_BATCH_SIZE

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name}:{self.kind.value}>"

    @abstractmethod
    def is_available(self) -> bool:
        """!
        @brief Report whether the underlying tool exists on this host.
        """

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        """!
        @brief Read-only probe: is the desired state already in place?
        @details The default cannot tell and answers ``UNKNOWN`` so the engine
        proceeds with the action.
        """

        return TriState.UNKNOWN

    @abstractmethod
    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        """!
        @brief Attempt the corrective action.
        @details May raise; the fallback chain converts exceptions into failed
        outcomes. ``dry_run`` is forwarded to command helpers for direct
        callers; the engine simulates dry runs itself and never calls
        ``apply`` in that mode.
        """

    def post_check(self, target: Any, desired_value: Any = None) -> TriState:
        """!
        @brief Read-only probe confirming ``apply`` took effect.
        @details Defaults to the pre-check since both ask the same question.
        """

        return self.pre_check(target, desired_value)

    def describe_action(self, target: Any, desired_value: Any = None) -> str:
        """!
        @brief Human-readable description of what ``apply`` would do.
        """

        if desired_value is None:
            return f"{self.kind.value} {target} via {self.name}"
        return f"{self.kind.value} {target} -> {desired_value!r} via {self.name}"


def outcome_from_command(backend: ActionBackend, result: Any, started: float) -> ActionOutcome:
    """!
    @brief Convert an :class:`~winmaint.exec_utils.CommandResult` into an outcome.
    @details Non-zero exit codes, timeouts, and launch failures all become
    ``succeeded=False`` with the most specific error text available. A missing
    executable is tagged ``backend_unavailable``, anything else ``execution``.
    """

    duration_ms = (time.perf_counter() - started) * 1000.0
    if result.returncode == 0 and not result.error:
        return ActionOutcome(backend_name=backend.name, succeeded=True, duration_ms=duration_ms)
    tag = constants.ERROR_TAG_EXECUTION
    if result.timed_out:
        detail = f"{backend.name} timed out"
    elif result.returncode == exec_utils.MISSING_EXECUTABLE_RC:
        detail = f"{backend.name} executable not found"
        tag = constants.ERROR_TAG_BACKEND_UNAVAILABLE
    else:
        stderr = (result.stderr or result.stdout or "").strip().splitlines()
        tail = stderr[-1] if stderr else (result.error or "")
        detail = f"{backend.name} exited with {result.returncode}"
        if tail:
            detail = f"{detail}: {tail}"
    return ActionOutcome(
        backend_name=backend.name,
        succeeded=False,
        error_detail=detail,
        duration_ms=duration_ms,
        error_tag=tag,
    )
