"""!
@file fallback.py
@brief Fallback chain executor for one diff item.

@details Walks the dispatcher's ordered backend list, consulting the
idempotency guard around every mutating call, and stops at the first verified
success. This is the single boundary where backend exceptions become
:class:`~winmaint.models.ActionOutcome` data: nothing raised by a backend
propagates to the batch scheduler or the aggregator.

Policy on verification: a backend that reports success but fails its
post-check is a soft failure. The chain moves on to the next backend, and if
no backend both succeeds and verifies, the item is still reported ``Applied``
(with a warning) because the mutation most likely happened. A later backend
finding the item already satisfied confirms that earlier change, so the item
is ``Applied`` and credited to the backend that made it.
"""

from __future__ import annotations

import dataclasses
import time
from typing import Any, List

from . import constants, logging_ext
from .action_backend import ActionBackend
from .dispatch import DispatchPlan
from .dry_run import DryRunSimulator
from .guard import IdempotencyGuard
from .models import ActionOutcome, DiffItem, FinalStatus, ItemResult, PostCheck, PreCheck

__all__ = ["FallbackChainExecutor", "describe_exception"]


def describe_exception(exc: BaseException) -> str:
    """!
    @brief Concise, operator-facing reason for a backend exception.
    """

    message = str(exc).strip()
    if isinstance(exc, FileNotFoundError):
        return f"file not found: {message}" if message else "file not found"
    if isinstance(exc, PermissionError):
        return f"permission denied: {message}" if message else "permission denied"
    if isinstance(exc, TimeoutError):
        return f"timed out: {message}" if message else "operation timed out"
    if isinstance(exc, OSError):
        errno_info = f" (errno {exc.errno})" if exc.errno else ""
        return f"OS error{errno_info}: {message}" if message else f"OS error{errno_info}"
    if message:
        return f"{type(exc).__name__}: {message}"
    return type(exc).__name__


class FallbackChainExecutor:
    """!
    @brief Execute one item's backend chain with idempotency checks.
    @details The executor holds no per-item state, so one instance is shared
    by all workers of a batch.
    """

    def __init__(
        self,
        guard: IdempotencyGuard,
        *,
        dry_run: bool = False,
        simulator: DryRunSimulator | None = None,
    ) -> None:
        self._guard = guard
        self._dry_run = dry_run
        self._simulator = simulator or DryRunSimulator()
        self._human_logger = logging_ext.get_human_logger()
        self._machine_logger = logging_ext.get_machine_logger()

    @property
    def dry_run(self) -> bool:
        return self._dry_run

    def execute(self, plan: DispatchPlan, *, index: int = 0) -> ItemResult:
        """!
        @brief Resolve ``plan.item`` to a terminal :class:`ItemResult`.
        """

        item = plan.item
        if plan.manual_required:
            skipped = ", ".join(f"{name} ({reason})" for name, reason in plan.skipped) or "none registered"
            self._human_logger.warning(
                "No eligible backend for %s; manual action required (%s)", item.name, skipped
            )
            return self._finish(
                ItemResult(
                    item=item,
                    final_status=FinalStatus.MANUAL_REQUIRED,
                    error_tag=constants.ERROR_TAG_BACKEND_UNAVAILABLE,
                    error_detail=f"no eligible backend ({skipped})",
                    index=index,
                )
            )

        attempts: List[ActionOutcome] = []
        warnings: List[str] = []
        unverified_success: str | None = None

        for backend in plan.eligible:
            pre = self._guard.pre_check(item, backend)
            if pre is PreCheck.ALREADY_SATISFIED:
                attempts.append(
                    ActionOutcome(backend_name=backend.name, succeeded=True, already_satisfied=True)
                )
                self._log_attempt(item.name, attempts[-1])
                return self._satisfied(item, attempts, warnings, backend.name, unverified_success, index)

            if self._dry_run:
                attempts.append(self._simulator.simulate(item, backend))
                self._log_attempt(item.name, attempts[-1])
                return self._finish(
                    ItemResult(
                        item=item,
                        final_status=FinalStatus.SIMULATED,
                        attempted_backends=attempts,
                        first_success_backend=backend.name,
                        warnings=warnings,
                        index=index,
                    )
                )

            outcome = self._invoke(backend, item.target_for(backend.name), item.desired_value)
            if not outcome.succeeded:
                attempts.append(outcome)
                self._log_attempt(item.name, outcome)
                continue

            if outcome.already_satisfied:
                attempts.append(outcome)
                self._log_attempt(item.name, outcome)
                return self._satisfied(item, attempts, warnings, backend.name, unverified_success, index)

            post = self._guard.post_check(item, backend)
            if post is PostCheck.NOT_VERIFIED:
                message = f"{backend.name} reported success but verification failed"
                warnings.append(message)
                self._human_logger.warning("%s: %s; trying next backend", item.name, message)
                outcome = dataclasses.replace(
                    outcome,
                    verified=False,
                    error_detail=message,
                    error_tag=constants.ERROR_TAG_VERIFICATION,
                )
                attempts.append(outcome)
                self._log_attempt(item.name, outcome)
                if unverified_success is None:
                    unverified_success = backend.name
                continue

            if post is PostCheck.UNKNOWN:
                message = f"{backend.name} result could not be verified"
                warnings.append(message)
                self._human_logger.warning("%s: %s", item.name, message)
                outcome = dataclasses.replace(outcome, verified=None)
            else:
                outcome = dataclasses.replace(outcome, verified=True)
            attempts.append(outcome)
            self._log_attempt(item.name, outcome)
            return self._finish(
                ItemResult(
                    item=item,
                    final_status=FinalStatus.APPLIED,
                    attempted_backends=attempts,
                    first_success_backend=backend.name,
                    warnings=warnings,
                    index=index,
                )
            )

        if unverified_success is not None:
            return self._finish(
                ItemResult(
                    item=item,
                    final_status=FinalStatus.APPLIED,
                    attempted_backends=attempts,
                    first_success_backend=unverified_success,
                    warnings=warnings,
                    error_tag=constants.ERROR_TAG_VERIFICATION,
                    index=index,
                )
            )

        return self._finish(
            ItemResult(
                item=item,
                final_status=FinalStatus.FAILED,
                attempted_backends=attempts,
                warnings=warnings,
                error_tag=attempts[-1].error_tag if attempts else constants.ERROR_TAG_EXECUTION,
                index=index,
            )
        )

    def _satisfied(
        self,
        item: DiffItem,
        attempts: List[ActionOutcome],
        warnings: List[str],
        backend_name: str,
        unverified_success: str | None,
        index: int,
    ) -> ItemResult:
        """!
        @brief Result for a backend that found the item already in its desired state.
        @details When an earlier backend applied the change but could not verify
        it, this state is that backend's work: the item is ``Applied`` and
        credited to it.
        """

        if unverified_success is None:
            return self._finish(
                ItemResult(
                    item=item,
                    final_status=FinalStatus.ALREADY_SATISFIED,
                    attempted_backends=attempts,
                    first_success_backend=backend_name,
                    warnings=warnings,
                    index=index,
                )
            )
        self._human_logger.info(
            "%s: %s confirms the change applied by %s", item.name, backend_name, unverified_success
        )
        return self._finish(
            ItemResult(
                item=item,
                final_status=FinalStatus.APPLIED,
                attempted_backends=attempts,
                first_success_backend=unverified_success,
                warnings=warnings,
                index=index,
            )
        )

    def _invoke(self, backend: ActionBackend, target: Any, desired_value: Any) -> ActionOutcome:
        """!
        @brief Call ``backend.apply`` and normalise whatever comes back.
        """

        start = time.perf_counter()
        try:
            raw = backend.apply(target, desired_value, dry_run=False)
        except Exception as exc:  # noqa: BLE001
            duration_ms = (time.perf_counter() - start) * 1000.0
            self._human_logger.error("%s failed for %s: %s", backend.name, target, exc)
            return ActionOutcome(
                backend_name=backend.name,
                succeeded=False,
                error_detail=describe_exception(exc),
                duration_ms=duration_ms,
                error_tag=getattr(exc, "tag", constants.ERROR_TAG_EXECUTION),
            )

        duration_ms = (time.perf_counter() - start) * 1000.0
        if isinstance(raw, ActionOutcome):
            outcome = raw
        elif isinstance(raw, bool):
            outcome = ActionOutcome(backend_name=backend.name, succeeded=raw)
        else:
            outcome = ActionOutcome(
                backend_name=backend.name,
                succeeded=False,
                error_detail=f"{backend.name} returned {type(raw).__name__} instead of an outcome",
            )
        changes: dict[str, Any] = {"backend_name": backend.name}
        if not outcome.duration_ms:
            changes["duration_ms"] = duration_ms
        if not outcome.succeeded:
            if not outcome.error_detail:
                changes["error_detail"] = f"{backend.name} reported failure"
            if not outcome.error_tag:
                changes["error_tag"] = constants.ERROR_TAG_EXECUTION
        return dataclasses.replace(outcome, **changes)

    def _log_attempt(self, item_name: str, outcome: ActionOutcome) -> None:
        log = self._machine_logger.info if outcome.succeeded else self._machine_logger.warning
        log(
            "backend_attempt",
            extra=logging_ext.build_event_extra("backend_attempt", item=item_name, **outcome.to_dict()),
        )

    def _finish(self, result: ItemResult) -> ItemResult:
        self._machine_logger.info(
            "item_result",
            extra=logging_ext.build_event_extra(
                "item_result",
                item=result.item.name,
                kind=result.item.kind_name,
                status=result.final_status.value,
                first_success_backend=result.first_success_backend,
                attempts=len(result.attempted_backends),
                error_tag=result.error_tag,
                dry_run=self._dry_run,
            ),
        )
        if result.final_status is FinalStatus.FAILED:
            self._human_logger.error("%s failed: %s", result.item.name, result.last_error)
        return result
