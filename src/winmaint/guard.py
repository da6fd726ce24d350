"""!
@brief Idempotency guard wrapping backend state probes.
@details Probes are fallible: a registry read can be denied, ``sc.exe`` can
time out. The guard turns any probe exception into ``Unknown`` and logs a
warning, so a broken probe never turns into a false "failed" verdict. The
fallback chain then proceeds optimistically on an unknown pre-check and
accepts the action with a warning on an unknown post-check.
"""
from __future__ import annotations

import time
from typing import Callable

from . import constants, logging_ext
from .action_backend import ActionBackend
from .models import DiffItem, PostCheck, PreCheck, TriState

__all__ = ["IdempotencyGuard"]

_PRE_CHECK_MAP = {
    TriState.YES: PreCheck.ALREADY_SATISFIED,
    TriState.NO: PreCheck.NOT_SATISFIED,
    TriState.UNKNOWN: PreCheck.UNKNOWN,
}

_POST_CHECK_MAP = {
    TriState.YES: PostCheck.VERIFIED,
    TriState.NO: PostCheck.NOT_VERIFIED,
    TriState.UNKNOWN: PostCheck.UNKNOWN,
}


def _coerce_tristate(value: object) -> TriState:
    if isinstance(value, TriState):
        return value
    if value is None or isinstance(value, bool):
        return TriState.from_bool(value)
    try:
        return TriState(str(value).lower())
    except ValueError:
        return TriState.UNKNOWN


class IdempotencyGuard:
    """!
    @brief Pre/post state checks around one backend action.
    @details ``verify_attempts`` polls the post-check while it reports
    ``NotVerified`` (service and registry state can trail the tool's exit),
    sleeping ``verify_delay`` seconds between polls.
    """

    def __init__(
        self,
        *,
        verify_attempts: int = constants.DEFAULT_VERIFY_ATTEMPTS,
        verify_delay: float = constants.DEFAULT_VERIFY_DELAY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._verify_attempts = max(1, int(verify_attempts))
        self._verify_delay = max(0.0, float(verify_delay))
        self._sleep = sleep
        self._human_logger = logging_ext.get_human_logger()
        self._machine_logger = logging_ext.get_machine_logger()

    def _probe(self, phase: str, item: DiffItem, backend: ActionBackend) -> TriState:
        probe = backend.pre_check if phase == "pre" else backend.post_check
        target = item.target_for(backend.name)
        try:
            return _coerce_tristate(probe(target, item.desired_value))
        except Exception as exc:  # noqa: BLE001
            self._human_logger.warning(
                "%s-check for %s via %s failed; treating as unknown: %s",
                phase.capitalize(),
                item.name,
                backend.name,
                exc,
            )
            self._machine_logger.warning(
                "backend_probe_error",
                extra=logging_ext.build_event_extra(
                    "backend_probe_error",
                    item=item.name,
                    backend=backend.name,
                    phase=phase,
                    error=repr(exc),
                ),
            )
            return TriState.UNKNOWN

    def pre_check(self, item: DiffItem, backend: ActionBackend) -> PreCheck:
        """!
        @brief Ask whether ``item`` is already in its desired state for ``backend``.
        """

        result = _PRE_CHECK_MAP[self._probe("pre", item, backend)]
        self._machine_logger.info(
            "backend_precheck",
            extra=logging_ext.build_event_extra(
                "backend_precheck", item=item.name, backend=backend.name, result=result.value
            ),
        )
        return result

    def post_check(self, item: DiffItem, backend: ActionBackend) -> PostCheck:
        """!
        @brief Confirm a claimed success actually took effect.
        """

        result = PostCheck.UNKNOWN
        for attempt in range(1, self._verify_attempts + 1):
            result = _POST_CHECK_MAP[self._probe("post", item, backend)]
            self._machine_logger.info(
                "backend_postcheck",
                extra=logging_ext.build_event_extra(
                    "backend_postcheck",
                    item=item.name,
                    backend=backend.name,
                    attempt=attempt,
                    result=result.value,
                ),
            )
            if result is not PostCheck.NOT_VERIFIED:
                break
            if attempt < self._verify_attempts and self._verify_delay:
                self._sleep(self._verify_delay)
        return result
