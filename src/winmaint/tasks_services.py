"""!
@brief Scheduled task and service state backends.
@details Wraps ``sc.exe`` and ``schtasks.exe`` for
:attr:`~winmaint.constants.ActionKind.SERVICE_STATE` and
:attr:`~winmaint.constants.ActionKind.SCHEDULED_TASK_STATE` items. Both tools
print locale-independent field names (``START_TYPE``, ``STATE``) in the
outputs parsed here, except the ``schtasks /Query /FO LIST`` status field,
which is matched on its English token only.
"""
from __future__ import annotations

import shutil
import time
from typing import Any, List, Mapping, Tuple

from . import constants, exec_utils, logging_ext
from .action_backend import ActionBackend, outcome_from_command
from .constants import ActionKind
from .models import ActionOutcome, TriState

__all__ = [
    "ServiceStateBackend",
    "ScheduledTaskBackend",
    "parse_service_desired",
    "parse_task_desired",
]

# sc.exe exit codes that mean "already in the requested state".
_SC_ALREADY_RUNNING = 1056
_SC_NOT_STARTED = 1062


def parse_service_desired(desired_value: Any) -> Tuple[str | None, str | None]:
    """!
    @brief Split a service desired value into ``(start_type, state)``.
    @details A bare string names the start type (``"disabled"``,
    ``"manual"``, ``"automatic"``, ``"delayed-auto"``). A mapping may carry
    ``start_type`` and/or ``state`` (``"running"`` or ``"stopped"``).
    @throws ValueError For unknown start types or states.
    """

    if isinstance(desired_value, Mapping):
        raw_start = desired_value.get("start_type") or desired_value.get("startup")
        raw_state = desired_value.get("state")
    else:
        raw_start, raw_state = desired_value, None

    start_type = None
    if raw_start:
        start_type = constants.SERVICE_START_TYPES.get(str(raw_start).strip().lower())
        if start_type is None:
            raise ValueError(f"unknown service start type {raw_start!r}")
    state = None
    if raw_state:
        state = str(raw_state).strip().lower()
        if state not in ("running", "stopped"):
            raise ValueError(f"unknown service state {raw_state!r}")
    if start_type is None and state is None:
        raise ValueError("service desired value names neither a start type nor a state")
    return start_type, state


def _parse_service_state(output: str) -> str:
    """!
    @brief Extract the status token from ``sc query`` output.
    @returns Uppercase status token or empty string when not detected.
    """

    for line in output.splitlines():
        stripped = line.strip()
        if stripped.upper().startswith("STATE"):
            _, _, remainder = stripped.partition(":")
            tokens = remainder.strip().split()
            if tokens:
                return tokens[-1].upper()
    return ""


def _parse_start_type(output: str) -> str:
    """!
    @brief Extract the start mode from ``sc qc`` output.
    @returns One of ``auto``, ``delayed-auto``, ``demand``, ``disabled`` or
    an empty string.
    """

    for line in output.splitlines():
        stripped = line.strip()
        if not stripped.upper().startswith("START_TYPE"):
            continue
        _, _, remainder = stripped.partition(":")
        tokens = remainder.strip().split()
        if not tokens:
            return ""
        mode = constants.SC_START_TYPE_CODES.get(tokens[0], "")
        if mode == "auto" and "DELAYED" in remainder.upper():
            return "delayed-auto"
        return mode
    return ""


class ServiceStateBackend(ActionBackend):
    """!
    @brief Configure service start type and run state through ``sc.exe``.
    """

    name = constants.BACKEND_SERVICE
    kind = ActionKind.SERVICE_STATE

    def __init__(self, *, timeout: int = constants.SERVICE_COMMAND_TIMEOUT) -> None:
        self._timeout = timeout

    def is_available(self) -> bool:
        return shutil.which("sc.exe") is not None or shutil.which("sc") is not None

    def _sc(
        self,
        *args: str,
        event: str,
        service: str,
        dry_run: bool = False,
        message: str | None = None,
    ) -> exec_utils.CommandResult:
        return exec_utils.run_command(
            ["sc.exe", *args],
            event=event,
            timeout=self._timeout,
            dry_run=dry_run,
            human_message=message,
            extra={"service": service},
        )

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        service = str(target).strip()
        start_type, state = parse_service_desired(desired_value)

        if start_type is not None:
            result = self._sc("qc", service, event="service_qc", service=service)
            if not result.ok:
                return TriState.UNKNOWN
            current = _parse_start_type(result.stdout)
            if not current:
                return TriState.UNKNOWN
            if current != start_type:
                return TriState.NO

        if state is not None:
            result = self._sc("query", service, event="service_query", service=service)
            if not result.ok:
                return TriState.UNKNOWN
            current_state = _parse_service_state(result.stdout)
            if not current_state:
                return TriState.UNKNOWN
            return TriState.from_bool(current_state == state.upper())
        return TriState.YES

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        service = str(target).strip()
        start_type, state = parse_service_desired(desired_value)
        started = time.perf_counter()

        if start_type is not None:
            result = self._sc(
                "config",
                service,
                "start=",
                start_type,
                event="service_config",
                service=service,
                dry_run=dry_run,
                message=f"Setting service {service} start type to {start_type}",
            )
            if not result.skipped and not result.ok:
                return outcome_from_command(self, result, started)

        if state is not None:
            if state == "stopped":
                verb, tolerated, label = "stop", _SC_NOT_STARTED, "Stopping"
            else:
                verb, tolerated, label = "start", _SC_ALREADY_RUNNING, "Starting"
            result = self._sc(
                verb,
                service,
                event=f"service_{verb}",
                service=service,
                dry_run=dry_run,
                message=f"{label} service {service}",
            )
            if result.timed_out:
                logging_ext.get_human_logger().warning(
                    "Timed out waiting for service %s to %s; a reboot may be required", service, verb
                )
            if not result.skipped and not result.ok and result.returncode != tolerated:
                return outcome_from_command(self, result, started)

        return ActionOutcome(
            backend_name=self.name,
            succeeded=True,
            simulated=dry_run,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def describe_action(self, target: Any, desired_value: Any = None) -> str:
        start_type, state = parse_service_desired(desired_value)
        steps: List[str] = []
        if start_type:
            steps.append(f"sc config {target} start= {start_type}")
        if state:
            steps.append(f"sc {'stop' if state == 'stopped' else 'start'} {target}")
        return "; ".join(steps)


_TASK_STATES = {
    "enabled": "enabled",
    "enable": "enabled",
    "disabled": "disabled",
    "disable": "disabled",
    "absent": "absent",
    "deleted": "absent",
}


def parse_task_desired(desired_value: Any) -> str:
    """!
    @brief Normalise a scheduled task desired value.
    @details ``True``/``False`` map to enabled/disabled; strings accept
    ``enabled``, ``disabled`` and ``absent``.
    @throws ValueError For anything else.
    """

    if isinstance(desired_value, bool):
        return "enabled" if desired_value else "disabled"
    if isinstance(desired_value, Mapping):
        desired_value = desired_value.get("state")
    normalised = _TASK_STATES.get(str(desired_value or "").strip().lower())
    if normalised is None:
        raise ValueError(f"unknown scheduled task state {desired_value!r}")
    return normalised


def _parse_task_status(output: str) -> str:
    for line in output.splitlines():
        key, sep, value = line.partition(":")
        if sep and key.strip().lower() in ("status", "scheduled task state"):
            return value.strip().lower()
    return ""


class ScheduledTaskBackend(ActionBackend):
    """!
    @brief Enable, disable, or delete scheduled tasks through ``schtasks.exe``.
    """

    name = constants.BACKEND_SCHEDULED_TASK
    kind = ActionKind.SCHEDULED_TASK_STATE

    def __init__(self, *, timeout: int = constants.TASK_COMMAND_TIMEOUT) -> None:
        self._timeout = timeout

    def is_available(self) -> bool:
        return shutil.which("schtasks.exe") is not None or shutil.which("schtasks") is not None

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        task = str(target).strip()
        desired = parse_task_desired(desired_value)
        result = exec_utils.run_command(
            ["schtasks.exe", "/Query", "/TN", task, "/FO", "LIST"],
            event="task_query",
            timeout=self._timeout,
            extra={"task": task},
        )
        if result.timed_out or result.returncode == exec_utils.MISSING_EXECUTABLE_RC:
            return TriState.UNKNOWN
        if result.returncode != 0:
            # schtasks exits 1 when the task does not exist.
            return TriState.from_bool(desired == "absent")
        if desired == "absent":
            return TriState.NO
        status = _parse_task_status(result.stdout)
        if not status:
            return TriState.UNKNOWN
        return TriState.from_bool((status == "disabled") == (desired == "disabled"))

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        task = str(target).strip()
        desired = parse_task_desired(desired_value)
        if desired == "absent":
            command = ["schtasks.exe", "/Delete", "/TN", task, "/F"]
            event, verb = "task_delete", "Deleting"
        else:
            flag = "/Disable" if desired == "disabled" else "/Enable"
            command = ["schtasks.exe", "/Change", "/TN", task, flag]
            event = "task_disable" if desired == "disabled" else "task_enable"
            verb = "Disabling" if desired == "disabled" else "Enabling"

        started = time.perf_counter()
        result = exec_utils.run_command(
            command,
            event=event,
            timeout=self._timeout,
            dry_run=dry_run,
            human_message=f"{verb} scheduled task {task}",
            extra={"task": task},
        )
        if result.skipped:
            return ActionOutcome(backend_name=self.name, succeeded=True, simulated=True)
        return outcome_from_command(self, result, started)

    def describe_action(self, target: Any, desired_value: Any = None) -> str:
        desired = parse_task_desired(desired_value)
        if desired == "absent":
            return f"schtasks /Delete /TN {target} /F"
        return f"schtasks /Change /TN {target} /{'Disable' if desired == 'disabled' else 'Enable'}"
