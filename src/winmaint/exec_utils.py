"""!
@brief Subprocess execution helpers with sanitised environments.
@details Every command-line backend (winget, choco, reg, sc, schtasks,
secedit) launches its tool through :func:`run_command` so telemetry stays
uniform: a ``<event>_plan`` record before the call and one of
``<event>_result``, ``<event>_timeout``, ``<event>_missing`` or
``<event>_error`` afterwards. Failures are returned as data, never raised.
"""

from __future__ import annotations

import os
import subprocess
import time
from collections.abc import Iterable, Mapping, MutableMapping, Sequence
from dataclasses import dataclass

from . import logging_ext

_SANITIZE_BLOCKLIST = {
    "PYTHONPATH",
    "PYTHONHOME",
    "PYTHONWARNINGS",
    "VIRTUAL_ENV",
    "PIP_REQUIRE_VIRTUALENV",
    "CONDA_PREFIX",
    "CONDA_DEFAULT_ENV",
    "PYENV_VERSION",
    "POETRY_ACTIVE",
    "__PYVENV_LAUNCHER__",
}

MISSING_EXECUTABLE_RC = 127


@dataclass
class CommandResult:
    """!
    @brief Outcome information from :func:`run_command`.
    @details ``skipped`` marks dry-run results; ``timed_out`` marks commands
    killed by their timeout; ``returncode`` is ``127`` when the executable
    could not be found.
    """

    command: Sequence[str]
    returncode: int
    stdout: str
    stderr: str
    duration: float
    skipped: bool = False
    timed_out: bool = False
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.returncode == 0 and not self.error and not self.timed_out


def sanitize_environment(
    *,
    base_env: Mapping[str, str] | None = None,
    inherit: bool = True,
    extra: Mapping[str, str] | None = None,
    remove: Iterable[str] | None = None,
) -> MutableMapping[str, str]:
    """!
    @brief Produce a child environment stripped of Python virtualenv variables.
    @details Package managers spawned from a frozen or venv-hosted winmaint
    otherwise inherit ``PYTHONPATH`` and friends, which breaks their own
    Python-based installers.
    """

    if base_env is not None:
        environment: MutableMapping[str, str] = {
            str(k): str(v) for k, v in base_env.items() if v is not None
        }
    elif inherit:
        environment = {str(k): str(v) for k, v in os.environ.items() if v is not None}
    else:
        environment = {}

    for key in _SANITIZE_BLOCKLIST:
        environment.pop(key, None)
    for key in remove or ():
        environment.pop(key, None)
    for key, value in (extra or {}).items():
        environment[str(key)] = str(value)
    return environment


def _call_payload(
    command_list: Sequence[str],
    timeout: float | int | None,
    extra: Mapping[str, object] | None,
) -> dict[str, object]:
    payload: dict[str, object] = {"command": list(command_list), "timeout": timeout}
    for key, value in (extra or {}).items():
        if key not in {"event", "result"}:
            payload[key] = value
    return payload


def _emit_failure(
    event_name: str,
    *,
    command_list: Sequence[str],
    timeout: float | int | None,
    extra: Mapping[str, object] | None,
    duration: float,
    error: str,
) -> None:
    logging_ext.get_machine_logger().error(
        event_name,
        extra={
            "event": event_name,
            "call": _call_payload(command_list, timeout, extra),
            "duration_ms": round(duration * 1000, 3),
            "error": error,
        },
    )


def run_command(
    command: Sequence[str] | str,
    *,
    event: str,
    timeout: int | float | None = None,
    dry_run: bool = False,
    human_message: str | None = None,
    extra: Mapping[str, object] | None = None,
    env: Mapping[str, str] | None = None,
    inherit_env: bool = True,
    env_overrides: Mapping[str, str] | None = None,
    cwd: str | None = None,
) -> CommandResult:
    """!
    @brief Execute ``command`` with consistent logging and environment hygiene.
    @param command Sequence of command arguments.
    @param event Base name for structured log events.
    @param timeout Seconds before the child is killed; owned by the caller.
    @param dry_run When ``True`` no subprocess is spawned and the result is
    marked ``skipped``.
    @param human_message Optional message emitted to the human logger.
    @param extra Additional metadata merged into machine log payloads.
    @param env Explicit environment to start from prior to sanitisation.
    @param inherit_env Whether to inherit :data:`os.environ` when ``env`` is ``None``.
    @param env_overrides Mapping applied after sanitisation.
    @param cwd Working directory for the child.
    @returns :class:`CommandResult` describing the observed outcome.
    """

    human_logger = logging_ext.get_human_logger()
    machine_logger = logging_ext.get_machine_logger()

    command_list = [command] if isinstance(command, str) else [str(part) for part in command]

    machine_logger.info(
        f"{event}_plan",
        extra={
            "event": f"{event}_plan",
            "call": _call_payload(command_list, timeout, extra),
            "dry_run": dry_run,
        },
    )

    if dry_run:
        if human_message:
            human_logger.info("%s [dry-run]", human_message)
        else:
            human_logger.info("Dry-run: would execute %s", " ".join(command_list))
        machine_logger.info(
            f"{event}_dry_run",
            extra={"event": f"{event}_dry_run", "call": _call_payload(command_list, timeout, extra)},
        )
        return CommandResult(command=command_list, returncode=0, stdout="", stderr="", duration=0.0, skipped=True)

    if human_message:
        human_logger.info(human_message)

    child_env = sanitize_environment(base_env=env, inherit=inherit_env, extra=env_overrides)

    start = time.monotonic()
    try:
        completed = subprocess.run(  # noqa: S603 - intentional command execution
            command_list,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=False,
            env=child_env,
            cwd=cwd,
        )
    except FileNotFoundError as exc:
        duration = time.monotonic() - start
        human_logger.error("Command not found: %s", command_list[0])
        _emit_failure(
            f"{event}_missing",
            command_list=command_list,
            timeout=timeout,
            extra=extra,
            duration=duration,
            error=str(exc),
        )
        return CommandResult(
            command=command_list,
            returncode=MISSING_EXECUTABLE_RC,
            stdout="",
            stderr="",
            duration=duration,
            error=str(exc),
        )
    except subprocess.TimeoutExpired as exc:
        duration = time.monotonic() - start
        human_logger.error("Command timed out after %.1fs: %s", duration, command_list[0])
        _emit_failure(
            f"{event}_timeout",
            command_list=command_list,
            timeout=timeout,
            extra=extra,
            duration=duration,
            error="timeout",
        )
        return CommandResult(
            command=command_list,
            returncode=1,
            stdout=str(exc.stdout or ""),
            stderr=str(exc.stderr or ""),
            duration=duration,
            timed_out=True,
            error="timeout",
        )
    except OSError as exc:
        duration = time.monotonic() - start
        human_logger.error("Failed to execute %s: %s", command_list[0], exc)
        _emit_failure(
            f"{event}_error",
            command_list=command_list,
            timeout=timeout,
            extra=extra,
            duration=duration,
            error=str(exc),
        )
        return CommandResult(command=command_list, returncode=1, stdout="", stderr="", duration=duration, error=str(exc))

    duration = time.monotonic() - start
    machine_logger.info(
        f"{event}_result",
        extra={
            "event": f"{event}_result",
            "call": _call_payload(command_list, timeout, extra),
            "return_code": completed.returncode,
            "duration_ms": round(duration * 1000, 3),
            "stdout": completed.stdout,
            "stderr": completed.stderr,
        },
    )

    if completed.returncode != 0:
        human_logger.warning("Command %s exited with %s", command_list[0], completed.returncode)

    return CommandResult(
        command=command_list,
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
        duration=duration,
    )
