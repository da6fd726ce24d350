"""!
@brief Exception taxonomy for the reconciliation engine.
@details Each class carries a stable ``tag`` copied onto outcomes and reports
so operators can tell "could not run" apart from "ran and failed". Only
:class:`ConfigurationError` (invalid engine setup) and
:class:`DiffSourceError` escape :meth:`winmaint.engine.ReconcileEngine.run_module`;
everything else is converted into outcome data at the fallback chain.
"""
from __future__ import annotations

from . import constants

__all__ = [
    "ReconcileError",
    "ConfigurationError",
    "BackendUnavailable",
    "ExecutionError",
    "DiffSourceError",
]


class ReconcileError(Exception):
    """!
    @brief Base class for engine errors.
    """

    tag = "error"


class ConfigurationError(ReconcileError):
    """!
    @brief Raised for invalid engine options or a kind with no registered backend.
    """

    tag = constants.ERROR_TAG_CONFIGURATION


class BackendUnavailable(ReconcileError):
    """!
    @brief The tool behind a backend is not installed on this host.
    @details Raised by backends whose platform API is missing; the guard reads
    it as an unknown probe and the fallback chain records it as an attempt
    tagged ``backend_unavailable``.
    """

    tag = constants.ERROR_TAG_BACKEND_UNAVAILABLE


class ExecutionError(ReconcileError):
    """!
    @brief A backend invocation failed or returned a non-zero exit code.
    @details Backends may raise this from ``apply``; the fallback chain records
    it as a failed attempt and moves on to the next backend.
    """

    tag = constants.ERROR_TAG_EXECUTION

    def __init__(self, message: str, *, returncode: int | None = None) -> None:
        super().__init__(message)
        self.returncode = returncode


class DiffSourceError(ReconcileError):
    """!
    @brief The state prober could not produce the diff list for a module.
    """

    tag = constants.ERROR_TAG_DIFF_SOURCE

    def __init__(self, module_name: str, message: str) -> None:
        super().__init__(f"{module_name}: {message}")
        self.module_name = module_name
