"""!
@file options.py
@brief Engine options and configuration file handling.
@details ``ReconcileOptions`` is passed explicitly into every
:meth:`~winmaint.engine.ReconcileEngine.reconcile` call; nothing is read from
process-wide state. The CLI resolves each option with the precedence
CLI argument > JSON config file > built-in default.
"""

from __future__ import annotations

import dataclasses
import json
import pathlib
from typing import TYPE_CHECKING, Any, Iterable, Tuple

from . import constants
from .errors import ConfigurationError

if TYPE_CHECKING:
    import argparse

__all__ = [
    "ReconcileOptions",
    "load_config_file",
    "collect_options",
]


@dataclasses.dataclass(frozen=True)
class ReconcileOptions:
    """!
    @brief Per-invocation engine options.
    @details ``batch_size`` of ``None`` lets the engine pick the smallest
    default declared by the backends involved. ``control_categories`` limits
    the run to items whose ``metadata["category"]`` is listed; ``platform``
    drops items whose ``metadata["excluded_platforms"]`` names it.
    """

    dry_run: bool = False
    batch_size: int | None = None
    control_categories: Tuple[str, ...] | None = None
    platform: str | None = None
    verify_attempts: int = constants.DEFAULT_VERIFY_ATTEMPTS
    verify_delay: float = constants.DEFAULT_VERIFY_DELAY

    def __post_init__(self) -> None:
        if self.control_categories is not None:
            categories = tuple(str(value).strip() for value in self.control_categories if str(value).strip())
            object.__setattr__(self, "control_categories", categories or None)

    def validate(self) -> None:
        """!
        @brief Reject option combinations that make the whole run meaningless.
        @throws ConfigurationError For non-positive batch sizes or verify attempts.
        """

        if self.batch_size is not None:
            if isinstance(self.batch_size, bool) or not isinstance(self.batch_size, int) or self.batch_size <= 0:
                raise ConfigurationError(f"batch size must be a positive integer, got {self.batch_size!r}")
        if int(self.verify_attempts) < 1:
            raise ConfigurationError(f"verify attempts must be >= 1, got {self.verify_attempts!r}")
        if float(self.verify_delay) < 0:
            raise ConfigurationError(f"verify delay must be >= 0, got {self.verify_delay!r}")


def load_config_file(config_path: str | None) -> dict[str, object]:
    """!
    @brief Load a JSON configuration object.
    @param config_path Path to the file, or ``None`` to skip.
    @returns Parsed mapping; empty when no path was given.
    @throws ConfigurationError When the file is missing, unreadable, not
    JSON, or not a JSON object.
    """

    if not config_path:
        return {}

    path = pathlib.Path(config_path).expanduser().resolve()
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        with open(path, encoding="utf-8") as handle:
            config = json.load(handle)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Invalid JSON in configuration file {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration file {path}: {exc}") from exc
    if not isinstance(config, dict):
        raise ConfigurationError(f"Configuration file must contain a JSON object: {path}")
    return config


def _as_categories(raw: Any) -> Tuple[str, ...] | None:
    if raw is None:
        return None
    if isinstance(raw, str):
        values: Iterable[Any] = raw.split(",")
    else:
        values = raw
    categories = tuple(str(value).strip() for value in values if str(value).strip())
    return categories or None


def collect_options(args: "argparse.Namespace", config: dict[str, object] | None = None) -> ReconcileOptions:
    """!
    @brief Translate parsed CLI arguments into :class:`ReconcileOptions`.
    @details Config keys use hyphens (``batch-size``); CLI attributes use
    underscores. Boolean CLI flags only override the config when set.
    """

    config = dict(config or {})

    def _get(attr: str, default: object = None, config_key: str | None = None) -> object:
        cli_val = getattr(args, attr, None)
        if cli_val is not None:
            return cli_val
        key = config_key or attr.replace("_", "-")
        if key in config:
            return config[key]
        return default

    dry_run = bool(getattr(args, "dry_run", False)) or bool(config.get("dry-run", False))

    batch_size = _get("batch_size")
    if batch_size is not None:
        try:
            batch_size = int(batch_size)  # type: ignore[arg-type]
        except (TypeError, ValueError) as exc:
            raise ConfigurationError(f"batch size must be an integer, got {batch_size!r}") from exc

    categories = getattr(args, "category", None) or config.get("categories")

    try:
        verify_attempts = int(_get("verify_attempts", constants.DEFAULT_VERIFY_ATTEMPTS))  # type: ignore[arg-type]
        verify_delay = float(_get("verify_delay", constants.DEFAULT_VERIFY_DELAY))  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"invalid verification settings: {exc}") from exc

    platform = _get("platform")
    options = ReconcileOptions(
        dry_run=dry_run,
        batch_size=batch_size,  # type: ignore[arg-type]
        control_categories=_as_categories(categories),
        platform=str(platform) if platform else None,
        verify_attempts=verify_attempts,
        verify_delay=verify_delay,
    )
    options.validate()
    return options
