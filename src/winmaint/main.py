"""!
@brief Command-line entry point for winmaint.
@details ``winmaint reconcile`` loads a diff list for one module, builds the
default backend set, runs the engine, prints a summary and optionally writes
a JSON report. Exit codes: ``0`` for ``Success``/``Skipped``, ``1`` for
``PartialSuccess``/``Failed``, ``2`` when the configuration or the diff
source is unusable.
"""
from __future__ import annotations

import argparse
import logging
import os
import pathlib
import signal
import sys
import threading
from typing import Iterable, List, Optional

from . import logging_ext, report, version
from .action_backend import ActionBackend
from .constants import ActionKind
from .diff_source import JsonDiffSource
from .engine import ReconcileEngine
from .errors import ConfigurationError, DiffSourceError
from .models import ModuleResult, ModuleStatus
from .options import collect_options, load_config_file
from .package_backends import ChocolateyBackend, DirectDownloadBackend, WingetBackend
from .policy_backend import SeceditPolicyBackend
from .registry_tools import RegExeBackend, RegistryValueBackend
from .scheduler import CancellationToken
from .tasks_services import ScheduledTaskBackend, ServiceStateBackend

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_USAGE = 2


def build_default_backends() -> List[ActionBackend]:
    """!
    @brief Backend set registered by the CLI.
    @details Package managers are registered once per kind they serve; the
    registry writer doubles as the fallback for registry-backed policies.
    """

    return [
        WingetBackend(ActionKind.PACKAGE_INSTALL),
        ChocolateyBackend(ActionKind.PACKAGE_INSTALL),
        DirectDownloadBackend(),
        WingetBackend(ActionKind.PACKAGE_UNINSTALL),
        ChocolateyBackend(ActionKind.PACKAGE_UNINSTALL),
        RegistryValueBackend(),
        RegExeBackend(),
        ServiceStateBackend(),
        ScheduledTaskBackend(),
        SeceditPolicyBackend(),
        RegistryValueBackend(ActionKind.POLICY_VALUE),
    ]


def build_arg_parser() -> argparse.ArgumentParser:
    """!
    @brief Create the argument parser.
    """

    parser = argparse.ArgumentParser(prog="winmaint", add_help=True)
    metadata = version.build_info()
    parser.add_argument(
        "-V",
        "--version",
        action="version",
        version=f"{metadata['version']} ({metadata['build']})",
    )
    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    reconcile = commands.add_parser("reconcile", help="Apply corrective actions for one module's diff list.")
    reconcile.add_argument("--diff", required=True, metavar="FILE", help="JSON file holding diff lists.")
    reconcile.add_argument("--module", required=True, metavar="NAME", help="Module whose diff list to apply.")
    reconcile.add_argument(
        "--dry-run",
        action="store_true",
        default=None,
        help="Run pre-checks and report planned actions without changing the system.",
    )
    reconcile.add_argument("--batch-size", type=int, metavar="N", help="Items executed concurrently per batch.")
    reconcile.add_argument(
        "--category",
        action="append",
        metavar="C",
        help="Only process items whose metadata category matches (repeatable).",
    )
    reconcile.add_argument("--platform", metavar="NAME", help="Skip items excluding this platform.")
    reconcile.add_argument("--verify-attempts", type=int, metavar="N", help="Post-check polls per action.")
    reconcile.add_argument("--verify-delay", type=float, metavar="SECONDS", help="Delay between post-check polls.")
    reconcile.add_argument("--config", metavar="FILE", help="JSON configuration file.")
    reconcile.add_argument("--logdir", metavar="DIR", help="Directory for winmaint.log and winmaint.jsonl.")
    reconcile.add_argument("--json", action="store_true", help="Mirror machine events to stdout.")
    reconcile.add_argument("--report", metavar="OUT", help="Write a JSON report to OUT.")
    reconcile.add_argument("--quiet", action="store_true", help="Only print errors and the summary.")
    return parser


def _resolve_log_directory(candidate: Optional[str]) -> pathlib.Path:
    """!
    @brief Pick the log directory: explicit value, else a per-host default.
    """

    if candidate:
        return pathlib.Path(candidate).expanduser().resolve()
    if os.name == "nt":
        base = pathlib.Path(os.environ.get("ProgramData", r"C:\ProgramData"))
        return base / "winmaint" / "logs"
    return pathlib.Path.home() / ".winmaint" / "logs"


def _bootstrap_logging(args: argparse.Namespace, config: dict) -> tuple[logging.Logger, logging.Logger]:
    logdir = _resolve_log_directory(getattr(args, "logdir", None) or config.get("logdir"))
    human_logger, machine_logger = logging_ext.setup_logging(
        logdir,
        json_to_stdout=bool(getattr(args, "json", False)),
    )
    if getattr(args, "quiet", False):
        human_logger.setLevel(logging.ERROR)
    return human_logger, machine_logger


def exit_code_for(result: ModuleResult) -> int:
    if result.status in (ModuleStatus.SUCCESS, ModuleStatus.SKIPPED):
        return EXIT_OK
    return EXIT_FAILED


def _run_reconcile(args: argparse.Namespace) -> int:
    try:
        config = load_config_file(args.config)
    except ConfigurationError as exc:
        print(f"winmaint: {exc}", file=sys.stderr)
        return EXIT_USAGE

    human_log, machine_log = _bootstrap_logging(args, config)
    try:
        options = collect_options(args, config)
        engine = ReconcileEngine(build_default_backends())
    except ConfigurationError as exc:
        human_log.error("Configuration error: %s", exc)
        print(f"winmaint: {exc}", file=sys.stderr)
        return EXIT_USAGE

    machine_log.info(
        "startup",
        extra=logging_ext.build_event_extra(
            "startup", module_name=args.module, diff=str(args.diff), dry_run=options.dry_run
        ),
    )

    token = CancellationToken()
    # signal handlers can only be installed from the main thread.
    owns_signals = threading.current_thread() is threading.main_thread()
    previous_handler = signal.getsignal(signal.SIGINT) if owns_signals else None

    def _cancel(signum: int, frame: object) -> None:
        human_log.warning("Interrupt received; finishing the current batch")
        token.cancel()

    if owns_signals:
        signal.signal(signal.SIGINT, _cancel)
    try:
        result = engine.run_module(args.module, JsonDiffSource(args.diff), options, token)
    except (ConfigurationError, DiffSourceError) as exc:
        human_log.error("%s", exc)
        print(f"winmaint: {exc}", file=sys.stderr)
        return EXIT_USAGE
    finally:
        if owns_signals:
            signal.signal(signal.SIGINT, previous_handler)

    print(report.format_summary(result))
    for line in result.errors:
        print(f"  {line}")
    if args.report:
        report.write_report([result], args.report)
    return exit_code_for(result)


def main(argv: Optional[Iterable[str]] = None) -> int:
    """!
    @brief Entry point for the ``winmaint`` console script.
    @returns Process exit code integer.
    """

    parser = build_arg_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)
    try:
        if args.command == "reconcile":
            return _run_reconcile(args)
        parser.error(f"unknown command {args.command!r}")
        return EXIT_USAGE
    finally:
        logging_ext.shutdown_logging()


if __name__ == "__main__":  # pragma: no cover - for manual execution
    sys.exit(main())
