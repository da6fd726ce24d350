"""!
@brief Structured logging helpers for winmaint.
@details Implements the dual-stream pipeline used across the toolkit: a
human-readable text log and a JSONL telemetry log, both rotated on disk.
Records travel through a :class:`logging.handlers.QueueHandler` and are
written by a background :class:`logging.handlers.QueueListener`, so engine
workers never block on file I/O while reporting dispatch decisions and
backend attempts.
"""
from __future__ import annotations

import datetime as _dt
import json
import logging
import queue
import sys
import uuid
from logging import handlers
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Tuple

from . import version

HUMAN_LOGGER_NAME = "winmaint.human"
"""!
@brief Logger name for human-readable output.
"""

MACHINE_LOGGER_NAME = "winmaint.machine"
"""!
@brief Logger name for JSONL telemetry output.
"""

HUMAN_LOG_FILENAME = "winmaint.log"
MACHINE_LOG_FILENAME = "winmaint.jsonl"

_STANDARD_RECORD_KEYS = frozenset(
    {
        "name",
        "msg",
        "args",
        "levelname",
        "levelno",
        "pathname",
        "filename",
        "module",
        "exc_info",
        "exc_text",
        "stack_info",
        "lineno",
        "funcName",
        "created",
        "msecs",
        "relativeCreated",
        "thread",
        "threadName",
        "processName",
        "process",
        "taskName",
        "message",
        "asctime",
        "channel",
    }
)

_CURRENT_LOG_DIRECTORY: Path | None = None
_RUN_METADATA: Dict[str, object] | None = None
_LISTENERS: List[handlers.QueueListener] = []


class _ChannelFilter(logging.Filter):
    """!
    @brief Inject a fixed ``channel`` attribute on log records.
    @details Attached to the logger itself so the attribute is set before the
    record is queued and formatters on the listener side can rely on it.
    """

    def __init__(self, channel: str) -> None:
        super().__init__()
        self._channel = channel

    def filter(self, record: logging.LogRecord) -> bool:
        record.channel = self._channel
        return True


class _JsonLineFormatter(logging.Formatter):
    """!
    @brief Format records as single-line JSON objects.
    @details Standard metadata (timestamp, level, logger, message, channel) is
    merged with the caller's ``extra`` attributes; values that cannot be
    serialised are replaced by their ``repr``.
    """

    def format(self, record: logging.LogRecord) -> str:  # noqa: D401 - concise override
        moment = _dt.datetime.fromtimestamp(record.created, tz=_dt.timezone.utc)
        payload: Dict[str, object] = {
            "timestamp": moment.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "channel": getattr(record, "channel", "machine"),
        }
        payload.update(_extract_extras(record))
        try:
            return json.dumps(payload, ensure_ascii=False)
        except (TypeError, ValueError):
            sanitized = {key: _coerce_json(value) for key, value in payload.items()}
            return json.dumps(sanitized, ensure_ascii=False)


def _extract_extras(record: logging.LogRecord) -> Dict[str, object]:
    return {key: value for key, value in record.__dict__.items() if key not in _STANDARD_RECORD_KEYS}


def _coerce_json(value: object) -> object:
    try:
        json.dumps(value)
    except (TypeError, ValueError):
        return repr(value)
    return value


def _reset_logger(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for flt in list(logger.filters):
        logger.removeFilter(flt)


def _attach_queue(
    logger: logging.Logger,
    channel: str,
    formatter: logging.Formatter,
    sinks: Iterable[logging.Handler],
) -> handlers.QueueListener:
    """!
    @brief Route ``logger`` through a queue drained by a background listener.
    """

    _reset_logger(logger)
    sink_list = list(sinks)
    for sink in sink_list:
        sink.setFormatter(formatter)
    record_queue: "queue.SimpleQueue[logging.LogRecord]" = queue.SimpleQueue()
    logger.addFilter(_ChannelFilter(channel))
    logger.addHandler(handlers.QueueHandler(record_queue))
    logger.propagate = False
    listener = handlers.QueueListener(record_queue, *sink_list, respect_handler_level=True)
    listener.start()
    return listener


def setup_logging(
    root_dir: Path,
    *,
    json_to_stdout: bool = False,
    level: int = logging.INFO,
) -> Tuple[logging.Logger, logging.Logger]:
    """!
    @brief Set up the human and machine loggers under ``root_dir``.
    @details Calling this again replaces the previous configuration after
    draining its queues. A ``run_start`` event with run metadata is emitted so
    log bundles can be correlated with reports.
    @param root_dir Directory receiving ``winmaint.log`` and ``winmaint.jsonl``.
    @param json_to_stdout Mirror machine events to stdout as well.
    @param level Minimum level for both loggers.
    @returns Tuple of ``(human_logger, machine_logger)``.
    """

    global _CURRENT_LOG_DIRECTORY

    shutdown_logging()
    root_dir = Path(root_dir)
    root_dir.mkdir(parents=True, exist_ok=True)
    _CURRENT_LOG_DIRECTORY = root_dir

    human_logger = logging.getLogger(HUMAN_LOGGER_NAME)
    machine_logger = logging.getLogger(MACHINE_LOGGER_NAME)
    human_logger.setLevel(level)
    machine_logger.setLevel(level)

    human_formatter = logging.Formatter(
        "%(asctime)s %(levelname)-8s [%(channel)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )
    human_file = handlers.RotatingFileHandler(
        root_dir / HUMAN_LOG_FILENAME,
        maxBytes=1_048_576,
        backupCount=5,
        encoding="utf-8",
    )
    machine_file = handlers.RotatingFileHandler(
        root_dir / MACHINE_LOG_FILENAME,
        maxBytes=1_048_576,
        backupCount=5,
        encoding="utf-8",
    )
    machine_sinks: List[logging.Handler] = [machine_file]
    if json_to_stdout:
        machine_sinks.append(logging.StreamHandler(stream=sys.stdout))

    _LISTENERS.append(_attach_queue(human_logger, "human", human_formatter, [human_file]))
    _LISTENERS.append(_attach_queue(machine_logger, "machine", _JsonLineFormatter(), machine_sinks))

    _emit_run_metadata(human_logger, machine_logger)
    return human_logger, machine_logger


def shutdown_logging() -> None:
    """!
    @brief Drain queued records to disk and close the file handlers.
    @details Safe to call when logging was never configured.
    """

    while _LISTENERS:
        listener = _LISTENERS.pop()
        listener.stop()
        for sink in listener.handlers:
            sink.flush()
            sink.close()
    for name in (HUMAN_LOGGER_NAME, MACHINE_LOGGER_NAME):
        _reset_logger(logging.getLogger(name))


def get_human_logger() -> logging.Logger:
    return logging.getLogger(HUMAN_LOGGER_NAME)


def get_machine_logger() -> logging.Logger:
    return logging.getLogger(MACHINE_LOGGER_NAME)


def get_log_directory() -> Path | None:
    return _CURRENT_LOG_DIRECTORY


def get_run_metadata() -> Mapping[str, object] | None:
    """!
    @brief Return the metadata recorded by the most recent :func:`setup_logging`.
    @details Contains ``run_id`` (UUID4 hex), ``timestamp`` (ISO-8601 UTC),
    ``version``, ``build``, ``python``, and ``logdir``.
    """

    return dict(_RUN_METADATA) if _RUN_METADATA is not None else None


def build_event_extra(event: str, **fields: object) -> Dict[str, object]:
    """!
    @brief Build the ``extra`` mapping for a machine-log event.
    @details Adds ``event`` and the current ``run_id``. Keys that collide with
    :class:`logging.LogRecord` attributes get a trailing underscore, since
    ``logging`` refuses to overwrite them.
    """

    payload: Dict[str, object] = {"event": event}
    if _RUN_METADATA is not None:
        payload["run_id"] = _RUN_METADATA["run_id"]
    for key, value in fields.items():
        safe_key = f"{key}_" if key in _STANDARD_RECORD_KEYS else key
        payload[safe_key] = value
    return payload


def _emit_run_metadata(human_logger: logging.Logger, machine_logger: logging.Logger) -> None:
    global _RUN_METADATA

    moment = _dt.datetime.now(tz=_dt.timezone.utc)
    _RUN_METADATA = {
        "run_id": uuid.uuid4().hex,
        "timestamp": moment.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
        "version": version.__version__,
        "build": version.__build__,
        "python": sys.version.split()[0],
        "logdir": str(_CURRENT_LOG_DIRECTORY) if _CURRENT_LOG_DIRECTORY else None,
    }

    human_logger.info(
        "winmaint %s (%s) starting, run %s",
        version.__version__,
        version.__build__,
        _RUN_METADATA["run_id"],
    )
    if _CURRENT_LOG_DIRECTORY is not None:
        human_logger.info("Logs directory: %s", _CURRENT_LOG_DIRECTORY)

    machine_logger.info("run_start", extra={"event": "run_start", "run": dict(_RUN_METADATA)})
