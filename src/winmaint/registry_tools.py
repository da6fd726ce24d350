"""!
@brief Registry helpers and registry-value backends.
@details Low-level ``winreg`` wrappers (open, read, write) are shared by two
backends for :attr:`~winmaint.constants.ActionKind.REGISTRY_VALUE`:
:class:`RegistryValueBackend` talks to the API directly and
:class:`RegExeBackend` shells out to ``reg.exe`` as a fallback for hosts where
the API path is blocked (for example by a redirected or filtered token).

Targets are either a single string ``"HKLM\\Software\\Vendor\\ValueName"``
whose last segment is the value name, or a mapping
``{"path": "HKLM\\Software\\Vendor", "name": "ValueName", "type": "REG_DWORD"}``.
"""
from __future__ import annotations

import dataclasses
import re
import shutil
import time
from contextlib import contextmanager
from typing import Any, Iterator, List, Mapping, Tuple

from . import constants, exec_utils, logging_ext
from .action_backend import ActionBackend, outcome_from_command
from .constants import ActionKind
from .errors import BackendUnavailable
from .models import ActionOutcome, TriState

try:  # pragma: no cover - exercised through mocks on non-Windows platforms.
    import winreg
except ImportError:  # pragma: no cover - handled gracefully during tests.
    winreg = None  # type: ignore[assignment]

__all__ = [
    "RegistryTarget",
    "parse_registry_target",
    "infer_value_type",
    "coerce_value",
    "values_match",
    "open_key",
    "read_value",
    "set_value",
    "parse_reg_query",
    "RegistryValueBackend",
    "RegExeBackend",
]

VALUE_TYPES = ("REG_SZ", "REG_EXPAND_SZ", "REG_MULTI_SZ", "REG_DWORD", "REG_QWORD")


def _ensure_winreg() -> None:
    """!
    @brief Raise :class:`BackendUnavailable` when ``winreg`` is missing.
    @details Kept apart from ``OSError`` so callers that treat a missing key as
    "not set" never mistake a non-Windows host for an empty registry.
    """

    if winreg is None:
        raise BackendUnavailable("Windows registry APIs are unavailable on this platform")


@dataclasses.dataclass(frozen=True)
class RegistryTarget:
    """!
    @brief Parsed registry value location.
    @details ``hive`` is the short name (``HKLM``); ``value_type`` is ``None``
    when the caller left the type to be inferred from the desired value.
    """

    hive: str
    path: str
    value_name: str
    value_type: str | None = None

    @property
    def root(self) -> int:
        return constants.REGISTRY_ROOTS[self.hive]

    @property
    def key(self) -> str:
        return f"{self.hive}\\{self.path}"

    def __str__(self) -> str:
        return f"{self.key}\\{self.value_name or '(Default)'}"


_HIVE_ALIASES = {
    "HKEY_LOCAL_MACHINE": "HKLM",
    "HKEY_CURRENT_USER": "HKCU",
    "HKEY_CLASSES_ROOT": "HKCR",
    "HKEY_USERS": "HKU",
}


def _split_key(raw_key: str) -> Tuple[str, str]:
    cleaned = str(raw_key).strip().replace("/", "\\").strip("\\")
    hive, _, path = cleaned.partition("\\")
    hive = hive.upper()
    hive = _HIVE_ALIASES.get(hive, hive)
    if hive not in constants.REGISTRY_ROOTS:
        raise ValueError(f"unknown registry hive in {raw_key!r}")
    if not path:
        raise ValueError(f"registry path missing in {raw_key!r}")
    return hive, path


def parse_registry_target(raw: Any) -> RegistryTarget:
    """!
    @brief Normalise a diff item's registry target.
    @throws ValueError When the hive is unknown, the path is empty, or the
    declared type is not supported.
    """

    if isinstance(raw, RegistryTarget):
        return raw
    if isinstance(raw, Mapping):
        hive, path = _split_key(str(raw.get("path") or raw.get("key") or ""))
        value_name = str(raw.get("name") or raw.get("value") or "")
        value_type = raw.get("type")
    elif isinstance(raw, str):
        hive, full_path = _split_key(raw)
        path, _, value_name = full_path.rpartition("\\")
        if not path:
            raise ValueError(f"registry target {raw!r} must include a value name")
        value_type = None
    else:
        raise ValueError(f"unsupported registry target {raw!r}")

    if value_type is not None:
        value_type = str(value_type).upper()
        if value_type not in VALUE_TYPES:
            raise ValueError(f"unsupported registry value type {value_type!r}")
    return RegistryTarget(hive=hive, path=path, value_name=value_name, value_type=value_type)


def infer_value_type(value: Any) -> str:
    if isinstance(value, int):
        return "REG_QWORD" if int(value) > 0xFFFFFFFF else "REG_DWORD"
    if isinstance(value, (list, tuple)):
        return "REG_MULTI_SZ"
    return "REG_SZ"


def coerce_value(value: Any, value_type: str) -> Any:
    """!
    @brief Convert ``value`` to the Python type ``winreg`` expects for ``value_type``.
    @throws ValueError When the value cannot be represented.
    """

    if value_type in ("REG_DWORD", "REG_QWORD"):
        if isinstance(value, str):
            text = value.strip().lower()
            return int(text, 16) if text.startswith("0x") else int(text)
        return int(value)
    if value_type == "REG_MULTI_SZ":
        if isinstance(value, str):
            return [value]
        return [str(part) for part in value]
    return "" if value is None else str(value)


def values_match(current: Any, desired: Any, value_type: str) -> bool:
    try:
        return coerce_value(current, value_type) == coerce_value(desired, value_type)
    except (TypeError, ValueError):
        return False


@contextmanager
def open_key(root: int, path: str, access: int | None = None) -> Iterator[Any]:
    """!
    @brief Context manager that mirrors ``winreg.OpenKey`` while ensuring
    handles are closed correctly.
    """

    _ensure_winreg()
    access_mask = access if access is not None else winreg.KEY_READ  # type: ignore[union-attr]
    handle = winreg.OpenKey(root, path, 0, access_mask)  # type: ignore[union-attr]
    try:
        yield handle
    finally:
        winreg.CloseKey(handle)  # type: ignore[union-attr]


def read_value(root: int, path: str, value_name: str) -> Tuple[bool, Any]:
    """!
    @brief Read ``value_name`` beneath ``root``/``path``.
    @returns ``(found, value)``. A missing key or value is ``(False, None)``;
    any other ``OSError`` (access denied) propagates.
    """

    _ensure_winreg()
    try:
        with open_key(root, path) as handle:
            value, _ = winreg.QueryValueEx(handle, value_name)  # type: ignore[union-attr]
            return True, value
    except FileNotFoundError:
        return False, None


def set_value(root: int, path: str, value_name: str, value: Any, value_type: str) -> None:
    """!
    @brief Create ``root``/``path`` if needed and write ``value_name``.
    """

    _ensure_winreg()
    type_code = getattr(winreg, value_type)
    handle = winreg.CreateKeyEx(root, path, 0, winreg.KEY_SET_VALUE)  # type: ignore[union-attr]
    try:
        winreg.SetValueEx(handle, value_name, 0, type_code, coerce_value(value, value_type))  # type: ignore[union-attr]
    finally:
        winreg.CloseKey(handle)  # type: ignore[union-attr]


def _resolve(target: Any, desired_value: Any) -> Tuple[RegistryTarget, str]:
    parsed = parse_registry_target(target)
    return parsed, parsed.value_type or infer_value_type(desired_value)


class RegistryValueBackend(ActionBackend):
    """!
    @brief Set registry values through the ``winreg`` API.
    @details One instance serves one kind; the default registration also
    uses it as the fallback for :attr:`ActionKind.POLICY_VALUE` items whose
    policy is backed by a registry value.
    """

    name = constants.BACKEND_REGISTRY

    def __init__(self, kind: ActionKind = ActionKind.REGISTRY_VALUE) -> None:
        self.kind = kind

    def is_available(self) -> bool:
        return winreg is not None

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        parsed, value_type = _resolve(target, desired_value)
        found, current = read_value(parsed.root, parsed.path, parsed.value_name)
        if not found:
            return TriState.NO
        return TriState.from_bool(values_match(current, desired_value, value_type))

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        parsed, value_type = _resolve(target, desired_value)
        human_logger = logging_ext.get_human_logger()
        if dry_run:
            human_logger.info("Dry-run: would set %s = %r (%s)", parsed, desired_value, value_type)
            return ActionOutcome(backend_name=self.name, succeeded=True, simulated=True)

        started = time.perf_counter()
        set_value(parsed.root, parsed.path, parsed.value_name, desired_value, value_type)
        human_logger.info("Set %s = %r (%s)", parsed, desired_value, value_type)
        logging_ext.get_machine_logger().info(
            "registry_set",
            extra=logging_ext.build_event_extra(
                "registry_set", target=str(parsed), value_type=value_type, value=desired_value
            ),
        )
        return ActionOutcome(
            backend_name=self.name,
            succeeded=True,
            duration_ms=(time.perf_counter() - started) * 1000.0,
        )

    def describe_action(self, target: Any, desired_value: Any = None) -> str:
        parsed, value_type = _resolve(target, desired_value)
        return f"set {parsed} to {desired_value!r} ({value_type}) via winreg"


_REG_QUERY_LINE = re.compile(r"^\s{2,}(?P<name>.*?)\s{2,}(?P<type>REG_[A-Z_]+)(?:\s{2,}(?P<data>.*))?$")


def parse_reg_query(output: str) -> List[Tuple[str, str, str]]:
    """!
    @brief Extract ``(name, type, data)`` rows from ``reg query`` output.
    @details ``reg.exe`` prints ``(Default)`` for the unnamed value; it is
    returned as an empty name.
    """

    rows: List[Tuple[str, str, str]] = []
    for line in output.splitlines():
        match = _REG_QUERY_LINE.match(line.rstrip())
        if not match:
            continue
        name = match.group("name")
        if name == "(Default)":
            name = ""
        rows.append((name, match.group("type"), match.group("data") or ""))
    return rows


def _reg_data(value: Any, value_type: str) -> str:
    coerced = coerce_value(value, value_type)
    if value_type == "REG_MULTI_SZ":
        return "\\0".join(coerced)
    return str(coerced)


def _parse_reg_data(data: str, value_type: str) -> Any:
    if value_type in ("REG_DWORD", "REG_QWORD"):
        return coerce_value(data, value_type)
    if value_type == "REG_MULTI_SZ":
        return [part for part in data.split("\\0") if part]
    return data


class RegExeBackend(ActionBackend):
    """!
    @brief Set registry values by running ``reg.exe add``.
    """

    name = constants.BACKEND_REG_EXE
    kind = ActionKind.REGISTRY_VALUE

    def __init__(self, *, timeout: int = constants.REGISTRY_COMMAND_TIMEOUT) -> None:
        self._timeout = timeout

    def is_available(self) -> bool:
        return shutil.which("reg") is not None

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        parsed, value_type = _resolve(target, desired_value)
        command = ["reg", "query", parsed.key]
        command += ["/v", parsed.value_name] if parsed.value_name else ["/ve"]
        result = exec_utils.run_command(
            command,
            event="reg_query",
            timeout=self._timeout,
            extra={"target": str(parsed)},
        )
        if result.timed_out or result.returncode == exec_utils.MISSING_EXECUTABLE_RC:
            return TriState.UNKNOWN
        if result.returncode != 0:
            # reg.exe exits 1 when the key or value does not exist.
            return TriState.NO
        for name, found_type, data in parse_reg_query(result.stdout):
            if name.lower() == parsed.value_name.lower():
                try:
                    current = _parse_reg_data(data, found_type)
                except ValueError:
                    return TriState.UNKNOWN
                return TriState.from_bool(values_match(current, desired_value, value_type))
        return TriState.NO

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        parsed, value_type = _resolve(target, desired_value)
        command = ["reg", "add", parsed.key]
        command += ["/v", parsed.value_name] if parsed.value_name else ["/ve"]
        command += ["/t", value_type, "/d", _reg_data(desired_value, value_type), "/f"]
        started = time.perf_counter()
        result = exec_utils.run_command(
            command,
            event="reg_add",
            timeout=self._timeout,
            dry_run=dry_run,
            human_message=f"Setting {parsed} via reg.exe",
            extra={"target": str(parsed), "value_type": value_type},
        )
        if result.skipped:
            return ActionOutcome(backend_name=self.name, succeeded=True, simulated=True)
        return outcome_from_command(self, result, started)

    def describe_action(self, target: Any, desired_value: Any = None) -> str:
        parsed, value_type = _resolve(target, desired_value)
        return f"reg add {parsed.key} /v {parsed.value_name} /t {value_type} /d {_reg_data(desired_value, value_type)}"
