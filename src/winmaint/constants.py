"""!
@brief Static data and enumerations for winmaint.
@details Centralises action kinds, backend identifiers, the default backend
priority table, batch sizing defaults, and error tags so the dispatcher,
backends, and reports work from a single source of truth.
"""
from __future__ import annotations

import enum
from typing import Dict, Tuple

try:  # pragma: no cover - Windows registry handles are optional on test hosts.
    import winreg
except ImportError:  # pragma: no cover - non-Windows hosts use the documented values.
    winreg = None  # type: ignore[assignment]


class ActionKind(str, enum.Enum):
    """!
    @brief Action family a diff item belongs to.
    @details The value is the wire name used in diff lists and reports.
    """

    PACKAGE_INSTALL = "PackageInstall"
    PACKAGE_UNINSTALL = "PackageUninstall"
    REGISTRY_VALUE = "RegistryValue"
    SERVICE_STATE = "ServiceState"
    SCHEDULED_TASK_STATE = "ScheduledTaskState"
    POLICY_VALUE = "PolicyValue"

    @classmethod
    def parse(cls, raw: object) -> "ActionKind":
        """!
        @brief Resolve ``raw`` (enum member, wire name, or member name) to a kind.
        @throws ValueError When ``raw`` names no known kind.
        """

        if isinstance(raw, cls):
            return raw
        text = str(raw or "").strip()
        for member in cls:
            if text == member.value or text.upper() == member.name:
                return member
        raise ValueError(f"Unknown action kind: {raw!r}")

    @classmethod
    def coerce(cls, raw: object) -> "ActionKind | str":
        """!
        @brief Like :meth:`parse`, but keep unrecognised names as plain strings.
        @details Audit tools may report kinds this build has no backend for;
        the dispatcher rejects those per item instead of the whole list.
        @throws ValueError When ``raw`` is blank.
        """

        try:
            return cls.parse(raw)
        except ValueError:
            text = str(raw or "").strip()
            if not text:
                raise ValueError("action kind must be non-empty") from None
            return text


BACKEND_WINGET = "winget"
BACKEND_CHOCOLATEY = "chocolatey"
BACKEND_DIRECT_DOWNLOAD = "direct"
BACKEND_REGISTRY = "registry"
BACKEND_REG_EXE = "reg"
BACKEND_SERVICE = "service"
BACKEND_SCHEDULED_TASK = "schtasks"
BACKEND_SECEDIT = "secedit"

DEFAULT_BACKEND_PRIORITY: Dict[ActionKind, Tuple[str, ...]] = {
    ActionKind.PACKAGE_INSTALL: (BACKEND_WINGET, BACKEND_CHOCOLATEY, BACKEND_DIRECT_DOWNLOAD),
    ActionKind.PACKAGE_UNINSTALL: (BACKEND_WINGET, BACKEND_CHOCOLATEY),
    ActionKind.REGISTRY_VALUE: (BACKEND_REGISTRY, BACKEND_REG_EXE),
    ActionKind.SERVICE_STATE: (BACKEND_SERVICE,),
    ActionKind.SCHEDULED_TASK_STATE: (BACKEND_SCHEDULED_TASK,),
    ActionKind.POLICY_VALUE: (BACKEND_SECEDIT, BACKEND_REGISTRY),
}
"""!
@brief Backend order tried for each action kind, most preferred first.
"""

DEFAULT_BATCH_SIZE = 4
"""!
@brief Batch size used by backends that do not declare their own.
"""

WINGET_BATCH_SIZE = 3
CHOCOLATEY_BATCH_SIZE = 2
"""!
@brief Chocolatey serialises on its lib directory lock; keep its fan-out low.
"""

DEFAULT_VERIFY_ATTEMPTS = 1
DEFAULT_VERIFY_DELAY = 0.0

PACKAGE_COMMAND_TIMEOUT = 900
REGISTRY_COMMAND_TIMEOUT = 30
SERVICE_COMMAND_TIMEOUT = 60
TASK_COMMAND_TIMEOUT = 60
POLICY_COMMAND_TIMEOUT = 120
DOWNLOAD_TIMEOUT = 300

ERROR_TAG_CONFIGURATION = "configuration"
ERROR_TAG_BACKEND_UNAVAILABLE = "backend_unavailable"
ERROR_TAG_EXECUTION = "execution"
ERROR_TAG_VERIFICATION = "verification_mismatch"
ERROR_TAG_DIFF_SOURCE = "diff_source"
ERROR_TAG_CANCELLED = "cancelled"

SKIP_REASON_NO_TARGET = "no_target"
SKIP_REASON_UNAVAILABLE = "unavailable"

if winreg is not None:  # pragma: no branch - deterministic assignments.
    HKLM = winreg.HKEY_LOCAL_MACHINE
    HKCU = winreg.HKEY_CURRENT_USER
    HKCR = winreg.HKEY_CLASSES_ROOT
    HKU = winreg.HKEY_USERS
else:  # pragma: no cover - exercised implicitly in non-Windows CI.
    HKLM = 0x80000002
    HKCU = 0x80000001
    HKCR = 0x80000000
    HKU = 0x80000003

REGISTRY_ROOTS: Dict[str, int] = {
    "HKLM": HKLM,
    "HKEY_LOCAL_MACHINE": HKLM,
    "HKCU": HKCU,
    "HKEY_CURRENT_USER": HKCU,
    "HKCR": HKCR,
    "HKEY_CLASSES_ROOT": HKCR,
    "HKU": HKU,
    "HKEY_USERS": HKU,
}

SERVICE_START_TYPES: Dict[str, str] = {
    "disabled": "disabled",
    "manual": "demand",
    "demand": "demand",
    "automatic": "auto",
    "auto": "auto",
    "delayed-auto": "delayed-auto",
}
"""!
@brief Desired service start modes mapped to ``sc.exe config start=`` tokens.
"""

SC_START_TYPE_CODES: Dict[str, str] = {
    "2": "auto",
    "3": "demand",
    "4": "disabled",
}
"""!
@brief ``sc.exe qc`` numeric START_TYPE codes mapped back to start modes.
"""
