"""!
@brief Local security policy backend driven by ``secedit.exe``.
@details ``secedit /export`` writes the effective policy to a UTF-16 INF
file; ``secedit /configure`` applies a template containing only the settings
to change. Targets name a template section and key, either as
``"System Access/MinimumPasswordLength"`` or as
``{"section": "System Access", "key": "MinimumPasswordLength"}``.
"""
from __future__ import annotations

import configparser
import dataclasses
import shutil
import tempfile
import time
from pathlib import Path
from typing import Any, Dict, Mapping

from . import constants, exec_utils, logging_ext
from .action_backend import ActionBackend, outcome_from_command
from .constants import ActionKind
from .models import ActionOutcome, TriState

__all__ = ["PolicyTarget", "parse_policy_target", "read_inf", "render_inf", "SeceditPolicyBackend"]

_USER_RIGHTS_SECTION = "Privilege Rights"


@dataclasses.dataclass(frozen=True)
class PolicyTarget:
    section: str
    key: str

    @property
    def area(self) -> str:
        """!
        @brief ``secedit /areas`` token covering this section.
        """

        return "USER_RIGHTS" if self.section == _USER_RIGHTS_SECTION else "SECURITYPOLICY"

    def __str__(self) -> str:
        return f"{self.section}/{self.key}"


def parse_policy_target(raw: Any) -> PolicyTarget:
    """!
    @throws ValueError When the section or key is missing.
    """

    if isinstance(raw, PolicyTarget):
        return raw
    if isinstance(raw, Mapping):
        section, key = str(raw.get("section") or ""), str(raw.get("key") or "")
    else:
        section, _, key = str(raw or "").partition("/")
    section, key = section.strip(), key.strip()
    if not section or not key:
        raise ValueError(f"policy target {raw!r} must name a section and a key")
    return PolicyTarget(section=section, key=key)


def _new_parser() -> configparser.ConfigParser:
    parser = configparser.ConfigParser(delimiters=("=",), interpolation=None, strict=False)
    parser.optionxform = str  # type: ignore[assignment,method-assign]
    return parser


def read_inf(path: Path) -> Dict[str, Dict[str, str]]:
    """!
    @brief Parse a secedit INF export into ``{section: {key: value}}``.
    @details Exports are UTF-16 with a BOM; hand-written templates are
    usually UTF-8.
    """

    raw = path.read_bytes()
    if raw.startswith((b"\xff\xfe", b"\xfe\xff")):
        text = raw.decode("utf-16")
    else:
        text = raw.decode("utf-8-sig")
    parser = _new_parser()
    parser.read_string(text)
    return {section: dict(parser.items(section)) for section in parser.sections()}


def _format_value(value: Any) -> str:
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, (list, tuple)):
        return ",".join(str(part) for part in value)
    return str(value)


def _normalise(value: str) -> str:
    return ",".join(part.strip().strip('"') for part in str(value).split(",")).lower()


_TEMPLATE_HEADER = ["[Unicode]", "Unicode=yes", "[Version]", 'signature="$CHICAGO$"', "Revision=1"]


def render_inf(settings: Mapping[str, Mapping[str, Any]]) -> str:
    """!
    @brief Build a security template applying ``settings``.
    @details Header sections come first, in the order ``secedit /export`` writes
    them; ``Unicode`` and ``Version`` entries in ``settings`` are ignored.
    """

    lines = _TEMPLATE_HEADER[:]
    for section, values in settings.items():
        if section in ("Unicode", "Version"):
            continue
        lines.append(f"[{section}]")
        lines.extend(f"{key} = {_format_value(value)}" for key, value in values.items())
    lines.append("")
    return "\r\n".join(lines)


class SeceditPolicyBackend(ActionBackend):
    """!
    @brief Apply ``PolicyValue`` items through ``secedit.exe``.
    """

    name = constants.BACKEND_SECEDIT
    kind = ActionKind.POLICY_VALUE
    # secedit serialises on the local security database.
    default_batch_size = 1

    def __init__(self, *, timeout: int = constants.POLICY_COMMAND_TIMEOUT) -> None:
        self._timeout = timeout

    def is_available(self) -> bool:
        return shutil.which("secedit.exe") is not None or shutil.which("secedit") is not None

    def _export(self, target: PolicyTarget, workdir: Path) -> Dict[str, Dict[str, str]] | None:
        export_path = workdir / "export.inf"
        result = exec_utils.run_command(
            ["secedit.exe", "/export", "/cfg", str(export_path), "/areas", target.area, "/quiet"],
            event="secedit_export",
            timeout=self._timeout,
            extra={"target": str(target)},
        )
        if not result.ok or not export_path.exists():
            return None
        return read_inf(export_path)

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        parsed = parse_policy_target(target)
        with tempfile.TemporaryDirectory(prefix="winmaint-secedit-") as workdir:
            exported = self._export(parsed, Path(workdir))
        if exported is None:
            return TriState.UNKNOWN
        current = exported.get(parsed.section, {}).get(parsed.key)
        if current is None:
            return TriState.NO
        return TriState.from_bool(_normalise(current) == _normalise(_format_value(desired_value)))

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        parsed = parse_policy_target(target)
        started = time.perf_counter()
        with tempfile.TemporaryDirectory(prefix="winmaint-secedit-") as workdir:
            template = Path(workdir) / "apply.inf"
            database = Path(workdir) / "apply.sdb"
            template.write_text(render_inf({parsed.section: {parsed.key: desired_value}}), encoding="utf-16")
            result = exec_utils.run_command(
                [
                    "secedit.exe",
                    "/configure",
                    "/db",
                    str(database),
                    "/cfg",
                    str(template),
                    "/areas",
                    parsed.area,
                    "/quiet",
                ],
                event="secedit_configure",
                timeout=self._timeout,
                dry_run=dry_run,
                human_message=f"Applying security policy {parsed}",
                extra={"target": str(parsed)},
            )
        if result.skipped:
            return ActionOutcome(backend_name=self.name, succeeded=True, simulated=True)
        if not result.ok:
            logging_ext.get_human_logger().warning(
                "secedit could not apply %s; see %s", parsed, "%windir%\\security\\logs\\scesrv.log"
            )
        return outcome_from_command(self, result, started)

    def describe_action(self, target: Any, desired_value: Any = None) -> str:
        parsed = parse_policy_target(target)
        return f"secedit /configure [{parsed.section}] {parsed.key} = {_format_value(desired_value)}"
