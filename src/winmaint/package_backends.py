"""!
@brief Package manager backends for install and uninstall items.
@details ``winget`` and ``choco`` are tried in priority order for
:attr:`~winmaint.constants.ActionKind.PACKAGE_INSTALL` and
:attr:`~winmaint.constants.ActionKind.PACKAGE_UNINSTALL`; a vendor download is
the last resort for installs. Each backend instance serves one kind, so the
default registration builds an install and an uninstall instance of both
package managers. The package identifier comes from the item's
``target_ref`` entry for the backend; ``desired_value`` may pin a version.
"""
from __future__ import annotations

import hashlib
import shutil
import tempfile
import time
import urllib.error
import urllib.parse
import urllib.request
from pathlib import Path
from typing import Any, List, Mapping, Sequence

from . import constants, exec_utils, logging_ext
from .action_backend import ActionBackend, outcome_from_command
from .constants import ActionKind
from .errors import ExecutionError
from .models import ActionOutcome, TriState
from .version import __version__

__all__ = [
    "WingetBackend",
    "ChocolateyBackend",
    "DirectDownloadBackend",
    "parse_choco_list",
]

_PACKAGE_KINDS = (ActionKind.PACKAGE_INSTALL, ActionKind.PACKAGE_UNINSTALL)

# winget HRESULTs, compared as unsigned 32-bit values.
WINGET_NO_PACKAGE_FOUND = 0x8A150014
WINGET_ALREADY_INSTALLED = 0x8A15002B

# choco list exit code when enhanced exit codes are on and nothing matched.
CHOCO_NO_RESULTS = 2

# Installer exit codes that mean success with a pending reboot.
REBOOT_REQUIRED_CODES = (1641, 3010)


def _unsigned(returncode: int) -> int:
    return returncode & 0xFFFFFFFF


def _version_pin(desired_value: Any) -> str | None:
    if isinstance(desired_value, Mapping):
        desired_value = desired_value.get("version")
    if desired_value in (None, "", True, "latest"):
        return None
    return str(desired_value)


class _PackageManagerBackend(ActionBackend):
    """!
    @brief Shared plumbing for command-line package managers.
    """

    executable: str = ""

    def __init__(self, kind: ActionKind, *, timeout: int = constants.PACKAGE_COMMAND_TIMEOUT) -> None:
        if kind not in _PACKAGE_KINDS:
            raise ValueError(f"{type(self).__name__} cannot serve {kind.value}")
        self.kind = kind
        self._timeout = timeout

    @property
    def installing(self) -> bool:
        return self.kind is ActionKind.PACKAGE_INSTALL

    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def _run(
        self,
        command: Sequence[str],
        *,
        event: str,
        package: str,
        dry_run: bool = False,
        message: str | None = None,
    ) -> exec_utils.CommandResult:
        return exec_utils.run_command(
            [self.executable, *command],
            event=event,
            timeout=self._timeout,
            dry_run=dry_run,
            human_message=message,
            extra={"package": package, "backend": self.name},
        )

    def installed(self, package: str) -> bool | None:
        """!
        @brief ``True``/``False`` when the manager can tell, ``None`` otherwise.
        """

        raise NotImplementedError

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        present = self.installed(str(target))
        if present is None:
            return TriState.UNKNOWN
        return TriState.from_bool(present if self.installing else not present)


class WingetBackend(_PackageManagerBackend):
    name = constants.BACKEND_WINGET
    executable = "winget"
    default_batch_size = constants.WINGET_BATCH_SIZE

    def installed(self, package: str) -> bool | None:
        result = self._run(
            ["list", "--id", package, "--exact", "--accept-source-agreements", "--disable-interactivity"],
            event="winget_list",
            package=package,
        )
        if result.timed_out or result.returncode == exec_utils.MISSING_EXECUTABLE_RC:
            return None
        if _unsigned(result.returncode) == WINGET_NO_PACKAGE_FOUND:
            return False
        if result.returncode == 0:
            return package.lower() in result.stdout.lower()
        return None

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        package = str(target)
        verb = "install" if self.installing else "uninstall"
        command: List[str] = [
            verb,
            "--id",
            package,
            "--exact",
            "--silent",
            "--accept-source-agreements",
            "--disable-interactivity",
        ]
        if self.installing:
            command.append("--accept-package-agreements")
            version = _version_pin(desired_value)
            if version:
                command += ["--version", version]

        started = time.perf_counter()
        result = self._run(
            command,
            event=f"winget_{verb}",
            package=package,
            dry_run=dry_run,
            message=f"winget {verb} {package}",
        )
        if result.skipped:
            return ActionOutcome(backend_name=self.name, succeeded=True, simulated=True)
        code = _unsigned(result.returncode)
        if self.installing and code == WINGET_ALREADY_INSTALLED:
            return ActionOutcome(backend_name=self.name, succeeded=True, already_satisfied=True)
        if not self.installing and code == WINGET_NO_PACKAGE_FOUND:
            return ActionOutcome(backend_name=self.name, succeeded=True, already_satisfied=True)
        return outcome_from_command(self, result, started)


def parse_choco_list(output: str) -> dict[str, str]:
    """!
    @brief Parse ``choco list --limit-output`` rows (``id|version``).
    """

    packages: dict[str, str] = {}
    for line in output.splitlines():
        name, sep, version = line.strip().partition("|")
        if sep and name:
            packages[name.lower()] = version.strip()
    return packages


class ChocolateyBackend(_PackageManagerBackend):
    name = constants.BACKEND_CHOCOLATEY
    executable = "choco"
    default_batch_size = constants.CHOCOLATEY_BATCH_SIZE

    def installed(self, package: str) -> bool | None:
        result = self._run(["list", "--exact", package, "--limit-output"], event="choco_list", package=package)
        if result.returncode == CHOCO_NO_RESULTS:
            return False
        if not result.ok:
            return None
        return package.lower() in parse_choco_list(result.stdout)

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        package = str(target)
        verb = "install" if self.installing else "uninstall"
        command: List[str] = [verb, package, "--yes", "--no-progress", "--limit-output"]
        if self.installing:
            version = _version_pin(desired_value)
            if version:
                command += ["--version", version]

        started = time.perf_counter()
        result = self._run(
            command,
            event=f"choco_{verb}",
            package=package,
            dry_run=dry_run,
            message=f"choco {verb} {package}",
        )
        if result.skipped:
            return ActionOutcome(backend_name=self.name, succeeded=True, simulated=True)
        if result.returncode in REBOOT_REQUIRED_CODES:
            logging_ext.get_human_logger().warning("%s %s requires a reboot to complete", verb, package)
            return ActionOutcome(
                backend_name=self.name,
                succeeded=True,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        return outcome_from_command(self, result, started)


class DirectDownloadBackend(ActionBackend):
    """!
    @brief Download a vendor installer and run it silently.
    @details The target is a URL or a mapping with ``url`` and optional
    ``sha256``, ``args`` (installer arguments) and ``detect_path`` (a file
    whose presence means the product is installed). MSI packages are run
    through ``msiexec /i ... /qn /norestart``.
    """

    name = constants.BACKEND_DIRECT_DOWNLOAD
    kind = ActionKind.PACKAGE_INSTALL
    default_batch_size = 2

    def __init__(
        self,
        *,
        download_timeout: int = constants.DOWNLOAD_TIMEOUT,
        install_timeout: int = constants.PACKAGE_COMMAND_TIMEOUT,
        download_dir: str | Path | None = None,
    ) -> None:
        self._download_timeout = download_timeout
        self._install_timeout = install_timeout
        self._download_dir = Path(download_dir) if download_dir else None

    @staticmethod
    def _source(target: Any) -> Mapping[str, Any]:
        if isinstance(target, Mapping):
            source = dict(target)
        else:
            source = {"url": str(target)}
        url = str(source.get("url") or "")
        if urllib.parse.urlparse(url).scheme not in ("http", "https"):
            raise ValueError(f"direct download needs an http(s) url, got {url!r}")
        return source

    def is_available(self) -> bool:
        return True

    def pre_check(self, target: Any, desired_value: Any = None) -> TriState:
        detect = self._source(target).get("detect_path")
        if not detect:
            return TriState.UNKNOWN
        return TriState.from_bool(Path(str(detect)).expanduser().exists())

    def download(self, url: str, destination: Path, expected_sha256: str | None = None) -> Path:
        """!
        @brief Fetch ``url`` to ``destination`` and verify its checksum.
        @throws ExecutionError On network errors or checksum mismatch.
        """

        human_logger = logging_ext.get_human_logger()
        human_logger.info("Downloading %s", url)
        request = urllib.request.Request(url, headers={"User-Agent": f"winmaint/{__version__}"})
        digest = hashlib.sha256()
        try:
            with urllib.request.urlopen(request, timeout=self._download_timeout) as response, open(
                destination, "wb"
            ) as handle:
                for block in iter(lambda: response.read(1 << 16), b""):
                    digest.update(block)
                    handle.write(block)
        except urllib.error.URLError as exc:
            raise ExecutionError(f"download failed: {exc}") from exc

        if expected_sha256 and digest.hexdigest().lower() != str(expected_sha256).strip().lower():
            destination.unlink(missing_ok=True)
            raise ExecutionError(f"checksum mismatch for {url}")
        logging_ext.get_machine_logger().info(
            "direct_download",
            extra=logging_ext.build_event_extra(
                "direct_download", url=url, path=str(destination), sha256=digest.hexdigest()
            ),
        )
        return destination

    @staticmethod
    def _installer_command(installer: Path, args: Sequence[str]) -> List[str]:
        if installer.suffix.lower() == ".msi":
            return ["msiexec.exe", "/i", str(installer), "/qn", "/norestart", *args]
        return [str(installer), *args]

    def apply(self, target: Any, desired_value: Any = None, *, dry_run: bool = False) -> ActionOutcome:
        source = self._source(target)
        url = str(source["url"])
        args = [str(arg) for arg in source.get("args") or ()]
        filename = Path(urllib.parse.urlparse(url).path).name or "installer.exe"

        if dry_run:
            logging_ext.get_human_logger().info("Dry-run: would download and run %s", url)
            return ActionOutcome(backend_name=self.name, succeeded=True, simulated=True)

        started = time.perf_counter()
        with tempfile.TemporaryDirectory(prefix="winmaint-dl-", dir=self._download_dir) as workdir:
            installer = self.download(url, Path(workdir) / filename, source.get("sha256"))
            result = exec_utils.run_command(
                self._installer_command(installer, args),
                event="direct_install",
                timeout=self._install_timeout,
                human_message=f"Running installer {filename}",
                extra={"url": url},
            )
        if result.returncode in REBOOT_REQUIRED_CODES:
            return ActionOutcome(
                backend_name=self.name,
                succeeded=True,
                duration_ms=(time.perf_counter() - started) * 1000.0,
            )
        return outcome_from_command(self, result, started)

    def describe_action(self, target: Any, desired_value: Any = None) -> str:
        return f"download and run {self._source(target)['url']}"
