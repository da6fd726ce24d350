"""!
@brief winget, Chocolatey and direct download backend tests.
"""

from __future__ import annotations

import hashlib
import io

import pytest

from _fakes import ScriptedRunner, command_result
from winmaint import constants, exec_utils, package_backends
from winmaint.constants import ActionKind
from winmaint.errors import ExecutionError
from winmaint.models import TriState

INSTALL = ActionKind.PACKAGE_INSTALL
UNINSTALL = ActionKind.PACKAGE_UNINSTALL


def _signed(code: int) -> int:
    """!
    @brief winget reports HRESULTs as negative exit codes on Windows.
    """

    return code - (1 << 32)


WINGET_LIST = """Name    Id         Version Source
---------------------------------------
7-Zip   7zip.7zip  23.01   winget
"""


@pytest.fixture
def runner(monkeypatch: pytest.MonkeyPatch) -> ScriptedRunner:
    scripted = ScriptedRunner()
    monkeypatch.setattr(exec_utils, "run_command", scripted)
    return scripted


def test_package_backend_rejects_other_kinds() -> None:
    with pytest.raises(ValueError):
        package_backends.WingetBackend(ActionKind.REGISTRY_VALUE)


def test_winget_pre_check_for_install_and_uninstall(runner: ScriptedRunner) -> None:
    runner.responses[("winget", "list", "--id", "7zip.7zip")] = command_result(["winget"], stdout=WINGET_LIST)
    runner.responses[("winget", "list", "--id", "Missing.App")] = command_result(
        ["winget"], returncode=_signed(package_backends.WINGET_NO_PACKAGE_FOUND)
    )

    install = package_backends.WingetBackend(INSTALL)
    uninstall = package_backends.WingetBackend(UNINSTALL)

    assert install.pre_check("7zip.7zip") is TriState.YES
    assert install.pre_check("Missing.App") is TriState.NO
    assert uninstall.pre_check("7zip.7zip") is TriState.NO
    assert uninstall.pre_check("Missing.App") is TriState.YES
    assert runner.kwargs[0]["event"] == "winget_list"


def test_winget_pre_check_unknown_when_tool_missing(runner: ScriptedRunner) -> None:
    runner.responses[("winget", "list")] = command_result(["winget"], returncode=exec_utils.MISSING_EXECUTABLE_RC)

    assert package_backends.WingetBackend(INSTALL).pre_check("7zip.7zip") is TriState.UNKNOWN


def test_winget_install_command_with_version_pin(runner: ScriptedRunner) -> None:
    backend = package_backends.WingetBackend(INSTALL)

    outcome = backend.apply("Git.Git", {"version": "2.44.0"})

    assert outcome.succeeded
    command = runner.commands[-1]
    assert command[:4] == ["winget", "install", "--id", "Git.Git"]
    assert "--accept-package-agreements" in command
    assert command[-2:] == ["--version", "2.44.0"]
    assert runner.kwargs[-1]["event"] == "winget_install"


def test_winget_already_installed_is_satisfied(runner: ScriptedRunner) -> None:
    runner.responses[("winget", "install")] = command_result(
        ["winget"], returncode=_signed(package_backends.WINGET_ALREADY_INSTALLED)
    )

    outcome = package_backends.WingetBackend(INSTALL).apply("Git.Git", "latest")

    assert outcome.succeeded and outcome.already_satisfied
    assert "--version" not in runner.commands[-1]


def test_winget_uninstall_of_absent_package_is_satisfied(runner: ScriptedRunner) -> None:
    runner.responses[("winget", "uninstall")] = command_result(
        ["winget"], returncode=_signed(package_backends.WINGET_NO_PACKAGE_FOUND)
    )

    outcome = package_backends.WingetBackend(UNINSTALL).apply("Microsoft.BingWeather")

    assert outcome.succeeded and outcome.already_satisfied
    assert runner.kwargs[-1]["event"] == "winget_uninstall"


def test_winget_failure_and_dry_run(runner: ScriptedRunner) -> None:
    runner.responses[("winget", "install")] = command_result(["winget"], returncode=1, stdout="Installer failed")
    backend = package_backends.WingetBackend(INSTALL)

    failed = backend.apply("Git.Git")
    simulated = backend.apply("Git.Git", dry_run=True)

    assert not failed.succeeded
    assert failed.error_detail == "winget exited with 1: Installer failed"
    assert simulated.simulated


def test_parse_choco_list() -> None:
    output = "Chocolatey v2.2.2\ngit|2.44.0\n7zip|23.1.0\n\n"

    assert package_backends.parse_choco_list(output) == {"git": "2.44.0", "7zip": "23.1.0"}


def test_chocolatey_pre_check(runner: ScriptedRunner) -> None:
    runner.responses[("choco", "list", "--exact", "git")] = command_result(["choco"], stdout="git|2.44.0\n")
    runner.responses[("choco", "list", "--exact", "vlc")] = command_result(["choco"], returncode=2)
    runner.responses[("choco", "list", "--exact", "broken")] = command_result(["choco"], returncode=1)
    backend = package_backends.ChocolateyBackend(INSTALL)

    assert backend.pre_check("git") is TriState.YES
    assert backend.pre_check("vlc") is TriState.NO
    assert backend.pre_check("broken") is TriState.UNKNOWN


@pytest.mark.parametrize("code", package_backends.REBOOT_REQUIRED_CODES)
def test_chocolatey_reboot_codes_are_success(runner: ScriptedRunner, code: int) -> None:
    runner.responses[("choco", "install")] = command_result(["choco"], returncode=code)

    outcome = package_backends.ChocolateyBackend(INSTALL).apply("vlc", "3.0.20")

    assert outcome.succeeded
    assert runner.commands[-1] == [
        "choco", "install", "vlc", "--yes", "--no-progress", "--limit-output", "--version", "3.0.20",
    ]


def test_chocolatey_uninstall(runner: ScriptedRunner) -> None:
    outcome = package_backends.ChocolateyBackend(UNINSTALL).apply("vlc")

    assert outcome.succeeded
    assert runner.commands[-1][:3] == ["choco", "uninstall", "vlc"]
    assert runner.kwargs[-1]["event"] == "choco_uninstall"


def test_missing_tool_is_tagged_backend_unavailable(runner: ScriptedRunner) -> None:
    runner.responses[("choco", "install")] = command_result(["choco"], returncode=exec_utils.MISSING_EXECUTABLE_RC)

    outcome = package_backends.ChocolateyBackend(INSTALL).apply("vlc")

    assert not outcome.succeeded
    assert outcome.error_detail == "chocolatey executable not found"
    assert outcome.error_tag == constants.ERROR_TAG_BACKEND_UNAVAILABLE


def test_direct_download_rejects_non_http() -> None:
    with pytest.raises(ValueError):
        package_backends.DirectDownloadBackend().apply("ftp://example.invalid/setup.exe")


def test_direct_download_pre_check_uses_detect_path(tmp_path) -> None:
    marker = tmp_path / "app.exe"
    backend = package_backends.DirectDownloadBackend()
    target = {"url": "https://example.invalid/setup.exe", "detect_path": str(marker)}

    assert backend.pre_check("https://example.invalid/setup.exe") is TriState.UNKNOWN
    assert backend.pre_check(target) is TriState.NO
    marker.write_bytes(b"MZ")
    assert backend.pre_check(target) is TriState.YES


def test_direct_download_installs_msi(monkeypatch: pytest.MonkeyPatch, runner: ScriptedRunner, tmp_path) -> None:
    payload = b"fake msi payload"
    requests = []

    def fake_urlopen(request, timeout):
        requests.append(request)
        return io.BytesIO(payload)

    monkeypatch.setattr(package_backends.urllib.request, "urlopen", fake_urlopen)
    backend = package_backends.DirectDownloadBackend(download_dir=tmp_path)

    outcome = backend.apply(
        {
            "url": "https://example.invalid/tools/app.msi",
            "sha256": hashlib.sha256(payload).hexdigest(),
            "args": ["ALLUSERS=1"],
        }
    )

    assert outcome.succeeded
    assert requests[0].get_header("User-agent").startswith("winmaint/")
    command = runner.commands[-1]
    assert command[:2] == ["msiexec.exe", "/i"]
    assert command[2].endswith("app.msi")
    assert command[3:] == ["/qn", "/norestart", "ALLUSERS=1"]
    assert runner.kwargs[-1]["event"] == "direct_install"
    assert list(tmp_path.iterdir()) == []


def test_direct_download_checksum_mismatch(monkeypatch: pytest.MonkeyPatch, runner: ScriptedRunner, tmp_path) -> None:
    monkeypatch.setattr(package_backends.urllib.request, "urlopen", lambda request, timeout: io.BytesIO(b"tampered"))
    backend = package_backends.DirectDownloadBackend(download_dir=tmp_path)

    with pytest.raises(ExecutionError) as excinfo:
        backend.apply({"url": "https://example.invalid/setup.exe", "sha256": "00" * 32})
    assert "checksum mismatch" in str(excinfo.value)
    assert runner.commands == []


def test_direct_download_dry_run_fetches_nothing(monkeypatch: pytest.MonkeyPatch) -> None:
    def fail_urlopen(request, timeout):  # pragma: no cover - should not be called
        raise AssertionError("no network access in dry-run")

    monkeypatch.setattr(package_backends.urllib.request, "urlopen", fail_urlopen)

    outcome = package_backends.DirectDownloadBackend().apply("https://example.invalid/setup.exe", dry_run=True)

    assert outcome.simulated and outcome.succeeded
