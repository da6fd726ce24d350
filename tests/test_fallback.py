"""!
@brief Tests for the fallback chain executor.
"""
from __future__ import annotations

from _fakes import FakeBackend, make_item
from winmaint import constants
from winmaint.constants import ActionKind
from winmaint.dispatch import ActionDispatcher
from winmaint.errors import ExecutionError
from winmaint.fallback import FallbackChainExecutor, describe_exception
from winmaint.guard import IdempotencyGuard
from winmaint.models import ActionOutcome, FinalStatus, TriState

INSTALL = ActionKind.PACKAGE_INSTALL
TARGETS = {"winget": "Vendor.App", "chocolatey": "vendor-app", "direct": "https://example.invalid/app.msi"}


def _execute(backends, *, dry_run: bool = False, targets=TARGETS):
    dispatcher = ActionDispatcher(backends)
    executor = FallbackChainExecutor(IdempotencyGuard(), dry_run=dry_run)
    return executor.execute(dispatcher.plan(make_item("App", INSTALL, targets)), index=7)


def test_first_backend_success_stops_chain() -> None:
    winget = FakeBackend("winget", INSTALL)
    choco = FakeBackend("chocolatey", INSTALL)

    result = _execute([winget, choco])

    assert result.final_status is FinalStatus.APPLIED
    assert result.first_success_backend == "winget"
    assert result.index == 7
    assert [outcome.backend_name for outcome in result.attempted_backends] == ["winget"]
    assert result.attempted_backends[0].verified is True
    assert choco.calls == []


def test_failures_fall_through_in_priority_order() -> None:
    winget = FakeBackend("winget", INSTALL, apply=False)
    choco = FakeBackend("chocolatey", INSTALL, apply=ExecutionError("choco exited with 1"))
    direct = FakeBackend("direct", INSTALL)

    result = _execute([direct, choco, winget])

    assert result.final_status is FinalStatus.APPLIED
    assert result.first_success_backend == "direct"
    assert [outcome.backend_name for outcome in result.attempted_backends] == ["winget", "chocolatey", "direct"]
    assert [outcome.succeeded for outcome in result.attempted_backends] == [False, False, True]
    assert result.attempted_backends[1].error_tag == constants.ERROR_TAG_EXECUTION
    assert "choco exited with 1" in result.attempted_backends[1].error_detail


def test_all_backends_failing_reports_last_error() -> None:
    winget = FakeBackend("winget", INSTALL, apply=False)
    choco = FakeBackend("chocolatey", INSTALL, apply=TimeoutError("900s"))

    result = _execute([winget, choco], targets={"winget": "a", "chocolatey": "b"})

    assert result.final_status is FinalStatus.FAILED
    assert result.first_success_backend is None
    assert result.last_error == "timed out: 900s"


def test_already_satisfied_skips_apply() -> None:
    winget = FakeBackend("winget", INSTALL, pre=TriState.YES)

    result = _execute([winget])

    assert result.final_status is FinalStatus.ALREADY_SATISFIED
    assert winget.calls_to("apply") == []
    assert result.attempted_backends[0].already_satisfied


def test_backend_reporting_already_satisfied_from_apply() -> None:
    winget = FakeBackend(
        "winget",
        INSTALL,
        apply=ActionOutcome(backend_name="winget", succeeded=True, already_satisfied=True),
    )

    result = _execute([winget])

    assert result.final_status is FinalStatus.ALREADY_SATISFIED
    assert winget.calls_to("post_check") == []


def test_unknown_pre_check_proceeds() -> None:
    winget = FakeBackend("winget", INSTALL, pre=RuntimeError("probe down"))

    result = _execute([winget])

    assert result.final_status is FinalStatus.APPLIED
    assert len(winget.calls_to("apply")) == 1


def test_unverified_success_tries_next_backend() -> None:
    winget = FakeBackend("winget", INSTALL, post=TriState.NO)
    choco = FakeBackend("chocolatey", INSTALL)

    result = _execute([winget, choco])

    assert result.final_status is FinalStatus.APPLIED
    assert result.first_success_backend == "chocolatey"
    assert result.attempted_backends[0].verified is False
    assert result.attempted_backends[0].error_tag == constants.ERROR_TAG_VERIFICATION
    assert result.warnings


def test_unverified_only_success_is_applied_with_warning() -> None:
    winget = FakeBackend("winget", INSTALL, post=TriState.NO)
    choco = FakeBackend("chocolatey", INSTALL, apply=False)

    result = _execute([winget, choco])

    assert result.final_status is FinalStatus.APPLIED
    assert result.first_success_backend == "winget"
    assert result.error_tag == constants.ERROR_TAG_VERIFICATION


def test_later_satisfied_pre_check_credits_the_unverified_backend() -> None:
    winget = FakeBackend("winget", INSTALL, post=TriState.NO)
    choco = FakeBackend("chocolatey", INSTALL, pre=TriState.YES)

    result = _execute([winget, choco])

    assert result.final_status is FinalStatus.APPLIED
    assert result.first_success_backend == "winget"
    assert len(winget.calls_to("apply")) == 1
    assert choco.calls_to("apply") == []
    assert [outcome.backend_name for outcome in result.attempted_backends] == ["winget", "chocolatey"]
    assert result.attempted_backends[1].already_satisfied
    assert result.warnings


def test_later_apply_reporting_satisfied_credits_the_unverified_backend() -> None:
    winget = FakeBackend("winget", INSTALL, post=TriState.NO)
    choco = FakeBackend(
        "chocolatey",
        INSTALL,
        apply=ActionOutcome(backend_name="chocolatey", succeeded=True, already_satisfied=True),
    )

    result = _execute([winget, choco])

    assert result.final_status is FinalStatus.APPLIED
    assert result.first_success_backend == "winget"


def test_unknown_post_check_is_accepted_with_warning() -> None:
    winget = FakeBackend("winget", INSTALL, post=TriState.UNKNOWN)
    choco = FakeBackend("chocolatey", INSTALL)

    result = _execute([winget, choco])

    assert result.final_status is FinalStatus.APPLIED
    assert result.first_success_backend == "winget"
    assert result.attempted_backends[0].verified is None
    assert result.warnings
    assert choco.calls == []


def test_dry_run_never_calls_apply() -> None:
    winget = FakeBackend("winget", INSTALL)
    choco = FakeBackend("chocolatey", INSTALL)

    result = _execute([winget, choco], dry_run=True)

    assert result.final_status is FinalStatus.SIMULATED
    assert winget.calls_to("apply") == []
    assert choco.calls == []
    outcome = result.attempted_backends[0]
    assert outcome.simulated and outcome.succeeded
    assert outcome.planned_action["backend"] == "winget"
    assert outcome.planned_action["target"] == "Vendor.App"


def test_dry_run_still_reports_already_satisfied() -> None:
    winget = FakeBackend("winget", INSTALL, pre=TriState.YES)

    result = _execute([winget], dry_run=True)

    assert result.final_status is FinalStatus.ALREADY_SATISFIED


def test_no_eligible_backend_is_manual_required() -> None:
    winget = FakeBackend("winget", INSTALL, available=False)

    result = _execute([winget], targets={"winget": "Vendor.App"})

    assert result.final_status is FinalStatus.MANUAL_REQUIRED
    assert result.attempted_backends == []
    assert result.error_tag == constants.ERROR_TAG_BACKEND_UNAVAILABLE
    assert winget.calls == []


def test_non_outcome_return_is_a_failure() -> None:
    winget = FakeBackend("winget", INSTALL, apply=lambda target, desired: "done")

    result = _execute([winget], targets={"winget": "a"})

    assert result.final_status is FinalStatus.FAILED
    assert "instead of an outcome" in result.last_error


def test_describe_exception_formats() -> None:
    assert describe_exception(PermissionError("HKLM\\X")) == "permission denied: HKLM\\X"
    assert describe_exception(FileNotFoundError()) == "file not found"
    assert describe_exception(ValueError("bad")) == "ValueError: bad"
    assert describe_exception(RuntimeError()) == "RuntimeError"
