"""!
@brief End-to-end engine tests over fake backends.
@details Covers the behavioural guarantees operators rely on: re-running a
corrected diff list is a no-op, dry-run never mutates, one broken backend
cannot take down its siblings, and manual-required items are not failures.
"""
from __future__ import annotations

import json

import pytest

from _fakes import FakeBackend, StatefulBackend, make_item
from winmaint import constants
from winmaint.constants import ActionKind
from winmaint.diff_source import JsonDiffSource, StaticDiffSource
from winmaint.engine import ReconcileEngine, filter_items
from winmaint.errors import ConfigurationError, DiffSourceError
from winmaint.models import FinalStatus, ModuleStatus, TriState
from winmaint.options import ReconcileOptions
from winmaint.scheduler import CancellationToken

REG = ActionKind.REGISTRY_VALUE


def _registry_items(count: int, desired: int = 1):
    return [make_item(f"Value{index}", REG, {"a": f"HKLM\\X\\V{index}"}, desired) for index in range(count)]


def test_second_run_over_corrected_state_is_a_no_op() -> None:
    state: dict = {}
    backend = StatefulBackend("a", REG, state)
    engine = ReconcileEngine([backend])
    items = _registry_items(6)

    first = engine.reconcile("Registry", items, ReconcileOptions(batch_size=4))
    applied_first = list(backend.applied)
    second = engine.reconcile("Registry", items, ReconcileOptions(batch_size=4))

    assert first.items_processed == 6
    assert len(applied_first) == 6
    assert second.items_failed == 0
    assert all(result.final_status is FinalStatus.ALREADY_SATISFIED for result in second.item_results)
    assert backend.applied == applied_first


def test_dry_run_makes_no_mutating_calls_and_counts_like_a_real_run() -> None:
    state = {"HKLM\\X\\V0": 1, "HKLM\\X\\V1": 0}
    items = _registry_items(3)

    dry_backend = StatefulBackend("a", REG, dict(state))
    dry = ReconcileEngine([dry_backend]).reconcile("Registry", items, ReconcileOptions(dry_run=True))

    real_backend = StatefulBackend("a", REG, dict(state))
    real = ReconcileEngine([real_backend]).reconcile("Registry", items, ReconcileOptions())

    assert dry_backend.applied == []
    assert dry.dry_run
    assert [result.final_status for result in dry.item_results] == [
        FinalStatus.ALREADY_SATISFIED,
        FinalStatus.SIMULATED,
        FinalStatus.SIMULATED,
    ]
    real_processed = sum(
        1
        for result in real.item_results
        if result.final_status in (FinalStatus.APPLIED, FinalStatus.ALREADY_SATISFIED)
    )
    assert dry.items_processed == real_processed == 3


def test_dry_run_with_recording_backends_never_applies() -> None:
    first = FakeBackend("a", REG)
    second = FakeBackend("b", REG)
    items = [make_item(f"I{index}", REG, {"a": "x", "b": "y"}) for index in range(5)]

    result = ReconcileEngine([first, second]).reconcile("Reg", items, ReconcileOptions(dry_run=True))

    assert first.calls_to("apply") == [] and second.calls_to("apply") == []
    assert result.items_processed == 5
    assert result.status is ModuleStatus.SUCCESS


def test_failure_isolation_when_first_backend_throws_for_one_item() -> None:
    def flaky(target, desired):
        if target == "broken":
            raise RuntimeError("backend crashed")
        return True

    primary = FakeBackend("a", REG, apply=flaky)
    secondary = FakeBackend("b", REG, apply=False)
    items = [
        make_item("I0", REG, {"a": "ok0", "b": "ok0"}),
        make_item("I1", REG, {"a": "broken", "b": "broken"}),
        make_item("I2", REG, {"a": "ok2", "b": "ok2"}),
        make_item("I3", REG, {"a": "broken"}),
    ]

    result = ReconcileEngine([primary, secondary], priority={REG: ["a", "b"]}).reconcile(
        "Reg", items, ReconcileOptions(batch_size=2)
    )

    assert len(result.item_results) == 4
    assert [r.final_status for r in result.item_results] == [
        FinalStatus.APPLIED,
        FinalStatus.FAILED,
        FinalStatus.APPLIED,
        FinalStatus.FAILED,
    ]
    assert result.items_failed == 2
    assert result.status is ModuleStatus.PARTIAL_SUCCESS
    assert result.errors == ("[I1] b said no", "[I3] RuntimeError: backend crashed")


def test_fallback_ordering_preserves_failed_attempt() -> None:
    a = FakeBackend("a", REG, apply=False)
    b = FakeBackend("b", REG)
    item = make_item("I", REG, {"a": "x", "b": "y"})

    result = ReconcileEngine([a, b], priority={REG: ["a", "b"]}).reconcile("Reg", [item])

    item_result = result.item_results[0]
    assert item_result.first_success_backend == "b"
    assert [outcome.backend_name for outcome in item_result.attempted_backends] == ["a", "b"]
    assert item_result.attempted_backends[0].succeeded is False


@pytest.mark.parametrize(
    ("failing", "expected_status", "processed"),
    [
        (0, ModuleStatus.SUCCESS, 5),
        (2, ModuleStatus.PARTIAL_SUCCESS, 3),
        (5, ModuleStatus.FAILED, 0),
    ],
)
def test_status_scenarios(failing: int, expected_status: ModuleStatus, processed: int) -> None:
    backend = FakeBackend("a", REG, apply=lambda target, desired: not target.startswith("fail"))
    items = [
        make_item(f"I{index}", REG, {"a": ("fail" if index < failing else "ok") + str(index)})
        for index in range(5)
    ]

    result = ReconcileEngine([backend]).reconcile("Reg", items)

    assert result.items_detected == 5
    assert result.items_failed == failing
    assert result.items_processed == processed
    assert result.status is expected_status


def test_empty_diff_list_is_skipped() -> None:
    backend = FakeBackend("a", REG)

    result = ReconcileEngine([backend]).reconcile("Reg", [])

    assert result.status is ModuleStatus.SKIPPED
    assert result.items_detected == 0
    assert backend.calls == []


def test_manual_required_is_neither_failed_nor_processed() -> None:
    unavailable = FakeBackend("a", REG, available=False)
    working = FakeBackend("b", REG)
    items = [
        make_item("NoTool", REG, {"a": "x"}),
        make_item("Fine", REG, {"b": "y"}),
    ]

    result = ReconcileEngine([unavailable, working]).reconcile("Reg", items)

    statuses = {r.item.name: r.final_status for r in result.item_results}
    assert statuses == {"NoTool": FinalStatus.MANUAL_REQUIRED, "Fine": FinalStatus.APPLIED}
    assert result.items_failed == 0
    assert result.items_processed == 1
    assert result.items_manual_required == 1
    assert result.status is ModuleStatus.SUCCESS


def test_unregistered_kind_fails_with_configuration_tag_without_backend_calls() -> None:
    backend = FakeBackend("a", REG)
    items = [
        make_item("Reg", REG, {"a": "x"}),
        make_item("Svc", ActionKind.SERVICE_STATE, {"service": "Spooler"}, "disabled"),
    ]

    result = ReconcileEngine([backend]).reconcile("Mixed", items)

    svc = result.item_results[1]
    assert svc.final_status is FinalStatus.FAILED
    assert svc.error_tag == constants.ERROR_TAG_CONFIGURATION
    assert svc.attempted_backends == []
    assert result.errors == ("[Svc] configuration: no backend registered for kind ServiceState",)
    assert [r.item.name for r in result.item_results] == ["Reg", "Svc"]


@pytest.mark.parametrize("batch_size", [0, -3])
def test_invalid_batch_size_aborts_before_any_backend_call(batch_size: int) -> None:
    backend = FakeBackend("a", REG)

    with pytest.raises(ConfigurationError):
        ReconcileEngine([backend]).reconcile("Reg", _registry_items(2), ReconcileOptions(batch_size=batch_size))
    assert backend.calls == []


def test_category_and_platform_filters() -> None:
    items = [
        make_item("Keep", REG, {"a": "1"}, metadata={"category": "Privacy"}),
        make_item("OtherCategory", REG, {"a": "2"}, metadata={"category": "Apps"}),
        make_item("ExcludedHere", REG, {"a": "3"}, metadata={"category": "privacy", "excluded_platforms": ["Server"]}),
        make_item("NoCategory", REG, {"a": "4"}),
    ]
    options = ReconcileOptions(control_categories=("Privacy",), platform="server")

    assert [item.name for item in filter_items(items, options)] == ["Keep"]
    result = ReconcileEngine([FakeBackend("a", REG)]).reconcile("Reg", items, options)
    assert result.items_detected == 1


def test_cancellation_marks_unstarted_items() -> None:
    token = CancellationToken()

    def cancel_after_first(target, desired):
        token.cancel()
        return True

    backend = FakeBackend("a", REG, apply=cancel_after_first)

    result = ReconcileEngine([backend]).reconcile("Reg", _registry_items(4), ReconcileOptions(batch_size=1), token)

    assert result.cancelled
    assert result.item_results[0].final_status is FinalStatus.APPLIED
    assert all(r.error_tag == constants.ERROR_TAG_CANCELLED for r in result.item_results[1:])
    assert len(backend.calls_to("apply")) == 1
    assert result.status is ModuleStatus.PARTIAL_SUCCESS


def test_run_module_wraps_prober_failures() -> None:
    class BrokenSource:
        def get_diff_list(self, module_name):
            raise RuntimeError("audit crashed")

    engine = ReconcileEngine([FakeBackend("a", REG)])

    with pytest.raises(DiffSourceError) as excinfo:
        engine.run_module("Registry", BrokenSource())
    assert excinfo.value.module_name == "Registry"
    assert "audit crashed" in str(excinfo.value)


def test_run_module_uses_source_items() -> None:
    backend = FakeBackend("a", REG, pre=TriState.YES)
    source = StaticDiffSource({"Registry": _registry_items(2)})

    result = ReconcileEngine([backend]).run_module("Registry", source)

    assert result.module_name == "Registry"
    assert result.items_processed == 2
    assert backend.calls_to("apply") == []


def test_default_batch_size_comes_from_backends() -> None:
    engine = ReconcileEngine([FakeBackend("a", REG, batch_size=2)])

    assert engine.dispatcher.batch_size_for([REG]) == 2


def test_unrecognised_kind_from_diff_file_fails_only_that_item(tmp_path) -> None:
    path = tmp_path / "diff.json"
    path.write_text(
        json.dumps(
            {
                "Mod": [
                    {"name": "Telemetry", "kind": "RegistryValue", "target_ref": {"a": "HKLM\\X\\T"}},
                    {"name": "Rule", "kind": "FirewallRule", "target_ref": {"a": "Block"}},
                    {"name": "Tracking", "kind": "RegistryValue", "target_ref": {"a": "HKLM\\X\\U"}},
                ]
            }
        ),
        encoding="utf-8",
    )
    backend = FakeBackend("a", REG)

    result = ReconcileEngine([backend]).run_module("Mod", JsonDiffSource(path))

    assert [r.final_status for r in result.item_results] == [
        FinalStatus.APPLIED,
        FinalStatus.FAILED,
        FinalStatus.APPLIED,
    ]
    assert result.item_results[1].error_tag == constants.ERROR_TAG_CONFIGURATION
    assert result.errors == ("[Rule] configuration: no backend registered for kind FirewallRule",)
    assert result.status is ModuleStatus.PARTIAL_SUCCESS
    assert sorted(call[1] for call in backend.calls_to("apply")) == ["HKLM\\X\\T", "HKLM\\X\\U"]
