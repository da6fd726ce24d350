"""!
@brief Data model shared by the reconciliation engine components.
@details Diff items are immutable inputs produced once per run by the audit
step. Outcomes, item results, and module results are created fresh for each
run; the engine never persists them.
"""
from __future__ import annotations

import dataclasses
import enum
from types import MappingProxyType
from typing import Any, List, Mapping, Tuple

from .constants import ActionKind

__all__ = [
    "TriState",
    "PreCheck",
    "PostCheck",
    "FinalStatus",
    "ModuleStatus",
    "DiffItem",
    "ActionOutcome",
    "ItemResult",
    "ModuleResult",
    "PROCESSED_STATUSES",
]


class TriState(str, enum.Enum):
    """!
    @brief Answer returned by backend state probes.
    @details ``UNKNOWN`` is legitimate: the probe itself may fail or the tool
    may not expose the state at all.
    """

    YES = "yes"
    NO = "no"
    UNKNOWN = "unknown"

    @classmethod
    def from_bool(cls, value: bool | None) -> "TriState":
        if value is None:
            return cls.UNKNOWN
        return cls.YES if value else cls.NO


class PreCheck(str, enum.Enum):
    ALREADY_SATISFIED = "AlreadySatisfied"
    NOT_SATISFIED = "NotSatisfied"
    UNKNOWN = "Unknown"


class PostCheck(str, enum.Enum):
    VERIFIED = "Verified"
    NOT_VERIFIED = "NotVerified"
    UNKNOWN = "Unknown"


class FinalStatus(str, enum.Enum):
    """!
    @brief Resolved status of one diff item after its fallback chain.
    """

    APPLIED = "Applied"
    ALREADY_SATISFIED = "AlreadySatisfied"
    SIMULATED = "Simulated"
    FAILED = "Failed"
    MANUAL_REQUIRED = "ManualRequired"


class ModuleStatus(str, enum.Enum):
    SUCCESS = "Success"
    PARTIAL_SUCCESS = "PartialSuccess"
    FAILED = "Failed"
    SKIPPED = "Skipped"


PROCESSED_STATUSES = frozenset(
    {FinalStatus.APPLIED, FinalStatus.ALREADY_SATISFIED, FinalStatus.SIMULATED}
)
"""!
@brief Final statuses counted towards ``ModuleResult.items_processed``.
"""


def _freeze(mapping: Mapping[str, Any] | None) -> Mapping[str, Any]:
    return MappingProxyType(dict(mapping or {}))


@dataclasses.dataclass(frozen=True)
class DiffItem:
    """!
    @brief One detected deviation between desired and actual system state.
    @details ``target_ref`` maps a backend name to the identifier that backend
    understands (a winget ID and a Chocolatey ID for the same app, a registry
    path, a service name). ``metadata`` is used for filtering and reporting
    only and never influences dispatch.
    """

    name: str
    kind: ActionKind | str
    target_ref: Mapping[str, Any] = dataclasses.field(default_factory=dict)
    desired_value: Any = None
    metadata: Mapping[str, Any] = dataclasses.field(default_factory=dict)

    def __post_init__(self) -> None:
        name = str(self.name or "").strip()
        if not name:
            raise ValueError("DiffItem.name must be non-empty")
        object.__setattr__(self, "name", name)
        object.__setattr__(self, "kind", ActionKind.coerce(self.kind))
        object.__setattr__(self, "target_ref", _freeze(self.target_ref))
        object.__setattr__(self, "metadata", _freeze(self.metadata))

    def target_for(self, backend_name: str) -> Any | None:
        """!
        @brief Identifier for ``backend_name`` or ``None`` when the item has none.
        @details Blank strings count as missing so catalog rows with empty
        columns do not produce bogus attempts.
        """

        value = self.target_ref.get(backend_name)
        if value is None:
            return None
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def kind_name(self) -> str:
        """!
        @brief Wire name of the kind, also for kinds this build does not know.
        """

        return self.kind.value if isinstance(self.kind, ActionKind) else str(self.kind)

    @property
    def category(self) -> str | None:
        raw = self.metadata.get("category")
        return str(raw) if raw else None

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "DiffItem":
        """!
        @brief Build an item from a JSON-style mapping.
        @details Accepts ``name``/``Name``, ``kind``/``Kind``,
        ``target_ref``/``TargetRef``, ``desired_value``/``DesiredValue`` and
        ``metadata``/``Metadata`` keys so diff lists exported by other tools
        load unchanged.
        @throws ValueError When required keys are missing or malformed.
        """

        def _pick(*keys: str) -> Any:
            for key in keys:
                if key in data:
                    return data[key]
            return None

        target_ref = _pick("target_ref", "TargetRef", "targets") or {}
        if not isinstance(target_ref, Mapping):
            raise ValueError(f"target_ref must be a mapping, got {type(target_ref).__name__}")
        metadata = _pick("metadata", "Metadata") or {}
        if not isinstance(metadata, Mapping):
            raise ValueError(f"metadata must be a mapping, got {type(metadata).__name__}")
        return cls(
            name=str(_pick("name", "Name") or ""),
            kind=_pick("kind", "Kind"),  # type: ignore[arg-type]
            target_ref=target_ref,
            desired_value=_pick("desired_value", "DesiredValue"),
            metadata=metadata,
        )


@dataclasses.dataclass(frozen=True)
class ActionOutcome:
    """!
    @brief Result of one attempt against one backend.
    @details ``already_satisfied`` distinguishes a no-op from performed work.
    ``verified`` is ``None`` until the guard's post-check ran (or could not
    decide), then ``True``/``False``. Dry-run outcomes set ``simulated`` and
    carry the would-be action in ``planned_action``.
    """

    backend_name: str
    succeeded: bool
    already_satisfied: bool = False
    error_detail: str | None = None
    duration_ms: float = 0.0
    simulated: bool = False
    verified: bool | None = None
    error_tag: str | None = None
    planned_action: Mapping[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "backend": self.backend_name,
            "succeeded": self.succeeded,
            "already_satisfied": self.already_satisfied,
            "simulated": self.simulated,
            "verified": self.verified,
            "duration_ms": round(self.duration_ms, 3),
        }
        if self.error_detail:
            payload["error"] = self.error_detail
        if self.error_tag:
            payload["error_tag"] = self.error_tag
        if self.planned_action is not None:
            payload["planned_action"] = dict(self.planned_action)
        return payload


@dataclasses.dataclass
class ItemResult:
    """!
    @brief Resolved outcome for one diff item.
    @details Written only by the worker that owns the item.
    """

    item: DiffItem
    final_status: FinalStatus
    attempted_backends: List[ActionOutcome] = dataclasses.field(default_factory=list)
    first_success_backend: str | None = None
    warnings: List[str] = dataclasses.field(default_factory=list)
    error_tag: str | None = None
    error_detail: str | None = None
    index: int = 0

    @property
    def last_error(self) -> str | None:
        """!
        @brief Error detail of the final attempted backend, else the item-level detail.
        """

        if self.attempted_backends:
            detail = self.attempted_backends[-1].error_detail
            if detail:
                return detail
        return self.error_detail

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.item.name,
            "kind": self.item.kind_name,
            "status": self.final_status.value,
            "first_success_backend": self.first_success_backend,
            "error_tag": self.error_tag,
            "error": self.last_error if self.final_status is FinalStatus.FAILED else None,
            "warnings": list(self.warnings),
            "attempts": [outcome.to_dict() for outcome in self.attempted_backends],
        }


@dataclasses.dataclass(frozen=True)
class ModuleResult:
    """!
    @brief Aggregate returned to the orchestrator for one module run.
    """

    module_name: str
    status: ModuleStatus
    items_detected: int
    items_processed: int
    items_failed: int
    items_manual_required: int = 0
    errors: Tuple[str, ...] = ()
    duration_ms: float = 0.0
    dry_run: bool = False
    cancelled: bool = False
    item_results: Tuple[ItemResult, ...] = ()

    def to_dict(self, *, include_items: bool = True) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "module": self.module_name,
            "status": self.status.value,
            "items_detected": self.items_detected,
            "items_processed": self.items_processed,
            "items_failed": self.items_failed,
            "items_manual_required": self.items_manual_required,
            "errors": list(self.errors),
            "duration_ms": round(self.duration_ms, 3),
            "dry_run": self.dry_run,
            "cancelled": self.cancelled,
        }
        if include_items:
            payload["items"] = [result.to_dict() for result in self.item_results]
        return payload
