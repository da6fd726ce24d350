"""!
@brief Action dispatcher mapping diff items to ordered backend lists.
@details The dispatch table is keyed by :class:`~winmaint.constants.ActionKind`
and resolved once when the dispatcher is built, so a misconfigured table fails
immediately rather than halfway through a run. Per item, the dispatcher walks
the table in priority order and drops backends the item has no identifier for
and backends whose tool is not installed. Dropped backends are reported as
skips, never as failed attempts.
"""
from __future__ import annotations

import dataclasses
import threading
from typing import Dict, Iterable, List, Mapping, Sequence, Tuple

from . import constants, logging_ext
from .action_backend import ActionBackend
from .constants import ActionKind
from .errors import ConfigurationError
from .models import DiffItem

__all__ = ["DispatchPlan", "ActionDispatcher"]


@dataclasses.dataclass(frozen=True)
class DispatchPlan:
    """!
    @brief Ordered candidates for one item plus the backends left out and why.
    """

    item: DiffItem
    eligible: Tuple[ActionBackend, ...]
    skipped: Tuple[Tuple[str, str], ...] = ()

    @property
    def manual_required(self) -> bool:
        return not self.eligible


class ActionDispatcher:
    """!
    @brief Enum-keyed dispatch table with eager validation.
    @details ``priority`` lists backend names per kind, most preferred first.
    Registered backends that the priority table does not mention are tried
    after the listed ones, in registration order; listed names with no
    registered backend are ignored. Two backends with the same name for one
    kind, an unknown kind, or a priority list repeating a name raise
    :class:`ConfigurationError`.
    """

    def __init__(
        self,
        backends: Iterable[ActionBackend],
        priority: Mapping[ActionKind, Sequence[str]] | None = None,
    ) -> None:
        self._table = self._build_table(list(backends), priority or constants.DEFAULT_BACKEND_PRIORITY)
        self._availability: Dict[int, bool] = {}
        self._availability_lock = threading.Lock()
        self._machine_logger = logging_ext.get_machine_logger()

    @staticmethod
    def _build_table(
        backends: List[ActionBackend],
        priority: Mapping[ActionKind, Sequence[str]],
    ) -> Dict[ActionKind, Tuple[ActionBackend, ...]]:
        order: Dict[ActionKind, Tuple[str, ...]] = {}
        for raw_kind, names in priority.items():
            try:
                kind = ActionKind.parse(raw_kind)
            except ValueError as exc:
                raise ConfigurationError(str(exc)) from exc
            names = tuple(str(name) for name in names)
            if len(set(names)) != len(names):
                raise ConfigurationError(f"Priority list for {kind.value} repeats a backend")
            order[kind] = names

        by_kind: Dict[ActionKind, Dict[str, ActionBackend]] = {}
        for backend in backends:
            name = str(getattr(backend, "name", "") or "").strip()
            if not name:
                raise ConfigurationError(f"Backend {type(backend).__name__} has no name")
            try:
                kind = ActionKind.parse(getattr(backend, "kind", None))
            except ValueError as exc:
                raise ConfigurationError(f"Backend {name!r}: {exc}") from exc
            slot = by_kind.setdefault(kind, {})
            if name in slot:
                raise ConfigurationError(f"Duplicate backend {name!r} registered for {kind.value}")
            slot[name] = backend

        table: Dict[ActionKind, Tuple[ActionBackend, ...]] = {}
        for kind, registered in by_kind.items():
            # Priority may name backends this build does not register.
            ordered = [registered[name] for name in order.get(kind, ()) if name in registered]
            ordered.extend(backend for backend in registered.values() if backend not in ordered)
            table[kind] = tuple(ordered)
        return table

    def supports(self, kind: ActionKind | str) -> bool:
        return bool(self._table.get(kind))

    def backends_for(self, kind: ActionKind) -> Tuple[ActionBackend, ...]:
        return self._table.get(kind, ())

    def registered_kinds(self) -> Tuple[ActionKind, ...]:
        return tuple(kind for kind in ActionKind if self._table.get(kind))

    def validate(self, item: DiffItem) -> None:
        """!
        @brief Raise :class:`ConfigurationError` when no backend serves ``item.kind``.
        """

        if not self.supports(item.kind):
            raise ConfigurationError(f"no backend registered for kind {item.kind_name}")

    def is_available(self, backend: ActionBackend) -> bool:
        """!
        @brief Cached availability probe.
        @details A probe that raises counts as unavailable for the lifetime of
        the dispatcher.
        """

        key = id(backend)
        with self._availability_lock:
            cached = self._availability.get(key)
        if cached is not None:
            return cached
        try:
            available = bool(backend.is_available())
        except Exception as exc:  # noqa: BLE001
            logging_ext.get_human_logger().warning(
                "Availability probe for %s failed: %s", backend.name, exc
            )
            available = False
        with self._availability_lock:
            self._availability.setdefault(key, available)
            return self._availability[key]

    def plan(self, item: DiffItem) -> DispatchPlan:
        """!
        @brief Produce the ordered candidate list for ``item``.
        @throws ConfigurationError When the item's kind has no registered backend.
        """

        self.validate(item)
        eligible: List[ActionBackend] = []
        skipped: List[Tuple[str, str]] = []
        for backend in self._table[item.kind]:
            if item.target_for(backend.name) is None:
                skipped.append((backend.name, constants.SKIP_REASON_NO_TARGET))
                continue
            if not self.is_available(backend):
                skipped.append((backend.name, constants.SKIP_REASON_UNAVAILABLE))
                continue
            eligible.append(backend)

        plan = DispatchPlan(item=item, eligible=tuple(eligible), skipped=tuple(skipped))
        self._machine_logger.info(
            "dispatch_decision",
            extra=logging_ext.build_event_extra(
                "dispatch_decision",
                item=item.name,
                kind=item.kind_name,
                eligible=[backend.name for backend in plan.eligible],
                skipped=[{"backend": name, "reason": reason} for name, reason in plan.skipped],
            ),
        )
        return plan

    def batch_size_for(self, kinds: Iterable[ActionKind]) -> int:
        """!
        @brief Smallest backend-declared batch size among the given kinds.
        @details Falls back to :data:`constants.DEFAULT_BATCH_SIZE` when no
        backend serves any of them.
        """

        sizes = [
            max(1, int(backend.default_batch_size))
            for kind in set(kinds)
            for backend in self._table.get(kind, ())
        ]
        return min(sizes) if sizes else constants.DEFAULT_BATCH_SIZE
