"""!
@brief State prober contract and a JSON-file implementation.
@details The audit step that detects deviations lives outside this package.
The engine only needs something that answers ``get_diff_list(module_name)``;
:class:`JsonDiffSource` covers the common case of an audit tool exporting its
findings to disk.
"""
from __future__ import annotations

import json
import pathlib
from typing import Any, List, Mapping, Protocol, runtime_checkable

from . import logging_ext
from .errors import DiffSourceError
from .models import DiffItem

__all__ = ["DiffSource", "JsonDiffSource", "StaticDiffSource", "parse_items"]


@runtime_checkable
class DiffSource(Protocol):
    def get_diff_list(self, module_name: str) -> List[DiffItem]:
        ...


def parse_items(module_name: str, raw_items: Any) -> List[DiffItem]:
    """!
    @brief Convert a JSON array of item mappings into :class:`DiffItem` objects.
    @throws DiffSourceError When the payload is not a list or an entry is invalid.
    """

    if not isinstance(raw_items, list):
        raise DiffSourceError(module_name, f"expected a list of items, got {type(raw_items).__name__}")
    items: List[DiffItem] = []
    for position, entry in enumerate(raw_items):
        if not isinstance(entry, Mapping):
            raise DiffSourceError(module_name, f"item {position} is not an object")
        try:
            items.append(DiffItem.from_mapping(entry))
        except ValueError as exc:
            raise DiffSourceError(module_name, f"item {position}: {exc}") from exc
    return items


class JsonDiffSource:
    """!
    @brief Read diff lists from a JSON document.
    @details Accepted shapes are ``{"modules": {name: [items]}}`` and the
    flat ``{name: [items]}``. The file is read lazily on first use and
    cached.
    """

    def __init__(self, path: str | pathlib.Path) -> None:
        self._path = pathlib.Path(path).expanduser()
        self._document: Mapping[str, Any] | None = None

    @property
    def path(self) -> pathlib.Path:
        return self._path

    def _load(self, module_name: str) -> Mapping[str, Any]:
        if self._document is not None:
            return self._document
        try:
            with open(self._path, encoding="utf-8") as handle:
                document = json.load(handle)
        except FileNotFoundError as exc:
            raise DiffSourceError(module_name, f"diff file not found: {self._path}") from exc
        except json.JSONDecodeError as exc:
            raise DiffSourceError(module_name, f"invalid JSON in {self._path}: {exc}") from exc
        except OSError as exc:
            raise DiffSourceError(module_name, f"cannot read {self._path}: {exc}") from exc
        if not isinstance(document, Mapping):
            raise DiffSourceError(module_name, f"{self._path} must contain a JSON object")
        modules = document.get("modules", document)
        if not isinstance(modules, Mapping):
            raise DiffSourceError(module_name, "'modules' must be an object")
        self._document = modules
        return modules

    def modules(self) -> List[str]:
        return sorted(str(name) for name in self._load("*"))

    def get_diff_list(self, module_name: str) -> List[DiffItem]:
        modules = self._load(module_name)
        if module_name not in modules:
            raise DiffSourceError(module_name, f"module not present in {self._path}")
        items = parse_items(module_name, modules[module_name])
        logging_ext.get_machine_logger().info(
            "diff_loaded",
            extra=logging_ext.build_event_extra(
                "diff_loaded", module_name=module_name, source=str(self._path), items=len(items)
            ),
        )
        return items


class StaticDiffSource:
    """!
    @brief In-memory source, handy for embedding the engine in another tool.
    """

    def __init__(self, modules: Mapping[str, List[DiffItem]]) -> None:
        self._modules = {name: list(items) for name, items in modules.items()}

    def get_diff_list(self, module_name: str) -> List[DiffItem]:
        if module_name not in self._modules:
            raise DiffSourceError(module_name, "module not registered")
        return list(self._modules[module_name])
