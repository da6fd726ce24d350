"""!
@brief Version metadata for winmaint.
@details Reports and the machine log stamp every run with these identifiers so
result bundles from different hosts can be matched to the engine build that
produced them.
"""
from __future__ import annotations

from importlib import resources
from typing import Dict

__all__ = ["__version__", "__build__", "build_info"]


def _read_version_file() -> str:
    """!
    @brief Read the semantic version from the packaged ``VERSION`` file.
    @returns Version string, or ``0.0.0`` for a source tree without the file.
    """

    try:
        return resources.files(__package__).joinpath("VERSION").read_text(encoding="utf-8").strip()
    except FileNotFoundError:  # pragma: no cover - broken checkout
        return "0.0.0"


__version__ = _read_version_file()
__build__ = "dev"


def build_info() -> Dict[str, str]:
    """!
    @brief Mapping with ``version`` and ``build`` keys for CLI and reports.
    """

    return {"version": __version__, "build": __build__}
