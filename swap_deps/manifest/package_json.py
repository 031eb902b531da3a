"""Rewriting of npm ``package.json`` dependencies.

Unlike the Gemfile, ``package.json`` is edited through its parse tree: the
document is loaded with :mod:`json`, the managed entries are replaced with
``file:`` references and the whole document is serialised again.  Keys keep
their original order.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from swap_deps.errors import ParseError
from swap_deps.models import Dependency, SwappedDependency

logger = logging.getLogger(__name__)

DEPENDENCY_GROUPS: tuple[str, ...] = ("dependencies", "devDependencies")
FILE_PROTOCOL = "file:"

_MANAGED_NPM_NAMES = {
    dependency.npm_name for dependency in Dependency if dependency.npm_package is not None
}


@dataclass
class PackageJsonChange:
    """Result of rewriting one dependency in a ``package.json`` document."""

    content: str
    modified_groups: list[str] = field(default_factory=list)

    @property
    def modified(self) -> bool:
        return bool(self.modified_groups)


def _parse(content: str, path: Path | None = None) -> dict[str, Any]:
    label = path or "package.json"
    try:
        data = json.loads(content)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Malformed JSON in {label}: {exc}", path=path) from exc
    if not isinstance(data, dict):
        raise ParseError(f"Expected a JSON object at the top of {label}", path=path)
    return data


def _serialize(data: dict[str, Any]) -> str:
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


class PackageJsonRewriter:
    """Points managed npm packages at local directories via ``file:``."""

    def rewrite_to_local(
        self,
        content: str,
        dependency: Dependency,
        package_root: Path,
        path: Path | None = None,
    ) -> PackageJsonChange:
        """Rewrite *dependency*'s npm entry to ``file:<package_root>/<subdir>``.

        Only groups that already list the package are touched; nothing is added.

        Raises:
            ParseError: If *content* is not a JSON object.
        """
        npm_package = dependency.npm_package
        if npm_package is None:
            return PackageJsonChange(content=content)

        data = _parse(content, path)
        reference = f"{FILE_PROTOCOL}{package_root / npm_package.subdir}"
        modified: list[str] = []
        for group in DEPENDENCY_GROUPS:
            entries = data.get(group)
            if not isinstance(entries, dict) or dependency.npm_name not in entries:
                continue
            if entries[dependency.npm_name] == reference:
                continue
            entries[dependency.npm_name] = reference
            modified.append(group)

        if not modified:
            return PackageJsonChange(content=content)
        return PackageJsonChange(content=_serialize(data), modified_groups=modified)

    def detect_swapped(self, manifest_path: Path) -> list[SwappedDependency]:
        """Managed npm packages using ``file:`` in *manifest_path*.

        A missing file yields ``[]``; so does a malformed one, with a warning.
        """
        if not manifest_path.is_file():
            return []
        try:
            return self.detect_swapped_content(manifest_path.read_text(encoding="utf-8"))
        except ParseError as exc:
            logger.warning("Skipping %s: %s", manifest_path, exc)
            return []

    def detect_swapped_content(self, content: str) -> list[SwappedDependency]:
        data = _parse(content)
        swapped: list[SwappedDependency] = []
        for group in DEPENDENCY_GROUPS:
            entries = data.get(group)
            if not isinstance(entries, dict):
                continue
            for name, value in entries.items():
                if (
                    name in _MANAGED_NPM_NAMES
                    and isinstance(value, str)
                    and value.startswith(FILE_PROTOCOL)
                ):
                    swapped.append(
                        SwappedDependency(
                            name=name, kind="local", path=value[len(FILE_PROTOCOL):]
                        )
                    )
        return swapped

    def has_swap_markers(self, content: str) -> bool:
        try:
            return bool(self.detect_swapped_content(content))
        except ParseError:
            return False
