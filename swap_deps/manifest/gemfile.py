"""Line-oriented rewriting of ``gem`` declarations in a Gemfile.

Regular expressions are used instead of a Ruby parser so that everything the
tool does not touch (comments, groups, blank lines, odd formatting) survives
byte for byte.  A declaration is matched as::

    <indent>gem <q>name<q>[, <q>constraint<q>]...[, options][ # comment]

and rewritten with the version constraints replaced by ``path:`` or
``github:`` while indentation, quote style and trailing options are kept.
"""

from __future__ import annotations

import re
from pathlib import Path

from swap_deps.models import Dependency, RefKind, RefSpec, SwappedDependency

DEFAULT_BRANCHES: tuple[str, ...] = ("main", "master")

_SWAP_MARKER = re.compile(r"\b(?:path|github|git):")
_VERSION_CONSTRAINTS = re.compile(r"""^(?:\s*,\s*(['"])[^'"]*\1)*""")
_OPTION_VALUE = r"""\b{key}:\s*(['"])(?P<value>[^'"]*)\1"""


def _declaration_pattern(name: str) -> re.Pattern[str]:
    return re.compile(
        r"""^(?P<indent>[ \t]*)gem[ \t]+(?P<quote>['"])"""
        + re.escape(name)
        + r"""(?P=quote)(?P<rest>[^\n]*)$""",
        re.MULTILINE,
    )


def _option(rest: str, key: str) -> str | None:
    match = re.search(_OPTION_VALUE.format(key=key), rest)
    return match.group("value") if match else None


class GemfileRewriter:
    """Swaps managed gems in Gemfile content to local paths or GitHub refs."""

    def __init__(self, default_branches: tuple[str, ...] = DEFAULT_BRANCHES) -> None:
        self.default_branches = default_branches

    def rewrite_to_local(self, content: str, name: str, local_path: str | Path) -> str:
        """Point *name* at *local_path*.

        Declarations that already carry ``path:``, ``github:`` or ``git:`` are
        left alone, which makes the rewrite idempotent.
        """
        return self._rewrite(content, name, lambda q: f"path: {q}{local_path}{q}")

    def rewrite_to_remote(self, content: str, name: str, refspec: RefSpec) -> str:
        """Point *name* at a GitHub repository.

        Branches named like a default branch are written without ``branch:``;
        tags are always written explicitly, even a tag called ``main``.
        """

        def source(q: str) -> str:
            text = f"github: {q}{refspec.repository}{q}"
            if refspec.ref is None:
                return text
            if refspec.ref_kind == RefKind.TAG:
                return f"{text}, tag: {q}{refspec.ref}{q}"
            if refspec.ref in self.default_branches:
                return text
            return f"{text}, branch: {q}{refspec.ref}{q}"

        return self._rewrite(content, name, source)

    def _rewrite(self, content: str, name: str, render_source) -> str:
        pattern = _declaration_pattern(name)

        def replace(match: re.Match[str]) -> str:
            rest = match.group("rest")
            if _SWAP_MARKER.search(rest):
                return match.group(0)
            quote = match.group("quote")
            options = rest[_VERSION_CONSTRAINTS.match(rest).end():]
            return (
                f"{match.group('indent')}gem {quote}{name}{quote}, "
                f"{render_source(quote)}{options}"
            )

        return pattern.sub(replace, content)

    # ------------------------------------------------------------------
    # Detection
    # ------------------------------------------------------------------

    def detect_swapped(self, manifest_path: Path) -> list[SwappedDependency]:
        """Managed gems currently pointing at a path or GitHub in *manifest_path*."""
        if not manifest_path.is_file():
            return []
        return self.detect_swapped_content(manifest_path.read_text(encoding="utf-8"))

    def detect_swapped_content(self, content: str) -> list[SwappedDependency]:
        swapped: list[SwappedDependency] = []
        for dependency in Dependency:
            for match in _declaration_pattern(dependency.value).finditer(content):
                rest = match.group("rest")
                local_path = _option(rest, "path")
                if local_path is not None:
                    swapped.append(
                        SwappedDependency(name=dependency.value, kind="local", path=local_path)
                    )
                    continue
                repository = _option(rest, "github") or _option(rest, "git")
                if repository is not None:
                    ref = _option(rest, "tag") or _option(rest, "branch") or _option(rest, "ref")
                    swapped.append(
                        SwappedDependency(
                            name=dependency.value, kind="remote", path=repository, ref=ref
                        )
                    )
        return swapped

    def has_swap_markers(self, content: str) -> bool:
        return bool(self.detect_swapped_content(content))
