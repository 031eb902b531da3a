"""Parsing and validation of GitHub repository specs.

Accepted forms::

    org/repo           -> no ref (the remote default branch is used)
    org/repo#branch    -> branch
    org/repo@tag       -> tag

Per-dependency flags additionally accept the ``#branch`` and ``@tag``
shorthands, which refer to the dependency's default ``shakacode/`` repository.
"""

from __future__ import annotations

import re
from pathlib import Path

from swap_deps.errors import InvalidSpecError
from swap_deps.models import Dependency, DependencyTarget, RefKind, RefSpec

_REPOSITORY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+/[A-Za-z0-9_.-]+$")
_SAFE_REF_PATTERN = re.compile(r"^[A-Za-z0-9_./@+-]+$")
_FORBIDDEN_REF_SEQUENCES = ("..", "~", "^", ":", "?", "*", "[", "\\", " ")


def parse_refspec(spec: str) -> RefSpec:
    """Parse ``org/repo``, ``org/repo#branch`` or ``org/repo@tag``.

    The first ``@`` wins over any ``#``, and only the first ``@`` is a
    delimiter: ``org/repo@a@b`` is the tag ``a@b``.

    Raises:
        InvalidSpecError: On an empty repository or ref, or when either part
            fails validation.
    """
    spec = spec.strip()
    if "@" in spec:
        repository, ref = spec.split("@", 1)
        ref_kind: RefKind | None = RefKind.TAG
        delimiter = "@"
    elif "#" in spec:
        repository, ref = spec.split("#", 1)
        ref_kind = RefKind.BRANCH
        delimiter = "#"
    else:
        repository, ref, ref_kind, delimiter = spec, None, None, ""

    if not repository:
        raise InvalidSpecError(f"Invalid GitHub spec '{spec}': empty repository")
    if ref is not None and not ref:
        raise InvalidSpecError(f"Invalid GitHub spec '{spec}': empty ref after {delimiter}")

    validate_repository(repository)
    if ref is not None:
        validate_ref(ref)
    return RefSpec(repository=repository, ref=ref, ref_kind=ref_kind)


def validate_repository(repository: str) -> None:
    """Check that *repository* is a plain ``org/name`` pair.

    Raises:
        InvalidSpecError: Naming the rule that was broken.
    """
    if not repository:
        raise InvalidSpecError("Invalid GitHub repo: cannot be empty")

    parts = repository.split("/")
    if len(parts) != 2:
        raise InvalidSpecError(
            f"Invalid GitHub repo format: expected 'org/repo', got '{repository}'"
        )
    org, name = parts
    if not org:
        raise InvalidSpecError(f"Invalid GitHub repo '{repository}': empty organization")
    if not name:
        raise InvalidSpecError(f"Invalid GitHub repo '{repository}': empty repository name")
    if org in (".", "..") or name in (".", ".."):
        raise InvalidSpecError(
            f"Invalid GitHub repo format: '{repository}' contains a relative path segment"
        )
    if not _REPOSITORY_PATTERN.match(repository):
        raise InvalidSpecError(
            f"Invalid GitHub repo: '{repository}' contains invalid characters "
            "(only alphanumeric, -, _ and . allowed)"
        )


def validate_ref(ref: str) -> None:
    """Check *ref* against git's ref naming rules.

    Raises:
        InvalidSpecError: Naming the offending character or rule.
    """
    if not ref:
        raise InvalidSpecError("Invalid GitHub ref: cannot be empty")
    if ref == "@":
        raise InvalidSpecError("Invalid GitHub ref: cannot be just @")

    for sequence in _FORBIDDEN_REF_SEQUENCES:
        if sequence in ref:
            raise InvalidSpecError(
                f"Invalid GitHub ref: '{ref}' contains invalid character '{sequence}'"
            )
    if ref.endswith(".lock"):
        raise InvalidSpecError(f"Invalid GitHub ref: '{ref}' cannot end with .lock")
    if "@{" in ref:
        raise InvalidSpecError(f"Invalid GitHub ref: '{ref}' cannot contain @{{")
    if not _SAFE_REF_PATTERN.match(ref):
        raise InvalidSpecError(
            f"Invalid GitHub ref: '{ref}' contains unsafe characters "
            "(only alphanumeric, -, _, ., /, + and @ allowed)"
        )


def parse_dependency_value(dependency: Dependency, value: str) -> DependencyTarget:
    """Interpret the value of a ``--<dependency>`` flag.

    ``#branch`` and ``@tag`` are shorthands for the dependency's default
    repository.  A value that looks like ``org/repo[#ref|@ref]`` is treated as a
    GitHub spec unless it names an existing directory; anything else is a
    local path.
    """
    if value.startswith("#") or value.startswith("@"):
        return DependencyTarget.remote(
            dependency, parse_refspec(f"{dependency.default_repository}{value}")
        )

    path = Path(value).expanduser()
    if _looks_like_github_spec(value) and not path.is_dir():
        return DependencyTarget.remote(dependency, parse_refspec(value))
    return DependencyTarget.local(dependency, path)


def _looks_like_github_spec(value: str) -> bool:
    if value.startswith((".", "/", "~")):
        return False
    repository = re.split(r"[#@]", value, maxsplit=1)[0]
    return bool(_REPOSITORY_PATTERN.match(repository))
