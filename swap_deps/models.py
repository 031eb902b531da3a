"""Data model for swap-deps.

Pydantic v2 models for the values that are parsed from user input or persisted
(GitHub specs, dependency targets, watch registry records) and plain
dataclasses for the results the components hand back to the orchestrator.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field

from swap_deps.errors import ValidationError

# ---------------------------------------------------------------------------
# Managed dependencies
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class NpmPackage:
    """Location of a gem's npm package relative to the gem's repository root."""

    subdir: str


# Ruby-only gems have no npm counterpart.
NO_NPM_PACKAGE: None = None


class Dependency(str, Enum):
    """The closed set of libraries swap-deps knows how to swap."""

    SHAKAPACKER = "shakapacker"
    REACT_ON_RAILS = "react_on_rails"
    CYPRESS_ON_RAILS = "cypress-on-rails"

    @property
    def npm_package(self) -> Optional[NpmPackage]:
        """The npm package shipped by this gem, or ``NO_NPM_PACKAGE``."""
        return _NPM_PACKAGES[self]

    @property
    def npm_name(self) -> str:
        """npm packages use kebab-case names (``react_on_rails`` -> ``react-on-rails``)."""
        return self.value.replace("_", "-")

    @property
    def default_repository(self) -> str:
        return f"shakacode/{self.value}"

    @classmethod
    def parse(cls, name: str) -> "Dependency":
        """Return the member for *name*, raising ``ValidationError`` otherwise."""
        try:
            return cls(name)
        except ValueError:
            supported = ", ".join(member.value for member in cls)
            raise ValidationError(
                f"Unsupported dependency: {name} (supported: {supported})"
            ) from None

    @classmethod
    def from_repository(cls, repository: str) -> "Dependency":
        """Infer the dependency from a repository such as ``shakacode/react-on-rails``."""
        basename = repository.rstrip("/").split("/")[-1].lower()
        normalized = basename.replace("-", "_")
        for member in cls:
            if member.value.replace("-", "_") == normalized:
                return member
        raise ValidationError(
            f"Cannot infer dependency from repo: {repository}. "
            "Use --shakapacker, --react-on-rails or --cypress-on-rails explicitly."
        )


_NPM_PACKAGES: dict[Dependency, Optional[NpmPackage]] = {
    Dependency.SHAKAPACKER: NpmPackage(subdir="."),
    Dependency.REACT_ON_RAILS: NpmPackage(subdir="node_package"),
    Dependency.CYPRESS_ON_RAILS: NO_NPM_PACKAGE,
}


# ---------------------------------------------------------------------------
# GitHub references
# ---------------------------------------------------------------------------


class RefKind(str, Enum):
    """Whether a GitHub ref names a branch or a tag."""

    BRANCH = "branch"
    TAG = "tag"


class RefSpec(BaseModel):
    """A parsed ``org/repo[#branch|@tag]`` reference."""

    model_config = ConfigDict(frozen=True)

    repository: str = Field(..., description="Repository in 'org/name' form")
    ref: Optional[str] = Field(default=None, description="Branch or tag name")
    ref_kind: Optional[RefKind] = Field(default=None, description="Kind of ref, if any")

    @property
    def org(self) -> str:
        return self.repository.split("/", 1)[0]

    @property
    def name(self) -> str:
        return self.repository.split("/", 1)[1]

    def with_ref(self, ref: str, ref_kind: RefKind = RefKind.BRANCH) -> "RefSpec":
        """Return a copy pointing at *ref* (used once a default branch is resolved)."""
        return self.model_copy(update={"ref": ref, "ref_kind": ref_kind})

    def __str__(self) -> str:
        if self.ref is None:
            return self.repository
        delimiter = "@" if self.ref_kind == RefKind.TAG else "#"
        return f"{self.repository}{delimiter}{self.ref}"


# ---------------------------------------------------------------------------
# Dependency targets
# ---------------------------------------------------------------------------


class LocalPathSource(BaseModel):
    """A dependency served from a local checkout."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["local"] = "local"
    path: Path


class RemoteSource(BaseModel):
    """A dependency served from GitHub, materialized into the cache."""

    model_config = ConfigDict(frozen=True)

    kind: Literal["remote"] = "remote"
    refspec: RefSpec
    cache_path: Optional[Path] = None


Source = Annotated[Union[LocalPathSource, RemoteSource], Field(discriminator="kind")]


class DependencyTarget(BaseModel):
    """Where one managed dependency should be swapped to."""

    model_config = ConfigDict(frozen=True)

    dependency: Dependency
    source: Source

    @property
    def is_remote(self) -> bool:
        return isinstance(self.source, RemoteSource)

    @property
    def package_root(self) -> Optional[Path]:
        """Local directory holding the gem's sources, once it is known."""
        if isinstance(self.source, LocalPathSource):
            return self.source.path
        return self.source.cache_path

    def materialized(self, refspec: RefSpec, cache_path: Path) -> "DependencyTarget":
        """Return a copy whose remote source carries the resolved ref and cache path."""
        return self.model_copy(
            update={"source": RemoteSource(refspec=refspec, cache_path=cache_path)}
        )

    @classmethod
    def local(cls, dependency: Dependency, path: str | Path) -> "DependencyTarget":
        return cls(
            dependency=dependency,
            source=LocalPathSource(path=Path(path).expanduser().resolve()),
        )

    @classmethod
    def remote(cls, dependency: Dependency, refspec: RefSpec) -> "DependencyTarget":
        return cls(dependency=dependency, source=RemoteSource(refspec=refspec))


# ---------------------------------------------------------------------------
# Watch registry
# ---------------------------------------------------------------------------


class WatchProcessRecord(BaseModel):
    """A background ``npm run watch`` process tracked in the registry file."""

    dependency: str
    pid: int = Field(..., gt=0)
    command: str
    started_at: float


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


@dataclass
class SwappedDependency:
    """A managed dependency found swapped in a manifest."""

    name: str
    kind: Literal["local", "remote"]
    path: str
    ref: Optional[str] = None


@dataclass
class CacheEntry:
    """A cached clone of a GitHub repository."""

    repository: Optional[str]
    ref: Optional[str]
    directory_path: Path
    size_bytes: int = 0

    @property
    def name(self) -> str:
        return self.directory_path.name


@dataclass
class CacheInfo:
    """Summary of the cache directory."""

    location: Path
    entries: list[CacheEntry] = field(default_factory=list)

    @property
    def entry_count(self) -> int:
        return len(self.entries)

    @property
    def total_size(self) -> int:
        return sum(entry.size_bytes for entry in self.entries)


OutcomeStatus = Literal["swapped", "restored", "unchanged", "skipped", "failed"]


@dataclass
class ProjectOutcome:
    """What happened to one project directory during a swap or restore."""

    project: Path
    status: OutcomeStatus
    message: str = ""
    warnings: list[str] = field(default_factory=list)


@dataclass
class RunReport:
    """Per-project outcomes of a swap or restore run."""

    outcomes: list[ProjectOutcome] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def add(self, outcome: ProjectOutcome) -> None:
        self.outcomes.append(outcome)

    @property
    def succeeded(self) -> list[ProjectOutcome]:
        return [o for o in self.outcomes if o.status in ("swapped", "restored")]

    @property
    def failed(self) -> list[ProjectOutcome]:
        return [o for o in self.outcomes if o.status == "failed"]

    @property
    def skipped(self) -> list[ProjectOutcome]:
        return [o for o in self.outcomes if o.status in ("unchanged", "skipped")]

    @property
    def ok(self) -> bool:
        return not self.failed
