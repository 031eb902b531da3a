"""swap-deps configuration.

Two layers of configuration, both Pydantic v2 models:

* ``Settings`` -- where the tool keeps its own state (cache, watch registry,
  watch logs) and tuning knobs, overridable through environment variables.
* ``SwapFileConfig`` -- the optional, git-ignored ``.swap-deps.yml`` listing
  which dependencies to swap and to what.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional, Union

import yaml
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from swap_deps.errors import ConfigError
from swap_deps.models import Dependency, DependencyTarget, RefKind

CONFIG_FILENAME = ".swap-deps.yml"
CONFIG_SEARCH_DEPTH = 3


class Settings(BaseModel):
    """Runtime settings shared by every component.

    Instances are created once by the CLI (usually via ``from_env``) and passed
    to the orchestrator, cache manager and watch process manager.
    """

    cache_dir: Path = Field(default_factory=lambda: Path("~/.cache/swap-deps").expanduser())
    github_url: str = Field(default="https://github.com")
    watch_verification_delay: float = Field(
        default=1.0, ge=0, description="Seconds to wait before checking a watch process is alive"
    )
    default_branches: tuple[str, ...] = Field(
        default=("main", "master"),
        description="Branch names omitted from generated 'branch:' options",
    )
    config_filename: str = Field(default=CONFIG_FILENAME)

    # ------------------------------------------------------------------
    # Derived paths (read-only properties)
    # ------------------------------------------------------------------

    @property
    def registry_path(self) -> Path:
        """JSON file tracking spawned watch processes."""
        return self.cache_dir / "watch_pids.json"

    @property
    def watch_logs_dir(self) -> Path:
        """Directory holding one log file per watch process."""
        return self.cache_dir / "watch_logs"

    def repository_url(self, repository: str) -> str:
        """Clone URL for an ``org/name`` repository."""
        return f"{self.github_url.rstrip('/')}/{repository}.git"

    @classmethod
    def from_env(cls) -> "Settings":
        """Build ``Settings`` from environment variables.

        Recognised variables (all optional):
            SWAP_DEPS_CACHE_DIR, SWAP_DEPS_GITHUB_URL, SWAP_DEPS_WATCH_DELAY.
        """
        kwargs: dict[str, Any] = {}
        if os.environ.get("SWAP_DEPS_CACHE_DIR"):
            kwargs["cache_dir"] = Path(os.environ["SWAP_DEPS_CACHE_DIR"]).expanduser()
        if os.environ.get("SWAP_DEPS_GITHUB_URL"):
            kwargs["github_url"] = os.environ["SWAP_DEPS_GITHUB_URL"]
        if os.environ.get("SWAP_DEPS_WATCH_DELAY"):
            kwargs["watch_verification_delay"] = float(os.environ["SWAP_DEPS_WATCH_DELAY"])
        return cls(**kwargs)


# ---------------------------------------------------------------------------
# .swap-deps.yml
# ---------------------------------------------------------------------------


class GitHubEntry(BaseModel):
    """Long form of a ``github:`` entry."""

    repo: str
    branch: Optional[str] = None
    ref_type: RefKind = RefKind.BRANCH

    def spec(self) -> str:
        if self.branch is None:
            return self.repo
        delimiter = "@" if self.ref_type == RefKind.TAG else "#"
        return f"{self.repo}{delimiter}{self.branch}"


class SwapFileConfig(BaseModel):
    """Parsed contents of ``.swap-deps.yml``.

    Example::

        gems:
          shakapacker: ~/dev/shakapacker
        github:
          react_on_rails: shakacode/react_on_rails#feature-x
          cypress-on-rails:
            repo: shakacode/cypress-on-rails
            branch: v1.19.0
            ref_type: tag
    """

    gems: dict[str, str] = Field(default_factory=dict)
    github: dict[str, Union[str, GitHubEntry]] = Field(default_factory=dict)

    def to_targets(self) -> list[DependencyTarget]:
        """Validate every entry and convert it into a ``DependencyTarget``.

        Raises:
            ValidationError: For unsupported dependency names.
            InvalidSpecError: For malformed GitHub specs.
        """
        from swap_deps.sources.refspec import parse_refspec

        targets = [
            DependencyTarget.local(Dependency.parse(name), path)
            for name, path in self.gems.items()
        ]
        for name, entry in self.github.items():
            spec = entry if isinstance(entry, str) else entry.spec()
            targets.append(DependencyTarget.remote(Dependency.parse(name), parse_refspec(spec)))
        return targets


def load_swap_config(path: str | Path) -> SwapFileConfig:
    """Load ``.swap-deps.yml`` with the safe YAML loader.

    ``yaml.safe_load`` refuses language-specific tags such as
    ``!!python/object``, so a config file cannot instantiate arbitrary types.

    Raises:
        ConfigError: If the file is missing, is not valid YAML, or has the
            wrong shape.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise ConfigError(f"Configuration file not found: {config_path}")

    try:
        raw = yaml.safe_load(config_path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {config_path}: {exc}") from exc

    if raw is None:
        return SwapFileConfig()
    if not isinstance(raw, dict):
        raise ConfigError(f"Configuration in {config_path} must be a mapping")

    try:
        return SwapFileConfig.model_validate(raw)
    except PydanticValidationError as exc:
        raise ConfigError(f"Invalid configuration in {config_path}: {exc}") from exc


def _search_directories(root: Path) -> list[Path]:
    """*root* and up to ``CONFIG_SEARCH_DEPTH`` parents, stopping at a git checkout's top."""
    directory = root.resolve()
    found = [directory]
    for parent in directory.parents:
        if len(found) > CONFIG_SEARCH_DEPTH or (found[-1] / ".git").exists():
            break
        found.append(parent)
    return found


def find_config_file(roots: list[Path], filename: str = CONFIG_FILENAME) -> Optional[Path]:
    """Return the first ``.swap-deps.yml`` found for *roots*, then in the cwd.

    Each root is searched first, then its parents, so running from a demo
    directory such as ``demos/basic`` picks up the repository's config.
    """
    directories = [d for root in roots for d in _search_directories(root)]
    for directory in [*directories, Path.cwd()]:
        candidate = directory / filename
        if candidate.is_file():
            return candidate
    return None
