"""On-disk cache of shallow GitHub clones.

Each (repository, ref) pair gets its own directory under the cache root::

    <cache_dir>/<org>-<name>-<ref with '/' replaced by '-'>

The first swap clones it; later swaps refresh it with a shallow fetch and a
hard reset, never a merge.  Clones land in a hidden temporary sibling first and
are renamed into place, so an interrupted clone never leaves a half-populated
entry behind.
"""

from __future__ import annotations

import logging
import os
import re
import shutil
import time
import uuid
from pathlib import Path

from swap_deps.config import Settings
from swap_deps.errors import FetchError, ValidationError
from swap_deps.models import CacheEntry, CacheInfo, Dependency, RefKind, RefSpec
from swap_deps.utils import CommandRunner, load_json, print_dry_run, run_command, save_json

logger = logging.getLogger(__name__)

METADATA_FILENAME = "swap-deps.json"
_EXCLUDED_DIRS = frozenset({"watch_logs"})
_DEPENDENCY_NAME_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")
_SYMREF_PATTERN = re.compile(r"^ref:\s+refs/heads/(?P<branch>\S+)\s+HEAD$", re.MULTILINE)


def _normalise_name(name: str) -> str:
    return name.lower().replace("_", "-")


def directory_size(path: Path) -> int:
    """Sum the sizes of regular files under *path*.

    Symbolic links are neither followed nor counted.  Files that vanish or
    cannot be read while walking are logged and contribute zero.
    """
    total = 0
    for root, dirs, files in os.walk(path, followlinks=False):
        dirs[:] = [d for d in dirs if not os.path.islink(os.path.join(root, d))]
        for filename in files:
            file_path = os.path.join(root, filename)
            try:
                if os.path.islink(file_path):
                    continue
                total += os.lstat(file_path).st_size
            except PermissionError:
                logger.debug("Permission denied reading %s", file_path)
            except FileNotFoundError:
                logger.debug("File disappeared while sizing %s", file_path)
            except OSError as exc:
                logger.debug("Could not stat %s: %s", file_path, exc)
    return total


class CacheManager:
    """Materializes GitHub refs as local directories and manages the cache root.

    Args:
        settings: Supplies ``cache_dir`` and ``github_url``.
        dry_run: Report clones, fetches and removals without performing them.
        runner: Command runner, ``run_command`` unless a test injects one.
    """

    def __init__(
        self,
        settings: Settings,
        dry_run: bool = False,
        runner: CommandRunner = run_command,
    ) -> None:
        self.settings = settings
        self.cache_dir = settings.cache_dir
        self.dry_run = dry_run
        self._run = runner

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def cache_path(self, refspec: RefSpec) -> Path:
        """Directory for *refspec*, which must carry a ref."""
        if refspec.ref is None:
            raise ValueError(f"Cannot compute a cache path for {refspec} without a ref")
        slug = f"{refspec.org}-{refspec.name}-{refspec.ref}".replace("/", "-")
        return self.cache_dir / slug

    # ------------------------------------------------------------------
    # Git
    # ------------------------------------------------------------------

    def _git(self, *args: str, refspec: RefSpec, cwd: Path | None = None) -> str:
        cmd = ["git", *args]
        logger.debug("Running %s", " ".join(cmd))
        returncode, stdout, stderr = self._run(cmd, cwd=cwd)
        if returncode != 0:
            raise FetchError(
                f"git {args[0]} failed for {refspec} (exit {returncode}): {stderr}",
                repository=refspec.repository,
                ref=refspec.ref,
                stderr=stderr,
            )
        return stdout

    def resolve_default_branch(self, repository: str) -> str:
        """Ask the remote which branch ``HEAD`` points at.

        Raises:
            FetchError: If ``ls-remote`` fails or reports no symbolic HEAD.
        """
        refspec = RefSpec(repository=repository)
        output = self._git(
            "ls-remote", "--symref", self.settings.repository_url(repository), "HEAD",
            refspec=refspec,
        )
        match = _SYMREF_PATTERN.search(output)
        if match is None:
            raise FetchError(
                f"Could not determine the default branch of {repository}",
                repository=repository,
            )
        branch = match.group("branch")
        logger.debug("Default branch of %s is %s", repository, branch)
        return branch

    def resolve(self, refspec: RefSpec) -> RefSpec:
        """Return *refspec* with its ref filled in from the remote default branch."""
        if refspec.ref is not None:
            return refspec
        return refspec.with_ref(self.resolve_default_branch(refspec.repository), RefKind.BRANCH)

    # ------------------------------------------------------------------
    # Materialization
    # ------------------------------------------------------------------

    def materialize(self, dependency: Dependency, refspec: RefSpec) -> Path:
        """Make sure the cache holds *refspec* at its latest commit.

        Returns:
            The cache directory for the (resolved) refspec.

        Raises:
            FetchError: On any failing git invocation.
        """
        refspec = self.resolve(refspec)
        target = self.cache_path(refspec)

        if target.is_dir():
            if self.dry_run:
                print_dry_run(f"Would update {dependency.value} cache at {target} ({refspec})")
                return target
            self._update(target, refspec)
        else:
            if self.dry_run:
                print_dry_run(f"Would clone {refspec} into {target}")
                return target
            self._clone(target, refspec)
        return target

    def _clone(self, target: Path, refspec: RefSpec) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        staging = self.cache_dir / f".tmp-{target.name}-{uuid.uuid4().hex[:8]}"
        try:
            self._git(
                "clone", "--depth", "1", "--branch", refspec.ref,
                self.settings.repository_url(refspec.repository), str(staging),
                refspec=refspec,
            )
            self._write_metadata(staging, refspec)
            try:
                os.rename(staging, target)
            except OSError:
                if not target.is_dir():
                    raise
                # Another invocation cloned the same ref first; keep its copy.
                logger.debug("Cache entry %s appeared during clone, keeping it", target)
        finally:
            if staging.exists():
                shutil.rmtree(staging, ignore_errors=True)
        logger.debug("Cloned %s into %s", refspec, target)

    def _update(self, target: Path, refspec: RefSpec) -> None:
        self._git("fetch", "--depth", "1", "origin", refspec.ref, refspec=refspec, cwd=target)
        self._git("reset", "--hard", "FETCH_HEAD", refspec=refspec, cwd=target)
        self._write_metadata(target, refspec)
        logger.debug("Updated %s at %s", refspec, target)

    @staticmethod
    def _write_metadata(checkout: Path, refspec: RefSpec) -> None:
        metadata = {
            "repository": refspec.repository,
            "ref": refspec.ref,
            "ref_kind": refspec.ref_kind.value if refspec.ref_kind else None,
            "fetched_at": time.time(),
        }
        save_json(metadata, checkout / ".git" / METADATA_FILENAME)

    @staticmethod
    def _read_metadata(checkout: Path) -> dict:
        try:
            return load_json(checkout / ".git" / METADATA_FILENAME)
        except (OSError, ValueError):
            return {}

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def _entry_dirs(self) -> list[Path]:
        if not self.cache_dir.is_dir():
            return []
        return sorted(
            child
            for child in self.cache_dir.iterdir()
            if child.is_dir()
            and not child.is_symlink()
            and not child.name.startswith(".")
            and child.name not in _EXCLUDED_DIRS
        )

    def _entry(self, directory: Path) -> CacheEntry:
        metadata = self._read_metadata(directory)
        return CacheEntry(
            repository=metadata.get("repository"),
            ref=metadata.get("ref"),
            directory_path=directory,
            size_bytes=directory_size(directory),
        )

    def entries(self) -> list[CacheEntry]:
        """Every cached clone, sorted by directory name."""
        return [self._entry(directory) for directory in self._entry_dirs()]

    def info(self) -> CacheInfo:
        return CacheInfo(location=self.cache_dir, entries=self.entries())

    # ------------------------------------------------------------------
    # Cleaning
    # ------------------------------------------------------------------

    def clean(self, dependency: str | None = None) -> list[CacheEntry]:
        """Remove cached clones, all of them or those of one dependency.

        A dependency name matches the repository half of the ``repository``
        recorded in each entry's metadata, with ``_`` and ``-`` treated
        alike, so ``shakapacker`` removes ``my-org/shakapacker`` but never
        ``test-shakapacker/clone``.  Entries without metadata fall back to
        matching the directory name as ``<org>-<name>-<ref>``.

        Returns:
            The removed (or, in dry-run, removable) entries.

        Raises:
            ValidationError: If *dependency* contains unexpected characters.
        """
        if dependency is None:
            candidates = self._entry_dirs()
        else:
            fallback = self._clean_pattern(dependency)
            candidates = [
                d for d in self._entry_dirs() if self._belongs_to(d, dependency, fallback)
            ]

        removed: list[CacheEntry] = []
        for directory in candidates:
            entry = self._entry(directory)
            if self.dry_run:
                print_dry_run(f"Would remove {directory}")
            else:
                shutil.rmtree(directory)
                logger.debug("Removed cache entry %s", directory)
            removed.append(entry)
        return removed

    @staticmethod
    def _clean_pattern(dependency: str) -> re.Pattern[str]:
        if not _DEPENDENCY_NAME_PATTERN.match(dependency):
            raise ValidationError(f"Invalid dependency name: {dependency}")
        names = {
            re.escape(dependency),
            re.escape(dependency.replace("_", "-")),
            re.escape(dependency.replace("-", "_")),
        }
        return re.compile(rf"^[^-]+-(?:{'|'.join(sorted(names))})-.+$")

    def _belongs_to(self, directory: Path, dependency: str, fallback: re.Pattern[str]) -> bool:
        repository = self._read_metadata(directory).get("repository")
        if isinstance(repository, str) and "/" in repository:
            return _normalise_name(repository.split("/", 1)[1]) == _normalise_name(dependency)
        return bool(fallback.match(directory.name))
