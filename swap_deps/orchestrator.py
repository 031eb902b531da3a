"""Swap orchestration.

Ties the components together for one invocation::

    swap:    VALIDATING -> SWAPPING -> BUILDING -> DONE
    restore: RESTORING -> DONE
    status:  QUERYING -> DONE

Validation happens before any file is touched and reports every problem at
once.  Each project is then processed independently: a failure in one
project is recorded in the ``RunReport`` and the remaining projects still run.
Install and build failures are warnings, since rewritten manifests with a
pending build are a state the user can simply retry from.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional

from rich.markup import escape
from rich.table import Table

from swap_deps.config import Settings
from swap_deps.errors import FetchError, SwapDepsError, ValidationError, WatchProcessError
from swap_deps.installer import Installer
from swap_deps.manifest import (
    BACKUP_SUFFIX,
    GEMFILE,
    PACKAGE_JSON,
    BackupStore,
    GemfileRewriter,
    PackageJsonRewriter,
)
from swap_deps.manifest.backup import SwapMarkerDetector
from swap_deps.models import (
    DependencyTarget,
    LocalPathSource,
    ProjectOutcome,
    RemoteSource,
    RunReport,
    SwappedDependency,
)
from swap_deps.sources.cache import CacheManager
from swap_deps.utils import (
    console,
    print_dry_run,
    print_info,
    print_success,
    print_summary_table,
    print_warning,
)
from swap_deps.watch import WatchProcessManager

SYSTEM_DIRECTORIES: tuple[str, ...] = (
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/boot",
    "/dev",
    "/proc",
    "/sys",
    "/lib",
    "/lib64",
    "/System",
)
_SKIPPED_DIRS = frozenset({"node_modules", ".git", "vendor", "tmp"})


class OrchestratorState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SWAPPING = "swapping"
    BUILDING = "building"
    RESTORING = "restoring"
    QUERYING = "querying"
    DONE = "done"


_TRANSITIONS: dict[OrchestratorState, frozenset[OrchestratorState]] = {
    OrchestratorState.IDLE: frozenset(
        {OrchestratorState.VALIDATING, OrchestratorState.RESTORING, OrchestratorState.QUERYING}
    ),
    OrchestratorState.VALIDATING: frozenset({OrchestratorState.SWAPPING}),
    OrchestratorState.SWAPPING: frozenset({OrchestratorState.BUILDING, OrchestratorState.DONE}),
    OrchestratorState.BUILDING: frozenset({OrchestratorState.DONE}),
    OrchestratorState.RESTORING: frozenset({OrchestratorState.DONE}),
    OrchestratorState.QUERYING: frozenset({OrchestratorState.DONE}),
    OrchestratorState.DONE: frozenset(
        {OrchestratorState.VALIDATING, OrchestratorState.RESTORING, OrchestratorState.QUERYING}
    ),
}


@dataclass
class SwapOptions:
    """Invocation-wide switches for the orchestrator."""

    roots: list[Path] = field(default_factory=lambda: [Path.cwd()])
    recursive: bool = False
    dry_run: bool = False
    skip_build: bool = False
    watch: bool = False


@dataclass
class ProjectStatus:
    """Read-only view of one project's swap state."""

    project: Path
    gems: list[SwappedDependency] = field(default_factory=list)
    packages: list[SwappedDependency] = field(default_factory=list)
    backups: list[str] = field(default_factory=list)

    @property
    def is_swapped(self) -> bool:
        return bool(self.gems or self.packages)


# ---------------------------------------------------------------------------
# Path helpers
# ---------------------------------------------------------------------------


def system_directory_violation(path: Path) -> Optional[str]:
    """Return an error message if *path* is, or lies inside, a system directory."""
    resolved = os.path.realpath(path)
    if resolved == "/":
        return f"{path}: system directory not allowed"
    for system_dir in SYSTEM_DIRECTORIES:
        if resolved == system_dir or resolved.startswith(system_dir + os.sep):
            return f"{path}: system directory not allowed ({system_dir})"
    return None


def _is_project(directory: Path) -> bool:
    return (directory / GEMFILE).is_file() or (directory / PACKAGE_JSON).is_file()


def _walk_projects(root: Path) -> Iterable[Path]:
    for current, dirs, _files in os.walk(root):
        dirs[:] = sorted(d for d in dirs if d not in _SKIPPED_DIRS)
        directory = Path(current)
        if _is_project(directory):
            yield directory


def discover_projects(roots: Iterable[Path], recursive: bool = False) -> list[Path]:
    """Find the project directories to operate on.

    A root that holds a ``Gemfile`` or ``package.json`` is itself the project;
    otherwise its immediate subdirectories holding one are.  With *recursive*
    the whole tree below each root is searched.  Order is stable and each
    project appears once.
    """
    projects: list[Path] = []
    seen: set[Path] = set()

    def add(directory: Path) -> None:
        resolved = directory.resolve()
        if resolved not in seen:
            seen.add(resolved)
            projects.append(resolved)

    for root in roots:
        root = Path(root).expanduser()
        if not root.is_dir():
            continue
        if recursive:
            for directory in _walk_projects(root):
                add(directory)
        elif _is_project(root):
            add(root)
        else:
            for child in sorted(root.iterdir()):
                if child.is_dir() and child.name not in _SKIPPED_DIRS and _is_project(child):
                    add(child)
    return projects


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


class SwapOrchestrator:
    """Runs swap, restore and status over the discovered projects.

    Collaborators default to real implementations built from *settings* and
    may be injected for testing.
    """

    def __init__(
        self,
        targets: list[DependencyTarget],
        options: SwapOptions,
        settings: Settings,
        cache: Optional[CacheManager] = None,
        watch_manager: Optional[WatchProcessManager] = None,
        installer: Optional[Installer] = None,
        backup_store: Optional[BackupStore] = None,
    ) -> None:
        self.targets = list(targets)
        self.options = options
        self.settings = settings
        self.cache = cache or CacheManager(settings, dry_run=options.dry_run)
        self.watch_manager = watch_manager or WatchProcessManager(
            settings, dry_run=options.dry_run
        )
        self.installer = installer or Installer(dry_run=options.dry_run)
        self.backup_store = backup_store or BackupStore(dry_run=options.dry_run)
        self.gemfile_rewriter = GemfileRewriter(settings.default_branches)
        self.package_rewriter = PackageJsonRewriter()
        self.state = OrchestratorState.IDLE

    def _transition(self, new_state: OrchestratorState) -> None:
        if new_state not in _TRANSITIONS[self.state]:
            raise RuntimeError(
                f"Invalid orchestrator transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state

    def projects(self) -> list[Path]:
        return discover_projects(self.options.roots, self.options.recursive)

    # ------------------------------------------------------------------
    # Swap
    # ------------------------------------------------------------------

    def swap(self) -> RunReport:
        """Validate, rewrite every project, install, then build or watch."""
        self._transition(OrchestratorState.VALIDATING)
        self._validate()
        self.targets = self._materialize_remotes()

        self._transition(OrchestratorState.SWAPPING)
        report = RunReport()
        projects = self.projects()
        if not projects:
            print_warning("No Gemfile or package.json found in the target directories")
            self._transition(OrchestratorState.DONE)
            return report

        for project in projects:
            console.print(f"\n[bold]Processing {escape(project.name)}...[/bold]")
            try:
                outcome = self._swap_project(project)
            except (SwapDepsError, OSError) as exc:
                outcome = ProjectOutcome(project=project, status="failed", message=str(exc))
                print_warning(f"  {project.name}: {exc}")
            report.add(outcome)
            report.warnings.extend(outcome.warnings)

        if self.options.skip_build:
            self._transition(OrchestratorState.DONE)
            return report

        self._transition(OrchestratorState.BUILDING)
        try:
            report.warnings.extend(self._build_packages())
        except BaseException:
            stopped = self.watch_manager.terminate_spawned()
            if stopped:
                print_warning(f"Stopped {stopped} watch process(es) started by this run")
            raise
        self._transition(OrchestratorState.DONE)
        return report

    def _validate(self) -> None:
        if not self.targets:
            raise ValidationError(
                "No dependencies specified. Use --shakapacker, --react-on-rails, "
                "--cypress-on-rails, --github or --apply"
            )

        errors: list[str] = []
        for root in self.options.roots:
            if not Path(root).expanduser().is_dir():
                errors.append(f"Target directory does not exist: {root}")
            else:
                violation = system_directory_violation(Path(root).expanduser())
                if violation:
                    errors.append(f"Target directory rejected: {violation}")

        for target in self.targets:
            if not isinstance(target.source, LocalPathSource):
                continue
            path = target.source.path
            name = target.dependency.value
            if not path.is_dir():
                errors.append(f"Local path for {name} does not exist: {path}")
                continue
            violation = system_directory_violation(path)
            if violation:
                errors.append(f"Local path for {name} rejected: {violation}")

        if errors:
            raise ValidationError(
                "\n".join(errors)
                + "\n\nUpdate the paths (or .swap-deps.yml), or use --restore to "
                "restore the original dependencies."
            )

    def _materialize_remotes(self) -> list[DependencyTarget]:
        materialized: list[DependencyTarget] = []
        failures: list[FetchError] = []
        for target in self.targets:
            if not isinstance(target.source, RemoteSource):
                materialized.append(target)
                continue
            try:
                refspec = self.cache.resolve(target.source.refspec)
                path = self.cache.materialize(target.dependency, refspec)
            except FetchError as exc:
                failures.append(exc)
                continue
            print_info(f"  {target.dependency.value}: {refspec} -> {path}")
            materialized.append(target.materialized(refspec, path))

        if len(failures) == 1:
            raise failures[0]
        if failures:
            raise FetchError("\n".join(str(exc) for exc in failures))
        return materialized

    def _render_gemfile(self, content: str) -> str:
        for target in self.targets:
            name = target.dependency.value
            if isinstance(target.source, RemoteSource):
                content = self.gemfile_rewriter.rewrite_to_remote(
                    content, name, target.source.refspec
                )
            else:
                content = self.gemfile_rewriter.rewrite_to_local(content, name, target.source.path)
        return content

    def _render_package_json(self, content: str, path: Path) -> tuple[str, list[str]]:
        changes: list[str] = []
        for target in self.targets:
            if target.package_root is None:
                continue
            change = self.package_rewriter.rewrite_to_local(
                content, target.dependency, target.package_root, path=path
            )
            content = change.content
            changes.extend(
                f"{target.dependency.npm_name} in {group}" for group in change.modified_groups
            )
        return content, changes

    def _swap_project(self, project: Path) -> ProjectOutcome:
        gemfile = project / GEMFILE
        package_json = project / PACKAGE_JSON

        # Everything is computed before anything is written, so a failure
        # (inconsistent backup, malformed JSON) leaves the project untouched.
        rewrites: list[tuple[Path, str, SwapMarkerDetector]] = []
        if gemfile.is_file():
            self.backup_store.ensure_consistent(gemfile, self.gemfile_rewriter)
            original = gemfile.read_text(encoding="utf-8")
            updated = self._render_gemfile(original)
            if updated != original:
                rewrites.append((gemfile, updated, self.gemfile_rewriter))
        if package_json.is_file():
            self.backup_store.ensure_consistent(package_json, self.package_rewriter)
            original = package_json.read_text(encoding="utf-8")
            updated, changes = self._render_package_json(original, package_json)
            if updated != original:
                rewrites.append((package_json, updated, self.package_rewriter))
                for change in changes:
                    print_info(f"  Updated {change}")

        if not rewrites:
            print_info("  No managed dependencies found to swap")
            return ProjectOutcome(
                project=project, status="unchanged", message="No managed dependencies found"
            )

        for manifest, _content, detector in rewrites:
            self.backup_store.backup(manifest, detector)
        for manifest, content, _detector in rewrites:
            if self.dry_run:
                print_dry_run(f"Would write {manifest.name}")
            else:
                manifest.write_text(content, encoding="utf-8")
                print_success(f"  Updated {manifest.name}")

        warnings: list[str] = []
        written = {manifest.name for manifest, _content, _detector in rewrites}
        if GEMFILE in written and not self.installer.bundle_install(project):
            warnings.append(f"{project.name}: bundle install failed")
        if PACKAGE_JSON in written and not self.installer.npm_install(project):
            warnings.append(f"{project.name}: npm install failed")
        for warning in warnings:
            print_warning(f"  {warning}")

        return ProjectOutcome(
            project=project,
            status="swapped",
            message=f"Updated {', '.join(sorted(written))}",
            warnings=warnings,
        )

    @property
    def dry_run(self) -> bool:
        return self.options.dry_run

    def _build_packages(self) -> list[str]:
        warnings: list[str] = []
        announced = False
        watch_failed = False
        script = "watch" if self.options.watch else "build"
        for target in self.targets:
            if target.package_root is None:
                continue
            npm_directory = Installer.npm_directory(target.dependency, target.package_root)
            if npm_directory is None:
                continue
            name = target.dependency.value
            if not announced:
                console.print("\n[bold]Building local packages...[/bold]")
                announced = True

            # A dry-run never clones, so an uncached remote target cannot be inspected.
            inspectable = npm_directory.is_dir() or not self.dry_run
            if inspectable and not (npm_directory / PACKAGE_JSON).is_file():
                print_info(f"  No package.json found for {name}")
                continue
            if inspectable and not Installer.has_script(npm_directory, script):
                print_info(f"  No {script} script found for {name}")
                continue

            if self.options.watch:
                try:
                    pid = self.watch_manager.spawn(name, npm_directory)
                except WatchProcessError as exc:
                    watch_failed = True
                    warnings.append(str(exc))
                    print_warning(f"  {exc}")
                    continue
                if pid is not None:
                    print_success(f"  Started watch process for {name} (PID {pid})")
                continue

            try:
                self.installer.build(target.dependency, npm_directory)
            except SwapDepsError as exc:
                warnings.append(str(exc))
                print_warning(f"  {exc}")

        if watch_failed:
            stopped = self.watch_manager.terminate_spawned()
            if stopped:
                print_warning(f"  Stopped {stopped} watch process(es) started by this run")
        return warnings

    # ------------------------------------------------------------------
    # Restore
    # ------------------------------------------------------------------

    def restore(self) -> RunReport:
        """Put every backed-up manifest back and re-resolve dependencies."""
        self._transition(OrchestratorState.RESTORING)
        live = self.watch_manager.list_processes()
        if live:
            names = ", ".join(f"{r.dependency} (PID {r.pid})" for r in live)
            print_warning(
                f"Watch processes are still running: {names}. Stop them with --kill-watch"
            )

        report = RunReport()
        for project in self.projects():
            try:
                outcome = self._restore_project(project)
            except (SwapDepsError, OSError) as exc:
                outcome = ProjectOutcome(project=project, status="failed", message=str(exc))
                print_warning(f"  {project.name}: {exc}")
            report.add(outcome)
            report.warnings.extend(outcome.warnings)

        if not report.succeeded and not report.failed:
            print_info("No backup files found - nothing to restore")
        self._transition(OrchestratorState.DONE)
        return report

    def _restore_project(self, project: Path) -> ProjectOutcome:
        gemfile = project / GEMFILE
        package_json = project / PACKAGE_JSON
        if not (self.backup_store.exists(gemfile) or self.backup_store.exists(package_json)):
            return ProjectOutcome(project=project, status="skipped", message="No backups found")

        console.print(f"\n[bold]Restoring {escape(project.name)}...[/bold]")
        swapped_gems = sorted({gem.name for gem in self.gemfile_rewriter.detect_swapped(gemfile)})
        restored = [
            manifest.name
            for manifest in (gemfile, package_json)
            if self.backup_store.restore(manifest)
        ]
        for name in restored:
            print_success(f"  Restored {name}")

        warnings: list[str] = []
        if GEMFILE in restored and not self.installer.bundle_update(project, swapped_gems):
            warnings.append(f"{project.name}: bundle update failed")
        if PACKAGE_JSON in restored and not self.installer.npm_install_for_restore(project):
            warnings.append(f"{project.name}: npm install failed")
        for warning in warnings:
            print_warning(f"  {warning}")

        return ProjectOutcome(
            project=project,
            status="restored",
            message=f"Restored {', '.join(restored)}",
            warnings=warnings,
        )

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> list[ProjectStatus]:
        """Report what is swapped where, without changing anything."""
        self._transition(OrchestratorState.QUERYING)
        statuses: list[ProjectStatus] = []
        for project in self.projects():
            gemfile = project / GEMFILE
            package_json = project / PACKAGE_JSON
            statuses.append(
                ProjectStatus(
                    project=project,
                    gems=self.gemfile_rewriter.detect_swapped(gemfile),
                    packages=self.package_rewriter.detect_swapped(package_json),
                    backups=[
                        path.name[: -len(BACKUP_SUFFIX)]
                        for path in self.backup_store.list_backups(project)
                    ],
                )
            )
        self._transition(OrchestratorState.DONE)
        return statuses


# ---------------------------------------------------------------------------
# Reporting
# ---------------------------------------------------------------------------


def print_status(statuses: list[ProjectStatus]) -> None:
    if not statuses:
        print_info("No Gemfile or package.json found in the target directories")
        return

    for status in statuses:
        name, location = escape(status.project.name), escape(str(status.project))
        console.print(f"\n[bold]{name}[/bold] [dim]({location})[/dim]")
        if status.is_swapped:
            table = Table(show_header=True, header_style="bold cyan")
            table.add_column("Manifest", style="dim")
            table.add_column("Dependency")
            table.add_column("Source")
            table.add_column("Ref")
            for manifest, entries in ((GEMFILE, status.gems), (PACKAGE_JSON, status.packages)):
                for entry in entries:
                    table.add_row(manifest, entry.name, escape(entry.path), escape(entry.ref or ""))
            console.print(table)
        if status.backups:
            print_info(f"  Backups: {', '.join(status.backups)}")
        if not status.is_swapped:
            if status.backups:
                print_info("  No currently swapped dependencies (backups available)")
            else:
                print_info("  No swapped dependencies")


def print_report(report: RunReport, title: str) -> None:
    if not report.outcomes:
        return
    rows = {
        str(outcome.project): (
            f"{outcome.status}: {outcome.message}" if outcome.message else outcome.status
        )
        for outcome in report.outcomes
    }
    print_summary_table(rows, title=title, columns=("Project", "Result"))
    for warning in report.warnings:
        print_warning(f"Warning: {warning}")


def print_next_steps(options: SwapOptions) -> None:
    console.print("\n[bold]Next steps:[/bold]")
    print_info("   1. Local packages are now linked via the file: protocol")
    print_info("   2. npm symlinks file: dependencies automatically")
    print_info("   3. Make changes in your local gem repositories")
    if options.skip_build:
        print_info("   4. Remember to build packages manually if needed")
    elif options.watch:
        print_info("   4. Watch mode: changes rebuild automatically (see --list-watch)")
    else:
        print_info("   4. Rebuild packages when needed: cd <gem-path> && npm run build")
    print_info("\n   To restore: swap-deps --restore")
