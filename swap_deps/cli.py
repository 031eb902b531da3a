"""Command-line interface for swap-deps.

Usage::

    swap-deps --shakapacker ~/dev/shakapacker
    swap-deps --react-on-rails '#feature-x' --path ./demos --watch
    swap-deps --github shakacode/shakapacker@v9.0.0
    swap-deps --apply
    swap-deps --status
    swap-deps --restore
"""

from __future__ import annotations

import argparse
import datetime
import sys
from pathlib import Path
from typing import Optional

from rich.table import Table

from swap_deps.config import CONFIG_FILENAME, Settings, find_config_file, load_swap_config
from swap_deps.errors import ConfigError, SwapDepsError
from swap_deps.logging_setup import configure_logging
from swap_deps.models import Dependency, DependencyTarget, RunReport
from swap_deps.orchestrator import (
    SwapOptions,
    SwapOrchestrator,
    print_next_steps,
    print_report,
    print_status,
)
from swap_deps.sources import CacheManager, parse_dependency_value, parse_refspec
from swap_deps.utils import (
    console,
    err_console,
    human_readable_size,
    print_error,
    print_info,
    print_success,
    print_summary_table,
    print_warning,
)
from swap_deps.watch import WatchProcessManager

_ALL_ENTRIES = "__all__"
_DEPENDENCY_FLAGS: dict[str, Dependency] = {
    "shakapacker": Dependency.SHAKAPACKER,
    "react_on_rails": Dependency.REACT_ON_RAILS,
    "cypress_on_rails": Dependency.CYPRESS_ON_RAILS,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="swap-deps",
        description="Swap Gemfile and package.json dependencies to local or GitHub versions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=(
            "Examples:\n"
            "  swap-deps --shakapacker ~/dev/shakapacker\n"
            "  swap-deps --react-on-rails '#feature-x'       (shakacode/react_on_rails branch)\n"
            "  swap-deps --github shakacode/shakapacker@v9.0.0\n"
            "  swap-deps --apply                             (use .swap-deps.yml)\n"
            "  swap-deps --status\n"
            "  swap-deps --restore\n"
        ),
    )

    deps = parser.add_argument_group("dependencies")
    deps.add_argument(
        "--shakapacker",
        metavar="VALUE",
        help="Local path, org/repo[#branch|@tag], or #branch / @tag shorthand",
    )
    deps.add_argument("--react-on-rails", metavar="VALUE", help="Same forms as --shakapacker")
    deps.add_argument("--cypress-on-rails", metavar="VALUE", help="Same forms as --shakapacker")
    deps.add_argument(
        "--github",
        action="append",
        default=[],
        metavar="REPO[#BRANCH|@TAG]",
        help="GitHub repository; the dependency is inferred from the repo name (repeatable)",
    )
    deps.add_argument(
        "--apply", action="store_true", help="Use dependencies from .swap-deps.yml"
    )
    deps.add_argument("--config", metavar="FILE", help="Path to the config file (implies --apply)")

    scope = parser.add_argument_group("projects")
    scope.add_argument(
        "--path",
        action="append",
        default=[],
        metavar="DIR",
        help="Project directory or parent of project directories (repeatable, default: .)",
    )
    scope.add_argument(
        "--recursive", action="store_true", help="Search every directory below --path"
    )

    build = parser.add_mutually_exclusive_group()
    build.add_argument(
        "--build",
        dest="skip_build",
        action="store_false",
        help="Build swapped npm packages after swapping (default)",
    )
    build.add_argument(
        "--skip-build", dest="skip_build", action="store_true", help="Do not build npm packages"
    )
    parser.set_defaults(skip_build=False)
    parser.add_argument(
        "--watch", action="store_true", help="Start 'npm run watch' instead of building once"
    )

    actions = parser.add_argument_group("other actions")
    actions.add_argument("--restore", action="store_true", help="Restore manifests from backups")
    actions.add_argument("--status", action="store_true", help="Show swapped dependencies")
    actions.add_argument("--list-watch", action="store_true", help="List running watch processes")
    actions.add_argument("--kill-watch", action="store_true", help="Stop all watch processes")
    actions.add_argument(
        "--show-cache", action="store_true", help="Show cache location, size and entries"
    )
    actions.add_argument(
        "--clean-cache",
        nargs="?",
        const=_ALL_ENTRIES,
        metavar="DEPENDENCY",
        help="Remove cached repositories (all, or one dependency's); watch logs are kept",
    )

    parser.add_argument(
        "--dry-run", action="store_true", help="Show what would happen without changing anything"
    )
    parser.add_argument(
        "-v", "--verbose", action="store_true", help="Show debug output and tracebacks"
    )
    return parser


# ---------------------------------------------------------------------------
# Target collection
# ---------------------------------------------------------------------------


def collect_targets(
    args: argparse.Namespace, config_filename: str = CONFIG_FILENAME
) -> list[DependencyTarget]:
    """Merge config-file targets with command-line ones (command line wins)."""
    targets: dict[Dependency, DependencyTarget] = {}

    if args.apply or args.config:
        roots = [Path(p).expanduser() for p in args.path] or [Path.cwd()]
        if args.config:
            config_path = Path(args.config).expanduser()
        else:
            config_path = find_config_file(roots, config_filename)
        if config_path is None:
            raise ConfigError(f"No {config_filename} found (use --config FILE)")
        for target in load_swap_config(config_path).to_targets():
            targets[target.dependency] = target
        print_info(f"Loaded configuration from {config_path}")

    for attribute, dependency in _DEPENDENCY_FLAGS.items():
        value = getattr(args, attribute)
        if value:
            targets[dependency] = parse_dependency_value(dependency, value)

    for spec in args.github:
        refspec = parse_refspec(spec)
        dependency = Dependency.from_repository(refspec.repository)
        targets[dependency] = DependencyTarget.remote(dependency, refspec)

    return list(targets.values())


def _load_settings() -> Settings:
    try:
        return Settings.from_env()
    except ValueError as exc:
        raise ConfigError(f"Invalid SWAP_DEPS_* environment setting: {exc}") from exc


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------


def _show_cache(settings: Settings) -> int:
    info = CacheManager(settings).info()
    print_summary_table(
        {
            "Location": str(info.location),
            "Entries": str(info.entry_count),
            "Total size": human_readable_size(info.total_size),
        },
        title="Cache",
    )
    if info.entries:
        table = Table(show_header=True, header_style="bold cyan")
        table.add_column("Directory", style="dim")
        table.add_column("Repository")
        table.add_column("Ref")
        table.add_column("Size", justify="right")
        for entry in info.entries:
            table.add_row(
                entry.name,
                entry.repository or "?",
                entry.ref or "?",
                human_readable_size(entry.size_bytes),
            )
        console.print(table)
    return 0


def _clean_cache(settings: Settings, dependency: str, dry_run: bool) -> int:
    cache = CacheManager(settings, dry_run=dry_run)
    removed = cache.clean(None if dependency == _ALL_ENTRIES else dependency)
    if not removed:
        print_info("No matching cache entries")
        return 0
    freed = human_readable_size(sum(entry.size_bytes for entry in removed))
    verb = "Would remove" if dry_run else "Removed"
    noun = "entry" if len(removed) == 1 else "entries"
    print_success(f"{verb} {len(removed)} cache {noun} ({freed})")
    return 0


def _list_watch(settings: Settings) -> int:
    manager = WatchProcessManager(settings)
    processes = manager.list_processes()
    if not processes:
        print_info("No watch processes running")
        return 0
    table = Table(title="Watch processes", show_header=True, header_style="bold cyan")
    table.add_column("Dependency")
    table.add_column("PID", justify="right")
    table.add_column("Command")
    table.add_column("Started")
    table.add_column("Log", style="dim")
    for record in processes:
        started = datetime.datetime.fromtimestamp(record.started_at).strftime("%Y-%m-%d %H:%M:%S")
        table.add_row(
            record.dependency,
            str(record.pid),
            record.command,
            started,
            str(manager.log_path(record.dependency)),
        )
    console.print(table)
    return 0


def _kill_watch(settings: Settings, dry_run: bool) -> int:
    stopped = WatchProcessManager(settings, dry_run=dry_run).kill_all()
    if stopped:
        verb = "Would stop" if dry_run else "Stopped"
        print_success(f"{verb} {stopped} watch process(es)")
    else:
        print_info("No watch processes running")
    return 0


def _exit_code(report: RunReport) -> int:
    return 0 if report.ok else 1


def run(args: argparse.Namespace) -> int:
    settings = _load_settings()
    options = SwapOptions(
        roots=[Path(p).expanduser() for p in args.path] or [Path.cwd()],
        recursive=args.recursive,
        dry_run=args.dry_run,
        skip_build=args.skip_build,
        watch=args.watch,
    )

    if args.list_watch:
        return _list_watch(settings)
    if args.kill_watch:
        return _kill_watch(settings, args.dry_run)
    if args.show_cache:
        return _show_cache(settings)
    if args.clean_cache is not None:
        return _clean_cache(settings, args.clean_cache, args.dry_run)

    if args.dry_run:
        print_warning("DRY-RUN MODE: no files will be modified")

    if args.status:
        print_status(SwapOrchestrator([], options, settings).status())
        return 0
    if args.restore:
        report = SwapOrchestrator([], options, settings).restore()
        print_report(report, title="Restore summary")
        return _exit_code(report)

    orchestrator = SwapOrchestrator(
        collect_targets(args, settings.config_filename), options, settings
    )
    report = orchestrator.swap()
    print_report(report, title="Swap summary")
    if report.succeeded:
        print_success("Swapped dependencies successfully")
        print_next_steps(options)
    return _exit_code(report)


def main(argv: Optional[list[str]] = None) -> int:
    """CLI entry point for ``swap-deps`` and ``python -m swap_deps``."""
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(verbose=args.verbose)

    try:
        return run(args)
    except SwapDepsError as exc:
        print_error(f"Error: {exc}")
        return 1
    except KeyboardInterrupt:
        print_error("Interrupted")
        return 130
    except Exception as exc:
        print_error(f"Unexpected error: {exc}")
        if args.verbose:
            err_console.print_exception()
        return 1


if __name__ == "__main__":
    sys.exit(main())
