"""Background ``npm run watch`` processes.

Watch processes outlive the invocation that started them, so they are
tracked in a JSON registry under the cache directory::

    {"shakapacker": {"pid": 4242, "command": "npm run watch", "started_at": 1700000000.0}}

Several invocations may touch the registry at once.  Every
read-modify-write holds an exclusive ``flock`` on ``<registry>.lock``; plain
reads do not lock and tolerate a missing or corrupt file.

A PID on its own is not trusted: the OS may have handed it to an unrelated
process since it was recorded.  A record only counts as live when the
process exists, is not a zombie and its command line still matches the
recorded command.
"""

from __future__ import annotations

import fcntl
import json
import logging
import os
import shlex
import signal
import subprocess
import time
from contextlib import contextmanager
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

import psutil
from pydantic import ValidationError as PydanticValidationError

from swap_deps.config import Settings
from swap_deps.errors import WatchProcessError
from swap_deps.models import WatchProcessRecord
from swap_deps.utils import print_dry_run, print_warning

logger = logging.getLogger(__name__)

DEFAULT_WATCH_COMMAND: tuple[str, ...] = ("npm", "run", "watch")

Records = dict[str, WatchProcessRecord]


class TerminationResult(str, Enum):
    """Outcome of trying to stop one watch process."""

    KILLED = "killed"
    GONE = "gone"
    DENIED = "denied"
    STALE = "stale"


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------


class WatchRegistry:
    """JSON file mapping dependency names to watch process records."""

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_path = path.with_name(path.name + ".lock")

    def load(self) -> Records:
        """Read the registry without locking.

        A missing file is an empty registry.  A corrupt file, or an entry that
        does not validate, is logged and ignored.
        """
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as exc:
            logger.warning("Ignoring unreadable watch registry %s: %s", self.path, exc)
            return {}
        if not isinstance(raw, dict):
            logger.warning("Ignoring malformed watch registry %s", self.path)
            return {}

        records: Records = {}
        for dependency, entry in raw.items():
            if not isinstance(entry, dict):
                logger.warning("Skipping malformed registry entry for %s", dependency)
                continue
            try:
                records[dependency] = WatchProcessRecord(dependency=dependency, **entry)
            except (PydanticValidationError, TypeError) as exc:
                logger.warning("Skipping invalid registry entry for %s: %s", dependency, exc)
        return records

    @contextmanager
    def _locked(self) -> Iterator[None]:
        self.lock_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.lock_path, "a") as lock_file:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def update(self, mutate: Callable[[Records], Records]) -> Records:
        """Apply *mutate* to the current records under the exclusive lock.

        *mutate* receives a copy of the records and returns the new mapping,
        which is written atomically through a temporary file.
        """
        with self._locked():
            records = mutate(dict(self.load()))
            self._write(records)
        return records

    def clear(self) -> None:
        with self._locked():
            self.path.unlink(missing_ok=True)

    def _write(self, records: Records) -> None:
        payload = {
            dependency: record.model_dump(exclude={"dependency"})
            for dependency, record in records.items()
        }
        tmp_path = self.path.with_name(f".{self.path.name}.{os.getpid()}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2) + "\n", encoding="utf-8")
        os.replace(tmp_path, self.path)


# ---------------------------------------------------------------------------
# Process management
# ---------------------------------------------------------------------------


def _matches_signature(cmdline: list[str], command: str) -> bool:
    """Whether a live process command line still looks like *command*.

    The program is compared by basename prefix anywhere before the arguments,
    because launchers such as ``node npm-cli.js run watch`` keep the trailing
    arguments intact.  The arguments must match exactly at the end of the
    command line.
    """
    expected = shlex.split(command)
    if not expected or not cmdline:
        return False
    if len(cmdline) == 1 and " " in cmdline[0]:
        cmdline = shlex.split(cmdline[0])

    program = os.path.basename(expected[0])
    args = expected[1:]
    if args:
        if len(cmdline) <= len(args) or cmdline[-len(args):] != args:
            return False
        head = cmdline[: len(cmdline) - len(args)]
    else:
        head = cmdline[:1]
    return any(os.path.basename(part).startswith(program) for part in head)


class WatchProcessManager:
    """Spawns, lists and stops detached watch processes.

    Args:
        settings: Supplies the registry path, log directory and verification delay.
        dry_run: Report what would be spawned or killed without doing it.
        command: The watch command run inside each package root.
    """

    def __init__(
        self,
        settings: Settings,
        dry_run: bool = False,
        command: tuple[str, ...] = DEFAULT_WATCH_COMMAND,
    ) -> None:
        self.settings = settings
        self.dry_run = dry_run
        self.command = command
        self.registry = WatchRegistry(settings.registry_path)
        self._spawned: dict[str, subprocess.Popen] = {}

    def log_path(self, dependency: str) -> Path:
        return self.settings.watch_logs_dir / f"{dependency}.log"

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    def spawn(self, dependency: str, working_directory: Path) -> Optional[int]:
        """Start the watch command for *dependency* in *working_directory*.

        The child gets its own session and process group so it keeps running
        after this invocation exits, with stdout and stderr appended to the
        dependency's log file.  A previous watch process for the same
        dependency is stopped first.

        Returns:
            The child's PID, or ``None`` in dry-run mode.

        Raises:
            WatchProcessError: If the command cannot be started or exits before
                the verification delay has passed.  Nothing is recorded then.
        """
        command_text = shlex.join(self.command)
        log_path = self.log_path(dependency)
        if self.dry_run:
            print_dry_run(f"Would start '{command_text}' for {dependency} in {working_directory}")
            return None

        existing = self.registry.load().get(dependency)
        if existing is not None and self.is_valid(existing):
            logger.info("Replacing running watch process %s for %s", existing.pid, dependency)
            self.terminate(existing)

        log_path.parent.mkdir(parents=True, exist_ok=True)
        with open(log_path, "ab") as log_file:
            try:
                process = subprocess.Popen(
                    list(self.command),
                    cwd=str(working_directory),
                    stdin=subprocess.DEVNULL,
                    stdout=log_file,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
            except OSError as exc:
                raise WatchProcessError(
                    f"Failed to start watch process for {dependency}: {exc}",
                    dependency=dependency,
                    log_path=log_path,
                ) from exc

        time.sleep(self.settings.watch_verification_delay)
        exit_code = process.poll()
        if exit_code is not None:
            raise WatchProcessError(
                f"Watch process for {dependency} exited immediately (exit {exit_code}). "
                f"See {log_path}",
                dependency=dependency,
                log_path=log_path,
            )

        self._spawned[dependency] = process
        record = WatchProcessRecord(
            dependency=dependency,
            pid=process.pid,
            command=command_text,
            started_at=time.time(),
        )

        def add(records: Records) -> Records:
            kept = {name: entry for name, entry in records.items() if self.is_valid(entry)}
            kept[dependency] = record
            return kept

        self.registry.update(add)
        logger.debug("Started watch process %s for %s", process.pid, dependency)
        return process.pid

    # ------------------------------------------------------------------
    # Inspection
    # ------------------------------------------------------------------

    def is_valid(self, record: WatchProcessRecord) -> bool:
        """Whether *record* still refers to the process that was started."""
        try:
            process = psutil.Process(record.pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                return False
            return _matches_signature(process.cmdline(), record.command)
        except psutil.Error:
            return False

    def list_processes(self) -> list[WatchProcessRecord]:
        """Live watch processes.

        Dead or reused entries are skipped without touching the registry file;
        the next successful spawn or ``kill_all`` rewrites it.
        """
        return [record for record in self.registry.load().values() if self.is_valid(record)]

    # ------------------------------------------------------------------
    # Termination
    # ------------------------------------------------------------------

    def terminate(self, record: WatchProcessRecord) -> TerminationResult:
        """Send SIGTERM to the process group of *record*.

        A record whose PID now belongs to a different program is reported as
        ``STALE`` and no signal is sent.
        """
        try:
            process = psutil.Process(record.pid)
            if process.status() == psutil.STATUS_ZOMBIE:
                self._reap(record.dependency)
                return TerminationResult.GONE
            cmdline = process.cmdline()
        except psutil.NoSuchProcess:
            return TerminationResult.GONE
        except psutil.AccessDenied:
            return TerminationResult.DENIED

        if not _matches_signature(cmdline, record.command):
            return TerminationResult.STALE

        try:
            os.killpg(record.pid, signal.SIGTERM)
        except ProcessLookupError:
            return TerminationResult.GONE
        except PermissionError:
            return TerminationResult.DENIED

        self._reap(record.dependency)
        return TerminationResult.KILLED

    def _reap(self, dependency: str) -> None:
        process = self._spawned.pop(dependency, None)
        if process is None:
            return
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning("Watch process %s did not exit after SIGTERM", process.pid)

    def kill_all(self) -> int:
        """Stop every registered watch process and clear the registry.

        Returns:
            The number of processes that were actually signalled.
        """
        records = self.registry.load()
        if self.dry_run:
            live = [record for record in records.values() if self.is_valid(record)]
            for record in live:
                print_dry_run(f"Would stop {record.dependency} watch process (PID {record.pid})")
            return len(live)

        killed = 0
        for record in records.values():
            result = self.terminate(record)
            if result == TerminationResult.KILLED:
                killed += 1
            elif result == TerminationResult.DENIED:
                print_warning(
                    f"Permission denied stopping {record.dependency} watch process "
                    f"(PID {record.pid})"
                )
            else:
                logger.debug(
                    "Watch process %s for %s is %s", record.pid, record.dependency, result.value
                )
        self.registry.clear()
        return killed

    def terminate_spawned(self) -> int:
        """Stop the processes started by this manager and forget them."""
        spawned = set(self._spawned)
        if not spawned:
            return 0
        records = self.registry.load()
        killed = 0
        for dependency in sorted(spawned):
            record = records.get(dependency)
            if record is None:
                self._spawned[dependency].terminate()
                self._reap(dependency)
                continue
            if self.terminate(record) == TerminationResult.KILLED:
                killed += 1
        self.registry.update(
            lambda current: {k: v for k, v in current.items() if k not in spawned}
        )
        return killed
