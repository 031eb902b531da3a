"""Package-manager collaborators: bundler and npm.

Every call goes through an injected command runner so tests can replace the
real tools.  Install failures are reported back as ``False`` for the
orchestrator to turn into warnings; a failed build raises ``BuildError``.
"""

from __future__ import annotations

import json
import logging
import shutil
from pathlib import Path
from typing import Optional

from swap_deps.errors import BuildError
from swap_deps.models import Dependency
from swap_deps.utils import CommandRunner, print_dry_run, print_info, run_command

logger = logging.getLogger(__name__)

LOCKFILE = "package-lock.json"
LOCKFILE_ASIDE = "package-lock.json.swap-deps"


class Installer:
    """Runs ``bundle`` and ``npm`` inside project and package directories."""

    def __init__(self, runner: CommandRunner = run_command, dry_run: bool = False) -> None:
        self._run = runner
        self.dry_run = dry_run

    def _invoke(self, cmd: list[str], cwd: Path) -> bool:
        if self.dry_run:
            print_dry_run(f"Would run '{' '.join(cmd)}' in {cwd}")
            return True
        print_info(f"  Running {' '.join(cmd[:2])}...")
        returncode, _stdout, stderr = self._run(cmd, cwd=cwd)
        if returncode != 0:
            logger.warning(
                "'%s' failed in %s (exit %d): %s", " ".join(cmd), cwd, returncode, stderr
            )
            return False
        return True

    # ------------------------------------------------------------------
    # Bundler
    # ------------------------------------------------------------------

    def bundle_install(self, project: Path) -> bool:
        return self._invoke(["bundle", "install", "--quiet"], project)

    def bundle_update(self, project: Path, gems: list[str]) -> bool:
        """Re-resolve *gems* after a restore, falling back to ``bundle install``.

        ``bundle update`` with explicit names refreshes the lock entries that
        still point at local paths or GitHub, leaving other gems pinned.
        """
        if not gems:
            return self.bundle_install(project)
        if self._invoke(["bundle", "update", *gems, "--quiet"], project):
            return True
        logger.info("bundle update failed in %s, falling back to bundle install", project)
        return self.bundle_install(project)

    # ------------------------------------------------------------------
    # npm
    # ------------------------------------------------------------------

    def npm_install(self, project: Path) -> bool:
        return self._invoke(["npm", "install", "--silent"], project)

    def npm_install_for_restore(self, project: Path) -> bool:
        """Run ``npm install`` with ``package-lock.json`` set aside.

        The lock file still references the ``file:`` packages, so npm is
        allowed to regenerate it.  If the install fails the old lock file is
        put back.
        """
        lockfile = project / LOCKFILE
        aside = project / LOCKFILE_ASIDE
        if self.dry_run or not lockfile.exists():
            return self.npm_install(project)

        shutil.move(str(lockfile), str(aside))
        ok = self.npm_install(project)
        if ok:
            aside.unlink(missing_ok=True)
        else:
            shutil.move(str(aside), str(lockfile))
            logger.debug("Put %s back after failed npm install", lockfile)
        return ok

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------

    @staticmethod
    def npm_directory(dependency: Dependency, package_root: Path) -> Optional[Path]:
        """Directory holding *dependency*'s npm package, if it ships one."""
        npm_package = dependency.npm_package
        if npm_package is None:
            return None
        return (package_root / npm_package.subdir).resolve()

    @staticmethod
    def has_script(npm_directory: Path, script: str) -> bool:
        manifest = npm_directory / "package.json"
        try:
            data = json.loads(manifest.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return False
        scripts = data.get("scripts") if isinstance(data, dict) else None
        return isinstance(scripts, dict) and script in scripts

    def build(self, dependency: Dependency, npm_directory: Path) -> None:
        """Run ``npm run build`` in *npm_directory*.

        Raises:
            BuildError: If the build exits non-zero.
        """
        if self.dry_run:
            print_dry_run(f"Would build {dependency.value} in {npm_directory}")
            return
        print_info(f"  Building {dependency.value}...")
        returncode, _stdout, stderr = self._run(["npm", "run", "build"], cwd=npm_directory)
        if returncode != 0:
            raise BuildError(
                f"Build failed for {dependency.value} (exit {returncode}): {stderr}",
                dependency=dependency.value,
            )
