"""Shared pytest fixtures for the swap-deps test suite.

Provides reusable fixtures for:
- Temporary project directories with sample Gemfile / package.json
- Local gem checkouts to swap to
- Settings pointing the cache, registry and GitHub URL at tmp_path
- A real git "remote" served from the filesystem
- A recording fake command runner
"""

from __future__ import annotations

import json
import subprocess
import textwrap
from pathlib import Path

import pytest

from swap_deps.config import Settings


SAMPLE_GEMFILE = textwrap.dedent(
    """\
    source "https://rubygems.org"

    gem "rails", "~> 7.1"
    gem "shakapacker", "~> 8.0"
    gem 'react_on_rails', '~> 14.0', '>= 14.0.1'

    group :test do
      gem "cypress-on-rails", "~> 1.17", require: false
    end
    """
)

SAMPLE_PACKAGE_JSON = {
    "name": "demo-app",
    "private": True,
    "dependencies": {
        "react": "^18.2.0",
        "react-on-rails": "14.0.1",
        "shakapacker": "8.0.0",
    },
    "devDependencies": {
        "eslint": "^8.0.0",
    },
}


def dump_package_json(data: dict) -> str:
    return json.dumps(data, indent=2) + "\n"


# ---------------------------------------------------------------------------
# Projects
# ---------------------------------------------------------------------------

@pytest.fixture
def tmp_project_dir(tmp_path: Path) -> Path:
    """A project directory holding the sample Gemfile and package.json."""
    project_dir = tmp_path / "demo-app"
    project_dir.mkdir()
    (project_dir / "Gemfile").write_text(SAMPLE_GEMFILE, encoding="utf-8")
    (project_dir / "package.json").write_text(
        dump_package_json(SAMPLE_PACKAGE_JSON), encoding="utf-8"
    )
    yield project_dir


@pytest.fixture
def sample_gemfile_text() -> str:
    return SAMPLE_GEMFILE


@pytest.fixture
def sample_package_json_text() -> str:
    return dump_package_json(SAMPLE_PACKAGE_JSON)


@pytest.fixture
def local_gems(tmp_path: Path) -> dict[str, Path]:
    """Local checkouts of the managed gems, with buildable npm packages."""
    root = tmp_path / "gems"
    shakapacker = root / "shakapacker"
    shakapacker.mkdir(parents=True)
    (shakapacker / "package.json").write_text(
        dump_package_json({"name": "shakapacker", "scripts": {"build": "tsc", "watch": "tsc -w"}}),
        encoding="utf-8",
    )

    react_on_rails = root / "react_on_rails"
    (react_on_rails / "node_package").mkdir(parents=True)
    (react_on_rails / "node_package" / "package.json").write_text(
        dump_package_json({"name": "react-on-rails", "scripts": {"build": "tsc"}}),
        encoding="utf-8",
    )

    cypress = root / "cypress-on-rails"
    cypress.mkdir(parents=True)
    yield {
        "shakapacker": shakapacker,
        "react_on_rails": react_on_rails,
        "cypress-on-rails": cypress,
    }


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    """Settings isolated under tmp_path, with GitHub served from tmp_path/remotes."""
    remotes = tmp_path / "remotes"
    remotes.mkdir(exist_ok=True)
    return Settings(
        cache_dir=tmp_path / "cache",
        github_url=remotes.as_uri(),
        watch_verification_delay=0.2,
    )


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

def _git(*args: str, cwd: Path) -> None:
    subprocess.run(["git", *args], cwd=cwd, check=True, capture_output=True)


@pytest.fixture
def tmp_git_remote(tmp_path: Path, settings: Settings) -> Path:
    """A bare repository at ``<remotes>/shakacode/shakapacker.git``.

    It has a ``main`` branch (the remote HEAD), a ``feature/hmr`` branch and
    a ``v1.0.0`` tag, so clone, fetch and default-branch detection all run
    against real git.
    """
    work = tmp_path / "work-shakapacker"
    work.mkdir()
    _git("init", cwd=work)
    _git("config", "user.email", "test@swap-deps.local", cwd=work)
    _git("config", "user.name", "swap-deps test", cwd=work)
    _git("config", "commit.gpgsign", "false", cwd=work)
    _git("checkout", "-b", "main", cwd=work)
    (work / "package.json").write_text(
        dump_package_json({"name": "shakapacker", "version": "1.0.0"}), encoding="utf-8"
    )
    _git("add", ".", cwd=work)
    _git("commit", "-m", "Initial commit", cwd=work)
    _git("tag", "v1.0.0", cwd=work)
    _git("checkout", "-b", "feature/hmr", cwd=work)
    (work / "hmr.js").write_text("export default 1;\n", encoding="utf-8")
    _git("add", ".", cwd=work)
    _git("commit", "-m", "HMR", cwd=work)
    _git("checkout", "main", cwd=work)

    remote = tmp_path / "remotes" / "shakacode" / "shakapacker.git"
    remote.parent.mkdir(parents=True)
    _git("clone", "--bare", str(work), str(remote), cwd=tmp_path)
    yield remote


def commit_to_remote(remote: Path, tmp_path: Path, filename: str, content: str) -> None:
    """Push a new commit to ``main`` of a bare remote."""
    clone = tmp_path / f"push-{filename}"
    _git("clone", str(remote), str(clone), cwd=tmp_path)
    _git("config", "user.email", "test@swap-deps.local", cwd=clone)
    _git("config", "user.name", "swap-deps test", cwd=clone)
    _git("config", "commit.gpgsign", "false", cwd=clone)
    (clone / filename).write_text(content, encoding="utf-8")
    _git("add", ".", cwd=clone)
    _git("commit", "-m", f"Add {filename}", cwd=clone)
    _git("push", "origin", "main", cwd=clone)


# ---------------------------------------------------------------------------
# Command runner
# ---------------------------------------------------------------------------

class FakeRunner:
    """Records commands and answers with canned results.

    ``results`` maps a command prefix (tuple) to ``(returncode, stdout, stderr)``;
    the longest matching prefix wins and unmatched commands succeed.
    """

    def __init__(self, results: dict[tuple[str, ...], tuple[int, str, str]] | None = None):
        self.results = results or {}
        self.calls: list[tuple[list[str], Path | None]] = []

    def __call__(self, cmd, cwd=None, timeout=None, capture=True, env=None):
        self.calls.append((list(cmd), Path(cwd) if cwd else None))
        for length in range(len(cmd), 0, -1):
            result = self.results.get(tuple(cmd[:length]))
            if result is not None:
                return result
        return (0, "", "")

    @property
    def commands(self) -> list[list[str]]:
        return [cmd for cmd, _cwd in self.calls]


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()
