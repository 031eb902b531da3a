"""Tests for the GitHub clone cache (swap_deps.sources.cache).

Tests cover:
- cache_path naming
- Default-branch resolution from ls-remote output
- materialize: clone, refresh via fetch + reset, dry-run, FetchError
- directory_size: symlinks skipped, unreadable files counted as zero
- entries / info, excluding watch_logs
- clean: matching on the recorded repository, directory-name fallback,
  invalid names, dry-run
- Real git round trips against a filesystem remote (integration)
"""

from __future__ import annotations

import os
import subprocess
from pathlib import Path
from unittest.mock import patch

import pytest

from conftest import FakeRunner, commit_to_remote
from swap_deps.errors import FetchError, ValidationError
from swap_deps.models import Dependency, RefKind, RefSpec
from swap_deps.sources.cache import METADATA_FILENAME, CacheManager, directory_size
from swap_deps.utils import save_json


def _refspec(repository="shakacode/shakapacker", ref="main", kind=RefKind.BRANCH) -> RefSpec:
    return RefSpec(repository=repository, ref=ref, ref_kind=kind)


def _make_entry(cache_dir: Path, name: str, size: int = 10) -> Path:
    entry = cache_dir / name
    (entry / ".git").mkdir(parents=True)
    (entry / "file.bin").write_bytes(b"x" * size)
    return entry


# ---------------------------------------------------------------------------
# Paths and default branch
# ---------------------------------------------------------------------------

class TestCachePath:
    @pytest.mark.unit
    def test_slashes_replaced(self, settings):
        cache = CacheManager(settings)
        path = cache.cache_path(_refspec(ref="feature/hmr"))
        assert path == settings.cache_dir / "shakacode-shakapacker-feature-hmr"

    @pytest.mark.unit
    def test_requires_ref(self, settings):
        with pytest.raises(ValueError):
            CacheManager(settings).cache_path(RefSpec(repository="org/repo"))


class TestResolveDefaultBranch:
    @pytest.mark.unit
    def test_parses_symref(self, settings):
        runner = FakeRunner(
            {("git", "ls-remote"): (0, "ref: refs/heads/develop\tHEAD\nabc123\tHEAD", "")}
        )
        cache = CacheManager(settings, runner=runner)
        assert cache.resolve_default_branch("org/repo") == "develop"
        assert runner.commands[0][:3] == ["git", "ls-remote", "--symref"]
        assert runner.commands[0][3] == settings.repository_url("org/repo")

    @pytest.mark.unit
    def test_ls_remote_failure(self, settings):
        runner = FakeRunner({("git", "ls-remote"): (128, "", "repository not found")})
        with pytest.raises(FetchError) as excinfo:
            CacheManager(settings, runner=runner).resolve_default_branch("org/missing")
        assert excinfo.value.repository == "org/missing"
        assert "repository not found" in excinfo.value.stderr

    @pytest.mark.unit
    def test_no_symref_in_output(self, settings):
        runner = FakeRunner({("git", "ls-remote"): (0, "abc123\tHEAD", "")})
        with pytest.raises(FetchError, match="default branch"):
            CacheManager(settings, runner=runner).resolve_default_branch("org/repo")

    @pytest.mark.unit
    def test_resolve_keeps_explicit_ref(self, settings, fake_runner):
        spec = _refspec(ref="v1", kind=RefKind.TAG)
        assert CacheManager(settings, runner=fake_runner).resolve(spec) is spec
        assert fake_runner.calls == []


# ---------------------------------------------------------------------------
# materialize (mocked git)
# ---------------------------------------------------------------------------

class TestMaterializeMocked:
    @pytest.mark.unit
    def test_refresh_existing_entry_uses_fetch_and_reset(self, settings, fake_runner):
        cache = CacheManager(settings, runner=fake_runner)
        entry = _make_entry(settings.cache_dir, "shakacode-shakapacker-main")

        path = cache.materialize(Dependency.SHAKAPACKER, _refspec())

        assert path == entry
        assert fake_runner.commands == [
            ["git", "fetch", "--depth", "1", "origin", "main"],
            ["git", "reset", "--hard", "FETCH_HEAD"],
        ]
        assert all(cwd == entry for _cmd, cwd in fake_runner.calls)

    @pytest.mark.unit
    def test_clone_failure_raises_and_leaves_nothing(self, settings):
        runner = FakeRunner({("git", "clone"): (128, "", "Remote branch nope not found")})
        cache = CacheManager(settings, runner=runner)
        with pytest.raises(FetchError) as excinfo:
            cache.materialize(Dependency.SHAKAPACKER, _refspec(ref="nope"))
        assert excinfo.value.repository == "shakacode/shakapacker"
        assert excinfo.value.ref == "nope"
        assert list(settings.cache_dir.iterdir()) == []

    @pytest.mark.unit
    def test_fetch_failure_raises(self, settings):
        runner = FakeRunner({("git", "fetch"): (1, "", "couldn't find remote ref")})
        _make_entry(settings.cache_dir, "shakacode-shakapacker-main")
        with pytest.raises(FetchError, match="git fetch failed"):
            CacheManager(settings, runner=runner).materialize(Dependency.SHAKAPACKER, _refspec())

    @pytest.mark.unit
    def test_dry_run_runs_no_git(self, settings, fake_runner):
        cache = CacheManager(settings, dry_run=True, runner=fake_runner)
        path = cache.materialize(Dependency.SHAKAPACKER, _refspec())
        assert path == settings.cache_dir / "shakacode-shakapacker-main"
        assert fake_runner.calls == []
        assert not settings.cache_dir.exists()

    @pytest.mark.unit
    def test_missing_ref_is_resolved_first(self, settings):
        runner = FakeRunner({("git", "ls-remote"): (0, "ref: refs/heads/master\tHEAD", "")})
        cache = CacheManager(settings, dry_run=True, runner=runner)
        path = cache.materialize(Dependency.SHAKAPACKER, RefSpec(repository="shakacode/shakapacker"))
        assert path.name == "shakacode-shakapacker-master"


# ---------------------------------------------------------------------------
# Sizing and listing
# ---------------------------------------------------------------------------

class TestDirectorySize:
    @pytest.mark.unit
    def test_sums_regular_files(self, tmp_path):
        (tmp_path / "a").write_bytes(b"x" * 100)
        (tmp_path / "sub").mkdir()
        (tmp_path / "sub" / "b").write_bytes(b"y" * 50)
        assert directory_size(tmp_path) == 150

    @pytest.mark.unit
    def test_skips_symlinks(self, tmp_path):
        target = tmp_path / "outside"
        target.mkdir()
        (target / "big").write_bytes(b"x" * 1000)
        root = tmp_path / "root"
        root.mkdir()
        (root / "small").write_bytes(b"x" * 10)
        os.symlink(target, root / "linked-dir")
        os.symlink(target / "big", root / "linked-file")
        assert directory_size(root) == 10

    @pytest.mark.unit
    def test_unreadable_file_counts_as_zero(self, tmp_path):
        (tmp_path / "ok").write_bytes(b"x" * 10)
        (tmp_path / "denied").write_bytes(b"x" * 99)
        real_lstat = os.lstat

        def fake_lstat(path, *args, **kwargs):
            if str(path).endswith("denied"):
                raise PermissionError(13, "Permission denied", str(path))
            return real_lstat(path, *args, **kwargs)

        with patch("swap_deps.sources.cache.os.lstat", side_effect=fake_lstat):
            assert directory_size(tmp_path) == 10

    @pytest.mark.unit
    def test_vanished_file_counts_as_zero(self, tmp_path):
        (tmp_path / "gone").write_bytes(b"x" * 10)
        with patch("swap_deps.sources.cache.os.lstat", side_effect=FileNotFoundError):
            assert directory_size(tmp_path) == 0


class TestInfo:
    @pytest.mark.unit
    def test_missing_cache_dir(self, settings):
        info = CacheManager(settings).info()
        assert info.location == settings.cache_dir
        assert info.entry_count == 0
        assert info.total_size == 0

    @pytest.mark.unit
    def test_excludes_watch_logs_and_temp_dirs(self, settings):
        _make_entry(settings.cache_dir, "shakacode-shakapacker-main", size=100)
        _make_entry(settings.cache_dir, "shakacode-react_on_rails-v1", size=20)
        (settings.cache_dir / "watch_logs").mkdir()
        (settings.cache_dir / "watch_logs" / "shakapacker.log").write_text("log" * 100)
        (settings.cache_dir / ".tmp-x-1234").mkdir()
        (settings.cache_dir / "watch_pids.json").write_text("{}")

        info = CacheManager(settings).info()

        assert [e.name for e in info.entries] == [
            "shakacode-react_on_rails-v1",
            "shakacode-shakapacker-main",
        ]
        assert info.total_size == 120


# ---------------------------------------------------------------------------
# clean
# ---------------------------------------------------------------------------

class TestClean:
    @pytest.fixture
    def populated(self, settings) -> CacheManager:
        for name in (
            "shakacode-shakapacker-main",
            "myfork-shakapacker-feature-x",
            "shakacode-react_on_rails-main",
            "shakacode-react-on-rails-v14",
            "someorg-test-shakapacker-clone-main",
        ):
            _make_entry(settings.cache_dir, name)
        (settings.cache_dir / "watch_logs").mkdir()
        return CacheManager(settings)

    @pytest.mark.unit
    def test_anchored_match(self, populated, settings):
        removed = populated.clean("shakapacker")
        assert sorted(e.name for e in removed) == [
            "myfork-shakapacker-feature-x",
            "shakacode-shakapacker-main",
        ]
        assert (settings.cache_dir / "someorg-test-shakapacker-clone-main").is_dir()

    @pytest.mark.unit
    def test_underscore_and_hyphen_forms(self, populated):
        removed = populated.clean("react_on_rails")
        assert sorted(e.name for e in removed) == [
            "shakacode-react-on-rails-v14",
            "shakacode-react_on_rails-main",
        ]

    @pytest.mark.unit
    def test_clean_all_keeps_watch_logs(self, populated, settings):
        removed = populated.clean()
        assert len(removed) == 5
        assert [p.name for p in settings.cache_dir.iterdir()] == ["watch_logs"]

    @pytest.mark.unit
    def test_dry_run_lists_only(self, populated, settings):
        dry = CacheManager(settings, dry_run=True)
        removed = dry.clean("shakapacker")
        assert len(removed) == 2
        assert (settings.cache_dir / "shakacode-shakapacker-main").is_dir()

    @pytest.mark.unit
    def test_reports_sizes(self, populated):
        removed = populated.clean("shakapacker")
        assert all(e.size_bytes == 10 for e in removed)

    @pytest.mark.unit
    @pytest.mark.parametrize("name", ["shaka packer", "../etc", "a*", ""])
    def test_invalid_name(self, populated, name):
        with pytest.raises(ValidationError, match="Invalid dependency name"):
            populated.clean(name)

    @pytest.mark.unit
    def test_matches_recorded_repository_with_hyphenated_org(self, settings):
        mine = _make_entry(settings.cache_dir, "my-org-shakapacker-main")
        other = _make_entry(settings.cache_dir, "test-shakapacker-clone-main")
        save_json({"repository": "my-org/shakapacker", "ref": "main"}, mine / ".git" / METADATA_FILENAME)
        save_json(
            {"repository": "test-shakapacker/clone", "ref": "main"}, other / ".git" / METADATA_FILENAME
        )

        removed = CacheManager(settings).clean("shakapacker")

        assert [e.name for e in removed] == ["my-org-shakapacker-main"]
        assert not mine.exists()
        assert other.is_dir()

    @pytest.mark.unit
    def test_recorded_repository_normalises_separators(self, settings):
        entry = _make_entry(settings.cache_dir, "my-org-react-on-rails-v14")
        save_json({"repository": "my-org/react-on-rails", "ref": "v14"}, entry / ".git" / METADATA_FILENAME)

        removed = CacheManager(settings, dry_run=True).clean("react_on_rails")

        assert [e.repository for e in removed] == ["my-org/react-on-rails"]


# ---------------------------------------------------------------------------
# Real git
# ---------------------------------------------------------------------------

class TestMaterializeGit:
    @pytest.mark.integration
    def test_clone_branch(self, settings, tmp_git_remote):
        cache = CacheManager(settings)
        path = cache.materialize(Dependency.SHAKAPACKER, _refspec(ref="feature/hmr"))
        assert path == settings.cache_dir / "shakacode-shakapacker-feature-hmr"
        assert (path / "hmr.js").is_file()
        entry = cache.entries()[0]
        assert entry.repository == "shakacode/shakapacker"
        assert entry.ref == "feature/hmr"

    @pytest.mark.integration
    def test_clone_tag(self, settings, tmp_git_remote):
        path = CacheManager(settings).materialize(
            Dependency.SHAKAPACKER, _refspec(ref="v1.0.0", kind=RefKind.TAG)
        )
        assert (path / "package.json").is_file()
        assert not (path / "hmr.js").exists()

    @pytest.mark.integration
    def test_default_branch_detection(self, settings, tmp_git_remote):
        cache = CacheManager(settings)
        assert cache.resolve_default_branch("shakacode/shakapacker") == "main"

    @pytest.mark.integration
    def test_second_materialize_refreshes(self, settings, tmp_git_remote, tmp_path):
        cache = CacheManager(settings)
        path = cache.materialize(Dependency.SHAKAPACKER, _refspec())
        assert not (path / "new.txt").exists()

        commit_to_remote(tmp_git_remote, tmp_path, "new.txt", "fresh\n")
        again = cache.materialize(Dependency.SHAKAPACKER, _refspec())

        assert again == path
        assert (path / "new.txt").read_text() == "fresh\n"
        assert len(cache.entries()) == 1

    @pytest.mark.integration
    def test_unknown_repository(self, settings, tmp_git_remote):
        with pytest.raises(FetchError):
            CacheManager(settings).materialize(
                Dependency.REACT_ON_RAILS, _refspec("shakacode/react_on_rails")
            )
        leftovers = [p for p in settings.cache_dir.iterdir()] if settings.cache_dir.exists() else []
        assert leftovers == []

    @pytest.mark.integration
    def test_clone_is_a_git_checkout(self, settings, tmp_git_remote):
        path = CacheManager(settings).materialize(Dependency.SHAKAPACKER, _refspec())
        head = subprocess.run(
            ["git", "rev-parse", "--abbrev-ref", "HEAD"],
            cwd=path, capture_output=True, text=True, check=True,
        ).stdout.strip()
        assert head == "main"
