"""Tests for the runtime functions and the command line."""

import os

import pytest

from athena.cli import EXIT_FAILURE, EXIT_OK, EXIT_PARTIAL, EXIT_USAGE, main
from athena.config import EngineSettings
from athena.engine.backup import RunStatus
from athena.errors import NotFoundError, RepositoryNotInitializedError
from athena.runtime import (
    init_repo,
    list_snapshots,
    run_backup,
    run_check,
    run_gc,
    run_prune,
    run_rebuild_index,
    run_restore,
    run_unlock,
)

from conftest import random_bytes, small_config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    monkeypatch.setenv("ATHENA_CACHE_DIR", "")
    monkeypatch.delenv("ATHENA_REPO", raising=False)
    monkeypatch.delenv("ATHENA_WORKERS", raising=False)
    monkeypatch.delenv("ATHENA_LOG_LEVEL", raising=False)


@pytest.fixture
def source_tree(tmp_path):
    src = tmp_path / "src"
    (src / "sub").mkdir(parents=True)
    (src / "empty_dir").mkdir()
    (src / "a.txt").write_bytes(b"alpha\n" * 1000)
    (src / "sub" / "b.bin").write_bytes(random_bytes(70_000, seed=1))
    (src / "sub" / "empty").write_bytes(b"")
    os.symlink("a.txt", src / "link")
    return src


@pytest.fixture
def initialized(repo_url):
    init_repo(repo_url, small_config(), settings=EngineSettings(cache_dir=None))
    return repo_url


class TestRuntime:
    def test_backup_and_restore(self, initialized, source_tree, tmp_path):
        result = run_backup(initialized, [str(source_tree)])
        assert result.status == RunStatus.SUCCESS
        paths = {f.path: f.kind for f in result.manifest.files}
        assert paths["src"] == "dir"
        assert paths["src/a.txt"] == "file"
        assert paths["src/sub/b.bin"] == "file"
        assert paths["src/link"] == "symlink"
        assert paths["src/empty_dir"] == "dir"

        dest = tmp_path / "restore"
        report = run_restore(initialized, str(dest))
        assert report.files_restored == 3
        assert (dest / "src" / "a.txt").read_bytes() == (source_tree / "a.txt").read_bytes()
        assert (dest / "src" / "sub" / "b.bin").read_bytes() == random_bytes(70_000, seed=1)
        assert (dest / "src" / "sub" / "empty").read_bytes() == b""
        assert (dest / "src" / "empty_dir").is_dir()
        assert os.readlink(dest / "src" / "link") == "a.txt"

    def test_empty_file_source(self, initialized, tmp_path):
        empty = tmp_path / "empty.log"
        empty.write_bytes(b"")
        result = run_backup(initialized, [str(empty)])

        assert result.status == RunStatus.SUCCESS
        assert result.skipped == []
        [entry] = result.manifest.files
        assert (entry.path, entry.size, entry.chunks) == ("empty.log", 0, ())

        dest = tmp_path / "restore"
        run_restore(initialized, str(dest))
        assert (dest / "empty.log").read_bytes() == b""

    def test_single_file_source(self, initialized, source_tree):
        result = run_backup(initialized, [str(source_tree / "a.txt")])
        assert [f.path for f in result.manifest.files] == ["a.txt"]

    def test_parent_defaults_to_latest_of_same_sources(self, initialized, source_tree):
        first = run_backup(initialized, [str(source_tree)])
        second = run_backup(initialized, [str(source_tree)])
        other = run_backup(initialized, [str(source_tree / "sub")])

        assert first.manifest.parent_snapshot_id is None
        assert second.manifest.parent_snapshot_id == first.snapshot_id
        assert other.manifest.parent_snapshot_id is None
        assert second.chunks_new == 0

    def test_missing_source(self, initialized, tmp_path):
        with pytest.raises(NotFoundError, match="Specified file or directory does not exist"):
            run_backup(initialized, [str(tmp_path / "nope")])

    def test_uninitialized_repository(self, repo_url, source_tree):
        with pytest.raises(RepositoryNotInitializedError):
            run_backup(repo_url, [str(source_tree)])

    def test_restore_without_snapshots(self, initialized, tmp_path):
        with pytest.raises(NotFoundError, match="No snapshots"):
            run_restore(initialized, str(tmp_path / "out"))

    def test_restore_single_path(self, initialized, source_tree, tmp_path):
        result = run_backup(initialized, [str(source_tree)])
        run_restore(initialized, str(tmp_path / "out"), result.snapshot_id[:8], paths=["src/sub"])
        assert (tmp_path / "out" / "src" / "sub" / "b.bin").exists()
        assert not (tmp_path / "out" / "src" / "a.txt").exists()

    def test_prune_gc_check(self, initialized, source_tree):
        first = run_backup(initialized, [str(source_tree)])
        (source_tree / "new.bin").write_bytes(random_bytes(30_000, seed=2))
        second = run_backup(initialized, [str(source_tree)])

        run_prune(initialized, first.snapshot_id)
        gc_report = run_gc(initialized)
        assert gc_report.missing == []
        assert [s.snapshot_id for s in list_snapshots(initialized)] == [second.snapshot_id]
        assert run_check(initialized).ok
        assert run_rebuild_index(initialized) > 0
        assert run_unlock(initialized) == 0


def run_cli(*argv):
    return main(list(argv))


class TestCli:
    def test_full_workflow(self, repo_url, source_tree, tmp_path, capsys):
        assert run_cli("init", "-r", repo_url) == EXIT_OK
        assert "Initialized repository" in capsys.readouterr().out

        assert run_cli("backup", "-r", repo_url, str(source_tree)) == EXIT_OK
        out = capsys.readouterr().out
        assert "created with" in out

        assert run_cli("snapshots", "-r", repo_url) == EXIT_OK
        snapshot_id = list_snapshots(repo_url, EngineSettings())[0].snapshot_id
        assert snapshot_id[:8] in capsys.readouterr().out

        dest = tmp_path / "restored"
        assert run_cli("restore", "-r", repo_url, str(dest), "--yes") == EXIT_OK
        assert (dest / "src" / "a.txt").read_bytes() == (source_tree / "a.txt").read_bytes()

        assert run_cli("check", "-r", repo_url) == EXIT_OK
        assert "No errors found" in capsys.readouterr().out
        assert run_cli("prune", "-r", repo_url, snapshot_id[:8]) == EXIT_OK
        assert run_cli("gc", "-r", repo_url) == EXIT_OK
        assert run_cli("rebuild-index", "-r", repo_url) == EXIT_OK
        assert run_cli("unlock", "-r", repo_url) == EXIT_OK

    def test_repo_from_environment(self, repo_url, monkeypatch, capsys):
        monkeypatch.setenv("ATHENA_REPO", repo_url)
        assert run_cli("init") == EXIT_OK
        assert run_cli("snapshots") == EXIT_OK
        assert "No snapshots found." in capsys.readouterr().out

    def test_missing_repository_url(self, capsys):
        assert run_cli("snapshots") == EXIT_USAGE
        assert "ATHENA_REPO" in capsys.readouterr().err

    def test_missing_source(self, repo_url, tmp_path, capsys):
        run_cli("init", "-r", repo_url)
        assert run_cli("backup", "-r", repo_url, str(tmp_path / "missing")) == EXIT_FAILURE
        assert "Specified file or directory does not exist" in capsys.readouterr().err

    def test_init_twice_is_config_error(self, repo_url):
        assert run_cli("init", "-r", repo_url) == EXIT_OK
        assert run_cli("init", "-r", repo_url) == EXIT_USAGE

    def test_partial_backup_exit_code(self, repo_url, source_tree, capsys):
        os.mkfifo(source_tree / "pipe")
        run_cli("init", "-r", repo_url)
        assert run_cli("backup", "-r", repo_url, str(source_tree)) == EXIT_PARTIAL
        assert "Skipped src/pipe" in capsys.readouterr().err

    def test_restore_prompt_declined(self, repo_url, source_tree, tmp_path, monkeypatch, capsys):
        run_cli("init", "-r", repo_url)
        run_cli("backup", "-r", repo_url, str(source_tree))
        prompts = []

        def fake_input(prompt):
            prompts.append(prompt)
            return "n"

        monkeypatch.setattr("builtins.input", fake_input)
        dest = tmp_path / "nowhere"
        assert run_cli("restore", "-r", repo_url, str(dest)) == EXIT_FAILURE
        assert "Create it? [y/N]" in prompts[0]
        assert not dest.exists()

    def test_restore_prompt_accepted(self, repo_url, source_tree, tmp_path, monkeypatch):
        run_cli("init", "-r", repo_url)
        run_cli("backup", "-r", repo_url, str(source_tree))
        monkeypatch.setattr("builtins.input", lambda prompt: "y")
        dest = tmp_path / "created"
        assert run_cli("restore", "-r", repo_url, str(dest)) == EXIT_OK
        assert (dest / "src" / "a.txt").exists()

    def test_unknown_snapshot(self, repo_url, tmp_path, capsys):
        run_cli("init", "-r", repo_url)
        assert run_cli("restore", "-r", repo_url, str(tmp_path), "-s", "deadbeef") == EXIT_FAILURE
        assert "Snapshot not found" in capsys.readouterr().err

    def test_invalid_workers_setting(self, repo_url, monkeypatch, capsys):
        monkeypatch.setenv("ATHENA_WORKERS", "many")
        assert run_cli("snapshots", "-r", repo_url) == EXIT_USAGE
        assert "ATHENA_WORKERS" in capsys.readouterr().err

    def test_usage_error(self):
        with pytest.raises(SystemExit) as exc_info:
            run_cli("frobnicate")
        assert exc_info.value.code == 2
