from __future__ import annotations

import os
from pathlib import Path

import pytest
from git import Repo

from company_sync.config_schema import GitConfig
from company_sync.credentials import ASKPASS_TOKEN_ENV
from company_sync.gateway import (
    LocalRepositoryError,
    NotARepositoryError,
    PushError,
    RebaseConflictError,
    RemoteOperationError,
    build_git_environment,
    init_repository,
    is_network_error,
    is_repository,
    open_repository,
    parse_porcelain_status,
    resolve_binary,
)

from conftest import SESSION_COOKIE, clone_workspace, seed_remote


def open_ws(path: Path, cookies=()):
    return open_repository(path, config=GitConfig(), cookies=cookies)


def test_parse_porcelain_status_kinds():
    output = "\0".join([
        "UU both.txt",
        "?? new.txt",
        "M  staged.txt",
        " M unstaged.txt",
        "R  renamed.txt",
        "old-name.txt",
        "",
    ])

    status = parse_porcelain_status(output)

    assert status.conflicted == ["both.txt"]
    assert status.untracked == ["new.txt"]
    assert status.staged == ["staged.txt", "renamed.txt"]
    assert status.unstaged == ["unstaged.txt"]
    renamed = [e for e in status.entries if e.path == "renamed.txt"][0]
    assert renamed.orig_path == "old-name.txt"
    assert status.has_changes is True


def test_parse_porcelain_status_empty():
    assert parse_porcelain_status("").has_changes is False


def test_build_git_environment_with_runtime(tmp_path):
    config = GitConfig(runtime_dir=str(tmp_path))
    askpass = tmp_path / "askpass.sh"

    env = build_git_environment(config, token="tok", askpass=askpass)

    assert env["GIT_ASKPASS"] == str(askpass)
    assert env[ASKPASS_TOKEN_ENV] == "tok"
    assert env["GIT_TERMINAL_PROMPT"] == "0"
    assert env["GIT_EXEC_PATH"] == str(tmp_path / "libexec" / "git-core")
    assert env["GIT_TEMPLATE_DIR"] == str(tmp_path / "share" / "git-core" / "templates")


def test_build_git_environment_system_git(tmp_path):
    env = build_git_environment(GitConfig(), token="", askpass=tmp_path / "a.sh")
    assert "GIT_EXEC_PATH" not in env
    assert "GIT_TEMPLATE_DIR" not in env


def test_resolve_binary(tmp_path):
    assert resolve_binary(GitConfig()) == "git"
    assert resolve_binary(GitConfig(binary="/opt/git/bin/git")) == "/opt/git/bin/git"
    bundled = resolve_binary(GitConfig(runtime_dir=str(tmp_path)))
    assert Path(bundled).parent == tmp_path / "bin"


@pytest.mark.parametrize(
    "text,expected",
    [
        ("fatal: unable to access 'https://x/': Could not resolve host: x", True),
        ("fatal: Authentication failed for 'https://x/'", True),
        ("fatal: '/tmp/nope' does not appear to be a git repository", True),
        ("error: pathspec 'foo' did not match any file(s) known to git", False),
    ],
)
def test_is_network_error(text, expected):
    assert is_network_error(text) is expected


def test_open_repository_rejects_plain_directory(tmp_path):
    with pytest.raises(NotARepositoryError):
        open_ws(tmp_path)


def test_open_repository_rejects_subdirectory(workspace):
    sub = workspace / "sub"
    sub.mkdir()
    assert is_repository(workspace) is True
    assert is_repository(sub) is False


def test_handle_carries_token_in_environment(workspace):
    handle = open_ws(workspace, cookies=[SESSION_COOKIE])
    assert handle.env[ASKPASS_TOKEN_ENV] == "tok123"
    assert Path(handle.env["GIT_ASKPASS"]).exists()


def test_commit_status_and_blob(workspace):
    handle = open_ws(workspace)
    first = handle.rev_parse_head()
    (workspace / "a.txt").write_bytes(b"\x00binary\r\n")

    assert handle.status().untracked == ["a.txt"]
    handle.add_all()
    assert handle.status().staged == ["a.txt"]
    handle.commit("add a")

    assert handle.rev_parse_head() != first
    assert handle.status().has_changes is False
    assert handle.show_blob("HEAD", "a.txt") == b"\x00binary\r\n"
    with pytest.raises(LocalRepositoryError):
        handle.show_blob("HEAD", "missing.txt")


def test_commits_ahead(workspace):
    handle = open_ws(workspace)
    assert handle.commits_ahead("origin/main") == 0
    (workspace / "a.txt").write_text("a\n")
    handle.add_all()
    handle.commit("a")
    assert handle.commits_ahead("origin/main") == 1
    assert handle.commits_ahead("origin/does-not-exist") == 2


def test_local_hooks_are_disabled(workspace):
    hook = Path(Repo(workspace).git_dir) / "hooks" / "pre-commit"
    hook.write_text("#!/bin/sh\nexit 1\n")
    hook.chmod(0o755)
    handle = open_ws(workspace)
    (workspace / "a.txt").write_text("a\n")
    handle.add_all()

    handle.commit("hooks do not run")

    assert Repo(workspace).head.commit.message.strip() == "hooks do not run"


def test_remote_management(workspace, tmp_path):
    handle = open_ws(workspace)
    assert "origin" in handle.list_remotes()

    handle.set_remote("origin", "https://server.test/git/acme.git")

    assert handle.remote_url("origin") == "https://server.test/git/acme.git"
    assert handle.remote_url("upstream") is None


def test_ls_remote_heads(workspace):
    assert open_ws(workspace).ls_remote_heads("origin") == ["main"]


def test_fetch_from_missing_remote_is_remote_error(workspace, tmp_path):
    handle = open_ws(workspace)
    handle.set_remote("origin", str(tmp_path / "nowhere.git"))
    with pytest.raises(RemoteOperationError):
        handle.fetch("origin")


def test_pull_rebase_reports_conflicts(tmp_path):
    remote = seed_remote(tmp_path / "remote.git", {"f.txt": "base\n"})
    a = clone_workspace(remote, tmp_path / "a")
    b = clone_workspace(remote, tmp_path / "b")

    (b / "f.txt").write_text("b\n")
    Repo(b).git.commit("-am", "b")
    Repo(b).git.push("origin", "main")

    handle = open_ws(a)
    (a / "f.txt").write_text("a\n")
    handle.add_all()
    handle.commit("a")

    with pytest.raises(RebaseConflictError) as excinfo:
        handle.pull_rebase("origin", "main")

    assert excinfo.value.conflict_files == ["f.txt"]
    assert handle.rebase_in_progress() is True

    handle.resolve_with_upstream(["f.txt"])
    assert (a / "f.txt").read_text() == "b\n"
    handle.rebase_abort()
    assert handle.rebase_in_progress() is False


def test_resolve_with_upstream_removes_path_deleted_upstream(tmp_path):
    remote = seed_remote(tmp_path / "remote.git", {"f.txt": "base\n", "keep.txt": "k\n"})
    a = clone_workspace(remote, tmp_path / "a")
    b = clone_workspace(remote, tmp_path / "b")

    Repo(b).git.rm("f.txt")
    Repo(b).git.commit("-m", "remove f")
    Repo(b).git.push("origin", "main")

    handle = open_ws(a)
    (a / "f.txt").write_text("edited\n")
    handle.add_all()
    handle.commit("edit f")

    with pytest.raises(RebaseConflictError):
        handle.pull_rebase("origin", "main")
    handle.resolve_with_upstream(["f.txt"])

    assert not (a / "f.txt").exists()
    assert handle.status().conflicted == []
    handle.rebase_abort()


def test_push_failure_raises_push_error(workspace, tmp_path):
    handle = open_ws(workspace)
    handle.set_remote("origin", str(tmp_path / "nowhere.git"))
    with pytest.raises(PushError) as excinfo:
        handle.push("origin", "main")
    assert excinfo.value.branch == "main"
    assert excinfo.value.output


def test_init_repository_creates_and_opens(tmp_path):
    target = tmp_path / "new"
    handle = init_repository(target, config=GitConfig())

    assert is_repository(target)
    assert handle.has_commits() is False
    assert handle.rev_parse_head() is None
    handle.point_head_at("main")
    assert handle.current_branch() == "main"


def test_missing_binary_is_local_error(workspace):
    handle = open_repository(workspace, config=GitConfig(binary=os.path.join("/nonexistent", "git")))
    with pytest.raises(LocalRepositoryError):
        handle.status()
