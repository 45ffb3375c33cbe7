"""Configured access to a local workspace repository.

Every git invocation goes through :class:`RepositoryHandle`, which runs the
configured (possibly bundled) git binary via GitPython with:

- local hooks and any persisted credential helper disabled,
- ``GIT_ASKPASS`` pointing at the askpass helper and the session token in
  ``COMPANY_SYNC_GIT_TOKEN``,
- terminal prompts and editors disabled so git fails fast instead of hanging.

Failures are raised as :class:`GatewayError` subclasses so callers can tell a
network/remote problem from a local one, and an in-progress conflicted rebase
from both.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Union

import git
from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo
from git.exc import GitCommandNotFound

from .config_schema import GitConfig
from .credentials import ASKPASS_TOKEN_ENV, extract_session_token, resolve_askpass_script
from .observability import log_debug


# Lowercased fragments of git stderr that mean "could not talk to the remote"
NETWORK_ERROR_TOKENS = (
    "could not read from remote repository",
    "could not resolve hostname",
    "could not resolve host",
    "unable to access",
    "authentication failed",
    "permission denied (publickey",
    "network is unreachable",
    "failed to connect to",
    "connection refused",
    "connection timed out",
    "operation timed out",
    "could not read username",
    "the requested url returned error",
    "does not appear to be a git repository",
    "repository not found",
)

# Porcelain XY codes of unmerged paths
CONFLICT_CODES = frozenset({"DD", "AU", "UD", "UA", "DU", "AA", "UU"})


class GatewayError(Exception):
    """Base exception for repository operations."""

    def __init__(self, message: str, *, output: str = ""):
        super().__init__(message)
        self.output = output


class NotARepositoryError(GatewayError):
    """The workspace path is not the root of a git working tree."""


class LocalRepositoryError(GatewayError):
    """A git command failed for a local reason (filesystem, index, refs)."""


class RemoteOperationError(GatewayError):
    """A git command failed while talking to the remote."""


class PushError(RemoteOperationError):
    """``git push`` did not succeed; ``output`` holds git's full stderr."""

    def __init__(self, message: str, *, remote: str, branch: str, output: str = ""):
        super().__init__(message, output=output)
        self.remote = remote
        self.branch = branch


class RebaseConflictError(GatewayError):
    """``pull --rebase`` stopped with unmerged paths."""

    def __init__(self, message: str, *, conflict_files: Sequence[str], output: str = ""):
        super().__init__(message, output=output)
        self.conflict_files = list(conflict_files)


@dataclass(frozen=True)
class StatusEntry:
    index: str
    worktree: str
    path: str
    orig_path: Optional[str] = None

    @property
    def code(self) -> str:
        return self.index + self.worktree

    @property
    def conflicted(self) -> bool:
        return self.code in CONFLICT_CODES

    @property
    def untracked(self) -> bool:
        return self.code == "??"

    @property
    def staged(self) -> bool:
        return not self.conflicted and not self.untracked and self.index not in (" ", "!")

    @property
    def unstaged(self) -> bool:
        return not self.conflicted and not self.untracked and self.worktree not in (" ", "!")


@dataclass
class RepositoryStatus:
    entries: List[StatusEntry] = field(default_factory=list)

    @property
    def conflicted(self) -> List[str]:
        return [e.path for e in self.entries if e.conflicted]

    @property
    def staged(self) -> List[str]:
        return [e.path for e in self.entries if e.staged]

    @property
    def unstaged(self) -> List[str]:
        return [e.path for e in self.entries if e.unstaged]

    @property
    def untracked(self) -> List[str]:
        return [e.path for e in self.entries if e.untracked]

    @property
    def has_changes(self) -> bool:
        return bool(self.entries)


def parse_porcelain_status(output: str) -> RepositoryStatus:
    """Parse ``git status --porcelain=v1 -z`` output."""
    entries: List[StatusEntry] = []
    records = output.split("\0")
    i = 0
    while i < len(records):
        record = records[i]
        i += 1
        if len(record) < 4:
            continue
        index, worktree, path = record[0], record[1], record[3:]
        orig_path = None
        # Renames and copies carry the source path as the next record
        if index in ("R", "C") and i < len(records):
            orig_path = records[i]
            i += 1
        if index == "!" and worktree == "!":
            continue
        entries.append(StatusEntry(index, worktree, path, orig_path))
    return RepositoryStatus(entries)


def _decode(value: Union[str, bytes, None]) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


def _error_text(error: GitCommandError) -> str:
    """stderr/stdout of a failed command without GitPython's decoration."""
    parts = []
    for raw in (error.stderr, error.stdout):
        text = _decode(raw).strip()
        for label in ("stderr: '", "stdout: '"):
            if text.startswith(label) and text.endswith("'"):
                text = text[len(label):-1]
        if text.strip():
            parts.append(text.strip())
    return "\n".join(parts) or str(error)


def is_network_error(text: str) -> bool:
    lowered = text.lower()
    return any(token in lowered for token in NETWORK_ERROR_TOKENS)


def resolve_binary(config: GitConfig) -> str:
    """Git executable: the bundled runtime's when configured, else ``config.binary``."""
    if config.runtime_dir and config.binary == "git":
        name = "git.exe" if os.name == "nt" else "git"
        return str(Path(config.runtime_dir).expanduser() / "bin" / name)
    return config.binary


def build_git_environment(
    config: GitConfig,
    *,
    token: str,
    askpass: Path,
) -> Dict[str, str]:
    """Environment overrides applied to every git invocation."""
    env = {
        "GIT_ASKPASS": str(askpass),
        ASKPASS_TOKEN_ENV: token,
        "GIT_TERMINAL_PROMPT": "0",
        "GCM_INTERACTIVE": "never",
        "GIT_EDITOR": "true",
    }
    if config.runtime_dir:
        runtime = Path(config.runtime_dir).expanduser()
        env["GIT_EXEC_PATH"] = str(runtime / "libexec" / "git-core")
        env["GIT_TEMPLATE_DIR"] = str(runtime / "share" / "git-core" / "templates")
    return env


def _base_args(binary: str) -> List[str]:
    return [
        binary,
        "-c", f"core.hooksPath={os.devnull}",
        "-c", "credential.helper=",
    ]


class RepositoryHandle:
    """A working tree plus the binary and environment used to drive it.

    Owned by a single sync invocation; not shared across threads.
    """

    def __init__(self, repo: Repo, *, binary: str, env: Dict[str, str]):
        self.repo = repo
        self.binary = binary
        self.env = dict(env)

    def __repr__(self) -> str:
        return f"RepositoryHandle({str(self.working_dir)!r})"

    @property
    def working_dir(self) -> Path:
        return Path(self.repo.working_tree_dir)

    @property
    def git_dir(self) -> Path:
        return Path(self.repo.git_dir)

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def run(self, *args: str, binary_output: bool = False) -> Union[str, bytes]:
        """Run ``git <args>`` in the working tree.

        Raises:
            RemoteOperationError: the failure output looks like a network/auth problem
            LocalRepositoryError: any other failure, including OS errors spawning git
        """
        command = _base_args(self.binary) + list(args)
        log_debug(f"GIT_OP_START: {' '.join(args[:3])}")
        try:
            output = self.repo.git.execute(
                command,
                env=self.env,
                stdout_as_string=not binary_output,
                strip_newline_in_stdout=not binary_output,
            )
        except GitCommandError as e:
            text = _error_text(e)
            log_debug(f"GIT_OP_FAIL: {' '.join(args[:3])}", status=e.status)
            if is_network_error(text):
                raise RemoteOperationError(f"git {args[0]} failed: {text}", output=text) from e
            raise LocalRepositoryError(f"git {args[0]} failed: {text}", output=text) from e
        except (GitCommandNotFound, OSError) as e:
            raise LocalRepositoryError(f"git {args[0]} could not run: {e}") from e
        log_debug(f"GIT_OP_END: {' '.join(args[:3])}")
        return output

    def _run_text(self, *args: str) -> str:
        return _decode(self.run(*args))

    # ------------------------------------------------------------------
    # Remotes
    # ------------------------------------------------------------------

    def list_remotes(self) -> Dict[str, str]:
        """Remote name -> fetch URL."""
        remotes: Dict[str, str] = {}
        for line in self._run_text("remote", "-v").splitlines():
            parts = line.split()
            if len(parts) >= 3 and parts[2] == "(fetch)":
                remotes[parts[0]] = parts[1]
        return remotes

    def remote_url(self, name: str) -> Optional[str]:
        return self.list_remotes().get(name)

    def add_remote(self, name: str, url: str) -> None:
        self.run("remote", "add", name, url)

    def remove_remote(self, name: str) -> None:
        self.run("remote", "remove", name)

    def set_remote(self, name: str, url: str) -> None:
        """Point ``name`` at ``url``, replacing any existing remote of that name."""
        if name in self.list_remotes():
            self.remove_remote(name)
        self.add_remote(name, url)

    def fetch(self, remote: str) -> None:
        self.run("fetch", remote)

    def ls_remote_heads(self, remote: str) -> List[str]:
        """Branch names the remote advertises."""
        heads = []
        for line in self._run_text("ls-remote", "--heads", remote).splitlines():
            _, _, ref = line.partition("\t")
            if ref.startswith("refs/heads/"):
                heads.append(ref[len("refs/heads/"):])
        return heads

    # ------------------------------------------------------------------
    # Index and commits
    # ------------------------------------------------------------------

    def add_all(self) -> None:
        self.run("add", "-A")

    def commit(self, message: str) -> None:
        self.run("commit", "-m", message)

    def status(self) -> RepositoryStatus:
        output = self.run(
            "status", "--porcelain=v1", "-z", "--untracked-files=all", binary_output=True
        )
        return parse_porcelain_status(_decode(output))

    def rev_parse_head(self) -> Optional[str]:
        """Commit id of HEAD, or None on an unborn branch."""
        try:
            return self._run_text("rev-parse", "--verify", "-q", "HEAD").strip() or None
        except LocalRepositoryError:
            return None

    def has_commits(self) -> bool:
        return self.rev_parse_head() is not None

    def commits_ahead(self, upstream_ref: str) -> int:
        """Number of commits on HEAD not contained in ``upstream_ref``.

        When ``upstream_ref`` does not exist every local commit counts.
        """
        if not self.has_commits():
            return 0
        try:
            self._run_text("rev-parse", "--verify", "-q", upstream_ref)
            spec = f"{upstream_ref}..HEAD"
        except LocalRepositoryError:
            spec = "HEAD"
        return int(self._run_text("rev-list", "--count", spec).strip() or 0)

    def current_branch(self) -> Optional[str]:
        try:
            return self._run_text("symbolic-ref", "--short", "-q", "HEAD").strip() or None
        except LocalRepositoryError:
            return None

    def point_head_at(self, branch: str) -> None:
        """Make HEAD refer to ``branch``; used to name an unborn branch."""
        self.run("symbolic-ref", "HEAD", f"refs/heads/{branch}")

    def checkout_new_branch(self, branch: str, start_point: str) -> None:
        self.run("checkout", "-b", branch, start_point)

    def checkout_path(self, ref: str, path: str) -> None:
        """Restore ``path`` in the working tree and index from ``ref``."""
        self.run("checkout", ref, "--", path)

    def show_blob(self, ref: str, path: str) -> bytes:
        """Exact bytes of ``path`` as stored in ``ref``.

        Raises LocalRepositoryError if the path does not exist in ``ref``.
        """
        data = self.run("cat-file", "blob", f"{ref}:{path}", binary_output=True)
        return data if isinstance(data, bytes) else data.encode("utf-8")

    def set_local_config(self, key: str, value: str) -> None:
        self.run("config", "--local", key, value)

    # ------------------------------------------------------------------
    # Rebase
    # ------------------------------------------------------------------

    def pull_rebase(self, remote: str, branch: str) -> None:
        """``git pull --rebase <remote> <branch>``.

        Raises:
            RebaseConflictError: the rebase stopped with unmerged paths
            GatewayError: any other failure (nothing left in conflict)
        """
        try:
            self.run("pull", "--rebase", remote, branch)
        except GatewayError as e:
            conflicted = self.status().conflicted
            if conflicted:
                raise RebaseConflictError(
                    f"Rebase onto {remote}/{branch} stopped with {len(conflicted)} conflict(s)",
                    conflict_files=conflicted,
                    output=e.output,
                ) from e
            raise

    def rebase_in_progress(self) -> bool:
        return (self.git_dir / "rebase-merge").exists() or (self.git_dir / "rebase-apply").exists()

    def rebase_continue(self) -> None:
        self.run("rebase", "--continue")

    def rebase_skip(self) -> None:
        self.run("rebase", "--skip")

    def rebase_abort(self) -> None:
        self.run("rebase", "--abort")

    def resolve_with_upstream(self, paths: Iterable[str]) -> None:
        """Resolve unmerged paths by taking the upstream side of the rebase.

        While rebasing, "ours" is the branch being rebased onto, i.e. the
        remote. A path the upstream side deleted is removed.
        """
        for path in paths:
            try:
                self.run("checkout", "--ours", "--", path)
                self.run("add", "--", path)
            except LocalRepositoryError:
                self.run("rm", "-f", "--ignore-unmatch", "--", path)

    # ------------------------------------------------------------------
    # Push
    # ------------------------------------------------------------------

    def push(self, remote: str, branch: str) -> None:
        """``git push <remote> <branch> --set-upstream``; raises PushError on failure."""
        try:
            self.run("push", remote, branch, "--set-upstream")
        except GatewayError as e:
            raise PushError(
                f"Push to {remote}/{branch} failed",
                remote=remote,
                branch=branch,
                output=e.output or str(e),
            ) from e


def _environment_for(config: GitConfig, cookies: Iterable[str]) -> Dict[str, str]:
    return build_git_environment(
        config,
        token=extract_session_token(cookies),
        askpass=resolve_askpass_script(),
    )


def is_repository(path: Path) -> bool:
    """True if ``path`` is the root of a non-bare git working tree."""
    try:
        repo = Repo(path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False
    return not repo.bare and Path(repo.working_tree_dir).resolve() == Path(path).resolve()


def open_repository(
    path: Path,
    *,
    config: GitConfig,
    cookies: Iterable[str] = (),
) -> RepositoryHandle:
    """Open the working tree at ``path``.

    Raises:
        NotARepositoryError: ``path`` is not the root of a git working tree
    """
    path = Path(path)
    if not is_repository(path):
        raise NotARepositoryError(f"Not a git repository: {path}")
    return RepositoryHandle(
        Repo(path),
        binary=resolve_binary(config),
        env=_environment_for(config, cookies),
    )


def init_repository(
    path: Path,
    *,
    config: GitConfig,
    cookies: Iterable[str] = (),
) -> RepositoryHandle:
    """``git init`` at ``path`` (created if missing) and open it."""
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    binary = resolve_binary(config)
    env = _environment_for(config, cookies)
    try:
        git.Git(str(path)).execute(_base_args(binary) + ["init"], env=env)
    except GitCommandError as e:
        raise LocalRepositoryError(f"git init failed: {_error_text(e)}") from e
    except (GitCommandNotFound, OSError) as e:
        raise LocalRepositoryError(f"git init could not run: {e}") from e
    return RepositoryHandle(Repo(path), binary=binary, env=env)
