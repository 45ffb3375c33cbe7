from __future__ import annotations

import json
import os
import shutil
import sys
from pathlib import Path
from typing import Callable, Dict, List, Optional

import pytest


def pytest_sessionstart(session):  # type: ignore[override]
    root = Path(__file__).resolve().parents[1]
    src = root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))
    # Ensure console scripts load in editable style as well
    os.environ.setdefault("PYTHONPATH", str(src))
    # Tests never write log files
    os.environ["COMPANY_SYNC_LOG_DISABLE_FILE"] = "1"


@pytest.fixture(autouse=True)
def isolated_env(tmp_path_factory, monkeypatch):
    """Fresh HOME, fixed git identity, no leaking company-sync settings."""
    home = tmp_path_factory.mktemp("home")
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    for var in ("GIT_AUTHOR_NAME", "GIT_COMMITTER_NAME"):
        monkeypatch.setenv(var, "Test User")
    for var in ("GIT_AUTHOR_EMAIL", "GIT_COMMITTER_EMAIL"):
        monkeypatch.setenv(var, "test@example.com")
    for var in list(os.environ):
        if var.startswith("COMPANY_SYNC_") and var != "COMPANY_SYNC_LOG_DISABLE_FILE":
            monkeypatch.delenv(var, raising=False)

    from company_sync.config_loader import clear_config_cache

    clear_config_cache()
    yield home
    clear_config_cache()


# ---------------------------------------------------------------------------
# Git fixtures
# ---------------------------------------------------------------------------

def seed_remote(remote_path: Path, files: Optional[Dict[str, str]] = None) -> Path:
    """Create a bare remote whose ``main`` branch holds ``files``."""
    from git import Repo

    remote_path.mkdir(parents=True, exist_ok=True)
    bare = Repo.init(remote_path, bare=True)
    bare.git.symbolic_ref("HEAD", "refs/heads/main")

    workdir = remote_path.parent / f"{remote_path.name}.seed"
    repo = Repo.init(workdir)
    files = files or {"README.md": "seed\n"}
    for rel, content in files.items():
        target = workdir / rel
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content)
    repo.git.add("-A")
    repo.git.commit("-m", "seed")
    repo.git.branch("-M", "main")
    repo.create_remote("origin", remote_path.as_posix())
    repo.git.push("origin", "main:main")
    shutil.rmtree(workdir)
    return remote_path


def clone_workspace(remote_path: Path, dest: Path) -> Path:
    from git import Repo

    Repo.clone_from(remote_path.as_posix(), dest, branch="main")
    return dest


def remote_file(remote_path: Path, rel: str, branch: str = "main") -> str:
    from git import Repo

    return Repo(remote_path).git.show(f"{branch}:{rel}")


def remote_files(remote_path: Path, branch: str = "main") -> List[str]:
    from git import Repo

    return Repo(remote_path).git.ls_tree("-r", "--name-only", branch).splitlines()


@pytest.fixture
def remote(tmp_path):
    return seed_remote(tmp_path / "remote.git")


@pytest.fixture
def workspace(tmp_path, remote):
    return clone_workspace(remote, tmp_path / "workspace")


# ---------------------------------------------------------------------------
# API fixtures
# ---------------------------------------------------------------------------

SERVER_URL = "http://server.test"
SESSION_COOKIE = "better-auth.session_token=tok123.signature; Path=/; HttpOnly"


class FakeServer:
    """Routes for httpx.MockTransport, recording every request."""

    def __init__(self):
        self.departments: List[dict] = []
        self.user: Optional[dict] = {"email": "alice@example.com", "name": "Alice"}
        self.https_url: Optional[str] = "https://server.test/git/acme.git"
        self.requests: list = []
        self.fail_paths: Dict[str, int] = {}

    def handler(self, request):
        import httpx

        self.requests.append(request)
        path = request.url.path
        if path in self.fail_paths:
            return httpx.Response(self.fail_paths[path], json={"success": False, "error": "boom"})
        if path.endswith("/departments"):
            return httpx.Response(200, json={"success": True, "data": self.departments})
        if path == "/api/me":
            if self.user is None:
                return httpx.Response(401, json={"success": False, "error": "Unauthorized"})
            return httpx.Response(200, json={"success": True, "data": self.user})
        if path == "/api/git/repos" and request.method == "POST":
            body = json.loads(request.content)
            return httpx.Response(
                200,
                json={"success": True, "data": {"companyId": body["companyId"], "httpsUrl": self.https_url}},
            )
        if path.startswith("/api/git/repos/"):
            return httpx.Response(200, json={"success": True, "data": {"httpsUrl": self.https_url}})
        return httpx.Response(404, json={"success": False, "error": "Not found"})

    def paths(self) -> List[str]:
        return [r.url.path for r in self.requests]


@pytest.fixture
def fake_server():
    return FakeServer()


@pytest.fixture
def config():
    from company_sync.config_schema import CompanySyncConfig, ServerConfig

    return CompanySyncConfig(server=ServerConfig(url=SERVER_URL))


@pytest.fixture
def make_client(config, fake_server) -> Callable:
    import httpx

    from company_sync.api_client import CollaboratorClient

    def factory(cookies=(SESSION_COOKIE,)):
        return CollaboratorClient(config.server, cookies, transport=httpx.MockTransport(fake_server.handler))

    return factory
