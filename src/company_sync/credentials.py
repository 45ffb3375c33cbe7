"""Session credentials for git over HTTPS.

The company server authenticates git with the same session token the desktop
client signs in with. The token is never written to disk: git is pointed at a
tiny askpass script (written once, reused) that only echoes an environment
variable, and the token is placed in that variable when git is spawned.

The session cookie jar itself is stored like other user credentials, in
``~/.company-sync/credentials.toml``::

    [session]
    cookies = ["better-auth.session_token=abc.def; Path=/; HttpOnly"]
"""

from __future__ import annotations

import os
import re
import stat
import sys
import tempfile
import threading
import warnings
from pathlib import Path
from typing import Iterable, List, Optional
from urllib.parse import unquote

import tomlkit
from pydantic import BaseModel, Field

if sys.version_info >= (3, 11):
    import tomllib
else:
    import tomli as tomllib

from .fs import atomic_write_text


ASKPASS_TOKEN_ENV = "COMPANY_SYNC_GIT_TOKEN"
SESSION_COOKIE_ENV = "COMPANY_SYNC_SESSION_COOKIE"
ASKPASS_DIR_NAME = "company-sync-git-helpers"

CREDENTIALS_FILENAME = "credentials.toml"
USER_CONFIG_DIR = ".company-sync"

_SESSION_COOKIE_RE = re.compile(r"(?:__Secure-)?better-auth\.session_token=([^;]+)")

_askpass_path: Optional[Path] = None
_askpass_lock = threading.Lock()


class SessionCredentials(BaseModel):
    """Signed-in session state."""

    cookies: List[str] = Field(
        default_factory=list,
        description="Raw cookie strings returned by the server at sign-in",
    )


class Credentials(BaseModel):
    """All company-sync credentials."""

    session: SessionCredentials = Field(default_factory=SessionCredentials)


# ---------------------------------------------------------------------------
# Askpass helper
# ---------------------------------------------------------------------------

def _askpass_script_body() -> tuple[str, str]:
    if os.name == "nt":
        return "git-askpass.bat", f"@echo %{ASKPASS_TOKEN_ENV}%\r\n"
    return "git-askpass.sh", f'#!/bin/sh\necho "${ASKPASS_TOKEN_ENV}"\n'


def resolve_askpass_script(directory: Optional[Path] = None) -> Path:
    """Return the path of the askpass helper, writing it on first use.

    The default location is a fixed directory under the system temp dir
    (no spaces, so git can execute it on every platform). The script holds
    no secret; it prints ``$COMPANY_SYNC_GIT_TOKEN``.
    """
    global _askpass_path

    name, body = _askpass_script_body()
    with _askpass_lock:
        if directory is None and _askpass_path is not None and _askpass_path.exists():
            return _askpass_path

        target_dir = directory or Path(tempfile.gettempdir()) / ASKPASS_DIR_NAME
        target_dir.mkdir(parents=True, exist_ok=True)
        script = target_dir / name

        try:
            current = script.read_text(encoding="utf-8")
        except FileNotFoundError:
            current = None
        if current != body:
            atomic_write_text(script, body)
        if os.name != "nt":
            script.chmod(0o755)

        if directory is None:
            _askpass_path = script
        return script


# ---------------------------------------------------------------------------
# Session token
# ---------------------------------------------------------------------------

def extract_session_token(cookies: Iterable[str]) -> str:
    """Pull the session token out of a cookie jar.

    Session cookies are signed as ``token.signature``; only the token part is
    a credential. Returns ``""`` when no session cookie is present.
    """
    for cookie in cookies:
        match = _SESSION_COOKIE_RE.search(cookie)
        if not match:
            continue
        token = unquote(match.group(1))
        dot = token.find(".")
        if dot > 0:
            token = token[:dot]
        return token
    return ""


def cookie_header(cookies: Iterable[str]) -> str:
    """Join cookies into a ``Cookie`` request header value (name=value pairs only)."""
    pairs = []
    for cookie in cookies:
        pair = cookie.split(";", 1)[0].strip()
        if pair:
            pairs.append(pair)
    return "; ".join(pairs)


# ---------------------------------------------------------------------------
# Cookie jar persistence
# ---------------------------------------------------------------------------

def _get_user_credentials_path() -> Path:
    return Path.home() / USER_CONFIG_DIR / CREDENTIALS_FILENAME


def _secure_file_permissions(path: Path) -> None:
    """Set owner read/write only. No-op on Windows."""
    if os.name == "posix":
        try:
            os.chmod(path, stat.S_IRUSR | stat.S_IWUSR)  # 0o600
        except OSError as e:
            warnings.warn(
                f"Could not set secure permissions on {path}: {e}. "
                "Credentials file may be readable by other users.",
                UserWarning,
            )


def load_credentials() -> Credentials:
    path = _get_user_credentials_path()
    if not path.exists():
        return Credentials()
    try:
        with open(path, "rb") as f:
            return Credentials.model_validate(tomllib.load(f))
    except Exception as e:
        warnings.warn(f"Error loading credentials: {e}", UserWarning)
        return Credentials()


def save_credentials(creds: Credentials) -> Path:
    path = _get_user_credentials_path()

    doc = tomlkit.document()
    doc.add(tomlkit.comment(" company-sync credentials"))
    doc.add(tomlkit.comment(" Keep this file secure - do not commit to version control"))
    doc.add(tomlkit.nl())

    if creds.session.cookies:
        session = tomlkit.table()
        session.add("cookies", list(creds.session.cookies))
        doc.add("session", session)

    atomic_write_text(path, tomlkit.dumps(doc))
    _secure_file_permissions(path)
    return path


def load_session_cookies() -> List[str]:
    """Current cookie jar. Priority: environment > credentials file."""
    env_cookie = os.getenv(SESSION_COOKIE_ENV)
    if env_cookie:
        return [env_cookie]
    return list(load_credentials().session.cookies)


def save_session_cookies(cookies: Iterable[str]) -> Path:
    creds = load_credentials()
    creds.session.cookies = [c for c in cookies if c.strip()]
    return save_credentials(creds)


def clear_session_cookies() -> Path:
    return save_session_cookies([])
