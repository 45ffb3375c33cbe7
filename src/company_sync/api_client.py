"""HTTP client for the company server's JSON API.

Every request forwards the signed-in session cookies. Responses use the
server's envelope ``{"success": bool, "data": ..., "error": str}``.
"""

from __future__ import annotations

from typing import Any, Iterable, List, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .config_schema import ServerConfig
from .credentials import cookie_header


class CollaboratorApiError(Exception):
    """A request to the company server failed or returned an unusable body."""

    def __init__(self, message: str, *, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RepositoryInfo(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    https_url: Optional[str] = Field(default=None, alias="httpsUrl")


class Department(BaseModel):
    model_config = ConfigDict(extra="ignore")

    folder: str
    id: Optional[str] = None
    name: Optional[str] = None


class UserIdentity(BaseModel):
    model_config = ConfigDict(extra="ignore")

    email: str
    name: Optional[str] = None

    @property
    def display_name(self) -> str:
        return self.name or self.email


class CollaboratorClient:
    """Thin wrapper over :class:`httpx.Client` for the endpoints sync needs.

    ``transport`` lets tests plug in :class:`httpx.MockTransport`.
    """

    def __init__(
        self,
        config: ServerConfig,
        cookies: Iterable[str] = (),
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.config = config
        self.cookies = list(cookies)
        self._transport = transport

    def _client(self) -> httpx.Client:
        if not self.config.url:
            raise CollaboratorApiError(
                "Server URL is not configured (set COMPANY_SYNC_SERVER_URL or [server] url)"
            )
        headers = {"Accept": "application/json"}
        header = cookie_header(self.cookies)
        if header:
            headers["Cookie"] = header
        return httpx.Client(
            base_url=self.config.api_base,
            headers=headers,
            timeout=self.config.timeout,
            transport=self._transport,
        )

    def _request(self, method: str, path: str, *, json: Any = None) -> Any:
        """Send a request and return the envelope's ``data``."""
        try:
            with self._client() as client:
                response = client.request(method, path, json=json)
        except httpx.HTTPError as e:
            raise CollaboratorApiError(f"{method} {path} failed: {e}") from e

        try:
            body = response.json() if response.content else None
        except ValueError:
            body = None

        if response.is_error:
            detail = _envelope_message(body) or response.reason_phrase
            raise CollaboratorApiError(
                f"{method} {path} returned HTTP {response.status_code}: {detail}",
                status_code=response.status_code,
            )
        if not isinstance(body, dict):
            raise CollaboratorApiError(
                f"{method} {path} returned a non-JSON response",
                status_code=response.status_code,
            )
        if body.get("success") is False:
            raise CollaboratorApiError(
                f"{method} {path} failed: {_envelope_message(body) or 'unknown error'}",
                status_code=response.status_code,
            )
        return body.get("data")

    def get_repository(self, workspace_id: str) -> RepositoryInfo:
        """``GET /git/repos/{id}``"""
        data = self._request("GET", f"/git/repos/{workspace_id}")
        return _validate(RepositoryInfo, data or {})

    def list_departments(self, workspace_id: str) -> List[Department]:
        """``GET /companies/{id}/departments``"""
        data = self._request("GET", f"/companies/{workspace_id}/departments")
        if data is None:
            return []
        if not isinstance(data, list):
            raise CollaboratorApiError("Department list is not an array")
        return [_validate(Department, item) for item in data]

    def get_current_user(self) -> UserIdentity:
        """``GET /me``"""
        return _validate(UserIdentity, self._request("GET", "/me"))

    def create_repository(self, workspace_id: str) -> RepositoryInfo:
        """``POST /git/repos`` - provisions the bare repository server-side."""
        data = self._request("POST", "/git/repos", json={"companyId": workspace_id})
        return _validate(RepositoryInfo, data or {})


def _envelope_message(body: Any) -> Optional[str]:
    if not isinstance(body, dict):
        return None
    for key in ("error", "message"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _validate(model: type, data: Any):
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise CollaboratorApiError(f"Unexpected {model.__name__} payload: {e}") from e
