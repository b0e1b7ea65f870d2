# sdm_gateway.py

from __future__ import annotations

import asyncio
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional
from urllib.parse import quote

import aiohttp


GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
SDM_API_BASE = "https://smartdevicemanagement.googleapis.com/v1/"

# Refresh a little before Google's advertised expiry so in-flight calls don't race it.
_TOKEN_EXPIRY_SKEW_S = 60.0


@dataclass(frozen=True)
class Config:
    client_id: str
    client_secret: str
    refresh_token: str
    project_id: str = "-"
    http_timeout_s: float = 10.0
    tool_timeout_s: float = 30.0
    health_interval_s: float = 60.0
    shutdown_grace_s: float = 10.0
    diagnostics_port: int = 0
    log_level: str = "INFO"
    log_format: str = "text"
    result_format: str = "raw"

    @property
    def enterprise(self) -> str:
        return f"enterprises/{self.project_id}"


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return float(default)
    try:
        return float(raw)
    except ValueError:
        return float(default)


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not str(raw).strip():
        return int(default)
    try:
        return int(float(raw))
    except ValueError:
        return int(default)


def _env_choice(name: str, choices: tuple[str, ...], default: str) -> str:
    raw = (os.environ.get(name) or "").strip().lower()
    return raw if raw in choices else default


def load_config(cfg_path: Optional[str] = None) -> Config:
    """Build Config from environment overrides on top of config.json.

    Raises RuntimeError when the stored credential is missing or the file is unreadable;
    the stdio entry point treats that as a fatal startup failure.
    """
    env_client_id = (os.environ.get("GHOME_CLIENT_ID") or "").strip()
    env_client_secret = (os.environ.get("GHOME_CLIENT_SECRET") or "").strip()
    env_refresh = (os.environ.get("GHOME_REFRESH_TOKEN") or "").strip()
    env_project = (os.environ.get("GHOME_PROJECT_ID") or "").strip()

    # The OAuth client is a pair; mixing an env id with a file secret is almost always a mistake.
    if (env_client_id or env_client_secret) and not (env_client_id and env_client_secret):
        raise RuntimeError(
            "Incomplete OAuth client from environment. Provide both GHOME_CLIENT_ID and GHOME_CLIENT_SECRET (or neither)."
        )

    env_cfg = (os.environ.get("GHOME_CONFIG_PATH") or "").strip()
    path = Path(cfg_path or env_cfg) if (cfg_path or env_cfg) else Path(__file__).with_name("config.json")

    data: dict[str, Any] = {}
    if path.exists():
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            raise RuntimeError(f"Invalid config file {str(path)!r}: {e}") from e
        if not isinstance(data, dict):
            raise RuntimeError(f"Invalid config file {str(path)!r}: expected a JSON object")

    def _file(key: str) -> str:
        value = data.get(key)
        return str(value).strip() if value is not None else ""

    client_id = env_client_id or _file("clientId")
    client_secret = env_client_secret or _file("clientSecret")
    refresh_token = env_refresh or _file("refreshToken")
    project_id = env_project or _file("projectId") or "-"

    if not client_id or not client_secret:
        raise RuntimeError(
            "Missing OAuth client. Set GHOME_CLIENT_ID/GHOME_CLIENT_SECRET, or create config.json with clientId/clientSecret."
        )
    if not refresh_token:
        raise RuntimeError(
            "Refresh token not found. Set GHOME_REFRESH_TOKEN or add refreshToken to config.json "
            "(mint one with the OAuth consent flow for the Smart Device Management scope)."
        )

    return Config(
        client_id=client_id,
        client_secret=client_secret,
        refresh_token=refresh_token,
        project_id=project_id,
        http_timeout_s=_env_float("GHOME_HTTP_TIMEOUT_S", 10.0),
        tool_timeout_s=_env_float("GHOME_TOOL_TIMEOUT_S", 30.0),
        health_interval_s=_env_float("GHOME_HEALTH_INTERVAL_S", 60.0),
        shutdown_grace_s=_env_float("GHOME_SHUTDOWN_GRACE_S", 10.0),
        diagnostics_port=_env_int("GHOME_DIAGNOSTICS_PORT", 0),
        log_level=(os.environ.get("GHOME_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        log_format=_env_choice("GHOME_LOG_FORMAT", ("text", "json"), "text"),
        result_format=_env_choice("GHOME_RESULT_FORMAT", ("raw", "text"), "raw"),
    )


# ---------- errors ----------


class AuthError(RuntimeError):
    """Access token could not be obtained from the refresh token."""

    def __init__(self, message: str, status: int = 0) -> None:
        super().__init__(message)
        self.status = status


class SdmApiError(RuntimeError):
    """Non-2xx answer from the Smart Device Management API."""

    def __init__(self, status: int, message: str, body: Any = None) -> None:
        super().__init__(f"SDM HTTP {status}: {message}")
        self.status = status
        self.body = body

    @property
    def vendor_status(self) -> str:
        """Google's canonical status (NOT_FOUND, FAILED_PRECONDITION, ...) or ""."""
        err = self.body.get("error") if isinstance(self.body, dict) else None
        return str(err.get("status") or "") if isinstance(err, dict) else ""


def _error_message(text: str, data: Any) -> str:
    # Google APIs answer {"error": {"code", "message", "status"}}; fall back to the raw body.
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict) and err.get("message"):
            return str(err.get("message"))
        if isinstance(err, str):
            desc = data.get("error_description")
            return f"{err}: {desc}" if desc else err
    return text[:600]


def _retrieve_exception(fut: asyncio.Future) -> None:
    if not fut.cancelled():
        fut.exception()


# ---------- auth ----------


class OAuthAuthenticator:
    """Exchanges the stored refresh token for short-lived access tokens.

    Concurrent callers that find the token expired all await the same pending
    refresh instead of starting their own.
    """

    def __init__(
        self,
        client_id: str,
        client_secret: str,
        refresh_token: str,
        token_url: str = GOOGLE_TOKEN_ENDPOINT,
        timeout_s: float = 10.0,
    ) -> None:
        self._client_id = client_id
        self._client_secret = client_secret
        self._refresh_token = refresh_token
        self._token_url = token_url
        self._timeout_s = float(timeout_s)

        self._access_token: Optional[str] = None
        self._expires_at: float = 0.0
        self._pending: Optional[asyncio.Future] = None
        self._closed = False
        self.refresh_count = 0

    @classmethod
    def from_config(cls, cfg: Config, token_url: str = GOOGLE_TOKEN_ENDPOINT) -> "OAuthAuthenticator":
        return cls(cfg.client_id, cfg.client_secret, cfg.refresh_token, token_url=token_url, timeout_s=cfg.http_timeout_s)

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def has_refresh_token(self) -> bool:
        return bool(self._refresh_token)

    def _token_valid(self) -> bool:
        return bool(self._access_token) and time.time() < (self._expires_at - _TOKEN_EXPIRY_SKEW_S)

    async def get_bearer_credential(self) -> str:
        if self._closed:
            raise AuthError("Authenticator is closed")
        if self._token_valid():
            return self._access_token  # type: ignore[return-value]

        if self._pending is None or self._pending.done():
            self._pending = asyncio.ensure_future(self._refresh())
            # every waiter may be cancelled before a failure lands
            self._pending.add_done_callback(_retrieve_exception)
        # shield: one caller being cancelled must not cancel the refresh the others are waiting on
        return await asyncio.shield(self._pending)

    def invalidate(self, token: str) -> None:
        """Forget `token` after the API rejected it with 401 (no-op if already replaced)."""
        if token and token == self._access_token:
            self._access_token = None
            self._expires_at = 0.0

    async def _refresh(self) -> str:
        payload = {
            "grant_type": "refresh_token",
            "client_id": self._client_id,
            "client_secret": self._client_secret,
            "refresh_token": self._refresh_token,
        }
        timeout = aiohttp.ClientTimeout(total=max(1.0, self._timeout_s))
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self._token_url, data=payload) as resp:
                    text = await resp.text()
                    try:
                        data = json.loads(text) if text else None
                    except json.JSONDecodeError:
                        data = None
                    if resp.status >= 400:
                        raise AuthError(f"Token refresh HTTP {resp.status}: {_error_message(text, data)}", status=resp.status)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthError(f"Token refresh failed: {e!r}") from e

        if not isinstance(data, dict) or not data.get("access_token"):
            raise AuthError(f"Token response missing access_token: {text[:200]}")

        try:
            expires_in = float(data.get("expires_in") or 3600)
        except (TypeError, ValueError):
            expires_in = 3600.0

        self._access_token = str(data["access_token"])
        self._expires_at = time.time() + expires_in
        self.refresh_count += 1
        return self._access_token

    async def aclose(self) -> None:
        self._closed = True
        self._access_token = None
        pending, self._pending = self._pending, None
        if pending is not None and not pending.done():
            pending.cancel()


# ---------- SDM REST client ----------


class SdmGateway:
    """Thin async client for the Smart Device Management REST API.

    A 401 is answered once with a fresh credential; every other failure is
    raised to the caller untouched. Nothing here retries an accepted command.
    """

    def __init__(
        self,
        auth: OAuthAuthenticator,
        enterprise: str = "enterprises/-",
        base_url: str = SDM_API_BASE,
        timeout_s: float = 10.0,
    ) -> None:
        self._auth = auth
        self._enterprise = enterprise.strip("/")
        self._base_url = base_url if base_url.endswith("/") else base_url + "/"
        self._timeout_s = float(timeout_s)
        self._closed = False

    @classmethod
    def from_config(cls, cfg: Config, auth: OAuthAuthenticator, base_url: str = SDM_API_BASE) -> "SdmGateway":
        return cls(auth, enterprise=cfg.enterprise, base_url=base_url, timeout_s=cfg.http_timeout_s)

    @property
    def enterprise(self) -> str:
        return self._enterprise

    @property
    def closed(self) -> bool:
        return self._closed

    def device_name(self, device_id: str) -> str:
        """Accept a full resource name or a bare device id."""
        device_id = str(device_id or "").strip().strip("/")
        if device_id.startswith("enterprises/"):
            return device_id
        return f"{self._enterprise}/devices/{device_id}"

    def _url(self, path: str) -> str:
        # keep '/' and ':' (resource names, custom verbs); escape everything else
        return self._base_url + quote(path.lstrip("/"), safe="/:-_.~")

    async def _send(self, method: str, url: str, token: str, payload: Optional[dict[str, Any]]) -> tuple[int, str, Any]:
        headers = {"Authorization": f"Bearer {token}"}
        timeout = aiohttp.ClientTimeout(total=self._timeout_s)
        async with aiohttp.ClientSession(timeout=timeout) as s:
            async with s.request(method, url, headers=headers, json=payload) as r:
                text = await r.text()
                try:
                    data = json.loads(text) if text else None
                except json.JSONDecodeError:
                    data = None
                return r.status, text, data

    async def _request(self, method: str, path: str, payload: Optional[dict[str, Any]] = None) -> Any:
        if self._closed:
            raise RuntimeError("SDM gateway is closed")
        url = self._url(path)

        token = await self._auth.get_bearer_credential()
        status, text, data = await self._send(method, url, token, payload)
        if status == 401:
            self._auth.invalidate(token)
            token = await self._auth.get_bearer_credential()
            status, text, data = await self._send(method, url, token, payload)

        if status >= 300:
            raise SdmApiError(status, _error_message(text, data), data if data is not None else text[:600])
        return data if data is not None else {}

    async def list_devices(self) -> list[dict[str, Any]]:
        data = await self._request("GET", f"{self._enterprise}/devices")
        devices = data.get("devices") if isinstance(data, dict) else None
        return [d for d in (devices or []) if isinstance(d, dict)]

    async def get_device(self, device_id: str) -> dict[str, Any]:
        data = await self._request("GET", self.device_name(device_id))
        return data if isinstance(data, dict) else {}

    async def execute_command(self, device_id: str, command: str, params: Optional[dict[str, Any]] = None) -> dict[str, Any]:
        body = {"command": command, "params": params or {}}
        data = await self._request("POST", f"{self.device_name(device_id)}:executeCommand", body)
        return data if isinstance(data, dict) else {}

    async def aclose(self) -> None:
        self._closed = True
