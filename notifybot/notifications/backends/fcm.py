"""
FCMPushBackend — Firebase Cloud Messaging over the HTTP v1 API.

Requires config:
    [push]
    backend          = "fcm"
    credentials_file = "~/.notifybot/service-account.json"
    project_id       = "my-project"   # optional, read from the file

A static ``access_token`` still works for short runs, but OAuth tokens
expire after about an hour; with a service account the token is minted on
first use and refreshed whenever it expires or FCM answers 401.

Messages are data-only (no notification block) so Android apps receive them
in the background; the APNS block sets content-available for iOS.
"""

from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Any

import httpx
from google.auth.transport.requests import Request as GoogleAuthRequest
from google.oauth2 import service_account

from notifybot.core.errors import ConfigError, PushError
from notifybot.notifications.base import PushBackend, build_data_payload

logger = logging.getLogger(__name__)

FCM_SCOPE = "https://www.googleapis.com/auth/firebase.messaging"

_SEND_PATH = "/v1/projects/{project}/messages:send"
_PERMANENT_STATUSES = {"UNREGISTERED", "INVALID_ARGUMENT", "SENDER_ID_MISMATCH"}


def load_service_account(path: str | Path) -> service_account.Credentials:
    """Service-account credentials scoped for FCM sends."""
    path = Path(path).expanduser()
    try:
        return service_account.Credentials.from_service_account_file(str(path), scopes=[FCM_SCOPE])
    except (OSError, ValueError) as e:
        raise ConfigError(f"Cannot load FCM service account from {path}: {e}") from e


def build_fcm_message(token: str, message_hash: bytes, identity_fp: bytes) -> dict:
    data = build_data_payload(message_hash, identity_fp)
    return {
        "token": token,
        "data": data,
        "apns": {
            "payload": {
                "aps": {"content-available": 1},
                **data,
            },
        },
    }


class FCMPushBackend(PushBackend):
    """
    One shared httpx client; a rejected device token raises a non-retryable
    PushError, throttling, server errors and the bot's own expired
    credentials raise retryable ones.

    ``credentials`` is anything shaped like google-auth credentials:
    ``token``, ``valid`` and ``refresh(request)``.
    """

    def __init__(
        self,
        project_id: str = "",
        access_token: str = "",
        endpoint: str = "https://fcm.googleapis.com",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
        credentials: Any = None,
    ) -> None:
        self._project_id = project_id.strip() or getattr(credentials, "project_id", "") or ""
        self._access_token = access_token.strip()
        self._credentials = credentials
        self._endpoint = endpoint.rstrip("/")
        self._timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._refresh_lock = asyncio.Lock()

    @property
    def name(self) -> str:
        return "fcm"

    @property
    def configured(self) -> bool:
        return bool(self._project_id and (self._access_token or self._credentials is not None))

    async def send(self, token: str, message_hash: bytes, identity_fp: bytes) -> str:
        if not self.configured:
            raise PushError("FCM backend is not configured", backend=self.name)
        body = {"message": build_fcm_message(token, message_hash, identity_fp)}

        resp = await self._post(body, await self._bearer())
        if resp.status_code == 401 and self._credentials is not None:
            logger.info("FCM rejected the access token, refreshing credentials")
            resp = await self._post(body, await self._bearer(force_refresh=True))

        if resp.status_code == 200:
            ack = resp.json().get("name", "")
            logger.debug(f"FCM accepted push for token {token[:8]}: {ack}")
            return ack

        status = _error_status(resp)
        # 401 is about our credentials, not the device token
        retryable = resp.status_code in (401, 429) or resp.status_code >= 500
        if status in _PERMANENT_STATUSES or resp.status_code == 404:
            retryable = False
        raise PushError(
            f"FCM rejected push ({resp.status_code} {status})",
            backend=self.name,
            retryable=retryable,
            details={"status_code": resp.status_code, "status": status},
        )

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    async def _post(self, body: dict, bearer: str) -> httpx.Response:
        url = self._endpoint + _SEND_PATH.format(project=self._project_id)
        try:
            return await self._http().post(
                url, json=body, headers={"Authorization": f"Bearer {bearer}"}
            )
        except httpx.HTTPError as e:
            raise PushError(f"FCM unreachable: {e}", backend=self.name, retryable=True) from e

    async def _bearer(self, force_refresh: bool = False) -> str:
        if self._credentials is None:
            return self._access_token
        async with self._refresh_lock:
            if force_refresh or not self._credentials.valid:
                try:
                    # google-auth refreshes with a blocking HTTP call
                    await asyncio.to_thread(self._credentials.refresh, GoogleAuthRequest())
                except Exception as e:
                    raise PushError(
                        f"FCM credential refresh failed: {e}", backend=self.name, retryable=True
                    ) from e
            if not self._credentials.token:
                raise PushError("FCM credentials produced no access token", backend=self.name, retryable=True)
            return self._credentials.token

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self._timeout)
        return self._client


def _error_status(resp: httpx.Response) -> str:
    try:
        error = resp.json().get("error", {})
    except ValueError:
        return ""
    status = error.get("status", "")
    for detail in error.get("details", []):
        if detail.get("errorCode"):
            return detail["errorCode"]
    return status
