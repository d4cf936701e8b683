"""Tests for the FCM and file push backends."""
from __future__ import annotations

import base64
import json

import httpx
import pytest

from notifybot.core.errors import ConfigError, PushError
from notifybot.notifications.backends.fcm import FCMPushBackend, build_fcm_message, load_service_account
from notifybot.notifications.backends.file import FilePushBackend
from notifybot.notifications.base import IDENTITY_FP_KEY, MESSAGE_HASH_KEY


def _fcm(handler) -> FCMPushBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FCMPushBackend(project_id="proj", access_token="secret", client=client)


class TestFCMMessage:
    def test_data_only_with_apns_wakeup(self):
        msg = build_fcm_message("tok", b"hash", b"fp")
        assert "notification" not in msg
        assert msg["data"][MESSAGE_HASH_KEY] == base64.b64encode(b"hash").decode()
        assert msg["data"][IDENTITY_FP_KEY] == base64.b64encode(b"fp").decode()
        assert msg["apns"]["payload"]["aps"]["content-available"] == 1


@pytest.mark.asyncio
class TestFCMPushBackend:
    async def test_success_returns_message_name(self):
        captured = {}

        def handler(request: httpx.Request) -> httpx.Response:
            captured["url"] = str(request.url)
            captured["auth"] = request.headers["Authorization"]
            captured["body"] = json.loads(request.content)
            return httpx.Response(200, json={"name": "projects/proj/messages/1"})

        backend = _fcm(handler)
        ack = await backend.send("device-token", b"mh", b"fp")

        assert ack == "projects/proj/messages/1"
        assert captured["url"] == "https://fcm.googleapis.com/v1/projects/proj/messages:send"
        assert captured["auth"] == "Bearer secret"
        assert captured["body"]["message"]["token"] == "device-token"

    async def test_unregistered_token_is_permanent(self):
        def handler(request):
            return httpx.Response(404, json={"error": {
                "status": "NOT_FOUND",
                "details": [{"errorCode": "UNREGISTERED"}],
            }})

        with pytest.raises(PushError) as exc:
            await _fcm(handler).send("tok", b"", b"")
        assert exc.value.retryable is False
        assert exc.value.details["status"] == "UNREGISTERED"

    async def test_server_error_is_retryable(self):
        def handler(request):
            return httpx.Response(503, text="unavailable")

        with pytest.raises(PushError) as exc:
            await _fcm(handler).send("tok", b"", b"")
        assert exc.value.retryable is True

    async def test_connection_error_is_retryable(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(PushError) as exc:
            await _fcm(handler).send("tok", b"", b"")
        assert exc.value.retryable is True

    async def test_not_configured(self):
        backend = FCMPushBackend(project_id="", access_token="")
        assert backend.configured is False
        with pytest.raises(PushError):
            await backend.send("tok", b"", b"")


@pytest.mark.asyncio
class TestFilePushBackend:
    async def test_appends_json_lines(self, tmp_path):
        path = tmp_path / "out" / "pushes.jsonl"
        backend = FilePushBackend(path)

        assert await backend.send("abcdefghijkl", b"mh", b"fp") == "file:1"
        assert await backend.send("other-token", b"mh2", b"fp2") == "file:2"

        lines = [json.loads(line) for line in path.read_text().splitlines()]
        assert len(lines) == 2
        assert lines[0]["token_prefix"] == "abcdefgh"
        assert lines[0]["data"][MESSAGE_HASH_KEY] == base64.b64encode(b"mh").decode()

    async def test_write_failure_is_retryable(self, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("")
        backend = FilePushBackend(blocker / "pushes.jsonl")

        with pytest.raises(PushError) as exc:
            await backend.send("tok", b"", b"")
        assert exc.value.retryable is True


class FakeCredentials:
    """Shaped like google-auth credentials; each refresh mints a new token."""

    def __init__(self, token: str = "", valid: bool = False, fail: bool = False) -> None:
        self.token = token
        self.valid = valid
        self.fail = fail
        self.refreshes = 0
        self.project_id = "sa-proj"

    def refresh(self, request) -> None:
        if self.fail:
            raise RuntimeError("metadata server unreachable")
        self.refreshes += 1
        self.token = f"minted-{self.refreshes}"
        self.valid = True


def _fcm_with_credentials(handler, credentials) -> FCMPushBackend:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return FCMPushBackend(credentials=credentials, client=client)


def _unauthenticated() -> httpx.Response:
    return httpx.Response(401, json={"error": {"status": "UNAUTHENTICATED"}})


@pytest.mark.asyncio
class TestFCMCredentials:
    async def test_expired_credentials_are_refreshed_before_sending(self):
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            return httpx.Response(200, json={"name": "ok"})

        credentials = FakeCredentials(token="stale", valid=False)
        backend = _fcm_with_credentials(handler, credentials)

        await backend.send("tok", b"", b"")
        await backend.send("tok", b"", b"")

        assert seen == ["Bearer minted-1", "Bearer minted-1"]
        assert credentials.refreshes == 1

    async def test_401_refreshes_once_and_retries(self):
        seen = []

        def handler(request):
            seen.append(request.headers["Authorization"])
            if len(seen) == 1:
                return _unauthenticated()
            return httpx.Response(200, json={"name": "ok"})

        credentials = FakeCredentials(token="revoked", valid=True)
        ack = await _fcm_with_credentials(handler, credentials).send("tok", b"", b"")

        assert ack == "ok"
        assert seen == ["Bearer revoked", "Bearer minted-1"]

    async def test_persistent_401_is_retryable(self):
        calls = []

        def handler(request):
            calls.append(request)
            return _unauthenticated()

        credentials = FakeCredentials(token="t", valid=True)
        with pytest.raises(PushError) as exc:
            await _fcm_with_credentials(handler, credentials).send("tok", b"", b"")

        assert exc.value.retryable is True
        assert len(calls) == 2
        assert credentials.refreshes == 1

    async def test_static_token_401_blames_credentials_not_device(self):
        with pytest.raises(PushError) as exc:
            await _fcm(lambda request: _unauthenticated()).send("tok", b"", b"")
        assert exc.value.retryable is True

    async def test_refresh_failure_is_retryable(self):
        def handler(request):
            return httpx.Response(200, json={"name": "ok"})

        backend = _fcm_with_credentials(handler, FakeCredentials(fail=True))
        with pytest.raises(PushError) as exc:
            await backend.send("tok", b"", b"")
        assert exc.value.retryable is True

    async def test_project_id_comes_from_service_account(self):
        captured = {}

        def handler(request):
            captured["path"] = request.url.path
            return httpx.Response(200, json={"name": "ok"})

        await _fcm_with_credentials(handler, FakeCredentials()).send("tok", b"", b"")
        assert captured["path"] == "/v1/projects/sa-proj/messages:send"


def test_missing_service_account_file(tmp_path):
    with pytest.raises(ConfigError):
        load_service_account(tmp_path / "missing.json")
