"""Tests for notifybot/notifications/dispatcher.py"""
from __future__ import annotations

import base64

import pytest

from conftest import FakePushBackend, collect
from notifybot.core.events import EventType
from notifybot.network.base import Hit
from notifybot.notifications.dispatcher import Dispatcher, parse_ephemeral_id
from notifybot.store.models import EphemeralBinding


async def _bind(stores, iid: bytes, token: str, eid: int, epoch: int = 1000):
    registrations, ephemerals = stores
    reg = await registrations.upsert_registration(iid, b"pk-" + iid, b"sig", token)
    await ephemerals.upsert_binding(EphemeralBinding(
        identity_hash=reg.identity_hash, ephemeral_id=eid, epoch=epoch, offset_bucket=reg.offset_bucket,
    ))
    return reg


@pytest.fixture
def dispatcher(stores, push, bus):
    registrations, ephemerals = stores
    return Dispatcher(registrations, ephemerals, push, max_concurrency=4, bus=bus)


class TestParseEphemeralId:
    def test_decimal(self):
        assert parse_ephemeral_id("42") == 42
        assert parse_ephemeral_id("-7") == -7
        assert parse_ephemeral_id(str(2 ** 63 - 1)) == 2 ** 63 - 1

    def test_out_of_range(self):
        assert parse_ephemeral_id(str(2 ** 63)) is None

    def test_base64_eight_bytes(self):
        raw = (-2).to_bytes(8, "big", signed=True)
        assert parse_ephemeral_id(base64.b64encode(raw).decode()) == -2

    def test_garbage(self):
        assert parse_ephemeral_id("not an id!") is None
        assert parse_ephemeral_id(base64.b64encode(b"short").decode()) is None


@pytest.mark.asyncio
class TestDispatch:
    async def test_one_failing_send_does_not_stop_the_rest(self, dispatcher, stores, push):
        await _bind(stores, b"id-1", "T1", 1)
        await _bind(stores, b"id-2", "T2", 2)
        await _bind(stores, b"id-3", "T3", 3)
        push.failing_tokens.add("T2")

        result = await dispatcher.dispatch(["1", "2", "3"])

        assert result.sent == 2
        assert result.failed == 1
        assert sorted(t for t, _, _ in push.sent) == ["T1", "T3"]
        failed = [o for o in result.outcomes if not o.ok]
        assert failed[0].token_prefix == "T2"

    async def test_shared_ephemeral_id_sends_to_each(self, dispatcher, stores, push):
        await _bind(stores, b"id-1", "T1", 77)
        await _bind(stores, b"id-2", "T2", 77)

        result = await dispatcher.dispatch(["77"])

        assert result.sent == 2
        assert sorted(t for t, _, _ in push.sent) == ["T1", "T2"]

    async def test_unmatched_and_skipped(self, dispatcher, stores, push):
        await _bind(stores, b"id-1", "T1", 1)

        result = await dispatcher.dispatch(["1", "12345", "???"])

        assert result.sent == 1
        assert result.unmatched == 1
        assert result.skipped == 1
        assert result.attempted == 1

    async def test_empty_hit_list(self, dispatcher, push):
        result = await dispatcher.dispatch([])
        assert result.attempted == 0
        assert push.sent == []

    async def test_base64_hit(self, dispatcher, stores, push):
        await _bind(stores, b"id-1", "T1", -5)
        encoded = base64.b64encode((-5).to_bytes(8, "big", signed=True)).decode()

        result = await dispatcher.dispatch([encoded])
        assert result.sent == 1

    async def test_binding_without_registration_is_unmatched(self, dispatcher, stores, push):
        reg = await _bind(stores, b"id-1", "T1", 1)
        registrations, _ = stores
        await registrations.delete_registration(reg.identity_hash)

        result = await dispatcher.dispatch(["1"])
        assert result.unmatched == 1
        assert push.sent == []

    async def test_payload_passes_through(self, dispatcher, stores, push):
        await _bind(stores, b"id-1", "T1", 1)
        await dispatcher.dispatch([Hit(ephemeral_id="1", message_hash=b"mh", identity_fp=b"fp")])
        assert push.sent == [("T1", b"mh", b"fp")]

    async def test_concurrency_is_capped(self, stores):
        registrations, ephemerals = stores
        slow = FakePushBackend(delay=0.02)
        dispatcher = Dispatcher(registrations, ephemerals, slow, max_concurrency=3)
        for i in range(10):
            await _bind(stores, f"id-{i}".encode(), f"T{i}", 500)

        result = await dispatcher.dispatch(["500"])

        assert result.sent == 10
        assert 1 < slow.max_in_flight <= 3

    async def test_unexpected_exception_counts_as_failure(self, stores):
        registrations, ephemerals = stores

        class Exploding(FakePushBackend):
            async def send(self, token, message_hash, identity_fp):
                raise RuntimeError("boom")

        dispatcher = Dispatcher(registrations, ephemerals, Exploding())
        await _bind(stores, b"id-1", "T1", 1)

        result = await dispatcher.dispatch(["1"])
        assert result.failed == 1
        assert result.outcomes[0].retryable is True

    async def test_emits_dispatch_event(self, dispatcher, stores, bus):
        events = collect(bus, EventType.DISPATCH_COMPLETE)
        await _bind(stores, b"id-1", "T1", 1)
        await dispatcher.dispatch(["1", "2"])
        assert events[0].data == {"sent": 1, "failed": 0, "unmatched": 1, "skipped": 0}


def test_rejects_zero_concurrency(stores, push):
    registrations, ephemerals = stores
    with pytest.raises(ValueError):
        Dispatcher(registrations, ephemerals, push, max_concurrency=0)
