"""Tests for notifybot/ephemeral/scheme.py"""
from __future__ import annotations

import pytest

from notifybot.ephemeral.scheme import EpochScheme, identity_hash

NS = 1_000_000_000
PERIOD = 1024 * NS
WIDTH = 64 * NS
T0 = 1000 * PERIOD  # start of global epoch 1000


class TestOffsets:
    def test_bucket_is_deterministic_and_in_range(self, scheme):
        other = EpochScheme(period=1024, num_offsets=16, address_space_size=16)
        for i in range(50):
            iid = f"identity-{i}".encode()
            bucket = scheme.offset_bucket(iid)
            assert 0 <= bucket < 16
            assert bucket == other.offset_bucket(iid)

    def test_buckets_spread_identities(self, scheme):
        buckets = {scheme.offset_bucket(f"id-{i}".encode()) for i in range(200)}
        assert len(buckets) > 8

    def test_identity_hash_is_32_bytes(self):
        h = identity_hash(b"public key")
        assert len(h) == 32
        assert h == identity_hash(b"public key")
        assert h != identity_hash(b"other key")

    def test_rejects_bad_parameters(self):
        with pytest.raises(ValueError):
            EpochScheme(period=0)
        with pytest.raises(ValueError):
            EpochScheme(num_offsets=0)


class TestEpochs:
    def test_epoch_advances_at_bucket_boundary(self, scheme):
        boundary = T0 + 3 * WIDTH
        assert scheme.epoch(3, boundary - 1) == 999
        assert scheme.epoch(3, boundary) == 1000

    def test_bucket_epoch_is_global_or_previous(self, scheme):
        for offset in range(0, PERIOD, 37 * NS):
            now = T0 + offset
            g = scheme.global_epoch(now)
            for bucket in range(16):
                assert scheme.epoch(bucket, now) in (g - 1, g)

    def test_window_contains_now(self, scheme):
        now = T0 + 500 * NS
        for bucket in range(16):
            start, end = scheme.window(bucket, scheme.epoch(bucket, now))
            assert start <= now < end
            assert end - start == PERIOD

    def test_retention_floor(self, scheme):
        assert scheme.retention_floor(T0 + 5 * NS, retained_epochs=1) == 998
        assert scheme.retention_floor(T0 + 5 * NS, retained_epochs=0) == 999


class TestBucketsRolled:
    def test_within_period(self, scheme):
        assert scheme.buckets_rolled(T0 + 10 * NS, T0 + 130 * NS) == [1, 2]

    def test_boundary_is_inclusive_at_now(self, scheme):
        assert scheme.buckets_rolled(T0 + 10 * NS, T0 + WIDTH) == [1]
        assert scheme.buckets_rolled(T0 + WIDTH, T0 + WIDTH + 1) == []

    def test_wraps_over_period_end(self, scheme):
        assert scheme.buckets_rolled(T0 - 10 * NS, T0 + 70 * NS) == [0, 1]

    def test_full_period_rolls_everything(self, scheme):
        assert scheme.buckets_rolled(T0, T0 + PERIOD) == list(range(16))

    def test_no_time_passed(self, scheme):
        assert scheme.buckets_rolled(T0, T0) == []
        assert scheme.buckets_rolled(T0 + 1, T0) == []

    def test_rolled_buckets_changed_epoch(self, scheme):
        since, now = T0 + 100 * NS, T0 + 400 * NS
        rolled = set(scheme.buckets_rolled(since, now))
        for bucket in range(16):
            changed = scheme.epoch(bucket, now) != scheme.epoch(bucket, since)
            assert changed == (bucket in rolled)
