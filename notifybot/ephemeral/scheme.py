"""
Epoch bucketing — how identities are spread across the rotation timeline.

Time is cut into periods of ``period`` seconds. Every identity gets a fixed
offset inside the period (a keyed hash of its identity ID), which places it
in one of ``num_offsets`` equal-width offset buckets. A bucket's epoch
advances when wall-clock time crosses ``bucket_start + k * period``, so only
one bucket's worth of identities rotates at any moment.

All arithmetic is in integer nanoseconds. The offset is a pure function of
the identity ID and the scheme parameters, so it is stable across restarts.

At any instant a bucket's epoch is either the global epoch
``now // period`` or the one before it, which is what makes a single
retention floor valid for every bucket.
"""

from __future__ import annotations

import hashlib

_NS = 1_000_000_000
_OFFSET_PERSON = b"nb-offset"


def identity_hash(public_key: bytes) -> bytes:
    """Primary key of a registration: 32-byte BLAKE2b of the public key."""
    return hashlib.blake2b(public_key, digest_size=32).digest()


class EpochScheme:
    """
    Maps identities to offset buckets and buckets to epochs.

    Usage:
        scheme = EpochScheme(period=65536, num_offsets=1024)
        bucket = scheme.offset_bucket(identity_id)
        epoch = scheme.epoch(bucket, time.time_ns())
        due = scheme.buckets_rolled(last_tick_ns, now_ns)
    """

    def __init__(
        self,
        period: float = 65536.0,
        num_offsets: int = 1024,
        address_space_size: int = 16,
    ) -> None:
        if period <= 0:
            raise ValueError("period must be positive")
        if num_offsets < 1:
            raise ValueError("num_offsets must be at least 1")
        self.period_ns = int(period * _NS)
        if self.period_ns < num_offsets:
            raise ValueError("period too short for the number of offsets")
        self.num_offsets = num_offsets
        self.address_space_size = address_space_size
        self.bucket_width_ns = self.period_ns // num_offsets

    def offset_ns(self, identity_id: bytes) -> int:
        """Position of the identity inside the period."""
        digest = hashlib.blake2b(
            identity_id, digest_size=8, person=_OFFSET_PERSON
        ).digest()
        return int.from_bytes(digest, "big") % self.period_ns

    def offset_bucket(self, identity_id: bytes) -> int:
        return min(self.offset_ns(identity_id) // self.bucket_width_ns, self.num_offsets - 1)

    def bucket_start_ns(self, bucket: int) -> int:
        return bucket * self.bucket_width_ns

    def epoch(self, bucket: int, now_ns: int) -> int:
        """Epoch currently in force for a bucket."""
        return (now_ns - self.bucket_start_ns(bucket)) // self.period_ns

    def window(self, bucket: int, epoch: int) -> tuple[int, int]:
        """(valid_from, valid_to) in nanoseconds for a bucket's epoch."""
        start = self.bucket_start_ns(bucket) + epoch * self.period_ns
        return start, start + self.period_ns

    def global_epoch(self, now_ns: int) -> int:
        return now_ns // self.period_ns

    def buckets_rolled(self, since_ns: int, now_ns: int) -> list[int]:
        """
        Buckets whose epoch boundary falls in the half-open window
        (since_ns, now_ns]. Returns every bucket once a full period elapsed.
        """
        if now_ns <= since_ns:
            return []
        if now_ns - since_ns >= self.period_ns:
            return list(range(self.num_offsets))

        width = self.bucket_width_ns
        phase_since = since_ns % self.period_ns
        phase_now = now_ns % self.period_ns

        def span(lo_exclusive: int, hi_inclusive: int) -> range:
            first = lo_exclusive // width + 1
            last = min(hi_inclusive // width, self.num_offsets - 1)
            return range(first, last + 1)

        if phase_now > phase_since:
            return list(span(phase_since, phase_now))
        # Wrapped past the period boundary, bucket 0 rolls at phase 0
        return list(span(phase_since, self.period_ns - 1)) + [0] + list(span(0, phase_now))

    def retention_floor(self, now_ns: int, retained_epochs: int = 1) -> int:
        """
        Lowest epoch still kept: every bucket's current epoch plus
        ``retained_epochs`` before it.
        """
        return self.global_epoch(now_ns) - 1 - retained_epochs
