"""Tests for the credential pool: rotation, rate limits and disabling."""

from __future__ import annotations

import pytest

from codeforge.gateway.credential_pool import (
    DEFAULT_RETRY_AFTER,
    MAX_CONSECUTIVE_ERRORS,
    CredentialPool,
    PoolExhaustedError,
)
from codeforge.gateway.types import CredentialHealth, ProviderId

KEYS = ["gsk_first_secret", "gsk_second_secret", "gsk_third_secret"]


def _pool(clock, keys=KEYS) -> CredentialPool:
    return CredentialPool(ProviderId.GROQ, keys, clock=clock)


# ==========================================================================
# Test: Rotation
# ==========================================================================


class TestRotation:
    def test_round_robin_across_keys(self, clock):
        pool = _pool(clock)
        labels = [pool.next().label for _ in range(4)]
        assert labels == ["Key #1", "Key #2", "Key #3", "Key #1"]

    def test_request_count_and_last_used(self, clock):
        pool = _pool(clock)
        cred = pool.next()
        assert cred.request_count == 1
        assert cred.last_used_at == clock.now

    def test_skips_rate_limited_key(self, clock):
        pool = _pool(clock)
        first = pool.next()
        pool.mark_rate_limited(first, 30)
        labels = [pool.next().label for _ in range(3)]
        assert "Key #1" not in labels

    def test_rate_limited_key_recovers_after_wait(self, clock):
        pool = _pool(clock, ["only_key"])
        cred = pool.next()
        pool.mark_rate_limited(cred, 30)
        assert cred.consecutive_errors == 1

        clock.advance(31)
        again = pool.next()
        assert again is cred
        assert again.health == CredentialHealth.HEALTHY
        assert again.consecutive_errors == 0

    def test_default_retry_after(self, clock):
        pool = _pool(clock, ["only_key"])
        cred = pool.next()
        pool.mark_rate_limited(cred)
        assert cred.rate_limited_until == clock.now + DEFAULT_RETRY_AFTER

    def test_rotations_counted(self, clock):
        pool = _pool(clock)
        pool.mark_rate_limited(pool.next(), 10)
        pool.mark_error(pool.next())
        assert pool.rotations == 2


# ==========================================================================
# Test: Exhaustion
# ==========================================================================


class TestExhaustion:
    def test_empty_pool_raises(self, clock):
        pool = _pool(clock, [])
        assert pool.size == 0
        with pytest.raises(PoolExhaustedError, match="No usable groq keys"):
            pool.next()

    def test_all_rate_limited_reports_soonest_recovery(self, clock):
        pool = _pool(clock)
        for wait in (20, 10, 30):
            pool.mark_rate_limited(pool.next(), wait)

        with pytest.raises(PoolExhaustedError) as exc_info:
            pool.next()
        assert exc_info.value.retry_after == pytest.approx(10)
        assert "Fastest recovery in 10s" in str(exc_info.value)
        assert pool.soonest_recovery() == pytest.approx(10)

    def test_available_count(self, clock):
        pool = _pool(clock)
        pool.mark_rate_limited(pool.next(), 10)
        assert pool.available_count() == 2
        clock.advance(11)
        assert pool.available_count() == 3


# ==========================================================================
# Test: Disabling
# ==========================================================================


class TestDisabling:
    def test_disabled_after_consecutive_errors(self, clock):
        pool = _pool(clock, ["bad_key", "good_key"])
        bad = pool.credentials[0]
        for _ in range(MAX_CONSECUTIVE_ERRORS):
            pool.mark_error(bad)
        assert bad.health == CredentialHealth.DISABLED
        assert [pool.next().label for _ in range(3)] == ["Key #2"] * 3

    def test_success_does_not_revive_disabled_key(self, clock):
        pool = _pool(clock, ["bad_key"])
        bad = pool.credentials[0]
        for _ in range(MAX_CONSECUTIVE_ERRORS):
            pool.mark_error(bad)
        pool.mark_success(bad)
        assert bad.health == CredentialHealth.DISABLED
        with pytest.raises(PoolExhaustedError):
            pool.next()

    def test_success_resets_error_streak(self, clock):
        pool = _pool(clock)
        cred = pool.next()
        pool.mark_error(cred)
        pool.mark_error(cred)
        pool.mark_success(cred)
        assert cred.consecutive_errors == 0


# ==========================================================================
# Test: Snapshots never expose secrets
# ==========================================================================


class TestSnapshots:
    def test_status_has_labels_not_secrets(self, clock):
        pool = _pool(clock)
        pool.mark_rate_limited(pool.next(), 15)
        status = pool.get_status()

        assert [s["key"] for s in status] == ["Key #1", "Key #2", "Key #3"]
        assert status[0]["status"] == "rate_limited"
        assert status[0]["retryAfter"] == 15.0
        assert "secret" not in repr(status)

    def test_credential_repr_hides_secret(self, clock):
        cred = _pool(clock).next()
        assert "gsk_first_secret" not in repr(cred)
        assert "Key #1" in repr(cred)

    def test_peek_does_not_rotate(self, clock):
        pool = _pool(clock)
        peeked = pool.peek()
        assert peeked.label == "Key #1"
        assert peeked.request_count == 0
        assert pool.next().label == "Key #1"
