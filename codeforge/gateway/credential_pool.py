"""Credential Pool, round-robin API key rotation with rate-limit recovery.

One pool per provider. Each credential moves through:
  - HEALTHY: eligible for selection
  - RATE_LIMITED(until): skipped until the clock passes `until`,
    then returns to HEALTHY with its error streak cleared
  - DISABLED: reached after MAX_CONSECUTIVE_ERRORS errors in a row,
    terminal for the life of the process

Selection scans from a rotating cursor so load spreads across keys. The
cursor is shared by all concurrent requests for the provider; under asyncio
there is no suspension point inside `next()`, so each call sees a consistent
snapshot and rotation is approximately round-robin.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable

from codeforge.core.metrics import CREDENTIAL_ROTATIONS
from codeforge.gateway.types import Credential, CredentialHealth, ProviderId

logger = logging.getLogger(__name__)

MAX_CONSECUTIVE_ERRORS = 5
DEFAULT_RETRY_AFTER = 60.0  # Seconds, when the provider sends no retry-after


class PoolExhaustedError(Exception):
    """Raised when no credential in the pool is currently eligible."""

    def __init__(self, provider: ProviderId, retry_at: float | None, now: float):
        self.provider = provider
        self.retry_at = retry_at
        self.retry_after = max(retry_at - now, 0.0) if retry_at is not None else None
        if self.retry_after is not None:
            message = (
                f"All {provider.value} keys rate limited. "
                f"Fastest recovery in {int(self.retry_after + 0.999)}s"
            )
        else:
            message = f"No usable {provider.value} keys"
        super().__init__(message)


class CredentialPool:
    """Rotating pool of API keys for a single provider.

    Usage:
        pool = CredentialPool(ProviderId.GROQ, ["gsk_a", "gsk_b"])

        cred = pool.next()  # raises PoolExhaustedError if nothing is eligible
        ...
        pool.mark_success(cred)
        # or
        pool.mark_rate_limited(cred, retry_after_seconds=30)
    """

    def __init__(
        self,
        provider: ProviderId,
        secrets: list[str] | tuple[str, ...] = (),
        clock: Callable[[], float] = time.time,
        max_errors: int = MAX_CONSECUTIVE_ERRORS,
        default_retry_after: float = DEFAULT_RETRY_AFTER,
    ):
        self.provider = provider
        self._clock = clock
        self._max_errors = max_errors
        self._default_retry_after = default_retry_after
        self._credentials = [Credential(secret=s, index=i + 1) for i, s in enumerate(secrets)]
        self._cursor = 0
        self.rotations = 0

        if self._credentials:
            logger.info("Credential pool for %s: %d key(s) loaded", provider.value, len(self._credentials))
        else:
            logger.info("Credential pool for %s is empty, provider unavailable", provider.value)

    def __len__(self) -> int:
        return len(self._credentials)

    @property
    def size(self) -> int:
        return len(self._credentials)

    @property
    def credentials(self) -> list[Credential]:
        return list(self._credentials)

    def next(self) -> Credential:
        """Return the next eligible credential, starting from the cursor.

        Recovers expired rate limits on the way. Raises PoolExhaustedError
        with the soonest recovery time when nothing is eligible.
        """
        now = self._clock()
        total = len(self._credentials)
        soonest: float | None = None

        for offset in range(total):
            idx = (self._cursor + offset) % total
            cred = self._credentials[idx]

            if cred.health == CredentialHealth.RATE_LIMITED:
                if now >= cred.rate_limited_until:
                    cred.health = CredentialHealth.HEALTHY
                    cred.consecutive_errors = 0
                    logger.info("%s %s recovered from rate limit", self.provider.value, cred.label)
                else:
                    if soonest is None or cred.rate_limited_until < soonest:
                        soonest = cred.rate_limited_until
                    continue

            if cred.health == CredentialHealth.DISABLED:
                continue

            self._cursor = (idx + 1) % total
            cred.request_count += 1
            cred.last_used_at = now
            return cred

        raise PoolExhaustedError(self.provider, soonest, now)

    def mark_rate_limited(self, cred: Credential, retry_after_seconds: float | None = None) -> None:
        """Put a credential on hold until `now + retry_after_seconds`."""
        wait = self._default_retry_after if retry_after_seconds is None else retry_after_seconds
        cred.health = CredentialHealth.RATE_LIMITED
        cred.rate_limited_until = self._clock() + wait
        cred.consecutive_errors += 1
        self.rotations += 1
        CREDENTIAL_ROTATIONS.labels(provider=self.provider.value, reason="rate_limited").inc()
        logger.warning(
            "%s %s rate limited for %.0fs (errors: %d)",
            self.provider.value,
            cred.label,
            wait,
            cred.consecutive_errors,
        )

    def mark_error(self, cred: Credential) -> None:
        """Record a non-rate-limit failure; disables the key at the threshold."""
        cred.consecutive_errors += 1
        self.rotations += 1
        CREDENTIAL_ROTATIONS.labels(provider=self.provider.value, reason="error").inc()
        if cred.consecutive_errors >= self._max_errors and cred.health != CredentialHealth.DISABLED:
            cred.health = CredentialHealth.DISABLED
            logger.error(
                "%s %s DISABLED after %d consecutive errors",
                self.provider.value,
                cred.label,
                cred.consecutive_errors,
            )

    def mark_success(self, cred: Credential) -> None:
        """Reset a credential's error streak. A disabled key stays disabled."""
        if cred.health == CredentialHealth.DISABLED:
            return
        cred.consecutive_errors = 0
        cred.health = CredentialHealth.HEALTHY

    def get_status(self) -> list[dict]:
        """Snapshot of every credential. Secrets are never included."""
        now = self._clock()
        snapshot = []
        for cred in self._credentials:
            entry = {
                "key": cred.label,
                "status": cred.health.value,
                "totalRequests": cred.request_count,
                "consecutiveErrors": cred.consecutive_errors,
            }
            if cred.health == CredentialHealth.RATE_LIMITED and cred.rate_limited_until > now:
                entry["retryAfter"] = round(cred.rate_limited_until - now, 1)
            snapshot.append(entry)
        return snapshot

    def available_count(self) -> int:
        """Number of credentials that `next()` could return right now."""
        now = self._clock()
        return sum(
            1
            for c in self._credentials
            if c.health == CredentialHealth.HEALTHY
            or (c.health == CredentialHealth.RATE_LIMITED and now >= c.rate_limited_until)
        )

    def peek(self) -> Credential | None:
        """First eligible credential without moving the cursor or counting a request."""
        now = self._clock()
        total = len(self._credentials)
        for offset in range(total):
            cred = self._credentials[(self._cursor + offset) % total]
            if cred.health == CredentialHealth.HEALTHY:
                return cred
            if cred.health == CredentialHealth.RATE_LIMITED and now >= cred.rate_limited_until:
                return cred
        return None

    def soonest_recovery(self) -> float | None:
        """Seconds until the first rate-limited key becomes eligible again."""
        now = self._clock()
        pending = [
            c.rate_limited_until - now
            for c in self._credentials
            if c.health == CredentialHealth.RATE_LIMITED and c.rate_limited_until > now
        ]
        return min(pending) if pending else None
