"""Per-email failed-login lockout."""

import threading
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Callable

from webmail_proxy.lib.errors import RateLimitExceeded
from webmail_proxy.lib.logger import get_logger, hash_email
from webmail_proxy.models.account import utcnow

logger = get_logger(__name__)

FAILURE_THRESHOLD = 5
MAX_LOCKOUT_EXPONENT = 6


class LoginLockout:
    """Tracks failed logins and locks an address out after repeated failures.

    Policy:
    - Failures are counted within a sliding window (default 15 minutes)
    - From the 5th failure on: lockout of 2^(n-4) minutes, capped at 64
    - A successful login clears the history
    """

    def __init__(
        self,
        window_minutes: int = 15,
        threshold: int = FAILURE_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ):
        self._window = timedelta(minutes=window_minutes)
        self._threshold = threshold
        self._clock = clock
        self._failed_attempts: dict[str, list[datetime]] = defaultdict(list)
        self._lockout_until: dict[str, datetime] = {}
        self._lock = threading.Lock()

    def check(self, email: str) -> None:
        """
        Enforce lockout before an authentication attempt.

        Raises:
            RateLimitExceeded: Address is locked out
        """
        key = email.lower()
        now = self._clock()
        with self._lock:
            until = self._lockout_until.get(key)
            if until and now < until:
                remaining = int((until - now).total_seconds()) + 1
                raise RateLimitExceeded(
                    f"Too many failed login attempts. Try again in {remaining} seconds.",
                    retry_after=remaining,
                )

            cutoff = now - self._window
            attempts = [a for a in self._failed_attempts.get(key, []) if a > cutoff]
            if attempts:
                self._failed_attempts[key] = attempts
            else:
                self._failed_attempts.pop(key, None)

            if len(attempts) >= self._threshold:
                lockout_minutes = 2 ** min(len(attempts) - (self._threshold - 1), MAX_LOCKOUT_EXPONENT)
                self._lockout_until[key] = now + timedelta(minutes=lockout_minutes)
                logger.warning(
                    f"Login locked out for user {hash_email(key)}: "
                    f"{len(attempts)} failed attempts, {lockout_minutes} minutes"
                )
                raise RateLimitExceeded(
                    f"Too many failed login attempts. Locked out for {lockout_minutes} minutes.",
                    retry_after=lockout_minutes * 60,
                )

    def record_failure(self, email: str) -> None:
        with self._lock:
            self._failed_attempts[email.lower()].append(self._clock())

    def record_success(self, email: str) -> None:
        key = email.lower()
        with self._lock:
            self._failed_attempts.pop(key, None)
            self._lockout_until.pop(key, None)

    def failure_count(self, email: str) -> int:
        with self._lock:
            return len(self._failed_attempts.get(email.lower(), []))
