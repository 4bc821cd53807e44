from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from guardmon.logging import get_logger
from guardmon.storage.models import UserAccount

logger = get_logger(__name__)


@dataclass(frozen=True)
class LockoutDecision:
    locked: bool
    attempts_remaining: int
    locked_until: Optional[datetime] = None


class LockoutPolicy:
    """Brute-force lockout over consecutive failed logins.

    States: unlocked with ``failed_attempts`` in ``[0, max_attempts)``, or
    locked until ``locked_until``. Expired locks are cleared lazily on the
    next attempt; nothing sweeps them in the background.
    """

    def __init__(
        self,
        store,
        *,
        max_attempts: int = 5,
        lockout_duration: timedelta = timedelta(minutes=15),
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.store = store
        self.max_attempts = max_attempts
        self.lockout_duration = lockout_duration

    @property
    def lockout_minutes(self) -> int:
        return math.ceil(self.lockout_duration.total_seconds() / 60)

    @staticmethod
    def minutes_remaining(account: UserAccount, now: datetime) -> Optional[int]:
        if account.locked_until is None or now >= account.locked_until:
            return None
        return math.ceil((account.locked_until - now).total_seconds() / 60)

    def clear_expired(self, account: UserAccount, now: datetime) -> UserAccount:
        if account.locked_until is None or now < account.locked_until:
            return account
        updated = self.store.update_account_fields(
            account.id, failed_attempts=0, last_failed_at=None, locked_until=None
        )
        logger.info("account_lock_expired", username=account.username)
        return updated or account

    def register_failure(self, account: UserAccount, now: datetime) -> LockoutDecision:
        attempts = self.store.increment_failed_attempts(account.id, now)
        if attempts >= self.max_attempts:
            locked_until = now + self.lockout_duration
            self.store.update_account_fields(account.id, locked_until=locked_until)
            logger.warning(
                "account_locked",
                username=account.username,
                failed_attempts=attempts,
                locked_until=locked_until.isoformat(),
            )
            return LockoutDecision(locked=True, attempts_remaining=0, locked_until=locked_until)
        return LockoutDecision(locked=False, attempts_remaining=self.max_attempts - attempts)

    def register_success(self, account: UserAccount) -> UserAccount:
        if not account.failed_attempts and account.last_failed_at is None and account.locked_until is None:
            return account
        updated = self.store.update_account_fields(
            account.id, failed_attempts=0, last_failed_at=None, locked_until=None
        )
        return updated or account
