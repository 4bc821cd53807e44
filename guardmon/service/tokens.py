from __future__ import annotations

import hmac
import json
import secrets
from datetime import timedelta
from typing import Optional

from guardmon.logging import get_logger
from guardmon.service.errors import TokenIssueFailure
from guardmon.storage.cache import TokenCache
from guardmon.storage.models import Clock, SessionRecord, parse_timestamp, utc_now

logger = get_logger(__name__)


def _session_key(token: str) -> str:
    return f"session:{token}"


def _csrf_key(username: str) -> str:
    # Per-user key so a new CSRF token replaces the old one; lookups are case-insensitive
    return f"csrf:{username.casefold()}"


class TokenService:
    """Issue and validate opaque session and CSRF tokens held in a ``TokenCache``."""

    def __init__(
        self,
        cache: TokenCache,
        *,
        session_ttl: timedelta = timedelta(minutes=360),
        csrf_ttl: timedelta = timedelta(minutes=60),
        clock: Clock = utc_now,
    ) -> None:
        self.cache = cache
        self.session_ttl = session_ttl
        self.csrf_ttl = csrf_ttl
        self._clock = clock

    @staticmethod
    def _ttl_seconds(ttl: timedelta) -> int:
        return max(1, int(ttl.total_seconds()))

    async def issue_session(self, username: str) -> str:
        token = secrets.token_urlsafe(32)
        payload = json.dumps(
            {"username": username, "issued_at": self._clock().isoformat()}
        )
        try:
            await self.cache.put(_session_key(token), payload, self._ttl_seconds(self.session_ttl))
        except Exception as exc:
            logger.error("session_issue_failed", username=username, error=str(exc))
            raise TokenIssueFailure(
                "session token could not be stored", detail={"username": username}
            ) from exc
        return token

    async def issue_csrf(self, username: str) -> str:
        token = secrets.token_urlsafe(32)
        try:
            await self.cache.put(_csrf_key(username), token, self._ttl_seconds(self.csrf_ttl))
        except Exception as exc:
            logger.error("csrf_issue_failed", username=username, error=str(exc))
            raise TokenIssueFailure(
                "csrf token could not be stored", detail={"username": username}
            ) from exc
        return token

    async def validate_session(self, token: Optional[str]) -> Optional[SessionRecord]:
        if not token or not isinstance(token, str):
            return None
        try:
            raw = await self.cache.get(_session_key(token))
        except Exception as exc:
            logger.error("session_lookup_failed", error=str(exc))
            return None
        if raw is None:
            return None
        try:
            data = json.loads(raw)
            username = data["username"]
            issued_at = parse_timestamp(data.get("issued_at"))
        except (ValueError, KeyError, TypeError) as exc:
            logger.warning("session_payload_malformed", error=str(exc))
            return None
        if not username or issued_at is None:
            return None
        return SessionRecord(token=token, username=username, issued_at=issued_at)

    async def validate_csrf(self, username: Optional[str], token: Optional[str]) -> bool:
        if not username or not token:
            return False
        try:
            stored = await self.cache.get(_csrf_key(username))
        except Exception as exc:
            logger.error("csrf_lookup_failed", username=username, error=str(exc))
            return False
        if not stored:
            return False
        return hmac.compare_digest(stored.encode("utf-8"), token.encode("utf-8"))

    async def invalidate_session(self, token: Optional[str]) -> None:
        if not token:
            return
        try:
            await self.cache.remove(_session_key(token))
        except Exception as exc:
            logger.error("session_invalidate_failed", error=str(exc))

    async def revoke_csrf(self, username: str) -> None:
        try:
            await self.cache.remove(_csrf_key(username))
        except Exception as exc:
            logger.error("csrf_revoke_failed", username=username, error=str(exc))
