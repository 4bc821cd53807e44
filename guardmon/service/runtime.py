from __future__ import annotations

import asyncio
import threading
from datetime import timedelta
from typing import List, Optional
from urllib.parse import urlparse, urlunparse

from guardmon.config import Settings, get_settings, reset_settings_cache
from guardmon.logging import get_logger
from guardmon.service.accounts import AccountService
from guardmon.service.audit import AuditLogger
from guardmon.service.auth import AuthService, LoginResult
from guardmon.service.lockout import LockoutPolicy
from guardmon.service.passwords import PasswordHasher
from guardmon.service.tokens import TokenService
from guardmon.storage.cache import MemoryCache, RedisCache
from guardmon.storage.memory import MemoryStore
from guardmon.storage.models import AuditEvent, Clock, utc_now
from guardmon.storage.postgres import PostgresStore

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:secret@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        netloc = f"{parsed.username or ''}:***@{netloc}"
        return urlunparse(parsed._replace(netloc=netloc))
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds the store, token cache and services for one process."""

    def __init__(self, settings: Optional[Settings] = None, *, clock: Clock = utc_now):
        self.settings = settings or get_settings()
        self.clock = clock
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        store_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            if self.settings.use_memory_store:
                self.store = MemoryStore(fs_root=self.settings.shared_fs_root)
            else:
                self.store = PostgresStore(self.settings.database_url)
            logger.info("runtime_store_initialized", store_type=store_type)
        except Exception as exc:
            logger.error(
                "runtime_store_init_failed",
                store_type=store_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache = self._build_cache()

        self.hasher = PasswordHasher(self.settings.password_hash_scheme)
        self.lockout = LockoutPolicy(
            self.store,
            max_attempts=self.settings.max_login_attempts,
            lockout_duration=timedelta(minutes=self.settings.lockout_duration_minutes),
        )
        self.tokens = TokenService(
            self.cache,
            session_ttl=timedelta(minutes=self.settings.session_timeout_minutes),
            csrf_ttl=timedelta(minutes=self.settings.csrf_token_ttl_minutes),
            clock=clock,
        )
        self.audit = AuditLogger(
            self.store, clock=clock, retention_days=self.settings.audit_retention_days
        )
        self.auth = AuthService(
            self.store, self.tokens, self.hasher, self.lockout, self.settings, clock=clock
        )
        self.accounts = AccountService(
            self.store, self.hasher, self.audit, self.settings, clock=clock
        )
        logger.info("runtime_init_completed", cache_type=type(self.cache).__name__)

    def _build_cache(self):
        if self.settings.use_memory_cache:
            return MemoryCache(self.clock)
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                return cache
            except Exception as exc:
                redis_error = exc
        if not self.settings.test_mode:
            raise RuntimeError(
                "Redis is required for session and CSRF tokens; start Redis or set "
                "USE_MEMORY_CACHE=true or TEST_MODE=true for the in-process cache."
            ) from redis_error
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=str(redis_error) if redis_error else "redis_url_missing",
            message="Running without Redis under TEST_MODE; tokens are in-memory only.",
        )
        return MemoryCache(self.clock)

    def close(self) -> None:
        if isinstance(self.cache, RedisCache):
            try:
                loop = asyncio.get_running_loop()
                loop.create_task(self.cache.close())
            except RuntimeError:
                asyncio.run(self.cache.close())
        close_store = getattr(self.store, "close", None)
        if callable(close_store):
            close_store()


runtime: Optional[Runtime] = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton (double-checked locking)."""
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton from a fresh settings read."""
    global runtime
    with _runtime_lock:
        if runtime is not None:
            try:
                runtime.close()
            except Exception as exc:
                logger.warning("runtime_close_failed", error=str(exc))
        reset_settings_cache()
        runtime = Runtime()
        return runtime


async def authenticate(username: str, password: str) -> LoginResult:
    return await get_runtime().auth.authenticate(username, password)


def hash_password(password: str) -> str:
    return get_runtime().hasher.hash(password)


def verify_password(password: str, digest: str) -> bool:
    return get_runtime().hasher.verify(password, digest)


def record_audit_event(
    actor: Optional[str],
    action: str,
    target_type: str,
    target_name: str,
    details: str = "",
) -> Optional[AuditEvent]:
    return get_runtime().audit.record(actor, action, target_type, target_name, details)


def recent_audit_events(limit: int = 10) -> List[AuditEvent]:
    return get_runtime().audit.recent(limit)
