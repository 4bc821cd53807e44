from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from guardmon.config import Settings
from guardmon.logging import get_logger, set_correlation_id
from guardmon.service.errors import (
    AccountInactive,
    AccountLocked,
    InvalidCredential,
    TokenIssueFailure,
)
from guardmon.service.lockout import LockoutPolicy
from guardmon.service.passwords import PasswordHasher
from guardmon.service.tokens import TokenService
from guardmon.storage.models import Clock, Role, UserAccount, utc_now

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
INACTIVE_MESSAGE = "Account is inactive. Please contact administrator."
LOGIN_SUCCESS = "Login successful!"
LOGIN_FAILED = "Authentication failed. Please try again."
TOKEN_ISSUE_MESSAGE = "Login succeeded but a session could not be started. Please try again."


def _plural(count: int, noun: str) -> str:
    return f"{count} {noun}{'' if count == 1 else 's'}"


def locked_message(minutes: int) -> str:
    return (
        "Account locked due to multiple failed login attempts. "
        f"Try again in {_plural(minutes, 'minute')}."
    )


def remaining_message(attempts: int) -> str:
    return f"{INVALID_CREDENTIALS}. {_plural(attempts, 'attempt')} remaining."


class LoginStatus(str, Enum):
    SUCCESS = "success"
    INVALID_CREDENTIALS = "invalid_credentials"
    ACCOUNT_INACTIVE = "account_inactive"
    ACCOUNT_LOCKED = "account_locked"
    TOKEN_ISSUE_FAILED = "token_issue_failed"
    ERROR = "error"


@dataclass
class LoginResult:
    status: LoginStatus
    success: bool
    message: str
    user: Optional[Dict[str, str]] = None
    session_token: str = ""
    csrf_token: str = ""
    force_password_change: bool = False
    minutes_remaining: Optional[int] = None
    attempts_remaining: Optional[int] = None

    @classmethod
    def failure(cls, status: LoginStatus, message: str, **kwargs: Any) -> "LoginResult":
        return cls(status=status, success=False, message=message, **kwargs)

    def as_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "status": self.status.value,
            "success": self.success,
            "message": self.message,
        }
        if self.user is not None:
            payload["user"] = dict(self.user)
            payload["session_token"] = self.session_token
            payload["csrf_token"] = self.csrf_token
            payload["force_password_change"] = self.force_password_change
        if self.minutes_remaining is not None:
            payload["minutes_remaining"] = self.minutes_remaining
        if self.attempts_remaining is not None:
            payload["attempts_remaining"] = self.attempts_remaining
        return payload


@dataclass
class AuthContext:
    user_id: str
    username: str
    role: Role
    session_token: str
    profile: Dict[str, str] = field(default_factory=dict)

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


class AuthService:
    """Login state machine over the store, lockout policy, hasher and token cache.

    Every outcome of ``authenticate`` is reported through ``LoginResult``;
    nothing on the login path raises to the caller. Auditing logins is left
    to the calling flow.
    """

    def __init__(
        self,
        store,
        tokens: TokenService,
        hasher: PasswordHasher,
        lockout: LockoutPolicy,
        settings: Settings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.tokens = tokens
        self.hasher = hasher
        self.lockout = lockout
        self.settings = settings
        self._clock = clock

    def _valid_input(self, username: Any, password: Any) -> bool:
        if not isinstance(username, str) or not isinstance(password, str):
            return False
        if not username.strip() or not password:
            return False
        if len(username) > self.settings.max_username_length:
            return False
        return len(password) <= self.settings.max_password_length

    async def authenticate(self, username: Any, password: Any) -> LoginResult:
        set_correlation_id()
        try:
            return await self._authenticate(username, password)
        except AccountInactive as exc:
            return LoginResult.failure(LoginStatus.ACCOUNT_INACTIVE, exc.message)
        except AccountLocked as exc:
            return LoginResult.failure(
                LoginStatus.ACCOUNT_LOCKED,
                exc.message,
                minutes_remaining=exc.minutes_remaining,
            )
        except InvalidCredential as exc:
            return LoginResult.failure(
                LoginStatus.INVALID_CREDENTIALS,
                exc.message,
                attempts_remaining=exc.attempts_remaining,
            )
        except Exception as exc:
            logger.error(
                "authentication_error", error_type=type(exc).__name__, error=str(exc)
            )
            return LoginResult.failure(LoginStatus.ERROR, LOGIN_FAILED)

    async def _authenticate(self, username: Any, password: Any) -> LoginResult:
        if not self._valid_input(username, password):
            logger.info("login_rejected_invalid_input")
            raise InvalidCredential(INVALID_CREDENTIALS)
        account = self.store.get_account_by_username(username)
        if account is None:
            logger.info("login_unknown_user", username=username)
            raise InvalidCredential(INVALID_CREDENTIALS)
        if not account.is_active:
            logger.info("login_inactive_account", username=account.username)
            raise AccountInactive(INACTIVE_MESSAGE)

        now = self._clock()
        account = self.lockout.clear_expired(account, now)
        minutes = self.lockout.minutes_remaining(account, now)
        if minutes is not None:
            logger.info("login_while_locked", username=account.username, minutes_remaining=minutes)
            raise AccountLocked(locked_message(minutes), minutes_remaining=minutes)

        if not self.hasher.verify(password, account.password_hash):
            decision = self.lockout.register_failure(account, now)
            logger.info(
                "login_failed",
                username=account.username,
                attempts_remaining=decision.attempts_remaining,
            )
            if decision.locked:
                raise AccountLocked(
                    locked_message(self.lockout.lockout_minutes),
                    minutes_remaining=self.lockout.lockout_minutes,
                )
            raise InvalidCredential(
                remaining_message(decision.attempts_remaining),
                attempts_remaining=decision.attempts_remaining,
            )

        account = self.lockout.register_success(account)
        account = self._maybe_rehash(account, password)
        return await self._start_session(account)

    def _maybe_rehash(self, account: UserAccount, password: str) -> UserAccount:
        if not self.hasher.needs_rehash(account.password_hash):
            return account
        try:
            updated = self.store.update_account_fields(
                account.id, password_hash=self.hasher.hash(password)
            )
        except Exception as exc:
            logger.warning("password_rehash_failed", username=account.username, error=str(exc))
            return account
        logger.info("password_rehashed", username=account.username, scheme=self.hasher.scheme.value)
        return updated or account

    async def _start_session(self, account: UserAccount) -> LoginResult:
        session_token: Optional[str] = None
        try:
            session_token = await self.tokens.issue_session(account.username)
            csrf_token = await self.tokens.issue_csrf(account.username)
        except TokenIssueFailure as exc:
            logger.error("login_token_issue_failed", username=account.username, error=exc.message)
            if session_token:
                # A failed login must not leave a usable session behind
                await self.tokens.invalidate_session(session_token)
            return LoginResult.failure(
                LoginStatus.TOKEN_ISSUE_FAILED,
                TOKEN_ISSUE_MESSAGE,
                user=account.profile(),
                force_password_change=account.force_password_change,
            )
        logger.info("login_succeeded", username=account.username)
        return LoginResult(
            status=LoginStatus.SUCCESS,
            success=True,
            message=LOGIN_SUCCESS,
            user=account.profile(),
            session_token=session_token,
            csrf_token=csrf_token,
            force_password_change=account.force_password_change,
        )

    async def logout(self, session_token: Optional[str]) -> Optional[str]:
        """Invalidate a session and its owner's CSRF token; returns the username if known."""
        record = await self.tokens.validate_session(session_token)
        await self.tokens.invalidate_session(session_token)
        if record is None:
            return None
        await self.tokens.revoke_csrf(record.username)
        logger.info("logout", username=record.username)
        return record.username

    async def resolve_session(
        self,
        session_token: Optional[str],
        *,
        csrf_token: Optional[str] = None,
        required_role: Optional[Role] = None,
    ) -> Optional[AuthContext]:
        record = await self.tokens.validate_session(session_token)
        if record is None:
            return None
        try:
            account = self.store.get_account_by_username(record.username)
        except Exception as exc:
            logger.error("session_account_lookup_failed", error=str(exc))
            return None
        if account is None or not account.is_active:
            logger.info("session_account_unavailable", username=record.username)
            return None
        if csrf_token is not None and not await self.tokens.validate_csrf(account.username, csrf_token):
            logger.warning("csrf_validation_failed", username=account.username)
            return None
        if required_role is not None and account.role != Role(required_role):
            logger.warning(
                "session_role_denied", username=account.username, required_role=Role(required_role).value
            )
            return None
        return AuthContext(
            user_id=account.id,
            username=account.username,
            role=account.role,
            session_token=record.token,
            profile=account.profile(),
        )
