from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Optional, Protocol, Sequence

from guardmon.config import Settings
from guardmon.logging import get_logger
from guardmon.service.audit import AuditAction, AuditLogger
from guardmon.service.errors import (
    InvalidCredential,
    PasswordReused,
    PermissionDenied,
    StorageFailure,
    ValidationError,
)
from guardmon.service.passwords import PasswordHasher, validate_password_strength
from guardmon.storage.errors import ConstraintViolation, StoreUnavailable
from guardmon.storage.models import AccountStatus, Clock, Role, UserAccount, utc_now

logger = get_logger(__name__)

_UNSAFE_CHARS = re.compile(r"[<>\"']")

PASSWORD_REUSED_MESSAGE = "Password was used recently. Please choose a different password."
USERNAME_TAKEN_MESSAGE = "Username already exists"


class AccountStore(Protocol):
    def get_account(self, user_id: str) -> Optional[UserAccount]: ...

    def get_account_by_username(self, username: str) -> Optional[UserAccount]: ...

    def list_accounts(self) -> List[UserAccount]: ...

    def create_account(
        self,
        username: str,
        password_hash: str,
        full_name: str,
        *,
        role: Role = Role.VIEWER,
        status: AccountStatus = AccountStatus.ACTIVE,
        password_history: Optional[Sequence[str]] = None,
        force_password_change: bool = False,
        created_at: Optional[datetime] = None,
    ) -> UserAccount: ...

    def update_account_fields(self, user_id: str, **fields: Any) -> Optional[UserAccount]: ...

    def increment_failed_attempts(self, user_id: str, at: datetime) -> int: ...


def sanitize_input(value: Any, max_length: int = 255) -> str:
    """Trim, drop markup-significant characters and truncate to ``max_length``."""
    if value is None:
        return ""
    cleaned = _UNSAFE_CHARS.sub("", str(value).strip())
    return cleaned[:max_length]


class AccountService:
    """Provisioning and password lifecycle for user accounts.

    Mutations by an administrator are audited; a failed audit write never
    undoes the mutation.
    """

    def __init__(
        self,
        store: AccountStore,
        hasher: PasswordHasher,
        audit: AuditLogger,
        settings: Settings,
        *,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.hasher = hasher
        self.audit = audit
        self.settings = settings
        self._clock = clock

    def is_admin(self, username: Optional[str]) -> bool:
        if not username:
            return False
        try:
            account = self.store.get_account_by_username(username)
        except Exception as exc:
            logger.error("admin_check_failed", username=username, error=str(exc))
            return False
        return bool(account and account.is_active and account.is_admin)

    def _require_admin(self, actor: Optional[str]) -> None:
        if not self.is_admin(actor):
            logger.warning("admin_required", actor=actor)
            raise PermissionDenied("Permission denied. Admin access required.")

    def _clean_username(self, username: Any) -> str:
        cleaned = sanitize_input(username, self.settings.max_username_length)
        if not cleaned:
            raise ValidationError("Missing required fields", detail={"field": "username"})
        return cleaned

    def _push_history(self, account: UserAccount, new_hash: str) -> List[str]:
        history = [new_hash, *account.password_history]
        return history[: self.settings.password_history_count]

    def _check_reuse(self, account: UserAccount, password: str) -> None:
        recent = [account.password_hash, *account.password_history[: self.settings.password_history_count]]
        if self.hasher.matches_any(password, recent):
            raise PasswordReused(PASSWORD_REUSED_MESSAGE)

    def _validate_strength(self, password: Optional[str]) -> None:
        validate_password_strength(
            password,
            min_length=self.settings.min_password_length,
            max_length=self.settings.max_password_length,
        )

    def create_account(
        self,
        actor: Optional[str],
        *,
        username: str,
        password: str,
        full_name: str,
        role: Role | str,
        status: AccountStatus | str = AccountStatus.ACTIVE,
    ) -> UserAccount:
        self._require_admin(actor)
        if not username or not password or not full_name or not role:
            raise ValidationError("Missing required fields")
        self._validate_strength(password)
        try:
            role = Role(role)
            status = AccountStatus(status)
        except ValueError as exc:
            raise ValidationError("Invalid user data", detail={"error": str(exc)}) from exc
        clean_username = self._clean_username(username)
        clean_name = sanitize_input(full_name, self.settings.max_string_length)
        digest = self.hasher.hash(password)
        try:
            account = self.store.create_account(
                clean_username,
                digest,
                clean_name,
                role=role,
                status=status,
                password_history=[digest],
                force_password_change=self.settings.force_password_change_on_first_login,
                created_at=self._clock(),
            )
        except ConstraintViolation as exc:
            raise ValidationError(USERNAME_TAKEN_MESSAGE, detail=exc.detail) from exc
        except StoreUnavailable as exc:
            raise StorageFailure("System error. Please contact administrator.") from exc
        logger.info("account_created", username=account.username, role=account.role.value)
        self.audit.record(actor, AuditAction.ADD, "User", account.username, f"Role: {account.role.value}")
        return account

    def list_accounts(self, actor: Optional[str]) -> List[Dict[str, str]]:
        """Account summaries for administrators; password material is never included."""
        self._require_admin(actor)
        try:
            accounts = self.store.list_accounts()
        except StoreUnavailable as exc:
            raise StorageFailure("System error. Please contact administrator.") from exc
        return [
            {
                "id": account.id,
                **account.profile(),
                "status": account.status.value,
                "created_at": account.created_at.isoformat(),
            }
            for account in accounts
        ]

    def update_account(
        self,
        actor: Optional[str],
        user_id: str,
        *,
        username: Optional[str] = None,
        full_name: Optional[str] = None,
        role: Role | str | None = None,
        status: AccountStatus | str | None = None,
        password: Optional[str] = None,
    ) -> UserAccount:
        self._require_admin(actor)
        try:
            account = self.store.get_account(user_id)
        except StoreUnavailable as exc:
            raise StorageFailure("System error. Please contact administrator.") from exc
        if account is None:
            raise ValidationError("User not found", detail={"user_id": user_id})

        fields: dict = {}
        if username is not None:
            fields["username"] = self._clean_username(username)
        if full_name is not None:
            fields["full_name"] = sanitize_input(full_name, self.settings.max_string_length)
        try:
            if role is not None:
                fields["role"] = Role(role)
            if status is not None:
                fields["status"] = AccountStatus(status)
        except ValueError as exc:
            raise ValidationError("Invalid user data", detail={"error": str(exc)}) from exc
        if password is not None and password.strip():
            self._validate_strength(password)
            self._check_reuse(account, password)
            digest = self.hasher.hash(password)
            fields["password_hash"] = digest
            fields["password_history"] = self._push_history(account, digest)
            fields["force_password_change"] = self.settings.force_password_change_on_first_login

        try:
            updated = self.store.update_account_fields(user_id, **fields)
        except ConstraintViolation as exc:
            raise ValidationError(USERNAME_TAKEN_MESSAGE, detail=exc.detail) from exc
        except StoreUnavailable as exc:
            raise StorageFailure("System error. Please contact administrator.") from exc
        if updated is None:
            raise ValidationError("User not found", detail={"user_id": user_id})
        changed = ", ".join(sorted(name for name in fields if name != "password_history"))
        logger.info("account_updated", username=updated.username, fields=changed)
        self.audit.record(actor, AuditAction.UPDATE, "User", updated.username, f"Changed: {changed}")
        return updated

    def change_password(self, username: str, current_password: str, new_password: str) -> UserAccount:
        try:
            account = self.store.get_account_by_username(username or "")
        except StoreUnavailable as exc:
            raise StorageFailure("System error. Please contact administrator.") from exc
        if account is None:
            raise ValidationError("User not found")
        if not self.hasher.verify(current_password, account.password_hash):
            raise InvalidCredential("Current password is incorrect")
        self._validate_strength(new_password)
        self._check_reuse(account, new_password)

        digest = self.hasher.hash(new_password)
        try:
            updated = self.store.update_account_fields(
                account.id,
                password_hash=digest,
                password_history=self._push_history(account, digest),
                force_password_change=False,
            )
        except StoreUnavailable as exc:
            raise StorageFailure("System error. Please contact administrator.") from exc
        logger.info("password_changed", username=account.username)
        self.audit.record(account.username, AuditAction.UPDATE, "Password", account.username, "Password changed")
        return updated or account

    def ensure_default_admin(
        self, *, username: Optional[str] = None, password: Optional[str] = None
    ) -> Optional[UserAccount]:
        """Create the bootstrap administrator when the store has no accounts yet."""
        if self.store.list_accounts():
            return None
        username = username or self.settings.default_admin_username
        password = password or self.settings.default_admin_password
        self._validate_strength(password)
        digest = self.hasher.hash(password)
        account = self.store.create_account(
            username,
            digest,
            self.settings.default_admin_full_name,
            role=Role.ADMIN,
            status=AccountStatus.ACTIVE,
            password_history=[digest],
            force_password_change=True,
            created_at=self._clock(),
        )
        logger.info("default_admin_created", username=account.username)
        self.audit.record(None, AuditAction.ADD, "User", account.username, "Default administrator")
        return account
