from __future__ import annotations

import json
import threading
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

from guardmon.logging import get_logger
from guardmon.storage.common import generate_account_id
from guardmon.storage.errors import ConstraintViolation
from guardmon.storage.models import (
    ACCOUNT_MUTABLE_FIELDS,
    AccountStatus,
    AuditEvent,
    Role,
    UserAccount,
    parse_timestamp,
    utc_now,
)


class MemoryStore:
    """In-memory backing store for accounts and the audit trail.

    When ``fs_root`` is given every mutation is snapshotted to
    ``<fs_root>/state/guardmon_store.json`` and reloaded on construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, UserAccount] = {}
        self.audit_rows: List[Dict[str, Any]] = []
        self.audit_archive: Dict[str, List[Dict[str, Any]]] = {}
        # RLock so nested helpers can re-enter within one thread
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "guardmon_store.json"

    @staticmethod
    def _copy(account: UserAccount) -> UserAccount:
        return replace(account, password_history=list(account.password_history))

    def _find_by_username(
        self, username: str, *, exclude_id: Optional[str] = None
    ) -> Optional[UserAccount]:
        wanted = username.casefold()
        for account in self.accounts.values():
            if account.id == exclude_id:
                continue
            if account.username.casefold() == wanted:
                return account
        return None

    # accounts
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
    ) -> UserAccount:
        with self._data_lock:
            if self._find_by_username(username):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            account = UserAccount(
                id=generate_account_id(),
                username=username,
                password_hash=password_hash,
                full_name=full_name,
                role=Role(role),
                status=AccountStatus(status),
                created_at=created_at or utc_now(),
                password_history=list(password_history or []),
                force_password_change=force_password_change,
            )
            self.accounts[account.id] = account
            self._persist_state()
            return self._copy(account)

    def get_account(self, user_id: str) -> Optional[UserAccount]:
        with self._data_lock:
            account = self.accounts.get(user_id)
            return self._copy(account) if account else None

    def get_account_by_username(self, username: str) -> Optional[UserAccount]:
        with self._data_lock:
            account = self._find_by_username(username)
            return self._copy(account) if account else None

    def list_accounts(self) -> List[UserAccount]:
        with self._data_lock:
            results = sorted(self.accounts.values(), key=lambda a: a.created_at)
            return [self._copy(a) for a in results]

    def update_account_fields(self, user_id: str, **fields: Any) -> Optional[UserAccount]:
        unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation(
                "unknown account fields", {"fields": sorted(unknown)}
            )
        with self._data_lock:
            account = self.accounts.get(user_id)
            if not account:
                return None
            new_username = fields.get("username")
            if new_username and self._find_by_username(new_username, exclude_id=user_id):
                raise ConstraintViolation(
                    "username already exists", {"field": "username"}
                )
            if "role" in fields:
                fields["role"] = Role(fields["role"])
            if "status" in fields:
                fields["status"] = AccountStatus(fields["status"])
            if "password_history" in fields:
                fields["password_history"] = list(fields["password_history"])
            for name, value in fields.items():
                setattr(account, name, value)
            self._persist_state()
            return self._copy(account)

    def increment_failed_attempts(self, user_id: str, at: datetime) -> int:
        with self._data_lock:
            account = self.accounts.get(user_id)
            if not account:
                raise ConstraintViolation("account not found", {"user_id": user_id})
            account.failed_attempts += 1
            account.last_failed_at = at
            self._persist_state()
            return account.failed_attempts

    # audit trail
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._data_lock:
            self.audit_rows.append(event.to_row())
            self._persist_state()

    def list_audit_rows(self) -> List[Dict[str, Any]]:
        with self._data_lock:
            return [dict(row) for row in self.audit_rows]

    def archive_audit_events(self, cutoff: datetime, partition: str) -> int:
        with self._data_lock:
            keep: List[Dict[str, Any]] = []
            moved: List[Dict[str, Any]] = []
            for row in self.audit_rows:
                try:
                    ts = parse_timestamp(row.get("timestamp"))
                except (TypeError, ValueError):
                    ts = None
                if ts is not None and ts < cutoff:
                    moved.append(row)
                else:
                    keep.append(row)
            if moved:
                self.audit_archive.setdefault(partition, []).extend(moved)
                self.audit_rows = keep
                self._persist_state()
            return len(moved)

    def list_archived_audit_rows(self, partition: str) -> List[Dict[str, Any]]:
        with self._data_lock:
            return [dict(row) for row in self.audit_archive.get(partition, [])]

    # snapshot
    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "accounts": [self._serialize_account(a) for a in self.accounts.values()],
            "audit_trail": self.audit_rows,
            "audit_archive": self.audit_archive,
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.accounts = {
            a["id"]: self._deserialize_account(a) for a in data.get("accounts", [])
        }
        self.audit_rows = [
            row for row in data.get("audit_trail", []) if isinstance(row, dict)
        ]
        self.audit_archive = {
            name: list(rows)
            for name, rows in (data.get("audit_archive") or {}).items()
        }
        self.logger.info(
            "memory_store_loaded",
            accounts=len(self.accounts),
            audit_rows=len(self.audit_rows),
        )
        return True

    @staticmethod
    def _serialize_optional_dt(value: Optional[datetime]) -> Optional[str]:
        return value.isoformat() if value else None

    def _serialize_account(self, account: UserAccount) -> dict:
        return {
            "id": account.id,
            "username": account.username,
            "password_hash": account.password_hash,
            "full_name": account.full_name,
            "role": account.role.value,
            "status": account.status.value,
            "created_at": account.created_at.isoformat(),
            "failed_attempts": account.failed_attempts,
            "last_failed_at": self._serialize_optional_dt(account.last_failed_at),
            "locked_until": self._serialize_optional_dt(account.locked_until),
            "password_history": list(account.password_history),
            "force_password_change": account.force_password_change,
        }

    def _deserialize_account(self, data: dict) -> UserAccount:
        return UserAccount(
            id=str(data["id"]),
            username=data["username"],
            password_hash=data.get("password_hash", ""),
            full_name=data.get("full_name", ""),
            role=Role(data.get("role", Role.VIEWER.value)),
            status=AccountStatus(data.get("status", AccountStatus.ACTIVE.value)),
            created_at=parse_timestamp(data.get("created_at")) or utc_now(),
            failed_attempts=int(data.get("failed_attempts") or 0),
            last_failed_at=parse_timestamp(data.get("last_failed_at")),
            locked_until=parse_timestamp(data.get("locked_until")),
            password_history=list(data.get("password_history") or []),
            force_password_change=bool(data.get("force_password_change", False)),
        )
