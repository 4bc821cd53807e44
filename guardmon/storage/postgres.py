from __future__ import annotations

import contextlib
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Sequence

import psycopg
from psycopg import errors, sql
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from guardmon.logging import get_logger
from guardmon.storage.common import generate_account_id, safe_row_value
from guardmon.storage.errors import ConstraintViolation, StoreUnavailable
from guardmon.storage.models import (
    ACCOUNT_MUTABLE_FIELDS,
    AccountStatus,
    AuditEvent,
    Role,
    UserAccount,
    parse_timestamp,
    utc_now,
)

_AUDIT_COLUMNS = (
    "audit_id, occurred_at AS timestamp, actor, action, target_type, target_name, details"
)


class PostgresStore:
    """Postgres-backed account and audit-trail store.

    Table DDL lives in ``sql/schema.sql``; this class only verifies it exists.
    """

    REQUIRED_TABLES = ("user_account", "audit_event", "audit_event_archive")

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[psycopg.Connection]:
        """Pooled connection that commits on success and maps driver errors."""
        try:
            with self.pool.connection() as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "username already exists", {"field": "username"}
            ) from exc
        except psycopg.Error as exc:
            self.logger.error(
                "postgres_statement_failed", error_type=type(exc).__name__, error=str(exc)
            )
            raise StoreUnavailable(str(exc)) from exc

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT table_name FROM information_schema.tables WHERE table_name = ANY(%s)",
                (list(self.REQUIRED_TABLES),),
            ).fetchall()
        present = {row["table_name"] for row in rows}
        missing = [name for name in self.REQUIRED_TABLES if name not in present]
        if missing:
            raise RuntimeError(
                f"Missing required tables: {', '.join(missing)}; apply sql/schema.sql"
            )

    def _row_to_account(self, row: Dict[str, Any]) -> UserAccount:
        history = safe_row_value(row, "password_history") or []
        return UserAccount(
            id=str(row["id"]),
            username=row["username"],
            password_hash=row.get("password_hash") or "",
            full_name=row.get("full_name") or "",
            role=Role(row.get("role") or Role.VIEWER.value),
            status=AccountStatus(row.get("status") or AccountStatus.ACTIVE.value),
            created_at=parse_timestamp(row.get("created_at")) or utc_now(),
            failed_attempts=int(row.get("failed_attempts") or 0),
            last_failed_at=parse_timestamp(row.get("last_failed_at")),
            locked_until=parse_timestamp(row.get("locked_until")),
            password_history=[str(h) for h in history],
            force_password_change=bool(row.get("force_password_change")),
        )

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
        # Uniqueness is enforced by the lower(username) index
        with self._connect() as conn:
            row = conn.execute(
                """
                INSERT INTO user_account (
                    id, username, password_hash, full_name, role, status, created_at,
                    failed_attempts, password_history, force_password_change
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, 0, %s, %s)
                RETURNING *
                """,
                (
                    generate_account_id(),
                    username,
                    password_hash,
                    full_name,
                    Role(role).value,
                    AccountStatus(status).value,
                    created_at or utc_now(),
                    Jsonb(list(password_history or [])),
                    force_password_change,
                ),
            ).fetchone()
        return self._row_to_account(row)

    def get_account(self, user_id: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_account(row) if row else None

    def get_account_by_username(self, username: str) -> Optional[UserAccount]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM user_account WHERE lower(username) = lower(%s)",
                (username,),
            ).fetchone()
        return self._row_to_account(row) if row else None

    def list_accounts(self) -> List[UserAccount]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM user_account ORDER BY created_at"
            ).fetchall()
        return [self._row_to_account(row) for row in rows]

    def update_account_fields(self, user_id: str, **fields: Any) -> Optional[UserAccount]:
        unknown = set(fields) - ACCOUNT_MUTABLE_FIELDS
        if unknown:
            raise ConstraintViolation(
                "unknown account fields", {"fields": sorted(unknown)}
            )
        if not fields:
            return self.get_account(user_id)
        values: List[Any] = []
        assignments = []
        for name, value in fields.items():
            if name == "role":
                value = Role(value).value
            elif name == "status":
                value = AccountStatus(value).value
            elif name == "password_history":
                value = Jsonb(list(value))
            assignments.append(
                sql.SQL("{} = %s").format(sql.Identifier(name))
            )
            values.append(value)
        query = sql.SQL("UPDATE user_account SET {} WHERE id = %s RETURNING *").format(
            sql.SQL(", ").join(assignments)
        )
        with self._connect() as conn:
            row = conn.execute(query, (*values, user_id)).fetchone()
        return self._row_to_account(row) if row else None

    def increment_failed_attempts(self, user_id: str, at: datetime) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE user_account
                SET failed_attempts = failed_attempts + 1, last_failed_at = %s
                WHERE id = %s
                RETURNING failed_attempts
                """,
                (at, user_id),
            ).fetchone()
        if not row:
            raise ConstraintViolation("account not found", {"user_id": user_id})
        return int(row["failed_attempts"])

    # audit trail
    def append_audit_event(self, event: AuditEvent) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO audit_event (
                    audit_id, occurred_at, actor, action, target_type, target_name, details
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    event.audit_id,
                    event.timestamp,
                    event.actor,
                    event.action,
                    event.target_type,
                    event.target_name,
                    event.details,
                ),
            )

    def list_audit_rows(self) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(f"SELECT {_AUDIT_COLUMNS} FROM audit_event ORDER BY occurred_at").fetchall()
        return [dict(row) for row in rows]

    def archive_audit_events(self, cutoff: datetime, partition: str) -> int:
        with self._connect() as conn:
            row = conn.execute(
                """
                WITH moved AS (
                    DELETE FROM audit_event WHERE occurred_at < %s RETURNING *
                ), inserted AS (
                    INSERT INTO audit_event_archive (
                        archive_partition, audit_id, occurred_at, actor, action,
                        target_type, target_name, details
                    )
                    SELECT %s, audit_id, occurred_at, actor, action,
                           target_type, target_name, details
                    FROM moved
                    RETURNING 1
                )
                SELECT count(*) AS archived FROM inserted
                """,
                (cutoff, partition),
            ).fetchone()
        return int(row["archived"]) if row else 0

    def list_archived_audit_rows(self, partition: str) -> List[Dict[str, Any]]:
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT {_AUDIT_COLUMNS} FROM audit_event_archive WHERE archive_partition = %s",
                (partition,),
            ).fetchall()
        return [dict(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
