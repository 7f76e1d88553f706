from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import ConnectionPool

from deviceauth.logging import get_logger
from deviceauth.storage.errors import ConstraintViolation, StoreUnavailable
from deviceauth.storage.models import DeviceInfo, DeviceSession, DeviceType, utcnow

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS device_session (
        id UUID PRIMARY KEY,
        user_id TEXT NOT NULL,
        device_id TEXT NOT NULL,
        device_name TEXT NOT NULL,
        device_type TEXT NOT NULL DEFAULT 'other'
            CHECK (device_type IN ('mobile', 'tablet', 'desktop', 'other')),
        access_token TEXT NOT NULL DEFAULT '',
        refresh_token TEXT NOT NULL DEFAULT '',
        refresh_token_expiry TIMESTAMPTZ NOT NULL,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        last_active TIMESTAMPTZ NOT NULL DEFAULT now(),
        device_info JSONB NOT NULL DEFAULT '{}'::jsonb,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT device_session_user_device_key UNIQUE (user_id, device_id),
        CONSTRAINT device_session_token_state CHECK (
            (is_active AND access_token <> '' AND refresh_token <> '')
            OR (NOT is_active AND access_token = '' AND refresh_token = '')
        )
    )
    """,
    """
    CREATE INDEX IF NOT EXISTS device_session_refresh_token_idx
        ON device_session (refresh_token) WHERE is_active
    """,
    """
    CREATE INDEX IF NOT EXISTS device_session_user_active_idx
        ON device_session (user_id, last_active DESC) WHERE is_active
    """,
)


class PostgresStore:
    """Postgres-backed device session store.

    Uniqueness per (user_id, device_id) comes from the composite unique
    constraint; every mutation is a single statement so concurrent requests
    for the same device never interleave inside one record.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 1,
        max_size: int = 10,
        timeout: float = 5.0,
    ) -> None:
        self.dsn = dsn
        self.timeout = timeout
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=timeout,
            open=True,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    @contextlib.contextmanager
    def _connect(self, operation: str) -> Iterator[psycopg.Connection]:
        try:
            with self.pool.connection(timeout=self.timeout) as conn:
                yield conn
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "device session already exists", {"operation": operation}
            ) from exc
        except psycopg.OperationalError as exc:
            self.logger.error(
                "store_unavailable",
                operation=operation,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(operation, exc) from exc

    def _ensure_schema(self) -> None:
        """Create the ``device_session`` table and its indexes if missing."""

        with self._connect("ensure_schema") as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    @staticmethod
    def _row_to_session(row: dict[str, Any]) -> DeviceSession:
        return DeviceSession(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            device_id=row["device_id"],
            device_name=row.get("device_name", ""),
            device_type=DeviceType.coerce(row.get("device_type")),
            access_token=row.get("access_token") or "",
            refresh_token=row.get("refresh_token") or "",
            refresh_token_expiry=row["refresh_token_expiry"],
            is_active=bool(row.get("is_active", False)),
            last_active=row.get("last_active") or row["created_at"],
            device_info=row.get("device_info") or {},
            created_at=row["created_at"],
            updated_at=row.get("updated_at") or row["created_at"],
        )

    def upsert_device_session(
        self,
        user_id: str,
        device: DeviceInfo,
        *,
        access_token: str,
        refresh_token: str,
        refresh_token_expiry: datetime,
        now: Optional[datetime] = None,
    ) -> DeviceSession:
        now = now or utcnow()
        with self._connect("upsert_device_session") as conn:
            row = conn.execute(
                """
                INSERT INTO device_session (
                    id, user_id, device_id, device_name, device_type,
                    access_token, refresh_token, refresh_token_expiry,
                    is_active, last_active, device_info, created_at, updated_at
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, TRUE, %s, %s, %s, %s)
                ON CONFLICT (user_id, device_id) DO UPDATE SET
                    device_name = EXCLUDED.device_name,
                    device_type = EXCLUDED.device_type,
                    access_token = EXCLUDED.access_token,
                    refresh_token = EXCLUDED.refresh_token,
                    refresh_token_expiry = EXCLUDED.refresh_token_expiry,
                    is_active = TRUE,
                    last_active = EXCLUDED.last_active,
                    device_info = EXCLUDED.device_info,
                    updated_at = EXCLUDED.updated_at
                RETURNING *
                """,
                (
                    str(uuid.uuid4()),
                    user_id,
                    device.device_id,
                    device.device_name,
                    device.device_type.value,
                    access_token,
                    refresh_token,
                    refresh_token_expiry,
                    now,
                    Jsonb(device.metadata()),
                    now,
                    now,
                ),
            ).fetchone()
        return self._row_to_session(row)

    def get_device_session(
        self, user_id: str, device_id: str
    ) -> Optional[DeviceSession]:
        with self._connect("get_device_session") as conn:
            row = conn.execute(
                "SELECT * FROM device_session WHERE user_id = %s AND device_id = %s",
                (user_id, device_id),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def find_active_by_refresh_token(
        self, refresh_token: str
    ) -> Optional[DeviceSession]:
        if not refresh_token:
            return None
        with self._connect("find_active_by_refresh_token") as conn:
            row = conn.execute(
                """
                SELECT * FROM device_session
                WHERE refresh_token = %s AND is_active
                LIMIT 1
                """,
                (refresh_token,),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def set_access_token(
        self,
        session_id: str,
        refresh_token: str,
        access_token: str,
        now: Optional[datetime] = None,
    ) -> Optional[DeviceSession]:
        if not refresh_token:
            return None
        now = now or utcnow()
        with self._connect("set_access_token") as conn:
            row = conn.execute(
                """
                UPDATE device_session
                SET access_token = %s, last_active = %s, updated_at = %s
                WHERE id = %s AND is_active AND refresh_token = %s
                RETURNING *
                """,
                (access_token, now, now, session_id, refresh_token),
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_device_session(
        self, user_id: str, device_id: str, now: Optional[datetime] = None
    ) -> bool:
        now = now or utcnow()
        with self._connect("revoke_device_session") as conn:
            result = conn.execute(
                """
                UPDATE device_session
                SET is_active = FALSE, access_token = '', refresh_token = '', updated_at = %s
                WHERE user_id = %s AND device_id = %s AND is_active
                """,
                (now, user_id, device_id),
            )
            return result.rowcount > 0

    def revoke_other_device_sessions(
        self, user_id: str, keep_device_id: str, now: Optional[datetime] = None
    ) -> int:
        now = now or utcnow()
        with self._connect("revoke_other_device_sessions") as conn:
            result = conn.execute(
                """
                UPDATE device_session
                SET is_active = FALSE, access_token = '', refresh_token = '', updated_at = %s
                WHERE user_id = %s AND device_id <> %s AND is_active
                """,
                (now, user_id, keep_device_id),
            )
            return max(result.rowcount, 0)

    def list_active_device_sessions(self, user_id: str) -> List[DeviceSession]:
        with self._connect("list_active_device_sessions") as conn:
            rows = conn.execute(
                """
                SELECT * FROM device_session
                WHERE user_id = %s AND is_active
                ORDER BY last_active DESC
                """,
                (user_id,),
            ).fetchall()
        return [self._row_to_session(row) for row in rows]

    def close(self) -> None:
        self.pool.close()
