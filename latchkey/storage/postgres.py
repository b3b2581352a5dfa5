from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg.types.json import Jsonb
from psycopg_pool import AsyncConnectionPool

from latchkey.logging import get_logger
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import OTP, Identifier, Session, User, utcnow

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS latchkey_user (
        id UUID PRIMARY KEY,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        data JSONB NOT NULL DEFAULT '{}'::jsonb
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS latchkey_user_identifier (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES latchkey_user(id) ON DELETE CASCADE,
        type TEXT NOT NULL,
        value TEXT NOT NULL,
        data JSONB,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        UNIQUE (type, value)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS latchkey_session (
        id UUID PRIMARY KEY,
        user_id UUID NOT NULL REFERENCES latchkey_user(id) ON DELETE CASCADE,
        token TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        refreshed_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        used_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        invalidated BOOLEAN NOT NULL DEFAULT FALSE,
        invalidated_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT,
        mfa_enabled BOOLEAN NOT NULL DEFAULT FALSE,
        mfa_verified BOOLEAN NOT NULL DEFAULT FALSE
    )
    """,
    "CREATE INDEX IF NOT EXISTS latchkey_session_user_idx ON latchkey_session (user_id)",
    """
    CREATE TABLE IF NOT EXISTS latchkey_otp (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        code TEXT NOT NULL,
        signature TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)

_SESSION_COLUMNS = (
    "id, user_id, token, expires_at, created_at, refreshed_at, used_at, "
    "invalidated, invalidated_at, ip_address, user_agent, mfa_enabled, mfa_verified"
)


def _is_uuid(value: str) -> bool:
    # Ids we never issued would fail the UUID cast server-side
    try:
        uuid.UUID(str(value))
    except ValueError:
        return False
    return True


class PostgresStore:
    """Postgres-backed store on an async psycopg connection pool.

    The pool is created closed; call :meth:`open` (and :meth:`ensure_schema`
    on a fresh database) before serving requests, :meth:`close` on shutdown.
    Conditional writes (``mark_otp_as_used``, ``update_session``) are single
    ``UPDATE ... WHERE`` statements whose row count reports whether the
    write won.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = AsyncConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=False,
        )

    async def open(self) -> None:
        await self.pool.open()

    async def close(self) -> None:
        await self.pool.close()

    def _connect(self):
        return self.pool.connection()

    async def ensure_schema(self) -> None:
        """Create the latchkey tables if they are missing."""

        async with self._connect() as conn:
            for statement in _SCHEMA:
                await conn.execute(statement)
        self.logger.info("postgres_schema_ready")

    # -- row mapping -------------------------------------------------------

    @staticmethod
    def _user_from_row(row: Dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            mfa_enabled=bool(row["mfa_enabled"]),
            data=dict(row.get("data") or {}),
        )

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=str(row["user_id"]),
            token=row["token"],
            expires_at=row["expires_at"],
            created_at=row["created_at"],
            refreshed_at=row["refreshed_at"],
            used_at=row["used_at"],
            invalidated=bool(row["invalidated"]),
            invalidated_at=row.get("invalidated_at"),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            mfa_enabled=bool(row["mfa_enabled"]),
            mfa_verified=bool(row["mfa_verified"]),
        )

    @staticmethod
    def _otp_from_row(row: Dict[str, Any]) -> OTP:
        return OTP(
            id=str(row["id"]),
            email=row["email"],
            code=row["code"],
            signature=row["signature"],
            expires_at=row["expires_at"],
            used=bool(row["used"]),
            created_at=row["created_at"],
        )

    # -- users -------------------------------------------------------------

    async def create_user(
        self, identifier: Identifier, data: Optional[Dict[str, Any]] = None
    ) -> User:
        user = User.new(data)
        try:
            async with self._connect() as conn:
                await conn.execute(
                    """
                    INSERT INTO latchkey_user (id, created_at, updated_at, mfa_enabled, data)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.created_at,
                        user.updated_at,
                        user.mfa_enabled,
                        Jsonb(user.data),
                    ),
                )
                await conn.execute(
                    """
                    INSERT INTO latchkey_user_identifier (id, user_id, type, value, data)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        str(uuid.uuid4()),
                        user.id,
                        identifier.type,
                        identifier.value,
                        Jsonb(identifier.data) if identifier.data is not None else None,
                    ),
                )
        except errors.UniqueViolation:
            raise ConstraintViolation(
                "identifier already exists",
                {"field": "identifier", "type": identifier.type},
            )
        return user

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM latchkey_user WHERE id = %s", (user_id,)
            )
            row = await cur.fetchone()
        return self._user_from_row(row) if row else None

    async def get_user_by_identifier(self, identifier: Identifier) -> Optional[User]:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                SELECT u.* FROM latchkey_user u
                JOIN latchkey_user_identifier i ON i.user_id = u.id
                WHERE i.type = %s AND i.value = %s
                """,
                (identifier.type, identifier.value),
            )
            row = await cur.fetchone()
        return self._user_from_row(row) if row else None

    async def set_user_mfa_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        if not _is_uuid(user_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE latchkey_user SET mfa_enabled = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (enabled, utcnow(), user_id),
            )
            row = await cur.fetchone()
        return self._user_from_row(row) if row else None

    # -- sessions ----------------------------------------------------------

    async def create_session(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        mfa_enabled: bool = False,
    ) -> Session:
        sess = Session.new(
            user_id,
            token,
            expires_at,
            ip_address,
            user_agent,
            mfa_enabled=mfa_enabled,
        )
        async with self._connect() as conn:
            await conn.execute(
                f"""
                INSERT INTO latchkey_session ({_SESSION_COLUMNS})
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    sess.id,
                    sess.user_id,
                    sess.token,
                    sess.expires_at,
                    sess.created_at,
                    sess.refreshed_at,
                    sess.used_at,
                    sess.invalidated,
                    sess.invalidated_at,
                    sess.ip_address,
                    sess.user_agent,
                    sess.mfa_enabled,
                    sess.mfa_verified,
                ),
            )
        return sess

    async def get_session_by_id(self, session_id: str) -> Optional[Session]:
        if not _is_uuid(session_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                f"SELECT {_SESSION_COLUMNS} FROM latchkey_session WHERE id = %s",
                (session_id,),
            )
            row = await cur.fetchone()
        return self._session_from_row(row) if row else None

    async def update_session(
        self,
        session_id: str,
        *,
        expires_at: datetime | None = None,
        refreshed_at: datetime | None = None,
        used_at: datetime | None = None,
        mfa_verified: bool | None = None,
    ) -> bool:
        updates = {
            "expires_at": expires_at,
            "refreshed_at": refreshed_at,
            "used_at": used_at,
            "mfa_verified": mfa_verified,
        }
        assignments = [(col, val) for col, val in updates.items() if val is not None]
        if not assignments:
            return False
        set_clause = ", ".join(f"{col} = %s" for col, _ in assignments)
        params = [val for _, val in assignments] + [session_id]
        async with self._connect() as conn:
            cur = await conn.execute(
                f"UPDATE latchkey_session SET {set_clause} "
                "WHERE id = %s AND invalidated = FALSE",
                params,
            )
            return cur.rowcount == 1

    async def invalidate_session(self, session_id: str) -> None:
        async with self._connect() as conn:
            await conn.execute(
                """
                UPDATE latchkey_session SET invalidated = TRUE, invalidated_at = %s
                WHERE id = %s AND invalidated = FALSE
                """,
                (utcnow(), session_id),
            )

    async def invalidate_all_user_sessions(self, user_id: str) -> int:
        async with self._connect() as conn:
            cur = await conn.execute(
                """
                UPDATE latchkey_session SET invalidated = TRUE, invalidated_at = %s
                WHERE user_id = %s AND invalidated = FALSE
                """,
                (utcnow(), user_id),
            )
            return cur.rowcount

    # -- one-time passwords -----------------------------------------------

    async def create_otp(
        self, email: str, code: str, expires_at: datetime, signature: str
    ) -> OTP:
        otp = OTP.new(email, code, expires_at, signature)
        async with self._connect() as conn:
            await conn.execute(
                """
                INSERT INTO latchkey_otp (id, email, code, signature, expires_at, used, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    otp.id,
                    otp.email,
                    otp.code,
                    otp.signature,
                    otp.expires_at,
                    otp.used,
                    otp.created_at,
                ),
            )
        return otp

    async def get_otp_by_id(self, otp_id: str) -> Optional[OTP]:
        if not _is_uuid(otp_id):
            return None
        async with self._connect() as conn:
            cur = await conn.execute(
                "SELECT * FROM latchkey_otp WHERE id = %s", (otp_id,)
            )
            row = await cur.fetchone()
        return self._otp_from_row(row) if row else None

    async def mark_otp_as_used(self, otp_id: str) -> bool:
        async with self._connect() as conn:
            cur = await conn.execute(
                "UPDATE latchkey_otp SET used = TRUE WHERE id = %s AND used = FALSE",
                (otp_id,),
            )
            return cur.rowcount == 1
