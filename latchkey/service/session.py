from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

import jwt

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.cookies import CookieAdapter, CookieOptions
from latchkey.service.errors import (
    InvalidSessionError,
    SessionExpiredError,
    SessionNotFoundError,
    StorageUnavailableError,
)
from latchkey.service.results import Result
from latchkey.storage.models import Session

logger = get_logger(__name__)

SESSION_TOKEN_BYTES = 32
COOKIE_ALGORITHM = "HS256"


class SessionStore(Protocol):
    async def create_session(
        self,
        user_id: str,
        token: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        mfa_enabled: bool = False,
    ) -> Session: ...

    async def get_session_by_id(self, session_id: str) -> Optional[Session]: ...

    async def update_session(
        self,
        session_id: str,
        *,
        expires_at: datetime | None = None,
        refreshed_at: datetime | None = None,
        used_at: datetime | None = None,
        mfa_verified: bool | None = None,
    ) -> bool: ...

    async def invalidate_session(self, session_id: str) -> None: ...

    async def invalidate_all_user_sessions(self, user_id: str) -> int: ...


def generate_session_token() -> str:
    """256 bits from the OS CSPRNG, hex encoded (64 characters)."""
    return secrets.token_hex(SESSION_TOKEN_BYTES)


class SessionManager:
    """Issues and checks cookie-bound sessions.

    The cookie value is an HS256 JWT over ``{sessionId, token}``; the row in
    storage is the source of truth for expiry and invalidation. Expiry is
    derived at read time and never written back, while invalidation is a
    terminal write. Refresh extends ``expires_at`` and re-sends the same
    cookie without rotating the token.
    """

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def cookie_name(self) -> str:
        return self.settings.session_cookie_name

    @property
    def ttl(self) -> timedelta:
        return timedelta(seconds=self.settings.session_ttl_seconds)

    def cookie_options(self) -> CookieOptions:
        return CookieOptions(
            http_only=True,
            secure=self.settings.cookie_secure,
            same_site=self.settings.session_same_site.value,
            max_age=self.settings.session_ttl_seconds,
            path="/",
        )

    def encode_cookie(self, session: Session) -> str:
        return jwt.encode(
            {"sessionId": session.id, "token": session.token},
            self.settings.secret,
            algorithm=COOKIE_ALGORITHM,
        )

    def decode_cookie(self, value: str) -> tuple[str, str]:
        """Return ``(session_id, token)`` or raise :class:`InvalidSessionError`."""
        try:
            payload = jwt.decode(
                value,
                self.settings.secret,
                algorithms=[COOKIE_ALGORITHM],
                options={"require": ["sessionId", "token"]},
            )
        except jwt.InvalidTokenError as exc:
            raise InvalidSessionError() from exc
        session_id = payload.get("sessionId")
        token = payload.get("token")
        if not isinstance(session_id, str) or not isinstance(token, str):
            raise InvalidSessionError()
        return session_id, token

    async def _write_cookie(self, cookies: CookieAdapter, session: Session) -> None:
        await cookies.set_cookie(
            self.cookie_name, self.encode_cookie(session), self.cookie_options()
        )

    async def create_session(
        self,
        cookies: CookieAdapter,
        user_id: str,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        mfa_enabled: bool = False,
    ) -> Session:
        """Persist a new session for ``user_id`` and set its cookie.

        Storage failures propagate; the orchestrator maps them.
        """
        session = await self.store.create_session(
            user_id,
            generate_session_token(),
            self._now() + self.ttl,
            ip_address,
            user_agent,
            mfa_enabled=mfa_enabled,
        )
        await self._write_cookie(cookies, session)
        self.logger.info(
            "session_created",
            session_id=session.id,
            user_id=user_id,
            expires_at=session.expires_at.isoformat(),
        )
        return session

    async def _load(self, cookies: CookieAdapter) -> Session:
        raw = await cookies.get_cookie(self.cookie_name)
        if not raw:
            raise SessionNotFoundError()
        session_id, token = self.decode_cookie(raw)
        session = await self.store.get_session_by_id(session_id)
        if session is None:
            raise InvalidSessionError()
        if not hmac.compare_digest(session.token.encode("utf-8"), token.encode("utf-8")):
            raise InvalidSessionError()
        if session.invalidated:
            raise InvalidSessionError()
        if session.is_expired(self._now()):
            raise SessionExpiredError()
        return session

    async def verify_session(self, cookies: CookieAdapter) -> Result[Session]:
        try:
            session = await self._load(cookies)
        except (SessionNotFoundError, InvalidSessionError, SessionExpiredError) as exc:
            if not isinstance(exc, SessionNotFoundError):
                self.logger.warning("session_verify_failed", error_code=exc.error_code)
            return Result.fail(exc)
        except Exception as exc:
            self.logger.error("session_verify_storage_error", error=str(exc))
            return Result.fail(StorageUnavailableError())

        now = self._now()
        try:
            if await self.store.update_session(session.id, used_at=now):
                session.used_at = now
        except Exception as exc:
            self.logger.warning(
                "session_touch_failed", session_id=session.id, error=str(exc)
            )
        return Result.ok(session)

    async def refresh_session(self, cookies: CookieAdapter) -> Result[None]:
        verified = await self.verify_session(cookies)
        if not verified.success:
            return Result.fail(verified.error)
        session = verified.data
        now = self._now()
        expires_at = now + self.ttl
        try:
            applied = await self.store.update_session(
                session.id, expires_at=expires_at, refreshed_at=now
            )
        except Exception as exc:
            self.logger.error(
                "session_refresh_storage_error", session_id=session.id, error=str(exc)
            )
            return Result.fail(StorageUnavailableError())
        if not applied:
            # Signed out between the verify and the write
            return Result.fail(InvalidSessionError())
        session.expires_at = expires_at
        session.refreshed_at = now
        await self._write_cookie(cookies, session)
        self.logger.info(
            "session_refreshed",
            session_id=session.id,
            expires_at=expires_at.isoformat(),
        )
        return Result.ok(None)

    async def mark_mfa_verified(self, cookies: CookieAdapter) -> Result[Session]:
        """Record that the current session passed its second factor."""
        verified = await self.verify_session(cookies)
        if not verified.success:
            return verified
        session = verified.data
        try:
            applied = await self.store.update_session(session.id, mfa_verified=True)
        except Exception as exc:
            self.logger.error(
                "session_mfa_storage_error", session_id=session.id, error=str(exc)
            )
            return Result.fail(StorageUnavailableError())
        if not applied:
            return Result.fail(InvalidSessionError())
        session.mfa_verified = True
        self.logger.info("session_mfa_verified", session_id=session.id)
        return Result.ok(session)

    async def sign_out(self, cookies: CookieAdapter, *, all_sessions: bool = False) -> None:
        """Invalidate the current session (or all of the user's) and drop the cookie.

        Never fails: a missing or bad cookie just means there is nothing to
        invalidate, and the cookie is deleted regardless.
        """
        verified = await self.verify_session(cookies)
        if verified.success:
            session = verified.data
            try:
                if all_sessions:
                    count = await self.store.invalidate_all_user_sessions(session.user_id)
                    self.logger.info(
                        "sessions_invalidated", user_id=session.user_id, count=count
                    )
                else:
                    await self.store.invalidate_session(session.id)
                    self.logger.info("session_invalidated", session_id=session.id)
            except Exception as exc:
                self.logger.error(
                    "session_invalidate_failed", session_id=session.id, error=str(exc)
                )
        await cookies.delete_cookie(self.cookie_name)


__all__ = ["SessionManager", "SessionStore", "generate_session_token"]
