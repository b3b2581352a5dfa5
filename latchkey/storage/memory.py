from __future__ import annotations

import json
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

from latchkey.logging import get_logger
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import OTP, Identifier, Session, User, utcnow


class MemoryStore:
    """Dict-backed store for development and tests.

    Every method is a coroutine so the store is interchangeable with
    :class:`~latchkey.storage.postgres.PostgresStore`. Mutations happen under
    a single ``RLock`` that is never held across an ``await``, which is what
    makes ``mark_otp_as_used`` and ``update_session`` compare-and-set
    operations. When ``fs_root`` is given, state is snapshotted to
    ``<fs_root>/state/memory_store.json`` after each write and reloaded on
    construction.
    """

    def __init__(self, fs_root: str | None = None) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        # (type, value) -> {"user_id": ..., "data": ...}
        self.identifiers: Dict[tuple[str, str], Dict[str, Any]] = {}
        self.sessions: Dict[str, Session] = {}
        self.otps: Dict[str, OTP] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root is not None:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    # -- users -------------------------------------------------------------

    async def create_user(
        self, identifier: Identifier, data: Optional[Dict[str, Any]] = None
    ) -> User:
        with self._data_lock:
            if identifier.key in self.identifiers:
                raise ConstraintViolation(
                    "identifier already exists",
                    {"field": "identifier", "type": identifier.type},
                )
            user = User.new(data)
            self.users[user.id] = user
            self.identifiers[identifier.key] = {
                "user_id": user.id,
                "data": dict(identifier.data) if identifier.data else None,
            }
            self._persist_state()
            return user

    async def get_user_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    async def get_user_by_identifier(self, identifier: Identifier) -> Optional[User]:
        with self._data_lock:
            entry = self.identifiers.get(identifier.key)
            if entry is None:
                return None
            return self.users.get(entry["user_id"])

    async def set_user_mfa_enabled(self, user_id: str, enabled: bool) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if user is None:
                return None
            user.mfa_enabled = enabled
            user.updated_at = utcnow()
            self._persist_state()
            return user

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
        session = Session.new(
            user_id,
            token,
            expires_at,
            ip_address,
            user_agent,
            mfa_enabled=mfa_enabled,
        )
        with self._data_lock:
            self.sessions[session.id] = session
            self._persist_state()
        return session

    async def get_session_by_id(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    async def update_session(
        self,
        session_id: str,
        *,
        expires_at: datetime | None = None,
        refreshed_at: datetime | None = None,
        used_at: datetime | None = None,
        mfa_verified: bool | None = None,
    ) -> bool:
        """Apply the given fields unless the session is missing or invalidated."""
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.invalidated:
                return False
            if expires_at is not None:
                session.expires_at = expires_at
            if refreshed_at is not None:
                session.refreshed_at = refreshed_at
            if used_at is not None:
                session.used_at = used_at
            if mfa_verified is not None:
                session.mfa_verified = mfa_verified
            self._persist_state()
            return True

    async def invalidate_session(self, session_id: str) -> None:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if session is None or session.invalidated:
                return
            session.invalidated = True
            session.invalidated_at = utcnow()
            self._persist_state()

    async def invalidate_all_user_sessions(self, user_id: str) -> int:
        now = utcnow()
        count = 0
        with self._data_lock:
            for session in self.sessions.values():
                if session.user_id == user_id and not session.invalidated:
                    session.invalidated = True
                    session.invalidated_at = now
                    count += 1
            if count:
                self._persist_state()
        return count

    # -- one-time passwords -----------------------------------------------

    async def create_otp(
        self, email: str, code: str, expires_at: datetime, signature: str
    ) -> OTP:
        otp = OTP.new(email, code, expires_at, signature)
        with self._data_lock:
            self.otps[otp.id] = otp
            self._persist_state()
        return otp

    async def get_otp_by_id(self, otp_id: str) -> Optional[OTP]:
        with self._data_lock:
            return self.otps.get(otp_id)

    async def mark_otp_as_used(self, otp_id: str) -> bool:
        """Flip the ``used`` latch; ``False`` when it was already set or missing."""
        with self._data_lock:
            otp = self.otps.get(otp_id)
            if otp is None or otp.used:
                return False
            otp.used = True
            self._persist_state()
            return True

    # -- persistence -------------------------------------------------------

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    def _persist_state(self) -> None:
        if self.fs_root is None:
            return
        state = {
            "users": [u.to_dict() for u in self.users.values()],
            "identifiers": [
                {"type": key[0], "value": key[1], **entry}
                for key, entry in self.identifiers.items()
            ],
            "sessions": [s.to_dict() for s in self.sessions.values()],
            "otps": [o.to_dict() for o in self.otps.values()],
        }
        path = self._state_path()
        tmp_path = path.with_suffix(".json.tmp")
        tmp_path.write_text(json.dumps(state))
        os.replace(tmp_path, path)

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        except json.JSONDecodeError as exc:
            self.logger.error("memory_store_state_corrupt", path=str(path), error=str(exc))
            return False
        self.users = {u["id"]: User.from_dict(u) for u in data.get("users", [])}
        self.identifiers = {
            (entry["type"], entry["value"]): {
                "user_id": entry["user_id"],
                "data": entry.get("data"),
            }
            for entry in data.get("identifiers", [])
        }
        self.sessions = {
            s["id"]: Session.from_dict(s) for s in data.get("sessions", [])
        }
        self.otps = {o["id"]: OTP.from_dict(o) for o in data.get("otps", [])}
        self.logger.info(
            "memory_store_state_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
