from __future__ import annotations

import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_ts(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        return _as_utc(value)
    return _as_utc(datetime.fromisoformat(value))


def _dump(obj: Any) -> Dict[str, Any]:
    """Dataclass to a JSON-friendly dict with ISO timestamps."""
    out = asdict(obj)
    for key, value in out.items():
        if isinstance(value, datetime):
            out[key] = value.isoformat()
    return out


@dataclass(frozen=True)
class Identifier:
    """A proven external identity: an authentication method plus its value.

    ``type`` names the verifier that produced it (``"email-otp"``,
    ``"google-oauth"``) and ``value`` is the stable identity under that
    method (an email address, a Google subject id). ``data`` carries
    verifier-specific extras and is never used for lookup.
    """

    type: str
    value: str
    data: Optional[Dict[str, Any]] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.type, self.value)


@dataclass
class User:
    id: str
    created_at: datetime
    updated_at: datetime
    mfa_enabled: bool = False
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def new(cls, data: Optional[Dict[str, Any]] = None) -> "User":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            created_at=now,
            updated_at=now,
            data=dict(data or {}),
        )

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "User":
        return cls(
            id=str(raw["id"]),
            created_at=_parse_ts(raw["created_at"]),
            updated_at=_parse_ts(raw.get("updated_at") or raw["created_at"]),
            mfa_enabled=bool(raw.get("mfa_enabled", False)),
            data=dict(raw.get("data") or {}),
        )


@dataclass
class Session:
    id: str
    user_id: str
    token: str
    expires_at: datetime
    created_at: datetime
    refreshed_at: datetime
    used_at: datetime
    invalidated: bool = False
    invalidated_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    mfa_enabled: bool = False
    mfa_verified: bool = False

    @classmethod
    def new(
        cls,
        user_id: str,
        token: str,
        expires_at: datetime,
        ip_address: str | None = None,
        user_agent: str | None = None,
        *,
        mfa_enabled: bool = False,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            user_id=user_id,
            token=token,
            expires_at=_as_utc(expires_at),
            created_at=now,
            refreshed_at=now,
            used_at=now,
            ip_address=ip_address,
            user_agent=user_agent,
            mfa_enabled=mfa_enabled,
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        # A session is still good at exactly expires_at
        return (now or utcnow()) > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "Session":
        return cls(
            id=str(raw["id"]),
            user_id=str(raw["user_id"]),
            token=raw["token"],
            expires_at=_parse_ts(raw["expires_at"]),
            created_at=_parse_ts(raw["created_at"]),
            refreshed_at=_parse_ts(raw.get("refreshed_at") or raw["created_at"]),
            used_at=_parse_ts(raw.get("used_at") or raw["created_at"]),
            invalidated=bool(raw.get("invalidated", False)),
            invalidated_at=_parse_ts(raw.get("invalidated_at")),
            ip_address=raw.get("ip_address"),
            user_agent=raw.get("user_agent"),
            mfa_enabled=bool(raw.get("mfa_enabled", False)),
            mfa_verified=bool(raw.get("mfa_verified", False)),
        )


@dataclass
class OTP:
    id: str
    email: str
    code: str
    signature: str
    expires_at: datetime
    used: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, email: str, code: str, expires_at: datetime, signature: str
    ) -> "OTP":
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            code=code,
            signature=signature,
            expires_at=_as_utc(expires_at),
        )

    def is_expired(self, now: datetime | None = None) -> bool:
        return (now or utcnow()) > self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return _dump(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "OTP":
        return cls(
            id=str(raw["id"]),
            email=raw["email"],
            code=raw["code"],
            signature=raw.get("signature", ""),
            expires_at=_parse_ts(raw["expires_at"]),
            used=bool(raw.get("used", False)),
            created_at=_parse_ts(raw["created_at"]),
        )


__all__ = ["Identifier", "OTP", "Session", "User", "utcnow"]
