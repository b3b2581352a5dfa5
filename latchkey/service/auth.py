from __future__ import annotations

from enum import Enum
from typing import Any, Dict, Optional, Protocol

from latchkey.logging import get_logger
from latchkey.service.cookies import CookieAdapter
from latchkey.service.errors import (
    InvalidPayloadError,
    PrepareNotSupportedError,
    ProviderNotFoundError,
    StorageUnavailableError,
    UserAlreadyExistsError,
    UserNotFoundError,
)
from latchkey.service.results import Result
from latchkey.storage.errors import ConstraintViolation
from latchkey.storage.models import Identifier, Session, User

logger = get_logger(__name__)


class AuthIntent(str, Enum):
    SIGN_IN = "sign-in"
    SIGN_UP = "sign-up"


class Authenticator(Protocol):
    """A credential verifier keyed by ``type``.

    ``authenticate`` turns a proof into an :class:`Identifier`. Verifiers
    with a pre-step (sending an OTP, say) also expose ``prepare``; the
    orchestrator checks for it with ``getattr``.
    """

    type: str

    async def authenticate(self, intent: AuthIntent, data: Any) -> Result[Identifier]: ...


class AuthStore(Protocol):
    async def create_user(
        self, identifier: Identifier, data: Optional[Dict[str, Any]] = None
    ) -> User: ...

    async def get_user_by_id(self, user_id: str) -> Optional[User]: ...

    async def get_user_by_identifier(self, identifier: Identifier) -> Optional[User]: ...

    async def set_user_mfa_enabled(self, user_id: str, enabled: bool) -> Optional[User]: ...


class AuthService:
    """Sign-in, sign-up and sign-out over registered verifiers.

    Verifiers are registered once at startup; after that the registry is
    read-only. A verifier's failure is returned to the caller unchanged.
    Session work is delegated to the :class:`SessionManager`.
    """

    def __init__(self, store: AuthStore, sessions) -> None:
        self.store = store
        self.sessions = sessions
        self.logger = logger
        self._authenticators: Dict[str, Authenticator] = {}

    def register(self, authenticator: Authenticator) -> None:
        provider_type = authenticator.type
        if provider_type in self._authenticators:
            raise ValueError(f"authenticator already registered for type {provider_type!r}")
        self._authenticators[provider_type] = authenticator
        self.logger.info("authenticator_registered", provider_type=provider_type)

    def get_authenticator(self, provider_type: str) -> Optional[Authenticator]:
        return self._authenticators.get(provider_type)

    @property
    def provider_types(self) -> list[str]:
        return sorted(self._authenticators)

    async def prepare(self, provider_type: str, intent: AuthIntent, data: Any) -> Result[Any]:
        authenticator = self._authenticators.get(provider_type)
        if authenticator is None:
            return Result.fail(ProviderNotFoundError(provider_type))
        prepare = getattr(authenticator, "prepare", None)
        if prepare is None:
            return Result.fail(PrepareNotSupportedError(provider_type))
        try:
            intent = AuthIntent(intent)
        except ValueError:
            return Result.fail(InvalidPayloadError(f"Unknown intent {intent!r}"))
        return await prepare(intent, data)

    async def authenticate(
        self,
        cookies: CookieAdapter,
        provider_type: str,
        intent: AuthIntent,
        data: Any,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        initial_user_data: Optional[Dict[str, Any]] = None,
    ) -> Result[Session]:
        """Verify ``data`` with the ``provider_type`` verifier, then sign in or up.

        ``initial_user_data`` only applies to sign-up.
        """
        authenticator = self._authenticators.get(provider_type)
        if authenticator is None:
            return Result.fail(ProviderNotFoundError(provider_type))
        try:
            intent = AuthIntent(intent)
        except ValueError:
            return Result.fail(InvalidPayloadError(f"Unknown intent {intent!r}"))
        verified = await authenticator.authenticate(intent, data)
        if not verified.success:
            return Result.fail(verified.error)
        if intent is AuthIntent.SIGN_UP:
            return await self.sign_up(
                cookies,
                verified.data,
                ip_address=ip_address,
                user_agent=user_agent,
                initial_user_data=initial_user_data,
            )
        return await self.sign_in(
            cookies, verified.data, ip_address=ip_address, user_agent=user_agent
        )

    async def sign_in(
        self,
        cookies: CookieAdapter,
        identifier: Identifier,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
    ) -> Result[Session]:
        try:
            user = await self.store.get_user_by_identifier(identifier)
        except Exception as exc:
            self.logger.error("sign_in_lookup_failed", provider_type=identifier.type, error=str(exc))
            return Result.fail(StorageUnavailableError())
        if user is None:
            self.logger.info("sign_in_unknown_user", provider_type=identifier.type)
            return Result.fail(UserNotFoundError())
        return await self._start_session(cookies, user, ip_address, user_agent)

    async def sign_up(
        self,
        cookies: CookieAdapter,
        identifier: Identifier,
        data: Optional[Dict[str, Any]] = None,
        *,
        ip_address: str | None = None,
        user_agent: str | None = None,
        initial_user_data: Optional[Dict[str, Any]] = None,
    ) -> Result[Session]:
        """Create the user for ``identifier`` and start a session.

        ``initial_user_data`` is merged over ``data``; use it for
        server-decided fields the client must not be able to set.
        """
        try:
            existing = await self.store.get_user_by_identifier(identifier)
        except Exception as exc:
            self.logger.error("sign_up_lookup_failed", provider_type=identifier.type, error=str(exc))
            return Result.fail(StorageUnavailableError())
        if existing is not None:
            return Result.fail(UserAlreadyExistsError(identifier.value))

        user_data = {**(data or {}), **(initial_user_data or {})}
        try:
            user = await self.store.create_user(identifier, user_data)
        except ConstraintViolation:
            # Lost a race with a concurrent sign-up for the same identifier
            return Result.fail(UserAlreadyExistsError(identifier.value))
        except Exception as exc:
            self.logger.error("sign_up_create_failed", provider_type=identifier.type, error=str(exc))
            return Result.fail(StorageUnavailableError())
        self.logger.info("user_created", user_id=user.id, provider_type=identifier.type)
        return await self._start_session(cookies, user, ip_address, user_agent)

    async def _start_session(
        self,
        cookies: CookieAdapter,
        user: User,
        ip_address: str | None,
        user_agent: str | None,
    ) -> Result[Session]:
        try:
            session = await self.sessions.create_session(
                cookies,
                user.id,
                ip_address,
                user_agent,
                mfa_enabled=user.mfa_enabled,
            )
        except Exception as exc:
            self.logger.error("session_create_failed", user_id=user.id, error=str(exc))
            return Result.fail(StorageUnavailableError())
        return Result.ok(session)

    async def set_mfa_enabled(self, user_id: str, enabled: bool) -> Result[User]:
        try:
            user = await self.store.set_user_mfa_enabled(user_id, enabled)
        except Exception as exc:
            self.logger.error("mfa_flag_update_failed", user_id=user_id, error=str(exc))
            return Result.fail(StorageUnavailableError())
        if user is None:
            return Result.fail(UserNotFoundError())
        self.logger.info("mfa_flag_updated", user_id=user_id, enabled=enabled)
        return Result.ok(user)

    async def verify_session(self, cookies: CookieAdapter) -> Result[Session]:
        return await self.sessions.verify_session(cookies)

    async def refresh_session(self, cookies: CookieAdapter) -> Result[None]:
        return await self.sessions.refresh_session(cookies)

    async def mark_mfa_verified(self, cookies: CookieAdapter) -> Result[Session]:
        return await self.sessions.mark_mfa_verified(cookies)

    async def sign_out(self, cookies: CookieAdapter, *, all_sessions: bool = False) -> None:
        await self.sessions.sign_out(cookies, all_sessions=all_sessions)


__all__ = ["AuthIntent", "AuthService", "AuthStore", "Authenticator"]
