from __future__ import annotations

import asyncio
import secrets
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Mapping, Optional, Protocol
from urllib.parse import urlencode

import httpx
import jwt

from latchkey.config import Settings
from latchkey.logging import get_logger
from latchkey.service.auth import AuthIntent
from latchkey.service.errors import (
    GoogleOAuthError,
    InvalidPayloadError,
    OAuthErrorReason,
)
from latchkey.service.results import Result
from latchkey.storage.models import Identifier

logger = get_logger(__name__)

GOOGLE_OAUTH_TYPE = "google-oauth"

GOOGLE_AUTH_URL = "https://accounts.google.com/o/oauth2/v2/auth"
GOOGLE_TOKEN_URL = "https://oauth2.googleapis.com/token"
GOOGLE_CERTS_URL = "https://www.googleapis.com/oauth2/v3/certs"
GOOGLE_ISSUERS = frozenset({"https://accounts.google.com", "accounts.google.com"})

STATE_TTL = timedelta(minutes=10)
STATE_ALGORITHM = "HS256"

# Google's wording when a code was replayed or has lapsed
_INVALID_CODE_MARKERS = ("invalid_grant", "Code was already redeemed")


class SigningKeySource(Protocol):
    """Anything shaped like :class:`jwt.PyJWKClient`."""

    def get_signing_key_from_jwt(self, token: str) -> Any: ...


@dataclass(frozen=True)
class OAuthCallback:
    intent: AuthIntent
    identifier: Identifier


class GoogleOAuthAuthenticator:
    """Google sign-in through the authorization-code flow (type ``"google-oauth"``).

    CSRF protection is a stateless HS256 state token ``{iat, exp, nonce,
    intent}`` that lives ten minutes; nothing is stored server-side, so a
    state can be replayed within its window and only the single-use
    authorization code bounds that. The ID token returned by the code
    exchange is verified against Google's published keys.
    """

    type = GOOGLE_OAUTH_TYPE

    def __init__(
        self,
        *,
        client_id: str,
        client_secret: str,
        redirect_uri: str,
        secret: str,
        scopes: Optional[list[str]] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        jwks_client: Optional[SigningKeySource] = None,
        timeout: float = 30.0,
    ) -> None:
        self.client_id = client_id
        self.client_secret = client_secret
        self.redirect_uri = redirect_uri
        self.secret = secret
        self.scopes = list(scopes or ["openid", "email", "profile"])
        self.http_client = http_client
        self._jwks_client = jwks_client
        self.timeout = timeout
        self.logger = logger

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: Any) -> "GoogleOAuthAuthenticator":
        return cls(
            client_id=settings.google_client_id,
            client_secret=settings.google_client_secret,
            redirect_uri=settings.google_redirect_uri,
            secret=settings.secret,
            scopes=settings.google_scopes,
            **kwargs,
        )

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    @property
    def jwks_client(self) -> SigningKeySource:
        if self._jwks_client is None:
            self._jwks_client = jwt.PyJWKClient(GOOGLE_CERTS_URL)
        return self._jwks_client

    # -- state token -------------------------------------------------------

    def create_state(self, intent: AuthIntent) -> str:
        now = self._now()
        payload = {
            "iat": int(now.timestamp()),
            "exp": int((now + STATE_TTL).timestamp()),
            "nonce": secrets.token_hex(16),
            "intent": AuthIntent(intent).value,
        }
        return jwt.encode(payload, self.secret, algorithm=STATE_ALGORITHM)

    def verify_state(self, state: str) -> AuthIntent:
        """Return the intent carried by ``state`` or raise :class:`GoogleOAuthError`.

        PyJWT checks the signature before any time claim, so an expired
        state is only reported as such when it is authentic.
        """
        try:
            payload = jwt.decode(
                state,
                self.secret,
                algorithms=[STATE_ALGORITHM],
                options={"require": ["iat", "exp", "nonce", "intent"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise GoogleOAuthError(OAuthErrorReason.EXPIRED_STATE) from exc
        except jwt.InvalidTokenError as exc:
            raise GoogleOAuthError(OAuthErrorReason.INVALID_STATE) from exc
        try:
            return AuthIntent(payload["intent"])
        except ValueError as exc:
            raise GoogleOAuthError(OAuthErrorReason.INVALID_STATE) from exc

    def get_auth_url(self, intent: AuthIntent) -> str:
        params = {
            "client_id": self.client_id,
            "redirect_uri": self.redirect_uri,
            "response_type": "code",
            "scope": " ".join(self.scopes),
            "state": self.create_state(intent),
            "access_type": "online",
        }
        return f"{GOOGLE_AUTH_URL}?{urlencode(params)}"

    # -- callback ----------------------------------------------------------

    async def _post_token(self, client: httpx.AsyncClient, code: str) -> httpx.Response:
        return await client.post(
            GOOGLE_TOKEN_URL,
            data={
                "client_id": self.client_id,
                "client_secret": self.client_secret,
                "code": code,
                "redirect_uri": self.redirect_uri,
                "grant_type": "authorization_code",
            },
            headers={"Accept": "application/json"},
        )

    async def _exchange_code(self, code: str) -> str:
        """Trade the authorization code for an ID token."""
        try:
            if self.http_client is not None:
                response = await self._post_token(self.http_client, code)
            else:
                async with httpx.AsyncClient(
                    timeout=self.timeout, follow_redirects=False
                ) as client:
                    response = await self._post_token(client, code)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            body = exc.response.text
            self.logger.warning(
                "oauth_token_exchange_rejected",
                status_code=exc.response.status_code,
            )
            if any(marker in body for marker in _INVALID_CODE_MARKERS):
                raise GoogleOAuthError(OAuthErrorReason.INVALID_CODE) from exc
            raise GoogleOAuthError(OAuthErrorReason.TOKEN_EXCHANGE_FAILED) from exc
        except httpx.HTTPError as exc:
            self.logger.error("oauth_token_exchange_failed", error=str(exc))
            raise GoogleOAuthError(OAuthErrorReason.TOKEN_EXCHANGE_FAILED) from exc

        try:
            result = response.json()
        except ValueError as exc:
            self.logger.error("oauth_token_parse_error", error=str(exc))
            raise GoogleOAuthError(OAuthErrorReason.TOKEN_EXCHANGE_FAILED) from exc
        id_token = result.get("id_token") if isinstance(result, dict) else None
        if not id_token:
            self.logger.error("oauth_token_missing_id_token")
            raise GoogleOAuthError(OAuthErrorReason.TOKEN_EXCHANGE_FAILED)
        return id_token

    async def _verify_id_token(self, id_token: str) -> Dict[str, Any]:
        try:
            signing_key = await asyncio.to_thread(
                self.jwks_client.get_signing_key_from_jwt, id_token
            )
            claims = jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                options={"require": ["exp", "iat", "iss", "aud", "sub"]},
            )
        except jwt.PyJWTError as exc:
            self.logger.warning("oauth_id_token_invalid", error=str(exc))
            raise GoogleOAuthError(OAuthErrorReason.PROFILE_FETCH_FAILED) from exc
        if claims.get("iss") not in GOOGLE_ISSUERS:
            self.logger.warning("oauth_id_token_bad_issuer", issuer=claims.get("iss"))
            raise GoogleOAuthError(OAuthErrorReason.PROFILE_FETCH_FAILED)
        return claims

    @staticmethod
    def _identifier_from_claims(claims: Mapping[str, Any]) -> Identifier:
        email_verified = claims.get("email_verified")
        if isinstance(email_verified, str):
            email_verified = email_verified.lower() == "true"
        google_id = str(claims["sub"])
        return Identifier(
            type=GOOGLE_OAUTH_TYPE,
            value=google_id,
            data={
                "googleId": google_id,
                "email": claims.get("email"),
                "emailVerified": bool(email_verified),
                "name": claims.get("name"),
                "givenName": claims.get("given_name"),
                "familyName": claims.get("family_name"),
                "picture": claims.get("picture"),
                "locale": claims.get("locale"),
            },
        )

    async def verify_callback(
        self,
        code: str,
        state: str,
        *,
        expected_intent: Optional[AuthIntent] = None,
    ) -> Result[OAuthCallback]:
        """Check ``state``, then exchange ``code`` and verify the ID token.

        No request reaches Google unless the state is authentic, unexpired
        and (when ``expected_intent`` is given) minted for that intent.
        """
        try:
            intent = self.verify_state(state)
        except GoogleOAuthError as exc:
            self.logger.warning("oauth_state_rejected", reason=exc.reason.value)
            return Result.fail(exc)
        if expected_intent is not None and intent != AuthIntent(expected_intent):
            self.logger.warning(
                "oauth_intent_mismatch",
                expected=AuthIntent(expected_intent).value,
                actual=intent.value,
            )
            return Result.fail(GoogleOAuthError(OAuthErrorReason.INVALID_STATE))
        try:
            id_token = await self._exchange_code(code)
            claims = await self._verify_id_token(id_token)
        except GoogleOAuthError as exc:
            return Result.fail(exc)
        identifier = self._identifier_from_claims(claims)
        self.logger.info("oauth_callback_verified", intent=intent.value)
        return Result.ok(OAuthCallback(intent=intent, identifier=identifier))

    async def authenticate(self, intent: AuthIntent, data: Any) -> Result[Identifier]:
        if not isinstance(data, Mapping):
            return Result.fail(InvalidPayloadError("Payload must be an object"))
        code = data.get("code")
        state = data.get("state")
        if not isinstance(code, str) or not code or not isinstance(state, str) or not state:
            return Result.fail(InvalidPayloadError(detail={"fields": ["code", "state"]}))
        verified = await self.verify_callback(code, state, expected_intent=intent)
        if not verified.success:
            return Result.fail(verified.error)
        return Result.ok(verified.data.identifier)


__all__ = [
    "GOOGLE_OAUTH_TYPE",
    "GoogleOAuthAuthenticator",
    "OAuthCallback",
    "SigningKeySource",
]
