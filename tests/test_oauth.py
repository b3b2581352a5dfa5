"""Tests for the Google OAuth verifier.

The token endpoint is served by ``httpx.MockTransport`` and ID tokens are
signed with a throwaway RSA key, so no request leaves the process.
"""

import time
from types import SimpleNamespace
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
import pytest
from cryptography.hazmat.primitives.asymmetric import rsa

from latchkey.service.auth import AuthIntent
from latchkey.service.errors import GoogleOAuthError, InvalidPayloadError, OAuthErrorReason
from latchkey.service.oauth import GOOGLE_TOKEN_URL, GoogleOAuthAuthenticator

SECRET = "state-signing-secret-for-tests-only"
CLIENT_ID = "client-123.apps.googleusercontent.com"


@pytest.fixture(scope="module")
def rsa_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


class FakeJWKS:
    def __init__(self, public_key):
        self.public_key = public_key
        self.calls = 0

    def get_signing_key_from_jwt(self, token):
        self.calls += 1
        return SimpleNamespace(key=self.public_key)


class TokenEndpoint:
    """Records token requests and answers with a canned response."""

    def __init__(self, status_code=200, json_body=None, text=None):
        self.status_code = status_code
        self.json_body = json_body
        self.text = text
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.text is not None:
            return httpx.Response(self.status_code, text=self.text)
        return httpx.Response(self.status_code, json=self.json_body)


def _id_token(rsa_key, **overrides):
    now = int(time.time())
    claims = {
        "iss": "https://accounts.google.com",
        "aud": CLIENT_ID,
        "sub": "1234567890",
        "email": "user@gmail.com",
        "email_verified": True,
        "name": "Test User",
        "given_name": "Test",
        "family_name": "User",
        "picture": "https://example.com/p.png",
        "locale": "en",
        "iat": now,
        "exp": now + 3600,
    }
    claims.update(overrides)
    return jwt.encode(claims, rsa_key, algorithm="RS256")


def _build(endpoint, jwks):
    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    return GoogleOAuthAuthenticator(
        client_id=CLIENT_ID,
        client_secret="client-secret",
        redirect_uri="https://app.example.com/callback",
        secret=SECRET,
        http_client=client,
        jwks_client=jwks,
    )


@pytest.fixture
def jwks(rsa_key):
    return FakeJWKS(rsa_key.public_key())


class TestAuthUrl:
    def test_auth_url_parameters(self, jwks):
        google = _build(TokenEndpoint(), jwks)

        url = urlparse(google.get_auth_url(AuthIntent.SIGN_UP))
        params = {k: v[0] for k, v in parse_qs(url.query).items()}

        assert url.netloc == "accounts.google.com"
        assert url.path == "/o/oauth2/v2/auth"
        assert params["client_id"] == CLIENT_ID
        assert params["redirect_uri"] == "https://app.example.com/callback"
        assert params["response_type"] == "code"
        assert params["scope"] == "openid email profile"
        assert params["access_type"] == "online"

        state = jwt.decode(params["state"], SECRET, algorithms=["HS256"])
        assert state["intent"] == "sign-up"
        assert state["exp"] - state["iat"] == 600
        assert len(state["nonce"]) == 32

    def test_states_are_unique(self, jwks):
        google = _build(TokenEndpoint(), jwks)
        assert google.create_state(AuthIntent.SIGN_IN) != google.create_state(AuthIntent.SIGN_IN)


class TestVerifyCallback:
    async def test_success(self, rsa_key, jwks):
        endpoint = TokenEndpoint(json_body={"id_token": _id_token(rsa_key), "access_token": "at"})
        google = _build(endpoint, jwks)
        state = google.create_state(AuthIntent.SIGN_IN)

        result = await google.verify_callback("auth-code", state)

        assert result.success
        assert result.data.intent is AuthIntent.SIGN_IN
        identifier = result.data.identifier
        assert identifier.type == "google-oauth"
        assert identifier.value == "1234567890"
        assert identifier.data["email"] == "user@gmail.com"
        assert identifier.data == {
            "googleId": "1234567890",
            "email": "user@gmail.com",
            "emailVerified": True,
            "name": "Test User",
            "givenName": "Test",
            "familyName": "User",
            "picture": "https://example.com/p.png",
            "locale": "en",
        }

        sent = parse_qs(endpoint.requests[0].content.decode())
        assert str(endpoint.requests[0].url) == GOOGLE_TOKEN_URL
        assert sent["code"] == ["auth-code"]
        assert sent["grant_type"] == ["authorization_code"]

    async def test_forged_state_makes_no_provider_call(self, rsa_key, jwks):
        endpoint = TokenEndpoint(json_body={"id_token": _id_token(rsa_key)})
        google = _build(endpoint, jwks)
        forged = jwt.encode(
            {"iat": int(time.time()), "exp": int(time.time()) + 600, "nonce": "n", "intent": "sign-in"},
            "attacker-secret",
            algorithm="HS256",
        )

        result = await google.verify_callback("auth-code", forged)

        assert result.error.reason is OAuthErrorReason.INVALID_STATE
        assert endpoint.requests == []

    async def test_malformed_state(self, jwks):
        endpoint = TokenEndpoint()
        google = _build(endpoint, jwks)
        result = await google.verify_callback("auth-code", "garbage")
        assert result.error.reason is OAuthErrorReason.INVALID_STATE
        assert endpoint.requests == []

    async def test_expired_state(self, jwks):
        endpoint = TokenEndpoint()
        google = _build(endpoint, jwks)
        past = int(time.time()) - 1200
        expired = jwt.encode(
            {"iat": past, "exp": past + 600, "nonce": "n", "intent": "sign-in"},
            SECRET,
            algorithm="HS256",
        )

        result = await google.verify_callback("auth-code", expired)

        assert result.error.reason is OAuthErrorReason.EXPIRED_STATE
        assert endpoint.requests == []

    async def test_expired_forged_state_is_invalid_not_expired(self, jwks):
        google = _build(TokenEndpoint(), jwks)
        past = int(time.time()) - 1200
        forged = jwt.encode(
            {"iat": past, "exp": past + 600, "nonce": "n", "intent": "sign-in"},
            "attacker-secret",
            algorithm="HS256",
        )
        result = await google.verify_callback("auth-code", forged)
        assert result.error.reason is OAuthErrorReason.INVALID_STATE

    async def test_state_with_unknown_intent(self, jwks):
        google = _build(TokenEndpoint(), jwks)
        now = int(time.time())
        state = jwt.encode(
            {"iat": now, "exp": now + 600, "nonce": "n", "intent": "delete-account"},
            SECRET,
            algorithm="HS256",
        )
        result = await google.verify_callback("auth-code", state)
        assert result.error.reason is OAuthErrorReason.INVALID_STATE

    async def test_invalid_grant(self, jwks):
        endpoint = TokenEndpoint(
            status_code=400,
            json_body={"error": "invalid_grant", "error_description": "Bad Request"},
        )
        google = _build(endpoint, jwks)
        result = await google.verify_callback("used-code", google.create_state(AuthIntent.SIGN_IN))
        assert result.error.reason is OAuthErrorReason.INVALID_CODE
        assert result.error.status_code == 400

    async def test_other_exchange_failure(self, jwks):
        endpoint = TokenEndpoint(status_code=500, text="upstream broke")
        google = _build(endpoint, jwks)
        result = await google.verify_callback("code", google.create_state(AuthIntent.SIGN_IN))
        assert result.error.reason is OAuthErrorReason.TOKEN_EXCHANGE_FAILED
        assert result.error.status_code == 502

    async def test_network_error(self, jwks):
        def refuse(request):
            raise httpx.ConnectError("refused", request=request)

        google = _build(refuse, jwks)
        result = await google.verify_callback("code", google.create_state(AuthIntent.SIGN_IN))
        assert result.error.reason is OAuthErrorReason.TOKEN_EXCHANGE_FAILED

    async def test_missing_id_token(self, jwks):
        endpoint = TokenEndpoint(json_body={"access_token": "at"})
        google = _build(endpoint, jwks)
        result = await google.verify_callback("code", google.create_state(AuthIntent.SIGN_IN))
        assert result.error.reason is OAuthErrorReason.TOKEN_EXCHANGE_FAILED

    async def test_id_token_wrong_audience(self, rsa_key, jwks):
        endpoint = TokenEndpoint(json_body={"id_token": _id_token(rsa_key, aud="someone-else")})
        google = _build(endpoint, jwks)
        result = await google.verify_callback("code", google.create_state(AuthIntent.SIGN_IN))
        assert result.error.reason is OAuthErrorReason.PROFILE_FETCH_FAILED

    async def test_id_token_wrong_issuer(self, rsa_key, jwks):
        endpoint = TokenEndpoint(json_body={"id_token": _id_token(rsa_key, iss="https://evil.example")})
        google = _build(endpoint, jwks)
        result = await google.verify_callback("code", google.create_state(AuthIntent.SIGN_IN))
        assert result.error.reason is OAuthErrorReason.PROFILE_FETCH_FAILED

    async def test_id_token_signed_by_other_key(self, jwks):
        other = rsa.generate_private_key(public_exponent=65537, key_size=2048)
        endpoint = TokenEndpoint(json_body={"id_token": _id_token(other)})
        google = _build(endpoint, jwks)
        result = await google.verify_callback("code", google.create_state(AuthIntent.SIGN_IN))
        assert result.error.reason is OAuthErrorReason.PROFILE_FETCH_FAILED


class TestIdentifierFromClaims:
    def test_profile_keys(self):
        identifier = GoogleOAuthAuthenticator._identifier_from_claims(
            {"sub": 123, "email": "a@b.com", "email_verified": "true"}
        )

        assert identifier.value == "123"
        assert set(identifier.data) == {
            "googleId",
            "email",
            "emailVerified",
            "name",
            "givenName",
            "familyName",
            "picture",
            "locale",
        }
        assert identifier.data["googleId"] == "123"
        assert identifier.data["emailVerified"] is True
        assert identifier.data["givenName"] is None


class TestAuthenticate:
    async def test_authenticate_returns_identifier(self, rsa_key, jwks):
        google = _build(TokenEndpoint(json_body={"id_token": _id_token(rsa_key)}), jwks)
        state = google.create_state(AuthIntent.SIGN_UP)

        result = await google.authenticate(AuthIntent.SIGN_UP, {"code": "c", "state": state})

        assert result.success
        assert result.data.value == "1234567890"

    async def test_intent_mismatch_rejected_before_exchange(self, rsa_key, jwks):
        endpoint = TokenEndpoint(json_body={"id_token": _id_token(rsa_key)})
        google = _build(endpoint, jwks)
        state = google.create_state(AuthIntent.SIGN_IN)

        result = await google.authenticate(AuthIntent.SIGN_UP, {"code": "c", "state": state})

        assert isinstance(result.error, GoogleOAuthError)
        assert result.error.reason is OAuthErrorReason.INVALID_STATE
        assert endpoint.requests == []

    async def test_missing_fields(self, jwks):
        google = _build(TokenEndpoint(), jwks)
        result = await google.authenticate(AuthIntent.SIGN_IN, {"code": "c"})
        assert isinstance(result.error, InvalidPayloadError)

    def test_has_no_prepare_step(self, jwks):
        google = _build(TokenEndpoint(), jwks)
        assert not hasattr(google, "prepare")
