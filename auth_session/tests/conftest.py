"""
Pytest fixtures for auth_session. In-memory SQLite for the credential store and an in-process
fake provider (httpx.MockTransport) so tests never touch the network or the filesystem.
"""
import asyncio
import itertools
import json
from datetime import datetime, timedelta, timezone
from urllib.parse import parse_qs, unquote, urlencode, urlparse

import httpx
import pytest
from cryptography.fernet import Fernet

from auth_session.credential_store import CredentialStore
from auth_session.database import make_engine
from auth_session.identity_client import IdentityClient
from auth_session.models import Credentials
from auth_session.pkce import code_challenge_for
from auth_session.profile_service import ProfileService
from auth_session.session_controller import SessionController

ISSUER = "https://tenant.example.com"
CLIENT_ID = "test-client"
REDIRECT_URI = "http://127.0.0.1:8765/callback"
LOGIN_SCOPE = "openid profile email offline_access"


def make_credentials(
    *,
    access_token: str = "at-0",
    refresh_token: str | None = "rt-0",
    expires_in: float = 3600,
    scope: str = LOGIN_SCOPE,
    id_token: str | None = None,
) -> Credentials:
    return Credentials(
        access_token=access_token,
        refresh_token=refresh_token,
        id_token=id_token,
        expires_at=datetime.now(timezone.utc) + timedelta(seconds=expires_in),
        scope=scope,
    )


class FakeProvider:
    """Token, userinfo and management endpoints with just enough state to behave like the real thing."""

    def __init__(self):
        self.users = {
            "auth0|123": {
                "user_id": "auth0|123",
                "name": "Ada Lovelace",
                "email": "ada@example.com",
                "nickname": "ada",
                "user_metadata": {"country": "CA"},
                "app_metadata": {"plan": "free"},
            }
        }
        self.expires_in = 3600
        self.rotate_refresh_tokens = True
        self.token_failure: httpx.Response | None = None
        self.pending_codes: dict[str, dict] = {}
        self.refresh_tokens: dict[str, str] = {}  # refresh token -> user id
        self.access_tokens: dict[str, str] = {}  # access token -> user id
        self.requests: list[tuple[str, str]] = []
        self._ids = itertools.count(1)

    def issue_code(self, params: dict[str, str], user_id: str = "auth0|123") -> str:
        code = f"code-{next(self._ids)}"
        self.pending_codes[code] = {**params, "user_id": user_id}
        return code

    def revoke_access(self) -> None:
        self.access_tokens.clear()

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.requests if p == path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.requests.append((request.method, path))
        if path == "/oauth/token":
            return self._token(request)
        if path == "/userinfo":
            return self._userinfo(request)
        if path.startswith("/api/v2/users/"):
            return self._management(request, unquote(path.rsplit("/", 1)[-1]))
        return httpx.Response(404, json={"error": "not_found"})

    def _tokens_for(self, user_id: str, scope: str, refresh_token: str | None) -> dict:
        access_token = f"at-{next(self._ids)}"
        self.access_tokens[access_token] = user_id
        body = {
            "access_token": access_token,
            "token_type": "Bearer",
            "expires_in": self.expires_in,
            "scope": scope,
        }
        if refresh_token:
            self.refresh_tokens[refresh_token] = user_id
            body["refresh_token"] = refresh_token
        return body

    def _token(self, request: httpx.Request) -> httpx.Response:
        if self.token_failure is not None:
            return self.token_failure
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        if form.get("grant_type") == "authorization_code":
            pending = self.pending_codes.pop(form.get("code", ""), None)
            if pending is None or code_challenge_for(form.get("code_verifier", "")) != pending["code_challenge"]:
                return httpx.Response(403, json={"error": "invalid_grant", "error_description": "Invalid authorization code"})
            scope = pending["scope"]
            refresh_token = f"rt-{next(self._ids)}" if "offline_access" in scope.split() else None
            return httpx.Response(200, json=self._tokens_for(pending["user_id"], scope, refresh_token))
        if form.get("grant_type") == "refresh_token":
            user_id = self.refresh_tokens.get(form.get("refresh_token", ""))
            if user_id is None:
                return httpx.Response(403, json={"error": "invalid_grant", "error_description": "Unknown or invalid refresh token."})
            new_refresh = None
            if self.rotate_refresh_tokens:
                del self.refresh_tokens[form["refresh_token"]]
                new_refresh = f"rt-{next(self._ids)}"
            return httpx.Response(200, json=self._tokens_for(user_id, form.get("scope", ""), new_refresh))
        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def _bearer_user(self, request: httpx.Request) -> str | None:
        auth = request.headers.get("authorization", "")
        if not auth.startswith("Bearer "):
            return None
        return self.access_tokens.get(auth[len("Bearer "):])

    def _userinfo(self, request: httpx.Request) -> httpx.Response:
        user_id = self._bearer_user(request)
        if user_id is None:
            return httpx.Response(401, text="Unauthorized")
        user = self.users[user_id]
        return httpx.Response(200, json={"sub": user_id, "name": user["name"], "email": user["email"], "nickname": user["nickname"]})

    def _management(self, request: httpx.Request, user_id: str) -> httpx.Response:
        if self._bearer_user(request) != user_id:
            return httpx.Response(401, json={"statusCode": 401, "error": "Unauthorized", "message": "Invalid token"})
        user = self.users.get(user_id)
        if user is None:
            return httpx.Response(404, json={"statusCode": 404, "error": "Not Found", "errorCode": "inexistent_user"})
        if request.method == "PATCH":
            body = json.loads(request.content)
            patch = body.get("user_metadata")
            if not isinstance(patch, dict) or any("." in k for k in patch):
                return httpx.Response(
                    400,
                    json={"statusCode": 400, "error": "Bad Request", "message": "Invalid user_metadata", "errorCode": "invalid_body"},
                )
            user["user_metadata"] = {**user["user_metadata"], **patch}
        return httpx.Response(200, json=user)


class FakeUserAgent:
    """Stands in for the browser: approves (or fails) the authorize URL and follows logout."""

    def __init__(self, provider: FakeProvider):
        self.provider = provider
        self.authorize_urls: list[str] = []
        self.logout_urls: list[str] = []
        self.redirect_error: str | None = None
        self.tamper_state = False
        self.logout_error: Exception | None = None
        self.hang = False

    async def authorize(self, authorize_url: str, redirect_uri: str) -> str:
        self.authorize_urls.append(authorize_url)
        if self.hang:
            await asyncio.Event().wait()
        params = {k: v[0] for k, v in parse_qs(urlparse(authorize_url).query).items()}
        state = "forged-state" if self.tamper_state else params["state"]
        if self.redirect_error:
            return f"{redirect_uri}?{urlencode({'error': self.redirect_error, 'error_description': 'nope', 'state': state})}"
        code = self.provider.issue_code(params)
        return f"{redirect_uri}?{urlencode({'code': code, 'state': state})}"

    async def end_session(self, logout_url: str, return_to: str | None) -> None:
        self.logout_urls.append(logout_url)
        if self.logout_error is not None:
            raise self.logout_error


class FakeIdentity:
    """Scripted refresh-token exchanger for CredentialStore tests."""

    def __init__(self, results=None, delay: float = 0.01):
        self.results = list(results or [])
        self.delay = delay
        self.calls: list[tuple[str, object]] = []

    async def exchange_refresh_token(self, refresh_token, scopes=None):
        self.calls.append((refresh_token, scopes))
        await asyncio.sleep(self.delay)
        result = self.results.pop(0) if self.results else make_credentials(access_token="at-new", refresh_token=None)
        if isinstance(result, Exception):
            raise result
        return result


@pytest.fixture
def fernet():
    return Fernet(Fernet.generate_key())


@pytest.fixture
def store(fernet):
    return CredentialStore(engine=make_engine("sqlite:///:memory:"), fernet=fernet)


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def http_client(provider):
    return httpx.AsyncClient(transport=httpx.MockTransport(provider.handler))


@pytest.fixture
def user_agent(provider):
    return FakeUserAgent(provider)


@pytest.fixture
def identity(http_client, user_agent):
    return IdentityClient(
        issuer=ISSUER,
        client_id=CLIENT_ID,
        redirect_uri=REDIRECT_URI,
        post_logout_redirect_uri="http://127.0.0.1:8765/logged-out",
        default_scope=LOGIN_SCOPE,
        user_agent=user_agent,
        http_client=http_client,
        authorization_timeout=5,
        verify_id_token=False,
    )


@pytest.fixture
def profiles(http_client):
    return ProfileService(api_url=f"{ISSUER}/api/v2", http_client=http_client)


@pytest.fixture
def controller(identity, store, profiles):
    return SessionController(
        identity,
        store,
        profiles,
        scopes=LOGIN_SCOPE,
        audience=f"{ISSUER}/api/v2/",
        renew_scopes=f"{LOGIN_SCOPE} read:current_user update:current_user_metadata",
    )


@pytest.fixture
def fake_identity():
    return FakeIdentity()


@pytest.fixture
def creds():
    """Factory for credentials expiring expires_in seconds from now."""
    return make_credentials
