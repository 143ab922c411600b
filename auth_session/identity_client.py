"""
IdentityClient: authorization-code + PKCE login, refresh-token exchange, logout and userinfo
against the identity provider. Stateless with respect to the session; never retries.
"""
import asyncio
import logging
from collections.abc import Iterable
from typing import Any
from urllib.parse import parse_qs, urlparse

import httpx
import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientConnectionError, PyJWTError

from auth_session import config
from auth_session.errors import (
    InvalidCredentials,
    InvalidGrant,
    NetworkError,
    ProviderError,
    UserCancelled,
)
from auth_session.flow_store import FlowStore
from auth_session.models import Credentials, UserProfile
from auth_session.pkce import build_authorize_url, build_logout_url, generate_nonce, generate_pkce, generate_state
from auth_session.user_agent import LoopbackBrowserAgent, UserAgent

logger = logging.getLogger(__name__)

_JSON = {"Accept": "application/json"}

# Redirect errors meaning the user backed out rather than the provider failing
_CANCEL_ERRORS = {"access_denied", "login_required", "a0.authentication_canceled"}


def scope_string(scopes: str | Iterable[str] | None, default: str) -> str:
    """Normalize a scope argument to the space-delimited wire form."""
    if scopes is None:
        return default
    if isinstance(scopes, str):
        return " ".join(scopes.split())
    return " ".join(scopes)


def error_details(r: httpx.Response) -> tuple[str, str | None]:
    """
    Pull (code, description) out of an error response. Understands OAuth error bodies
    ({"error", "error_description"}) and management API bodies ({"errorCode", "message"}).
    """
    try:
        body = r.json()
    except ValueError:
        body = None
    if not isinstance(body, dict):
        return f"http_{r.status_code}", None
    code = body.get("errorCode") or body.get("error") or f"http_{r.status_code}"
    desc = body.get("error_description") or body.get("message")
    return str(code), str(desc) if desc else None


def is_transient(status_code: int) -> bool:
    return status_code >= 500 or status_code == 429


class IdentityClient:
    def __init__(
        self,
        *,
        issuer: str = config.ISSUER,
        client_id: str = config.CLIENT_ID,
        redirect_uri: str = config.REDIRECT_URI,
        post_logout_redirect_uri: str | None = config.POST_LOGOUT_REDIRECT_URI,
        default_scope: str = config.DEFAULT_SCOPE,
        user_agent: UserAgent | None = None,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = config.HTTP_TIMEOUT,
        authorization_timeout: float = config.AUTHORIZATION_TIMEOUT,
        verify_id_token: bool = config.VERIFY_ID_TOKEN,
        id_token_issuer: str | None = config.ID_TOKEN_ISSUER,
        jwks_client: PyJWKClient | None = None,
        flows: FlowStore | None = None,
    ):
        self.issuer = issuer.rstrip("/")
        self.client_id = client_id
        self.redirect_uri = redirect_uri
        self.post_logout_redirect_uri = post_logout_redirect_uri
        self.default_scope = default_scope
        self.verify_id_token = verify_id_token
        self.id_token_issuer = id_token_issuer or f"{self.issuer}/"
        self._user_agent = user_agent or LoopbackBrowserAgent()
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._timeout = timeout
        self._authorization_timeout = authorization_timeout
        self._jwks_client = jwks_client
        self._flows = flows or FlowStore(ttl=max(authorization_timeout, 1))

    async def __aenter__(self) -> "IdentityClient":
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _url(self, path: str) -> str:
        return f"{self.issuer}{path}"

    # --- Authorization code + PKCE ---

    async def begin_authorization(
        self,
        scopes: str | Iterable[str] | None = None,
        audience: str | None = None,
    ) -> Credentials:
        """
        Run the browser flow and exchange the returned code for credentials.
        Suspends until the user agent comes back or authorization_timeout elapses.
        """
        scope = scope_string(scopes, self.default_scope)
        state = generate_state()
        nonce = generate_nonce()
        code_verifier, code_challenge = generate_pkce()
        self._flows.store(state, nonce=nonce, code_verifier=code_verifier, redirect_uri=self.redirect_uri)
        url = build_authorize_url(
            issuer=self.issuer,
            authorize_path=config.AUTHORIZE_PATH,
            client_id=self.client_id,
            redirect_uri=self.redirect_uri,
            scope=scope,
            state=state,
            code_challenge=code_challenge,
            nonce=nonce,
            audience=audience,
        )
        try:
            redirect = await asyncio.wait_for(
                self._user_agent.authorize(url, self.redirect_uri),
                timeout=self._authorization_timeout,
            )
        except asyncio.TimeoutError as e:
            raise NetworkError("Timed out waiting for the browser to return") from e
        finally:
            flow = self._flows.pop(state)

        params = _redirect_params(redirect)
        # state is checked before error
        if params.get("state") != state or flow is None:
            raise ProviderError("invalid_state", "Missing, unknown or expired state in redirect")
        error = params.get("error")
        if error:
            desc = params.get("error_description")
            if error in _CANCEL_ERRORS:
                raise UserCancelled(desc or error)
            raise ProviderError(error, desc)
        code = params.get("code")
        if not code:
            raise ProviderError("invalid_request", "Missing code in redirect")

        data = await self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": flow.redirect_uri,
                "client_id": self.client_id,
                "code_verifier": flow.code_verifier,
            }
        )
        credentials = _credentials(data, scope)
        if credentials.id_token and self.verify_id_token:
            await self._verify_id_token(credentials.id_token, flow.nonce)
        logger.info("Authorization code exchanged: client_id=%s scope=%s", self.client_id, credentials.scope)
        return credentials

    async def end_session(self, return_to: str | None = None) -> None:
        """Invalidate the provider-side browser session. Local credentials are not touched here."""
        return_to = return_to or self.post_logout_redirect_uri
        url = build_logout_url(
            issuer=self.issuer,
            logout_path=config.LOGOUT_PATH,
            client_id=self.client_id,
            return_to=return_to,
        )
        try:
            await asyncio.wait_for(self._user_agent.end_session(url, return_to), timeout=self._authorization_timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError("Timed out waiting for the provider logout redirect") from e

    # --- Token endpoint ---

    async def exchange_refresh_token(self, refresh_token: str, scopes: str | Iterable[str] | None = None) -> Credentials:
        """
        refresh_token grant. The returned credentials carry refresh_token=None when the provider
        did not rotate it; callers keep the one they had.
        """
        scope = scope_string(scopes, self.default_scope)
        data = await self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "client_id": self.client_id,
                "scope": scope,
            },
            refresh=True,
        )
        credentials = _credentials(data, scope)
        logger.info(
            "refresh_token grant: new access token for client_id=%s (refresh token %s)",
            self.client_id,
            "rotated" if credentials.refresh_token else "kept",
        )
        return credentials

    async def _post_token(self, form: dict[str, str], *, refresh: bool = False) -> dict[str, Any]:
        try:
            r = await self._http.post(self._url(config.TOKEN_PATH), data=form, headers=_JSON, timeout=self._timeout)
        except httpx.HTTPError as e:
            raise NetworkError(f"Token request failed: {type(e).__name__}") from e
        if r.status_code == 200:
            return _json_body(r)
        code, desc = error_details(r)
        logger.debug("Token endpoint error: status=%s error=%s", r.status_code, code)
        if is_transient(r.status_code):
            raise NetworkError(f"Token endpoint returned {r.status_code}")
        if refresh and code == "invalid_grant":
            raise InvalidGrant(desc or code)
        raise ProviderError(code, desc)

    # --- UserInfo ---

    async def fetch_user_info(self, access_token: str) -> UserProfile:
        """Minimal profile (sub, name, email, ...) from the userinfo endpoint."""
        try:
            r = await self._http.get(
                self._url(config.USERINFO_PATH),
                headers={**_JSON, "Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Userinfo request failed: {type(e).__name__}") from e
        if r.status_code in (401, 403):
            raise InvalidCredentials(f"Userinfo rejected the access token ({r.status_code})")
        if is_transient(r.status_code):
            raise NetworkError(f"Userinfo returned {r.status_code}")
        if r.status_code != 200:
            raise ProviderError(*error_details(r))
        claims = _json_body(r)
        if "sub" not in claims:
            raise ProviderError("invalid_response", "Userinfo response has no sub claim")
        return UserProfile.from_claims(claims)

    # --- ID token ---

    def _jwks(self) -> PyJWKClient:
        if self._jwks_client is None:
            self._jwks_client = PyJWKClient(uri=self._url(config.JWKS_PATH), cache_jwk_set=True, lifespan=300)
        return self._jwks_client

    async def _verify_id_token(self, id_token: str, nonce: str) -> dict:
        """Verify signature via JWKS and validate iss, aud, exp and nonce. Returns claims."""

        def decode() -> dict:
            signing_key = self._jwks().get_signing_key_from_jwt(id_token)
            return jwt.decode(
                id_token,
                signing_key.key,
                algorithms=["RS256"],
                audience=self.client_id,
                issuer=self.id_token_issuer,
            )

        try:
            # PyJWKClient fetches the key set synchronously
            claims = await asyncio.to_thread(decode)
        except PyJWKClientConnectionError as e:
            raise NetworkError("Could not fetch the provider key set") from e
        except PyJWTError as e:
            logger.debug("ID token rejected: %s", e)
            raise ProviderError("invalid_id_token", "ID token verification failed") from e
        if claims.get("nonce") != nonce:
            raise ProviderError("invalid_id_token", "ID token nonce mismatch")
        return claims


def _redirect_params(redirect_url: str) -> dict[str, str]:
    query = urlparse(redirect_url).query
    params = parse_qs(query, keep_blank_values=False)
    return {k: v[0] for k, v in params.items() if v}


def _json_body(r: httpx.Response) -> dict[str, Any]:
    try:
        body = r.json()
    except ValueError as e:
        raise ProviderError("invalid_response", "Provider returned a non-JSON body") from e
    if not isinstance(body, dict):
        raise ProviderError("invalid_response", "Provider returned an unexpected body")
    return body


def _credentials(data: dict[str, Any], scope: str) -> Credentials:
    if not data.get("access_token"):
        raise ProviderError("invalid_response", "Token response has no access_token")
    try:
        return Credentials.from_token_response(data, requested_scope=scope)
    except (TypeError, ValueError) as e:
        raise ProviderError("invalid_response", "Token response has an unreadable expires_in") from e
