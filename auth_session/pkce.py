"""
PKCE (RFC 7636) and URL helpers for the browser-delegated flow.
S256 only; state and nonce generation; authorize and logout URLs.
"""
import hashlib
import secrets
from base64 import urlsafe_b64encode
from urllib.parse import urlencode


def generate_state() -> str:
    """Opaque value for CSRF protection; returned in callback."""
    return secrets.token_urlsafe(32)


def generate_nonce() -> str:
    """Random value for ID token binding; required when openid scope is requested."""
    return secrets.token_urlsafe(32)


def code_challenge_for(code_verifier: str) -> str:
    """S256 challenge: base64url(SHA256(verifier)) without padding."""
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def generate_pkce() -> tuple[str, str]:
    """
    Generate code_verifier and code_challenge (S256).
    Returns (code_verifier, code_challenge). Verifier is 43 chars (256 bits entropy).
    """
    code_verifier = secrets.token_urlsafe(32)
    return code_verifier, code_challenge_for(code_verifier)


def build_authorize_url(
    *,
    issuer: str,
    authorize_path: str = "/authorize",
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
    nonce: str | None = None,
    audience: str | None = None,
) -> str:
    """Build provider /authorize URL with required and optional params."""
    params = {
        "response_type": "code",
        "client_id": client_id,
        "redirect_uri": redirect_uri,
        "scope": scope,
        "state": state,
        "code_challenge": code_challenge,
        "code_challenge_method": "S256",
    }
    if nonce:
        params["nonce"] = nonce
    if audience:
        params["audience"] = audience
    return f"{issuer}{authorize_path}?{urlencode(params)}"


def build_logout_url(*, issuer: str, logout_path: str = "/v2/logout", client_id: str, return_to: str | None = None) -> str:
    params = {"client_id": client_id}
    if return_to:
        params["returnTo"] = return_to
    return f"{issuer}{logout_path}?{urlencode(params)}"
