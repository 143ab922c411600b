"""
Session client configuration. Values come from the environment.
No secrets in this file; the client is public (PKCE) and tokens live in the credential store.
"""
import os

# Identity provider tenant domain (e.g. "my-tenant.us.auth0.com")
DOMAIN = os.environ.get("AUTH_DOMAIN", "example.us.auth0.com")

# Base URL for all provider endpoints
ISSUER = os.environ.get("AUTH_ISSUER", f"https://{DOMAIN}").rstrip("/")

# `iss` claim expected in ID tokens; unset means ISSUER plus a trailing slash (Auth0 style)
ID_TOKEN_ISSUER = os.environ.get("AUTH_ID_TOKEN_ISSUER") or None

# Our client_id (public native/desktop client registered at the provider)
CLIENT_ID = os.environ.get("AUTH_CLIENT_ID", "test-client")

# Loopback redirect the local callback app listens on
REDIRECT_URI = os.environ.get("AUTH_REDIRECT_URI", "http://127.0.0.1:8765/callback")

# Where the provider sends the browser after logout; must be in the client's allowed logout URLs
POST_LOGOUT_REDIRECT_URI = os.environ.get("AUTH_POST_LOGOUT_REDIRECT_URI", "http://127.0.0.1:8765/logged-out")

# Login scope: offline_access so the provider issues a refresh token
DEFAULT_SCOPE = os.environ.get("AUTH_SCOPE", "openid profile email offline_access")

# Scope requested on explicit renewal (adds the management API permissions for own metadata)
RENEW_SCOPE = os.environ.get(
    "AUTH_RENEW_SCOPE",
    "openid profile email offline_access read:current_user update:current_user_metadata",
)

# Audience for access tokens: the management API, so tokens can read/patch user metadata
AUDIENCE = os.environ.get("AUTH_AUDIENCE", f"{ISSUER}/api/v2/")

# Provider endpoint paths
AUTHORIZE_PATH = "/authorize"
TOKEN_PATH = "/oauth/token"
USERINFO_PATH = "/userinfo"
LOGOUT_PATH = "/v2/logout"
JWKS_PATH = "/.well-known/jwks.json"
MANAGEMENT_API_URL = os.environ.get("AUTH_MANAGEMENT_API_URL", f"{ISSUER}/api/v2").rstrip("/")

# Verify ID token signature (JWKS), iss, aud and nonce after code exchange
VERIFY_ID_TOKEN = os.environ.get("AUTH_VERIFY_ID_TOKEN", "true").lower() in ("1", "true", "yes")

# Persisted credential record (SQLite file by default; private to the user)
CREDENTIALS_DATABASE_URL = os.environ.get("AUTH_CREDENTIALS_DATABASE_URL", "sqlite:///./.auth_session.db")

# Fernet key used to encrypt tokens at rest. Generated on first use if missing.
ENCRYPTION_KEY_PATH = os.environ.get("AUTH_ENCRYPTION_KEY_PATH", ".auth_session_key")

# Credentials within this many seconds of expiry are treated as expired
EXPIRY_MARGIN_SECONDS = int(os.environ.get("AUTH_EXPIRY_MARGIN_SECONDS", "60"))

# Per-request timeout for provider HTTP calls (seconds)
HTTP_TIMEOUT = float(os.environ.get("AUTH_HTTP_TIMEOUT", "10.0"))

# Upper bound on waiting for the browser to come back (seconds); NetworkError on timeout
AUTHORIZATION_TIMEOUT = float(os.environ.get("AUTH_AUTHORIZATION_TIMEOUT", "600"))
