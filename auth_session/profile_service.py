"""
ProfileService: full user profile and user_metadata through the provider's management API.
"""
import logging
from typing import Any, Mapping
from urllib.parse import quote

import httpx

from auth_session import config
from auth_session.errors import InvalidCredentials, NetworkError, ProviderError, ValidationError
from auth_session.identity_client import error_details, is_transient
from auth_session.models import UserProfile

logger = logging.getLogger(__name__)


class ProfileService:
    def __init__(
        self,
        *,
        api_url: str = config.MANAGEMENT_API_URL,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = config.HTTP_TIMEOUT,
    ):
        self.api_url = api_url.rstrip("/")
        self._owns_http = http_client is None
        self._http = http_client or httpx.AsyncClient()
        self._timeout = timeout

    async def aclose(self) -> None:
        if self._owns_http:
            await self._http.aclose()

    def _user_url(self, user_id: str) -> str:
        # ids like "auth0|123" must be escaped as a single path segment
        return f"{self.api_url}/users/{quote(user_id, safe='')}"

    async def get_full_profile(self, user_id: str, access_token: str) -> UserProfile:
        return await self._request("GET", user_id, access_token)

    async def update_metadata(self, user_id: str, access_token: str, patch: Mapping[str, Any]) -> UserProfile:
        """Merge patch into user_metadata at the provider; keys not in patch are preserved there."""
        return await self._request("PATCH", user_id, access_token, json={"user_metadata": dict(patch)})

    async def _request(self, method: str, user_id: str, access_token: str, json: dict | None = None) -> UserProfile:
        try:
            r = await self._http.request(
                method,
                self._user_url(user_id),
                json=json,
                headers={"Accept": "application/json", "Authorization": f"Bearer {access_token}"},
                timeout=self._timeout,
            )
        except httpx.HTTPError as e:
            raise NetworkError(f"Management API request failed: {type(e).__name__}") from e

        if r.status_code == 200:
            try:
                body = r.json()
            except ValueError as e:
                raise ProviderError("invalid_response", "Management API returned a non-JSON body") from e
            if not isinstance(body, dict) or "user_id" not in body:
                raise ProviderError("invalid_response", "Management API returned no user")
            return UserProfile.from_management(body)

        code, desc = error_details(r)
        logger.debug("Management API %s error: status=%s code=%s", method, r.status_code, code)
        if r.status_code in (401, 403):
            raise InvalidCredentials(desc or f"Management API rejected the access token ({r.status_code})")
        if r.status_code == 400:
            raise ValidationError(desc or code)
        if is_transient(r.status_code):
            raise NetworkError(f"Management API returned {r.status_code}")
        raise ProviderError(code, desc)
