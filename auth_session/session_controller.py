"""
SessionController: sole owner of the in-memory session.

States: LOGGED_OUT -> AUTHENTICATING -> ACTIVE -> REFRESHING -> ACTIVE | LOGGED_OUT.
Actions invoked while AUTHENTICATING or REFRESHING (or during a logout) fail with SessionBusy;
nothing is queued. Observers get immutable SessionSnapshot values and never write.
"""
import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, Mapping

from auth_session import config
from auth_session.credential_store import CredentialStore
from auth_session.errors import InvalidCredentials, InvalidGrant, MissingSession, SessionBusy
from auth_session.identity_client import IdentityClient
from auth_session.models import LOGGED_OUT, Credentials, SessionSnapshot, SessionState, UserProfile
from auth_session.profile_service import ProfileService

logger = logging.getLogger(__name__)

Listener = Callable[[SessionSnapshot], None]

_BUSY_STATES = (SessionState.AUTHENTICATING, SessionState.REFRESHING)


class SessionController:
    def __init__(
        self,
        identity: IdentityClient,
        store: CredentialStore,
        profiles: ProfileService,
        *,
        scopes: str = config.DEFAULT_SCOPE,
        audience: str | None = config.AUDIENCE,
        renew_scopes: str = config.RENEW_SCOPE,
    ):
        self._identity = identity
        self._store = store
        self._profiles = profiles
        self.scopes = scopes
        self.audience = audience
        self.renew_scopes = renew_scopes
        self._session = LOGGED_OUT
        self._logging_out = False
        self._listeners: list[Listener] = []

    # --- Read side ---

    @property
    def session(self) -> SessionSnapshot:
        """Last known session. Never blocks, never touches the network."""
        return self._session

    @property
    def state(self) -> SessionState:
        return self._session.state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Call listener with every new snapshot. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _publish(self, session: SessionSnapshot) -> None:
        self._session = session
        for listener in list(self._listeners):
            try:
                listener(session)
            except Exception:
                logger.exception("Session listener %r failed", listener)

    def _update(self, **changes: Any) -> None:
        current = self._session
        self._publish(
            SessionSnapshot(
                state=changes.get("state", current.state),
                credentials=changes.get("credentials", current.credentials),
                profile=changes.get("profile", current.profile),
            )
        )

    def _teardown(self, reason: str) -> None:
        self._store.clear()
        self._publish(LOGGED_OUT)
        logger.info("Session ended: %s", reason)

    # --- Guards ---

    def _ensure_idle(self) -> None:
        if self._session.state in _BUSY_STATES or self._logging_out:
            raise SessionBusy(f"Session is {self._session.state.value}; try again when it settles")

    def _ensure_active(self) -> SessionSnapshot:
        self._ensure_idle()
        if self._session.state != SessionState.ACTIVE:
            raise MissingSession("No active session")
        return self._session

    # --- Actions ---

    async def login(self) -> SessionSnapshot:
        """
        Browser login, then minimal profile, then persist. On failure the previous state is
        restored (LOGGED_OUT for a first login) and the error is re-raised unchanged.
        """
        self._ensure_idle()
        previous = self._session
        self._update(state=SessionState.AUTHENTICATING)
        try:
            credentials = await self._identity.begin_authorization(self.scopes, self.audience)
            profile = await self._identity.fetch_user_info(credentials.access_token)
            self._store.save(credentials)
        except (Exception, asyncio.CancelledError):
            self._publish(previous)
            raise
        self._publish(SessionSnapshot(state=SessionState.ACTIVE, credentials=credentials, profile=profile))
        logger.info("Login succeeded for user_id=%s", profile.user_id)
        return self._session

    async def logout(self) -> None:
        """
        End the provider session, then clear local credentials regardless of how that went.
        A provider-side failure is re-raised after the local session is gone.
        """
        self._ensure_active()
        self._logging_out = True
        try:
            await self._identity.end_session()
        except Exception as e:
            logger.warning("Provider logout failed (%s); clearing local session anyway", type(e).__name__)
            raise
        finally:
            self._logging_out = False
            self._teardown("logout")

    async def get_credentials(self) -> Credentials:
        """
        Valid credentials for the session, refreshing if needed. From LOGGED_OUT this restores a
        persisted session (credentials plus minimal profile) into ACTIVE.
        """
        self._ensure_idle()
        if self._session.state == SessionState.LOGGED_OUT:
            return await self._restore()
        try:
            credentials = await self._store.get_valid(self._identity)
        except MissingSession:
            self._teardown("stored credentials could not be renewed")
            raise
        if self._session.state == SessionState.ACTIVE:
            self._update(credentials=credentials)
        return credentials

    async def _restore(self) -> Credentials:
        self._update(state=SessionState.AUTHENTICATING)
        try:
            credentials = await self._store.get_valid(self._identity)
            profile = await self._identity.fetch_user_info(credentials.access_token)
        except (Exception, asyncio.CancelledError):
            self._publish(LOGGED_OUT)
            raise
        self._publish(SessionSnapshot(state=SessionState.ACTIVE, credentials=credentials, profile=profile))
        logger.info("Restored persisted session for user_id=%s", profile.user_id)
        return credentials

    async def renew(self) -> Credentials:
        """
        Exchange the refresh token now. ACTIVE -> REFRESHING -> ACTIVE with credentials replaced
        in place; InvalidGrant tears the session down; any other failure leaves it unchanged.
        """
        session = self._ensure_active()
        if session.credentials is None or not session.credentials.refresh_token:
            raise MissingSession("Session has no refresh token")
        self._update(state=SessionState.REFRESHING)
        try:
            credentials = await self._store.refresh(self._identity, self.renew_scopes)
        except (InvalidGrant, MissingSession):
            self._teardown("refresh token rejected")
            raise
        except (Exception, asyncio.CancelledError):
            self._update(state=SessionState.ACTIVE)
            raise
        self._update(state=SessionState.ACTIVE, credentials=credentials)
        return credentials

    async def get_metadata(self) -> dict[str, Any]:
        """Fetch the full profile; the session profile is updated and its metadata returned."""
        profile = await self._with_profile_call(self._profiles.get_full_profile)
        return dict(profile.metadata)

    async def patch_metadata(self, patch: Mapping[str, Any]) -> UserProfile:
        """Merge patch into the user's metadata at the provider; returns the updated profile."""

        async def call(user_id: str, access_token: str) -> UserProfile:
            return await self._profiles.update_metadata(user_id, access_token, patch)

        return await self._with_profile_call(call)

    async def _with_profile_call(self, call: Callable[[str, str], Awaitable[UserProfile]]) -> UserProfile:
        """
        Run a management API call with a valid token. A rejected token gets one forced refresh
        and one retry when there is a refresh token; a rejection that cannot be retried, or a
        second one, surfaces without changing state.
        """
        self._ensure_active()
        credentials = await self.get_credentials()
        user_id = await self._user_id(credentials)
        try:
            full = await call(user_id, credentials.access_token)
        except InvalidCredentials:
            if not credentials.refresh_token:
                # nothing to renew with
                raise
            logger.info("Management API rejected the access token; refreshing once and retrying")
            credentials = await self._forced_refresh()
            full = await call(user_id, credentials.access_token)
        return self._merge_profile(full)

    async def _forced_refresh(self) -> Credentials:
        try:
            credentials = await self._store.refresh(self._identity)
        except (InvalidGrant, MissingSession):
            self._teardown("refresh token rejected")
            raise
        if self._session.state == SessionState.ACTIVE:
            self._update(credentials=credentials)
        return credentials

    async def _user_id(self, credentials: Credentials) -> str:
        profile = self._session.profile
        if profile is not None:
            return profile.user_id
        profile = await self._identity.fetch_user_info(credentials.access_token)
        if self._session.state == SessionState.ACTIVE:
            self._update(profile=profile)
        return profile.user_id

    def _merge_profile(self, full: UserProfile) -> UserProfile:
        current = self._session.profile
        merged = current.merged_with(full) if current is not None else full
        if self._session.state == SessionState.ACTIVE:
            self._update(profile=merged)
        return merged
