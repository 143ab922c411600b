"""
CredentialStore: the persisted copy of the current credentials, and the single place that
turns "give me a valid access token" into at most one refresh-token exchange at a time.
"""
import asyncio
import logging
from collections.abc import Iterable
from datetime import timezone
from typing import Protocol

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import delete
from sqlalchemy.engine import Engine

from auth_session import config
from auth_session.database import StoredCredential, init_db, make_engine
from auth_session.errors import InvalidGrant, MissingSession
from auth_session.keys import load_or_create_encryption_key
from auth_session.models import Credentials

logger = logging.getLogger(__name__)


class RefreshTokenExchanger(Protocol):
    async def exchange_refresh_token(self, refresh_token: str, scopes: str | Iterable[str] | None = None) -> Credentials:
        ...


class CredentialStore:
    def __init__(
        self,
        *,
        engine: Engine | None = None,
        database_url: str = config.CREDENTIALS_DATABASE_URL,
        fernet: Fernet | None = None,
        key_path: str | None = config.ENCRYPTION_KEY_PATH,
        account: str = "default",
        expiry_margin: float = config.EXPIRY_MARGIN_SECONDS,
    ):
        self.account = account
        self.expiry_margin = expiry_margin
        self._engine = engine or make_engine(database_url)
        self._sessions = init_db(self._engine)
        self._fernet = fernet or load_or_create_encryption_key(key_path)
        self._inflight: asyncio.Task | None = None
        self._inflight_scopes: frozenset[str] | None = None
        # bumped by clear(); a refresh that started before a clear must not write back
        self._generation = 0

    # --- Persisted copy ---

    def save(self, credentials: Credentials) -> None:
        """Replace the persisted record in one transaction; readers see all old or all new fields."""
        with self._sessions.begin() as db:
            row = db.get(StoredCredential, self.account)
            if row is None:
                row = StoredCredential(account=self.account)
                db.add(row)
            row.access_token = self._encrypt(credentials.access_token)
            row.refresh_token = self._encrypt(credentials.refresh_token)
            row.id_token = self._encrypt(credentials.id_token)
            row.expires_at = credentials.expires_at.astimezone(timezone.utc).replace(tzinfo=None)
            row.scope = credentials.scope
            row.token_type = credentials.token_type

    def load(self) -> Credentials:
        with self._sessions() as db:
            row = db.get(StoredCredential, self.account)
        if row is None:
            raise MissingSession("No credentials are stored")
        try:
            return Credentials(
                access_token=self._decrypt(row.access_token),
                refresh_token=self._decrypt(row.refresh_token),
                id_token=self._decrypt(row.id_token),
                expires_at=row.expires_at.replace(tzinfo=timezone.utc),
                scope=row.scope,
                token_type=row.token_type,
            )
        except InvalidToken as e:
            logger.warning("Stored credentials for account=%s cannot be decrypted with the current key", self.account)
            raise MissingSession("Stored credentials are unreadable") from e

    def has_credentials(self) -> bool:
        with self._sessions() as db:
            return db.get(StoredCredential, self.account) is not None

    def clear(self) -> None:
        """Remove the persisted record. Idempotent."""
        self._generation += 1
        with self._sessions.begin() as db:
            db.execute(delete(StoredCredential).where(StoredCredential.account == self.account))

    def _encrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self._fernet.encrypt(value.encode("utf-8")).decode("ascii")

    def _decrypt(self, value: str | None) -> str | None:
        if value is None:
            return None
        return self._fernet.decrypt(value.encode("ascii")).decode("utf-8")

    # --- Valid credentials ---

    async def get_valid(
        self,
        identity_client: RefreshTokenExchanger,
        scopes: str | Iterable[str] | None = None,
    ) -> Credentials:
        """
        Stored credentials if they are not within expiry_margin of expiring; otherwise the
        result of one shared refresh. A rejected refresh token clears the store and fails
        with MissingSession. NetworkError leaves the stored record untouched.
        """
        credentials = self.load()
        if not credentials.expires_within(self.expiry_margin):
            return credentials
        if not credentials.refresh_token:
            self.clear()
            raise MissingSession("Stored session expired and has no refresh token")
        try:
            return await self._refresh_once(identity_client, scopes)
        except InvalidGrant as e:
            raise MissingSession("Stored session expired and could not be renewed") from e

    async def refresh(
        self,
        identity_client: RefreshTokenExchanger,
        scopes: str | Iterable[str] | None = None,
    ) -> Credentials:
        """
        Renew now regardless of expiry. Joins an in-flight exchange unless explicit scopes differ
        from the ones it asked for; then that exchange lands first and a new one follows.
        InvalidGrant is re-raised.
        """
        self.load()
        return await self._refresh_once(identity_client, scopes)

    async def _refresh_once(self, identity_client: RefreshTokenExchanger, scopes) -> Credentials:
        wanted = _scope_set(scopes)
        while self._inflight is not None and wanted is not None and wanted != self._inflight_scopes:
            await asyncio.shield(self._inflight)
        if self._inflight is None:
            self._inflight_scopes = wanted
            self._inflight = asyncio.ensure_future(self._refresh(identity_client, scopes))
        # A cancelled caller must not cancel the exchange other callers are waiting on
        return await asyncio.shield(self._inflight)

    async def _refresh(self, identity_client: RefreshTokenExchanger, scopes) -> Credentials:
        try:
            generation = self._generation
            current = self.load()
            if not current.refresh_token:
                raise InvalidGrant("No refresh token stored")
            if scopes is None:
                scopes = current.scope or None
            try:
                renewed = await identity_client.exchange_refresh_token(current.refresh_token, scopes)
            except InvalidGrant:
                logger.info("Refresh token rejected; clearing stored credentials for account=%s", self.account)
                self.clear()
                raise
            if generation != self._generation:
                # cleared (logout) while the exchange was in flight; the new tokens are dropped
                logger.info("Credentials for account=%s were cleared during refresh; discarding result", self.account)
                raise MissingSession("Session ended while credentials were being renewed")
            credentials = renewed.with_retained(current)
            self.save(credentials)
            logger.info("Stored renewed credentials for account=%s (expires_at=%s)", self.account, credentials.expires_at.isoformat())
            return credentials
        finally:
            self._inflight = None
            self._inflight_scopes = None


def _scope_set(scopes: str | Iterable[str] | None) -> frozenset[str] | None:
    if scopes is None:
        return None
    if isinstance(scopes, str):
        return frozenset(scopes.split())
    return frozenset(scopes)
