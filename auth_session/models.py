"""
Session data: credentials, user profile, state and the read-only snapshot handed to observers.
"""
import enum
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Any, Mapping


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class Credentials:
    access_token: str = field(repr=False)
    expires_at: datetime
    scope: str = ""
    refresh_token: str | None = field(default=None, repr=False)
    id_token: str | None = field(default=None, repr=False)
    token_type: str = "Bearer"

    def __post_init__(self):
        # Naive datetimes (e.g. read back from SQLite) are UTC
        if self.expires_at.tzinfo is None:
            object.__setattr__(self, "expires_at", self.expires_at.replace(tzinfo=timezone.utc))

    @property
    def scopes(self) -> frozenset[str]:
        return frozenset(self.scope.split())

    def expires_within(self, margin_seconds: float = 0, now: datetime | None = None) -> bool:
        """True if the access token is expired or expires within margin_seconds."""
        now = now or _utc_now()
        return self.expires_at <= now + timedelta(seconds=margin_seconds)

    @classmethod
    def from_token_response(cls, data: Mapping[str, Any], requested_scope: str = "") -> "Credentials":
        """
        Build credentials from a token endpoint JSON body.
        expires_in is relative; it is pinned to an absolute instant here.
        """
        expires_in = int(float(data.get("expires_in") or 0))
        return cls(
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token") or None,
            id_token=data.get("id_token") or None,
            expires_at=_utc_now() + timedelta(seconds=expires_in),
            scope=data.get("scope") or requested_scope,
            token_type=data.get("token_type") or "Bearer",
        )

    def with_retained(self, previous: "Credentials") -> "Credentials":
        """Keep fields from previous that a renewal response did not rotate."""
        return replace(
            self,
            refresh_token=self.refresh_token or previous.refresh_token,
            id_token=self.id_token or previous.id_token,
            scope=self.scope or previous.scope,
        )


@dataclass(frozen=True)
class UserProfile:
    user_id: str
    name: str | None = None
    email: str | None = None
    nickname: str | None = None
    picture: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=dict)
    app_metadata: Mapping[str, Any] = field(default_factory=dict)
    full: bool = False

    def __post_init__(self):
        object.__setattr__(self, "metadata", MappingProxyType(dict(self.metadata)))
        object.__setattr__(self, "app_metadata", MappingProxyType(dict(self.app_metadata)))

    @classmethod
    def from_claims(cls, claims: Mapping[str, Any]) -> "UserProfile":
        """Minimal profile from userinfo / ID token claims."""
        return cls(
            user_id=str(claims["sub"]),
            name=claims.get("name"),
            email=claims.get("email"),
            nickname=claims.get("nickname"),
            picture=claims.get("picture"),
        )

    @classmethod
    def from_management(cls, body: Mapping[str, Any]) -> "UserProfile":
        """Full profile from a management API user object."""
        return cls(
            user_id=str(body["user_id"]),
            name=body.get("name"),
            email=body.get("email"),
            nickname=body.get("nickname"),
            picture=body.get("picture"),
            metadata=body.get("user_metadata") or {},
            app_metadata=body.get("app_metadata") or {},
            full=True,
        )

    def merged_with(self, other: "UserProfile") -> "UserProfile":
        """
        Overlay other onto self. A full profile wins for the fields it carries;
        fields it leaves empty keep the minimal profile's values.
        """
        return UserProfile(
            user_id=other.user_id or self.user_id,
            name=other.name if other.name is not None else self.name,
            email=other.email if other.email is not None else self.email,
            nickname=other.nickname if other.nickname is not None else self.nickname,
            picture=other.picture if other.picture is not None else self.picture,
            metadata=other.metadata if other.full else self.metadata,
            app_metadata=other.app_metadata if other.full else self.app_metadata,
            full=self.full or other.full,
        )


class SessionState(str, enum.Enum):
    LOGGED_OUT = "logged_out"
    AUTHENTICATING = "authenticating"
    ACTIVE = "active"
    REFRESHING = "refreshing"


@dataclass(frozen=True)
class SessionSnapshot:
    """Immutable view of the session; the only thing observers ever see."""

    state: SessionState
    credentials: Credentials | None = None
    profile: UserProfile | None = None

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE


LOGGED_OUT = SessionSnapshot(state=SessionState.LOGGED_OUT)
