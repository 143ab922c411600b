"""
Pending authorization flows (state -> nonce, code_verifier) between opening the browser
and the redirect coming back. TTL to avoid unbounded growth.
"""
import time
from dataclasses import dataclass, field

# TTL seconds for a pending flow (matches the default bound on waiting for the browser)
FLOW_TTL = 600


@dataclass
class PendingFlow:
    nonce: str
    code_verifier: str
    redirect_uri: str
    created_at: float = field(default_factory=time.monotonic)

    def expired(self, ttl: float = FLOW_TTL) -> bool:
        return (time.monotonic() - self.created_at) > ttl


class FlowStore:
    """One-shot lookup: a state value can be redeemed once."""

    def __init__(self, ttl: float = FLOW_TTL):
        self.ttl = ttl
        self._pending: dict[str, PendingFlow] = {}

    def store(self, state: str, *, nonce: str, code_verifier: str, redirect_uri: str) -> None:
        self._clean_expired()
        self._pending[state] = PendingFlow(nonce=nonce, code_verifier=code_verifier, redirect_uri=redirect_uri)

    def pop(self, state: str) -> PendingFlow | None:
        flow = self._pending.pop(state, None)
        if flow is None or flow.expired(self.ttl):
            return None
        return flow

    def __len__(self) -> int:
        return len(self._pending)

    def _clean_expired(self) -> None:
        expired = [s for s, f in self._pending.items() if f.expired(self.ttl)]
        for s in expired:
            del self._pending[s]
