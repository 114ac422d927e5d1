"""Short-lived, single-project render tokens.

A render token lets the headless browser load the render-only view of one
project without a user session. Tokens are single-use: the first successful
validation consumes them, and an expired token is dropped when it is next
seen or swept.

The in-memory store is per-process. Multi-process deployments can inject any
object satisfying RenderTokenStore (e.g. a Redis-backed store).
"""

import logging
import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Protocol

from src.config import get_settings
from src.exceptions import AuthorizationError

logger = logging.getLogger(__name__)

TOKEN_BYTES = 24


@dataclass(frozen=True)
class RenderToken:
    token: str
    project_id: str
    expires_at: float  # clock() seconds

    def is_expired(self, now: float) -> bool:
        return now > self.expires_at


class RenderTokenStore(Protocol):
    def issue(self, project_id: str) -> RenderToken: ...

    def validate(self, token: str, project_id: str) -> bool: ...

    def invalidate(self, token: str) -> None: ...

    def sweep_expired(self) -> int: ...


class InMemoryRenderTokenStore:
    """Thread-safe in-memory token store with TTL-based expiration."""

    def __init__(
        self,
        ttl_seconds: float | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._tokens: dict[str, RenderToken] = {}
        self._lock = threading.Lock()
        self._ttl = ttl_seconds if ttl_seconds is not None else get_settings().render_token_ttl_seconds
        self._clock = clock

    def issue(self, project_id: str) -> RenderToken:
        """Create a token for project_id. Expired tokens are swept first."""
        self.sweep_expired()
        entry = RenderToken(
            token=secrets.token_urlsafe(TOKEN_BYTES),
            project_id=str(project_id),
            expires_at=self._clock() + self._ttl,
        )
        with self._lock:
            self._tokens[entry.token] = entry
        return entry

    def validate(self, token: str, project_id: str) -> bool:
        """Check token against project_id, consuming it on success or expiry.

        A token presented for the wrong project is rejected but left in place
        so the legitimate render can still use it.
        """
        with self._lock:
            entry = self._tokens.get(token)
            if entry is None:
                return False
            if entry.is_expired(self._clock()):
                del self._tokens[token]
                return False
            if entry.project_id != str(project_id):
                return False
            del self._tokens[token]
            return True

    def invalidate(self, token: str) -> None:
        with self._lock:
            self._tokens.pop(token, None)

    def sweep_expired(self) -> int:
        """Remove expired tokens. Returns the number removed."""
        now = self._clock()
        with self._lock:
            expired = [k for k, v in self._tokens.items() if v.is_expired(now)]
            for k in expired:
                del self._tokens[k]
        if expired:
            logger.debug(f"Swept {len(expired)} expired render tokens")
        return len(expired)

    def __len__(self) -> int:
        return len(self._tokens)


def authorize_render_token(
    store: RenderTokenStore, token: str | None, project_id: str
) -> None:
    """Validate a token or raise AuthorizationError. Never retried."""
    if not token or not store.validate(token, project_id):
        logger.warning(f"Rejected render token for project {project_id}")
        raise AuthorizationError()


# Singleton instance
render_token_store = InMemoryRenderTokenStore()


def get_render_token_store() -> RenderTokenStore:
    return render_token_store
