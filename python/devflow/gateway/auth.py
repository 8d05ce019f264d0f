"""Bearer-token authentication for live listeners and the HTTP API."""

import hmac
import logging
from typing import Any, Iterable, List, Optional

from devflow.exceptions import AuthenticationError

logger = logging.getLogger(__name__)

ANONYMOUS = "anonymous"


def extract_bearer(value: Optional[str]) -> Optional[str]:
    """Accept either a raw token or an ``Authorization: Bearer <token>`` value."""
    if not value:
        return None
    scheme, _, rest = value.strip().partition(" ")
    if scheme.lower() == "bearer":
        return rest.strip() or None
    return value.strip() or None


class TokenAuthenticator:
    """Allow-list of opaque tokens. An empty list disables authentication."""

    def __init__(self, tokens: Iterable[str] = ()):
        self._tokens: List[str] = [t for t in tokens if t]

    @property
    def enabled(self) -> bool:
        return bool(self._tokens)

    async def authenticate(self, credentials: Any) -> str:
        if not self.enabled:
            return ANONYMOUS

        token = extract_bearer(credentials if isinstance(credentials, str) else None)
        if token is None:
            raise AuthenticationError("Missing credentials")

        matched = None
        for index, candidate in enumerate(self._tokens):
            # No early exit.
            if hmac.compare_digest(token.encode(), candidate.encode()):
                matched = index
        if matched is None:
            logger.warning("Rejected listener credentials")
            raise AuthenticationError("Invalid token")
        return f"token-{matched}"
