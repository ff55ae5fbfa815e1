"""Token authentication for the route layer and the live channel."""

from __future__ import annotations

import hmac
from typing import Protocol, runtime_checkable

from aiohttp import web

from relaymon.core.config import AuthConfig
from relaymon.core.types import Identity, Role


class UnauthorizedError(Exception):
    """Missing, unknown or malformed credentials."""


@runtime_checkable
class Authenticator(Protocol):
    async def verify(self, token: str) -> Identity:
        """Return the identity owning ``token``. Raises UnauthorizedError."""
        ...


class TokenAuthenticator:
    """Static API tokens from configuration, compared in constant time."""

    def __init__(self, tokens: list[tuple[str, Identity]]) -> None:
        self._tokens = [(t, ident) for t, ident in tokens if t]

    @classmethod
    def from_config(cls, cfg: AuthConfig) -> TokenAuthenticator:
        return cls([
            (
                entry.token.get_secret_value(),
                Identity(user_id=entry.user_id, username=entry.username, role=Role(entry.role)),
            )
            for entry in cfg.tokens
        ])

    async def verify(self, token: str) -> Identity:
        if not token:
            raise UnauthorizedError("Missing token")
        match: Identity | None = None
        for candidate, identity in self._tokens:
            # Compare against every token so timing does not reveal position.
            if hmac.compare_digest(candidate.encode(), token.encode()):
                match = identity
        if match is None:
            raise UnauthorizedError("Invalid token")
        return match


def extract_token(request: web.Request) -> str:
    """Bearer token from the Authorization header, else the ``token`` query parameter."""
    header = request.headers.get("Authorization", "")
    if header.startswith("Bearer "):
        return header[len("Bearer "):].strip()
    return request.query.get("token", "")
