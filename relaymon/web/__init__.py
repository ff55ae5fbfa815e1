"""HTTP route layer — aiohttp app, token auth and the live websocket endpoint."""

from relaymon.web.app import ForbiddenError, create_web_app, start_web_server
from relaymon.web.auth import Authenticator, TokenAuthenticator, UnauthorizedError, extract_token

__all__ = [
    "Authenticator",
    "ForbiddenError",
    "TokenAuthenticator",
    "UnauthorizedError",
    "create_web_app",
    "extract_token",
    "start_web_server",
]
