"""Source credential decoding.

Credentials are stored as a JSON document, either ``{"username", "password"}``
or ``{"token"}``. When a credentials key is configured the document is
Fernet-encrypted at rest.
"""

from __future__ import annotations

import base64
import json

import structlog
from cryptography.fernet import Fernet, InvalidToken
from pydantic import BaseModel, ValidationError

from relaymon.core.types import AuthMode, MetricSource

logger = structlog.stdlib.get_logger()


class SourceCredentials(BaseModel):
    username: str = ""
    password: str = ""
    token: str = ""


class SourceAuth(BaseModel):
    """Resolved authentication for one metrics request."""

    mode: AuthMode = AuthMode.NONE
    credentials: SourceCredentials = SourceCredentials()

    def headers(self) -> dict[str, str]:
        if self.mode == AuthMode.BEARER and self.credentials.token:
            return {"Authorization": f"Bearer {self.credentials.token}"}
        if self.mode == AuthMode.BASIC and self.credentials.username:
            pair = f"{self.credentials.username}:{self.credentials.password}"
            return {"Authorization": "Basic " + base64.b64encode(pair.encode()).decode()}
        return {}


def encrypt_credentials(creds: SourceCredentials, key: str = "") -> str:
    """Serialize credentials for storage, encrypting when ``key`` is set."""
    payload = creds.model_dump_json(exclude_defaults=True)
    if not key:
        return payload
    return Fernet(key.encode()).encrypt(payload.encode()).decode()


def decode_credentials(source: MetricSource, key: str = "") -> SourceAuth | None:
    """Return the auth to use for ``source``, or None to go unauthenticated.

    Undecodable credentials are logged and treated as absent.
    """
    if source.auth_mode == AuthMode.NONE or not source.encrypted_credentials:
        return None

    blob = source.encrypted_credentials
    try:
        if key:
            blob = Fernet(key.encode()).decrypt(blob.encode()).decode()
        creds = SourceCredentials.model_validate(json.loads(blob))
    except (InvalidToken, ValueError, ValidationError):
        logger.warning(
            "source_credentials_invalid",
            source=source.name,
            auth_mode=source.auth_mode,
        )
        return None

    return SourceAuth(mode=source.auth_mode, credentials=creds)

