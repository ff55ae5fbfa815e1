"""Live-channel wire types: channels, server events and typed client messages."""

from __future__ import annotations

import json
from decimal import Decimal
from enum import StrEnum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError


class Channel(StrEnum):
    METRICS = "metrics"
    ALERTS = "alerts"
    SYSTEM_STATUS = "system_status"
    CHAIN_UPDATES = "chain_updates"
    WORKER_UPDATES = "worker_updates"
    WALLETS = "wallets"


ALL_CHANNELS: frozenset[str] = frozenset(c.value for c in Channel)
ADMIN_CHANNELS: frozenset[str] = frozenset({Channel.SYSTEM_STATUS.value})


class ServerEvent(StrEnum):
    WELCOME = "welcome"
    ERROR = "error"
    PONG = "pong"
    SUBSCRIPTION_CONFIRMED = "subscription_confirmed"
    DATA_RESPONSE = "data_response"
    NEW_ALERT = "new_alert"
    CRITICAL_ALERT = "critical_alert"
    ALERTS_UPDATE = "alerts_update"
    METRICS_UPDATE = "metrics_update"
    WORKER_UPDATE = "worker_update"
    SOURCE_ERROR = "source_error"
    BALANCE_UPDATE = "balance_update"
    WALLET_ALERT = "wallet_alert"
    WALLET_BALANCES_UPDATE = "wallet_balances_update"


# Error frame texts.
INVALID_FORMAT = "Invalid message format"
UNKNOWN_TYPE = "Unknown message type"
INVALID_CHANNEL = "Invalid subscription channel"
FORBIDDEN_CHANNEL = "Insufficient permissions for this channel"
UNKNOWN_REQUEST = "Unknown data request type"


# ── Client messages ────────────────────────────────────────────


class ChannelData(BaseModel):
    channel: str


class DataRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    request_type: str = Field(alias="requestType")
    params: dict[str, Any] = Field(default_factory=dict)


class SubscribeMessage(BaseModel):
    type: Literal["subscribe"]
    data: ChannelData


class UnsubscribeMessage(BaseModel):
    type: Literal["unsubscribe"]
    data: ChannelData


class PingMessage(BaseModel):
    type: Literal["ping"]
    data: dict[str, Any] = Field(default_factory=dict)


class RequestDataMessage(BaseModel):
    type: Literal["request_data"]
    data: DataRequest


ClientMessage = Annotated[
    Union[SubscribeMessage, UnsubscribeMessage, PingMessage, RequestDataMessage],
    Field(discriminator="type"),
]

_CLIENT_MESSAGE = TypeAdapter(ClientMessage)
_KNOWN_TYPES = frozenset({"subscribe", "unsubscribe", "ping", "request_data"})


class MessageError(Exception):
    """A client frame could not be turned into a ClientMessage."""

    def __init__(self, reason: str) -> None:
        self.reason = reason
        super().__init__(reason)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """Decode one client frame.

    Raises:
        MessageError: With ``INVALID_FORMAT`` for undecodable or ill-shaped
            frames, ``UNKNOWN_TYPE`` for an unrecognised ``type``.
    """
    try:
        body = json.loads(raw)
    except (ValueError, TypeError) as exc:
        raise MessageError(INVALID_FORMAT) from exc
    if not isinstance(body, dict):
        raise MessageError(INVALID_FORMAT)
    if body.get("type") not in _KNOWN_TYPES:
        raise MessageError(UNKNOWN_TYPE)
    try:
        return _CLIENT_MESSAGE.validate_python(body)
    except ValidationError as exc:
        raise MessageError(INVALID_FORMAT) from exc


# ── Server frames ──────────────────────────────────────────────


class _FrameEncoder(json.JSONEncoder):
    def default(self, o: Any) -> Any:
        if isinstance(o, Decimal):
            return float(o)
        if isinstance(o, (set, frozenset)):
            return sorted(o)
        return super().default(o)


def dumps(obj: Any) -> str:
    """JSON-encode with Decimal and set support."""
    return json.dumps(obj, cls=_FrameEncoder)


def encode_frame(event: str, data: dict[str, Any] | None = None) -> str:
    return dumps({"type": str(event), "data": data or {}})


def error_frame(message: str) -> str:
    return encode_frame(ServerEvent.ERROR, {"message": message})
