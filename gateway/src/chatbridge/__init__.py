"""Bridge between one messaging-network session and any number of push subscribers."""

from .bridge import Bridge
from .cache import ChatCache, ChatRecord
from .config import BridgeConfig, load_config_from_env
from .credentials import CredentialStore
from .errors import (
    BridgeError,
    ConnectionRejected,
    NotConnected,
    SessionTerminated,
    TransientDisconnect,
    UpstreamOperationFailed,
)
from .lifecycle import LifecycleConfig, LifecycleController, LifecycleUpdate, Phase
from .relay import EventRelay, Subscription
from .session_client import DisconnectReason, SessionClient, decode_sdk_event
from .server import main, simulate

__all__ = [
    "Bridge",
    "BridgeConfig",
    "BridgeError",
    "ChatCache",
    "ChatRecord",
    "ConnectionRejected",
    "CredentialStore",
    "DisconnectReason",
    "EventRelay",
    "LifecycleConfig",
    "LifecycleController",
    "LifecycleUpdate",
    "NotConnected",
    "Phase",
    "SessionClient",
    "SessionTerminated",
    "Subscription",
    "TransientDisconnect",
    "UpstreamOperationFailed",
    "decode_sdk_event",
    "load_config_from_env",
    "main",
    "simulate",
]
