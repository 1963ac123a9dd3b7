"""Session client boundary: typed session events and the SDK adapter contract."""

from __future__ import annotations

import abc
import enum
import importlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, ClassVar, List, Mapping, Sequence

from .errors import ConnectionRejected, SessionTerminated

if TYPE_CHECKING:
    from .config import BridgeConfig
    from .credentials import CredentialStore

logger = logging.getLogger(__name__)


class DisconnectReason(str, enum.Enum):
    UNAUTHORIZED = "unauthorized"
    LOGGED_OUT = "logged_out"
    TRANSIENT = "transient"

    @classmethod
    def from_status_code(cls, status_code: int | None) -> "DisconnectReason":
        if status_code == 401:
            return cls.UNAUTHORIZED
        if status_code in (403, 440):
            return cls.LOGGED_OUT
        return cls.TRANSIENT

    @classmethod
    def from_error(cls, exc: BaseException) -> "DisconnectReason":
        if isinstance(exc, ConnectionRejected):
            return cls.UNAUTHORIZED
        if isinstance(exc, SessionTerminated):
            return cls.LOGGED_OUT
        return cls.TRANSIENT


@dataclass(frozen=True)
class SessionEvent:
    """Base class for everything a session client reports."""

    type: ClassVar[str] = ""


@dataclass(frozen=True)
class ChallengeIssued(SessionEvent):
    type: ClassVar[str] = "connection.update"

    challenge: str
    kind: str = "qr"


@dataclass(frozen=True)
class Connected(SessionEvent):
    type: ClassVar[str] = "connection.update"


@dataclass(frozen=True)
class Disconnected(SessionEvent):
    type: ClassVar[str] = "connection.update"

    reason: DisconnectReason = DisconnectReason.TRANSIENT
    status_code: int | None = None
    detail: str = ""


@dataclass(frozen=True)
class ChatsSnapshot(SessionEvent):
    """Authoritative chat state, e.g. from a history sync."""

    type: ClassVar[str] = "chats.set"

    source: str
    records: Sequence[Mapping[str, Any]] = field(default_factory=tuple)


@dataclass(frozen=True)
class ChatsDelta(SessionEvent):
    """Partial chat/contact updates to merge into what is already known."""

    type: ClassVar[str] = "chats.update"

    source: str
    records: Sequence[Mapping[str, Any]] = field(default_factory=tuple)


@dataclass(frozen=True)
class PassThrough(SessionEvent):
    """Any other SDK event, relayed verbatim under its own name."""

    name: str
    payload: Any = None


Listener = Callable[[SessionEvent], None]

_SNAPSHOT_EVENTS = {"chats.set"}
_DELTA_EVENTS = {"chats.upsert", "chats.update", "contacts.set", "contacts.upsert", "contacts.update"}


def _records(payload: Any, key: str) -> tuple[Mapping[str, Any], ...]:
    if isinstance(payload, Mapping):
        payload = payload.get(key) or []
    if not isinstance(payload, (list, tuple)):
        return ()
    return tuple(item for item in payload if isinstance(item, Mapping))


def _status_code(last_disconnect: Any) -> int | None:
    if not isinstance(last_disconnect, Mapping):
        return None
    error = last_disconnect.get("error")
    if not isinstance(error, Mapping):
        return None
    output = error.get("output")
    if not isinstance(output, Mapping):
        return None
    code = output.get("statusCode")
    return code if isinstance(code, int) else None


def _disconnect_detail(last_disconnect: Any) -> str:
    try:
        detail = last_disconnect["error"]["output"]["payload"]["error"]
    except (KeyError, TypeError):
        return "Unknown"
    return str(detail)


def decode_sdk_event(name: str, payload: Any) -> List[SessionEvent]:
    """Translate one SDK-shaped event into zero or more typed session events.

    The naming follows the upstream event catalogue (``connection.update``,
    ``chats.set``, ``messaging-history.set`` ...). Unknown events are returned as
    :class:`PassThrough` so nothing the SDK reports is lost.
    """

    if name == "connection.update":
        update = payload if isinstance(payload, Mapping) else {}
        events: List[SessionEvent] = []
        qr = update.get("qr")
        if isinstance(qr, str) and qr:
            events.append(ChallengeIssued(challenge=qr, kind="qr"))
        connection = update.get("connection")
        if connection == "open":
            events.append(Connected())
        elif connection == "close":
            last_disconnect = update.get("lastDisconnect")
            status_code = _status_code(last_disconnect)
            events.append(
                Disconnected(
                    reason=DisconnectReason.from_status_code(status_code),
                    status_code=status_code,
                    detail=_disconnect_detail(last_disconnect),
                )
            )
        return events

    if name == "messaging-history.set":
        events = []
        chats = _records(payload, "chats")
        contacts = _records(payload, "contacts")
        if chats:
            events.append(ChatsSnapshot(source=name, records=chats))
        if contacts:
            events.append(ChatsDelta(source=name, records=contacts))
        return events

    if name in _SNAPSHOT_EVENTS:
        return [ChatsSnapshot(source=name, records=_records(payload, "chats"))]
    if name in _DELTA_EVENTS:
        key = "contacts" if name.startswith("contacts.") else "chats"
        return [ChatsDelta(source=name, records=_records(payload, key))]
    return [PassThrough(name=name, payload=payload)]


class SessionClient(abc.ABC):
    """Owns the single connection handle to the messaging network.

    Concrete adapters wrap an SDK, translate its callbacks with
    :func:`decode_sdk_event` and hand the results to :meth:`emit`.
    """

    def __init__(self) -> None:
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener) -> None:
        try:
            self._listeners.remove(listener)
        except ValueError:
            return

    def emit(self, event: SessionEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                logger.exception("session listener failed for %s", type(event).__name__)

    def emit_sdk_event(self, name: str, payload: Any) -> None:
        for event in decode_sdk_event(name, payload):
            self.emit(event)

    @abc.abstractmethod
    async def open(self, credentials: "CredentialStore") -> None:
        """Open a connection, reusing persisted credentials when present."""

    @abc.abstractmethod
    async def close(self) -> None:
        ...

    @abc.abstractmethod
    async def send_text(self, conversation_id: str, text: str) -> Any:
        ...

    @abc.abstractmethod
    async def profile_picture_url(self, conversation_id: str) -> str | None:
        """Return the picture URL, or ``None`` when the network has none."""

    @abc.abstractmethod
    async def request_pairing_code(self, phone_number: str) -> str:
        ...


def load_session_client(target: str, config: "BridgeConfig") -> SessionClient:
    """Instantiate the adapter named by ``module:factory``."""

    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"session client must be given as module:factory, got {target!r}")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr, None)
    if factory is None or not callable(factory):
        raise ValueError(f"{target!r} does not name a callable")
    client = factory(config)
    if not isinstance(client, SessionClient):
        raise TypeError(f"{target!r} returned {type(client).__name__}, expected a SessionClient")
    return client
