from __future__ import annotations

import base64
import enum
import itertools
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

CONNECTED_TO_SERVER = "connected_to_server"
# Published often enough that per-broadcast logging is noise.
_QUIET_EVENTS = {"presence.update"}

Send = Callable[[str], None]
IsOpen = Callable[[], bool]


def _json_default(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (set, frozenset, tuple)):
        return list(value)
    return str(value)


def encode_message(event_type: str, payload: Any) -> str:
    return json.dumps({"type": event_type, "payload": payload}, default=_json_default)


@dataclass
class Subscription:
    subscriber_id: int
    send: Send
    is_open: IsOpen

    def deliver(self, message: str) -> bool:
        if not self.is_open():
            return False
        self.send(message)
        return True


class EventRelay:
    """Fans every published event out to all currently connected subscribers.

    Delivery is best effort: closed subscribers are dropped on the next publish
    and nothing is buffered for late joiners.
    """

    def __init__(self) -> None:
        self._subscriptions: Dict[int, Subscription] = {}
        self._ids = itertools.count(1)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions)

    def subscribe(self, send: Send, is_open: IsOpen) -> Subscription:
        subscription = Subscription(subscriber_id=next(self._ids), send=send, is_open=is_open)
        self._subscriptions[subscription.subscriber_id] = subscription
        subscription.deliver(
            encode_message(CONNECTED_TO_SERVER, {"message": "WebSocket connection established"})
        )
        logger.info("subscriber %d connected (%d total)", subscription.subscriber_id, self.subscriber_count)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        if self._subscriptions.pop(subscription.subscriber_id, None) is not None:
            logger.info("subscriber %d disconnected", subscription.subscriber_id)

    def publish(self, event_type: str, payload: Any) -> int:
        message = encode_message(event_type, payload)
        delivered = 0
        for subscription in list(self._subscriptions.values()):
            if subscription.deliver(message):
                delivered += 1
            else:
                self.unsubscribe(subscription)
        if delivered and event_type not in _QUIET_EVENTS:
            logger.debug("broadcast %s to %d subscriber(s)", event_type, delivered)
        return delivered
