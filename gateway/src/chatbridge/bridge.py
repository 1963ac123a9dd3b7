"""Process-wide bridge context and the request surface used by the HTTP layer."""

from __future__ import annotations

import logging
from typing import Any, Dict, List

from .cache import ChatCache
from .config import BridgeConfig
from .credentials import CredentialStore
from .errors import BridgeError, NotConnected, UpstreamOperationFailed
from .lifecycle import LifecycleController, LifecycleUpdate, Phase, Scheduler
from .relay import EventRelay
from .session_client import (
    ChallengeIssued,
    ChatsDelta,
    ChatsSnapshot,
    Connected,
    Disconnected,
    PassThrough,
    SessionClient,
    SessionEvent,
)

logger = logging.getLogger(__name__)

CONNECTION_UPDATE = "connection.update"
CONTACTS_UPDATE = "contacts.update"


class Bridge:
    """Owns the session, the chat cache and the relay for one process.

    Session events flow in through :meth:`handle_session_event`; chat and contact
    events update the cache and republish the derived contact list, lifecycle
    changes are published as ``connection.update`` and everything else is relayed
    under its own name.
    """

    def __init__(
        self,
        client: SessionClient,
        credentials: CredentialStore,
        *,
        config: BridgeConfig | None = None,
        relay: EventRelay | None = None,
        cache: ChatCache | None = None,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.config = config or BridgeConfig()
        self.client = client
        self.credentials = credentials
        self.relay = relay or EventRelay()
        self.cache = cache or ChatCache()
        self.lifecycle = LifecycleController(
            client,
            credentials,
            self.config.lifecycle(),
            scheduler=scheduler,
        )
        self.lifecycle.add_observer(self._on_lifecycle_update)
        client.add_listener(self.handle_session_event)

    def handle_session_event(self, event: SessionEvent) -> None:
        if isinstance(event, ChallengeIssued):
            self.lifecycle.on_challenge(event.challenge, event.kind)
        elif isinstance(event, Connected):
            if not self.lifecycle.on_connected():
                return
            for delay_s in self.config.contacts_flush_delays_s:
                self.lifecycle.schedule(delay_s, self.publish_contacts)
        elif isinstance(event, Disconnected):
            self.lifecycle.on_disconnected(event.reason, status_code=event.status_code, detail=event.detail)
        elif isinstance(event, ChatsSnapshot):
            self.cache.apply_snapshot(event.records)
            logger.info("[%s] %d records, cache holds %d chats", event.source, len(event.records), len(self.cache))
            self.publish_contacts()
        elif isinstance(event, ChatsDelta):
            self.cache.apply_delta(event.records)
            logger.debug("[%s] %d records merged", event.source, len(event.records))
            self.publish_contacts()
        elif isinstance(event, PassThrough):
            self.relay.publish(event.name, event.payload)
        else:
            logger.warning("unhandled session event %s", type(event).__name__)

    def publish_contacts(self) -> int:
        contacts = self.cache.visible_json()
        if not contacts:
            return 0
        return self.relay.publish(CONTACTS_UPDATE, {"contacts": contacts, "count": len(contacts)})

    def _on_lifecycle_update(self, update: LifecycleUpdate) -> None:
        self.relay.publish(CONNECTION_UPDATE, update.to_payload())

    def _require_authenticated(self) -> None:
        if self.lifecycle.phase is not Phase.AUTHENTICATED:
            raise NotConnected(f"session is {self.lifecycle.phase.value}")

    async def start(self) -> None:
        await self.lifecycle.start()

    async def shutdown(self) -> None:
        await self.lifecycle.shutdown()

    def status(self) -> Dict[str, bool]:
        return self.lifecycle.status()

    def health(self) -> Dict[str, Any]:
        phase = self.lifecycle.phase
        return {
            "status": "ok",
            "connected": phase is Phase.AUTHENTICATED,
            "hasSocket": phase in (Phase.CONNECTING, Phase.AWAITING_SCAN, Phase.AUTHENTICATED),
            "subscribers": self.relay.subscriber_count,
        }

    def contacts(self) -> List[Dict[str, Any]]:
        return self.cache.visible_json()

    async def send_message(self, conversation_id: str, text: str) -> Any:
        self._require_authenticated()
        logger.info("sending message to %s", conversation_id)
        try:
            return await self.client.send_text(conversation_id, text)
        except BridgeError:
            raise
        except Exception as exc:
            raise UpstreamOperationFailed(f"send to {conversation_id} failed: {exc}") from exc

    async def fetch_profile_picture(self, conversation_id: str) -> str | None:
        self._require_authenticated()
        try:
            return await self.client.profile_picture_url(conversation_id)
        except BridgeError:
            raise
        except Exception as exc:
            raise UpstreamOperationFailed(f"profile picture lookup for {conversation_id} failed: {exc}") from exc

    async def request_pairing_code(self, phone_number: str) -> str:
        try:
            return await self.lifecycle.request_pairing_code(phone_number)
        except BridgeError:
            raise
        except Exception as exc:
            raise UpstreamOperationFailed(f"pairing code request failed: {exc}") from exc

    async def request_challenge(self) -> Dict[str, Any]:
        phase = self.lifecycle.phase
        if phase is Phase.AUTHENTICATED:
            return {"success": False, "message": "Already authenticated"}
        if phase is Phase.AWAITING_SCAN and self.lifecycle.rendered_challenge is not None:
            return self._with_challenge({"success": True, "message": "Connection in progress"})
        if phase is Phase.CONNECTING:
            return {"success": True, "message": "Connection in progress, waiting for QR..."}

        await self.lifecycle.start()
        response = {
            "success": True,
            "message": "QR generation started. Listen to the push channel for the QR code.",
        }
        return self._with_challenge(response)

    def _with_challenge(self, response: Dict[str, Any]) -> Dict[str, Any]:
        challenge = self.lifecycle.rendered_challenge
        if challenge is None:
            return response
        key = "pairingCode" if self.lifecycle.challenge_kind == "pairing_code" else "qr"
        response[key] = challenge
        return response
