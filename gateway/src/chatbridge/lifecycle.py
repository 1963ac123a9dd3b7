from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Callable, List, Set

from .credentials import CredentialStore
from .errors import NotConnected
from .qr import render_challenge
from .session_client import DisconnectReason, SessionClient

logger = logging.getLogger(__name__)


class Phase(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AWAITING_SCAN = "awaiting_scan"
    AUTHENTICATED = "authenticated"
    CLOSED = "closed"


_ACTIVE_PHASES = {Phase.CONNECTING, Phase.AWAITING_SCAN, Phase.AUTHENTICATED}


@dataclass
class LifecycleConfig:
    max_retries: int = 5
    retry_base_delay_s: float = 3.0
    retry_max_delay_s: float = 15.0
    unauthorized_restart_delay_s: float = 1.0

    def backoff_delay(self, retry_count: int) -> float:
        return min(self.retry_base_delay_s * retry_count, self.retry_max_delay_s)


@dataclass(frozen=True)
class LifecycleUpdate:
    phase: Phase
    connection: str
    challenge: str | None = None
    challenge_kind: str | None = None
    reason: str | None = None
    status_code: int | None = None
    retry_count: int = 0

    def to_payload(self) -> dict:
        payload: dict = {"connection": self.connection, "phase": self.phase.value}
        if self.challenge is not None:
            if self.challenge_kind == "pairing_code":
                payload["pairingCode"] = self.challenge
            else:
                payload["qr"] = self.challenge
        if self.reason is not None:
            payload["reason"] = self.reason
            payload["statusCode"] = self.status_code
            payload["retryCount"] = self.retry_count
        return payload


Scheduler = Callable[[float, Callable[[], None]], None]
Observer = Callable[[LifecycleUpdate], None]


class LifecycleController:
    """Drives the single session: start, challenge, connect, disconnect, retry."""

    def __init__(
        self,
        client: SessionClient,
        credentials: CredentialStore,
        config: LifecycleConfig | None = None,
        *,
        scheduler: Scheduler | None = None,
    ) -> None:
        self.client = client
        self.credentials = credentials
        self.config = config or LifecycleConfig()
        self._scheduler = scheduler or self._call_later
        self.phase = Phase.DISCONNECTED
        self.retry_count = 0
        self.current_challenge: str | None = None
        self.challenge_kind: str | None = None
        self._rendered_challenge: str | None = None
        self._observers: List[Observer] = []
        self._timers: List[asyncio.TimerHandle] = []
        self._tasks: Set[asyncio.Task] = set()
        self._stopping = False

    def add_observer(self, observer: Observer) -> None:
        self._observers.append(observer)

    def status(self) -> dict:
        return {
            "isAuthenticated": self.phase is Phase.AUTHENTICATED,
            "isConnecting": self.phase in (Phase.CONNECTING, Phase.AWAITING_SCAN),
            "hasQr": self.current_challenge is not None,
        }

    @property
    def rendered_challenge(self) -> str | None:
        return self._rendered_challenge

    async def start(self) -> None:
        if self.phase in _ACTIVE_PHASES:
            logger.debug("start ignored, session already %s", self.phase.value)
            return
        self.phase = Phase.CONNECTING
        self._clear_challenge()
        self._notify(LifecycleUpdate(phase=self.phase, connection="connecting", retry_count=self.retry_count))
        logger.info(
            "opening session (stored credentials: %s)",
            "yes" if self.credentials.has_credentials() else "no",
        )
        try:
            await self.client.open(self.credentials)
        except Exception as exc:
            logger.warning("session open failed: %s", exc)
            self.on_disconnected(DisconnectReason.from_error(exc), detail=str(exc))

    def on_challenge(self, challenge: str, kind: str = "qr") -> None:
        if self.phase is Phase.AUTHENTICATED:
            logger.debug("challenge ignored while authenticated")
            return
        self.phase = Phase.AWAITING_SCAN
        self.current_challenge = challenge
        self.challenge_kind = kind
        self._rendered_challenge = render_challenge(challenge, kind)
        logger.info("pairing challenge issued (%s)", kind)
        self._notify(
            LifecycleUpdate(
                phase=self.phase,
                connection="connecting",
                challenge=self._rendered_challenge,
                challenge_kind=kind,
                retry_count=self.retry_count,
            )
        )

    def on_connected(self) -> bool:
        """Move to authenticated; returns False when already there."""

        if self.phase is Phase.AUTHENTICATED:
            return False
        self.phase = Phase.AUTHENTICATED
        self.retry_count = 0
        self._clear_challenge()
        logger.info("session authenticated")
        self._notify(LifecycleUpdate(phase=self.phase, connection="open"))
        return True

    def on_disconnected(
        self,
        reason: DisconnectReason,
        *,
        status_code: int | None = None,
        detail: str = "",
    ) -> None:
        if self._stopping:
            return
        self._clear_challenge()
        if reason is DisconnectReason.UNAUTHORIZED:
            logger.warning("credentials rejected (status %s), wiping and re-pairing", status_code)
            try:
                self.credentials.clear()
            except OSError:
                logger.exception("credential wipe failed; re-pairing anyway")
            self.retry_count = 0
            self.phase = Phase.DISCONNECTED
            self._schedule_start(self.config.unauthorized_restart_delay_s)
        elif reason is DisconnectReason.LOGGED_OUT:
            logger.warning("session logged out; waiting for a new start request")
            self.retry_count = 0
            self.phase = Phase.CLOSED
        elif self.retry_count < self.config.max_retries:
            self.retry_count += 1
            delay = self.config.backoff_delay(self.retry_count)
            logger.warning(
                "connection closed (%s), reconnect %d/%d in %.1fs",
                detail or status_code,
                self.retry_count,
                self.config.max_retries,
                delay,
            )
            self.phase = Phase.DISCONNECTED
            self._schedule_start(delay)
        else:
            logger.error("max retries (%d) reached; session closed", self.config.max_retries)
            self.phase = Phase.CLOSED
        self._notify(
            LifecycleUpdate(
                phase=self.phase,
                connection="close",
                reason=reason.value,
                status_code=status_code,
                retry_count=self.retry_count,
            )
        )

    async def request_pairing_code(self, phone_number: str) -> str:
        if self.phase not in (Phase.CONNECTING, Phase.AWAITING_SCAN):
            raise NotConnected("pairing codes can only be requested while connecting")
        code = await self.client.request_pairing_code(phone_number)
        self.on_challenge(code, kind="pairing_code")
        return code

    async def shutdown(self) -> None:
        self._stopping = True
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        for task in list(self._tasks):
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        await self.client.close()
        self.phase = Phase.CLOSED
        self._clear_challenge()

    def _clear_challenge(self) -> None:
        self.current_challenge = None
        self.challenge_kind = None
        self._rendered_challenge = None

    def _notify(self, update: LifecycleUpdate) -> None:
        for observer in list(self._observers):
            observer(update)

    def schedule(self, delay_s: float, callback: Callable[[], None]) -> None:
        """Run ``callback`` after ``delay_s`` on the event loop (or the injected scheduler)."""

        self._scheduler(delay_s, callback)

    def _schedule_start(self, delay_s: float) -> None:
        self.schedule(delay_s, self._spawn_start)

    def _spawn_start(self) -> None:
        if self._stopping:
            return
        task = asyncio.create_task(self.start())
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _call_later(self, delay_s: float, callback: Callable[[], None]) -> None:
        loop = asyncio.get_running_loop()
        handle = loop.call_later(delay_s, callback)
        self._timers = [t for t in self._timers if not t.cancelled() and t.when() > loop.time()]
        self._timers.append(handle)
