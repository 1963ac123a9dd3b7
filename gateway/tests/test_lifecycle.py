import asyncio
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from chatbridge.credentials import CredentialStore
from chatbridge.errors import ConnectionRejected, NotConnected, SessionTerminated, TransientDisconnect
from chatbridge.lifecycle import LifecycleConfig, LifecycleController, Phase
from chatbridge.session_client import DisconnectReason

from .session_fakes import FakeSessionClient, ManualScheduler


class LifecycleTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.auth_dir = Path(self._tmp.name) / "auth"
        self.auth_dir.mkdir()
        self.credentials = CredentialStore(self.auth_dir)
        self.client = FakeSessionClient()
        self.scheduler = ManualScheduler()
        self.updates = []

    def tearDown(self):
        self._tmp.cleanup()

    def _controller(self, **config) -> LifecycleController:
        controller = LifecycleController(
            self.client,
            self.credentials,
            LifecycleConfig(**config),
            scheduler=self.scheduler,
        )
        controller.add_observer(self.updates.append)
        return controller

    async def test_start_moves_to_connecting_and_opens_once(self):
        controller = self._controller()

        await controller.start()
        await controller.start()

        self.assertEqual(controller.phase, Phase.CONNECTING)
        self.assertEqual(self.client.open_calls, 1)
        self.assertEqual(controller.status(), {"isAuthenticated": False, "isConnecting": True, "hasQr": False})

    async def test_challenge_moves_to_awaiting_scan_with_rendered_qr(self):
        controller = self._controller()
        await controller.start()

        controller.on_challenge("2@abc,def,ghi")

        self.assertEqual(controller.phase, Phase.AWAITING_SCAN)
        self.assertEqual(controller.current_challenge, "2@abc,def,ghi")
        self.assertTrue(controller.rendered_challenge.startswith("data:image/png;base64,"))
        self.assertTrue(controller.status()["hasQr"])
        self.assertEqual(self.updates[-1].challenge, controller.rendered_challenge)

    async def test_start_is_noop_while_awaiting_scan(self):
        controller = self._controller()
        await controller.start()
        controller.on_challenge("qr-1")

        await controller.start()

        self.assertEqual(self.client.open_calls, 1)
        self.assertEqual(controller.current_challenge, "qr-1")

    async def test_connected_resets_retry_and_clears_challenge(self):
        controller = self._controller()
        await controller.start()
        controller.on_disconnected(DisconnectReason.TRANSIENT)
        await controller.start()
        controller.on_challenge("qr")

        controller.on_connected()

        self.assertEqual(controller.phase, Phase.AUTHENTICATED)
        self.assertEqual(controller.retry_count, 0)
        self.assertIsNone(controller.current_challenge)
        self.assertEqual(controller.status(), {"isAuthenticated": True, "isConnecting": False, "hasQr": False})

    async def test_duplicate_connected_is_ignored(self):
        controller = self._controller()
        await controller.start()
        controller.on_connected()
        emitted = len(self.updates)

        controller.on_connected()

        self.assertEqual(len(self.updates), emitted)

    async def test_unauthorized_wipes_credentials_and_schedules_restart(self):
        (self.auth_dir / "creds.json").write_text("{}")
        (self.auth_dir / "session-1.json").write_text("{}")
        controller = self._controller()
        await controller.start()
        controller.on_challenge("qr")

        controller.on_disconnected(DisconnectReason.UNAUTHORIZED, status_code=401)

        self.assertEqual(list(self.auth_dir.iterdir()), [])
        self.assertFalse(self.credentials.has_credentials())
        self.assertEqual(controller.retry_count, 0)
        self.assertIsNone(controller.current_challenge)
        self.assertEqual(self.scheduler.delays, [1.0])
        self.assertEqual(self.updates[-1].reason, "unauthorized")

    async def test_failed_wipe_still_disconnects_and_restarts(self):
        controller = self._controller()
        await controller.start()
        controller.on_connected()

        with mock.patch.object(self.credentials, "clear", side_effect=PermissionError("read-only")):
            with self.assertLogs("chatbridge.lifecycle", level="ERROR"):
                controller.on_disconnected(DisconnectReason.UNAUTHORIZED, status_code=401)

        self.assertEqual(controller.phase, Phase.DISCONNECTED)
        self.assertEqual(self.scheduler.delays, [1.0])
        self.assertEqual(self.updates[-1].reason, "unauthorized")

        self.scheduler.run_all()
        await asyncio.sleep(0)
        self.assertEqual(self.client.open_calls, 2)

    async def test_unauthorized_restart_reopens_session(self):
        controller = self._controller()
        await controller.start()
        controller.on_connected()
        controller.on_disconnected(DisconnectReason.UNAUTHORIZED, status_code=401)

        self.scheduler.run_all()
        await asyncio.sleep(0)

        self.assertEqual(self.client.open_calls, 2)
        self.assertEqual(controller.phase, Phase.CONNECTING)

    async def test_logout_closes_without_restart(self):
        controller = self._controller()
        await controller.start()
        controller.on_disconnected(DisconnectReason.TRANSIENT)
        await controller.start()
        controller.on_connected()

        controller.on_disconnected(DisconnectReason.LOGGED_OUT, status_code=403)

        self.assertEqual(controller.phase, Phase.CLOSED)
        self.assertEqual(controller.retry_count, 0)
        self.assertEqual(self.scheduler.delays, [3.0])

        await controller.start()
        self.assertEqual(controller.phase, Phase.CONNECTING)

    async def test_transient_backoff_is_linear_and_capped(self):
        controller = self._controller(max_retries=7)

        for _ in range(7):
            controller.on_disconnected(DisconnectReason.TRANSIENT)

        self.assertEqual(self.scheduler.delays, [3.0, 6.0, 9.0, 12.0, 15.0, 15.0, 15.0])
        self.assertEqual(controller.retry_count, 7)

    async def test_retry_budget_exhaustion_settles_closed(self):
        controller = self._controller(max_retries=2)
        await controller.start()

        controller.on_disconnected(DisconnectReason.TRANSIENT)
        self.assertEqual((controller.phase, controller.retry_count), (Phase.DISCONNECTED, 1))
        await controller.start()
        controller.on_disconnected(DisconnectReason.TRANSIENT)
        self.assertEqual((controller.phase, controller.retry_count), (Phase.DISCONNECTED, 2))
        await controller.start()
        controller.on_disconnected(DisconnectReason.TRANSIENT)

        self.assertEqual(controller.phase, Phase.CLOSED)
        self.assertEqual(controller.retry_count, 2)
        self.assertEqual(len(self.scheduler.calls), 2)

        await controller.start()
        controller.on_connected()
        self.assertEqual(controller.retry_count, 0)

    async def test_open_failure_is_treated_as_transient(self):
        self.client.open_error = OSError("network unreachable")
        controller = self._controller()

        await controller.start()

        self.assertEqual(controller.phase, Phase.DISCONNECTED)
        self.assertEqual(controller.retry_count, 1)
        self.assertEqual(self.scheduler.delays, [3.0])
        self.assertEqual(self.updates[-1].reason, "transient")

    async def test_open_failure_types_map_to_reasons(self):
        cases = [
            (ConnectionRejected("bad creds"), "unauthorized", Phase.DISCONNECTED),
            (SessionTerminated("logged out"), "logged_out", Phase.CLOSED),
            (TransientDisconnect("reset"), "transient", Phase.DISCONNECTED),
        ]
        for error, reason, phase in cases:
            with self.subTest(reason=reason):
                self.client = FakeSessionClient()
                self.client.open_error = error
                controller = self._controller()

                await controller.start()

                self.assertEqual(self.updates[-1].reason, reason)
                self.assertEqual(controller.phase, phase)

    async def test_pairing_code_requires_connecting(self):
        controller = self._controller()

        with self.assertRaises(NotConnected):
            await controller.request_pairing_code("15551234567")

        await controller.start()
        code = await controller.request_pairing_code("15551234567")

        self.assertEqual(code, "ABCD-1234")
        self.assertEqual(controller.phase, Phase.AWAITING_SCAN)
        self.assertEqual(controller.rendered_challenge, "ABCD-1234")
        self.assertEqual(self.updates[-1].to_payload()["pairingCode"], "ABCD-1234")

    async def test_shutdown_closes_client_and_ignores_late_disconnect(self):
        controller = self._controller()
        await controller.start()

        await controller.shutdown()
        controller.on_disconnected(DisconnectReason.TRANSIENT)

        self.assertEqual(self.client.close_calls, 1)
        self.assertEqual(controller.phase, Phase.CLOSED)
        self.assertEqual(self.scheduler.calls, [])


if __name__ == "__main__":
    unittest.main()
