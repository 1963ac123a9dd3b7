from __future__ import annotations

import asyncio
import logging
from typing import Any

from aiohttp import WSMsgType, web

from .bridge import Bridge
from .errors import NotConnected, UpstreamOperationFailed

logger = logging.getLogger(__name__)


async def handle_healthz(_: web.Request) -> web.Response:
    return web.Response(text="ok")


async def handle_health(request: web.Request) -> web.Response:
    bridge: Bridge = request.app["bridge"]
    return web.json_response(bridge.health())


def _invalid_request(message: str, **extra: Any) -> web.Response:
    return web.json_response({**extra, "error": message}, status=400)


def _not_connected(exc: NotConnected, **extra: Any) -> web.Response:
    return web.json_response({**extra, "error": str(exc)}, status=503)


def _upstream_failed(exc: Exception, **extra: Any) -> web.Response:
    return web.json_response({**extra, "error": str(exc)}, status=500)


def _with_no_store(response: web.Response) -> web.Response:
    response.headers["Cache-Control"] = "no-store"
    return response


async def _json_body(request: web.Request) -> dict | None:
    try:
        body = await request.json()
    except ValueError:
        return None
    return body if isinstance(body, dict) else None


async def handle_auth_status(request: web.Request) -> web.Response:
    bridge: Bridge = request.app["bridge"]
    return _with_no_store(web.json_response(bridge.status()))


async def handle_request_qr(request: web.Request) -> web.Response:
    bridge: Bridge = request.app["bridge"]
    try:
        result = await bridge.request_challenge()
    except Exception as exc:
        logger.exception("challenge request failed")
        return _with_no_store(_upstream_failed(exc, success=False))
    return _with_no_store(web.json_response(result))


async def handle_pairing_code(request: web.Request) -> web.Response:
    bridge: Bridge = request.app["bridge"]
    body = await _json_body(request)
    if body is None:
        return _with_no_store(_invalid_request("malformed json", success=False))
    phone_number = body.get("phoneNumber")
    if not isinstance(phone_number, str) or not phone_number.strip():
        return _with_no_store(_invalid_request("Missing phoneNumber", success=False))
    try:
        code = await bridge.request_pairing_code(phone_number.strip())
    except NotConnected as exc:
        return _with_no_store(_not_connected(exc, success=False))
    except UpstreamOperationFailed as exc:
        return _with_no_store(_upstream_failed(exc, success=False))
    return _with_no_store(web.json_response({"success": True, "code": code}))


async def handle_send(request: web.Request) -> web.Response:
    bridge: Bridge = request.app["bridge"]
    body = await _json_body(request)
    if body is None:
        return _invalid_request("malformed json", ok=False)
    jid = body.get("jid")
    text = body.get("text")
    if not isinstance(jid, str) or not jid or not isinstance(text, str) or not text:
        return _invalid_request("Missing jid or text", ok=False)
    try:
        await bridge.send_message(jid, text)
    except NotConnected as exc:
        return _not_connected(exc, ok=False)
    except UpstreamOperationFailed as exc:
        return _upstream_failed(exc, ok=False)
    return web.json_response({"ok": True})


async def handle_contacts(request: web.Request) -> web.Response:
    bridge: Bridge = request.app["bridge"]
    contacts = bridge.contacts()
    return web.json_response({"success": True, "contacts": contacts, "count": len(contacts)})


async def handle_profile_picture(request: web.Request) -> web.Response:
    bridge: Bridge = request.app["bridge"]
    jid = request.query.get("jid")
    if not jid:
        return _invalid_request("Missing jid parameter", success=False)
    try:
        url = await bridge.fetch_profile_picture(jid)
    except NotConnected as exc:
        return _not_connected(exc, success=False)
    except UpstreamOperationFailed as exc:
        return _upstream_failed(exc, success=False)
    return web.json_response({"success": True, "url": url})


def create_app(bridge: Bridge, *, start_session: bool | None = None) -> web.Application:
    """Build the HTTP + push-channel application around ``bridge``.

    ``start_session`` overrides ``bridge.config.auto_start``; the session is only
    started on startup when stored credentials exist.
    """

    config = bridge.config
    auto_start = config.auto_start if start_session is None else start_session

    app = web.Application()
    app["bridge"] = bridge
    app["ws_config"] = {
        "heartbeat_s": config.ws_heartbeat_s,
        "max_msg_size": config.max_msg_size,
        "outbound_limit": 1000,
    }
    app.router.add_get("/healthz", handle_healthz)
    app.router.add_get("/health", handle_health)
    app.router.add_get("/auth/status", handle_auth_status)
    app.router.add_post("/auth/request-qr", handle_request_qr)
    app.router.add_post("/auth/pairing-code", handle_pairing_code)
    app.router.add_post("/send", handle_send)
    app.router.add_get("/contacts", handle_contacts)
    app.router.add_get("/profile-picture", handle_profile_picture)
    app.router.add_get("/ws", websocket_handler)

    async def start_bridge(_: web.Application) -> None:
        if not auto_start:
            return
        if bridge.credentials.has_credentials():
            logger.info("found stored credentials, starting session")
            await bridge.start()
        else:
            logger.info("no stored credentials; waiting for a QR request")

    async def stop_bridge(_: web.Application) -> None:
        await bridge.shutdown()

    app.on_startup.append(start_bridge)
    app.on_cleanup.append(stop_bridge)
    return app


async def websocket_handler(request: web.Request) -> web.WebSocketResponse:
    bridge: Bridge = request.app["bridge"]
    ws_config: dict[str, Any] = request.app["ws_config"]

    heartbeat = ws_config["heartbeat_s"] or None
    ws = web.WebSocketResponse(heartbeat=heartbeat, max_msg_size=ws_config["max_msg_size"])
    await ws.prepare(request)

    outbound: asyncio.Queue[str | None] = asyncio.Queue(maxsize=ws_config["outbound_limit"])
    closing = False

    async def close_with_error(message: str) -> None:
        if ws.closed:
            return
        await ws.close(code=1011, message=message.encode("utf-8"))

    def is_open() -> bool:
        return not closing and not ws.closed

    def enqueue(message: str) -> None:
        nonlocal closing
        try:
            outbound.put_nowait(message)
        except asyncio.QueueFull:
            logger.warning("push subscriber too slow, closing")
            closing = True
            asyncio.create_task(close_with_error("backpressure"))

    async def writer() -> None:
        try:
            while True:
                message = await outbound.get()
                if message is None:
                    break
                await ws.send_str(message)
        except asyncio.CancelledError:
            return
        except ConnectionResetError:
            return

    writer_task = asyncio.create_task(writer())
    subscription = bridge.relay.subscribe(enqueue, is_open)

    try:
        async for msg in ws:
            if msg.type == WSMsgType.TEXT:
                # The push channel is one-way; inbound frames carry no meaning.
                continue
            if msg.type in {WSMsgType.CLOSE, WSMsgType.CLOSED, WSMsgType.ERROR}:
                break
    finally:
        closing = True
        bridge.relay.unsubscribe(subscription)
        writer_task.cancel()
        await asyncio.gather(writer_task, return_exceptions=True)

    return ws
