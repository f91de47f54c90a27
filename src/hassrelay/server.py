"""Downstream WebSocket server.

Every accepted WebSocket connection gets its own :class:`RelaySession`.
The ``hass-listen-entities`` request header selects the entities a client
receives; without it the client receives every entity.
"""

from __future__ import annotations

import asyncio
import logging
import weakref
from typing import Any

from aiohttp import WSCloseCode, WSMsgType, web

from hassrelay._constants import LISTEN_ENTITIES_HEADER
from hassrelay.config import RelayConfig
from hassrelay.connector import ConnectorState, UpstreamConnector
from hassrelay.exceptions import (
    DownstreamClosed,
    DownstreamSendError,
    HandshakeError,
    InvalidFilterError,
    RelayConfigError,
)
from hassrelay.filters import parse_entity_filter
from hassrelay.session import RelaySession

_logger = logging.getLogger(__name__)


def parse_listen_address(listen: str) -> tuple[str, int]:
    """Split ``host:port`` (``[v6]:port`` for IPv6) into its parts."""
    value = listen.strip()
    host, sep, port = value.rpartition(":")
    if not sep or not port.isdigit():
        raise RelayConfigError(f"Listen address must be host:port, got {listen!r}")
    if host.startswith("[") and host.endswith("]"):
        host = host[1:-1]
    if not host:
        raise RelayConfigError(f"Listen address is missing a host: {listen!r}")
    return host, int(port)


class WebSocketTransport:
    """Adapts an aiohttp ``WebSocketResponse`` to the session transport."""

    def __init__(self, ws: web.WebSocketResponse) -> None:
        self._ws = ws

    async def send(self, message: str) -> None:
        if self._ws.closed:
            raise DownstreamClosed("WebSocket already closed")
        try:
            await self._ws.send_str(message)
        except ConnectionResetError as exc:
            raise DownstreamClosed(str(exc) or type(exc).__name__) from exc
        except (ConnectionError, RuntimeError) as exc:
            raise DownstreamSendError(str(exc) or type(exc).__name__) from exc

    async def recv(self) -> str | None:
        while True:
            msg = await self._ws.receive()
            if msg.type is WSMsgType.TEXT:
                return msg.data
            if msg.type is WSMsgType.BINARY:
                continue
            if msg.type is WSMsgType.ERROR:
                _logger.debug("WebSocket error: %s", self._ws.exception())
            return None

    async def close(self) -> None:
        await self._ws.close()


class RelayServer:
    """aiohttp application serving relay sessions and a health endpoint.

    A connection that has not delivered a complete HTTP request within
    ``handshake_timeout`` seconds of being accepted is closed.
    """

    def __init__(self, config: RelayConfig, connector: UpstreamConnector) -> None:
        self._config = config
        self._connector = connector
        self._sockets: weakref.WeakSet[web.WebSocketResponse] = weakref.WeakSet()
        self._runner: web.AppRunner | None = None
        self._listener: asyncio.AbstractServer | None = None
        self._deadlines: dict[asyncio.BaseProtocol, asyncio.TimerHandle] = {}
        self.app = self._build_app()

    def _build_app(self) -> web.Application:
        app = web.Application(middlewares=[self._request_arrived])
        app.router.add_get("/", self.handle_websocket)
        app.router.add_get("/health", self.handle_health)
        app.on_shutdown.append(self._on_shutdown)
        return app

    @property
    def active_sessions(self) -> int:
        return len(self._sockets)

    @property
    def addresses(self) -> list[Any]:
        """Socket addresses the server is bound to (empty when stopped)."""
        if self._listener is None:
            return []
        return [sock.getsockname() for sock in self._listener.sockets]

    async def start(self) -> None:
        host, port = parse_listen_address(self._config.listen)
        runner = web.AppRunner(self.app)
        await runner.setup()
        self._runner = runner
        loop = asyncio.get_running_loop()
        try:
            self._listener = await loop.create_server(self._accept, host, port)
        except OSError as exc:
            await self.stop()
            raise RelayConfigError(f"Cannot listen on {self._config.listen}: {exc}") from exc
        _logger.info("Listening on: %s", self._config.listen)

    async def stop(self) -> None:
        listener = self._listener
        self._listener = None
        if listener is not None:
            listener.close()
        for timer in self._deadlines.values():
            timer.cancel()
        self._deadlines.clear()
        runner = self._runner
        self._runner = None
        if runner is not None:
            await runner.cleanup()
        if listener is not None:
            await listener.wait_closed()
        _logger.info("Terminating.")

    def _accept(self) -> asyncio.BaseProtocol:
        assert self._runner is not None and self._runner.server is not None  # noqa: S101
        protocol = self._runner.server()
        loop = asyncio.get_running_loop()
        self._deadlines[protocol] = loop.call_later(
            self._config.handshake_timeout, self._handshake_expired, protocol
        )
        return protocol

    def _handshake_expired(self, protocol: Any) -> None:
        self._deadlines.pop(protocol, None)
        transport = protocol.transport
        if transport is None:
            return
        _logger.error(
            "Error during the websocket handshake with %s: no request within %ss",
            transport.get_extra_info("peername"),
            self._config.handshake_timeout,
        )
        protocol.force_close()

    @web.middleware
    async def _request_arrived(self, request: web.Request, handler: Any) -> web.StreamResponse:
        timer = self._deadlines.pop(request.protocol, None)
        if timer is not None:
            timer.cancel()
        return await handler(request)

    async def handle_health(self, _request: web.Request) -> web.Response:
        state = self._connector.state
        return web.json_response(
            {
                "status": "ok" if state is ConnectorState.LIVE else "degraded",
                "upstream": state.value,
                "entities": len(self._connector.cache),
                "sessions": self.active_sessions,
                "events_processed": self._connector.events_processed,
            }
        )

    async def handle_websocket(self, request: web.Request) -> web.StreamResponse:
        peer = request.remote or "unknown"
        _logger.info("Incoming connection from %s", peer)

        try:
            entity_ids = parse_entity_filter(request.headers.get(LISTEN_ENTITIES_HEADER))
        except InvalidFilterError as exc:
            _logger.warning("Rejecting %s: %s", peer, exc)
            raise web.HTTPBadRequest(text=str(exc)) from exc

        ws = web.WebSocketResponse()
        if not ws.can_prepare(request).ok:
            raise web.HTTPBadRequest(text="Expected a WebSocket upgrade request")
        try:
            await self._handshake(ws, request)
        except HandshakeError as exc:
            _logger.error("Error during the websocket handshake with %s: %s", peer, exc)
            raise web.HTTPRequestTimeout() from exc

        self._sockets.add(ws)
        session = RelaySession(
            self._connector.hub,
            self._connector.cache,
            WebSocketTransport(ws),
            entity_ids,
            peer=peer,
        )
        try:
            await session.run()
        finally:
            self._sockets.discard(ws)
            if not ws.closed:
                await ws.close()
        return ws

    async def _handshake(self, ws: web.WebSocketResponse, request: web.Request) -> None:
        try:
            await asyncio.wait_for(ws.prepare(request), timeout=self._config.handshake_timeout)
        except TimeoutError as exc:
            raise HandshakeError(f"Handshake did not complete within {self._config.handshake_timeout}s") from exc

    async def _on_shutdown(self, _app: web.Application) -> None:
        for ws in set(self._sockets):
            await ws.close(code=WSCloseCode.GOING_AWAY, message=b"Server shutdown")

    async def __aenter__(self) -> RelayServer:
        await self.start()
        return self

    async def __aexit__(self, *exc: Any) -> None:
        await self.stop()
