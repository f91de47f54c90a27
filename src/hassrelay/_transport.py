"""Home Assistant WebSocket API transport.

Implements the small part of the Home Assistant WebSocket protocol the
relay needs: the ``auth`` exchange, the ``get_states`` command and a
``subscribe_events`` subscription for ``state_changed``. Command results are
matched to callers by message id; events are handed to the registered
callback from a single reader task, in arrival order.
"""

from __future__ import annotations

import asyncio
import itertools
import json
import logging
from collections.abc import Callable
from typing import Any, Protocol

import aiohttp

from hassrelay._constants import (
    DEFAULT_AUTH_TIMEOUT,
    MSG_AUTH,
    MSG_AUTH_INVALID,
    MSG_AUTH_OK,
    MSG_AUTH_REQUIRED,
    MSG_EVENT,
    MSG_GET_STATES,
    MSG_RESULT,
    MSG_SUBSCRIBE_EVENTS,
    STATE_CHANGED_EVENT,
)
from hassrelay._redact import redact_for_log
from hassrelay.codec import entity_from_payload
from hassrelay.exceptions import (
    UpstreamAuthError,
    UpstreamConnectError,
    UpstreamConnectionLost,
    UpstreamFetchError,
)
from hassrelay.models.entity import StateChangedData, UpstreamEntity

_logger = logging.getLogger(__name__)

ChangeCallback = Callable[[UpstreamEntity], None]


class UpstreamTransport(Protocol):
    """Structural interface of the upstream connection.

    The connector only talks to this protocol, so tests can pass a fake in
    place of :class:`HassTransport`.
    """

    async def connect(self) -> None: ...

    async def authenticate(self, token: str) -> None: ...

    async def list_current_entities(self) -> list[UpstreamEntity]: ...

    async def on_change(self, callback: ChangeCallback) -> None: ...

    async def wait_closed(self) -> None: ...

    async def close(self) -> None: ...


class HassTransport:
    """aiohttp WebSocket client for the Home Assistant API."""

    def __init__(
        self,
        url: str,
        *,
        session: aiohttp.ClientSession | None = None,
        heartbeat: float | None = 30.0,
        auth_timeout: float = DEFAULT_AUTH_TIMEOUT,
    ) -> None:
        self._url = url
        self._auth_timeout = auth_timeout
        self._external_session = session is not None
        self._http = session
        self._heartbeat = heartbeat
        self._ws: aiohttp.ClientWebSocketResponse | None = None
        self._ids = itertools.count(1)
        self._pending: dict[int, asyncio.Future[Any]] = {}
        self._event_callbacks: dict[int, ChangeCallback] = {}
        self._reader: asyncio.Task[None] | None = None
        self._closed = asyncio.Event()

    @property
    def url(self) -> str:
        return self._url

    @property
    def is_closed(self) -> bool:
        return self._closed.is_set()

    # ------------------------------------------------------------------
    # Connection lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the WebSocket connection."""
        if self._http is None:
            self._http = aiohttp.ClientSession()
        _logger.debug("Opening WebSocket %s", self._url)
        try:
            self._ws = await self._http.ws_connect(self._url, heartbeat=self._heartbeat)
        except (aiohttp.ClientError, OSError) as exc:
            await self._release_session()
            raise UpstreamConnectError(f"Failed to connect to {self._url}: {exc}", url=self._url) from exc

    async def authenticate(self, token: str) -> None:
        """Run the ``auth_required`` / ``auth`` / ``auth_ok`` exchange.

        Each reply must arrive within ``auth_timeout`` seconds. Starts the
        reader task on success.
        """
        greeting = await self._receive_json()
        if greeting.get("type") != MSG_AUTH_REQUIRED:
            raise UpstreamAuthError(f"Unexpected greeting from Home Assistant: {greeting.get('type')!r}", url=self._url)
        _logger.debug("Home Assistant %s requested authentication", greeting.get("ha_version", "<unknown>"))

        await self._send_json({"type": MSG_AUTH, "access_token": token})
        reply = await self._receive_json()
        reply_type = reply.get("type")
        if reply_type == MSG_AUTH_INVALID:
            raise UpstreamAuthError(
                f"Home Assistant rejected the access token: {reply.get('message', '')}",
                url=self._url,
            )
        if reply_type != MSG_AUTH_OK:
            raise UpstreamAuthError(f"Unexpected authentication reply: {reply_type!r}", url=self._url)

        self._reader = asyncio.create_task(self._read_loop(), name="hassrelay-upstream-reader")

    async def wait_closed(self) -> None:
        """Wait until the connection ends."""
        await self._closed.wait()

    async def close(self) -> None:
        ws = self._ws
        if ws is not None and not ws.closed:
            await ws.close()
        reader = self._reader
        if reader is not None and reader is not asyncio.current_task():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._mark_closed()
        await self._release_session()

    async def _release_session(self) -> None:
        if not self._external_session and self._http is not None:
            await self._http.close()
            self._http = None

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def list_current_entities(self) -> list[UpstreamEntity]:
        """Fetch every current state object with ``get_states``."""
        try:
            result = await self._command({"type": MSG_GET_STATES})
        except UpstreamConnectionLost as exc:
            raise UpstreamFetchError(f"Connection lost while fetching states: {exc}", url=self._url) from exc
        if not isinstance(result, list):
            raise UpstreamFetchError(f"get_states returned {type(result).__name__}, expected list", url=self._url)

        entities = [entity for entity in map(entity_from_payload, result) if entity is not None]
        _logger.debug("get_states returned %d state objects", len(entities))
        return entities

    async def on_change(self, callback: ChangeCallback) -> None:
        """Subscribe to ``state_changed`` and route each new state to *callback*."""
        message_id = next(self._ids)
        self._event_callbacks[message_id] = callback
        try:
            await self._command(
                {"type": MSG_SUBSCRIBE_EVENTS, "event_type": STATE_CHANGED_EVENT},
                message_id=message_id,
            )
        except UpstreamConnectionLost as exc:
            self._event_callbacks.pop(message_id, None)
            raise UpstreamFetchError(f"Connection lost while subscribing: {exc}", url=self._url) from exc
        except UpstreamFetchError:
            self._event_callbacks.pop(message_id, None)
            raise
        _logger.debug("Subscribed to %s events (id=%d)", STATE_CHANGED_EVENT, message_id)

    async def _command(self, payload: dict[str, Any], *, message_id: int | None = None) -> Any:
        if self._reader is None:
            raise UpstreamConnectionLost("Not authenticated", url=self._url)
        if self.is_closed:
            raise UpstreamConnectionLost("Connection already closed", url=self._url)
        if message_id is None:
            message_id = next(self._ids)

        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[message_id] = future
        try:
            await self._send_json({"id": message_id, **payload})
            return await future
        finally:
            self._pending.pop(message_id, None)

    # ------------------------------------------------------------------
    # Wire helpers
    # ------------------------------------------------------------------

    async def _send_json(self, payload: dict[str, Any]) -> None:
        ws = self._ws
        if ws is None or ws.closed:
            raise UpstreamConnectionLost("WebSocket is not open", url=self._url)
        _logger.debug("-> %s", redact_for_log(payload))
        try:
            await ws.send_str(json.dumps(payload, separators=(",", ":")))
        except (ConnectionError, RuntimeError) as exc:
            raise UpstreamConnectionLost(f"Send failed: {exc}", url=self._url) from exc

    async def _receive_json(self) -> dict[str, Any]:
        """Read one message before the reader task runs (auth phase)."""
        ws = self._ws
        if ws is None:
            raise UpstreamConnectionLost("WebSocket is not open", url=self._url)
        try:
            msg = await ws.receive(timeout=self._auth_timeout)
        except TimeoutError as exc:
            raise UpstreamConnectError(
                f"Home Assistant did not answer within {self._auth_timeout}s during authentication",
                url=self._url,
            ) from exc
        if msg.type is not aiohttp.WSMsgType.TEXT:
            raise UpstreamConnectionLost(f"Connection closed during authentication ({msg.type.name})", url=self._url)
        try:
            data = json.loads(msg.data)
        except json.JSONDecodeError as exc:
            raise UpstreamAuthError(f"Invalid JSON from Home Assistant: {msg.data[:200]}", url=self._url) from exc
        if not isinstance(data, dict):
            raise UpstreamAuthError("Home Assistant sent a non-object message", url=self._url)
        return data

    async def _read_loop(self) -> None:
        ws = self._ws
        assert ws is not None  # noqa: S101
        try:
            async for msg in ws:
                if msg.type is aiohttp.WSMsgType.TEXT:
                    self._handle_text(msg.data)
                elif msg.type is aiohttp.WSMsgType.ERROR:
                    _logger.warning("Upstream WebSocket error: %s", ws.exception())
                    break
        finally:
            _logger.debug("Upstream reader finished (close code %s)", ws.close_code)
            self._mark_closed()

    def _handle_text(self, text: str) -> None:
        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            _logger.warning("Discarding non-JSON message from Home Assistant: %s", text[:200])
            return
        # Home Assistant may coalesce several messages into one JSON array.
        messages = data if isinstance(data, list) else [data]
        for message in messages:
            if isinstance(message, dict):
                self._handle_message(message)

    def _handle_message(self, message: dict[str, Any]) -> None:
        message_type = message.get("type")
        message_id = message.get("id")

        if message_type == MSG_RESULT:
            future = self._pending.get(message_id) if isinstance(message_id, int) else None
            if future is None or future.done():
                _logger.debug("Result for unknown command id %s", message_id)
                return
            if message.get("success"):
                future.set_result(message.get("result"))
            else:
                error = message.get("error") if isinstance(message.get("error"), dict) else {}
                future.set_exception(
                    UpstreamFetchError(
                        f"Command {message_id} failed: {error.get('message', 'unknown error')}",
                        url=self._url,
                        code=str(error.get("code", "")),
                    )
                )
            return

        if message_type == MSG_EVENT:
            callback = self._event_callbacks.get(message_id) if isinstance(message_id, int) else None
            if callback is None:
                _logger.debug("Event for unknown subscription id %s", message_id)
                return
            self._dispatch_event(message.get("event"), callback)
            return

        _logger.debug("Ignoring %s message from Home Assistant", message_type)

    def _dispatch_event(self, event: Any, callback: ChangeCallback) -> None:
        if not isinstance(event, dict) or event.get("event_type") != STATE_CHANGED_EVENT:
            return
        data = event.get("data")
        changed = StateChangedData.model_validate(data if isinstance(data, dict) else {})
        if changed.new_state is None:
            _logger.debug("Entity %s was removed, not relaying", changed.entity_id)
            return
        try:
            callback(changed.new_state)
        except Exception:
            _logger.warning("state_changed callback failed for %s", changed.entity_id, exc_info=True)

    def _mark_closed(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        for future in self._pending.values():
            if not future.done():
                future.set_exception(UpstreamConnectionLost("Connection to Home Assistant closed", url=self._url))
        self._pending.clear()
