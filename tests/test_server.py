from __future__ import annotations

import asyncio
import dataclasses
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import aiohttp
import pytest
from aiohttp.test_utils import TestClient, TestServer
from fakes import FakeUpstream, state_object

from hassrelay.config import RelayConfig
from hassrelay.connector import UpstreamConnector
from hassrelay.exceptions import DownstreamClosed, RelayConfigError
from hassrelay.models.entity import UpstreamEntity
from hassrelay.server import RelayServer, WebSocketTransport, parse_listen_address

_STATES = [
    state_object("light.a", "on", brightness=255),
    state_object("light.b", "off"),
    state_object("light.c", "on"),
]


@asynccontextmanager
async def _serving(config: RelayConfig, upstream: FakeUpstream) -> AsyncIterator[tuple[RelayServer, TestClient]]:
    connector = UpstreamConnector(config, transport_factory=lambda: upstream)
    await connector.start()
    relay = RelayServer(config, connector)
    client = TestClient(TestServer(relay.app))
    await client.start_server()
    try:
        yield relay, client
    finally:
        await client.close()
        await connector.close()


async def _receive_states(ws: aiohttp.ClientWebSocketResponse, count: int) -> list[tuple[str, str]]:
    items = []
    for _ in range(count):
        message = await asyncio.wait_for(ws.receive_json(), timeout=2.0)
        items.append((message["entity_id"], message["state"]))
    return items


@pytest.mark.asyncio
async def test_filtered_client_receives_only_requested_entities(config: RelayConfig) -> None:
    upstream = FakeUpstream(states=list(_STATES))
    async with _serving(config, upstream) as (_relay, client):
        ws = await client.ws_connect("/", headers={"hass-listen-entities": "light.a, light.b"})

        assert sorted(await _receive_states(ws, 2)) == [("light.a", "on"), ("light.b", "off")]

        upstream.emit("light.c", "off")
        upstream.emit("light.a", "off")
        assert await _receive_states(ws, 1) == [("light.a", "off")]
        await ws.close()


@pytest.mark.asyncio
async def test_client_without_header_receives_everything(config: RelayConfig) -> None:
    upstream = FakeUpstream(states=list(_STATES))
    async with _serving(config, upstream) as (_relay, client):
        ws = await client.ws_connect("/")

        assert {entity_id for entity_id, _ in await _receive_states(ws, 3)} == {"light.a", "light.b", "light.c"}

        upstream.emit("sensor.new", "7")
        assert await _receive_states(ws, 1) == [("sensor.new", "7")]
        await ws.close()


@pytest.mark.asyncio
async def test_empty_filter_header_is_rejected(config: RelayConfig) -> None:
    async with _serving(config, FakeUpstream()) as (relay, client):
        with pytest.raises(aiohttp.WSServerHandshakeError) as excinfo:
            await client.ws_connect("/", headers={"hass-listen-entities": " , "})

        assert excinfo.value.status == 400
        assert relay.active_sessions == 0


@pytest.mark.asyncio
async def test_plain_http_request_is_rejected(config: RelayConfig) -> None:
    async with _serving(config, FakeUpstream()) as (_relay, client):
        response = await client.get("/")
        assert response.status == 400


@pytest.mark.asyncio
async def test_health_reports_upstream_and_sessions(config: RelayConfig, eventually) -> None:
    async with _serving(config, FakeUpstream(states=list(_STATES))) as (relay, client):
        ws = await client.ws_connect("/", headers={"hass-listen-entities": "light.a"})
        await _receive_states(ws, 1)

        response = await client.get("/health")
        assert response.status == 200
        assert await response.json() == {
            "status": "ok",
            "upstream": "live",
            "entities": 3,
            "sessions": 1,
            "events_processed": 0,
        }

        await ws.close()
        await eventually(lambda: relay.active_sessions == 0)


@pytest.mark.asyncio
async def test_shutdown_closes_clients_with_going_away(config: RelayConfig) -> None:
    async with _serving(config, FakeUpstream()) as (relay, client):
        ws = await client.ws_connect("/")

        await relay.app.shutdown()

        message = await asyncio.wait_for(ws.receive(), timeout=2.0)
        assert message.type in (aiohttp.WSMsgType.CLOSE, aiohttp.WSMsgType.CLOSED)
        assert ws.close_code == aiohttp.WSCloseCode.GOING_AWAY


@pytest.mark.asyncio
async def test_start_and_stop_bind_the_listen_address(config: RelayConfig) -> None:
    connector = UpstreamConnector(config, transport_factory=FakeUpstream)
    async with RelayServer(config, connector) as relay:
        assert relay.active_sessions == 0
        assert relay.addresses

    assert relay.addresses == []


@pytest.mark.asyncio
async def test_stalled_upgrade_request_is_closed(config: RelayConfig) -> None:
    bounded = dataclasses.replace(config, handshake_timeout=0.2)
    connector = UpstreamConnector(bounded, transport_factory=FakeUpstream)
    async with RelayServer(bounded, connector) as relay:
        host, port = relay.addresses[0][:2]
        reader, writer = await asyncio.open_connection(host, port)
        writer.write(b"GET / HTTP/1.1\r\nHost: x\r\nUpgrade: websocket\r\n")
        await writer.drain()

        assert await asyncio.wait_for(reader.read(), timeout=2.0) == b""
        writer.close()


@pytest.mark.asyncio
async def test_completed_upgrade_outlives_the_handshake_deadline(config: RelayConfig) -> None:
    bounded = dataclasses.replace(config, handshake_timeout=0.2)
    connector = UpstreamConnector(bounded, transport_factory=FakeUpstream)
    async with RelayServer(bounded, connector) as relay, aiohttp.ClientSession() as http:
        host, port = relay.addresses[0][:2]
        async with http.ws_connect(f"http://{host}:{port}/") as ws:
            await asyncio.sleep(0.4)
            await connector.apply_change(UpstreamEntity.model_validate(state_object("light.a", "on")))

            assert await _receive_states(ws, 1) == [("light.a", "on")]


@dataclasses.dataclass
class _ClosedSocket:
    closed: bool = True


@pytest.mark.asyncio
async def test_send_on_closed_socket_reports_the_client_gone() -> None:
    transport = WebSocketTransport(_ClosedSocket())

    with pytest.raises(DownstreamClosed):
        await transport.send("{}")


@pytest.mark.parametrize(
    ("listen", "expected"),
    [
        ("[::1]:8080", ("::1", 8080)),
        ("127.0.0.1:9000", ("127.0.0.1", 9000)),
        ("localhost:80", ("localhost", 80)),
        (" 0.0.0.0:8080 ", ("0.0.0.0", 8080)),
    ],
)
def test_parse_listen_address(listen: str, expected: tuple[str, int]) -> None:
    assert parse_listen_address(listen) == expected


@pytest.mark.parametrize("listen", ["8080", "localhost", "localhost:http", ":8080", "[]:8080"])
def test_parse_listen_address_rejects_malformed_values(listen: str) -> None:
    with pytest.raises(RelayConfigError):
        parse_listen_address(listen)
