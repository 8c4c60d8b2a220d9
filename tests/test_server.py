import asyncio
import logging
import socket

import pytest
import pytest_asyncio
from websockets.asyncio.client import connect
from websockets.exceptions import ConnectionClosed, InvalidStatus
from websockets.frames import Frame, Opcode

from statebridge.protocol import HELP_MESSAGE, CommandRouter
from statebridge.server import ServerState, StateServer
from statebridge.state import PlayerSnapshot, WorldInfo, WorldSnapshot, WorldState

ADDRESS = "ws://127.0.0.1:0/"


def _boom(argument):
    raise RuntimeError("boom")


@pytest.fixture
def world():
    return WorldState(WorldSnapshot(time_of_day=650, player=PlayerSnapshot(name="Abigail", money=1200)))


@pytest.fixture
def router(world):
    return CommandRouter(
        WorldInfo(world).handlers(),
        handlers={"CRASH": _boom, "ECHO": lambda argument: f"echo:{argument}"},
    )


@pytest_asyncio.fixture
async def server(router):
    server = StateServer(router, ADDRESS)
    await server.start()
    yield server
    await server.dispose()
    await server.wait_closed()


UPGRADE_REQUEST = (
    b"GET / HTTP/1.1\r\n"
    b"Host: 127.0.0.1\r\n"
    b"Upgrade: websocket\r\n"
    b"Connection: Upgrade\r\n"
    b"Sec-WebSocket-Key: dGhlIHNhbXBsZSBub25jZQ==\r\n"
    b"Sec-WebSocket-Version: 13\r\n"
    b"\r\n"
)


async def _raw_upgrade(server):
    """ Upgrade a bare stream so tests can write frames the client library refuses to. """
    reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
    writer.write(UPGRADE_REQUEST)
    await writer.drain()
    head = await reader.readuntil(b"\r\n\r\n")
    assert head.startswith(b"HTTP/1.1 101")
    return reader, writer


async def _read_frame(reader):
    """ Read one short unmasked server frame as (opcode, payload). """
    header = await reader.readexactly(2)
    payload = await reader.readexactly(header[1] & 0x7F)
    return header[0] & 0x0F, payload


async def _status_line(server, request: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", server.port)
    writer.write(request)
    await writer.drain()
    line = await reader.readline()
    writer.close()
    await writer.wait_closed()
    return line


@pytest.mark.asyncio
async def test_ping_pong(server):
    assert server.state is ServerState.RUNNING
    async with connect(server.uri) as ws:
        await ws.send("ping")
        assert await ws.recv() == "pong"
        await ws.send("help")
        assert await ws.recv() == HELP_MESSAGE


@pytest.mark.asyncio
async def test_info_over_the_wire(server, world):
    async with connect(server.uri) as ws:
        await ws.send("info:money")
        assert await ws.recv() == "money:1200"
        world.clear()
        await ws.send("info:money")
        assert await ws.recv() == "error:world_not_ready"


@pytest.mark.asyncio
async def test_protocol_errors_keep_connection_open(server):
    async with connect(server.uri) as ws:
        for message, expected in [
            ("", "error:empty_message"),
            ("foo", "error:unknown_command:FOO"),
            ("info:", "error:missing_info_type"),
            ("command:warp", "error:game_commands_not_implemented"),
            ("crash", "error:boom"),
        ]:
            await ws.send(message)
            assert await ws.recv() == expected
        await ws.send("ping")
        assert await ws.recv() == "pong"


@pytest.mark.asyncio
async def test_fragmented_message_is_reassembled(server):
    async with connect(server.uri) as ws:
        await ws.send(["in", "fo:", "ti", "me"])
        assert await ws.recv() == "time:650"


@pytest.mark.asyncio
async def test_binary_messages_are_ignored(server):
    async with connect(server.uri) as ws:
        await ws.send(b"\x00\x01\x02")
        await ws.send("ping")
        assert await ws.recv() == "pong"


@pytest.mark.asyncio
async def test_websocket_ping_is_answered(server):
    async with connect(server.uri) as ws:
        latency = await asyncio.wait_for(await ws.ping(), timeout=5)
        assert latency >= 0


@pytest.mark.asyncio
async def test_concurrent_connections_keep_their_own_order(server):
    async def client(name):
        responses = []
        async with connect(server.uri) as ws:
            for i in range(100):
                await ws.send(f"echo:{name}:{i}")
                responses.append(await ws.recv())
        return responses

    first, second = await asyncio.gather(client("a"), client("b"))
    assert first == [f"echo:a:{i}" for i in range(100)]
    assert second == [f"echo:b:{i}" for i in range(100)]


@pytest.mark.asyncio
async def test_plain_http_request_is_rejected(server):
    line = await _status_line(server, b"GET / HTTP/1.1\r\nHost: localhost\r\n\r\n")
    assert line.startswith(b"HTTP/1.1 400")

    # One bad request does not take the accept loop down.
    async with connect(server.uri) as ws:
        await ws.send("ping")
        assert await ws.recv() == "pong"


@pytest.mark.asyncio
async def test_garbage_request_is_dropped(server):
    line = await _status_line(server, b"this is not http\r\n\r\n")
    assert not line.startswith(b"HTTP/1.1 101")
    assert server.state is ServerState.RUNNING


@pytest.mark.asyncio
async def test_wrong_path_is_not_found(server):
    with pytest.raises(InvalidStatus) as exc:
        async with connect(f"ws://127.0.0.1:{server.port}/elsewhere"):
            pass
    assert exc.value.response.status_code == 404


@pytest.mark.asyncio
async def test_stop_closes_open_connections(server):
    async with connect(server.uri) as ws:
        await ws.send("ping")
        assert await ws.recv() == "pong"

        await server.stop()
        assert server.state is ServerState.STOPPED

        with pytest.raises(ConnectionClosed) as exc:
            await ws.recv()
        assert exc.value.rcvd is not None
        assert exc.value.rcvd.code == 1001


@pytest.mark.asyncio
async def test_client_close(server):
    async with connect(server.uri) as ws:
        await ws.send("ping")
        assert await ws.recv() == "pong"
    await server.wait_closed()
    assert server.state is ServerState.RUNNING


@pytest.mark.asyncio
async def test_start_twice_keeps_one_listener(server, caplog):
    caplog.set_level(logging.INFO)
    port = server.port
    await server.start()
    assert server.port == port
    assert "already running" in caplog.text


@pytest.mark.asyncio
async def test_stop_twice(server, caplog):
    caplog.set_level(logging.INFO)
    await server.stop()
    await server.stop()
    assert server.state is ServerState.STOPPED
    assert "not running" in caplog.text


@pytest.mark.asyncio
async def test_dispose_when_stopped_is_silent(router, caplog):
    caplog.set_level(logging.INFO)
    server = StateServer(router, ADDRESS)
    await server.dispose()
    assert server.state is ServerState.STOPPED
    assert caplog.records == []


@pytest.mark.asyncio
async def test_restart_after_stop(server):
    await server.stop()
    await server.start(ADDRESS)
    assert server.state is ServerState.RUNNING
    async with connect(server.uri) as ws:
        await ws.send("PING")
        assert await ws.recv() == "pong"


@pytest.mark.asyncio
async def test_bind_failure_leaves_server_stopped(router, caplog):
    caplog.set_level(logging.INFO)
    with socket.create_server(("127.0.0.1", 0)) as blocker:
        port = blocker.getsockname()[1]
        server = StateServer(router, f"ws://127.0.0.1:{port}/")
        await server.start()
        assert server.state is ServerState.STOPPED
        assert "Failed to start" in caplog.text


@pytest.mark.asyncio
async def test_context_manager(router):
    async with StateServer(router, ADDRESS) as server:
        assert server.state is ServerState.RUNNING
        async with connect(server.uri) as ws:
            await ws.send("ping")
            assert await ws.recv() == "pong"
    assert server.state is ServerState.STOPPED
    await server.wait_closed()


@pytest.mark.asyncio
async def test_overlapping_stops_share_one_shutdown(server):
    results = await asyncio.gather(server.stop(), server.stop(), server.dispose(), return_exceptions=True)
    assert results == [None, None, None]
    assert server.state is ServerState.STOPPED


@pytest.mark.asyncio
async def test_start_during_stop_waits_for_release(server):
    stopping = asyncio.ensure_future(server.stop())
    await asyncio.sleep(0)
    await server.start(ADDRESS)
    await stopping
    assert server.state is ServerState.RUNNING
    async with connect(server.uri) as ws:
        await ws.send("ping")
        assert await ws.recv() == "pong"


@pytest.mark.asyncio
async def test_invalid_utf8_closes_with_1007(server):
    reader, writer = await _raw_upgrade(server)
    writer.write(Frame(Opcode.TEXT, b"\xff\xfe").serialize(mask=True))
    await writer.drain()

    opcode, payload = await asyncio.wait_for(_read_frame(reader), timeout=5)
    assert opcode == Opcode.CLOSE.value
    assert int.from_bytes(payload[:2], "big") == 1007
    writer.close()
    await writer.wait_closed()


@pytest.mark.asyncio
async def test_silent_client_is_dropped_after_handshake_timeout(router):
    async with StateServer(router, ADDRESS, handshake_timeout=0.2) as server:
        reader, writer = await asyncio.open_connection("127.0.0.1", server.port)

        # The idle client does not hold up anyone else.
        async with connect(server.uri) as ws:
            await ws.send("ping")
            assert await ws.recv() == "pong"

        assert await asyncio.wait_for(reader.read(), timeout=5) == b""
        writer.close()
        await writer.wait_closed()
    await server.wait_closed()


@pytest.mark.asyncio
async def test_aborted_connection_does_not_affect_others(server):
    async with connect(server.uri) as ws:
        reader, writer = await _raw_upgrade(server)
        writer.write(Frame(Opcode.TEXT, b"ping").serialize(mask=True))
        await writer.drain()
        assert await asyncio.wait_for(_read_frame(reader), timeout=5) == (Opcode.TEXT.value, b"pong")

        writer.transport.abort()

        await ws.send("ping")
        assert await ws.recv() == "pong"

    async with connect(server.uri) as ws:
        await ws.send("ping")
        assert await ws.recv() == "pong"


@pytest.mark.asyncio
async def test_oversized_message_closes_with_1009(router):
    async with StateServer(router, ADDRESS, max_size=16) as server:
        async with connect(server.uri) as ws:
            await ws.send("info:" + "x" * 100)
            with pytest.raises(ConnectionClosed) as exc:
                await ws.recv()
            assert exc.value.rcvd is not None
            assert exc.value.rcvd.code == 1009
    await server.wait_closed()


@pytest.mark.asyncio
async def test_accept_errors_back_off_and_stop_promptly(server, monkeypatch, caplog):
    caplog.set_level(logging.INFO)
    await server.stop()

    calls = []

    async def failing_accept(sock):
        calls.append(sock)
        raise OSError(24, "Too many open files")

    monkeypatch.setattr(asyncio.get_running_loop(), "sock_accept", failing_accept)
    await server.start(ADDRESS)
    await asyncio.sleep(0.25)
    await asyncio.wait_for(server.stop(), timeout=1)

    assert 1 <= len(calls) <= 5
    assert "Too many open files" in caplog.text
