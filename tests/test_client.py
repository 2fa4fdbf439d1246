import asyncio
import logging

import pytest

from conftest import FakeServer
from lineclient import Client, ConnectionState, CredentialsError


@pytest.mark.asyncio
async def test_count_request_resolves_with_matched_reply(client):
    await client.connect()
    await client.wait_ready(2)

    replies = await asyncio.wait_for(client.write({"request": "count", "id": 1}), 2)

    assert replies == [{"id": 1, "count": 42}]
    assert client.state is ConnectionState.READY


@pytest.mark.asyncio
async def test_handshake_sends_name_only(server, client, wait_for):
    await client.connect()
    await client.wait_ready(2)
    handshake = server.received[0]
    assert handshake["name"] == "alice"
    assert set(handshake) == {"name", "id"}
    assert isinstance(handshake["id"], int)


@pytest.mark.asyncio
async def test_string_and_batch_writes(client):
    await client.connect()
    replies = await asyncio.wait_for(
        client.write(['{"request":"count"}', {"request": "count"}]), 2
    )
    assert [r["count"] for r in replies] == [42, 42]
    assert replies[0]["id"] < replies[1]["id"]


@pytest.mark.asyncio
async def test_envelope_reply_is_unwrapped(make_client, wait_for):
    def envelope(message, number):
        return {"type": "msg", "msg": {"count": 7, "reply": message["id"]}}

    server = FakeServer(reply=envelope)
    await server.start()
    try:
        client = make_client(server.port)
        await client.connect()
        replies = await asyncio.wait_for(client.write({"request": "count", "id": 3}), 2)
        assert replies == [{"count": 7, "id": 3}]
    finally:
        await client.close()
        await server.stop()


@pytest.mark.asyncio
async def test_heartbeat_updates_monitor_without_touching_requests(server, client, wait_for):
    server.reply = None
    await client.connect()
    await client.wait_ready(2)
    pending = asyncio.ensure_future(client.write({"request": "silent"}))
    assert await wait_for(lambda: len(server.requests) == 1)

    before = client.manager.heartbeat.last_heartbeat_at
    await server.send({"type": "heartbeat"})
    assert await wait_for(lambda: client.manager.heartbeat.last_heartbeat_at > before)

    assert not pending.done()
    assert len(client.tracker) == 1
    pending.cancel()


@pytest.mark.asyncio
async def test_requests_before_ready_are_flushed_in_order(server, client, wait_for):
    first = asyncio.ensure_future(client.write({"request": "count", "n": 1}))
    second = asyncio.ensure_future(client.write({"request": "count", "n": 2}))
    await asyncio.sleep(0)
    assert client.state is ConnectionState.DISCONNECTED
    assert len(client.tracker) == 2

    await client.connect()
    results = await asyncio.wait_for(asyncio.gather(first, second), 2)

    assert [msg["n"] for msg in server.requests] == [1, 2]
    # A write waits for everything pending when it was issued
    assert len(results[0]) == 1
    assert [r["count"] for r in results[1]] == [42, 42]
    assert results[1][0] == results[0][0]


@pytest.mark.asyncio
async def test_connect_is_idempotent(server, client, wait_for):
    seen = []
    client.on("data", seen.append)
    client.on("data", seen.append)
    await client.connect()
    await client.wait_ready(2)
    await client.connect()

    await asyncio.wait_for(client.write({"request": "count"}), 2)

    assert server.connection_count == 1
    assert client.manager.connection.handlers("data").count(seen.append) == 1
    assert len(server.requests) == 1


@pytest.mark.asyncio
async def test_connect_requires_credentials(server, client_logger):
    client = Client(host="127.0.0.1", port=server.port, logger=client_logger)
    with pytest.raises(CredentialsError):
        await client.connect()


@pytest.mark.asyncio
async def test_unexpected_drop_reconnects_and_resends_pending(make_client, wait_for):
    def reply_on_second_connection(message, number):
        if number >= 2:
            return {"id": message["id"], "count": 42}
        return None

    server = FakeServer(reply=reply_on_second_connection)
    await server.start()
    client = make_client(server.port)
    states = []
    try:
        await client.connect()
        await client.wait_ready(2)
        pending = asyncio.ensure_future(client.write({"request": "count"}))
        assert await wait_for(lambda: len(server.requests) == 1)

        client.on("close", lambda had_error: states.append(client.state))
        await server.drop_all()

        replies = await asyncio.wait_for(pending, 3)

        assert replies == [{"id": server.requests[0]["id"], "count": 42}]
        assert server.connection_count == 2
        assert states[0] is ConnectionState.DISCONNECTED
        # The same request went out once per connection
        assert [r["id"] for r in server.requests] == [server.requests[0]["id"]] * 2
        assert client.state is ConnectionState.READY
    finally:
        await client.close()
        await server.stop()


@pytest.mark.asyncio
async def test_custom_handlers_follow_every_new_socket(server, client, wait_for):
    frames = []
    client.on("data", frames.append)
    await client.connect()
    await client.wait_ready(2)
    first_socket = client.manager.connection

    await server.drop_all()
    assert await wait_for(lambda: server.connection_count == 2 and client.state is ConnectionState.READY)

    assert client.manager.connection is not first_socket
    assert client.manager.connection.handlers("data").count(frames.append) == 1
    frames.clear()
    await server.send({"type": "note", "text": "hi"})
    assert await wait_for(lambda: any(b"note" in frame for frame in frames))


@pytest.mark.asyncio
async def test_ready_event_reaches_custom_handlers(server, client, wait_for):
    ready = []
    client.on("ready", lambda: ready.append(client.state))
    await client.connect()
    assert await wait_for(lambda: ready == [ConnectionState.READY])


@pytest.mark.asyncio
async def test_explicit_close_suppresses_reconnect(server, client):
    await client.connect()
    await client.wait_ready(2)
    await client.close()
    await asyncio.sleep(0.1)

    assert client.state is ConnectionState.DISCONNECTED
    assert server.connection_count == 1


@pytest.mark.asyncio
async def test_silent_server_triggers_reconnect(make_client, wait_for):
    server = FakeServer(heartbeat_interval=None)
    await server.start()
    client = make_client(server.port, reconnect_timeout=100, heartbeat_interval=20)
    try:
        await client.connect()
        assert await wait_for(lambda: server.connection_count >= 2)
    finally:
        await client.close()
        await server.stop()


@pytest.mark.asyncio
async def test_heartbeats_keep_connection(make_client):
    server = FakeServer(heartbeat_interval=0.02)
    await server.start()
    client = make_client(server.port, reconnect_timeout=300, heartbeat_interval=20)
    try:
        await client.connect()
        await asyncio.sleep(0.5)
        assert server.connection_count == 1
    finally:
        await client.close()
        await server.stop()


@pytest.mark.asyncio
async def test_rejected_authentication_stays_not_ready(make_client, caplog, client_logger, wait_for):
    server = FakeServer(welcome=False)
    await server.start()
    client = make_client(server.port)
    try:
        with caplog.at_level(logging.WARNING, logger=client_logger.name):
            await client.connect()
            assert await wait_for(lambda: "Authentication rejected" in caplog.text)
        assert client.state is ConnectionState.AUTHENTICATING

        pending = asyncio.ensure_future(client.write({"request": "count"}))
        await asyncio.sleep(0.05)
        assert server.requests == []
        pending.cancel()
    finally:
        await client.close()
        await server.stop()


@pytest.mark.asyncio
async def test_raw_write_does_not_wait(server, client, wait_for):
    await client.connect()
    await client.wait_ready(2)

    assert await client.write({"request": "fire"}, raw=True) == []

    assert await wait_for(lambda: server.requests == [{"request": "fire"}])
    assert len(client.tracker) == 0


@pytest.mark.asyncio
async def test_raw_write_before_ready_is_dropped(server, client):
    assert await client.write({"request": "fire"}, raw=True) == []
    assert len(client.tracker) == 0


@pytest.mark.asyncio
async def test_malformed_write_is_logged_not_raised(client, caplog, client_logger):
    await client.connect()
    with caplog.at_level(logging.WARNING, logger=client_logger.name):
        assert await client.write("{not json") == []
    assert "malformed" in caplog.text


@pytest.mark.asyncio
async def test_reply_split_across_reads(make_client, wait_for):
    # No server heartbeats, they would land between the two halves
    server = FakeServer(heartbeat_interval=None)
    await server.start()
    client = make_client(server.port)
    try:
        await client.connect()
        await client.wait_ready(2)
        pending = asyncio.ensure_future(client.write({"request": "slow", "id": 50}))
        assert await wait_for(lambda: len(server.requests) == 1)

        await server.send(b'{"id":50,"par')
        await asyncio.sleep(0.05)
        assert not pending.done()
        await server.send(b't":2}\n')

        assert await asyncio.wait_for(pending, 2) == [{"id": 50, "part": 2}]
    finally:
        await client.close()
        await server.stop()


@pytest.mark.asyncio
async def test_reply_with_heartbeat_valued_field_is_matched(server, client):
    server.reply = lambda message, number: {"id": message["id"], "subtype": "heartbeat"}
    await client.connect()
    replies = await asyncio.wait_for(client.write({"request": "status", "id": 5}), 2)
    assert replies == [{"id": 5, "subtype": "heartbeat"}]


@pytest.mark.asyncio
async def test_refused_connection_backs_off(make_client, wait_for):
    server = FakeServer()
    await server.start()
    port = server.port
    await server.stop()

    client = make_client(port, reconnect_delay=5, max_reconnect_delay=20)
    await client.connect()
    assert await wait_for(lambda: client.manager._attempts >= 3)
    assert client.state in (ConnectionState.DISCONNECTED, ConnectionState.CONNECTING)
    await client.close()


@pytest.mark.asyncio
async def test_callback_logger_receives_out_of_band_messages(server, wait_for):
    lines = []
    client = Client(host="127.0.0.1", port=server.port, reconnect_timeout=5000, logger=lines.append)
    client.set_credentials("alice", "secret")
    try:
        await client.connect()
        await client.wait_ready(2)
        assert any("Authenticated as alice" in line for line in lines)
    finally:
        await client.close()
