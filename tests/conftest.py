import asyncio
import json
import logging
from typing import Any, Callable, List, Optional, Union

import pytest
import pytest_asyncio

from lineclient import Client


Reply = Callable[[dict, int], Optional[Any]]


class FakeServer:
    """In-process line protocol server.

    Answers the name handshake with a welcome (or a rejection), sends
    heartbeats on its own timer and lets tests push arbitrary frames or
    drop every connection.
    """

    def __init__(self, *, welcome: bool = True, heartbeat_interval: Optional[float] = 0.05,
                 reply: Optional[Reply] = None) -> None:
        self.welcome = welcome
        self.heartbeat_interval = heartbeat_interval
        self.reply = reply
        self.received: List[dict] = []
        self.writers: List[asyncio.StreamWriter] = []
        self.connection_count = 0
        self.port = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._tasks: set = set()

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self._server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        for writer in self.writers:
            writer.close()
        for task in list(self._tasks):
            task.cancel()
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()

    @property
    def requests(self) -> List[dict]:
        """Received frames other than the handshake."""
        return [msg for msg in self.received if "name" not in msg]

    async def _handle(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self.connection_count += 1
        number = self.connection_count
        self.writers.append(writer)
        heartbeat = None
        if self.heartbeat_interval:
            heartbeat = asyncio.create_task(self._heartbeats(writer))
            self._tasks.add(heartbeat)
            heartbeat.add_done_callback(self._tasks.discard)
        try:
            while True:
                line = await reader.readline()
                if not line:
                    break
                text = line.decode("utf-8").strip()
                if not text:
                    continue
                message = json.loads(text)
                self.received.append(message)
                await self._respond(writer, message, number)
        except ConnectionError:
            pass
        finally:
            if heartbeat is not None:
                heartbeat.cancel()
            writer.close()

    async def _respond(self, writer: asyncio.StreamWriter, message: dict, number: int) -> None:
        if "name" in message:
            if self.welcome:
                await self.send({"type": "welcome"}, writer)
            else:
                await self.send({"type": "error", "reason": "unknown user"}, writer)
            return
        if self.reply is not None:
            answer = self.reply(message, number)
            if answer is not None:
                await self.send(answer, writer)

    async def _heartbeats(self, writer: asyncio.StreamWriter) -> None:
        while not writer.is_closing():
            await asyncio.sleep(self.heartbeat_interval)
            await self.send({"type": "heartbeat"}, writer)

    async def send(self, frame: Union[dict, list, bytes], writer: Optional[asyncio.StreamWriter] = None) -> None:
        writer = writer or self.writers[-1]
        if writer.is_closing():
            return
        data = frame if isinstance(frame, bytes) else (json.dumps(frame) + "\n").encode("utf-8")
        writer.write(data)
        try:
            await writer.drain()
        except ConnectionError:
            pass

    async def drop_all(self) -> None:
        """Close every open connection from the server side."""
        for writer in self.writers:
            writer.close()


async def wait_until(predicate: Callable[[], bool], timeout: float = 3.0) -> bool:
    loop = asyncio.get_running_loop()
    end = loop.time() + timeout
    while loop.time() < end:
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def count_reply(message: dict, number: int) -> Optional[dict]:
    if message.get("request") == "count":
        return {"id": message["id"], "count": 42}
    return None


@pytest.fixture
def wait_for():
    return wait_until


@pytest.fixture
def client_logger() -> logging.Logger:
    # Outside the "lineclient" hierarchy so records reach caplog
    return logging.getLogger("tests.lineclient")


@pytest_asyncio.fixture
async def server():
    srv = FakeServer(reply=count_reply)
    await srv.start()
    yield srv
    await srv.stop()


@pytest_asyncio.fixture
async def make_client(client_logger):
    created: List[Client] = []

    def factory(port: int, **options: Any) -> Client:
        settings = dict(
            host="127.0.0.1",
            port=port,
            reconnect_timeout=5000,
            heartbeat_interval=50,
            reconnect_delay=10,
            max_reconnect_delay=100,
            connect_timeout=1000,
            logger=client_logger,
        )
        settings.update(options)
        client = Client(**settings)
        client.set_credentials("alice", "secret")
        created.append(client)
        return client

    yield factory
    for created_client in created:
        await created_client.close()


@pytest_asyncio.fixture
async def client(server, make_client):
    return make_client(server.port)
