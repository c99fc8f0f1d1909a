import asyncio
import os
import socket
from typing import Any

import fakeredis
import pytest

from backend import RedisDirectory
from broker import SessionBroker

os.environ.setdefault("LOG_LEVEL", "WARNING")


class NetworkBlockedError(RuntimeError):
    pass


def _blocked(*_args: Any, **_kwargs: Any) -> Any:
    raise NetworkBlockedError("Network access is disabled during tests. Set ALLOW_NETWORK=1 to allow it.")


@pytest.fixture(autouse=True)
def _disable_network(monkeypatch: pytest.MonkeyPatch) -> None:
    """Prevent accidental outbound network calls (Redis, SMTP) in unit tests."""
    if os.getenv("ALLOW_NETWORK") == "1":
        return
    monkeypatch.setattr(socket, "create_connection", _blocked)
    monkeypatch.setattr(socket, "getaddrinfo", _blocked)


class DummyConnection:
    def __init__(self, connection_id: str) -> None:
        self.connection_id = connection_id
        self.sent: list[dict] = []

    async def send(self, message: dict) -> None:
        self.sent.append(message)

    def of_type(self, event_type: str) -> list[dict]:
        return [message for message in self.sent if message["type"] == event_type]

    def last(self, event_type: str) -> dict:
        return self.of_type(event_type)[-1]


class DummyNotifier:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.sent: list[dict] = []
        self.calls = 0

    async def send_action_notification(self, email: str, user_name: str, description: str) -> None:
        self.calls += 1
        if self.fail:
            raise RuntimeError("SMTP server unreachable")
        self.sent.append({"email": email, "user_name": user_name, "description": description})


def make_directory(**kwargs: Any) -> RedisDirectory:
    client = fakeredis.FakeAsyncRedis(server=fakeredis.FakeServer(), decode_responses=True)
    return RedisDirectory(client, **kwargs)


def make_broker(directory: RedisDirectory = None, notifier: Any = None, grace_delay: float = 0.05) -> SessionBroker:
    return SessionBroker(directory or make_directory(), notifier=notifier, grace_delay=grace_delay)


async def wait_until(predicate, timeout: float = 1.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)
