"""Shared test fixtures and configuration for backend tests."""
import asyncio
from typing import List

import pytest
from fastapi.testclient import TestClient

from app.chat.gateway import ChannelClosed, PushChannel
from app.config import AppConfig, AuthSettings, MessagingSettings
from app.main import create_app


def make_config(**messaging) -> AppConfig:
    """In-memory config tuned for tests (fast hashing, no presence linger)."""
    defaults = {"presence_linger_seconds": 0.0, "typing_sweep_interval_seconds": 0.05}
    defaults.update(messaging)
    return AppConfig(
        auth=AuthSettings(bcrypt_rounds=4),
        messaging=MessagingSettings(**defaults),
    )


@pytest.fixture
def config():
    return make_config()


@pytest.fixture
def api_client(config):
    """Provide a TestClient whose lifespan (and event loop) spans the test.

    All WebSocket sessions and HTTP calls made through it share one event
    loop, which the messaging core's queues and locks are bound to.
    """
    with TestClient(create_app(config)) as client:
        yield client


class FakeChannel(PushChannel):
    """PushChannel double that records what it was sent."""

    def __init__(self, fail_times: int = 0, closed: bool = False, delay: float = 0.0):
        self.sent: List[dict] = []
        self.close_codes: List[int] = []
        self.fail_times = fail_times
        self.closed = closed
        self.delay = delay
        self.attempts = 0

    async def send(self, payload: dict) -> None:
        self.attempts += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.closed:
            raise ChannelClosed("closed")
        if self.fail_times > 0:
            self.fail_times -= 1
            raise ConnectionError("flaky network")
        self.sent.append(payload)

    async def close(self, code: int = 1000) -> None:
        self.closed = True
        self.close_codes.append(code)

    def of_type(self, event_type: str) -> List[dict]:
        return [p for p in self.sent if p["type"] == event_type]


async def drain(seconds: float = 0.02) -> None:
    """Let writer tasks flush their queues."""
    await asyncio.sleep(seconds)
