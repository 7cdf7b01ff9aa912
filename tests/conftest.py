import asyncio
from typing import List, Tuple

import pytest

from qrbot.client import SessionClient


class FakeHub:
    """Shared bookkeeping for every FakeClient a test's factory builds."""

    def __init__(self):
        self.clients: List["FakeClient"] = []
        self.live = 0
        self.max_live = 0
        self.fail_initialize = 0
        self.fail_destroy = False
        self.fail_send = False

    def factory(self, events):
        client = FakeClient(events, self)
        self.clients.append(client)
        return client

    @property
    def current(self) -> "FakeClient":
        return self.clients[-1]


class FakeClient(SessionClient):
    def __init__(self, events, hub: FakeHub):
        super().__init__(events)
        self.hub = hub
        self.sent: List[Tuple[str, str]] = []
        self.send_attempts = 0
        self.initialized = False
        self.destroyed = False
        hub.live += 1
        hub.max_live = max(hub.max_live, hub.live)

    async def initialize(self):
        if self.hub.fail_initialize:
            self.hub.fail_initialize -= 1
            raise RuntimeError("browser failed to launch")
        self.initialized = True

    async def send_message(self, to, text):
        self.send_attempts += 1
        if self.hub.fail_send:
            raise RuntimeError("send failed")
        self.sent.append((to, text))

    async def destroy(self):
        self.destroyed = True
        self.hub.live -= 1
        if self.hub.fail_destroy:
            raise RuntimeError("profile lock busy")


@pytest.fixture
def hub():
    return FakeHub()


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 2.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)

    return _wait
