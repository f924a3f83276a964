import anyio
import pytest
from fastapi.websockets import WebSocketState

from db import make_engine, make_session_factory
from store import MessageStore, StoreUnavailable


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def store():
    s = MessageStore(make_session_factory(make_engine("sqlite://")))
    s.create_all()
    return s


class FlakyStore(MessageStore):
    """A real store whose next ``failures`` writes raise StoreUnavailable."""

    def __init__(self, session_factory, failures=1):
        super().__init__(session_factory)
        self.failures = failures
        self.attempts = 0

    def persist(self, username, message, room_id=None):
        self.attempts += 1
        if self.failures > 0:
            self.failures -= 1
            raise StoreUnavailable("database is down")
        return super().persist(username, message, room_id)


@pytest.fixture
def flaky_store(store):
    return FlakyStore(store.session_factory, failures=1)


class FakeSocket:
    def __init__(self, fail_sends=False):
        self.fail_sends = fail_sends
        self.accepted = False
        self.sent = []
        self.closed_with = None
        self.application_state = WebSocketState.CONNECTED
        self.client_state = WebSocketState.CONNECTED

    async def accept(self):
        self.accepted = True

    async def send_json(self, data):
        if self.fail_sends:
            raise RuntimeError("connection reset")
        self.sent.append(data)

    async def close(self, code=1000):
        self.closed_with = code
        self.application_state = WebSocketState.DISCONNECTED


class StalledSocket(FakeSocket):
    """A peer that never drains: every send hangs."""

    async def send_json(self, data):
        self.sent.append(data)
        await anyio.sleep_forever()
