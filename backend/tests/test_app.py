import pytest
from fastapi.testclient import TestClient

from app import create_app
from config import Settings
from schemas import ChatBroadcast, ChatRejected, dump_event, outbound_events
from store import StoreUnavailable


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", history_limit=3, history_max=10)


@pytest.fixture
def client(settings, store):
    with TestClient(create_app(settings, store=store)) as c:
        yield c


def post(ws, message="hi", username="alice", **extra):
    ws.send_json({"type": "chat", "username": username, "message": message, **extra})


def test_both_clients_get_the_message_and_history_has_it(client, store):
    store.persist("bob", "earlier", "g7")
    with client.websocket_connect("/ws") as a, client.websocket_connect("/ws") as b:
        post(a, roomId="g7")
        got_a, got_b = a.receive_json(), b.receive_json()

    assert got_a == got_b
    event = outbound_events.validate_python(got_a)
    assert isinstance(event, ChatBroadcast)
    assert event.room_id == "g7"
    assert event.message.username == "alice"
    assert event.message.message == "hi"

    history = client.get("/api/chat/g7").json()
    assert [m["message"] for m in history] == ["earlier", "hi"]
    assert [m["id"] for m in history].count(got_a["message"]["id"]) == 1
    assert history[1] == got_a["message"]


def test_ping_is_ignored_and_connection_stays_usable(client):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "ping"})
        ws.send_text("{not json")
        post(ws, "after ping")
        assert ws.receive_json()["message"]["message"] == "after ping"


def test_store_failure_then_success(settings, flaky_store):
    with TestClient(create_app(settings, store=flaky_store)) as client:
        with client.websocket_connect("/ws") as ws:
            post(ws, "lost")
            post(ws, "kept")
            assert ws.receive_json()["message"]["message"] == "kept"
        assert [m["message"] for m in client.get("/api/chat").json()] == ["kept"]


def test_legacy_game_id_key(client):
    with client.websocket_connect("/ws") as ws:
        post(ws, gameId="g2")
        assert ws.receive_json()["roomId"] == "g2"


def test_reject_notice_when_enabled(store):
    s = Settings(database_url="sqlite://", reject_notices=True)
    with TestClient(create_app(s, store=store)) as client:
        with client.websocket_connect("/ws") as ws:
            post(ws, message="   ")
            event = outbound_events.validate_python(ws.receive_json())
            assert event.type == "error"


def test_custom_ws_path(store):
    s = Settings(database_url="sqlite://", ws_path="/live/chat")
    with TestClient(create_app(s, store=store)) as client:
        with client.websocket_connect("/live/chat") as ws:
            post(ws)
            assert ws.receive_json()["type"] == "chat"


def test_hub_is_per_app(settings, store):
    first, second = create_app(settings, store=store), create_app(settings, store=store)
    assert first.state.hub is not second.state.hub


def test_disconnect_deregisters(client):
    hub = client.app.state.hub
    with client.websocket_connect("/ws") as a:
        with client.websocket_connect("/ws") as b:
            post(b, "from b")
            b.receive_json()
            a.receive_json()
        post(a, "after b left")
        assert a.receive_json()["message"]["message"] == "after b left"
    assert hub.connection_count == 0


class TestHistory:
    def test_global_history_includes_every_room(self, client, store):
        store.persist("alice", "one", "g1")
        store.persist("bob", "two")
        assert [m["message"] for m in client.get("/api/chat").json()] == ["one", "two"]

    def test_default_limit(self, client, store):
        for i in range(5):
            store.persist("alice", str(i), "g1")
        assert [m["message"] for m in client.get("/api/chat/g1").json()] == ["2", "3", "4"]

    def test_explicit_limit(self, client, store):
        for i in range(5):
            store.persist("alice", str(i), "g1")
        assert len(client.get("/api/chat/g1", params={"limit": 5}).json()) == 5

    @pytest.mark.parametrize("limit", [0, 11, "x"])
    def test_bad_limit(self, client, limit):
        assert client.get("/api/chat", params={"limit": limit}).status_code == 422

    def test_unknown_room_is_empty(self, client):
        assert client.get("/api/chat/nope").json() == []

    def test_store_outage(self, client, store, monkeypatch):
        def down(*args, **kwargs):
            raise StoreUnavailable("down")

        monkeypatch.setattr(store, "fetch", down)
        r = client.get("/api/chat")
        assert r.status_code == 500
        assert r.json() == {"detail": "Failed to fetch messages"}


def test_events_are_serialized_by_type():
    assert dump_event(ChatRejected(reason="nope")) == {"type": "error", "reason": "nope"}
