"""
Tests for the store server: accounts, path reads, batch commits, the change
feed, and the client stack running against it over HTTP.
"""

import asyncio
import json

import httpx
import pytest
from fastapi.testclient import TestClient

from chatclient import remote
from chatclient.cli_client import ChatClient
from chatclient.config import ClientSettings
from chatclient.directory import ConversationDirectory
from chatclient.identity import AsymmetricIdentity
from chatclient.invites import InviteOutcome
from chatclient.remote import RemoteStore, ServiceUnavailable
from chatclient.session import ChatSession
from chatclient.storage import MemoryKeyVault
from chatserver.auth import create_access_token, verify_token
from chatserver.config import ServerSettings
from chatserver.main import create_app
from chatstore import PermissionDenied, StoreError, WriteBatch
from chatstore import paths
from chatstore.rules import KEY_ALREADY_PUBLISHED, NOT_A_PARTICIPANT, NOT_OWNER


@pytest.fixture
def settings(tmp_path):
    return ServerSettings(DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path}/store.db", SECRET_KEY="test-secret")


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


def _register(client, username, password="password123"):
    response = client.post("/api/register", json={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['access_token']}"}


def _commit(client, headers, batch):
    return client.post("/api/commit", json=batch.to_dict(), headers=headers)


def _conversation(cid, creator, other):
    return (
        WriteBatch()
        .set(paths.conversation_meta(cid), {"created_by": creator, "created_at": 1.0})
        .set(paths.participant(cid, creator), True)
        .set(paths.participant(cid, other), True)
        .set(paths.wrapped_key(cid, creator), "wrapped")
        .set(paths.wrapped_key(cid, other), "wrapped")
        .set(paths.membership(creator, cid), True)
        .require_absent(paths.conversation_meta(cid))
    )


def test_health_check(client):
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"status": "healthy"}


def test_register_and_login(client):
    _register(client, "alice")

    duplicate = client.post("/api/register", json={"username": "alice", "password": "other"})
    assert duplicate.status_code == 400

    invalid = client.post("/api/register", json={"username": "a/b", "password": "x"})
    assert invalid.status_code == 400

    login = client.post("/api/login", json={"username": "alice", "password": "password123"})
    assert login.status_code == 200
    data = login.json()
    assert data["username"] == "alice"
    assert data["token_type"] == "bearer"

    wrong = client.post("/api/login", json={"username": "alice", "password": "nope"})
    assert wrong.status_code == 401


def test_requests_without_token_are_rejected(client):
    assert client.get("/api/data", params={"path": "users/alice/profile"}).status_code == 401
    assert client.get("/api/users", headers={"Authorization": "Bearer garbage"}).status_code == 401
    assert client.post("/api/commit", json={"updates": {}}).status_code == 401


def test_list_users(client):
    headers = _register(client, "alice")
    _register(client, "bob")
    response = client.get("/api/users", headers=headers)
    assert sorted(response.json()["users"]) == ["alice", "bob"]


def test_commit_and_read_back(client):
    headers = _register(client, "alice")
    _register(client, "bob")

    response = _commit(client, headers, _conversation("c1", "alice", "bob"))
    assert response.status_code == 200
    assert paths.participant("c1", "bob") in response.json()["changed"]

    leaf = client.get("/api/data", params={"path": paths.conversation_meta("c1")}, headers=headers)
    assert leaf.json()["value"] == {"created_by": "alice", "created_at": 1.0}

    tree = client.get("/api/tree", params={"prefix": paths.conversation("c1")}, headers=headers)
    entries = tree.json()["entries"]
    assert entries["participants/alice"] is True
    assert entries["keys/bob"] == "wrapped"


def test_prefix_reads_do_not_leak_sibling_paths(client):
    headers = _register(client, "alice")
    neighbour = _register(client, "alice0")
    _commit(client, headers, WriteBatch().set(paths.membership("alice", "c1"), True))
    # "alice0" sorts right after "alice/"; its entries must not show up under alice
    _commit(client, neighbour, WriteBatch().set(paths.membership("alice0", "c9"), True))

    tree = client.get("/api/tree", params={"prefix": paths.memberships("alice")}, headers=headers)
    assert tree.json()["entries"] == {"c1": True}


def test_denied_reads_and_writes_carry_the_reason(client):
    alice = _register(client, "alice")
    _register(client, "bob")
    carol = _register(client, "carol")
    _commit(client, alice, _conversation("c1", "alice", "bob"))

    read = client.get("/api/tree", params={"prefix": paths.conversation("c1")}, headers=carol)
    assert read.status_code == 403
    assert read.json()["detail"] == {"reason": NOT_A_PARTICIPANT, "path": paths.conversation("c1")}

    message = {"sender_id": "carol", "nonce": "n", "ciphertext": "c", "sent_at": 1.0}
    write = _commit(client, carol, WriteBatch().set(paths.message("c1", "m1"), message))
    assert write.status_code == 403
    assert write.json()["detail"]["reason"] == NOT_A_PARTICIPANT


def test_public_key_is_published_once(client):
    headers = _register(client, "alice")
    first = _commit(client, headers, WriteBatch().set(paths.public_key("alice"), "PEM-1"))
    same = _commit(client, headers, WriteBatch().set(paths.public_key("alice"), "PEM-1"))
    other = _commit(client, headers, WriteBatch().set(paths.public_key("alice"), "PEM-2"))

    assert first.status_code == 200
    assert same.status_code == 200
    assert other.status_code == 403
    assert other.json()["detail"]["reason"] == KEY_ALREADY_PUBLISHED


def test_failed_precondition_is_a_conflict(client):
    alice = _register(client, "alice")
    _register(client, "bob")
    assert _commit(client, alice, _conversation("c1", "alice", "bob")).status_code == 200

    again = _commit(client, alice, _conversation("c1", "alice", "bob"))
    assert again.status_code == 409
    assert again.json()["detail"] == {"path": paths.conversation_meta("c1"), "exists": False}


def test_malformed_paths_are_bad_requests(client):
    headers = _register(client, "alice")
    response = client.get("/api/data", params={"path": "users//profile"}, headers=headers)
    assert response.status_code == 400
    commit = client.post("/api/commit", json={"updates": {"users/../x": 1}}, headers=headers)
    assert commit.status_code == 400


def test_change_feed(client):
    headers = _register(client, "alice")
    token = headers["Authorization"].split()[1]

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": token})
        assert websocket.receive_json() == {"type": "auth_success", "username": "alice"}

        online = client.get("/api/users/online", headers=headers)
        assert online.json()["users"] == ["alice"]

        websocket.send_json({"type": "watch", "id": "w1", "prefix": paths.memberships("alice")})
        initial = websocket.receive_json()
        assert initial == {"type": "changed", "id": "w1", "prefix": paths.memberships("alice"), "data": {}}

        _commit(client, headers, WriteBatch().set(paths.membership("alice", "c1"), True))
        update = websocket.receive_json()
        assert update["id"] == "w1"
        assert update["data"] == {"c1": True}

        websocket.send_json({"type": "ping"})
        assert websocket.receive_json() == {"type": "pong"}


def test_change_feed_reports_lost_access(client):
    alice = _register(client, "alice")
    bob = _register(client, "bob")
    _commit(client, alice, _conversation("c1", "alice", "bob"))

    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": bob["Authorization"].split()[1]})
        websocket.receive_json()
        websocket.send_json({"type": "watch", "id": "m", "prefix": paths.messages("c1")})
        assert websocket.receive_json()["data"] == {}

        leave = (
            WriteBatch()
            .delete(paths.participant("c1", "bob"))
            .delete(paths.wrapped_key("c1", "bob"))
        )
        assert _commit(client, bob, leave).status_code == 200
        assert websocket.receive_json()["data"] is None


def test_change_feed_requires_authentication(client):
    with client.websocket_connect("/ws") as websocket:
        websocket.send_json({"type": "auth", "token": "garbage"})
        assert websocket.receive_json()["type"] == "error"


def test_token_round_trip(settings):
    token = create_access_token({"sub": "alice"}, settings=settings)
    assert verify_token(token, settings) == "alice"
    assert verify_token(token, ServerSettings(SECRET_KEY="another-secret")) is None
    assert verify_token(None, settings) is None


def test_client_stack_over_http(settings):
    """Key exchange between two users through the real server"""
    async def run():
        app = create_app(settings)
        await app.state.db.create_tables()
        transport = httpx.ASGITransport(app=app)

        async def sign_up(username):
            http_client = httpx.AsyncClient(transport=transport, base_url="http://testserver")
            response = await http_client.post("/api/register", json={"username": username, "password": "pw"})
            store = RemoteStore("http://testserver", response.json()["access_token"], username, http_client)
            identity = AsymmetricIdentity(store, MemoryKeyVault())
            await identity.create_account(username, username.title())
            return store, ConversationDirectory(store, identity)

        try:
            alice_store, alice = await sign_up("alice")
            bob_store, bob = await sign_up("bob")
            carol_store, carol = await sign_up("carol")

            cid = await alice.create_conversation("bob")
            outcomes = await bob.invites.resolve_pending()
            keys = await alice.resolve_key(cid), await bob.resolve_key(cid)
            summaries = await bob.list_conversations()

            with pytest.raises(PermissionDenied) as denied:
                await carol_store.read(paths.conversation(cid))

            for store in (alice_store, bob_store, carol_store):
                await store.close()
            return cid, outcomes, keys, summaries, denied.value.reason
        finally:
            await app.state.db.dispose()

    cid, outcomes, keys, summaries, reason = asyncio.run(run())
    assert outcomes == {cid: InviteOutcome.ACCEPTED}
    assert keys[0] == keys[1]
    assert [s.title for s in summaries] == ["Alice"]
    assert reason == NOT_A_PARTICIPANT


def _offline_store(handler, username="alice"):
    http_client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RemoteStore("http://testserver", "token", username, http_client)


def test_transport_failures_surface_as_store_errors():
    def handler(request):
        if request.url.path == "/api/tree":
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(500, json={"detail": "boom"})

    async def run():
        store = _offline_store(handler)
        errors = []
        for call in (store.read(paths.memberships("alice")), store.get(paths.profile("alice"))):
            try:
                await call
            except StoreError as e:
                errors.append(e)

        session = ChatSession(ConversationDirectory(store, AsymmetricIdentity(store, MemoryKeyVault())))
        view = await session.open("c1")
        await store.close()
        return errors, view

    errors, view = asyncio.run(run())
    assert [type(e) for e in errors] == [ServiceUnavailable, ServiceUnavailable]
    assert isinstance(view.error, ServiceUnavailable)
    assert not view.can_send
    assert view.user_message == ServiceUnavailable.user_message


def test_failed_account_setup_closes_the_connection(monkeypatch, tmp_path):
    def handler(request):
        if request.method == "GET":
            return httpx.Response(200, json={"value": None})
        return httpx.Response(403, json={"detail": {"reason": NOT_OWNER, "path": "users/alice"}})

    stores = []

    async def register(server_url, username, password):
        stores.append(_offline_store(handler, username))
        return stores[-1]

    monkeypatch.setattr(RemoteStore, "register", staticmethod(register))
    client = ChatClient(ClientSettings(VAULT_DIR=str(tmp_path), PBKDF2_ITERATIONS=10000))

    assert asyncio.run(client.register("alice", "pw")) is False
    assert stores[0].http_client.is_closed


class FakeFeed:
    """Stands in for the server end of one change feed connection"""

    def __init__(self, number, accept=True):
        self.number = number
        self.accept = accept
        self.sent = []
        self.incoming = asyncio.Queue()

    async def send(self, raw):
        message = json.loads(raw)
        self.sent.append(message)
        if message["type"] == "auth":
            if self.accept:
                self.incoming.put_nowait({"type": "auth_success", "username": "alice"})
            else:
                self.incoming.put_nowait({"type": "error", "message": "Authentication failed"})
        elif message["type"] == "watch":
            self.incoming.put_nowait(
                {"type": "changed", "id": message["id"], "prefix": message["prefix"], "data": {"feed": self.number}}
            )

    async def recv(self):
        return json.dumps(await self.incoming.get())

    def __aiter__(self):
        return self

    async def __anext__(self):
        message = await self.incoming.get()
        if message is None:
            raise StopAsyncIteration
        return json.dumps(message)

    def drop(self):
        self.incoming.put_nowait(None)

    async def close(self):
        self.drop()


async def _wait_for(condition, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not condition():
        assert asyncio.get_running_loop().time() < deadline, "condition not met in time"
        await asyncio.sleep(0.01)


def test_change_feed_reconnects_and_restores_watches(monkeypatch):
    feeds = []

    async def connect(url):
        feeds.append(FakeFeed(len(feeds)))
        return feeds[-1]

    monkeypatch.setattr(remote.websockets, "connect", connect)

    async def run():
        store = _offline_store(lambda request: httpx.Response(200, json={}))
        store.reconnect_delay = 0
        snapshots = []
        store.watch(paths.memberships("alice"), snapshots.append)
        await _wait_for(lambda: snapshots == [{"feed": 0}])

        feeds[0].drop()
        await _wait_for(lambda: {"feed": 1} in snapshots)
        await store.close()
        return snapshots

    snapshots = asyncio.run(run())
    assert snapshots == [{"feed": 0}, {"feed": 1}]
    first, second = feeds[0].sent, feeds[1].sent
    assert [m["type"] for m in second] == ["auth", "watch"]
    assert second[1]["id"] == first[1]["id"]
    assert second[1]["prefix"] == paths.memberships("alice")


def test_change_feed_failures_are_logged(monkeypatch, caplog):
    async def connect(url):
        return FakeFeed(0, accept=False)

    monkeypatch.setattr(remote.websockets, "connect", connect)

    async def run():
        store = _offline_store(lambda request: httpx.Response(200, json={}))
        store.watch(paths.memberships("alice"), lambda snapshot: None)
        await _wait_for(lambda: any("Change feed task failed" in r.getMessage() for r in caplog.records))
        await store.close()

    asyncio.run(run())
    failure = next(r for r in caplog.records if "Change feed task failed" in r.getMessage())
    assert isinstance(failure.exc_info[1], remote.AuthenticationError)
