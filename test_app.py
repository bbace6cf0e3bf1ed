"""HTTP and WebSocket tests for the FastAPI app."""

import base64

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

import app as panel
from conftest import FakeDaemon, NodeRecorder, connector, make_instance, seed
from console import INTERNAL_ERROR, auth_frame
from errors import StorageError

ADMIN_AUTH = (panel.PANEL_USER, panel.PANEL_PASS)
ALICE_AUTH = ("alice", "hunter2")
BOB_AUTH = ("bob", "swordfish")


@pytest.fixture
def node():
    return NodeRecorder()


@pytest.fixture
def client(store, node):
    store.set("users", [
        {"userId": "user1", "username": "alice", "password_hash": panel.hash_password("hunter2")},
        {"userId": "user2", "username": "bob", "password_hash": panel.hash_password("swordfish")},
    ])
    panel.app.dependency_overrides[panel.get_store] = lambda: store
    panel.app.dependency_overrides[panel.get_node_client] = node.client
    yield TestClient(panel.app)
    panel.app.dependency_overrides.clear()


def basic_header(username, password):
    token = base64.b64encode(f"{username}:{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
def test_missing_credentials_is_401(client):
    assert client.get("/api/name").status_code == 401


def test_wrong_password_is_401(client):
    response = client.get("/api/name", auth=("alice", "wrong"))
    assert response.status_code == 401
    assert response.headers["www-authenticate"] == "Basic"


def test_password_hashes():
    stored = panel.hash_password("hunter2")
    assert panel.check_password("hunter2", stored)
    assert not panel.check_password("hunter3", stored)
    assert not panel.check_password("hunter2", None)


def test_credentials_from_header():
    assert panel.credentials_from_header(basic_header("a", "b:c")["Authorization"]) == ("a", "b:c")
    assert panel.credentials_from_header("Bearer abc") is None
    assert panel.credentials_from_header("Basic !!!") is None
    assert panel.credentials_from_header(None) is None


def test_panel_name(client, store):
    assert client.get("/api/name", auth=ALICE_AUTH).json() == {"name": panel.PANEL_NAME}
    store.set("name", "My Panel")
    assert client.get("/api/name", auth=ALICE_AUTH).json() == {"name": "My Panel"}


# ---------------------------------------------------------------------------
# Instance routes
# ---------------------------------------------------------------------------
def test_owner_reads_instance(client, store):
    seed(store, make_instance())
    response = client.get("/api/instance/abc123", auth=ALICE_AUTH)
    assert response.status_code == 200
    assert response.json()["Name"] == "Survival"


def test_other_user_gets_403(client, store):
    seed(store, make_instance())
    response = client.get("/api/instance/abc123", auth=BOB_AUTH)
    assert response.status_code == 403
    assert "error" in response.json()


def test_unknown_instance_is_404(client):
    assert client.get("/api/instance/nothere", auth=ADMIN_AUTH).status_code == 404


def test_list_instances(client, store):
    seed(store, make_instance(), make_instance(Id="inst2", ContainerId="zzz999", User="user2"))
    mine = client.get("/api/instances", auth=ALICE_AUTH).json()["instances"]
    assert [i["Id"] for i in mine] == ["inst1"]
    assert client.get("/api/instances?see=other", auth=ALICE_AUTH).status_code == 403
    others = client.get("/api/instances?see=other", auth=ADMIN_AUTH).json()["instances"]
    assert [i["Id"] for i in others] == ["inst1", "inst2"]


def test_rename_rejects_non_object_body(client, store):
    seed(store, make_instance())
    response = client.post("/api/instance/abc123/rename", json=["x"], auth=ALICE_AUTH)
    assert response.status_code == 400


def test_reinstall_missing_fields_listed(client, store, node):
    record = make_instance()
    del record["Node"]
    seed(store, record)

    response = client.post("/api/instance/abc123/reinstall", auth=ALICE_AUTH)

    assert response.status_code == 400
    assert response.json()["missingFields"] == ["Node"]
    assert node.requests == []


def test_edit_route_relocates(client, store, node):
    seed(store, make_instance())
    node.routes[("PUT", "/instances/edit/abc123")] = (200, {"newContainerId": "def456"})

    response = client.put("/api/instances/edit/abc123", json={"Memory": 2048}, auth=ADMIN_AUTH)

    assert response.status_code == 200
    assert response.json()["newContainerId"] == "def456"
    assert store.get("abc123_instance") is None
    assert store.get("def456_instance")["Memory"] == 2048


def test_edit_route_is_admin_only(client, store):
    seed(store, make_instance())
    response = client.put("/api/instances/edit/abc123", json={"Memory": 2048}, auth=ALICE_AUTH)
    assert response.status_code == 403


def test_node_failure_maps_to_502(client, store, node):
    seed(store, make_instance())
    node.routes[("PUT", "/instances/edit/abc123")] = (500, {"message": "docker down"})

    response = client.put("/api/instances/edit/abc123", json={"Cpu": 200}, auth=ADMIN_AUTH)

    assert response.status_code == 502
    assert response.json()["nodeStatus"] == 500


def test_deploy_returns_201(client, store, node):
    store.set("node1_node", make_instance()["Node"])
    node.routes[("POST", "/instances/create")] = (201, {"containerId": "c0ffee"})

    response = client.post("/api/instances/deploy", auth=ADMIN_AUTH, json={
        "image": "ghcr.io/hydra/minecraft:java17", "memory": 1024, "cpu": 100,
        "ports": "25565:25565", "nodeId": "node1", "name": "New", "user": "user1",
        "primary": "25565",
    })

    assert response.status_code == 201
    assert response.json()["containerId"] == "c0ffee"
    assert store.get("c0ffee_instance")["State"] == "INSTALLING"


def test_suspend_routes(client, store):
    seed(store, make_instance())
    assert client.post("/api/admin/instances/abc123/suspend", auth=ALICE_AUTH).status_code == 403
    assert client.post("/api/admin/instances/abc123/suspend", auth=ADMIN_AUTH).status_code == 200
    assert store.get("abc123_instance")["suspended"] is True
    response = client.post("/api/instance/abc123/variables", auth=ALICE_AUTH,
                           json={"variable": "MOTD", "value": "hi"})
    assert response.status_code == 403


# ---------------------------------------------------------------------------
# Console
# ---------------------------------------------------------------------------
def test_console_requires_credentials(client, store):
    seed(store, make_instance())
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/instance/console/abc123"):
            pass
    assert exc_info.value.code == 1008


def test_console_rejects_other_users(client, store):
    seed(store, make_instance())
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/instance/console/abc123", headers=basic_header(*BOB_AUTH)):
            pass
    assert exc_info.value.code == 1008


def test_console_relays_daemon_output(client, store):
    seed(store, make_instance())
    daemon = FakeDaemon(frames=["Server started"])
    urls = []
    panel.app.dependency_overrides[panel.get_ws_connect] = lambda: connector(daemon, urls)

    with client.websocket_connect("/api/instance/console/abc123",
                                  headers=basic_header(*ALICE_AUTH)) as ws:
        assert ws.receive_text() == "Server started"
        assert ws.receive()["type"] == "websocket.close"

    assert urls == ["ws://10.0.0.5:3002/exec/abc123"]
    assert daemon.sent == [auth_frame("secret-key")]


class BrokenStore:
    def get(self, key):
        raise StorageError("disk I/O error")


def test_console_closes_when_store_fails(client):
    panel.app.dependency_overrides[panel.get_store] = BrokenStore
    with pytest.raises(WebSocketDisconnect) as exc_info:
        with client.websocket_connect("/api/instance/console/abc123", headers=basic_header(*ALICE_AUTH)):
            pass
    assert exc_info.value.code == INTERNAL_ERROR


def test_app_starts_with_lifespan(client):
    with client as running:
        assert running.get("/api/name", auth=ADMIN_AUTH).status_code == 200


# ---------------------------------------------------------------------------
# Nodes and images
# ---------------------------------------------------------------------------
def test_node_routes(client, store):
    created = client.post("/api/nodes/create", auth=ADMIN_AUTH, json={
        "name": "Node 2", "tags": "eu", "ram": 16384, "disk": 200,
        "processor": "Ryzen 7", "address": "10.0.0.6", "port": 3002,
    })
    assert created.status_code == 201
    node_id = created.json()["nodeId"]

    listed = client.get("/api/nodes", auth=ADMIN_AUTH).json()
    assert [n["id"] for n in listed] == [node_id]
    assert client.get("/api/nodes", auth=ALICE_AUTH).status_code == 403

    command = client.get(f"/api/nodes/configure-command?id={node_id}", auth=ADMIN_AUTH).json()
    assert command["configureCommand"].startswith("npm run configure -- --panel http://testserver --key ")

    deleted = client.delete(f"/api/nodes/delete/{node_id}", auth=ADMIN_AUTH)
    assert deleted.status_code == 200
    assert store.get("nodes") == []


def test_node_with_instances_cannot_be_deleted(client, store):
    store.set("node1_node", make_instance()["Node"])
    store.set("nodes", ["node1"])
    seed(store, make_instance())

    response = client.delete("/api/nodes/delete/node1", auth=ADMIN_AUTH)

    assert response.status_code == 400
    assert response.json() == {"error": "Cannot delete node with active instances"}


def test_images_route(client, store):
    store.set("images", [{"Image": "ghcr.io/hydra/paper:latest"}])
    assert client.get("/api/images", auth=ALICE_AUTH).json() == [{"Image": "ghcr.io/hydra/paper:latest"}]
