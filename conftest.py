"""Shared fixtures for the panel tests."""

import asyncio
import sys
from pathlib import Path

import httpx
import pytest

# Add the app directory to the path
sys.path.insert(0, str(Path(__file__).parent))

from node_client import NodeClient
from store import GLOBAL_INSTANCES_KEY, SQLiteStore, instance_key, user_instances_key

NODE = {"id": "node1", "name": "Node 1", "address": "10.0.0.5", "port": 3002, "apiKey": "secret-key"}


def make_instance(**overrides) -> dict:
    record = {
        "Id": "inst1",
        "ContainerId": "abc123",
        "Name": "Survival",
        "Image": "ghcr.io/hydra/minecraft:java17",
        "Memory": 1024,
        "Cpu": 100,
        "Disk": 10,
        "Ports": "25565:25565",
        "Primary": "25565",
        "Env": ["EULA=TRUE", "VERSION=1.20.4"],
        "Node": dict(NODE),
        "User": "user1",
        "VolumeId": "inst1",
        "suspended": False,
        "State": "RUNNING",
    }
    record.update(overrides)
    return record


def seed(store, *records: dict) -> None:
    """Write records to all three locations the way a deploy does."""
    for record in records:
        store.set(instance_key(record["ContainerId"]), record)
        user_key = user_instances_key(record["User"])
        store.set(user_key, (store.get(user_key) or []) + [record])
        store.set(GLOBAL_INSTANCES_KEY, (store.get(GLOBAL_INSTANCES_KEY) or []) + [record])


def copies(store, record_id: str, user_id: str, container_id: str) -> tuple:
    """Return the (key, user list, global list) copies of one record."""
    by_key = store.get(instance_key(container_id))
    in_user = [e for e in store.get(user_instances_key(user_id)) or [] if e["Id"] == record_id]
    in_global = [e for e in store.get(GLOBAL_INSTANCES_KEY) or [] if e["Id"] == record_id]
    return by_key, in_user, in_global


class NodeRecorder:
    """Fake node daemon: records requests and answers from a route table."""

    def __init__(self, routes: dict | None = None):
        self.routes = routes or {}
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        answer = self.routes.get((request.method, request.url.path))
        if answer is None:
            return httpx.Response(404, json={"message": "not found"})
        if isinstance(answer, Exception):
            raise answer
        if callable(answer):
            return answer(request)
        status, body = answer
        return httpx.Response(status, json=body)

    def client(self) -> NodeClient:
        return NodeClient(transport=httpx.MockTransport(self))

    def calls(self) -> list[tuple[str, str]]:
        return [(r.method, r.url.path) for r in self.requests]


class FakeDaemon:
    """Stands in for the node exec socket returned by websockets.connect."""

    def __init__(self, frames=(), hold_open=False):
        self.frames = list(frames)
        self.hold_open = hold_open
        self.sent = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return False

    async def send(self, message):
        self.sent.append(message)

    def __aiter__(self):
        return self._frames()

    async def _frames(self):
        for frame in self.frames:
            yield frame
        if self.hold_open:
            await asyncio.Event().wait()


def connector(daemon, urls: list):
    """A websockets.connect replacement that records URLs and returns ``daemon``."""
    def connect(url):
        urls.append(url)
        return daemon
    return connect


@pytest.fixture
def store(tmp_path):
    return SQLiteStore(tmp_path / "panel.db")


@pytest.fixture
def workflows_file(tmp_path):
    return tmp_path / "workflows.json"


@pytest.fixture
def admin():
    return {"userId": "admin", "username": "admin", "admin": True, "accessTo": []}


@pytest.fixture
def owner():
    return {"userId": "user1", "username": "alice", "admin": False, "accessTo": []}


@pytest.fixture
def stranger():
    return {"userId": "user2", "username": "bob", "admin": False, "accessTo": []}
