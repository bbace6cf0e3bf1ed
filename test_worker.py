"""Tests for the background worker jobs."""

import asyncio

from conftest import NODE, NodeRecorder, copies, make_instance, seed
from instances import InstanceService
from store import PENDING_DELETES_KEY
from worker import MAX_DELETE_ATTEMPTS, reconcile_pending_deletes, refresh_installing


def pending(container_id, attempts=0, node=NODE):
    return {"Id": f"id-{container_id}", "ContainerId": container_id, "Node": dict(node),
            "attempts": attempts, "lastError": "Node responded with 500"}


def test_empty_queue_makes_no_requests(store):
    node = NodeRecorder()
    assert asyncio.run(reconcile_pending_deletes(store, node.client())) == 0
    assert node.requests == []


def test_confirmed_and_already_gone_deletes_leave_queue(store):
    store.set(PENDING_DELETES_KEY, [pending("c1"), pending("c2")])
    node = NodeRecorder({("DELETE", "/instances/c1"): (200, {})})  # c2 answers 404

    confirmed = asyncio.run(reconcile_pending_deletes(store, node.client()))

    assert confirmed == 2
    assert store.get(PENDING_DELETES_KEY) == []


def test_failed_delete_stays_queued_with_attempt_count(store):
    store.set(PENDING_DELETES_KEY, [pending("c1", attempts=2)])
    node = NodeRecorder({("DELETE", "/instances/c1"): (503, {"message": "busy"})})

    confirmed = asyncio.run(reconcile_pending_deletes(store, node.client()))

    assert confirmed == 0
    [entry] = store.get(PENDING_DELETES_KEY)
    assert entry["ContainerId"] == "c1"
    assert entry["attempts"] == 3
    assert "lastAttempt" in entry


def test_delete_given_up_after_max_attempts(store):
    store.set(PENDING_DELETES_KEY, [pending("c1", attempts=MAX_DELETE_ATTEMPTS - 1)])
    node = NodeRecorder({("DELETE", "/instances/c1"): (500, {})})

    asyncio.run(reconcile_pending_deletes(store, node.client()))

    assert store.get(PENDING_DELETES_KEY) == []


def test_entry_with_broken_node_is_dropped(store):
    store.set(PENDING_DELETES_KEY, [pending("c1", node={"address": "10.0.0.5"})])
    node = NodeRecorder()

    asyncio.run(reconcile_pending_deletes(store, node.client()))

    assert store.get(PENDING_DELETES_KEY) == []
    assert node.requests == []


def test_refresh_installing_only_touches_installing(store):
    seed(store,
         make_instance(State="INSTALLING"),
         make_instance(Id="inst2", ContainerId="zzz999", State="RUNNING"))
    node = NodeRecorder({
        ("GET", "/instances/inst1/states/get"): (200, {"state": "RUNNING"}),
        ("POST", "/instances/inst1/states/set/RUNNING"): (200, {}),
    })
    service = InstanceService(store, node.client())

    refreshed = asyncio.run(refresh_installing(service))

    assert refreshed == 1
    by_key, in_user, in_global = copies(store, "inst1", "user1", "abc123")
    assert by_key["State"] == "RUNNING"
    assert in_user[0]["State"] == "RUNNING"
    assert in_global[0]["State"] == "RUNNING"
    assert all(path.startswith("/instances/inst1/") for _, path in node.calls())


def test_refresh_installing_survives_node_errors(store):
    seed(store, make_instance(State="INSTALLING"))
    node = NodeRecorder({("GET", "/instances/inst1/states/get"): (500, {})})

    refreshed = asyncio.run(refresh_installing(InstanceService(store, node.client())))

    assert refreshed == 0
    assert store.get("abc123_instance")["State"] == "INSTALLING"


def test_entry_with_malformed_port_is_dropped(store):
    store.set(PENDING_DELETES_KEY, [pending("c1", node={**NODE, "port": "30 02"})])
    node = NodeRecorder()

    assert asyncio.run(reconcile_pending_deletes(store, node.client())) == 0

    assert store.get(PENDING_DELETES_KEY) == []
    assert node.requests == []
