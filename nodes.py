"""Node and image catalogue management.

Nodes are stored under ``<id>_node`` with their ids listed in ``nodes``.
A freshly created node has no API key yet; the node daemon picks one up by
running the configure command, which carries a one-time ``configureKey``.
"""

import logging
import time
import uuid
from datetime import datetime, timezone

from errors import NodeConfigurationError, NotFoundError, RemoteCallError, ValidationError
from instances import InstanceService, audit
from node_client import READ_TIMEOUT
from store import GLOBAL_INSTANCES_KEY

logger = logging.getLogger(__name__)

NODES_KEY = "nodes"
IMAGES_KEY = "images"
NODE_STATUS_CHECK_INTERVAL = 30  # seconds
NODE_CREATE_REQUIRED_FIELDS = ("name", "tags", "ram", "disk", "processor", "address", "port")
NODE_PUBLIC_FIELDS = ("id", "name", "status", "tags", "address", "port",
                      "versionFamily", "versionRelease")

# node id -> (monotonic time of the check, node record)
_status_cache: dict[str, tuple[float, dict]] = {}


def node_key(node_id: str) -> str:
    return f"{node_id}_node"


def public_node(node: dict) -> dict:
    """Node fields safe to show in listings (no API or configure key)."""
    return {field: node.get(field) for field in NODE_PUBLIC_FIELDS}


class NodeService:
    def __init__(self, store, node_client, cache: dict | None = None):
        self.store = store
        self.nodes = node_client
        self.cache = _status_cache if cache is None else cache

    def load(self, node_id) -> dict:
        if not isinstance(node_id, str) or not node_id:
            raise ValidationError("Node ID is required")
        node = self.store.get(node_key(node_id))
        if not node:
            raise NotFoundError("Node not found")
        return node

    def list_nodes(self, user: dict) -> list[dict]:
        InstanceService.require_admin(user)
        listed = []
        for node_id in self.store.get(NODES_KEY) or []:
            node = self.store.get(node_key(node_id))
            if node is None:
                logger.warning("Node %s is listed but has no record", node_id)
                continue
            listed.append(public_node(node))
        return listed

    def create_node(self, user: dict, params: dict) -> dict:
        InstanceService.require_admin(user)
        missing = [field for field in NODE_CREATE_REQUIRED_FIELDS if not params.get(field)]
        if missing:
            raise ValidationError("All node parameters are required", missing_fields=missing)

        configure_key = str(uuid.uuid4())
        node = {
            "id": str(uuid.uuid4()),
            "name": params["name"],
            "tags": params["tags"],
            "ram": params["ram"],
            "disk": params["disk"],
            "processor": params["processor"],
            "address": params["address"],
            "port": params["port"],
            "apiKey": None,
            "configureKey": configure_key,
            "status": "Unconfigured",
            "createdAt": datetime.now(timezone.utc).isoformat(),
        }
        self.store.set(node_key(node["id"]), node)
        self.store.set(NODES_KEY, (self.store.get(NODES_KEY) or []) + [node["id"]])
        audit(user, "node:create", id=node["id"], name=node["name"])
        return {"success": True, "nodeId": node["id"], "configureKey": configure_key}

    def delete_node(self, user: dict, node_id) -> dict:
        InstanceService.require_admin(user)
        if not isinstance(node_id, str) or not node_id:
            raise ValidationError("Node ID is required")

        for instance in self.store.get(GLOBAL_INSTANCES_KEY) or []:
            node = instance.get("Node") or {}
            if node.get("id") == node_id:
                raise ValidationError("Cannot delete node with active instances")

        remaining = [entry for entry in self.store.get(NODES_KEY) or [] if entry != node_id]
        self.store.set(NODES_KEY, remaining)
        self.store.delete(node_key(node_id))
        self.cache.pop(node_id, None)
        audit(user, "node:delete", id=node_id)
        return {"success": True, "message": "Node successfully deleted"}

    def configure_command(self, user: dict, node_id, panel_url: str) -> dict:
        """Issue a fresh configure key and the command that redeems it."""
        InstanceService.require_admin(user)
        node = self.load(node_id)
        node["configureKey"] = str(uuid.uuid4())
        self.store.set(node_key(node_id), node)
        command = f"npm run configure -- --panel {panel_url.rstrip('/')} --key {node['configureKey']}"
        return {"nodeId": node_id, "configureCommand": command}

    async def check_status(self, node: dict) -> dict:
        """Ask the node daemon for its version and store the result.

        Results are cached for NODE_STATUS_CHECK_INTERVAL seconds. A node
        that cannot be reached is stored as Offline with the error.
        """
        node_id = node.get("id")
        if not node_id:
            raise ValidationError("Invalid node object provided")
        cached = self.cache.get(node_id)
        if cached and time.monotonic() - cached[0] < NODE_STATUS_CHECK_INTERVAL:
            return cached[1]

        now = datetime.now(timezone.utc).isoformat()
        try:
            data = await self.nodes.json_call(node, "GET", "/", timeout=READ_TIMEOUT)
            if not data.get("versionFamily") or not data.get("versionRelease"):
                raise RemoteCallError("Invalid node response structure")
            updated = {
                **node,
                "status": "Online" if data.get("online", True) else "Offline",
                "versionFamily": data["versionFamily"],
                "versionRelease": data["versionRelease"],
                "remote": data.get("remote") or False,
                "docker": data.get("docker") or False,
                "lastChecked": now,
                "error": None,
            }
        except (NodeConfigurationError, RemoteCallError) as e:
            logger.error("Error checking status for node %s: %s", node_id, e)
            updated = {
                **node,
                "status": "Offline",
                "lastChecked": now,
                "error": str(e),
                "versionFamily": node.get("versionFamily") or "unknown",
                "versionRelease": node.get("versionRelease") or "unknown",
            }

        self.store.set(node_key(node_id), updated)
        self.cache[node_id] = (time.monotonic(), updated)
        return updated

    async def node_status(self, user: dict, node_id) -> dict:
        InstanceService.require_admin(user)
        return public_node(await self.check_status(self.load(node_id)))

    def list_images(self) -> list:
        return self.store.get(IMAGES_KEY) or []
