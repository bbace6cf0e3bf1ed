"""Instance operations: reads, authorization and the mutation handlers.

Every mutation validates its input and checks the caller before touching
the node or the store. A failed node call aborts the handler before any
record is rewritten, except for delete, where the node call is best-effort
and a failed one is queued for the worker to retry.
"""

import asyncio
import logging
import math
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path

from errors import (
    AuthorizationError,
    NodeConfigurationError,
    NotFoundError,
    RemoteCallError,
    StorageError,
    ValidationError,
)
from node_client import EDIT_TIMEOUT, MUTATE_TIMEOUT, READ_TIMEOUT, validate_node
from store import (
    GLOBAL_INSTANCES_KEY,
    PENDING_DELETES_KEY,
    instance_key,
    user_instances_key,
)
from sync import InstanceSynchronizer, strip_legacy_fields
from workflows import delete_workflow, load_workflows, workflow_key

logger = logging.getLogger(__name__)
audit_logger = logging.getLogger("audit")

MAX_MEMORY = 1024 * 1024  # MB
MAX_CPU = 1024
MAX_IMAGE_LENGTH = 512
MAX_NAME_LENGTH = 64
PURGE_BATCH_SIZE = 5

DEFAULT_MEMORY = 512
DEFAULT_CPU = 100
DEFAULT_DISK = 10

INSTANCE_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,64}$")
ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
ARCHIVE_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]{0,127}$")

REINSTALL_REQUIRED_FIELDS = ("Node", "Image", "Memory", "Cpu", "Name", "User", "Primary", "ContainerId")
DEPLOY_REQUIRED_FIELDS = ("image", "memory", "cpu", "ports", "nodeId", "name", "user", "primary")


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def is_admin(user: dict | None) -> bool:
    return bool(user) and user.get("admin") is True


def audit(user: dict, action: str, **details) -> None:
    audit_logger.info("%s by %s (%s) %s", action, user.get("username"), user.get("userId"), details)


def validate_instance_id(container_id) -> str:
    if not isinstance(container_id, str) or not INSTANCE_ID_RE.match(container_id):
        raise ValidationError("Invalid instance ID")
    return container_id


def parse_number(value, field: str, upper: int):
    """Coerce a numeric field from a request body and bound-check it."""
    if isinstance(value, bool):
        raise ValidationError(f"{field} must be a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a number")
    if not math.isfinite(number):
        raise ValidationError(f"{field} must be a number")
    if number <= 0 or number > upper:
        raise ValidationError(f"{field} must be between 0 and {upper}")
    return int(number) if number.is_integer() else number


def parse_ports(ports) -> tuple[dict, dict]:
    """Turn ``"25565:25565,8080:80"`` into Docker ExposedPorts/PortBindings."""
    exposed: dict = {}
    bindings: dict = {}
    if not ports or not isinstance(ports, str):
        return exposed, bindings
    for mapping in ports.split(","):
        mapping = mapping.strip()
        if not mapping:
            continue
        container_port, _, host_port = mapping.partition(":")
        if container_port and host_port:
            key = f"{container_port}/tcp"
            exposed[key] = {}
            bindings[key] = [{"HostPort": host_port}]
    return exposed, bindings


def _as_int(value, default: int) -> int:
    try:
        return int(value) or default
    except (TypeError, ValueError):
        return default


def _env_list(env) -> list[str]:
    if isinstance(env, list):
        return [str(item) for item in env]
    if isinstance(env, dict):
        return [f"{key}={value}" for key, value in env.items()]
    return []


class InstanceService:
    """Instance handlers bound to a store, a node client and a workflows file."""

    def __init__(self, store, node_client, workflows_file: Path | None = None):
        self.store = store
        self.nodes = node_client
        self.sync = InstanceSynchronizer(store)
        self.workflows_file = workflows_file

    # -----------------------------------------------------------------------
    # Lookup and authorization
    # -----------------------------------------------------------------------
    def load(self, container_id: str) -> dict:
        validate_instance_id(container_id)
        instance = self.store.get(instance_key(container_id))
        if not instance:
            raise NotFoundError("Instance not found")
        return instance

    def is_authorized(self, user: dict | None, instance_id: str) -> bool:
        if not user or not instance_id:
            return False
        if is_admin(user):
            return True
        if instance_id in (user.get("accessTo") or []):
            return True
        owned = self.store.get(user_instances_key(user["userId"])) or []
        return any(entry.get("Id") == instance_id for entry in owned if isinstance(entry, dict))

    def load_authorized(self, user: dict, container_id: str) -> dict:
        instance = self.load(container_id)
        if not self.is_authorized(user, instance.get("Id")):
            raise AuthorizationError("Unauthorized access to this instance.")
        return instance

    @staticmethod
    def require_admin(user: dict) -> None:
        if not is_admin(user):
            raise AuthorizationError("Forbidden: Admin access required")

    @staticmethod
    def require_active(instance: dict) -> None:
        if instance.get("suspended") is True:
            raise AuthorizationError("Instance is suspended")

    def find_image(self, image: str) -> dict | None:
        for entry in self.store.get("images") or []:
            if isinstance(entry, dict) and entry.get("Image") == image:
                return entry
        return None

    def _commit(self, old_key_id: str, previous: dict, updated: dict) -> dict:
        """Synchronise ``updated``; on a storage failure put ``previous`` back.

        Only records that kept their ContainerId are restored. A relocated
        record points at a container the node already replaced.
        """
        try:
            return self.sync.sync(old_key_id, updated)
        except StorageError:
            if updated["ContainerId"] == previous["ContainerId"]:
                try:
                    self.sync.sync(previous["ContainerId"], previous)
                except StorageError as e:
                    logger.error("Could not restore instance %s: %s", previous["Id"], e)
            raise

    # -----------------------------------------------------------------------
    # Reads
    # -----------------------------------------------------------------------
    def list_instances(self, user: dict, see_other: bool = False) -> list[dict]:
        if see_other:
            self.require_admin(user)
            everything = self.store.get(GLOBAL_INSTANCES_KEY) or []
            return [entry for entry in everything if entry.get("User") != user["userId"]]

        instances = list(self.store.get(user_instances_key(user["userId"])) or [])
        shared = set(user.get("accessTo") or [])
        if shared:
            seen = {entry.get("Id") for entry in instances}
            for entry in self.store.get(GLOBAL_INSTANCES_KEY) or []:
                if entry.get("Id") in shared and entry.get("Id") not in seen:
                    instances.append(entry)
        return instances

    def get_instance(self, user: dict, container_id: str) -> dict:
        instance = self.load_authorized(user, container_id)
        normalized = dict(instance)
        if not isinstance(normalized.get("suspended"), bool):
            normalized["suspended"] = False
        normalized["State"] = normalized.get("State") or "UNKNOWN"
        if normalized != instance:
            self.sync.sync(container_id, normalized)
        return normalized

    def get_workflow(self, user: dict, container_id: str) -> dict | None:
        instance = self.load_authorized(user, container_id)
        workflow = self.store.get(workflow_key(instance["Id"]))
        if workflow is None:
            workflow = load_workflows(self.workflows_file).get(instance["Id"])
        return workflow

    # -----------------------------------------------------------------------
    # Mutations
    # -----------------------------------------------------------------------
    async def edit_instance(self, user: dict, container_id: str, image=None,
                            memory=None, cpu=None) -> dict:
        self.require_admin(user)
        validate_instance_id(container_id)
        if image in (None, "") and memory in (None, "") and cpu in (None, ""):
            raise ValidationError("At least one update parameter (Image, Memory, Cpu) is required")

        changes = {}
        if memory not in (None, ""):
            changes["Memory"] = parse_number(memory, "Memory", MAX_MEMORY)
        if cpu not in (None, ""):
            changes["Cpu"] = parse_number(cpu, "CPU", MAX_CPU)
        if image not in (None, ""):
            if not isinstance(image, str) or len(image) > MAX_IMAGE_LENGTH:
                raise ValidationError("Invalid image format or length")
            changes["Image"] = image

        instance = self.load(container_id)
        self.require_active(instance)
        node = validate_node(instance.get("Node"))

        payload = {
            "Image": changes.get("Image", instance.get("Image")),
            "Memory": changes.get("Memory", instance.get("Memory")),
            "Cpu": changes.get("Cpu", instance.get("Cpu")),
            "VolumeId": instance.get("VolumeId"),
        }
        data = await self.nodes.json_call(
            node, "PUT", f"/instances/edit/{instance['ContainerId']}",
            json=payload, timeout=EDIT_TIMEOUT,
        )
        new_container_id = data.get("newContainerId")
        if not new_container_id:
            raise RemoteCallError("Invalid response from node API: missing newContainerId")

        updated = {**instance, **changes, "ContainerId": new_container_id, "updatedAt": now_iso()}
        self.sync.sync(container_id, updated)

        summary = {field: "updated" if field in changes else "unchanged"
                   for field in ("Image", "Memory", "Cpu")}
        audit(user, "instance:edit", oldContainerId=container_id,
              newContainerId=new_container_id, changes=summary)
        return {
            "message": "Instance updated successfully",
            "oldContainerId": container_id,
            "newContainerId": new_container_id,
            "changes": summary,
        }

    def rename_instance(self, user: dict, container_id: str, new_name) -> dict:
        validate_instance_id(container_id)
        if not isinstance(new_name, str) or not new_name.strip():
            raise ValidationError("Invalid name provided")
        trimmed = new_name.strip()
        if len(trimmed) > MAX_NAME_LENGTH:
            raise ValidationError(f"Name too long (max {MAX_NAME_LENGTH} characters)")

        instance = self.load_authorized(user, container_id)
        old_name = instance.get("Name")
        self._commit(container_id, instance, {**instance, "Name": trimmed})
        audit(user, "instance:rename", id=instance["Id"], oldName=old_name, newName=trimmed)
        return {"success": True, "newName": trimmed, "oldName": old_name}

    def set_variable(self, user: dict, container_id: str, variable, value) -> dict:
        validate_instance_id(container_id)
        if not isinstance(variable, str) or not ENV_NAME_RE.match(variable):
            raise ValidationError("Invalid variable name")
        value = "" if value is None else str(value)

        instance = self.load_authorized(user, container_id)
        self.require_active(instance)

        env = _env_list(instance.get("Env"))
        for index, entry in enumerate(env):
            if entry.split("=", 1)[0] == variable:
                env[index] = f"{variable}={value}"
                break
        else:
            env.append(f"{variable}={value}")

        self._commit(container_id, instance, {**instance, "Env": env, "updatedAt": now_iso()})
        audit(user, "instance:variableChange", id=instance["Id"], variable=variable)
        return {"success": True, "Env": env}

    async def change_image(self, user: dict, container_id: str, image) -> dict:
        validate_instance_id(container_id)
        if not isinstance(image, str) or not image or len(image) > MAX_IMAGE_LENGTH:
            raise ValidationError("Invalid image format or length")

        instance = self.load_authorized(user, container_id)
        self.require_active(instance)

        image_data = self.find_image(image)
        alt_images = instance.get("AltImages") or []
        allowed = {entry.get("Image") if isinstance(entry, dict) else entry for entry in alt_images}
        if image_data is None and image not in allowed:
            raise ValidationError(f"Image {image} is not available for this instance")

        embedded = instance.get("Node") or {}
        node = self.store.get(f"{embedded.get('id')}_node") if embedded.get("id") else None
        node = validate_node(node or embedded)

        exposed, bindings = parse_ports(instance.get("Ports"))
        payload = {
            "Name": instance.get("Name"),
            "Id": instance["Id"],
            "Image": image,
            "Env": _env_list(instance.get("Env")),
            "Scripts": (image_data or {}).get("Scripts"),
            "Memory": _as_int(instance.get("Memory"), DEFAULT_MEMORY),
            "Cpu": _as_int(instance.get("Cpu"), DEFAULT_CPU),
            "ExposedPorts": exposed,
            "PortBindings": bindings,
            "AltImages": alt_images,
        }
        data = await self.nodes.json_call(
            node, "POST", f"/instances/redeploy/{instance['ContainerId']}",
            json=payload, timeout=MUTATE_TIMEOUT,
        )
        new_container_id = data.get("containerId")
        if not new_container_id:
            raise RemoteCallError("Invalid response from node: missing containerId")

        updated = {
            **instance,
            "Image": image,
            "ContainerId": new_container_id,
            "updatedAt": now_iso(),
        }
        self.sync.sync(container_id, updated)
        audit(user, "instance:imageChange", id=instance["Id"],
              oldImage=instance.get("Image"), newImage=image)
        return {"success": True, "containerId": new_container_id, "Image": image}

    async def reinstall_instance(self, user: dict, container_id: str) -> dict:
        instance = self.load_authorized(user, container_id)
        self.require_active(instance)

        missing = [field for field in REINSTALL_REQUIRED_FIELDS if not instance.get(field)]
        if missing:
            raise ValidationError("Missing required parameters", missing_fields=missing)
        node = validate_node(instance["Node"])

        image_data = self.find_image(instance["Image"]) or {}
        exposed, bindings = parse_ports(instance.get("Ports"))
        payload = {
            "Name": instance["Name"],
            "Id": instance["Id"],
            "Image": instance["Image"],
            "Env": _env_list(instance.get("Env")),
            "Scripts": image_data.get("Scripts", []),
            "Memory": _as_int(instance["Memory"], DEFAULT_MEMORY),
            "Cpu": _as_int(instance["Cpu"], DEFAULT_CPU),
            "Disk": _as_int(instance.get("Disk"), DEFAULT_DISK),
            "ExposedPorts": exposed,
            "PortBindings": bindings,
            "AltImages": image_data.get("AltImages", []),
            "imageData": image_data,
        }
        data = await self.nodes.json_call(
            node, "POST", f"/instances/reinstall/{instance['ContainerId']}",
            json=payload, timeout=MUTATE_TIMEOUT,
        )
        new_container_id = data.get("containerId")
        if not new_container_id:
            raise RemoteCallError("Invalid response from node: missing containerId")

        now = now_iso()
        updated = {
            **instance,
            "ContainerId": new_container_id,
            "VolumeId": instance.get("VolumeId") or instance["Id"],
            "status": "running",
            "updatedAt": now,
            "lastOperation": {"type": "reinstall", "timestamp": now, "status": "completed"},
        }
        self.sync.sync(container_id, updated)
        audit(user, "instance:reinstall", id=instance["Id"], newContainerId=new_container_id)
        return {"success": True, "containerId": new_container_id}

    def set_suspended(self, user: dict, container_id: str, suspended: bool) -> dict:
        self.require_admin(user)
        instance = self.load(container_id)

        updated = {**instance, "suspended": suspended}
        updated["suspendedAt" if suspended else "unsuspendedAt"] = now_iso()
        strip_legacy_fields(updated)
        self._commit(container_id, instance, updated)

        action = "suspend" if suspended else "unsuspend"
        audit(user, f"instance:{action}", id=instance["Id"])
        return {"success": True, "message": f"Instance {container_id} has been {action}ed"}

    async def delete_instance(self, user: dict, container_id: str) -> dict:
        instance = self.load_authorized(user, container_id)
        await self.remove(instance)
        audit(user, "instance:delete", id=instance["Id"])
        return {"message": "Instance successfully deleted"}

    async def remove(self, instance: dict) -> None:
        """Best-effort node delete, then drop every local trace of ``instance``."""
        try:
            await self.nodes.call(instance.get("Node"), "DELETE",
                                  f"/instances/{instance['ContainerId']}", timeout=READ_TIMEOUT)
        except NodeConfigurationError as e:
            logger.warning("Not deleting %s on node: %s", instance["Id"], e)
        except RemoteCallError as e:
            logger.warning("Failed to delete instance %s from node: %s", instance["Id"], e)
            if e.remote_status is None or e.remote_status >= 500:
                self.queue_pending_delete(instance, str(e))

        self.sync.remove(instance)
        delete_workflow(self.store, instance["Id"], self.workflows_file)
        logger.info("Deleted instance %s", instance["Id"])

    def queue_pending_delete(self, instance: dict, error: str) -> None:
        pending = self.store.get(PENDING_DELETES_KEY) or []
        pending = [entry for entry in pending if entry.get("Id") != instance["Id"]]
        pending.append({
            "Id": instance["Id"],
            "ContainerId": instance["ContainerId"],
            "Node": instance.get("Node"),
            "queuedAt": now_iso(),
            "attempts": 0,
            "lastError": error,
        })
        self.store.set(PENDING_DELETES_KEY, pending)

    async def purge_instances(self, user: dict) -> dict:
        self.require_admin(user)
        instances = self.store.get(GLOBAL_INSTANCES_KEY) or []
        failed = 0
        for start in range(0, len(instances), PURGE_BATCH_SIZE):
            batch = instances[start:start + PURGE_BATCH_SIZE]
            results = await asyncio.gather(*(self.remove(entry) for entry in batch),
                                           return_exceptions=True)
            for entry, result in zip(batch, results):
                if isinstance(result, Exception):
                    failed += 1
                    logger.error("Error deleting instance %s: %s", entry.get("Id"), result)
        self.store.delete(GLOBAL_INSTANCES_KEY)
        audit(user, "instances:purge_all", count=len(instances), failed=failed)
        return {"purged": len(instances) - failed, "failed": failed}

    async def deploy_instance(self, user: dict, params: dict) -> dict:
        self.require_admin(user)
        missing = [field for field in DEPLOY_REQUIRED_FIELDS if not params.get(field)]
        if missing:
            raise ValidationError(f"Missing parameters: {', '.join(missing)}", missing_fields=missing)

        memory = parse_number(params["memory"], "Memory", MAX_MEMORY)
        cpu = parse_number(params["cpu"], "CPU", MAX_CPU)
        disk = _as_int(params.get("disk"), DEFAULT_DISK)

        node = self.store.get(f"{params['nodeId']}_node")
        if not node:
            raise ValidationError("Invalid node")
        validate_node(node)

        instance_id = uuid.uuid4().hex[:8]
        image_data = self.find_image(params["image"]) or {}
        env = _env_list(params.get("variables"))
        exposed, bindings = parse_ports(params["ports"])
        payload = {
            "Name": params["name"],
            "Id": instance_id,
            "Image": params["image"],
            "Env": env,
            "Scripts": image_data.get("Scripts", []),
            "Memory": memory,
            "Cpu": cpu,
            "Disk": disk,
            "ExposedPorts": exposed,
            "PortBindings": bindings,
            "AltImages": image_data.get("AltImages", []),
        }
        data = await self.nodes.json_call(node, "POST", "/instances/create",
                                          json=payload, timeout=MUTATE_TIMEOUT)
        container_id = data.get("containerId")
        if not container_id:
            raise RemoteCallError("Invalid response from node: missing containerId")

        now = now_iso()
        record = {
            "Name": params["name"],
            "Id": instance_id,
            "Node": {key: node.get(key) for key in ("id", "name", "address", "port", "apiKey")},
            "User": params["user"],
            "ContainerId": container_id,
            "VolumeId": data.get("volumeId") or instance_id,
            "Memory": memory,
            "Cpu": cpu,
            "Disk": disk,
            "Ports": params["ports"],
            "Primary": params["primary"],
            "Image": params["image"],
            "imageName": params.get("imagename"),
            "AltImages": image_data.get("AltImages", []),
            "Env": env,
            "State": "INSTALLING",
            "suspended": False,
            "createdAt": now,
            "updatedAt": now,
        }
        self.sync.create(record)
        audit(user, "instance:deploy", id=instance_id, containerId=container_id)
        return {
            "message": "Deployment successful",
            "Id": instance_id,
            "containerId": container_id,
            "volumeId": record["VolumeId"],
        }

    # -----------------------------------------------------------------------
    # Node state and archives
    # -----------------------------------------------------------------------
    async def check_state(self, user: dict, container_id: str) -> str:
        instance = self.load_authorized(user, container_id)
        return await self.refresh_state(instance)

    async def refresh_state(self, instance: dict) -> str:
        """Ask the node for the instance state and store it everywhere."""
        node = validate_node(instance.get("Node"))
        data = await self.nodes.json_call(node, "GET", f"/instances/{instance['Id']}/states/get")
        state = data.get("state")
        if not state:
            raise RemoteCallError("Invalid state response from node")
        await self.nodes.call(node, "POST", f"/instances/{instance['Id']}/states/set/{state}")

        if instance.get("State") != state:
            self.sync.sync(instance["ContainerId"], {**instance, "State": state})
        return state

    def _archive_target(self, user: dict, container_id: str) -> tuple[dict, dict]:
        instance = self.load_authorized(user, container_id)
        self.require_active(instance)
        return instance, validate_node(instance.get("Node"))

    @staticmethod
    def _archive_name(name) -> str:
        if not isinstance(name, str) or not ARCHIVE_NAME_RE.match(name) or ".." in name:
            raise ValidationError("Invalid archive name")
        return name

    async def list_archives(self, user: dict, container_id: str) -> list:
        instance, node = self._archive_target(user, container_id)
        data = await self.nodes.json_call(node, "GET", f"/archive/{instance['ContainerId']}/archives")
        return data.get("archives") or []

    async def create_archive(self, user: dict, container_id: str) -> dict:
        instance, node = self._archive_target(user, container_id)
        volume = instance.get("VolumeId") or instance["Id"]
        await self.nodes.call(node, "POST",
                              f"/archive/{instance['ContainerId']}/archives/{volume}/create",
                              timeout=MUTATE_TIMEOUT)
        audit(user, "instance:archiveCreate", id=instance["Id"])
        return {"success": True}

    async def delete_archive(self, user: dict, container_id: str, archive_name) -> dict:
        archive_name = self._archive_name(archive_name)
        instance, node = self._archive_target(user, container_id)
        await self.nodes.call(node, "POST",
                              f"/archive/{instance['ContainerId']}/archives/delete/{archive_name}")
        audit(user, "instance:archiveDelete", id=instance["Id"], archive=archive_name)
        return {"success": True}

    async def rollback_archive(self, user: dict, container_id: str, archive_name) -> dict:
        archive_name = self._archive_name(archive_name)
        instance, node = self._archive_target(user, container_id)
        volume = instance.get("VolumeId") or instance["Id"]
        await self.nodes.call(
            node, "POST",
            f"/archive/{instance['ContainerId']}/archives/rollback/{volume}/{archive_name}",
            timeout=MUTATE_TIMEOUT,
        )
        audit(user, "instance:archiveRollback", id=instance["Id"], archive=archive_name)
        return {"success": True}
