"""HydraPanel: FastAPI backend for node-hosted instances."""

import base64
import binascii
import hashlib
import logging
import os
import secrets
from contextlib import asynccontextmanager
from pathlib import Path

import websockets
from fastapi import Depends, FastAPI, HTTPException, Query, Request, WebSocket, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from console import INTERNAL_ERROR, POLICY_VIOLATION, relay
from errors import PanelError, StorageError, ValidationError
from instances import InstanceService
from node_client import NodeClient
from nodes import NodeService
from store import SQLiteStore
from workflows import WORKFLOWS_FILE

# ---------------------------------------------------------------------------
# Configuration (via environment variables)
# ---------------------------------------------------------------------------
PANEL_USER = os.environ.get("PANEL_USER", "admin")
PANEL_PASS = os.environ.get("PANEL_PASS", "changeme")
PANEL_ADMIN_ID = os.environ.get("PANEL_ADMIN_ID", "admin")
PANEL_NAME = os.environ.get("PANEL_NAME", "HydraPanel")
DB_PATH = Path(os.environ.get("PANEL_DB_PATH", Path(__file__).parent / "data" / "panel.db"))
LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO").upper()

PASSWORD_ITERATIONS = 200_000

logging.basicConfig(level=LOG_LEVEL, format="[%(name)s] %(levelname)s %(message)s")
logger = logging.getLogger("panel")

# ---------------------------------------------------------------------------
# App Setup
# ---------------------------------------------------------------------------
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Using key-value store at %s", DB_PATH)
    yield


app = FastAPI(title="HydraPanel", docs_url=None, redoc_url=None, lifespan=lifespan)
security = HTTPBasic()

_store = SQLiteStore(DB_PATH)
_node_client = NodeClient()


def get_store():
    return _store


def get_node_client() -> NodeClient:
    return _node_client


def get_ws_connect():
    return websockets.connect


def get_service(store=Depends(get_store),
                node_client: NodeClient = Depends(get_node_client)) -> InstanceService:
    return InstanceService(store, node_client, WORKFLOWS_FILE)


def get_node_service(store=Depends(get_store),
                     node_client: NodeClient = Depends(get_node_client)) -> NodeService:
    return NodeService(store, node_client)


@app.exception_handler(PanelError)
async def panel_error_handler(request: Request, exc: PanelError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(exc.to_dict(), status_code=exc.status_code)


# ---------------------------------------------------------------------------
# Authentication
# ---------------------------------------------------------------------------
def hash_password(password: str, salt: str | None = None) -> str:
    salt = salt or secrets.token_hex(16)
    digest = hashlib.pbkdf2_hmac("sha256", password.encode(), salt.encode(), PASSWORD_ITERATIONS)
    return f"{salt}${digest.hex()}"


def check_password(password: str, stored: str | None) -> bool:
    if not stored or "$" not in stored:
        return False
    salt = stored.split("$", 1)[0]
    return secrets.compare_digest(hash_password(password, salt), stored)


def authenticate(store, username: str, password: str) -> dict | None:
    """Resolve basic-auth credentials to a user record, or None."""
    correct_user = secrets.compare_digest(username, PANEL_USER)
    correct_pass = secrets.compare_digest(password, PANEL_PASS)
    if correct_user and correct_pass:
        return {"userId": PANEL_ADMIN_ID, "username": PANEL_USER, "admin": True, "accessTo": []}

    for user in store.get("users") or []:
        if user.get("username") == username and check_password(password, user.get("password_hash")):
            return {
                "userId": user["userId"],
                "username": user["username"],
                "admin": user.get("admin") is True,
                "accessTo": user.get("accessTo") or [],
            }
    return None


def verify_credentials(credentials: HTTPBasicCredentials = Depends(security),
                       store=Depends(get_store)) -> dict:
    user = authenticate(store, credentials.username, credentials.password)
    if user is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid credentials",
            headers={"WWW-Authenticate": "Basic"},
        )
    return user


def credentials_from_header(header: str | None) -> tuple[str, str] | None:
    """Decode an ``Authorization: Basic ...`` header."""
    if not header:
        return None
    scheme, _, param = header.partition(" ")
    if scheme.lower() != "basic" or not param:
        return None
    try:
        decoded = base64.b64decode(param, validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep:
        return None
    return username, password


async def read_json(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise ValidationError("Invalid JSON body")
    if not isinstance(body, dict):
        raise ValidationError("JSON body must be an object")
    return body


# ---------------------------------------------------------------------------
# Instance routes
# ---------------------------------------------------------------------------
@app.get("/api/name")
async def api_name(user: dict = Depends(verify_credentials), store=Depends(get_store)):
    return {"name": store.get("name") or PANEL_NAME}


@app.get("/api/instances")
async def api_instances(see: str = "", user: dict = Depends(verify_credentials),
                        service: InstanceService = Depends(get_service)):
    return {"instances": service.list_instances(user, see_other=see == "other")}


@app.get("/api/instance/{container_id}")
async def api_instance(container_id: str, user: dict = Depends(verify_credentials),
                       service: InstanceService = Depends(get_service)):
    return service.get_instance(user, container_id)


@app.get("/api/instance/{container_id}/state")
async def api_instance_state(container_id: str, user: dict = Depends(verify_credentials),
                             service: InstanceService = Depends(get_service)):
    state = await service.check_state(user, container_id)
    return {"success": True, "state": state}


@app.get("/api/instance/{container_id}/automations")
async def api_instance_automations(container_id: str, user: dict = Depends(verify_credentials),
                                   service: InstanceService = Depends(get_service)):
    return {"workflow": service.get_workflow(user, container_id)}


@app.post("/api/instance/{container_id}/rename")
async def api_instance_rename(container_id: str, request: Request,
                              user: dict = Depends(verify_credentials),
                              service: InstanceService = Depends(get_service)):
    body = await read_json(request)
    return service.rename_instance(user, container_id, body.get("newName"))


@app.post("/api/instance/{container_id}/variables")
async def api_instance_variable(container_id: str, request: Request,
                                user: dict = Depends(verify_credentials),
                                service: InstanceService = Depends(get_service)):
    body = await read_json(request)
    return service.set_variable(user, container_id, body.get("variable"), body.get("value"))


@app.post("/api/instance/{container_id}/image")
async def api_instance_image(container_id: str, request: Request,
                             user: dict = Depends(verify_credentials),
                             service: InstanceService = Depends(get_service)):
    body = await read_json(request)
    return await service.change_image(user, container_id, body.get("image"))


@app.post("/api/instance/{container_id}/reinstall")
async def api_instance_reinstall(container_id: str, user: dict = Depends(verify_credentials),
                                 service: InstanceService = Depends(get_service)):
    return await service.reinstall_instance(user, container_id)


@app.delete("/api/instance/{container_id}")
async def api_instance_delete(container_id: str, user: dict = Depends(verify_credentials),
                              service: InstanceService = Depends(get_service)):
    return await service.delete_instance(user, container_id)


@app.put("/api/instances/edit/{container_id}")
async def api_instance_edit(container_id: str, request: Request,
                            user: dict = Depends(verify_credentials),
                            service: InstanceService = Depends(get_service)):
    body = await read_json(request)
    return await service.edit_instance(
        user, container_id,
        image=body.get("Image"), memory=body.get("Memory"), cpu=body.get("Cpu"),
    )


@app.post("/api/instances/deploy", status_code=201)
async def api_instances_deploy(request: Request, user: dict = Depends(verify_credentials),
                               service: InstanceService = Depends(get_service)):
    body = await read_json(request)
    return await service.deploy_instance(user, body)


# ---------------------------------------------------------------------------
# Archives
# ---------------------------------------------------------------------------
@app.get("/api/instance/{container_id}/archives")
async def api_archives(container_id: str, user: dict = Depends(verify_credentials),
                       service: InstanceService = Depends(get_service)):
    return {"archives": await service.list_archives(user, container_id)}


@app.post("/api/instance/{container_id}/archives/create")
async def api_archive_create(container_id: str, user: dict = Depends(verify_credentials),
                             service: InstanceService = Depends(get_service)):
    return await service.create_archive(user, container_id)


@app.post("/api/instance/{container_id}/archives/{archive_name}/delete")
async def api_archive_delete(container_id: str, archive_name: str,
                             user: dict = Depends(verify_credentials),
                             service: InstanceService = Depends(get_service)):
    return await service.delete_archive(user, container_id, archive_name)


@app.post("/api/instance/{container_id}/archives/{archive_name}/rollback")
async def api_archive_rollback(container_id: str, archive_name: str,
                               user: dict = Depends(verify_credentials),
                               service: InstanceService = Depends(get_service)):
    return await service.rollback_archive(user, container_id, archive_name)


# ---------------------------------------------------------------------------
# Nodes and images
# ---------------------------------------------------------------------------
@app.get("/api/images")
async def api_images(user: dict = Depends(verify_credentials),
                     nodes: NodeService = Depends(get_node_service)):
    return nodes.list_images()


@app.get("/api/nodes")
async def api_nodes(user: dict = Depends(verify_credentials),
                    nodes: NodeService = Depends(get_node_service)):
    return nodes.list_nodes(user)


@app.post("/api/nodes/create", status_code=201)
async def api_node_create(request: Request, user: dict = Depends(verify_credentials),
                          nodes: NodeService = Depends(get_node_service)):
    body = await read_json(request)
    return nodes.create_node(user, body)


@app.delete("/api/nodes/delete/{node_id}")
async def api_node_delete(node_id: str, user: dict = Depends(verify_credentials),
                          nodes: NodeService = Depends(get_node_service)):
    return nodes.delete_node(user, node_id)


@app.get("/api/nodes/configure-command")
async def api_node_configure_command(request: Request, node_id: str = Query("", alias="id"),
                                     user: dict = Depends(verify_credentials),
                                     nodes: NodeService = Depends(get_node_service)):
    return nodes.configure_command(user, node_id, str(request.base_url))


@app.get("/api/nodes/{node_id}/status")
async def api_node_status(node_id: str, user: dict = Depends(verify_credentials),
                          nodes: NodeService = Depends(get_node_service)):
    return await nodes.node_status(user, node_id)


# ---------------------------------------------------------------------------
# Admin routes
# ---------------------------------------------------------------------------
@app.post("/api/admin/instances/{container_id}/suspend")
async def api_admin_suspend(container_id: str, user: dict = Depends(verify_credentials),
                            service: InstanceService = Depends(get_service)):
    return service.set_suspended(user, container_id, True)


@app.post("/api/admin/instances/{container_id}/unsuspend")
async def api_admin_unsuspend(container_id: str, user: dict = Depends(verify_credentials),
                              service: InstanceService = Depends(get_service)):
    return service.set_suspended(user, container_id, False)


@app.post("/api/admin/instances/purge")
async def api_admin_purge(user: dict = Depends(verify_credentials),
                          service: InstanceService = Depends(get_service)):
    return await service.purge_instances(user)


# ---------------------------------------------------------------------------
# Console
# ---------------------------------------------------------------------------
@app.websocket("/api/instance/console/{container_id}")
async def console_socket(websocket: WebSocket, container_id: str,
                         store=Depends(get_store),
                         service: InstanceService = Depends(get_service),
                         connect=Depends(get_ws_connect)):
    credentials = credentials_from_header(websocket.headers.get("authorization"))
    try:
        user = authenticate(store, *credentials) if credentials else None
    except StorageError as exc:
        logger.error("Console login failed: %s", exc.message)
        await websocket.close(code=INTERNAL_ERROR, reason="Storage unavailable")
        return
    if user is None:
        await websocket.close(code=POLICY_VIOLATION, reason="Authorization required")
        return

    try:
        instance = service.load_authorized(user, container_id)
    except StorageError as exc:
        logger.error("Console lookup of %s failed: %s", container_id, exc.message)
        await websocket.close(code=INTERNAL_ERROR, reason="Storage unavailable")
        return
    except PanelError as exc:
        await websocket.close(code=POLICY_VIOLATION, reason=exc.message)
        return

    await websocket.accept()
    await relay(websocket, instance, connect=connect)
