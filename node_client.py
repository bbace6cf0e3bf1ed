"""HTTP client for the node daemons that own instance containers."""

import logging
import os

import httpx

from errors import NodeConfigurationError, RemoteCallError

logger = logging.getLogger(__name__)

NODE_AUTH_USER = os.environ.get("NODE_AUTH_USER", "Skyport")

# Seconds. Reads are cheap on the daemon, container rebuilds are not.
READ_TIMEOUT = 5
EDIT_TIMEOUT = 15
MUTATE_TIMEOUT = 30

REQUIRED_NODE_FIELDS = ("address", "port", "apiKey")


def validate_node(node: dict | None) -> dict:
    """Raise NodeConfigurationError unless address, port and apiKey are set
    and the port is a number from 1 to 65535.
    """
    if not isinstance(node, dict):
        raise NodeConfigurationError("Invalid node configuration for this instance")
    missing = [field for field in REQUIRED_NODE_FIELDS if not node.get(field)]
    if missing:
        raise NodeConfigurationError(
            f"Invalid node configuration for this instance (missing {', '.join(missing)})"
        )
    port = node["port"]
    if isinstance(port, bool) or not str(port).isdecimal() or not 1 <= int(port) <= 65535:
        raise NodeConfigurationError(f"Invalid node configuration for this instance (bad port {port!r})")
    return node


def node_base_url(node: dict) -> str:
    return f"http://{node['address']}:{node['port']}"


def exec_url(node: dict, container_id: str) -> str:
    validate_node(node)
    return f"ws://{node['address']}:{node['port']}/exec/{container_id}"


def _response_body(response: httpx.Response):
    try:
        return response.json()
    except ValueError:
        return response.text or None


class NodeClient:
    """Issues basic-auth requests to node daemons.

    Transport failures and 5xx responses are retried exactly once. 4xx
    responses are returned to the caller as RemoteCallError straight away.
    """

    def __init__(self, transport: httpx.AsyncBaseTransport | None = None,
                 auth_user: str = NODE_AUTH_USER):
        self._transport = transport
        self.auth_user = auth_user

    async def call(self, node: dict, method: str, path: str, json=None,
                   timeout: float = READ_TIMEOUT) -> httpx.Response:
        validate_node(node)
        url = node_base_url(node) + path
        auth = httpx.BasicAuth(self.auth_user, str(node["apiKey"]))
        headers = {"Content-Type": "application/json", "X-Requested-By": "HydraPanel"}

        async with httpx.AsyncClient(transport=self._transport, timeout=timeout) as client:
            for attempt in (1, 2):
                try:
                    response = await client.request(method, url, json=json, auth=auth, headers=headers)
                except httpx.InvalidURL as e:
                    raise NodeConfigurationError(f"Invalid node address {node['address']}:{node['port']}: {e}") from e
                except httpx.TransportError as e:
                    timed_out = isinstance(e, httpx.TimeoutException)
                    if attempt == 1:
                        logger.warning("Node request %s %s failed (%s), retrying", method, url, e)
                        continue
                    raise RemoteCallError(
                        f"Node at {node['address']}:{node['port']} unreachable: {e}",
                        timed_out=timed_out,
                    ) from e

                if response.status_code >= 500:
                    if attempt == 1:
                        logger.warning("Node request %s %s returned %s, retrying",
                                       method, url, response.status_code)
                        continue
                    raise RemoteCallError(
                        f"Node responded with {response.status_code}",
                        remote_status=response.status_code,
                        remote_body=_response_body(response),
                    )
                if response.status_code >= 400:
                    body = _response_body(response)
                    message = body.get("message") if isinstance(body, dict) else None
                    raise RemoteCallError(
                        message or f"Node responded with {response.status_code}",
                        remote_status=response.status_code,
                        remote_body=body,
                    )
                return response

        raise AssertionError("unreachable")

    async def json_call(self, node: dict, method: str, path: str, json=None,
                        timeout: float = READ_TIMEOUT) -> dict:
        response = await self.call(node, method, path, json=json, timeout=timeout)
        if not response.content:
            return {}
        try:
            data = response.json()
        except ValueError as e:
            raise RemoteCallError(f"Invalid JSON from node: {e}",
                                  remote_status=response.status_code) from e
        return data if isinstance(data, dict) else {"data": data}
