"""Relays a browser console WebSocket to the node's exec socket."""

import asyncio
import json
import logging

import websockets
from websockets.exceptions import ConnectionClosed, WebSocketException

from errors import NodeConfigurationError
from node_client import exec_url

logger = logging.getLogger(__name__)

DAEMON_DOWN_MESSAGE = "\x1b[31;1mHydraDaemon instance appears to be down"
POLICY_VIOLATION = 1008
INTERNAL_ERROR = 1011


def auth_frame(api_key: str) -> str:
    return json.dumps({"event": "auth", "args": [api_key]})


async def _daemon_to_client(daemon, client) -> None:
    try:
        async for message in daemon:
            if isinstance(message, bytes):
                await client.send_bytes(message)
            else:
                await client.send_text(message)
    except ConnectionClosed:
        pass


async def _client_to_daemon(client, daemon) -> None:
    while True:
        message = await client.receive()
        if message["type"] == "websocket.disconnect":
            return
        if message.get("text") is not None:
            await daemon.send(message["text"])
        elif message.get("bytes") is not None:
            await daemon.send(message["bytes"])


async def _close_client(client, code: int = 1000, reason: str = "") -> None:
    try:
        await client.close(code=code, reason=reason)
    except RuntimeError:
        # Already closed by the browser.
        pass


async def relay(client, instance: dict, connect=None) -> None:
    """Forward frames between an accepted client socket and the node.

    The node socket gets an auth frame carrying the node API key first;
    everything after that is passed through unchanged. Whichever side closes
    first, the other one is closed too.
    """
    connect = connect or websockets.connect
    node = instance.get("Node")
    try:
        url = exec_url(node, instance["ContainerId"])
    except NodeConfigurationError:
        await _close_client(client, POLICY_VIOLATION, "Invalid node configuration")
        return

    try:
        async with connect(url) as daemon:
            await daemon.send(auth_frame(node["apiKey"]))
            to_client = asyncio.create_task(_daemon_to_client(daemon, client))
            to_daemon = asyncio.create_task(_client_to_daemon(client, daemon))
            done, pending = await asyncio.wait(
                {to_client, to_daemon}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in pending:
                task.cancel()
            for task in pending:
                try:
                    await task
                except asyncio.CancelledError:
                    pass
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, ConnectionClosed):
                    logger.error("Console relay for %s stopped: %s", instance.get("Id"), error)
    except (OSError, WebSocketException) as e:
        logger.error("Console connection to %s failed: %s", url, e)
        try:
            await client.send_text(DAEMON_DOWN_MESSAGE)
        except RuntimeError:
            pass

    await _close_client(client)
