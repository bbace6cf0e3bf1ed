#!/usr/bin/env python3
"""
HydraPanel Background Worker

Retries node deletes that failed while an instance was being removed, and
refreshes the state of instances that are still installing.
Run as systemd service: hydrapanel-worker.service
"""

import asyncio
import logging
import os
import signal
import time
from datetime import datetime, timezone
from pathlib import Path

from errors import PanelError, RemoteCallError
from instances import InstanceService
from node_client import READ_TIMEOUT, NodeClient
from store import GLOBAL_INSTANCES_KEY, PENDING_DELETES_KEY, SQLiteStore
from workflows import WORKFLOWS_FILE

# Configuration
DB_PATH = Path(os.environ.get("PANEL_DB_PATH", Path(__file__).parent / "data" / "panel.db"))
RECONCILE_INTERVAL = int(os.environ.get("RECONCILE_INTERVAL", "30"))
STATE_INTERVAL = int(os.environ.get("STATE_INTERVAL", "10"))
MAX_DELETE_ATTEMPTS = 10

logger = logging.getLogger("worker")

# Globals
running = True


def signal_handler(sig, frame):
    global running
    logger.info("Received signal %s, shutting down...", sig)
    running = False


async def reconcile_pending_deletes(store, client: NodeClient) -> int:
    """Retry queued node deletes. Returns how many were confirmed."""
    pending = store.get(PENDING_DELETES_KEY) or []
    if not pending:
        return 0

    remaining = []
    confirmed = 0
    for entry in pending:
        try:
            await client.call(entry.get("Node"), "DELETE",
                              f"/instances/{entry['ContainerId']}", timeout=READ_TIMEOUT)
        except RemoteCallError as e:
            if e.remote_status == 404:
                confirmed += 1
                continue
            entry = {**entry, "attempts": entry.get("attempts", 0) + 1, "lastError": str(e),
                     "lastAttempt": datetime.now(timezone.utc).isoformat()}
            if entry["attempts"] >= MAX_DELETE_ATTEMPTS:
                logger.error("Giving up on node delete of %s after %d attempts: %s",
                             entry["Id"], entry["attempts"], e)
                continue
            remaining.append(entry)
            continue
        except PanelError as e:
            logger.error("Dropping pending delete of %s: %s", entry.get("Id"), e)
            continue
        confirmed += 1
        logger.info("Node confirmed delete of instance %s", entry["Id"])

    # Re-read so entries queued while we were working are kept.
    handled = {entry.get("Id") for entry in pending}
    latest = store.get(PENDING_DELETES_KEY) or []
    store.set(PENDING_DELETES_KEY,
              remaining + [entry for entry in latest if entry.get("Id") not in handled])
    return confirmed


async def refresh_installing(service: InstanceService) -> int:
    """Poll the node for every instance still marked INSTALLING."""
    refreshed = 0
    for entry in service.store.get(GLOBAL_INSTANCES_KEY) or []:
        if entry.get("State") != "INSTALLING":
            continue
        try:
            instance = service.load(entry["ContainerId"])
            state = await service.refresh_state(instance)
        except PanelError as e:
            logger.warning("State check for %s failed: %s", entry.get("Id"), e)
            continue
        refreshed += 1
        logger.info("Instance %s is now %s", entry.get("Id"), state)
    return refreshed


async def run() -> None:
    store = SQLiteStore(DB_PATH)
    client = NodeClient()
    service = InstanceService(store, client, WORKFLOWS_FILE)

    last_reconcile = 0.0
    last_state = 0.0

    logger.info("Entering main loop...")

    while running:
        now = time.time()

        if now - last_reconcile >= RECONCILE_INTERVAL:
            try:
                await reconcile_pending_deletes(store, client)
            except PanelError as e:
                logger.error("Reconcile error: %s", e)
            finally:
                # Advance timer even on errors to avoid tight error loops.
                last_reconcile = now

        if now - last_state >= STATE_INTERVAL:
            try:
                await refresh_installing(service)
            except PanelError as e:
                logger.error("State refresh error: %s", e)
            finally:
                last_state = now

        # Sleep briefly to avoid busy loop
        await asyncio.sleep(1)


def main():
    logging.basicConfig(level=os.environ.get("LOG_LEVEL", "INFO").upper(),
                        format="[%(name)s] %(levelname)s %(message)s")

    # Setup signal handlers
    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)

    logger.info("Starting HydraPanel Worker (store: %s)...", DB_PATH)
    asyncio.run(run())
    logger.info("Shutdown complete")


if __name__ == "__main__":
    main()
