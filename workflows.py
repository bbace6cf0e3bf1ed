"""Automation workflows persisted per instance in a JSON file."""

import json
import logging
import os
from pathlib import Path
from threading import Lock

logger = logging.getLogger(__name__)

WORKFLOWS_FILE = Path(os.environ.get("WORKFLOWS_FILE", "storage/workflows.json"))
_workflows_lock = Lock()


def workflow_key(instance_id: str) -> str:
    return f"{instance_id}_workflow"


def load_workflows(path: Path | None = None) -> dict:
    path = path or WORKFLOWS_FILE
    with _workflows_lock:
        if not path.exists():
            return {}
        with open(path, "r") as f:
            data = json.load(f)
    return data if isinstance(data, dict) else {}


def delete_workflow_from_file(instance_id: str, path: Path | None = None) -> bool:
    """Drop the workflow of ``instance_id``. Returns True if one was removed."""
    if not instance_id:
        raise ValueError("Instance ID is required")
    path = path or WORKFLOWS_FILE
    with _workflows_lock:
        if not path.exists():
            return False
        with open(path, "r") as f:
            workflows = json.load(f)
        if not isinstance(workflows, dict) or instance_id not in workflows:
            return False
        del workflows[instance_id]
        with open(path, "w") as f:
            json.dump(workflows, f, indent=2)
    logger.info("Deleted workflow for instance %s from %s", instance_id, path)
    return True


def delete_workflow(store, instance_id: str, path: Path | None = None) -> None:
    """Remove the workflow record from the store and from the workflows file."""
    store.delete(workflow_key(instance_id))
    try:
        delete_workflow_from_file(instance_id, path)
    except (OSError, json.JSONDecodeError) as e:
        logger.error("Could not delete workflow for %s from file: %s", instance_id, e)
