"""Keeps the three copies of an instance record in step.

Each instance is stored three times: under ``<ContainerId>_instance``, inside
its owner's ``<User>_instances`` list, and inside the global ``instances``
list. Nothing in the storage layer ties these together, so every mutation
goes through :class:`InstanceSynchronizer`, which rewrites all three in a
fixed order: instance key, user list, global list.

List entries are matched on ``Id``. ``ContainerId`` is not stable; edit,
redeploy and reinstall all move the record to a new key.

There is no version token. Two writers racing on the same instance end
with whichever wrote last, per key.
"""

import logging

from errors import StorageError
from store import GLOBAL_INSTANCES_KEY, instance_key, supports_batch, user_instances_key

logger = logging.getLogger(__name__)

LEGACY_SUSPEND_FIELDS = ("suspended-flagg",)


def replace_in_list(items: list | None, record: dict) -> list:
    """Replace the entry whose Id matches ``record``, or append it."""
    items = list(items or [])
    for index, entry in enumerate(items):
        if isinstance(entry, dict) and entry.get("Id") == record["Id"]:
            items[index] = record
            return items
    items.append(record)
    return items


def remove_from_list(items: list | None, record_id: str) -> list:
    return [entry for entry in (items or [])
            if not (isinstance(entry, dict) and entry.get("Id") == record_id)]


def strip_legacy_fields(record: dict) -> dict:
    for field in LEGACY_SUSPEND_FIELDS:
        record.pop(field, None)
    return record


class InstanceSynchronizer:
    def __init__(self, store):
        self.store = store

    def sync(self, old_key_id: str, record: dict) -> dict:
        """Write ``record`` to all three locations and return it.

        ``old_key_id`` is the ContainerId the record was stored under before
        the mutation. If it differs from ``record["ContainerId"]`` the old
        key is removed.
        """
        if not record.get("Id") or not record.get("ContainerId"):
            raise StorageError("Instance record needs both Id and ContainerId")

        try:
            self._write_instance_key(old_key_id, record)
        except StorageError as e:
            logger.warning("Instance write for %s failed (%s), retrying once", record["Id"], e)
            self._write_instance_key(old_key_id, record)

        owner = record.get("User")
        try:
            if owner:
                key = user_instances_key(owner)
                self.store.set(key, replace_in_list(self.store.get(key), record))
            self.store.set(GLOBAL_INSTANCES_KEY,
                           replace_in_list(self.store.get(GLOBAL_INSTANCES_KEY), record))
        except StorageError:
            logger.error("Instance %s only partially synchronised; lists may be stale",
                         record["Id"])
            raise
        return record

    def create(self, record: dict) -> dict:
        return self.sync(record["ContainerId"], record)

    def remove(self, record: dict) -> None:
        """Delete the instance key and drop the record from both lists."""
        self.store.delete(instance_key(record["ContainerId"]))
        owner = record.get("User")
        try:
            if owner:
                key = user_instances_key(owner)
                self.store.set(key, remove_from_list(self.store.get(key), record["Id"]))
            self.store.set(GLOBAL_INSTANCES_KEY,
                           remove_from_list(self.store.get(GLOBAL_INSTANCES_KEY), record["Id"]))
        except StorageError:
            logger.error("Instance %s removed from its key but lists may still hold it",
                         record["Id"])
            raise

    def _write_instance_key(self, old_key_id: str, record: dict) -> None:
        new_key = instance_key(record["ContainerId"])
        old_key = instance_key(old_key_id) if old_key_id else new_key
        if old_key == new_key:
            self.store.set(new_key, record)
            return

        if supports_batch(self.store):
            self.store.batch().set(new_key, record).delete(old_key).write()
        else:
            # New key first: a crash in between leaves a duplicate, never a loss.
            self.store.set(new_key, record)
            self.store.delete(old_key)
        logger.info("Instance %s relocated from %s to %s", record["Id"], old_key, new_key)
