"""
Garbage collection through owner references.

The engine never deletes workloads itself: every workload carries a
controller owner reference to its resource, and the cluster's garbage
collector removes it once the owner is gone. GarbageCollector reproduces
that behaviour for the in-memory store.
"""

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Tuple

from models import OwnerReference

if TYPE_CHECKING:
    from store import InMemoryStore

logger = logging.getLogger(__name__)

FOREGROUND_DELETION_FINALIZER = "foregroundDeletion"


def controller_of(obj: Dict[str, Any]) -> Optional[OwnerReference]:
    """Return the controlling owner reference of an object, if any."""
    for ref in obj.get("metadata", {}).get("ownerReferences") or []:
        if ref.get("controller"):
            return OwnerReference.from_dict(ref)
    return None


def is_controlled_by(obj: Dict[str, Any], owner_uid: str) -> bool:
    """Check whether an object's controlling owner has the given uid."""
    owner = controller_of(obj)
    return owner is not None and owner.uid == owner_uid


class GarbageCollector:
    """
    Cascading deletion for the in-memory store.

    collect() is run by the store after every deletion. It finishes
    foreground deletions (dependents first, then the owner) and removes
    workloads whose owner no longer exists.
    """

    def __init__(self, store: "InMemoryStore"):
        self.store = store

    def dependents_of(self, owner_uid: str) -> List[Tuple[str, str]]:
        """(namespace, name) of every workload owned by owner_uid."""
        return [
            key
            for key, obj in self.store.workload_objects()
            if any(
                ref.get("uid") == owner_uid
                for ref in obj.get("metadata", {}).get("ownerReferences") or []
            )
        ]

    async def collect(self) -> int:
        """
        Run one collection cycle.

        Returns:
            Number of objects deleted
        """
        deleted = 0

        for key, obj in self.store.resource_objects():
            metadata = obj["metadata"]
            finalizers = metadata.get("finalizers") or []
            if (
                metadata.get("deletionTimestamp")
                and FOREGROUND_DELETION_FINALIZER in finalizers
            ):
                for namespace, name in self.dependents_of(metadata["uid"]):
                    await self.store.delete_workload(namespace, name)
                    deleted += 1
                self.store.release_finalizer(
                    key[0], key[1], FOREGROUND_DELETION_FINALIZER
                )
                logger.info(f"Finished foreground deletion of {key[0]}/{key[1]}")

        live_uids = {obj["metadata"]["uid"] for _, obj in self.store.resource_objects()}
        for (namespace, name), obj in self.store.workload_objects():
            owners = obj.get("metadata", {}).get("ownerReferences") or []
            if owners and not any(ref.get("uid") in live_uids for ref in owners):
                await self.store.delete_workload(namespace, name)
                logger.info(f"Collected orphaned workload {namespace}/{name}")
                deleted += 1

        return deleted
