"""
Orchestration Store - the engine's only view of the cluster.

OrchestrationStore is the handle every component receives in its
constructor; nothing in the engine talks to the cluster any other way.
InMemoryStore is a self-contained implementation with the semantics the
engine relies on (optimistic concurrency, watches, owner-reference
cascading deletion) and is used for tests and local sandboxes.
KubernetesStore in kube.py talks to a real API server.
"""

import asyncio
import copy
import logging
import uuid
from abc import ABC, abstractmethod
from collections import defaultdict
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

from errors import ConflictError, NotFoundError, OwnershipError, StoreError
from garbage_collector import (
    FOREGROUND_DELETION_FINALIZER,
    GarbageCollector,
    is_controlled_by,
)
from models import utc_timestamp

logger = logging.getLogger(__name__)

# (event type, object) where event type is ADDED, MODIFIED or DELETED
RawWatchEvent = Tuple[str, Dict[str, Any]]


def apply_merge_patch(target: Any, patch: Any) -> Any:
    """
    Apply a JSON merge patch (RFC 7386) and return the result.

    Objects merge recursively, a null value deletes a key, and any other
    value (lists included) replaces the target wholesale.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = apply_merge_patch(result.get(key), value)
    return result


class OrchestrationStore(ABC):
    """
    Abstract store of device plugin resources and their workloads.

    Custom resources are cluster scoped and addressed by (kind, name);
    workloads are namespaced and addressed by (namespace, name). Writes
    that carry a resourceVersion fail with ConflictError when the object
    has changed since it was read.
    """

    @abstractmethod
    async def get_resource(self, kind: str, name: str) -> Dict[str, Any]:
        """
        Read a resource.

        Raises:
            NotFoundError: If the resource does not exist
        """
        pass

    @abstractmethod
    async def list_resources(self, kind: str) -> List[Dict[str, Any]]:
        """List every resource of a kind."""
        pass

    @abstractmethod
    async def replace_resource(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Replace a resource's metadata and spec (status is left alone).

        obj must carry the resourceVersion it was read at.

        Raises:
            ConflictError: If the resource changed since it was read
        """
        pass

    @abstractmethod
    async def patch_resource_status(
        self,
        kind: str,
        name: str,
        status: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Replace the status subresource of a resource.

        Raises:
            NotFoundError: If the resource does not exist
            ConflictError: If resource_version is stale
        """
        pass

    @abstractmethod
    async def get_workload(self, namespace: str, name: str) -> Dict[str, Any]:
        """
        Read a workload.

        Raises:
            NotFoundError: If the workload does not exist
        """
        pass

    @abstractmethod
    async def create_workload(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> Dict[str, Any]:
        """
        Create a workload.

        Raises:
            ConflictError: If a workload with that name already exists
        """
        pass

    @abstractmethod
    async def patch_workload(
        self,
        namespace: str,
        name: str,
        patch: Dict[str, Any],
        owner_uid: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Apply a JSON merge patch to a workload.

        A resourceVersion inside patch['metadata'] acts as a precondition.
        When owner_uid is given the workload must still be controlled by
        that owner.

        Raises:
            NotFoundError: If the workload does not exist
            ConflictError: If the precondition fails
            OwnershipError: If the workload is controlled by someone else
        """
        pass

    @abstractmethod
    async def delete_workload(self, namespace: str, name: str) -> None:
        """Delete a workload. Raises NotFoundError if it does not exist."""
        pass

    @abstractmethod
    def watch_resources(self, kind: str) -> AsyncIterator[RawWatchEvent]:
        """Stream resource events; starts with ADDED for existing objects."""
        pass

    @abstractmethod
    def watch_workloads(self, namespace: str) -> AsyncIterator[RawWatchEvent]:
        """Stream workload events; starts with ADDED for existing objects."""
        pass

    async def close(self) -> None:
        """Release connections and end open watches."""
        pass


class InMemoryStore(OrchestrationStore):
    """
    In-process implementation of OrchestrationStore.

    Besides the engine-facing operations it offers the user-facing ones a
    client such as kubectl would use (create_resource, update_resource,
    delete_resource), records every engine write in ``writes`` and can be
    told to fail upcoming calls with fail_next().
    """

    def __init__(self):
        self._resources: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._workloads: Dict[Tuple[str, str], Dict[str, Any]] = {}
        self._resource_version = 0
        self._resource_watchers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._workload_watchers: Dict[str, List[asyncio.Queue]] = defaultdict(list)
        self._failures: Dict[str, List[Exception]] = defaultdict(list)
        self._closed = False
        self.gc = GarbageCollector(self)

        # Journal of engine writes as (operation, object name)
        self.writes: List[Tuple[str, str]] = []

    # ==================== Test Hooks ====================

    def fail_next(self, operation: str, error: Exception, times: int = 1) -> None:
        """Make the next ``times`` calls of ``operation`` raise ``error``."""
        self._failures[operation].extend([error] * times)

    def _maybe_fail(self, operation: str) -> None:
        failures = self._failures.get(operation)
        if failures:
            raise failures.pop(0)

    def writes_for(self, operation: str) -> List[str]:
        """Names of objects written by a given engine operation."""
        return [name for op, name in self.writes if op == operation]

    def resource_objects(self) -> List[Tuple[Tuple[str, str], Dict[str, Any]]]:
        return list(self._resources.items())

    def workload_objects(self) -> List[Tuple[Tuple[str, str], Dict[str, Any]]]:
        return list(self._workloads.items())

    # ==================== Internals ====================

    def _next_resource_version(self) -> str:
        self._resource_version += 1
        return str(self._resource_version)

    def _notify(
        self, watchers: List[asyncio.Queue], event_type: str, obj: Dict[str, Any]
    ) -> None:
        for queue in list(watchers):
            queue.put_nowait((event_type, copy.deepcopy(obj)))

    def _get_resource_obj(self, kind: str, name: str) -> Dict[str, Any]:
        obj = self._resources.get((kind, name))
        if obj is None:
            raise NotFoundError(f"{kind} {name} not found")
        return obj

    def _get_workload_obj(self, namespace: str, name: str) -> Dict[str, Any]:
        obj = self._workloads.get((namespace, name))
        if obj is None:
            raise NotFoundError(f"workload {namespace}/{name} not found")
        return obj

    @staticmethod
    def _check_version(current: Dict[str, Any], resource_version: Optional[str]):
        if resource_version and current["metadata"]["resourceVersion"] != str(
            resource_version
        ):
            raise ConflictError(
                f"{current['metadata']['name']} has been modified "
                f"(resourceVersion {resource_version} is stale)"
            )

    def _remove_resource(self, kind: str, name: str) -> None:
        obj = self._resources.pop((kind, name))
        self._notify(self._resource_watchers[kind], "DELETED", obj)
        logger.info(f"Removed {kind} {name}")

    def release_finalizer(self, kind: str, name: str, finalizer: str) -> None:
        """
        Drop a finalizer without running garbage collection.

        Removes the object once it is being deleted and no finalizers remain.
        """
        obj = self._get_resource_obj(kind, name)
        metadata = obj["metadata"]
        finalizers = [f for f in metadata.get("finalizers", []) if f != finalizer]
        metadata["finalizers"] = finalizers

        if metadata.get("deletionTimestamp") and not finalizers:
            self._remove_resource(kind, name)
            return

        metadata["resourceVersion"] = self._next_resource_version()
        self._notify(self._resource_watchers[kind], "MODIFIED", obj)

    def _update_resource(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        metadata = obj.get("metadata", {})
        current = self._get_resource_obj(kind, metadata.get("name", ""))
        self._check_version(current, metadata.get("resourceVersion"))

        new_spec = copy.deepcopy(obj.get("spec", {}))
        if new_spec != current.get("spec"):
            current["metadata"]["generation"] += 1
        current["spec"] = new_spec
        for field_name in ("annotations", "labels"):
            if field_name in metadata:
                current["metadata"][field_name] = dict(metadata[field_name] or {})
        if "finalizers" in metadata:
            current["metadata"]["finalizers"] = list(metadata["finalizers"] or [])
        current["metadata"]["resourceVersion"] = self._next_resource_version()

        self._notify(self._resource_watchers[kind], "MODIFIED", current)
        return copy.deepcopy(current)

    # ==================== User-facing Operations ====================

    async def create_resource(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Create a resource, as a user would."""
        name = obj["metadata"]["name"]
        if (kind, name) in self._resources:
            raise ConflictError(f"{kind} {name} already exists")

        created = copy.deepcopy(obj)
        created["kind"] = kind
        metadata = created["metadata"]
        metadata["uid"] = str(uuid.uuid4())
        metadata["generation"] = 1
        metadata["resourceVersion"] = self._next_resource_version()
        metadata["creationTimestamp"] = utc_timestamp()
        metadata.setdefault("annotations", {})
        metadata.setdefault("finalizers", [])
        created.setdefault("spec", {})
        created.setdefault("status", {})

        self._resources[(kind, name)] = created
        self._notify(self._resource_watchers[kind], "ADDED", created)
        logger.info(f"Created {kind} {name}")
        return copy.deepcopy(created)

    async def update_resource(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        """Update a resource's spec and metadata, as a user would."""
        return self._update_resource(kind, obj)

    async def delete_resource(
        self, kind: str, name: str, propagation: str = "Background"
    ) -> None:
        """
        Delete a resource, as a user would.

        With finalizers present the resource only gets a deletion timestamp.
        Foreground propagation adds the foregroundDeletion finalizer so the
        resource stays visible until its workloads are gone.
        """
        obj = self._get_resource_obj(kind, name)
        metadata = obj["metadata"]

        if propagation == "Foreground":
            finalizers = metadata.setdefault("finalizers", [])
            if FOREGROUND_DELETION_FINALIZER not in finalizers:
                finalizers.append(FOREGROUND_DELETION_FINALIZER)

        if metadata.get("finalizers"):
            if not metadata.get("deletionTimestamp"):
                metadata["deletionTimestamp"] = utc_timestamp()
                metadata["resourceVersion"] = self._next_resource_version()
                self._notify(self._resource_watchers[kind], "MODIFIED", obj)
        else:
            self._remove_resource(kind, name)

        await self.gc.collect()

    async def remove_finalizer(self, kind: str, name: str, finalizer: str) -> None:
        """Remove a finalizer and let garbage collection run."""
        self.release_finalizer(kind, name, finalizer)
        await self.gc.collect()

    async def set_workload_status(
        self, namespace: str, name: str, status: Dict[str, Any]
    ) -> Dict[str, Any]:
        """Set a workload's status, as the DaemonSet controller would."""
        obj = self._get_workload_obj(namespace, name)
        obj["status"] = copy.deepcopy(status)
        obj["metadata"]["resourceVersion"] = self._next_resource_version()
        self._notify(self._workload_watchers[namespace], "MODIFIED", obj)
        return copy.deepcopy(obj)

    # ==================== Engine-facing Operations ====================

    async def get_resource(self, kind: str, name: str) -> Dict[str, Any]:
        self._maybe_fail("get_resource")
        return copy.deepcopy(self._get_resource_obj(kind, name))

    async def list_resources(self, kind: str) -> List[Dict[str, Any]]:
        self._maybe_fail("list_resources")
        return [
            copy.deepcopy(obj) for (k, _), obj in self._resources.items() if k == kind
        ]

    async def replace_resource(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        self._maybe_fail("replace_resource")
        if not obj.get("metadata", {}).get("resourceVersion"):
            raise StoreError("replace_resource requires metadata.resourceVersion")
        updated = self._update_resource(kind, obj)
        self.writes.append(("replace_resource", updated["metadata"]["name"]))
        return updated

    async def patch_resource_status(
        self,
        kind: str,
        name: str,
        status: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._maybe_fail("patch_resource_status")
        obj = self._get_resource_obj(kind, name)
        self._check_version(obj, resource_version)

        obj["status"] = copy.deepcopy(status)
        obj["metadata"]["resourceVersion"] = self._next_resource_version()
        self.writes.append(("patch_resource_status", name))
        self._notify(self._resource_watchers[kind], "MODIFIED", obj)
        return copy.deepcopy(obj)

    async def get_workload(self, namespace: str, name: str) -> Dict[str, Any]:
        self._maybe_fail("get_workload")
        return copy.deepcopy(self._get_workload_obj(namespace, name))

    async def create_workload(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> Dict[str, Any]:
        self._maybe_fail("create_workload")
        name = manifest["metadata"]["name"]
        if (namespace, name) in self._workloads:
            raise ConflictError(f"workload {namespace}/{name} already exists")

        created = copy.deepcopy(manifest)
        metadata = created["metadata"]
        metadata["namespace"] = namespace
        metadata["uid"] = str(uuid.uuid4())
        metadata["generation"] = 1
        metadata["resourceVersion"] = self._next_resource_version()
        metadata["creationTimestamp"] = utc_timestamp()
        created["status"] = {"desiredNumberScheduled": 0, "numberReady": 0}

        self._workloads[(namespace, name)] = created
        self.writes.append(("create_workload", name))
        self._notify(self._workload_watchers[namespace], "ADDED", created)
        return copy.deepcopy(created)

    async def patch_workload(
        self,
        namespace: str,
        name: str,
        patch: Dict[str, Any],
        owner_uid: Optional[str] = None,
    ) -> Dict[str, Any]:
        self._maybe_fail("patch_workload")
        obj = self._get_workload_obj(namespace, name)
        self._check_version(obj, patch.get("metadata", {}).get("resourceVersion"))
        if owner_uid and not is_controlled_by(obj, owner_uid):
            raise OwnershipError(
                f"workload {namespace}/{name} is not controlled by {owner_uid}"
            )

        body = copy.deepcopy(patch)
        body.get("metadata", {}).pop("resourceVersion", None)
        patched = apply_merge_patch(obj, body)
        if patched.get("spec") != obj.get("spec"):
            patched["metadata"]["generation"] = obj["metadata"]["generation"] + 1
        patched["metadata"]["resourceVersion"] = self._next_resource_version()

        self._workloads[(namespace, name)] = patched
        self.writes.append(("patch_workload", name))
        self._notify(self._workload_watchers[namespace], "MODIFIED", patched)
        return copy.deepcopy(patched)

    async def delete_workload(self, namespace: str, name: str) -> None:
        self._maybe_fail("delete_workload")
        obj = self._get_workload_obj(namespace, name)
        del self._workloads[(namespace, name)]
        self._notify(self._workload_watchers[namespace], "DELETED", obj)
        logger.info(f"Deleted workload {namespace}/{name}")

    async def _watch(
        self,
        watchers: List[asyncio.Queue],
        existing: List[Dict[str, Any]],
    ) -> AsyncIterator[RawWatchEvent]:
        if self._closed:
            return
        queue: asyncio.Queue = asyncio.Queue()
        watchers.append(queue)
        try:
            for obj in existing:
                yield "ADDED", copy.deepcopy(obj)
            while True:
                item = await queue.get()
                if item is None:
                    return
                yield item
        finally:
            if queue in watchers:
                watchers.remove(queue)

    def watch_resources(self, kind: str) -> AsyncIterator[RawWatchEvent]:
        existing = [obj for (k, _), obj in self._resources.items() if k == kind]
        return self._watch(self._resource_watchers[kind], existing)

    def watch_workloads(self, namespace: str) -> AsyncIterator[RawWatchEvent]:
        existing = [obj for (ns, _), obj in self._workloads.items() if ns == namespace]
        return self._watch(self._workload_watchers[namespace], existing)

    async def close(self) -> None:
        self._closed = True
        for watchers in list(self._resource_watchers.values()) + list(
            self._workload_watchers.values()
        ):
            for queue in watchers:
                queue.put_nowait(None)
