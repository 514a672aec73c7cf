"""
Kubernetes API implementation of OrchestrationStore.

Talks to the API server over aiohttp using the pod's service account
token. Custom resources are cluster scoped; workloads are DaemonSets in
the operator namespace.
"""

import asyncio
import json
import logging
import ssl
from typing import Any, AsyncIterator, Dict, List, Optional

import aiohttp

from config import StoreConfig, read_token
from errors import (
    ConflictError,
    NotFoundError,
    OwnershipError,
    StoreError,
    TransientStoreError,
)
from garbage_collector import is_controlled_by
from models import API_GROUP, API_VERSION
from plugins.registry import PluginRegistry
from store import OrchestrationStore, RawWatchEvent

logger = logging.getLogger(__name__)

MERGE_PATCH_CONTENT_TYPE = "application/merge-patch+json"


def raise_for_status(status: int, body: str, what: str) -> None:
    """Map an API server response status onto the store error types."""
    if status < 400:
        return
    message = f"{what}: HTTP {status} - {body}"
    if status == 404:
        raise NotFoundError(message)
    if status == 409:
        raise ConflictError(message)
    if status == 429 or status >= 500:
        raise TransientStoreError(message)
    raise StoreError(message)


class KubernetesStore(OrchestrationStore):
    """OrchestrationStore backed by a Kubernetes API server."""

    def __init__(self, config: StoreConfig, registry: PluginRegistry):
        self.config = config
        self.registry = registry
        self._session: Optional[aiohttp.ClientSession] = None

    async def connect(self) -> None:
        """Open the HTTP session."""
        headers = {"Accept": "application/json"}
        token = read_token(self.config)
        if token:
            headers["Authorization"] = f"Bearer {token}"
        else:
            logger.warning(
                f"No service account token at {self.config.token_path}, "
                "requests will be unauthenticated"
            )

        if self.config.verify_ssl:
            ssl_context: Any = ssl.create_default_context()
            try:
                ssl_context.load_verify_locations(cafile=self.config.ca_path)
            except FileNotFoundError:
                logger.warning(
                    f"CA bundle {self.config.ca_path} not found, "
                    "using system certificates"
                )
        else:
            ssl_context = False

        self._session = aiohttp.ClientSession(
            base_url=self.config.api_server,
            headers=headers,
            connector=aiohttp.TCPConnector(ssl=ssl_context),
        )
        logger.info(f"Connected to Kubernetes API at {self.config.api_server}")

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None
            logger.info("Kubernetes API session closed")

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None:
            raise StoreError("KubernetesStore is not connected")
        return self._session

    # ==================== Paths ====================

    def _resource_path(self, kind: str, name: Optional[str] = None) -> str:
        plural = self.registry.get_kind(kind).plural
        path = f"/apis/{API_GROUP}/{API_VERSION}/{plural}"
        return f"{path}/{name}" if name else path

    def _workload_path(self, namespace: str, name: Optional[str] = None) -> str:
        path = f"/apis/apps/v1/namespaces/{namespace}/daemonsets"
        return f"{path}/{name}" if name else path

    # ==================== Requests ====================

    async def _request(
        self,
        method: str,
        path: str,
        what: str,
        body: Optional[Dict[str, Any]] = None,
        content_type: str = "application/json",
        params: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        data = json.dumps(body) if body is not None else None
        headers = {"Content-Type": content_type} if body is not None else None

        try:
            async with self.session.request(
                method,
                path,
                data=data,
                headers=headers,
                params=params,
                timeout=timeout,
            ) as response:
                text = await response.text()
                raise_for_status(response.status, text, what)
                return json.loads(text) if text else {}
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise TransientStoreError(f"{what}: {e}") from e

    async def get_resource(self, kind: str, name: str) -> Dict[str, Any]:
        obj = await self._request(
            "GET", self._resource_path(kind, name), f"get {kind} {name}"
        )
        obj.setdefault("kind", kind)
        return obj

    async def list_resources(self, kind: str) -> List[Dict[str, Any]]:
        result = await self._request("GET", self._resource_path(kind), f"list {kind}")
        items = result.get("items", [])
        for item in items:
            item.setdefault("kind", kind)
        return items

    async def replace_resource(self, kind: str, obj: Dict[str, Any]) -> Dict[str, Any]:
        name = obj["metadata"]["name"]
        return await self._request(
            "PUT", self._resource_path(kind, name), f"replace {kind} {name}", body=obj
        )

    async def patch_resource_status(
        self,
        kind: str,
        name: str,
        status: Dict[str, Any],
        resource_version: Optional[str] = None,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {"status": status}
        if resource_version:
            body["metadata"] = {"resourceVersion": resource_version}
        return await self._request(
            "PATCH",
            self._resource_path(kind, name) + "/status",
            f"patch status of {kind} {name}",
            body=body,
            content_type=MERGE_PATCH_CONTENT_TYPE,
        )

    async def get_workload(self, namespace: str, name: str) -> Dict[str, Any]:
        return await self._request(
            "GET",
            self._workload_path(namespace, name),
            f"get workload {namespace}/{name}",
        )

    async def create_workload(
        self, namespace: str, manifest: Dict[str, Any]
    ) -> Dict[str, Any]:
        name = manifest["metadata"]["name"]
        return await self._request(
            "POST",
            self._workload_path(namespace),
            f"create workload {namespace}/{name}",
            body=manifest,
        )

    async def patch_workload(
        self,
        namespace: str,
        name: str,
        patch: Dict[str, Any],
        owner_uid: Optional[str] = None,
    ) -> Dict[str, Any]:
        if owner_uid:
            # The resourceVersion precondition in the patch ties this read
            # to the write below.
            current = await self.get_workload(namespace, name)
            if not is_controlled_by(current, owner_uid):
                raise OwnershipError(
                    f"workload {namespace}/{name} is not controlled by {owner_uid}"
                )
        return await self._request(
            "PATCH",
            self._workload_path(namespace, name),
            f"patch workload {namespace}/{name}",
            body=patch,
            content_type=MERGE_PATCH_CONTENT_TYPE,
        )

    async def delete_workload(self, namespace: str, name: str) -> None:
        await self._request(
            "DELETE",
            self._workload_path(namespace, name),
            f"delete workload {namespace}/{name}",
            body={"propagationPolicy": "Background"},
        )

    # ==================== Watches ====================

    async def _watch(self, path: str, what: str) -> AsyncIterator[RawWatchEvent]:
        """
        List then watch a collection, relisting when the watch expires.

        Yields ADDED for every listed object before streaming changes.
        """
        resource_version = ""
        while True:
            if not resource_version:
                listing = await self._request("GET", path, f"list {what}")
                resource_version = listing.get("metadata", {}).get(
                    "resourceVersion", ""
                )
                for item in listing.get("items", []):
                    yield "ADDED", item

            params = {
                "watch": "true",
                "resourceVersion": resource_version,
                "allowWatchBookmarks": "true",
            }
            timeout = aiohttp.ClientTimeout(total=None, sock_read=None)
            try:
                async with self.session.get(
                    path, params=params, timeout=timeout
                ) as response:
                    if response.status == 410:
                        logger.info(f"Watch of {what} expired, relisting")
                        resource_version = ""
                        continue
                    if response.status >= 400:
                        raise_for_status(
                            response.status, await response.text(), f"watch {what}"
                        )
                    async for line in response.content:
                        if not line.strip():
                            continue
                        event = json.loads(line)
                        event_type = event.get("type")
                        obj = event.get("object", {})

                        if event_type == "ERROR":
                            if obj.get("code") == 410:
                                logger.info(f"Watch of {what} expired, relisting")
                                resource_version = ""
                                break
                            raise StoreError(
                                f"watch {what}: {obj.get('message', obj)}"
                            )

                        resource_version = obj.get("metadata", {}).get(
                            "resourceVersion", resource_version
                        )
                        if event_type == "BOOKMARK":
                            continue
                        yield event_type, obj
            except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
                raise TransientStoreError(f"watch {what}: {e}") from e

    async def watch_resources(self, kind: str) -> AsyncIterator[RawWatchEvent]:
        async for event_type, obj in self._watch(self._resource_path(kind), kind):
            obj.setdefault("kind", kind)
            yield event_type, obj

    def watch_workloads(self, namespace: str) -> AsyncIterator[RawWatchEvent]:
        return self._watch(
            self._workload_path(namespace), f"workloads in {namespace}"
        )
