"""
Data model for device plugin resources and their workloads.

Resources and workloads travel through the store as plain dicts shaped like
Kubernetes objects. The dataclasses here give the engine a typed view of
them at the seams where it needs one.
"""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, NamedTuple, Optional

API_GROUP = "deviceplugin.intel.com"
API_VERSION = "v1"
GROUP_VERSION = f"{API_GROUP}/{API_VERSION}"

WORKLOAD_API_VERSION = "apps/v1"
WORKLOAD_KIND = "DaemonSet"

SCHEMA_GENERATION_ANNOTATION = f"{API_GROUP}/schema-generation"

DEFAULT_NODE_SELECTOR = {"kubernetes.io/arch": "amd64"}

DEFAULT_NAMESPACE = "inteldeviceplugins-system"


def utc_timestamp() -> str:
    """Return the current time in the RFC 3339 form used by Kubernetes."""
    return datetime.utcnow().replace(microsecond=0).isoformat() + "Z"


class AllocationPolicy(Enum):
    """Preferred device allocation policy of the plugin."""

    NONE = "none"
    BALANCED = "balanced"
    PACKED = "packed"


class ReconcileState(Enum):
    """Lifecycle state of a resource inside the controller."""

    PENDING = "Pending"
    RECONCILING = "Reconciling"
    SYNCED = "Synced"
    DELETING = "Deleting"
    GONE = "Gone"


class ResourceKey(NamedTuple):
    """Identity of a resource: its custom resource kind and name."""

    kind: str
    name: str

    def __str__(self) -> str:
        return f"{self.kind}/{self.name}"


@dataclass
class ResourceSpec:
    """User-declared desired state of a device plugin."""

    image: str = ""
    init_image: str = ""
    node_selector: Dict[str, str] = field(default_factory=dict)
    log_level: int = 0
    shared_dev_num: int = 1
    allocation_policy: str = AllocationPolicy.NONE.value
    enable_monitoring: bool = False
    resource_manager: bool = False
    tolerations: List[Dict[str, Any]] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResourceSpec":
        """Parse a camelCase spec dict; missing fields take their defaults."""
        data = data or {}
        return cls(
            image=data.get("image") or "",
            init_image=data.get("initImage") or "",
            node_selector=dict(data.get("nodeSelector") or {}),
            log_level=data.get("logLevel", 0),
            shared_dev_num=data.get("sharedDevNum", 1),
            allocation_policy=data.get("allocationPolicy")
            or AllocationPolicy.NONE.value,
            enable_monitoring=bool(data.get("enableMonitoring", False)),
            resource_manager=bool(data.get("resourceManager", False)),
            tolerations=copy.deepcopy(data.get("tolerations") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Serialize to the camelCase form stored on the resource."""
        data: Dict[str, Any] = {
            "image": self.image,
            "logLevel": self.log_level,
            "sharedDevNum": self.shared_dev_num,
            "allocationPolicy": self.allocation_policy,
        }
        if self.init_image:
            data["initImage"] = self.init_image
        if self.node_selector:
            data["nodeSelector"] = dict(self.node_selector)
        if self.enable_monitoring:
            data["enableMonitoring"] = True
        if self.resource_manager:
            data["resourceManager"] = True
        if self.tolerations:
            data["tolerations"] = copy.deepcopy(self.tolerations)
        return data


@dataclass
class NormalizedSpec(ResourceSpec):
    """A ResourceSpec with defaults applied; node_selector is never empty."""


@dataclass
class Condition:
    """A status condition, shaped like metav1.Condition."""

    type: str
    status: str
    reason: str
    message: str = ""
    observed_generation: int = 0
    last_transition_time: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Condition":
        return cls(
            type=data["type"],
            status=data.get("status", "Unknown"),
            reason=data.get("reason", ""),
            message=data.get("message", ""),
            observed_generation=data.get("observedGeneration", 0),
            last_transition_time=data.get("lastTransitionTime", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.type,
            "status": self.status,
            "reason": self.reason,
            "message": self.message,
            "observedGeneration": self.observed_generation,
            "lastTransitionTime": self.last_transition_time,
        }


@dataclass
class WorkloadRef:
    """Reference to the workload controlled by a resource."""

    name: str = ""
    namespace: str = ""
    uid: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "WorkloadRef":
        data = data or {}
        return cls(
            name=data.get("name", ""),
            namespace=data.get("namespace", ""),
            uid=data.get("uid", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": WORKLOAD_API_VERSION,
            "kind": WORKLOAD_KIND,
            "name": self.name,
            "namespace": self.namespace,
            "uid": self.uid,
        }


@dataclass
class ResourceStatus:
    """Observed state attached to a resource."""

    controlled_workload_ref: WorkloadRef = field(default_factory=WorkloadRef)
    conditions: List[Condition] = field(default_factory=list)
    desired_number_scheduled: int = 0
    number_ready: int = 0

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ResourceStatus":
        data = data or {}
        return cls(
            controlled_workload_ref=WorkloadRef.from_dict(
                data.get("controlledWorkloadRef")
            ),
            conditions=[Condition.from_dict(c) for c in data.get("conditions", [])],
            desired_number_scheduled=data.get("desiredNumberScheduled", 0),
            number_ready=data.get("numberReady", 0),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "controlledWorkloadRef": self.controlled_workload_ref.to_dict(),
            "conditions": [c.to_dict() for c in self.conditions],
            "desiredNumberScheduled": self.desired_number_scheduled,
            "numberReady": self.number_ready,
        }

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        for condition in self.conditions:
            if condition.type == condition_type:
                return condition
        return None


@dataclass(frozen=True)
class OwnerReference:
    """Ownership link recorded on a workload, used for cascading deletion."""

    api_version: str
    kind: str
    name: str
    uid: str
    controller: bool = True
    block_owner_deletion: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OwnerReference":
        return cls(
            api_version=data.get("apiVersion", ""),
            kind=data.get("kind", ""),
            name=data.get("name", ""),
            uid=data.get("uid", ""),
            controller=bool(data.get("controller", False)),
            block_owner_deletion=bool(data.get("blockOwnerDeletion", False)),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "apiVersion": self.api_version,
            "kind": self.kind,
            "name": self.name,
            "uid": self.uid,
            "controller": self.controller,
            "blockOwnerDeletion": self.block_owner_deletion,
        }


@dataclass
class DevicePluginResource:
    """Typed snapshot of a device plugin custom resource."""

    kind: str
    name: str
    uid: str
    spec: ResourceSpec
    status: ResourceStatus = field(default_factory=ResourceStatus)
    generation: int = 1
    resource_version: str = ""
    annotations: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[str] = None

    @classmethod
    def from_object(cls, obj: Dict[str, Any]) -> "DevicePluginResource":
        metadata = obj.get("metadata", {})
        return cls(
            kind=obj.get("kind", ""),
            name=metadata.get("name", ""),
            uid=metadata.get("uid", ""),
            spec=ResourceSpec.from_dict(obj.get("spec")),
            status=ResourceStatus.from_dict(obj.get("status")),
            generation=metadata.get("generation", 1),
            resource_version=metadata.get("resourceVersion", ""),
            annotations=dict(metadata.get("annotations") or {}),
            finalizers=list(metadata.get("finalizers") or []),
            deletion_timestamp=metadata.get("deletionTimestamp"),
        )

    @property
    def key(self) -> ResourceKey:
        return ResourceKey(self.kind, self.name)

    @property
    def is_deleting(self) -> bool:
        return self.deletion_timestamp is not None

    def owner_reference(self) -> OwnerReference:
        """Build the owner reference that workloads of this resource carry."""
        return OwnerReference(
            api_version=GROUP_VERSION,
            kind=self.kind,
            name=self.name,
            uid=self.uid,
        )


@dataclass
class DesiredWorkload:
    """The computed DaemonSet a resource should have. Never persisted as-is."""

    name: str
    namespace: str
    labels: Dict[str, str]
    containers: List[Dict[str, Any]]
    init_containers: List[Dict[str, Any]]
    volumes: List[Dict[str, Any]]
    node_selector: Dict[str, str]
    tolerations: List[Dict[str, Any]]
    owner: OwnerReference

    @property
    def image(self) -> str:
        return self.containers[0]["image"]

    @property
    def args(self) -> List[str]:
        return list(self.containers[0].get("args", []))

    @property
    def init_images(self) -> List[str]:
        return [c["image"] for c in self.init_containers]

    def pod_spec(self) -> Dict[str, Any]:
        """Pod template spec of the workload."""
        return {
            "containers": copy.deepcopy(self.containers),
            "initContainers": copy.deepcopy(self.init_containers),
            "volumes": copy.deepcopy(self.volumes),
            "nodeSelector": dict(self.node_selector),
            "tolerations": copy.deepcopy(self.tolerations),
        }

    def to_manifest(self) -> Dict[str, Any]:
        """Render the full DaemonSet manifest."""
        return {
            "apiVersion": WORKLOAD_API_VERSION,
            "kind": WORKLOAD_KIND,
            "metadata": {
                "name": self.name,
                "namespace": self.namespace,
                "labels": dict(self.labels),
                "ownerReferences": [self.owner.to_dict()],
            },
            "spec": {
                "selector": {"matchLabels": dict(self.labels)},
                "template": {
                    "metadata": {"labels": dict(self.labels)},
                    "spec": self.pod_spec(),
                },
            },
        }


class ObservedWorkload:
    """Read-only view over a live DaemonSet object from the store."""

    def __init__(self, obj: Dict[str, Any]):
        self.raw = obj

    @property
    def metadata(self) -> Dict[str, Any]:
        return self.raw.get("metadata", {})

    @property
    def name(self) -> str:
        return self.metadata.get("name", "")

    @property
    def namespace(self) -> str:
        return self.metadata.get("namespace", "")

    @property
    def uid(self) -> str:
        return self.metadata.get("uid", "")

    @property
    def resource_version(self) -> str:
        return self.metadata.get("resourceVersion", "")

    @property
    def owner_references(self) -> List[OwnerReference]:
        return [
            OwnerReference.from_dict(ref)
            for ref in self.metadata.get("ownerReferences") or []
        ]

    @property
    def pod_spec(self) -> Dict[str, Any]:
        return self.raw.get("spec", {}).get("template", {}).get("spec", {})

    @property
    def containers(self) -> List[Dict[str, Any]]:
        return self.pod_spec.get("containers") or []

    @property
    def image(self) -> str:
        containers = self.containers
        return containers[0].get("image", "") if containers else ""

    @property
    def args(self) -> List[str]:
        containers = self.containers
        return list(containers[0].get("args") or []) if containers else []

    @property
    def init_containers(self) -> List[Dict[str, Any]]:
        return self.pod_spec.get("initContainers") or []

    @property
    def init_images(self) -> List[str]:
        return [c.get("image", "") for c in self.init_containers]

    @property
    def volumes(self) -> List[Dict[str, Any]]:
        return self.pod_spec.get("volumes") or []

    @property
    def node_selector(self) -> Dict[str, str]:
        return dict(self.pod_spec.get("nodeSelector") or {})

    @property
    def tolerations(self) -> List[Dict[str, Any]]:
        return self.pod_spec.get("tolerations") or []

    @property
    def desired_number_scheduled(self) -> int:
        return self.raw.get("status", {}).get("desiredNumberScheduled", 0)

    @property
    def number_ready(self) -> int:
        return self.raw.get("status", {}).get("numberReady", 0)

    def ref(self) -> WorkloadRef:
        return WorkloadRef(name=self.name, namespace=self.namespace, uid=self.uid)
