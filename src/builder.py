"""
Workload builder - renders the DaemonSet a resource should have.

build() is a pure function of its inputs: equal specs and owners produce
equal workloads, which is what lets the diff engine detect no-ops.
"""

import copy
import json
from typing import Any, Dict, List

from models import DesiredWorkload, NormalizedSpec, OwnerReference
from plugins.base import DevicePluginKind

SECURITY_CONTEXT = {
    "readOnlyRootFilesystem": True,
    "allowPrivilegeEscalation": False,
    "seLinuxOptions": {"type": "container_device_plugin_t"},
}

INIT_SECURITY_CONTEXT = {
    "readOnlyRootFilesystem": True,
    "seLinuxOptions": {"type": "container_device_plugin_init_t"},
}


def _volume(entry: Dict[str, Any]) -> Dict[str, Any]:
    host_path: Dict[str, Any] = {"path": entry["hostPath"]}
    if entry.get("type"):
        host_path["type"] = entry["type"]
    return {"name": entry["name"], "hostPath": host_path}


def _volume_mount(entry: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "name": entry["name"],
        "mountPath": entry["mountPath"],
        "readOnly": entry.get("readOnly", True),
    }


def serialize(workload: DesiredWorkload) -> str:
    """Canonical JSON form of a workload manifest."""
    return json.dumps(workload.to_manifest(), sort_keys=True, separators=(",", ":"))


class WorkloadBuilder:
    """Builds DesiredWorkload values for one device plugin kind."""

    def __init__(self, plugin: DevicePluginKind, namespace: str):
        self.plugin = plugin
        self.namespace = namespace

    def build(self, spec: NormalizedSpec, owner: OwnerReference) -> DesiredWorkload:
        """
        Build the desired DaemonSet for a normalized spec.

        Args:
            spec: Output of SpecNormalizer.normalize()
            owner: Owner reference of the originating resource

        Returns:
            The desired workload
        """
        name = self.plugin.workload_name(owner.name)
        labels = {"app": name}

        host_volumes = self.plugin.host_volumes()
        container = {
            "name": self.plugin.container_name,
            "image": spec.image,
            "imagePullPolicy": "IfNotPresent",
            "args": self.plugin.build_args(spec),
            "env": [
                {
                    "name": "NODE_NAME",
                    "valueFrom": {"fieldRef": {"fieldPath": "spec.nodeName"}},
                }
            ],
            "securityContext": copy.deepcopy(SECURITY_CONTEXT),
            "terminationMessagePath": "/tmp/termination-log",
            "volumeMounts": [_volume_mount(v) for v in host_volumes],
        }

        init_containers: List[Dict[str, Any]] = []
        volumes = [_volume(v) for v in host_volumes]
        if spec.init_image:
            init_volumes = self.plugin.init_host_volumes()
            init_containers.append(
                {
                    "name": self.plugin.init_container_name,
                    "image": spec.init_image,
                    "imagePullPolicy": "IfNotPresent",
                    "securityContext": copy.deepcopy(INIT_SECURITY_CONTEXT),
                    "volumeMounts": [_volume_mount(v) for v in init_volumes],
                }
            )
            volumes.extend(_volume(v) for v in init_volumes)

        return DesiredWorkload(
            name=name,
            namespace=self.namespace,
            labels=labels,
            containers=[container],
            init_containers=init_containers,
            volumes=volumes,
            node_selector=dict(spec.node_selector),
            tolerations=copy.deepcopy(spec.tolerations),
            owner=owner,
        )
