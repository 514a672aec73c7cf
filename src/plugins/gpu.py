"""
GPU device plugin kind.

Maps GpuDevicePlugin resources onto the intel-gpu-plugin DaemonSet.
"""

from typing import Any, Dict, List, Optional

from models import AllocationPolicy, ResourceSpec
from plugins.base import DevicePluginKind

GPU_SPEC_SCHEMA: Dict[str, Any] = {
    "type": "object",
    "required": ["image"],
    "properties": {
        "image": {"type": "string", "minLength": 1},
        "initImage": {"type": "string"},
        "nodeSelector": {
            "type": "object",
            "additionalProperties": {"type": "string"},
        },
        "logLevel": {"type": "integer", "minimum": 0},
        "sharedDevNum": {"type": "integer", "minimum": 1},
        "allocationPolicy": {
            "type": "string",
            "enum": [policy.value for policy in AllocationPolicy],
        },
        "enableMonitoring": {"type": "boolean"},
        "resourceManager": {"type": "boolean"},
        "tolerations": {"type": "array", "items": {"type": "object"}},
    },
}


class GpuDevicePluginKind(DevicePluginKind):
    """The GpuDevicePlugin resource kind."""

    @property
    def name(self) -> str:
        return "gpu"

    @property
    def kind(self) -> str:
        return "GpuDevicePlugin"

    @property
    def plural(self) -> str:
        return "gpudeviceplugins"

    @property
    def schema(self) -> Dict[str, Any]:
        return GPU_SPEC_SCHEMA

    def build_args(self, spec: ResourceSpec) -> List[str]:
        args = ["-v", str(spec.log_level)]
        if spec.enable_monitoring:
            args.append("-enable-monitoring")
        if spec.resource_manager:
            args.append("-resource-manager")
        args.extend(["-shared-dev-num", str(spec.shared_dev_num)])
        args.extend(["-allocation-policy", spec.allocation_policy])
        return args

    def host_volumes(self) -> List[Dict[str, Any]]:
        return [
            {"name": "devfs", "hostPath": "/dev/dri", "mountPath": "/dev/dri"},
            {
                "name": "sysfs",
                "hostPath": "/sys/class/drm",
                "mountPath": "/sys/class/drm",
            },
            {
                "name": "kubeletsockets",
                "hostPath": "/var/lib/kubelet/device-plugins",
                "mountPath": "/var/lib/kubelet/device-plugins",
                "readOnly": False,
            },
            {
                "name": "cdipath",
                "hostPath": "/var/run/cdi",
                "mountPath": "/var/run/cdi",
                "type": "DirectoryOrCreate",
                "readOnly": False,
            },
        ]

    def init_host_volumes(self) -> List[Dict[str, Any]]:
        return [
            {
                "name": "nfd-features",
                "hostPath": "/etc/kubernetes/node-feature-discovery/source.d/",
                "mountPath": "/etc/kubernetes/node-feature-discovery/source.d/",
                "type": "DirectoryOrCreate",
                "readOnly": False,
            }
        ]

    def validate(self, spec: ResourceSpec) -> Optional[str]:
        if (
            spec.shared_dev_num == 1
            and spec.allocation_policy != AllocationPolicy.NONE.value
        ):
            return "allocationPolicy is valid only when setting sharedDevNum > 1"
        if spec.shared_dev_num == 1 and spec.resource_manager:
            return "resourceManager is valid only when setting sharedDevNum > 1"
        return None
