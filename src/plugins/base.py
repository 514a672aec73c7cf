"""
Device Plugin Kind Base - Abstract interface for supported device plugins.

A device plugin kind describes one custom resource type (GpuDevicePlugin,
...) and everything the engine needs to turn its spec into a DaemonSet:
naming, schema, container arguments, host volumes and kind-specific
validation rules.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from models import ResourceSpec

logger = logging.getLogger(__name__)


class DevicePluginKind(ABC):
    """
    Abstract base class for device plugin kinds.

    Kinds are stateless; the registry keeps one instance per kind and the
    engine's components ask it for kind-specific details.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Short identifier for this kind (e.g., 'gpu')."""
        pass

    @property
    @abstractmethod
    def kind(self) -> str:
        """Custom resource kind (e.g., 'GpuDevicePlugin')."""
        pass

    @property
    @abstractmethod
    def plural(self) -> str:
        """Custom resource plural used in API paths."""
        pass

    @property
    @abstractmethod
    def schema(self) -> Dict[str, Any]:
        """OpenAPI v3 schema of the resource spec."""
        pass

    @abstractmethod
    def build_args(self, spec: ResourceSpec) -> List[str]:
        """
        Build the plugin container's argument list.

        The order of flags must depend only on the spec so repeated builds
        are byte-identical.

        Args:
            spec: The normalized resource spec

        Returns:
            List of command line arguments
        """
        pass

    @property
    def workload_prefix(self) -> str:
        """Prefix of the DaemonSet name derived from a resource name."""
        return f"intel-{self.name}-plugin"

    @property
    def container_name(self) -> str:
        return f"intel-{self.name}-plugin"

    @property
    def init_container_name(self) -> str:
        return f"intel-{self.name}-initcontainer"

    def workload_name(self, resource_name: str) -> str:
        """Deterministic name of the workload owned by a resource."""
        return f"{self.workload_prefix}-{resource_name}"

    def host_volumes(self) -> List[Dict[str, Any]]:
        """
        Host paths the plugin container needs.

        Returns:
            List of dicts with 'name', 'hostPath', 'mountPath' and an
            optional 'type'.
        """
        return []

    def init_host_volumes(self) -> List[Dict[str, Any]]:
        """Host paths the init container needs; only mounted with it."""
        return []

    def validate(self, spec: ResourceSpec) -> Optional[str]:
        """
        Kind-specific checks the schema cannot express.

        Args:
            spec: The resource spec

        Returns:
            An error message, or None if the spec is valid.
        """
        return None
