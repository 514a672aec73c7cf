"""
Plugin Registry - Discovery and registration of device plugin kinds.

This module provides the registry of supported device plugin kinds,
handling discovery, registration and lookup by short name or by custom
resource kind.
"""

from importlib.metadata import entry_points
from typing import Dict, List, Optional, Type

from plugins.base import DevicePluginKind, logger
from validation import check_kind_schema

ENTRY_POINT_GROUP = "deviceplugin_operator.kinds"


class PluginRegistry:
    """
    Registry of device plugin kinds.

    Each kind is instantiated once at registration; kinds are stateless so
    the instance is shared by every component that needs it.
    """

    def __init__(self):
        # Registered kind instances keyed by short name
        self._kinds: Dict[str, DevicePluginKind] = {}

        # Mapping from custom resource kind to short name
        self._kind_to_name: Dict[str, str] = {}

    def register_kind(self, kind_class: Type[DevicePluginKind]) -> None:
        """
        Register a device plugin kind class.

        Args:
            kind_class: The DevicePluginKind subclass to register

        Raises:
            ValueError: If the kind's schema is invalid or its custom
                resource kind is already claimed by another plugin
        """
        instance = kind_class()
        name = instance.name

        error = check_kind_schema(instance.schema)
        if error:
            raise ValueError(f"Device plugin kind '{name}' has {error}")

        existing = self._kind_to_name.get(instance.kind)
        if existing and existing != name:
            raise ValueError(
                f"Resource kind '{instance.kind}' is already claimed by "
                f"device plugin '{existing}'. Cannot register '{name}'."
            )

        if name in self._kinds:
            logger.warning(f"Overwriting existing device plugin kind: {name}")

        self._kinds[name] = instance
        self._kind_to_name[instance.kind] = name
        logger.info(f"Registered device plugin kind: {name} ({instance.kind})")

    def get_kind(self, name: str) -> DevicePluginKind:
        """
        Get a registered kind by short name or custom resource kind.

        Args:
            name: Either 'gpu' or 'GpuDevicePlugin'

        Returns:
            The DevicePluginKind instance

        Raises:
            ValueError: If no such kind is registered
        """
        short_name = self._kind_to_name.get(name, name)
        if short_name not in self._kinds:
            available = ", ".join(self._kinds.keys()) or "none"
            raise ValueError(
                f"Unknown device plugin kind: {name}. Available kinds: {available}"
            )
        return self._kinds[short_name]

    def find_kind(self, name: str) -> Optional[DevicePluginKind]:
        """Like get_kind() but returns None for unknown kinds."""
        short_name = self._kind_to_name.get(name, name)
        return self._kinds.get(short_name)

    def has_kind(self, name: str) -> bool:
        """Check if a kind is registered under a short or resource kind name."""
        return self.find_kind(name) is not None

    def list_kinds(self) -> List[DevicePluginKind]:
        """List all registered kinds."""
        return list(self._kinds.values())

    def list_kind_names(self) -> List[str]:
        """List all registered short names."""
        return list(self._kinds.keys())


def register_builtin_plugins(
    registry: PluginRegistry, enabled: Optional[List[str]] = None
) -> None:
    """
    Register the built-in GPU kind and discover further kinds via
    entry points.

    Args:
        registry: The registry to populate
        enabled: Optional list of short names to keep; empty or None keeps
            every discovered kind
    """
    from plugins.gpu import GpuDevicePluginKind

    candidates: List[Type[DevicePluginKind]] = [GpuDevicePluginKind]

    for ep in entry_points(group=ENTRY_POINT_GROUP):
        try:
            candidates.append(ep.load())
        except Exception as e:
            logger.warning(f"Could not load device plugin kind {ep.name}: {e}")

    for kind_class in candidates:
        if enabled and kind_class().name not in enabled:
            continue
        registry.register_kind(kind_class)
