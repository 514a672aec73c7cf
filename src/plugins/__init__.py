"""
Device plugin kinds supported by the operator.

Each kind maps one custom resource type onto the DaemonSet that runs its
device plugin. The GPU kind is built in; further kinds are discovered via
Python entry points (group: 'deviceplugin_operator.kinds').
"""

from plugins.base import DevicePluginKind
from plugins.gpu import GpuDevicePluginKind
from plugins.registry import PluginRegistry, register_builtin_plugins

__all__ = [
    "DevicePluginKind",
    "GpuDevicePluginKind",
    "PluginRegistry",
    "register_builtin_plugins",
]
