"""Pytest configuration and fixtures."""

from typing import Any, Dict, Optional

import pytest

from config import ControllerConfig
from controller import Controller
from events import EventBus
from models import DEFAULT_NAMESPACE, SCHEMA_GENERATION_ANNOTATION
from plugins.gpu import GpuDevicePluginKind
from plugins.registry import PluginRegistry
from store import InMemoryStore

GPU_KIND = "GpuDevicePlugin"


@pytest.fixture
def registry():
    """Registry with the built-in GPU kind."""
    reg = PluginRegistry()
    reg.register_kind(GpuDevicePluginKind)
    return reg


@pytest.fixture
def gpu_plugin(registry):
    return registry.get_kind("gpu")


@pytest.fixture
def store():
    """Empty in-memory orchestration store."""
    return InMemoryStore()


@pytest.fixture
def fast_config():
    """Controller config whose backoff delays are all zero."""
    return ControllerConfig(
        max_concurrent_reconciles=4,
        resync_interval=3600,
        backoff_base_delay=0.0,
        backoff_max_delay=0.0,
        backoff_jitter_factor=0.0,
        max_transient_retries=2,
        status_conflict_retries=3,
    )


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def controller(store, registry, fast_config, event_bus):
    """Controller over the in-memory store; not started."""
    return Controller(store, registry, fast_config, event_bus)


@pytest.fixture
def sample_spec():
    """Sample GpuDevicePlugin spec for testing."""
    return {
        "image": "intel/intel-gpu-plugin:0.30.0",
        "initImage": "intel/intel-gpu-initcontainer:0.30.0",
        "nodeSelector": {"intel.feature.node.kubernetes.io/gpu": "true"},
        "logLevel": 4,
        "sharedDevNum": 1,
        "allocationPolicy": "none",
    }


def gpu_resource(
    name: str,
    spec: Dict[str, Any],
    schema_generation: Optional[int] = 3,
) -> Dict[str, Any]:
    """A GpuDevicePlugin object as a user would submit it."""
    annotations = {}
    if schema_generation is not None:
        annotations[SCHEMA_GENERATION_ANNOTATION] = str(schema_generation)
    return {
        "apiVersion": "deviceplugin.intel.com/v1",
        "kind": GPU_KIND,
        "metadata": {"name": name, "annotations": annotations},
        "spec": dict(spec),
    }


@pytest.fixture
def make_gpu(store):
    """Factory creating a GpuDevicePlugin in the store."""

    async def _make(name: str, spec: Dict[str, Any], schema_generation=3):
        return await store.create_resource(
            GPU_KIND, gpu_resource(name, spec, schema_generation)
        )

    return _make


@pytest.fixture
def namespace():
    return DEFAULT_NAMESPACE
