"""Unit tests for diff.py - desired vs observed workload comparison."""

import copy

import pytest

from builder import WorkloadBuilder
from diff import DiffAction, DiffEngine, arg_pairs
from models import NormalizedSpec, ObservedWorkload, OwnerReference


@pytest.fixture
def engine():
    return DiffEngine()


@pytest.fixture
def build(gpu_plugin, namespace):
    builder = WorkloadBuilder(gpu_plugin, namespace)
    owner = OwnerReference(
        api_version="deviceplugin.intel.com/v1",
        kind="GpuDevicePlugin",
        name="sample",
        uid="uid-1",
    )

    def _build(**overrides):
        values = {
            "image": "intel/intel-gpu-plugin:0.29.0",
            "init_image": "intel/intel-gpu-initcontainer:0.29.0",
            "node_selector": {"kubernetes.io/arch": "amd64"},
        }
        values.update(overrides)
        return builder.build(NormalizedSpec(**values), owner)

    return _build


def observe(desired, resource_version="7"):
    """What the store would hold after creating ``desired``."""
    manifest = copy.deepcopy(desired.to_manifest())
    manifest["metadata"]["uid"] = "workload-uid"
    manifest["metadata"]["resourceVersion"] = resource_version
    manifest["metadata"]["labels"]["injected-by"] = "orchestrator"
    return ObservedWorkload(manifest)


class TestArgPairs:
    """Tests for arg_pairs function."""

    def test_pairs_flags_with_values(self):
        assert arg_pairs(["-v", "2", "-shared-dev-num", "4"]) == frozenset(
            {("-v", "2"), ("-shared-dev-num", "4")}
        )

    def test_bare_flags(self):
        assert arg_pairs(["-enable-monitoring", "-v", "1"]) == frozenset(
            {("-enable-monitoring", None), ("-v", "1")}
        )

    def test_order_insensitive(self):
        a = ["-v", "2", "-allocation-policy", "none"]
        b = ["-allocation-policy", "none", "-v", "2"]
        assert arg_pairs(a) == arg_pairs(b)

    def test_value_swap_detected(self):
        a = ["-v", "2", "-shared-dev-num", "4"]
        b = ["-v", "4", "-shared-dev-num", "2"]
        assert arg_pairs(a) != arg_pairs(b)


class TestDiff:
    """Tests for DiffEngine.diff."""

    def test_missing_workload_creates(self, engine, build):
        result = engine.diff(build(), None)
        assert result.action == DiffAction.CREATE
        assert result.has_changes is True

    def test_identical_is_noop(self, engine, build):
        desired = build()
        result = engine.diff(desired, observe(desired))
        assert result.action == DiffAction.NOOP
        assert result.has_changes is False
        assert result.patch == {}

    def test_reordered_args_is_noop(self, engine, build):
        desired = build()
        observed = observe(desired)
        args = observed.raw["spec"]["template"]["spec"]["containers"][0]["args"]
        args[:] = args[-2:] + args[:-2]
        assert engine.diff(desired, observed).action == DiffAction.NOOP

    def test_image_change_patches_containers(self, engine, build):
        observed = observe(build())
        desired = build(image="intel/intel-gpu-plugin:0.30.0")
        result = engine.diff(desired, observed)
        assert result.action == DiffAction.PATCH
        assert result.changed_fields == ["containers"]
        pod_patch = result.patch["spec"]["template"]["spec"]
        assert pod_patch["containers"][0]["image"] == "intel/intel-gpu-plugin:0.30.0"
        assert "initContainers" not in pod_patch

    def test_patch_carries_resource_version(self, engine, build):
        observed = observe(build(), resource_version="42")
        result = engine.diff(build(log_level=3), observed)
        assert result.patch["metadata"] == {"resourceVersion": "42"}

    def test_patch_leaves_labels_alone(self, engine, build):
        observed = observe(build())
        result = engine.diff(build(log_level=5), observed)
        assert "labels" not in result.patch["metadata"]
        assert set(result.patch["spec"]["template"]) == {"spec"}

    def test_args_change(self, engine, build):
        observed = observe(build())
        result = engine.diff(build(shared_dev_num=10), observed)
        assert result.changed_fields == ["containers"]

    def test_init_image_removed(self, engine, build):
        observed = observe(build())
        result = engine.diff(build(init_image=""), observed)
        assert result.action == DiffAction.PATCH
        assert "initContainers" in result.changed_fields
        assert "volumes" in result.changed_fields
        pod_patch = result.patch["spec"]["template"]["spec"]
        assert pod_patch["initContainers"] == []
        assert "nfd-features" not in [v["name"] for v in pod_patch["volumes"]]

    def test_init_image_added(self, engine, build):
        observed = observe(build(init_image=""))
        result = engine.diff(build(), observed)
        pod_patch = result.patch["spec"]["template"]["spec"]
        assert len(pod_patch["initContainers"]) == 1
        assert "nfd-features" in [v["name"] for v in pod_patch["volumes"]]

    def test_node_selector_removed_keys_are_null(self, engine, build):
        observed = observe(build(node_selector={"gpu": "true", "zone": "a"}))
        desired = build(node_selector={"kubernetes.io/arch": "amd64"})
        result = engine.diff(desired, observed)
        assert result.changed_fields == ["nodeSelector"]
        assert result.patch["spec"]["template"]["spec"]["nodeSelector"] == {
            "kubernetes.io/arch": "amd64",
            "gpu": None,
            "zone": None,
        }

    def test_tolerations_change(self, engine, build):
        observed = observe(build())
        tolerations = [{"key": "gpu", "operator": "Exists"}]
        result = engine.diff(build(tolerations=tolerations), observed)
        assert result.changed_fields == ["tolerations"]
        assert result.patch["spec"]["template"]["spec"]["tolerations"] == tolerations

    def test_multiple_fields(self, engine, build):
        observed = observe(build())
        desired = build(
            image="intel/intel-gpu-plugin:0.30.0",
            init_image="intel/intel-gpu-initcontainer:0.30.0",
            node_selector={"gpu": "yes"},
        )
        result = engine.diff(desired, observed)
        assert set(result.changed_fields) == {
            "containers",
            "initContainers",
            "volumes",
            "nodeSelector",
        }
