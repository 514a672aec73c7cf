"""Unit tests for migrate.py - schema-generation migrations."""

import pytest

import migrate
from migrate import (
    CURRENT_SCHEMA_GENERATION,
    UpgradeMigrator,
    default_shared_dev_num,
    discover_migrations,
    get_schema_generation,
    pending_migrations,
    rename_preferred_allocation_policy,
)
from models import SCHEMA_GENERATION_ANNOTATION


def legacy_resource(spec, generation=None):
    annotations = {}
    if generation is not None:
        annotations[SCHEMA_GENERATION_ANNOTATION] = str(generation)
    return {
        "kind": "GpuDevicePlugin",
        "metadata": {"name": "gpudeviceplugin-sample", "annotations": annotations},
        "spec": spec,
    }


@pytest.fixture
def migrator():
    return UpgradeMigrator()


class TestDiscoverMigrations:
    """Tests for discover_migrations function."""

    def test_returns_sorted_list(self):
        result = discover_migrations()
        assert [m[0] for m in result] == [2, 3]
        assert result[0][1] == "002_rename_preferred_allocation_policy"
        assert result[1][1] == "003_default_shared_dev_num"

    def test_current_generation(self):
        assert CURRENT_SCHEMA_GENERATION == 3

    def test_invalid_name_rejected(self, monkeypatch):
        monkeypatch.setattr(migrate, "MIGRATIONS", [("bad-name", lambda spec: None)])
        with pytest.raises(ValueError):
            discover_migrations()

    def test_sorted_regardless_of_registration_order(self, monkeypatch):
        noop = lambda spec: None  # noqa: E731
        monkeypatch.setattr(
            migrate, "MIGRATIONS", [("005_later", noop), ("004_earlier", noop)]
        )
        assert [m[0] for m in discover_migrations()] == [4, 5]


class TestSchemaGeneration:
    """Tests for reading the schema generation."""

    def test_missing_annotation_is_generation_one(self):
        assert get_schema_generation(legacy_resource({})) == 1

    def test_reads_annotation(self):
        assert get_schema_generation(legacy_resource({}, generation=2)) == 2

    def test_malformed_annotation(self):
        obj = legacy_resource({})
        obj["metadata"]["annotations"][SCHEMA_GENERATION_ANNOTATION] = "two"
        assert get_schema_generation(obj) == 1

    def test_pending(self):
        assert [m[0] for m in pending_migrations(legacy_resource({}))] == [2, 3]
        assert [m[0] for m in pending_migrations(legacy_resource({}, 2))] == [3]
        assert pending_migrations(legacy_resource({}, 3)) == []


class TestMigrationSteps:
    """Tests for the individual migration steps."""

    def test_rename_preferred_allocation_policy(self):
        spec = {"preferredAllocationPolicy": "balanced"}
        rename_preferred_allocation_policy(spec)
        assert spec == {"allocationPolicy": "balanced"}

    def test_rename_keeps_explicit_policy(self):
        spec = {"preferredAllocationPolicy": "balanced", "allocationPolicy": "packed"}
        rename_preferred_allocation_policy(spec)
        assert spec == {"allocationPolicy": "packed"}

    @pytest.mark.parametrize("spec", [{}, {"sharedDevNum": 0}])
    def test_default_shared_dev_num(self, spec):
        default_shared_dev_num(spec)
        assert spec["sharedDevNum"] == 1

    def test_shared_dev_num_kept(self):
        spec = {"sharedDevNum": 10}
        default_shared_dev_num(spec)
        assert spec["sharedDevNum"] == 10


class TestUpgradeMigrator:
    """Tests for UpgradeMigrator."""

    def test_preserves_images(self, migrator):
        obj = legacy_resource(
            {
                "image": "intel/intel-gpu-plugin:0.29.0",
                "initImage": "intel/intel-gpu-initcontainer:0.29.0",
                "nodeSelector": {"gpu": "true"},
                "preferredAllocationPolicy": "packed",
                "sharedDevNum": 0,
            }
        )

        migrated = migrator.migrate(obj)

        assert migrated["spec"]["image"] == "intel/intel-gpu-plugin:0.29.0"
        assert migrated["spec"]["initImage"] == "intel/intel-gpu-initcontainer:0.29.0"
        assert migrated["spec"]["nodeSelector"] == {"gpu": "true"}
        assert migrated["spec"]["allocationPolicy"] == "packed"
        assert migrated["spec"]["sharedDevNum"] == 1
        assert get_schema_generation(migrated) == CURRENT_SCHEMA_GENERATION

    def test_input_not_modified(self, migrator):
        obj = legacy_resource({"image": "img"})
        migrator.migrate(obj)
        assert obj["metadata"]["annotations"] == {}
        assert "sharedDevNum" not in obj["spec"]

    def test_idempotent(self, migrator):
        once = migrator.migrate(legacy_resource({"image": "img"}))
        twice = migrator.migrate(once)
        assert once == twice
        assert migrator.needs_migration(twice) is False

    def test_current_is_noop(self, migrator):
        obj = legacy_resource({"image": "img", "sharedDevNum": 0}, generation=3)
        assert migrator.needs_migration(obj) is False
        assert migrator.migrate(obj) == obj

    def test_partial_upgrade(self, migrator):
        obj = legacy_resource({"image": "img", "preferredAllocationPolicy": "x"}, 2)
        migrated = migrator.migrate(obj)
        # Generation 2 already ran the rename
        assert migrated["spec"]["preferredAllocationPolicy"] == "x"
        assert migrated["spec"]["sharedDevNum"] == 1

    def test_newer_generation_left_alone(self, migrator):
        obj = legacy_resource({"image": "img"}, generation=9)
        assert migrator.needs_migration(obj) is False
        assert migrator.migrate(obj) == obj

    def test_missing_annotations_map(self, migrator):
        obj = {"metadata": {"name": "bare"}, "spec": {"image": "img"}}
        migrated = migrator.migrate(obj)
        assert migrated["metadata"]["annotations"] == {
            SCHEMA_GENERATION_ANNOTATION: "3"
        }
