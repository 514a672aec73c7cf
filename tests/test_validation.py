"""Unit tests for validation.py - spec schema checks."""

import pytest

from plugins.gpu import GPU_SPEC_SCHEMA
from validation import check_kind_schema, spec_errors


class TestCheckKindSchema:
    """Tests for check_kind_schema function."""

    def test_gpu_schema_is_valid(self):
        assert check_kind_schema(GPU_SPEC_SCHEMA) is None

    def test_empty_schema_is_valid(self):
        assert check_kind_schema({}) is None

    @pytest.mark.parametrize(
        "schema",
        [
            {"type": "object", "properties": {"image": {"type": "text"}}},
            {"type": "integer", "minimum": "zero"},
        ],
    )
    def test_invalid_schema(self, schema):
        error = check_kind_schema(schema)
        assert error.startswith("Invalid schema")


class TestSpecErrors:
    """Tests for spec_errors function."""

    def test_valid_spec(self):
        spec = {
            "image": "intel/intel-gpu-plugin:0.30.0",
            "logLevel": 2,
            "sharedDevNum": 42,
            "allocationPolicy": "none",
        }
        assert spec_errors(spec, GPU_SPEC_SCHEMA) == []

    def test_missing_image(self):
        errors = spec_errors({"logLevel": 0}, GPU_SPEC_SCHEMA)
        assert len(errors) == 1
        assert errors[0].startswith("(root): ")
        assert "image" in errors[0]

    def test_empty_image(self):
        errors = spec_errors({"image": ""}, GPU_SPEC_SCHEMA)
        assert errors[0].startswith("image: ")

    @pytest.mark.parametrize(
        "spec, field",
        [
            ({"image": "img", "logLevel": -1}, "logLevel"),
            ({"image": "img", "sharedDevNum": 0}, "sharedDevNum"),
            ({"image": "img", "allocationPolicy": "random"}, "allocationPolicy"),
        ],
    )
    def test_rejected_fields(self, spec, field):
        errors = spec_errors(spec, GPU_SPEC_SCHEMA)
        assert len(errors) == 1
        assert errors[0].startswith(f"{field}: ")

    def test_node_selector_values_must_be_strings(self):
        errors = spec_errors({"image": "img", "nodeSelector": {"gpu": True}}, GPU_SPEC_SCHEMA)
        assert errors[0].startswith("nodeSelector.gpu: ")

    def test_multiple_errors_ordered_by_path(self):
        spec = {"image": "img", "sharedDevNum": -1, "logLevel": -3}
        errors = spec_errors(spec, GPU_SPEC_SCHEMA)
        assert [e.split(":")[0] for e in errors] == ["logLevel", "sharedDevNum"]

    def test_list_indexes_in_path(self):
        schema = {
            "type": "object",
            "properties": {
                "tolerations": {"type": "array", "items": {"type": "object"}},
            },
        }
        errors = spec_errors({"tolerations": ["a", {}, "b"]}, schema)
        assert [e.split(":")[0] for e in errors] == ["tolerations[0]", "tolerations[2]"]

    def test_empty_spec_against_empty_schema(self):
        assert spec_errors({}, {}) == []
