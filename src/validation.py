"""
Spec schema checks.

Device plugin kinds declare the OpenAPI v3 schema of their spec, the same
schema the CRD carries. Kind schemas are checked once at registration;
specs are checked against them before a workload is built.
"""

import logging
from typing import Any, Dict, List, Optional

from jsonschema import Draft7Validator, SchemaError, ValidationError

logger = logging.getLogger(__name__)


def check_kind_schema(schema: Dict[str, Any]) -> Optional[str]:
    """
    Check that a kind's spec schema is itself a valid JSON Schema.

    Args:
        schema: The schema a device plugin kind declares

    Returns:
        None if the schema is usable, otherwise why it is not
    """
    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        return f"Invalid schema: {e.message}"
    return None


def field_path(error: ValidationError) -> str:
    """Render an error location the way kubectl does, e.g. tolerations[0].key."""
    path = ""
    for part in error.absolute_path:
        if isinstance(part, int):
            path += f"[{part}]"
        else:
            path += f".{part}" if path else str(part)
    return path or "(root)"


def spec_errors(spec: Dict[str, Any], schema: Dict[str, Any]) -> List[str]:
    """
    Every schema violation of a spec, one "path: message" entry each,
    ordered by path.
    """
    validator = Draft7Validator(schema)
    errors = sorted(validator.iter_errors(spec), key=field_path)
    return [f"{field_path(e)}: {e.message}" for e in errors]
