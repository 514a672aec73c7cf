"""
Schema migration runner for device plugin resources.

Applies forward-only migrations to resources stored under an older schema
generation. The generation a resource was written with lives in the
schema-generation annotation; a resource without it predates the annotation
and is generation 1. Each migration is a numbered step that rewrites the
spec in place and the runner stamps the new generation after every step.
"""

import copy
import logging
import re
from typing import Any, Callable, Dict, List, Tuple

from models import SCHEMA_GENERATION_ANNOTATION

logger = logging.getLogger(__name__)

MigrationFn = Callable[[Dict[str, Any]], None]

MIGRATION_PATTERN = re.compile(r"^(\d{3})_.+$")

# A resource without the schema-generation annotation was created before it
# existed.
INITIAL_SCHEMA_GENERATION = 1


def rename_preferred_allocation_policy(spec: Dict[str, Any]) -> None:
    """Generation 1 called the allocation policy preferredAllocationPolicy."""
    if "preferredAllocationPolicy" in spec:
        legacy = spec.pop("preferredAllocationPolicy")
        if legacy and not spec.get("allocationPolicy"):
            spec["allocationPolicy"] = legacy


def default_shared_dev_num(spec: Dict[str, Any]) -> None:
    """Generation 2 allowed sharedDevNum to be 0 or unset, meaning 1."""
    if not spec.get("sharedDevNum"):
        spec["sharedDevNum"] = 1


MIGRATIONS: List[Tuple[str, MigrationFn]] = [
    ("002_rename_preferred_allocation_policy", rename_preferred_allocation_policy),
    ("003_default_shared_dev_num", default_shared_dev_num),
]


def discover_migrations() -> List[Tuple[int, str, MigrationFn]]:
    """
    List the registered migrations.

    Returns:
        Sorted list of (generation, name, function) tuples; a migration's
        generation is the one a resource has after it ran.

    Raises:
        ValueError: If a migration name is not of the form NNN_description.
    """
    migrations = []
    for name, fn in MIGRATIONS:
        match = MIGRATION_PATTERN.match(name)
        if not match:
            raise ValueError(f"Invalid migration name: {name}")
        migrations.append((int(match.group(1)), name, fn))

    return sorted(migrations, key=lambda m: m[0])


CURRENT_SCHEMA_GENERATION = max(
    [INITIAL_SCHEMA_GENERATION] + [m[0] for m in discover_migrations()]
)


def get_schema_generation(obj: Dict[str, Any]) -> int:
    """Read the schema generation of a resource object."""
    annotations = obj.get("metadata", {}).get("annotations") or {}
    value = annotations.get(SCHEMA_GENERATION_ANNOTATION)
    if value is None:
        return INITIAL_SCHEMA_GENERATION
    try:
        return int(value)
    except (TypeError, ValueError):
        logger.warning(
            f"Ignoring malformed schema generation {value!r} on "
            f"{obj.get('metadata', {}).get('name', '')}"
        )
        return INITIAL_SCHEMA_GENERATION


def set_schema_generation(obj: Dict[str, Any], generation: int) -> None:
    metadata = obj.setdefault("metadata", {})
    annotations = metadata.get("annotations") or {}
    annotations[SCHEMA_GENERATION_ANNOTATION] = str(generation)
    metadata["annotations"] = annotations


def pending_migrations(obj: Dict[str, Any]) -> List[Tuple[int, str, MigrationFn]]:
    """Migrations a resource has not been through yet, in order."""
    generation = get_schema_generation(obj)
    return [m for m in discover_migrations() if m[0] > generation]


class UpgradeMigrator:
    """
    Brings resources from older schema generations up to the current one.

    migrate() only ever touches the spec fields a migration step names and
    the schema-generation annotation; image and initImage pass through
    verbatim. It is idempotent: migrating a current resource returns an
    equal copy.
    """

    def needs_migration(self, obj: Dict[str, Any]) -> bool:
        return get_schema_generation(obj) < CURRENT_SCHEMA_GENERATION

    def migrate(self, obj: Dict[str, Any]) -> Dict[str, Any]:
        """
        Apply every pending migration to a copy of a resource object.

        Args:
            obj: Resource object as read from the store

        Returns:
            The migrated copy; obj itself is not modified
        """
        migrated = copy.deepcopy(obj)
        name = migrated.get("metadata", {}).get("name", "")
        generation = get_schema_generation(migrated)

        if generation > CURRENT_SCHEMA_GENERATION:
            logger.warning(
                f"{name} has schema generation {generation}, newer than "
                f"{CURRENT_SCHEMA_GENERATION}; leaving it unchanged"
            )
            return migrated

        pending = pending_migrations(migrated)
        if not pending:
            return migrated

        spec = migrated.setdefault("spec", {})
        for version, migration_name, fn in pending:
            fn(spec)
            set_schema_generation(migrated, version)
            logger.info(f"Applied migration {migration_name} to {name}")

        return migrated
