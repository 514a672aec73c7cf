"""
Diff engine - compares a desired workload against the live one.

Produces a create, a minimal JSON merge patch (RFC 7386) or a no-op
decision. Only pod template fields the engine owns are ever patched, so
labels or annotations injected by the orchestrator are left alone.
"""

import copy
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Tuple

from models import DesiredWorkload, ObservedWorkload

logger = logging.getLogger(__name__)


class DiffAction(Enum):
    """Outcome of a diff."""

    CREATE = "create"
    PATCH = "patch"
    NOOP = "noop"


@dataclass
class DiffResult:
    """Result of comparing desired and observed workloads."""

    action: DiffAction
    changed_fields: List[str] = field(default_factory=list)
    patch: Dict[str, Any] = field(default_factory=dict)

    @property
    def has_changes(self) -> bool:
        return self.action != DiffAction.NOOP


def arg_pairs(args: List[str]) -> FrozenSet[Tuple[str, Optional[str]]]:
    """
    Group a flag list into (flag, value) pairs.

    A flag followed by a token that is not itself a flag takes that token as
    its value; bare flags pair with None. Comparing the resulting sets makes
    argument comparison insensitive to flag order but not to which value
    belongs to which flag.
    """
    pairs = []
    i = 0
    while i < len(args):
        token = args[i]
        if (
            token.startswith("-")
            and i + 1 < len(args)
            and not args[i + 1].startswith("-")
        ):
            pairs.append((token, args[i + 1]))
            i += 2
        else:
            pairs.append((token, None))
            i += 1
    return frozenset(pairs)


def _volume_names(volumes: List[Dict[str, Any]]) -> List[str]:
    return sorted(v.get("name", "") for v in volumes)


class DiffEngine:
    """Computes DiffResult values; holds no state between calls."""

    def diff(
        self, desired: DesiredWorkload, observed: Optional[ObservedWorkload]
    ) -> DiffResult:
        """
        Compare desired against observed.

        Args:
            desired: Output of WorkloadBuilder.build()
            observed: The live workload, or None if it does not exist

        Returns:
            DiffResult with CREATE, PATCH (and the merge patch) or NOOP
        """
        if observed is None:
            return DiffResult(action=DiffAction.CREATE)

        changed: List[str] = []
        pod_patch: Dict[str, Any] = {}

        if desired.image != observed.image or arg_pairs(desired.args) != arg_pairs(
            observed.args
        ):
            changed.append("containers")
            pod_patch["containers"] = copy.deepcopy(desired.containers)

        init_changed = desired.init_images != observed.init_images
        if init_changed:
            changed.append("initContainers")
            pod_patch["initContainers"] = copy.deepcopy(desired.init_containers)

        if init_changed or _volume_names(desired.volumes) != _volume_names(
            observed.volumes
        ):
            changed.append("volumes")
            pod_patch["volumes"] = copy.deepcopy(desired.volumes)

        observed_selector = observed.node_selector
        if desired.node_selector != observed_selector:
            changed.append("nodeSelector")
            selector_patch: Dict[str, Optional[str]] = dict(desired.node_selector)
            for key in observed_selector:
                if key not in desired.node_selector:
                    selector_patch[key] = None
            pod_patch["nodeSelector"] = selector_patch

        if desired.tolerations != observed.tolerations:
            changed.append("tolerations")
            pod_patch["tolerations"] = copy.deepcopy(desired.tolerations)

        if not changed:
            return DiffResult(action=DiffAction.NOOP)

        logger.debug(f"Workload {desired.name} differs in: {', '.join(changed)}")
        patch = {
            "metadata": {"resourceVersion": observed.resource_version},
            "spec": {"template": {"spec": pod_patch}},
        }
        return DiffResult(action=DiffAction.PATCH, changed_fields=changed, patch=patch)
