"""
Spec normalization: validation and defaulting of resource specs.
"""

import copy
import logging

from errors import SpecValidationError
from models import DEFAULT_NODE_SELECTOR, NormalizedSpec, ResourceSpec
from plugins.base import DevicePluginKind
from validation import spec_errors

logger = logging.getLogger(__name__)


class SpecNormalizer:
    """
    Applies defaults the user did not supply and rejects invalid specs.

    An empty node selector always collapses to DEFAULT_NODE_SELECTOR: a
    DaemonSet with no selector would land on every node of the cluster.
    """

    def __init__(self, plugin: DevicePluginKind):
        self.plugin = plugin

    def validate(self, spec: ResourceSpec) -> None:
        """
        Check a spec against the kind's schema and cross-field rules.

        Raises:
            SpecValidationError: If the spec is invalid
        """
        errors = spec_errors(spec.to_dict(), self.plugin.schema)
        if errors:
            raise SpecValidationError("; ".join(errors))

        error = self.plugin.validate(spec)
        if error:
            raise SpecValidationError(error)

    def normalize(self, spec: ResourceSpec) -> NormalizedSpec:
        """
        Validate a spec and return a copy with defaults applied.

        Args:
            spec: The spec as declared on the resource

        Returns:
            The normalized spec

        Raises:
            SpecValidationError: If the spec is invalid
        """
        self.validate(spec)

        node_selector = dict(spec.node_selector)
        if not node_selector:
            node_selector = dict(DEFAULT_NODE_SELECTOR)

        return NormalizedSpec(
            image=spec.image,
            init_image=spec.init_image,
            node_selector=node_selector,
            log_level=spec.log_level,
            shared_dev_num=spec.shared_dev_num,
            allocation_policy=spec.allocation_policy,
            enable_monitoring=spec.enable_monitoring,
            resource_manager=spec.resource_manager,
            tolerations=copy.deepcopy(spec.tolerations),
        )
