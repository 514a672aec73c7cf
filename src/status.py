"""
Status reporting - writes workload identity and conditions onto resources.
"""

import asyncio
import logging
from typing import List, Optional

from config import ControllerConfig
from errors import ConflictError
from models import Condition, ResourceStatus, WorkloadRef, utc_timestamp
from retry import backoff_delay
from store import OrchestrationStore

logger = logging.getLogger(__name__)


def set_condition(conditions: List[Condition], condition: Condition) -> List[Condition]:
    """
    Return a copy of ``conditions`` with ``condition`` set.

    The condition replaces any existing one of the same type in place.
    lastTransitionTime is carried over from the existing condition when the
    status has not changed, and stamped now when it has.
    """
    result: List[Condition] = []
    replaced = False
    for existing in conditions:
        if existing.type != condition.type:
            result.append(existing)
            continue
        if existing.status == condition.status and existing.last_transition_time:
            condition.last_transition_time = existing.last_transition_time
        result.append(condition)
        replaced = True

    if not condition.last_transition_time:
        condition.last_transition_time = utc_timestamp()
    if not replaced:
        result.append(condition)
    return result


class StatusReporter:
    """
    Writes observed state back onto a resource's status subresource.

    report() is idempotent: when the merged status equals what is stored no
    write is issued, so repeated calls with the same arguments change
    nothing observable.
    """

    def __init__(self, store: OrchestrationStore, config: Optional[ControllerConfig] = None):
        self.store = store
        self.config = config or ControllerConfig()

    async def report(
        self,
        kind: str,
        name: str,
        workload_ref: Optional[WorkloadRef],
        conditions: List[Condition],
        desired_number_scheduled: Optional[int] = None,
        number_ready: Optional[int] = None,
    ) -> bool:
        """
        Merge a workload reference and conditions into a resource's status.

        Each attempt starts from a fresh read. A ConflictError from the write
        is retried with jittered backoff up to status_conflict_retries times.

        Args:
            kind: Resource kind
            name: Resource name
            workload_ref: Controlled workload, or None to keep the stored one
            conditions: Conditions to set; other stored conditions are kept
            desired_number_scheduled: Workload counter to copy, if known
            number_ready: Workload counter to copy, if known

        Returns:
            True if the status was written, False if it was already current

        Raises:
            ConflictError: If every attempt lost a concurrent-write race
            NotFoundError: If the resource no longer exists
        """
        attempts = max(1, self.config.status_conflict_retries)
        for attempt in range(attempts):
            obj = await self.store.get_resource(kind, name)
            current = ResourceStatus.from_dict(obj.get("status"))
            metadata = obj.get("metadata", {})

            updated = ResourceStatus.from_dict(current.to_dict())
            if workload_ref is not None:
                updated.controlled_workload_ref = workload_ref
            for condition in conditions:
                # Work on a copy so retries start from the caller's value
                updated.conditions = set_condition(
                    updated.conditions, Condition.from_dict(condition.to_dict())
                )
            if desired_number_scheduled is not None:
                updated.desired_number_scheduled = desired_number_scheduled
            if number_ready is not None:
                updated.number_ready = number_ready

            if updated.to_dict() == current.to_dict():
                logger.debug(f"Status of {kind}/{name} already current")
                return False

            try:
                await self.store.patch_resource_status(
                    kind,
                    name,
                    updated.to_dict(),
                    resource_version=metadata.get("resourceVersion"),
                )
                logger.debug(f"Updated status of {kind}/{name}")
                return True
            except ConflictError:
                if attempt + 1 >= attempts:
                    raise
                delay = backoff_delay(
                    attempt,
                    self.config.backoff_base_delay,
                    self.config.backoff_max_delay,
                    self.config.backoff_jitter_factor,
                )
                logger.info(
                    f"Status write for {kind}/{name} conflicted, "
                    f"retrying in {delay:.2f}s (attempt {attempt + 1}/{attempts})"
                )
                await asyncio.sleep(delay)

        return False
