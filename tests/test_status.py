"""Unit tests for status.py - status reporting."""

from unittest.mock import patch

import pytest

from errors import ConflictError, NotFoundError
from models import Condition, ResourceStatus, WorkloadRef
from status import StatusReporter, set_condition

GPU = "GpuDevicePlugin"


def ready(status="True", reason="Reconciled", generation=1):
    return Condition(
        type="Ready", status=status, reason=reason, observed_generation=generation
    )


@pytest.fixture
def reporter(store, fast_config):
    return StatusReporter(store, fast_config)


@pytest.fixture
def workload_ref(namespace):
    return WorkloadRef(name="intel-gpu-plugin-sample", namespace=namespace, uid="w-1")


class TestSetCondition:
    """Tests for set_condition function."""

    def test_appends_new_condition(self):
        result = set_condition([], ready())
        assert [c.type for c in result] == ["Ready"]
        assert result[0].last_transition_time

    def test_keeps_transition_time_when_status_unchanged(self):
        existing = ready()
        existing.last_transition_time = "2024-01-15T10:30:00Z"
        result = set_condition([existing], ready(reason="Other"))
        assert result[0].reason == "Other"
        assert result[0].last_transition_time == "2024-01-15T10:30:00Z"

    def test_new_transition_time_when_status_changes(self):
        existing = ready()
        existing.last_transition_time = "2024-01-15T10:30:00Z"
        result = set_condition([existing], ready(status="False"))
        assert result[0].last_transition_time != "2024-01-15T10:30:00Z"

    def test_replaces_in_place(self):
        degraded = Condition(type="Degraded", status="False", reason="AsExpected")
        result = set_condition([ready(), degraded], ready(status="False"))
        assert [c.type for c in result] == ["Ready", "Degraded"]
        assert result[0].status == "False"


@pytest.mark.asyncio
class TestReport:
    """Tests for StatusReporter.report."""

    async def test_writes_status(self, store, make_gpu, reporter, workload_ref):
        await make_gpu("sample", {"image": "img"})

        written = await reporter.report(
            GPU, "sample", workload_ref, [ready()], desired_number_scheduled=3
        )

        assert written is True
        status = ResourceStatus.from_dict(
            (await store.get_resource(GPU, "sample"))["status"]
        )
        assert status.controlled_workload_ref.uid == "w-1"
        assert status.get_condition("Ready").status == "True"
        assert status.desired_number_scheduled == 3

    async def test_identical_report_is_noop(
        self, store, make_gpu, reporter, workload_ref
    ):
        await make_gpu("sample", {"image": "img"})
        await reporter.report(GPU, "sample", workload_ref, [ready()])
        before = await store.get_resource(GPU, "sample")

        written = await reporter.report(GPU, "sample", workload_ref, [ready()])

        assert written is False
        after = await store.get_resource(GPU, "sample")
        assert after["metadata"]["resourceVersion"] == before["metadata"]["resourceVersion"]
        assert store.writes_for("patch_resource_status") == ["sample"]

    async def test_none_ref_keeps_stored_ref(
        self, store, make_gpu, reporter, workload_ref
    ):
        await make_gpu("sample", {"image": "img"})
        await reporter.report(GPU, "sample", workload_ref, [ready()])
        await reporter.report(GPU, "sample", None, [ready(status="False", reason="X")])
        status = (await store.get_resource(GPU, "sample"))["status"]
        assert status["controlledWorkloadRef"]["uid"] == "w-1"
        assert status["conditions"][0]["status"] == "False"

    async def test_other_conditions_kept(self, store, make_gpu, reporter):
        await make_gpu("sample", {"image": "img"})
        degraded = Condition(type="Degraded", status="True", reason="StoreUnavailable")
        await reporter.report(GPU, "sample", None, [degraded])
        await reporter.report(GPU, "sample", None, [ready()])
        status = ResourceStatus.from_dict(
            (await store.get_resource(GPU, "sample"))["status"]
        )
        assert [c.type for c in status.conditions] == ["Degraded", "Ready"]

    async def test_conflict_retried_with_fresh_read(
        self, store, make_gpu, reporter, workload_ref
    ):
        await make_gpu("sample", {"image": "img"})
        store.fail_next("patch_resource_status", ConflictError("stale"), times=2)

        with patch("status.asyncio.sleep") as mock_sleep:
            written = await reporter.report(GPU, "sample", workload_ref, [ready()])

        assert written is True
        assert mock_sleep.await_count == 2
        status = (await store.get_resource(GPU, "sample"))["status"]
        assert status["controlledWorkloadRef"]["uid"] == "w-1"

    async def test_conflict_exhausted_raises(
        self, store, make_gpu, reporter, workload_ref
    ):
        await make_gpu("sample", {"image": "img"})
        store.fail_next("patch_resource_status", ConflictError("stale"), times=3)

        with patch("status.asyncio.sleep"):
            with pytest.raises(ConflictError):
                await reporter.report(GPU, "sample", workload_ref, [ready()])

    async def test_missing_resource(self, reporter, workload_ref):
        with pytest.raises(NotFoundError):
            await reporter.report(GPU, "missing", workload_ref, [ready()])

    async def test_caller_conditions_not_mutated(
        self, store, make_gpu, reporter, workload_ref
    ):
        await make_gpu("sample", {"image": "img"})
        condition = ready()
        await reporter.report(GPU, "sample", workload_ref, [condition])
        assert condition.last_transition_time == ""
