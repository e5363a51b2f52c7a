from __future__ import annotations

import pytest

from neptune_broker.broker import Broker
from neptune_broker.exceptions import NotFoundError
from neptune_broker.types import InstanceState

pytestmark = [pytest.mark.unit, pytest.mark.xdist_group("unit")]


async def _claimed(broker: Broker, ready) -> str:
    record = await broker.ensure_minimum("small", 1)
    assert record is not None
    await ready()
    return (await broker.claim("small", "cust-1")).name


class TestDelete:
    @pytest.mark.asyncio
    async def test_removes_everything(self, broker: Broker, neptune, iam, ready):
        name = await _claimed(broker, ready)

        report = await broker.delete(name)

        assert report.ok
        assert report.record_removed
        assert report.partial is None
        assert [s.step for s in report.steps] == [
            "delete_instance",
            "delete_cluster",
            "remove_record",
            "detach_policy",
            "delete_policy",
            "delete_access_keys",
            "delete_identity",
        ]
        assert name not in neptune.instances
        assert name not in neptune.clusters
        assert name not in iam.users
        assert iam.policies == {}
        assert await broker.store.get(name) is None

    @pytest.mark.asyncio
    async def test_instance_deleted_before_cluster(self, broker: Broker, neptune, ready):
        name = await _claimed(broker, ready)
        neptune.calls.clear()

        await broker.delete(name)

        assert neptune.calls == ["delete_db_instance", "delete_db_cluster"]

    @pytest.mark.asyncio
    async def test_second_delete_is_not_found(self, broker: Broker, neptune, iam, ready):
        name = await _claimed(broker, ready)
        await broker.delete(name)
        neptune.calls.clear()
        iam.calls.clear()

        with pytest.raises(NotFoundError):
            await broker.delete(name)
        with pytest.raises(NotFoundError):
            await broker.lookup(name)
        assert neptune.calls == []
        assert iam.calls == []

    @pytest.mark.asyncio
    async def test_unclaimed_instance_can_be_deleted(self, broker: Broker, ready):
        record = await broker.ensure_minimum("small", 1)
        assert record is not None

        report = await broker.delete(record.name)

        assert report.ok
        assert await broker.store.count_unclaimed("small") == 0

    @pytest.mark.asyncio
    async def test_already_gone_resources_count_as_deleted(self, broker: Broker, neptune, ready):
        name = await _claimed(broker, ready)
        del neptune.instances[name]
        del neptune.clusters[name]

        report = await broker.delete(name)

        assert report.ok
        assert report.record_removed

    @pytest.mark.asyncio
    async def test_cloud_failure_keeps_record_in_deleting(self, broker: Broker, neptune, iam, ready):
        name = await _claimed(broker, ready)
        neptune.fail("delete_db_cluster", "InvalidDBClusterStateFault")

        report = await broker.delete(name)

        assert not report.ok
        assert not report.record_removed
        assert [f.step for f in report.failures] == ["delete_cluster", "remove_record"]
        assert report.partial is not None
        record = await broker.store.get(name)
        assert record is not None and record.state is InstanceState.DELETING
        # revocation still ran
        assert name not in iam.users

    @pytest.mark.asyncio
    async def test_revocation_failure_is_reported(self, broker: Broker, iam, ready):
        name = await _claimed(broker, ready)
        iam.fail("delete_policy", "ServiceFailure")

        report = await broker.delete(name)

        assert report.record_removed
        assert [f.step for f in report.failures] == ["delete_policy"]
        assert "ServiceFailure" in report.failures[0].error


class TestSweep:
    @pytest.mark.asyncio
    async def test_retries_stuck_teardown(self, broker: Broker, neptune, ready):
        name = await _claimed(broker, ready)
        neptune.fail("delete_db_cluster", "InvalidDBClusterStateFault", times=1)
        first = await broker.delete(name)
        assert not first.record_removed

        reports = await broker.sweep()

        assert [r.name for r in reports] == [name]
        assert reports[0].ok
        assert await broker.store.get(name) is None
        assert neptune.clusters == {}

    @pytest.mark.asyncio
    async def test_revokes_orphaned_identities(self, broker: Broker, iam, ready):
        kept = await _claimed(broker, ready)
        await iam.create_user(UserName="orphan", Path="/neptune-broker/")
        await iam.create_access_key(UserName="orphan")
        await iam.create_user(UserName="someone-else", Path="/")

        reports = await broker.sweep()

        assert [r.name for r in reports] == ["orphan"]
        assert reports[0].ok
        assert "orphan" not in iam.users
        assert "someone-else" in iam.users
        assert kept in iam.users

    @pytest.mark.asyncio
    async def test_nothing_to_do(self, broker: Broker, ready):
        await _claimed(broker, ready)
        assert await broker.sweep() == []
