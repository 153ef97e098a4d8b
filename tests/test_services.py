"""Tests for the EC2 gateway services, the transfer gateway and the region store."""

from unittest.mock import AsyncMock

import pytest

from crossregion.models.region_models import InstanceRecord, InstanceState
from crossregion.services import instance_service, key_pair_service, security_group_service
from crossregion.services.errors import GatewayError, RegionOwnershipError, TransferError
from crossregion.services.region_store import RegionStateStore
from crossregion.services.transfer_service import TransferGateway
from tests.conftest import FakeEc2Client


@pytest.fixture
def client():
    return FakeEc2Client("eu-west-1")


class TestSecurityGroupService:
    @pytest.mark.asyncio
    async def test_existing_group_is_reused(self, client):
        first = await security_group_service.create_security_group(client, "sg-test", "desc")
        second = await security_group_service.create_security_group(client, "sg-test", "desc")

        assert first == second
        assert client.calls.count("CreateSecurityGroup") == 1

    @pytest.mark.asyncio
    async def test_authorize_ingress_only_adds_missing_rules(self, client):
        group_id = await security_group_service.create_security_group(client, "sg-test", "desc")
        permissions = security_group_service.to_ip_permissions(security_group_service.PROBE_RULES)

        added = await security_group_service.authorize_ingress(client, group_id, permissions)
        added_again = await security_group_service.authorize_ingress(client, group_id, permissions)

        assert len(added) == 3
        assert added_again == []

    @pytest.mark.asyncio
    async def test_deleting_absent_group_is_not_an_error(self, client):
        assert await security_group_service.delete_security_group(client, "sg-missing") is False

    @pytest.mark.asyncio
    async def test_dependency_violation_propagates(self, client):
        client.fail["DeleteSecurityGroup"] = "DependencyViolation"

        with pytest.raises(GatewayError) as excinfo:
            await security_group_service.delete_security_group(client, "sg-test")

        assert excinfo.value.code == "DependencyViolation"


class TestKeyPairService:
    @pytest.mark.asyncio
    async def test_create_and_delete_key_pair(self, client, tmp_path):
        key_path = tmp_path / "eu-west-1.pem"

        material = await key_pair_service.create_keypair(client, "crossregion-eu-west-1", key_path)

        assert key_path.read_text() == material
        assert await key_pair_service.describe_key_pairs(client, "crossregion-eu-west-1")

        await key_pair_service.delete_keypair(client, "crossregion-eu-west-1", key_path)
        await key_pair_service.delete_keypair(client, "crossregion-eu-west-1", key_path)

        assert not key_path.exists()
        assert await key_pair_service.describe_key_pairs(client, "crossregion-eu-west-1") == []

    @pytest.mark.asyncio
    async def test_stale_read_only_key_file_is_replaced(self, client, tmp_path):
        key_path = tmp_path / "eu-west-1.pem"
        key_path.write_text("old")
        key_path.chmod(0o400)

        material = await key_pair_service.create_keypair(client, "crossregion-eu-west-1", key_path)

        assert key_path.read_text() == material


class TestInstanceService:
    @pytest.mark.asyncio
    async def test_terminating_twice_does_not_raise(self, client):
        instance = await instance_service.run_instance(client, "ami-1", "key", None)
        instance_id = instance["InstanceId"]

        assert await instance_service.terminate_instances(client, [instance_id]) == [instance_id]
        await instance_service.wait_for_state(client, "instance_terminated", [instance_id])
        assert await instance_service.terminate_instances(client, [instance_id]) == [instance_id]

    @pytest.mark.asyncio
    async def test_terminating_unknown_instance_returns_nothing(self, client):
        assert await instance_service.terminate_instances(client, ["i-gone"]) == []

    @pytest.mark.asyncio
    async def test_unknown_id_in_batch_does_not_spare_live_instances(self, client):
        instance = await instance_service.run_instance(client, "ami-1", "key", None)
        live_id = instance["InstanceId"]

        terminating = await instance_service.terminate_instances(client, ["i-gone", live_id])

        assert terminating == [live_id]
        assert client.instances[live_id]["State"]["Name"] == "shutting-down"

    @pytest.mark.asyncio
    async def test_new_instance_is_visible_to_status_query(self, client):
        await instance_service.run_instance(client, "ami-1", "key", "sg")

        live = await instance_service.describe_live_instances(client)

        assert len(live) == 1
        record = instance_service.to_instance_record("eu-west-1", live[0])
        assert record.state == InstanceState.PENDING

    @pytest.mark.asyncio
    async def test_wait_passes_explicit_bounds(self, client):
        instance = await instance_service.run_instance(client, "ami-1", "key", None)

        await instance_service.wait_for_state(client, "instance_running", [instance["InstanceId"]], delay=1, max_attempts=2)

        assert client.waits[-1][2] == {"Delay": 1, "MaxAttempts": 2}

    @pytest.mark.asyncio
    async def test_describe_with_retry_gives_up(self, client):
        with pytest.raises(GatewayError) as excinfo:
            await instance_service.describe_instances_with_retry(client, ["i-gone"], max_attempts=3, initial_delay=0)

        assert excinfo.value.code == "InvalidInstanceID.NotFound"
        assert client.calls.count("DescribeInstances") == 3

    @pytest.mark.asyncio
    async def test_find_ami_picks_newest_match(self, client):
        client.describe_images = AsyncMock(return_value={"Images": [
            {"ImageId": "ami-old", "CreationDate": "2024-01-10T00:00:00.000Z"},
            {"ImageId": "ami-new", "CreationDate": "2024-06-24T00:00:00.000Z"},
            {"ImageId": "ami-mid", "CreationDate": "2024-03-02T00:00:00.000Z"},
        ]})

        assert await instance_service.find_ami(client) == "ami-new"

    @pytest.mark.asyncio
    async def test_client_errors_carry_provider_code(self, client):
        client.fail["DescribeImages"] = "UnauthorizedOperation"

        with pytest.raises(GatewayError) as excinfo:
            await instance_service.find_ami(client)

        assert excinfo.value.code == "UnauthorizedOperation"
        assert excinfo.value.operation == "DescribeImages"


class TestTransferGateway:
    @pytest.mark.asyncio
    async def test_missing_key_file_fails_before_connecting(self, tmp_path):
        gateway = TransferGateway(key_dir=str(tmp_path))

        with pytest.raises(TransferError) as excinfo:
            await gateway.run_remote_command("eu-west-1", "203.0.113.1", "true")

        assert excinfo.value.code == "MissingKeyFile"


class TestRegionStateStore:
    def test_updates_replace_records(self):
        store = RegionStateStore(["a"])
        before = store.get("a")

        after = store.update("a", instances=(InstanceRecord(region="a", instance_id="i-1"),))

        assert before.instances == ()
        assert store.get("a") is after
        assert after.known_instance_ids() == ["i-1"]

    def test_region_has_one_owner_at_a_time(self):
        store = RegionStateStore(["a", "b"])

        with store.owned_by("a", "create instance"):
            with store.owned_by("b", "create instance"):
                pass
            with pytest.raises(RegionOwnershipError):
                with store.owned_by("a", "tag instance"):
                    pass

        assert store.owner("a") is None

    def test_hosts_map_lists_running_nodes_only(self):
        store = RegionStateStore(["b", "a", "c"])
        store.update("a", instances=(InstanceRecord(region="a", instance_id="i-1", state=InstanceState.RUNNING,
                                                    public_address="198.51.100.1"),))
        store.update("b", instances=(InstanceRecord(region="b", instance_id="i-2", state=InstanceState.PENDING),))

        assert store.hosts_map() == {"a": "198.51.100.1"}
