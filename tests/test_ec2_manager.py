"""Instance Provisioning Manager against a mocked EC2 client."""
import base64
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import WaiterError

from playstream.core.errors import (
    BackendLimitExceeded,
    ConfigurationError,
    InstanceBusy,
    InstanceNotFound,
    MissingImageId,
    ProvisioningError,
    UnsupportedState,
    ValidationError,
    WaiterTimedOut,
)
from playstream.modules.instances.ec2_manager import InstanceManager, generate_arn
from playstream.modules.instances.schemas import InstanceConfig
from tests.conftest import client_error


def describe_response(state="running", instance_id="i-1", **extra):
    instance = {"InstanceId": instance_id, "State": {"Name": state}, **extra}
    return {"Reservations": [{"OwnerId": "123456789012", "Instances": [instance]}]}


@pytest.fixture
def ec2():
    return MagicMock()


@pytest.fixture
def manager(ec2):
    return InstanceManager(ec2_client=ec2, region="us-west-2", waiter_delay=5)


def test_generate_arn():
    assert generate_arn("eu-west-1", "111", "i-9") == "arn:aws:ec2:eu-west-1:111:instance/i-9"


def test_create_instance_requires_user_id(manager, ec2):
    with pytest.raises(ValidationError):
        manager.create_instance(InstanceConfig(user_id="  ", ami_id="ami-1"))
    ec2.run_instances.assert_not_called()


def test_create_instance_requires_image(manager, ec2):
    with pytest.raises(MissingImageId) as exc_info:
        manager.create_instance(InstanceConfig(user_id="u1", ami_id=""))
    assert exc_info.value.code == "MissingImageId"
    ec2.run_instances.assert_not_called()


def test_create_instance_builds_request(manager, ec2):
    ec2.run_instances.return_value = {
        "OwnerId": "123456789012",
        "Instances": [{"InstanceId": "i-1", "State": {"Name": "pending"}, "PrivateIpAddress": "10.0.0.1"}],
    }
    config = InstanceConfig(
        user_id="u1",
        ami_id="ami-1",
        key_name="kp",
        security_group_ids=["sg-1"],
        subnet_id="subnet-1",
        iam_instance_profile="profile",
        tags={"team": "games"},
        user_data_script="<powershell>hi</powershell>",
    )

    result = manager.create_instance(config)

    assert result.instance_id == "i-1"
    assert result.state == "pending"
    assert result.instance_arn == "arn:aws:ec2:us-west-2:123456789012:instance/i-1"
    params = ec2.run_instances.call_args.kwargs
    assert params["KeyName"] == "kp"
    assert params["SecurityGroupIds"] == ["sg-1"]
    assert params["SubnetId"] == "subnet-1"
    assert params["IamInstanceProfile"] == {"Name": "profile"}
    assert base64.b64decode(params["UserData"]).decode() == "<powershell>hi</powershell>"
    tags = {t["Key"]: t["Value"] for t in params["TagSpecifications"][0]["Tags"]}
    assert tags["userId"] == "u1"
    assert tags["purpose"] == "cloud-gaming"
    assert tags["team"] == "games"
    assert "createdAt" in tags and "managed-by" in tags


def test_create_instance_omits_optional_fields(manager, ec2):
    ec2.run_instances.return_value = {"Instances": [{"InstanceId": "i-1", "State": {"Name": "pending"}}]}
    manager.create_instance(InstanceConfig(user_id="u1", ami_id="ami-1"))
    params = ec2.run_instances.call_args.kwargs
    for key in ("KeyName", "SecurityGroupIds", "SubnetId", "IamInstanceProfile", "UserData"):
        assert key not in params


@pytest.mark.parametrize("code,expected", [
    ("InstanceLimitExceeded", BackendLimitExceeded),
    ("InvalidSubnetID.NotFound", ConfigurationError),
    ("InvalidGroup.NotFound", ConfigurationError),
    ("InvalidKeyPair.NotFound", ConfigurationError),
    ("InvalidAMIID.NotFound", ConfigurationError),
    ("UnauthorizedOperation", ProvisioningError),
])
def test_create_instance_maps_backend_errors(manager, ec2, code, expected):
    ec2.run_instances.side_effect = client_error(code, "RunInstances")
    with pytest.raises(expected):
        manager.create_instance(InstanceConfig(user_id="u1", ami_id="ami-1"))


def test_create_instance_with_no_instances_returned(manager, ec2):
    ec2.run_instances.return_value = {"Instances": []}
    with pytest.raises(ProvisioningError):
        manager.create_instance(InstanceConfig(user_id="u1", ami_id="ami-1"))


def test_wait_for_instance_running_returns_fresh_description(manager, ec2):
    ec2.describe_instances.return_value = describe_response(
        PublicIpAddress="54.1.2.3",
        LaunchTime=datetime(2024, 1, 1, tzinfo=timezone.utc),
    )
    result = manager.wait_for_instance_running("i-1", max_wait_seconds=60)

    ec2.get_waiter.assert_called_once_with("instance_running")
    waiter_config = ec2.get_waiter.return_value.wait.call_args.kwargs["WaiterConfig"]
    assert waiter_config == {"Delay": 5, "MaxAttempts": 12}
    assert result.public_ip == "54.1.2.3"
    assert result.state == "running"
    assert result.created_at.startswith("2024-01-01")


def test_wait_for_instance_running_timeout(manager, ec2):
    ec2.get_waiter.return_value.wait.side_effect = WaiterError(
        name="InstanceRunning", reason="Max attempts exceeded", last_response={}
    )
    with pytest.raises(WaiterTimedOut):
        manager.wait_for_instance_running("i-1")


def test_create_and_wait_wraps_errors_keeping_code(manager, ec2):
    ec2.run_instances.side_effect = client_error("InstanceLimitExceeded")
    with pytest.raises(ProvisioningError) as exc_info:
        manager.create_and_wait(InstanceConfig(user_id="u1", ami_id="ami-1"))
    assert exc_info.value.code == "BackendLimitExceeded"
    assert isinstance(exc_info.value.__cause__, BackendLimitExceeded)


def test_get_instance_details(manager, ec2):
    ec2.describe_instances.return_value = describe_response(
        PublicIpAddress="54.1.2.3",
        BlockDeviceMappings=[{"DeviceName": "/dev/sda1", "Ebs": {"VolumeId": "vol-1", "DeleteOnTermination": True}}],
        Tags=[{"Key": "dcvConfigured", "Value": "true"}],
    )
    details = manager.get_instance_details("i-1")
    assert details.state == "running"
    assert details.volumes[0].volume_id == "vol-1"
    assert details.volumes[0].delete_on_termination is True
    assert details.tags == {"dcvConfigured": "true"}
    assert manager.get_tag("i-1", "dcvConfigured") == "true"
    assert manager.get_tag("i-1", "missing") is None


def test_get_instance_details_not_found(manager, ec2):
    ec2.describe_instances.side_effect = client_error("InvalidInstanceID.NotFound")
    with pytest.raises(InstanceNotFound):
        manager.get_instance_details("i-1")


def test_describe_retries_throttling(manager, ec2, monkeypatch):
    sleeps = []
    monkeypatch.setattr("playstream.core.retry.time.sleep", sleeps.append)
    ec2.describe_instances.side_effect = [client_error("RequestLimitExceeded"), describe_response()]

    assert manager.get_instance_details("i-1").state == "running"
    assert ec2.describe_instances.call_count == 2
    assert len(sleeps) == 1


def test_set_tag(manager, ec2):
    manager.set_tag("i-1", "dcvConfigured", "true")
    ec2.create_tags.assert_called_once_with(Resources=["i-1"], Tags=[{"Key": "dcvConfigured", "Value": "true"}])


@pytest.mark.parametrize("state", ["shutting-down", "terminated"])
def test_terminate_is_idempotent_for_terminal_states(manager, ec2, state):
    ec2.describe_instances.return_value = describe_response(state=state)
    assert manager.can_terminate("i-1") is False

    result = manager.terminate_instance("i-1")
    assert result.was_already_terminated is True
    ec2.terminate_instances.assert_not_called()


def test_pending_instance_is_busy(manager, ec2):
    ec2.describe_instances.return_value = describe_response(state="pending")
    with pytest.raises(InstanceBusy):
        manager.can_terminate("i-1")
    with pytest.raises(InstanceBusy):
        manager.terminate_instance("i-1")
    ec2.terminate_instances.assert_not_called()


def test_missing_instance_cannot_be_terminated(manager, ec2):
    ec2.describe_instances.side_effect = client_error("InvalidInstanceID.NotFound")
    assert manager.can_terminate("i-1") is False


def test_stopping_instance_waits_for_stop(manager, ec2):
    ec2.describe_instances.return_value = describe_response(state="stopping")
    assert manager.can_terminate("i-1") is True
    ec2.get_waiter.assert_called_once_with("instance_stopped")


def test_stopping_instance_wait_failure(manager, ec2):
    ec2.describe_instances.return_value = describe_response(state="stopping")
    ec2.get_waiter.return_value.wait.side_effect = WaiterError(
        name="InstanceStopped", reason="Max attempts exceeded", last_response={}
    )
    with pytest.raises(WaiterTimedOut):
        manager.can_terminate("i-1")


def test_unknown_state_is_unsupported(manager, ec2):
    ec2.describe_instances.return_value = describe_response(state="rebooting")
    with pytest.raises(UnsupportedState):
        manager.can_terminate("i-1")


def test_terminate_running_instance(manager, ec2):
    ec2.describe_instances.return_value = describe_response(state="running")
    ec2.terminate_instances.return_value = {
        "TerminatingInstances": [{"InstanceId": "i-1", "CurrentState": {"Name": "shutting-down"}}]
    }
    result = manager.terminate_instance("i-1")
    assert result.state == "shutting-down"
    assert result.was_already_terminated is False
    ec2.terminate_instances.assert_called_once_with(InstanceIds=["i-1"])


def test_terminate_backend_error(manager, ec2):
    ec2.describe_instances.return_value = describe_response(state="running")
    ec2.terminate_instances.side_effect = client_error("UnauthorizedOperation")
    with pytest.raises(ProvisioningError):
        manager.terminate_instance("i-1")


def test_wait_for_termination_treats_not_found_as_terminated(manager, ec2):
    ec2.get_waiter.return_value.wait.side_effect = WaiterError(
        name="InstanceTerminated",
        reason="Waiter encountered a terminal failure state",
        last_response={"Error": {"Code": "InvalidInstanceID.NotFound"}},
    )
    result = manager.wait_for_termination("i-1")
    assert result.state == "terminated"


def test_wait_for_termination_after_purge(manager, ec2):
    ec2.describe_instances.side_effect = client_error("InvalidInstanceID.NotFound")
    assert manager.wait_for_termination("i-1").state == "terminated"


def test_terminate_and_wait_short_circuits(manager, ec2):
    ec2.describe_instances.return_value = describe_response(state="terminated")
    result = manager.terminate_and_wait("i-1")
    assert result.was_already_terminated is True
    ec2.get_waiter.assert_not_called()


def test_detach_volume(manager, ec2):
    ec2.detach_volume.return_value = {"State": "detaching"}
    result = manager.detach_volume("vol-1", "i-1")
    assert result.state == "detaching"
    ec2.detach_volume.assert_called_once_with(VolumeId="vol-1", InstanceId="i-1")


def test_snapshot_image(manager, ec2):
    ec2.create_image.return_value = {"ImageId": "ami-new"}
    assert manager.snapshot_image("i-1", "u1") == "ami-new"
    kwargs = ec2.create_image.call_args.kwargs
    assert kwargs["NoReboot"] is True
    resource_types = [spec["ResourceType"] for spec in kwargs["TagSpecifications"]]
    assert resource_types == ["image", "snapshot"]
    image_tags = {t["Key"]: t["Value"] for t in kwargs["TagSpecifications"][0]["Tags"]}
    assert image_tags["UserId"] == "u1"
    assert image_tags["SourceInstance"] == "i-1"


def test_snapshot_image_without_id(manager, ec2):
    ec2.create_image.return_value = {}
    with pytest.raises(ProvisioningError):
        manager.snapshot_image("i-1", "u1")
