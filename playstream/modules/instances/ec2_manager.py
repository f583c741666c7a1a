import base64
import logging
import math
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.exceptions import ClientError, WaiterError

from playstream.config import settings
from playstream.core.errors import (
    BackendLimitExceeded,
    ConfigurationError,
    InstanceBusy,
    InstanceNotFound,
    MissingImageId,
    ProvisioningError,
    StreamError,
    UnsupportedState,
    ValidationError,
    WaiterTimedOut,
)
from playstream.core.retry import client_error_code, retry_transient
from playstream.modules.instances.schemas import (
    DetachResult,
    InstanceConfig,
    InstanceDetails,
    InstanceResult,
    TerminateResult,
    VolumeAttachment,
)

logger = logging.getLogger(__name__)

NOT_FOUND_CODES = {"InvalidInstanceID.NotFound", "InvalidInstanceID.Malformed"}
WAITER_DELAY_SECONDS = 15


def generate_arn(region: str, account_id: str, instance_id: str) -> str:
    return f"arn:aws:ec2:{region}:{account_id}:instance/{instance_id}"


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class InstanceManager:
    """Creates, inspects and terminates the EC2 instances that host DCV sessions."""

    def __init__(self, ec2_client=None, region: Optional[str] = None, waiter_delay: int = WAITER_DELAY_SECONDS):
        self.region = region or settings.aws_region
        if ec2_client is None:
            kwargs = settings.aws_client_kwargs()
            kwargs["region_name"] = self.region
            ec2_client = boto3.client("ec2", **kwargs)
        self.ec2 = ec2_client
        self.waiter_delay = waiter_delay

    # --- Creation ---

    def _prepare_instance_input(self, config: InstanceConfig) -> Dict[str, Any]:
        tags = [
            {"Key": "userId", "Value": config.user_id},
            {"Key": "managed-by", "Value": settings.product_tag},
            {"Key": "createdAt", "Value": _now_iso()},
            {"Key": "purpose", "Value": "cloud-gaming"},
        ]
        tags.extend({"Key": k, "Value": v} for k, v in config.tags.items())

        params: Dict[str, Any] = {
            "ImageId": config.ami_id,
            "InstanceType": config.instance_type or settings.instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [{"ResourceType": "instance", "Tags": tags}],
        }
        if config.key_name:
            params["KeyName"] = config.key_name
        if config.security_group_ids:
            params["SecurityGroupIds"] = config.security_group_ids
        if config.subnet_id:
            params["SubnetId"] = config.subnet_id
        if config.iam_instance_profile:
            params["IamInstanceProfile"] = {"Name": config.iam_instance_profile}
        if config.user_data_script:
            params["UserData"] = base64.b64encode(config.user_data_script.encode("utf-8")).decode("ascii")
        return params

    def create_instance(self, config: InstanceConfig) -> InstanceResult:
        """Launch one instance for a user. Does not wait for it to boot."""
        if not config.user_id or not config.user_id.strip():
            raise ValidationError("userId is required and cannot be empty")
        if not config.ami_id or not config.ami_id.strip():
            raise MissingImageId()

        params = self._prepare_instance_input(config)
        try:
            response = self.ec2.run_instances(**params)
        except ClientError as e:
            raise self._map_create_error(e, params) from e

        instances = response.get("Instances") or []
        if not instances or not instances[0].get("InstanceId"):
            raise ProvisioningError("No instances created")
        instance = instances[0]
        instance_id = instance["InstanceId"]
        logger.info(f"Launched instance {instance_id} for user {config.user_id}")

        return InstanceResult(
            instance_id=instance_id,
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
            state=instance.get("State", {}).get("Name", "unknown"),
            created_at=_now_iso(),
            instance_arn=generate_arn(self.region, self._account_id(response), instance_id),
        )

    def _map_create_error(self, error: ClientError, params: Dict[str, Any]) -> StreamError:
        code = client_error_code(error)
        if code == "InstanceLimitExceeded":
            return BackendLimitExceeded()
        if code == "InvalidSubnetID.NotFound":
            return ConfigurationError(f"Subnet ID {params.get('SubnetId')} not found")
        if code == "InvalidGroup.NotFound":
            return ConfigurationError("One or more security groups not found")
        if code == "InvalidKeyPair.NotFound":
            return ConfigurationError(f"Key pair '{params.get('KeyName')}' not found")
        if code == "InvalidAMIID.NotFound":
            return ConfigurationError("AMI ID not found")
        return ProvisioningError(f"Failed to create EC2 instance: {error}")

    def _account_id(self, payload: Dict[str, Any]) -> str:
        return payload.get("OwnerId") or settings.aws_account_id

    def _wait(self, waiter_name: str, instance_id: str, max_wait_seconds: int) -> None:
        max_attempts = max(1, math.ceil(max_wait_seconds / self.waiter_delay))
        waiter = self.ec2.get_waiter(waiter_name)
        waiter.wait(
            InstanceIds=[instance_id],
            WaiterConfig={"Delay": self.waiter_delay, "MaxAttempts": max_attempts},
        )

    def wait_for_instance_running(self, instance_id: str, max_wait_seconds: int = 300) -> InstanceResult:
        """Block until the instance reports running, then return its fresh description."""
        try:
            self._wait("instance_running", instance_id, max_wait_seconds)
        except WaiterError as e:
            if "Max attempts exceeded" in str(e):
                raise WaiterTimedOut(
                    f"Timeout waiting for instance {instance_id} to reach running state"
                ) from e
            raise ProvisioningError(f"Error waiting for instance {instance_id}: {e}") from e

        instance, owner_id = self._describe(instance_id)
        launch_time = instance.get("LaunchTime")
        return InstanceResult(
            instance_id=instance.get("InstanceId", instance_id),
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
            state=instance.get("State", {}).get("Name", "running"),
            created_at=launch_time.isoformat() if launch_time else _now_iso(),
            instance_arn=generate_arn(self.region, owner_id, instance_id),
        )

    def create_and_wait(self, config: InstanceConfig, wait_for_running: bool = True) -> InstanceResult:
        try:
            result = self.create_instance(config)
            if wait_for_running:
                return self.wait_for_instance_running(result.instance_id, settings.instance_wait_seconds)
            return result
        except StreamError as e:
            raise ProvisioningError(
                f"Failed to create and wait for instance: {e.message}", code=e.code
            ) from e

    # --- Inspection ---

    @retry_transient()
    def _describe(self, instance_id: str) -> Tuple[Dict[str, Any], str]:
        try:
            response = self.ec2.describe_instances(InstanceIds=[instance_id])
        except ClientError as e:
            if client_error_code(e) in NOT_FOUND_CODES:
                raise InstanceNotFound(f"{InstanceNotFound.default_message}: {instance_id}") from e
            raise
        reservations = response.get("Reservations") or []
        if not reservations or not reservations[0].get("Instances"):
            raise InstanceNotFound(f"{InstanceNotFound.default_message}: {instance_id}")
        reservation = reservations[0]
        return reservation["Instances"][0], self._account_id(reservation)

    def get_instance_details(self, instance_id: str) -> InstanceDetails:
        try:
            instance, _ = self._describe(instance_id)
        except InstanceNotFound:
            raise
        except Exception as e:
            logger.error(f"Failed to retrieve instance details for {instance_id}: {e}")
            raise

        return InstanceDetails(
            instance_id=instance.get("InstanceId", instance_id),
            state=instance.get("State", {}).get("Name"),
            public_ip=instance.get("PublicIpAddress"),
            private_ip=instance.get("PrivateIpAddress"),
            volumes=[
                VolumeAttachment(
                    volume_id=bdm.get("Ebs", {}).get("VolumeId"),
                    device_name=bdm.get("DeviceName"),
                    delete_on_termination=bdm.get("Ebs", {}).get("DeleteOnTermination"),
                )
                for bdm in instance.get("BlockDeviceMappings", [])
            ],
            tags={t["Key"]: t.get("Value", "") for t in instance.get("Tags", [])},
        )

    def get_tag(self, instance_id: str, key: str) -> Optional[str]:
        return self.get_instance_details(instance_id).tags.get(key)

    def set_tag(self, instance_id: str, key: str, value: str) -> None:
        self.ec2.create_tags(Resources=[instance_id], Tags=[{"Key": key, "Value": value}])

    # --- Termination ---

    def can_terminate(self, instance_id: str) -> bool:
        """Decide from the current state whether a terminate call should be issued."""
        try:
            state = self.get_instance_details(instance_id).state
        except InstanceNotFound:
            logger.info(f"Instance {instance_id} not found; treating as already terminated")
            return False

        if state == "pending":
            raise InstanceBusy(f"Instance {instance_id} is pending and cannot be terminated yet")
        if state == "stopping":
            return self._handle_stopping_state(instance_id)
        if state == "shutting-down":
            logger.info(f"Instance {instance_id} is shutting down. Already being terminated.")
            return False
        if state == "terminated":
            logger.info(f"Instance {instance_id} is already terminated.")
            return False
        if state in ("running", "stopped"):
            return True
        raise UnsupportedState(f"Unknown or unsupported instance state: {state}")

    def _handle_stopping_state(self, instance_id: str, max_wait_seconds: int = 300) -> bool:
        logger.info(f"Instance {instance_id} is stopping. Waiting for it to stop...")
        try:
            self._wait("instance_stopped", instance_id, max_wait_seconds)
        except WaiterError as e:
            raise WaiterTimedOut(f"Timeout or error waiting for instance {instance_id} to stop.") from e
        logger.info(f"Instance {instance_id} has stopped.")
        return True

    def terminate_instance(self, instance_id: str) -> TerminateResult:
        if not self.can_terminate(instance_id):
            logger.info(f"Instance already terminated or terminating: {instance_id}")
            return TerminateResult(instance_id=instance_id, state="terminated", was_already_terminated=True)

        try:
            response = self.ec2.terminate_instances(InstanceIds=[instance_id])
        except ClientError as e:
            logger.error(f"Failed to terminate the instance {instance_id}: {e}")
            raise ProvisioningError(f"Failed to terminate the instance: {e}") from e

        terminating = response.get("TerminatingInstances") or []
        if not terminating:
            raise ProvisioningError("Failed to terminate the instance")
        current = terminating[0]
        return TerminateResult(
            instance_id=current.get("InstanceId", instance_id),
            state=current.get("CurrentState", {}).get("Name", "shutting-down"),
            was_already_terminated=False,
        )

    def wait_for_termination(self, instance_id: str, max_wait_seconds: int = 300) -> TerminateResult:
        """Poll until terminated. A purged (not found) instance counts as terminated."""
        try:
            self._wait("instance_terminated", instance_id, max_wait_seconds)
            details = self.get_instance_details(instance_id)
        except InstanceNotFound:
            return TerminateResult(instance_id=instance_id, state="terminated")
        except WaiterError as e:
            last_code = (e.last_response or {}).get("Error", {}).get("Code")
            if last_code in NOT_FOUND_CODES:
                return TerminateResult(instance_id=instance_id, state="terminated")
            logger.error(f"Failed to wait for termination of the instance {instance_id}: {e}")
            raise WaiterTimedOut(f"Failed to wait for termination of the instance: {e}") from e
        return TerminateResult(instance_id=instance_id, state=details.state or "unknown")

    def terminate_and_wait(self, instance_id: str, max_wait_seconds: int = 300) -> TerminateResult:
        result = self.terminate_instance(instance_id)
        if result.was_already_terminated:
            return result
        return self.wait_for_termination(instance_id, max_wait_seconds)

    # --- Storage ---

    def detach_volume(self, volume_id: str, instance_id: str) -> DetachResult:
        response = self.ec2.detach_volume(VolumeId=volume_id, InstanceId=instance_id)
        return DetachResult(volume_id=volume_id, state=response.get("State", "detaching"))

    def snapshot_image(self, instance_id: str, user_id: str) -> str:
        """Capture an AMI from the instance without rebooting it."""
        created_at = _now_iso()
        timestamp = created_at.replace(":", "-").replace(".", "-")
        owner = user_id or instance_id
        image_name = f"{settings.product_tag}-dcv-{owner}-{timestamp}"
        image_tags = [
            {"Key": "Name", "Value": image_name},
            {"Key": "CreatedBy", "Value": settings.product_tag},
            {"Key": "CreatedAt", "Value": created_at},
            {"Key": "SourceInstance", "Value": instance_id},
            {"Key": "Purpose", "Value": "cloud-gaming"},
            {"Key": "HasDCV", "Value": "true"},
        ]
        if user_id:
            image_tags.append({"Key": "UserId", "Value": user_id})

        response = self.ec2.create_image(
            InstanceId=instance_id,
            Name=image_name,
            Description=f"DCV gaming snapshot for {owner} - Created {created_at}",
            NoReboot=True,
            TagSpecifications=[
                {"ResourceType": "image", "Tags": image_tags},
                {
                    "ResourceType": "snapshot",
                    "Tags": [
                        {"Key": "Name", "Value": f"{image_name}-snapshot"},
                        {"Key": "CreatedBy", "Value": settings.product_tag},
                        {"Key": "SourceInstance", "Value": instance_id},
                    ],
                },
            ],
        )
        image_id = response.get("ImageId")
        if not image_id:
            raise ProvisioningError(f"AMI ID is undefined for this instance {instance_id}")
        logger.info(f"AMI created: {image_id}")
        return image_id
