"""
Shared fixtures: an in-memory registry, MagicMock AWS clients and a
WorkflowDeps bundle whose managers are mocks configured for a happy path.
"""
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from playstream.modules.commands.parameters import ParameterStore
from playstream.modules.commands.ssm_executor import CommandExecutor
from playstream.modules.instances.ec2_manager import InstanceManager
from playstream.modules.instances.schemas import (
    DetachResult,
    InstanceDetails,
    InstanceResult,
    TerminateResult,
    VolumeAttachment,
)
from playstream.modules.registry.memory import InMemoryRegistryStore
from playstream.modules.sessions.dcv_controller import SessionController
from playstream.modules.sessions.schemas import SessionEndpoint, StopSessionResult, TlsConfigResult
from playstream.modules.workflows.state_machine import WorkflowDeps

INSTANCE_ID = "i-0abc123"
INSTANCE_ARN = f"arn:aws:ec2:us-west-2:123456789012:instance/{INSTANCE_ID}"
PUBLIC_IP = "54.1.2.3"


def client_error(code: str, operation: str = "Operation", message: str = "boom") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": message}}, operation)


def ts(minute: int = 0) -> datetime:
    return datetime(2024, 1, 1, 12, minute, tzinfo=timezone.utc)


@pytest.fixture
def registry():
    return InMemoryRegistryStore()


@pytest.fixture
def instances():
    manager = MagicMock(spec=InstanceManager)
    manager.create_instance.return_value = InstanceResult(
        instance_id=INSTANCE_ID,
        state="pending",
        created_at="2024-01-01T12:00:00+00:00",
        instance_arn=INSTANCE_ARN,
    )
    manager.wait_for_instance_running.return_value = InstanceResult(
        instance_id=INSTANCE_ID,
        public_ip=PUBLIC_IP,
        private_ip="10.0.0.5",
        state="running",
        created_at="2024-01-01T12:00:00+00:00",
        instance_arn=INSTANCE_ARN,
    )
    manager.get_instance_details.return_value = InstanceDetails(
        instance_id=INSTANCE_ID,
        state="running",
        public_ip=PUBLIC_IP,
        volumes=[VolumeAttachment(volume_id="vol-1", device_name="/dev/sda1", delete_on_termination=True)],
    )
    manager.detach_volume.return_value = DetachResult(volume_id="vol-1", state="detaching")
    manager.terminate_instance.return_value = TerminateResult(instance_id=INSTANCE_ID, state="shutting-down")
    return manager


@pytest.fixture
def sessions():
    controller = MagicMock(spec=SessionController)
    controller.dcv_port = 8443
    controller.dcv_user = "Administrator"
    controller.ensure_session_ready.return_value = SessionEndpoint(
        url=f"https://{PUBLIC_IP}:8443?session-id=user-u1-session",
        session_id="user-u1-session",
    )
    controller.configure_tls_and_password.return_value = TlsConfigResult(
        success=True, password_set=True, ssl_configured=True, message="Password: OK, SSL: OK"
    )
    controller.stop_session.return_value = StopSessionResult(
        instance_id=INSTANCE_ID, stopped_successfully=True, message="closed"
    )
    return controller


@pytest.fixture
def parameters():
    store = MagicMock(spec=ParameterStore)
    store.get_parameter.return_value = "ami-0123456789"
    return store


@pytest.fixture
def deps(registry, instances, sessions, parameters):
    return WorkflowDeps(
        registry=registry,
        instances=instances,
        commands=MagicMock(spec=CommandExecutor),
        sessions=sessions,
        parameters=parameters,
    )
