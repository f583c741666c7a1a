import logging
import re
from typing import Optional
from urllib.parse import quote

from playstream.core.errors import (
    NoActiveInstance,
    OrchestratorError,
    SessionNotFound,
    StreamError,
    ValidationError,
)
from playstream.modules.registry.base import RegistryStore
from playstream.modules.registry.schemas import (
    GamingInstance,
    InstanceStatus,
    placeholder_instance_id,
    utcnow,
)
from playstream.modules.status.aggregator import StatusAggregator
from playstream.modules.status.schemas import DeploymentStatus
from playstream.modules.streams.schemas import StreamingSessionResponse, WorkflowStartedResponse
from playstream.modules.workflows.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

_NAME_UNSAFE = re.compile(r"[^A-Za-z0-9_-]")


def execution_name(user_id: str, suffix: str = "") -> str:
    """Unique, orchestrator-safe execution name: ``<user>[-suffix]-<epoch ms>``."""
    safe_user = _NAME_UNSAFE.sub("-", user_id)[:48]
    stamp = int(utcnow().timestamp() * 1000)
    return f"{safe_user}-{suffix}-{stamp}" if suffix else f"{safe_user}-{stamp}"


class StreamService:
    def __init__(
        self,
        registry: RegistryStore,
        orchestrator: Orchestrator,
        status: Optional[StatusAggregator] = None,
    ):
        self.registry = registry
        self.orchestrator = orchestrator
        self.status = status or StatusAggregator(registry, orchestrator)

    def start_deploy_workflow(self, user_id: str) -> WorkflowStartedResponse:
        """Record a placeholder instance for the user and start the deploy workflow."""
        if not user_id:
            raise ValidationError("userId is required")

        name = execution_name(user_id)
        placeholder_id = placeholder_instance_id(name)
        self.registry.put_instance(GamingInstance(
            instance_id=placeholder_id,
            user_id=user_id,
            status=InstanceStatus.DEPLOYING,
            creation_time=utcnow(),
        ))

        try:
            execution_id = self.orchestrator.start_execution("deploy", {"user_id": user_id}, name=name)
        except Exception as e:
            logger.error(f"Error starting deploy workflow for {user_id}: {str(e)}")
            self.registry.update_instance(placeholder_id, status=InstanceStatus.TERMINATED, terminated_at=utcnow())
            if isinstance(e, StreamError):
                raise
            raise OrchestratorError(f"Failed to start deploy workflow: {str(e)}") from e

        if self.registry.update_instance(placeholder_id, execution_id=execution_id) is None:
            # Inline executions may already have swapped the placeholder for the real record
            logger.debug(f"Placeholder {placeholder_id} already reconciled")

        logger.info(f"Started deploy execution {execution_id} for user {user_id}")
        return WorkflowStartedResponse(execution_id=execution_id, workflow_id="deploy", user_id=user_id)

    def start_terminate_workflow(self, user_id: str) -> WorkflowStartedResponse:
        if not user_id:
            raise ValidationError("userId is required")

        instance = self.registry.current_instance_for_user(user_id)
        if instance is None:
            raise NoActiveInstance(f"No instance found for user {user_id}")

        try:
            execution_id = self.orchestrator.start_execution(
                "terminate", {"user_id": user_id}, name=execution_name(user_id, "terminate")
            )
        except StreamError:
            raise
        except Exception as e:
            logger.error(f"Error starting terminate workflow for {user_id}: {str(e)}")
            raise OrchestratorError(f"Failed to start terminate workflow: {str(e)}") from e

        # Status polling follows whichever execution last touched the record
        self.registry.update_instance(instance.instance_id, execution_id=execution_id)
        logger.info(f"Started terminate execution {execution_id} for user {user_id}")
        return WorkflowStartedResponse(execution_id=execution_id, workflow_id="terminate", user_id=user_id)

    def get_deployment_status(self, user_id: str) -> DeploymentStatus:
        if not user_id:
            raise ValidationError("userId query parameter is required")
        return self.status.get_deployment_status(user_id)

    def get_streaming_session(self, user_id: str, include_password: bool = True) -> StreamingSessionResponse:
        """Most recent streaming session for the user."""
        if not user_id:
            raise ValidationError("userId query parameter is required")

        sessions = self.registry.list_sessions_by_user(user_id)
        if not sessions:
            raise SessionNotFound(f"No streaming session found for userId: {user_id}")

        session = sessions[0]
        return StreamingSessionResponse(
            endpoint=f"{session.streaming_link}?session-id={quote(session.session_id, safe='')}",
            username=session.username,
            password=session.password if include_password else None,
            session_id=session.session_id,
            instance_id=session.instance_id,
            instance_arn=session.instance_arn,
            host=session.host,
            port=session.port,
            streaming_link=session.streaming_link,
            created_at=session.created_at,
        )
