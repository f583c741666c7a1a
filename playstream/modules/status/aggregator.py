"""
Deployment status from an execution's event history.

The history is replayed against the workflow's static step list: the most
recently entered step is the current one and exited steps count as
completed. Only names from the step list count, each once, so progress never
exceeds 100%.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

from playstream.core.errors import ExecutionNotFound
from playstream.modules.registry.base import RegistryStore
from playstream.modules.registry.schemas import GamingInstance
from playstream.modules.status.schemas import (
    DeploymentStatus,
    FailedStatus,
    NotFoundStatus,
    RunningStatus,
    StepInfo,
    SucceededStatus,
)
from playstream.modules.workflows.deploy import DEPLOY_WORKFLOW
from playstream.modules.workflows.orchestrator import Orchestrator
from playstream.modules.workflows.schemas import (
    EventType,
    ExecutionDescription,
    ExecutionStatus,
    HistoryEvent,
)
from playstream.modules.workflows.state_machine import WorkflowDefinition
from playstream.modules.workflows.terminate import TERMINATE_WORKFLOW

logger = logging.getLogger(__name__)


def step_list(definition: WorkflowDefinition) -> List[StepInfo]:
    return [
        StepInfo(name=spec.name, display_name=spec.display_name, order=position)
        for position, spec in enumerate(definition.steps, start=1)
    ]


DEPLOY_STEPS = step_list(DEPLOY_WORKFLOW)
TERMINATE_STEPS = step_list(TERMINATE_WORKFLOW)

STEPS_BY_WORKFLOW: Dict[str, List[StepInfo]] = {
    DEPLOY_WORKFLOW.workflow_id: DEPLOY_STEPS,
    TERMINATE_WORKFLOW.workflow_id: TERMINATE_STEPS,
}


@dataclass
class Progress:
    current_step: Optional[StepInfo]
    completed_steps: int
    total_steps: int
    progress: int
    succeeded: bool = False
    completed_step_names: List[str] = field(default_factory=list)


@dataclass
class FailureDetails:
    error: str
    message: str
    step: Optional[str] = None


def summarize_progress(events: List[HistoryEvent], steps: List[StepInfo]) -> Progress:
    by_name = {s.name: s for s in steps}
    current: Optional[StepInfo] = None
    completed: Set[str] = set()
    succeeded = False

    for event in events:
        if event.type == EventType.STATE_ENTERED and event.step in by_name:
            current = by_name[event.step]
        elif event.type == EventType.STATE_EXITED and event.step in by_name:
            completed.add(event.step)
        elif event.type == EventType.EXECUTION_SUCCEEDED:
            succeeded = True

    total = len(steps)
    if succeeded:
        return Progress(
            steps[-1] if steps else None, total, total, 100,
            succeeded=True, completed_step_names=[s.name for s in steps],
        )

    progress = round(len(completed) / total * 100) if total else 0
    names = [s.name for s in steps if s.name in completed]
    return Progress(current, len(completed), total, progress, completed_step_names=names)


def _readable_cause(cause: Optional[str]) -> Optional[str]:
    """Task causes from a hosted runtime are often JSON with an errorMessage field."""
    if not cause:
        return cause
    try:
        parsed = json.loads(cause)
    except ValueError:
        return cause
    if isinstance(parsed, dict) and parsed.get("errorMessage"):
        return parsed["errorMessage"]
    return cause


def find_error_details(events: List[HistoryEvent], description: ExecutionDescription) -> FailureDetails:
    for index in range(len(events) - 1, -1, -1):
        event = events[index]
        if event.type != EventType.TASK_FAILED:
            continue
        step = event.step
        if step is None:
            for earlier in reversed(events[:index]):
                if earlier.type == EventType.STATE_ENTERED:
                    step = earlier.step
                    break
        return FailureDetails(
            error=event.error or "TaskFailed",
            message=_readable_cause(event.cause) or "Task execution failed",
            step=step,
        )

    if description.error or description.cause:
        return FailureDetails(
            error=description.error or description.status.value,
            message=_readable_cause(description.cause) or "Execution failed",
        )

    output = description.output or {}
    return FailureDetails(
        error=output.get("error") or description.status.value,
        message=output.get("message") or f"Execution {description.status.value.lower()}",
    )


def most_recently_active(instances: List[GamingInstance]) -> Optional[GamingInstance]:
    """The record a workflow touched last; terminate executions re-stamp the record they act on."""
    if not instances:
        return None
    return max(instances, key=lambda i: i.last_modified_time or i.creation_time)


class StatusAggregator:
    def __init__(self, registry: RegistryStore, orchestrator: Orchestrator):
        self.registry = registry
        self.orchestrator = orchestrator

    def get_deployment_status(self, user_id: str) -> DeploymentStatus:
        instance = most_recently_active(self.registry.list_instances_by_user(user_id))
        if instance is None:
            return NotFoundStatus(user_id=user_id, message=f"No instance found for user {user_id}")
        if not instance.execution_id:
            return NotFoundStatus(user_id=user_id, message=f"No active deployment found for user {user_id}")

        try:
            description = self.orchestrator.describe_execution(instance.execution_id)
            events = self.orchestrator.get_execution_history(instance.execution_id)
        except ExecutionNotFound:
            logger.info(f"Execution {instance.execution_id} for user {user_id} no longer exists")
            return NotFoundStatus(user_id=user_id, message=f"No active deployment found for user {user_id}")

        return self.build_status(description, events)

    def build_status(self, description: ExecutionDescription, events: List[HistoryEvent]) -> DeploymentStatus:
        steps = STEPS_BY_WORKFLOW.get(description.workflow_id, DEPLOY_STEPS)
        summary = summarize_progress(events, steps)
        common = {
            "workflow_id": description.workflow_id,
            "execution_id": description.execution_id,
            "total_steps": summary.total_steps,
            "completed_step_names": summary.completed_step_names,
            "started_at": description.start_time,
            "completed_at": description.end_time,
        }

        if description.status == ExecutionStatus.SUCCEEDED:
            output = description.output or {}
            return SucceededStatus(
                instance_id=output.get("instance_id"),
                instance_arn=output.get("instance_arn"),
                endpoint_url=output.get("endpoint_url"),
                completed_steps=summary.total_steps,
                output=output,
                message=output.get("message") or "Workflow completed",
                **common,
            )

        if description.status == ExecutionStatus.RUNNING:
            current = summary.current_step
            return RunningStatus(
                current_step=current,
                completed_steps=summary.completed_steps,
                progress=summary.progress,
                message=current.display_name if current else "Workflow starting",
                **common,
            )

        details = find_error_details(events, description)
        return FailedStatus(
            execution_status=description.status.value,
            error=details.error,
            failed_step=details.step,
            completed_steps=summary.completed_steps,
            progress=summary.progress,
            message=details.message,
            **common,
        )
