import json
import logging
from typing import Any, Dict, List, Optional

import boto3
from botocore.exceptions import ClientError

from playstream.config import settings
from playstream.core.errors import ExecutionAlreadyExists, ExecutionNotFound, OrchestratorError
from playstream.core.retry import client_error_code, retry_transient
from playstream.modules.workflows.orchestrator import Orchestrator
from playstream.modules.workflows.schemas import EventType, ExecutionDescription, ExecutionStatus, HistoryEvent

logger = logging.getLogger(__name__)

_TERMINAL_EVENTS = {
    "ExecutionStarted": EventType.EXECUTION_STARTED,
    "ExecutionSucceeded": EventType.EXECUTION_SUCCEEDED,
    "ExecutionFailed": EventType.EXECUTION_FAILED,
    "ExecutionTimedOut": EventType.EXECUTION_TIMED_OUT,
    "ExecutionAborted": EventType.EXECUTION_ABORTED,
}

_FAILURE_DETAIL_KEYS = {
    "TaskFailed": "taskFailedEventDetails",
    "LambdaFunctionFailed": "lambdaFunctionFailedEventDetails",
    "TaskTimedOut": "taskTimedOutEventDetails",
    "LambdaFunctionTimedOut": "lambdaFunctionTimedOutEventDetails",
}

_EXECUTION_DETAIL_KEYS = {
    "ExecutionFailed": "executionFailedEventDetails",
    "ExecutionTimedOut": "executionTimedOutEventDetails",
    "ExecutionAborted": "executionAbortedEventDetails",
}


def normalize_event(raw: Dict[str, Any]) -> Optional[HistoryEvent]:
    """Map a Step Functions history event onto HistoryEvent; None for event types we don't track."""
    event_type = raw.get("type", "")
    common = {"id": raw["id"], "timestamp": raw["timestamp"]}

    if event_type.endswith("StateEntered"):
        name = (raw.get("stateEnteredEventDetails") or {}).get("name")
        return HistoryEvent(type=EventType.STATE_ENTERED, step=name, **common)
    if event_type.endswith("StateExited"):
        name = (raw.get("stateExitedEventDetails") or {}).get("name")
        return HistoryEvent(type=EventType.STATE_EXITED, step=name, **common)
    if event_type in _FAILURE_DETAIL_KEYS:
        details = raw.get(_FAILURE_DETAIL_KEYS[event_type]) or {}
        return HistoryEvent(
            type=EventType.TASK_FAILED,
            error=details.get("error"),
            cause=details.get("cause"),
            **common,
        )
    if event_type in _TERMINAL_EVENTS:
        details = raw.get(_EXECUTION_DETAIL_KEYS.get(event_type, ""), {}) or {}
        return HistoryEvent(
            type=_TERMINAL_EVENTS[event_type],
            error=details.get("error"),
            cause=details.get("cause"),
            **common,
        )
    return None


def _load_json(value: Optional[str]) -> Optional[Dict[str, Any]]:
    if not value:
        return None
    try:
        loaded = json.loads(value)
    except ValueError:
        return {"raw": value}
    return loaded if isinstance(loaded, dict) else {"value": loaded}


class StepFunctionsOrchestrator(Orchestrator):
    """Run workflows as AWS Step Functions state machines whose tasks call ``handlers.step_handler``."""

    def __init__(self, sfn_client=None, state_machines: Optional[Dict[str, str]] = None):
        self.sfn = sfn_client or boto3.client("stepfunctions", **settings.aws_client_kwargs())
        if state_machines is None:
            state_machines = {
                "deploy": settings.deploy_state_machine_arn,
                "terminate": settings.terminate_state_machine_arn,
            }
        self.state_machines = {k: v for k, v in state_machines.items() if v}
        self._workflow_by_arn = {v: k for k, v in self.state_machines.items()}

    def start_execution(self, workflow_id: str, input: Dict[str, Any], name: Optional[str] = None) -> str:
        state_machine_arn = self.state_machines.get(workflow_id)
        if not state_machine_arn:
            raise OrchestratorError(f"No state machine configured for workflow {workflow_id}")

        params = {
            "stateMachineArn": state_machine_arn,
            "input": json.dumps({**input, "execution_name": name} if name else input),
        }
        if name:
            params["name"] = name

        try:
            response = self.sfn.start_execution(**params)
        except ClientError as e:
            if client_error_code(e) == "ExecutionAlreadyExists":
                raise ExecutionAlreadyExists(f"{workflow_id} execution {name} is already in progress") from e
            logger.error(f"Failed to start {workflow_id} execution: {e}")
            raise OrchestratorError(f"Failed to start {workflow_id} workflow: {e}") from e

        execution_arn = response["executionArn"]
        logger.info(f"Started {workflow_id} execution {execution_arn}")
        return execution_arn

    @retry_transient()
    def _describe(self, execution_id: str) -> Dict[str, Any]:
        try:
            return self.sfn.describe_execution(executionArn=execution_id)
        except ClientError as e:
            if client_error_code(e) in ("ExecutionDoesNotExist", "InvalidArn"):
                raise ExecutionNotFound(f"Execution {execution_id} not found") from e
            raise

    def describe_execution(self, execution_id: str) -> ExecutionDescription:
        try:
            response = self._describe(execution_id)
        except ExecutionNotFound:
            raise
        except ClientError as e:
            raise OrchestratorError(f"Failed to describe execution: {e}") from e

        return ExecutionDescription(
            execution_id=response["executionArn"],
            workflow_id=self._workflow_by_arn.get(response.get("stateMachineArn"), "unknown"),
            status=response["status"] if response["status"] in ExecutionStatus.__members__ else ExecutionStatus.RUNNING,
            input=_load_json(response.get("input")) or {},
            output=_load_json(response.get("output")),
            error=response.get("error"),
            cause=response.get("cause"),
            start_time=response.get("startDate"),
            end_time=response.get("stopDate"),
        )

    @retry_transient()
    def _history_pages(self, execution_id: str) -> List[Dict[str, Any]]:
        paginator = self.sfn.get_paginator("get_execution_history")
        raw_events: List[Dict[str, Any]] = []
        try:
            for page in paginator.paginate(executionArn=execution_id, reverseOrder=False):
                raw_events.extend(page.get("events", []))
        except ClientError as e:
            if client_error_code(e) in ("ExecutionDoesNotExist", "InvalidArn"):
                raise ExecutionNotFound(f"Execution {execution_id} not found") from e
            raise
        return raw_events

    def get_execution_history(self, execution_id: str) -> List[HistoryEvent]:
        try:
            raw_events = self._history_pages(execution_id)
        except ExecutionNotFound:
            raise
        except ClientError as e:
            raise OrchestratorError(f"Failed to read execution history: {e}") from e

        events = []
        for raw in raw_events:
            event = normalize_event(raw)
            if event is not None:
                events.append(event)
        return events
