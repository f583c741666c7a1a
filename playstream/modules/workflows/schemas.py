from pydantic import BaseModel, Field
from typing import Any, Dict, Literal, Optional, Union
from typing_extensions import Annotated
from datetime import datetime
from enum import Enum


# --- Step results: tagged union, no exceptions cross step boundaries ---

class StepSuccess(BaseModel):
    kind: Literal["success"] = "success"
    output: Dict[str, Any] = Field(default_factory=dict)
    next_step: Optional[str] = None  # overrides the definition's default transition


class StepFailure(BaseModel):
    kind: Literal["failure"] = "failure"
    error: str
    message: str


StepResult = Annotated[Union[StepSuccess, StepFailure], Field(discriminator="kind")]


def succeed(next_step: Optional[str] = None, **output: Any) -> StepSuccess:
    return StepSuccess(output=output, next_step=next_step)


def fail(error: str, message: str) -> StepFailure:
    return StepFailure(error=error, message=message)


# --- Execution model shared by all orchestrators ---

class ExecutionStatus(str, Enum):
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TIMED_OUT = "TIMED_OUT"
    ABORTED = "ABORTED"


class EventType(str, Enum):
    EXECUTION_STARTED = "ExecutionStarted"
    STATE_ENTERED = "StateEntered"
    STATE_EXITED = "StateExited"
    TASK_FAILED = "TaskFailed"
    EXECUTION_SUCCEEDED = "ExecutionSucceeded"
    EXECUTION_FAILED = "ExecutionFailed"
    EXECUTION_TIMED_OUT = "ExecutionTimedOut"
    EXECUTION_ABORTED = "ExecutionAborted"


class HistoryEvent(BaseModel):
    id: int
    type: EventType
    timestamp: datetime
    step: Optional[str] = None
    error: Optional[str] = None
    cause: Optional[str] = None


class ExecutionDescription(BaseModel):
    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    input: Dict[str, Any] = Field(default_factory=dict)
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    cause: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None


# --- Workflow contexts ---

class DeployContext(BaseModel):
    user_id: str
    execution_id: Optional[str] = None
    execution_name: Optional[str] = None
    streams_running: bool = False
    lock_acquired: bool = False
    instance_id: Optional[str] = None
    instance_arn: Optional[str] = None
    public_ip: Optional[str] = None
    password: Optional[str] = None
    session_id: Optional[str] = None
    endpoint_url: Optional[str] = None
    password_set: bool = False
    ssl_configured: bool = False
    configure_message: Optional[str] = None
    message: Optional[str] = None


class TerminateContext(BaseModel):
    user_id: str
    execution_id: Optional[str] = None
    execution_name: Optional[str] = None
    instance_id: Optional[str] = None
    instance_arn: Optional[str] = None
    already_terminated: bool = False
    placeholder: bool = False
    dcv_stopped: bool = False
    detach_volume_state: str = "skipped"
    terminate_instance_state: Optional[str] = None
    registry_update_status: str = "skipped"
    message: Optional[str] = None
