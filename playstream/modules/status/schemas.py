from pydantic import BaseModel, Field
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union
from typing_extensions import Annotated


class StepInfo(BaseModel):
    name: str
    display_name: str
    order: int  # 1-based position in the workflow


class RunningStatus(BaseModel):
    status: Literal["RUNNING"] = "RUNNING"
    workflow_id: str
    execution_id: str
    current_step: Optional[StepInfo] = None
    completed_steps: int = 0
    completed_step_names: List[str] = Field(default_factory=list)  # in workflow order
    total_steps: int
    progress: int = 0
    message: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class SucceededStatus(BaseModel):
    status: Literal["SUCCEEDED"] = "SUCCEEDED"
    workflow_id: str
    execution_id: str
    instance_id: Optional[str] = None
    instance_arn: Optional[str] = None
    endpoint_url: Optional[str] = None
    completed_steps: int
    completed_step_names: List[str] = Field(default_factory=list)  # in workflow order
    total_steps: int
    progress: int = 100
    output: Dict[str, Any] = Field(default_factory=dict)
    message: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class FailedStatus(BaseModel):
    status: Literal["FAILED"] = "FAILED"
    workflow_id: str
    execution_id: str
    execution_status: str  # FAILED | TIMED_OUT | ABORTED
    error: str
    failed_step: Optional[str] = None
    completed_steps: int = 0
    completed_step_names: List[str] = Field(default_factory=list)  # in workflow order
    total_steps: int
    progress: int = 0
    message: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class NotFoundStatus(BaseModel):
    status: Literal["NOT_FOUND"] = "NOT_FOUND"
    user_id: str
    message: str


DeploymentStatus = Annotated[
    Union[RunningStatus, SucceededStatus, FailedStatus, NotFoundStatus],
    Field(discriminator="status"),
]
