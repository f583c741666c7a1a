from pydantic import BaseModel, Field
from typing import Optional
from datetime import datetime


class StreamRequest(BaseModel):
    user_id: str = Field(..., min_length=1)


class WorkflowStartedResponse(BaseModel):
    execution_id: str
    workflow_id: str
    user_id: str


class StreamingSessionResponse(BaseModel):
    endpoint: str
    username: str
    password: Optional[str] = None
    session_id: str
    instance_id: str
    instance_arn: str
    host: str
    port: int
    streaming_link: str
    created_at: Optional[datetime] = None

    class Config:
        from_attributes = True
