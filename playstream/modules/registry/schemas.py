from pydantic import BaseModel
from typing import Optional
from datetime import datetime, timezone
from enum import Enum

PLACEHOLDER_PREFIX = "pending-"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class InstanceStatus(str, Enum):
    DEPLOYING = "deploying"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"


def placeholder_instance_id(execution_name: str) -> str:
    return f"{PLACEHOLDER_PREFIX}{execution_name}"


class GamingInstance(BaseModel):
    instance_id: str
    user_id: str
    arn: Optional[str] = None
    status: InstanceStatus = InstanceStatus.DEPLOYING
    execution_id: Optional[str] = None
    creation_time: datetime
    last_modified_time: Optional[datetime] = None
    terminated_at: Optional[datetime] = None

    @property
    def is_placeholder(self) -> bool:
        return self.instance_id.startswith(PLACEHOLDER_PREFIX)

    @property
    def is_terminated(self) -> bool:
        return self.status == InstanceStatus.TERMINATED

    class Config:
        from_attributes = True


class StreamingSession(BaseModel):
    instance_arn: str
    instance_id: str
    user_id: str
    session_id: str
    host: str
    port: int
    username: str
    password: str
    streaming_link: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class UserLock(BaseModel):
    user_id: str
    execution_id: str
    acquired_at: datetime
