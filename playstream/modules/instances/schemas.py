from pydantic import BaseModel, Field
from typing import Optional, Dict, List


class InstanceConfig(BaseModel):
    user_id: str = ""
    ami_id: str = ""
    instance_type: Optional[str] = None
    key_name: Optional[str] = None
    security_group_ids: List[str] = Field(default_factory=list)
    subnet_id: Optional[str] = None
    iam_instance_profile: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    user_data_script: Optional[str] = None


class InstanceResult(BaseModel):
    instance_id: str
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    state: str
    created_at: str
    instance_arn: str


class VolumeAttachment(BaseModel):
    volume_id: Optional[str] = None
    device_name: Optional[str] = None
    delete_on_termination: Optional[bool] = None


class InstanceDetails(BaseModel):
    instance_id: str
    state: Optional[str] = None
    public_ip: Optional[str] = None
    private_ip: Optional[str] = None
    volumes: List[VolumeAttachment] = Field(default_factory=list)
    tags: Dict[str, str] = Field(default_factory=dict)


class TerminateResult(BaseModel):
    instance_id: str
    state: str
    was_already_terminated: bool = False


class DetachResult(BaseModel):
    volume_id: str
    state: str
