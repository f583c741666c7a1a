from pydantic import BaseModel
from typing import Optional


class SessionEndpoint(BaseModel):
    url: str
    session_id: str


class TlsConfigResult(BaseModel):
    success: bool
    password_set: bool
    ssl_configured: bool
    message: str


class StopSessionResult(BaseModel):
    instance_id: Optional[str] = None
    stopped_successfully: bool
    message: str
