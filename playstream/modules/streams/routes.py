from fastapi import APIRouter, Depends, Query, status

from playstream.core.dependencies import get_stream_service
from playstream.modules.status.schemas import DeploymentStatus
from playstream.modules.streams.schemas import (
    StreamingSessionResponse,
    StreamRequest,
    WorkflowStartedResponse,
)
from playstream.modules.streams.service import StreamService

router = APIRouter(prefix="/streams", tags=["streams"])


@router.post("/deploy", response_model=WorkflowStartedResponse, status_code=status.HTTP_202_ACCEPTED)
async def deploy_stream(
    request: StreamRequest,
    service: StreamService = Depends(get_stream_service),
):
    """Start provisioning a streaming instance. Poll /streams/status for progress."""
    return service.start_deploy_workflow(request.user_id)


@router.post("/terminate", response_model=WorkflowStartedResponse, status_code=status.HTTP_202_ACCEPTED)
async def terminate_stream(
    request: StreamRequest,
    service: StreamService = Depends(get_stream_service),
):
    return service.start_terminate_workflow(request.user_id)


@router.get("/status", response_model=DeploymentStatus)
def get_deployment_status(
    user_id: str = Query(..., min_length=1),
    service: StreamService = Depends(get_stream_service),
):
    """Progress of the user's latest deploy or terminate workflow"""
    return service.get_deployment_status(user_id)


@router.get("/session", response_model=StreamingSessionResponse)
def get_streaming_session(
    user_id: str = Query(..., min_length=1),
    service: StreamService = Depends(get_stream_service),
):
    return service.get_streaming_session(user_id)
