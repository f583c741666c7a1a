"""
Deploy workflow: provision a streaming instance and open a DCV session for a user.

CheckExistingStream -> CheckStreamValidity -> ProvisionInstance ->
WaitInstanceRunning -> ConfigureSession -> PersistSessionRecord -> Success
"""
import logging
from typing import Any, Dict

from playstream.config import settings
from playstream.core.errors import StreamAlreadyActive
from playstream.modules.instances.schemas import InstanceConfig
from playstream.modules.registry.schemas import (
    GamingInstance,
    InstanceStatus,
    StreamingSession,
    placeholder_instance_id,
    utcnow,
)
from playstream.modules.sessions import scripts
from playstream.modules.workflows.schemas import DeployContext, ExecutionStatus, fail, succeed
from playstream.modules.workflows.state_machine import StepSpec, WorkflowDefinition, WorkflowDeps

logger = logging.getLogger(__name__)

WORKFLOW_ID = "deploy"


def _lock_owner(ctx: DeployContext) -> str:
    return ctx.execution_id or ctx.execution_name or ctx.user_id


def _placeholder_id(ctx: DeployContext) -> str:
    return placeholder_instance_id(ctx.execution_name or ctx.execution_id)


def check_existing_stream(ctx: DeployContext, deps: WorkflowDeps):
    acquired = deps.registry.acquire_lock(ctx.user_id, _lock_owner(ctx))
    sessions = deps.registry.list_sessions_by_user(ctx.user_id)
    # Includes instances left behind by a failed deploy that have no session yet
    live = [
        i for i in deps.registry.list_instances_by_user(ctx.user_id)
        if not i.is_terminated and not i.is_placeholder
    ]
    if not acquired:
        logger.info(f"Deploy lock for user {ctx.user_id} is held by another execution")
    if sessions:
        logger.info(f"User {ctx.user_id} already has {len(sessions)} streaming session(s)")
    if live:
        logger.info(f"User {ctx.user_id} already has live instance {live[0].instance_id}")
    return succeed(streams_running=bool(sessions or live) or not acquired, lock_acquired=acquired)


def check_stream_validity(ctx: DeployContext, deps: WorkflowDeps):
    if ctx.streams_running:
        return fail(StreamAlreadyActive.code, f"User {ctx.user_id} already has an active stream")
    return succeed()


def provision_instance(ctx: DeployContext, deps: WorkflowDeps):
    ami_id = deps.parameters.get_parameter(settings.ami_parameter_name)
    password = scripts.generate_password()

    config = InstanceConfig(
        user_id=ctx.user_id,
        ami_id=ami_id,
        instance_type=settings.instance_type,
        key_name=settings.key_pair_name,
        security_group_ids=[settings.security_group_id] if settings.security_group_id else [],
        subnet_id=settings.subnet_id,
        iam_instance_profile=settings.instance_profile_name,
        tags={"executionId": ctx.execution_id} if ctx.execution_id else {},
        user_data_script=scripts.windows_user_data(password, deps.sessions.dcv_user),
    )
    result = deps.instances.create_instance(config)
    logger.info(f"Provisioned instance {result.instance_id} for user {ctx.user_id}")
    return succeed(instance_id=result.instance_id, instance_arn=result.instance_arn, password=password)


def wait_instance_running(ctx: DeployContext, deps: WorkflowDeps):
    result = deps.instances.wait_for_instance_running(ctx.instance_id, settings.instance_wait_seconds)
    return succeed(public_ip=result.public_ip, instance_arn=result.instance_arn or ctx.instance_arn)


def configure_session(ctx: DeployContext, deps: WorkflowDeps):
    endpoint = deps.sessions.ensure_session_ready(ctx.instance_id, ctx.user_id)
    tls = deps.sessions.configure_tls_and_password(ctx.instance_id, ctx.public_ip, ctx.password)

    if tls.success:
        message = "Streaming session ready"
    else:
        # Session is usable without a certificate or the new password
        message = f"Streaming session ready with degraded security ({tls.message})"
        logger.warning(f"Instance {ctx.instance_id}: {message}")

    return succeed(
        session_id=endpoint.session_id,
        endpoint_url=endpoint.url,
        password_set=tls.password_set,
        ssl_configured=tls.ssl_configured,
        configure_message=tls.message,
        message=message,
    )


def persist_session_record(ctx: DeployContext, deps: WorkflowDeps):
    # Claim the placeholder first so a cancelled deploy never writes a session
    deps.registry.replace_placeholder(_placeholder_id(ctx), GamingInstance(
        instance_id=ctx.instance_id,
        user_id=ctx.user_id,
        arn=ctx.instance_arn,
        status=InstanceStatus.RUNNING,
        execution_id=ctx.execution_id,
        creation_time=utcnow(),
    ))

    port = deps.sessions.dcv_port
    deps.registry.put_session(StreamingSession(
        instance_arn=ctx.instance_arn,
        instance_id=ctx.instance_id,
        user_id=ctx.user_id,
        session_id=ctx.session_id,
        host=ctx.public_ip,
        port=port,
        username=deps.sessions.dcv_user,
        password=ctx.password,
        streaming_link=f"https://{scripts.nip_domain(ctx.public_ip)}:{port}",
    ))
    return succeed()


def deploy_output(ctx: DeployContext) -> Dict[str, Any]:
    return {
        "instance_id": ctx.instance_id,
        "instance_arn": ctx.instance_arn,
        "endpoint_url": ctx.endpoint_url,
        "password_set": ctx.password_set,
        "ssl_configured": ctx.ssl_configured,
        "message": ctx.message,
    }


def _terminate_cancelled_instance(ctx: DeployContext, deps: WorkflowDeps) -> None:
    status = InstanceStatus.TERMINATED
    terminated_at = utcnow()
    try:
        deps.instances.terminate_instance(ctx.instance_id)
        logger.info(f"Terminated instance {ctx.instance_id} of cancelled deploy for user {ctx.user_id}")
    except Exception as e:
        # Left findable so a later terminate can retry
        logger.error(f"Error terminating instance {ctx.instance_id} of cancelled deploy: {str(e)}")
        status = InstanceStatus.DEPLOYING
        terminated_at = None

    deps.registry.put_instance(GamingInstance(
        instance_id=ctx.instance_id,
        user_id=ctx.user_id,
        arn=ctx.instance_arn,
        status=status,
        execution_id=ctx.execution_id,
        creation_time=utcnow(),
        terminated_at=terminated_at,
    ))


def finish_deploy(ctx: DeployContext, status: ExecutionStatus, deps: WorkflowDeps) -> None:
    """Release the user lock and reconcile the placeholder of a failed deploy.

    A provisioned instance that never got recorded replaces the placeholder
    so terminate can find it; otherwise the placeholder is closed out. When a
    terminate already closed the placeholder, the launched instance is
    terminated here and recorded on its own.
    """
    try:
        if status != ExecutionStatus.SUCCEEDED:
            placeholder = deps.registry.get_instance(_placeholder_id(ctx))
            if placeholder is not None and ctx.instance_id and placeholder.is_terminated:
                _terminate_cancelled_instance(ctx, deps)
            elif placeholder is not None and not ctx.instance_id:
                now = utcnow()
                deps.registry.update_instance(
                    placeholder.instance_id,
                    status=InstanceStatus.TERMINATED,
                    terminated_at=now,
                    last_modified_time=now,
                )
            elif placeholder is not None:
                deps.registry.replace_placeholder(placeholder.instance_id, GamingInstance(
                    instance_id=ctx.instance_id,
                    user_id=ctx.user_id,
                    arn=ctx.instance_arn,
                    status=InstanceStatus.DEPLOYING,
                    execution_id=ctx.execution_id,
                    creation_time=placeholder.creation_time,
                ))
                logger.info(f"Recorded orphaned instance {ctx.instance_id} for user {ctx.user_id}")
    finally:
        if ctx.lock_acquired:
            deps.registry.release_lock(ctx.user_id, _lock_owner(ctx))


DEPLOY_WORKFLOW = WorkflowDefinition(
    workflow_id=WORKFLOW_ID,
    context_model=DeployContext,
    steps=[
        StepSpec("CheckExistingStream", "Checking for existing streams", check_existing_stream),
        StepSpec("CheckStreamValidity", "Validating stream request", check_stream_validity),
        StepSpec("ProvisionInstance", "Provisioning EC2 instance", provision_instance),
        StepSpec("WaitInstanceRunning", "Waiting for instance to start", wait_instance_running),
        StepSpec("ConfigureSession", "Configuring DCV session", configure_session),
        StepSpec("PersistSessionRecord", "Saving session details", persist_session_record),
        StepSpec("Success", "Deployment complete"),
    ],
    output=deploy_output,
    on_finish=finish_deploy,
)
