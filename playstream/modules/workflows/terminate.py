"""
Terminate workflow: tear down a user's streaming instance.

Only TerminateInstance must succeed. StopSession, DetachVolumes and
PersistTerminatedStatus record their outcome in the context and never fail
the execution.
"""
import logging
from typing import Any, Dict

from playstream.core.errors import NoActiveInstance, error_code_of
from playstream.modules.registry.schemas import InstanceStatus, utcnow
from playstream.modules.workflows.schemas import TerminateContext, fail, succeed
from playstream.modules.workflows.state_machine import StepSpec, WorkflowDefinition, WorkflowDeps

logger = logging.getLogger(__name__)

WORKFLOW_ID = "terminate"


def resolve_active_instance(ctx: TerminateContext, deps: WorkflowDeps):
    instance = deps.registry.current_instance_for_user(ctx.user_id)
    if instance is None:
        return fail(NoActiveInstance.code, f"No instance found for user {ctx.user_id}")

    found = {"instance_id": instance.instance_id, "instance_arn": instance.arn}
    if instance.is_terminated:
        logger.info(f"Instance {instance.instance_id} already terminated, nothing to do")
        return succeed(
            next_step="Success",
            already_terminated=True,
            message=f"Instance {instance.instance_id} already terminated",
            **found,
        )

    updates = {"status": InstanceStatus.TERMINATING}
    if ctx.execution_id:
        updates["execution_id"] = ctx.execution_id
    deps.registry.update_instance(instance.instance_id, **updates)

    if instance.is_placeholder:
        # Deploy never got as far as a real instance
        return succeed(next_step="PersistTerminatedStatus", placeholder=True, **found)
    return succeed(**found)


def stop_session(ctx: TerminateContext, deps: WorkflowDeps):
    result = deps.sessions.stop_session(ctx.instance_id)
    return succeed(dcv_stopped=result.stopped_successfully)


def detach_volumes(ctx: TerminateContext, deps: WorkflowDeps):
    try:
        details = deps.instances.get_instance_details(ctx.instance_id)
        volume_id = details.volumes[0].volume_id if details.volumes else None
        if not volume_id:
            return succeed(detach_volume_state="skipped")
        result = deps.instances.detach_volume(volume_id, ctx.instance_id)
        return succeed(detach_volume_state=result.state)
    except Exception as e:
        logger.warning(f"Failed to detach volume from {ctx.instance_id}: {str(e)}")
        return succeed(detach_volume_state=f"failed: {error_code_of(e)}")


def terminate_instance(ctx: TerminateContext, deps: WorkflowDeps):
    # Termination completes in the background; no waiter here
    result = deps.instances.terminate_instance(ctx.instance_id)
    return succeed(terminate_instance_state=result.state)


def persist_terminated_status(ctx: TerminateContext, deps: WorkflowDeps):
    try:
        now = utcnow()
        updated = deps.registry.update_instance(
            ctx.instance_id,
            status=InstanceStatus.TERMINATED,
            terminated_at=now,
            last_modified_time=now,
        )
        if ctx.instance_arn:
            deps.registry.delete_session(ctx.instance_arn)
        return succeed(registry_update_status="updated" if updated else "not_found")
    except Exception as e:
        logger.warning(f"Failed to update registry for {ctx.instance_id}: {str(e)}")
        return succeed(registry_update_status="failed")


def terminate_output(ctx: TerminateContext) -> Dict[str, Any]:
    if ctx.already_terminated:
        message = ctx.message
    else:
        message = f"Instance {ctx.instance_id} terminated successfully."
        if ctx.detach_volume_state.startswith("failed"):
            message += f" Warning: volume detach {ctx.detach_volume_state}."

    return {
        "success": True,
        "instance_id": ctx.instance_id,
        "already_terminated": ctx.already_terminated,
        "dcv_stopped": ctx.dcv_stopped,
        "detach_volume_state": ctx.detach_volume_state,
        "terminate_instance_state": ctx.terminate_instance_state,
        "registry_update_status": ctx.registry_update_status,
        "message": message,
    }


TERMINATE_WORKFLOW = WorkflowDefinition(
    workflow_id=WORKFLOW_ID,
    context_model=TerminateContext,
    steps=[
        StepSpec("ResolveActiveInstance", "Finding active instance", resolve_active_instance),
        StepSpec("StopSession", "Stopping DCV session", stop_session),
        StepSpec("DetachVolumes", "Detaching volumes", detach_volumes),
        StepSpec("TerminateInstance", "Terminating instance", terminate_instance),
        StepSpec("PersistTerminatedStatus", "Updating records", persist_terminated_status),
        StepSpec("Success", "Termination complete"),
    ],
    output=terminate_output,
)
