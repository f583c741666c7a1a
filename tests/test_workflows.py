"""Deploy and terminate workflows run inline through the local orchestrator."""
import pytest

from playstream.core.errors import (
    ExecutionAlreadyExists,
    ExecutionNotFound,
    InstanceBusy,
    ResourceNotFound,
    WaiterTimedOut,
)
from playstream.modules.registry.schemas import (
    PLACEHOLDER_PREFIX,
    GamingInstance,
    InstanceStatus,
    StreamingSession,
    placeholder_instance_id,
    utcnow,
)
from playstream.modules.sessions.schemas import TlsConfigResult
from playstream.modules.workflows.deploy import DEPLOY_WORKFLOW
from playstream.modules.workflows.orchestrator import LocalOrchestrator
from playstream.modules.workflows.schemas import (
    DeployContext,
    EventType,
    ExecutionStatus,
    StepFailure,
    StepSuccess,
    fail,
    succeed,
)
from playstream.modules.workflows.state_machine import (
    EventRecorder,
    StepSpec,
    WorkflowDefinition,
    WorkflowDriver,
)
from tests.conftest import INSTANCE_ARN, INSTANCE_ID, ts


@pytest.fixture
def orchestrator(deps):
    return LocalOrchestrator(deps, run_inline=True)


def start_deploy(orchestrator, registry, user_id="u1", name="u1-1700000000000"):
    registry.put_instance(GamingInstance(
        instance_id=placeholder_instance_id(name), user_id=user_id, creation_time=utcnow()
    ))
    return orchestrator.start_execution("deploy", {"user_id": user_id}, name=name)


def steps_of(orchestrator, execution_id, event_type):
    return [e.step for e in orchestrator.get_execution_history(execution_id) if e.type == event_type]


def existing_session(user_id="u1"):
    return StreamingSession(
        instance_arn="arn:existing",
        instance_id="i-existing",
        user_id=user_id,
        session_id=f"user-{user_id}-session",
        host="54.9.9.9",
        port=8443,
        username="Administrator",
        password="pw",
        streaming_link="https://54-9-9-9.nip.io:8443",
    )


# --- Driver ---

def test_step_results_are_tagged():
    assert succeed(instance_id="i-1").kind == "success"
    assert fail("Boom", "it broke").kind == "failure"


def test_driver_converts_exceptions_to_failures(deps):
    def explode(ctx, deps):
        raise WaiterTimedOut("instance never started")

    definition = WorkflowDefinition(
        workflow_id="demo",
        context_model=DeployContext,
        steps=[StepSpec("Explode", "Exploding", explode), StepSpec("Success", "Done")],
    )
    recorder = EventRecorder()
    outcome = WorkflowDriver(definition, deps, recorder).run(DeployContext(user_id="u1"))

    assert outcome.status == ExecutionStatus.FAILED
    assert outcome.error == "WaiterTimedOut"
    failed = [e for e in recorder.events if e.type == EventType.TASK_FAILED][0]
    assert failed.step == "Explode"
    assert failed.cause == "instance never started"
    assert [e.id for e in recorder.events] == list(range(1, len(recorder.events) + 1))


def test_driver_follows_next_step_override(deps):
    visited = []

    def jump(ctx, deps):
        visited.append("Jump")
        return StepSuccess(next_step="Success")

    def skipped(ctx, deps):
        visited.append("Skipped")
        return StepFailure(error="Nope", message="should not run")

    definition = WorkflowDefinition(
        workflow_id="demo",
        context_model=DeployContext,
        steps=[StepSpec("Jump", "Jump", jump), StepSpec("Skipped", "Skip", skipped), StepSpec("Success", "Done")],
    )
    outcome = WorkflowDriver(definition, deps, EventRecorder()).run(DeployContext(user_id="u1"))
    assert outcome.status == ExecutionStatus.SUCCEEDED
    assert visited == ["Jump"]


# --- Deploy ---

def test_deploy_happy_path(orchestrator, registry, instances, sessions):
    execution_id = start_deploy(orchestrator, registry)
    description = orchestrator.describe_execution(execution_id)

    assert description.status == ExecutionStatus.SUCCEEDED
    assert description.output["endpoint_url"]
    assert description.output["instance_id"] == INSTANCE_ID
    assert description.output["password_set"] is True
    assert description.output["ssl_configured"] is True
    assert steps_of(orchestrator, execution_id, EventType.STATE_EXITED) == [
        s.name for s in DEPLOY_WORKFLOW.steps
    ]

    config = instances.create_instance.call_args.args[0]
    assert config.user_id == "u1"
    assert config.ami_id == "ami-0123456789"
    assert config.user_data_script.startswith("<powershell>")
    sessions.configure_tls_and_password.assert_called_once()


def test_deploy_leaves_one_session_and_no_placeholder(orchestrator, registry):
    start_deploy(orchestrator, registry)

    sessions = registry.list_sessions_by_user("u1")
    assert len(sessions) == 1
    assert sessions[0].instance_id == INSTANCE_ID
    assert sessions[0].instance_arn == INSTANCE_ARN
    assert sessions[0].streaming_link == "https://54-1-2-3.nip.io:8443"

    records = registry.list_instances_by_user("u1")
    assert [r.instance_id for r in records] == [INSTANCE_ID]
    assert not any(r.instance_id.startswith(PLACEHOLDER_PREFIX) for r in records)
    assert records[0].status == InstanceStatus.RUNNING
    assert records[0].execution_id == "u1-1700000000000"


def test_deploy_releases_user_lock(orchestrator, registry):
    start_deploy(orchestrator, registry)
    assert registry.acquire_lock("u1", "someone-else") is True


def test_deploy_with_active_stream_fails_fast(orchestrator, registry, instances):
    registry.put_session(existing_session())

    execution_id = start_deploy(orchestrator, registry)
    description = orchestrator.describe_execution(execution_id)

    assert description.status == ExecutionStatus.FAILED
    assert description.error == "StreamAlreadyActive"
    assert description.cause
    instances.create_instance.assert_not_called()
    assert steps_of(orchestrator, execution_id, EventType.TASK_FAILED) == ["CheckStreamValidity"]
    # the rejected request's placeholder is closed out
    placeholder = registry.get_instance(placeholder_instance_id("u1-1700000000000"))
    assert placeholder.status == InstanceStatus.TERMINATED


def test_deploy_blocked_by_concurrent_execution_lock(orchestrator, registry, instances):
    registry.acquire_lock("u1", "other-execution")

    execution_id = start_deploy(orchestrator, registry)

    assert orchestrator.describe_execution(execution_id).error == "StreamAlreadyActive"
    instances.create_instance.assert_not_called()
    # the other execution still owns the lock
    assert registry.release_lock("u1", "other-execution") is True


def test_deploy_with_degraded_security_still_succeeds(orchestrator, registry, sessions):
    sessions.configure_tls_and_password.return_value = TlsConfigResult(
        success=False, password_set=True, ssl_configured=False, message="Password: OK, SSL: FAILED"
    )
    execution_id = start_deploy(orchestrator, registry)
    description = orchestrator.describe_execution(execution_id)

    assert description.status == ExecutionStatus.SUCCEEDED
    assert description.output["ssl_configured"] is False
    assert "SSL: FAILED" in description.output["message"]


def test_deploy_instance_failure_is_terminal(orchestrator, registry, instances):
    instances.wait_for_instance_running.side_effect = WaiterTimedOut("Timeout waiting for instance")

    execution_id = start_deploy(orchestrator, registry)
    description = orchestrator.describe_execution(execution_id)

    assert description.status == ExecutionStatus.FAILED
    assert description.error == "WaiterTimedOut"
    assert instances.wait_for_instance_running.call_count == 1
    # the launched instance replaces the placeholder so it can still be terminated
    record = registry.current_instance_for_user("u1")
    assert record.instance_id == INSTANCE_ID
    assert record.status == InstanceStatus.DEPLOYING


def test_redeploy_after_failed_deploy_is_rejected(orchestrator, registry, instances, sessions):
    sessions.ensure_session_ready.side_effect = ResourceNotFound("DCV session not found")
    first = start_deploy(orchestrator, registry, name="u1-1")
    assert orchestrator.describe_execution(first).status == ExecutionStatus.FAILED

    sessions.ensure_session_ready.side_effect = None
    second = start_deploy(orchestrator, registry, name="u1-2")
    description = orchestrator.describe_execution(second)

    assert description.status == ExecutionStatus.FAILED
    assert description.error == "StreamAlreadyActive"
    assert instances.create_instance.call_count == 1
    live = [
        i for i in registry.list_instances_by_user("u1")
        if not i.is_terminated and not i.is_placeholder
    ]
    assert [i.instance_id for i in live] == [INSTANCE_ID]


# --- Terminate ---

def seed_running_instance(registry, instance_id=INSTANCE_ID):
    registry.put_instance(GamingInstance(
        instance_id=instance_id,
        user_id="u1",
        arn=INSTANCE_ARN,
        status=InstanceStatus.RUNNING,
        creation_time=ts(0),
    ))
    registry.put_session(existing_session().model_copy(
        update={"instance_arn": INSTANCE_ARN, "instance_id": instance_id}
    ))


def test_terminate_happy_path(orchestrator, registry, instances, sessions):
    seed_running_instance(registry)

    execution_id = orchestrator.start_execution("terminate", {"user_id": "u1"})
    description = orchestrator.describe_execution(execution_id)

    assert description.status == ExecutionStatus.SUCCEEDED
    output = description.output
    assert output["success"] is True
    assert output["dcv_stopped"] is True
    assert output["detach_volume_state"] == "detaching"
    assert output["terminate_instance_state"] == "shutting-down"
    assert output["registry_update_status"] == "updated"
    assert output["message"] == f"Instance {INSTANCE_ID} terminated successfully."

    record = registry.get_instance(INSTANCE_ID)
    assert record.status == InstanceStatus.TERMINATED
    assert record.terminated_at is not None
    assert record.execution_id == execution_id
    assert registry.list_sessions_by_user("u1") == []


def test_terminate_is_idempotent(orchestrator, registry, instances):
    registry.put_instance(GamingInstance(
        instance_id=INSTANCE_ID, user_id="u1", status=InstanceStatus.TERMINATED, creation_time=ts(0)
    ))

    for attempt in range(2):
        execution_id = orchestrator.start_execution("terminate", {"user_id": "u1"}, name=f"t-{attempt}")
        description = orchestrator.describe_execution(execution_id)
        assert description.status == ExecutionStatus.SUCCEEDED
        assert "already terminated" in description.output["message"]

    instances.terminate_instance.assert_not_called()
    instances.detach_volume.assert_not_called()


def test_terminate_twice_only_terminates_once(orchestrator, registry, instances):
    seed_running_instance(registry)
    orchestrator.start_execution("terminate", {"user_id": "u1"}, name="t-1")
    second = orchestrator.start_execution("terminate", {"user_id": "u1"}, name="t-2")

    assert orchestrator.describe_execution(second).output["already_terminated"] is True
    assert instances.terminate_instance.call_count == 1


def test_terminate_without_instance(orchestrator):
    execution_id = orchestrator.start_execution("terminate", {"user_id": "ghost"})
    description = orchestrator.describe_execution(execution_id)
    assert description.status == ExecutionStatus.FAILED
    assert description.error == "NoActiveInstance"


def test_terminate_succeeds_when_detach_fails(orchestrator, registry, instances):
    seed_running_instance(registry)
    instances.detach_volume.side_effect = RuntimeError("IncorrectState")

    execution_id = orchestrator.start_execution("terminate", {"user_id": "u1"})
    output = orchestrator.describe_execution(execution_id).output

    assert output["success"] is True
    assert output["detach_volume_state"].startswith("failed")
    assert output["message"].startswith(f"Instance {INSTANCE_ID} terminated successfully.")
    instances.terminate_instance.assert_called_once_with(INSTANCE_ID)


def test_terminate_best_effort_steps_do_not_stop_sequence(orchestrator, registry, instances, sessions):
    seed_running_instance(registry)
    sessions.stop_session.return_value = sessions.stop_session.return_value.model_copy(
        update={"stopped_successfully": False}
    )
    instances.get_instance_details.side_effect = RuntimeError("describe failed")

    execution_id = orchestrator.start_execution("terminate", {"user_id": "u1"})
    output = orchestrator.describe_execution(execution_id).output

    assert output["dcv_stopped"] is False
    assert output["detach_volume_state"].startswith("failed")
    assert output["terminate_instance_state"] == "shutting-down"


def test_terminate_failure_when_instance_busy(orchestrator, registry, instances):
    seed_running_instance(registry)
    instances.terminate_instance.side_effect = InstanceBusy()

    execution_id = orchestrator.start_execution("terminate", {"user_id": "u1"})
    description = orchestrator.describe_execution(execution_id)

    assert description.status == ExecutionStatus.FAILED
    assert description.error == "InstanceBusy"
    assert steps_of(orchestrator, execution_id, EventType.TASK_FAILED) == ["TerminateInstance"]


def test_terminate_placeholder_skips_backend(orchestrator, registry, instances, sessions):
    registry.put_instance(GamingInstance(
        instance_id=placeholder_instance_id("u1-1"), user_id="u1", creation_time=ts(0)
    ))

    execution_id = orchestrator.start_execution("terminate", {"user_id": "u1"})

    assert orchestrator.describe_execution(execution_id).status == ExecutionStatus.SUCCEEDED
    instances.terminate_instance.assert_not_called()
    sessions.stop_session.assert_not_called()
    assert registry.get_instance(placeholder_instance_id("u1-1")).status == InstanceStatus.TERMINATED


def test_terminate_during_deploy_cancels_it(orchestrator, registry, instances, sessions):
    placeholder_id = placeholder_instance_id("d-1")
    registry.put_instance(GamingInstance(instance_id=placeholder_id, user_id="u1", creation_time=ts(0)))
    orchestrator.start_execution("terminate", {"user_id": "u1"}, name="t-1")

    execution_id = orchestrator.start_execution("deploy", {"user_id": "u1"}, name="d-1")
    description = orchestrator.describe_execution(execution_id)

    assert description.status == ExecutionStatus.FAILED
    assert description.error == "DeploymentCancelled"
    assert steps_of(orchestrator, execution_id, EventType.TASK_FAILED) == ["PersistSessionRecord"]
    assert registry.get_instance(placeholder_id).status == InstanceStatus.TERMINATED
    assert registry.list_sessions_by_user("u1") == []
    # the launched instance is torn down and recorded as such
    instances.terminate_instance.assert_called_once_with(INSTANCE_ID)
    record = registry.get_instance(INSTANCE_ID)
    assert record.status == InstanceStatus.TERMINATED
    assert record.terminated_at is not None
    assert registry.acquire_lock("u1", "someone-else") is True


def test_cancelled_deploy_keeps_instance_findable_when_terminate_fails(orchestrator, registry, instances):
    registry.put_instance(GamingInstance(
        instance_id=placeholder_instance_id("d-1"), user_id="u1", creation_time=ts(0)
    ))
    orchestrator.start_execution("terminate", {"user_id": "u1"}, name="t-1")
    instances.terminate_instance.side_effect = InstanceBusy()

    orchestrator.start_execution("deploy", {"user_id": "u1"}, name="d-1")

    record = registry.current_instance_for_user("u1")
    assert record.instance_id == INSTANCE_ID
    assert record.status == InstanceStatus.DEPLOYING


# --- Orchestrator ---

def test_unknown_execution(orchestrator):
    with pytest.raises(ExecutionNotFound):
        orchestrator.describe_execution("nope")
    with pytest.raises(ExecutionNotFound):
        orchestrator.get_execution_history("nope")


def test_threaded_execution_completes(deps, registry):
    orchestrator = LocalOrchestrator(deps)
    seed_running_instance(registry)

    execution_id = orchestrator.start_execution("terminate", {"user_id": "u1"})
    description = orchestrator.wait(execution_id, timeout=5)

    assert description.status == ExecutionStatus.SUCCEEDED
    assert description.end_time is not None


def test_duplicate_execution_name_is_conflict(orchestrator, registry):
    seed_running_instance(registry)
    orchestrator.start_execution("terminate", {"user_id": "u1"}, name="t-1")

    with pytest.raises(ExecutionAlreadyExists) as excinfo:
        orchestrator.start_execution("terminate", {"user_id": "u1"}, name="t-1")
    assert excinfo.value.status_code == 409
    assert "already in progress" in excinfo.value.message


def test_finished_executions_are_evicted(deps, registry):
    orchestrator = LocalOrchestrator(deps, run_inline=True, max_finished=2)
    seed_running_instance(registry)

    for name in ("t-1", "t-2", "t-3"):
        orchestrator.start_execution("terminate", {"user_id": "u1"}, name=name)

    with pytest.raises(ExecutionNotFound):
        orchestrator.describe_execution("t-1")
    assert orchestrator.describe_execution("t-2").status == ExecutionStatus.SUCCEEDED
    assert orchestrator.describe_execution("t-3").status == ExecutionStatus.SUCCEEDED
    assert len(orchestrator.get_execution_history("t-3")) > 0
