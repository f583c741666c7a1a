"""
Entry points for a hosted orchestrator.

Each Task state of the deploy/terminate state machines invokes
``step_handler`` with::

    {"workflow_id": "deploy", "step": "ProvisionInstance", "context": {...}}

and passes the returned dict (the updated context plus ``next_step``) on to
the next state. A Choice state on ``$.next_step`` handles branching. The
final task calls ``finish_handler`` from both the success and catch paths.
"""
import logging
from typing import Any, Dict, Optional

from playstream.modules.workflows.orchestrator import WORKFLOWS
from playstream.modules.workflows.schemas import ExecutionStatus, StepFailure
from playstream.modules.workflows.state_machine import WorkflowDefinition, WorkflowDeps, run_step

logger = logging.getLogger(__name__)


class StepFailedError(Exception):
    """Raised to report a StepFailure to the orchestrator.

    The orchestrator records the exception's class name as the error type, so
    instances are created from a subclass named after the failure code.
    """

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


def step_failed(code: str, message: str) -> StepFailedError:
    if code.isidentifier():
        error_cls = type(code, (StepFailedError,), {})
        return error_cls(code, message)
    return StepFailedError(code, message)


def _definition(event: Dict[str, Any]) -> WorkflowDefinition:
    workflow_id = event.get("workflow_id")
    definition = WORKFLOWS.get(workflow_id)
    if definition is None:
        raise ValueError(f"Unknown workflow: {workflow_id}")
    return definition


def _default_deps() -> WorkflowDeps:
    from playstream.core.dependencies import get_workflow_deps
    return get_workflow_deps()


def step_handler(event: Dict[str, Any], context: Any = None, deps: Optional[WorkflowDeps] = None) -> Dict[str, Any]:
    definition = _definition(event)
    spec = definition.step(event["step"])
    ctx = definition.context_model(**(event.get("context") or {}))

    if spec.handler is None:
        return definition.output(ctx)

    logger.info(f"Running {definition.workflow_id} step {spec.name} for user {ctx.user_id}")
    result = run_step(spec, ctx, deps or _default_deps())
    if isinstance(result, StepFailure):
        raise step_failed(result.error, result.message)

    updated = ctx.model_copy(update=result.output)
    return {**updated.model_dump(mode="json"), "next_step": result.next_step or spec.next}


def finish_handler(event: Dict[str, Any], context: Any = None, deps: Optional[WorkflowDeps] = None) -> Dict[str, Any]:
    definition = _definition(event)
    ctx = definition.context_model(**(event.get("context") or {}))
    status = ExecutionStatus(event.get("status", ExecutionStatus.SUCCEEDED.value))
    if definition.on_finish is not None:
        definition.on_finish(ctx, status, deps or _default_deps())
    return {"workflow_id": definition.workflow_id, "status": status.value}
