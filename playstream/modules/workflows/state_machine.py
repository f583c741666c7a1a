"""
Explicit state machine for lifecycle workflows.

A WorkflowDefinition is an ordered set of named steps. Each step is a plain
function ``(context, deps) -> StepResult``; the driver advances one step at a
time, merges successful output into the context and appends history events
that the status aggregator later replays.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Type, Union

from pydantic import BaseModel

from playstream.core.errors import error_code_of
from playstream.modules.commands.parameters import ParameterStore
from playstream.modules.commands.ssm_executor import CommandExecutor
from playstream.modules.instances.ec2_manager import InstanceManager
from playstream.modules.registry.base import RegistryStore
from playstream.modules.sessions.dcv_controller import SessionController
from playstream.modules.workflows.schemas import (
    EventType,
    ExecutionStatus,
    HistoryEvent,
    StepFailure,
    StepSuccess,
)

logger = logging.getLogger(__name__)


@dataclass
class WorkflowDeps:
    registry: RegistryStore
    instances: InstanceManager
    commands: CommandExecutor
    sessions: SessionController
    parameters: ParameterStore


StepHandler = Callable[[Any, WorkflowDeps], Union[StepSuccess, StepFailure]]


@dataclass
class StepSpec:
    name: str
    display_name: str
    handler: Optional[StepHandler] = None  # None marks the terminal success state
    next: Optional[str] = None


@dataclass
class WorkflowDefinition:
    workflow_id: str
    context_model: Type[BaseModel]
    steps: List[StepSpec]
    output: Callable[[Any], Dict[str, Any]] = lambda ctx: {}
    on_finish: Optional[Callable[[Any, ExecutionStatus, WorkflowDeps], None]] = None
    _index: Dict[str, StepSpec] = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        self._index = {s.name: s for s in self.steps}
        for position, spec in enumerate(self.steps[:-1]):
            if spec.handler is not None and spec.next is None:
                spec.next = self.steps[position + 1].name

    @property
    def start_at(self) -> str:
        return self.steps[0].name

    def step(self, name: str) -> StepSpec:
        return self._index[name]


@dataclass
class ExecutionOutcome:
    status: ExecutionStatus
    context: Any
    output: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    cause: Optional[str] = None


class EventRecorder:
    """Append-only history with monotonically increasing event ids."""

    def __init__(self, sink: Optional[Callable[[HistoryEvent], None]] = None):
        self.events: List[HistoryEvent] = []
        self._sink = sink

    def __call__(self, event_type: EventType, **details) -> HistoryEvent:
        event = HistoryEvent(
            id=len(self.events) + 1,
            type=event_type,
            timestamp=datetime.now(timezone.utc),
            **details,
        )
        self.events.append(event)
        if self._sink:
            self._sink(event)
        return event


def run_step(spec: StepSpec, context: Any, deps: WorkflowDeps) -> Union[StepSuccess, StepFailure]:
    """Invoke one step, converting any escaped exception into a StepFailure."""
    try:
        return spec.handler(context, deps)
    except Exception as e:
        logger.exception(f"Step {spec.name} raised {type(e).__name__}")
        return StepFailure(error=error_code_of(e), message=str(e) or type(e).__name__)


class WorkflowDriver:
    def __init__(self, definition: WorkflowDefinition, deps: WorkflowDeps, recorder: EventRecorder):
        self.definition = definition
        self.deps = deps
        self.record = recorder

    def run(self, context: Any) -> ExecutionOutcome:
        self.record(EventType.EXECUTION_STARTED)
        outcome = None
        try:
            outcome = self._advance(context)
            return outcome
        finally:
            self._finish(outcome, context)

    def _advance(self, context: Any) -> ExecutionOutcome:
        step_name: Optional[str] = self.definition.start_at
        while step_name:
            spec = self.definition.step(step_name)
            self.record(EventType.STATE_ENTERED, step=spec.name)

            if spec.handler is None:
                self.record(EventType.STATE_EXITED, step=spec.name)
                output = self.definition.output(context)
                self.record(EventType.EXECUTION_SUCCEEDED)
                logger.info(f"{self.definition.workflow_id} workflow succeeded")
                return ExecutionOutcome(ExecutionStatus.SUCCEEDED, context, output=output)

            result = run_step(spec, context, self.deps)
            if isinstance(result, StepFailure):
                self.record(EventType.TASK_FAILED, step=spec.name, error=result.error, cause=result.message)
                self.record(EventType.EXECUTION_FAILED, error=result.error, cause=result.message)
                logger.error(f"{self.definition.workflow_id} workflow failed at {spec.name}: {result.error}")
                return ExecutionOutcome(
                    ExecutionStatus.FAILED, context,
                    output={"error": result.error, "message": result.message},
                    error=result.error, cause=result.message,
                )

            context = context.model_copy(update=result.output)
            self.record(EventType.STATE_EXITED, step=spec.name)
            step_name = result.next_step or spec.next

        raise RuntimeError(f"{self.definition.workflow_id} workflow has no terminal state")

    def _finish(self, outcome: Optional[ExecutionOutcome], context: Any) -> None:
        if self.definition.on_finish is None:
            return
        status = outcome.status if outcome else ExecutionStatus.FAILED
        final_context = outcome.context if outcome else context
        try:
            self.definition.on_finish(final_context, status, self.deps)
        except Exception as e:
            logger.warning(f"on_finish hook for {self.definition.workflow_id} failed: {str(e)}")
