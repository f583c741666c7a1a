import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from playstream.config import settings
from playstream.core.errors import ExecutionAlreadyExists, ExecutionNotFound, OrchestratorError
from playstream.modules.registry.schemas import utcnow
from playstream.modules.workflows.deploy import DEPLOY_WORKFLOW
from playstream.modules.workflows.schemas import EventType, ExecutionDescription, ExecutionStatus, HistoryEvent
from playstream.modules.workflows.state_machine import (
    EventRecorder,
    WorkflowDefinition,
    WorkflowDeps,
    WorkflowDriver,
)
from playstream.modules.workflows.terminate import TERMINATE_WORKFLOW

logger = logging.getLogger(__name__)

WORKFLOWS: Dict[str, WorkflowDefinition] = {
    DEPLOY_WORKFLOW.workflow_id: DEPLOY_WORKFLOW,
    TERMINATE_WORKFLOW.workflow_id: TERMINATE_WORKFLOW,
}


class Orchestrator(ABC):
    """Starts workflow executions and exposes their description and event history."""

    @abstractmethod
    def start_execution(self, workflow_id: str, input: Dict[str, Any], name: Optional[str] = None) -> str:
        """Start an execution and return its id without waiting for it to finish."""

    @abstractmethod
    def describe_execution(self, execution_id: str) -> ExecutionDescription:
        """Raises ExecutionNotFound for unknown ids."""

    @abstractmethod
    def get_execution_history(self, execution_id: str) -> List[HistoryEvent]:
        """Events in the order they happened. Raises ExecutionNotFound for unknown ids."""


class _LocalExecution:
    def __init__(self, description: ExecutionDescription):
        self.description = description
        self.recorder = EventRecorder()
        self.thread: Optional[threading.Thread] = None


class LocalOrchestrator(Orchestrator):
    """
    Run workflows in-process.

    Each execution gets its own daemon thread; with ``run_inline=True`` the
    execution completes before start_execution returns (used by tests).
    State lives in memory and is lost on restart; only the newest
    ``max_finished`` finished executions stay describable.
    """

    def __init__(
        self,
        deps: WorkflowDeps,
        workflows: Optional[Dict[str, WorkflowDefinition]] = None,
        run_inline: bool = False,
        max_finished: Optional[int] = None,
    ):
        self.deps = deps
        self.workflows = workflows or WORKFLOWS
        self.run_inline = run_inline
        self.max_finished = settings.local_execution_retention if max_finished is None else max_finished
        self._lock = threading.Lock()
        self._executions: Dict[str, _LocalExecution] = {}

    def start_execution(self, workflow_id: str, input: Dict[str, Any], name: Optional[str] = None) -> str:
        definition = self.workflows.get(workflow_id)
        if definition is None:
            raise OrchestratorError(f"Unknown workflow: {workflow_id}")

        execution_id = name or f"{workflow_id}-{int(utcnow().timestamp() * 1000)}"
        payload = {**input, "execution_id": execution_id, "execution_name": execution_id}
        context = definition.context_model(**payload)

        execution = _LocalExecution(ExecutionDescription(
            execution_id=execution_id,
            workflow_id=workflow_id,
            status=ExecutionStatus.RUNNING,
            input=dict(input),
            start_time=utcnow(),
        ))
        with self._lock:
            if execution_id in self._executions:
                raise ExecutionAlreadyExists(f"{workflow_id} execution {execution_id} is already in progress")
            self._executions[execution_id] = execution

        logger.info(f"Starting {workflow_id} execution {execution_id}")
        if self.run_inline:
            self._run(execution, definition, context)
        else:
            execution.thread = threading.Thread(
                target=self._run,
                args=(execution, definition, context),
                name=f"workflow-{execution_id}",
                daemon=True,
            )
            execution.thread.start()
        return execution_id

    def _evict_finished(self) -> None:
        """Drop the oldest finished executions beyond max_finished. Caller holds self._lock."""
        finished = [
            key for key, execution in self._executions.items()
            if execution.description.status != ExecutionStatus.RUNNING
        ]
        for key in finished[:max(0, len(finished) - self.max_finished)]:
            del self._executions[key]

    def _run(self, execution: _LocalExecution, definition: WorkflowDefinition, context: Any) -> None:
        driver = WorkflowDriver(definition, self.deps, execution.recorder)
        try:
            outcome = driver.run(context)
            update = {
                "status": outcome.status,
                "output": outcome.output,
                "error": outcome.error,
                "cause": outcome.cause,
            }
        except Exception as e:
            logger.error(f"Execution {execution.description.execution_id} aborted: {str(e)}")
            execution.recorder(EventType.EXECUTION_ABORTED, error=type(e).__name__, cause=str(e))
            update = {"status": ExecutionStatus.ABORTED, "error": type(e).__name__, "cause": str(e)}

        update["end_time"] = utcnow()
        with self._lock:
            execution.description = execution.description.model_copy(update=update)
            self._evict_finished()

    def _get(self, execution_id: str) -> _LocalExecution:
        with self._lock:
            execution = self._executions.get(execution_id)
        if execution is None:
            raise ExecutionNotFound(f"Execution {execution_id} not found")
        return execution

    def describe_execution(self, execution_id: str) -> ExecutionDescription:
        execution = self._get(execution_id)
        with self._lock:
            return execution.description.model_copy()

    def get_execution_history(self, execution_id: str) -> List[HistoryEvent]:
        return list(self._get(execution_id).recorder.events)

    def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionDescription:
        """Block until a threaded execution finishes."""
        execution = self._get(execution_id)
        if execution.thread is not None:
            execution.thread.join(timeout)
        return self.describe_execution(execution_id)
