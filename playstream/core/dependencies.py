"""
Wiring for the lifecycle core: one registry store, one set of AWS-backed
managers and one orchestrator per process, shared by HTTP routes and
workflow threads.
"""

from functools import lru_cache
import logging

from playstream.config import settings
from playstream.core.errors import ConfigurationError
from playstream.database.supabase_client import SupabaseClient
from playstream.modules.commands.parameters import ParameterStore
from playstream.modules.commands.ssm_executor import CommandExecutor
from playstream.modules.instances.ec2_manager import InstanceManager
from playstream.modules.registry.base import RegistryStore
from playstream.modules.registry.memory import InMemoryRegistryStore
from playstream.modules.registry.service import SupabaseRegistryStore
from playstream.modules.sessions.dcv_controller import SessionController
from playstream.modules.streams.service import StreamService
from playstream.modules.workflows.orchestrator import LocalOrchestrator, Orchestrator
from playstream.modules.workflows.state_machine import WorkflowDeps
from playstream.modules.workflows.stepfunctions import StepFunctionsOrchestrator

logger = logging.getLogger(__name__)


@lru_cache(maxsize=None)
def get_registry_store() -> RegistryStore:
    backend = settings.registry_backend.lower()
    if backend == "memory":
        logger.info("Using in-memory registry store")
        return InMemoryRegistryStore(lock_ttl_seconds=settings.lock_ttl_seconds)
    if backend == "supabase":
        return SupabaseRegistryStore(
            SupabaseClient.get_registry_client(),
            instances_table=settings.instances_table,
            sessions_table=settings.sessions_table,
            locks_table=settings.locks_table,
            lock_ttl_seconds=settings.lock_ttl_seconds,
        )
    raise ConfigurationError(f"Unknown registry backend: {settings.registry_backend}")


@lru_cache(maxsize=None)
def get_workflow_deps() -> WorkflowDeps:
    instances = InstanceManager()
    commands = CommandExecutor()
    return WorkflowDeps(
        registry=get_registry_store(),
        instances=instances,
        commands=commands,
        sessions=SessionController(commands, instances),
        parameters=ParameterStore(),
    )


@lru_cache(maxsize=None)
def get_orchestrator() -> Orchestrator:
    backend = settings.orchestrator_backend.lower()
    if backend == "local":
        return LocalOrchestrator(get_workflow_deps())
    if backend == "stepfunctions":
        return StepFunctionsOrchestrator()
    raise ConfigurationError(f"Unknown orchestrator backend: {settings.orchestrator_backend}")


def get_stream_service() -> StreamService:
    return StreamService(get_registry_store(), get_orchestrator())


def reset_dependencies():
    """Drop cached singletons (settings changes in tests)."""
    get_registry_store.cache_clear()
    get_workflow_deps.cache_clear()
    get_orchestrator.cache_clear()
    SupabaseClient.reset_client()
