from playstream.modules.registry.base import RegistryStore
from playstream.modules.registry.memory import InMemoryRegistryStore
from playstream.modules.registry.schemas import (
    GamingInstance,
    InstanceStatus,
    StreamingSession,
    placeholder_instance_id,
)

__all__ = [
    "RegistryStore",
    "InMemoryRegistryStore",
    "GamingInstance",
    "InstanceStatus",
    "StreamingSession",
    "placeholder_instance_id",
]
