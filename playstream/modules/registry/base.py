"""Registry store interface shared by the Supabase and in-memory backends."""
from abc import ABC, abstractmethod
from typing import List, Optional

from playstream.modules.registry.schemas import GamingInstance, StreamingSession


class RegistryStore(ABC):
    """Durable tables for gaming instances, streaming sessions and per-user locks.

    Writers use point updates keyed by primary key; nothing here takes a
    table-wide lock.
    """

    lock_ttl_seconds: int = 3600

    # Gaming instances

    @abstractmethod
    def put_instance(self, instance: GamingInstance) -> GamingInstance:
        ...

    @abstractmethod
    def get_instance(self, instance_id: str) -> Optional[GamingInstance]:
        ...

    @abstractmethod
    def update_instance(self, instance_id: str, **fields) -> Optional[GamingInstance]:
        """Point update. Returns None when no record has this key."""

    @abstractmethod
    def list_instances_by_user(self, user_id: str) -> List[GamingInstance]:
        """All records for a user, newest creation_time first."""

    @abstractmethod
    def replace_placeholder(self, placeholder_id: str, instance: GamingInstance) -> GamingInstance:
        """Re-key a placeholder record to the real instance id in a single write.

        execution_id and creation_time are carried over from the placeholder.
        Falls back to an upsert of ``instance`` when the placeholder is gone.
        Raises DeploymentCancelled when a terminate already closed the
        placeholder; the record stays terminated.
        """

    def latest_instance_for_user(self, user_id: str) -> Optional[GamingInstance]:
        instances = self.list_instances_by_user(user_id)
        return instances[0] if instances else None

    def current_instance_for_user(self, user_id: str) -> Optional[GamingInstance]:
        """Newest non-terminated record, else the newest record of any status."""
        instances = self.list_instances_by_user(user_id)
        for instance in instances:
            if not instance.is_terminated:
                return instance
        return instances[0] if instances else None

    # Streaming sessions

    @abstractmethod
    def put_session(self, session: StreamingSession) -> StreamingSession:
        """Upsert keyed by instance_arn; keeps the original created_at."""

    @abstractmethod
    def get_session(self, instance_arn: str) -> Optional[StreamingSession]:
        ...

    @abstractmethod
    def delete_session(self, instance_arn: str) -> bool:
        ...

    @abstractmethod
    def list_sessions_by_user(self, user_id: str) -> List[StreamingSession]:
        """All sessions for a user, newest created_at first."""

    # Per-user locks

    @abstractmethod
    def acquire_lock(self, user_id: str, execution_id: str) -> bool:
        """Compare-and-swap acquire. True when the caller now owns the lock."""

    @abstractmethod
    def release_lock(self, user_id: str, execution_id: str) -> bool:
        """Release only if owned by execution_id."""
