"""In-memory implementation of the registry store."""
import threading
from datetime import timedelta
from typing import Dict, List, Optional

from playstream.core.errors import DeploymentCancelled
from playstream.modules.registry.base import RegistryStore
from playstream.modules.registry.schemas import (
    GamingInstance,
    StreamingSession,
    UserLock,
    utcnow,
)


class InMemoryRegistryStore(RegistryStore):
    """Keep registry records in local memory.

    Useful for tests or local runs with the in-process orchestrator. Data is
    not persisted across process restarts. A single lock guards all three
    tables so each method behaves like one conditional write.
    """

    def __init__(self, lock_ttl_seconds: int = 3600):
        self.lock_ttl_seconds = lock_ttl_seconds
        self._lock = threading.Lock()
        self._instances: Dict[str, GamingInstance] = {}
        self._sessions: Dict[str, StreamingSession] = {}
        self._user_locks: Dict[str, UserLock] = {}

    def put_instance(self, instance: GamingInstance) -> GamingInstance:
        with self._lock:
            self._instances[instance.instance_id] = instance.model_copy()
            return instance

    def get_instance(self, instance_id: str) -> Optional[GamingInstance]:
        with self._lock:
            instance = self._instances.get(instance_id)
            return instance.model_copy() if instance else None

    def update_instance(self, instance_id: str, **fields) -> Optional[GamingInstance]:
        with self._lock:
            current = self._instances.get(instance_id)
            if current is None:
                return None
            fields.setdefault("last_modified_time", utcnow())
            updated = current.model_copy(update=fields)
            self._instances[instance_id] = updated
            return updated.model_copy()

    def list_instances_by_user(self, user_id: str) -> List[GamingInstance]:
        with self._lock:
            matches = [i.model_copy() for i in self._instances.values() if i.user_id == user_id]
        return sorted(matches, key=lambda i: i.creation_time, reverse=True)

    def replace_placeholder(self, placeholder_id: str, instance: GamingInstance) -> GamingInstance:
        with self._lock:
            placeholder = self._instances.get(placeholder_id)
            if placeholder is not None and placeholder.is_terminated:
                raise DeploymentCancelled(
                    f"Placeholder {placeholder_id} was terminated before {instance.instance_id} was recorded"
                )
            self._instances.pop(placeholder_id, None)
            update = {"last_modified_time": utcnow()}
            if placeholder is not None:
                update["creation_time"] = placeholder.creation_time
                if placeholder.execution_id and not instance.execution_id:
                    update["execution_id"] = placeholder.execution_id
            real = instance.model_copy(update=update)
            self._instances[real.instance_id] = real
            return real.model_copy()

    def put_session(self, session: StreamingSession) -> StreamingSession:
        with self._lock:
            now = utcnow()
            existing = self._sessions.get(session.instance_arn)
            created_at = existing.created_at if existing else (session.created_at or now)
            stored = session.model_copy(update={"created_at": created_at, "updated_at": now})
            self._sessions[session.instance_arn] = stored
            return stored.model_copy()

    def get_session(self, instance_arn: str) -> Optional[StreamingSession]:
        with self._lock:
            session = self._sessions.get(instance_arn)
            return session.model_copy() if session else None

    def delete_session(self, instance_arn: str) -> bool:
        with self._lock:
            return self._sessions.pop(instance_arn, None) is not None

    def list_sessions_by_user(self, user_id: str) -> List[StreamingSession]:
        with self._lock:
            matches = [s.model_copy() for s in self._sessions.values() if s.user_id == user_id]
        return sorted(matches, key=lambda s: s.created_at, reverse=True)

    def acquire_lock(self, user_id: str, execution_id: str) -> bool:
        with self._lock:
            now = utcnow()
            held = self._user_locks.get(user_id)
            if held is not None and held.execution_id != execution_id:
                if now - held.acquired_at < timedelta(seconds=self.lock_ttl_seconds):
                    return False
            self._user_locks[user_id] = UserLock(
                user_id=user_id, execution_id=execution_id, acquired_at=now
            )
            return True

    def release_lock(self, user_id: str, execution_id: str) -> bool:
        with self._lock:
            held = self._user_locks.get(user_id)
            if held is None or held.execution_id != execution_id:
                return False
            del self._user_locks[user_id]
            return True
