from supabase import Client
from postgrest.exceptions import APIError
from playstream.core.errors import DeploymentCancelled, RegistryError
from playstream.modules.registry.base import RegistryStore
from playstream.modules.registry.schemas import GamingInstance, InstanceStatus, StreamingSession, UserLock, utcnow
from typing import Any, Dict, List, Optional
from datetime import timedelta
from enum import Enum
import logging

logger = logging.getLogger(__name__)

UNIQUE_VIOLATION = "23505"


def _serialize(fields: Dict[str, Any]) -> Dict[str, Any]:
    data = {}
    for key, value in fields.items():
        if isinstance(value, Enum):
            value = value.value
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        data[key] = value
    return data


class SupabaseRegistryStore(RegistryStore):
    def __init__(
        self,
        supabase: Client,
        instances_table: str = "gaming_instances",
        sessions_table: str = "streaming_sessions",
        locks_table: str = "stream_locks",
        lock_ttl_seconds: int = 3600,
    ):
        self.supabase = supabase
        self.instances_table = instances_table
        self.sessions_table = sessions_table
        self.locks_table = locks_table
        self.lock_ttl_seconds = lock_ttl_seconds

    def put_instance(self, instance: GamingInstance) -> GamingInstance:
        """Insert or overwrite an instance record"""
        try:
            result = self.supabase.table(self.instances_table)\
                .upsert(instance.model_dump(mode="json"), on_conflict="instance_id")\
                .execute()
            return GamingInstance(**result.data[0]) if result.data else instance
        except Exception as e:
            logger.error(f"Error writing instance {instance.instance_id}: {str(e)}")
            raise RegistryError(str(e)) from e

    def get_instance(self, instance_id: str) -> Optional[GamingInstance]:
        """Get instance record by primary key"""
        try:
            result = self.supabase.table(self.instances_table)\
                .select("*")\
                .eq("instance_id", instance_id)\
                .limit(1)\
                .execute()
            return GamingInstance(**result.data[0]) if result.data else None
        except Exception as e:
            logger.error(f"Error getting instance {instance_id}: {str(e)}")
            raise RegistryError(str(e)) from e

    def update_instance(self, instance_id: str, **fields) -> Optional[GamingInstance]:
        """Point update of an instance record; None when the key does not exist"""
        fields.setdefault("last_modified_time", utcnow())
        try:
            result = self.supabase.table(self.instances_table)\
                .update(_serialize(fields))\
                .eq("instance_id", instance_id)\
                .execute()
            return GamingInstance(**result.data[0]) if result.data else None
        except Exception as e:
            logger.error(f"Error updating instance {instance_id}: {str(e)}")
            raise RegistryError(str(e)) from e

    def list_instances_by_user(self, user_id: str) -> List[GamingInstance]:
        """List a user's instance records, most recent first"""
        try:
            result = self.supabase.table(self.instances_table)\
                .select("*")\
                .eq("user_id", user_id)\
                .order("creation_time", desc=True)\
                .execute()
            return [GamingInstance(**row) for row in result.data or []]
        except Exception as e:
            logger.error(f"Error listing instances for user {user_id}: {str(e)}")
            raise RegistryError(str(e)) from e

    def replace_placeholder(self, placeholder_id: str, instance: GamingInstance) -> GamingInstance:
        """Re-key the placeholder row in one UPDATE so a crash never leaves zero records"""
        update_data = {
            "instance_id": instance.instance_id,
            "user_id": instance.user_id,
            "arn": instance.arn,
            "status": instance.status,
            "last_modified_time": utcnow(),
        }
        if instance.execution_id:
            update_data["execution_id"] = instance.execution_id
        try:
            # Only a live placeholder may be re-keyed; a terminate may have closed it meanwhile
            result = self.supabase.table(self.instances_table)\
                .update(_serialize(update_data))\
                .eq("instance_id", placeholder_id)\
                .neq("status", InstanceStatus.TERMINATED.value)\
                .execute()
        except Exception as e:
            logger.error(f"Error replacing placeholder {placeholder_id}: {str(e)}")
            raise RegistryError(str(e)) from e

        if result.data:
            return GamingInstance(**result.data[0])
        if self.get_instance(placeholder_id) is not None:
            raise DeploymentCancelled(
                f"Placeholder {placeholder_id} was terminated before {instance.instance_id} was recorded"
            )

        logger.warning(f"Placeholder {placeholder_id} not found; upserting {instance.instance_id}")
        return self.put_instance(instance)

    def put_session(self, session: StreamingSession) -> StreamingSession:
        """Upsert a streaming session; created_at is only set by the insert default"""
        payload = session.model_dump(mode="json", exclude={"created_at", "updated_at"})
        payload["updated_at"] = utcnow().isoformat()
        try:
            result = self.supabase.table(self.sessions_table)\
                .upsert(payload, on_conflict="instance_arn")\
                .execute()
            return StreamingSession(**result.data[0]) if result.data else session
        except Exception as e:
            logger.error(f"Error writing session {session.instance_arn}: {str(e)}")
            raise RegistryError(str(e)) from e

    def get_session(self, instance_arn: str) -> Optional[StreamingSession]:
        try:
            result = self.supabase.table(self.sessions_table)\
                .select("*")\
                .eq("instance_arn", instance_arn)\
                .limit(1)\
                .execute()
            return StreamingSession(**result.data[0]) if result.data else None
        except Exception as e:
            logger.error(f"Error getting session {instance_arn}: {str(e)}")
            raise RegistryError(str(e)) from e

    def delete_session(self, instance_arn: str) -> bool:
        try:
            result = self.supabase.table(self.sessions_table)\
                .delete()\
                .eq("instance_arn", instance_arn)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error deleting session {instance_arn}: {str(e)}")
            raise RegistryError(str(e)) from e

    def list_sessions_by_user(self, user_id: str) -> List[StreamingSession]:
        try:
            result = self.supabase.table(self.sessions_table)\
                .select("*")\
                .eq("user_id", user_id)\
                .order("created_at", desc=True)\
                .execute()
            return [StreamingSession(**row) for row in result.data or []]
        except Exception as e:
            logger.error(f"Error listing sessions for user {user_id}: {str(e)}")
            raise RegistryError(str(e)) from e

    def acquire_lock(self, user_id: str, execution_id: str) -> bool:
        """Insert the lock row; a unique violation means someone else holds it"""
        now = utcnow()
        try:
            self.supabase.table(self.locks_table).insert({
                "user_id": user_id,
                "execution_id": execution_id,
                "acquired_at": now.isoformat(),
            }).execute()
            return True
        except APIError as e:
            if e.code != UNIQUE_VIOLATION:
                logger.error(f"Error acquiring lock for user {user_id}: {str(e)}")
                raise RegistryError(str(e)) from e
        return self._take_over_lock(user_id, execution_id, now)

    def _take_over_lock(self, user_id: str, execution_id: str, now) -> bool:
        try:
            result = self.supabase.table(self.locks_table)\
                .select("*")\
                .eq("user_id", user_id)\
                .limit(1)\
                .execute()
            if not result.data:
                return False
            held = UserLock(**result.data[0])
            if held.execution_id == execution_id:
                return True
            if now - held.acquired_at < timedelta(seconds=self.lock_ttl_seconds):
                return False
            logger.warning(f"Taking over stale lock for user {user_id} from {held.execution_id}")
            # CAS on the previous owner
            swapped = self.supabase.table(self.locks_table)\
                .update({"execution_id": execution_id, "acquired_at": now.isoformat()})\
                .eq("user_id", user_id)\
                .eq("execution_id", held.execution_id)\
                .execute()
            return bool(swapped.data)
        except Exception as e:
            logger.error(f"Error checking lock for user {user_id}: {str(e)}")
            raise RegistryError(str(e)) from e

    def release_lock(self, user_id: str, execution_id: str) -> bool:
        try:
            result = self.supabase.table(self.locks_table)\
                .delete()\
                .eq("user_id", user_id)\
                .eq("execution_id", execution_id)\
                .execute()
            return bool(result.data)
        except Exception as e:
            logger.error(f"Error releasing lock for user {user_id}: {str(e)}")
            raise RegistryError(str(e)) from e
