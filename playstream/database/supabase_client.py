import logging

from supabase import create_client, Client

from playstream.config import settings
from playstream.core.errors import ConfigurationError

logger = logging.getLogger(__name__)


class SupabaseClient:
    """Process-wide Supabase connection used by the registry store."""

    _registry_client: Client = None

    @classmethod
    def registry_key(cls) -> str:
        # Workflow threads write without a user JWT, so prefer the service role (bypasses RLS)
        if settings.supabase_service_role_key:
            return settings.supabase_service_role_key
        if settings.supabase_key:
            logger.warning("SUPABASE_SERVICE_ROLE_KEY not set; registry writes use the anon key")
            return settings.supabase_key
        raise ConfigurationError("SUPABASE_SERVICE_ROLE_KEY or SUPABASE_KEY is required for the supabase registry")

    @classmethod
    def get_registry_client(cls) -> Client:
        if cls._registry_client is None:
            if not settings.supabase_url:
                raise ConfigurationError("SUPABASE_URL is required for the supabase registry")
            cls._registry_client = create_client(settings.supabase_url, cls.registry_key())
        return cls._registry_client

    @classmethod
    def reset_client(cls):
        cls._registry_client = None
