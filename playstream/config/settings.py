from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional, List


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_key: str = ""
    supabase_service_role_key: Optional[str] = None  # Used by workflow threads (bypasses RLS)

    # Registry tables
    registry_backend: str = "supabase"  # supabase | memory
    instances_table: str = "gaming_instances"
    sessions_table: str = "streaming_sessions"
    locks_table: str = "stream_locks"
    lock_ttl_seconds: int = 3600

    # AWS (falls back to the default boto3 credential chain when keys are unset)
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    aws_region: str = "us-west-2"
    aws_account_id: str = ""

    # Workflow orchestration
    orchestrator_backend: str = "local"  # local | stepfunctions
    deploy_state_machine_arn: Optional[str] = None
    terminate_state_machine_arn: Optional[str] = None
    local_execution_retention: int = 200  # finished local executions kept for status queries

    # EC2 launch parameters
    ami_parameter_name: str = "ami_id"
    instance_type: str = "g4dn.xlarge"
    security_group_id: Optional[str] = None
    subnet_id: Optional[str] = None
    key_pair_name: Optional[str] = None
    instance_profile_name: Optional[str] = None
    product_tag: str = "playstream"
    instance_wait_seconds: int = 300

    # Remote commands
    command_poll_interval_seconds: float = 5.0
    command_timeout_seconds: int = 120
    dcv_install_timeout_seconds: int = 1800
    dcv_session_timeout_seconds: int = 300

    # DCV / TLS
    dcv_port: int = 8443
    dcv_user: str = "Administrator"
    acme_email: str = "ssl@noreply.playstream.cloud"
    win_acme_url: str = "https://github.com/win-acme/win-acme/releases/download/v2.2.9.1701/win-acme.v2.2.9.1701.x64.pluggable.zip"

    # App
    app_name: str = "playstream"
    debug: bool = False
    environment: str = "development"  # development | staging | production
    log_level: str = "INFO"
    cors_origins: str = "http://localhost:3000,http://127.0.0.1:3000"
    rate_limit: str = "100/minute"  # slowapi format, e.g. "100/minute"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def get_cors_origins_list(self) -> List[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    def aws_client_kwargs(self) -> dict:
        """Keyword arguments for boto3.client(); omits unset credentials."""
        kwargs = {"region_name": self.aws_region}
        if self.aws_access_key_id and self.aws_secret_access_key:
            kwargs["aws_access_key_id"] = self.aws_access_key_id
            kwargs["aws_secret_access_key"] = self.aws_secret_access_key
        return kwargs

    model_config = SettingsConfigDict(
        env_file=".env",
        case_sensitive=False,
        env_prefix="",
        extra="ignore"
    )


settings = Settings()
