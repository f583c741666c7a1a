import logging
import boto3
from botocore.exceptions import ClientError
from playstream.config import settings
from playstream.core.errors import ConfigurationError
from playstream.core.retry import client_error_code, retry_transient

logger = logging.getLogger(__name__)


class ParameterStore:
    """Named configuration values (e.g. the DCV machine image id) from SSM Parameter Store."""

    def __init__(self, ssm_client=None):
        self.ssm = ssm_client or boto3.client("ssm", **settings.aws_client_kwargs())

    @retry_transient()
    def get_parameter(self, name: str, decrypt: bool = False) -> str:
        try:
            response = self.ssm.get_parameter(Name=name, WithDecryption=decrypt)
        except ClientError as e:
            if client_error_code(e) == "ParameterNotFound":
                raise ConfigurationError(f"Parameter '{name}' not found in Parameter Store") from e
            raise
        value = (response.get("Parameter") or {}).get("Value")
        if not value:
            raise ConfigurationError(f"Parameter '{name}' has no value")
        return value
