"""
Error taxonomy shared by the lifecycle core.

Every error carries a machine-readable ``code`` (what workflow history and
status payloads report) and a human-readable ``message``. ``status_code`` is
the HTTP status the API layer answers with.
"""

from typing import Optional


class StreamError(Exception):
    code = "InternalError"
    status_code = 500
    default_message = "Unexpected error"

    def __init__(self, message: Optional[str] = None, code: Optional[str] = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


# Validation

class ValidationError(StreamError):
    code = "ValidationError"
    status_code = 400
    default_message = "Missing or invalid required field"


class MissingImageId(ValidationError):
    code = "MissingImageId"
    default_message = "AMI ID is required for instance creation"


# Missing resources

class ResourceNotFound(StreamError):
    code = "ResourceNotFound"
    status_code = 404
    default_message = "Resource not found"


class InstanceNotFound(ResourceNotFound):
    code = "InstanceNotFound"
    default_message = "Instance does not exist or is not available"


class SessionNotFound(ResourceNotFound):
    code = "SessionNotFound"
    default_message = "No streaming session found"


class ExecutionNotFound(ResourceNotFound):
    code = "ExecutionNotFound"
    default_message = "Workflow execution not found"


class NoActiveInstance(ResourceNotFound):
    code = "NoActiveInstance"
    default_message = "No active instance found for user"


# Operator-fixable backend configuration

class ConfigurationError(StreamError):
    code = "ConfigurationError"
    default_message = "Backend configuration error"


class BackendLimitExceeded(ConfigurationError):
    code = "BackendLimitExceeded"
    default_message = "Cannot create instance: Account instance limit exceeded"


# Deadlines

class StepTimeout(StreamError):
    code = "Timeout"
    status_code = 504
    default_message = "Operation exceeded its deadline"


class WaiterTimedOut(StepTimeout):
    code = "WaiterTimedOut"
    default_message = "Timeout waiting for instance state"


class CommandTimedOut(StepTimeout):
    code = "CommandTimedOut"
    default_message = "Timeout waiting for remote command"


# State conflicts

class ConflictError(StreamError):
    code = "Conflict"
    status_code = 409
    default_message = "Resource is in a conflicting state"


class InstanceBusy(ConflictError):
    code = "InstanceBusy"
    default_message = "Instance is in a pending state and cannot be terminated yet"


class StreamAlreadyActive(ConflictError):
    code = "StreamAlreadyActive"
    default_message = "An active stream already exists for this user"


class ExecutionAlreadyExists(ConflictError):
    code = "ExecutionAlreadyExists"
    default_message = "A workflow with this name is already in progress"


class DeploymentCancelled(ConflictError):
    code = "DeploymentCancelled"
    default_message = "Deployment was cancelled by a terminate request"


class UnsupportedState(StreamError):
    code = "UnsupportedState"
    default_message = "Unknown or unsupported instance state"


# Backend failures

class ProvisioningError(StreamError):
    code = "ProvisioningError"
    status_code = 502
    default_message = "Failed to create EC2 instance"


class CommandError(StreamError):
    code = "CommandError"
    status_code = 502
    default_message = "Remote command could not be executed"


class CommandFailed(CommandError):
    code = "CommandFailed"
    default_message = "Remote command finished unsuccessfully"


class RegistryError(StreamError):
    code = "RegistryError"
    default_message = "Registry operation failed"


class OrchestratorError(StreamError):
    code = "OrchestratorError"
    status_code = 502
    default_message = "Workflow orchestrator request failed"


def error_code_of(exc: BaseException) -> str:
    """Machine-readable code for any exception raised inside a workflow step."""
    if isinstance(exc, StreamError):
        return exc.code
    return type(exc).__name__
