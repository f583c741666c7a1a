import logging
import time
from typing import Callable, List, Optional

import boto3
from botocore.exceptions import ClientError

from playstream.config import settings
from playstream.core.errors import CommandError, CommandTimedOut
from playstream.core.retry import client_error_code, retry_transient
from playstream.modules.commands.schemas import TERMINAL_STATUSES, CommandResult

logger = logging.getLogger(__name__)

POWERSHELL_DOCUMENT = "AWS-RunPowerShellScript"


class InvocationNotVisible(Exception):
    """The agent has not registered the invocation yet."""


class CommandExecutor:
    """
    Fire a script at an instance's SSM agent, then synchronously await it.

    send_command returns before the script runs, so every configuration step
    goes through wait_for_command: fixed poll interval, overall deadline,
    "not yet visible" retried, terminal statuses returned.
    """

    def __init__(
        self,
        ssm_client=None,
        poll_interval: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ssm = ssm_client or boto3.client("ssm", **settings.aws_client_kwargs())
        self.poll_interval = settings.command_poll_interval_seconds if poll_interval is None else poll_interval
        self._sleep = sleep
        self._clock = clock

    def run_command(self, instance_id: str, script_lines: List[str], timeout_seconds: int = 300) -> str:
        """Submit a PowerShell script and return the command id."""
        try:
            response = self.ssm.send_command(
                InstanceIds=[instance_id],
                DocumentName=POWERSHELL_DOCUMENT,
                Parameters={"commands": script_lines},
                TimeoutSeconds=timeout_seconds,
            )
        except ClientError as e:
            logger.error(f"Failed to send SSM command to {instance_id}: {e}")
            raise CommandError(f"Failed to send SSM command: {e}") from e

        command_id = (response.get("Command") or {}).get("CommandId")
        if not command_id:
            raise CommandError("Failed to send SSM command")
        logger.info(f"Sent SSM command {command_id} to {instance_id}")
        return command_id

    @retry_transient()
    def _get_invocation(self, command_id: str, instance_id: str) -> dict:
        try:
            return self.ssm.get_command_invocation(CommandId=command_id, InstanceId=instance_id)
        except ClientError as e:
            if client_error_code(e) == "InvocationDoesNotExist":
                raise InvocationNotVisible(command_id) from e
            raise

    def wait_for_command(self, command_id: str, instance_id: str, timeout_ms: Optional[int] = None) -> CommandResult:
        if timeout_ms is None:
            timeout_ms = settings.command_timeout_seconds * 1000
        deadline = self._clock() + timeout_ms / 1000.0

        while True:
            try:
                invocation = self._get_invocation(command_id, instance_id)
            except InvocationNotVisible:
                logger.debug(f"Command {command_id} not yet visible on {instance_id}")
                invocation = None

            if invocation is not None:
                status = invocation.get("Status", "")
                logger.debug(f"Command {command_id} status: {status}")
                if status in TERMINAL_STATUSES:
                    success = status == "Success"
                    error = invocation.get("StandardErrorContent") or ""
                    if not success and not error:
                        error = invocation.get("StatusDetails") or "Command failed"
                    return CommandResult(
                        command_id=command_id,
                        instance_id=instance_id,
                        status=status,
                        success=success,
                        output=invocation.get("StandardOutputContent") or "",
                        error=error,
                    )

            if self._clock() >= deadline:
                raise CommandTimedOut(
                    f"Timeout waiting for SSM command {command_id} ({timeout_ms / 1000:.0f}s)"
                )
            self._sleep(self.poll_interval)

    def run_and_wait(
        self,
        instance_id: str,
        script_lines: List[str],
        timeout_ms: Optional[int] = None,
        command_timeout_seconds: int = 300,
    ) -> CommandResult:
        command_id = self.run_command(instance_id, script_lines, timeout_seconds=command_timeout_seconds)
        return self.wait_for_command(command_id, instance_id, timeout_ms)
