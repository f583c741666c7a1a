from pydantic import BaseModel
from playstream.core.errors import CommandFailed

TERMINAL_STATUSES = {"Success", "Failed", "Cancelled", "TimedOut"}


class CommandResult(BaseModel):
    command_id: str
    instance_id: str
    status: str
    success: bool
    output: str = ""
    error: str = ""

    def raise_for_status(self) -> "CommandResult":
        if not self.success:
            raise CommandFailed(
                f"SSM command {self.command_id} failed with status {self.status}: {self.error}"
            )
        return self
