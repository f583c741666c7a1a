from playstream.modules.commands.schemas import CommandResult
from playstream.modules.commands.ssm_executor import CommandExecutor
from playstream.modules.commands.parameters import ParameterStore

__all__ = ["CommandExecutor", "CommandResult", "ParameterStore"]
