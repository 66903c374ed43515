"""External process execution."""

from .runner import CommandResult, CommandSpec, ProcessRunner, SubprocessRunner, substitute_variables

__all__ = ["CommandResult", "CommandSpec", "ProcessRunner", "SubprocessRunner", "substitute_variables"]
