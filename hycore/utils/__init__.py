from .exec import exec_command, format_command, spawn_command

__all__ = [
    "exec_command",
    "format_command",
    "spawn_command",
]
