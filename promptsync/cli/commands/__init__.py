"""CLI command modules for promptsync.

Each module contains related command handlers used by __main__.py.
"""

from promptsync.cli.commands.config import cmd_config, cmd_fields, cmd_test
from promptsync.cli.commands.prompts import cmd_add, cmd_favorite, cmd_list, cmd_tags, cmd_use
from promptsync.cli.commands.sync import cmd_sync

__all__ = [
    "cmd_add",
    "cmd_config",
    "cmd_favorite",
    "cmd_fields",
    "cmd_list",
    "cmd_sync",
    "cmd_tags",
    "cmd_test",
    "cmd_use",
]
