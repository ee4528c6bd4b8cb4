"""
promptsync CLI - keep a local prompt library in sync with a Feishu Bitable table.

Usage:
    promptsync config save [--app-id ID] [--app-secret S] [--table-url URL]
    promptsync config show|check
    promptsync test
    promptsync fields [--json]
    promptsync sync [--dry-run] [--json]
    promptsync list [--recent] [--json]
    promptsync add TITLE CONTENT [--tag T]...
    promptsync tags
    promptsync use ID
    promptsync favorite ID
"""

import argparse
import logging
import sys
from typing import List, Optional

from promptsync.cli.commands import (
    cmd_add,
    cmd_config,
    cmd_favorite,
    cmd_fields,
    cmd_list,
    cmd_sync,
    cmd_tags,
    cmd_test,
    cmd_use,
)
from promptsync.storage.sqlite import LocalStore
from promptsync.types import PromptSyncError, RecordNotFoundError

logger = logging.getLogger(__name__)

STORE_COMMANDS = {
    "sync": cmd_sync,
    "list": cmd_list,
    "add": cmd_add,
    "tags": cmd_tags,
    "use": cmd_use,
    "favorite": cmd_favorite,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="promptsync",
        description="Sync a local prompt library with a Feishu Bitable table",
    )
    parser.add_argument("--db", help="Local database path (default: ~/.promptsync/promptsync.db)")
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    # config
    p_config = subparsers.add_parser("config", help="Manage remote table credentials")
    config_sub = p_config.add_subparsers(dest="config_action", required=True)

    config_save = config_sub.add_parser("save", help="Save credentials and table URL")
    config_save.add_argument("--app-id", help="Feishu app ID")
    config_save.add_argument("--app-secret", help="Feishu app secret")
    config_save.add_argument("--table-url", help="Bitable table link (…/base/<token>?table=<id>)")
    config_save.add_argument("--api-base", help="API root (default: https://open.feishu.cn/open-apis)")

    config_show = config_sub.add_parser("show", help="Show configuration (secret masked)")
    config_show.add_argument("--json", "-j", action="store_true")

    config_sub.add_parser("check", help="Validate configuration without network access")

    # test / fields
    subparsers.add_parser("test", help="Check credentials and table access")
    p_fields = subparsers.add_parser("fields", help="List the remote table's fields")
    p_fields.add_argument("--json", "-j", action="store_true")

    # sync
    p_sync = subparsers.add_parser("sync", help="Full bidirectional sync")
    p_sync.add_argument("--dry-run", "-n", action="store_true", help="Show what would change")
    p_sync.add_argument("--json", "-j", action="store_true", help="Output as JSON")

    # local prompts
    p_list = subparsers.add_parser("list", help="List prompts")
    p_list.add_argument("--recent", "-r", action="store_true", help="Only recently used prompts")
    p_list.add_argument("--limit", "-l", type=int, default=5, help="Limit for --recent (default: 5)")
    p_list.add_argument("--json", "-j", action="store_true")

    p_add = subparsers.add_parser("add", help="Add a prompt")
    p_add.add_argument("title", help="Prompt title")
    p_add.add_argument("content", help="Prompt text")
    p_add.add_argument("--tag", "-t", action="append", help="Tag (repeatable)")
    p_add.add_argument("--favorite", "-f", action="store_true", help="Mark as favorite")

    subparsers.add_parser("tags", help="List tags with usage counts")

    p_use = subparsers.add_parser("use", help="Print a prompt and mark it used")
    p_use.add_argument("id", help="Prompt ID (or 8+ character prefix)")

    p_favorite = subparsers.add_parser("favorite", help="Toggle favorite")
    p_favorite.add_argument("id", help="Prompt ID (or 8+ character prefix)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    try:
        if args.command == "config":
            return cmd_config(args)
        if args.command == "test":
            return cmd_test(args)
        if args.command == "fields":
            return cmd_fields(args)

        store = LocalStore(args.db)
        return STORE_COMMANDS[args.command](args, store)
    except RecordNotFoundError as e:
        print(f"✗ {e}")
        return 1
    except (ValueError, TypeError) as e:
        logger.error(f"Input validation error: {e}")
        return 1
    except PromptSyncError as e:
        logger.error(f"Command failed: {e}")
        return 1
    except Exception as e:
        logger.error(f"Command failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
