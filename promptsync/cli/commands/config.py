"""Configuration and connectivity commands (config, test, fields)."""

import json
import logging
from typing import TYPE_CHECKING

from promptsync.config import load_credentials, save_credentials
from promptsync.remote.client import BitableClient
from promptsync.types import ConfigurationError, RemoteError
from promptsync.validation import parse_table_url, validate_base_url

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    import argparse


def cmd_config(args: "argparse.Namespace") -> int:
    """Handle config subcommands."""
    action = args.config_action

    if action == "save":
        return _save(args)
    if action == "show":
        return _show(args)
    if action == "check":
        return _check(args)
    return 1


def _save(args: "argparse.Namespace") -> int:
    config = load_credentials()
    if args.app_id:
        config.app_id = args.app_id.strip()
    if args.app_secret:
        config.app_secret = args.app_secret.strip()
    if args.table_url:
        try:
            parse_table_url(args.table_url)
        except ConfigurationError as e:
            print(f"✗ {e}")
            return 1
        config.table_url = args.table_url.strip()
    if args.api_base:
        if validate_base_url(args.api_base) is None:
            print(f"✗ Refusing unsafe API base: {args.api_base}")
            print("   Use https:// or http://localhost for development.")
            return 1
        config.api_base = args.api_base.rstrip("/")

    path = save_credentials(config)
    print(f"✓ Configuration saved to {path}")
    missing = config.missing()
    if missing:
        print(f"  Still missing: {', '.join(missing)}")
    return 0


def _show(args: "argparse.Namespace") -> int:
    data = load_credentials().to_display_dict()
    if args.json:
        print(json.dumps(data, indent=2))
        return 0
    for key, value in data.items():
        print(f"{key:12} {value or '(not set)'}")
    return 0


def _check(args: "argparse.Namespace") -> int:
    try:
        location = load_credentials().check()
    except ConfigurationError as e:
        print(f"✗ {e}")
        return 1
    print(f"✓ Configuration complete (table {location})")
    return 0


def _client() -> BitableClient:
    config = load_credentials()
    location = config.check()
    return BitableClient(config.credentials, location, api_base=config.api_base)


def cmd_test(args: "argparse.Namespace") -> int:
    """Check credentials and table access."""
    try:
        client = _client()
    except ConfigurationError as e:
        print(f"✗ {e}")
        return 1

    with client:
        report = client.test_connection()
    if report["ok"]:
        print(f"✓ {report['message']} ({report.get('latency_ms', 0)}ms)")
        return 0
    print(f"✗ {report['message']}")
    return 1


def cmd_fields(args: "argparse.Namespace") -> int:
    """List the remote table's columns."""
    try:
        client = _client()
    except ConfigurationError as e:
        print(f"✗ {e}")
        return 1

    try:
        with client:
            fields = client.list_fields()
    except RemoteError as e:
        print(f"✗ {e}")
        return 1

    if args.json:
        print(json.dumps(fields, indent=2, ensure_ascii=False))
    else:
        for field in fields:
            print(f"  {field['field_name']}  (type {field['type']})")
    return 0
