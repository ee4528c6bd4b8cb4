"""Sync command for promptsync CLI: local <-> Bitable reconciliation."""

import json
import logging
import threading
from typing import TYPE_CHECKING

from promptsync.config import load_credentials
from promptsync.sync import run_sync
from promptsync.types import ConfigurationError

logger = logging.getLogger(__name__)

if TYPE_CHECKING:
    import argparse

    from promptsync.storage.sqlite import LocalStore


def cmd_sync(args: "argparse.Namespace", store: "LocalStore") -> int:
    """Run one bidirectional sync. Ctrl+C cancels between batches."""
    config = load_credentials()
    try:
        location = config.check()
    except ConfigurationError as e:
        print(f"✗ {e}")
        print("  Run `promptsync config save` first.")
        return 1

    cancel_event = threading.Event()
    outcome = {}

    def _worker():
        outcome["result"] = run_sync(
            config.credentials,
            location,
            store=store,
            cancel_event=cancel_event,
            dry_run=args.dry_run,
            api_base=config.api_base,
        )

    worker = threading.Thread(target=_worker, name="promptsync-sync")
    worker.start()
    while worker.is_alive():
        try:
            worker.join(0.2)
        except KeyboardInterrupt:
            if not cancel_event.is_set():
                print("\nCancelling after the current batch...")
                cancel_event.set()

    result = outcome["result"]
    if args.json:
        print(json.dumps(result.to_dict(), indent=2))
    else:
        print(("✓ " if result.success else "✗ ") + result.summary())
        for error in result.errors[:10]:
            print(f"  - {error}")
        if len(result.errors) > 10:
            print(f"  ... and {len(result.errors) - 10} more")
    return 0 if result.success else 1
