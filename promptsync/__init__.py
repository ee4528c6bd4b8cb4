"""
promptsync - Bidirectional sync between a local prompt library and a Feishu Bitable table.

Local-first: records live in SQLite and reconcile against the remote table
on demand.
"""

from .config import SyncCredentials, SyncSettings, load_credentials
from .remote.client import BitableClient
from .storage.sqlite import LocalStore
from .sync import run_sync
from .sync_engine import LocalMaterializer, ReconciliationEngine, plan_actions
from .types import Record, SyncAction, SyncResult, Tag

try:
    from importlib.metadata import version

    __version__ = version("promptsync")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "BitableClient",
    "LocalMaterializer",
    "LocalStore",
    "ReconciliationEngine",
    "Record",
    "SyncAction",
    "SyncCredentials",
    "SyncResult",
    "SyncSettings",
    "Tag",
    "load_credentials",
    "plan_actions",
    "run_sync",
]
