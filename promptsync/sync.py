"""Sync entry point for promptsync.

``run_sync`` validates configuration, takes the per-database run lock,
snapshots both sides and hands them to the reconciliation engine. It never
raises: every failure is reported through the returned ``SyncResult``.
"""

import contextlib
import logging
import threading
from pathlib import Path
from typing import Dict, Iterator, Optional, Sequence, Union

from promptsync.config import DEFAULT_API_BASE, SyncCredentials, SyncSettings
from promptsync.remote.client import BitableClient
from promptsync.storage.sqlite import LocalStore
from promptsync.sync_engine import Listener, ReconciliationEngine
from promptsync.types import ConfigurationError, RemoteError, SyncResult, utc_now
from promptsync.validation import TableLocation, parse_table_url

logger = logging.getLogger(__name__)

_run_locks: Dict[str, threading.Lock] = {}
_registry_lock = threading.Lock()


@contextlib.contextmanager
def sync_lock(key: Union[str, Path]) -> Iterator[bool]:
    """Non-blocking per-database run guard.

    Yields True if this caller now holds the lock, False if a run for the
    same database is already in flight. Only guards runs inside this process.
    """
    name = str(Path(key).expanduser().resolve())
    with _registry_lock:
        lock = _run_locks.setdefault(name, threading.Lock())
    acquired = lock.acquire(blocking=False)
    try:
        yield acquired
    finally:
        if acquired:
            lock.release()


def _fail(result: SyncResult, message: str) -> SyncResult:
    result.message = message
    result.errors.append(message)
    result.completed_at = utc_now()
    return result


def run_sync(
    credentials: SyncCredentials,
    table_location: Union[str, TableLocation],
    *,
    store: Optional[LocalStore] = None,
    client: Optional[BitableClient] = None,
    settings: Optional[SyncSettings] = None,
    cancel_event: Optional[threading.Event] = None,
    dry_run: bool = False,
    api_base: str = DEFAULT_API_BASE,
    listeners: Sequence[Listener] = (),
) -> SyncResult:
    """Run one full bidirectional sync.

    Args:
        credentials: App id/secret pair.
        table_location: Table URL or an already parsed ``TableLocation``.
        store: Local store; defaults to the database under the promptsync home.
        client: Remote client; built from the credentials when omitted and
            closed afterwards.
        settings: Batch size, concurrency and timeout tunables.
        cancel_event: Set it to stop the run between batches.
        dry_run: Compute the plan without applying it.
        api_base: API root used when building a client.
        listeners: Notified after each record is written locally.

    Returns:
        SyncResult with per-direction counts. ``success`` is False on any
        configuration, transport or per-record failure and on cancellation.
    """
    result = SyncResult(started_at=utc_now())
    settings = settings or SyncSettings.from_env()

    try:
        credentials.validate()
        location = table_location if isinstance(table_location, TableLocation) else parse_table_url(table_location)
    except ConfigurationError as e:
        logger.warning(f"Sync not started: {e}")
        return _fail(result, str(e))

    try:
        store = store or LocalStore()
    except Exception as e:
        logger.error(f"Failed to open local store: {e}")
        return _fail(result, f"Failed to open local store: {e}")

    with sync_lock(store.db_path) as acquired:
        if not acquired:
            logger.info("Sync requested while another sync is running; refusing")
            return _fail(result, "A sync is already in progress")

        owns_client = client is None
        try:
            if client is None:
                client = BitableClient(credentials, location, api_base=api_base, settings=settings)
        except ValueError as e:
            return _fail(result, str(e))

        try:
            try:
                local = store.list_all()
            except Exception as e:
                logger.error(f"Failed to read local records: {e}")
                return _fail(result, f"Failed to read local records: {e}")

            try:
                remote = client.list_all()
            except RemoteError as e:
                logger.error(f"Failed to list remote records: {e}")
                return _fail(result, f"Failed to list remote records: {e}")

            logger.info(f"Snapshots: {len(local)} local, {len(remote)} remote records")
            engine = ReconciliationEngine(store, client, settings, listeners=listeners)
            _, result = engine.reconcile(local, remote, cancel_event=cancel_event, dry_run=dry_run)
            return result
        except Exception as e:
            logger.exception("Sync failed unexpectedly")
            return _fail(result, f"Sync failed: {e}")
        finally:
            if owns_client:
                client.close()
