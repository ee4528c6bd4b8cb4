"""Reconciliation engine for promptsync.

Compares a local snapshot against a remote snapshot and applies the
resulting plan:

- ``plan_actions`` classifies every record id (pure, no I/O)
- ``ReconciliationEngine.reconcile`` applies remote-side actions in batches
  through the remote client while ``LocalMaterializer`` drains local-side
  actions from a queue on its own thread
- the outcome is tallied into a ``SyncResult``

Conflicts are resolved wholesale by ``(updated_at, last use)`` at millisecond
precision; nothing is merged field by field and nothing is rolled back when
part of a run fails. The engine keeps no state between runs.
"""

import dataclasses
import logging
import queue
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from promptsync.config import SyncSettings
from promptsync.types import (
    ActionSet,
    MaterializeRequest,
    PlannedAction,
    Record,
    RecordOutcome,
    SyncAction,
    SyncResult,
    utc_now,
)

logger = logging.getLogger(__name__)

Listener = Callable[[MaterializeRequest, Record], None]


# === Planning ===


def compare(local: Record, remote: Record) -> int:
    """1 if the local copy is newer, -1 if the remote copy is, 0 if equal."""
    local_key, remote_key = local.version_key, remote.version_key
    if local_key > remote_key:
        return 1
    if local_key < remote_key:
        return -1
    return 0


def _index_remote(remote: Sequence[Record]) -> Dict[str, Record]:
    by_id: Dict[str, Record] = {}
    for record in remote:
        existing = by_id.get(record.id)
        if existing is None:
            by_id[record.id] = record
            continue
        logger.warning(
            f"Remote table has duplicate rows for record {record.id} "
            f"({existing.remote_ref}, {record.remote_ref}); using the newest"
        )
        if compare(record, existing) > 0:
            by_id[record.id] = record
    return by_id


def plan_actions(local: Sequence[Record], remote: Sequence[Record]) -> ActionSet:
    """Classify each record id in the union of both snapshots."""
    plan = ActionSet()
    remote_by_id = _index_remote(remote)
    seen = set()

    for record in local:
        if record.id in seen:
            continue
        seen.add(record.id)
        other = remote_by_id.get(record.id)
        if other is None:
            plan.add(PlannedAction(SyncAction.CREATE_REMOTE, record))
            continue
        direction = compare(record, other)
        if direction > 0:
            plan.add(PlannedAction(SyncAction.UPDATE_REMOTE, record, remote_ref=other.remote_ref))
        elif direction < 0:
            plan.add(PlannedAction(SyncAction.UPDATE_LOCAL, other))
        else:
            plan.add(PlannedAction(SyncAction.NOOP, record))

    for record_id, record in remote_by_id.items():
        if record_id not in seen:
            plan.add(PlannedAction(SyncAction.CREATE_LOCAL, record))

    return plan


def chunked(items: List, size: int) -> List[List]:
    return [items[i : i + size] for i in range(0, len(items), size)]


# === Local side ===


class LocalMaterializer:
    """Applies remote-origin records to the local store from a queue.

    Requests are consumed on a dedicated thread. Listeners registered with
    ``add_listener`` are told about each applied record; they are
    notifications only, and their exceptions are logged and ignored.

    Args:
        store: The local store (needs ``upsert_from_remote``).
        cancel_event: Checked before each request; once set, remaining
            requests are skipped.
    """

    _STOP = object()

    def __init__(self, store, cancel_event: Optional[threading.Event] = None):
        self._store = store
        self._cancel_event = cancel_event
        self._queue: "queue.Queue" = queue.Queue()
        self._listeners: List[Listener] = []
        self._thread: Optional[threading.Thread] = None
        self.results: List[Tuple[MaterializeRequest, RecordOutcome]] = []
        self.skipped = 0

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def start(self) -> None:
        self._thread = threading.Thread(target=self._run, name="promptsync-materializer", daemon=True)
        self._thread.start()

    def submit(self, request: MaterializeRequest) -> None:
        self._queue.put(request)

    def finish(self) -> List[Tuple[MaterializeRequest, RecordOutcome]]:
        """Wait for every submitted request to be handled."""
        self._queue.put(self._STOP)
        if self._thread is not None:
            self._thread.join()
        return self.results

    def _run(self) -> None:
        while True:
            request = self._queue.get()
            if request is self._STOP:
                return
            if self._cancel_event is not None and self._cancel_event.is_set():
                self.skipped += 1
                continue
            self.results.append((request, self.apply(request)))

    def apply(self, request: MaterializeRequest) -> RecordOutcome:
        record_id = request.record.id
        try:
            stored = self._store.upsert_from_remote(request.record, request.tag_names)
        except Exception as e:
            logger.debug(f"upsert_from_remote failed for {record_id}: {type(e).__name__}: {e}")
            return RecordOutcome(record_id, ok=False, error=str(e))

        for listener in self._listeners:
            try:
                listener(request, stored)
            except Exception as e:
                logger.warning(f"Listener {listener!r} failed for record {record_id}: {e}")
        return RecordOutcome(record_id, ok=True)


# === Engine ===


class ReconciliationEngine:
    """Plans and applies one reconciliation between a local store and a remote table.

    Args:
        store: Local store (``upsert_from_remote`` is used for local-side actions).
        client: Remote client (``batch_create`` / ``batch_update``).
        settings: Batch size and remote concurrency.
        listeners: Called after each record is materialized locally.
    """

    def __init__(self, store, client, settings: Optional[SyncSettings] = None, listeners: Sequence[Listener] = ()):
        self.store = store
        self.client = client
        self.settings = settings or SyncSettings()
        self.listeners = list(listeners)

    def reconcile(
        self,
        local: Sequence[Record],
        remote: Sequence[Record],
        *,
        cancel_event: Optional[threading.Event] = None,
        dry_run: bool = False,
    ) -> Tuple[ActionSet, SyncResult]:
        result = SyncResult(started_at=utc_now())
        plan = plan_actions(local, remote)
        result.total_processed = plan.total
        logger.info(f"Sync plan: {plan.counts()}")

        if dry_run:
            for planned in plan:
                logger.info(f"Would {planned}")
            result.message = "Dry run: " + ", ".join(f"{k}={v}" for k, v in plan.counts().items())
            result.completed_at = utc_now()
            return plan, result

        cancel_event = cancel_event or threading.Event()

        materializer = LocalMaterializer(self.store, cancel_event)
        for listener in self.listeners:
            materializer.add_listener(listener)
        materializer.start()
        for planned in plan.of(SyncAction.CREATE_LOCAL) + plan.of(SyncAction.UPDATE_LOCAL):
            materializer.submit(MaterializeRequest(planned.action, planned.record, planned.record.tag_names))

        try:
            remote_results, skipped_batches = self._apply_remote(plan, cancel_event)
        finally:
            local_results = materializer.finish()

        for action, outcome in remote_results:
            self._tally(result, action, outcome)
        for request, outcome in local_results:
            self._tally(result, request.action, outcome)

        result.cancelled = cancel_event.is_set() and (skipped_batches > 0 or materializer.skipped > 0)
        result.message = self._message(result)
        result.completed_at = utc_now()
        logger.info(result.message)
        return plan, result

    def _apply_remote(
        self, plan: ActionSet, cancel_event: threading.Event
    ) -> Tuple[List[Tuple[SyncAction, RecordOutcome]], int]:
        batches: List[Tuple[SyncAction, List[Record]]] = []
        for batch in chunked([p.record for p in plan.of(SyncAction.CREATE_REMOTE)], self.settings.batch_size):
            batches.append((SyncAction.CREATE_REMOTE, batch))
        updates = [dataclasses.replace(p.record, remote_ref=p.remote_ref) for p in plan.of(SyncAction.UPDATE_REMOTE)]
        for batch in chunked(updates, self.settings.batch_size):
            batches.append((SyncAction.UPDATE_REMOTE, batch))
        if not batches:
            return [], 0

        def run_batch(action: SyncAction, batch: List[Record]) -> Optional[List[RecordOutcome]]:
            if cancel_event.is_set():
                return None
            try:
                if action is SyncAction.CREATE_REMOTE:
                    return self.client.batch_create(batch)
                return self.client.batch_update(batch)
            except Exception as e:
                logger.warning(
                    f"{action.value} batch of {len(batch)} failed: {e}",
                    extra={"action": action.value, "error_type": type(e).__name__},
                )
                return [RecordOutcome(r.id, ok=False, error=f"{action.value} batch failed: {e}") for r in batch]

        results: List[Tuple[SyncAction, RecordOutcome]] = []
        skipped = 0
        with ThreadPoolExecutor(max_workers=self.settings.remote_concurrency) as pool:
            futures = [(action, pool.submit(run_batch, action, batch)) for action, batch in batches]
            for action, future in futures:
                outcomes = future.result()
                if outcomes is None:
                    skipped += 1
                    continue
                results.extend((action, outcome) for outcome in outcomes)
        return results, skipped

    @staticmethod
    def _tally(result: SyncResult, action: SyncAction, outcome: RecordOutcome) -> None:
        if not outcome.ok:
            result.failed += 1
            result.errors.append(f"{action.value} {outcome.record_id}: {outcome.error}")
            logger.warning(
                f"Record {outcome.record_id} failed to {action.value}: {outcome.error}",
                extra={"record_id": outcome.record_id, "action": action.value, "error_type": "RecordFailure"},
            )
            return
        if action is SyncAction.CREATE_LOCAL:
            result.local_created += 1
        elif action is SyncAction.UPDATE_LOCAL:
            result.local_updated += 1
        elif action is SyncAction.CREATE_REMOTE:
            result.remote_created += 1
        elif action is SyncAction.UPDATE_REMOTE:
            result.remote_updated += 1

    @staticmethod
    def _message(result: SyncResult) -> str:
        if result.cancelled:
            return f"Sync cancelled after applying {result.applied} changes"
        if result.failed:
            return f"Sync finished with {result.failed} failed records ({result.applied} changes applied)"
        if result.applied == 0:
            return f"Already in sync ({result.total_processed} records)"
        return f"Sync complete: {result.applied} changes applied"
