"""End-to-end tests for run_sync against the in-memory Bitable table."""

import threading
from unittest.mock import MagicMock

from promptsync.config import SyncCredentials, SyncSettings
from promptsync.remote.codec import encode_fields
from promptsync.sync import run_sync, sync_lock
from promptsync.types import RemoteApiError, TransportError

TABLE_URL = "https://example.feishu.cn/base/bascnAppToken?table=tblTable01"


def sync(credentials, location, store, client, **kwargs):
    return run_sync(credentials, location, store=store, client=client, settings=SyncSettings(batch_size=50), **kwargs)


class TestRunSync:
    def test_round_trip_then_idempotent(self, credentials, location, store, client, fake_bitable, make_record):
        store.create_record("Local", "Body", ["writing"])
        fake_bitable.add_row(encode_fields(make_record(title="Remote", tags=["writing", "code"])))

        first = sync(credentials, location, store, client)
        second = sync(credentials, location, store, client)

        assert first.success
        assert first.remote_created == 1
        assert first.local_created == 1
        assert second.success
        assert second.applied == 0
        assert second.total_processed == 2
        assert second.message.startswith("Already in sync")
        assert {tag.name for tag, _ in store.list_tags()} == {"writing", "code"}

    def test_accepts_table_url_string(self, credentials, store, client):
        result = sync(credentials, TABLE_URL, store, client)
        assert result.success

    def test_remote_edit_flows_to_local(self, credentials, location, store, client, fake_bitable, make_record):
        record = make_record(title="Before", updated=0)
        ref = fake_bitable.add_row(encode_fields(record))
        sync(credentials, location, store, client)

        fake_bitable.rows[ref].update({"title": "After", "updatedAt": encode_fields(make_record(updated=10))["updatedAt"]})
        result = sync(credentials, location, store, client)

        assert result.local_updated == 1
        assert store.get_by_id(record.id).title == "After"

    def test_row_with_unusable_timestamp_is_skipped(self, credentials, location, store, client, fake_bitable, make_record, caplog):
        good = make_record(title="Good")
        fake_bitable.add_row(encode_fields(good))
        broken = encode_fields(make_record(title="Hand edited"))
        broken["updatedAt"] = "1e30"
        fake_bitable.add_row(broken)

        first = sync(credentials, location, store, client)
        second = sync(credentials, location, store, client)

        assert first.success
        assert first.local_created == 1
        assert store.get_by_id(good.id) is not None
        assert "Skipped 1 remote rows" in caplog.text
        assert second.success
        assert second.applied == 0

    def test_dry_run_changes_nothing(self, credentials, location, store, client, fake_bitable):
        store.create_record("Local", "Body")

        result = sync(credentials, location, store, client, dry_run=True)

        assert result.success
        assert result.message.startswith("Dry run")
        assert fake_bitable.rows == {}

    def test_cancelled_run_reports_cancelled(self, credentials, location, store, client):
        store.create_record("Local", "Body")
        cancel = threading.Event()
        cancel.set()

        result = sync(credentials, location, store, client, cancel_event=cancel)

        assert result.cancelled
        assert not result.success


class TestRunSyncFailures:
    def test_missing_credentials(self, location, store):
        client = MagicMock()

        result = run_sync(SyncCredentials(app_id="", app_secret=""), location, store=store, client=client)

        assert not result.success
        assert "App ID" in result.message
        client.list_all.assert_not_called()

    def test_malformed_table_url(self, credentials, store):
        client = MagicMock()

        result = run_sync(credentials, "https://example.feishu.cn/base/abc", store=store, client=client)

        assert not result.success
        assert "table" in result.message.lower()
        client.list_all.assert_not_called()

    def test_refuses_concurrent_run(self, credentials, location, store):
        client = MagicMock()

        with sync_lock(store.db_path) as held:
            assert held
            result = run_sync(credentials, location, store=store, client=client)

        assert not result.success
        assert result.message == "A sync is already in progress"
        client.list_all.assert_not_called()

    def test_lock_released_after_run(self, credentials, location, store, client):
        sync(credentials, location, store, client)
        with sync_lock(store.db_path) as held:
            assert held

    def test_remote_list_failure_applies_nothing(self, credentials, location, store):
        store.create_record("Local", "Body")
        client = MagicMock()
        client.list_all.side_effect = TransportError("GET records failed: connection refused")

        result = run_sync(credentials, location, store=store, client=client)

        assert not result.success
        assert result.message.startswith("Failed to list remote records")
        client.batch_create.assert_not_called()

    def test_auth_failure_is_reported(self, credentials, location, store, client, fake_bitable):
        fake_bitable.token_code = 10014

        result = sync(credentials, location, store, client)

        assert not result.success
        assert "Invalid app secret" in result.message

    def test_local_read_failure(self, credentials, location):
        store = MagicMock()
        store.db_path = "unused.db"
        store.list_all.side_effect = RuntimeError("database is locked")
        client = MagicMock()

        result = run_sync(credentials, location, store=store, client=client)

        assert not result.success
        assert "database is locked" in result.message
        client.list_all.assert_not_called()

    def test_remote_api_error_is_reported(self, credentials, location, store):
        client = MagicMock()
        client.list_all.side_effect = RemoteApiError(1254010, "Table not found")

        result = run_sync(credentials, location, store=store, client=client)

        assert not result.success
        assert "Table not found" in result.message

    def test_caller_client_is_not_closed(self, credentials, location, store):
        client = MagicMock()
        client.list_all.return_value = []

        run_sync(credentials, location, store=store, client=client)

        client.close.assert_not_called()
