"""Tests for BitableClient against an in-memory table (httpx.MockTransport).

Tests:
- token exchange, caching and refresh on invalid-token codes
- paging through list results
- batch create/update with per-record fallback
- retry policy for reads and writes
- readable error messages
"""

import json

import httpx
import pytest

from promptsync.remote.client import BitableClient, describe_error
from promptsync.remote.codec import encode_fields
from promptsync.types import RemoteApiError, TransportError


class TestConstruction:
    def test_refuses_plain_http_remote(self, credentials, location):
        with pytest.raises(ValueError, match="HTTPS"):
            BitableClient(credentials, location, api_base="http://evil.example.com/open-apis")

    def test_allows_localhost_http(self, credentials, location):
        client = BitableClient(credentials, location, api_base="http://localhost:8080/open-apis")
        client.close()


class TestToken:
    def test_token_is_cached(self, client, fake_bitable):
        client.list_all()
        client.list_all()
        assert fake_bitable.tokens_issued == 1
        auth = fake_bitable.calls("/records")[0].headers["Authorization"]
        assert auth == "Bearer t-1"

    def test_token_request_body(self, client, fake_bitable):
        client.list_all()
        body = json.loads(fake_bitable.calls("/tenant_access_token/internal")[0].content)
        assert body == {"app_id": "cli_test", "app_secret": "secret"}

    def test_invalid_token_is_refreshed_once(self, client, fake_bitable):
        client.list_all()
        fake_bitable.expired_tokens.add("t-1")

        client.list_all()

        assert fake_bitable.tokens_issued == 2

    def test_invalid_credentials_raise_readable_error(self, client, fake_bitable):
        fake_bitable.token_code = 10014
        with pytest.raises(RemoteApiError) as exc_info:
            client.list_all()
        assert exc_info.value.code == 10014
        assert "Invalid app secret" in str(exc_info.value)


class TestListAll:
    def test_pages_through_results(self, client, fake_bitable, make_record):
        fake_bitable.page_size = 2
        records = [make_record(title=f"r{i}") for i in range(5)]
        for record in records:
            fake_bitable.add_row(encode_fields(record))

        listed = client.list_all()

        assert {r.id for r in listed} == {r.id for r in records}
        assert all(r.remote_ref for r in listed)
        assert len(fake_bitable.calls("/records")) == 3

    def test_skips_undecodable_rows(self, client, fake_bitable, make_record, caplog):
        fake_bitable.add_row(encode_fields(make_record()))
        fake_bitable.add_row({"title": "typed by hand"})

        listed = client.list_all()

        assert len(listed) == 1
        assert "Skipped 1 remote rows" in caplog.text

    def test_table_not_found(self, credentials, fake_bitable):
        from promptsync.validation import TableLocation

        client = BitableClient(
            credentials,
            TableLocation("bascnAppToken", "tblMissing"),
            api_base="https://open.feishu.test/open-apis",
            transport=fake_bitable.transport,
        )
        with pytest.raises(RemoteApiError, match="Table not found"):
            client.list_all()
        client.close()


class TestRetries:
    def test_reads_retry_on_server_errors(self, client, fake_bitable):
        client.list_all()  # fetch token first
        fake_bitable.fail_next = [(503, {}), (500, {})]

        assert client.list_all() == []
        assert client.sleeps == [0.5, 1.0]

    def test_reads_retry_on_transport_errors(self, client, fake_bitable):
        client.list_all()
        fake_bitable.fail_next = [(0, httpx.ConnectError("connection refused"))]

        assert client.list_all() == []
        assert client.sleeps == [0.5]

    def test_rate_limit_honours_retry_after(self, client, fake_bitable):
        client.list_all()
        fake_bitable.fail_next = [(429, {}, {"Retry-After": "2"})]

        assert client.list_all() == []
        assert client.sleeps == [2.0]

    def test_reads_give_up_after_max_attempts(self, client, fake_bitable):
        client.list_all()
        fake_bitable.fail_next = [(503, {})] * 3

        with pytest.raises(TransportError, match="HTTP 503"):
            client.list_all()
        assert len(client.sleeps) == 2

    def test_writes_not_retried_on_server_error(self, client, fake_bitable, make_record):
        client.list_all()
        fake_bitable.fail_next = [(500, {})]

        with pytest.raises(TransportError):
            client.batch_create([make_record()])
        assert fake_bitable.rows == {}
        assert client.sleeps == []

    def test_writes_retried_once_on_transport_error(self, client, fake_bitable, make_record):
        client.list_all()
        fake_bitable.fail_next = [(0, httpx.ReadTimeout("timed out"))]

        outcomes = client.batch_create([make_record()])

        assert outcomes[0].ok
        assert len(fake_bitable.rows) == 1

    def test_writes_fail_after_second_transport_error(self, client, fake_bitable, make_record):
        client.list_all()
        fake_bitable.fail_next = [(0, httpx.ConnectError("down")), (0, httpx.ConnectError("down"))]

        with pytest.raises(TransportError):
            client.batch_create([make_record()])


class TestEnvelope:
    def test_non_object_body_is_a_transport_error(self, client, fake_bitable):
        client.list_all()
        fake_bitable.fail_next = [(200, [{"code": 0}])]

        with pytest.raises(TransportError, match="list instead of a JSON object"):
            client.list_all()
        assert client.sleeps == []

    def test_string_body_is_a_transport_error(self, client, fake_bitable):
        client.list_all()
        fake_bitable.fail_next = [(200, "ok")]

        with pytest.raises(TransportError, match="str instead"):
            client.list_all()


class TestBatchWrites:
    def test_batch_create_returns_refs(self, client, fake_bitable, make_record):
        records = [make_record(title=f"r{i}", tags=["x"]) for i in range(3)]

        outcomes = client.batch_create(records)

        assert [o.record_id for o in outcomes] == [r.id for r in records]
        assert all(o.ok and o.remote_ref for o in outcomes)
        assert len(fake_bitable.calls("/batch_create")) == 1
        stored = fake_bitable.rows_by_id()[records[0].id]
        assert json.loads(stored["tags"]) == ["x"]

    def test_batch_create_empty_makes_no_request(self, client, fake_bitable):
        assert client.batch_create([]) == []
        assert fake_bitable.requests == []

    def test_rejected_batch_falls_back_per_record(self, client, fake_bitable, make_record):
        records = [make_record(title=f"r{i}") for i in range(4)]
        fake_bitable.reject_ids.add(records[2].id)

        outcomes = client.batch_create(records)

        assert [o.ok for o in outcomes] == [True, True, False, True]
        assert "1254001" in outcomes[2].error
        assert len(fake_bitable.rows) == 3

    def test_batch_update(self, client, fake_bitable, make_record):
        record = make_record(title="old")
        ref = fake_bitable.add_row(encode_fields(record))
        record.title = "new"
        record.remote_ref = ref

        outcomes = client.batch_update([record])

        assert outcomes[0].ok
        assert fake_bitable.rows[ref]["title"] == "new"

    def test_batch_update_requires_remote_ref(self, client, fake_bitable, make_record):
        outcomes = client.batch_update([make_record()])

        assert not outcomes[0].ok
        assert "No remote row" in outcomes[0].error
        assert fake_bitable.calls("/batch_update") == []

    def test_rejected_update_falls_back_per_record(self, client, fake_bitable, make_record):
        records = [make_record(title=f"r{i}") for i in range(3)]
        for record in records:
            record.remote_ref = fake_bitable.add_row(encode_fields(record))
            record.title += " edited"
        fake_bitable.reject_ids.add(records[0].id)

        outcomes = client.batch_update(records)

        assert [o.ok for o in outcomes] == [False, True, True]
        assert len(fake_bitable.calls(f"/records/{records[1].remote_ref}")) == 1


class TestDiagnostics:
    def test_list_fields(self, client):
        names = [f["field_name"] for f in client.list_fields()]
        assert "updatedAt" in names

    def test_connection_ok(self, client):
        report = client.test_connection()
        assert report["ok"] is True
        assert report["missing_fields"] == []

    def test_connection_reports_missing_fields(self, client, fake_bitable):
        fake_bitable.fields = [f for f in fake_bitable.fields if f["field_name"] != "lastUsed"]
        report = client.test_connection()
        assert report["ok"] is False
        assert report["missing_fields"] == ["lastUsed"]

    def test_connection_reports_auth_failure(self, client, fake_bitable):
        fake_bitable.token_code = 10013
        report = client.test_connection()
        assert report["ok"] is False
        assert "Invalid app ID" in report["message"]

    def test_describe_error(self):
        assert describe_error(99991672, "").startswith("The app lacks Bitable permissions")
        assert describe_error(123, "custom") == "custom"
        assert describe_error(123, "") == "Unknown error"
