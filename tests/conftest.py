"""
Pytest fixtures and test configuration for promptsync tests.
"""

import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import httpx
import pytest

from promptsync.config import SyncCredentials, SyncSettings
from promptsync.remote.client import BitableClient
from promptsync.storage.sqlite import LocalStore
from promptsync.types import Record, Tag, new_id
from promptsync.validation import TableLocation

APP_TOKEN = "bascnAppToken"
TABLE_ID = "tblTable01"
TABLE_URL = f"https://example.feishu.cn/base/{APP_TOKEN}?table={TABLE_ID}"
API_BASE = "https://open.feishu.test/open-apis"

BASE_TIME = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def _at(minutes: int) -> datetime:
    """BASE_TIME shifted by whole minutes."""
    return BASE_TIME + timedelta(minutes=minutes)


def _make_record(
    title: str = "A prompt",
    content: str = "Prompt body",
    tags: Optional[List[str]] = None,
    created: int = 0,
    updated: int = 0,
    last_used: Optional[int] = None,
    record_id: Optional[str] = None,
    is_favorite: bool = False,
    remote_ref: Optional[str] = None,
) -> Record:
    return Record(
        id=record_id or new_id(),
        title=title,
        content=content,
        created_at=_at(created),
        updated_at=_at(updated),
        tags=[Tag(name=name) for name in (tags or [])],
        is_favorite=is_favorite,
        last_used_at=_at(last_used) if last_used is not None else None,
        remote_ref=remote_ref,
    )


@pytest.fixture
def make_record() -> Callable[..., Record]:
    """Factory for records; times are minutes after BASE_TIME."""
    return _make_record


@pytest.fixture
def at() -> Callable[[int], datetime]:
    return _at


@pytest.fixture
def temp_db(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "test.db"


@pytest.fixture
def store(temp_db):
    """Create a LocalStore instance for testing."""
    return LocalStore(temp_db)


@pytest.fixture(autouse=True)
def isolated_home(tmp_path, monkeypatch):
    """Keep every test away from the real ~/.promptsync and env settings."""
    home = tmp_path / "home"
    monkeypatch.setenv("PROMPTSYNC_HOME", str(home))
    for name in (
        "PROMPTSYNC_APP_ID",
        "PROMPTSYNC_APP_SECRET",
        "PROMPTSYNC_TABLE_URL",
        "PROMPTSYNC_API_BASE",
        "PROMPTSYNC_BATCH_SIZE",
        "PROMPTSYNC_REMOTE_CONCURRENCY",
        "PROMPTSYNC_TIMEOUT",
    ):
        monkeypatch.delenv(name, raising=False)
    return home


class FakeBitable:
    """In-memory Bitable table served through ``httpx.MockTransport``.

    Rows are kept as raw field maps keyed by Bitable ``record_id``. Hooks let
    tests inject failures:

    - ``reject_ids``: record ids whose create/update is refused (code 1254001);
      a batch containing one is refused as a whole, like the real service
    - ``fail_next``: list of ``(status_code, body[, headers])`` served before normal
      handling; an exception as body is raised instead
    - ``token_code``: business code returned by the token endpoint
    """

    def __init__(self, page_size: int = 500):
        self.rows: Dict[str, Dict[str, Any]] = {}
        self.requests: List[httpx.Request] = []
        self.page_size = page_size
        self.reject_ids: set = set()
        self.fail_next: List[tuple] = []
        self.token_code = 0
        self.tokens_issued = 0
        self.expired_tokens: set = set()
        self.fields = [
            {"field_name": name, "type": 1}
            for name in ("id", "title", "content", "tags", "isFavorite", "createdAt", "updatedAt", "lastUsed")
        ]
        self._next_ref = 0
        self._lock = threading.Lock()

    # --- helpers for tests ---

    def add_row(self, fields: Dict[str, Any], ref: Optional[str] = None) -> str:
        if ref is None:
            self._next_ref += 1
            ref = f"rec{self._next_ref:05d}"
        self.rows[ref] = dict(fields)
        return ref

    def rows_by_id(self) -> Dict[str, Dict[str, Any]]:
        return {fields.get("id"): fields for fields in self.rows.values()}

    def calls(self, suffix: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.url.path.endswith(suffix)]

    # --- transport ---

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        with self._lock:
            return self._handle(request)

    def _handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_next:
            status, body, *extra = self.fail_next.pop(0)
            if isinstance(body, Exception):
                raise body
            return httpx.Response(status, json=body, headers=extra[0] if extra else None)

        path = request.url.path
        if path.endswith("/auth/v3/tenant_access_token/internal"):
            return self._token()

        token = request.headers.get("Authorization", "").removeprefix("Bearer ")
        if token in self.expired_tokens:
            return httpx.Response(400, json={"code": 99991663, "msg": "token invalid"})

        table_prefix = f"/open-apis/bitable/v1/apps/{APP_TOKEN}/tables/{TABLE_ID}"
        if not path.startswith(table_prefix):
            return httpx.Response(404, json={"code": 1254010, "msg": "TableIdNotFound"})
        rest = path[len(table_prefix):]

        if rest == "/fields":
            return self._ok({"items": self.fields, "has_more": False, "total": len(self.fields)})
        if rest == "/records" and request.method == "GET":
            return self._list(request)
        if rest == "/records/batch_create":
            return self._batch_create(json.loads(request.content))
        if rest == "/records/batch_update":
            return self._batch_update(json.loads(request.content))
        if rest == "/records" and request.method == "POST":
            body = json.loads(request.content)
            if self._rejected(body["fields"]):
                return httpx.Response(400, json={"code": 1254001, "msg": "WrongRequestBody"})
            ref = self.add_row(body["fields"])
            return self._ok({"record": {"record_id": ref, "fields": body["fields"]}})
        if rest.startswith("/records/") and request.method == "PUT":
            ref = rest.split("/")[-1]
            body = json.loads(request.content)
            if ref not in self.rows:
                return httpx.Response(400, json={"code": 1254043, "msg": "RecordIdNotFound"})
            if self._rejected(body["fields"]):
                return httpx.Response(400, json={"code": 1254001, "msg": "WrongRequestBody"})
            self.rows[ref].update(body["fields"])
            return self._ok({"record": {"record_id": ref, "fields": self.rows[ref]}})
        return httpx.Response(404, json={"code": 404, "msg": "not found"})

    @staticmethod
    def _ok(data: Dict[str, Any]) -> httpx.Response:
        return httpx.Response(200, json={"code": 0, "msg": "success", "data": data})

    def _rejected(self, fields: Dict[str, Any]) -> bool:
        return fields.get("id") in self.reject_ids

    def _token(self) -> httpx.Response:
        if self.token_code:
            return httpx.Response(200, json={"code": self.token_code, "msg": "invalid param"})
        self.tokens_issued += 1
        return httpx.Response(
            200,
            json={
                "code": 0,
                "msg": "ok",
                "tenant_access_token": f"t-{self.tokens_issued}",
                "expire": 7200,
            },
        )

    def _list(self, request: httpx.Request) -> httpx.Response:
        refs = sorted(self.rows)
        start = int(request.url.params.get("page_token") or 0)
        page = refs[start : start + self.page_size]
        has_more = start + self.page_size < len(refs)
        data = {
            "items": [{"record_id": ref, "fields": self.rows[ref]} for ref in page],
            "has_more": has_more,
            "total": len(refs),
        }
        if has_more:
            data["page_token"] = str(start + self.page_size)
        return self._ok(data)

    def _batch_create(self, body: Dict[str, Any]) -> httpx.Response:
        if any(self._rejected(r["fields"]) for r in body["records"]):
            return httpx.Response(400, json={"code": 1254001, "msg": "WrongRequestBody"})
        created = []
        for item in body["records"]:
            ref = self.add_row(item["fields"])
            created.append({"record_id": ref, "fields": item["fields"]})
        return self._ok({"records": created})

    def _batch_update(self, body: Dict[str, Any]) -> httpx.Response:
        if any(self._rejected(r["fields"]) or r["record_id"] not in self.rows for r in body["records"]):
            return httpx.Response(400, json={"code": 1254001, "msg": "WrongRequestBody"})
        updated = []
        for item in body["records"]:
            self.rows[item["record_id"]].update(item["fields"])
            updated.append({"record_id": item["record_id"], "fields": self.rows[item["record_id"]]})
        return self._ok({"records": updated})


@pytest.fixture
def fake_bitable():
    return FakeBitable()


@pytest.fixture
def credentials():
    return SyncCredentials(app_id="cli_test", app_secret="secret")


@pytest.fixture
def location():
    return TableLocation(app_token=APP_TOKEN, table_id=TABLE_ID)


@pytest.fixture
def client(fake_bitable, credentials, location):
    """BitableClient wired to the in-memory table, with backoff sleeps recorded."""
    sleeps: List[float] = []
    client = BitableClient(
        credentials,
        location,
        api_base=API_BASE,
        settings=SyncSettings(batch_size=100),
        transport=fake_bitable.transport,
        sleep=sleeps.append,
    )
    client.sleeps = sleeps
    yield client
    client.close()
