"""
HTTP client for a Feishu/Lark Bitable table.

Exchanges the app id/secret for a tenant access token, pages through the
table and writes records in batches. The reconciliation engine talks to the
table only through ``list_all``, ``batch_create`` and ``batch_update``.

Retry policy:
- reads and the token exchange retry up to ``max_attempts`` times with
  exponential backoff on transport errors, HTTP 5xx and 429
- writes retry at most once, and only on transport errors
- a batch the service rejects as a whole is re-issued one record at a time,
  so a single bad record fails alone
"""

import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional

import httpx

from promptsync.config import DEFAULT_API_BASE, SyncCredentials, SyncSettings
from promptsync.types import Record, RecordOutcome, RemoteApiError, TransportError
from promptsync.validation import TableLocation, validate_base_url

from .codec import FIELD_NAMES, decode_item, encode_fields, text_value

logger = logging.getLogger(__name__)

PAGE_SIZE = 500
WRITE_ATTEMPTS = 2
TOKEN_REFRESH_MARGIN = 60.0  # seconds before expiry to fetch a new token

# Business codes meaning the access token must be refreshed
TOKEN_INVALID_CODES = frozenset({99991661, 99991663, 99991664})

ERROR_MESSAGES = {
    10013: "Invalid app ID",
    10014: "Invalid app secret",
    99991661: "Access token missing",
    99991663: "Access token invalid",
    99991664: "Access token expired",
    99991672: "The app lacks Bitable permissions; grant bitable:app in the developer console",
    1254032: "The app has no access to this base; add it as a collaborator",
    1254051: "Base not found; check the table URL",
    1254010: "Table not found; check the table id in the URL",
}


def describe_error(code: int, msg: str) -> str:
    """Readable text for a business error code, keeping the service message."""
    known = ERROR_MESSAGES.get(code)
    if known:
        return f"{known} ({msg})" if msg else known
    return msg or "Unknown error"


class BitableClient:
    """Client for one Bitable table.

    Args:
        credentials: App id/secret pair.
        location: App token and table id of the table.
        api_base: API root, ``https://open.feishu.cn/open-apis`` by default.
        settings: Timeout and retry tunables.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).
        sleep: Backoff sleep function.
    """

    def __init__(
        self,
        credentials: SyncCredentials,
        location: TableLocation,
        *,
        api_base: str = DEFAULT_API_BASE,
        settings: Optional[SyncSettings] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        base = validate_base_url(api_base)
        if base is None:
            raise ValueError(
                f"API base must use HTTPS (got {api_base}). "
                "Use HTTPS to protect app credentials, or use localhost for local development."
            )
        self.credentials = credentials
        self.location = location
        self.settings = settings or SyncSettings()
        self._sleep = sleep
        self._client = httpx.Client(
            base_url=base,
            timeout=self.settings.timeout,
            transport=transport,
            headers={"Content-Type": "application/json; charset=utf-8"},
        )
        self._token: Optional[str] = None
        self._token_expires_at = 0.0
        self._token_lock = threading.Lock()

    def __enter__(self) -> "BitableClient":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    @property
    def _table_path(self) -> str:
        return f"/bitable/v1/apps/{self.location.app_token}/tables/{self.location.table_id}"

    # === Transport ===

    def _call(
        self,
        method: str,
        path: str,
        *,
        token: Optional[str] = None,
        json_body: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        idempotent: bool = True,
    ) -> Dict[str, Any]:
        """Send one request, retrying per the policy, and unwrap the envelope.

        Raises:
            TransportError: Network failure, or 5xx/429 after all attempts.
            RemoteApiError: Non-zero business code.
        """
        max_attempts = self.settings.max_attempts if idempotent else WRITE_ATTEMPTS
        headers = {"Authorization": f"Bearer {token}"} if token else None

        last_error: Optional[TransportError] = None
        for attempt in range(max_attempts):
            delay = self.settings.backoff_base * (2**attempt)
            try:
                resp = self._client.request(method, path, json=json_body, params=params, headers=headers)
            except httpx.TransportError as e:
                last_error = TransportError(f"{method} {path} failed: {e}")
            else:
                if resp.status_code == 429 or resp.status_code >= 500:
                    last_error = TransportError(f"{method} {path} returned HTTP {resp.status_code}")
                    if not idempotent:
                        raise last_error
                    if resp.status_code == 429 and "Retry-After" in resp.headers:
                        try:
                            delay = min(float(resp.headers["Retry-After"]), 60.0)
                        except ValueError:
                            pass
                else:
                    return self._unwrap(resp, method, path)

            if attempt < max_attempts - 1:
                logger.info(
                    "%s %s attempt %d failed, retrying in %.1fs: %s",
                    method, path, attempt + 1, delay, last_error,
                )
                self._sleep(delay)

        raise last_error

    def _unwrap(self, resp: httpx.Response, method: str, path: str) -> Dict[str, Any]:
        try:
            data = resp.json()
        except ValueError as e:
            if resp.is_success:
                raise TransportError(f"{method} {path} returned invalid JSON") from e
            raise RemoteApiError(resp.status_code, resp.text[:200] or resp.reason_phrase) from e

        if not isinstance(data, dict):
            raise TransportError(f"{method} {path} returned {type(data).__name__} instead of a JSON object")
        code = data.get("code", 0)
        if code != 0:
            raise RemoteApiError(code, describe_error(code, data.get("msg", "")))
        if not resp.is_success:
            raise RemoteApiError(resp.status_code, resp.reason_phrase)
        return data

    def _access_token(self, force_refresh: bool = False) -> str:
        with self._token_lock:
            if not force_refresh and self._token and time.monotonic() < self._token_expires_at:
                return self._token

            data = self._call(
                "POST",
                "/auth/v3/tenant_access_token/internal",
                json_body={"app_id": self.credentials.app_id, "app_secret": self.credentials.app_secret},
            )
            token = data.get("tenant_access_token")
            if not token:
                raise RemoteApiError(-1, "Token response did not include an access token")
            expire = float(data.get("expire") or 7200)
            self._token = token
            self._token_expires_at = time.monotonic() + max(expire - TOKEN_REFRESH_MARGIN, 0.0)
            logger.debug(f"Obtained tenant access token (expires in {expire:.0f}s)")
            return token

    def _api(self, method: str, path: str, **kwargs) -> Dict[str, Any]:
        """Authenticated call; an invalid or expired token is refreshed once."""
        try:
            return self._call(method, path, token=self._access_token(), **kwargs)
        except RemoteApiError as e:
            if e.code not in TOKEN_INVALID_CODES:
                raise
            logger.info(f"Access token rejected ({e.code}); refreshing")
            return self._call(method, path, token=self._access_token(force_refresh=True), **kwargs)

    # === Reads ===

    def list_all(self) -> List[Record]:
        """Every decodable row of the table, following page tokens."""
        records: List[Record] = []
        skipped = 0
        page_token: Optional[str] = None

        while True:
            params: Dict[str, Any] = {"page_size": PAGE_SIZE}
            if page_token:
                params["page_token"] = page_token
            data = self._api("GET", f"{self._table_path}/records", params=params).get("data") or {}

            for item in data.get("items") or []:
                record = decode_item(item)
                if record is None:
                    skipped += 1
                else:
                    records.append(record)

            page_token = data.get("page_token")
            if not data.get("has_more") or not page_token:
                break

        if skipped:
            logger.warning(f"Skipped {skipped} remote rows without a usable id or timestamps")
        logger.debug(f"Listed {len(records)} remote records")
        return records

    def list_fields(self) -> List[Dict[str, Any]]:
        """Table columns as ``{"field_name", "type"}`` dicts."""
        fields: List[Dict[str, Any]] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"page_size": 100}
            if page_token:
                params["page_token"] = page_token
            data = self._api("GET", f"{self._table_path}/fields", params=params).get("data") or {}
            for item in data.get("items") or []:
                fields.append({"field_name": item.get("field_name"), "type": item.get("type")})
            page_token = data.get("page_token")
            if not data.get("has_more") or not page_token:
                break
        return fields

    def test_connection(self) -> Dict[str, Any]:
        """Check credentials and table access.

        Returns:
            Dict with keys:
            - 'ok': bool, True if the table is reachable with every field present
            - 'message': summary for display
            - 'missing_fields': required columns the table lacks
            - 'latency_ms': round trip of the field listing (if reachable)
        """
        start = time.monotonic()
        try:
            fields = self.list_fields()
        except (RemoteApiError, TransportError) as e:
            return {"ok": False, "message": str(e), "missing_fields": []}

        latency_ms = int((time.monotonic() - start) * 1000)
        present = {f["field_name"] for f in fields}
        missing = [name for name in FIELD_NAMES if name not in present]
        if missing:
            return {
                "ok": False,
                "message": f"Connected, but the table is missing fields: {', '.join(missing)}",
                "missing_fields": missing,
                "latency_ms": latency_ms,
            }
        return {"ok": True, "message": "Connected", "missing_fields": [], "latency_ms": latency_ms}

    # === Writes ===

    def batch_create(self, records: List[Record]) -> List[RecordOutcome]:
        """Create rows for ``records``. One outcome per input, in input order.

        Raises:
            TransportError: The batch could not be delivered at all.
        """
        if not records:
            return []
        body = {"records": [{"fields": encode_fields(r)} for r in records]}
        try:
            data = self._api("POST", f"{self._table_path}/records/batch_create", json_body=body, idempotent=False)
        except RemoteApiError as e:
            if len(records) == 1:
                return [RecordOutcome(records[0].id, ok=False, error=str(e))]
            logger.warning(f"Batch create of {len(records)} records rejected ({e}); retrying one by one")
            return [self._create_one(r) for r in records]

        refs = self._refs_by_id(data)
        return [self._outcome_from_refs(r, refs) for r in records]

    def batch_update(self, records: List[Record]) -> List[RecordOutcome]:
        """Overwrite the rows addressed by each record's ``remote_ref``.

        Records without a ``remote_ref`` fail without a request being made.

        Raises:
            TransportError: The batch could not be delivered at all.
        """
        outcomes: Dict[str, RecordOutcome] = {}
        addressable = []
        for record in records:
            if record.remote_ref:
                addressable.append(record)
            else:
                outcomes[record.id] = RecordOutcome(record.id, ok=False, error="No remote row to update")

        if addressable:
            body = {
                "records": [{"record_id": r.remote_ref, "fields": encode_fields(r)} for r in addressable]
            }
            try:
                data = self._api(
                    "POST", f"{self._table_path}/records/batch_update", json_body=body, idempotent=False
                )
            except RemoteApiError as e:
                if len(addressable) == 1:
                    only = addressable[0]
                    outcomes[only.id] = RecordOutcome(only.id, ok=False, error=str(e))
                else:
                    logger.warning(f"Batch update of {len(addressable)} records rejected ({e}); retrying one by one")
                    for record in addressable:
                        outcomes[record.id] = self._update_one(record)
            else:
                refs = self._refs_by_id(data)
                for record in addressable:
                    outcomes[record.id] = self._outcome_from_refs(record, refs)

        return [outcomes[r.id] for r in records]

    def _create_one(self, record: Record) -> RecordOutcome:
        try:
            data = self._api(
                "POST",
                f"{self._table_path}/records",
                json_body={"fields": encode_fields(record)},
                idempotent=False,
            )
        except (RemoteApiError, TransportError) as e:
            return RecordOutcome(record.id, ok=False, error=str(e))
        ref = ((data.get("data") or {}).get("record") or {}).get("record_id")
        return RecordOutcome(record.id, ok=True, remote_ref=ref)

    def _update_one(self, record: Record) -> RecordOutcome:
        try:
            self._api(
                "PUT",
                f"{self._table_path}/records/{record.remote_ref}",
                json_body={"fields": encode_fields(record)},
                idempotent=False,
            )
        except (RemoteApiError, TransportError) as e:
            return RecordOutcome(record.id, ok=False, error=str(e))
        return RecordOutcome(record.id, ok=True, remote_ref=record.remote_ref)

    @staticmethod
    def _refs_by_id(data: Dict[str, Any]) -> Dict[str, str]:
        refs = {}
        for row in (data.get("data") or {}).get("records") or []:
            record_id = text_value((row.get("fields") or {}).get("id"))
            if isinstance(record_id, str) and row.get("record_id"):
                refs[record_id] = row["record_id"]
        return refs

    @staticmethod
    def _outcome_from_refs(record: Record, refs: Dict[str, str]) -> RecordOutcome:
        ref = refs.get(record.id)
        if ref is None:
            return RecordOutcome(record.id, ok=False, error="Record missing from batch response")
        return RecordOutcome(record.id, ok=True, remote_ref=ref)
