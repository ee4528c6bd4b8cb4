"""Input checks for promptsync.

``LocalStore`` cleans titles, bodies and tag names here before writing them,
and the CLI cleans ``--tag`` values the same way. The config check, ``config
save`` and ``BitableClient`` all vet the API base before an app secret leaves
the machine. Table links are parsed into a ``TableLocation`` here as well.
"""

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable, List, Optional
from urllib.parse import parse_qs, urlparse

from promptsync.types import ConfigurationError

logger = logging.getLogger(__name__)


# Control characters a prompt body has no use for; newline, tab and CR survive
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")


def sanitize_string(
    value: Any, field_name: str, max_length: int = 100_000, required: bool = True
) -> str:
    """Clean text typed into a prompt title, body or tag name.

    ``LocalStore`` runs every locally edited title and body through here
    before writing it. Text that is blank once control characters are gone
    counts as empty.

    Raises:
        ValueError: ``value`` is not a string, is longer than ``max_length``,
            or is empty while ``required``.
    """
    if value is None and not required:
        return ""
    if not isinstance(value, str):
        raise ValueError(f"{field_name} must be a string, got {type(value).__name__}")
    if len(value) > max_length:
        raise ValueError(f"{field_name} too long (max {max_length} characters, got {len(value)})")

    cleaned = _CONTROL_CHARS.sub("", value)
    if required and not cleaned.strip():
        raise ValueError(f"{field_name} cannot be empty")
    return cleaned


def sanitize_tag_names(names: Optional[Iterable[Any]], max_length: int = 100) -> List[str]:
    """Strip, drop blanks and collapse duplicate tag names, preserving order."""
    if names is None:
        return []
    seen = set()
    result = []
    for name in names:
        if not isinstance(name, str):
            continue
        cleaned = sanitize_string(name, "tag", max_length=max_length, required=False).strip()
        if cleaned and cleaned not in seen:
            seen.add(cleaned)
            result.append(cleaned)
    return result


_LOCAL_HOSTS = frozenset({"localhost", "127.0.0.1"})


def validate_base_url(url: str, *, allow_localhost_http: bool = True) -> Optional[str]:
    """Check an Open API root before app credentials are posted to it.

    Used by ``SyncConfig.check``, ``config save --api-base`` and
    ``BitableClient``. Plain http is accepted only for a local proxy or a
    test server on localhost.

    Returns:
        The URL without its trailing slash, or None (after a warning).
    """
    if not url:
        return None
    parsed = urlparse(url)
    if parsed.scheme == "https" and parsed.netloc:
        return url.rstrip("/")
    if parsed.scheme == "http" and allow_localhost_http and (parsed.hostname or "") in _LOCAL_HOSTS:
        return url.rstrip("/")
    logger.warning(f"Refusing API base {url!r}: credentials are only sent over https or to localhost")
    return None


@dataclass(frozen=True)
class TableLocation:
    """Address of one Bitable table."""

    app_token: str
    table_id: str

    def __str__(self) -> str:
        return f"{self.app_token}/{self.table_id}"


def parse_table_url(url: str) -> TableLocation:
    """Parse a table URL such as ``https://x.feishu.cn/base/<app>?table=<tbl>``.

    Both the ``/base/`` and ``/wiki/`` forms are accepted.

    Raises:
        ConfigurationError: If the URL does not name an app token and a table.
    """
    if not url or not url.strip():
        raise ConfigurationError("Table URL is not configured")

    parsed = urlparse(url.strip())
    segments = [s for s in parsed.path.split("/") if s]

    app_token = None
    for marker in ("base", "wiki"):
        if marker in segments:
            idx = segments.index(marker)
            if idx + 1 < len(segments):
                app_token = segments[idx + 1]
                break
    if not app_token:
        raise ConfigurationError(
            "Cannot find the app token in the table URL; expected a /base/<token> or /wiki/<token> link"
        )

    table_id = (parse_qs(parsed.query).get("table") or [""])[0]
    if not table_id:
        raise ConfigurationError("Cannot find the table id in the table URL; expected ?table=<id>")

    return TableLocation(app_token=app_token, table_id=table_id)
