"""Remote table access for promptsync."""

from promptsync.remote.client import BitableClient, describe_error
from promptsync.remote.codec import decode_item, encode_fields

__all__ = ["BitableClient", "decode_item", "describe_error", "encode_fields"]
