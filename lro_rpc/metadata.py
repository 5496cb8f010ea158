# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Well-known ``pa.KeyValueMetadata`` keys and the helpers built on them.

Requests and responses carry their protocol fields (method, version,
request ID, status) as custom metadata on the single batch of each IPC
stream.  Caller-supplied per-call metadata rides alongside under the
``lro_rpc.md.`` prefix so it can never collide with a protocol key.
"""

from __future__ import annotations

from collections.abc import Mapping

import pyarrow as pa

__all__ = [
    "CALL_METADATA_PREFIX",
    "ERROR_TYPE_KEY",
    "REQUEST_ID_KEY",
    "REQUEST_VERSION",
    "REQUEST_VERSION_KEY",
    "RPC_METHOD_KEY",
    "SERVER_ID_KEY",
    "STATUS_CODE_KEY",
    "STATUS_MESSAGE_KEY",
    "TIMEOUT_KEY",
    "call_metadata",
    "decode_metadata",
    "encode_metadata",
    "with_call_metadata",
]

# ---------------------------------------------------------------------------
# Keys
# ---------------------------------------------------------------------------

# Request batch
RPC_METHOD_KEY = b"lro_rpc.method"
REQUEST_VERSION_KEY = b"lro_rpc.request_version"
REQUEST_VERSION = b"1"
TIMEOUT_KEY = b"lro_rpc.timeout"

# Both directions
REQUEST_ID_KEY = b"lro_rpc.request_id"

# Response batch
STATUS_CODE_KEY = b"lro_rpc.status_code"
STATUS_MESSAGE_KEY = b"lro_rpc.status_message"
ERROR_TYPE_KEY = b"lro_rpc.error_type"
SERVER_ID_KEY = b"lro_rpc.server_id"

CALL_METADATA_PREFIX = b"lro_rpc.md."

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _text(value: bytes | str) -> str:
    return value.decode("utf-8", errors="replace") if isinstance(value, bytes) else value


def encode_metadata(metadata: Mapping[str, str]) -> pa.KeyValueMetadata:
    """Encode string pairs as ``pa.KeyValueMetadata``."""
    return pa.KeyValueMetadata({k.encode(): v.encode() for k, v in metadata.items()})


def decode_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str] | None:
    """Decode ``pa.KeyValueMetadata`` to ``dict[str, str]``; invalid UTF-8 is replaced.

    Returns ``None`` when *metadata* is ``None``.
    """
    if metadata is None:
        return None
    return {_text(k): _text(v) for k, v in metadata.items()}


def with_call_metadata(protocol: Mapping[bytes, bytes], call: Mapping[str, str]) -> pa.KeyValueMetadata:
    """Combine protocol keys with per-call metadata.

    Args:
        protocol: Protocol entries, already bytes-encoded.
        call: Caller metadata; each key is stored as ``lro_rpc.md.<key>``.

    Returns:
        The combined metadata.

    """
    combined = dict(protocol)
    for k, v in call.items():
        combined[CALL_METADATA_PREFIX + k.encode()] = v.encode()
    return pa.KeyValueMetadata(combined)


def call_metadata(metadata: pa.KeyValueMetadata | None) -> dict[str, str]:
    """Return the per-call ``lro_rpc.md.*`` entries of *metadata* with the prefix removed."""
    if metadata is None:
        return {}
    cut = len(CALL_METADATA_PREFIX)
    found: dict[str, str] = {}
    for k, v in metadata.items():
        key = k if isinstance(k, bytes) else k.encode()
        if key.startswith(CALL_METADATA_PREFIX):
            found[_text(key[cut:])] = _text(v)
    return found
