# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Debug logging infrastructure for wire protocol diagnostics.

Provides logger instances under the ``lro_rpc.wire.*`` hierarchy and
formatting helpers for Arrow IPC objects, call options and call handles.
``logging.getLogger("lro_rpc.wire").setLevel(logging.DEBUG)`` traces every
request and response.

All formatting helpers return ``str`` and never log directly.  Call them
inside ``isEnabledFor`` guards so nothing is formatted when debug logging
is off.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import pyarrow as pa

if TYPE_CHECKING:
    from lro_rpc.rpc._options import CallOptions
    from lro_rpc.rpc._transport import CallHandle

# ---------------------------------------------------------------------------
# Logger hierarchy: lro_rpc.wire.*
# ---------------------------------------------------------------------------

wire_request_logger = logging.getLogger("lro_rpc.wire.request")
"""Request coercion, serialization and decoding."""

wire_response_logger = logging.getLogger("lro_rpc.wire.response")
"""Response and error-stream serialization and decoding."""

wire_transport_logger = logging.getLogger("lro_rpc.wire.transport")
"""Dispatch, pipe and client lifecycle."""

wire_http_logger = logging.getLogger("lro_rpc.wire.http")
"""HTTP client requests / responses."""

# ---------------------------------------------------------------------------
# Formatting helpers
# ---------------------------------------------------------------------------

_MAX_VALUE_LEN = 80


def _clip(text: str) -> str:
    return text if len(text) <= _MAX_VALUE_LEN else text[:_MAX_VALUE_LEN] + "..."


def fmt_schema(schema: pa.Schema) -> str:
    """Format an Arrow schema as ``"(name: string, page_size: int64)"``, or ``"(empty)"``."""
    if len(schema) == 0:
        return "(empty)"
    return "(" + ", ".join(f"{f.name}: {f.type}" for f in schema) + ")"


def fmt_metadata(metadata: pa.KeyValueMetadata | None) -> str:
    """Format Arrow custom metadata compactly.

    Returns:
        ``"{lro_rpc.method='get_operation', lro_rpc.request_version='1'}"``
        or ``"None"`` when metadata is absent.

    """
    if metadata is None:
        return "None"
    parts: list[str] = []
    for k, v in metadata.items():
        key = k.decode("utf-8", errors="replace") if isinstance(k, bytes) else k
        val = v.decode("utf-8", errors="replace") if isinstance(v, bytes) else v
        parts.append(f"{key}={_clip(val)!r}")
    return "{" + ", ".join(parts) + "}"


def fmt_batch(batch: pa.RecordBatch) -> str:
    """Summarise a batch, e.g. ``"RecordBatch(rows=1, cols=1, schema=(name: string), bytes=32)"``."""
    return (
        f"RecordBatch(rows={batch.num_rows}, cols={batch.num_columns}, "
        f"schema={fmt_schema(batch.schema)}, bytes={batch.nbytes})"
    )


def fmt_kwargs(kwargs: Mapping[str, Any]) -> str:
    """Format keyword arguments as ``"name='operations/1', page_size=42"``, long reprs clipped."""
    return ", ".join(f"{k}={_clip(repr(v))}" for k, v in kwargs.items())


def fmt_options(options: CallOptions) -> str:
    """Format call options compactly.

    Returns:
        ``"timeout=5.0, retry=3, metadata=[tenant]"``; unset parts are
        omitted and fully default options give ``"defaults"``.

    """
    parts: list[str] = []
    if options.timeout is not None:
        parts.append(f"timeout={options.timeout}")
    if options.retry is not None:
        parts.append(f"retry={options.retry.max_retries}")
    if options.metadata:
        parts.append(f"metadata=[{', '.join(sorted(options.metadata))}]")
    return ", ".join(parts) or "defaults"


def fmt_handle(handle: CallHandle) -> str:
    """Format a call handle.

    Returns:
        ``"request_id=..., status=OK, attempts=1, duration_ms=0.42, server_id='srv'"``

    """
    return (
        f"request_id={handle.request_id}, status={handle.status_code.name}, attempts={handle.attempts}, "
        f"duration_ms={handle.duration_ms:.2f}, server_id={handle.server_id!r}"
    )
