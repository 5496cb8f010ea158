# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Wire protocol read/write helpers.

Every call is one request IPC stream followed by one response IPC stream::

    Client→Server: [IPC stream: request_schema + 1 request batch + EOS]
    Server→Client: [IPC stream: response_schema + 1 response batch + EOS]

The request batch's custom metadata carries ``lro_rpc.method``,
``lro_rpc.request_version``, ``lro_rpc.request_id``, the optional
``lro_rpc.timeout`` and the caller's metadata as ``lro_rpc.md.<key>``.

The response batch's custom metadata always carries ``lro_rpc.status_code``.
Success is ``0`` with one row of the response message (zero rows for
``Empty``); failure is a zero-row batch that also carries
``lro_rpc.status_message`` and ``lro_rpc.error_type``.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from io import IOBase
from types import MappingProxyType
from typing import Any

import pyarrow as pa
from pyarrow import ipc

from lro_rpc.messages import StatusCode
from lro_rpc.metadata import (
    ERROR_TYPE_KEY,
    REQUEST_ID_KEY,
    REQUEST_VERSION,
    REQUEST_VERSION_KEY,
    RPC_METHOD_KEY,
    SERVER_ID_KEY,
    STATUS_CODE_KEY,
    STATUS_MESSAGE_KEY,
    TIMEOUT_KEY,
    call_metadata,
    decode_metadata,
    with_call_metadata,
)
from lro_rpc.rpc._common import RpcError
from lro_rpc.rpc._debug import fmt_batch, fmt_metadata, wire_request_logger, wire_response_logger
from lro_rpc.rpc._methods import OPERATIONS_METHODS, MethodInfo
from lro_rpc.rpc._options import CallOptions
from lro_rpc.utils import ArrowSerializableDataclass, empty_batch

_EMPTY_SCHEMA = pa.schema([])


# ---------------------------------------------------------------------------
# Request
# ---------------------------------------------------------------------------


def _request_metadata(info: MethodInfo, options: CallOptions, request_id: str) -> pa.KeyValueMetadata:
    """Build the custom metadata attached to a request batch."""
    md: dict[bytes, bytes] = {
        RPC_METHOD_KEY: info.name.encode(),
        REQUEST_VERSION_KEY: REQUEST_VERSION,
        REQUEST_ID_KEY: request_id.encode(),
    }
    if options.timeout is not None:
        md[TIMEOUT_KEY] = repr(options.timeout).encode()
    return with_call_metadata(md, options.metadata)


def _write_request(
    writer_stream: IOBase,
    info: MethodInfo,
    request: ArrowSerializableDataclass,
    options: CallOptions,
    request_id: str,
) -> None:
    """Write a request as a complete IPC stream (schema + 1 batch + EOS)."""
    batch = request.to_batch()
    custom_metadata = _request_metadata(info, options, request_id)
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Write request: method=%s, %s, metadata=%s",
            info.name,
            fmt_batch(batch),
            fmt_metadata(custom_metadata),
        )
    with ipc.new_stream(writer_stream, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)


@dataclass(frozen=True)
class _IncomingRequest:
    """A request as read by the server."""

    info: MethodInfo
    request: ArrowSerializableDataclass
    request_id: str
    timeout: float | None
    metadata: Mapping[str, str]


def _drain_stream(reader: ipc.RecordBatchStreamReader) -> None:
    """Consume remaining batches so the next IPC stream starts cleanly."""
    while True:
        try:
            reader.read_next_batch()
        except StopIteration:
            return


def _read_request(reader_stream: IOBase | pa.NativeFile) -> _IncomingRequest:
    """Read a request IPC stream and decode it into its request message.

    Raises:
        RpcError: ``ProtocolError`` if the method key is missing or the
            batch does not decode, ``VersionError`` on a missing or
            unsupported request version, ``UnknownMethod`` if the method
            is not an operations method.
        StopIteration / EOFError / pa.ArrowInvalid: If the peer closed the
            stream; the serve loop treats these as end of session.

    """
    reader = ipc.open_stream(reader_stream)
    batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    _drain_stream(reader)
    if wire_request_logger.isEnabledFor(logging.DEBUG):
        wire_request_logger.debug(
            "Read request batch: %s, metadata=%s",
            fmt_batch(batch),
            fmt_metadata(custom_metadata),
        )
    method_bytes = custom_metadata.get(RPC_METHOD_KEY) if custom_metadata else None
    if method_bytes is None:
        raise RpcError(
            "ProtocolError",
            "Missing 'lro_rpc.method' in request batch custom_metadata. "
            "Each request batch must carry the method name as a UTF-8 string.",
        )
    version = custom_metadata.get(REQUEST_VERSION_KEY) if custom_metadata else None
    if version != REQUEST_VERSION:
        raise RpcError(
            "VersionError",
            f"Unsupported request version {version!r}, expected {REQUEST_VERSION!r}.",
        )
    try:
        method_name = method_bytes.decode()
    except UnicodeDecodeError as exc:
        raise RpcError("ProtocolError", f"'lro_rpc.method' is not valid UTF-8: {method_bytes!r}") from exc
    info = OPERATIONS_METHODS.get(method_name)
    if info is None:
        raise RpcError(
            "UnknownMethod",
            f"Unknown method: '{method_name}'. Available methods: {sorted(OPERATIONS_METHODS)}",
            method=method_name,
        )
    try:
        request = info.request_type.deserialize_from_batch(batch)
    except (ValueError, TypeError, KeyError) as exc:
        raise RpcError(
            "ProtocolError", f"Cannot decode {info.request_type.__name__}: {exc}", method=method_name
        ) from exc

    assert custom_metadata is not None
    request_id_bytes = custom_metadata.get(REQUEST_ID_KEY)
    timeout_bytes = custom_metadata.get(TIMEOUT_KEY)
    try:
        request_id = request_id_bytes.decode() if request_id_bytes else ""
        timeout = float(timeout_bytes) if timeout_bytes else None
    except ValueError as exc:
        # UnicodeDecodeError is a ValueError
        raise RpcError(
            "ProtocolError",
            f"Malformed request metadata (request_id={request_id_bytes!r}, timeout={timeout_bytes!r}): {exc}",
            method=method_name,
        ) from exc
    return _IncomingRequest(
        info=info,
        request=request,
        request_id=request_id,
        timeout=timeout,
        metadata=MappingProxyType(call_metadata(custom_metadata)),
    )


# ---------------------------------------------------------------------------
# Response
# ---------------------------------------------------------------------------


def _response_metadata(
    status_code: StatusCode,
    *,
    request_id: str = "",
    server_id: str | None = None,
    trailing: Mapping[str, str] | None = None,
    status_message: str | None = None,
    error_type: str | None = None,
) -> pa.KeyValueMetadata:
    md: dict[bytes, bytes] = {STATUS_CODE_KEY: str(int(status_code)).encode()}
    if status_message is not None:
        md[STATUS_MESSAGE_KEY] = status_message.encode()
    if error_type is not None:
        md[ERROR_TYPE_KEY] = error_type.encode()
    if request_id:
        md[REQUEST_ID_KEY] = request_id.encode()
    if server_id is not None:
        md[SERVER_ID_KEY] = server_id.encode()
    return with_call_metadata(md, trailing or {})


def _write_response(
    writer_stream: IOBase,
    response: ArrowSerializableDataclass,
    *,
    request_id: str = "",
    server_id: str | None = None,
    trailing: Mapping[str, str] | None = None,
) -> None:
    """Write a successful response as a complete IPC stream."""
    batch = response.to_batch()
    custom_metadata = _response_metadata(StatusCode.OK, request_id=request_id, server_id=server_id, trailing=trailing)
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write response: %s, metadata=%s", fmt_batch(batch), fmt_metadata(custom_metadata))
    with ipc.new_stream(writer_stream, batch.schema) as writer:
        writer.write_batch(batch, custom_metadata=custom_metadata)


def _write_error_stream(
    writer_stream: IOBase,
    status_code: StatusCode,
    message: str,
    error_type: str,
    *,
    schema: pa.Schema = _EMPTY_SCHEMA,
    request_id: str = "",
    server_id: str | None = None,
) -> None:
    """Write a complete IPC stream containing just an error batch."""
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug("Write error batch: %s %s: %s", status_code.name, error_type, message[:200])
    custom_metadata = _response_metadata(
        status_code,
        request_id=request_id,
        server_id=server_id,
        status_message=message,
        error_type=error_type,
    )
    with ipc.new_stream(writer_stream, schema) as writer:
        writer.write_batch(empty_batch(schema), custom_metadata=custom_metadata)


@dataclass(frozen=True)
class _ResponseEnvelope:
    """A decoded response stream: the message (on success) plus its status metadata."""

    response: ArrowSerializableDataclass | None
    status_code: StatusCode
    status_message: str
    error_type: str
    request_id: str
    server_id: str
    trailing_metadata: Mapping[str, str]


def _read_response(reader_stream: Any, info: MethodInfo) -> _ResponseEnvelope:
    """Read one response IPC stream for *info* and decode it.

    Non-OK statuses are returned in the envelope (``response`` is ``None``);
    the transport decides how to surface them.

    Raises:
        RpcError: ``ProtocolError`` if the response lacks a status or the
            batch does not decode as the method's response message.

    """
    reader = ipc.open_stream(reader_stream)
    batch, custom_metadata = reader.read_next_batch_with_custom_metadata()
    _drain_stream(reader)
    if wire_response_logger.isEnabledFor(logging.DEBUG):
        wire_response_logger.debug(
            "Read response: method=%s, %s, metadata=%s",
            info.name,
            fmt_batch(batch),
            fmt_metadata(custom_metadata),
        )
    code_bytes = custom_metadata.get(STATUS_CODE_KEY) if custom_metadata else None
    if code_bytes is None:
        raise RpcError("ProtocolError", "Response batch is missing 'lro_rpc.status_code'", method=info.name)
    status_code = StatusCode.coerce(int(code_bytes))
    md = decode_metadata(custom_metadata) or {}
    trailing = call_metadata(custom_metadata)
    response: ArrowSerializableDataclass | None = None
    if status_code == StatusCode.OK:
        try:
            response = info.response_type.deserialize_from_batch(batch)
        except (ValueError, TypeError, KeyError) as exc:
            raise RpcError(
                "ProtocolError", f"Cannot decode {info.response_type.__name__}: {exc}", method=info.name
            ) from exc
    return _ResponseEnvelope(
        response=response,
        status_code=status_code,
        status_message=md.get(STATUS_MESSAGE_KEY.decode(), ""),
        error_type=md.get(ERROR_TYPE_KEY.decode(), ""),
        request_id=md.get(REQUEST_ID_KEY.decode(), ""),
        server_id=md.get(SERVER_ID_KEY.decode(), ""),
        trailing_metadata=MappingProxyType(trailing),
    )
