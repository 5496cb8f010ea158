# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Transport protocol, call handles, and the pipe transport."""

from __future__ import annotations

import io
import logging
import os
import select
import threading
import time
from collections.abc import Mapping
from dataclasses import dataclass, field
from io import IOBase
from types import MappingProxyType
from typing import TYPE_CHECKING, Protocol, runtime_checkable

import pyarrow as pa

from lro_rpc.messages import StatusCode
from lro_rpc.rpc._common import RpcError, TransportError, _generate_request_id, _logger
from lro_rpc.rpc._debug import wire_transport_logger
from lro_rpc.rpc._wire import _read_response, _write_request

if TYPE_CHECKING:
    from lro_rpc.rpc._methods import MethodInfo
    from lro_rpc.rpc._options import CallOptions
    from lro_rpc.utils import ArrowSerializableDataclass

_TRANSPORT_ERRORS = (BrokenPipeError, ConnectionResetError, ConnectionAbortedError, EOFError, pa.ArrowInvalid)

_EMPTY_METADATA: Mapping[str, str] = MappingProxyType({})


# ---------------------------------------------------------------------------
# CallHandle
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class CallHandle:
    """Read-only record of one completed low-level call.

    Created by the transport and passed through the dispatcher and result
    adapter unchanged.

    Attributes:
        method: Wire name of the method that was called.
        request_id: Correlation ID sent with the request.
        status_code: Final status of the call.
        status_message: Server-provided status message (empty on success).
        trailing_metadata: Per-call metadata returned with the response.
        attempts: Number of attempts the transport made (retries + 1).
        duration_ms: Wall-clock duration of the call in milliseconds.
        server_id: Identifier of the server that answered, when reported.

    """

    method: str
    request_id: str
    status_code: StatusCode = StatusCode.OK
    status_message: str = ""
    trailing_metadata: Mapping[str, str] = field(default_factory=lambda: _EMPTY_METADATA)
    attempts: int = 1
    duration_ms: float = 0.0
    server_id: str = ""

    @property
    def ok(self) -> bool:
        """Whether the call completed with ``StatusCode.OK``."""
        return self.status_code == StatusCode.OK


# ---------------------------------------------------------------------------
# Transport protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class Transport(Protocol):
    """Performs one request/response RPC per ``invoke``.

    Implementations own retries (if any) and turn every failure into a
    ``TransportError``.
    """

    def invoke(
        self,
        method: MethodInfo,
        request: ArrowSerializableDataclass,
        options: CallOptions,
    ) -> tuple[ArrowSerializableDataclass, CallHandle]:
        """Send *request* and return the decoded response and the call handle."""
        ...

    def close(self) -> None:
        """Release the transport's resources."""
        ...


# ---------------------------------------------------------------------------
# PipeTransport + make_pipe_pair
# ---------------------------------------------------------------------------


def _fileno(stream: IOBase) -> int | None:
    try:
        return stream.fileno()
    except (AttributeError, OSError, io.UnsupportedOperation):
        return None


class PipeTransport:
    """Transport backed by file-like IO streams (e.g. from ``os.pipe()``).

    One request is in flight at a time; concurrent ``invoke`` calls are
    serialised by a lock.  When ``CallOptions.timeout`` is set, the wait for
    the response is bounded with ``select()``.  A timed-out call leaves an
    unread response in the pipe, so the transport marks itself broken and
    every later call fails with ``UNAVAILABLE``.
    """

    __slots__ = ("_broken", "_lock", "_reader", "_writer")

    def __init__(self, reader: IOBase, writer: IOBase) -> None:
        """Initialize with reader and writer streams."""
        self._reader = reader
        self._writer = writer
        self._lock = threading.Lock()
        self._broken: str | None = None

    @property
    def reader(self) -> IOBase:
        """Readable binary stream."""
        return self._reader

    @property
    def writer(self) -> IOBase:
        """Writable binary stream."""
        return self._writer

    @property
    def broken(self) -> bool:
        """Whether an earlier failure left the stream pair unusable."""
        return self._broken is not None

    def _wait_readable(self, info: MethodInfo, timeout: float | None, request_id: str) -> None:
        if timeout is None:
            return
        fd = _fileno(self._reader)
        if fd is None:
            return
        ready, _, _ = select.select([fd], [], [], timeout)
        if not ready:
            self._broken = f"timed out after {timeout}s waiting for '{info.name}'"
            raise TransportError(
                info.name,
                StatusCode.DEADLINE_EXCEEDED,
                f"no response within {timeout}s",
                request_id=request_id,
            )

    def invoke(
        self,
        method: MethodInfo,
        request: ArrowSerializableDataclass,
        options: CallOptions,
    ) -> tuple[ArrowSerializableDataclass, CallHandle]:
        """Write one request stream, read one response stream.

        Raises:
            TransportError: On a server-side error status (with that
                status), a disconnect (``UNAVAILABLE``), or a timeout
                (``DEADLINE_EXCEEDED``).
            RpcError: If the response violates the wire protocol.

        """
        request_id = _generate_request_id()
        with self._lock:
            if self._broken is not None:
                raise TransportError(
                    method.name,
                    StatusCode.UNAVAILABLE,
                    f"transport is unusable: {self._broken}",
                    request_id=request_id,
                )
            start = time.monotonic()
            try:
                _write_request(self._writer, method, request, options, request_id)
                self._wait_readable(method, options.timeout, request_id)
                envelope = _read_response(self._reader, method)
            except RpcError:
                raise
            except _TRANSPORT_ERRORS as exc:
                self._broken = str(exc) or type(exc).__name__
                raise TransportError(
                    method.name,
                    StatusCode.UNAVAILABLE,
                    f"Transport failed during call to '{method.name}': {exc}",
                    request_id=request_id,
                ) from exc
            duration_ms = (time.monotonic() - start) * 1000

        handle = CallHandle(
            method=method.name,
            request_id=request_id,
            status_code=envelope.status_code,
            status_message=envelope.status_message,
            trailing_metadata=envelope.trailing_metadata,
            attempts=1,
            duration_ms=duration_ms,
            server_id=envelope.server_id,
        )
        if envelope.response is None:
            raise TransportError(
                method.name,
                envelope.status_code,
                envelope.status_message,
                error_type=envelope.error_type or "TransportError",
                request_id=request_id,
                call_handle=handle,
            )
        return envelope.response, handle

    def close(self) -> None:
        """Close both streams; later calls fail with ``UNAVAILABLE``."""
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("PipeTransport close")
        self._broken = "transport closed"
        for stream in (self._writer, self._reader):
            try:
                stream.close()
            except OSError:
                _logger.debug("Error closing pipe stream", exc_info=True)


def make_pipe_pair() -> tuple[PipeTransport, PipeTransport]:
    """Create connected client/server transports using os.pipe().

    Returns (client_transport, server_transport).
    """
    c2s_r, c2s_w = os.pipe()
    s2c_r, s2c_w = os.pipe()
    if wire_transport_logger.isEnabledFor(logging.DEBUG):
        wire_transport_logger.debug(
            "make_pipe_pair: c2s=(%d,%d), s2c=(%d,%d)",
            c2s_r,
            c2s_w,
            s2c_r,
            s2c_w,
        )
    client = PipeTransport(
        os.fdopen(s2c_r, "rb"),
        os.fdopen(c2s_w, "wb", buffering=0),
    )
    server = PipeTransport(
        os.fdopen(c2s_r, "rb"),
        os.fdopen(s2c_w, "wb", buffering=0),
    )
    return client, server
