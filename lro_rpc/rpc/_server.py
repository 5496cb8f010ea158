# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Reference operations server and in-memory operations store."""

from __future__ import annotations

import contextlib
import itertools
import logging
import threading
import time
import uuid
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from typing import Literal, Protocol, runtime_checkable

import pyarrow as pa

from lro_rpc.messages import (
    CancelOperationRequest,
    DeleteOperationRequest,
    Empty,
    GetOperationRequest,
    ListOperationsRequest,
    ListOperationsResponse,
    Operation,
    Status,
    StatusCode,
)
from lro_rpc.rpc._common import (
    RpcError,
    _access_logger,
    _current_request_id,
    _generate_request_id,
    _logger,
)
from lro_rpc.rpc._methods import OPERATIONS_METHODS
from lro_rpc.rpc._transport import PipeTransport
from lro_rpc.rpc._wire import _IncomingRequest, _read_request, _write_error_stream, _write_response
from lro_rpc.utils import ArrowSerializableDataclass

DEFAULT_PAGE_SIZE = 50
"""Page size used when a ``list_operations`` request leaves ``page_size`` at 0."""

# ---------------------------------------------------------------------------
# Servicer protocol
# ---------------------------------------------------------------------------


@runtime_checkable
class OperationsServicer(Protocol):
    """Server-side implementation of the four operations methods.

    Implementations signal failures with ordinary exceptions; the server
    maps them to status codes (see ``status_for_exception``).
    """

    def list_operations(self, request: ListOperationsRequest) -> ListOperationsResponse:
        """Return one page of operations."""
        ...

    def get_operation(self, request: GetOperationRequest) -> Operation:
        """Return the operation record."""
        ...

    def delete_operation(self, request: DeleteOperationRequest) -> Empty:
        """Delete the operation record."""
        ...

    def cancel_operation(self, request: CancelOperationRequest) -> Empty:
        """Request cancellation of the operation."""
        ...


def status_for_exception(exc: BaseException) -> StatusCode:
    """Map an implementation exception to the status code sent to the client."""
    if isinstance(exc, KeyError):
        return StatusCode.NOT_FOUND
    if isinstance(exc, PermissionError):
        return StatusCode.PERMISSION_DENIED
    if isinstance(exc, NotImplementedError):
        return StatusCode.UNIMPLEMENTED
    if isinstance(exc, (ValueError, TypeError)):
        return StatusCode.INVALID_ARGUMENT
    return StatusCode.INTERNAL


def _status_for_protocol_error(exc: RpcError) -> StatusCode:
    if exc.error_type == "UnknownMethod":
        return StatusCode.UNIMPLEMENTED
    return StatusCode.INVALID_ARGUMENT


def _exception_message(exc: BaseException) -> str:
    # KeyError str() wraps the message in quotes
    if isinstance(exc, KeyError) and len(exc.args) == 1:
        return str(exc.args[0])
    return str(exc)


# ---------------------------------------------------------------------------
# Server helpers
# ---------------------------------------------------------------------------


def _log_method_error(method_name: str, server_id: str, exc: BaseException) -> str:
    """Log an RPC method error and return the exception class name.

    Returns:
        The exception class name (for use as ``error_type``).

    """
    error_type = type(exc).__name__
    extra: dict[str, object] = {"server_id": server_id, "method": method_name, "error_type": error_type}
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    _logger.error(
        "Error in %s: %s",
        method_name,
        exc,
        exc_info=True,
        extra=extra,
    )
    return error_type


def _emit_access_log(
    method_name: str,
    server_id: str,
    duration_ms: float,
    status: Literal["ok", "error"],
    status_code: StatusCode,
    error_type: str = "",
    http_status: int | None = None,
) -> None:
    """Emit a structured access log record for a completed RPC call."""
    if not _access_logger.isEnabledFor(logging.INFO):
        return
    extra: dict[str, object] = {
        "server_id": server_id,
        "method": method_name,
        "duration_ms": round(duration_ms, 2),
        "status": status,
        "status_code": status_code.name,
        "error_type": error_type,
    }
    request_id = _current_request_id.get()
    if request_id:
        extra["request_id"] = request_id
    if http_status is not None:
        extra["http_status"] = http_status
    _access_logger.info("%s %s", method_name, status, extra=extra)


@dataclass(frozen=True)
class CallOutcome:
    """Result of running one request through the servicer.

    Exactly one of ``response`` (on success) or a non-OK ``status_code``
    is meaningful.
    """

    response: ArrowSerializableDataclass | None
    status_code: StatusCode = StatusCode.OK
    message: str = ""
    error_type: str = ""

    @property
    def ok(self) -> bool:
        """Whether the call succeeded."""
        return self.status_code == StatusCode.OK


# ---------------------------------------------------------------------------
# OperationsServer
# ---------------------------------------------------------------------------


class OperationsServer:
    """Dispatches operations requests to a servicer over IO-stream transports.

    The same instance backs the pipe serve loop and the HTTP application
    (see ``lro_rpc.http.make_wsgi_app``).
    """

    __slots__ = ("_echo_metadata", "_server_id", "_servicer")

    def __init__(
        self,
        servicer: OperationsServicer,
        *,
        server_id: str | None = None,
        echo_metadata: bool = True,
    ) -> None:
        """Initialize with the servicer that implements the operations methods.

        Args:
            servicer: Object implementing all four operations methods.
            server_id: Optional server identifier; auto-generated if ``None``.
            echo_metadata: When ``True``, the request's per-call metadata is
                returned as trailing metadata on the response.

        Raises:
            TypeError: If *servicer* is missing an operations method.

        """
        missing = [name for name in OPERATIONS_METHODS if not callable(getattr(servicer, name, None))]
        if missing:
            raise TypeError(f"{type(servicer).__name__} is missing operations methods: {missing}")
        self._servicer = servicer
        self._server_id = server_id if server_id is not None else uuid.uuid4().hex[:12]
        self._echo_metadata = echo_metadata
        _logger.info(
            "OperationsServer created (server_id=%s, servicer=%s)",
            self._server_id,
            type(servicer).__name__,
            extra={"server_id": self._server_id, "servicer": type(servicer).__name__},
        )

    @property
    def server_id(self) -> str:
        """Short random identifier for this server instance."""
        return self._server_id

    @property
    def servicer(self) -> OperationsServicer:
        """The servicer implementation."""
        return self._servicer

    def trailing_for(self, incoming: _IncomingRequest) -> Mapping[str, str] | None:
        """Trailing metadata to send back for *incoming*."""
        return incoming.metadata if self._echo_metadata else None

    def call(self, incoming: _IncomingRequest) -> CallOutcome:
        """Run *incoming* through the servicer and log the outcome.

        Implementation exceptions are caught, logged with ``exc_info`` and
        turned into a non-OK ``CallOutcome``.
        """
        info = incoming.info
        start = time.monotonic()
        try:
            response = getattr(self._servicer, info.name)(incoming.request)
        except Exception as exc:
            error_type = _log_method_error(info.name, self._server_id, exc)
            code = status_for_exception(exc)
            _emit_access_log(info.name, self._server_id, (time.monotonic() - start) * 1000, "error", code, error_type)
            return CallOutcome(None, code, _exception_message(exc), error_type)
        if not isinstance(response, info.response_type):
            # servicer bug: report INTERNAL rather than blaming the caller
            message = f"{info.name} returned {type(response).__name__}, expected {info.response_type.__name__}"
            _logger.error(message, extra={"server_id": self._server_id, "method": info.name})
            _emit_access_log(
                info.name, self._server_id, (time.monotonic() - start) * 1000, "error", StatusCode.INTERNAL, "TypeError"
            )
            return CallOutcome(None, StatusCode.INTERNAL, message, "TypeError")
        _emit_access_log(info.name, self._server_id, (time.monotonic() - start) * 1000, "ok", StatusCode.OK)
        return CallOutcome(response)

    def serve(self, transport: PipeTransport) -> None:
        """Serve requests in a loop until the transport is closed."""
        while True:
            try:
                self.serve_one(transport)
            except (EOFError, StopIteration):
                break
            except pa.ArrowInvalid:
                _logger.warning(
                    "serve loop ending due to ArrowInvalid",
                    exc_info=True,
                    extra={"server_id": self._server_id},
                )
                break
            except (BrokenPipeError, OSError):
                _logger.debug("serve loop ending: peer closed", extra={"server_id": self._server_id})
                break

    def serve_one(self, transport: PipeTransport) -> None:
        """Handle a single call over the given transport.

        Protocol-level errors (bad version, unknown method, undecodable
        request) are written back as error responses and the method returns
        normally so the serve loop can continue.

        Raises:
            pa.ArrowInvalid: If the incoming data is not valid Arrow IPC.
                An error response is written to *transport* before raising.
            EOFError / StopIteration: When the peer closed its end.

        """
        token = _current_request_id.set(_generate_request_id())
        try:
            try:
                incoming = _read_request(transport.reader)
            except pa.ArrowInvalid as exc:
                with contextlib.suppress(BrokenPipeError, OSError):
                    _write_error_stream(
                        transport.writer,
                        StatusCode.INVALID_ARGUMENT,
                        str(exc),
                        type(exc).__name__,
                        server_id=self._server_id,
                    )
                raise
            except RpcError as exc:
                _logger.warning("Rejected request: %s", exc, extra={"server_id": self._server_id})
                _write_error_stream(
                    transport.writer,
                    _status_for_protocol_error(exc),
                    exc.error_message,
                    exc.error_type,
                    server_id=self._server_id,
                )
                return

            if incoming.request_id:
                _current_request_id.set(incoming.request_id)
            outcome = self.call(incoming)
            if outcome.response is not None:
                _write_response(
                    transport.writer,
                    outcome.response,
                    request_id=incoming.request_id,
                    server_id=self._server_id,
                    trailing=self.trailing_for(incoming),
                )
            else:
                _write_error_stream(
                    transport.writer,
                    outcome.status_code,
                    outcome.message,
                    outcome.error_type,
                    schema=incoming.info.response_schema,
                    request_id=incoming.request_id,
                    server_id=self._server_id,
                )
        finally:
            _current_request_id.reset(token)


# ---------------------------------------------------------------------------
# InMemoryOperations
# ---------------------------------------------------------------------------


def _parse_filter(expr: str) -> bool | None:
    """Parse the supported filter grammar: empty, ``done=true`` or ``done=false``."""
    text = expr.strip().replace(" ", "").lower()
    if not text:
        return None
    if text == "done=true":
        return True
    if text == "done=false":
        return False
    raise ValueError(f"Unsupported filter {expr!r}; expected 'done=true' or 'done=false'")


class InMemoryOperations:
    """Thread-safe in-memory ``OperationsServicer``.

    Operations are kept in creation order.  Page tokens are decimal offsets
    into the filtered listing.  Tests and demos drive operations to
    completion with ``complete`` and ``fail``.
    """

    __slots__ = ("_counter", "_lock", "_ops", "_prefix")

    def __init__(self, operations: Iterable[Operation] = (), *, prefix: str = "operations") -> None:
        """Initialize, optionally seeded with existing operation records."""
        self._lock = threading.Lock()
        self._ops: dict[str, Operation] = {op.name: op for op in operations}
        self._counter = itertools.count(len(self._ops) + 1)
        self._prefix = prefix

    # -- store management ----------------------------------------------------

    def create(self, name: str | None = None, *, metadata: bytes | None = None) -> Operation:
        """Register a new in-progress operation and return its record."""
        with self._lock:
            op_name = name if name is not None else f"{self._prefix}/{next(self._counter)}"
            if op_name in self._ops:
                raise ValueError(f"Operation {op_name!r} already exists")
            op = Operation(name=op_name, done=False, metadata=metadata)
            self._ops[op_name] = op
            return op

    def complete(self, name: str, response: bytes = b"") -> Operation:
        """Mark *name* done with a successful *response*."""
        return self._finish(name, response=response)

    def fail(self, name: str, code: StatusCode, message: str, details: Iterable[str] = ()) -> Operation:
        """Mark *name* done with an error status."""
        return self._finish(name, error=Status(code=int(code), message=message, details=list(details)))

    def update_metadata(self, name: str, metadata: bytes) -> Operation:
        """Replace the progress metadata of *name*."""
        with self._lock:
            op = replace(self._lookup(name), metadata=metadata)
            self._ops[name] = op
            return op

    def _finish(self, name: str, *, response: bytes | None = None, error: Status | None = None) -> Operation:
        with self._lock:
            current = self._lookup(name)
            if current.done:
                raise ValueError(f"Operation {name!r} is already done")
            op = replace(current, done=True, response=response, error=error)
            self._ops[name] = op
            return op

    def _lookup(self, name: str) -> Operation:
        if not name:
            raise ValueError("Operation name must not be empty")
        try:
            return self._ops[name]
        except KeyError:
            raise KeyError(f"Operation {name!r} not found") from None

    def __len__(self) -> int:
        """Number of stored operations."""
        return len(self._ops)

    # -- OperationsServicer --------------------------------------------------

    def list_operations(self, request: ListOperationsRequest) -> ListOperationsResponse:
        """Return one page of operations whose names start with ``request.name``."""
        if request.page_size < 0:
            raise ValueError(f"page_size must be >= 0, got {request.page_size}")
        want_done = _parse_filter(request.filter)
        try:
            offset = int(request.page_token) if request.page_token else 0
        except ValueError:
            raise ValueError(f"Invalid page_token {request.page_token!r}") from None
        if offset < 0:
            raise ValueError(f"Invalid page_token {request.page_token!r}")
        page_size = request.page_size or DEFAULT_PAGE_SIZE
        with self._lock:
            matching = [
                op
                for op in self._ops.values()
                if op.name.startswith(request.name) and (want_done is None or op.done == want_done)
            ]
        page = matching[offset : offset + page_size]
        end = offset + len(page)
        return ListOperationsResponse(
            operations=page,
            next_page_token=str(end) if end < len(matching) else "",
        )

    def get_operation(self, request: GetOperationRequest) -> Operation:
        """Return the current record for ``request.name``."""
        with self._lock:
            return self._lookup(request.name)

    def delete_operation(self, request: DeleteOperationRequest) -> Empty:
        """Forget ``request.name``."""
        with self._lock:
            self._lookup(request.name)
            del self._ops[request.name]
        return Empty()

    def cancel_operation(self, request: CancelOperationRequest) -> Empty:
        """Finish ``request.name`` with ``CANCELLED`` unless it is already done."""
        with self._lock:
            current = self._lookup(request.name)
            if not current.done:
                self._ops[request.name] = replace(
                    current,
                    done=True,
                    error=Status(code=int(StatusCode.CANCELLED), message="Operation cancelled by client"),
                )
        return Empty()
