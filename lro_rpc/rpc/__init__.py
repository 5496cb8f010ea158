# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request coercion, call dispatch, result adaptation, and transports.

Every client method runs the same pipeline::

    coerce(method, request, options)     -> (canonical request, CallOptions)
    CallDispatcher.dispatch_with_handle  -> (raw response, CallHandle)
    adapt(method, request, raw, handle)  -> OperationHandle | ListOperationsPager | raw

The method table (``OPERATIONS_METHODS``) drives all three steps; nothing is
specialised per method beyond its request/response messages and its
``ResultKind``.

Wire Protocol
-------------
Multiple IPC streams are written/read sequentially on the same pipe.  Each
``ipc.open_stream()`` reads one complete IPC stream (schema + batches + EOS)
and stops.  The next ``ipc.open_stream()`` picks up where the last left off.

Every request batch carries ``lro_rpc.request_version`` in its custom
metadata.  The server validates this before dispatching and rejects requests
with a missing or incompatible version.

::

    Client→Server: [IPC stream: request_schema + 1 request batch + EOS]
    Server→Client: [IPC stream: response_schema + 1 response/error batch + EOS]

"""

from __future__ import annotations

from lro_rpc.rpc._adapt import AdaptedResult, ListOperationsPager, OperationHandle, adapt
from lro_rpc.rpc._coerce import coerce
from lro_rpc.rpc._common import (
    InvalidRequestShape,
    OperationError,
    RpcError,
    TransportError,
    UnknownField,
    _access_logger,
    _current_request_id,
    _generate_request_id,
    _logger,
)
from lro_rpc.rpc._dispatch import CallDispatcher, OnComplete
from lro_rpc.rpc._methods import OPERATIONS_METHODS, MethodInfo, ResultKind, method_info
from lro_rpc.rpc._options import CallOptions, RetryConfig
from lro_rpc.rpc._server import (
    DEFAULT_PAGE_SIZE,
    CallOutcome,
    InMemoryOperations,
    OperationsServer,
    OperationsServicer,
    status_for_exception,
)
from lro_rpc.rpc._transport import CallHandle, PipeTransport, Transport, make_pipe_pair

__all__ = [
    "AdaptedResult",
    "CallDispatcher",
    "CallHandle",
    "CallOptions",
    "CallOutcome",
    "DEFAULT_PAGE_SIZE",
    "InMemoryOperations",
    "InvalidRequestShape",
    "ListOperationsPager",
    "MethodInfo",
    "OPERATIONS_METHODS",
    "OnComplete",
    "OperationError",
    "OperationHandle",
    "OperationsServer",
    "OperationsServicer",
    "PipeTransport",
    "ResultKind",
    "RetryConfig",
    "RpcError",
    "Transport",
    "TransportError",
    "UnknownField",
    "_access_logger",
    "_current_request_id",
    "_generate_request_id",
    "_logger",
    "adapt",
    "coerce",
    "make_pipe_pair",
    "method_info",
    "status_for_exception",
]
