# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Client for long-running operations services, carried over Apache Arrow IPC."""

import logging

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
from lro_rpc.metadata import REQUEST_VERSION
from lro_rpc.rpc import (
    OPERATIONS_METHODS,
    CallDispatcher,
    CallHandle,
    CallOptions,
    InMemoryOperations,
    InvalidRequestShape,
    ListOperationsPager,
    OperationError,
    OperationHandle,
    OperationsServer,
    OperationsServicer,
    PipeTransport,
    RetryConfig,
    RpcError,
    Transport,
    TransportError,
    UnknownField,
    adapt,
    coerce,
    make_pipe_pair,
)
from lro_rpc.http import (
    HttpTransientError,
    HttpTransport,
    bearer_authenticator,
    make_sync_client,
    make_wsgi_app,
)
from lro_rpc.operations import ClientConfig, OperationsClient, serve_pipe
from lro_rpc.utils import ArrowSerializableDataclass, ArrowType, IPCError

__all__ = [
    # Client
    "OperationsClient",
    "ClientConfig",
    "CallOptions",
    "RetryConfig",
    "serve_pipe",
    # Pipeline
    "coerce",
    "CallDispatcher",
    "adapt",
    "OPERATIONS_METHODS",
    # Results
    "CallHandle",
    "OperationHandle",
    "ListOperationsPager",
    # Messages
    "ListOperationsRequest",
    "GetOperationRequest",
    "DeleteOperationRequest",
    "CancelOperationRequest",
    "ListOperationsResponse",
    "Operation",
    "Status",
    "StatusCode",
    "Empty",
    # Errors
    "RpcError",
    "InvalidRequestShape",
    "UnknownField",
    "TransportError",
    "OperationError",
    "HttpTransientError",
    "IPCError",
    # Transports
    "Transport",
    "PipeTransport",
    "HttpTransport",
    "make_pipe_pair",
    # Server
    "OperationsServer",
    "OperationsServicer",
    "InMemoryOperations",
    "make_wsgi_app",
    "make_sync_client",
    "bearer_authenticator",
    # Serialization
    "ArrowSerializableDataclass",
    "ArrowType",
    # Protocol version
    "REQUEST_VERSION",
]

# Attach NullHandler to the root logger so library users don't get
# "No handler found" warnings.  Must come after all imports so the
# logger hierarchy is fully populated.
logging.getLogger("lro_rpc").addHandler(logging.NullHandler())
