# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Loggers, errors, and per-request correlation for the RPC layer."""

from __future__ import annotations

import logging
import uuid
from contextvars import ContextVar
from typing import TYPE_CHECKING

from lro_rpc.messages import Status, StatusCode

if TYPE_CHECKING:
    from lro_rpc.rpc._transport import CallHandle

# ---------------------------------------------------------------------------
# Loggers
# ---------------------------------------------------------------------------

_logger = logging.getLogger("lro_rpc.rpc")
_access_logger = logging.getLogger("lro_rpc.access")


# ---------------------------------------------------------------------------
# Per-request correlation ID
# ---------------------------------------------------------------------------


def _generate_request_id() -> str:
    """Generate a 16-char hex request ID for correlation."""
    return uuid.uuid4().hex[:16]


_current_request_id: ContextVar[str] = ContextVar("lro_rpc_request_id", default="")


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------


class RpcError(Exception):
    """Base class for every error raised by ``lro_rpc``.

    Attributes:
        error_type: Short machine-readable error name.
        error_message: Human-readable description.
        method: The RPC method the failing call targeted (empty if unknown).
        request_id: Correlation ID of the call, when one was assigned.

    """

    def __init__(self, error_type: str, error_message: str, *, method: str = "", request_id: str = "") -> None:
        """Initialize with the error details and the failing method."""
        self.error_type = error_type
        self.error_message = error_message
        self.method = method
        self.request_id = request_id
        prefix = f"{method}: " if method else ""
        super().__init__(f"{prefix}{error_type}: {error_message}")


class InvalidRequestShape(RpcError, TypeError):
    """The caller passed a request (or options) in a form the method does not accept."""

    def __init__(self, method: str, message: str) -> None:
        """Initialize with the method name and a description of the rejected shape."""
        super().__init__("InvalidRequestShape", message, method=method)


class UnknownField(RpcError, ValueError):
    """A request mapping contained a key that is not a field of the method's request message."""

    def __init__(self, method: str, field: str, allowed: tuple[str, ...]) -> None:
        """Initialize with the method name, the offending key, and the accepted field names."""
        self.field = field
        self.allowed = allowed
        super().__init__("UnknownField", f"unknown field {field!r}; expected one of {list(allowed)}", method=method)


class TransportError(RpcError):
    """The underlying RPC failed: server error, disconnect, timeout, or exhausted retries.

    Attributes:
        status_code: Canonical status code describing the failure.
        call_handle: Handle of the failed call when the transport produced one.

    """

    def __init__(
        self,
        method: str,
        status_code: StatusCode,
        message: str,
        *,
        error_type: str = "TransportError",
        request_id: str = "",
        call_handle: CallHandle | None = None,
    ) -> None:
        """Initialize with the failing method, status code, and message."""
        self.status_code = status_code
        self.call_handle = call_handle
        super().__init__(error_type, f"[{status_code.name}] {message}", method=method, request_id=request_id)


class OperationError(RpcError):
    """Raised by ``OperationHandle.result()`` when the operation finished with an error.

    Attributes:
        operation_name: Name of the failed operation.
        status: The ``Status`` recorded on the operation.

    """

    def __init__(self, operation_name: str, status: Status) -> None:
        """Initialize with the operation name and its recorded error status."""
        self.operation_name = operation_name
        self.status = status
        super().__init__(
            "OperationError",
            f"operation {operation_name!r} failed with {status.status_code.name}: {status.message}",
            method="get_operation",
        )

    @property
    def status_code(self) -> StatusCode:
        """The operation's error code."""
        return self.status.status_code
