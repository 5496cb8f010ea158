# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Request and response messages for the operations service.

Each message is a frozen dataclass with automatic Arrow IPC serialization
(see :class:`~lro_rpc.utils.ArrowSerializableDataclass`).  Field names and
defaults follow the ``google.longrunning`` messages: unset scalar fields are
the empty string / zero, and a request constructed with no arguments is valid.

KEY CLASSES
-----------
ListOperationsRequest, GetOperationRequest, DeleteOperationRequest,
CancelOperationRequest : Request messages
Operation : A long-running operation record
ListOperationsResponse : One page of operation records
Status : Error detail carried by a failed operation or call
Empty : Acknowledgement with no payload
StatusCode : Canonical RPC status codes

"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum

from lro_rpc.utils import ArrowSerializableDataclass

__all__ = [
    "CancelOperationRequest",
    "DeleteOperationRequest",
    "Empty",
    "GetOperationRequest",
    "ListOperationsRequest",
    "ListOperationsResponse",
    "Operation",
    "Status",
    "StatusCode",
]


class StatusCode(IntEnum):
    """Canonical RPC status codes."""

    OK = 0
    CANCELLED = 1
    UNKNOWN = 2
    INVALID_ARGUMENT = 3
    DEADLINE_EXCEEDED = 4
    NOT_FOUND = 5
    ALREADY_EXISTS = 6
    PERMISSION_DENIED = 7
    RESOURCE_EXHAUSTED = 8
    FAILED_PRECONDITION = 9
    ABORTED = 10
    OUT_OF_RANGE = 11
    UNIMPLEMENTED = 12
    INTERNAL = 13
    UNAVAILABLE = 14
    DATA_LOSS = 15
    UNAUTHENTICATED = 16

    @classmethod
    def coerce(cls, value: int) -> StatusCode:
        """Map an integer to a ``StatusCode``, falling back to ``UNKNOWN``."""
        try:
            return cls(value)
        except ValueError:
            return cls.UNKNOWN


# ---------------------------------------------------------------------------
# Requests
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ListOperationsRequest(ArrowSerializableDataclass):
    """List operations matching *filter* under the collection *name*."""

    name: str = ""
    filter: str = ""
    page_size: int = 0
    page_token: str = ""


@dataclass(frozen=True)
class GetOperationRequest(ArrowSerializableDataclass):
    """Fetch the latest state of the operation *name*."""

    name: str = ""


@dataclass(frozen=True)
class DeleteOperationRequest(ArrowSerializableDataclass):
    """Delete the operation *name*; the client is no longer interested in it."""

    name: str = ""


@dataclass(frozen=True)
class CancelOperationRequest(ArrowSerializableDataclass):
    """Start asynchronous cancellation of the operation *name*."""

    name: str = ""


# ---------------------------------------------------------------------------
# Responses
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Status(ArrowSerializableDataclass):
    """Error status: a ``StatusCode`` value, a developer-facing message, and free-form details."""

    code: int = 0
    message: str = ""
    details: list[str] = field(default_factory=list)

    @property
    def status_code(self) -> StatusCode:
        """``code`` as a ``StatusCode``."""
        return StatusCode.coerce(self.code)


@dataclass(frozen=True)
class Operation(ArrowSerializableDataclass):
    """A long-running operation record.

    Attributes:
        name: Server-assigned unique name of the operation.
        done: ``False`` while the operation is in progress.
        metadata: Service-specific progress metadata (opaque bytes).
        error: Set when the operation finished with a failure.
        response: Set when the operation finished successfully (opaque bytes).

    """

    name: str = ""
    done: bool = False
    metadata: bytes | None = None
    error: Status | None = None
    response: bytes | None = None

    def __post_init__(self) -> None:
        """Reject records carrying both an error and a response, or a result while not done."""
        if self.error is not None and self.response is not None:
            raise ValueError(f"Operation {self.name!r} cannot carry both an error and a response")
        if not self.done and (self.error is not None or self.response is not None):
            raise ValueError(f"Operation {self.name!r} is not done but carries a result")


@dataclass(frozen=True)
class ListOperationsResponse(ArrowSerializableDataclass):
    """One page of operations; an empty ``next_page_token`` marks the last page."""

    operations: list[Operation] = field(default_factory=list)
    next_page_token: str = ""


@dataclass(frozen=True)
class Empty(ArrowSerializableDataclass):
    """Acknowledgement with no payload fields."""
