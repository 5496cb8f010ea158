# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Method table for the operations service.

All four methods share the same dispatch plumbing and differ only in their
request/response messages and in how the raw response is presented to the
caller.  ``OPERATIONS_METHODS`` is the single source of truth for both the
client and the reference server.
"""

from __future__ import annotations

from dataclasses import dataclass, fields
from enum import Enum
from types import MappingProxyType
from typing import TYPE_CHECKING

from lro_rpc.messages import (
    CancelOperationRequest,
    DeleteOperationRequest,
    Empty,
    GetOperationRequest,
    ListOperationsRequest,
    ListOperationsResponse,
    Operation,
)

if TYPE_CHECKING:
    from collections.abc import Mapping

    import pyarrow as pa

    from lro_rpc.utils import ArrowSerializableDataclass


class ResultKind(Enum):
    """How the Result Adapter presents a raw response."""

    RAW = "raw"
    OPERATION = "operation"
    PAGED = "paged"


@dataclass(frozen=True)
class MethodInfo:
    """Static description of one RPC method.

    Attributes:
        name: Wire name of the method (e.g. ``"get_operation"``).
        request_type: Request message class; its fields are the method's schema.
        response_type: Response message class.
        result_kind: How the raw response is adapted for the caller.
        doc: One-line description.

    """

    name: str
    request_type: type[ArrowSerializableDataclass]
    response_type: type[ArrowSerializableDataclass]
    result_kind: ResultKind
    doc: str = ""

    @property
    def field_names(self) -> tuple[str, ...]:
        """Names of the request fields, in declaration order."""
        return tuple(f.name for f in fields(self.request_type))  # type: ignore[arg-type]

    @property
    def request_schema(self) -> pa.Schema:
        """Arrow schema of the request message."""
        return self.request_type.ARROW_SCHEMA

    @property
    def response_schema(self) -> pa.Schema:
        """Arrow schema of the response message."""
        return self.response_type.ARROW_SCHEMA


OPERATIONS_METHODS: Mapping[str, MethodInfo] = MappingProxyType(
    {
        "list_operations": MethodInfo(
            name="list_operations",
            request_type=ListOperationsRequest,
            response_type=ListOperationsResponse,
            result_kind=ResultKind.PAGED,
            doc="List operations that match the filter in the request.",
        ),
        "get_operation": MethodInfo(
            name="get_operation",
            request_type=GetOperationRequest,
            response_type=Operation,
            result_kind=ResultKind.OPERATION,
            doc="Get the latest state of a long-running operation.",
        ),
        "delete_operation": MethodInfo(
            name="delete_operation",
            request_type=DeleteOperationRequest,
            response_type=Empty,
            result_kind=ResultKind.RAW,
            doc="Delete a long-running operation.",
        ),
        "cancel_operation": MethodInfo(
            name="cancel_operation",
            request_type=CancelOperationRequest,
            response_type=Empty,
            result_kind=ResultKind.RAW,
            doc="Start asynchronous cancellation of a long-running operation.",
        ),
    }
)


def method_info(name: str) -> MethodInfo:
    """Look up a method by wire name.

    Raises:
        KeyError: If *name* is not an operations method.

    """
    try:
        return OPERATIONS_METHODS[name]
    except KeyError:
        raise KeyError(f"Unknown method: '{name}'. Available methods: {sorted(OPERATIONS_METHODS)}") from None
