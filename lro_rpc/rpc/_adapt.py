# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Result adapter: operation handles and list pagination.

``adapt`` turns the raw response of a dispatched call into what the caller
sees.  ``get_operation`` results become an :class:`OperationHandle` that
references the raw ``Operation`` record (never a copy); ``list_operations``
results become a :class:`ListOperationsPager` whose first page is the raw
response.  Acknowledgements pass through unchanged.

Neither wrapper holds background resources: polling, cancellation and page
fetches happen only when the caller asks for them, on the caller's thread.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from dataclasses import replace
from typing import TYPE_CHECKING

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
from lro_rpc.rpc._common import OperationError, TransportError, _logger
from lro_rpc.rpc._methods import OPERATIONS_METHODS, MethodInfo, ResultKind

if TYPE_CHECKING:
    from lro_rpc.rpc._dispatch import CallDispatcher
    from lro_rpc.rpc._options import CallOptions
    from lro_rpc.rpc._transport import CallHandle
    from lro_rpc.utils import ArrowSerializableDataclass

_GET = OPERATIONS_METHODS["get_operation"]
_LIST = OPERATIONS_METHODS["list_operations"]
_CANCEL = OPERATIONS_METHODS["cancel_operation"]
_DELETE = OPERATIONS_METHODS["delete_operation"]


# ---------------------------------------------------------------------------
# OperationHandle
# ---------------------------------------------------------------------------


class OperationHandle:
    """Caller-facing view of one ``Operation`` record.

    The wrapped record is exposed unchanged as :attr:`operation`.  Methods
    that talk to the server (``refresh``, ``cancel``, ``delete``, ``wait``)
    reuse the call options of the call that produced this handle.
    """

    __slots__ = ("_call_handle", "_dispatcher", "_operation", "_options")

    def __init__(
        self,
        operation: Operation,
        *,
        dispatcher: CallDispatcher,
        options: CallOptions | None = None,
        call_handle: CallHandle | None = None,
    ) -> None:
        """Wrap *operation*; *dispatcher* is used for follow-up calls."""
        self._operation = operation
        self._dispatcher = dispatcher
        self._options = options
        self._call_handle = call_handle

    @property
    def operation(self) -> Operation:
        """The wrapped operation record, exactly as the transport returned it."""
        return self._operation

    @property
    def call_handle(self) -> CallHandle | None:
        """Handle of the call that fetched this record."""
        return self._call_handle

    @property
    def name(self) -> str:
        """Operation name."""
        return self._operation.name

    @property
    def done(self) -> bool:
        """Whether the operation has finished."""
        return self._operation.done

    @property
    def metadata(self) -> bytes | None:
        """Service-specific progress metadata."""
        return self._operation.metadata

    @property
    def error(self) -> Status | None:
        """Error status when the operation finished with a failure."""
        return self._operation.error

    def exception(self) -> OperationError | None:
        """Return the failure as an ``OperationError``, or ``None`` if not failed (yet)."""
        if self._operation.error is None:
            return None
        return OperationError(self._operation.name, self._operation.error)

    def result(self, timeout: float | None = None, *, poll_interval: float = 1.0) -> bytes:
        """Return the operation's response payload.

        If the operation is not done yet, polls with :meth:`wait` first.

        Raises:
            OperationError: If the operation finished with an error.
            TransportError: If polling failed or *timeout* elapsed
                (``DEADLINE_EXCEEDED``).

        """
        current = self if self.done else self.wait(timeout=timeout, poll_interval=poll_interval)
        exc = current.exception()
        if exc is not None:
            raise exc
        return current.operation.response or b""

    def refresh(self) -> OperationHandle:
        """Fetch the latest record with ``get_operation`` and return it as a new handle."""
        raw, handle = self._dispatcher.dispatch_with_handle(
            _GET, GetOperationRequest(name=self._operation.name), self._options
        )
        assert isinstance(raw, Operation)
        return OperationHandle(raw, dispatcher=self._dispatcher, options=self._options, call_handle=handle)

    def cancel(self) -> Empty:
        """Request cancellation; the server decides whether and when it takes effect."""
        raw = self._dispatcher.dispatch(_CANCEL, CancelOperationRequest(name=self._operation.name), self._options)
        assert isinstance(raw, Empty)
        return raw

    def delete(self) -> Empty:
        """Delete the operation record on the server."""
        raw = self._dispatcher.dispatch(_DELETE, DeleteOperationRequest(name=self._operation.name), self._options)
        assert isinstance(raw, Empty)
        return raw

    def wait(self, timeout: float | None = None, *, poll_interval: float = 1.0) -> OperationHandle:
        """Poll with :meth:`refresh` until the operation is done.

        Args:
            timeout: Maximum seconds to wait, or ``None`` to wait forever.
            poll_interval: Seconds to sleep between polls.

        Returns:
            The handle holding the first record seen with ``done`` set
            (``self`` if already done).

        Raises:
            TransportError: ``DEADLINE_EXCEEDED`` if *timeout* elapsed, or
                whatever a poll raised.

        """
        if poll_interval <= 0:
            raise ValueError(f"poll_interval must be > 0, got {poll_interval}")
        deadline = None if timeout is None else time.monotonic() + timeout
        current = self
        polls = 0
        while not current.done:
            if deadline is not None and time.monotonic() >= deadline:
                raise TransportError(
                    _GET.name,
                    StatusCode.DEADLINE_EXCEEDED,
                    f"operation {self.name!r} not done after {timeout}s ({polls} polls)",
                )
            delay = poll_interval if deadline is None else max(0.0, min(poll_interval, deadline - time.monotonic()))
            time.sleep(delay)
            current = current.refresh()
            polls += 1
        if _logger.isEnabledFor(logging.DEBUG):
            _logger.debug("Operation %s done after %d polls", self.name, polls)
        return current

    def __repr__(self) -> str:
        """Show the name and state of the wrapped record."""
        state = "error" if self.error is not None else ("done" if self.done else "running")
        return f"OperationHandle(name={self.name!r}, state={state})"


# ---------------------------------------------------------------------------
# ListOperationsPager
# ---------------------------------------------------------------------------


class ListOperationsPager:
    """Lazily paginated sequence of ``Operation`` records.

    Iterating yields the operations of the first page (the raw response of
    the original call) and then fetches further pages with
    ``list_operations``, threading ``next_page_token`` into ``page_token``
    until a page comes back with an empty token.  Follow-up calls reuse the
    original request fields and call options.  Every iteration starts again
    from the first page, which is never re-fetched.
    """

    __slots__ = ("_call_handle", "_dispatcher", "_first_page", "_options", "_request")

    def __init__(
        self,
        first_page: ListOperationsResponse,
        *,
        request: ListOperationsRequest,
        dispatcher: CallDispatcher,
        options: CallOptions | None = None,
        call_handle: CallHandle | None = None,
    ) -> None:
        """Initialize with the already fetched first page and the request that produced it."""
        self._first_page = first_page
        self._request = request
        self._dispatcher = dispatcher
        self._options = options
        self._call_handle = call_handle

    @property
    def first_page(self) -> ListOperationsResponse:
        """The raw response of the original call."""
        return self._first_page

    @property
    def next_page_token(self) -> str:
        """Continuation token of the first page."""
        return self._first_page.next_page_token

    @property
    def call_handle(self) -> CallHandle | None:
        """Handle of the call that fetched the first page."""
        return self._call_handle

    @property
    def pages(self) -> Iterator[ListOperationsResponse]:
        """Iterate raw pages, fetching each continuation on demand."""
        page = self._first_page
        yield page
        while page.next_page_token:
            request = replace(self._request, page_token=page.next_page_token)
            raw = self._dispatcher.dispatch(_LIST, request, self._options)
            assert isinstance(raw, ListOperationsResponse)
            page = raw
            yield page

    def __iter__(self) -> Iterator[Operation]:
        """Iterate operation records across all pages."""
        for page in self.pages:
            yield from page.operations

    def __repr__(self) -> str:
        """Show the first page size and whether more pages exist."""
        return (
            f"ListOperationsPager(first_page={len(self._first_page.operations)} operations, "
            f"next_page_token={self.next_page_token!r})"
        )


# ---------------------------------------------------------------------------
# adapt
# ---------------------------------------------------------------------------

type AdaptedResult = OperationHandle | ListOperationsPager | ArrowSerializableDataclass


def adapt(
    method: MethodInfo,
    request: ArrowSerializableDataclass,
    raw: ArrowSerializableDataclass,
    handle: CallHandle | None,
    *,
    dispatcher: CallDispatcher,
    options: CallOptions | None = None,
) -> AdaptedResult:
    """Present *raw* the way callers of *method* receive it.

    Returns:
        An ``OperationHandle`` for ``get_operation``, a ``ListOperationsPager``
        for ``list_operations``, and *raw* itself otherwise.

    """
    match method.result_kind:
        case ResultKind.OPERATION:
            assert isinstance(raw, Operation)
            return OperationHandle(raw, dispatcher=dispatcher, options=options, call_handle=handle)
        case ResultKind.PAGED:
            assert isinstance(raw, ListOperationsResponse)
            assert isinstance(request, ListOperationsRequest)
            return ListOperationsPager(
                raw, request=request, dispatcher=dispatcher, options=options, call_handle=handle
            )
        case _:
            return raw
