# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the result adapter: OperationHandle and ListOperationsPager."""

from __future__ import annotations

import pytest

from lro_rpc.messages import (
    Empty,
    GetOperationRequest,
    ListOperationsRequest,
    ListOperationsResponse,
    Operation,
    Status,
    StatusCode,
)
from lro_rpc.rpc import (
    OPERATIONS_METHODS,
    CallDispatcher,
    CallHandle,
    CallOptions,
    ListOperationsPager,
    OperationError,
    OperationHandle,
    TransportError,
    adapt,
)

from .conftest import RecordingTransport


@pytest.fixture
def no_sleep(monkeypatch: pytest.MonkeyPatch) -> list[float]:
    """Replace time.sleep with a recorder so polling tests run instantly."""
    slept: list[float] = []
    monkeypatch.setattr("lro_rpc.rpc._adapt.time.sleep", slept.append)
    return slept


def _handle(op: Operation, recording: RecordingTransport, options: CallOptions | None = None) -> OperationHandle:
    return OperationHandle(op, dispatcher=CallDispatcher(recording), options=options)


def _failed(name: str, code: StatusCode = StatusCode.ABORTED, message: str = "boom") -> Operation:
    return Operation(name=name, done=True, error=Status(code=int(code), message=message, details=["d1"]))


# ---------------------------------------------------------------------------
# adapt()
# ---------------------------------------------------------------------------


class TestAdapt:
    """adapt() per result kind."""

    def test_get_becomes_operation_handle(self, recording: RecordingTransport) -> None:
        """get_operation results wrap the raw record."""
        raw = Operation(name="a")
        call = CallHandle(method="get_operation", request_id="r")
        result = adapt(
            OPERATIONS_METHODS["get_operation"],
            GetOperationRequest(name="a"),
            raw,
            call,
            dispatcher=CallDispatcher(recording),
        )
        assert isinstance(result, OperationHandle)
        assert result.operation is raw
        assert result.call_handle is call

    def test_list_becomes_pager(self, recording: RecordingTransport) -> None:
        """list_operations results become a pager over the raw first page."""
        raw = ListOperationsResponse(operations=[Operation(name="a")])
        result = adapt(
            OPERATIONS_METHODS["list_operations"],
            ListOperationsRequest(),
            raw,
            None,
            dispatcher=CallDispatcher(recording),
        )
        assert isinstance(result, ListOperationsPager)
        assert result.first_page is raw

    @pytest.mark.parametrize("method", ["delete_operation", "cancel_operation"])
    def test_ack_passes_through(self, recording: RecordingTransport, method: str) -> None:
        """Acknowledgements are returned as-is."""
        raw = Empty()
        info = OPERATIONS_METHODS[method]
        result = adapt(info, info.request_type(name="a"), raw, None, dispatcher=CallDispatcher(recording))
        assert result is raw

    def test_adapt_makes_no_calls(self, recording: RecordingTransport) -> None:
        """Adapting never talks to the transport."""
        adapt(
            OPERATIONS_METHODS["list_operations"],
            ListOperationsRequest(),
            ListOperationsResponse(next_page_token="5"),
            None,
            dispatcher=CallDispatcher(recording),
        )
        assert recording.calls == []


# ---------------------------------------------------------------------------
# OperationHandle
# ---------------------------------------------------------------------------


class TestOperationHandle:
    """Derived capabilities of OperationHandle."""

    def test_properties(self, recording: RecordingTransport) -> None:
        """Properties read through to the wrapped record."""
        op = Operation(name="a", done=False, metadata=b"50%")
        h = _handle(op, recording)
        assert (h.name, h.done, h.metadata, h.error) == ("a", False, b"50%", None)
        assert h.exception() is None
        assert repr(h) == "OperationHandle(name='a', state=running)"

    def test_result_success(self, recording: RecordingTransport) -> None:
        """result() returns the response payload of a done operation."""
        h = _handle(Operation(name="a", done=True, response=b"payload"), recording)
        assert h.result() == b"payload"
        assert recording.calls == []

    def test_result_done_without_response(self, recording: RecordingTransport) -> None:
        """A done operation with no response yields empty bytes."""
        assert _handle(Operation(name="a", done=True), recording).result() == b""

    def test_result_raises_operation_error(self, recording: RecordingTransport) -> None:
        """A failed operation raises OperationError only when the result is requested."""
        h = _handle(_failed("a", StatusCode.PERMISSION_DENIED, "nope"), recording)
        exc = h.exception()
        assert isinstance(exc, OperationError)
        with pytest.raises(OperationError) as exc_info:
            h.result()
        err = exc_info.value
        assert err.operation_name == "a"
        assert err.status_code == StatusCode.PERMISSION_DENIED
        assert err.status.details == ["d1"]
        assert "PERMISSION_DENIED" in str(err)
        assert repr(h) == "OperationHandle(name='a', state=error)"

    def test_refresh_returns_new_handle(self, recording: RecordingTransport) -> None:
        """refresh() issues get_operation and wraps the new record; the original is unchanged."""
        newer = Operation(name="a", done=True, response=b"x")
        recording.responses["get_operation"] = newer
        opts = CallOptions(timeout=3.0)
        h = _handle(Operation(name="a"), recording, opts)
        refreshed = h.refresh()
        assert refreshed is not h
        assert refreshed.operation is newer
        assert not h.done
        assert recording.calls[0].request == GetOperationRequest(name="a")
        assert recording.calls[0].options is opts
        assert refreshed.call_handle is not None

    def test_cancel_and_delete(self, recording: RecordingTransport) -> None:
        """cancel()/delete() dispatch the matching method for the operation name."""
        h = _handle(Operation(name="a"), recording)
        assert h.cancel() == Empty()
        assert h.delete() == Empty()
        assert recording.methods_called() == ["cancel_operation", "delete_operation"]
        assert all(c.request.name == "a" for c in recording.calls)  # type: ignore[attr-defined]

    def test_wait_polls_until_done(self, recording: RecordingTransport, no_sleep: list[float]) -> None:
        """wait() refreshes until a done record arrives."""
        recording.responses["get_operation"] = [
            Operation(name="a"),
            Operation(name="a"),
            Operation(name="a", done=True, response=b"ok"),
        ]
        final = _handle(Operation(name="a"), recording).wait(poll_interval=0.5)
        assert final.done
        assert final.result() == b"ok"
        assert len(recording.calls) == 3
        assert no_sleep == [0.5, 0.5, 0.5]

    def test_wait_already_done(self, recording: RecordingTransport) -> None:
        """A done handle waits for nothing."""
        h = _handle(Operation(name="a", done=True), recording)
        assert h.wait() is h
        assert recording.calls == []

    def test_wait_timeout(self, recording: RecordingTransport, no_sleep: list[float]) -> None:
        """An expired wait raises DEADLINE_EXCEEDED."""
        with pytest.raises(TransportError) as exc_info:
            _handle(Operation(name="a"), recording).wait(timeout=0)
        assert exc_info.value.status_code == StatusCode.DEADLINE_EXCEEDED
        assert exc_info.value.method == "get_operation"

    def test_wait_rejects_bad_interval(self, recording: RecordingTransport) -> None:
        """poll_interval must be positive."""
        with pytest.raises(ValueError):
            _handle(Operation(name="a"), recording).wait(poll_interval=0)

    def test_result_waits_then_raises(self, recording: RecordingTransport, no_sleep: list[float]) -> None:
        """result() on a running operation polls, then surfaces a failure."""
        recording.responses["get_operation"] = [_failed("a")]
        with pytest.raises(OperationError):
            _handle(Operation(name="a"), recording).result()
        assert len(recording.calls) == 1

    def test_poll_failure_propagates(self, recording: RecordingTransport, no_sleep: list[float]) -> None:
        """A failing poll surfaces its TransportError."""
        recording.errors["get_operation"] = TransportError("get_operation", StatusCode.NOT_FOUND, "gone")
        with pytest.raises(TransportError) as exc_info:
            _handle(Operation(name="a"), recording).wait()
        assert exc_info.value.status_code == StatusCode.NOT_FOUND


# ---------------------------------------------------------------------------
# ListOperationsPager
# ---------------------------------------------------------------------------


class TestPager:
    """Lazy pagination over list_operations."""

    def _pager(self, recording: RecordingTransport, first: ListOperationsResponse) -> ListOperationsPager:
        request = ListOperationsRequest(name="ops", filter="done=false", page_size=2)
        return ListOperationsPager(
            first,
            request=request,
            dispatcher=CallDispatcher(recording),
            options=CallOptions(metadata={"k": "v"}),
        )

    def test_single_page(self, recording: RecordingTransport) -> None:
        """No token means no further calls."""
        pager = self._pager(recording, ListOperationsResponse(operations=[Operation(name="a")]))
        assert [op.name for op in pager] == ["a"]
        assert recording.calls == []

    def test_follows_tokens(self, recording: RecordingTransport) -> None:
        """Pages are fetched with the previous page's token and the original fields and options."""
        recording.responses["list_operations"] = [
            ListOperationsResponse(operations=[Operation(name="c"), Operation(name="d")], next_page_token="4"),
            ListOperationsResponse(operations=[Operation(name="e")]),
        ]
        first = ListOperationsResponse(operations=[Operation(name="a"), Operation(name="b")], next_page_token="2")
        pager = self._pager(recording, first)
        assert [op.name for op in pager] == ["a", "b", "c", "d", "e"]
        tokens = [c.request.page_token for c in recording.calls]  # type: ignore[attr-defined]
        assert tokens == ["2", "4"]
        for call, token in zip(recording.calls, tokens, strict=True):
            assert call.request == ListOperationsRequest(name="ops", filter="done=false", page_size=2, page_token=token)
            assert dict(call.options.metadata) == {"k": "v"}

    def test_lazy(self, recording: RecordingTransport) -> None:
        """Nothing is fetched until iteration reaches the end of the first page."""
        recording.responses["list_operations"] = [ListOperationsResponse(operations=[Operation(name="b")])]
        pager = self._pager(recording, ListOperationsResponse(operations=[Operation(name="a")], next_page_token="1"))
        it = iter(pager)
        assert next(it).name == "a"
        assert recording.calls == []
        assert next(it).name == "b"
        assert len(recording.calls) == 1

    def test_pages(self, recording: RecordingTransport) -> None:
        """pages yields raw responses, starting with the first page object."""
        second = ListOperationsResponse(operations=[])
        recording.responses["list_operations"] = [second]
        first = ListOperationsResponse(operations=[Operation(name="a")], next_page_token="1")
        pager = self._pager(recording, first)
        pages = list(pager.pages)
        assert pages[0] is first
        assert pages[1] is second
        assert pager.next_page_token == "1"
        assert "next_page_token='1'" in repr(pager)

    def test_page_failure_propagates(self, recording: RecordingTransport) -> None:
        """A failing continuation raises from the iterator."""
        recording.errors["list_operations"] = TransportError("list_operations", StatusCode.UNAVAILABLE, "down")
        pager = self._pager(recording, ListOperationsResponse(operations=[Operation(name="a")], next_page_token="1"))
        with pytest.raises(TransportError):
            list(pager)
