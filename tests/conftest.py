# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Shared test fixtures for lro-rpc tests."""

from __future__ import annotations

from collections.abc import Iterator, Mapping
from dataclasses import dataclass, field

import pytest

from lro_rpc.http import HttpTransport, _SyncTestClient, make_sync_client
from lro_rpc.messages import Empty, ListOperationsResponse, Operation
from lro_rpc.operations import ClientConfig, OperationsClient, serve_pipe
from lro_rpc.rpc import (
    CallHandle,
    CallOptions,
    InMemoryOperations,
    MethodInfo,
    OperationsServer,
)
from lro_rpc.utils import ArrowSerializableDataclass

# ---------------------------------------------------------------------------
# Recording transport
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RecordedCall:
    """One ``invoke`` seen by ``RecordingTransport``."""

    method: str
    request: ArrowSerializableDataclass
    options: CallOptions


@dataclass
class RecordingTransport:
    """In-process ``Transport`` fake that records calls and replays canned responses.

    ``responses`` maps a method name to either a single response (returned
    on every call) or a list consumed one entry per call.  ``errors`` maps a
    method name to an exception raised instead of responding.
    """

    responses: dict[str, ArrowSerializableDataclass | list[ArrowSerializableDataclass]] = field(default_factory=dict)
    errors: dict[str, Exception] = field(default_factory=dict)
    trailing: Mapping[str, str] = field(default_factory=dict)
    calls: list[RecordedCall] = field(default_factory=list)
    closed: bool = False

    def invoke(
        self,
        method: MethodInfo,
        request: ArrowSerializableDataclass,
        options: CallOptions,
    ) -> tuple[ArrowSerializableDataclass, CallHandle]:
        self.calls.append(RecordedCall(method.name, request, options))
        if method.name in self.errors:
            raise self.errors[method.name]
        configured = self.responses[method.name]
        response = configured.pop(0) if isinstance(configured, list) else configured
        handle = CallHandle(
            method=method.name,
            request_id=f"req-{len(self.calls)}",
            trailing_metadata=dict(self.trailing),
            server_id="recording",
        )
        return response, handle

    def close(self) -> None:
        self.closed = True

    def methods_called(self) -> list[str]:
        """Method names in call order."""
        return [c.method for c in self.calls]


def default_responses() -> dict[str, ArrowSerializableDataclass | list[ArrowSerializableDataclass]]:
    """Canned responses for all four methods."""
    return {
        "list_operations": ListOperationsResponse(
            operations=[Operation(name="hello world", done=False)],
            next_page_token="",
        ),
        "get_operation": Operation(name="hello world", done=False, metadata=b"progress"),
        "delete_operation": Empty(),
        "cancel_operation": Empty(),
    }


@pytest.fixture
def recording() -> RecordingTransport:
    """A recording transport preloaded with a response for every method."""
    return RecordingTransport(responses=default_responses())


@pytest.fixture
def client(recording: RecordingTransport) -> Iterator[OperationsClient]:
    """An ``OperationsClient`` whose channel is the recording transport."""
    with OperationsClient(ClientConfig(credentials=recording)) as c:
        yield c


# ---------------------------------------------------------------------------
# In-process servers
# ---------------------------------------------------------------------------


@pytest.fixture
def store() -> InMemoryOperations:
    """An empty in-memory operations store."""
    return InMemoryOperations()


@pytest.fixture
def pipe_client(store: InMemoryOperations) -> Iterator[OperationsClient]:
    """A client talking to *store* over an in-process pipe."""
    with serve_pipe(store, server_id="pipe-test") as c:
        yield c


@pytest.fixture
def http_test_client(store: InMemoryOperations) -> _SyncTestClient:
    """A Falcon test client serving *store*; records request paths and headers."""
    return make_sync_client(OperationsServer(store, server_id="http-test"))


@pytest.fixture
def http_client(http_test_client: _SyncTestClient) -> Iterator[OperationsClient]:
    """A client talking to *store* over the HTTP transport (no real socket)."""
    with OperationsClient(ClientConfig(credentials=HttpTransport(client=http_test_client))) as c:
        yield c


@pytest.fixture(params=["pipe", "http"])
def server_client(
    request: pytest.FixtureRequest,
    store: InMemoryOperations,
) -> Iterator[OperationsClient]:
    """The same store behind each real transport in turn."""
    if request.param == "pipe":
        with serve_pipe(store, server_id="pipe-test") as c:
            yield c
    else:
        transport = HttpTransport(client=make_sync_client(OperationsServer(store, server_id="http-test")))
        with OperationsClient(ClientConfig(credentials=transport)) as c:
            yield c
