# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Tests for the HTTP transport: Falcon WSGI server and httpx client."""

from __future__ import annotations

from http import HTTPStatus
from io import BytesIO

import falcon
import falcon.testing
import httpx
import pyarrow as pa
import pytest
from pyarrow import ipc

from lro_rpc.http import (
    _ARROW_CONTENT_TYPE,
    HttpTransport,
    _SyncTestClient,
    _SyncTestResponse,
    bearer_authenticator,
    http_status_for,
    make_sync_client,
    make_wsgi_app,
    status_code_for_http,
)
from lro_rpc.messages import GetOperationRequest, ListOperationsRequest, StatusCode
from lro_rpc.metadata import REQUEST_VERSION, REQUEST_VERSION_KEY, RPC_METHOD_KEY, TIMEOUT_KEY
from lro_rpc.operations import ClientConfig, OperationsClient
from lro_rpc.rpc import OPERATIONS_METHODS, CallOptions, InMemoryOperations, OperationsServer, TransportError
from lro_rpc.rpc._wire import _read_response, _ResponseEnvelope, _write_request

_GET = OPERATIONS_METHODS["get_operation"]


def _request_body(request: GetOperationRequest | ListOperationsRequest, method: str) -> bytes:
    buf = BytesIO()
    _write_request(buf, OPERATIONS_METHODS[method], request, CallOptions(), "0123456789abcdef")
    return buf.getvalue()


def _envelope(resp: _SyncTestResponse) -> _ResponseEnvelope:
    """Decode an Arrow IPC response body into its envelope."""
    return _read_response(BytesIO(resp.content), _GET)


class _FakeClient:
    """Client stub returning a canned response or raising a canned exception."""

    def __init__(self, result: _SyncTestResponse | Exception) -> None:
        self.result = result
        self.calls = 0

    def post(self, url: str, **kwargs: object) -> _SyncTestResponse:
        self.calls += 1
        if isinstance(self.result, Exception):
            raise self.result
        return self.result

    def close(self) -> None:
        pass


# ---------------------------------------------------------------------------
# Tests: status mapping
# ---------------------------------------------------------------------------


class TestStatusMapping:
    """RPC status <-> HTTP status."""

    @pytest.mark.parametrize(
        ("code", "http_status"),
        [
            (StatusCode.OK, 200),
            (StatusCode.INVALID_ARGUMENT, 400),
            (StatusCode.UNAUTHENTICATED, 401),
            (StatusCode.PERMISSION_DENIED, 403),
            (StatusCode.NOT_FOUND, 404),
            (StatusCode.UNIMPLEMENTED, 501),
            (StatusCode.UNAVAILABLE, 503),
            (StatusCode.INTERNAL, 500),
            (StatusCode.CANCELLED, 500),
        ],
    )
    def test_http_status_for(self, code: StatusCode, http_status: int) -> None:
        """Each status is carried by its HTTP counterpart, unmapped ones by 500."""
        assert http_status_for(code) == http_status

    @pytest.mark.parametrize(
        ("http_status", "code"),
        [
            (401, StatusCode.UNAUTHENTICATED),
            (403, StatusCode.PERMISSION_DENIED),
            (404, StatusCode.UNIMPLEMENTED),
            (504, StatusCode.DEADLINE_EXCEEDED),
            (429, StatusCode.RESOURCE_EXHAUSTED),
            (502, StatusCode.UNAVAILABLE),
            (418, StatusCode.INVALID_ARGUMENT),
            (500, StatusCode.INTERNAL),
            (302, StatusCode.UNKNOWN),
        ],
    )
    def test_status_code_for_http(self, http_status: int, code: StatusCode) -> None:
        """Bare HTTP failures map to a best-effort status."""
        assert status_code_for_http(http_status) == code


# ---------------------------------------------------------------------------
# Tests: server side
# ---------------------------------------------------------------------------


class TestMakeWsgiApp:
    """Tests for the Falcon application."""

    def test_returns_falcon_app(self, store: InMemoryOperations) -> None:
        """make_wsgi_app returns a Falcon application."""
        assert isinstance(make_wsgi_app(OperationsServer(store)), falcon.App)

    def test_success_is_200(self, http_test_client: _SyncTestClient, store: InMemoryOperations) -> None:
        """A successful call answers 200 with an Arrow body."""
        op = store.create()
        resp = http_test_client.post(
            "/lro/get_operation",
            content=_request_body(GetOperationRequest(name=op.name), "get_operation"),
            headers={"Content-Type": _ARROW_CONTENT_TYPE},
        )
        assert resp.status_code == 200
        envelope = _envelope(resp)
        assert envelope.response == op
        assert envelope.server_id == "http-test"
        assert envelope.request_id == "0123456789abcdef"

    def test_not_found_is_404(self, http_test_client: _SyncTestClient) -> None:
        """Servicer failures carry their mapped HTTP status."""
        resp = http_test_client.post(
            "/lro/get_operation",
            content=_request_body(GetOperationRequest(name="operations/404"), "get_operation"),
            headers={"Content-Type": _ARROW_CONTENT_TYPE},
        )
        assert resp.status_code == HTTPStatus.NOT_FOUND
        envelope = _envelope(resp)
        assert envelope.response is None
        assert envelope.status_code == StatusCode.NOT_FOUND
        assert envelope.error_type == "KeyError"

    def test_wrong_content_type_400(self, http_test_client: _SyncTestClient) -> None:
        """Wrong Content-Type returns 400 with an Arrow IPC error."""
        resp = http_test_client.post("/lro/get_operation", content=b"hello", headers={"Content-Type": "text/plain"})
        assert resp.status_code == 400
        envelope = _envelope(resp)
        assert envelope.status_code == StatusCode.INVALID_ARGUMENT
        assert envelope.error_type == "ContentTypeError"
        assert "Content-Type" in envelope.status_message

    def test_unknown_method_501(self, http_test_client: _SyncTestClient) -> None:
        """An unknown method in the URL is UNIMPLEMENTED."""
        resp = http_test_client.post("/lro/wait_operation", content=b"", headers={"Content-Type": _ARROW_CONTENT_TYPE})
        assert resp.status_code == 501
        envelope = _envelope(resp)
        assert envelope.error_type == "UnknownMethod"
        assert "wait_operation" in envelope.status_message

    def test_method_mismatch_400(self, http_test_client: _SyncTestClient) -> None:
        """The URL method must match the method named in the request metadata."""
        resp = http_test_client.post(
            "/lro/get_operation",
            content=_request_body(ListOperationsRequest(), "list_operations"),
            headers={"Content-Type": _ARROW_CONTENT_TYPE},
        )
        assert resp.status_code == 400
        envelope = _envelope(resp)
        assert envelope.error_type == "ProtocolError"
        assert "mismatch" in envelope.status_message

    def test_garbage_body_400(self, http_test_client: _SyncTestClient) -> None:
        """A body that is not Arrow IPC is rejected."""
        resp = http_test_client.post(
            "/lro/get_operation", content=b"garbage bytes", headers={"Content-Type": _ARROW_CONTENT_TYPE}
        )
        assert resp.status_code == 400
        assert _envelope(resp).error_type == "ProtocolError"

    def test_malformed_timeout_400(self, http_test_client: _SyncTestClient) -> None:
        """An unparseable timeout in the request metadata is a 400 error stream, not a bare 500."""
        batch = GetOperationRequest(name="operations/1").to_batch()
        buf = BytesIO()
        with ipc.new_stream(buf, batch.schema) as writer:
            writer.write_batch(
                batch,
                custom_metadata=pa.KeyValueMetadata(
                    {RPC_METHOD_KEY: b"get_operation", REQUEST_VERSION_KEY: REQUEST_VERSION, TIMEOUT_KEY: b"abc"}
                ),
            )
        resp = http_test_client.post(
            "/lro/get_operation", content=buf.getvalue(), headers={"Content-Type": _ARROW_CONTENT_TYPE}
        )
        assert resp.status_code == 400
        envelope = _envelope(resp)
        assert envelope.status_code == StatusCode.INVALID_ARGUMENT
        assert envelope.error_type == "ProtocolError"
        assert "timeout" in envelope.status_message

    def test_request_id_echoed(self, store: InMemoryOperations) -> None:
        """X-Request-ID from the caller is echoed on the response."""
        op = store.create()
        tc = falcon.testing.TestClient(make_wsgi_app(OperationsServer(store)))
        result = tc.simulate_post(
            "/lro/get_operation",
            body=_request_body(GetOperationRequest(name=op.name), "get_operation"),
            headers={"Content-Type": _ARROW_CONTENT_TYPE, "X-Request-ID": "trace-me"},
        )
        assert result.status_code == 200
        assert result.headers["X-Request-ID"] == "trace-me"

    def test_request_id_generated(self, store: InMemoryOperations) -> None:
        """Without X-Request-ID the server generates one."""
        tc = falcon.testing.TestClient(make_wsgi_app(OperationsServer(store)))
        result = tc.simulate_post("/lro/get_operation", body=b"", headers={"Content-Type": "text/plain"})
        assert len(result.headers["X-Request-ID"]) == 16


# ---------------------------------------------------------------------------
# Tests: authentication
# ---------------------------------------------------------------------------


class TestBearerAuth:
    """Tests for bearer_authenticator and token sources."""

    @pytest.fixture
    def secured(self, store: InMemoryOperations) -> _SyncTestClient:
        return make_sync_client(OperationsServer(store), authenticate=bearer_authenticator(["s3cret", "other"]))

    def test_principal(self) -> None:
        """The principal names the token's position, never the token."""
        authenticate = bearer_authenticator(["a", "b"])
        assert authenticate(falcon.testing.create_req(headers={"Authorization": "Bearer b"})) == "token-1"

    def test_requires_tokens(self) -> None:
        """At least one token is needed."""
        with pytest.raises(ValueError, match="at least one token"):
            bearer_authenticator([])

    def test_good_token(self, secured: _SyncTestClient, store: InMemoryOperations) -> None:
        """A valid token is accepted."""
        op = store.create()
        with OperationsClient(ClientConfig(credentials="s3cret", http_client=secured)) as client:
            assert client.get_operation(name=op.name).name == op.name
        assert secured.requests[-1][1]["Authorization"] == "Bearer s3cret"

    @pytest.mark.parametrize("token", [None, "wrong"])
    def test_rejected(self, secured: _SyncTestClient, token: str | None) -> None:
        """Missing or wrong tokens fail with UNAUTHENTICATED."""
        with OperationsClient(ClientConfig(credentials=token, http_client=secured)) as client:
            with pytest.raises(TransportError) as exc_info:
                client.list_operations()
        assert exc_info.value.status_code == StatusCode.UNAUTHENTICATED
        assert exc_info.value.error_type == "AuthenticationError"

    def test_token_source_called_per_request(self, secured: _SyncTestClient) -> None:
        """A token source is asked for a fresh token on every request."""
        issued: list[str] = []

        def token_source() -> str:
            issued.append("s3cret")
            return "s3cret"

        with OperationsClient(ClientConfig(credentials=token_source, http_client=secured)) as client:
            client.list_operations()
            client.list_operations()
        assert len(issued) == 2


# ---------------------------------------------------------------------------
# Tests: client side
# ---------------------------------------------------------------------------


class TestHttpTransport:
    """Tests for HttpTransport."""

    def test_requires_url_or_client(self) -> None:
        """Neither base_url nor client is an error."""
        with pytest.raises(ValueError, match="base_url is required"):
            HttpTransport()

    def test_request_id_header_matches_handle(
        self, http_client: OperationsClient, http_test_client: _SyncTestClient, store: InMemoryOperations
    ) -> None:
        """The X-Request-ID header carries the call handle's request ID."""
        op = store.create()
        handle = http_client.get_operation(name=op.name).call_handle
        assert handle is not None
        path, headers = http_test_client.requests[-1]
        assert path == "/lro/get_operation"
        assert headers["X-Request-ID"] == handle.request_id
        assert headers["Content-Type"] == _ARROW_CONTENT_TYPE

    def test_extra_headers(self, http_test_client: _SyncTestClient) -> None:
        """Configured headers are sent on every request."""
        transport = HttpTransport(client=http_test_client, headers={"X-Tenant": "acme"})
        with OperationsClient(credentials=transport) as client:
            client.list_operations()
        assert http_test_client.requests[-1][1]["X-Tenant"] == "acme"

    def test_custom_prefix(self, store: InMemoryOperations) -> None:
        """Client and server agree on a non-default prefix."""
        test_client = make_sync_client(OperationsServer(store), prefix="/api/v1/ops")
        transport = HttpTransport(client=test_client, prefix="/api/v1/ops/")
        assert transport.prefix == "/api/v1/ops"
        op = store.create()
        with OperationsClient(credentials=transport) as client:
            assert client.get_operation(name=op.name).name == op.name
        assert test_client.requests[-1][0] == "/api/v1/ops/get_operation"

    def test_non_arrow_body(self) -> None:
        """A proxy error page surfaces as an HttpError with the mapped status."""
        fake = _FakeClient(_SyncTestResponse(502, b"<html>bad gateway</html>"))
        with OperationsClient(credentials=HttpTransport(client=fake)) as client:  # type: ignore[arg-type]
            with pytest.raises(TransportError) as exc_info:
                client.get_operation(name="operations/1")
        err = exc_info.value
        assert err.error_type == "HttpError"
        assert err.status_code == StatusCode.UNAVAILABLE
        assert "bad gateway" in err.error_message
        assert fake.calls == 1

    @pytest.mark.parametrize(
        ("exc", "code"),
        [
            (httpx.ConnectError("connection refused"), StatusCode.UNAVAILABLE),
            (httpx.ReadTimeout("read timed out"), StatusCode.DEADLINE_EXCEEDED),
        ],
    )
    def test_httpx_failures(self, exc: Exception, code: StatusCode) -> None:
        """httpx connection failures and timeouts map to their statuses."""
        fake = _FakeClient(exc)
        with OperationsClient(credentials=HttpTransport(client=fake)) as client:  # type: ignore[arg-type]
            with pytest.raises(TransportError) as exc_info:
                client.cancel_operation(name="operations/1")
        assert exc_info.value.status_code == code
        assert exc_info.value.__cause__ is exc

    def test_owned_client_closed(self) -> None:
        """A client built from base_url is closed with the transport."""
        client = OperationsClient(endpoint="http://localhost:1")
        transport = client.transport
        assert isinstance(transport, HttpTransport)
        client.close()
        assert transport._client.is_closed  # type: ignore[union-attr]

    def test_supplied_client_not_closed(self) -> None:
        """A caller-supplied httpx client stays open."""
        http = httpx.Client(base_url="http://localhost:1")
        try:
            with OperationsClient(endpoint=None, http_client=http):
                pass
            assert not http.is_closed
        finally:
            http.close()


class TestRealHttpx:
    """The client over a real httpx.Client routed into the WSGI app."""

    def test_lifecycle(self, store: InMemoryOperations) -> None:
        """list, get, cancel and delete through httpx."""
        app = make_wsgi_app(OperationsServer(store, server_id="wsgi"))
        http = httpx.Client(transport=httpx.WSGITransport(app=app), base_url="http://testserver")
        first = store.create()
        second = store.create()
        with OperationsClient(http_client=http, endpoint="http://testserver") as client:
            assert [op.name for op in client.list_operations(page_size=1)] == [first.name, second.name]
            handle = client.get_operation({"name": first.name}, {"timeout": 5.0})
            assert handle.call_handle is not None
            assert handle.call_handle.server_id == "wsgi"
            client.cancel_operation(name=first.name)
            assert client.get_operation(name=first.name).done
            client.delete_operation(name=second.name)
            with pytest.raises(TransportError) as exc_info:
                client.get_operation(name=second.name)
            assert exc_info.value.status_code == StatusCode.NOT_FOUND
        http.close()
