# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Falcon WSGI front end for an ``OperationsServer``.

``make_wsgi_app`` routes ``POST {prefix}/{method}`` to the server.  The body
is decoded exactly as the pipe server decodes a request; HTTP-only checks
(content type, URL vs. metadata method name, authentication) fail with an
Arrow error stream too, so the client never has to parse anything else.
"""

from __future__ import annotations

import hmac
import logging
from collections.abc import Callable, Iterable
from io import BytesIO, IOBase
from typing import Any

import falcon
import pyarrow as pa

from lro_rpc.messages import StatusCode
from lro_rpc.rpc._common import RpcError, _current_request_id, _generate_request_id
from lro_rpc.rpc._methods import OPERATIONS_METHODS
from lro_rpc.rpc._server import OperationsServer, _status_for_protocol_error
from lro_rpc.rpc._wire import _IncomingRequest, _read_request, _write_error_stream, _write_response

from ._common import _ARROW_CONTENT_TYPE, _REQUEST_ID_HEADER, DEFAULT_PREFIX, _RpcHttpError, http_status_for

_logger = logging.getLogger("lro_rpc.http")

type Authenticator = Callable[[falcon.Request], str]
"""Returns the caller's principal or raises ``ValueError`` / ``PermissionError``."""


def _respond(resp: falcon.Response, status_code: StatusCode, write: Callable[[IOBase], None]) -> None:
    """Fill *resp* with the IPC stream produced by *write*."""
    body = BytesIO()
    write(body)
    resp.content_type = _ARROW_CONTENT_TYPE
    resp.data = body.getvalue()
    resp.status = str(http_status_for(status_code).value)


def _respond_error(
    resp: falcon.Response,
    req: falcon.Request,
    status_code: StatusCode,
    message: str,
    error_type: str,
    server_id: str,
    schema: pa.Schema | None = None,
) -> None:
    kwargs: dict[str, Any] = {"server_id": server_id, "request_id": getattr(req.context, "request_id", "")}
    if schema is not None:
        kwargs["schema"] = schema
    _respond(resp, status_code, lambda out: _write_error_stream(out, status_code, message, error_type, **kwargs))


# ---------------------------------------------------------------------------
# Resource
# ---------------------------------------------------------------------------


class _OperationsResource:
    """``POST {prefix}/{method}``: one operations call per request."""

    __slots__ = ("_server",)

    def __init__(self, server: OperationsServer) -> None:
        self._server = server

    def _decode(self, req: falcon.Request, method: str) -> _IncomingRequest:
        """Validate the HTTP envelope and decode the request stream.

        Raises:
            _RpcHttpError: Wrong content type, unknown method, undecodable
                body, or a URL method that disagrees with the metadata.

        """
        if (req.content_type or "") != _ARROW_CONTENT_TYPE:
            raise _RpcHttpError(
                StatusCode.INVALID_ARGUMENT,
                f"Content-Type must be '{_ARROW_CONTENT_TYPE}', got {req.content_type!r}",
                "ContentTypeError",
            )
        if method not in OPERATIONS_METHODS:
            raise _RpcHttpError(
                StatusCode.UNIMPLEMENTED,
                f"Unknown method: '{method}'. Available methods: {sorted(OPERATIONS_METHODS)}",
                "UnknownMethod",
            )
        try:
            incoming = _read_request(req.bounded_stream)
        except RpcError as exc:
            raise _RpcHttpError(_status_for_protocol_error(exc), exc.error_message, exc.error_type) from exc
        except (pa.ArrowInvalid, StopIteration, EOFError) as exc:
            raise _RpcHttpError(
                StatusCode.INVALID_ARGUMENT, f"Request body is not a valid Arrow IPC stream: {exc}", "ProtocolError"
            ) from exc
        if incoming.info.name != method:
            raise _RpcHttpError(
                StatusCode.INVALID_ARGUMENT,
                f"Method mismatch: URL names method '{method}' but the request metadata names '{incoming.info.name}'",
                "ProtocolError",
            )
        return incoming

    def on_post(self, req: falcon.Request, resp: falcon.Response, method: str) -> None:
        """Run one call, answering with a response or error stream."""
        server_id = self._server.server_id
        try:
            incoming = self._decode(req, method)
        except _RpcHttpError as e:
            _logger.warning(
                "Rejected HTTP request for %s: %s",
                method,
                e.message,
                extra={"method": method, "error_type": e.error_type, "server_id": server_id},
            )
            _respond_error(resp, req, e.status_code, e.message, e.error_type, server_id)
            return

        outcome = self._server.call(incoming)
        if outcome.response is None:
            _respond_error(
                resp,
                req,
                outcome.status_code,
                outcome.message,
                outcome.error_type,
                server_id,
                schema=incoming.info.response_schema,
            )
            return
        response = outcome.response
        trailing = self._server.trailing_for(incoming)
        _respond(
            resp,
            StatusCode.OK,
            lambda out: _write_response(
                out, response, request_id=incoming.request_id, server_id=server_id, trailing=trailing
            ),
        )


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------


class _RequestIdMiddleware:
    """Gives every request a correlation ID.

    The ID comes from ``X-Request-ID`` or is generated; it is kept on
    ``req.context.request_id``, published through ``_current_request_id``
    for the access log, and echoed in the response header.
    """

    def process_request(self, req: falcon.Request, resp: falcon.Response) -> None:
        req.context.request_id = req.get_header(_REQUEST_ID_HEADER) or _generate_request_id()
        req.context.request_id_token = _current_request_id.set(req.context.request_id)

    def process_response(
        self,
        req: falcon.Request,
        resp: falcon.Response,
        resource: object,
        req_succeeded: bool,
    ) -> None:
        request_id = getattr(req.context, "request_id", None)
        if request_id is not None:
            resp.set_header(_REQUEST_ID_HEADER, request_id)
        token = getattr(req.context, "request_id_token", None)
        if token is not None:
            _current_request_id.reset(token)


class _AuthMiddleware:
    """Authenticates each request before routing.

    ``ValueError`` and ``PermissionError`` from the callback answer with an
    ``UNAUTHENTICATED`` error stream (HTTP 401); anything else propagates
    and becomes a 500.  The principal lands on ``req.context.principal``.
    """

    __slots__ = ("_authenticate", "_server_id")

    def __init__(self, authenticate: Authenticator, server_id: str) -> None:
        self._authenticate = authenticate
        self._server_id = server_id

    def process_request(self, req: falcon.Request, resp: falcon.Response) -> None:
        try:
            req.context.principal = self._authenticate(req)
        except (ValueError, PermissionError) as exc:
            _logger.warning(
                "Auth failure from %s: %s",
                req.remote_addr,
                exc,
                extra={"remote_addr": req.remote_addr or "", "error_type": type(exc).__name__},
            )
            _respond_error(resp, req, StatusCode.UNAUTHENTICATED, str(exc), "AuthenticationError", self._server_id)
            resp.complete = True


def bearer_authenticator(tokens: Iterable[str]) -> Authenticator:
    """Accept ``Authorization: Bearer <token>`` for any of *tokens*.

    The principal is ``"token-<index>"``, so the secret never reaches logs.

    Raises:
        ValueError: If *tokens* is empty.

    """
    accepted = [t.encode() for t in tokens]
    if not accepted:
        raise ValueError("bearer_authenticator requires at least one token")

    def authenticate(req: falcon.Request) -> str:
        scheme, _, token = (req.get_header("Authorization") or "").partition(" ")
        if scheme.lower() != "bearer" or not token:
            raise ValueError("Missing bearer token")
        presented = token.encode()
        for i, candidate in enumerate(accepted):
            if hmac.compare_digest(presented, candidate):
                return f"token-{i}"
        raise ValueError("Invalid bearer token")

    return authenticate


def make_wsgi_app(
    server: OperationsServer,
    *,
    prefix: str = DEFAULT_PREFIX,
    authenticate: Authenticator | None = None,
) -> falcon.App[falcon.Request, falcon.Response]:
    """Serve *server* as a Falcon WSGI application.

    Args:
        server: Server to route calls to.
        prefix: URL prefix of the method routes.
        authenticate: Callback returning the caller's principal; when
            given, requests it rejects get HTTP 401 and never reach the
            servicer.

    Returns:
        The Falcon app.

    """
    prefix = prefix.rstrip("/")
    middleware: list[Any] = [_RequestIdMiddleware()]
    if authenticate is not None:
        middleware.append(_AuthMiddleware(authenticate, server.server_id))
    app: falcon.App[falcon.Request, falcon.Response] = falcon.App(middleware=middleware)
    app.add_route(f"{prefix}/{{method}}", _OperationsResource(server))

    _logger.info(
        "WSGI app created (server_id=%s, prefix=%s, auth=%s)",
        server.server_id,
        prefix,
        "enabled" if authenticate is not None else "disabled",
        extra={"server_id": server.server_id, "prefix": prefix, "auth_enabled": authenticate is not None},
    )
    return app
