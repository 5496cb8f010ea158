# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""In-process HTTP client for tests.

``make_sync_client`` wraps an ``OperationsServer`` in the WSGI app and
drives it through ``falcon.testing.TestClient``; the result can be handed
to ``HttpTransport(client=...)`` in place of an ``httpx.Client`` without
opening a socket.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from urllib.parse import urlparse

import falcon
import falcon.testing

from lro_rpc.rpc._server import OperationsServer

from ._common import DEFAULT_PREFIX
from ._server import Authenticator, make_wsgi_app


@dataclass(frozen=True, slots=True)
class _SyncTestResponse:
    """The parts of ``httpx.Response`` that ``HttpTransport`` reads."""

    status_code: int
    content: bytes
    headers: Mapping[str, str] = field(default_factory=dict)


class _SyncTestClient:
    """``post``/``close`` over a Falcon app, recording each request's path and headers.

    Attributes:
        requests: ``(path, headers)`` of every POST, oldest first.

    """

    __slots__ = ("_client", "_default_headers", "requests")

    def __init__(
        self,
        app: falcon.App[falcon.Request, falcon.Response],
        default_headers: Mapping[str, str] | None = None,
    ) -> None:
        self._client = falcon.testing.TestClient(app)
        self._default_headers = dict(default_headers or {})
        self.requests: list[tuple[str, dict[str, str]]] = []

    def post(
        self,
        url: str,
        *,
        content: bytes,
        headers: Mapping[str, str],
        timeout: float | None = None,
    ) -> _SyncTestResponse:
        """Simulate a POST; only the path of *url* is used and *timeout* has no effect."""
        sent = self._default_headers | dict(headers)
        path = urlparse(url).path
        self.requests.append((path, sent))
        result = self._client.simulate_post(path, body=content, headers=sent)
        return _SyncTestResponse(result.status_code, result.content, dict(result.headers))

    def close(self) -> None:
        """Nothing to release."""


def make_sync_client(
    server: OperationsServer,
    *,
    prefix: str = DEFAULT_PREFIX,
    authenticate: Authenticator | None = None,
    default_headers: Mapping[str, str] | None = None,
) -> _SyncTestClient:
    """Serve *server* in-process for ``HttpTransport(client=...)``.

    Args:
        server: Server whose servicer answers the calls.
        prefix: URL prefix of the method routes.
        authenticate: Passed to ``make_wsgi_app``.
        default_headers: Sent with every request; per-call headers win.

    """
    return _SyncTestClient(make_wsgi_app(server, prefix=prefix, authenticate=authenticate), default_headers)
