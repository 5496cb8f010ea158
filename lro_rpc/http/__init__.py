# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""HTTP transport for lro-rpc using Falcon (server) and httpx (client).

Provides ``make_wsgi_app`` to expose an ``OperationsServer`` as a Falcon WSGI
application, and ``HttpTransport`` to call it from Python with ``httpx``.

HTTP Wire Protocol
------------------
Every call is ``POST {prefix}/{method}`` (default prefix ``/lro``) with
``Content-Type: application/vnd.apache.arrow.stream``.  The body is the
request IPC stream; the response body is the response IPC stream.  The HTTP
status mirrors the RPC status (400, 401, 403, 404, 501, 503, otherwise 500
for errors).  ``X-Request-ID`` is echoed back.
"""

from lro_rpc.http._client import HttpTransport, TokenSource
from lro_rpc.http._common import (
    _ARROW_CONTENT_TYPE,
    DEFAULT_PREFIX,
    _RpcHttpError,
    http_status_for,
    status_code_for_http,
)
from lro_rpc.http._retry import HttpTransientError
from lro_rpc.http._server import Authenticator, bearer_authenticator, make_wsgi_app
from lro_rpc.http._testing import (
    _SyncTestClient,
    _SyncTestResponse,
    make_sync_client,
)

__all__ = [
    "Authenticator",
    "DEFAULT_PREFIX",
    "HttpTransientError",
    "HttpTransport",
    "TokenSource",
    "_ARROW_CONTENT_TYPE",
    "_RpcHttpError",
    "_SyncTestClient",
    "_SyncTestResponse",
    "bearer_authenticator",
    "http_status_for",
    "make_sync_client",
    "make_wsgi_app",
    "status_code_for_http",
]
