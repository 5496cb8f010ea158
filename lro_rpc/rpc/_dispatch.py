# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Call dispatcher: one canonical request in, one transport invocation out."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from lro_rpc.messages import StatusCode
from lro_rpc.rpc._common import RpcError, TransportError, _logger
from lro_rpc.rpc._debug import fmt_handle, fmt_options, wire_transport_logger
from lro_rpc.rpc._methods import MethodInfo, method_info
from lro_rpc.rpc._options import CallOptions

if TYPE_CHECKING:
    from lro_rpc.rpc._transport import CallHandle, Transport
    from lro_rpc.utils import ArrowSerializableDataclass

type OnComplete = Callable[[ArrowSerializableDataclass, CallHandle], object]


class CallDispatcher:
    """Issues exactly one ``transport.invoke`` per call.

    The dispatcher never retries; retry policy in ``CallOptions.retry`` is
    carried to the transport, which owns it.  Any failure that is not
    already an ``RpcError`` is wrapped as ``TransportError`` with status
    ``UNKNOWN``.  A response of the wrong message type is reported as
    ``TransportError`` with status ``INTERNAL``.
    """

    __slots__ = ("_transport",)

    def __init__(self, transport: Transport) -> None:
        """Initialize with the transport used for every call."""
        self._transport = transport

    @property
    def transport(self) -> Transport:
        """The underlying transport."""
        return self._transport

    def dispatch_with_handle(
        self,
        method: str | MethodInfo,
        request: ArrowSerializableDataclass,
        options: CallOptions | None = None,
    ) -> tuple[ArrowSerializableDataclass, CallHandle]:
        """Invoke the transport once and return ``(response, call_handle)``.

        Raises:
            TransportError: If the transport failed or returned a response of the wrong type.

        """
        info = method if isinstance(method, MethodInfo) else method_info(method)
        resolved = options if options is not None else CallOptions()
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug(
                "Dispatch: method=%s, request=%s, options=%s",
                info.name,
                type(request).__name__,
                fmt_options(resolved),
            )
        try:
            response, handle = self._transport.invoke(info, request, resolved)
        except RpcError:
            raise
        except Exception as exc:
            _logger.debug("Transport raised a non-RPC error for %s", info.name, exc_info=True)
            raise TransportError(info.name, StatusCode.UNKNOWN, f"{type(exc).__name__}: {exc}") from exc
        if not isinstance(response, info.response_type):
            raise TransportError(
                info.name,
                StatusCode.INTERNAL,
                f"Transport returned {type(response).__name__}, expected {info.response_type.__name__}",
                request_id=handle.request_id,
                call_handle=handle,
            )
        if wire_transport_logger.isEnabledFor(logging.DEBUG):
            wire_transport_logger.debug("Dispatch done: method=%s, %s", info.name, fmt_handle(handle))
        return response, handle

    def dispatch(
        self,
        method: str | MethodInfo,
        request: ArrowSerializableDataclass,
        options: CallOptions | None = None,
        on_complete: OnComplete | None = None,
    ) -> ArrowSerializableDataclass:
        """Invoke the transport once and return the decoded response.

        When *on_complete* is given it is called exactly once with
        ``(response, call_handle)`` after a successful call, including
        empty acknowledgements.  It is not called when the call fails.

        Raises:
            TransportError: If the transport failed.

        """
        response, handle = self.dispatch_with_handle(method, request, options)
        if on_complete is not None:
            on_complete(response, handle)
        return response
