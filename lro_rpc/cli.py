# © Copyright 2025-2026, Query.Farm LLC - https://query.farm
# SPDX-License-Identifier: Apache-2.0

"""Command-line interface for the operations service.

Talks to an lro-rpc HTTP server and prints results as JSON (or a table).
RPC failures are written to stderr as ``{"error": {...}}`` and exit 1.

Usage::

    lro-rpc --url http://localhost:8000 list operations --filter done=false
    lro-rpc --url http://localhost:8000 get operations/1
    lro-rpc --url http://localhost:8000 cancel operations/1
    lro-rpc --url http://localhost:8000 wait operations/1 --interval 2 --wait-timeout 60

"""

from __future__ import annotations

import base64
import json
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Annotated

import typer

from lro_rpc.http import DEFAULT_PREFIX
from lro_rpc.messages import Operation
from lro_rpc.operations import ClientConfig, OperationsClient
from lro_rpc.rpc import CallOptions, RpcError, TransportError

if TYPE_CHECKING:
    import httpx

    from lro_rpc.http import _SyncTestClient


class OutputFormat(StrEnum):
    """How results are printed: ``auto`` pretty-prints JSON on a terminal."""

    auto = "auto"
    json = "json"
    table = "table"


@dataclass
class _CliConfig:
    """Options resolved by the global callback and shared by every command.

    ``http_client`` may be preset through ``CliRunner.invoke(obj=...)`` to
    point the CLI at an in-process server.
    """

    url: str | None = None
    token: str | None = None
    prefix: str = DEFAULT_PREFIX
    timeout: float | None = None
    format: OutputFormat = OutputFormat.auto
    verbose: bool = False
    http_client: httpx.Client | _SyncTestClient | None = None


app = typer.Typer(
    name="lro-rpc",
    help="CLI client for the lro-rpc operations service.",
    add_completion=False,
    no_args_is_help=True,
)

_NameArg = Annotated[str, typer.Argument(help="Operation name")]


@app.callback()
def _main(
    ctx: typer.Context,
    url: Annotated[str | None, typer.Option("--url", "-u", help="HTTP base URL", envvar="LRO_RPC_URL")] = None,
    token: Annotated[
        str | None, typer.Option("--token", "-t", help="Bearer token", envvar="LRO_RPC_TOKEN", show_default=False)
    ] = None,
    prefix: Annotated[str, typer.Option("--prefix", "-p", help="URL path prefix")] = DEFAULT_PREFIX,
    timeout: Annotated[float | None, typer.Option("--timeout", help="Per-call timeout in seconds")] = None,
    fmt: Annotated[OutputFormat, typer.Option("--format", "-f", help="Output format")] = OutputFormat.auto,
    verbose: Annotated[bool, typer.Option("--verbose", "-v", help="Log wire activity to stderr")] = False,
) -> None:
    """Configure the connection and output options."""
    if timeout is not None and timeout <= 0:
        raise typer.BadParameter("--timeout must be > 0")
    preset = ctx.obj.http_client if isinstance(ctx.obj, _CliConfig) else None
    ctx.obj = _CliConfig(url, token, prefix, timeout, fmt, verbose, preset)
    if verbose:
        logging.basicConfig(stream=sys.stderr, format="%(levelname)s %(name)s: %(message)s")
        logging.getLogger("lro_rpc").setLevel(logging.DEBUG)


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def _b64(value: bytes | None) -> str | None:
    return None if value is None else base64.b64encode(value).decode()


def _operation_to_dict(op: Operation) -> dict[str, object]:
    """JSON view of an operation; payload bytes are base64-encoded."""
    error = op.error
    return {
        "name": op.name,
        "done": op.done,
        "metadata": _b64(op.metadata),
        "error": None
        if error is None
        else {
            "code": error.code,
            "status": error.status_code.name,
            "message": error.message,
            "details": list(error.details),
        },
        "response": _b64(op.response),
    }


def _table_row(op: Operation) -> dict[str, object]:
    if op.error is not None:
        return {"name": op.name, "done": op.done, "status": op.error.status_code.name, "message": op.error.message}
    return {"name": op.name, "done": op.done, "status": "OK" if op.done else "", "message": ""}


def _format_table(rows: list[dict[str, object]]) -> str:
    """Left-aligned columns under a dashed rule, keyed by the first row."""
    if not rows:
        return "(empty)"
    columns = list(rows[0])
    cells = [["" if row.get(col) is None else str(row.get(col)) for col in columns] for row in rows]
    widths = [max(len(col), *(len(line[i]) for line in cells)) for i, col in enumerate(columns)]

    def line(values: list[str]) -> str:
        return "  ".join(v.ljust(w) for v, w in zip(values, widths, strict=True))

    return "\n".join([line(columns), line(["-" * w for w in widths]), *(line(c) for c in cells)])


def _emit(data: object, config: _CliConfig) -> None:
    """Write *data* as JSON to stdout, indented on a terminal in ``auto`` mode."""
    indent = 2 if config.format == OutputFormat.auto and sys.stdout.isatty() else None
    typer.echo(json.dumps(data, indent=indent, default=str))


def _emit_operations(ops: list[Operation], config: _CliConfig, *, single: bool = False) -> None:
    if config.format == OutputFormat.table:
        typer.echo(_format_table([_table_row(op) for op in ops]))
    elif single:
        _emit(_operation_to_dict(ops[0]), config)
    else:
        _emit([_operation_to_dict(op) for op in ops], config)


def _emit_rpc_error(e: RpcError) -> None:
    """Write *e* to stderr as ``{"error": {...}}``."""
    err: dict[str, object] = {"type": e.error_type, "message": e.error_message, "method": e.method}
    if isinstance(e, TransportError):
        err["status"] = e.status_code.name
    if e.request_id:
        err["request_id"] = e.request_id
    typer.echo(json.dumps({"error": err}, default=str), err=True)


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


@contextmanager
def _client(ctx: typer.Context) -> Iterator[OperationsClient]:
    """Open an HTTP ``OperationsClient``; an ``RpcError`` inside is reported and exits 1."""
    config: _CliConfig = ctx.obj
    if not config.url and config.http_client is None:
        raise typer.BadParameter("--url (or LRO_RPC_URL) is required")
    client = OperationsClient(
        ClientConfig(
            credentials=config.token,
            endpoint=config.url,
            prefix=config.prefix,
            default_options=CallOptions(timeout=config.timeout),
            http_client=config.http_client,
        )
    )
    try:
        with client:
            yield client
    except RpcError as e:
        _emit_rpc_error(e)
        raise typer.Exit(1) from None


# ---------------------------------------------------------------------------
# Commands
# ---------------------------------------------------------------------------


@app.command("list")
def list_(
    ctx: typer.Context,
    name: Annotated[str, typer.Argument(help="Collection name prefix, e.g. 'operations'")] = "",
    filter_: Annotated[str, typer.Option("--filter", help="Filter, e.g. 'done=true'")] = "",
    page_size: Annotated[int, typer.Option("--page-size", help="Operations per page (0 = server default)")] = 0,
    first_page: Annotated[bool, typer.Option("--first-page", help="Only print the first page")] = False,
) -> None:
    """List operations, following page tokens until the last page."""
    with _client(ctx) as client:
        pager = client.list_operations(name=name, filter=filter_, page_size=page_size)
        ops = list(pager.first_page.operations) if first_page else list(pager)
    _emit_operations(ops, ctx.obj)


@app.command()
def get(ctx: typer.Context, name: _NameArg) -> None:
    """Print the latest state of an operation."""
    with _client(ctx) as client:
        op = client.get_operation(name=name).operation
    _emit_operations([op], ctx.obj, single=True)


@app.command()
def delete(ctx: typer.Context, name: _NameArg) -> None:
    """Delete an operation record."""
    with _client(ctx) as client:
        client.delete_operation(name=name)
    _emit({"deleted": name}, ctx.obj)


@app.command()
def cancel(ctx: typer.Context, name: _NameArg) -> None:
    """Request cancellation of an operation."""
    with _client(ctx) as client:
        client.cancel_operation(name=name)
    _emit({"cancelled": name}, ctx.obj)


@app.command()
def wait(
    ctx: typer.Context,
    name: _NameArg,
    interval: Annotated[float, typer.Option("--interval", help="Seconds between polls")] = 1.0,
    wait_timeout: Annotated[
        float | None, typer.Option("--wait-timeout", help="Give up after this many seconds")
    ] = None,
) -> None:
    """Poll an operation until it is done; exit 1 if it finished with an error."""
    if interval <= 0:
        raise typer.BadParameter("--interval must be > 0")
    with _client(ctx) as client:
        handle = client.get_operation(name=name).wait(timeout=wait_timeout, poll_interval=interval)
    _emit_operations([handle.operation], ctx.obj, single=True)
    if handle.error is not None:
        raise typer.Exit(1)
