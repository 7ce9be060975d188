from __future__ import annotations

import asyncio
import json
from typing import Any, Awaitable, Callable, Optional

import typer

from .client import Kv
from .encoding import encode_value
from .keys import parse_key_path

app = typer.Typer(help="kv_client operational CLI")

# ---------------------------
# Common options
# ---------------------------


def base_url_opt() -> str:
    return typer.Option(..., "--base-url", envvar="KV_BASE_URL", help="KeyVal API base URL")


def api_key_opt() -> Optional[str]:
    return typer.Option(None, "--api-key", envvar="KV_API_KEY", help="Bearer token")


def _run(base_url: str, api_key: Optional[str], fn: Callable[[Kv], Awaitable[Any]]) -> Any:
    async def main():
        cfg = {"base_url": base_url}
        if api_key:
            cfg["api_key"] = api_key
        async with Kv(cfg) as kv:
            return await fn(kv)

    return asyncio.run(main())


def _echo(obj: Any) -> None:
    if hasattr(obj, "model_dump"):
        obj = obj.model_dump(by_alias=True)
    typer.echo(json.dumps(encode_value(obj), default=str))


def _parse_value(raw: str) -> Any:
    try:
        return json.loads(raw)
    except ValueError:
        return raw


# ---------------------------
# Keys
# ---------------------------


@app.command("get")
def get(
    key: str = typer.Argument(..., help="Key path, e.g. users/42"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    entry = _run(base_url, api_key, lambda kv: kv.get(parse_key_path(key)))
    _echo(entry)


@app.command("set")
def set_(
    key: str = typer.Argument(..., help="Key path"),
    value: str = typer.Argument(..., help="JSON value (bare strings accepted)"),
    expires_in: Optional[str] = typer.Option(None, "--expires-in", help="TTL, e.g. 30s, 5m"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    res = _run(
        base_url,
        api_key,
        lambda kv: kv.set(parse_key_path(key), _parse_value(value), expires_in=expires_in),
    )
    _echo(res)


@app.command("delete")
def delete(
    key: str = typer.Argument(..., help="Key path (prefix unless --exact)"),
    exact: bool = typer.Option(False, "--exact", help="Delete only this key"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    res = _run(base_url, api_key, lambda kv: kv.delete(parse_key_path(key), exact=exact))
    _echo(res)


@app.command("list")
def list_(
    prefix: str = typer.Option("", "--prefix", help="Key path prefix"),
    limit: int = typer.Option(100, "--limit"),
    reverse: bool = typer.Option(False, "--reverse"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    async def collect(kv: Kv):
        return [e async for e in kv.list(parse_key_path(prefix), limit=limit, reverse=reverse)]

    for entry in _run(base_url, api_key, collect):
        _echo(entry)


@app.command("count")
def count(
    prefix: str = typer.Option("", "--prefix", help="Key path prefix"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    n = _run(base_url, api_key, lambda kv: kv.count(parse_key_path(prefix)))
    _echo({"count": n})


@app.command("watch")
def watch(
    keys: str = typer.Argument(..., help="Comma-separated key paths"),
    exact: bool = typer.Option(False, "--exact", help="Watch exact keys instead of prefixes"),
    polling: bool = typer.Option(False, "--polling", help="Poll instead of streaming"),
    initial: bool = typer.Option(True, "--initial/--no-initial", help="Emit current values first"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    """Print change batches as NDJSON until interrupted."""
    targets = [parse_key_path(k) for k in keys.split(",") if k.strip()]

    def on_change(entries):
        for e in entries:
            _echo(e)

    async def forever(kv: Kv):
        kv.watch(
            targets,
            on_change,
            exact=exact,
            emit_initial=initial,
            mode="polling" if polling else "sse",
        )
        await asyncio.Event().wait()

    try:
        _run(base_url, api_key, forever)
    except KeyboardInterrupt:
        pass


# ---------------------------
# Queue
# ---------------------------


@app.command("enqueue")
def enqueue(
    value: str = typer.Argument(..., help="JSON message body"),
    delay: Optional[str] = typer.Option(None, "--delay", help="Delivery delay, e.g. 10s"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    msg_id = _run(base_url, api_key, lambda kv: kv.enqueue(_parse_value(value), delay=delay))
    _echo({"id": msg_id})


@app.command("stats")
def stats(base_url: str = base_url_opt(), api_key: Optional[str] = api_key_opt()):
    _echo(_run(base_url, api_key, lambda kv: kv.queue_stats()))


@app.command("dlq-list")
def dlq_list(
    limit: int = typer.Option(100, "--limit"),
    offset: int = typer.Option(0, "--offset"),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    for msg in _run(base_url, api_key, lambda kv: kv.dlq.list(limit=limit, offset=offset)):
        _echo(msg)


@app.command("dlq-requeue")
def dlq_requeue(
    message_id: str = typer.Argument(...),
    base_url: str = base_url_opt(),
    api_key: Optional[str] = api_key_opt(),
):
    new_id = _run(base_url, api_key, lambda kv: kv.dlq.requeue(message_id))
    _echo({"id": new_id})


@app.command("dlq-purge")
def dlq_purge(base_url: str = base_url_opt(), api_key: Optional[str] = api_key_opt()):
    _echo({"deleted": _run(base_url, api_key, lambda kv: kv.dlq.purge())})


if __name__ == "__main__":
    app()
