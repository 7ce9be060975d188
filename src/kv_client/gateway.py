"""
HTTP gateway to the remote KeyVal store.

One method per logical operation of the REST protocol. This layer owns
transport concerns only: URL building, wire encoding, server-sent-event
framing, and mapping httpx failures into ``kv_client.errors``. It holds no
state beyond the shared ``httpx.AsyncClient``.
"""

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from time import monotonic
from typing import Any, AsyncIterator, Dict, Iterable, List, Literal, Optional, Sequence, Tuple

import httpx
from loguru import logger

from .encoding import decode_value, encode_value
from .errors import ProtocolError, ValidationError, map_http_error
from .keys import KeyPart, key_to_path, keys_to_param, validate_key
from .metrics import KV_REQUEST_LATENCY_MS
from .models import (
    Check,
    CommitError,
    CommitOutcome,
    CommitResult,
    DeleteResult,
    DlqMessage,
    Entry,
    Metrics,
    Mutation,
    PaginateResult,
    QueueMessage,
    QueueStats,
)

KeyLike = Sequence[KeyPart]

Consistency = Literal["strong", "eventual"]

SSE_CHANGE = "change"
SSE_MESSAGE = "message"

_NO_BODY = object()


class KvGateway:
    """Thin async HTTP client for the KeyVal REST API."""

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = timeout
        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()
        logger.debug(f"KeyVal gateway closed ({self.base_url})")

    # ---------- plumbing ----------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
        body: Any = _NO_BODY,
        allow_404: bool = False,
    ) -> Any:
        kwargs: Dict[str, Any] = {}
        if params:
            kwargs["params"] = {k: v for k, v in params.items() if v is not None}
        if body is not _NO_BODY:
            kwargs["content"] = json.dumps(encode_value(body))
            kwargs["headers"] = {"Content-Type": "application/json"}

        t0 = monotonic()
        try:
            response = await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as e:
            raise map_http_error(e) from e
        finally:
            KV_REQUEST_LATENCY_MS.labels(operation).observe((monotonic() - t0) * 1000.0)

        if allow_404 and response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise map_http_error(response)
        return _decode_json(response.text, operation)

    @asynccontextmanager
    async def _stream(
        self, path: str, params: Dict[str, Any], operation: str
    ) -> AsyncIterator[httpx.Response]:
        params = {k: v for k, v in params.items() if v is not None}
        timeout = httpx.Timeout(self._timeout, read=None)
        try:
            async with self._client.stream(
                "GET",
                path,
                params=params,
                headers={"Accept": "text/event-stream"},
                timeout=timeout,
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise map_http_error(response)
                logger.debug(f"Stream opened: {operation} {path}")
                yield response
        except httpx.HTTPError as e:
            raise map_http_error(e) from e

    # ---------- keys ----------

    async def get(self, key: KeyLike, *, consistency: Optional[Consistency] = None) -> Entry:
        key = validate_key(key)
        data = await self._request(
            "GET",
            f"/keys/{key_to_path(key)}",
            operation="get",
            params={"consistency": _consistency(consistency)},
            allow_404=True,
        )
        if data is None:
            return Entry(key=key, value=None, versionstamp=None)
        return _entry(data)

    async def get_many(
        self, keys: Iterable[KeyLike], *, consistency: Optional[Consistency] = None
    ) -> List[Entry]:
        keys = [validate_key(k) for k in keys]
        consistency = _consistency(consistency)
        if not keys:
            return []
        body: Dict[str, Any] = {"keys": [list(k) for k in keys]}
        if consistency:
            body["consistency"] = consistency
        data = await self._request("POST", "/keys/batch", operation="get_many", body=body)
        entries = [_entry(d) for d in _as_list(data, "get_many")]
        if len(entries) != len(keys):
            raise ProtocolError(
                f"get_many returned {len(entries)} entries for {len(keys)} keys"
            )
        return entries

    async def set(self, key: KeyLike, value: Any, expires_in: Optional[int] = None) -> CommitResult:
        data = await self._request(
            "PUT",
            f"/keys/{key_to_path(key)}",
            operation="set",
            params={"expiresIn": expires_in},
            body=value,
        )
        return CommitResult.model_validate(data)

    async def delete(
        self, key: KeyLike, *, exact: bool = False, where: Optional[Dict[str, Any]] = None
    ) -> DeleteResult:
        body: Any = _NO_BODY
        if exact or where:
            body = {"exact": exact}
            if where:
                body["where"] = where
        data = await self._request(
            "DELETE", f"/keys/{key_to_path(key)}", operation="delete", body=body
        )
        return DeleteResult.model_validate(data or {})

    async def delete_many(
        self,
        keys: Iterable[KeyLike],
        *,
        exact: bool = False,
        where: Optional[Dict[str, Any]] = None,
    ) -> DeleteResult:
        body: Dict[str, Any] = {"keys": [list(validate_key(k)) for k in keys]}
        if exact:
            body["exact"] = True
        if where:
            body["where"] = where
        data = await self._request("POST", "/keys/delete-batch", operation="delete", body=body)
        return DeleteResult.model_validate(data or {})

    async def list(
        self,
        prefix: KeyLike = (),
        *,
        start: Optional[KeyLike] = None,
        end: Optional[KeyLike] = None,
        limit: Optional[int] = None,
        reverse: bool = False,
        where: Optional[Dict[str, Any]] = None,
        consistency: Optional[Consistency] = None,
    ) -> List[Entry]:
        prefix = validate_key(prefix)
        consistency = _consistency(consistency)
        if where:
            body: Dict[str, Any] = {"prefix": list(prefix), "where": where}
            if start is not None:
                body["start"] = list(validate_key(start))
            if end is not None:
                body["end"] = list(validate_key(end))
            if limit is not None:
                body["limit"] = limit
            if reverse:
                body["reverse"] = True
            if consistency:
                body["consistency"] = consistency
            data = await self._request("POST", "/keys/list", operation="list", body=body)
        else:
            params = {
                "prefix": key_to_path(prefix) if prefix else None,
                "start": key_to_path(start) if start is not None else None,
                "end": key_to_path(end) if end is not None else None,
                "limit": limit,
                "reverse": "true" if reverse else None,
                "consistency": consistency,
            }
            data = await self._request("GET", "/keys", operation="list", params=params)
        return [_entry(d) for d in _as_list(data, "list")]

    async def count(self, prefix: KeyLike = ()) -> int:
        prefix = validate_key(prefix)
        data = await self._request(
            "GET",
            "/keys/count",
            operation="count",
            params={"prefix": key_to_path(prefix) if prefix else None},
        )
        try:
            return int(data["count"])
        except (KeyError, TypeError, ValueError) as e:
            raise ProtocolError(f"count: unexpected payload {data!r}") from e

    async def paginate(
        self,
        prefix: KeyLike = (),
        *,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
        reverse: bool = False,
    ) -> PaginateResult:
        prefix = validate_key(prefix)
        data = await self._request(
            "GET",
            "/keys/paginate",
            operation="paginate",
            params={
                "prefix": key_to_path(prefix) if prefix else None,
                "cursor": cursor,
                "limit": limit,
                "reverse": "true" if reverse else None,
            },
        )
        return PaginateResult.model_validate(data)

    # ---------- atomic ----------

    async def commit(self, checks: Sequence[Check], mutations: Sequence[Mutation]) -> CommitOutcome:
        body = {
            "checks": [c.to_wire() for c in checks],
            "mutations": [m.to_wire() for m in mutations],
        }
        data = await self._request("POST", "/atomic", operation="commit", body=body)
        if not isinstance(data, dict) or "ok" not in data:
            raise ProtocolError(f"commit: unexpected payload {data!r}")
        if data["ok"]:
            return CommitResult.model_validate(data)
        return CommitError()

    # ---------- watch ----------

    async def watch_poll(
        self,
        targets: Sequence[KeyLike],
        *,
        exact: bool,
        cursor: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> Tuple[List[Entry], Optional[str]]:
        """Ask what changed under ``targets`` since ``cursor``; returns (entries, new cursor)."""
        if exact:
            path = "/watch/poll"
            params = {"keys": keys_to_param(targets), "versionstamps": cursor or None}
        else:
            path = "/watch/prefix/poll"
            params = {
                "prefix": keys_to_param(targets),
                "versionstamps": cursor or None,
                "limit": limit,
            }
        data = await self._request("GET", path, operation="watch_poll", params=params)
        if not isinstance(data, dict):
            raise ProtocolError(f"watch_poll: unexpected payload {data!r}")
        entries = [_entry(d) for d in _as_list(data.get("entries", []), "watch_poll")]
        return entries, _cursor(data.get("versionstamps"))

    async def watch_stream(
        self,
        targets: Sequence[KeyLike],
        *,
        exact: bool,
        emit_initial: bool = True,
        limit: Optional[int] = None,
    ) -> AsyncIterator[List[Entry]]:
        """Persistent stream of change batches; ends when the server closes it."""
        if exact:
            path = "/watch"
            params: Dict[str, Any] = {"keys": keys_to_param(targets)}
        else:
            path = "/watch/prefix"
            params = {"prefix": keys_to_param(targets), "limit": limit}
        params["initial"] = "true" if emit_initial else "false"

        async with self._stream(path, params, "watch_stream") as response:
            async for event, data in iter_sse(response.aiter_lines()):
                if event != SSE_CHANGE or not data:
                    continue
                payload = _decode_json(data, "watch_stream")
                yield [_entry(d) for d in _as_list(payload, "watch_stream")]

    # ---------- queue ----------

    async def enqueue(
        self,
        value: Any,
        *,
        delay: Optional[int] = None,
        backoff_schedule: Optional[Sequence[int]] = None,
        keys_if_undelivered: Optional[Sequence[KeyLike]] = None,
    ) -> str:
        options: Dict[str, Any] = {}
        if delay is not None:
            options["delay"] = delay
        if backoff_schedule is not None:
            options["backoffSchedule"] = list(backoff_schedule)
        if keys_if_undelivered:
            options["keysIfUndelivered"] = [list(validate_key(k)) for k in keys_if_undelivered]
        body: Dict[str, Any] = {"value": value}
        if options:
            body["options"] = options
        data = await self._request("POST", "/queue/enqueue", operation="enqueue", body=body)
        try:
            return str(data["id"])
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"enqueue: unexpected payload {data!r}") from e

    async def queue_poll(self) -> Optional[QueueMessage]:
        data = await self._request("GET", "/queue/poll", operation="queue_poll")
        if not isinstance(data, dict):
            raise ProtocolError(f"queue_poll: unexpected payload {data!r}")
        msg = data.get("message")
        return _model(QueueMessage, msg, "queue_poll") if msg else None

    async def queue_listen(self) -> AsyncIterator[QueueMessage]:
        """Persistent stream of queue messages; ends when the server closes it."""
        async with self._stream("/queue/listen", {}, "queue_listen") as response:
            async for event, data in iter_sse(response.aiter_lines()):
                if event != SSE_MESSAGE or not data:
                    continue
                yield _model(QueueMessage, _decode_json(data, "queue_listen"), "queue_listen")

    async def ack(self, message_id: str) -> None:
        await self._request("POST", "/queue/ack", operation="queue_ack", body={"id": message_id})

    async def nack(self, message_id: str) -> None:
        await self._request("POST", "/queue/nack", operation="queue_nack", body={"id": message_id})

    async def queue_stats(self) -> QueueStats:
        data = await self._request("GET", "/queue/stats", operation="queue_stats")
        return QueueStats.model_validate(data)

    # ---------- dead letter queue ----------

    async def dlq_list(self, *, limit: int = 100, offset: int = 0) -> List[DlqMessage]:
        data = await self._request(
            "GET", "/queue/dlq", operation="dlq_list", params={"limit": limit, "offset": offset}
        )
        return [DlqMessage.model_validate(d) for d in _as_list(data, "dlq_list")]

    async def dlq_get(self, message_id: str) -> Optional[DlqMessage]:
        data = await self._request(
            "GET", f"/queue/dlq/{message_id}", operation="dlq_get", allow_404=True
        )
        return DlqMessage.model_validate(data) if data else None

    async def dlq_requeue(self, message_id: str) -> str:
        data = await self._request(
            "POST", f"/queue/dlq/{message_id}/requeue", operation="dlq_requeue"
        )
        try:
            return str(data["id"])
        except (KeyError, TypeError) as e:
            raise ProtocolError(f"dlq_requeue: unexpected payload {data!r}") from e

    async def dlq_delete(self, message_id: str) -> None:
        await self._request("DELETE", f"/queue/dlq/{message_id}", operation="dlq_delete")

    async def dlq_purge(self) -> int:
        data = await self._request("DELETE", "/queue/dlq", operation="dlq_purge")
        if isinstance(data, dict):
            return int(data.get("deletedCount", 0))
        return 0

    # ---------- metrics ----------

    async def metrics(self) -> Metrics:
        data = await self._request("GET", "/metrics", operation="metrics")
        return Metrics.model_validate(data)

    async def metrics_prometheus(self) -> str:
        try:
            response = await self._client.get("/metrics/prometheus")
        except httpx.HTTPError as e:
            raise map_http_error(e) from e
        if response.status_code >= 400:
            raise map_http_error(response)
        return response.text


# ---------- helpers ----------


async def iter_sse(lines: AsyncIterator[str]) -> AsyncIterator[Tuple[str, str]]:
    """Group server-sent-event lines into (event, data) pairs.

    Multi-line data is joined with newlines; comment lines (":") are ignored;
    the event name defaults to "message".
    """
    event = ""
    data: List[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if line == "":
            if data or event:
                yield event or "message", "\n".join(data)
            event, data = "", []
            continue
        if line.startswith(":"):
            continue
        field, _, value = line.partition(":")
        if value.startswith(" "):
            value = value[1:]
        if field == "event":
            event = value
        elif field == "data":
            data.append(value)
    if data:
        yield event or "message", "\n".join(data)


def _decode_json(text: str, operation: str) -> Any:
    if not text:
        return None
    try:
        return decode_value(json.loads(text))
    except ValueError as e:
        raise ProtocolError(f"{operation}: malformed JSON ({e})") from e


def _as_list(data: Any, operation: str) -> list:
    if not isinstance(data, list):
        raise ProtocolError(f"{operation}: expected a list, got {type(data).__name__}")
    return data


def _entry(data: Any) -> Entry:
    return _model(Entry, data, "entry")


def _model(cls, data: Any, operation: str):
    try:
        return cls.model_validate(data)
    except ValueError as e:
        raise ProtocolError(f"{operation}: malformed payload ({e})") from e


def _consistency(value: Optional[str]) -> Optional[str]:
    if value is None or value in ("strong", "eventual"):
        return value
    raise ValidationError(f"consistency must be 'strong' or 'eventual', got {value!r}")


def _cursor(raw: Any) -> Optional[str]:
    if raw is None:
        return None
    if isinstance(raw, list):
        return ",".join("" if v is None else str(v) for v in raw)
    return str(raw)
