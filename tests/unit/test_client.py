"""
Unit tests for the Kv facade over httpx.MockTransport.
"""

import asyncio
import json

import httpx
import pytest

from kv_client import Kv, KvSettings, ServerNow, TransactionResult, get_settings
from kv_client.errors import InvalidKeyError, KvStateError, ValidationError


def make_kv(cfg, handler):
    return Kv(cfg, transport=httpx.MockTransport(handler))


def test_base_url_required():
    with pytest.raises(ValueError, match="base_url"):
        Kv({})


def test_defaults_merged(mock_config):
    kv = Kv({"base_url": mock_config["base_url"]})
    assert kv.cfg["timeout"] == 30.0
    assert kv.cfg["stream_reconnect_delay"] == 3000
    assert kv.cfg["poll_reconnect_delay"] == 5000
    assert kv.cfg["poll_interval"] == 1000


@pytest.mark.asyncio
async def test_api_key_sent_as_bearer(mock_config):
    seen = {}

    def handler(request):
        seen["auth"] = request.headers.get("authorization")
        seen["custom"] = request.headers.get("x-trace")
        return httpx.Response(200, json={"count": 0})

    cfg = {**mock_config, "api_key": "secret", "headers": {"X-Trace": "t1"}}
    async with make_kv(cfg, handler) as kv:
        assert await kv.count() == 0
    assert seen == {"auth": "Bearer secret", "custom": "t1"}


@pytest.mark.asyncio
async def test_set_and_enqueue_accept_duration_strings(mock_config):
    seen = []

    def handler(request):
        seen.append((request.url.params.get("expiresIn"), request.content))
        if request.url.path.endswith("/enqueue"):
            return httpx.Response(200, json={"ok": True, "id": "m1"})
        return httpx.Response(200, json={"ok": True, "versionstamp": "v1"})

    async with make_kv(mock_config, handler) as kv:
        await kv.set(["k"], "v", expires_in="1m")
        msg_id = await kv.enqueue({"a": 1}, delay="10s", backoff_schedule=["1s", 2000])

    assert seen[0][0] == "60000"
    assert json.loads(seen[1][1])["options"] == {"delay": 10000, "backoffSchedule": [1000, 2000]}
    assert msg_id == "m1"


@pytest.mark.asyncio
async def test_bad_duration_is_validation_error(mock_config):
    async with make_kv(mock_config, lambda r: httpx.Response(500)) as kv:
        with pytest.raises(ValidationError):
            await kv.set(["k"], 1, expires_in="forever")


@pytest.mark.asyncio
async def test_list_is_async_iterator(mock_config):
    def handler(request):
        assert request.url.params["limit"] == "2"
        assert request.url.params["reverse"] == "true"
        return httpx.Response(
            200,
            json=[
                {"key": ["u", 2], "value": "b", "versionstamp": "v2"},
                {"key": ["u", 1], "value": "a", "versionstamp": "v1"},
            ],
        )

    async with make_kv(mock_config, handler) as kv:
        values = [e.value async for e in kv.list(["u"], limit=2, reverse=True)]
    assert values == ["b", "a"]


@pytest.mark.asyncio
async def test_transaction_over_http_retries_on_conflict(mock_config):
    commits = []

    def handler(request):
        if request.url.path.endswith("/atomic"):
            commits.append(json.loads(request.content))
            return httpx.Response(200, json={"ok": len(commits) > 1, "versionstamp": "v2"})
        return httpx.Response(200, json={"key": ["k"], "value": 5, "versionstamp": "v1"})

    async def double(tx):
        e = await tx.get(["k"])
        tx.set(["k"], e.value * 2)
        return e.value * 2

    async with make_kv(mock_config, handler) as kv:
        res = await kv.transaction(double, max_retries=1, retry_delay=0)

    assert isinstance(res, TransactionResult)
    assert res.value == 10
    assert res.versionstamp == "v2"
    assert len(commits) == 2
    assert commits[0]["checks"] == [{"key": ["k"], "versionstamp": "v1"}]
    assert commits[0]["mutations"] == [{"type": "set", "key": ["k"], "value": 10}]


@pytest.mark.asyncio
async def test_atomic_builder_from_client(mock_config):
    def handler(request):
        body = json.loads(request.content)
        assert body["mutations"][0]["value"] == {"__type": "bigint", "value": "1"}
        return httpx.Response(200, json={"ok": True, "versionstamp": "v1"})

    async with make_kv(mock_config, handler) as kv:
        res = await kv.atomic().sum(["visits"], 1).commit()
    assert res.ok


@pytest.mark.asyncio
async def test_close_stops_handles_and_rejects_new_ones(mock_config):
    polls = []

    def handler(request):
        if request.url.path.endswith("/queue/poll"):
            return httpx.Response(200, json={"message": None})
        polls.append(request.url.params.get("versionstamps"))
        return httpx.Response(200, json={"entries": [], "versionstamps": ["v1"]})

    kv = make_kv(mock_config, handler)
    watch = kv.watch(["a"], lambda entries: None, mode="polling")
    listener = kv.listen_queue(lambda value: None, mode="polling")
    assert len(kv.handles) == 2

    await asyncio.sleep(0.05)
    await kv.close()

    assert watch.closed and listener.closed
    assert len(kv.handles) == 0
    assert kv.closed
    assert polls[0] is None
    assert "v1" in polls[1:]
    with pytest.raises(KvStateError):
        kv.watch(["a"], print)
    await kv.close()  # idempotent


@pytest.mark.asyncio
async def test_stopped_handle_leaves_registry(mock_config):
    kv = make_kv(mock_config, lambda r: httpx.Response(200, json={"message": None}))
    handle = kv.listen_queue(print, mode="polling")
    with handle:
        assert len(kv.handles) == 1
    assert handle.closed
    assert len(kv.handles) == 0
    await kv.close()


@pytest.mark.asyncio
async def test_manual_ack_helpers(mock_config):
    paths = []

    def handler(request):
        paths.append(request.url.path.rsplit("/", 1)[-1])
        return httpx.Response(200, json={"ok": True})

    async with make_kv(mock_config, handler) as kv:
        await kv.ack_message("m1")
        await kv.nack_message("m2")
    assert paths == ["ack", "nack"]


def test_now_is_server_placeholder(mock_config):
    assert Kv(mock_config).now() == ServerNow()


def test_from_settings(monkeypatch, base_url):
    monkeypatch.setenv("KV_BASE_URL", base_url)
    monkeypatch.setenv("KV_API_KEY", "k1")
    monkeypatch.setenv("KV_POLL_INTERVAL_MS", "250")
    get_settings.cache_clear()
    try:
        kv = Kv.from_settings()
    finally:
        get_settings.cache_clear()
    assert kv.cfg["base_url"] == base_url
    assert kv.cfg["api_key"] == "k1"
    assert kv.cfg["poll_interval"] == 250


def test_settings_to_config(base_url):
    cfg = KvSettings(BASE_URL=base_url).to_config(headers={"X-A": "1"})
    assert cfg["base_url"] == base_url
    assert "api_key" not in cfg
    assert cfg["headers"] == {"X-A": "1"}


@pytest.mark.asyncio
async def test_malformed_stream_frame_reopens_watch(mock_config, recorder):
    opens = []

    def handler(request):
        opens.append(request.url.path)
        if len(opens) == 1:
            bad = [{"key": ["a"], "value": {"__type": "bytes", "value": 5}, "versionstamp": "v1"}]
            frames = [("change", json.dumps(bad))]
        else:
            good = [{"key": ["b"], "value": 1, "versionstamp": "v2"}]
            frames = [("change", json.dumps(good))]
        body = "".join(f"event: {ev}\ndata: {data}\n\n" for ev, data in frames)
        return httpx.Response(200, content=body.encode(), headers={"content-type": "text/event-stream"})

    kv = make_kv(mock_config, handler)
    watch = kv.watch([["a"], ["b"]], recorder.record, exact=True)
    await recorder.wait_for(1)
    await watch.aclose()
    await kv.close()

    assert len(opens) >= 2
    assert all(path.endswith("/watch") for path in opens)
    assert [e.key for e in recorder.calls[0]] == [("b",)]


@pytest.mark.asyncio
async def test_commit_versionstamp_in_mutation_key(mock_config):
    bodies = []

    def handler(request):
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"ok": True, "versionstamp": "v7"})

    async with make_kv(mock_config, handler) as kv:
        vs = kv.commit_versionstamp()
        res = await kv.atomic().set(["posts"], "p1").set(["posts_by_time", vs], "p1").commit()
        with pytest.raises(InvalidKeyError):
            await kv.get(["posts_by_time", vs])

    assert res.ok
    assert bodies[0]["mutations"][1]["key"] == ["posts_by_time", {"__type": "commitVersionstamp"}]


@pytest.mark.asyncio
async def test_reads_accept_consistency(mock_config):
    params = []

    def handler(request):
        params.append(request.url.params.get("consistency"))
        return httpx.Response(200, json=[{"key": ["u", 1], "value": 1, "versionstamp": "v"}])

    async with make_kv(mock_config, handler) as kv:
        entries = [e async for e in kv.list(["u"], consistency="eventual")]
        with pytest.raises(ValidationError):
            await kv.get(["u", 1], consistency="weak")

    assert params == ["eventual"]
    assert entries[0].key == ("u", 1)
