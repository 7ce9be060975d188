"""
Unit tests for the kv-client CLI (typer) with a mocked HTTP transport.
"""

import json

import httpx
import pytest
from typer.testing import CliRunner

from kv_client import cli
from kv_client.client import Kv

runner = CliRunner()


@pytest.fixture()
def http(monkeypatch):
    """Route every CLI client through a MockTransport; returns the request log."""
    log = []
    replies = {}

    def handler(request):
        log.append(request)
        for suffix, reply in replies.items():
            if request.url.path.endswith(suffix):
                return reply(request) if callable(reply) else httpx.Response(200, json=reply)
        return httpx.Response(404, json={"error": "not found"})

    monkeypatch.setattr(cli, "Kv", lambda cfg: Kv(cfg, transport=httpx.MockTransport(handler)))
    monkeypatch.setenv("KV_BASE_URL", "http://kv.test/api/keyval")
    return log, replies


def lines(output):
    return [json.loads(line) for line in output.splitlines() if line.strip()]


def test_get_parses_key_path(http):
    log, replies = http
    replies["/keys/users/42"] = {"key": ["users", 42], "value": {"name": "Ada"}, "versionstamp": "v1"}

    result = runner.invoke(cli.app, ["get", "users/42"])

    assert result.exit_code == 0, result.output
    assert lines(result.output) == [
        {"key": ["users", 42], "value": {"name": "Ada"}, "versionstamp": "v1"}
    ]


def test_get_missing_key(http):
    result = runner.invoke(cli.app, ["get", "nope"])
    assert result.exit_code == 0, result.output
    assert lines(result.output)[0]["versionstamp"] is None


def test_set_with_json_value_and_ttl(http):
    log, replies = http
    replies["/keys/cfg/mode"] = {"ok": True, "versionstamp": "v2"}

    result = runner.invoke(cli.app, ["set", "cfg/mode", '{"fast": true}', "--expires-in", "30s"])

    assert result.exit_code == 0, result.output
    req = log[0]
    assert req.method == "PUT"
    assert req.url.params["expiresIn"] == "30000"
    assert json.loads(req.content) == {"fast": True}
    assert lines(result.output) == [{"ok": True, "versionstamp": "v2"}]


def test_list_prints_ndjson(http):
    log, replies = http
    replies["/keys"] = [
        {"key": ["u", 1], "value": 1, "versionstamp": "v1"},
        {"key": ["u", 2], "value": 2, "versionstamp": "v2"},
    ]

    result = runner.invoke(cli.app, ["list", "--prefix", "u", "--limit", "5"])

    assert result.exit_code == 0, result.output
    assert [row["value"] for row in lines(result.output)] == [1, 2]
    assert log[0].url.params["prefix"] == "u"


def test_enqueue_and_stats(http):
    log, replies = http
    replies["/queue/enqueue"] = {"ok": True, "id": "m1"}
    replies["/queue/stats"] = {"pending": 1, "processing": 0, "dlq": 2, "total": 3}

    r1 = runner.invoke(cli.app, ["enqueue", '{"job": 7}', "--delay", "5s"])
    r2 = runner.invoke(cli.app, ["stats"])

    assert lines(r1.output) == [{"id": "m1"}]
    assert json.loads(log[0].content)["options"] == {"delay": 5000}
    assert lines(r2.output) == [{"pending": 1, "processing": 0, "dlq": 2, "total": 3}]


def test_dlq_requeue_and_purge(http):
    log, replies = http
    replies["/requeue"] = {"ok": True, "id": "m9"}
    replies["/queue/dlq"] = {"ok": True, "deletedCount": 3}

    r1 = runner.invoke(cli.app, ["dlq-requeue", "d1"])
    r2 = runner.invoke(cli.app, ["dlq-purge"])

    assert lines(r1.output) == [{"id": "m9"}]
    assert lines(r2.output) == [{"deleted": 3}]
    assert [req.method for req in log] == ["POST", "DELETE"]


def test_base_url_is_required(monkeypatch):
    monkeypatch.delenv("KV_BASE_URL", raising=False)
    result = runner.invoke(cli.app, ["count"])
    assert result.exit_code != 0
