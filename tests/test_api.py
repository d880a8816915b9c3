from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from speedlive import api
from speedlive.services.relay import BINARY_MISSING_MESSAGE
from tests.utils.records import DOWNLOAD_100, RESULT_EMPTY, UPLOAD_50

if TYPE_CHECKING:
    from pytest import MonkeyPatch


def _client(monkeypatch: MonkeyPatch, binary: str) -> TestClient:
    monkeypatch.setattr(
        api,
        "settings",
        api.RelaySettings(
            speedtest_bin=binary, server_id="71582", heartbeat_interval=0, stop_grace=0.5
        ),
    )
    app = FastAPI()
    app.include_router(api.router)
    return TestClient(app)


def _sse_payloads(body: str) -> list[dict]:
    payloads = []
    for frame in body.split("\n\n"):
        if frame.startswith("data: "):
            payloads.append(json.loads(frame[len("data: ") :]))
    return payloads


@pytest.mark.unit
def test_health(monkeypatch, tmp_path):
    client = _client(monkeypatch, str(tmp_path / "speedtest"))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json() == {"ok": True}


@pytest.mark.unit
def test_live_streams_events(monkeypatch, fake_speedtest):
    fake = fake_speedtest([DOWNLOAD_100, UPLOAD_50, RESULT_EMPTY])
    client = _client(monkeypatch, fake.binary)

    response = client.get("/live")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/event-stream")
    assert response.headers["cache-control"] == "no-cache"
    assert response.headers["x-accel-buffering"] == "no"

    events = _sse_payloads(response.text)
    assert [e["type"] for e in events] == ["start", "progress", "final"]
    assert events[0]["serverId"] == "71582"
    assert events[0]["sessionId"]
    assert events[1] == {"type": "progress", "phase": "download", "mbps": 100.0, "t": events[1]["t"]}
    assert events[2]["downMbps"] == 100.0
    assert events[2]["upMbps"] == 50.0
    assert events[2]["json"] == json.loads(RESULT_EMPTY)
    assert all(isinstance(e.get("t"), int) for e in events)


@pytest.mark.unit
def test_live_without_binary(monkeypatch, tmp_path):
    client = _client(monkeypatch, str(tmp_path / "speedtest"))
    response = client.get("/live")

    assert _sse_payloads(response.text) == [
        {"type": "error", "message": BINARY_MISSING_MESSAGE}
    ]


@pytest.mark.unit
@pytest.mark.parametrize("path", ["/api/speedtest", "/speedtest", "/legacy/speedtest"])
def test_oneshot_returns_tool_json(monkeypatch, fake_speedtest, path):
    doc = {"type": "result", "download": {"bandwidth": 1}, "upload": {"bandwidth": 2}}
    fake = fake_speedtest([json.dumps(doc)])
    client = _client(monkeypatch, fake.binary)

    response = client.get(path)

    assert response.status_code == 200
    assert response.json() == doc
    assert fake.recorded_args() == [
        "--accept-license",
        "--accept-gdpr",
        "-s",
        "71582",
        "-f",
        "json",
    ]


@pytest.mark.unit
def test_legacy_allows_any_origin(monkeypatch, fake_speedtest):
    fake = fake_speedtest(['{"type":"result"}'])
    client = _client(monkeypatch, fake.binary)

    response = client.get("/legacy/speedtest")

    assert response.headers["access-control-allow-origin"] == "*"


@pytest.mark.unit
def test_oneshot_missing_binary(monkeypatch, tmp_path):
    client = _client(monkeypatch, str(tmp_path / "speedtest"))
    response = client.get("/api/speedtest")

    assert response.status_code == 500
    assert response.json() == {"error": api.ONESHOT_MISSING_MESSAGE}


@pytest.mark.unit
def test_oneshot_failure(monkeypatch, fake_speedtest):
    fake = fake_speedtest([], exit_code=1, stderr="Configuration - Could not retrieve")
    client = _client(monkeypatch, fake.binary)

    response = client.get("/speedtest")

    assert response.status_code == 500
    body = response.json()
    assert "code 1" in body["error"]
    assert "Could not retrieve" in body["stderr"]


@pytest.mark.unit
def test_oneshot_parse_error(monkeypatch, fake_speedtest):
    fake = fake_speedtest(["garbage output"])
    client = _client(monkeypatch, fake.binary)

    response = client.get("/api/speedtest")

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "Parse error"
    assert body["sample"].startswith("garbage output")
    assert body["parseError"]


@pytest.mark.unit
def test_debug_check_binary(monkeypatch, fake_speedtest, tmp_path):
    fake = fake_speedtest()
    client = _client(monkeypatch, fake.binary)
    assert client.get("/debug/check-binary").json() == {
        "ok": True,
        "path": str(fake.path.resolve()),
    }

    client = _client(monkeypatch, str(tmp_path / "missing"))
    assert client.get("/debug/check-binary").json() == {"ok": False, "path": None}


@pytest.mark.unit
def test_debug_speedtest_version(monkeypatch, fake_speedtest, tmp_path):
    fake = fake_speedtest(["Speedtest by Ookla 1.2.0"])
    client = _client(monkeypatch, fake.binary)
    body = client.get("/debug/speedtest-version").json()
    assert body["ok"] is True
    assert "1.2.0" in body["out"]

    client = _client(monkeypatch, str(tmp_path / "missing"))
    assert client.get("/debug/speedtest-version").json() == {
        "ok": False,
        "error": "binary not present",
    }
