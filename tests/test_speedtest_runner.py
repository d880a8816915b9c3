from __future__ import annotations

import asyncio
import json
import os
import signal

import pytest

from speedlive.services.speedtest_runner import (
    SpeedtestError,
    create_default_config,
    ensure_executable,
    open_speedtest,
    resolve_speedtest_binary,
    run_speedtest_json,
    speedtest_args,
    speedtest_version,
)

RESULT_DOC = {
    "type": "result",
    "ping": {"latency": 3.1},
    "download": {"bandwidth": 12500000},
    "upload": {"bandwidth": 6250000},
}


@pytest.mark.unit
def test_speedtest_args_are_fixed():
    assert speedtest_args("71582", "jsonl") == [
        "--accept-license",
        "--accept-gdpr",
        "-s",
        "71582",
        "-f",
        "jsonl",
    ]


@pytest.mark.unit
def test_create_default_config_uses_overrides():
    cfg = create_default_config("/opt/speedtest", 42, "json")
    assert cfg == {
        "binary": "/opt/speedtest",
        "server_id": "42",
        "output_format": "json",
        "env": {},
    }


@pytest.mark.unit
def test_resolve_binary(tmp_path, fake_speedtest):
    fake = fake_speedtest()
    assert resolve_speedtest_binary(fake.binary) == str(fake.path.resolve())
    assert resolve_speedtest_binary(str(tmp_path / "missing")) is None
    assert resolve_speedtest_binary("") is None

    not_exec = tmp_path / "plain"
    not_exec.write_text("")
    not_exec.chmod(0o644)
    assert resolve_speedtest_binary(str(not_exec)) is None


@pytest.mark.unit
def test_resolve_binary_on_path(monkeypatch, fake_speedtest):
    fake = fake_speedtest()
    monkeypatch.setenv("PATH", str(fake.path.parent))
    assert resolve_speedtest_binary("speedtest") == str(fake.path)


@pytest.mark.unit
def test_ensure_executable_sets_exec_bits(tmp_path):
    binary = tmp_path / "speedtest"
    binary.write_text("")
    binary.chmod(0o644)

    ensure_executable(binary)

    assert os.access(binary, os.X_OK)


@pytest.mark.unit
async def test_open_speedtest_reaps_on_error(fake_speedtest):
    fake = fake_speedtest(['{"type":"download"}'], hang=30)
    chunks: list[bytes] = []
    cfg = create_default_config(fake.binary, "1")

    with pytest.raises(RuntimeError, match="boom"):
        async with open_speedtest(cfg, chunks.append) as handle:
            await asyncio.sleep(0.3)
            raise RuntimeError("boom")

    assert handle["proc"].returncode == -signal.SIGKILL
    assert handle["stdout_task"].done()
    assert handle["stderr_task"].done()


@pytest.mark.unit
async def test_open_speedtest_waits_for_natural_exit(fake_speedtest):
    fake = fake_speedtest(['{"type":"result"}'], exit_code=0)
    chunks: list[bytes] = []
    cfg = create_default_config(fake.binary, "1")

    async with open_speedtest(cfg, chunks.append, grace=lambda: 5.0) as handle:
        await handle["stdout_task"]

    assert handle["proc"].returncode == 0
    assert b"".join(chunks) == b'{"type":"result"}\n'


@pytest.mark.unit
async def test_stderr_lines_are_forwarded_verbatim(fake_speedtest):
    fake = fake_speedtest(['{"type":"result"}'], stderr="license warning", exit_code=0)
    lines: list[str] = []
    cfg = create_default_config(fake.binary, "1")

    async with open_speedtest(
        cfg, lambda _: None, on_stderr=lines.append, grace=lambda: 5.0
    ) as handle:
        await handle["stderr_task"]

    assert lines == ["license warning"]
    assert set(handle) == {"proc", "stdout_task", "stderr_task"}


@pytest.mark.unit
async def test_open_speedtest_missing_binary(tmp_path):
    cfg = create_default_config(str(tmp_path / "speedtest"), "1")
    with pytest.raises(FileNotFoundError):
        async with open_speedtest(cfg, lambda chunk: None):
            pass


@pytest.mark.unit
async def test_run_speedtest_json(fake_speedtest):
    fake = fake_speedtest([json.dumps(RESULT_DOC)])
    result = await run_speedtest_json(create_default_config(fake.binary, "7", "json"))

    assert result == RESULT_DOC
    assert fake.recorded_args()[-2:] == ["-f", "json"]


@pytest.mark.unit
async def test_run_speedtest_json_failure_carries_stderr(fake_speedtest):
    fake = fake_speedtest([], exit_code=2, stderr="Limit reached")
    with pytest.raises(SpeedtestError) as exc:
        await run_speedtest_json(create_default_config(fake.binary, "7", "json"))

    assert "code 2" in str(exc.value)
    assert "Limit reached" in exc.value.stderr


@pytest.mark.unit
async def test_run_speedtest_json_parse_error(fake_speedtest):
    fake = fake_speedtest(["definitely not json"])
    with pytest.raises(json.JSONDecodeError):
        await run_speedtest_json(create_default_config(fake.binary, "7", "json"))


@pytest.mark.unit
async def test_speedtest_version(fake_speedtest):
    fake = fake_speedtest(["Speedtest by Ookla 1.2.0"])
    out = await speedtest_version(fake.binary)
    assert out.startswith("Speedtest by Ookla")
    assert fake.recorded_args() == ["--version"]
