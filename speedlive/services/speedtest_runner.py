from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import shutil
import stat
from pathlib import Path
from typing import Any, AsyncIterator, Callable, TypedDict

from speedlive.constants import SERVER_ID, SPEEDTEST_BIN

STDOUT_CHUNK_SIZE = 4096
STDERR_LOG_LIMIT = 1000


class SpeedtestRunConfig(TypedDict):
    """Configuration for running the Ookla speedtest CLI."""

    binary: str  # executable name on PATH or a path to it
    server_id: str  # value passed to `-s`
    output_format: str  # "jsonl" for live progress, "json" for a single result
    env: dict[str, str]  # extra environment variables; optional


class SpeedtestProcessHandle(TypedDict):
    """Handle for a running speedtest process."""

    proc: asyncio.subprocess.Process
    stdout_task: asyncio.Task
    stderr_task: asyncio.Task


class SpeedtestError(RuntimeError):
    """The speedtest CLI ran but did not exit cleanly."""

    def __init__(self, message: str, stderr: str = "") -> None:
        super().__init__(message)
        self.stderr = stderr


def speedtest_args(server_id: str, output_format: str) -> list[str]:
    return [
        "--accept-license",
        "--accept-gdpr",
        "-s",
        str(server_id),
        "-f",
        output_format,
    ]


def ensure_executable(path: str | Path) -> None:
    """Add execute bits to a bundled binary; failures are logged, not raised."""
    p = Path(path)
    if os.name == "nt" or not p.is_file() or os.access(p, os.X_OK):
        return
    try:
        p.chmod(p.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        logging.info("Marked %s executable", p)
    except OSError as e:
        logging.warning("Could not set executable permissions on %s: %s", p, e)


def resolve_speedtest_binary(candidate: str) -> str | None:
    """Return an absolute path to an executable speedtest binary, or None."""
    if not candidate:
        return None
    if os.sep in candidate or (os.altsep and os.altsep in candidate):
        p = Path(candidate)
        if p.is_file() and os.access(p, os.X_OK):
            return str(p.resolve())
        return None
    return shutil.which(candidate)


async def _stream_chunks(
    stream: asyncio.StreamReader,
    callback: Callable[[bytes], None],
    chunk_size: int = STDOUT_CHUNK_SIZE,
) -> None:
    """Forward raw chunks from stream to callback until EOF; read errors propagate."""
    while True:
        chunk = await stream.read(chunk_size)
        if not chunk:
            break
        callback(chunk)


async def _stream_lines(
    stream: asyncio.StreamReader, callback: Callable[[str], None]
) -> None:
    """Read lines from stream and forward each non-empty one to callback."""
    try:
        while True:
            line_bytes = await stream.readline()
            if not line_bytes:
                break
            line = line_bytes.decode("utf-8", errors="ignore").rstrip()
            if line:
                callback(line)
    except Exception as e:
        logging.error("Stream reader error: %s", e)


def log_stderr(line: str) -> None:
    logging.warning("speedtest stderr: %s", line[:STDERR_LOG_LIMIT])


def _process_env(cfg: SpeedtestRunConfig) -> dict[str, str]:
    return {**os.environ, **cfg.get("env", {})}


async def start_speedtest(
    cfg: SpeedtestRunConfig,
    on_stdout: Callable[[bytes], None],
    on_stderr: Callable[[str], None] = log_stderr,
) -> SpeedtestProcessHandle:
    """
    Start the speedtest CLI as a subprocess and stream its output to callbacks.

    Args:
        cfg: Configuration for the run
        on_stdout: Callback for raw stdout chunks
        on_stderr: Callback for stderr lines (diagnostics only)

    Returns:
        Handle for managing the process

    Raises:
        FileNotFoundError: If the binary cannot be resolved to an executable
        OSError: If process creation fails
    """
    binary = resolve_speedtest_binary(cfg["binary"])
    if binary is None:
        raise FileNotFoundError(f"speedtest binary not found: {cfg['binary']}")

    proc = await asyncio.create_subprocess_exec(
        binary,
        *speedtest_args(cfg["server_id"], cfg["output_format"]),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_process_env(cfg),
    )

    # Start streaming tasks
    if proc.stdout:
        stdout_task = asyncio.create_task(_stream_chunks(proc.stdout, on_stdout))
    else:
        stdout_task = asyncio.create_task(asyncio.sleep(0))  # no-op task

    if proc.stderr:
        stderr_task = asyncio.create_task(_stream_lines(proc.stderr, on_stderr))
    else:
        stderr_task = asyncio.create_task(asyncio.sleep(0))  # no-op task

    handle: SpeedtestProcessHandle = {
        "proc": proc,
        "stdout_task": stdout_task,
        "stderr_task": stderr_task,
    }

    logging.info("Spawned speedtest pid=%s (server %s)", proc.pid, cfg["server_id"])
    return handle


async def stop_speedtest(handle: SpeedtestProcessHandle, timeout: float = 0.0) -> None:
    """
    Stop a speedtest process and reap it.

    Args:
        handle: Process handle from start_speedtest
        timeout: Seconds to wait for a natural exit before SIGKILL; 0 kills at once
    """
    proc = handle["proc"]

    try:
        if proc.returncode is None and timeout > 0:
            try:
                await asyncio.wait_for(proc.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                logging.warning(
                    "speedtest pid=%s still running after %.1fs", proc.pid, timeout
                )
    finally:
        # Kill synchronously so a cancelled caller never leaves the child behind
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
                logging.info("speedtest pid=%s force-killed", proc.pid)
        for task in (handle["stdout_task"], handle["stderr_task"]):
            if not task.done():
                task.cancel()

    code = await proc.wait()
    logging.info("speedtest pid=%s closed, code=%s", proc.pid, code)

    results = await asyncio.gather(
        handle["stdout_task"], handle["stderr_task"], return_exceptions=True
    )
    for result in results:
        if isinstance(result, Exception):
            logging.debug("speedtest stream task ended with: %s", result)


@contextlib.asynccontextmanager
async def open_speedtest(
    cfg: SpeedtestRunConfig,
    on_stdout: Callable[[bytes], None],
    on_stderr: Callable[[str], None] = log_stderr,
    grace: Callable[[], float] = lambda: 0.0,
) -> AsyncIterator[SpeedtestProcessHandle]:
    """
    Scoped speedtest process: started on entry, stopped and reaped on every exit.

    ``grace`` is evaluated at exit time and gives the seconds the process may
    take to finish on its own before it is killed.
    """
    handle = await start_speedtest(cfg, on_stdout, on_stderr)
    try:
        yield handle
    finally:
        await stop_speedtest(handle, timeout=grace())


async def run_speedtest_json(cfg: SpeedtestRunConfig) -> Any:
    """
    Run one speedtest to completion and return its parsed JSON result.

    Raises:
        FileNotFoundError: If the binary cannot be resolved
        OSError: If process creation fails
        SpeedtestError: If the CLI exits with a non-zero code
        json.JSONDecodeError: If stdout is not valid JSON
    """
    binary = resolve_speedtest_binary(cfg["binary"])
    if binary is None:
        raise FileNotFoundError(f"speedtest binary not found: {cfg['binary']}")

    proc = await asyncio.create_subprocess_exec(
        binary,
        *speedtest_args(cfg["server_id"], cfg["output_format"]),
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        env=_process_env(cfg),
    )
    logging.info("Spawned one-shot speedtest pid=%s", proc.pid)
    try:
        stdout, stderr = await proc.communicate()
    finally:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    err_text = stderr.decode("utf-8", errors="replace")
    if proc.returncode != 0:
        raise SpeedtestError(
            f"speedtest exited with code {proc.returncode}", stderr=err_text
        )
    return json.loads(stdout.decode("utf-8", errors="replace"))


async def speedtest_version(binary: str, timeout: float = 5.0) -> str:
    """Return the output of `speedtest --version`."""
    resolved = resolve_speedtest_binary(binary)
    if resolved is None:
        raise FileNotFoundError(f"speedtest binary not found: {binary}")
    proc = await asyncio.create_subprocess_exec(
        resolved,
        "--version",
        stdin=asyncio.subprocess.DEVNULL,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    finally:
        if proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()
            await proc.wait()
    if proc.returncode != 0:
        raise SpeedtestError(
            f"speedtest --version exited with code {proc.returncode}",
            stderr=stderr.decode("utf-8", errors="replace"),
        )
    return stdout.decode("utf-8", errors="replace")


def create_default_config(
    binary: str | None = None,
    server_id: str | None = None,
    output_format: str = "jsonl",
) -> SpeedtestRunConfig:
    """Create a default speedtest configuration."""
    return {
        "binary": binary or SPEEDTEST_BIN,
        "server_id": str(server_id or SERVER_ID),
        "output_format": output_format,
        "env": {},
    }
