from __future__ import annotations

import asyncio
import contextlib
import json
import logging
from dataclasses import dataclass
from typing import AsyncIterator

from fastapi import APIRouter
from fastapi.responses import JSONResponse, StreamingResponse

from speedlive.constants import HEARTBEAT_INTERVAL_S, SERVER_ID, SPEEDTEST_BIN, STOP_GRACE_S
from speedlive.services.relay import SSE_HEADERS, RelaySession, encode_sse
from speedlive.services.speedtest_runner import (
    SpeedtestError,
    create_default_config,
    resolve_speedtest_binary,
    run_speedtest_json,
    speedtest_version,
)

ONESHOT_MISSING_MESSAGE = (
    "speedtest binary not found on server. Deploy with the binary "
    "or use a Docker image that includes it."
)


@dataclass
class RelaySettings:
    """Runtime settings shared by the HTTP routes and the gauge page."""

    speedtest_bin: str = SPEEDTEST_BIN
    server_id: str = SERVER_ID
    heartbeat_interval: float = HEARTBEAT_INTERVAL_S
    stop_grace: float = STOP_GRACE_S

    def new_session(self) -> RelaySession:
        return RelaySession(
            server_id=self.server_id,
            binary=self.speedtest_bin,
            heartbeat_interval=self.heartbeat_interval,
            stop_grace=self.stop_grace,
        )


settings = RelaySettings()
router = APIRouter()


async def _sse_stream(session: RelaySession) -> AsyncIterator[str]:
    async with contextlib.aclosing(session.events()) as events:
        async for item in events:
            yield encode_sse(item)


@router.get("/live")
async def live() -> StreamingResponse:
    session = settings.new_session()
    logging.info("Live session %s opened", session.session_id)
    return StreamingResponse(
        _sse_stream(session), media_type="text/event-stream", headers=SSE_HEADERS
    )


async def _run_oneshot() -> JSONResponse:
    cfg = create_default_config(settings.speedtest_bin, settings.server_id, "json")
    try:
        result = await run_speedtest_json(cfg)
    except FileNotFoundError:
        return JSONResponse({"error": ONESHOT_MISSING_MESSAGE}, status_code=500)
    except SpeedtestError as e:
        logging.error("One-shot speedtest failed: %s", e)
        return JSONResponse({"error": str(e), "stderr": e.stderr}, status_code=500)
    except json.JSONDecodeError as e:
        return JSONResponse(
            {"error": "Parse error", "parseError": str(e), "sample": e.doc[:2000]},
            status_code=500,
        )
    except OSError as e:
        logging.error("One-shot speedtest spawn error: %s", e)
        return JSONResponse({"error": str(e)}, status_code=500)
    return JSONResponse(result)


@router.get("/api/speedtest")
async def api_speedtest() -> JSONResponse:
    return await _run_oneshot()


@router.get("/speedtest")
async def speedtest_alias() -> JSONResponse:
    return await _run_oneshot()


@router.get("/legacy/speedtest")
async def legacy_speedtest() -> JSONResponse:
    response = await _run_oneshot()
    response.headers["Access-Control-Allow-Origin"] = "*"
    return response


@router.get("/health")
async def health() -> dict:
    return {"ok": True}


@router.get("/debug/check-binary")
async def check_binary() -> dict:
    path = resolve_speedtest_binary(settings.speedtest_bin)
    return {"ok": path is not None, "path": path}


@router.get("/debug/speedtest-version")
async def debug_speedtest_version() -> dict:
    try:
        out = await speedtest_version(settings.speedtest_bin)
    except FileNotFoundError:
        return {"ok": False, "error": "binary not present"}
    except SpeedtestError as e:
        return {"ok": False, "error": str(e), "stderr": e.stderr[:2000]}
    except (OSError, asyncio.TimeoutError) as e:
        return {"ok": False, "error": str(e) or e.__class__.__name__}
    return {"ok": True, "out": out[:20000]}
