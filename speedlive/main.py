from __future__ import annotations

import argparse
import logging
import sys

from fastapi.middleware.cors import CORSMiddleware
from nicegui import app as ng_app
from nicegui import ui

from speedlive import __version__
from speedlive.api import router, settings
from speedlive.common.logging_config import LEVEL_NAMES, configure_logging, resolve_level
from speedlive.constants import (
    BUNDLED_SPEEDTEST_BIN,
    LOG_LEVEL,
    SERVER_HOST,
    SERVER_PORT,
)
from speedlive.pages.live import LivePage
from speedlive.services.speedtest_runner import ensure_executable

ng_app.add_middleware(
    CORSMiddleware, allow_origins=["*"], allow_methods=["*"], allow_headers=["*"]
)
ng_app.include_router(router)


@ui.page("/")
def index() -> None:
    # A fresh page object per client keeps sessions and stats independent
    LivePage(settings).build()


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description=f"speedlive webserver ({__version__})")
    parser.add_argument("--host", default=SERVER_HOST, help="Webserver bind host")
    parser.add_argument(
        "--port", type=int, default=SERVER_PORT, help="Webserver bind port"
    )
    parser.add_argument(
        "--server-id",
        default=settings.server_id,
        help="Ookla server id passed to speedtest -s",
    )
    parser.add_argument(
        "--speedtest-bin",
        default=settings.speedtest_bin,
        help="speedtest executable (name on PATH or path)",
    )
    parser.add_argument("--log-level", choices=LEVEL_NAMES, help="Set log level")
    parser.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity; -v=INFO, -vv=DEBUG, -vvv=TRACE",
    )
    parser.add_argument(
        "-q", "--quiet", action="store_true", help="Enable WARNING logging"
    )
    args, _ = parser.parse_known_args(argv)
    return args


def main(argv: list[str] | None = None) -> None:
    args = parse_args(argv)

    settings.server_id = str(args.server_id)
    settings.speedtest_bin = args.speedtest_bin

    configure_logging(resolve_level(args.log_level, args.verbose, args.quiet, LOG_LEVEL))
    if BUNDLED_SPEEDTEST_BIN.exists():
        ensure_executable(BUNDLED_SPEEDTEST_BIN)

    logging.info(f"Webserver bind: host={args.host} port={args.port}")
    logging.info(
        f"speedtest: bin={settings.speedtest_bin} server={settings.server_id}"
    )

    ui.run(
        title="speedlive",
        host=args.host,
        port=int(args.port),
        reload=False,
        show=False,
        loop="uvloop" if sys.platform != "win32" else "asyncio",
        http="httptools",
        ws="wsproto",
    )


if __name__ in {"__main__", "__mp_main__"}:
    main()
