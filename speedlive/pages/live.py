from __future__ import annotations

import asyncio
import contextlib
import logging
import math
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

from nicegui import ui

from speedlive.common.logging_config import attach_ui_log, detach_ui_log
from speedlive.constants import GAUGE_MAX_MBPS, GAUGE_TICK_COUNT
from speedlive.services.relay import (
    AbortedEvent,
    ErrorEvent,
    FinalEvent,
    Heartbeat,
    ProgressEvent,
    RelayEvent,
    RelaySession,
    StartEvent,
)
from speedlive.state import SpeedStats

if TYPE_CHECKING:
    from speedlive.api import RelaySettings

IDLE_LABEL = "Test the Future!"
RUNNING_LABEL = "Running…"
RETRY_LABEL = "Retry Test"


@dataclass(frozen=True)
class GaugeView:
    """Everything the gauge page shows for one test."""

    stats: SpeedStats = field(default_factory=SpeedStats)
    speed: float = 0.0
    phase: str = ""
    button: str = IDLE_LABEL
    running: bool = False


def format_mbps(x: float | None) -> str:
    return f"{x:.1f} Mbps" if x is not None and math.isfinite(x) else "—"


def apply_event(view: GaugeView, item: RelayEvent | Heartbeat) -> GaugeView:
    """Return the view after one relay item; the input view is left untouched."""
    if isinstance(item, StartEvent):
        return replace(view, running=True, button=RUNNING_LABEL)

    if isinstance(item, ProgressEvent):
        mbps = max(0.0, item.mbps)
        return replace(
            view,
            stats=view.stats.update(mbps),
            speed=mbps,
            phase=item.phase,
            button=f"{mbps:.0f} Mbps",
        )

    if isinstance(item, FinalEvent):
        stats = view.stats
        for figure in (item.down_mbps, item.up_mbps):
            if figure is not None and math.isfinite(figure):
                stats = stats.update(figure)
        return replace(view, stats=stats, phase="", button=IDLE_LABEL, running=False)

    if isinstance(item, ErrorEvent):
        return replace(
            view, phase=item.message or "Error", button=RETRY_LABEL, running=False
        )

    if isinstance(item, AbortedEvent):
        return replace(view, phase="", button=RETRY_LABEL, running=False)

    # Heartbeats and unknown items leave the view as is
    return view


def gauge_options(max_mbps: int = GAUGE_MAX_MBPS, ticks: int = GAUGE_TICK_COUNT) -> dict:
    return {
        "series": [
            {
                "type": "gauge",
                "min": 0,
                "max": max_mbps,
                "startAngle": 225,
                "endAngle": -45,
                "splitNumber": ticks - 1,
                "axisLabel": {"formatter": "{value}"},
                "detail": {"formatter": "{value} Mbps", "fontSize": 18},
                "data": [{"value": 0}],
            }
        ]
    }


class LivePage:
    """Live gauge page: one relay session per Start click."""

    def __init__(self, settings: RelaySettings) -> None:
        self.settings = settings
        self.view = GaugeView()
        self.session: RelaySession | None = None
        self.task: asyncio.Task | None = None

        self.gauge: ui.echart | None = None
        self.start_button: ui.button | None = None
        self.stop_button: ui.button | None = None
        self.phase_label: ui.label | None = None
        self.avg_label: ui.label | None = None
        self.peak_label: ui.label | None = None
        self.low_label: ui.label | None = None
        self.log: ui.log | None = None

    def build(self) -> None:
        with ui.card().classes("w-full items-center"):
            ui.label(f"Server {self.settings.server_id}").classes("text-sm")
            self.gauge = ui.echart(gauge_options()).classes("w-96 h-96")
            self.phase_label = ui.label("").classes("text-md font-medium")
            with ui.row().classes("items-center gap-2"):
                self.start_button = ui.button(IDLE_LABEL, on_click=self.start)
                self.stop_button = ui.button("Stop", on_click=self.stop).props(
                    "color=negative"
                )
                self.stop_button.disable()
            with ui.row().classes("items-center gap-6"):
                self.avg_label = ui.label().classes("text-sm")
                self.peak_label = ui.label().classes("text-sm")
                self.low_label = ui.label().classes("text-sm")
        self.log = ui.log(max_lines=200).classes("w-full h-40")
        attach_ui_log(self.log, scope=self._session_id)
        self.bind_client(ui.context.client)
        self.render()

    def render(self) -> None:
        view = self.view
        if self.gauge:
            value = min(max(view.speed, 0.0), float(GAUGE_MAX_MBPS))
            self.gauge.options["series"][0]["data"][0]["value"] = round(value, 1)
            self.gauge.update()
        if self.phase_label:
            self.phase_label.text = view.phase
        if self.start_button:
            self.start_button.text = view.button
            self.start_button.set_enabled(not view.running)
        if self.stop_button:
            self.stop_button.set_enabled(view.running)
        if self.avg_label:
            self.avg_label.text = f"Avg: {format_mbps(view.stats.display_avg)}"
        if self.peak_label:
            self.peak_label.text = f"Peak: {format_mbps(view.stats.peak)}"
        if self.low_label:
            self.low_label.text = f"Low: {format_mbps(view.stats.display_low)}"

    async def start(self) -> None:
        if self.task and not self.task.done():
            return
        self.view = GaugeView(running=True, button=RUNNING_LABEL)
        self.render()
        self.session = self.settings.new_session()
        self.task = asyncio.create_task(self._consume(self.session))

    def stop(self) -> None:
        if self.session:
            self.session.abort()

    async def _consume(self, session: RelaySession) -> None:
        try:
            async with contextlib.aclosing(session.events()) as events:
                async for item in events:
                    self.view = apply_event(self.view, item)
                    self.render()
        except Exception as e:
            logging.error("Live session %s failed: %s", session.session_id, e)
            self.view = apply_event(self.view, ErrorEvent(str(e)))
            self.render()

    def bind_client(self, client) -> None:
        # A dropped websocket may reconnect; only a deleted client ends the page
        client.on_delete(self._on_delete)

    def _session_id(self) -> str | None:
        return self.session.session_id if self.session else None

    def _on_delete(self) -> None:
        if self.session:
            self.session.abort()
        if self.task and not self.task.done():
            self.task.cancel()
        if self.log:
            detach_ui_log(self.log)
