from __future__ import annotations

import math
from dataclasses import dataclass, replace
from enum import Enum


class Phase(str, Enum):
    IDLE = "idle"
    DOWNLOADING = "downloading"
    UPLOADING = "uploading"
    FINISHED = "finished"
    ABORTED = "aborted"
    ERRORED = "errored"

    @property
    def terminal(self) -> bool:
        return self in _TERMINAL


_TERMINAL = frozenset({Phase.FINISHED, Phase.ABORTED, Phase.ERRORED})

# Allowed targets per phase; terminal phases have none
_TRANSITIONS: dict[Phase, frozenset[Phase]] = {
    Phase.IDLE: frozenset(
        {Phase.DOWNLOADING, Phase.UPLOADING, *_TERMINAL}
    ),
    Phase.DOWNLOADING: frozenset(
        {Phase.DOWNLOADING, Phase.UPLOADING, *_TERMINAL}
    ),
    Phase.UPLOADING: frozenset({Phase.UPLOADING, *_TERMINAL}),
    Phase.FINISHED: frozenset(),
    Phase.ABORTED: frozenset(),
    Phase.ERRORED: frozenset(),
}


class InvalidTransition(ValueError):
    """Raised when a session is asked to move between incompatible phases."""

    def __init__(self, current: Phase, target: Phase) -> None:
        super().__init__(f"Invalid phase transition: {current.value} -> {target.value}")
        self.current = current
        self.target = target


def advance(current: Phase, target: Phase) -> Phase:
    """Return ``target`` if ``current`` may move there, else raise InvalidTransition."""
    if target not in _TRANSITIONS[current]:
        raise InvalidTransition(current, target)
    return target


@dataclass(frozen=True)
class SpeedStats:
    """
    Running throughput statistics for one test.

    Values are immutable; ``update`` returns a new accumulator so that
    concurrent pages never share counters.
    """

    count: int = 0
    avg: float = 0.0
    peak: float = 0.0
    low: float = math.inf

    def update(self, value: float) -> SpeedStats:
        value = max(0.0, float(value))
        count = self.count + 1
        return replace(
            self,
            count=count,
            avg=self.avg + (value - self.avg) / count,
            peak=max(self.peak, value),
            low=min(self.low, value),
        )

    @property
    def display_avg(self) -> float:
        return self.avg if self.count else 0.0

    @property
    def display_low(self) -> float:
        return 0.0 if math.isinf(self.low) else self.low
