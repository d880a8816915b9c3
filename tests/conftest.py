from __future__ import annotations

import json
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING

import pytest

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

# Replays configured stdout chunks like the Ookla CLI would, then optionally
# hangs and exits with a given code. Behaviour lives in a sidecar .json file.
_FAKE_SPEEDTEST = """#!{python}
import json
import os
import sys
import time
from pathlib import Path

here = Path(__file__)
cfg = json.loads(here.with_suffix(".json").read_text())
here.with_suffix(".args").write_text(json.dumps(sys.argv[1:]))
here.with_suffix(".pid").write_text(str(os.getpid()))
if cfg["stderr"]:
    sys.stderr.write(cfg["stderr"] + "\\n")
    sys.stderr.flush()
for chunk in cfg["chunks"]:
    sys.stdout.write(chunk)
    sys.stdout.flush()
    time.sleep(cfg["delay"])
time.sleep(cfg["hang"])
sys.exit(cfg["exit_code"])
"""

@dataclass(frozen=True)
class FakeSpeedtest:
    path: Path

    @property
    def binary(self) -> str:
        return str(self.path)

    def recorded_args(self) -> list[str]:
        return json.loads(self.path.with_suffix(".args").read_text())


@pytest.fixture
def fake_speedtest(tmp_path: Path) -> Callable[..., FakeSpeedtest]:
    """
    Factory writing an executable fake `speedtest` into tmp_path.

    ``lines`` are written newline-terminated; ``chunks`` are written verbatim
    (use them to split records across reads).
    """

    def _make(
        lines: Sequence[str] = (),
        *,
        chunks: Sequence[str] | None = None,
        delay: float = 0.0,
        hang: float = 0.0,
        exit_code: int = 0,
        stderr: str = "",
    ) -> FakeSpeedtest:
        bin_dir = tmp_path / "bin"
        bin_dir.mkdir(exist_ok=True)
        path = bin_dir / "speedtest"
        path.write_text(_FAKE_SPEEDTEST.format(python=sys.executable))
        path.chmod(0o755)
        cfg = {
            "chunks": list(chunks) if chunks is not None else [f"{line}\n" for line in lines],
            "delay": delay,
            "hang": hang,
            "exit_code": exit_code,
            "stderr": stderr,
        }
        path.with_suffix(".json").write_text(json.dumps(cfg))
        return FakeSpeedtest(path=path)

    return _make
