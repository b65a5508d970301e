"""Worker commands and fakes shared by the test modules."""

from __future__ import annotations

import asyncio
import sys
import time
from pathlib import Path

import pytest

from botwatch.notify import StatusKind

PYTHON = sys.executable

SLEEPER = [PYTHON, "-c", "import time; print('worker up', flush=True); time.sleep(60)"]
CRASHER = [PYTHON, "-c", "import sys; sys.exit(3)"]
# Ignores SIGTERM once it has printed "ready"
STUBBORN = [
    PYTHON,
    "-c",
    "import signal, time; signal.signal(signal.SIGTERM, signal.SIG_IGN); "
    "print('ready', flush=True); time.sleep(60)",
]


def crash_once(marker: Path) -> list[str]:
    """A worker that exits with 1 the first time and stays up afterwards."""
    script = (
        "import os, sys, time\n"
        f"marker = {str(marker)!r}\n"
        "if not os.path.exists(marker):\n"
        "    open(marker, 'w').close()\n"
        "    sys.exit(1)\n"
        "time.sleep(60)\n"
    )
    return [PYTHON, "-c", script]


class RecordingDispatcher:
    """Stands in for NotificationDispatcher; records every notify call, no throttling."""

    def __init__(self):
        self.sent: list[tuple[str, StatusKind]] = []

    async def notify(self, detail: str, kind: StatusKind) -> bool:
        self.sent.append((detail, kind))
        return True

    def of_kind(self, kind: StatusKind) -> list[str]:
        return [detail for detail, k in self.sent if k == kind]


async def wait_until(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll until predicate() is truthy; fail the test on timeout."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        await asyncio.sleep(interval)
    pytest.fail(f"Condition not met within {timeout}s")
