"""Root pytest configuration and shared fixtures."""

from __future__ import annotations

import os
import shlex
import sys
import tempfile
from pathlib import Path

import pytest
import pytest_asyncio

# Keep the module-level app in botwatch.main away from the working tree
_TEST_DIR = Path(tempfile.mkdtemp(prefix="botwatch-tests-"))
os.environ.setdefault("LOG_FILE", str(_TEST_DIR / "monitor.log"))
os.environ.setdefault("MONITOR_CONFIG", str(_TEST_DIR / "missing-config.json"))
os.environ.setdefault("WORKER_COMMAND", shlex.join([sys.executable, "-c", "pass"]))

from botwatch.logsink import LogSink  # noqa: E402
from botwatch.process import ProcessSupervisor  # noqa: E402
from helpers import SLEEPER, RecordingDispatcher  # noqa: E402


@pytest.fixture
def dispatcher() -> RecordingDispatcher:
    return RecordingDispatcher()


@pytest.fixture
def log_sink(tmp_path):
    sink = LogSink(tmp_path / "monitor.log", max_lines=50)
    yield sink
    sink.close()


@pytest_asyncio.fixture
async def make_supervisor(dispatcher, log_sink):
    """Factory for supervisors with short delays; shuts every one down afterwards."""
    created: list[ProcessSupervisor] = []

    def factory(command=SLEEPER, **kwargs) -> ProcessSupervisor:
        kwargs.setdefault("restart_delay", 0.3)
        kwargs.setdefault("manual_restart_delay", 0)
        kwargs.setdefault("stop_timeout", 2)
        kwargs.setdefault("echo_output", False)
        supervisor = ProcessSupervisor(command, dispatcher, log_sink, **kwargs)
        created.append(supervisor)
        return supervisor

    yield factory

    for supervisor in created:
        await supervisor.shutdown()
