"""
Process supervisor for the worker.

Owns the single worker process and its Starting/Up/Down state. Captures
stdout/stderr into the log sink, reports exits back onto the event loop,
restarts the worker on demand and, when auto-restart is enabled, after a
fixed delay following a crash.

All state is mutated on the event loop. Threads only read pipes and wait for
the child, handing results over with call_soon_threadsafe.
"""

import asyncio
import logging
import os
import signal
import subprocess
import sys
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .logsink import LogSink
from .notify import NotificationDispatcher, StatusKind

logger = logging.getLogger(__name__)


class ProcessState(Enum):
    STARTING = "STARTING"
    UP = "UP"
    DOWN = "DOWN"


@dataclass
class SupervisedProcess:
    """The live worker. Only exists while the child is running."""

    process: subprocess.Popen
    generation: int
    started_at: datetime = field(default_factory=datetime.now)
    exited: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass
class ExitRecord:
    """How the last worker instance ended."""

    at: datetime
    code: int | None = None
    signal: str | None = None
    error: str | None = None

    def describe(self) -> str:
        if self.error is not None:
            return f"Error: {self.error}"
        return f"Exit code: {self.code}, signal: {self.signal}"

    def to_dict(self) -> dict:
        return {
            "at": self.at.isoformat(),
            "code": self.code,
            "signal": self.signal,
            "error": self.error,
        }


@dataclass
class SupervisorStatus:
    """Snapshot of the supervisor for display."""

    state: ProcessState
    since: datetime | None
    pid: int | None
    auto_restart: bool
    restarting: bool
    last_exit: ExitRecord | None = None

    @property
    def is_up(self) -> bool:
        return self.state is ProcessState.UP

    @property
    def seconds(self) -> float:
        """Uptime when up, downtime when down."""
        if self.since is None:
            return 0.0
        return max((datetime.now() - self.since).total_seconds(), 0.0)

    def to_dict(self) -> dict:
        return {
            "state": self.state.value,
            "since": self.since.isoformat() if self.since else None,
            "seconds": round(self.seconds, 1),
            "pid": self.pid,
            "auto_restart": self.auto_restart,
            "restarting": self.restarting,
            "last_exit": self.last_exit.to_dict() if self.last_exit else None,
        }


def split_returncode(returncode: int) -> tuple[int | None, str | None]:
    """Turn a Popen return code into (exit code, signal name)."""
    if returncode is not None and returncode < 0:
        try:
            return None, signal.Signals(-returncode).name
        except ValueError:
            return None, str(-returncode)
    return returncode, None


class ProcessSupervisor:
    """Supervises a single worker process."""

    def __init__(
        self,
        command: list[str],
        dispatcher: NotificationDispatcher,
        log_sink: LogSink,
        working_dir: str = None,
        auto_restart: bool = False,
        restart_delay: float = 5.0,
        manual_restart_delay: float = 1.0,
        stop_timeout: float = 10.0,
        echo_output: bool = True,
    ):
        if not command:
            raise ValueError("Worker command is empty")

        self.command = list(command)
        self.dispatcher = dispatcher
        self.log_sink = log_sink
        self.working_dir = working_dir
        self.restart_delay = restart_delay
        self.manual_restart_delay = manual_restart_delay
        self.stop_timeout = stop_timeout
        self.echo_output = echo_output

        self._state = ProcessState.DOWN
        self._current: SupervisedProcess | None = None
        self._started_at: datetime | None = None
        self._exited_at: datetime | None = None
        self._last_exit: ExitRecord | None = None
        self._auto_restart = auto_restart
        self._restarting = False
        self._stopping = False
        # Bumped on every start attempt; delayed starts only fire for their own epoch
        self._epoch = 0
        self._generation = 0
        self._loop: asyncio.AbstractEventLoop = None
        self._tasks: set[asyncio.Task] = set()
        self._pending_starts: set[asyncio.Task] = set()
        self.spawn_count = 0

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def is_up(self) -> bool:
        return self._state is ProcessState.UP

    @property
    def pid(self) -> int | None:
        return self._current.pid if self._current else None

    @property
    def auto_restart(self) -> bool:
        return self._auto_restart

    @property
    def restarting(self) -> bool:
        return self._restarting

    def set_auto_restart(self, enabled: bool):
        self._auto_restart = bool(enabled)
        logger.info(f"Auto-restart {'enabled' if self._auto_restart else 'disabled'}")

    def status(self) -> SupervisorStatus:
        if self._state is ProcessState.UP:
            since = self._started_at
        elif self._state is ProcessState.DOWN:
            since = self._exited_at
        else:
            since = None

        return SupervisorStatus(
            state=self._state,
            since=since,
            pid=self.pid,
            auto_restart=self._auto_restart,
            restarting=self._restarting,
            last_exit=self._last_exit,
        )

    async def start(self, detail: str = "Worker started") -> bool:
        """Start the worker. Returns False if it is already running or failed to launch."""
        if self._state is not ProcessState.DOWN:
            logger.info(f"Worker is already {self._state.value}, not starting")
            return False

        self._loop = asyncio.get_running_loop()
        self._state = ProcessState.STARTING
        self._epoch += 1

        try:
            process = self._spawn()
        except (OSError, ValueError, subprocess.SubprocessError) as e:
            await self.on_spawn_error(e)
            return False

        self._generation += 1
        current = SupervisedProcess(process=process, generation=self._generation)
        self._current = current
        self._state = ProcessState.UP
        self._started_at = current.started_at
        self.spawn_count += 1
        self._watch(current)

        logger.info(f"Worker started (pid {process.pid})")
        await self.dispatcher.notify(detail, StatusKind.UP)
        return True

    def _spawn(self) -> subprocess.Popen:
        return subprocess.Popen(
            self.command,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.working_dir,
            env=os.environ.copy(),
            start_new_session=True,  # Own process group so the whole tree gets signalled
        )

    def _watch(self, current: SupervisedProcess):
        """Start the output capture threads and the exit waiter."""
        process = current.process
        for stream, echo, name in (
            (process.stdout, sys.stdout, "stdout"),
            (process.stderr, sys.stderr, "stderr"),
        ):
            threading.Thread(
                target=self._capture_output,
                args=(stream, echo),
                name=f"worker-{current.generation}-{name}",
                daemon=True,
            ).start()

        threading.Thread(
            target=self._wait_for_exit,
            args=(current,),
            name=f"worker-{current.generation}-wait",
            daemon=True,
        ).start()

    def _capture_output(self, stream, echo):
        """Copy worker output into the log sink, optionally echoing it."""
        console = getattr(echo, "buffer", None) if self.echo_output else None
        try:
            for line in iter(stream.readline, b""):
                self.log_sink.write(line)
                if console is not None:
                    try:
                        console.write(line)
                        console.flush()
                    except (OSError, ValueError):
                        # Console went away; keep feeding the sink
                        console = None
        except (OSError, ValueError) as e:
            logger.error(f"Error in worker output capture: {e}")
        finally:
            stream.close()

    def _wait_for_exit(self, current: SupervisedProcess):
        returncode = current.process.wait()
        try:
            self._loop.call_soon_threadsafe(self._exit_received, current.generation, returncode)
        except RuntimeError:
            logger.warning(f"Worker {current.pid} exited after the event loop closed")

    def _exit_received(self, generation: int, returncode: int):
        code, sig = split_returncode(returncode)
        self._spawn_task(self.on_exit(code, sig, generation))

    def _spawn_task(self, coro) -> asyncio.Task:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def on_exit(self, code: int | None, sig: str | None, generation: int = None):
        """Handle the worker's termination."""
        current = self._current
        if current is None or (generation is not None and current.generation != generation):
            logger.debug(f"Ignoring exit of stale worker generation {generation}")
            return

        self._current = None
        self._state = ProcessState.DOWN
        self._exited_at = datetime.now()
        self._last_exit = ExitRecord(at=self._exited_at, code=code, signal=sig)
        current.exited.set()

        logger.warning(f"Worker exited code={code} signal={sig}")
        if self._should_auto_restart():
            self._schedule_start()
        await self.dispatcher.notify(self._last_exit.describe(), StatusKind.DOWN)

    async def on_spawn_error(self, error: Exception):
        """Handle a worker that could not be launched."""
        self._current = None
        self._state = ProcessState.DOWN
        self._exited_at = datetime.now()
        self._last_exit = ExitRecord(at=self._exited_at, error=str(error))

        logger.error(f"Failed to start worker {' '.join(self.command)}: {error}")
        if self._should_auto_restart():
            self._schedule_start()
        await self.dispatcher.notify(self._last_exit.describe(), StatusKind.DOWN)

    def _should_auto_restart(self) -> bool:
        return self._auto_restart and not self._restarting and not self._stopping

    def _schedule_start(self):
        logger.info(f"Auto-restart scheduled in {self.restart_delay:g}s")
        task = self._spawn_task(self._delayed_start(self._epoch))
        self._pending_starts.add(task)
        task.add_done_callback(self._pending_starts.discard)

    async def _delayed_start(self, epoch: int):
        await asyncio.sleep(self.restart_delay)
        if (
            epoch != self._epoch
            or self._state is not ProcessState.DOWN
            or not self._auto_restart
            or self._restarting
            or self._stopping
        ):
            logger.info("Skipping scheduled auto-restart, worker state changed meanwhile")
            return
        await self.start("Worker restarted automatically")

    async def restart(self, detail: str = "Worker restarted") -> bool:
        """
        Restart the worker, or start it if it is down.

        Only one restart runs at a time; a call made while another is in
        progress returns False without touching the worker.
        """
        if self._restarting:
            logger.info("Restart already in progress, ignoring request")
            return False

        self._restarting = True
        try:
            current = self._current
            if current is not None:
                logger.info(f"Restarting worker (pid {current.pid})")
                await self._terminate(current)
            await asyncio.sleep(self.manual_restart_delay)
            return await self.start(detail)
        finally:
            self._restarting = False

    async def stop(self) -> bool:
        """Stop the worker without restarting it."""
        current = self._current
        if current is None:
            logger.info("Worker is not running")
            return False

        self._stopping = True
        try:
            await self._terminate(current)
        finally:
            self._stopping = False
        return True

    async def shutdown(self, timeout: float = 5.0):
        """Stop the worker and drop any pending auto-restart."""
        self._stopping = True
        for task in list(self._pending_starts):
            task.cancel()

        if self._current is not None:
            await self._terminate(self._current)

        if self._tasks:
            await asyncio.wait(list(self._tasks), timeout=timeout)
        logger.info("Supervisor shut down")

    async def _terminate(self, current: SupervisedProcess):
        """SIGTERM the worker's process group, escalating to SIGKILL."""
        self._signal(current, signal.SIGTERM)
        try:
            await asyncio.wait_for(current.exited.wait(), timeout=self.stop_timeout)
            return
        except asyncio.TimeoutError:
            logger.warning(f"Worker {current.pid} did not stop gracefully, forcing kill")

        self._signal(current, signal.SIGKILL)
        try:
            await asyncio.wait_for(current.exited.wait(), timeout=5)
        except asyncio.TimeoutError:
            logger.error(f"Worker {current.pid} did not exit after SIGKILL")

    def _signal(self, current: SupervisedProcess, sig: signal.Signals):
        try:
            os.killpg(os.getpgid(current.pid), sig)
        except ProcessLookupError:
            # Already gone; the exit waiter reports it
            pass
