"""
Resource monitoring for the host and the supervised worker.

Takes on-demand snapshots of CPU load, memory and disk usage for the
dashboard, and periodically checks them against warning thresholds to send
RESOURCE notifications. Snapshots are never stored.
"""

import asyncio
import logging
import os
from dataclasses import asdict, dataclass

import psutil

from .notify import NotificationDispatcher, StatusKind

logger = logging.getLogger(__name__)

SAMPLE_ERRORS = (OSError, NotImplementedError, AttributeError, psutil.Error)

MB = 1024 * 1024
GB = 1024 * MB


@dataclass
class ResourceSnapshot:
    """Host resource usage. Any metric that could not be read is None."""

    load_average: float | None = None
    memory_used_mb: float | None = None
    memory_total_mb: float | None = None
    memory_percent: float | None = None
    disk_used_gb: float | None = None
    disk_total_gb: float | None = None
    disk_percent: float | None = None

    @property
    def load_display(self) -> str:
        return "n/a" if self.load_average is None else f"{self.load_average:.2f}"

    @property
    def memory_display(self) -> str:
        if self.memory_used_mb is None:
            return "n/a"
        return f"{self.memory_used_mb:.0f}MiB / {self.memory_total_mb:.0f}MiB"

    @property
    def disk_display(self) -> str:
        if self.disk_used_gb is None:
            return "n/a"
        return f"{self.disk_used_gb:.1f}GiB / {self.disk_total_gb:.1f}GiB"

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class ProcessSnapshot:
    """Resource usage of the worker and its children."""

    pid: int
    cpu_percent: float
    memory_mb: float
    child_processes: int

    def to_dict(self) -> dict:
        return asdict(self)


class ResourceSampler:
    """Reads host load, memory and disk usage on demand."""

    def __init__(self, disk_path: str = "."):
        self.disk_path = disk_path

    def sample(self) -> ResourceSnapshot:
        snapshot = ResourceSnapshot()

        try:
            snapshot.load_average = round(psutil.getloadavg()[0], 2)
        except SAMPLE_ERRORS as e:
            logger.debug(f"Load average unavailable: {e}")

        try:
            memory = psutil.virtual_memory()
            snapshot.memory_total_mb = round(memory.total / MB, 1)
            snapshot.memory_used_mb = round((memory.total - memory.available) / MB, 1)
            snapshot.memory_percent = memory.percent
        except SAMPLE_ERRORS as e:
            logger.debug(f"Memory usage unavailable: {e}")

        try:
            disk = psutil.disk_usage(os.path.abspath(self.disk_path))
            snapshot.disk_used_gb = round(disk.used / GB, 1)
            snapshot.disk_total_gb = round((disk.used + disk.free) / GB, 1)
            snapshot.disk_percent = disk.percent
        except SAMPLE_ERRORS as e:
            logger.debug(f"Disk usage unavailable for {self.disk_path}: {e}")

        return snapshot


def sample_process(pid: int) -> ProcessSnapshot | None:
    """Get current resource usage for a process tree, or None if it is gone."""
    try:
        proc = psutil.Process(pid)
        cpu_percent = proc.cpu_percent(interval=0.1)
        memory_mb = proc.memory_info().rss / MB

        # Include children
        child_count = 0
        try:
            children = proc.children(recursive=True)
            child_count = len(children)
            for child in children:
                cpu_percent += child.cpu_percent(interval=0.1)
                memory_mb += child.memory_info().rss / MB
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

        return ProcessSnapshot(
            pid=pid,
            cpu_percent=round(cpu_percent, 1),
            memory_mb=round(memory_mb, 1),
            child_processes=child_count,
        )
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return None


class ResourceMonitor:
    """Sends RESOURCE notifications when memory or disk usage runs high."""

    def __init__(
        self,
        sampler: ResourceSampler,
        dispatcher: NotificationDispatcher,
        interval: float = 60,
        memory_warn_percent: float = 90,
        disk_warn_percent: float = 90,
    ):
        self.sampler = sampler
        self.dispatcher = dispatcher
        self.interval = interval
        self.memory_warn_percent = memory_warn_percent
        self.disk_warn_percent = disk_warn_percent
        self._running = False
        self._task = None

    @property
    def enabled(self) -> bool:
        return self.interval > 0 and bool(self.memory_warn_percent or self.disk_warn_percent)

    async def start(self):
        """Start the monitoring loop."""
        if self._running or not self.enabled:
            return

        self._running = True
        self._task = asyncio.create_task(self._monitor_loop())
        logger.info("Resource monitor started")

    async def stop(self):
        """Stop the monitoring loop."""
        if not self._running:
            return
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("Resource monitor stopped")

    async def _monitor_loop(self):
        while self._running:
            try:
                await self.check()
            except Exception as e:
                logger.error(f"Error in resource monitor loop: {e}")

            await asyncio.sleep(self.interval)

    def warnings(self, snapshot: ResourceSnapshot) -> list[str]:
        """Describe every threshold the snapshot reaches."""
        found = []
        if (
            self.memory_warn_percent
            and snapshot.memory_percent is not None
            and snapshot.memory_percent >= self.memory_warn_percent
        ):
            found.append(f"Memory at {snapshot.memory_percent:.0f}% ({snapshot.memory_display})")
        if (
            self.disk_warn_percent
            and snapshot.disk_percent is not None
            and snapshot.disk_percent >= self.disk_warn_percent
        ):
            found.append(f"Disk at {snapshot.disk_percent:.0f}% ({snapshot.disk_display})")
        return found

    async def check(self) -> list[str]:
        """Sample once and notify if any threshold is reached."""
        snapshot = self.sampler.sample()
        found = self.warnings(snapshot)
        if found:
            detail = "\n".join(found)
            logger.warning(f"Resource warning: {'; '.join(found)}")
            await self.dispatcher.notify(detail, StatusKind.RESOURCE)
        return found
