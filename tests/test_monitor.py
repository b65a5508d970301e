"""Tests for host resource sampling and threshold warnings."""

import os

import psutil
import pytest

from botwatch.monitor import ResourceMonitor, ResourceSampler, ResourceSnapshot, sample_process
from botwatch.notify import StatusKind


class FixedSampler:
    def __init__(self, snapshot: ResourceSnapshot):
        self.snapshot = snapshot

    def sample(self) -> ResourceSnapshot:
        return self.snapshot


def test_sample_reads_host_metrics(tmp_path):
    snapshot = ResourceSampler(str(tmp_path)).sample()

    assert snapshot.memory_total_mb > 0
    assert 0 <= snapshot.memory_percent <= 100
    assert snapshot.disk_total_gb is not None
    assert snapshot.memory_display.endswith("MiB")


def test_unavailable_metric_degrades_to_na(monkeypatch):
    def broken_disk_usage(path):
        raise OSError("statvfs failed")

    monkeypatch.setattr(psutil, "disk_usage", broken_disk_usage)

    snapshot = ResourceSampler("/nowhere").sample()

    assert snapshot.disk_percent is None
    assert snapshot.disk_display == "n/a"
    # The other metrics are still reported
    assert snapshot.memory_used_mb is not None


def test_missing_load_average(monkeypatch):
    def no_loadavg():
        raise NotImplementedError

    monkeypatch.setattr(psutil, "getloadavg", no_loadavg)

    snapshot = ResourceSampler().sample()

    assert snapshot.load_average is None
    assert snapshot.load_display == "n/a"


def test_snapshot_display_formats():
    snapshot = ResourceSnapshot(
        load_average=0.5,
        memory_used_mb=512,
        memory_total_mb=2048,
        memory_percent=25.0,
        disk_used_gb=10.3,
        disk_total_gb=40,
        disk_percent=25.6,
    )

    assert snapshot.load_display == "0.50"
    assert snapshot.memory_display == "512MiB / 2048MiB"
    assert snapshot.disk_display == "10.3GiB / 40.0GiB"
    assert snapshot.to_dict()["disk_percent"] == 25.6


def test_sample_current_process():
    snapshot = sample_process(os.getpid())

    assert snapshot.pid == os.getpid()
    assert snapshot.memory_mb > 0
    assert snapshot.child_processes >= 0


def test_sample_missing_process():
    proc = psutil.Popen(["true"])
    proc.wait()

    assert sample_process(proc.pid) is None


@pytest.mark.asyncio
async def test_check_notifies_when_threshold_reached(dispatcher):
    snapshot = ResourceSnapshot(
        memory_used_mb=950, memory_total_mb=1000, memory_percent=95.0,
        disk_used_gb=5, disk_total_gb=100, disk_percent=5.0,
    )
    monitor = ResourceMonitor(FixedSampler(snapshot), dispatcher, memory_warn_percent=90, disk_warn_percent=90)

    found = await monitor.check()

    assert found == ["Memory at 95% (950MiB / 1000MiB)"]
    assert dispatcher.of_kind(StatusKind.RESOURCE) == ["Memory at 95% (950MiB / 1000MiB)"]


@pytest.mark.asyncio
async def test_check_is_quiet_below_thresholds(dispatcher):
    snapshot = ResourceSnapshot(memory_percent=40.0, disk_percent=None)
    monitor = ResourceMonitor(FixedSampler(snapshot), dispatcher)

    assert await monitor.check() == []
    assert dispatcher.sent == []


def test_zero_threshold_disables_warning(dispatcher):
    snapshot = ResourceSnapshot(memory_percent=99.0, disk_percent=99.0, disk_used_gb=99, disk_total_gb=100)
    monitor = ResourceMonitor(FixedSampler(snapshot), dispatcher, memory_warn_percent=0, disk_warn_percent=95)

    assert monitor.warnings(snapshot) == ["Disk at 99% (99.0GiB / 100.0GiB)"]


@pytest.mark.asyncio
async def test_disabled_monitor_does_not_start(dispatcher):
    monitor = ResourceMonitor(ResourceSampler(), dispatcher, interval=0)

    assert not monitor.enabled
    await monitor.start()
    assert monitor._task is None
    await monitor.stop()
