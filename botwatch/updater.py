"""
Automatic code updates for the worker.

Pulls the worker's repository on a fixed interval and on demand. When the
pull brings in new commits the worker is restarted through the supervisor so
the new code goes live. Only one update check runs at a time.
"""

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum

from .notify import NotificationDispatcher, StatusKind
from .process import ProcessSupervisor

logger = logging.getLogger(__name__)

UP_TO_DATE = re.compile(r"Already up[ -]to[ -]date", re.IGNORECASE)


class UpdateError(Exception):
    """Raised when the update source could not be pulled."""


class UpdateTrigger(Enum):
    SCHEDULED = "scheduled"
    MANUAL = "manual"


class UpdateStatus(Enum):
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    BUSY = "busy"


@dataclass
class PullOutcome:
    changed: bool
    output: str = ""


@dataclass
class UpdateResult:
    """Outcome of one update check."""

    status: UpdateStatus
    trigger: UpdateTrigger
    output: str = ""
    revision: str | None = None
    checked_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "trigger": self.trigger.value,
            "output": self.output,
            "revision": self.revision,
            "checked_at": self.checked_at.isoformat(),
        }


class GitUpdateSource:
    """Pulls a git checkout and reports whether HEAD moved."""

    def __init__(self, command: list[str] = None, working_dir: str = None, timeout: float = 120):
        self.command = list(command or ["git", "pull"])
        self.working_dir = working_dir
        self.timeout = timeout

    async def _run(self, *cmd: str, timeout: float) -> tuple[int, str]:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            cwd=self.working_dir,
        )
        try:
            stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise
        return process.returncode, stdout.decode("utf-8", errors="replace").strip()

    async def revision(self) -> str | None:
        """Short hash of HEAD, or None if it cannot be determined."""
        try:
            returncode, output = await self._run("git", "rev-parse", "--short", "HEAD", timeout=10)
        except (OSError, asyncio.TimeoutError) as e:
            logger.debug(f"Cannot read revision: {e}")
            return None
        return output if returncode == 0 and output else None

    async def pull(self) -> PullOutcome:
        before = await self.revision()
        try:
            returncode, output = await self._run(*self.command, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise UpdateError(f"{' '.join(self.command)} timed out after {self.timeout:g}s") from e
        except OSError as e:
            raise UpdateError(f"Cannot run {' '.join(self.command)}: {e}") from e

        if returncode != 0:
            raise UpdateError(f"{' '.join(self.command)} exited with {returncode}: {output}")

        after = await self.revision()
        if before is not None and after is not None:
            changed = before != after
        else:
            changed = not UP_TO_DATE.search(output)
        return PullOutcome(changed=changed, output=output)


class UpdateChecker:
    """Checks for new worker code on a schedule and redeploys it."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        dispatcher: NotificationDispatcher,
        source: GitUpdateSource,
        interval: float = 86400,
        check_on_start: bool = True,
        notify_failures: bool = False,
    ):
        self.supervisor = supervisor
        self.dispatcher = dispatcher
        self.source = source
        self.interval = interval
        self.check_on_start = check_on_start
        self.notify_failures = notify_failures
        self.revision: str | None = None
        self.last_result: UpdateResult | None = None
        self._busy = False
        self._running = False
        self._task = None

    @property
    def busy(self) -> bool:
        return self._busy

    async def start(self):
        """Start the recurring update task."""
        if self._running:
            return

        self.revision = await self.source.revision()
        self._running = True
        self._task = asyncio.create_task(self._update_loop())
        logger.info(f"Auto-update every {self.interval / 86400:g} day(s)")

    async def stop(self):
        """Stop the recurring update task."""
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
        logger.info("Auto-update stopped")

    async def _update_loop(self):
        first = True
        while self._running:
            if not first or self.check_on_start:
                try:
                    await self.check_and_apply(UpdateTrigger.SCHEDULED)
                except Exception as e:
                    logger.error(f"Error in update loop: {e}")
            first = False

            if self.interval <= 0:
                return
            await asyncio.sleep(self.interval)

    async def check_and_apply(self, trigger: UpdateTrigger = UpdateTrigger.MANUAL) -> UpdateResult:
        """Pull new code and restart the worker if anything changed."""
        if self._busy:
            logger.info(f"Update check already running, skipping {trigger.value} check")
            return UpdateResult(status=UpdateStatus.BUSY, trigger=trigger, revision=self.revision)

        self._busy = True
        try:
            result = await self._check(trigger)
        finally:
            self._busy = False

        self.last_result = result
        return result

    async def _check(self, trigger: UpdateTrigger) -> UpdateResult:
        logger.info(f"Checking for updates ({trigger.value})...")
        try:
            outcome = await self.source.pull()
        except UpdateError as e:
            logger.error(f"Update failed: {e}")
            if self.notify_failures:
                await self.dispatcher.notify(f"Update failed: {e}", StatusKind.DOWN)
            return UpdateResult(
                status=UpdateStatus.FAILED, trigger=trigger, output=str(e), revision=self.revision
            )

        if not outcome.changed:
            logger.info("Already up to date")
            return UpdateResult(
                status=UpdateStatus.UNCHANGED,
                trigger=trigger,
                output=outcome.output,
                revision=self.revision,
            )

        self.revision = await self.source.revision()
        logger.info(f"Pulled:\n{outcome.output}")

        detail = "Code updated"
        if self.revision:
            detail += f" to {self.revision}"
        if not await self.supervisor.restart(detail=detail):
            logger.warning("Restart already in progress, worker may still run the previous code")

        return UpdateResult(
            status=UpdateStatus.UPDATED,
            trigger=trigger,
            output=outcome.output,
            revision=self.revision,
        )
