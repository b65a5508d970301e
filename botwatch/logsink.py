"""
Append-only log stream shared by the worker and the monitor.

Worker stdout/stderr and the monitor's own log records end up in a single
file. Writes are queued and appended by a dedicated thread so a slow disk
never stalls the pipes of the worker process. The file is never truncated.
"""

import logging
import queue
import sys
import threading
from collections import deque
from pathlib import Path

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Their INFO records include full request URLs, which embed channel credentials
QUIET_LOGGERS = ("httpx", "httpcore")


class LogSink:
    """Append-only log file with a background writer and bounded tail reads."""

    def __init__(self, path: Path, max_lines: int = 100):
        self.path = Path(path)
        self.max_lines = max_lines
        self._queue: queue.Queue[bytes | None] = queue.Queue()
        self._writer: threading.Thread = None
        self._lock = threading.Lock()

    def start(self):
        """Start the writer thread (idempotent)."""
        with self._lock:
            if self._writer and self._writer.is_alive():
                return
            self._writer = threading.Thread(target=self._drain, name="logsink-writer", daemon=True)
            self._writer.start()

    def write(self, data: bytes):
        """Queue raw bytes for appending. Never blocks on disk I/O."""
        if not data:
            return
        if self._writer is None or not self._writer.is_alive():
            self.start()
        self._queue.put(data)

    def write_line(self, line: str):
        self.write((line.rstrip("\n") + "\n").encode("utf-8", errors="replace"))

    def flush(self):
        """Block until everything queued so far is on disk."""
        if self._writer is not None and self._writer.is_alive():
            self._queue.join()

    def close(self):
        """Flush pending writes and stop the writer thread."""
        with self._lock:
            writer = self._writer
            self._writer = None
        if writer is not None and writer.is_alive():
            self._queue.put(None)
            writer.join(timeout=5)

    def _drain(self):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            log_file = open(self.path, "ab")
        except OSError as e:
            logger.error(f"Cannot open log file {self.path}: {e}")
            self._discard_pending()
            return

        with log_file:
            while True:
                data = self._queue.get()
                try:
                    if data is None:
                        return
                    log_file.write(data)
                    log_file.flush()
                except OSError as e:
                    # Logging here would re-enter the sink
                    sys.stderr.write(f"botwatch: error writing {self.path}: {e}\n")
                finally:
                    self._queue.task_done()

    def _discard_pending(self):
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return
            self._queue.task_done()

    def tail(self, lines: int = None) -> list[str]:
        """
        Return the last complete lines of the log.

        A trailing partial line (still being written) is left out. A missing
        or unreadable file yields an empty list.
        """
        count = self.max_lines if lines is None else lines
        if count <= 0:
            return []
        try:
            with open(self.path, "r", encoding="utf-8", errors="replace") as f:
                recent = deque(f, maxlen=count + 1)
        except OSError:
            return []

        if recent and not recent[-1].endswith("\n"):
            recent.pop()
        return [line.rstrip("\n") for line in list(recent)[-count:]]


class SinkHandler(logging.Handler):
    """Logging handler that appends formatted records to a LogSink."""

    def __init__(self, sink: LogSink, level=logging.NOTSET):
        super().__init__(level)
        self.sink = sink

    def emit(self, record: logging.LogRecord):
        try:
            self.sink.write_line(self.format(record))
        except Exception:
            self.handleError(record)


def configure_logging(sink: LogSink, level: str | int = logging.INFO, target: logging.Logger = None):
    """
    Send log records to the console and to the sink.

    Replaces handlers previously installed by this function so it can be
    called again with a different sink.
    """
    target = target or logging.getLogger()
    formatter = logging.Formatter(LOG_FORMAT)

    for handler in list(target.handlers):
        if getattr(handler, "_botwatch", False):
            target.removeHandler(handler)

    console_handler = logging.StreamHandler()
    file_handler = SinkHandler(sink)
    for handler in (console_handler, file_handler):
        handler.setFormatter(formatter)
        handler._botwatch = True
        target.addHandler(handler)

    target.setLevel(level.upper() if isinstance(level, str) else level)
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return target
