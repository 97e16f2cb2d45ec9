"""Log tailing: follow each instance's log file into one aggregated sink."""

import sys
import threading
import time
from pathlib import Path
from typing import BinaryIO, Callable, List, Optional, Sequence, TextIO, Union

from mixnet_cluster.errors import TailFailure
from mixnet_cluster.utils import get_logger

logger = get_logger("tailer")


class LogSink:
    """Fan-out writer shared by every tailer. Appends are serialized by a lock."""

    def __init__(self, streams: Sequence[TextIO]) -> None:
        self._streams = list(streams)
        self._owned: List[TextIO] = []
        self._lock = threading.Lock()
        self.line_count = 0

    @classmethod
    def to_file(cls, path: Union[str, Path], echo: bool = True) -> "LogSink":
        handle = open(path, "a", encoding="utf-8")
        streams: List[TextIO] = [handle]
        if echo:
            streams.append(sys.stdout)
        sink = cls(streams)
        sink._owned.append(handle)
        return sink

    def emit(self, prefix: str, line: str) -> None:
        text = f"{prefix} {line}\n"
        with self._lock:
            for stream in self._streams:
                stream.write(text)
                stream.flush()
            self.line_count += 1

    def close(self) -> None:
        with self._lock:
            for handle in self._owned:
                handle.close()
            self._owned.clear()


class LogTailer(threading.Thread):
    """
    Follows one log file, forwarding each line as ``"<prefix> <line>"``.

    The file may not exist yet when the tailer starts; it is polled for. Only
    once the owner reports running does the ``open_timeout`` clock start, and
    running out of it is a TailFailure. :meth:`stop_at_eof` ends the tailer
    after everything already written has been forwarded.
    """

    def __init__(
        self,
        prefix: str,
        path: Union[str, Path],
        sink: LogSink,
        is_running: Callable[[], bool],
        poll_interval: float = 0.1,
        open_timeout: float = 10.0,
        on_line: Optional[Callable[[str], None]] = None,
        on_failure: Optional[Callable[[TailFailure], None]] = None,
        role: Optional[str] = None,
    ) -> None:
        super().__init__(name=f"tail-{prefix}", daemon=True)
        self.prefix = prefix
        self.path = Path(path)
        self.sink = sink
        self.is_running = is_running
        self.poll_interval = poll_interval
        self.open_timeout = open_timeout
        self.on_line = on_line
        self.on_failure = on_failure
        self.role = role
        self.error: Optional[TailFailure] = None
        self.lines_forwarded = 0
        self._stop_event = threading.Event()

    def stop_at_eof(self) -> None:
        self._stop_event.set()

    def run(self) -> None:
        handle = self._open()
        if handle is None:
            return
        with handle:
            self._follow(handle)
        logger.debug(f"Tailer for {self.prefix} drained {self.lines_forwarded} lines")

    def _open(self) -> Optional[BinaryIO]:
        deadline: Optional[float] = None
        while True:
            # Sample the stop flag first so a file created before stop is still picked up.
            stopping = self._stop_event.is_set()
            try:
                return open(self.path, "rb")
            except FileNotFoundError:
                pass
            except OSError as exc:
                self._fail(f"Failed to tail file '{self.path}': {exc}", exc)
                return None
            if stopping:
                return None
            if self.is_running():
                if deadline is None:
                    deadline = time.monotonic() + self.open_timeout
                elif time.monotonic() >= deadline:
                    self._fail(f"Log file '{self.path}' did not appear within {self.open_timeout}s")
                    return None
            self._stop_event.wait(self.poll_interval)

    def _follow(self, handle: BinaryIO) -> None:
        # Bytes are buffered until a full line is in, so a multi-byte character
        # or a CRLF split across writes is decoded once, whole.
        partial = b""
        while True:
            stopping = self._stop_event.is_set()
            chunk = handle.readline()
            if chunk:
                if chunk.endswith(b"\n"):
                    self._forward(partial + chunk[:-1])
                    partial = b""
                else:
                    partial += chunk
                continue
            if stopping:
                break
            self._stop_event.wait(self.poll_interval)
        if partial:
            self._forward(partial)

    def _forward(self, raw: bytes) -> None:
        if raw.endswith(b"\r"):
            raw = raw[:-1]
        line = raw.decode("utf-8", errors="replace")
        self.sink.emit(self.prefix, line)
        self.lines_forwarded += 1
        if self.on_line is not None:
            self.on_line(line)

    def _fail(self, message: str, cause: Optional[BaseException] = None) -> None:
        error = TailFailure(message, role=self.role)
        error.__cause__ = cause
        self.error = error
        logger.error(f"{self.prefix}: {message}")
        if self.on_failure is not None:
            self.on_failure(error)
