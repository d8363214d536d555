"""
Console logging for the automation backend.

Runtime telemetry is printed as ``--- [TAG] message`` lines. A transcript of
everything written to stdout/stderr can be kept on disk with
``setup_log_capture``; each transcript line is stamped with the wall-clock
time it was written.
"""

import atexit
import os
import sys
import threading
import time
from typing import Optional, TextIO

ERROR_TAGS = ("ERROR", "WARN")


def safe_print(*args, **kwargs) -> None:
    """Print, replacing characters the console encoding cannot represent."""
    try:
        print(*args, **kwargs)
    except UnicodeEncodeError:
        safe_args = [
            arg.encode("ascii", "replace").decode("ascii") if isinstance(arg, str) else arg
            for arg in args
        ]
        print(*safe_args, **kwargs)


def log(tag: str, message: str) -> None:
    """Emit one tagged telemetry line, e.g. ``--- [ACT] Tap (100, 200)``."""
    stream = sys.stderr if tag in ERROR_TAGS else sys.stdout
    safe_print(f"--- [{tag}] {message}", file=stream, flush=True)


class _TranscriptStream:
    """Forwards writes to a console stream and copies them, time-stamped, to the transcript."""

    def __init__(self, console: TextIO, transcript: TextIO, lock: threading.Lock):
        self._console = console
        self._transcript = transcript
        self._lock = lock
        self._at_line_start = True
        self.encoding = getattr(console, "encoding", "utf-8")
        self.errors = getattr(console, "errors", "replace")

    def _stamp(self, data: str) -> str:
        stamped = []
        for chunk in data.splitlines(keepends=True):
            if self._at_line_start:
                stamped.append(time.strftime("[%H:%M:%S] "))
            stamped.append(chunk)
            self._at_line_start = chunk.endswith("\n")
        return "".join(stamped)

    def write(self, data: str) -> int:
        with self._lock:
            written = self._console.write(data)
            if data:
                self._transcript.write(self._stamp(data))
            return written

    def flush(self) -> None:
        with self._lock:
            self._console.flush()
            self._transcript.flush()

    def isatty(self) -> bool:
        return self._console.isatty()

    def __getattr__(self, name):
        return getattr(self._console, name)


class TranscriptCapture:
    """Owns the transcript file and the stream swap of one process."""

    def __init__(self) -> None:
        self.path: Optional[str] = None
        self._file: Optional[TextIO] = None
        self._saved_streams: Optional[tuple] = None
        self._lock = threading.Lock()

    @property
    def active(self) -> bool:
        return self._file is not None

    def start(self, log_dir: str, filename_prefix: str) -> Optional[str]:
        if self.active:
            return self.path
        try:
            os.makedirs(log_dir, exist_ok=True)
            path = os.path.abspath(
                os.path.join(log_dir, f"{filename_prefix}_{time.strftime('%Y%m%d-%H%M%S')}.log")
            )
            transcript = open(path, "w", encoding="utf-8", buffering=1)
        except OSError:
            return None

        self.path = path
        self._file = transcript
        self._saved_streams = (sys.stdout, sys.stderr)
        sys.stdout = _TranscriptStream(sys.stdout, transcript, self._lock)
        sys.stderr = _TranscriptStream(sys.stderr, transcript, self._lock)
        return path

    def stop(self) -> None:
        if self._saved_streams is not None:
            sys.stdout, sys.stderr = self._saved_streams
            self._saved_streams = None
        if self._file is not None:
            try:
                self._file.close()
            except OSError:
                pass
        self._file = None
        self.path = None


_capture = TranscriptCapture()
atexit.register(_capture.stop)


def setup_log_capture(log_dir: str, filename_prefix: str = "droidauto") -> Optional[str]:
    """
    Start mirroring stdout/stderr to ``<log_dir>/<prefix>_<timestamp>.log``.

    Returns the transcript path, or None when the file cannot be opened.
    Calling it again while a transcript is open returns the existing path.
    """
    return _capture.start(log_dir, filename_prefix)


def close_log_capture() -> None:
    """Restore the console streams and close the transcript."""
    _capture.stop()


def get_log_file_path() -> Optional[str]:
    return _capture.path
