"""Line-oriented log sinks.

Every component writes `[Component] message` lines to an injected sink.
ConsoleSink renders them with rich; FileSink appends them with an immediate
flush (os.fsync) so the log can be tailed while a task runs.
"""

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.text import Text

from .protocols import LogSink


WARNING_MARKER = "Warning:"
ERROR_MARKER = "Error:"


class ConsoleSink:
    """Writes log lines to a rich console."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(stderr=True)

    def append_line(self, line: str) -> None:
        style = None
        if ERROR_MARKER in line:
            style = "red"
        elif WARNING_MARKER in line:
            style = "yellow"
        self.console.print(Text(line, style=style or ""), highlight=False)


class FileSink:
    """Appends timestamped log lines to a file."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._file_handle: Optional[Any] = None

    def append_line(self, line: str) -> None:
        if self._file_handle is None:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self._file_handle = open(self.path, "a", encoding="utf-8")

        self._file_handle.write(f"{datetime.now().isoformat()} {line}\n")
        self._file_handle.flush()

        try:
            os.fsync(self._file_handle.fileno())
        except (OSError, AttributeError):
            pass  # Some systems don't support fsync

    def close(self) -> None:
        if self._file_handle is not None:
            self._file_handle.close()
            self._file_handle = None


class MemorySink:
    """Keeps log lines in memory."""

    def __init__(self):
        self.lines: list[str] = []

    def append_line(self, line: str) -> None:
        self.lines.append(line)

    def contains(self, fragment: str) -> bool:
        return any(fragment in line for line in self.lines)


class MultiSink:
    """Fans each line out to several sinks."""

    def __init__(self, *sinks: LogSink):
        self.sinks = list(sinks)

    def append_line(self, line: str) -> None:
        for sink in self.sinks:
            sink.append_line(line)


class ComponentLog:
    """Prefixes lines with the component name."""

    def __init__(self, sink: LogSink, component: str):
        self.sink = sink
        self.component = component

    def info(self, message: str) -> None:
        self.sink.append_line(f"[{self.component}] {message}")

    def warning(self, message: str) -> None:
        self.sink.append_line(f"[{self.component}] {WARNING_MARKER} {message}")

    def error(self, message: str) -> None:
        self.sink.append_line(f"[{self.component}] {ERROR_MARKER} {message}")


def create_sink(log_path: Optional[Path] = None, console: Optional[Console] = None) -> LogSink:
    """Console sink, teed to a file when a log path is configured."""
    console_sink = ConsoleSink(console)
    if log_path is None:
        return console_sink
    return MultiSink(console_sink, FileSink(log_path))
