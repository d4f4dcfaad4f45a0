# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Log tailing and following for running services, with severity classification.
"""
import logging
import re
import threading
from typing import Iterator, List, Optional

from ..DRIVERS.container_engine import ContainerEngine, LogHandle
from ..errors import ConfigError
from ..MODELS.log_line import LogLine, Severity

logger = logging.getLogger(__name__)

_LEVEL_RE = re.compile(
    r'\b(?:(?:level|lvl)="?(?P<kv>[A-Za-z]+)'
    r'|(?P<tok>ERROR|EROR|ERRO|ERR|FATAL|CRIT|WARNING|WARN|INFO|DEBUG|TRACE))\b'
)

_TOKENS = {
    "ERROR": Severity.ERROR, "EROR": Severity.ERROR, "ERRO": Severity.ERROR,
    "ERR": Severity.ERROR, "FATAL": Severity.ERROR, "CRIT": Severity.ERROR,
    "WARNING": Severity.WARN, "WARN": Severity.WARN,
    "INFO": Severity.INFO,
    "DEBUG": Severity.DEBUG, "TRACE": Severity.DEBUG,
}


def classify_severity(text: str) -> Severity:
    """
    Infers a line's severity from its level marker.

    Recognizes upper-case level tokens (``ERROR``, ``WARN``, ``INFO``, ``DEBUG``
    and common variants) and logfmt ``level=``/``lvl=`` fields. The leftmost
    marker wins.
    """
    for match in _LEVEL_RE.finditer(text):
        token = match.group("tok") or match.group("kv").upper()
        severity = _TOKENS.get(token)
        if severity is not None:
            return severity
    return Severity.UNKNOWN


class FollowSession:
    """
    A lazily opened, cancellable stream of new log lines from one service.

    Iterate it to pull lines. ``cancel()`` may be called from any thread and is
    observed within one poll interval; the stream handle is released when
    iteration ends, on ``close()`` or when leaving a ``with`` block.
    """

    def __init__(self, streamer: "LogStreamer", service: str, poll_interval: float):
        self.streamer = streamer
        self.service = service
        self.poll_interval = poll_interval
        self._cancelled = threading.Event()
        self._lines: Optional[Iterator[LogLine]] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def cancel(self) -> None:
        self._cancelled.set()

    def close(self) -> None:
        """Cancels and releases the stream. Call from the consuming thread."""
        self.cancel()
        if self._lines is not None:
            self._lines.close()

    def __iter__(self) -> "FollowSession":
        return self

    def __next__(self) -> LogLine:
        if self._lines is None:
            self._lines = self._follow()
        return next(self._lines)

    def __enter__(self) -> "FollowSession":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _follow(self) -> Iterator[LogLine]:
        handle: Optional[LogHandle] = None
        sequence = 0
        try:
            while not self._cancelled.is_set():
                if handle is None:
                    handle = self.streamer._open(self.service)
                text = handle.read_line(timeout=self.poll_interval)
                if text is not None:
                    sequence += 1
                    yield LogLine(
                        service=self.service,
                        text=text,
                        severity=classify_severity(text),
                        sequence=sequence,
                    )
                elif handle.exhausted:
                    # Source ended (e.g. container restarted); reopen after a pause.
                    self.streamer._release(handle)
                    handle = None
                    self._cancelled.wait(self.poll_interval)
        finally:
            if handle is not None:
                self.streamer._release(handle)


class LogStreamer:
    """
    Reads service output through the container engine.
    """

    def __init__(self, engine: ContainerEngine, poll_interval: float = 0.5):
        """
        Initializes the streamer.

        :param engine: Engine providing log access.
        :param poll_interval: Upper bound on how long a follow session takes to notice cancellation.
        """
        self.engine = engine
        self.poll_interval = poll_interval
        self._handles_lock = threading.Lock()
        self._open_handles = 0

    @property
    def open_handles(self) -> int:
        """Number of follow stream handles currently open."""
        with self._handles_lock:
            return self._open_handles

    def tail(self, service: str, lines: Optional[int] = None) -> List[LogLine]:
        """
        Returns the most recent lines of a service.

        :param service: Compose service name.
        :param lines: How many lines to return; None for everything buffered.
        :return: At most ``lines`` lines, oldest first. Empty if nothing ran.
        :raises StreamError: If the log source is unavailable.
        """
        if lines is not None and lines < 0:
            raise ConfigError(f"Line count must not be negative, got {lines}")
        if lines == 0:
            return []
        raw = self.engine.read_logs(service, tail=lines)
        if lines is not None:
            raw = raw[-lines:]
        return [
            LogLine(service=service, text=text, severity=classify_severity(text), sequence=i)
            for i, text in enumerate(raw, start=1)
        ]

    def follow(self, service: str) -> FollowSession:
        """
        Starts a new follow session. Nothing is opened until the session is iterated.
        """
        return FollowSession(self, service, self.poll_interval)

    def _open(self, service: str) -> LogHandle:
        handle = self.engine.open_log_stream(service)
        with self._handles_lock:
            self._open_handles += 1
        logger.debug("Opened log stream for %s", service)
        return handle

    def _release(self, handle: LogHandle) -> None:
        try:
            handle.close()
        finally:
            with self._handles_lock:
                self._open_handles -= 1
        logger.debug("Released log stream")
