"""
Upload progress accounting.

ProgressReader wraps the file object handed to the object store client and
reports cumulative bytes, throughput and ETA at a bounded rate.
"""

import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Optional, Union


logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 1.0
MIN_INTERVAL = 0.001
MAX_INTERVAL = 60.0

_INTERVAL_RE = re.compile(r'^\s*(\d+(?:\.\d+)?)\s*(ms|s|m)?\s*$')
_UNIT_SECONDS = {'ms': 0.001, 's': 1.0, 'm': 60.0, None: 1.0}


@dataclass(frozen=True)
class ProgressEvent:
    read: int
    total: int
    rate: float                 # bytes per second since the previous event
    eta: Optional[float]        # seconds, None when the rate is unknown
    final: bool = False

    @property
    def percent(self) -> int:
        if self.total <= 0:
            return 0
        return int(self.read / self.total * 100)


def parse_progress_interval(value: Union[str, float, int, None]) -> float:
    """
    Parse a progress interval such as "500ms", "2s", "1m" or "1.5".

    Bare numbers are seconds. Values outside [1ms, 60s] or that cannot be
    parsed fall back to the default with a warning.

    Returns:
        Interval in seconds
    """
    if value is None or value == '':
        return DEFAULT_INTERVAL

    if isinstance(value, (int, float)) and not isinstance(value, bool):
        seconds = float(value)
    else:
        text = str(value)
        if len(text) > 20:
            logger.warning("PROGRESS_INTERVAL is too long, using default of 1s")
            return DEFAULT_INTERVAL
        match = _INTERVAL_RE.match(text)
        if not match:
            logger.warning(f"PROGRESS_INTERVAL '{text}' is not a valid duration, using default of 1s")
            return DEFAULT_INTERVAL
        seconds = float(match.group(1)) * _UNIT_SECONDS[match.group(2)]

    if not MIN_INTERVAL <= seconds <= MAX_INTERVAL:
        logger.warning(f"PROGRESS_INTERVAL {value} is outside 1ms-60s, using default of 1s")
        return DEFAULT_INTERVAL

    return seconds


class ProgressReader:
    """
    File-like wrapper that reports read progress.

    Events are emitted at most once per interval; the first read always
    emits. Exactly one final event is emitted when the stream is exhausted
    with all bytes read, even if that read also hits a tick boundary. A
    rewind restarts the byte accounting but never produces a second final
    event: one reader stands for one upload attempt.
    """

    def __init__(
        self,
        raw,
        total: int,
        interval: float = DEFAULT_INTERVAL,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
        clock: Callable[[], float] = time.monotonic
    ):
        self._raw = raw
        self.total = total
        self.interval = interval
        self._on_progress = on_progress
        self._clock = clock

        self.read_bytes = 0
        self._last_time: Optional[float] = None
        self._last_read = 0
        self.finished = False
        self._final_emitted = False

    def read(self, size: int = -1) -> bytes:
        if self.finished:
            return b''

        remaining = self.total - self.read_bytes
        if size is None or size < 0 or size > remaining:
            size = remaining

        data = self._raw.read(size) if size > 0 else b''
        self.read_bytes += len(data)
        now = self._clock()

        if self.read_bytes >= self.total:
            # The final event replaces any regular tick due on this read
            self.finished = True
            if not self._final_emitted:
                self._final_emitted = True
                self._emit(now, final=True)
        elif self._last_time is None or now - self._last_time >= self.interval:
            self._emit(now, final=False)

        return data

    def _emit(self, now: float, final: bool):
        if self._last_time is None:
            elapsed = 1.0
        else:
            elapsed = now - self._last_time
            if elapsed <= 0:
                elapsed = 1.0

        rate = (self.read_bytes - self._last_read) / elapsed
        eta = None
        if rate > 0:
            eta = max(self.total - self.read_bytes, 0) / rate

        self._last_time = now
        self._last_read = self.read_bytes

        if self._on_progress is not None:
            self._on_progress(ProgressEvent(
                read=self.read_bytes,
                total=self.total,
                rate=rate,
                eta=eta,
                final=final
            ))

    def seek(self, offset: int, whence: int = 0) -> int:
        position = self._raw.seek(offset, whence)
        # A rewind (payload signing pass) starts the accounting over
        self.read_bytes = position
        self._last_read = position
        self._last_time = None
        self.finished = False
        return position

    def tell(self) -> int:
        return self._raw.tell()

    def __len__(self) -> int:
        return self.total
