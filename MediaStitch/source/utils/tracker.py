# 18.10.26

import time
import logging
import threading
from collections import deque
from typing import Callable, Dict, Optional


# Logic
from .object import Phase, ProgressEvent, Track


# Variable
logger = logging.getLogger(__name__)
THROUGHPUT_WINDOW = 5.0


class TrackProgress:
    def __init__(self, total: int):
        self.total = total
        self.done = 0
        self.bytes = 0

    @property
    def average(self) -> Optional[float]:
        return self.bytes / self.done if self.done and self.bytes else None


class ProgressTracker:
    """Per-job progress: byte-weighted blend of tracks plus rolling throughput."""

    def __init__(self, callback: Optional[Callable[[ProgressEvent], None]] = None, window: float = THROUGHPUT_WINDOW):
        self.callback = callback
        self.window = window
        self.phase = Phase.PARSING
        self.tracks: Dict[Track, TrackProgress] = {}
        self._samples = deque()
        self._lock = threading.Lock()

    def add_track(self, track: Track, total: int) -> None:
        with self._lock:
            self.tracks[track] = TrackProgress(total)

    def set_phase(self, phase: Phase, message: str = "", percent: Optional[float] = None) -> None:
        with self._lock:
            self.phase = phase
            if percent is None:
                percent = 100.0 if phase == Phase.DONE else (self._percent() if phase == Phase.DOWNLOADING else -1.0)
            event = ProgressEvent(phase, percent, message, self._throughput())
        self._emit(event)

    def segment_done(self, track: Track, nbytes: int = 0, message: str = "") -> None:
        """Count one finished segment (stored, duplicate or skipped)."""
        now = time.monotonic()
        with self._lock:
            progress = self.tracks[track]
            progress.done += 1
            progress.bytes += nbytes
            if nbytes:
                self._samples.append((now, nbytes))
            event = ProgressEvent(self.phase, self._percent(), message or f"{track.value} {progress.done}/{progress.total}", self._throughput(now))
        self._emit(event)

    def percent(self) -> float:
        with self._lock:
            return self._percent()

    def _percent(self) -> float:
        if not self.tracks:
            return -1.0

        known = [t.average for t in self.tracks.values() if t.average]
        fallback = sum(known) / len(known) if known else 1.0

        expected = sum((t.average or fallback) * t.total for t in self.tracks.values())
        done = sum((t.average or fallback) * min(t.done, t.total) for t in self.tracks.values())
        if expected <= 0:
            return 100.0
        return min(100.0, 100.0 * done / expected)

    def _throughput(self, now: Optional[float] = None) -> float:
        now = now or time.monotonic()
        while self._samples and now - self._samples[0][0] > self.window:
            self._samples.popleft()
        if not self._samples:
            return 0.0
        span = max(now - self._samples[0][0], 1.0)
        return sum(n for _, n in self._samples) / span

    def _emit(self, event: ProgressEvent) -> None:
        if self.callback is None:
            return
        try:
            self.callback(event)
        except Exception as e:
            logger.error(f"Progress callback failed: {e}")
