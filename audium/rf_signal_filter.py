#!/usr/bin/env python3
"""
RF Signal Filter - rolling-window smoothing of beacon readings

Ranging callbacks arrive roughly once a second and individual RSSI values
jump by several dB between callbacks (multipath, body shadowing, antenna
orientation). Each beacon keeps a short window of recent samples and the
estimate is the arithmetic mean of what is currently in the window.

Two window policies are available, one per deployment:
1. Time window  - keep samples no older than N seconds (default 3s)
2. Count window - keep the newest N samples (default 5)

Beacons that have not been heard for the cleanup timeout are purged.
"""

from collections import deque
from dataclasses import dataclass
from statistics import mean
from typing import Deque, Dict, List, Optional

from .logging_config import get_logger
from .models import BeaconReading, SmoothedEstimate, SmoothingPolicy

logger = get_logger()


@dataclass(frozen=True)
class Sample:
    t: float
    rssi: int
    distance: float


class WindowAverage:
    """
    Sliding window of samples for one beacon.

    Returns the mean RSSI and mean known distance of the window.
    """

    def __init__(self, policy: SmoothingPolicy, window_seconds: float = 3.0, window_count: int = 5):
        """
        Args:
            policy: TIME keeps samples by age, COUNT keeps the newest N
            window_seconds: Max sample age for the TIME policy
            window_count: Max samples for the COUNT policy
        """
        self.policy = policy
        self.window_seconds = window_seconds
        self.window: Deque[Sample] = deque(maxlen=window_count if policy == SmoothingPolicy.COUNT else None)

    def update(self, sample: Sample):
        """Append a sample and evict what falls out of the window"""
        self.window.append(sample)
        self.prune(sample.t)

    def prune(self, now: float):
        """Drop samples older than the time window (no-op for COUNT)"""
        if self.policy != SmoothingPolicy.TIME:
            return
        cutoff = now - self.window_seconds
        while self.window and self.window[0].t < cutoff:
            self.window.popleft()

    @property
    def last(self) -> Optional[Sample]:
        return self.window[-1] if self.window else None

    def mean_rssi(self) -> Optional[float]:
        if not self.window:
            return None
        return mean(s.rssi for s in self.window)

    def mean_distance(self) -> float:
        known = [s.distance for s in self.window if s.distance >= 0]
        return mean(known) if known else -1.0

    def reset(self):
        """Reset the window"""
        self.window.clear()


class SignalSmoother:
    """
    Manages a separate window per beacon identity.

    Only valid readings (non-zero RSSI) are recorded; a zero RSSI is the
    radio's "could not measure" sentinel and must not drag the mean up.
    """

    def __init__(self, policy: SmoothingPolicy = SmoothingPolicy.TIME, window_seconds: float = 3.0,
                 window_count: int = 5, cleanup_timeout_seconds: float = 5.0):
        self.policy = policy
        self.window_seconds = window_seconds
        self.window_count = window_count
        self.cleanup_timeout_seconds = cleanup_timeout_seconds
        self.windows: Dict[str, WindowAverage] = {}

    def record(self, reading: BeaconReading) -> bool:
        """
        Add a reading to its beacon's window.

        Returns:
            False when the reading was rejected as invalid
        """
        if not reading.valid:
            logger.debug(f"Ignoring zero-RSSI reading for {reading.identity}", "SMOOTHER")
            return False
        window = self.windows.get(reading.identity)
        if window is None:
            window = WindowAverage(self.policy, self.window_seconds, self.window_count)
            self.windows[reading.identity] = window
        window.update(Sample(reading.observed_at, int(reading.rssi), float(reading.distance)))
        return True

    def estimate(self, identity: str) -> Optional[SmoothedEstimate]:
        """Smoothed RSSI/distance for a beacon, or None if nothing is in-window"""
        window = self.windows.get(identity)
        if window is None or window.last is None:
            return None
        last = window.last
        return SmoothedEstimate(
            identity=identity,
            rssi=window.mean_rssi(),
            distance=window.mean_distance(),
            samples=len(window.window),
            last_seen=last.t,
            last_raw_rssi=last.rssi,
        )

    def visible(self) -> List[SmoothedEstimate]:
        """Estimates for every beacon currently tracked, sorted by identity"""
        out = []
        for identity in sorted(self.windows):
            est = self.estimate(identity)
            if est is not None:
                out.append(est)
        return out

    def purge_stale(self, now: float) -> List[str]:
        """
        Forget beacons not heard for longer than the cleanup timeout.

        Returns:
            Identities that were purged
        """
        purged = []
        for identity, window in list(self.windows.items()):
            last = window.last
            if last is None or (now - last.t) > self.cleanup_timeout_seconds:
                del self.windows[identity]
                purged.append(identity)
        if purged:
            logger.debug(f"Purged stale beacons: {', '.join(purged)}", "SMOOTHER")
        return purged

    def forget(self, identity: str):
        """Drop one beacon's history"""
        self.windows.pop(identity, None)

    def reset_all(self):
        """Drop every beacon's history"""
        self.windows.clear()
