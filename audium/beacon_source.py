#!/usr/bin/env python3
"""
Beacon Source interface.

A source owns the radio (or a simulation of it) and hands the engine:
- on_reading_batch(readings)   once per ranging cycle, at the source's cadence
- on_region_enter(identity)    first sighting of a beacon
- on_region_exit(identity)     beacon not seen for a while
- on_adapter_failure(reason)   the radio can no longer scan

Sources run on their own threads and must only call these sink methods,
never touch engine state directly.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Tuple

from .logging_config import get_logger

logger = get_logger()


class BeaconSource:
    """Minimal interface that any beacon source must implement."""

    def start(self, sink):
        """Begin delivering events to sink (a GuideEngine or compatible)."""
        raise NotImplementedError

    def stop(self):
        raise NotImplementedError


class RegionTracker:
    """
    Derives coarse region enter/exit events from ranging sightings.

    A beacon enters on its first sighting and exits once it has not been
    seen for exit_after_s seconds.
    """

    def __init__(self, exit_after_s: float = 10.0):
        self.exit_after_s = exit_after_s
        self.last_seen: Dict[str, float] = {}

    def update(self, seen: Iterable[str], now: float) -> Tuple[List[str], List[str]]:
        """
        Returns:
            (entered, exited) identity lists for this cycle
        """
        entered = []
        for identity in seen:
            if identity not in self.last_seen:
                entered.append(identity)
            self.last_seen[identity] = now

        exited = [i for i, t in self.last_seen.items() if (now - t) > self.exit_after_s]
        for identity in exited:
            del self.last_seen[identity]
        return entered, exited

    def reset(self):
        self.last_seen.clear()
