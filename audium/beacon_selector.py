#!/usr/bin/env python3
"""
Closest-beacon selection.

Picks at most one beacon per ranging cycle from the qualifying set. Exact
ties keep the current beacon so two equally strong beacons do not flap;
otherwise ties break on identity so results are reproducible.
"""

from typing import Iterable, Optional

from .models import Classification, QualificationPolicy


class BeaconSelector:
    def __init__(self, policy: QualificationPolicy = QualificationPolicy.SIGNAL_FLOOR):
        self.policy = policy

    def _score(self, c: Classification) -> float:
        # Higher is closer under both policies
        if self.policy == QualificationPolicy.SIGNAL_FLOOR:
            return c.estimate.rssi
        return -c.estimate.distance

    def select(self, classifications: Iterable[Classification], current: Optional[str] = None) -> Optional[str]:
        qualifying = [c for c in classifications if c.qualifies]
        if not qualifying:
            return None

        best = max(self._score(c) for c in qualifying)
        tied = sorted(c.identity for c in qualifying if self._score(c) == best)
        if current is not None and current in tied:
            return current
        return tied[0]
