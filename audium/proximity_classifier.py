#!/usr/bin/env python3
"""
Proximity Classifier: decides whether a beacon is close enough to play.

Two acceptance policies, chosen per deployment:
- signal_floor:     smoothed RSSI >= the beacon's configured floor
- distance_ceiling: smoothed distance < the beacon's (or deployment) ceiling

A raw RSSI of 0 never qualifies under either policy. Beacons without a
profile are still classified (for diagnostics) but never qualify.
"""

from __future__ import annotations

from typing import Dict, Optional, Set

from .logging_config import get_logger
from .models import (
    BeaconProfile, BeaconReading, Classification, ProximityTier,
    QualificationPolicy, SmoothedEstimate,
)

logger = get_logger()

# Log-distance path loss model
TX_POWER_AT_1M = -59
PATH_LOSS_EXPONENT = 2.0

IMMEDIATE_MAX_M = 0.5
NEAR_MAX_M = 3.0


def estimate_distance(rssi: int, tx_power: int = TX_POWER_AT_1M, n: float = PATH_LOSS_EXPONENT) -> float:
    """Metres from RSSI; -1.0 when the RSSI is the zero sentinel."""
    if rssi == 0:
        return -1.0
    return 10 ** ((tx_power - rssi) / (10 * n))


def tier_for(distance: float, rssi: float) -> ProximityTier:
    if rssi == 0 or distance < 0:
        return ProximityTier.UNKNOWN
    if distance < IMMEDIATE_MAX_M:
        return ProximityTier.IMMEDIATE
    if distance < NEAR_MAX_M:
        return ProximityTier.NEAR
    return ProximityTier.FAR


class ProximityClassifier:
    def __init__(self, profiles: Dict[str, BeaconProfile],
                 policy: QualificationPolicy = QualificationPolicy.SIGNAL_FLOOR,
                 distance_ceiling: float = 1.0):
        self.profiles = profiles
        self.policy = policy
        self.distance_ceiling = distance_ceiling
        self._reported_unknown: Set[str] = set()

    def classify(self, identity: str, reading: BeaconReading,
                 estimate: Optional[SmoothedEstimate] = None) -> Classification:
        """
        Classify one beacon for this ranging cycle.

        Args:
            identity: Beacon identity
            reading: The raw reading from this cycle
            estimate: Smoothed estimate including this reading (falls back to
                the raw reading when the smoother has nothing)
        """
        if estimate is None:
            estimate = SmoothedEstimate(
                identity=identity, rssi=float(reading.rssi), distance=float(reading.distance),
                samples=0, last_seen=reading.observed_at, last_raw_rssi=reading.rssi,
            )
        tier = tier_for(estimate.distance, reading.rssi)

        profile = self.profiles.get(identity)
        if profile is None:
            if identity not in self._reported_unknown:
                self._reported_unknown.add(identity)
                logger.warning(f"No profile configured for beacon {identity}; ignoring it for playback", "CLASSIFIER")
            return Classification(identity, False, tier, estimate, known=False)

        if not reading.valid:
            return Classification(identity, False, ProximityTier.UNKNOWN, estimate)

        if self.policy == QualificationPolicy.SIGNAL_FLOOR:
            qualifies = estimate.rssi >= profile.rssi_threshold
        else:
            ceiling = profile.distance_ceiling if profile.distance_ceiling is not None else self.distance_ceiling
            qualifies = 0 <= estimate.distance < ceiling

        return Classification(identity, qualifies, tier, estimate)
