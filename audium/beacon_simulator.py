#!/usr/bin/env python3
"""
Beacon Simulator - a visitor walking the exhibit, for use without hardware.

The visitor stops at each configured beacon in turn for `dwell_s` seconds,
then walks for `walk_s` seconds with nothing in range. Readings carry
gaussian noise, occasional dropouts and the odd zero-RSSI sentinel so the
smoothing and grace period get exercised the way real ranging does.
"""

import random
import threading
import time
from typing import Callable, Dict, List, Optional

from .beacon_source import BeaconSource, RegionTracker
from .logging_config import get_logger
from .models import BeaconProfile, BeaconReading
from .proximity_classifier import estimate_distance

logger = get_logger()

FAR_RSSI = -92


class SimulatedBeaconSource(BeaconSource):
    def __init__(self, profiles: Dict[str, BeaconProfile], interval: float = 1.0,
                 dwell_s: float = 20.0, walk_s: float = 5.0, near_margin_db: float = 8.0,
                 noise_sigma: float = 3.0, dropout: float = 0.1, zero_rate: float = 0.02,
                 region_exit_seconds: float = 10.0, seed: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic):
        """
        Args:
            profiles: Exhibit beacons, visited in identity order
            interval: Seconds between ranging batches
            dwell_s: Time spent near each beacon
            walk_s: Time between beacons with nothing near
            near_margin_db: How far above its threshold a visited beacon reads
            noise_sigma: Gaussian RSSI noise (dB)
            dropout: Probability a beacon is missing from a batch
            zero_rate: Probability a reading comes back as RSSI 0
        """
        self.profiles = profiles
        self.route = sorted(profiles)
        self.interval = interval
        self.dwell_s = dwell_s
        self.walk_s = walk_s
        self.near_margin_db = near_margin_db
        self.noise_sigma = noise_sigma
        self.dropout = dropout
        self.zero_rate = zero_rate
        self.rng = random.Random(seed)
        self.clock = clock
        self.regions = RegionTracker(region_exit_seconds)
        self.sink = None
        self.running = False
        self.thread: Optional[threading.Thread] = None

    def near_beacon_at(self, elapsed: float) -> Optional[str]:
        """Which beacon the visitor is standing at, or None while walking."""
        if not self.route:
            return None
        leg = self.dwell_s + self.walk_s
        stop = int(elapsed // leg) % len(self.route)
        if (elapsed % leg) < self.dwell_s:
            return self.route[stop]
        return None

    def batch_at(self, elapsed: float, now: float) -> List[BeaconReading]:
        """One ranging batch for the visitor's position at `elapsed` seconds."""
        near = self.near_beacon_at(elapsed)
        readings = []
        for identity in self.route:
            if self.rng.random() < self.dropout:
                continue
            if identity == near:
                base = self.profiles[identity].rssi_threshold + self.near_margin_db
            else:
                base = FAR_RSSI
            rssi = int(round(base + self.rng.gauss(0, self.noise_sigma)))
            if self.rng.random() < self.zero_rate:
                rssi = 0
            readings.append(BeaconReading(identity, rssi, estimate_distance(rssi), now))
        return readings

    def _simulation_loop(self):
        started = self.clock()
        while self.running:
            now = self.clock()
            try:
                readings = self.batch_at(now - started, now)
                entered, exited = self.regions.update(
                    (r.identity for r in readings if r.rssi > FAR_RSSI + 3 * self.noise_sigma), now)
                for identity in entered:
                    self.sink.on_region_enter(identity)
                self.sink.on_reading_batch(readings)
                for identity in exited:
                    self.sink.on_region_exit(identity)
            except Exception as e:
                logger.error("Error in beacon simulation", "SIM", e)
            time.sleep(self.interval)

    def start(self, sink):
        """Start the simulated visitor."""
        if self.running:
            logger.warning("Beacon simulator is already running", "SIM")
            return
        self.sink = sink
        self.running = True
        self.thread = threading.Thread(target=self._simulation_loop, name="audium-sim", daemon=True)
        self.thread.start()
        logger.info(f"Beacon simulator started ({len(self.route)} beacons, every {self.interval:g}s)", "SIM")

    def stop(self):
        """Stop the simulated visitor."""
        self.running = False
        if self.thread:
            self.thread.join(timeout=self.interval + 1)
            self.thread = None
        logger.info("Beacon simulator stopped", "SIM")
