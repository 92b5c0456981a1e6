#!/usr/bin/env python3
"""
BLE Scanner - iBeacon ranging source for the guide
Scans for iBeacon advertisements with bleak and hands the engine one reading
batch per scan interval, plus coarse region enter/exit events.

Beacons are identified by their iBeacon proximity UUID (upper-case), which is
how exhibit profiles are keyed.
"""

import asyncio
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict, Iterable, Optional

from bleak import BleakScanner

from .beacon_source import BeaconSource, RegionTracker
from .config import ScannerConfig
from .logging_config import get_logger
from .models import BeaconReading, canonical_identity
from .proximity_classifier import TX_POWER_AT_1M, estimate_distance

logger = get_logger()

# iBeacon lives under Apple Manufacturer Specific Data
APPLE_CID = 0x004C


@dataclass
class Sighting:
    identity: str
    rssi: int
    tx_power: int
    ts: float
    mac: Optional[str] = None
    major: Optional[int] = None
    minor: Optional[int] = None


# ---------- Parsing helpers ----------
def _fmt_uuid(b: bytes) -> str:
    h = b.hex()
    return f"{h[0:8]}-{h[8:12]}-{h[12:16]}-{h[16:20]}-{h[20:32]}"


def parse_ibeacon(mfg_payload: bytes) -> Optional[dict]:
    """
    iBeacon payload (after Apple CID):
    0: 0x02, 1: 0x15, 2..17: UUID, 18..19: Major, 20..21: Minor, 22: TxPower
    """
    if len(mfg_payload) < 23 or mfg_payload[0] != 0x02 or mfg_payload[1] != 0x15:
        return None
    uuid = _fmt_uuid(mfg_payload[2:18]).upper()
    major = int.from_bytes(mfg_payload[18:20], "big")
    minor = int.from_bytes(mfg_payload[20:22], "big")
    tx_power = int.from_bytes(mfg_payload[22:23], "big", signed=True)
    return {"uuid": uuid, "major": major, "minor": minor, "tx_power": tx_power}


class BleakBeaconSource(BeaconSource):
    def __init__(self, config: ScannerConfig, known_identities: Iterable[str],
                 include_unknown: bool = False, clock: Callable[[], float] = time.monotonic):
        """
        Args:
            config: Scanner tuning (interval, region exit timeout, adapter)
            known_identities: Profile UUIDs to range for
            include_unknown: Also report iBeacons without a profile (diagnostics)
            clock: Must match the engine clock
        """
        self.config = config
        self.known = {canonical_identity(i) for i in known_identities}
        self.include_unknown = include_unknown
        self.clock = clock
        self.regions = RegionTracker(config.region_exit_seconds)
        self.sink = None
        self.running = False
        self.pending: Dict[str, Sighting] = {}
        self.lock = threading.Lock()
        self.scanner_thread: Optional[threading.Thread] = None

    def detection_callback(self, device, advertisement_data):
        """Accept only iBeacon frames for ranged UUIDs; keep the latest per beacon."""
        rssi = getattr(advertisement_data, 'rssi', None)
        if rssi is None:
            rssi = getattr(device, 'rssi', None)
        if rssi is None:
            return

        mfg = getattr(advertisement_data, 'manufacturer_data', None) or {}
        apple_payload = mfg.get(APPLE_CID)
        if not apple_payload:
            return
        try:
            parsed = parse_ibeacon(bytes(apple_payload))
        except Exception as e:
            logger.debug(f"iBeacon parse error for {getattr(device, 'address', 'unknown')}: {e}", "SCANNER")
            return
        if not parsed:
            return
        if parsed["uuid"] not in self.known and not self.include_unknown:
            return

        sighting = Sighting(
            identity=parsed["uuid"], rssi=int(rssi), tx_power=parsed["tx_power"], ts=self.clock(),
            mac=getattr(device, 'address', None), major=parsed["major"], minor=parsed["minor"],
        )
        with self.lock:
            self.pending[sighting.identity] = sighting

    def _flush(self):
        """Hand the engine one batch for this interval and derive region events."""
        with self.lock:
            sightings = list(self.pending.values())
            self.pending.clear()

        readings = []
        for s in sightings:
            tx_power = s.tx_power if s.tx_power else TX_POWER_AT_1M
            readings.append(BeaconReading(
                identity=s.identity,
                rssi=s.rssi,
                distance=estimate_distance(s.rssi, tx_power),
                observed_at=s.ts,
            ))

        entered, exited = self.regions.update((r.identity for r in readings if r.rssi != 0), self.clock())
        for identity in entered:
            self.sink.on_region_enter(identity)
        self.sink.on_reading_batch(readings)
        for identity in exited:
            self.sink.on_region_exit(identity)

    async def scan_continuously(self):
        """Scan until stopped, flushing one batch per scan interval."""
        scanner_kwargs = {"scanning_mode": "active"}
        if self.config.adapter:
            scanner_kwargs["adapter"] = self.config.adapter
            logger.info(f"Using BLE adapter: {self.config.adapter}", "SCANNER")

        try:
            scanner = BleakScanner(self.detection_callback, **scanner_kwargs)
            await scanner.start()
        except Exception as e:
            logger.error("BLE scanner could not start", "SCANNER", e)
            self.running = False
            self.sink.on_adapter_failure(f"Bluetooth unavailable: {e}")
            return

        logger.info(f"BLE scanner started, ranging {len(self.known)} beacon UUID(s)", "SCANNER")
        try:
            while self.running:
                await asyncio.sleep(self.config.scan_interval)
                self._flush()
        except Exception as e:
            logger.error("BLE scan error", "SCANNER", e)
            self.sink.on_adapter_failure(f"Bluetooth scan failed: {e}")
        finally:
            self.running = False
            try:
                await scanner.stop()
            except Exception as e:
                logger.debug(f"Error stopping scanner: {e}", "SCANNER")
            logger.info("BLE scanner stopped", "SCANNER")

    def start(self, sink):
        """Start BLE scanning in a separate thread."""
        self.sink = sink
        self.running = True
        self.regions.reset()

        def run_scanner():
            asyncio.run(self.scan_continuously())
        self.scanner_thread = threading.Thread(target=run_scanner, name="audium-ble", daemon=True)
        self.scanner_thread.start()

    def stop(self):
        """Stop BLE scanning."""
        self.running = False
        if self.scanner_thread:
            self.scanner_thread.join(timeout=5)
            self.scanner_thread = None
