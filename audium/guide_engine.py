#!/usr/bin/env python3
"""
GuideEngine: the single serialized consumer that owns all guide state.

Beacon sources, audio completion callbacks, the status API and the CLI only
submit events; one consumer thread applies them in order:

    reading batch -> smoother -> classifier -> selector -> playback FSM

Observers read immutable GuideSnapshot objects published after each event.
"""

from __future__ import annotations

import queue
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from .audio_output import AudioOutput
from .beacon_selector import BeaconSelector
from .config import GuideConfig
from .errors import AdapterUnavailable
from .logging_config import get_logger
from .models import (
    IDLE_SNAPSHOT, BeaconReading, BeaconView, Classification, GuideSnapshot,
    SmoothedEstimate,
)
from .playback_fsm import PlaybackStateMachine
from .proximity_classifier import ProximityClassifier, tier_for
from .rf_signal_filter import SignalSmoother

logger = get_logger()


# ---- events ----

@dataclass(frozen=True)
class Event:
    at: Optional[float] = field(default=None, kw_only=True)


@dataclass(frozen=True)
class StartSession(Event):
    pass


@dataclass(frozen=True)
class StopSession(Event):
    reason: Optional[str] = None


@dataclass(frozen=True)
class ReadingBatch(Event):
    readings: Sequence = ()


@dataclass(frozen=True)
class RegionEnter(Event):
    identity: str = ""


@dataclass(frozen=True)
class RegionExit(Event):
    identity: str = ""


@dataclass(frozen=True)
class ClipFinished(Event):
    clip_id: str = ""
    play_id: Optional[int] = None


@dataclass(frozen=True)
class Tick(Event):
    pass


@dataclass(frozen=True)
class AdapterFailure(Event):
    reason: str = ""


_SHUTDOWN = object()

SnapshotListener = Callable[[GuideSnapshot], None]


class GuideEngine:
    def __init__(self, config: GuideConfig, audio: AudioOutput,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config
        self.clock = clock
        t = config.tuning

        self.smoother = SignalSmoother(
            policy=t.smoothing_policy,
            window_seconds=t.smoothing_window_seconds,
            window_count=t.smoothing_window_count,
            cleanup_timeout_seconds=t.cleanup_timeout_seconds,
        )
        self.classifier = ProximityClassifier(config.profiles, t.qualification_policy, t.distance_ceiling)
        self.selector = BeaconSelector(t.qualification_policy)
        self.fsm = PlaybackStateMachine(config.profiles, audio, t.stop_grace_seconds)
        self.audio = audio
        audio.set_finished_callback(self.on_clip_finished)

        self.tick_interval = t.tick_interval_seconds
        self._queue: "queue.Queue" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._last_tick: Optional[float] = None

        self._classifications: Dict[str, Classification] = {}
        self._snapshot = IDLE_SNAPSHOT
        self._snapshot_lock = threading.Lock()
        self._listeners: List[SnapshotListener] = []

    # ---- thread-safe sink used by sources, audio and API ----

    def submit(self, event: Event):
        self._queue.put(event)

    def start_session(self):
        self.submit(StartSession(at=self.clock()))

    def stop_session(self, reason: Optional[str] = None):
        self.submit(StopSession(reason, at=self.clock()))

    def on_reading_batch(self, readings: Sequence[BeaconReading]):
        self.submit(ReadingBatch(tuple(readings or ()), at=self.clock()))

    def on_region_enter(self, identity: str):
        self.submit(RegionEnter(identity, at=self.clock()))

    def on_region_exit(self, identity: str):
        self.submit(RegionExit(identity, at=self.clock()))

    def on_clip_finished(self, clip_id: str, play_id: Optional[int] = None):
        self.submit(ClipFinished(clip_id, play_id, at=self.clock()))

    def on_adapter_failure(self, reason: str):
        self.submit(AdapterFailure(reason, at=self.clock()))

    # ---- observers ----

    def snapshot(self) -> GuideSnapshot:
        with self._snapshot_lock:
            return self._snapshot

    def add_listener(self, listener: SnapshotListener):
        with self._snapshot_lock:
            self._listeners.append(listener)

    def remove_listener(self, listener: SnapshotListener):
        with self._snapshot_lock:
            if listener in self._listeners:
                self._listeners.remove(listener)

    # ---- consumer ----

    def start(self):
        """Run the consumer on a daemon thread."""
        if self._thread and self._thread.is_alive():
            return
        self._running = True
        self._thread = threading.Thread(target=self._run, name="audium-engine", daemon=True)
        self._thread.start()
        logger.info("Guide engine started", "ENGINE")

    def stop(self, timeout: float = 5.0):
        """Finish queued events, then stop the consumer."""
        self._queue.put(_SHUTDOWN)
        if self._thread:
            self._thread.join(timeout=timeout)
            self._thread = None
        self._running = False
        logger.info("Guide engine stopped", "ENGINE")

    def _run(self):
        while self._running:
            try:
                event = self._queue.get(timeout=self.tick_interval)
            except queue.Empty:
                event = Tick(at=self.clock())
            if event is _SHUTDOWN:
                break
            self.process(event)
            now = self.clock()
            if not isinstance(event, Tick) and (self._last_tick is None or now - self._last_tick >= self.tick_interval):
                # keep deadlines and stale purges moving under a busy queue
                self.process(Tick(at=now))

    def run_pending(self) -> int:
        """Process everything queued so far on the calling thread."""
        count = 0
        while True:
            try:
                event = self._queue.get_nowait()
            except queue.Empty:
                return count
            if event is _SHUTDOWN:
                continue
            self.process(event)
            count += 1

    def process(self, event: Event):
        """Apply one event. Never raises."""
        now = event.at if event.at is not None else self.clock()
        try:
            if isinstance(event, ReadingBatch):
                self._handle_batch(event.readings, now)
            elif isinstance(event, Tick):
                self._handle_tick(now)
            elif isinstance(event, ClipFinished):
                self.fsm.on_clip_finished(event.clip_id, now, event.play_id)
            elif isinstance(event, RegionExit):
                self._handle_region_exit(event.identity, now)
            elif isinstance(event, RegionEnter):
                logger.info(f"Entered beacon region: {event.identity}", "ENGINE")
            elif isinstance(event, StartSession):
                self._reset_tracking()
                self.fsm.start_session(now)
            elif isinstance(event, StopSession):
                self.fsm.stop_session(now, event.reason)
                self._reset_tracking()
            elif isinstance(event, AdapterFailure):
                self.fsm.on_adapter_failure(event.reason, now)
                self._reset_tracking()
            else:
                logger.warning(f"Unknown event {event!r}", "ENGINE")
        except AdapterUnavailable as e:
            self.fsm.on_adapter_failure(str(e), now)
            self._reset_tracking()
        except Exception as e:
            logger.error(f"Failed to process {type(event).__name__}", "ENGINE", e)
        self._publish()

    # ---- handlers ----

    def _reset_tracking(self):
        self.smoother.reset_all()
        self._classifications.clear()

    @staticmethod
    def _well_formed(r) -> bool:
        if not isinstance(r, BeaconReading) or not r.identity:
            return False
        try:
            int(r.rssi)
            float(r.distance)
            float(r.observed_at)
        except (TypeError, ValueError):
            return False
        return True

    def _handle_batch(self, readings: Sequence, now: float):
        if not self.fsm.session_active:
            return

        latest: Dict[str, BeaconReading] = {}
        for r in readings or ():
            if not self._well_formed(r):
                logger.debug(f"Dropping malformed reading {r!r}", "ENGINE")
                continue
            self.smoother.record(r)
            latest[r.identity] = r

        classifications = []
        for identity, reading in latest.items():
            c = self.classifier.classify(identity, reading, self.smoother.estimate(identity))
            classifications.append(c)
        self._classifications = {c.identity: c for c in classifications}

        candidate = self.selector.select(classifications, self.fsm.current_beacon)
        rssi = self._classifications[candidate].estimate.rssi if candidate else None
        self.fsm.on_candidate(candidate, now, rssi)

        if classifications:
            logger.debug("Scanned beacons: " + "; ".join(
                f"{c.identity} RSSI {c.estimate.rssi:.1f} dist {c.estimate.distance:.2f}m "
                f"{c.tier.value}{' *' if c.qualifies else ''}" for c in classifications
            ), "ENGINE")

    def _handle_tick(self, now: float):
        self._last_tick = now
        self.fsm.tick(now)
        for identity in self.smoother.purge_stale(now):
            self.fsm.forget(identity)
            self._classifications.pop(identity, None)

    def _handle_region_exit(self, identity: str, now: float):
        logger.info(f"Exited beacon region: {identity}", "ENGINE")
        self.smoother.forget(identity)
        self._classifications.pop(identity, None)
        self.fsm.on_region_exit(identity, now)

    # ---- snapshots ----

    def _view(self, est: SmoothedEstimate) -> BeaconView:
        c = self._classifications.get(est.identity)
        profile = self.config.profiles.get(est.identity)
        return BeaconView(
            identity=est.identity,
            name=profile.name if profile else None,
            rssi=est.rssi,
            distance=est.distance,
            tier=c.tier if c else tier_for(est.distance, est.last_raw_rssi),
            qualifies=bool(c and c.qualifies),
            known=profile is not None,
        )

    def _build_snapshot(self) -> GuideSnapshot:
        fsm = self.fsm
        visible = tuple(self._view(est) for est in self.smoother.visible())
        return GuideSnapshot(
            session_active=fsm.session_active,
            state=fsm.state,
            current_beacon=fsm.current_beacon,
            current_clip=fsm.current_clip,
            status_note=fsm.status_note,
            pending_stop_deadline=fsm.session.pending_stop_deadline,
            narration_cursor=tuple(sorted(fsm.session.narration_cursor.items())),
            qualifying=tuple(v for v in visible if v.qualifies),
            visible=visible,
        )

    def _publish(self):
        snap = self._build_snapshot()
        with self._snapshot_lock:
            changed = snap != self._snapshot
            self._snapshot = snap
            listeners = list(self._listeners)
        if not changed:
            return
        for listener in listeners:
            try:
                listener(snap)
            except Exception as e:
                logger.error("Snapshot listener failed", "ENGINE", e)
