#!/usr/bin/env python3
"""
Data model for the guide: readings, profiles, smoothed estimates,
classifications, playback state and the snapshot handed to observers.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional, Tuple


def canonical_identity(raw: str) -> str:
    """Beacon identities are compared as upper-case UUID strings."""
    return (raw or "").strip().upper()


class ProximityTier(str, Enum):
    IMMEDIATE = "immediate"  # < 0.5m
    NEAR = "near"            # 0.5-3m
    FAR = "far"              # > 3m
    UNKNOWN = "unknown"      # invalid reading or no distance estimate


class QualificationPolicy(str, Enum):
    SIGNAL_FLOOR = "signal_floor"
    DISTANCE_CEILING = "distance_ceiling"


class SmoothingPolicy(str, Enum):
    TIME = "time"
    COUNT = "count"


class PlaybackState(str, Enum):
    IDLE = "idle"                  # no session
    NO_BEACON = "no_beacon"        # session running, nothing playing
    PLAYING = "playing"            # audio for current beacon is active
    STOP_PENDING = "stop_pending"  # current beacon lost, grace timer running


@dataclass(frozen=True)
class BeaconReading:
    identity: str
    rssi: int            # dBm; 0 means the radio could not measure it
    distance: float      # metres; negative means unknown
    observed_at: float   # monotonic seconds

    @property
    def valid(self) -> bool:
        return self.rssi != 0


@dataclass(frozen=True)
class BeaconProfile:
    identity: str
    name: str
    rssi_threshold: int
    narration: Tuple[str, ...] = ()
    background: Optional[str] = None
    distance_ceiling: Optional[float] = None


@dataclass(frozen=True)
class SmoothedEstimate:
    identity: str
    rssi: float
    distance: float
    samples: int
    last_seen: float
    last_raw_rssi: int


@dataclass(frozen=True)
class Classification:
    identity: str
    qualifies: bool
    tier: ProximityTier
    estimate: SmoothedEstimate
    known: bool = True


@dataclass
class SessionState:
    """Mutable session state, owned by the playback state machine."""
    current_beacon: Optional[str] = None
    narration_cursor: Dict[str, int] = field(default_factory=dict)
    pending_stop_deadline: Optional[float] = None

    def clear(self):
        self.current_beacon = None
        self.narration_cursor.clear()
        self.pending_stop_deadline = None


@dataclass(frozen=True)
class BeaconView:
    """Read-only beacon row for observers."""
    identity: str
    name: Optional[str]
    rssi: float
    distance: float
    tier: ProximityTier
    qualifies: bool
    known: bool


@dataclass(frozen=True)
class GuideSnapshot:
    session_active: bool
    state: PlaybackState
    current_beacon: Optional[str]
    current_clip: Optional[str]
    status_note: Optional[str]
    pending_stop_deadline: Optional[float]
    narration_cursor: Tuple[Tuple[str, int], ...] = ()
    qualifying: Tuple[BeaconView, ...] = ()
    visible: Tuple[BeaconView, ...] = ()

    def to_dict(self) -> dict:
        def row(b: BeaconView) -> dict:
            return {
                'identity': b.identity,
                'name': b.name,
                'rssi': round(b.rssi, 1),
                'distance': round(b.distance, 2),
                'tier': b.tier.value,
                'qualifies': b.qualifies,
                'known': b.known,
            }
        return {
            'session_active': self.session_active,
            'state': self.state.value,
            'current_beacon': self.current_beacon,
            'current_clip': self.current_clip,
            'status_note': self.status_note,
            'pending_stop_deadline': self.pending_stop_deadline,
            'narration_cursor': dict(self.narration_cursor),
            'qualifying': [row(b) for b in self.qualifying],
            'visible': [row(b) for b in self.visible],
        }


IDLE_SNAPSHOT = GuideSnapshot(
    session_active=False,
    state=PlaybackState.IDLE,
    current_beacon=None,
    current_clip=None,
    status_note=None,
    pending_stop_deadline=None,
)
