import os
import tempfile

# Keep test runs from writing ./logs; must happen before audium modules import
os.environ.setdefault('AUDIUM_LOG_DIR', tempfile.mkdtemp(prefix='audium-logs-'))

import pytest

from audium.audio_output import RecordingAudioOutput
from audium.config import parse_config
from audium.guide_engine import GuideEngine, ReadingBatch, StartSession
from audium.models import BeaconReading

A = "AAAAAAAA-0000-0000-0000-000000000001"
B = "BBBBBBBB-0000-0000-0000-000000000002"
C = "CCCCCCCC-0000-0000-0000-000000000003"
UNKNOWN = "DDDDDDDD-0000-0000-0000-000000000004"


def exhibit(**tuning):
    return parse_config({
        "tuning": tuning,
        "beacons": [
            {"uuid": A, "name": "Atrium", "rssi_threshold": -65, "narration": ["a1.wav", "a2.wav"]},
            {"uuid": B, "name": "Bronze Age", "rssi_threshold": -75,
             "narration": ["b1.wav", "b2.wav", "b3.wav"], "background": "b_bg.wav"},
            {"uuid": C, "name": "Ceramics", "rssi_threshold": -70, "narration": [],
             "background": "c_bg.wav", "distance_ceiling": 2.0},
        ],
    })


def reading(identity, rssi, t, distance=1.0):
    return BeaconReading(identity, rssi, distance, t)


@pytest.fixture
def config():
    return exhibit()


@pytest.fixture
def audio():
    return RecordingAudioOutput()


@pytest.fixture
def engine(config, audio):
    eng = GuideEngine(config, audio, clock=lambda: 0.0)
    eng.process(StartSession(at=0.0))
    return eng


def batch(engine, t, *pairs):
    """Feed one ranging cycle of (identity, rssi) pairs at time t."""
    engine.process(ReadingBatch(tuple(reading(i, r, t) for i, r in pairs), at=t))
