#!/usr/bin/env python3
"""
Guide configuration: beacon profiles and tuning, loaded once at startup.

The JSON file is validated with pydantic; a few tuning values can be
overridden from the environment for field tests without editing the file:

    AUDIUM_QUALIFICATION_POLICY   signal_floor | distance_ceiling
    AUDIUM_SMOOTHING_POLICY       time | count
    AUDIUM_STOP_GRACE_S           seconds
"""

from __future__ import annotations

import copy
import json
import os
from dataclasses import dataclass
from typing import Dict, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator, model_validator

from .errors import ConfigurationError
from .logging_config import get_logger
from .models import BeaconProfile, QualificationPolicy, SmoothingPolicy, canonical_identity

logger = get_logger()


class ProfileConfig(BaseModel):
    uuid: str
    name: Optional[str] = None
    rssi_threshold: int = Field(-70, lt=0)
    distance_ceiling: Optional[float] = Field(None, gt=0)
    narration: List[str] = Field(default_factory=list)
    background: Optional[str] = None

    @field_validator('uuid')
    @classmethod
    def _canonical_uuid(cls, v: str) -> str:
        v = canonical_identity(v)
        if not v:
            raise ValueError("beacon uuid must not be empty")
        return v

    def to_profile(self) -> BeaconProfile:
        return BeaconProfile(
            identity=self.uuid,
            name=self.name or self.uuid,
            rssi_threshold=self.rssi_threshold,
            narration=tuple(self.narration),
            background=self.background or None,
            distance_ceiling=self.distance_ceiling,
        )


class TuningConfig(BaseModel):
    smoothing_policy: SmoothingPolicy = SmoothingPolicy.TIME
    smoothing_window_seconds: float = Field(3.0, gt=0)
    smoothing_window_count: int = Field(5, ge=1)
    cleanup_timeout_seconds: float = Field(5.0, gt=0)
    stop_grace_seconds: float = Field(3.0, ge=0)
    qualification_policy: QualificationPolicy = QualificationPolicy.SIGNAL_FLOOR
    distance_ceiling: float = Field(1.0, gt=0)
    tick_interval_seconds: float = Field(0.5, gt=0)


class AudioConfig(BaseModel):
    audio_dir: str = "audio"
    player: List[str] = Field(default_factory=lambda: ["aplay", "-q"])

    @field_validator('player')
    @classmethod
    def _player_not_empty(cls, v: List[str]) -> List[str]:
        if not v:
            raise ValueError("player command must not be empty")
        return v


class ScannerConfig(BaseModel):
    scan_interval: float = Field(1.0, gt=0)
    region_exit_seconds: float = Field(10.0, gt=0)
    adapter: Optional[str] = None  # e.g. 'hci0'


class GuideConfigModel(BaseModel):
    tuning: TuningConfig = Field(default_factory=TuningConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    scanner: ScannerConfig = Field(default_factory=ScannerConfig)
    beacons: List[ProfileConfig] = Field(default_factory=list)

    @model_validator(mode='after')
    def _unique_beacons(self):
        seen = set()
        for b in self.beacons:
            if b.uuid in seen:
                raise ValueError(f"duplicate beacon uuid {b.uuid}")
            seen.add(b.uuid)
        return self


@dataclass(frozen=True)
class GuideConfig:
    tuning: TuningConfig
    audio: AudioConfig
    scanner: ScannerConfig
    profiles: Dict[str, BeaconProfile]


# Exhibit shipped with the first prototype
DEFAULT_CONFIG = {
    "tuning": {},
    "audio": {"audio_dir": "audio"},
    "scanner": {},
    "beacons": [
        {"uuid": "9D38C8B0-77F8-4E23-8DBA-1546C4D035A4", "name": "Gallery 1",
         "rssi_threshold": -65, "narration": ["1.wav", "2.wav", "3.wav"], "background": "a1.wav"},
        {"uuid": "3D023D21-83D9-4C48-94FB-48718E22AA14", "name": "Gallery 2",
         "rssi_threshold": -75, "narration": ["4.wav", "5.wav", "6.wav", "7.wav", "8.wav"], "background": "a2.wav"},
        {"uuid": "2D7A9F0C-E0E8-4CC9-A71B-A21DB2D034A1", "name": "Gallery 3",
         "rssi_threshold": -70, "narration": ["9.wav", "10.wav"], "background": "a3.wav"},
        {"uuid": "8C40139D-48F2-46ED-8668-0A3898D7C38E", "name": "Gallery 4",
         "rssi_threshold": -70, "narration": ["11.wav", "12.wav"], "background": "a4.wav"},
    ],
}


def _apply_env_overrides(raw: dict) -> dict:
    tuning = raw.setdefault('tuning', {})
    policy = os.getenv('AUDIUM_QUALIFICATION_POLICY')
    if policy:
        tuning['qualification_policy'] = policy
    smoothing = os.getenv('AUDIUM_SMOOTHING_POLICY')
    if smoothing:
        tuning['smoothing_policy'] = smoothing
    grace = os.getenv('AUDIUM_STOP_GRACE_S')
    if grace:
        tuning['stop_grace_seconds'] = grace
    return raw


def parse_config(raw: dict) -> GuideConfig:
    """Validate a config dict (after env overrides) into a GuideConfig."""
    raw = _apply_env_overrides(copy.deepcopy(raw))
    try:
        model = GuideConfigModel.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid guide configuration: {e}") from e
    profiles = {b.uuid: b.to_profile() for b in model.beacons}
    if not profiles:
        logger.warning("No beacon profiles configured; nothing will ever play", "CONFIG")
    return GuideConfig(tuning=model.tuning, audio=model.audio, scanner=model.scanner, profiles=profiles)


def load_config(config_path: Optional[str] = None) -> GuideConfig:
    """Load the guide config from JSON, or the built-in exhibit if no path."""
    if not config_path:
        logger.info("No config file given; using built-in exhibit profiles", "CONFIG")
        return parse_config(DEFAULT_CONFIG)

    try:
        with open(config_path, 'r') as f:
            raw = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        raise ConfigurationError(f"Cannot read config {config_path}: {e}") from e
    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config {config_path} must be a JSON object")

    config = parse_config(raw)
    t = config.tuning
    logger.info(
        f"Loaded {len(config.profiles)} beacon profile(s) from {config_path} "
        f"(qualification={t.qualification_policy.value}, smoothing={t.smoothing_policy.value}, "
        f"grace={t.stop_grace_seconds:g}s)",
        "CONFIG",
    )
    return config
