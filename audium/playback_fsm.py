#!/usr/bin/env python3
"""
Playback FSM for the audio guide
Decides which beacon's audio plays and when it stops after the beacon is lost

States:
    IDLE          no session
    NO_BEACON     session running, nothing playing
    PLAYING       audio for the current beacon is active
    STOP_PENDING  current beacon lost, audio still playing until the deadline

The stop timer is a single deadline slot compared against the clock on every
event, so a tick arriving after the deadline was cleared is a no-op.
All methods must be called from one thread (the engine's consumer).
"""

from __future__ import annotations

from typing import Dict, Optional

from .audio_output import AudioOutput
from .errors import AssetUnavailable
from .logging_config import get_logger
from .models import BeaconProfile, PlaybackState, SessionState

logger = get_logger()


class PlaybackStateMachine:
    def __init__(self, profiles: Dict[str, BeaconProfile], audio: AudioOutput,
                 stop_grace_seconds: float = 3.0):
        self.profiles = profiles
        self.audio = audio
        self.stop_grace_seconds = stop_grace_seconds

        self.state = PlaybackState.IDLE
        self.session = SessionState()
        self.status_note: Optional[str] = None
        # Active clip per layer
        self.narration_clip: Optional[str] = None
        self.background_clip: Optional[str] = None
        # Play id of the active narration clip; completions from other plays are stale
        self.narration_play_id: Optional[int] = None

    # ---- observers ----

    @property
    def session_active(self) -> bool:
        return self.state != PlaybackState.IDLE

    @property
    def current_beacon(self) -> Optional[str]:
        return self.session.current_beacon

    @property
    def current_clip(self) -> Optional[str]:
        return self.narration_clip or self.background_clip

    def cursor(self, identity: str) -> Optional[int]:
        return self.session.narration_cursor.get(identity)

    def _label(self, identity: str) -> str:
        profile = self.profiles.get(identity)
        if profile and profile.name and profile.name != identity:
            return f"{profile.name} ({identity})"
        return identity

    def _note(self, message: str):
        self.status_note = message
        logger.note(message, "FSM")

    def _transition(self, new_state: PlaybackState, reason: str):
        if new_state != self.state:
            logger.info(f"Playback state change: {self.state.value} → {new_state.value} ({reason})", "FSM")
            self.state = new_state

    # ---- session ----

    def start_session(self, now: float):
        if self.state != PlaybackState.IDLE:
            return
        self.session.clear()
        self._transition(PlaybackState.NO_BEACON, "session start")
        self._note("Session started.")

    def stop_session(self, now: float, reason: Optional[str] = None):
        if self.state == PlaybackState.IDLE:
            return
        self._stop_beacon_audio()
        self.session.clear()
        self._transition(PlaybackState.IDLE, reason or "session stop")
        self._note(f"Session stopped: {reason}." if reason else "Session stopped.")

    def on_adapter_failure(self, reason: str, now: float):
        """A collaborator can no longer work (e.g. Bluetooth permission withdrawn)."""
        logger.error(f"Adapter failure: {reason}", "FSM")
        self.stop_session(now, reason)

    # ---- ranging ----

    def on_candidate(self, candidate: Optional[str], now: float, rssi: Optional[float] = None):
        """Apply one selector output."""
        self._expire(now)
        if self.state == PlaybackState.IDLE:
            return

        current = self.session.current_beacon
        if candidate is None:
            if self.state == PlaybackState.PLAYING:
                self._schedule_stop(now, f"No beacon in range; stopping {self._label(current)} in "
                                         f"{self.stop_grace_seconds:g}s unless it returns.")
            return

        if candidate == current:
            if self.state == PlaybackState.STOP_PENDING:
                self.session.pending_stop_deadline = None
                self._transition(PlaybackState.PLAYING, "beacon reacquired")
                self._note(f"Beacon {self._label(candidate)} back in range; continuing playback.")
            else:
                logger.debug(f"Closest beacon unchanged ({candidate}); continuing current playback", "FSM")
            return

        # A different qualifying beacon displaces the current one immediately
        self.session.pending_stop_deadline = None
        if current is not None:
            self._stop_beacon_audio()
            self.session.narration_cursor.pop(current, None)
        self._arrive(candidate, rssi)

    def on_region_exit(self, identity: str, now: float):
        self._expire(now)
        if self.state != PlaybackState.PLAYING or identity != self.session.current_beacon:
            return
        self._schedule_stop(now, f"Beacon {self._label(identity)} exited the region; stopping in "
                                 f"{self.stop_grace_seconds:g}s unless it returns.")

    def tick(self, now: float):
        self._expire(now)

    # ---- narration ----

    def on_clip_finished(self, clip_id: str, now: float, play_id: Optional[int] = None):
        """
        A one-shot clip ran to the end. play_id, when given, must match the
        play that started the active narration clip; a completion queued
        before a switch away and back is otherwise indistinguishable.
        """
        self._expire(now)
        current = self.session.current_beacon
        if current is None or clip_id != self.narration_clip:
            logger.debug(f"Ignoring completion of {clip_id} (not the active narration clip)", "FSM")
            return
        if play_id is not None and play_id != self.narration_play_id:
            logger.debug(f"Ignoring stale completion of {clip_id} (play {play_id}, "
                         f"active play {self.narration_play_id})", "FSM")
            return
        self.narration_clip = None
        self.narration_play_id = None
        self.session.narration_cursor[current] = self.session.narration_cursor.get(current, 0) + 1
        self._play_narration(current)

    def forget(self, identity: str):
        """Beacon purged as stale: drop its cursor unless it is current."""
        if identity != self.session.current_beacon:
            self.session.narration_cursor.pop(identity, None)

    # ---- internals ----

    def _schedule_stop(self, now: float, message: str):
        if self.session.pending_stop_deadline is None:
            self.session.pending_stop_deadline = now + self.stop_grace_seconds
        self._transition(PlaybackState.STOP_PENDING, "beacon lost")
        self._note(message)

    def _expire(self, now: float):
        deadline = self.session.pending_stop_deadline
        if self.state != PlaybackState.STOP_PENDING or deadline is None or now < deadline:
            return
        lost = self.session.current_beacon
        self._stop_beacon_audio()
        self.session.narration_cursor[lost] = 0
        self.session.current_beacon = None
        self.session.pending_stop_deadline = None
        self._transition(PlaybackState.NO_BEACON, "grace period elapsed")
        self._note(f"Audio stopped after beacon {self._label(lost)} lost for more than "
                   f"{self.stop_grace_seconds:g} seconds.")

    def _arrive(self, identity: str, rssi: Optional[float]):
        profile = self.profiles.get(identity)
        if profile is None:
            self.session.current_beacon = None
            self._transition(PlaybackState.NO_BEACON, "no profile")
            self._note(f"No audio mapped for beacon {identity}.")
            return

        self.session.current_beacon = identity
        # Only the current beacon keeps a narration position
        self.session.narration_cursor = {identity: 0}
        self._transition(PlaybackState.PLAYING, f"arrived at {identity}")
        detail = f" with RSSI {rssi:.0f}" if rssi is not None else ""
        self._note(f"Playing audio for beacon {self._label(identity)}{detail}.")

        if profile.background:
            if self._start_clip(identity, profile.background, loop=True) is not None:
                self.background_clip = profile.background
        self._play_narration(identity)

    def _play_narration(self, identity: str):
        """Start narration at the cursor, skipping clips that cannot be played."""
        profile = self.profiles[identity]
        cursor = self.session.narration_cursor.get(identity, 0)
        while cursor < len(profile.narration):
            clip = profile.narration[cursor]
            play_id = self._start_clip(identity, clip, loop=False)
            if play_id is not None:
                self.narration_clip = clip
                self.narration_play_id = play_id
                return
            cursor += 1
            self.session.narration_cursor[identity] = cursor
        logger.info(f"No more narration to play for beacon {identity}", "FSM")
        if profile.narration and self.background_clip:
            self._note(f"Narration finished for beacon {self._label(identity)}; background continues.")

    def _start_clip(self, identity: str, clip_id: str, loop: bool) -> Optional[int]:
        """Returns the play id, or None if the clip could not be started."""
        try:
            return self.audio.play(clip_id, loop=loop)
        except AssetUnavailable as e:
            layer = "background" if loop else "narration"
            logger.error(f"Cannot play {layer} clip {clip_id} for beacon {identity}", "FSM", e)
            self._note(f"Error playing beacon {layer} audio {clip_id}: {e.reason or e}")
            return None

    def _stop_beacon_audio(self):
        for clip in (self.narration_clip, self.background_clip):
            if clip is not None:
                self.audio.stop(clip)
        self.narration_clip = None
        self.narration_play_id = None
        self.background_clip = None
