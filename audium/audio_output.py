#!/usr/bin/env python3
"""
Audio Output adapters.

The playback state machine only ever calls play(clip_id, loop) and
stop(clip_id). Every play() returns a play id; one-shot clips that run to
the end are reported through the finished callback as (clip_id, play_id) so
narration can advance and a late report for an older play can be told apart.
Stopped clips are not reported.

- SubprocessAudioOutput: plays files from an audio directory with a system
  player binary (aplay by default), fire-and-forget
- RecordingAudioOutput: keeps a command log in memory (dry runs and tests)
"""

from __future__ import annotations

import itertools
import subprocess
import threading
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Set, Tuple

from .errors import AdapterUnavailable, AssetUnavailable
from .logging_config import get_logger

logger = get_logger()

FinishedCallback = Callable[[str, int], None]


class AudioOutput:
    """Minimal interface that any audio output must implement."""

    def __init__(self):
        self._on_finished: Optional[FinishedCallback] = None
        self._plays = itertools.count(1)
        self._plays_lock = threading.Lock()

    def set_finished_callback(self, callback: Optional[FinishedCallback]):
        """Register the function called with (clip_id, play_id) when a one-shot clip ends."""
        self._on_finished = callback

    def _next_play_id(self) -> int:
        with self._plays_lock:
            return next(self._plays)

    def _notify_finished(self, clip_id: str, play_id: int):
        if self._on_finished:
            try:
                self._on_finished(clip_id, play_id)
            except Exception as e:
                logger.error(f"Finished callback failed for {clip_id}", "AUDIO", e)

    def play(self, clip_id: str, loop: bool = False) -> int:
        """Start a clip and return its play id. Raises AssetUnavailable if it cannot be started."""
        raise NotImplementedError

    def stop(self, clip_id: str):
        """Stop a clip if it is playing."""
        raise NotImplementedError

    def stop_all(self):
        raise NotImplementedError


class RecordingAudioOutput(AudioOutput):
    """
    In-memory audio output.

    Every play/stop is appended to `commands` as ("play", clip, loop) or
    ("stop", clip). finish(clip_id) simulates a clip reaching its end and
    reports the play id it was started with.
    """

    def __init__(self, missing: Optional[Set[str]] = None):
        super().__init__()
        self.missing: Set[str] = set(missing or ())
        self.commands: List[Tuple] = []
        self.failed: List[str] = []
        self.playing: Dict[str, bool] = {}
        self.play_ids: Dict[str, int] = {}
        self._lock = threading.Lock()

    def play(self, clip_id: str, loop: bool = False) -> int:
        if clip_id in self.missing:
            self.failed.append(clip_id)
            raise AssetUnavailable(clip_id, "file not found")
        with self._lock:
            self.commands.append(("play", clip_id, loop))
            self.playing[clip_id] = loop
            play_id = self.play_ids[clip_id] = self._next_play_id()
        logger.info(f"[DRY-RUN] play {clip_id}{' (loop)' if loop else ''}", "AUDIO")
        return play_id

    def stop(self, clip_id: str):
        with self._lock:
            self.commands.append(("stop", clip_id))
            self.playing.pop(clip_id, None)
            self.play_ids.pop(clip_id, None)
        logger.info(f"[DRY-RUN] stop {clip_id}", "AUDIO")

    def stop_all(self):
        for clip_id in list(self.playing):
            self.stop(clip_id)

    def finish(self, clip_id: str):
        """Pretend a one-shot clip played to the end."""
        with self._lock:
            loop = self.playing.get(clip_id)
            if loop is None or loop:
                return
            del self.playing[clip_id]
            play_id = self.play_ids.pop(clip_id)
        self._notify_finished(clip_id, play_id)

    def plays(self) -> List[str]:
        return [c[1] for c in self.commands if c[0] == "play"]

    def stops(self) -> List[str]:
        return [c[1] for c in self.commands if c[0] == "stop"]

    def clear(self):
        with self._lock:
            self.commands.clear()


class SubprocessAudioOutput(AudioOutput):
    """Plays clips from audio_dir through a system player process."""

    def __init__(self, audio_dir: str = "audio", player: Sequence[str] = ("aplay", "-q")):
        """
        Args:
            audio_dir: Directory containing the clip files (clip id = file name)
            player: Player command; the clip path is appended
        """
        super().__init__()
        self.audio_dir = Path(audio_dir)
        self.player = list(player)
        self._procs: Dict[str, subprocess.Popen] = {}
        self._lock = threading.Lock()

        if not self.audio_dir.is_dir():
            logger.warning(f"Audio directory {self.audio_dir} does not exist", "AUDIO")
        logger.info(f"Audio output using {' '.join(self.player)} from {self.audio_dir}", "AUDIO")

    def _clip_path(self, clip_id: str) -> Path:
        path = self.audio_dir / clip_id
        if not path.is_file():
            raise AssetUnavailable(clip_id, f"{path} not found")
        return path

    def _launch(self, path: Path) -> subprocess.Popen:
        try:
            return subprocess.Popen(
                self.player + [str(path)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )
        except FileNotFoundError as e:
            raise AdapterUnavailable("audio output", f"player {self.player[0]} not installed") from e
        except OSError as e:
            raise AssetUnavailable(path.name, str(e)) from e

    def play(self, clip_id: str, loop: bool = False) -> int:
        path = self._clip_path(clip_id)
        self.stop(clip_id)
        proc = self._launch(path)
        play_id = self._next_play_id()
        with self._lock:
            self._procs[clip_id] = proc
        watcher = threading.Thread(target=self._watch, args=(clip_id, play_id, path, proc, loop), daemon=True)
        watcher.start()
        logger.debug(f"Playing {clip_id}{' (loop)' if loop else ''} pid={proc.pid} play={play_id}", "AUDIO")
        return play_id

    def _watch(self, clip_id: str, play_id: int, path: Path, proc: subprocess.Popen, loop: bool):
        """Wait for the player to exit; relaunch loops, report one-shots."""
        while True:
            proc.wait()
            with self._lock:
                if self._procs.get(clip_id) is not proc:
                    return  # stopped or replaced
                if not loop:
                    del self._procs[clip_id]
                    break
                try:
                    proc = self._launch(path)
                except Exception as e:
                    del self._procs[clip_id]
                    logger.error(f"Failed to relaunch looped clip {clip_id}", "AUDIO", e)
                    return
                self._procs[clip_id] = proc
        if proc.returncode != 0:
            logger.warning(f"Player exited with {proc.returncode} for {clip_id}", "AUDIO")
        self._notify_finished(clip_id, play_id)

    def stop(self, clip_id: str):
        with self._lock:
            proc = self._procs.pop(clip_id, None)
        if proc is None or proc.poll() is not None:
            return
        proc.terminate()
        try:
            proc.wait(timeout=1)
        except subprocess.TimeoutExpired:
            proc.kill()
        logger.debug(f"Stopped {clip_id}", "AUDIO")

    def stop_all(self):
        with self._lock:
            clip_ids = list(self._procs)
        for clip_id in clip_ids:
            self.stop(clip_id)
