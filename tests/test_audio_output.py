import threading
import time

import pytest

from audium.audio_output import RecordingAudioOutput, SubprocessAudioOutput
from audium.errors import AdapterUnavailable, AssetUnavailable

# The clip path is appended to the player command; under `sh -c` it lands in $1
SLOW_PLAYER = ["sh", "-c", "exec sleep 5", "player"]
COUNTING_PLAYER = ["sh", "-c", 'echo x >> "$1.plays"', "player"]


@pytest.fixture
def audio_dir(tmp_path):
    (tmp_path / "clip.wav").write_bytes(b"RIFF")
    return tmp_path


class Finished:
    def __init__(self):
        self.calls = []
        self.event = threading.Event()

    def __call__(self, clip_id, play_id):
        self.calls.append((clip_id, play_id))
        self.event.set()


def make_output(audio_dir, player):
    out = SubprocessAudioOutput(str(audio_dir), player)
    finished = Finished()
    out.set_finished_callback(finished)
    return out, finished


def wait_for(condition, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if condition():
            return True
        time.sleep(0.02)
    return False


def test_missing_clip_file(audio_dir):
    out, finished = make_output(audio_dir, ["true"])
    with pytest.raises(AssetUnavailable) as excinfo:
        out.play("nope.wav")
    assert excinfo.value.clip_id == "nope.wav"
    assert finished.calls == []


def test_missing_player_binary(audio_dir):
    out, _ = make_output(audio_dir, ["audium-no-such-player"])
    with pytest.raises(AdapterUnavailable):
        out.play("clip.wav")


def test_natural_end_reports_play_id(audio_dir):
    out, finished = make_output(audio_dir, ["true"])
    play_id = out.play("clip.wav")
    assert finished.event.wait(5.0)
    assert finished.calls == [("clip.wav", play_id)]


def test_stopped_clip_is_not_reported(audio_dir):
    out, finished = make_output(audio_dir, SLOW_PLAYER)
    try:
        out.play("clip.wav")
        out.stop("clip.wav")
        assert not finished.event.wait(0.5)
        assert finished.calls == []
    finally:
        out.stop_all()


def test_replay_gets_new_play_id(audio_dir):
    out, _ = make_output(audio_dir, SLOW_PLAYER)
    try:
        first = out.play("clip.wav")
        second = out.play("clip.wav")
        assert second != first
    finally:
        out.stop_all()


def test_looped_clip_is_relaunched(audio_dir):
    out, finished = make_output(audio_dir, COUNTING_PLAYER)
    plays = audio_dir / "clip.wav.plays"
    try:
        out.play("clip.wav", loop=True)
        assert wait_for(lambda: plays.exists() and len(plays.read_text().split()) >= 3)
    finally:
        out.stop_all()
    assert finished.calls == []


def test_recording_output_reports_play_id():
    out = RecordingAudioOutput()
    finished = Finished()
    out.set_finished_callback(finished)
    first = out.play("a.wav")
    out.stop("a.wav")
    out.finish("a.wav")
    assert finished.calls == []
    second = out.play("a.wav")
    out.finish("a.wav")
    assert finished.calls == [("a.wav", second)]
    assert second != first
