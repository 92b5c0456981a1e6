import pytest

from audium.audio_output import RecordingAudioOutput
from audium.models import PlaybackState
from audium.playback_fsm import PlaybackStateMachine

from conftest import A, B, C, exhibit


@pytest.fixture
def audio():
    return RecordingAudioOutput()


@pytest.fixture
def fsm(audio):
    machine = PlaybackStateMachine(exhibit().profiles, audio, stop_grace_seconds=3.0)
    machine.start_session(0.0)
    return machine


def test_session_start_goes_to_no_beacon(audio):
    machine = PlaybackStateMachine(exhibit().profiles, audio)
    assert machine.state == PlaybackState.IDLE
    machine.start_session(0.0)
    assert machine.state == PlaybackState.NO_BEACON
    assert machine.current_beacon is None


def test_candidate_ignored_without_session(audio):
    machine = PlaybackStateMachine(exhibit().profiles, audio)
    machine.on_candidate(A, 0.0)
    assert machine.state == PlaybackState.IDLE
    assert audio.commands == []


def test_arrival_plays_first_narration_clip(fsm, audio):
    fsm.on_candidate(A, 1.0, rssi=-60)
    assert fsm.state == PlaybackState.PLAYING
    assert fsm.current_beacon == A
    assert fsm.cursor(A) == 0
    assert audio.commands == [("play", "a1.wav", False)]
    assert fsm.current_clip == "a1.wav"
    assert "RSSI -60" in fsm.status_note


def test_arrival_starts_background_loop_and_narration(fsm, audio):
    fsm.on_candidate(B, 1.0)
    assert audio.commands == [("play", "b_bg.wav", True), ("play", "b1.wav", False)]


def test_same_candidate_is_idempotent(fsm, audio):
    fsm.on_candidate(A, 1.0)
    for t in range(2, 12):
        fsm.on_candidate(A, float(t))
    assert audio.commands == [("play", "a1.wav", False)]


def test_flicker_shorter_than_grace_never_stops(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_candidate(None, 1.0)
    assert fsm.state == PlaybackState.STOP_PENDING
    assert fsm.session.pending_stop_deadline == 4.0
    fsm.on_candidate(A, 2.0)
    assert fsm.state == PlaybackState.PLAYING
    assert fsm.session.pending_stop_deadline is None
    fsm.tick(10.0)
    assert audio.stops() == []
    assert audio.plays() == ["a1.wav"]


def test_grace_expiry_stops_once(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_candidate(None, 1.0)
    fsm.tick(3.9)
    assert audio.stops() == []
    fsm.tick(4.0)
    assert audio.stops() == ["a1.wav"]
    assert fsm.state == PlaybackState.NO_BEACON
    assert fsm.current_beacon is None
    assert fsm.session.pending_stop_deadline is None
    fsm.tick(5.0)
    fsm.on_candidate(None, 6.0)
    assert audio.stops() == ["a1.wav"]


def test_repeated_none_does_not_extend_deadline(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_candidate(None, 1.0)
    fsm.on_candidate(None, 2.0)
    fsm.on_candidate(None, 3.0)
    assert fsm.session.pending_stop_deadline == 4.0
    fsm.on_candidate(None, 4.0)
    assert audio.stops() == ["a1.wav"]


def test_expiry_stops_every_active_layer(fsm, audio):
    fsm.on_candidate(B, 0.0)
    fsm.on_candidate(None, 1.0)
    fsm.tick(4.5)
    assert sorted(audio.stops()) == ["b1.wav", "b_bg.wav"]


def test_switch_is_immediate(fsm, audio):
    fsm.on_candidate(A, 0.0)
    audio.clear()
    fsm.on_candidate(B, 1.0)
    assert audio.commands == [
        ("stop", "a1.wav"),
        ("play", "b_bg.wav", True),
        ("play", "b1.wav", False),
    ]
    assert fsm.current_beacon == B
    assert fsm.cursor(A) is None
    assert fsm.cursor(B) == 0


def test_switch_from_stop_pending(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_candidate(None, 1.0)
    fsm.on_candidate(B, 2.0)
    assert fsm.state == PlaybackState.PLAYING
    assert fsm.current_beacon == B
    assert fsm.session.pending_stop_deadline is None
    assert audio.stops() == ["a1.wav"]
    fsm.tick(10.0)
    assert fsm.current_beacon == B


def test_narration_advances_on_completion(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_clip_finished("a1.wav", 5.0)
    assert fsm.cursor(A) == 1
    assert audio.plays() == ["a1.wav", "a2.wav"]
    fsm.on_clip_finished("a2.wav", 9.0)
    assert fsm.cursor(A) == 2
    assert fsm.current_clip is None
    assert audio.plays() == ["a1.wav", "a2.wav"]
    fsm.on_clip_finished("a2.wav", 10.0)
    assert fsm.cursor(A) == 2


def test_background_keeps_looping_after_narration(fsm, audio):
    fsm.on_candidate(B, 0.0)
    for clip in ("b1.wav", "b2.wav", "b3.wav"):
        fsm.on_clip_finished(clip, 1.0)
    assert fsm.cursor(B) == 3
    assert fsm.current_clip == "b_bg.wav"
    assert "background continues" in fsm.status_note
    assert audio.stops() == []


def test_completion_of_other_clip_is_ignored(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_clip_finished("b1.wav", 1.0)
    assert fsm.cursor(A) == 0
    assert audio.plays() == ["a1.wav"]


def test_resume_keeps_narration_position(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_clip_finished("a1.wav", 1.0)
    fsm.on_candidate(None, 2.0)
    fsm.on_candidate(A, 3.0)
    assert fsm.cursor(A) == 1
    assert audio.plays() == ["a1.wav", "a2.wav"]
    assert audio.stops() == []


def test_narration_continues_during_grace(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_candidate(None, 1.0)
    fsm.on_clip_finished("a1.wav", 2.0)
    assert audio.plays() == ["a1.wav", "a2.wav"]
    fsm.tick(4.0)
    assert audio.stops() == ["a2.wav"]


def test_fresh_arrival_restarts_narration(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_clip_finished("a1.wav", 1.0)
    fsm.on_candidate(None, 2.0)
    fsm.tick(5.0)
    assert fsm.cursor(A) == 0
    fsm.on_candidate(A, 6.0)
    assert audio.plays() == ["a1.wav", "a2.wav", "a1.wav"]


def test_region_exit_of_current_beacon_starts_grace(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_region_exit(B, 1.0)
    assert fsm.state == PlaybackState.PLAYING
    fsm.on_region_exit(A, 1.0)
    assert fsm.state == PlaybackState.STOP_PENDING
    assert "exited the region" in fsm.status_note
    fsm.tick(4.0)
    assert audio.stops() == ["a1.wav"]


def test_missing_background_does_not_block_narration(audio):
    audio.missing.add("b_bg.wav")
    machine = PlaybackStateMachine(exhibit().profiles, audio)
    machine.start_session(0.0)
    machine.on_candidate(B, 1.0)
    assert audio.plays() == ["b1.wav"]
    assert "b_bg.wav" in machine.status_note
    machine.on_candidate(B, 2.0)
    machine.on_candidate(B, 3.0)
    assert audio.failed == ["b_bg.wav"]


def test_missing_narration_clip_is_skipped(audio):
    audio.missing.add("b1.wav")
    machine = PlaybackStateMachine(exhibit().profiles, audio)
    machine.start_session(0.0)
    machine.on_candidate(B, 1.0)
    assert audio.plays() == ["b_bg.wav", "b2.wav"]
    assert machine.cursor(B) == 1
    assert audio.failed == ["b1.wav"]


def test_background_only_profile(fsm, audio):
    fsm.on_candidate(C, 0.0)
    assert audio.commands == [("play", "c_bg.wav", True)]
    assert fsm.cursor(C) == 0
    assert fsm.current_clip == "c_bg.wav"


def test_stop_session_clears_everything(fsm, audio):
    fsm.on_candidate(B, 0.0)
    fsm.on_candidate(None, 1.0)
    fsm.stop_session(2.0)
    assert fsm.state == PlaybackState.IDLE
    assert fsm.current_beacon is None
    assert fsm.session.narration_cursor == {}
    assert fsm.session.pending_stop_deadline is None
    assert sorted(audio.stops()) == ["b1.wav", "b_bg.wav"]
    fsm.tick(10.0)
    assert len(audio.stops()) == 2


def test_adapter_failure_forces_idle(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_adapter_failure("Bluetooth permission withdrawn", 1.0)
    assert fsm.state == PlaybackState.IDLE
    assert "Bluetooth permission withdrawn" in fsm.status_note
    assert audio.stops() == ["a1.wav"]


def test_arrival_drops_cursor_of_expired_beacon(fsm, audio):
    fsm.on_candidate(A, 0.0)
    fsm.on_candidate(None, 1.0)
    fsm.tick(4.0)
    assert fsm.session.narration_cursor == {A: 0}
    fsm.on_candidate(B, 5.0)
    assert fsm.session.narration_cursor == {B: 0}


def test_completion_from_older_play_is_ignored(fsm, audio):
    fsm.on_candidate(A, 0.0)
    play_id = audio.play_ids["a1.wav"]
    fsm.on_clip_finished("a1.wav", 1.0, play_id=play_id + 100)
    assert fsm.cursor(A) == 0
    assert audio.plays() == ["a1.wav"]
    fsm.on_clip_finished("a1.wav", 2.0, play_id=play_id)
    assert fsm.cursor(A) == 1
    assert audio.plays() == ["a1.wav", "a2.wav"]


def test_forget_keeps_current_cursor(fsm):
    fsm.on_candidate(A, 0.0)
    fsm.forget(A)
    assert fsm.cursor(A) == 0


def test_invariants_hold_through_random_walk(fsm, audio):
    import random
    rng = random.Random(7)
    profiles = exhibit().profiles
    most_recent = None
    t = 0.0
    for _ in range(500):
        t += rng.uniform(0.1, 1.5)
        roll = rng.random()
        if roll < 0.5:
            fsm.on_candidate(rng.choice([A, B, C, None]), t)
        elif roll < 0.8 and fsm.current_clip:
            audio.finish(fsm.current_clip)
            fsm.on_clip_finished(fsm.current_clip, t)
        elif roll < 0.9:
            fsm.on_region_exit(rng.choice([A, B, C]), t)
        else:
            fsm.tick(t)

        current = fsm.current_beacon
        assert current is None or current in profiles
        if current is not None:
            most_recent = current
        assert set(fsm.session.narration_cursor) <= {current, most_recent} - {None}
        for identity, cursor in fsm.session.narration_cursor.items():
            assert 0 <= cursor <= len(profiles[identity].narration)
        has_deadline = fsm.session.pending_stop_deadline is not None
        assert has_deadline == (fsm.state == PlaybackState.STOP_PENDING)
        if has_deadline:
            assert current is not None
