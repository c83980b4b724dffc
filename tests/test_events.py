"""Event vocabulary decoding and note tracking."""

import pytest

from wgpu_math.errors import UndecodableIndexError
from wgpu_math.performance_rnn.events import (
    BASS_VELOCITY,
    EVENT_SIZE,
    MAX_SHIFT_INDEX,
    NOTE_OFF,
    NOTE_ON,
    TIME_SHIFT,
    VELOCITY_CHANGE,
    NoteTracker,
    PerformanceEvent,
    decode_event,
    encode_event,
    play_event,
    velocity_fraction,
)


class RecordingSink:

    def __init__(self):
        self.calls = []

    def note_on(self, pitch, velocity_fraction):
        self.calls.append(("note_on", pitch, velocity_fraction))

    def note_off(self, pitch):
        self.calls.append(("note_off", pitch))

    def time_shift(self, delta_seconds):
        self.calls.append(("time_shift", delta_seconds))

    def velocity_change(self, velocity_fraction):
        self.calls.append(("velocity_change", velocity_fraction))


class TestVocabulary:

    def test_sizes(self):
        assert EVENT_SIZE == 364
        assert MAX_SHIFT_INDEX == 355
        assert decode_event(MAX_SHIFT_INDEX) == PerformanceEvent(TIME_SHIFT, 100)

    @pytest.mark.parametrize("index, event_type, value", [
        (0, NOTE_ON, 0),
        (60, NOTE_ON, 60),
        (127, NOTE_ON, 127),
        (128, NOTE_OFF, 0),
        (255, NOTE_OFF, 127),
        (256, TIME_SHIFT, 1),
        (355, TIME_SHIFT, 100),
        (356, VELOCITY_CHANGE, 1),
        (363, VELOCITY_CHANGE, 8),
    ])
    def test_decode_boundaries(self, index, event_type, value):
        assert decode_event(index) == PerformanceEvent(event_type, value)
        assert encode_event(event_type, value) == index

    @pytest.mark.parametrize("index", [-1, 364, 1000])
    def test_out_of_range(self, index):
        with pytest.raises(UndecodableIndexError) as info:
            decode_event(index)
        assert info.value.index == index
        assert info.value.event_size == EVENT_SIZE

    def test_encode_rejects_bad_values(self):
        with pytest.raises(ValueError):
            encode_event(TIME_SHIFT, 0)
        with pytest.raises(ValueError):
            encode_event("pedal", 1)

    def test_time_shift_seconds(self):
        assert decode_event(256).seconds == pytest.approx(0.01)
        assert decode_event(355).seconds == pytest.approx(1.0)

    def test_velocity_fraction(self):
        # ceil(127 / 8) == 16 MIDI steps per bin.
        assert velocity_fraction(1) == pytest.approx(16 / 127)
        assert velocity_fraction(8) == pytest.approx(128 / 127)
        assert decode_event(359).velocity_fraction == pytest.approx(4 * 16 / 127)


class TestNoteTracker:

    def test_note_uses_current_velocity(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink)
        play_event(tracker, PerformanceEvent(VELOCITY_CHANGE, 2))
        play_event(tracker, PerformanceEvent(NOTE_ON, 60))
        assert sink.calls[-1] == ("note_on", 60, pytest.approx(32 / 127))
        assert 60 in tracker.active_notes

    def test_unmatched_note_off_is_dropped(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink)
        play_event(tracker, PerformanceEvent(NOTE_OFF, 64))
        assert sink.calls == []

    def test_time_shift_advances_clock(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink, start_time=10.0)
        play_event(tracker, PerformanceEvent(TIME_SHIFT, 50))
        assert tracker.clock == pytest.approx(10.5)
        assert sink.calls == [("time_shift", pytest.approx(0.5))]

    def test_long_notes_are_released(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink, max_note_duration=1.5)
        tracker.note_on(60)
        tracker.time_shift(1.0)
        assert 60 in tracker.active_notes
        tracker.time_shift(1.0)
        assert 60 not in tracker.active_notes
        assert ("note_off", 60) in sink.calls

    def test_release_all(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink)
        tracker.note_on(60)
        tracker.note_on(67)
        tracker.release_all()
        assert tracker.active_notes == {}
        assert sorted(call[1] for call in sink.calls if call[0] == "note_off") == [60, 67]

    def test_plain_sink_gets_full_velocity(self):
        sink = RecordingSink()
        play_event(sink, PerformanceEvent(NOTE_ON, 40))
        assert sink.calls == [("note_on", 40, pytest.approx(128 / 127))]

    def test_quick_note_off_waits_for_min_duration(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink)
        tracker.note_on(60)
        tracker.note_off(60)
        assert ("note_off", 60) not in sink.calls
        assert 60 not in tracker.active_notes
        tracker.time_shift(0.3)
        assert ("note_off", 60) not in sink.calls
        tracker.time_shift(0.3)
        assert sink.calls[-1] == ("note_off", 60)
        assert tracker.pending_releases == {}

    def test_late_note_off_is_immediate(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink)
        tracker.note_on(60)
        tracker.time_shift(1.0)
        tracker.note_off(60)
        assert sink.calls[-1] == ("note_off", 60)

    def test_retrigger_releases_pending_note(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink)
        tracker.note_on(60)
        tracker.note_off(60)
        tracker.note_on(60, 0.5)
        assert sink.calls[-2:] == [("note_off", 60), ("note_on", 60, 0.5)]
        assert tracker.pending_releases == {}


class TestBassAccompaniment:

    # C, F, N.C., then C for the rest of the progression.
    PROGRESSION = [1, 6, 0, 1, 1, 1, 1, 1]

    def _tracker(self):
        sink = RecordingSink()
        tracker = NoteTracker(sink)
        tracker.set_progression(self.PROGRESSION)
        return sink, tracker

    def test_no_bass_within_a_chord(self):
        sink, tracker = self._tracker()
        tracker.time_shift(0.7)
        assert sink.calls == [("time_shift", pytest.approx(0.7))]

    def test_shift_across_boundary_plays_root(self):
        sink, tracker = self._tracker()
        tracker.time_shift(0.7)
        tracker.time_shift(0.5)
        assert sink.calls[1:] == [
            ("time_shift", pytest.approx(0.3)),
            ("note_on", 41, pytest.approx(BASS_VELOCITY / 127)),
            ("time_shift", pytest.approx(0.2)),
        ]
        assert tracker.clock == pytest.approx(1.2)
        assert tracker.bass_note == 41
        assert 41 not in tracker.active_notes

    def test_no_chord_releases_bass(self):
        sink, tracker = self._tracker()
        tracker.time_shift(1.2)
        tracker.time_shift(1.0)
        assert sink.calls[-3:] == [
            ("time_shift", pytest.approx(0.8)),
            ("note_off", 41),
            ("time_shift", pytest.approx(0.2)),
        ]
        assert tracker.bass_note is None

    def test_long_shift_crosses_several_boundaries(self):
        sink, tracker = self._tracker()
        tracker.time_shift(0.5)
        tracker.time_shift(3.0)
        bass = [call for call in sink.calls if call[0] != "time_shift"]
        assert bass == [
            ("note_on", 41, pytest.approx(BASS_VELOCITY / 127)),
            ("note_off", 41),
            ("note_on", 36, pytest.approx(BASS_VELOCITY / 127)),
        ]
        assert sum(call[1] for call in sink.calls if call[0] == "time_shift") == pytest.approx(3.5)

    def test_release_all_stops_bass(self):
        sink, tracker = self._tracker()
        tracker.time_shift(1.5)
        tracker.release_all()
        assert sink.calls[-1] == ("note_off", 41)
        assert tracker.bass_note is None
