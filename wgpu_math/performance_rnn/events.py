"""
Performance event vocabulary and playback.

A sampled index in ``[0, EVENT_SIZE)`` names one event. The ranges are laid
out back to back:

  note_on          pitch 0..127     indices   0..127
  note_off         pitch 0..127     indices 128..255
  time_shift       1..100 steps     indices 256..355   (1/100 s per step)
  velocity_change  bin 1..8         indices 356..363
"""

import logging
import math
from dataclasses import dataclass
from typing import Dict, List, Optional, Protocol, Sequence

from wgpu_math.errors import UndecodableIndexError
from wgpu_math.performance_rnn.chords import BARS_PER_MINUTE, CHORDS_PER_BAR, bass_pitch

logger = logging.getLogger(__name__)

MIN_MIDI_PITCH = 0
MAX_MIDI_PITCH = 127
VELOCITY_BINS = 8
MAX_SHIFT_STEPS = 100
STEPS_PER_SECOND = 100
MAX_NOTE_DURATION_SECONDS = 3.0
MIN_NOTE_DURATION_SECONDS = 0.5
BASS_VELOCITY = 100
BASS_VELOCITY_FRACTION = BASS_VELOCITY / 127
SECONDS_PER_CHORD = 60.0 / BARS_PER_MINUTE / CHORDS_PER_BAR

NOTE_ON = "note_on"
NOTE_OFF = "note_off"
TIME_SHIFT = "time_shift"
VELOCITY_CHANGE = "velocity_change"

EVENT_RANGES = (
    (NOTE_ON, MIN_MIDI_PITCH, MAX_MIDI_PITCH),
    (NOTE_OFF, MIN_MIDI_PITCH, MAX_MIDI_PITCH),
    (TIME_SHIFT, 1, MAX_SHIFT_STEPS),
    (VELOCITY_CHANGE, 1, VELOCITY_BINS),
)


def _event_size():
    return sum(max_value - min_value + 1 for _, min_value, max_value in EVENT_RANGES)


EVENT_SIZE = _event_size()


def _range_offset(event_type):
    offset = 0
    for name, min_value, max_value in EVENT_RANGES:
        if name == event_type:
            return offset
        offset += max_value - min_value + 1
    raise ValueError(f"Unknown event type '{event_type}'")


# Index of the longest time shift (1 s); seeds generation.
MAX_SHIFT_INDEX = _range_offset(TIME_SHIFT) + MAX_SHIFT_STEPS - 1


@dataclass(frozen=True)
class PerformanceEvent:
    event_type: str
    value: int

    @property
    def seconds(self) -> float:
        """Duration of a time shift."""
        return self.value / STEPS_PER_SECOND

    @property
    def velocity_fraction(self) -> float:
        return velocity_fraction(self.value)


def velocity_fraction(velocity_bin: int) -> float:
    """Velocity of a 1-based bin as a fraction of MIDI velocity 127."""
    return velocity_bin * math.ceil(127 / VELOCITY_BINS) / 127


def decode_event(index: int) -> PerformanceEvent:
    """
    Decode a sampled index by scanning the cumulative event ranges.

    Raises:
        UndecodableIndexError: if the index is outside ``[0, EVENT_SIZE)``
    """
    index = int(index)
    offset = 0
    for event_type, min_value, max_value in EVENT_RANGES:
        if offset <= index <= offset + max_value - min_value:
            return PerformanceEvent(event_type, min_value + index - offset)
        offset += max_value - min_value + 1
    raise UndecodableIndexError(index, EVENT_SIZE)


def encode_event(event_type: str, value: int) -> int:
    """Inverse of ``decode_event``."""
    for name, min_value, max_value in EVENT_RANGES:
        if name == event_type:
            if not min_value <= value <= max_value:
                raise ValueError(
                    f"{event_type} value {value} outside [{min_value}, {max_value}]"
                )
            return _range_offset(event_type) + value - min_value
    raise ValueError(f"Unknown event type '{event_type}'")


# ============================================================================
# Playback
# ============================================================================

class PlaybackSink(Protocol):
    """Receiver of decoded events (a synthesizer, MIDI port, logger, ...)."""

    def note_on(self, pitch: int, velocity_fraction: float) -> None: ...

    def note_off(self, pitch: int) -> None: ...

    def time_shift(self, delta_seconds: float) -> None: ...

    def velocity_change(self, velocity_fraction: float) -> None: ...


class NoteTracker:
    """
    Sink decorator that keeps a playback clock and the set of sounding notes.

    note_off for a note that is not sounding is dropped. A note released
    less than ``min_note_duration`` after it started keeps sounding until
    that much playback time has passed. Notes held longer than
    ``max_note_duration`` are released after each time shift.

    With a chord progression set, a time shift that crosses a chord boundary
    is split at the boundary and the new chord's root is played in the bass
    until the next boundary.
    """

    def __init__(self, sink: PlaybackSink, max_note_duration: float = MAX_NOTE_DURATION_SECONDS,
                 start_time: float = 0.0, min_note_duration: float = MIN_NOTE_DURATION_SECONDS):
        self.sink = sink
        self.max_note_duration = max_note_duration
        self.min_note_duration = min_note_duration
        self.clock = start_time
        self.velocity = velocity_fraction(VELOCITY_BINS)
        self.active_notes: Dict[int, float] = {}
        self.pending_releases: Dict[int, float] = {}
        self.progression: List[int] = []
        self.progression_start = start_time
        self.bass_note: Optional[int] = None

    def set_progression(self, indices: Sequence[int], start_time: Optional[float] = None):
        """Accompany playback with the roots of ``indices``, one chord per chord slot."""
        self._release_bass()
        self.progression = [int(i) for i in indices]
        self.progression_start = self.clock if start_time is None else start_time

    def note_on(self, pitch: int, velocity_fraction: Optional[float] = None):
        if velocity_fraction is None:
            velocity_fraction = self.velocity
        if self.pending_releases.pop(pitch, None) is not None:
            self.sink.note_off(pitch)
        self.active_notes[pitch] = self.clock
        self.sink.note_on(pitch, velocity_fraction)

    def note_off(self, pitch: int):
        if pitch not in self.active_notes:
            return
        release_time = self.active_notes.pop(pitch) + self.min_note_duration
        if release_time > self.clock:
            self.pending_releases[pitch] = release_time
        else:
            self.sink.note_off(pitch)

    def time_shift(self, delta_seconds: float):
        end = self.clock + delta_seconds
        if self.progression:
            current = self._chord_position(self.clock)
            for position in range(current + 1, self._chord_position(end) + 1):
                self._advance(self.progression_start + position * SECONDS_PER_CHORD - self.clock)
                self._play_root(position)
        if end > self.clock:
            self._advance(end - self.clock)

    def velocity_change(self, velocity_fraction: float):
        self.velocity = velocity_fraction
        self.sink.velocity_change(velocity_fraction)

    def release_all(self):
        for pitch in list(self.pending_releases):
            del self.pending_releases[pitch]
            self.sink.note_off(pitch)
        for pitch in list(self.active_notes):
            del self.active_notes[pitch]
            self.sink.note_off(pitch)
        self._release_bass()

    def _chord_position(self, t: float) -> int:
        return math.floor((t - self.progression_start) / SECONDS_PER_CHORD)

    def _advance(self, delta_seconds: float):
        self.clock += delta_seconds
        self.sink.time_shift(delta_seconds)
        for pitch, release_time in list(self.pending_releases.items()):
            if release_time <= self.clock + 1e-9:
                del self.pending_releases[pitch]
                self.sink.note_off(pitch)
        for pitch, started in list(self.active_notes.items()):
            held = self.clock - started
            if held > self.max_note_duration:
                logger.info(
                    "Note %d has been active for %.2f seconds which is over %.2f, will release.",
                    pitch, held, self.max_note_duration,
                )
                del self.active_notes[pitch]
                self.sink.note_off(pitch)

    def _play_root(self, position: int):
        self._release_bass()
        pitch = bass_pitch(self.progression[position % len(self.progression)])
        if pitch >= 0:
            self.sink.note_on(pitch, BASS_VELOCITY_FRACTION)
            self.bass_note = pitch

    def _release_bass(self):
        if self.bass_note is not None:
            self.sink.note_off(self.bass_note)
            self.bass_note = None


def play_event(sink, event: PerformanceEvent):
    """Send one decoded event to a sink.

    Note velocities come from the sink's current velocity when it tracks one
    (``NoteTracker``), else full velocity.
    """
    if event.event_type == NOTE_ON:
        velocity = getattr(sink, "velocity", velocity_fraction(VELOCITY_BINS))
        sink.note_on(event.value, velocity)
    elif event.event_type == NOTE_OFF:
        sink.note_off(event.value)
    elif event.event_type == TIME_SHIFT:
        sink.time_shift(event.seconds)
    elif event.event_type == VELOCITY_CHANGE:
        sink.velocity_change(event.velocity_fraction)
    else:
        raise ValueError(f"Could not decode event type: {event.event_type}")


class LoggingSink:
    """Sink that logs every event; used by the command line demo."""

    def __init__(self, log=None):
        self.log = log or logger

    def note_on(self, pitch, velocity_fraction):
        self.log.info("note_on  pitch=%3d velocity=%.2f", pitch, velocity_fraction)

    def note_off(self, pitch):
        self.log.info("note_off pitch=%3d", pitch)

    def time_shift(self, delta_seconds):
        self.log.debug("time_shift %.2fs", delta_seconds)

    def velocity_change(self, velocity_fraction):
        self.log.debug("velocity %.2f", velocity_fraction)
