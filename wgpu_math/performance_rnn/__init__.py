"""Performance RNN with chord conditioning, driven in real time by ``GenerationContext``."""

from wgpu_math.performance_rnn.chords import (
    CHORD_INDICES, PRESETS, UnknownChordError, chord_progression_indices,
)
from wgpu_math.performance_rnn.events import (
    EVENT_SIZE, PerformanceEvent, PlaybackSink, NoteTracker, LoggingSink,
    decode_event, encode_event, play_event,
)
from wgpu_math.performance_rnn.generator import (
    GeneratorConfig, LSTMState, PerformanceRNN, CancellationToken, GenerationContext,
)

__all__ = [
    "CHORD_INDICES", "PRESETS", "UnknownChordError", "chord_progression_indices",
    "EVENT_SIZE", "PerformanceEvent", "PlaybackSink", "NoteTracker", "LoggingSink",
    "decode_event", "encode_event", "play_event",
    "GeneratorConfig", "LSTMState", "PerformanceRNN", "CancellationToken", "GenerationContext",
]
