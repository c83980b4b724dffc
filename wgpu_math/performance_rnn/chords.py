"""Chord conditioning: chord names, progressions and meter constants."""

from typing import List, Sequence

from wgpu_math.errors import WgpuMathError

CHORD_PROGRESSION_SIZE = 8
CHORDS_PER_BAR = 2
CHORD_PROGRESSION_BARS = CHORD_PROGRESSION_SIZE // CHORDS_PER_BAR
CHORD_ENCODING_SIZE = 49

QPM = 120.0
QUARTERS_PER_BAR = 4
DIVISIONS_PER_QUARTER = 24
BARS_PER_MINUTE = QPM / QUARTERS_PER_BAR

_PITCH_CLASSES = (
    ("C",),
    ("C#", "Db"),
    ("D",),
    ("D#", "Eb"),
    ("E",),
    ("F",),
    ("F#", "Gb"),
    ("G",),
    ("G#", "Ab"),
    ("A",),
    ("A#", "Bb"),
    ("B",),
)

# Chord qualities in encoding order; major has no suffix.
_QUALITIES = ("", "m", "+", "o")


def _chord_indices():
    indices = {"N.C.": 0}
    for q, suffix in enumerate(_QUALITIES):
        for pitch_class, names in enumerate(_PITCH_CLASSES):
            for name in names:
                indices[name + suffix] = 1 + q * 12 + pitch_class
    return indices


CHORD_INDICES = _chord_indices()

PRESETS = {
    "c-f-g": ["C", "C", "C", "C", "F", "F", "G", "G"],
    "am-g-f": ["Am", "Am", "Am", "Am", "G", "G", "F", "F"],
    "c-am-dm-g": ["C", "C", "Am", "Am", "Dm", "Dm", "G", "G"],
    "c-bb-f-c": ["C", "C", "Bb", "Bb", "F", "F", "C", "C"],
    "dm-g-c": ["Dm", "Dm", "G", "G", "C", "C", "C", "C"],
    "am-g-f-e": ["Am", "Am", "G", "G", "F", "F", "E", "E"],
    "f-c-dm-bb": ["F", "F", "C", "C", "Dm", "Dm", "Bb", "Bb"],
    "dm-a": ["Dm", "Dm", "A", "A", "Dm", "Dm", "A", "A"],
}


class UnknownChordError(WgpuMathError, KeyError):
    """A chord name is not in ``CHORD_INDICES``."""

    def __init__(self, chord):
        self.chord = chord
        super().__init__(f"Unknown chord '{chord}'")

    def __str__(self):
        return self.args[0]


def chord_index(chord: str) -> int:
    try:
        return CHORD_INDICES[chord.strip()]
    except KeyError:
        raise UnknownChordError(chord) from None


def chord_progression_indices(chords: Sequence[str]) -> List[int]:
    """Encode a progression of exactly ``CHORD_PROGRESSION_SIZE`` chord names."""
    chords = list(chords)
    if len(chords) != CHORD_PROGRESSION_SIZE:
        raise ValueError(
            f"A chord progression has {CHORD_PROGRESSION_SIZE} chords, got {len(chords)}"
        )
    return [chord_index(chord) for chord in chords]


def bass_pitch(index: int) -> int:
    """MIDI pitch of the root in the bass octave, or -1 for no chord."""
    if index <= 0:
        return -1
    return 36 + (index - 1) % 12
