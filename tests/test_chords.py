"""Chord names and progressions."""

import pytest

from wgpu_math.errors import WgpuMathError
from wgpu_math.performance_rnn.chords import (
    CHORD_ENCODING_SIZE,
    CHORD_INDICES,
    PRESETS,
    UnknownChordError,
    bass_pitch,
    chord_index,
    chord_progression_indices,
)


@pytest.mark.parametrize("name, index", [
    ("N.C.", 0),
    ("C", 1),
    ("C#", 2),
    ("Db", 2),
    ("B", 12),
    ("Cm", 13),
    ("Am", 22),
    ("C+", 25),
    ("Bo", 48),
])
def test_chord_index(name, index):
    assert chord_index(name) == index


def test_indices_fit_encoding():
    assert set(CHORD_INDICES.values()) == set(range(CHORD_ENCODING_SIZE))


def test_unknown_chord():
    with pytest.raises(UnknownChordError) as info:
        chord_index("H7")
    assert info.value.chord == "H7"
    assert str(info.value) == "Unknown chord 'H7'"
    assert isinstance(info.value, WgpuMathError)
    assert isinstance(info.value, KeyError)


def test_whitespace_is_ignored():
    assert chord_index(" F ") == chord_index("F")


@pytest.mark.parametrize("preset", sorted(PRESETS))
def test_presets_encode(preset):
    indices = chord_progression_indices(PRESETS[preset])
    assert len(indices) == 8
    assert all(0 < i < CHORD_ENCODING_SIZE for i in indices)


def test_progression_length():
    with pytest.raises(ValueError):
        chord_progression_indices(["C", "F", "G"])


def test_bass_pitch():
    assert bass_pitch(0) == -1
    assert bass_pitch(chord_index("C")) == 36
    assert bass_pitch(chord_index("Am")) == 45
