"""
Real-time Performance RNN generation.

``PerformanceRNN`` holds the LSTM stack and output layer and runs one
sampling step as tensor ops. ``GenerationContext`` owns the recurrent
state and drives the model in calls of ``steps_per_generate_call`` steps,
keeping a small buffer of generated events ahead of a playback clock.

Each ``reset()`` issues a new ``CancellationToken``; a step holding an older
token returns without touching the state or the sink.
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence

import numpy as np

from wgpu_math.checkpoint import get_variable
from wgpu_math.errors import MissingVariableError, ShapeMismatchError, UndecodableIndexError
from wgpu_math.ndarray import Array1D, DeviceStorage, NDArray, Scalar
from wgpu_math.performance_rnn.chords import (
    BARS_PER_MINUTE,
    CHORD_ENCODING_SIZE,
    CHORD_PROGRESSION_BARS,
    CHORD_PROGRESSION_SIZE,
    CHORDS_PER_BAR,
    DIVISIONS_PER_QUARTER,
    PRESETS,
    QUARTERS_PER_BAR,
    chord_progression_indices,
)
from wgpu_math.performance_rnn.events import (
    EVENT_SIZE,
    MAX_SHIFT_INDEX,
    MAX_SHIFT_STEPS,
    STEPS_PER_SECOND,
    TIME_SHIFT,
    NoteTracker,
    PerformanceEvent,
    decode_event,
    encode_event,
    play_event,
)
from wgpu_math.rnn import LSTMCell

logger = logging.getLogger(__name__)

STEPS_PER_MINUTE = 60 * STEPS_PER_SECOND
INPUT_SIZE = CHORD_ENCODING_SIZE + QUARTERS_PER_BAR + DIVISIONS_PER_QUARTER + EVENT_SIZE

# Sampled indices in (SHIFT_OFFSET_LO, SHIFT_OFFSET_HI) are time shifts.
SHIFT_OFFSET_LO = float(encode_event(TIME_SHIFT, 1) - 1)
SHIFT_OFFSET_HI = float(encode_event(TIME_SHIFT, MAX_SHIFT_STEPS) + 1)

CELL_NAMES = ("basic_lstm_cell", "lstm_cell")
FC_WEIGHTS = "fully_connected/weights"
FC_BIASES = "fully_connected/biases"


def lstm_variable_name(layer, cell_name, var):
    return f"rnn/multi_rnn_cell/cell_{layer}/{cell_name}/{var}"


@dataclass(frozen=True)
class GeneratorConfig:
    """Tunables of the generation loop."""

    steps_per_generate_call: int = 10
    generation_buffer_seconds: float = 0.5
    max_generation_lag_seconds: float = 1.0
    max_note_duration_seconds: float = 3.0
    forget_bias: float = 1.0
    num_layers: Optional[int] = None

    def __post_init__(self):
        if self.steps_per_generate_call < 1:
            raise ValueError(
                f"steps_per_generate_call must be positive, got {self.steps_per_generate_call}"
            )
        if self.num_layers is not None and self.num_layers < 1:
            raise ValueError(f"num_layers must be positive, got {self.num_layers}")


class LSTMState:
    """Per-layer ``[1, units]`` cell and hidden states."""

    def __init__(self, c: List[NDArray], h: List[NDArray]):
        self.c = list(c)
        self.h = list(h)

    def dispose(self):
        for x in self.c + self.h:
            if not x.is_disposed:
                x.dispose()


# ============================================================================
# Model
# ============================================================================

class PerformanceRNN:
    """LSTM stack plus a fully connected layer over the event vocabulary."""

    def __init__(self, math, lstm_kernels, lstm_biases, fc_weights, fc_biases,
                 forget_bias=1.0):
        if not lstm_kernels or len(lstm_kernels) != len(lstm_biases):
            raise ShapeMismatchError(
                f"Need one bias per LSTM kernel, got {len(lstm_kernels)} kernels "
                f"and {len(lstm_biases)} biases"
            )
        self.math = math
        self.lstm_kernels = list(lstm_kernels)
        self.lstm_biases = list(lstm_biases)
        self.fc_weights = fc_weights
        self.fc_biases = fc_biases
        self.forget_bias = Scalar.new(float(forget_bias))
        self.cells = [
            LSTMCell(math, self.forget_bias, kernel, bias)
            for kernel, bias in zip(self.lstm_kernels, self.lstm_biases)
        ]
        self._check_shapes()

    def _check_shapes(self):
        in_size = INPUT_SIZE
        for layer, cell in enumerate(self.cells):
            expected = (in_size + cell.units, 4 * cell.units)
            if tuple(cell.lstm_kernel.shape) != expected:
                raise ShapeMismatchError(
                    f"LSTM layer {layer} kernel has shape {cell.lstm_kernel.shape}, "
                    f"expected {expected}"
                )
            in_size = cell.units
        if tuple(self.fc_weights.shape) != (in_size, EVENT_SIZE):
            raise ShapeMismatchError(
                f"Output weights have shape {self.fc_weights.shape}, "
                f"expected {(in_size, EVENT_SIZE)}"
            )
        if tuple(self.fc_biases.shape) != (EVENT_SIZE,):
            raise ShapeMismatchError(
                f"Output biases have shape {self.fc_biases.shape}, expected {(EVENT_SIZE,)}"
            )

    @property
    def num_layers(self) -> int:
        return len(self.cells)

    @property
    def units(self) -> List[int]:
        return [cell.units for cell in self.cells]

    @classmethod
    def from_variables(cls, math, variables, num_layers=None, forget_bias=1.0):
        """
        Build the model from checkpoint variables.

        Args:
            math: NDArrayMath context
            variables: Mapping from TensorFlow variable name to NDArray
            num_layers: Number of LSTM layers; counted from the variables when None
            forget_bias: Offset added to the forget gate

        Raises:
            MissingVariableError: if a required variable is absent
            ShapeMismatchError: if a variable has the wrong shape
        """
        kernels = []
        biases = []
        layer = 0
        while num_layers is None or layer < num_layers:
            cell_name = next(
                (name for name in CELL_NAMES
                 if lstm_variable_name(layer, name, "kernel") in variables),
                None,
            )
            if cell_name is None:
                if num_layers is None and layer > 0:
                    break
                raise MissingVariableError(
                    lstm_variable_name(layer, CELL_NAMES[0], "kernel"), variables.keys()
                )
            kernels.append(get_variable(variables, lstm_variable_name(layer, cell_name, "kernel"), rank=2))
            biases.append(get_variable(variables, lstm_variable_name(layer, cell_name, "bias"), rank=1))
            layer += 1

        fc_weights = get_variable(variables, FC_WEIGHTS, rank=2)
        fc_biases = get_variable(variables, FC_BIASES, shape=(EVENT_SIZE,))
        model = cls(math, kernels, biases, fc_weights, fc_biases, forget_bias)
        logger.info("Loaded Performance RNN with %d layer(s) of %s units",
                    model.num_layers, model.units)
        return model

    @classmethod
    def random(cls, math, units=64, num_layers=1, seed=None, forget_bias=1.0):
        """Model with uniformly initialised weights (for demos and tests)."""
        rng = np.random.default_rng(seed)

        def uniform(shape):
            limit = 1.0 / np.sqrt(shape[0])
            return NDArray.make(shape, values=rng.uniform(-limit, limit, shape), dtype="float32")

        kernels = []
        biases = []
        in_size = INPUT_SIZE
        for _ in range(num_layers):
            kernels.append(uniform((in_size + units, 4 * units)))
            biases.append(NDArray.zeros((4 * units,)))
            in_size = units
        return cls(math, kernels, biases, uniform((units, EVENT_SIZE)),
                   NDArray.zeros((EVENT_SIZE,)), forget_bias)

    def zero_state(self) -> LSTMState:
        c = [NDArray.zeros((1, units)) for units in self.units]
        h = [NDArray.zeros((1, units)) for units in self.units]
        return LSTMState(c, h)

    def conditioning(self, progression, current_step):
        """Chord and meter encoding ``[chord(49), quarter(4), division(24)]``.

        ``progression`` holds encoded chord indices; they are not range checked.
        """
        math = self.math
        current_minute = math.divide(current_step, float(STEPS_PER_MINUTE))
        current_bar = math.multiply(current_minute, BARS_PER_MINUTE)

        current_prog = math.divide(current_bar, float(CHORD_PROGRESSION_BARS))
        prog_start_bar = math.multiply(math.floor(current_prog), float(CHORD_PROGRESSION_BARS))
        chord_bar = math.sub(current_bar, prog_start_bar)

        # float32 rounding can land exactly on the upper edge of a range
        chord_pos = math.clip(
            math.floor(math.multiply(chord_bar, float(CHORDS_PER_BAR))),
            0.0, CHORD_PROGRESSION_SIZE - 1.0,
        )
        chord_pos_one_hot = math.one_hot(chord_pos, CHORD_PROGRESSION_SIZE, check=False)
        chord_index = math.sum(math.multiply(chord_pos_one_hot, progression))

        bar_offset = math.sub(current_bar, math.floor(current_bar))
        quarter_float = math.multiply(bar_offset, float(QUARTERS_PER_BAR))
        quarter = math.clip(math.floor(quarter_float), 0.0, QUARTERS_PER_BAR - 1.0)
        quarter_offset = math.sub(quarter_float, quarter)
        division = math.clip(
            math.floor(math.multiply(quarter_offset, float(DIVISIONS_PER_QUARTER))),
            0.0, DIVISIONS_PER_QUARTER - 1.0,
        )

        chord_encoding = math.one_hot(chord_index, CHORD_ENCODING_SIZE, check=False)
        meter_encoding = math.concat_1d(
            math.one_hot(quarter, QUARTERS_PER_BAR, check=False),
            math.one_hot(division, DIVISIONS_PER_QUARTER, check=False),
        )
        return math.concat_1d(chord_encoding, meter_encoding)

    def step(self, progression, last_sample, current_step, c, h):
        """
        Sample the next event.

        Args:
            progression: [8] float chord indices
            last_sample: Scalar int32 index of the previous event
            current_step: Scalar float step count (1/100 s per step)
            c, h: Per-layer state lists

        Returns:
            (new_c, new_h, sample, next_step)
        """
        math = self.math
        event_input = math.one_hot(last_sample, EVENT_SIZE, check=False)
        model_input = math.concat_1d(self.conditioning(progression, current_step), event_input)

        new_c, new_h = math.multi_rnn_cell(
            self.cells, math.reshape(model_input, (1, INPUT_SIZE)), c, h
        )
        logits = math.add(math.matmul(new_h[-1], self.fc_weights), self.fc_biases)
        probabilities = math.softmax(math.reshape(logits, (EVENT_SIZE,)))
        sample = math.reshape(math.multinomial(probabilities, 1), ())

        num_steps = math.sub(sample, SHIFT_OFFSET_LO)
        is_shift = math.multiply(
            math.clip(num_steps, 0.0, 1.0),
            math.clip(math.sub(SHIFT_OFFSET_HI, sample), 0.0, 1.0),
        )
        next_step = math.add(current_step, math.multiply(is_shift, num_steps))
        return new_c, new_h, sample, next_step

    def dispose(self):
        for x in self.lstm_kernels + self.lstm_biases + [self.fc_weights, self.fc_biases,
                                                         self.forget_bias]:
            if not x.is_disposed:
                x.dispose()


# ============================================================================
# Generation loop
# ============================================================================

class CancellationToken:
    """Identifies one generation run; stale once its context is reset or closed."""

    def __init__(self, context, generation):
        self._context = context
        self.generation = generation

    @property
    def is_stale(self) -> bool:
        return self._context.generation != self.generation

    def __repr__(self):
        return f"CancellationToken(generation={self.generation}, stale={self.is_stale})"


class GenerationContext:
    """
    Owns the recurrent state and paces generation against a playback clock.

    Args:
        model: PerformanceRNN to sample from
        sink: PlaybackSink receiving decoded events
        config: GeneratorConfig
        clock: Callable returning the playback time in seconds
    """

    def __init__(self, model: PerformanceRNN, sink, config: Optional[GeneratorConfig] = None,
                 clock=time.monotonic):
        self.model = model
        self.math = model.math
        self.config = config or GeneratorConfig()
        self.clock = clock
        self.tracker = NoteTracker(sink, self.config.max_note_duration_seconds)
        self.generation = 0
        self.state: Optional[LSTMState] = None
        self.last_sample: Optional[NDArray] = None
        self.current_step: Optional[NDArray] = None
        self.progression: Optional[NDArray] = None

    @property
    def playback_time(self) -> float:
        """Time in seconds up to which events have been generated."""
        return self.tracker.clock

    def _dispose_state(self):
        for x in (self.last_sample, self.current_step, self.progression):
            if x is not None and not x.is_disposed:
                x.dispose()
        if self.state is not None:
            self.state.dispose()
        self.state = None
        self.last_sample = None
        self.current_step = None
        self.progression = None

    def reset(self, chords: Optional[Sequence[str]] = None) -> CancellationToken:
        """
        Start a new run: zero state, a new chord progression and a fresh token.

        Raises:
            UnknownChordError: if a chord name is not recognised
        """
        indices = chord_progression_indices(chords if chords is not None else PRESETS["c-f-g"])
        self.generation += 1
        self._dispose_state()
        self.state = self.model.zero_state()
        self.last_sample = Scalar.new(MAX_SHIFT_INDEX, dtype="int32")
        self.current_step = Scalar.new(0.0)
        self.progression = Array1D.new(np.asarray(indices, dtype=np.float32))
        self.tracker.clock = self.clock()
        self.tracker.set_progression(indices)
        logger.info("Reset generation %d with chords %s", self.generation, indices)
        return CancellationToken(self, self.generation)

    def _run_steps(self, keep, track):
        c, h = self.state.c, self.state.h
        sample, current_step = self.last_sample, self.current_step
        samples = []
        for _ in range(self.config.steps_per_generate_call):
            c, h, sample, current_step = self.model.step(
                self.progression, sample, current_step, c, h
            )
            samples.append(sample)
        return samples, c, h, current_step

    async def generate_step(self, token: CancellationToken) -> Optional[List[PerformanceEvent]]:
        """
        Generate and play one call's worth of events.

        Returns the played events, or None when ``token`` is stale.
        """
        if token.is_stale:
            return None
        if self.state is None:
            raise RuntimeError("GenerationContext.reset() must be called before generating")

        samples, c, h, current_step = self.math.scope(self._run_steps, name="generate_step")
        new_state = LSTMState(c, h)
        # Samples finish in order, so the rest are ready once the last one is.
        await self.math.read_async(samples[-1])
        indices = [int(s.data_sync()) for s in samples]

        if token.is_stale:
            logger.debug("Dropping generate_step results of stale generation %d", token.generation)
            new_state.dispose()
            current_step.dispose()
            for s in samples:
                s.dispose()
            return None

        self.state.dispose()
        self.last_sample.dispose()
        self.current_step.dispose()
        self.state = new_state
        self.last_sample = samples[-1]
        self.current_step = current_step
        for s in samples[:-1]:
            s.dispose()

        played = []
        for index in indices:
            try:
                event = decode_event(index)
            except UndecodableIndexError as e:
                logger.error("%s", e)
                continue
            play_event(self.tracker, event)
            played.append(event)

        backend = self.math.backend
        if isinstance(backend, DeviceStorage):
            self.last_sample.upload(backend)
            self.current_step.upload(backend)

        now = self.clock()
        lag = now - self.tracker.clock
        if lag > self.config.max_generation_lag_seconds:
            logger.warning(
                "Generation is %.2f seconds behind, which is over %.2f. Resetting time!",
                lag, self.config.max_generation_lag_seconds,
            )
            self.tracker.clock = now
        return played

    def next_delay(self) -> float:
        """Seconds to wait before the next call keeps the buffer topped up."""
        return max(0.0, self.tracker.clock - self.clock() - self.config.generation_buffer_seconds)

    async def run(self, token: Optional[CancellationToken] = None, max_calls: Optional[int] = None,
                  sleep=asyncio.sleep) -> int:
        """
        Generate until ``token`` goes stale (or ``max_calls`` calls are done).

        Returns:
            Number of completed generate calls
        """
        if token is None:
            token = self.reset()
        calls = 0
        while max_calls is None or calls < max_calls:
            played = await self.generate_step(token)
            if played is None:
                break
            calls += 1
            if max_calls is not None and calls >= max_calls:
                break
            await sleep(self.next_delay())
        return calls

    def close(self):
        """Stop any running generation and release the state and held notes."""
        self.generation += 1
        self._dispose_state()
        self.tracker.release_all()
