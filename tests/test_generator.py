"""Performance RNN model, conditioning and the generation loop."""

import asyncio

import numpy as np
import numpy.testing as npt
import pytest

from wgpu_math.errors import MissingVariableError, ShapeMismatchError
from wgpu_math.ndarray import Array1D, NDArray, Scalar
from wgpu_math.performance_rnn.chords import PRESETS, UnknownChordError, chord_progression_indices
from wgpu_math.performance_rnn.events import EVENT_SIZE, MAX_SHIFT_INDEX, TIME_SHIFT
from wgpu_math.performance_rnn.generator import (
    FC_BIASES,
    FC_WEIGHTS,
    INPUT_SIZE,
    CancellationToken,
    GenerationContext,
    GeneratorConfig,
    PerformanceRNN,
    lstm_variable_name,
)

from tests.test_events import RecordingSink


class FakeClock:

    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def _run(coro):
    return asyncio.run(coro)


@pytest.fixture
def model(cpu_math):
    model = PerformanceRNN.random(cpu_math, units=8, seed=0)
    yield model
    model.dispose()


@pytest.fixture
def context(model):
    context = GenerationContext(model, RecordingSink(), clock=FakeClock())
    yield context
    context.close()


def _variables(model, cell_name="basic_lstm_cell"):
    variables = {FC_WEIGHTS: model.fc_weights, FC_BIASES: model.fc_biases}
    for layer, (kernel, bias) in enumerate(zip(model.lstm_kernels, model.lstm_biases)):
        variables[lstm_variable_name(layer, cell_name, "kernel")] = kernel
        variables[lstm_variable_name(layer, cell_name, "bias")] = bias
    return variables


class TestModel:

    def test_input_size(self):
        assert INPUT_SIZE == 49 + 4 + 24 + 364

    def test_random_shapes(self, cpu_math):
        model = PerformanceRNN.random(cpu_math, units=6, num_layers=2, seed=1)
        assert model.num_layers == 2
        assert model.units == [6, 6]
        assert model.lstm_kernels[0].shape == (INPUT_SIZE + 6, 24)
        assert model.lstm_kernels[1].shape == (12, 24)
        assert model.fc_weights.shape == (6, EVENT_SIZE)
        model.dispose()

    @pytest.mark.parametrize("cell_name", ["basic_lstm_cell", "lstm_cell"])
    def test_from_variables_counts_layers(self, cpu_math, cell_name):
        source = PerformanceRNN.random(cpu_math, units=4, num_layers=2, seed=2)
        model = PerformanceRNN.from_variables(cpu_math, _variables(source, cell_name))
        assert model.num_layers == 2
        assert model.units == [4, 4]

    def test_from_variables_explicit_layers(self, cpu_math):
        source = PerformanceRNN.random(cpu_math, units=4, num_layers=2, seed=3)
        with pytest.raises(MissingVariableError) as info:
            PerformanceRNN.from_variables(cpu_math, _variables(source), num_layers=3)
        assert "cell_2" in info.value.name

    def test_from_variables_missing_output_layer(self, cpu_math, model):
        variables = _variables(model)
        del variables[FC_BIASES]
        with pytest.raises(MissingVariableError) as info:
            PerformanceRNN.from_variables(cpu_math, variables)
        assert info.value.name == FC_BIASES

    def test_from_variables_empty(self, cpu_math):
        with pytest.raises(MissingVariableError):
            PerformanceRNN.from_variables(cpu_math, {})

    def test_wrong_kernel_shape(self, cpu_math, model):
        variables = _variables(model)
        variables[lstm_variable_name(0, "basic_lstm_cell", "kernel")] = NDArray.zeros((10, 32))
        with pytest.raises(ShapeMismatchError):
            PerformanceRNN.from_variables(cpu_math, variables)

    def test_wrong_output_shape(self, cpu_math, model):
        variables = _variables(model)
        variables[FC_WEIGHTS] = NDArray.zeros((8, 10))
        with pytest.raises(ShapeMismatchError):
            PerformanceRNN.from_variables(cpu_math, variables)

    def test_conditioning(self, cpu_math, model):
        progression = Array1D.new(np.arange(1, 9, dtype=np.float32))
        # 330 steps = 1.65 bars: chord slot 3, quarter 2, division 14.
        with cpu_math.scope():
            encoding = cpu_math.read(model.conditioning(progression, Scalar.new(330.0)))
        assert encoding.shape == (49 + 4 + 24,)
        assert np.flatnonzero(encoding).tolist() == [4, 49 + 2, 49 + 4 + 14]

    def test_conditioning_wraps_progression(self, cpu_math, model):
        progression = Array1D.new(np.asarray(chord_progression_indices(PRESETS["dm-a"]),
                                             dtype=np.float32))
        # 8.25 bars = two full progressions plus a quarter bar.
        with cpu_math.scope():
            encoding = cpu_math.read(model.conditioning(progression, Scalar.new(1650.0)))
        assert np.flatnonzero(encoding[:49]).tolist() == [progression.get(0)]

    def test_step_advances_by_time_shift(self, cpu_math, model):
        state = model.zero_state()
        progression = Array1D.new(np.ones(8, dtype=np.float32))
        with cpu_math.scope():
            new_c, new_h, sample, next_step = model.step(
                progression, Scalar.new(MAX_SHIFT_INDEX, "int32"), Scalar.new(10.0),
                state.c, state.h,
            )
            index = int(sample.get())
            assert sample.dtype == "int32"
            assert 0 <= index < EVENT_SIZE
            expected = 10.0 + (index - 255 if 256 <= index <= 355 else 0)
            assert next_step.get() == pytest.approx(expected)
            assert new_h[0].shape == (1, 8)
        state.dispose()


class TestGeneratorConfig:

    def test_defaults(self):
        config = GeneratorConfig()
        assert config.steps_per_generate_call == 10
        assert config.generation_buffer_seconds == 0.5
        assert config.max_generation_lag_seconds == 1.0

    def test_validation(self):
        with pytest.raises(ValueError):
            GeneratorConfig(steps_per_generate_call=0)
        with pytest.raises(ValueError):
            GeneratorConfig(num_layers=0)


class TestGenerationContext:

    def test_generate_step_plays_events(self, context):
        token = context.reset()
        events = _run(context.generate_step(token))
        assert len(events) == 10
        sink = context.tracker.sink
        shifts = sum(e.value for e in events if e.event_type == TIME_SHIFT)
        assert context.current_step.get() == pytest.approx(float(shifts))
        assert context.playback_time == pytest.approx(shifts / 100.0)
        assert len(sink.calls) >= len([e for e in events if e.event_type == TIME_SHIFT])

    def test_state_replaced_and_old_disposed(self, context):
        token = context.reset()
        old_c = context.state.c[0]
        old_sample = context.last_sample
        _run(context.generate_step(token))
        assert old_c.is_disposed
        assert old_sample.is_disposed
        assert not context.state.c[0].is_disposed
        assert not context.last_sample.is_disposed
        assert context.last_sample.shape == ()

    def test_reset_validates_chords_first(self, context):
        token = context.reset(PRESETS["am-g-f"])
        with pytest.raises(UnknownChordError):
            context.reset(["C"] * 7 + ["X"])
        assert not token.is_stale
        npt.assert_array_equal(
            context.progression.data_sync(), chord_progression_indices(PRESETS["am-g-f"])
        )

    def test_stale_token_is_ignored(self, context):
        old = context.reset()
        new = context.reset()
        assert old.is_stale and not new.is_stale
        assert _run(context.generate_step(old)) is None
        assert context.current_step.get() == 0.0
        assert context.tracker.sink.calls == []

    def test_reset_during_step_drops_results(self, context, cpu_math):
        token = context.reset()
        original = cpu_math.read_async

        async def read_then_reset(x):
            values = await original(x)
            context.reset()
            return values

        cpu_math.read_async = read_then_reset
        assert _run(context.generate_step(token)) is None
        assert context.current_step.get() == 0.0
        assert context.last_sample.get() == MAX_SHIFT_INDEX
        assert context.tracker.sink.calls == []

    def test_requires_reset(self, context):
        with pytest.raises(RuntimeError):
            _run(context.generate_step(CancellationToken(context, context.generation)))

    def test_lag_resets_clock(self, context, caplog):
        token = context.reset()
        context.clock.now = 100.0
        _run(context.generate_step(token))
        assert context.playback_time == 100.0
        assert "behind" in caplog.text

    def test_next_delay(self, context):
        context.reset()
        context.tracker.clock = 5.0
        context.clock.now = 1.0
        assert context.next_delay() == pytest.approx(3.5)
        context.clock.now = 10.0
        assert context.next_delay() == 0.0

    def test_run_max_calls(self, context):
        delays = []

        async def sleep(delay):
            delays.append(delay)

        calls = _run(context.run(max_calls=3, sleep=sleep))
        assert calls == 3
        assert len(delays) == 2
        assert all(d >= 0.0 for d in delays)

    def test_run_stops_when_closed(self, context):
        async def sleep(delay):
            context.close()

        token = context.reset()
        assert _run(context.run(token, sleep=sleep)) == 1
        assert token.is_stale
        assert context.state is None

    def test_close_releases_notes(self, context):
        context.reset()
        context.tracker.note_on(60)
        context.close()
        assert ("note_off", 60) in context.tracker.sink.calls
        assert context.tracker.active_notes == {}

    def test_reset_sets_bass_progression(self, context):
        context.clock.now = 20.0
        context.reset(PRESETS["dm-a"])
        context.tracker.time_shift(1.5)
        notes = [call for call in context.tracker.sink.calls if call[0] == "note_on"]
        # Dm is rooted on D, pitch class 2 above C2.
        assert [call[1] for call in notes] == [38]
        context.close()
        assert context.tracker.sink.calls[-1] == ("note_off", 38)
