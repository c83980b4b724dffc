#!/usr/bin/env python3
"""
Headless Performance RNN demo with chord conditioning.

Generates note events in real time and logs them. Weights come from an
``.npz`` archive keyed by TensorFlow variable names, or are randomly
initialised when no checkpoint is given.

Usage:
    python -m wgpu_math.examples.performance_chords --preset am-g-f --calls 20
    python -m wgpu_math.examples.performance_chords --checkpoint weights.npz --backend wgpu
    python -m wgpu_math.examples.performance_chords --chords C G Am F C G F F
"""

import argparse
import asyncio
import logging
import sys

from wgpu_math.checkpoint import load_npz_variables
from wgpu_math.config import BACKEND_CHOICES, MathConfig, create_math
from wgpu_math.errors import MissingVariableError, ShapeMismatchError
from wgpu_math.performance_rnn.chords import PRESETS, UnknownChordError, chord_progression_indices
from wgpu_math.performance_rnn.events import LoggingSink
from wgpu_math.performance_rnn.generator import (
    GenerationContext,
    GeneratorConfig,
    PerformanceRNN,
)

logger = logging.getLogger("performance_chords")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__.split("\n\n")[1])
    parser.add_argument("--checkpoint", help="Path to an .npz of model variables")
    parser.add_argument("--backend", choices=BACKEND_CHOICES, default=None,
                        help="Math backend (default: WGPU_MATH_BACKEND or auto)")
    progression = parser.add_mutually_exclusive_group()
    progression.add_argument("--chords", nargs="+", metavar="CHORD",
                             help="Eight chord names, e.g. C C F F G G C C")
    progression.add_argument("--preset", choices=sorted(PRESETS), default="c-f-g",
                             help="Named chord progression")
    parser.add_argument("--calls", type=int, default=10,
                        help="Number of generate calls (0 runs until interrupted)")
    parser.add_argument("--units", type=int, default=64,
                        help="LSTM units per layer for random weights")
    parser.add_argument("--layers", type=int, default=None,
                        help="LSTM layers (default: all layers in the checkpoint, or 1)")
    parser.add_argument("--seed", type=int, default=None)
    parser.add_argument("--no-realtime", action="store_true",
                        help="Generate back to back instead of pacing to the playback clock")
    parser.add_argument("-v", "--verbose", action="store_true")
    return parser.parse_args(argv)


async def _no_sleep(delay):
    await asyncio.sleep(0)


def build_model(math, args, config):
    if args.checkpoint:
        variables = load_npz_variables(args.checkpoint)
        return PerformanceRNN.from_variables(
            math, variables, num_layers=config.num_layers, forget_bias=config.forget_bias
        )
    logger.info("No checkpoint given, using random weights (%d units)", args.units)
    return PerformanceRNN.random(math, units=args.units, num_layers=config.num_layers or 1,
                                 seed=args.seed, forget_bias=config.forget_bias)


def main(argv=None):
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )

    chords = args.chords or PRESETS[args.preset]
    try:
        chord_progression_indices(chords)
    except (UnknownChordError, ValueError) as e:
        print(f"Invalid chord progression: {e}")
        return 1

    env = MathConfig.from_env()
    config = MathConfig(
        backend=args.backend or env.backend,
        power_preference=env.power_preference,
        seed=args.seed if args.seed is not None else env.seed,
    )

    if config.backend == "wgpu":
        from wgpu_math.backends.backend_wgpu import WgpuBackend

        if not WgpuBackend.is_supported(config.power_preference):
            print("No wgpu adapter is available; run with --backend cpu instead.")
            return 1

    math = create_math(config)
    print(f"Performance RNN on the {math.name} backend, chords: {' '.join(chords)}")

    generator_config = GeneratorConfig(num_layers=args.layers)
    try:
        model = build_model(math, args, generator_config)
    except (MissingVariableError, ShapeMismatchError) as e:
        print(f"Cannot load model: {e}")
        math.dispose()
        return 1

    context = GenerationContext(model, LoggingSink(), generator_config)
    token = context.reset(chords)
    start = context.playback_time
    sleep = _no_sleep if args.no_realtime else asyncio.sleep
    try:
        calls = asyncio.run(context.run(token, max_calls=args.calls or None, sleep=sleep))
        print(f"Done: {calls} generate calls, {context.playback_time - start:.2f}s of playback time")
    except KeyboardInterrupt:
        print("Interrupted")
    finally:
        context.close()
        model.dispose()
        math.dispose()
    return 0


if __name__ == "__main__":
    sys.exit(main())
