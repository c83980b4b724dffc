"""Environment-driven configuration for creating a math context.

Variables:
    WGPU_MATH_BACKEND            "auto" (default), "cpu" or "wgpu"
    WGPU_MATH_POWER_PREFERENCE   "high-performance" (default) or "low-power"
    WGPU_MATH_SEED               integer seed for the backend RNG (optional)
"""

import os
import logging
from dataclasses import dataclass
from typing import Optional

logger = logging.getLogger(__name__)

BACKEND_CHOICES = ("auto", "cpu", "wgpu")
POWER_PREFERENCES = ("high-performance", "low-power")


@dataclass(frozen=True)
class MathConfig:
    """Settings used by ``create_math``."""

    backend: str = "auto"
    power_preference: str = "high-performance"
    seed: Optional[int] = None

    def __post_init__(self):
        if self.backend not in BACKEND_CHOICES:
            raise ValueError(
                f"Unknown backend '{self.backend}', expected one of {BACKEND_CHOICES}"
            )
        if self.power_preference not in POWER_PREFERENCES:
            raise ValueError(
                f"Unknown power preference '{self.power_preference}', "
                f"expected one of {POWER_PREFERENCES}"
            )

    @classmethod
    def from_env(cls, environ=None) -> "MathConfig":
        """Build a config from environment variables."""
        environ = os.environ if environ is None else environ
        seed = environ.get("WGPU_MATH_SEED", "").strip()
        return cls(
            backend=environ.get("WGPU_MATH_BACKEND", "auto").strip().lower() or "auto",
            power_preference=environ.get(
                "WGPU_MATH_POWER_PREFERENCE", "high-performance"
            ).strip().lower() or "high-performance",
            seed=int(seed) if seed else None,
        )


def create_math(config: Optional[MathConfig] = None):
    """Create an ``NDArrayMath`` for the configured backend.

    With ``backend="auto"`` the wgpu backend is used when an adapter is
    available, otherwise the CPU backend is used and a warning is logged.
    """
    # Deferred so importing the config never touches the GPU stack.
    from wgpu_math.ndarray_math import NDArrayMath
    from wgpu_math.backends.backend_cpu import CPUBackend

    config = config or MathConfig.from_env()

    if config.backend == "cpu":
        return NDArrayMath(CPUBackend(seed=config.seed))

    from wgpu_math.backends.backend_wgpu import WgpuBackend

    if config.backend == "wgpu":
        return NDArrayMath(
            WgpuBackend(power_preference=config.power_preference, seed=config.seed)
        )

    if WgpuBackend.is_supported(config.power_preference):
        logger.info("Using wgpu backend (%s)", config.power_preference)
        return NDArrayMath(
            WgpuBackend(power_preference=config.power_preference, seed=config.seed)
        )
    logger.warning("No wgpu adapter available; falling back to the CPU backend")
    return NDArrayMath(CPUBackend(seed=config.seed))
