"""Math backends. ``backend_wgpu`` is imported on demand so numpy-only use never loads wgpu."""

from wgpu_math.backends.backend import MathBackend
from wgpu_math.backends.backend_cpu import CPUBackend

__all__ = ["MathBackend", "CPUBackend"]
