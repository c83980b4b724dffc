"""Lookup of named model variables (``name -> NDArray``).

Checkpoint file formats are out of scope; ``load_npz_variables`` adapts a
plain ``numpy.savez`` archive whose keys are the TensorFlow variable names.
"""

import logging
from typing import Dict, Mapping, Optional, Sequence

import numpy as np

from wgpu_math.errors import MissingVariableError, ShapeMismatchError
from wgpu_math.ndarray import NDArray

logger = logging.getLogger(__name__)


def get_variable(variables: Mapping[str, NDArray], name: str,
                 rank: Optional[int] = None, shape: Optional[Sequence[int]] = None) -> NDArray:
    """
    Fetch one variable and validate it.

    Args:
        variables: Mapping from variable name to array
        name: Variable name
        rank: Required rank, if any
        shape: Required shape, if any; ``None`` entries match any size

    Raises:
        MissingVariableError: if ``name`` is absent
        ShapeMismatchError: if the rank or shape does not match
    """
    if name not in variables:
        raise MissingVariableError(name, variables.keys())
    x = variables[name]
    if rank is not None and x.rank != rank:
        raise ShapeMismatchError(f"Variable '{name}' has rank {x.rank}, expected {rank}")
    if shape is not None:
        shape = tuple(shape)
        if len(shape) != x.rank or any(
            want is not None and want != got for want, got in zip(shape, x.shape)
        ):
            raise ShapeMismatchError(
                f"Variable '{name}' has shape {x.shape}, expected {shape}"
            )
    return x


def load_npz_variables(path) -> Dict[str, NDArray]:
    """Load every array of an ``.npz`` archive as a host NDArray."""
    variables = {}
    with np.load(path) as archive:
        for name in archive.files:
            values = archive[name]
            dtype = "int32" if values.dtype.kind in ("i", "u") else "float32"
            variables[name] = NDArray.make(values.shape, values=values, dtype=dtype)
    logger.info("Loaded %d variables from %s", len(variables), path)
    return variables
