"""Typed, shaped array handles whose data lives on the host or on the GPU.

An ``NDArray`` is a thin handle: a shape, a logical dtype and a shared
``NDArrayData`` record. The data record holds the values either as a flat
numpy array on the host or as a device buffer owned by a ``DeviceStorage``
(the wgpu backend). Data moves lazily: it is uploaded the first time a GPU
kernel needs it and downloaded (releasing the device copy) the first time
the host reads it.

Views created with ``reshape``/``as_1d``/``as_2d``/... share the data
record, so disposing any of them releases the data for all of them.
"""

import asyncio
import logging

import numpy as np

from wgpu_math.errors import (
    IndexOutOfRangeError,
    ShapeMismatchError,
    UnsupportedTypeError,
    UseAfterDisposeError,
)

logger = logging.getLogger(__name__)

DTYPES = {
    "float32": np.float32,
    "int32": np.int32,
}


# ============================================================================
# Helpers
# ============================================================================

def normalize_dtype(dtype):
    """Map a dtype spec (str or numpy dtype) onto a supported dtype name."""
    if dtype is None:
        return "float32"
    if isinstance(dtype, str):
        name = dtype
    else:
        try:
            name = np.dtype(dtype).name
        except TypeError as e:
            raise UnsupportedTypeError(f"Unsupported dtype {dtype!r}") from e
    if name not in DTYPES:
        raise UnsupportedTypeError(
            f"Unsupported dtype '{name}', expected one of {sorted(DTYPES)}"
        )
    return name


def _infer_dtype(values):
    """Pick a dtype name for host values when the caller gave none."""
    arr = np.asarray(values)
    if arr.dtype.kind in ("i", "u"):
        return "int32"
    if arr.dtype.kind in ("f", "b"):
        return "float32"
    raise UnsupportedTypeError(f"Unsupported value type '{arr.dtype}'")


def _host_values(values, dtype):
    """Convert values to a flat, contiguous, privately owned numpy array."""
    arr = np.asarray(values)
    if arr.dtype.kind not in ("i", "u", "f", "b"):
        raise UnsupportedTypeError(f"Unsupported value type '{arr.dtype}'")
    return np.array(arr, dtype=DTYPES[dtype], copy=True).reshape(-1)


def normalize_shape(shape):
    """Return the shape as a tuple of non-negative ints."""
    if isinstance(shape, (int, np.integer)):
        shape = (int(shape),)
    shape = tuple(int(s) for s in shape)
    for s in shape:
        if s < 0:
            raise ShapeMismatchError(f"Shape {shape} has a negative dimension")
    return shape


def size_from_shape(shape):
    size = 1
    for s in shape:
        size *= s
    return size


def compute_strides(shape):
    """Row-major element strides for a shape."""
    strides = [0] * len(shape)
    stride = 1
    for i in range(len(shape) - 1, -1, -1):
        strides[i] = stride
        stride *= shape[i]
    return tuple(strides)


def infer_reshape(size, new_shape):
    """Resolve a single -1 entry in ``new_shape`` against ``size``."""
    new_shape = [int(s) for s in new_shape]
    unknown = [i for i, s in enumerate(new_shape) if s == -1]
    if len(unknown) > 1:
        raise ShapeMismatchError(f"Only one dimension can be -1, got {tuple(new_shape)}")
    if unknown:
        known = 1
        for i, s in enumerate(new_shape):
            if i != unknown[0]:
                known *= s
        if known == 0 or size % known != 0:
            raise ShapeMismatchError(
                f"Cannot reshape {size} elements to {tuple(new_shape)}"
            )
        new_shape[unknown[0]] = size // known
    new_shape = normalize_shape(new_shape)
    if size_from_shape(new_shape) != size:
        raise ShapeMismatchError(f"Cannot reshape {size} elements to {new_shape}")
    return new_shape


# ============================================================================
# Storage
# ============================================================================

class DeviceStorage:
    """Owner of device-resident buffers (implemented by the GPU backend)."""

    def upload(self, values):
        """Copy flat host values to a new device buffer and return it."""
        raise NotImplementedError

    def download(self, buffer, size, dtype):
        """Read ``size`` elements of ``buffer`` back as a flat numpy array."""
        raise NotImplementedError

    def release(self, buffer):
        """Free a device buffer."""
        raise NotImplementedError

    async def synchronize(self):
        """Suspension point before a device-to-host transfer."""
        await asyncio.sleep(0)


class NDArrayData:
    """The data record shared by an array and all of its views."""

    __slots__ = ("values", "buffer", "storage", "disposed")

    def __init__(self, values=None, buffer=None, storage=None):
        self.values = values
        self.buffer = buffer
        self.storage = storage
        self.disposed = False


# ============================================================================
# NDArray
# ============================================================================

class NDArray:
    """A shaped, typed array handle. Immutable by convention."""

    RANK = None

    def __init__(self, shape, dtype=None, values=None, data=None):
        shape = normalize_shape(shape)
        if self.RANK is not None and len(shape) != self.RANK:
            raise ShapeMismatchError(
                f"{type(self).__name__} requires rank {self.RANK}, got shape {shape}"
            )
        if dtype is None and values is not None:
            dtype = _infer_dtype(values)
        self._shape = shape
        self._dtype = normalize_dtype(dtype)
        self._size = size_from_shape(shape)
        self._strides = compute_strides(shape)

        if data is None:
            if values is None:
                flat = np.zeros(self._size, dtype=DTYPES[self._dtype])
            else:
                flat = _host_values(values, self._dtype)
            data = NDArrayData(values=flat)
        if data.values is not None and data.values.size != self._size:
            raise ShapeMismatchError(
                f"Shape {shape} needs {self._size} values, got {data.values.size}"
            )
        self._data = data

    # ---- Factories ----

    @classmethod
    def make(cls, shape, values=None, dtype=None, data=None):
        """Create an array of the rank-specific class for ``shape``."""
        shape = normalize_shape(shape)
        klass = _RANK_CLASSES.get(len(shape), NDArray)
        if cls is not NDArray and klass is not cls:
            raise ShapeMismatchError(
                f"{cls.__name__} requires rank {cls.RANK}, got shape {shape}"
            )
        return klass(shape, dtype=dtype, values=values, data=data)

    @classmethod
    def zeros(cls, shape, dtype="float32"):
        """Create a zero-filled host array."""
        return cls.make(shape, dtype=dtype)

    @classmethod
    def zeros_like(cls, other):
        return NDArray.make(other.shape, dtype=other.dtype)

    @classmethod
    def like(cls, other):
        """Create a host copy of ``other`` (downloading it if needed)."""
        return NDArray.make(other.shape, values=other._read(), dtype=other.dtype)

    # ---- Properties ----

    @property
    def shape(self):
        return self._shape

    @property
    def dtype(self):
        return self._dtype

    @property
    def rank(self):
        return len(self._shape)

    @property
    def size(self):
        return self._size

    @property
    def strides(self):
        return self._strides

    @property
    def data_handle(self):
        """The shared data record; identical for an array and its views."""
        return self._data

    @property
    def is_disposed(self):
        return self._data.disposed

    @property
    def is_on_device(self):
        return not self._data.disposed and self._data.buffer is not None

    def _check_live(self):
        if self._data.disposed:
            raise UseAfterDisposeError(
                f"{type(self).__name__}{self._shape} was used after dispose()"
            )

    # ---- Host / device transfer ----

    def _read(self):
        """Flat host values, downloading (and freeing) a device copy first."""
        self._check_live()
        data = self._data
        if data.values is None:
            values = data.storage.download(data.buffer, self._size, self._dtype)
            data.storage.release(data.buffer)
            data.values = values
            data.buffer = None
            data.storage = None
        return data.values

    def data_sync(self):
        """Return a numpy copy of the values, blocking on any device transfer."""
        return self._read().reshape(self._shape).copy()

    async def data(self):
        """Return a numpy copy of the values; suspends before a device read."""
        self._check_live()
        if self._data.buffer is not None:
            await self._data.storage.synchronize()
        return self.data_sync()

    async def val(self, *locs):
        """Return a single element; suspends before a device read."""
        self._check_live()
        if self._data.buffer is not None:
            await self._data.storage.synchronize()
        return self.get(*locs)

    def get_buffer(self, storage):
        """Return the device buffer for ``storage``, uploading if needed."""
        self._check_live()
        data = self._data
        if data.buffer is not None and data.storage is not storage:
            self._read()
        if data.buffer is None:
            data.buffer = storage.upload(data.values)
            data.storage = storage
            data.values = None
        return data.buffer

    def upload(self, storage):
        """Pre-upload the values to the device so a later kernel can skip it."""
        self.get_buffer(storage)
        return self

    # ---- Element access ----

    def loc_to_index(self, locs):
        if len(locs) != self.rank:
            raise IndexOutOfRangeError(
                f"Expected {self.rank} indices for shape {self._shape}, got {len(locs)}"
            )
        index = 0
        for axis, (loc, dim, stride) in enumerate(zip(locs, self._shape, self._strides)):
            if not 0 <= loc < dim:
                raise IndexOutOfRangeError(
                    f"Index {loc} out of range for axis {axis} with size {dim}"
                )
            index += loc * stride
        return index

    def index_to_loc(self, index):
        if not 0 <= index < self._size:
            raise IndexOutOfRangeError(f"Flat index {index} out of range [0, {self._size})")
        locs = []
        for stride in self._strides:
            locs.append(index // stride)
            index %= stride
        return tuple(locs)

    def get(self, *locs):
        """Read one element (blocking if the data lives on the device)."""
        values = self._read()
        return values[self.loc_to_index(locs)].item()

    def set(self, value, *locs):
        """Write one element, invalidating any device copy."""
        values = self._read()
        values[self.loc_to_index(locs)] = value

    # ---- Views ----

    def reshape(self, *new_shape):
        """Return a view with a new shape; the element count must match."""
        if len(new_shape) == 1 and isinstance(new_shape[0], (tuple, list)):
            new_shape = new_shape[0]
        self._check_live()
        shape = infer_reshape(self._size, new_shape)
        if shape == self._shape:
            return self
        return NDArray.make(shape, dtype=self._dtype, data=self._data)

    def as_scalar(self):
        if self._size != 1:
            raise ShapeMismatchError(f"Cannot view shape {self._shape} as a scalar")
        return self.reshape(())

    def as_1d(self):
        return self.reshape(self._size)

    def as_2d(self, rows, cols):
        return self.reshape(rows, cols)

    def as_3d(self, rows, cols, depth):
        return self.reshape(rows, cols, depth)

    def as_4d(self, rows, cols, depth, depth2):
        return self.reshape(rows, cols, depth, depth2)

    def as_type(self, dtype):
        """Host copy with a different dtype."""
        dtype = normalize_dtype(dtype)
        return NDArray.make(self._shape, values=self._read(), dtype=dtype)

    # ---- Lifetime ----

    def dispose(self):
        """Release the data. Disposing twice is an error."""
        data = self._data
        if data.disposed:
            raise UseAfterDisposeError(
                f"{type(self).__name__}{self._shape} was already disposed"
            )
        if data.buffer is not None:
            data.storage.release(data.buffer)
        data.values = None
        data.buffer = None
        data.storage = None
        data.disposed = True

    def __repr__(self):
        if self._data.disposed:
            state = "disposed"
        elif self._data.buffer is not None:
            state = "device"
        else:
            state = "host"
        return f"{type(self).__name__}(shape={self._shape}, dtype={self._dtype}, {state})"


class Scalar(NDArray):
    RANK = 0

    @staticmethod
    def new(value, dtype=None):
        return Scalar((), dtype=dtype, values=[value])


class Array1D(NDArray):
    RANK = 1

    @staticmethod
    def new(values, dtype=None):
        values = np.asarray(values)
        if values.ndim != 1:
            raise ShapeMismatchError(f"Array1D.new expects 1-D values, got {values.shape}")
        return Array1D(values.shape, dtype=dtype, values=values)


class Array2D(NDArray):
    RANK = 2

    @staticmethod
    def new(shape, values, dtype=None):
        return Array2D(shape, dtype=dtype, values=values)


class Array3D(NDArray):
    RANK = 3

    @staticmethod
    def new(shape, values, dtype=None):
        return Array3D(shape, dtype=dtype, values=values)


class Array4D(NDArray):
    RANK = 4

    @staticmethod
    def new(shape, values, dtype=None):
        return Array4D(shape, dtype=dtype, values=values)


_RANK_CLASSES = {
    0: Scalar,
    1: Array1D,
    2: Array2D,
    3: Array3D,
    4: Array4D,
}
