"""Device tensors: strided views over typed buffers.

A Tensor is a (shape, strides, offset, dtype) view over one Buffer. Shape
operations (reshape of contiguous data, slicing, transpose, permute, expand,
squeeze/unsqueeze) only relabel strides and share the buffer. Arithmetic and
reductions dispatch the built-in kernels from wgpu_shaders and always produce
a fresh, densely laid out buffer.

The module-level functions below are the raw (non-differentiable) functional
API. Tensor's operators and methods route through wgpu_autograd, which wraps
these functions and records graph nodes when gradients are required.
"""

import logging
import numbers
from typing import Optional, Sequence, Tuple

import numpy as np

from wgpu_graph import wgpu_dtypes
from wgpu_graph.wgpu_buffer import Buffer
from wgpu_graph.wgpu_device import select_device
from wgpu_graph.wgpu_errors import (
    BoundsError, BroadcastError, DeviceMismatchError, DivideByZeroError, ShapeError,
)
from wgpu_graph.wgpu_shaders import (
    FLOAT_ONLY, MAX_DIMS, get_module, layout_params, layout_rank,
)

logger = logging.getLogger(__name__)


# ============================================================================
# Shape Helpers
# ============================================================================

def _as_shape(shape) -> Tuple[int, ...]:
    if len(shape) == 1 and isinstance(shape[0], (tuple, list)):
        shape = shape[0]
    return tuple(int(s) for s in shape)


def _normalize_shape(shape) -> Tuple[int, ...]:
    if isinstance(shape, numbers.Integral):
        shape = (shape,)
    shape = tuple(int(s) for s in shape)
    if any(s < 0 for s in shape):
        raise ShapeError(f"Negative extent in shape {shape}")
    return shape


def _numel(shape) -> int:
    result = 1
    for s in shape:
        result *= s
    return result


def contiguous_strides(shape) -> Tuple[int, ...]:
    """Row-major element strides for shape."""
    strides = []
    step = 1
    for s in reversed(shape):
        strides.append(step)
        step *= max(s, 1)
    return tuple(reversed(strides))


def _normalize_axis(axis: int, ndim: int) -> int:
    if not -ndim <= axis < ndim:
        raise BoundsError(f"Axis {axis} out of range for {ndim} dimensions")
    return axis % ndim


def broadcast_shapes(a: Sequence[int], b: Sequence[int]) -> Tuple[int, ...]:
    """Broadcast two shapes, aligned from the trailing dimension.

    Raises:
        BroadcastError: a pair of extents differs and neither is 1.
    """
    a, b = tuple(a), tuple(b)
    ndim = max(len(a), len(b))
    a = (1,) * (ndim - len(a)) + a
    b = (1,) * (ndim - len(b)) + b
    result = []
    for x, y in zip(a, b):
        if x == y or y == 1:
            result.append(x)
        elif x == 1:
            result.append(y)
        else:
            raise BroadcastError(a, b)
    return tuple(result)


def _broadcast_strides(t: "Tensor", shape) -> Tuple[int, ...]:
    """Strides reading t as if expanded to shape (stride 0 on expanded dims)."""
    lead = len(shape) - t.ndim
    if lead < 0:
        raise BroadcastError(t.shape, shape)
    strides = [0] * lead
    for extent, size, stride in zip(shape[lead:], t.shape, t.strides):
        if size == extent:
            strides.append(stride)
        elif size == 1:
            strides.append(0)
        else:
            raise BroadcastError(t.shape, shape)
    return tuple(strides)


# ============================================================================
# Tensor
# ============================================================================

class Tensor:
    """N-dimensional view over a device buffer."""

    def __init__(self, buffer: Buffer, shape, strides=None, offset: int = 0,
                 requires_grad: bool = False):
        """Initialize a tensor view.

        Args:
            buffer: Buffer holding the elements
            shape: tuple of non-negative extents
            strides: signed element strides (row-major when omitted)
            offset: element offset of index (0, ..., 0) into the buffer
            requires_grad: track gradients for this leaf
        """
        self.buffer = buffer
        self._shape = _normalize_shape(shape)
        self._strides = (tuple(int(s) for s in strides) if strides is not None
                         else contiguous_strides(self._shape))
        self.offset = int(offset)
        if len(self._strides) != len(self._shape):
            raise ShapeError(
                f"shape {self._shape} and strides {self._strides} differ in length"
            )
        self._check_extent()
        self.requires_grad = False
        self.grad: Optional["Tensor"] = None
        self._node = None
        if requires_grad:
            self.requires_grad_()

    def _check_extent(self) -> None:
        count = self.buffer.count
        if self.numel() == 0:
            if not 0 <= self.offset <= count:
                raise BoundsError(f"Offset {self.offset} outside buffer of {count}")
            return
        low = high = self.offset
        for size, stride in zip(self._shape, self._strides):
            span = (size - 1) * stride
            if span < 0:
                low += span
            else:
                high += span
        if low < 0 or high >= count:
            raise BoundsError(
                f"View (shape={self._shape}, strides={self._strides}, "
                f"offset={self.offset}) addresses [{low}, {high}] outside a "
                f"buffer of {count} elements"
            )

    # ---- Properties ----
    @property
    def shape(self):
        return self._shape

    @property
    def strides(self):
        return self._strides

    @property
    def ndim(self):
        return len(self._shape)

    @property
    def dtype(self) -> str:
        return self.buffer.dtype

    @property
    def device(self):
        return self.buffer.device

    @property
    def byte_offset(self) -> int:
        return self.offset * self.buffer.itemsize

    @property
    def is_leaf(self) -> bool:
        return self._node is None

    @property
    def grad_fn(self):
        """Graph node that produced this tensor, None for leaves."""
        return self._node

    def numel(self) -> int:
        """Total number of elements."""
        return _numel(self._shape)

    size = numel

    def __len__(self):
        if not self._shape:
            raise TypeError("len() of a 0-d tensor")
        return self._shape[0]

    def is_contiguous(self) -> bool:
        """Row-major layout (offset aside)."""
        if self.numel() == 0:
            return True
        expected = 1
        for size, stride in zip(reversed(self._shape), reversed(self._strides)):
            if size != 1 and stride != expected:
                return False
            expected *= size
        return True

    def _is_dense(self) -> bool:
        return self.is_contiguous() and self.offset == 0

    def __repr__(self):
        grad = ", requires_grad=True" if self.requires_grad else ""
        return (f"Tensor(shape={self._shape}, dtype={self.dtype}, "
                f"device={self.device}{grad})")

    # ---- Factory Methods ----
    @staticmethod
    def empty(shape, dtype="float32", device=None, requires_grad=False):
        """Uninitialized tensor (the host device may return garbage)."""
        shape = _normalize_shape(shape)
        buffer = Buffer.allocate(device, _numel(shape), dtype, zero=False)
        return Tensor(buffer, shape, requires_grad=requires_grad)

    @staticmethod
    def zeros(shape, dtype="float32", device=None, requires_grad=False):
        """Create a tensor filled with zeros."""
        shape = _normalize_shape(shape)
        buffer = Buffer.allocate(device, _numel(shape), dtype, zero=True)
        return Tensor(buffer, shape, requires_grad=requires_grad)

    @staticmethod
    def full(shape, value, dtype=None, device=None, requires_grad=False):
        """Create a tensor filled with value."""
        if dtype is None:
            dtype = "int32" if isinstance(value, numbers.Integral) else "float32"
        out = Tensor.empty(shape, dtype, device)
        fill(out, value)
        if requires_grad:
            out.requires_grad_()
        return out

    @staticmethod
    def ones(shape, dtype="float32", device=None, requires_grad=False):
        """Create a tensor filled with ones."""
        return Tensor.full(shape, 1, dtype, device, requires_grad)

    @staticmethod
    def from_numpy(arr, device=None, dtype=None, requires_grad=False):
        """Create a tensor from a numpy array (copy-in).

        float64 data is narrowed to float32 on devices that cannot store it.
        """
        arr = np.asarray(arr)
        device = select_device(device)
        if dtype is None:
            dtype = wgpu_dtypes.from_numpy(arr.dtype)
            if dtype == "float64" and not device.capabilities.supports(dtype):
                logger.debug(f"Narrowing float64 data to float32 on {device}")
                dtype = "float32"
        dtype = wgpu_dtypes.canonical(dtype)
        host = np.asarray(arr, dtype=wgpu_dtypes.numpy_dtype(dtype), order="C")
        buffer = Buffer.allocate(device, host.size, dtype, zero=False)
        buffer.write(host)
        return Tensor(buffer, host.shape, requires_grad=requires_grad)

    @staticmethod
    def randn(shape, dtype="float32", device=None, requires_grad=False, rng=None):
        """Create a tensor with standard normal values."""
        source = rng if rng is not None else np.random
        values = source.standard_normal(_normalize_shape(shape))
        return Tensor.from_numpy(values, device, dtype, requires_grad)

    @staticmethod
    def arange(start, end=None, step=1, dtype="float32", device=None):
        """Create a 1D tensor with values in a range."""
        if end is None:
            end = start
            start = 0
        values = np.arange(start, end, step, dtype=wgpu_dtypes.numpy_dtype(dtype))
        return Tensor.from_numpy(values, device, dtype)

    # ---- Data Transfer ----
    def numpy(self) -> np.ndarray:
        """Read tensor data back to the host (synchronization point)."""
        np_dtype = wgpu_dtypes.numpy_dtype(self.dtype)
        if self.numel() == 0:
            return np.zeros(self._shape, dtype=np_dtype)
        dense = contiguous(self)
        return dense.buffer.read()[:self.numel()].reshape(self._shape)

    def __array__(self, dtype=None, copy=None):
        arr = self.numpy()
        return arr if dtype is None else arr.astype(dtype)

    def tolist(self):
        return self.numpy().tolist()

    def item(self):
        """The single element as a Python scalar."""
        if self.numel() != 1:
            raise ValueError(f"item() needs exactly one element, tensor has {self.numel()}")
        return self.numpy().reshape(-1)[0].item()

    # ---- Autograd ----
    def requires_grad_(self, requires_grad: bool = True) -> "Tensor":
        """Turn gradient tracking on (or off) for a leaf."""
        if self._node is not None:
            raise RuntimeError("requires_grad can only be changed on leaf tensors")
        if requires_grad and not wgpu_dtypes.is_float(self.dtype):
            raise TypeError(f"Only floating point tensors can require grad, not {self.dtype}")
        self.requires_grad = requires_grad
        return self

    def detach(self) -> "Tensor":
        """Same data, cut from the graph."""
        return Tensor(self.buffer, self._shape, self._strides, self.offset)

    def backward(self, grad=None, retain_graph: bool = False) -> None:
        """Backpropagate from this tensor into the leaves' grad accumulators."""
        _ag.backward(self, grad, retain_graph)

    # ---- Shape Manipulation ----
    def reshape(self, *shape):
        return _ag.reshape(self, _as_shape(shape))

    view = reshape

    def flatten(self):
        return _ag.reshape(self, (-1,))

    def expand(self, *shape):
        return _ag.expand(self, _as_shape(shape))

    def broadcast_to(self, shape):
        return _ag.expand(self, tuple(shape))

    def transpose(self, dim0, dim1):
        return _ag.transpose(self, dim0, dim1)

    def permute(self, *axes):
        return _ag.permute(self, _as_shape(axes))

    @property
    def T(self):
        """Reverse all dimensions."""
        return _ag.permute(self, tuple(reversed(range(self.ndim))))

    def squeeze(self, axis=None):
        return _ag.squeeze(self, axis)

    def unsqueeze(self, axis):
        return _ag.unsqueeze(self, axis)

    def __getitem__(self, key):
        return _ag.index(self, key)

    def slice(self, axis, start=None, stop=None, step=1):
        """Slice one axis: the view t[..., start:stop:step, ...]."""
        axis = _normalize_axis(axis, self.ndim)
        key = (slice(None),) * axis + (slice(start, stop, step),)
        return _ag.index(self, key)

    def contiguous(self):
        return _ag.contiguous(self)

    def cast(self, dtype):
        return _ag.cast(self, dtype)

    astype = cast

    def to(self, device):
        return _ag.to(self, device)

    # ---- Operators ----
    def __add__(self, other):
        return _ag.add(self, other)

    __radd__ = __add__

    def __sub__(self, other):
        return _ag.sub(self, other)

    def __rsub__(self, other):
        return _ag.rsub(self, other)

    def __mul__(self, other):
        return _ag.mul(self, other)

    __rmul__ = __mul__

    def __truediv__(self, other):
        return _ag.div(self, other)

    def __rtruediv__(self, other):
        return _ag.rdiv(self, other)

    def __neg__(self):
        return _ag.neg(self)

    def __pow__(self, exponent):
        return _ag.pow_scalar(self, exponent)

    def __matmul__(self, other):
        return _ag.matmul(self, other)

    # ---- Named Operations ----
    def matmul(self, other):
        return _ag.matmul(self, other)

    def dot(self, other):
        return _ag.dot(self, other)

    def exp(self):
        return _ag.exp(self)

    def log(self):
        return _ag.log(self)

    def relu(self):
        return _ag.relu(self)

    def sigmoid(self):
        return _ag.sigmoid(self)

    def tanh(self):
        return _ag.tanh(self)

    def sum(self, axis=None, keepdims=False):
        return _ag.sum_reduce(self, axis, keepdims)

    def mean(self, axis=None, keepdims=False):
        return _ag.mean_reduce(self, axis, keepdims)

    def max(self, axis=None, keepdims=False):
        return _ag.max_reduce(self, axis, keepdims)

    # ---- In-place ----
    def _check_inplace(self, what):
        if self.requires_grad and _ag.is_grad_enabled():
            raise RuntimeError(
                f"{what}: in-place operation on a tensor that requires grad"
            )

    def _assign(self, result: "Tensor") -> "Tensor":
        if result.shape != self._shape:
            raise BroadcastError(result.shape, self._shape)
        copy_into(self, result)
        return self

    def add_(self, other):
        self._check_inplace("add_")
        return self._assign(add(self, other))

    def sub_(self, other):
        self._check_inplace("sub_")
        return self._assign(sub(self, other))

    def mul_(self, other):
        self._check_inplace("mul_")
        return self._assign(mul(self, other))

    def fill_(self, value):
        self._check_inplace("fill_")
        fill(self, value)
        return self

    def zero_(self):
        return self.fill_(0)

    def copy_(self, src):
        """Copy src (broadcast to this shape) into this tensor's elements."""
        self._check_inplace("copy_")
        copy_into(self, src)
        return self

    def scaled_add(self, alpha, x: "Tensor") -> "Tensor":
        """In-place self += alpha * x."""
        self._check_inplace("scaled_add")
        axpy(alpha, x, self)
        return self


# ============================================================================
# Construction Shortcuts
# ============================================================================

empty = Tensor.empty
zeros = Tensor.zeros
ones = Tensor.ones
full = Tensor.full
from_numpy = Tensor.from_numpy
randn = Tensor.randn
arange = Tensor.arange


def tensor(data, dtype=None, device=None, requires_grad=False) -> Tensor:
    """Create a tensor from (nested) Python data; floats default to float32."""
    arr = np.asarray(data)
    if dtype is None and arr.dtype == np.float64:
        dtype = "float32"
    return Tensor.from_numpy(arr, device, dtype, requires_grad)


def zeros_like(t: Tensor) -> Tensor:
    return Tensor.zeros(t.shape, t.dtype, t.device)


def ones_like(t: Tensor) -> Tensor:
    return Tensor.ones(t.shape, t.dtype, t.device)


# ============================================================================
# Functional API - Launch Helpers
# ============================================================================

def _launch(name, dtypes, bindings, params, global_size):
    device = bindings[0][0].device
    module = get_module(device, name, *dtypes)
    return module.bind(bindings, params).submit(global_size, wait=False)


def _check_pair(a: Tensor, b: Tensor) -> None:
    if a.device is not b.device:
        raise DeviceMismatchError(a.device, b.device)
    if a.dtype != b.dtype:
        raise TypeError(f"Element type mismatch: {a.dtype} and {b.dtype}")


def _require_float(op: str, t: Tensor) -> None:
    if op in FLOAT_ONLY and not wgpu_dtypes.is_float(t.dtype):
        raise TypeError(f"{op} requires a floating point tensor, got {t.dtype}")


def scalar_value(dtype: str, value):
    """Convert a Python scalar to the parameter value for dtype.

    Integer element types wrap around, matching device arithmetic.
    """
    if isinstance(value, (bool, np.bool_)) or not isinstance(value, numbers.Number):
        raise TypeError(f"Expected a numeric scalar, got {type(value).__name__}")
    if wgpu_dtypes.is_float(dtype):
        return float(value)
    if not isinstance(value, numbers.Integral):
        raise TypeError(f"Cannot combine {dtype} tensor with non-integer scalar {value!r}")
    value = int(value) % 2 ** 32
    if dtype == "int32" and value >= 2 ** 31:
        value -= 2 ** 32
    return value


# ============================================================================
# Functional API - Views
# ============================================================================

def reshape(t: Tensor, shape) -> Tensor:
    """Reshape, inferring at most one -1 extent; a view when the data is contiguous.

    Raises:
        ShapeError: element counts differ or the -1 extent is ambiguous.
    """
    shape = tuple(int(s) for s in shape)
    numel = t.numel()
    if shape.count(-1) > 1:
        raise ShapeError(f"Only one -1 extent allowed, got {shape}")
    if -1 in shape:
        known = _numel(s for s in shape if s != -1)
        if known == 0 or numel % known:
            raise ShapeError(f"Cannot reshape {numel} elements to {shape}")
        shape = tuple(numel // known if s == -1 else s for s in shape)
    if any(s < 0 for s in shape) or _numel(shape) != numel:
        raise ShapeError(f"Cannot reshape {numel} elements to {shape}")
    source = t if t.is_contiguous() else contiguous(t)
    return Tensor(source.buffer, shape, contiguous_strides(shape), source.offset)


def expand(t: Tensor, shape) -> Tensor:
    """Broadcast view of t with shape (-1 keeps an extent)."""
    shape = tuple(int(s) for s in shape)
    lead = len(shape) - t.ndim
    if lead < 0:
        raise BroadcastError(t.shape, shape)
    shape = shape[:lead] + tuple(
        size if extent == -1 else extent for extent, size in zip(shape[lead:], t.shape)
    )
    return Tensor(t.buffer, shape, _broadcast_strides(t, shape), t.offset)


def transpose(t: Tensor, dim0: int, dim1: int) -> Tensor:
    axes = list(range(t.ndim))
    dim0, dim1 = _normalize_axis(dim0, t.ndim), _normalize_axis(dim1, t.ndim)
    axes[dim0], axes[dim1] = axes[dim1], axes[dim0]
    return permute(t, axes)


def permute(t: Tensor, axes) -> Tensor:
    axes = tuple(_normalize_axis(a, t.ndim) for a in axes)
    if sorted(axes) != list(range(t.ndim)):
        raise ValueError(f"{axes} is not a permutation of {t.ndim} axes")
    return Tensor(t.buffer, tuple(t.shape[a] for a in axes),
                  tuple(t.strides[a] for a in axes), t.offset)


def squeeze(t: Tensor, axis=None) -> Tensor:
    if axis is None:
        keep = [i for i, s in enumerate(t.shape) if s != 1]
    else:
        axis = _normalize_axis(axis, t.ndim)
        if t.shape[axis] != 1:
            raise ShapeError(f"Cannot squeeze axis {axis} of extent {t.shape[axis]}")
        keep = [i for i in range(t.ndim) if i != axis]
    return Tensor(t.buffer, tuple(t.shape[i] for i in keep),
                  tuple(t.strides[i] for i in keep), t.offset)


def unsqueeze(t: Tensor, axis: int) -> Tensor:
    axis = _normalize_axis(axis, t.ndim + 1)
    stride = t.strides[axis] * t.shape[axis] if axis < t.ndim else 1
    return Tensor(t.buffer, t.shape[:axis] + (1,) + t.shape[axis:],
                  t.strides[:axis] + (stride,) + t.strides[axis:], t.offset)


def normalize_index(t: Tensor, key) -> tuple:
    """Expand a subscript into one entry per axis (None entries insert axes).

    Raises:
        BoundsError: integer index out of range, slice bound outside [-n, n]
            or too many indices.
    """
    if not isinstance(key, tuple):
        key = (key,)
    if sum(k is Ellipsis for k in key) > 1:
        raise IndexError("Only one ellipsis allowed")
    consumed = sum(1 for k in key if k is not None and k is not Ellipsis)
    if consumed > t.ndim:
        raise BoundsError(f"Too many indices ({consumed}) for {t.ndim} dimensions")
    entries = []
    for k in key:
        if k is Ellipsis:
            entries.extend([slice(None)] * (t.ndim - consumed))
        else:
            entries.append(k)
    if Ellipsis not in key:
        entries.extend([slice(None)] * (t.ndim - consumed))

    axis = 0
    for k in entries:
        if k is None:
            continue
        n = t.shape[axis]
        if isinstance(k, (bool, np.bool_)):
            raise TypeError("Boolean indices are not supported")
        if isinstance(k, numbers.Integral):
            if not -n <= k < n:
                raise BoundsError(f"Index {k} out of range for axis {axis} of extent {n}")
        elif isinstance(k, slice):
            if k.step == 0:
                raise ValueError("Slice step cannot be zero")
            for bound in (k.start, k.stop):
                if bound is not None and not -n <= bound <= n:
                    raise BoundsError(
                        f"Slice bound {bound} outside [-{n}, {n}] on axis {axis}"
                    )
        else:
            raise TypeError(f"Unsupported index type {type(k).__name__}")
        axis += 1
    return tuple(entries)


def index(t: Tensor, key) -> Tensor:
    """Basic indexing (ints, slices, None, Ellipsis) as a view."""
    entries = normalize_index(t, key)
    shape, strides = [], []
    offset = t.offset
    axis = 0
    for k in entries:
        if k is None:
            shape.append(1)
            strides.append(0)
            continue
        n, stride = t.shape[axis], t.strides[axis]
        if isinstance(k, slice):
            start, stop, step = k.indices(n)
            length = len(range(start, stop, step))
            if length:
                offset += start * stride
            shape.append(length)
            strides.append(stride * step)
        else:
            offset += (int(k) % n) * stride
        axis += 1
    if _numel(shape) == 0:
        offset = t.offset
    return Tensor(t.buffer, tuple(shape), tuple(strides), offset)


# ============================================================================
# Functional API - Data Movement
# ============================================================================

def copy_into(dst: Tensor, src: Tensor) -> None:
    """Strided copy of src (broadcast to dst.shape) into dst's elements."""
    _check_pair(dst, src)
    strides = _broadcast_strides(src, dst.shape)
    if dst.numel() == 0:
        return
    if src.buffer is dst.buffer:
        src = contiguous_copy(src)
        strides = _broadcast_strides(src, dst.shape)
    if layout_rank(dst.shape, [strides, dst.strides]) > MAX_DIMS:
        # one dispatch per index of the leading dimension
        inner = dst.shape[1:]
        for i in range(dst.shape[0]):
            copy_into(
                Tensor(dst.buffer, inner, dst.strides[1:], dst.offset + i * dst.strides[0]),
                Tensor(src.buffer, inner, strides[1:], src.offset + i * strides[0]),
            )
        return
    params = layout_params(dst.shape, [(src.offset, strides), (dst.offset, dst.strides)])
    _launch("copy", (dst.dtype,),
            [(src.buffer, "read"), (dst.buffer, "read_write")], params, dst.numel())


def contiguous_copy(t: Tensor) -> Tensor:
    out = Tensor.empty(t.shape, t.dtype, t.device)
    copy_into(out, t)
    return out


def contiguous(t: Tensor) -> Tensor:
    """t itself if densely laid out at offset 0, else a dense copy."""
    if t._is_dense():
        return t
    return contiguous_copy(t)


def _kernel_operands(shape, *tensors):
    """tensors as a dense-output kernel can read them at shape.

    When the joint layout stays above MAX_DIMS after collapsing, every
    operand is expanded into a dense copy (copy_into handles any rank).
    """
    strides = [_broadcast_strides(t, shape) for t in tensors]
    if layout_rank(shape, strides) <= MAX_DIMS:
        return tensors
    dense = []
    for t in tensors:
        out = Tensor.empty(shape, t.dtype, t.device)
        copy_into(out, t)
        dense.append(out)
    return tuple(dense)


def fill(t: Tensor, value) -> None:
    value = scalar_value(t.dtype, value)
    if t.numel() == 0:
        return
    if not t._is_dense():
        copy_into(t, Tensor.full((), value, t.dtype, t.device))
        return
    _launch("fill", (t.dtype,), [(t.buffer, "read_write")], [t.numel(), value], t.numel())


def cast(t: Tensor, dtype) -> Tensor:
    """Convert element type (returns t when it already has dtype)."""
    dtype = wgpu_dtypes.canonical(dtype)
    if dtype == t.dtype:
        return t
    out = Tensor.empty(t.shape, dtype, t.device)
    if t.numel():
        t, = _kernel_operands(t.shape, t)
        params = layout_params(t.shape, [(t.offset, t.strides)])
        _launch("cast", (t.dtype, dtype),
                [(t.buffer, "read"), (out.buffer, "read_write")], params, t.numel())
    return out


def to_device(t: Tensor, device) -> Tensor:
    device = select_device(device)
    if device is t.device:
        return t
    return Tensor.from_numpy(t.numpy(), device, t.dtype)


def axpy(alpha, x: Tensor, y: Tensor) -> None:
    """y += alpha * x, x broadcast to y's shape."""
    _check_pair(x, y)
    alpha = scalar_value(y.dtype, alpha)
    strides = _broadcast_strides(x, y.shape)
    if y.numel() == 0:
        return
    if not y._is_dense():
        copy_into(y, add(y, scalar_op("mul_scalar", x, alpha)))
        return
    if x.buffer is y.buffer:
        x = contiguous_copy(x)
        strides = _broadcast_strides(x, y.shape)
    if layout_rank(y.shape, [strides]) > MAX_DIMS:
        x, = _kernel_operands(y.shape, x)
        strides = _broadcast_strides(x, y.shape)
    params = layout_params(y.shape, [(x.offset, strides)]) + [alpha]
    _launch("axpy", (y.dtype,),
            [(x.buffer, "read"), (y.buffer, "read_write")], params, y.numel())


# ============================================================================
# Functional API - Elementwise
# ============================================================================

def binary_op(op: str, a: Tensor, b: Tensor) -> Tensor:
    """Broadcasting elementwise a <op> b."""
    _check_pair(a, b)
    _require_float(op, a)
    shape = broadcast_shapes(a.shape, b.shape)
    out = Tensor.empty(shape, a.dtype, a.device)
    if out.numel():
        a, b = _kernel_operands(shape, a, b)
        params = layout_params(shape, [
            (a.offset, _broadcast_strides(a, shape)),
            (b.offset, _broadcast_strides(b, shape)),
        ])
        _launch(op, (a.dtype,),
                [(a.buffer, "read"), (b.buffer, "read"), (out.buffer, "read_write")],
                params, out.numel())
    return out


def unary_op(op: str, x: Tensor) -> Tensor:
    _require_float(op, x)
    out = Tensor.empty(x.shape, x.dtype, x.device)
    if out.numel():
        x, = _kernel_operands(x.shape, x)
        params = layout_params(x.shape, [(x.offset, x.strides)])
        _launch(op, (x.dtype,), [(x.buffer, "read"), (out.buffer, "read_write")],
                params, out.numel())
    return out


def scalar_op(op: str, x: Tensor, scalar) -> Tensor:
    _require_float(op, x)
    value = scalar_value(x.dtype, scalar)
    out = Tensor.empty(x.shape, x.dtype, x.device)
    if out.numel():
        x, = _kernel_operands(x.shape, x)
        params = layout_params(x.shape, [(x.offset, x.strides)]) + [value]
        _launch(op, (x.dtype,), [(x.buffer, "read"), (out.buffer, "read_write")],
                params, out.numel())
    return out


def add(a, b):
    """Element-wise addition: a + b."""
    if not isinstance(b, Tensor):
        return scalar_op("add_scalar", a, b)
    return binary_op("add", a, b)


def sub(a, b):
    """Element-wise subtraction: a - b."""
    if not isinstance(b, Tensor):
        return scalar_op("add_scalar", a, -b)
    return binary_op("sub", a, b)


def mul(a, b):
    """Element-wise multiplication: a * b."""
    if not isinstance(b, Tensor):
        return scalar_op("mul_scalar", a, b)
    return binary_op("mul", a, b)


def div(a, b):
    """Element-wise division: a / b (floating point only)."""
    if not isinstance(b, Tensor):
        return scalar_op("div_scalar", a, b)
    return binary_op("div", a, b)


def neg(x):
    return unary_op("neg", x)


def exp(x):
    return unary_op("exp", x)


def log(x):
    return unary_op("log", x)


def relu(x):
    return unary_op("relu", x)


def sigmoid(x):
    return unary_op("sigmoid", x)


def tanh_act(x):
    return unary_op("tanh", x)


def pow_scalar(x, exponent):
    return scalar_op("pow_scalar", x, exponent)


def maximum(a, b):
    return binary_op("maximum", a, b)


def eq(a, b):
    """1 where a == b else 0, in a's element type."""
    return binary_op("eq", a, b)


def relu_grad(x, grad):
    """grad where x > 0 else 0."""
    return binary_op("relu_grad", x, grad)


# ============================================================================
# Functional API - Reductions & Linear Algebra
# ============================================================================

def _reduce(op: str, x: Tensor, axis, keepdims: bool) -> Tensor:
    if axis is None:
        width = x.numel()
        rows = 1
        source = x
        out_shape = (1,) * x.ndim if keepdims else ()
    else:
        axis = _normalize_axis(axis, x.ndim)
        width = x.shape[axis]
        rows = x.numel() // width if width else _numel(
            s for i, s in enumerate(x.shape) if i != axis
        )
        order = [i for i in range(x.ndim) if i != axis] + [axis]
        source = permute(x, order)
        out_shape = tuple(1 if i == axis else s for i, s in enumerate(x.shape)) \
            if keepdims else tuple(s for i, s in enumerate(x.shape) if i != axis)
    if op == "reduce_max" and width == 0:
        raise ShapeError("max() of an empty tensor has no identity")
    out = Tensor.empty((rows,), x.dtype, x.device)
    if rows:
        source = contiguous(source)
        _launch(op, (x.dtype,), [(source.buffer, "read"), (out.buffer, "read_write")],
                [rows, width], rows)
    return reshape(out, out_shape)


def sum_reduce(x: Tensor, axis=None, keepdims=False) -> Tensor:
    """Sum over all elements or one axis (0 for empty input)."""
    return _reduce("reduce_sum", x, axis, keepdims)


def max_reduce(x: Tensor, axis=None, keepdims=False) -> Tensor:
    """Max over all elements or one axis.

    Raises:
        ShapeError: the reduced extent is zero.
    """
    return _reduce("reduce_max", x, axis, keepdims)


def mean_reduce(x: Tensor, axis=None, keepdims=False) -> Tensor:
    """Mean over all elements or one axis.

    Raises:
        DivideByZeroError: the reduced extent is zero.
        TypeError: integer tensors.
    """
    if not wgpu_dtypes.is_float(x.dtype):
        raise TypeError(f"mean() requires a floating point tensor, got {x.dtype}")
    count = x.numel() if axis is None else x.shape[_normalize_axis(axis, x.ndim)]
    if count == 0:
        raise DivideByZeroError("mean() over zero elements")
    return scalar_op("mul_scalar", sum_reduce(x, axis, keepdims), 1.0 / count)


def matmul(a: Tensor, b: Tensor) -> Tensor:
    """2D matrix product; strided (e.g. transposed) operands are read in place."""
    _check_pair(a, b)
    if a.ndim != 2 or b.ndim != 2:
        raise ShapeError(f"matmul expects 2D operands, got {a.shape} and {b.shape}")
    m, k = a.shape
    k2, n = b.shape
    if k != k2:
        raise ShapeError(f"matmul inner dimensions differ: {a.shape} @ {b.shape}")
    out = Tensor.empty((m, n), a.dtype, a.device)
    if m * n:
        params = [m, k, n, a.offset, a.strides[0], a.strides[1],
                  b.offset, b.strides[0], b.strides[1]]
        _launch("matmul", (a.dtype,),
                [(a.buffer, "read"), (b.buffer, "read"), (out.buffer, "read_write")],
                params, m * n)
    return out


from wgpu_graph import wgpu_autograd as _ag  # noqa: E402
