"""
Reverse-mode automatic differentiation engine for Tensor.

Differentiable operations run their forward kernels through the raw
functional API in wgpu_tensor and then record a GradNode holding:
  - a sequence number (creation order, so the graph is a DAG by construction),
  - one edge per input: the producing GradNode, the grad-tracked leaf Tensor,
    or None when no gradient is needed for that input,
  - the output's shape, dtype and device,
  - a backward closure computing the local vector-Jacobian product.

backward() counts, for every reachable node, how many consumers still owe it a
gradient and processes a node once that count reaches zero. Contributions to
leaves are summed into Tensor.grad; contributions to intermediate nodes are
summed in a pending map and never stored on the tensors.

User-defined operations participate by subclassing Function, or through the
lower level record().
"""

import contextlib
import heapq
import itertools
import logging
import threading
from typing import Callable, Optional, Sequence

import numpy as np

from wgpu_graph import wgpu_dtypes
from wgpu_graph import wgpu_tensor as wt
from wgpu_graph.wgpu_errors import (
    DeviceMismatchError, GradientShapeError, NoGradientPathError, ShapeError,
)
from wgpu_graph.wgpu_tensor import Tensor

logger = logging.getLogger(__name__)


# ============================================================================
# Grad Mode
# ============================================================================

_grad_mode = threading.local()


def is_grad_enabled() -> bool:
    """Whether differentiable ops record graph nodes on this thread."""
    return getattr(_grad_mode, "enabled", True)


@contextlib.contextmanager
def set_grad_enabled(mode: bool):
    previous = is_grad_enabled()
    _grad_mode.enabled = bool(mode)
    try:
        yield
    finally:
        _grad_mode.enabled = previous


def no_grad():
    """Context manager (or decorator) disabling graph recording."""
    return set_grad_enabled(False)


# ============================================================================
# Graph
# ============================================================================

_next_seq = itertools.count(1)


def _edge(t):
    if not isinstance(t, Tensor):
        return None
    if t._node is not None:
        return t._node
    if t.requires_grad:
        return t
    return None


class GradNode:
    """
    Node in computation graph.

    One instance of a differentiable operation. Edges point at the producers
    of its inputs (older nodes) or at grad-tracked leaves.
    """

    def __init__(self, name: str, backward_fn: Callable, inputs: Sequence, output: Tensor):
        """
        Initialize a gradient node.

        Args:
            name: operation name, for diagnostics
            backward_fn: callable (grad, needs_input_grad) -> one gradient
                (Tensor or None) per input
            inputs: operation inputs (non-Tensors get a None edge)
            output: tensor this node produces
        """
        self.seq = next(_next_seq)
        self.name = name
        self.backward_fn = backward_fn
        self.edges = tuple(_edge(t) for t in inputs)
        self.shape = output.shape
        self.dtype = output.dtype
        self.device = output.device

    @property
    def released(self) -> bool:
        return self.backward_fn is None

    @property
    def needs_input_grad(self):
        return tuple(e is not None for e in self.edges)

    def release(self) -> None:
        """Drop the closure and edges (and whatever they keep alive)."""
        self.backward_fn = None
        self.edges = ()

    def __repr__(self):
        state = ", released" if self.released else ""
        return f"GradNode({self.name}, seq={self.seq}, shape={self.shape}{state})"


def record(output: Tensor, inputs: Sequence, backward_fn: Callable,
           name: Optional[str] = None) -> Tensor:
    """Attach a graph node to output if any input is grad-tracked.

    Args:
        output: forward result
        inputs: forward inputs, Tensors or other values
        backward_fn: (grad, needs_input_grad) -> tuple with one gradient per
            input; entries for inputs that need no gradient may be None
        name: operation name

    Returns:
        output, or a new view of it when output is itself one of the inputs.
    """
    if not is_grad_enabled() or not any(
        isinstance(t, Tensor) and t.requires_grad for t in inputs
    ):
        return output
    if output._node is not None or output.requires_grad or any(output is t for t in inputs):
        output = output.detach()
    output._node = GradNode(name or getattr(backward_fn, "__name__", "op"),
                            backward_fn, inputs, output)
    output.requires_grad = True
    return output


def _tracked(*inputs) -> bool:
    return is_grad_enabled() and any(
        isinstance(t, Tensor) and t.requires_grad for t in inputs
    )


def sum_to_shape(grad: Tensor, shape) -> Tensor:
    """Sum a broadcast gradient back down to shape."""
    shape = tuple(shape)
    if grad.shape == shape:
        return grad
    out = grad
    for _ in range(grad.ndim - len(shape)):
        out = wt.sum_reduce(out, 0)
    for axis, size in enumerate(shape):
        if size == 1 and out.shape[axis] != 1:
            out = wt.sum_reduce(out, axis, keepdims=True)
    return out


# ============================================================================
# Backward Engine
# ============================================================================

def _seed(t: Tensor, grad) -> Tensor:
    if grad is None:
        if t.numel() != 1:
            raise NoGradientPathError(
                f"backward() on a non-scalar tensor of shape {t.shape} needs an "
                f"explicit gradient"
            )
        return wt.ones_like(t)
    if not isinstance(grad, Tensor):
        grad = Tensor.from_numpy(np.asarray(grad), t.device, t.dtype)
    if grad.device is not t.device:
        raise DeviceMismatchError(grad.device, t.device)
    if grad.shape != t.shape:
        raise GradientShapeError(
            f"Seed gradient shape {grad.shape} does not match output shape {t.shape}"
        )
    return wt.cast(grad, t.dtype)


def _collect(root: GradNode):
    """Count consumers of every node reachable from root."""
    consumers = {root: 0}
    stack = [root]
    while stack:
        node = stack.pop()
        if node.released:
            raise NoGradientPathError(
                f"{node} was already used by a backward pass; "
                f"pass retain_graph=True to backpropagate twice"
            )
        for edge in node.edges:
            if isinstance(edge, GradNode):
                if edge not in consumers:
                    consumers[edge] = 0
                    stack.append(edge)
                consumers[edge] += 1
    return consumers


def _check_contribution(node: GradNode, target, grad) -> None:
    if not isinstance(grad, Tensor):
        raise TypeError(
            f"backward of {node.name} returned {type(grad).__name__}, expected Tensor"
        )
    if grad.shape != target.shape:
        raise GradientShapeError(
            f"backward of {node.name} produced a gradient of shape {grad.shape} "
            f"for an input of shape {target.shape}"
        )
    if grad.device is not target.device:
        raise DeviceMismatchError(grad.device, target.device)


def _accumulate(leaf: Tensor, grad: Tensor) -> None:
    grad = wt.cast(grad, leaf.dtype)
    if leaf.grad is None:
        leaf.grad = wt.zeros_like(leaf)
    wt.axpy(1, grad, leaf.grad)


def backward(tensor: Tensor, grad=None, retain_graph: bool = False) -> None:
    """
    Perform reverse-mode autodifferentiation (backpropagation).

    Args:
        tensor: output to differentiate
        grad: seed gradient, required unless tensor has one element
        retain_graph: keep closures so the graph can be traversed again

    Raises:
        NoGradientPathError: tensor has no producer and does not require
            grad, is non-scalar without a seed, or its graph was released.
        GradientShapeError: a gradient does not match its target's shape.
    """
    if tensor._node is None and not tensor.requires_grad:
        raise NoGradientPathError(
            "Tensor does not require grad and has no graph node"
        )
    with no_grad():
        seed = _seed(tensor, grad)
        root = tensor._node
        if root is None:
            _accumulate(tensor, seed)
            return
        consumers = _collect(root)

        pending = {root: seed}
        ready = [(-root.seq, root)]
        processed = 0
        while ready:
            _, node = heapq.heappop(ready)
            node_grad = pending.pop(node, None)
            edges = node.edges
            grads = (None,) * len(edges)
            if node_grad is not None:
                grads = node.backward_fn(node_grad, node.needs_input_grad)
                if not isinstance(grads, (tuple, list)):
                    grads = (grads,)
                if len(grads) != len(edges):
                    raise GradientShapeError(
                        f"backward of {node.name} returned {len(grads)} gradients "
                        f"for {len(edges)} inputs"
                    )
                processed += 1
            for edge, contribution in zip(edges, grads):
                if edge is None:
                    continue
                if contribution is not None:
                    _check_contribution(node, edge, contribution)
                    if isinstance(edge, GradNode):
                        previous = pending.get(edge)
                        pending[edge] = (contribution if previous is None
                                         else wt.add(previous, contribution))
                    else:
                        _accumulate(edge, contribution)
                if isinstance(edge, GradNode):
                    consumers[edge] -= 1
                    if consumers[edge] == 0:
                        heapq.heappush(ready, (-edge.seq, edge))
            if not retain_graph:
                node.release()
    logger.debug(f"backward: ran {processed} of {len(consumers)} graph nodes")


# ============================================================================
# Function API
# ============================================================================

class Context:
    """Per-call storage shared between Function.forward and Function.backward."""

    def __init__(self, needs_input_grad):
        self.needs_input_grad = tuple(needs_input_grad)
        self.saved_tensors = ()
        self.saved_meta = {}

    def save_for_backward(self, *tensors) -> None:
        self.saved_tensors = tuple(
            t.detach() if isinstance(t, Tensor) else t for t in tensors
        )


class Function:
    """
    Base class for user-defined differentiable operations.

    Subclasses implement static forward(ctx, *args) -> Tensor and
    backward(ctx, grad) -> one gradient per forward argument (None where no
    gradient is needed; ctx.needs_input_grad says which). Call apply(*args).
    """

    @staticmethod
    def forward(ctx, *args):
        raise NotImplementedError

    @staticmethod
    def backward(ctx, grad):
        raise NotImplementedError

    @classmethod
    def apply(cls, *args):
        enabled = is_grad_enabled()
        ctx = Context(
            enabled and isinstance(a, Tensor) and a.requires_grad for a in args
        )
        with no_grad():
            out = cls.forward(ctx, *args)
        if not isinstance(out, Tensor):
            raise TypeError(f"{cls.__name__}.forward must return a Tensor")
        if not any(ctx.needs_input_grad):
            return out

        def backward_fn(grad, needs_input_grad):
            grads = cls.backward(ctx, grad)
            if not isinstance(grads, (tuple, list)):
                grads = (grads,)
            if len(grads) != len(args):
                raise GradientShapeError(
                    f"{cls.__name__}.backward returned {len(grads)} gradients "
                    f"for {len(args)} inputs"
                )
            return tuple(grads)

        return record(out, args, backward_fn, cls.__name__)


# ============================================================================
# Autograd Operations - Elementwise
# ============================================================================

def add(a: Tensor, b) -> Tensor:
    """
    Element-wise addition with broadcasting.

    Forward: out = a + b
    Backward: da = upstream, db = upstream (summed over broadcast axes)
    """
    out = wt.add(a, b)
    if not _tracked(a, b):
        return out

    def backward_add(grad, needs):
        da = sum_to_shape(grad, a.shape) if needs[0] else None
        db = sum_to_shape(grad, b.shape) if needs[1] else None
        return da, db

    return record(out, (a, b), backward_add, "add")


def sub(a: Tensor, b) -> Tensor:
    out = wt.sub(a, b)
    if not _tracked(a, b):
        return out

    def backward_sub(grad, needs):
        da = sum_to_shape(grad, a.shape) if needs[0] else None
        db = sum_to_shape(wt.neg(grad), b.shape) if needs[1] else None
        return da, db

    return record(out, (a, b), backward_sub, "sub")


def rsub(a: Tensor, scalar) -> Tensor:
    """scalar - a"""
    out = wt.scalar_op("rsub_scalar", a, scalar)
    if not _tracked(a):
        return out

    def backward_rsub(grad, needs):
        return (wt.neg(grad),)

    return record(out, (a,), backward_rsub, "rsub")


def mul(a: Tensor, b) -> Tensor:
    """
    Element-wise multiplication with broadcasting.

    Forward: out = a * b
    Backward: da = upstream * b, db = upstream * a
    """
    out = wt.mul(a, b)
    if not _tracked(a, b):
        return out
    a_saved = a.detach()
    b_saved = b.detach() if isinstance(b, Tensor) else b

    def backward_mul(grad, needs):
        da = sum_to_shape(wt.mul(grad, b_saved), a.shape) if needs[0] else None
        db = sum_to_shape(wt.mul(grad, a_saved), b.shape) if needs[1] else None
        return da, db

    return record(out, (a, b), backward_mul, "mul")


def div(a: Tensor, b) -> Tensor:
    out = wt.div(a, b)
    if not _tracked(a, b):
        return out
    a_saved = a.detach()
    b_saved = b.detach() if isinstance(b, Tensor) else b

    def backward_div(grad, needs):
        da = sum_to_shape(wt.div(grad, b_saved), a.shape) if needs[0] else None
        db = None
        if needs[1]:
            # -grad * a / b^2
            ratio = wt.div(a_saved, wt.mul(b_saved, b_saved))
            db = sum_to_shape(wt.neg(wt.mul(grad, ratio)), b.shape)
        return da, db

    return record(out, (a, b), backward_div, "div")


def rdiv(a: Tensor, scalar) -> Tensor:
    """scalar / a"""
    out = wt.scalar_op("rdiv_scalar", a, scalar)
    if not _tracked(a):
        return out
    a_saved = a.detach()

    def backward_rdiv(grad, needs):
        square = wt.mul(a_saved, a_saved)
        return (wt.mul(wt.div(grad, square), -scalar),)

    return record(out, (a,), backward_rdiv, "rdiv")


def neg(x: Tensor) -> Tensor:
    out = wt.neg(x)
    if not _tracked(x):
        return out

    def backward_neg(grad, needs):
        return (wt.neg(grad),)

    return record(out, (x,), backward_neg, "neg")


def exp(x: Tensor) -> Tensor:
    out = wt.exp(x)
    if not _tracked(x):
        return out
    y = out.detach()

    def backward_exp(grad, needs):
        return (wt.mul(grad, y),)

    return record(out, (x,), backward_exp, "exp")


def log(x: Tensor) -> Tensor:
    out = wt.log(x)
    if not _tracked(x):
        return out
    x_saved = x.detach()

    def backward_log(grad, needs):
        return (wt.div(grad, x_saved),)

    return record(out, (x,), backward_log, "log")


def relu(x: Tensor) -> Tensor:
    out = wt.relu(x)
    if not _tracked(x):
        return out
    x_saved = x.detach()

    def backward_relu(grad, needs):
        return (wt.relu_grad(x_saved, grad),)

    return record(out, (x,), backward_relu, "relu")


def sigmoid(x: Tensor) -> Tensor:
    out = wt.sigmoid(x)
    if not _tracked(x):
        return out
    y = out.detach()

    def backward_sigmoid(grad, needs):
        # grad * y * (1 - y)
        slope = wt.mul(y, wt.scalar_op("rsub_scalar", y, 1))
        return (wt.mul(grad, slope),)

    return record(out, (x,), backward_sigmoid, "sigmoid")


def tanh(x: Tensor) -> Tensor:
    out = wt.tanh_act(x)
    if not _tracked(x):
        return out
    y = out.detach()

    def backward_tanh(grad, needs):
        slope = wt.scalar_op("rsub_scalar", wt.mul(y, y), 1)
        return (wt.mul(grad, slope),)

    return record(out, (x,), backward_tanh, "tanh")


def pow_scalar(x: Tensor, exponent) -> Tensor:
    """x ** exponent for a scalar exponent."""
    if isinstance(exponent, Tensor):
        raise TypeError("Only scalar exponents are supported")
    out = wt.pow_scalar(x, exponent)
    if not _tracked(x):
        return out
    x_saved = x.detach()

    def backward_pow(grad, needs):
        if exponent == 0:
            return (wt.zeros_like(x_saved),)
        slope = wt.mul(wt.pow_scalar(x_saved, exponent - 1), exponent)
        return (wt.mul(grad, slope),)

    return record(out, (x,), backward_pow, "pow")


# ============================================================================
# Autograd Operations - Linear Algebra & Reductions
# ============================================================================

def matmul(a: Tensor, b: Tensor) -> Tensor:
    """
    Matrix multiplication.

    Forward: out = a @ b
    Backward: da = upstream @ b^T, db = a^T @ upstream
    """
    out = wt.matmul(a, b)
    if not _tracked(a, b):
        return out
    a_saved, b_saved = a.detach(), b.detach()

    def backward_matmul(grad, needs):
        da = wt.matmul(grad, wt.transpose(b_saved, 0, 1)) if needs[0] else None
        db = wt.matmul(wt.transpose(a_saved, 0, 1), grad) if needs[1] else None
        return da, db

    return record(out, (a, b), backward_matmul, "matmul")


def dot(a: Tensor, b: Tensor) -> Tensor:
    """Inner product of two 1D tensors."""
    if a.ndim != 1 or b.ndim != 1:
        raise ShapeError(f"dot expects 1D operands, got {a.shape} and {b.shape}")
    product = matmul(reshape(a, (1, -1)), reshape(b, (-1, 1)))
    return reshape(product, ())


def _restore_axis(grad: Tensor, shape, axis, keepdims) -> Tensor:
    """View a reduced gradient with the reduced axes put back as size 1."""
    if axis is None:
        return wt.reshape(grad, (1,) * len(shape))
    if keepdims:
        return grad
    return wt.unsqueeze(grad, axis)


def sum_reduce(x: Tensor, axis=None, keepdims=False) -> Tensor:
    """
    Sum reduction.

    Backward: upstream broadcast back over the reduced axes.
    """
    out = wt.sum_reduce(x, axis, keepdims)
    if not _tracked(x):
        return out

    def backward_sum_reduce(grad, needs):
        return (wt.expand(_restore_axis(grad, x.shape, axis, keepdims), x.shape),)

    return record(out, (x,), backward_sum_reduce, "sum")


def mean_reduce(x: Tensor, axis=None, keepdims=False) -> Tensor:
    out = wt.mean_reduce(x, axis, keepdims)
    if not _tracked(x):
        return out
    count = x.numel() if axis is None else x.shape[axis]

    def backward_mean_reduce(grad, needs):
        scaled = wt.mul(grad, 1.0 / count)
        return (wt.expand(_restore_axis(scaled, x.shape, axis, keepdims), x.shape),)

    return record(out, (x,), backward_mean_reduce, "mean")


def max_reduce(x: Tensor, axis=None, keepdims=False) -> Tensor:
    """
    Max reduction.

    Backward: upstream routed to the maximal elements, split evenly between ties.
    """
    out = wt.max_reduce(x, axis, keepdims)
    if not _tracked(x):
        return out
    x_saved, y = x.detach(), out.detach()

    def backward_max_reduce(grad, needs):
        peak = wt.expand(_restore_axis(y, x.shape, axis, keepdims), x.shape)
        mask = wt.eq(x_saved, peak)
        ties = wt.sum_reduce(mask, axis, keepdims=True)
        share = wt.div(_restore_axis(grad, x.shape, axis, keepdims), ties)
        return (wt.mul(mask, share),)

    return record(out, (x,), backward_max_reduce, "max")


# ============================================================================
# Autograd Operations - Shape & Movement
# ============================================================================

def reshape(x: Tensor, shape) -> Tensor:
    out = wt.reshape(x, shape)
    if not _tracked(x):
        return out

    def backward_reshape(grad, needs):
        return (wt.reshape(grad, x.shape),)

    return record(out, (x,), backward_reshape, "reshape")


def expand(x: Tensor, shape) -> Tensor:
    out = wt.expand(x, shape)
    if not _tracked(x):
        return out

    def backward_expand(grad, needs):
        return (sum_to_shape(grad, x.shape),)

    return record(out, (x,), backward_expand, "expand")


def transpose(x: Tensor, dim0: int, dim1: int) -> Tensor:
    out = wt.transpose(x, dim0, dim1)
    if not _tracked(x):
        return out

    def backward_transpose(grad, needs):
        return (wt.transpose(grad, dim0, dim1),)

    return record(out, (x,), backward_transpose, "transpose")


def permute(x: Tensor, axes) -> Tensor:
    out = wt.permute(x, axes)
    if not _tracked(x):
        return out
    inverse = tuple(int(i) for i in np.argsort([a % x.ndim for a in axes]))

    def backward_permute(grad, needs):
        return (wt.permute(grad, inverse),)

    return record(out, (x,), backward_permute, "permute")


def squeeze(x: Tensor, axis=None) -> Tensor:
    out = wt.squeeze(x, axis)
    if not _tracked(x):
        return out

    def backward_squeeze(grad, needs):
        return (wt.reshape(grad, x.shape),)

    return record(out, (x,), backward_squeeze, "squeeze")


def unsqueeze(x: Tensor, axis: int) -> Tensor:
    out = wt.unsqueeze(x, axis)
    if not _tracked(x):
        return out

    def backward_unsqueeze(grad, needs):
        return (wt.reshape(grad, x.shape),)

    return record(out, (x,), backward_unsqueeze, "unsqueeze")


def index(x: Tensor, key) -> Tensor:
    """Basic indexing; backward scatters the gradient into zeros of x's shape."""
    entries = wt.normalize_index(x, key)
    out = wt.index(x, entries)
    if not _tracked(x):
        return out

    def backward_index(grad, needs):
        full = wt.zeros_like(x)
        wt.copy_into(wt.index(full, entries), grad)
        return (full,)

    return record(out, (x,), backward_index, "index")


def contiguous(x: Tensor) -> Tensor:
    out = wt.contiguous(x)
    if not _tracked(x):
        return out

    def backward_contiguous(grad, needs):
        return (grad,)

    return record(out, (x,), backward_contiguous, "contiguous")


def cast(x: Tensor, dtype) -> Tensor:
    """Element type conversion; differentiable between floating point types."""
    out = wt.cast(x, dtype)
    if not _tracked(x) or not wgpu_dtypes.is_float(out.dtype):
        return out

    def backward_cast(grad, needs):
        return (wt.cast(grad, x.dtype),)

    return record(out, (x,), backward_cast, "cast")


def to(x: Tensor, device) -> Tensor:
    """Copy to another device; the gradient is copied back."""
    out = wt.to_device(x, device)
    if not _tracked(x):
        return out

    def backward_to(grad, needs):
        return (wt.to_device(grad, x.device),)

    return record(out, (x,), backward_to, "to")


# ============================================================================
# Gradient Checking
# ============================================================================

def gradcheck(fn: Callable, inputs: Sequence, eps: float = 1e-6, atol: float = 1e-5,
              rtol: float = 1e-3) -> bool:
    """
    Compare backward() gradients with central finite differences.

    Use float64 inputs (host device) for meaningful tolerances. The grads of
    the inputs are restored afterwards.

    Args:
        fn: function of the inputs returning a Tensor
        inputs: Tensors (those with requires_grad are checked) and other values
        eps: finite difference step
        atol, rtol: comparison tolerances

    Returns:
        True when every analytical gradient matches its numerical estimate.
    """
    inputs = tuple(inputs)
    checked = [i for i, t in enumerate(inputs) if isinstance(t, Tensor) and t.requires_grad]
    if not checked:
        raise ValueError("gradcheck needs at least one input with requires_grad")
    host = [t.numpy().astype(np.float64) if isinstance(t, Tensor) else t for t in inputs]

    def evaluate():
        args = [
            Tensor.from_numpy(host[i], t.device, t.dtype) if isinstance(t, Tensor) else t
            for i, t in enumerate(inputs)
        ]
        with no_grad():
            return fn(*args).numpy().astype(np.float64).reshape(-1)

    out_size = evaluate().size
    saved_grads = [inputs[i].grad for i in checked]
    ok = True
    try:
        analytical = {i: np.zeros((inputs[i].numel(), out_size)) for i in checked}
        for k in range(out_size):
            for i in checked:
                inputs[i].grad = None
            out = fn(*inputs)
            seed = np.zeros(out_size)
            seed[k] = 1.0
            out.backward(seed.reshape(out.shape))
            for i in checked:
                if inputs[i].grad is not None:
                    analytical[i][:, k] = inputs[i].grad.numpy().reshape(-1)

        for i in checked:
            flat = host[i].reshape(-1)
            numerical = np.zeros_like(analytical[i])
            for j in range(flat.size):
                original = flat[j]
                flat[j] = original + eps
                plus = evaluate()
                flat[j] = original - eps
                minus = evaluate()
                flat[j] = original
                numerical[j] = (plus - minus) / (2 * eps)
            if not np.allclose(analytical[i], numerical, atol=atol, rtol=rtol):
                worst = np.max(np.abs(analytical[i] - numerical))
                logger.warning(
                    f"gradcheck: input {i} mismatch, max abs difference {worst:.3e}"
                )
                ok = False
    finally:
        for i, grad in zip(checked, saved_grads):
            inputs[i].grad = grad
    return ok
