"""
Error taxonomy for wgpu_graph.

Every failure the core reports is one of the classes below. They all derive
from WgpuGraphError so callers can catch the whole family, and each carries
enough context in its message to locate the offending tensor, buffer or
kernel. Nothing here is retried automatically: a device failure invalidates
the in-flight computation and the caller decides what to do next.
"""


class WgpuGraphError(Exception):
    """Base class for all wgpu_graph errors."""


# ============================================================================
# Device & Memory
# ============================================================================

class AllocationError(WgpuGraphError):
    """Buffer allocation failed (out of memory, oversized, unsupported type)."""


class TransferError(WgpuGraphError):
    """Host <-> device copy failed (type/count mismatch, lost device)."""


class DeviceMismatchError(WgpuGraphError):
    """Operands live on different devices and no explicit copy was made."""

    def __init__(self, device_a, device_b):
        super().__init__(
            f"Device mismatch: '{device_a}' vs '{device_b}'. "
            f"Use Tensor.to(device) to copy explicitly."
        )
        self.device_a = device_a
        self.device_b = device_b


class DeviceExecutionError(WgpuGraphError):
    """A submitted dispatch failed on the device."""


# ============================================================================
# Shapes
# ============================================================================

class ShapeError(WgpuGraphError):
    """Shapes are incompatible with the requested operation."""


class BroadcastError(ShapeError):
    """Two shapes cannot be broadcast together."""

    def __init__(self, shape_a, shape_b):
        super().__init__(
            f"Shapes {tuple(shape_a)} and {tuple(shape_b)} are not broadcastable"
        )
        self.shape_a = tuple(shape_a)
        self.shape_b = tuple(shape_b)


class BoundsError(ShapeError):
    """An index or slice bound lies outside a dimension."""


class DivideByZeroError(WgpuGraphError, ZeroDivisionError):
    """A reduction would divide by a zero element count."""


# ============================================================================
# Kernels
# ============================================================================

class ModuleLoadError(WgpuGraphError):
    """A kernel module is malformed or needs a capability the device lacks."""


class BindingError(WgpuGraphError):
    """Buffers or parameters do not match a kernel's declared interface."""


# ============================================================================
# Autograd
# ============================================================================

class NoGradientPathError(WgpuGraphError):
    """backward() was called where no gradient can flow."""


class GradientShapeError(WgpuGraphError):
    """A backward closure produced a gradient of the wrong shape.

    This is an internal invariant violation: it points at a bug in a
    backward function, not at user input.
    """
