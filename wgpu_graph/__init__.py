"""
wgpu_graph: tensors, compute kernels and autograd on wgpu GPUs or the host CPU.

The same client code runs on either device: tensors live in typed device
buffers, arithmetic dispatches compute kernels, and reverse-mode autograd
replays the recorded graph to fill each leaf's grad.

Modules:
    wgpu_device   - device enumeration/selection, capabilities, queues
    wgpu_buffer   - typed device buffers, host transfers
    wgpu_kernels  - kernel module container, loading, binding, dispatch
    wgpu_shaders  - built-in WGSL kernels and their host implementations
    wgpu_tensor   - strided Tensor views and the raw functional API
    wgpu_autograd - graph recording, backward(), Function, gradcheck
"""

import logging

from wgpu_graph.wgpu_errors import (
    WgpuGraphError,
    AllocationError, TransferError, DeviceMismatchError, DeviceExecutionError,
    ShapeError, BroadcastError, BoundsError, DivideByZeroError,
    ModuleLoadError, BindingError,
    NoGradientPathError, GradientShapeError,
)

from wgpu_graph.wgpu_config import (
    Config, get_config, set_config, reset_config, configure_logging,
)

from wgpu_graph.wgpu_device import (
    Device, Capabilities, DispatchHandle,
    enumerate_devices, select_device, host_device, gpu_device, gpu_count,
)

from wgpu_graph.wgpu_buffer import Buffer

from wgpu_graph.wgpu_kernels import (
    KernelModule, Dispatch, pack_module, parse_module, load_module,
    register_host_kernel,
)

from wgpu_graph.wgpu_tensor import (
    Tensor,
    tensor, empty, zeros, ones, full, from_numpy, randn, arange,
    zeros_like, ones_like, broadcast_shapes,
)

from wgpu_graph.wgpu_autograd import (
    GradNode, Function, Context,
    backward, record, no_grad, set_grad_enabled, is_grad_enabled, gradcheck,
)

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    # Errors
    "WgpuGraphError",
    "AllocationError", "TransferError", "DeviceMismatchError", "DeviceExecutionError",
    "ShapeError", "BroadcastError", "BoundsError", "DivideByZeroError",
    "ModuleLoadError", "BindingError",
    "NoGradientPathError", "GradientShapeError",
    # Config
    "Config", "get_config", "set_config", "reset_config", "configure_logging",
    # Devices & buffers
    "Device", "Capabilities", "DispatchHandle",
    "enumerate_devices", "select_device", "host_device", "gpu_device", "gpu_count",
    "Buffer",
    # Kernels
    "KernelModule", "Dispatch", "pack_module", "parse_module", "load_module",
    "register_host_kernel",
    # Tensor
    "Tensor",
    "tensor", "empty", "zeros", "ones", "full", "from_numpy", "randn", "arange",
    "zeros_like", "ones_like", "broadcast_shapes",
    # Autograd
    "GradNode", "Function", "Context",
    "backward", "record", "no_grad", "set_grad_enabled", "is_grad_enabled", "gradcheck",
]
