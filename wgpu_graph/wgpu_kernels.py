"""
Kernel modules and dispatch.

A kernel module is a precompiled compute kernel wrapped in a small container
that declares its interface:

    offset 0   4 bytes   magic b"WGKM"
    offset 4   u16 LE    format version
    offset 6   u16 LE    payload kind (0 = WGSL text, 1 = SPIR-V)
    offset 8   u32 LE    header length H
    offset 12  H bytes   UTF-8 JSON interface descriptor
    offset 12+H          payload

Loading a module validates the container against the target device. Binding
checks every buffer and scalar parameter against the declared interface
before anything is submitted, so a write-intent buffer can never land in a
read-only slot. Submission orders each dispatch after the work it depends on
using the per-buffer tags kept by wgpu_buffer.Buffer.

On a GPU the payload is handed to wgpu. On the host device the module names a
host kernel (a numpy function registered with register_host_kernel) that
plays the same role.
"""

import json
import logging
import math
import struct
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
import wgpu

from wgpu_graph import wgpu_dtypes
from wgpu_graph.wgpu_buffer import Buffer
from wgpu_graph.wgpu_device import Device, DispatchHandle, select_device
from wgpu_graph.wgpu_errors import (
    BindingError, DeviceExecutionError, ModuleLoadError,
)

logger = logging.getLogger(__name__)

MAGIC = b"WGKM"
FORMAT_VERSION = 1
PAYLOAD_WGSL = 0
PAYLOAD_SPIRV = 1
_PREAMBLE = struct.Struct("<4sHHI")

ACCESS_MODES = ("read", "read_write")

# scalar parameter type -> (struct format, byte size)
PARAM_TYPES = {
    "u32": ("<I", 4),
    "i32": ("<i", 4),
    "f32": ("<f", 4),
    "f64": ("<d", 8),
}


# ============================================================================
# Interface Descriptor
# ============================================================================

@dataclass(frozen=True)
class BindingSpec:
    """One buffer slot: element type and access direction."""

    name: str
    dtype: str
    access: str


@dataclass(frozen=True)
class ParamSpec:
    """One scalar parameter."""

    name: str
    dtype: str
    size: int


@dataclass(frozen=True)
class KernelInterface:
    bindings: Tuple[BindingSpec, ...]
    params: Tuple[ParamSpec, ...]


def pack_module(name: str, payload, bindings: Sequence[Tuple[str, str, str]],
                params: Sequence[Tuple[str, str]] = (), entry_point: str = "main",
                workgroup_size: int = 64, requires: Sequence[str] = (),
                host_kernel: Optional[str] = None) -> bytes:
    """Wrap a compiled kernel and its interface in the module container.

    Args:
        name: module name, used in logs and errors
        payload: WGSL source (str) or SPIR-V words (bytes)
        bindings: (name, dtype, access) per buffer slot, in binding order
        params: (name, type) per scalar parameter, in packing order
        entry_point: compute entry point
        workgroup_size: invocations per workgroup along x
        requires: device features the kernel needs
        host_kernel: registered host implementation for the CPU device

    Returns:
        The module binary.
    """
    if isinstance(payload, str):
        kind, body = PAYLOAD_WGSL, payload.encode("utf-8")
    else:
        kind, body = PAYLOAD_SPIRV, bytes(payload)
    header = {
        "name": name,
        "entry_point": entry_point,
        "workgroup_size": int(workgroup_size),
        "bindings": [
            {"name": b_name, "dtype": dtype, "access": access}
            for b_name, dtype, access in bindings
        ],
        "params": [
            {"name": p_name, "dtype": p_type, "size": PARAM_TYPES[p_type][1]}
            for p_name, p_type in params
        ],
        "requires": list(requires),
    }
    if host_kernel is not None:
        header["host_kernel"] = host_kernel
    header_bytes = json.dumps(header, sort_keys=True).encode("utf-8")
    return _PREAMBLE.pack(MAGIC, FORMAT_VERSION, kind, len(header_bytes)) + header_bytes + body


def parse_module(binary) -> Tuple[dict, KernelInterface, object]:
    """Decode a module container.

    Returns:
        (header, interface, payload) where payload is str for WGSL or bytes
        for SPIR-V.

    Raises:
        ModuleLoadError: if the container is malformed.
    """
    binary = bytes(binary)
    if len(binary) < _PREAMBLE.size:
        raise ModuleLoadError("Kernel module is truncated (no header)")
    magic, version, kind, header_len = _PREAMBLE.unpack_from(binary)
    if magic != MAGIC:
        raise ModuleLoadError(f"Not a kernel module (bad magic {magic!r})")
    if version != FORMAT_VERSION:
        raise ModuleLoadError(f"Unsupported kernel module version {version}")
    if kind not in (PAYLOAD_WGSL, PAYLOAD_SPIRV):
        raise ModuleLoadError(f"Unknown payload kind {kind}")
    end = _PREAMBLE.size + header_len
    if len(binary) < end:
        raise ModuleLoadError("Kernel module is truncated (header)")
    try:
        header = json.loads(binary[_PREAMBLE.size:end].decode("utf-8"))
        bindings = tuple(
            BindingSpec(b["name"], wgpu_dtypes.canonical(b["dtype"]), b["access"])
            for b in header["bindings"]
        )
        params = tuple(
            ParamSpec(p["name"], p["dtype"], int(p["size"])) for p in header["params"]
        )
        header["entry_point"] = str(header.get("entry_point", "main"))
        header["workgroup_size"] = int(header.get("workgroup_size", 64))
    except (UnicodeDecodeError, ValueError, KeyError, TypeError) as exc:
        raise ModuleLoadError(f"Malformed kernel module header: {exc}") from exc
    for binding in bindings:
        if binding.access not in ACCESS_MODES:
            raise ModuleLoadError(
                f"Binding {binding.name!r} has unknown access {binding.access!r}"
            )
    for param in params:
        if param.dtype not in PARAM_TYPES or PARAM_TYPES[param.dtype][1] != param.size:
            raise ModuleLoadError(
                f"Parameter {param.name!r} has unsupported type "
                f"{param.dtype!r} ({param.size} bytes)"
            )
    if header["workgroup_size"] <= 0:
        raise ModuleLoadError("workgroup_size must be positive")
    body = binary[end:]
    if kind == PAYLOAD_WGSL:
        try:
            payload = body.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise ModuleLoadError(f"WGSL payload is not UTF-8: {exc}") from exc
    else:
        if len(body) == 0 or len(body) % 4:
            raise ModuleLoadError("SPIR-V payload must be a non-empty sequence of words")
        payload = body
    return header, KernelInterface(bindings, params), payload


# ============================================================================
# Host Kernels
# ============================================================================

HostKernel = Callable[[List[np.ndarray], Tuple, int], None]
_host_kernels: Dict[str, HostKernel] = {}


def register_host_kernel(name: str):
    """Decorator registering a numpy implementation for the host device.

    The function receives the bound buffers as flat numpy arrays (read-only
    slots are non-writeable views), the scalar parameters in declared order
    and the global problem size.
    """
    def decorator(fn: HostKernel) -> HostKernel:
        _host_kernels[name] = fn
        return fn
    return decorator


def host_kernel(name: str) -> Optional[HostKernel]:
    return _host_kernels.get(name)


# ============================================================================
# Kernel Module
# ============================================================================

class KernelModule:
    """A loaded, immutable kernel bound to one device."""

    def __init__(self, device: Device, header: dict, interface: KernelInterface,
                 pipeline=None, host_fn: Optional[HostKernel] = None):
        self.device = device
        self.name = header["name"]
        self.entry_point = header["entry_point"]
        self.workgroup_size = header["workgroup_size"]
        self.interface = interface
        self._pipeline = pipeline
        self._host_fn = host_fn

    def __repr__(self):
        return f"KernelModule({self.name!r}, device={self.device})"

    def bind(self, bindings, params: Sequence = ()) -> "Dispatch":
        """Bind buffers and scalar parameters in declared order.

        Args:
            bindings: sequence of (Buffer, access) pairs; a bare Buffer means
                read intent
            params: scalar values, one per declared parameter

        Raises:
            BindingError: count, element type, device or access mismatch.
        """
        declared = self.interface.bindings
        bindings = list(bindings)
        if len(bindings) != len(declared):
            raise BindingError(
                f"{self.name}: expected {len(declared)} buffer bindings, got {len(bindings)}"
            )
        bound = []
        for slot, item in zip(declared, bindings):
            if isinstance(item, Buffer):
                buffer, access = item, "read"
            else:
                try:
                    buffer, access = item
                except (TypeError, ValueError):
                    raise BindingError(
                        f"{self.name}: binding {slot.name!r} must be a Buffer or "
                        f"(Buffer, access) pair"
                    ) from None
            if not isinstance(buffer, Buffer):
                raise BindingError(f"{self.name}: binding {slot.name!r} is not a Buffer")
            if access not in ACCESS_MODES:
                raise BindingError(f"{self.name}: unknown access {access!r}")
            if buffer.device is not self.device:
                raise BindingError(
                    f"{self.name}: buffer for {slot.name!r} lives on {buffer.device}, "
                    f"kernel on {self.device}"
                )
            if buffer.released:
                raise BindingError(f"{self.name}: buffer for {slot.name!r} was released")
            if buffer.dtype != slot.dtype:
                raise BindingError(
                    f"{self.name}: binding {slot.name!r} expects {slot.dtype}, "
                    f"got {buffer.dtype}"
                )
            if access != slot.access:
                if slot.access == "read":
                    raise BindingError(
                        f"{self.name}: binding {slot.name!r} is read-only but the "
                        f"buffer was bound for writing"
                    )
                raise BindingError(
                    f"{self.name}: binding {slot.name!r} is written by the kernel but "
                    f"the buffer was bound read-only"
                )
            bound.append((buffer, access))
        return Dispatch(self, bound, self._check_params(params))

    def _check_params(self, params) -> Tuple:
        declared = self.interface.params
        params = tuple(params)
        if len(params) != len(declared):
            raise BindingError(
                f"{self.name}: expected {len(declared)} parameters, got {len(params)}"
            )
        values = []
        for spec, value in zip(declared, params):
            if isinstance(value, (bool, np.bool_)):
                raise BindingError(f"{self.name}: parameter {spec.name!r} cannot be a bool")
            if spec.dtype in ("u32", "i32"):
                if not isinstance(value, (int, np.integer)):
                    raise BindingError(
                        f"{self.name}: parameter {spec.name!r} expects {spec.dtype}, "
                        f"got {type(value).__name__}"
                    )
                value = int(value)
                low, high = (0, 2 ** 32) if spec.dtype == "u32" else (-2 ** 31, 2 ** 31)
                if not low <= value < high:
                    raise BindingError(
                        f"{self.name}: parameter {spec.name!r}={value} out of {spec.dtype} range"
                    )
            else:
                if not isinstance(value, (int, float, np.integer, np.floating)):
                    raise BindingError(
                        f"{self.name}: parameter {spec.name!r} expects {spec.dtype}, "
                        f"got {type(value).__name__}"
                    )
                value = float(value)
            values.append(value)
        return tuple(values)


def load_module(device, binary) -> KernelModule:
    """Load a kernel module for a device.

    Raises:
        ModuleLoadError: malformed binary or a capability the device lacks.
    """
    device = select_device(device)
    header, interface, payload = parse_module(binary)
    name = header["name"]
    if device.closed:
        raise ModuleLoadError(f"{name}: device {device} is closed")
    caps = device.capabilities
    missing = [f for f in header.get("requires", []) if f not in caps.features]
    if missing:
        raise ModuleLoadError(f"{name}: device {device} lacks features {missing}")
    for binding in interface.bindings:
        if not caps.supports(binding.dtype):
            raise ModuleLoadError(
                f"{name}: binding {binding.name!r} uses {binding.dtype}, "
                f"unsupported on {device}"
            )

    if device.is_cpu():
        host_name = header.get("host_kernel")
        fn = host_kernel(host_name) if host_name else None
        if fn is None:
            raise ModuleLoadError(f"{name}: no host implementation for device {device}")
        logger.debug(f"Loaded host kernel {name} -> {host_name}")
        return KernelModule(device, header, interface, host_fn=fn)

    pipeline = _create_pipeline(device, header, interface, payload)
    logger.debug(f"Loaded GPU kernel {name} on {device}")
    return KernelModule(device, header, interface, pipeline=pipeline)


def _create_pipeline(device, header, interface, payload):
    """Build the wgpu compute pipeline (shader module + bind group layout)."""
    gpu = device.wgpu_device
    entries = []
    slots = [b.access for b in interface.bindings]
    if interface.params:
        slots.append("read")
    for i, access in enumerate(slots):
        entries.append({
            "binding": i,
            "visibility": wgpu.ShaderStage.COMPUTE,
            "buffer": {
                "type": "read-only-storage" if access == "read" else "storage",
                "has_dynamic_offset": False,
            },
        })
    try:
        shader_module = gpu.create_shader_module(code=payload)
        bind_group_layout = gpu.create_bind_group_layout(entries=entries)
        pipeline_layout = gpu.create_pipeline_layout(
            bind_group_layouts=[bind_group_layout]
        )
        return gpu.create_compute_pipeline(
            layout=pipeline_layout,
            compute={"module": shader_module, "entry_point": header["entry_point"]},
        )
    except wgpu.GPUError as exc:
        raise ModuleLoadError(f"{header['name']}: shader rejected by {device}: {exc}") from exc


# ============================================================================
# Dispatch
# ============================================================================

class Dispatch:
    """A kernel with concrete buffers and parameters, ready to submit."""

    def __init__(self, module: KernelModule, bindings, params: Tuple):
        self.module = module
        self.bindings = bindings
        self.params = params

    def submit(self, global_size: int, wait: bool = True) -> DispatchHandle:
        """Submit the dispatch for global_size invocations.

        Args:
            global_size: problem size (invocations along x)
            wait: block until completion

        Returns:
            The DispatchHandle (already complete when wait is True).

        Raises:
            DeviceExecutionError: the device is closed or the work failed.
        """
        module = self.module
        device = module.device
        if device.closed:
            raise DeviceExecutionError(f"{module.name}: device {device} is closed")
        if global_size < 0:
            raise ValueError(f"global_size must be non-negative, got {global_size}")
        deps = []
        for buffer, access in self.bindings:
            deps.extend(buffer.dependencies(access))

        if device.is_cpu():
            handle = self._submit_host(global_size, deps)
        else:
            handle = self._submit_gpu(global_size)
        for buffer, access in self.bindings:
            buffer.track(handle, access)
        if wait:
            handle.wait()
        return handle

    def _submit_host(self, global_size, deps) -> DispatchHandle:
        module = self.module
        arrays = []
        for buffer, access in self.bindings:
            array = buffer.native
            if access == "read":
                array = array.view()
                array.flags.writeable = False
            arrays.append(array)
        fn, params = module._host_fn, self.params

        def run():
            fn(arrays, params, global_size)

        return module.device.queue.submit(run, deps, module.name)

    def _submit_gpu(self, global_size) -> DispatchHandle:
        module = self.module
        device = module.device
        gpu = device.wgpu_device
        if global_size == 0:
            return DispatchHandle(device, 0, module.name)

        resources = []
        for i, (buffer, _) in enumerate(self.bindings):
            storage = buffer.native
            resources.append({
                "binding": i,
                "resource": {"buffer": storage, "offset": 0, "size": storage.size},
            })
        try:
            if module.interface.params:
                packed = b"".join(
                    struct.pack(PARAM_TYPES[spec.dtype][0], value)
                    for spec, value in zip(module.interface.params, self.params)
                )
                params_buffer = gpu.create_buffer_with_data(
                    data=packed, usage=wgpu.BufferUsage.STORAGE,
                )
                resources.append({
                    "binding": len(resources),
                    "resource": {"buffer": params_buffer, "offset": 0,
                                 "size": params_buffer.size},
                })
            bind_group = gpu.create_bind_group(
                layout=module._pipeline.get_bind_group_layout(0), entries=resources,
            )
            groups = math.ceil(global_size / module.workgroup_size)
            limit = device.capabilities.max_workgroups
            groups_x = min(groups, limit)
            groups_y = math.ceil(groups / groups_x)
            if groups_y > limit:
                raise DeviceExecutionError(
                    f"{module.name}: problem size {global_size} exceeds dispatch limits"
                )

            command_encoder = gpu.create_command_encoder()
            compute_pass = command_encoder.begin_compute_pass()
            compute_pass.set_pipeline(module._pipeline)
            compute_pass.set_bind_group(0, bind_group)
            compute_pass.dispatch_workgroups(groups_x, groups_y, 1)
            compute_pass.end()
            command_buffer = command_encoder.finish()
        except wgpu.GPUError as exc:
            raise DeviceExecutionError(f"{module.name}: encoding failed: {exc}") from exc
        return device.queue.submit([command_buffer], module.name)
