"""
Compute devices: the CPU host device and wgpu GPU adapters.

A Device owns a command queue and the allocator bookkeeping for every buffer
placed on it. Devices are created lazily, cached for the life of the process
and torn down at exit after outstanding work has drained.

Two queue flavours exist:
  - _HostQueue runs dispatches on a small worker pool. Each dispatch waits for
    the dispatches it depends on (derived from per-buffer tags, see
    wgpu_buffer.Buffer), so independent work can run concurrently while
    dependent work keeps submission order.
  - _GpuQueue wraps a wgpu queue, which executes submissions in order.
"""

import atexit
import logging
import re
import threading
from concurrent import futures
from dataclasses import dataclass, field
from typing import Callable, Dict, FrozenSet, List, Optional, Sequence, Tuple

import wgpu

from wgpu_graph.wgpu_config import get_config
from wgpu_graph.wgpu_errors import AllocationError, DeviceExecutionError

logger = logging.getLogger(__name__)

HOST_DTYPES = ("float32", "float64", "int32", "uint32")
GPU_DTYPES = ("float32", "int32", "uint32")

_DEVICE_SPEC = re.compile(r"^(cpu|host|gpu|auto)(?::(\d+))?$")


# ============================================================================
# Capabilities & Handles
# ============================================================================

@dataclass(frozen=True)
class Capabilities:
    """What a device can do.

    Attributes:
        element_types: element types a buffer on this device may hold
        max_buffer_size: largest single allocation in bytes
        supports_async: whether submissions return before completion
        features: backend feature names (e.g. wgpu adapter features)
        memory_limit: total bytes the device may hold, 0 when unknown
        max_workgroups: per-dimension dispatch limit (GPU only)
    """

    element_types: Tuple[str, ...]
    max_buffer_size: int
    supports_async: bool = True
    features: FrozenSet[str] = field(default_factory=frozenset)
    memory_limit: int = 0
    max_workgroups: int = 65535

    def supports(self, dtype: str) -> bool:
        return dtype in self.element_types


class DispatchHandle:
    """Handle to submitted device work.

    wait() blocks until the work completes and raises DeviceExecutionError if
    it failed. poll() never blocks.
    """

    def __init__(self, device, seq: int, label: str, future=None):
        self.device = device
        self.seq = seq
        self.label = label
        self._future = future
        self._observed = False

    def poll(self) -> bool:
        """True once the work is known to be complete."""
        if self._future is not None:
            return self._future.done()
        return self.device.queue.completed(self.seq)

    @property
    def done(self) -> bool:
        return self.poll()

    def failed(self) -> bool:
        if self._future is None or not self._future.done():
            return False
        return self._future.exception() is not None

    def wait(self, timeout: Optional[float] = None) -> None:
        """Block until complete.

        Raises:
            DeviceExecutionError: if the dispatch (or one it depended on) failed.
        """
        self._observed = True
        if self._future is None:
            self.device.queue.wait(self.seq)
            return
        try:
            self._future.result(timeout=timeout)
        except futures.TimeoutError:
            raise
        except DeviceExecutionError:
            raise
        except Exception as exc:
            raise DeviceExecutionError(f"{self.label} failed: {exc}") from exc

    def __repr__(self):
        state = "done" if self.poll() else "pending"
        return f"DispatchHandle({self.label!r}, seq={self.seq}, {state})"


# ============================================================================
# Queues
# ============================================================================

class _HostQueue:
    """Dependency-aware worker pool for the CPU device."""

    def __init__(self, device, workers: int):
        self._device = device
        self._executor = futures.ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="wgpu-graph-host"
        )
        self._lock = threading.Lock()
        self._seq = 0
        self._pending: List[DispatchHandle] = []

    def submit(self, fn: Callable[[], None], deps: Sequence[DispatchHandle],
               label: str) -> DispatchHandle:
        deps = [d for d in deps if d is not None]

        def run():
            for dep in deps:
                try:
                    dep._future.result()
                except Exception as exc:
                    raise DeviceExecutionError(
                        f"{label}: dependency {dep.label!r} failed"
                    ) from exc
            try:
                fn()
            except DeviceExecutionError:
                raise
            except Exception as exc:
                raise DeviceExecutionError(f"{label} failed: {exc}") from exc

        with self._lock:
            self._seq += 1
            seq = self._seq
            future = self._executor.submit(run)
            handle = DispatchHandle(self._device, seq, label, future)
            self._pending = [
                h for h in self._pending
                if not h.poll() or (h.failed() and not h._observed)
            ]
            self._pending.append(handle)
        return handle

    def completed(self, seq: int) -> bool:
        with self._lock:
            return all(h.poll() for h in self._pending if h.seq <= seq)

    def wait(self, seq: int) -> None:
        with self._lock:
            waiting = [h for h in self._pending if h.seq <= seq]
        for handle in waiting:
            handle.wait()

    def synchronize(self) -> None:
        """Wait for every submission; raise the first failure nobody observed."""
        with self._lock:
            pending = list(self._pending)
        futures.wait([h._future for h in pending])
        for handle in pending:
            if handle.failed() and not handle._observed:
                handle.wait()

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)


class _GpuQueue:
    """Sequence-numbered wrapper around a wgpu queue (in-order execution)."""

    def __init__(self, device, wgpu_queue):
        self._device = device
        self._queue = wgpu_queue
        self._lock = threading.Lock()
        self._submitted = 0
        self._completed = 0

    @property
    def raw(self):
        return self._queue

    def submit(self, command_buffers, label: str) -> DispatchHandle:
        with self._lock:
            try:
                self._queue.submit(command_buffers)
            except wgpu.GPUError as exc:
                raise DeviceExecutionError(f"{label} failed: {exc}") from exc
            self._submitted += 1
            return DispatchHandle(self._device, self._submitted, label)

    def completed(self, seq: int) -> bool:
        return seq <= self._completed

    def mark_all_complete(self) -> None:
        """Record that every submission so far has finished.

        Called after blocking operations such as queue.read_buffer, which wait
        for all prior work on an in-order queue.
        """
        with self._lock:
            self._completed = self._submitted

    def wait(self, seq: int) -> None:
        if seq <= self._completed:
            return
        with self._lock:
            target = self._submitted
        try:
            self._queue.on_submitted_work_done_sync()
        except wgpu.GPUError as exc:
            raise DeviceExecutionError(f"Waiting for GPU work failed: {exc}") from exc
        with self._lock:
            self._completed = max(self._completed, target)

    def synchronize(self) -> None:
        self.wait(self._submitted)

    def shutdown(self) -> None:
        pass


# ============================================================================
# Device
# ============================================================================

class Device:
    """A selectable compute target with its own memory space and queue."""

    def __init__(self, kind: str, index: int, name: str, capabilities: Capabilities,
                 wgpu_device=None, adapter=None):
        self.kind = kind
        self.index = index
        self.name = name
        self.capabilities = capabilities
        self.wgpu_device = wgpu_device
        self.adapter = adapter
        self.allocated_bytes = 0
        self.closed = False
        self._alloc_lock = threading.Lock()
        self._module_cache: Dict[tuple, object] = {}
        if kind == "cpu":
            self.queue = _HostQueue(self, get_config().host_workers)
        else:
            self.queue = _GpuQueue(self, wgpu_device.queue)

    # ---- Identity ----
    def __str__(self):
        return f"{self.kind}:{self.index}"

    def __repr__(self):
        return f"Device({str(self)!r}, name={self.name!r})"

    def is_cpu(self) -> bool:
        return self.kind == "cpu"

    def is_gpu(self) -> bool:
        return self.kind == "gpu"

    # ---- Allocator bookkeeping ----
    def reserve(self, nbytes: int, what: str = "buffer") -> None:
        """Account for an allocation of nbytes, or raise without side effects."""
        caps = self.capabilities
        if self.closed:
            raise AllocationError(f"Cannot allocate {what} on closed device {self}")
        if nbytes > caps.max_buffer_size:
            raise AllocationError(
                f"{what} of {nbytes} bytes exceeds the maximum buffer size "
                f"{caps.max_buffer_size} of device {self}"
            )
        with self._alloc_lock:
            if caps.memory_limit and self.allocated_bytes + nbytes > caps.memory_limit:
                raise AllocationError(
                    f"Out of memory on device {self}: {self.allocated_bytes} of "
                    f"{caps.memory_limit} bytes in use, {nbytes} requested"
                )
            self.allocated_bytes += nbytes

    def unreserve(self, nbytes: int) -> None:
        with self._alloc_lock:
            self.allocated_bytes = max(0, self.allocated_bytes - nbytes)

    # ---- Synchronization ----
    def synchronize(self) -> None:
        """Block until all submitted work has completed."""
        if not self.closed:
            self.queue.synchronize()

    def close(self) -> None:
        """Drain the queue and invalidate the device.

        Later allocations, transfers and dispatches on this device fail.
        """
        if self.closed:
            return
        try:
            self.queue.synchronize()
        except DeviceExecutionError as exc:
            logger.warning(f"Unobserved failure while closing {self}: {exc}")
        self.closed = True
        self.queue.shutdown()
        self._module_cache.clear()
        if self.wgpu_device is not None:
            try:
                self.wgpu_device.destroy()
            except wgpu.GPUError as exc:
                logger.warning(f"Destroying {self} failed: {exc}")
        _forget(self)
        logger.debug(f"Closed device {self}")


# ============================================================================
# Enumeration & Selection
# ============================================================================

_devices: Dict[tuple, Device] = {}
_adapters: Optional[list] = None
_devices_lock = threading.Lock()


def _forget(device: Device) -> None:
    with _devices_lock:
        key = (device.kind, device.index)
        if _devices.get(key) is device:
            del _devices[key]


def _gpu_adapters() -> list:
    """All wgpu adapters, best-effort: no driver means no GPU devices."""
    global _adapters
    if _adapters is None:
        try:
            _adapters = list(wgpu.gpu.enumerate_adapters_sync())
        except Exception as exc:  # wgpu-native raises plain RuntimeErrors here
            logger.warning(f"wgpu adapter enumeration failed, GPU disabled: {exc}")
            _adapters = []
        preferred = get_config().power_preference
        if preferred == "high-performance":
            rank = {"DiscreteGPU": 0, "IntegratedGPU": 1}
        else:
            rank = {"IntegratedGPU": 0, "DiscreteGPU": 1}
        _adapters.sort(key=lambda a: rank.get(a.info.get("adapter_type"), 2))
    return _adapters


def host_device() -> Device:
    """The CPU device (always available)."""
    with _devices_lock:
        device = _devices.get(("cpu", 0))
        if device is None:
            config = get_config()
            caps = Capabilities(
                element_types=HOST_DTYPES,
                max_buffer_size=config.host_max_buffer_size,
                supports_async=True,
                features=frozenset({"shader-f64"}),
                memory_limit=config.host_memory_limit,
            )
            device = Device("cpu", 0, "host", caps)
            _devices[("cpu", 0)] = device
            logger.debug(f"Created host device with {caps}")
        return device


def _open_gpu(index: int) -> Device:
    adapters = _gpu_adapters()
    if index >= len(adapters):
        raise ValueError(f"No GPU with index {index} ({len(adapters)} available)")
    adapter = adapters[index]
    limits = adapter.limits
    required_limits = {
        "max-buffer-size": limits["max-buffer-size"],
        "max-storage-buffer-binding-size": limits["max-storage-buffer-binding-size"],
    }
    try:
        wgpu_device = adapter.request_device_sync(required_limits=required_limits)
    except wgpu.GPUError as exc:
        raise AllocationError(f"Could not open GPU {index}: {exc}") from exc
    dev_limits = wgpu_device.limits
    features = frozenset(str(f) for f in wgpu_device.features)
    caps = Capabilities(
        element_types=GPU_DTYPES,
        max_buffer_size=min(
            dev_limits["max-buffer-size"],
            dev_limits["max-storage-buffer-binding-size"],
        ),
        supports_async=True,
        features=features,
        max_workgroups=dev_limits["max-compute-workgroups-per-dimension"],
    )
    info = adapter.info
    name = f"{info.get('device', 'gpu')} ({info.get('backend_type', '?')})"
    logger.debug(f"Opened GPU {index}: {name}")
    return Device("gpu", index, name, caps, wgpu_device=wgpu_device, adapter=adapter)


def gpu_device(index: int = 0) -> Device:
    with _devices_lock:
        device = _devices.get(("gpu", index))
        if device is None:
            device = _open_gpu(index)
            _devices[("gpu", index)] = device
        return device


def gpu_count() -> int:
    return len(_gpu_adapters())


def enumerate_devices() -> List[Device]:
    """The host device followed by every GPU adapter wgpu reports."""
    devices = [host_device()]
    for index in range(gpu_count()):
        try:
            devices.append(gpu_device(index))
        except (AllocationError, ValueError) as exc:
            logger.warning(f"Skipping GPU {index}: {exc}")
    return devices


def select_device(spec=None) -> Device:
    """Resolve a device spec.

    Args:
        spec: a Device, or "cpu"/"host", "gpu", "gpu:<index>", "auto";
            None uses the configured default (WGPU_GRAPH_DEVICE).

    Returns:
        The cached Device.
    """
    if isinstance(spec, Device):
        return spec
    if spec is None:
        spec = get_config().device
    match = _DEVICE_SPEC.match(str(spec).strip().lower())
    if not match:
        raise ValueError(
            f"Invalid device '{spec}'. Expected 'cpu', 'gpu', 'gpu:<index>' or 'auto'"
        )
    kind, index = match.group(1), int(match.group(2) or 0)
    if kind != "gpu" and index != 0:
        raise ValueError(f"Invalid device '{spec}': only one {kind} device exists (index 0)")
    if kind in ("cpu", "host"):
        return host_device()
    if kind == "gpu":
        return gpu_device(index)
    if gpu_count() > 0:
        return gpu_device(0)
    logger.info("No GPU adapter available, using the host device")
    return host_device()


def _shutdown():
    """Close every device at interpreter exit."""
    with _devices_lock:
        devices = list(_devices.values())
    for device in devices:
        try:
            device.close()
        except Exception as exc:  # best effort at interpreter exit
            logger.debug(f"Ignoring error closing {device}: {exc}")


atexit.register(_shutdown)
