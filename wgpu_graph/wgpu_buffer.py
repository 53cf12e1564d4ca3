"""
Typed, device-resident buffers.

A Buffer is the unit of allocation, host transfer and kernel binding. On the
host device the storage is a flat numpy array; on a GPU it is a wgpu storage
buffer. Buffers are shared by every Tensor that views them and freed when the
last reference goes away (or on an explicit release()), always after a
barrier on any dispatch still touching them.

Each buffer carries a last-writer / last-readers tag. The dispatch layer
consults it to order new work after the work it depends on.
"""

import logging
import weakref
from typing import List, Optional

import numpy as np
import wgpu

from wgpu_graph import wgpu_dtypes
from wgpu_graph.wgpu_device import Device, DispatchHandle, select_device
from wgpu_graph.wgpu_errors import (
    AllocationError, DeviceExecutionError, TransferError,
)

logger = logging.getLogger(__name__)

STORAGE_USAGE = (
    wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.COPY_SRC
)


class _Residency:
    """Allocation state shared between a Buffer and its finalizer."""

    __slots__ = ("storage", "nbytes", "last_write", "reads", "released")

    def __init__(self, storage, nbytes):
        self.storage = storage
        self.nbytes = nbytes
        self.last_write: Optional[DispatchHandle] = None
        self.reads: List[DispatchHandle] = []
        self.released = False

    def pending(self) -> List[DispatchHandle]:
        handles = list(self.reads)
        if self.last_write is not None:
            handles.append(self.last_write)
        return [h for h in handles if not h.poll()]


def _free(device: Device, state: _Residency, raise_errors: bool) -> None:
    """Barrier on in-flight work, then return the memory to the device."""
    if state.released:
        return
    try:
        # queued host kernels hold their own references to the array
        if not device.closed and (raise_errors or not device.is_cpu()):
            for handle in state.pending():
                handle.wait()
    except DeviceExecutionError as exc:
        if raise_errors:
            raise
        logger.warning(f"In-flight work on a collected buffer failed: {exc}")
    finally:
        state.released = True
        storage, state.storage = state.storage, None
        if isinstance(storage, wgpu.GPUBuffer) and not device.closed:
            storage.destroy()
        device.unreserve(state.nbytes)


class Buffer:
    """Owned, device-resident, strongly-typed contiguous block of elements."""

    def __init__(self, device: Device, count: int, dtype: str, storage, nbytes: int):
        self.device = device
        self.count = count
        self.dtype = dtype
        self._state = _Residency(storage, nbytes)
        self._finalizer = weakref.finalize(self, _free, device, self._state, False)

    # ---- Allocation ----
    @classmethod
    def allocate(cls, device=None, count: int = 0, dtype="float32",
                 zero: bool = True) -> "Buffer":
        """Allocate count elements of dtype on device.

        Args:
            device: Device or device spec
            count: number of elements
            dtype: element type
            zero: zero-fill the allocation (wgpu always zero-fills)

        Raises:
            AllocationError: out of memory, oversized, closed device or an
                element type the device cannot store. The device's allocator
                state is left untouched on failure.
        """
        device = select_device(device)
        if count < 0:
            raise ValueError(f"Element count must be non-negative, got {count}")
        try:
            dtype = wgpu_dtypes.canonical(dtype)
        except TypeError as exc:
            raise AllocationError(str(exc)) from None
        if not device.capabilities.supports(dtype):
            raise AllocationError(
                f"Device {device} cannot store {dtype} "
                f"(supports {', '.join(device.capabilities.element_types)})"
            )
        nbytes = count * wgpu_dtypes.itemsize(dtype)
        device.reserve(nbytes)
        try:
            storage = cls._create_storage(device, count, dtype, nbytes, zero)
        except BaseException:
            device.unreserve(nbytes)
            raise
        return cls(device, count, dtype, storage, nbytes)

    @staticmethod
    def _create_storage(device, count, dtype, nbytes, zero):
        if device.is_cpu():
            factory = np.zeros if zero else np.empty
            try:
                return factory(count, dtype=wgpu_dtypes.numpy_dtype(dtype))
            except MemoryError as exc:
                raise AllocationError(
                    f"Host out of memory allocating {nbytes} bytes"
                ) from exc
        # wgpu rejects zero-sized bindings and needs 4-byte multiples
        size = max(4, (nbytes + 3) // 4 * 4)
        try:
            return device.wgpu_device.create_buffer(size=size, usage=STORAGE_USAGE)
        except wgpu.GPUError as exc:
            raise AllocationError(
                f"GPU allocation of {nbytes} bytes on {device} failed: {exc}"
            ) from exc

    @classmethod
    def from_numpy(cls, array, device=None) -> "Buffer":
        """Allocate a buffer and copy a host array into it."""
        array = np.asarray(array)
        dtype = wgpu_dtypes.from_numpy(array.dtype)
        buffer = cls.allocate(device, array.size, dtype, zero=False)
        buffer.write(array.astype(wgpu_dtypes.numpy_dtype(dtype), copy=False))
        return buffer

    # ---- Properties ----
    @property
    def itemsize(self) -> int:
        return wgpu_dtypes.itemsize(self.dtype)

    @property
    def nbytes(self) -> int:
        return self._state.nbytes

    @property
    def released(self) -> bool:
        return self._state.released

    @property
    def native(self):
        """The backend allocation (numpy array or wgpu.GPUBuffer)."""
        if self._state.released:
            raise TransferError("Buffer has been released")
        return self._state.storage

    def __repr__(self):
        return (f"Buffer(count={self.count}, dtype={self.dtype}, "
                f"device={self.device}{', released' if self.released else ''})")

    # ---- Dependency tags ----
    def dependencies(self, access: str) -> List[DispatchHandle]:
        """Dispatches a new access must wait for.

        A read waits for the last writer; a write also waits for the readers
        since the last write. Failed handles are kept so the failure
        propagates to dependent work.
        """
        state = self._state
        deps = []
        if state.last_write is not None:
            deps.append(state.last_write)
        if access == "read_write":
            deps.extend(state.reads)
        return [d for d in deps if not d.poll() or d.failed()]

    def track(self, handle: DispatchHandle, access: str) -> None:
        """Record that handle reads or writes this buffer."""
        state = self._state
        if access == "read_write":
            state.last_write = handle
            state.reads = []
        else:
            state.reads = [r for r in state.reads if not r.poll()]
            state.reads.append(handle)

    # ---- Transfers ----
    def _check_transfer(self, what: str) -> None:
        if self.device.closed:
            raise TransferError(f"Cannot {what}: device {self.device} is disconnected")
        if self._state.released:
            raise TransferError(f"Cannot {what}: buffer has been released")

    def write(self, array) -> None:
        """Copy host data into the buffer (copy-in).

        Raises:
            TransferError: element type or count mismatch, released buffer
                or disconnected device.
        """
        self._check_transfer("write")
        array = np.asarray(array)
        expected = wgpu_dtypes.numpy_dtype(self.dtype)
        if array.dtype != expected:
            raise TransferError(
                f"Element type mismatch: buffer holds {self.dtype}, got {array.dtype}"
            )
        if array.size != self.count:
            raise TransferError(
                f"Element count mismatch: buffer holds {self.count}, got {array.size}"
            )
        if self.device.is_cpu():
            for handle in self.dependencies("read_write"):
                handle.wait()
            np.copyto(self._state.storage, array.reshape(-1))
            return
        if self.count == 0:
            return
        data = np.ascontiguousarray(array).reshape(-1)
        try:
            self.device.queue.raw.write_buffer(self._state.storage, 0, data)
        except wgpu.GPUError as exc:
            raise TransferError(f"GPU write failed on {self.device}: {exc}") from exc

    def read(self) -> np.ndarray:
        """Copy the buffer back to a new flat host array (copy-out).

        This is a synchronization point: it waits for every prior write.

        Raises:
            TransferError: released buffer or disconnected device.
            DeviceExecutionError: the dispatch that produced the data failed.
        """
        self._check_transfer("read")
        np_dtype = wgpu_dtypes.numpy_dtype(self.dtype)
        if self.device.is_cpu():
            for handle in self.dependencies("read"):
                handle.wait()
            return self._state.storage.copy()
        if self.count == 0:
            return np.zeros(0, dtype=np_dtype)
        try:
            data = self.device.queue.raw.read_buffer(self._state.storage, 0, self.nbytes)
        except wgpu.GPUError as exc:
            raise TransferError(f"GPU read failed on {self.device}: {exc}") from exc
        self.device.queue.mark_all_complete()
        return np.frombuffer(data, dtype=np_dtype).copy()

    def copy_to(self, device) -> "Buffer":
        """Copy into a new buffer on another device (through host memory)."""
        device = select_device(device)
        out = Buffer.allocate(device, self.count, self.dtype, zero=False)
        out.write(self.read())
        return out

    # ---- Release ----
    def release(self) -> None:
        """Free the allocation after in-flight work on it has finished."""
        if self._finalizer.alive:
            self._finalizer.detach()
            _free(self.device, self._state, True)
