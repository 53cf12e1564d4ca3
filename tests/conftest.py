"""Shared fixtures for wgpu_graph tests."""

import os

# Default every test to the host device unless the caller chose otherwise.
os.environ.setdefault("WGPU_GRAPH_DEVICE", "cpu")

import numpy as np  # noqa: E402
import pytest  # noqa: E402

from wgpu_graph import wgpu_config  # noqa: E402
from wgpu_graph.wgpu_device import (  # noqa: E402
    HOST_DTYPES, Capabilities, Device, gpu_count, gpu_device, host_device,
)
from wgpu_graph.wgpu_errors import AllocationError  # noqa: E402


@pytest.fixture(scope="session")
def cpu():
    """Session-scoped host device."""
    return host_device()


@pytest.fixture(scope="session")
def gpu():
    """First wgpu adapter, or skip when the machine has none."""
    if gpu_count() == 0:
        pytest.skip("no wgpu adapter available")
    try:
        return gpu_device(0)
    except AllocationError as exc:
        pytest.skip(f"could not open GPU 0: {exc}")


@pytest.fixture
def scratch_device():
    """A private host device with a small memory budget, closed afterwards."""
    caps = Capabilities(
        element_types=HOST_DTYPES,
        max_buffer_size=1 << 16,
        features=frozenset({"shader-f64"}),
        memory_limit=1 << 16,
    )
    device = Device("cpu", 99, "scratch", caps)
    yield device
    device.close()


@pytest.fixture
def restore_config():
    """Drop any configuration a test installed."""
    yield wgpu_config.set_config
    wgpu_config.reset_config()


@pytest.fixture
def rng():
    return np.random.default_rng(1234)
