"""Kernels, tensors and autograd on a wgpu adapter (skipped when none is present)."""

import numpy as np
import numpy.testing as npt
import pytest

import wgpu_graph as wg
from wgpu_graph.wgpu_shaders import build_module

pytestmark = pytest.mark.gpu


class TestDevice:
    def test_capabilities(self, gpu):
        caps = gpu.capabilities
        assert gpu.is_gpu()
        assert str(gpu) == "gpu:0"
        assert caps.supports("float32")
        assert not caps.supports("float64")
        assert caps.max_buffer_size > 0

    def test_selection(self, gpu):
        assert wg.select_device("gpu") is gpu
        assert wg.select_device("gpu:0") is gpu
        assert wg.select_device("auto") is gpu

    def test_float64_is_host_only(self, gpu):
        with pytest.raises(wg.AllocationError):
            wg.Buffer.allocate(gpu, 4, "float64")
        with pytest.raises(wg.ModuleLoadError):
            wg.load_module(gpu, build_module("add", "float64"))
        narrowed = wg.from_numpy(np.array([0.5, 1.5]), gpu)
        assert narrowed.dtype == "float32"


class TestBuffers:
    def test_round_trip(self, gpu):
        data = np.arange(100, dtype=np.int32)
        buf = wg.Buffer.from_numpy(data, gpu)
        npt.assert_array_equal(buf.read(), data)

    def test_zero_filled_and_empty(self, gpu):
        npt.assert_array_equal(wg.Buffer.allocate(gpu, 5, "uint32").read(), np.zeros(5))
        assert wg.Buffer.allocate(gpu, 0, "float32").read().shape == (0,)

    def test_release(self, gpu):
        buf = wg.Buffer.allocate(gpu, 16, "float32")
        before = gpu.allocated_bytes
        buf.release()
        assert gpu.allocated_bytes == before - 64
        with pytest.raises(wg.TransferError):
            buf.read()


class TestTensorOps:
    def test_elementwise(self, gpu, rng):
        a = rng.standard_normal((4, 5)).astype(np.float32)
        b = rng.uniform(1, 2, (5,)).astype(np.float32)
        ta, tb = wg.from_numpy(a, gpu), wg.from_numpy(b, gpu)
        npt.assert_allclose((ta + tb).numpy(), a + b, rtol=1e-6)
        npt.assert_allclose((ta.T * 2 - 1).numpy(), a.T * 2 - 1, rtol=1e-6)
        npt.assert_allclose((ta / tb).numpy(), a / b, rtol=1e-5)
        npt.assert_allclose(ta.exp().numpy(), np.exp(a), rtol=1e-5)
        npt.assert_allclose(ta.sigmoid().numpy(), 1 / (1 + np.exp(-a)), rtol=1e-5, atol=1e-6)
        npt.assert_array_equal(ta.relu().numpy(), np.maximum(a, 0))

    def test_negative_base_power(self, gpu):
        data = np.array([-2.0, -1.5, 0.5, 3.0], dtype=np.float32)
        t = wg.from_numpy(data, gpu)
        npt.assert_allclose((t ** 2).numpy(), data ** 2, rtol=1e-5)
        npt.assert_allclose((t ** 3).numpy(), data ** 3, rtol=1e-5)
        npt.assert_allclose((t ** 0).numpy(), np.ones(4))
        x = wg.from_numpy(data, gpu, requires_grad=True)
        ((x - 1) ** 2).sum().backward()
        npt.assert_allclose(x.grad.numpy(), 2 * (data - 1), rtol=1e-5)

    def test_strided_views(self, gpu):
        data = np.arange(60, dtype=np.float32).reshape(3, 4, 5)
        t = wg.from_numpy(data, gpu)
        view = t[::-1, 1:, ::2].permute(2, 0, 1)
        npt.assert_array_equal(view.numpy(), data[::-1, 1:, ::2].transpose(2, 0, 1))

    def test_integer_ops(self, gpu):
        a = np.array([[1, -2, 3], [4, 5, -6]], dtype=np.int32)
        t = wg.from_numpy(a, gpu)
        npt.assert_array_equal((t * 3 + t).numpy(), a * 3 + a)
        npt.assert_array_equal(t.sum(1).numpy(), a.sum(1))
        npt.assert_array_equal(t.cast("float32").numpy(), a.astype(np.float32))

    def test_reductions(self, gpu, rng):
        data = rng.standard_normal((6, 7)).astype(np.float32)
        t = wg.from_numpy(data, gpu)
        npt.assert_allclose(t.sum(0).numpy(), data.sum(0), rtol=1e-5, atol=1e-5)
        npt.assert_allclose(t.mean(1).numpy(), data.mean(1), rtol=1e-5, atol=1e-5)
        npt.assert_array_equal(t.max(1).numpy(), data.max(1))
        assert wg.zeros((0,), device=gpu).sum().item() == 0

    def test_matmul(self, gpu, rng):
        a = rng.standard_normal((7, 9)).astype(np.float32)
        b = rng.standard_normal((5, 9)).astype(np.float32)
        out = wg.from_numpy(a, gpu) @ wg.from_numpy(b, gpu).T
        npt.assert_allclose(out.numpy(), a @ b.T, rtol=1e-4, atol=1e-4)

    def test_large_dispatch(self, gpu):
        n = 70000 * 64 + 3
        t = wg.ones(n, device=gpu)
        out = t * 2
        host = out.numpy()
        assert host.shape == (n,)
        assert host[0] == 2 and host[-1] == 2

    def test_in_place(self, gpu):
        t = wg.zeros((3, 4), device=gpu)
        t[:, 1].add_(1)
        t.scaled_add(2.0, wg.ones(4, device=gpu))
        expected = np.full((3, 4), 2.0)
        expected[:, 1] = 3
        npt.assert_array_equal(t.numpy(), expected)


class TestCrossDevice:
    def test_mismatch(self, gpu, cpu):
        with pytest.raises(wg.DeviceMismatchError):
            wg.ones(3, device=gpu) + wg.ones(3, device=cpu)

    def test_binding_rejects_foreign_buffer(self, gpu, cpu):
        module = wg.load_module(gpu, build_module("add", "float32"))
        host_buf = wg.Buffer.allocate(cpu, 4, "float32")
        gpu_buf = wg.Buffer.allocate(gpu, 4, "float32")
        with pytest.raises(wg.BindingError):
            module.bind([host_buf, gpu_buf, (gpu_buf, "read_write")], [])

    def test_to(self, gpu, cpu):
        t = wg.tensor([[1.0, 2.0], [3.0, 4.0]], device=cpu)
        moved = t.to(gpu)
        assert moved.device is gpu
        npt.assert_array_equal(moved.to(cpu).numpy(), t.numpy())


class TestAutograd:
    def test_matches_host(self, gpu, cpu, rng):
        a_data = rng.standard_normal((3, 4)).astype(np.float32)
        b_data = rng.standard_normal((4, 2)).astype(np.float32)
        grads = {}
        for device in (cpu, gpu):
            a = wg.from_numpy(a_data, device, requires_grad=True)
            b = wg.from_numpy(b_data, device, requires_grad=True)
            ((a @ b).tanh() * 2).mean().backward()
            grads[device.kind] = (a.grad.numpy(), b.grad.numpy())
        for host_grad, gpu_grad in zip(grads["cpu"], grads["gpu"]):
            npt.assert_allclose(gpu_grad, host_grad, rtol=1e-4, atol=1e-5)

    def test_gradient_returns_to_source_device(self, gpu, cpu):
        x = wg.tensor([1.0, 2.0], device=cpu, requires_grad=True)
        (x.to(gpu) * 3).sum().backward()
        assert x.grad.device is cpu
        npt.assert_array_equal(x.grad.numpy(), [3.0, 3.0])
