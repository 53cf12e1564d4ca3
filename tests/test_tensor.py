"""Tensor views, elementwise kernels, reductions and matmul on the host device."""

import numpy as np
import numpy.testing as npt
import pytest

import wgpu_graph as wg
from wgpu_graph import wgpu_shaders, wgpu_tensor as wt


def host(values, dtype=np.float32):
    return np.asarray(values, dtype=dtype)


class TestFactories:
    def test_zeros_ones_full(self, cpu):
        npt.assert_array_equal(wg.zeros((2, 3), device=cpu).numpy(), np.zeros((2, 3)))
        npt.assert_array_equal(wg.ones(4, device=cpu).numpy(), np.ones(4))
        filled = wg.full((2, 2), 7, device=cpu)
        assert filled.dtype == "int32"
        npt.assert_array_equal(filled.numpy(), np.full((2, 2), 7))

    def test_tensor_defaults(self, cpu):
        assert wg.tensor([1.5, 2.5], device=cpu).dtype == "float32"
        assert wg.tensor([[1, 2], [3, 4]], device=cpu).dtype == "int32"
        assert wg.tensor([1.0], dtype="float64", device=cpu).dtype == "float64"

    def test_from_numpy_keeps_float64_on_host(self, cpu):
        t = wg.from_numpy(np.array([0.1, 0.2]), cpu)
        assert t.dtype == "float64"
        npt.assert_array_equal(t.numpy(), [0.1, 0.2])

    def test_scalar_tensor(self, cpu):
        t = wg.tensor(3.5, device=cpu)
        assert t.shape == ()
        assert t.item() == 3.5
        with pytest.raises(TypeError):
            len(t)

    def test_arange_and_randn(self, cpu, rng):
        npt.assert_array_equal(wg.arange(2, 7, device=cpu).numpy(), np.arange(2, 7))
        t = wg.randn((3, 4), device=cpu, rng=rng)
        assert t.shape == (3, 4)
        assert t.dtype == "float32"

    def test_metadata(self, cpu):
        t = wg.zeros((2, 3, 4), device=cpu)
        assert t.ndim == 3
        assert t.numel() == 24
        assert len(t) == 2
        assert t.strides == (12, 4, 1)
        assert t.is_contiguous()
        assert t.is_leaf and t.grad_fn is None
        assert t.tolist() == np.zeros((2, 3, 4)).tolist()

    def test_view_must_fit_buffer(self, cpu):
        buf = wg.Buffer.allocate(cpu, 4, "float32")
        with pytest.raises(wg.BoundsError):
            wg.Tensor(buf, (5,))
        with pytest.raises(wg.BoundsError):
            wg.Tensor(buf, (2,), strides=(-1,), offset=0)
        with pytest.raises(wg.ShapeError):
            wg.Tensor(buf, (2, 2), strides=(1,))
        view = wg.Tensor(buf, (2,), strides=(-2,), offset=3)
        assert view.numel() == 2


class TestViews:
    def test_reshape_round_trip(self, cpu):
        data = np.arange(24, dtype=np.float32)
        t = wg.from_numpy(data, cpu)
        r = t.reshape(2, 3, 4)
        assert r.buffer is t.buffer
        back = r.reshape(-1)
        assert back.shape == (24,)
        npt.assert_array_equal(back.numpy(), data)
        assert t.reshape((4, -1)).shape == (4, 6)

    @pytest.mark.parametrize("shape", [(5, 5), (-1, -1), (7, -1), (0, -1)])
    def test_reshape_rejects_wrong_count(self, cpu, shape):
        t = wg.zeros((24,), device=cpu)
        with pytest.raises(wg.ShapeError):
            t.reshape(shape)

    def test_reshape_of_strided_view_copies(self, cpu):
        data = np.arange(12, dtype=np.float32).reshape(3, 4)
        t = wg.from_numpy(data, cpu).T
        r = t.reshape(12)
        assert r.buffer is not t.buffer
        npt.assert_array_equal(r.numpy(), data.T.reshape(12))

    def test_permute_inverse(self, cpu, rng):
        x = wg.randn((2, 3, 4), device=cpu, rng=rng)
        y = x.permute(2, 0, 1)
        assert y.shape == (4, 2, 3)
        assert not y.is_contiguous()
        z = y.permute(1, 2, 0)
        assert z.shape == x.shape
        assert z.strides == x.strides
        npt.assert_array_equal(z.numpy(), x.numpy())

    def test_transpose_twice(self, cpu):
        data = np.arange(6, dtype=np.float32).reshape(2, 3)
        t = wg.from_numpy(data, cpu)
        npt.assert_array_equal(t.transpose(0, 1).numpy(), data.T)
        npt.assert_array_equal(t.transpose(0, 1).transpose(1, 0).numpy(), data)
        npt.assert_array_equal(t.T.numpy(), data.T)

    def test_bad_permutation(self, cpu):
        t = wg.zeros((2, 3), device=cpu)
        with pytest.raises(ValueError):
            t.permute(0, 0)
        with pytest.raises(wg.BoundsError):
            t.transpose(0, 2)

    def test_squeeze_unsqueeze(self, cpu):
        data = np.arange(6, dtype=np.float32).reshape(1, 2, 1, 3)
        t = wg.from_numpy(data, cpu)
        assert t.squeeze().shape == (2, 3)
        assert t.squeeze(2).shape == (1, 2, 3)
        assert t.unsqueeze(-1).shape == (1, 2, 1, 3, 1)
        npt.assert_array_equal(t.squeeze().unsqueeze(0).numpy(), data.reshape(1, 2, 3))
        with pytest.raises(wg.ShapeError):
            t.squeeze(1)

    def test_expand(self, cpu):
        t = wg.tensor([[1.0], [2.0]], device=cpu)
        e = t.expand(3, 2, 4)
        assert e.strides == (0, 1, 0)
        npt.assert_array_equal(e.numpy(), np.broadcast_to([[1.0], [2.0]], (3, 2, 4)))
        assert t.expand(-1, 5).shape == (2, 5)
        with pytest.raises(wg.BroadcastError):
            t.expand(3, 4)


class TestIndexing:
    @pytest.fixture
    def data(self):
        return np.arange(60, dtype=np.float32).reshape(3, 4, 5)

    @pytest.mark.parametrize("key", [
        1,
        -1,
        (slice(1, None), slice(None, None, -1), 2),
        (Ellipsis, 3),
        (slice(None, None, 2), None, slice(1, 4)),
        (Ellipsis, None, 1),
        (0, slice(-3, None), slice(None, None, -2)),
        (slice(2, 1),),
        (1, 2, 3),
    ])
    def test_matches_numpy(self, cpu, data, key):
        t = wg.from_numpy(data, cpu)
        view = t[key]
        expected = data[key]
        assert view.shape == expected.shape
        assert view.buffer is t.buffer
        npt.assert_array_equal(view.numpy(), expected)

    def test_slice_method(self, cpu, data):
        t = wg.from_numpy(data, cpu)
        npt.assert_array_equal(t.slice(2, 1, 5, 2).numpy(), data[:, :, 1:5:2])
        npt.assert_array_equal(t.slice(-2, None, None, -1).numpy(), data[:, ::-1])

    def test_nested_views(self, cpu, data):
        t = wg.from_numpy(data, cpu)
        npt.assert_array_equal(t[::-1][1:, ::2].T.numpy(), data[::-1][1:, ::2].T)

    @pytest.mark.parametrize("key", [3, -4, (0, 4), (slice(0, 5),), (0, 0, 0, 0)])
    def test_out_of_bounds(self, cpu, data, key):
        t = wg.from_numpy(data, cpu)
        with pytest.raises(wg.BoundsError):
            t[key]

    def test_unsupported_keys(self, cpu, data):
        t = wg.from_numpy(data, cpu)
        with pytest.raises(TypeError):
            t[True]
        with pytest.raises(TypeError):
            t["a"]
        with pytest.raises(ValueError):
            t[::0]


class TestBroadcasting:
    def test_broadcast_shapes(self):
        assert wg.broadcast_shapes((3, 1), (4,)) == (3, 4)
        assert wg.broadcast_shapes((), (2, 2)) == (2, 2)
        assert wg.broadcast_shapes((5, 1, 3), (2, 1)) == (5, 2, 3)

    def test_broadcast_error(self):
        with pytest.raises(wg.BroadcastError) as info:
            wg.broadcast_shapes((2, 3), (4,))
        assert info.value.shape_a == (2, 3)

    def test_broadcast_add(self, cpu):
        a = host([[1], [2], [3]])
        b = host([10, 20, 30, 40])
        out = wg.from_numpy(a, cpu) + wg.from_numpy(b, cpu)
        assert out.shape == (3, 4)
        npt.assert_array_equal(out.numpy(), a + b)

    def test_incompatible_operands(self, cpu):
        with pytest.raises(wg.BroadcastError):
            wg.zeros((2, 3), device=cpu) + wg.zeros((4,), device=cpu)


class TestElementwise:
    @pytest.fixture
    def pair(self, rng):
        return (rng.standard_normal((3, 4)).astype(np.float32),
                rng.standard_normal((3, 4)).astype(np.float32) + 3)

    @pytest.mark.parametrize("op", [
        lambda x, y: x + y,
        lambda x, y: x - y,
        lambda x, y: x * y,
        lambda x, y: x / y,
    ])
    def test_binary(self, cpu, pair, op):
        a, b = pair
        out = op(wg.from_numpy(a, cpu), wg.from_numpy(b, cpu))
        npt.assert_allclose(out.numpy(), op(a, b), rtol=1e-6)

    def test_strided_operands(self, cpu, pair):
        a, b = pair
        ta, tb = wg.from_numpy(a, cpu), wg.from_numpy(b.T.copy(), cpu)
        npt.assert_allclose((ta.T * tb).numpy(), a.T * b.T, rtol=1e-6)
        npt.assert_allclose((ta[::-1, 1:] + ta[:, :3]).numpy(), a[::-1, 1:] + a[:, :3],
                            rtol=1e-6)

    def test_scalars(self, cpu, pair):
        a, b = pair
        t, u = wg.from_numpy(a, cpu), wg.from_numpy(b, cpu)
        npt.assert_allclose((t + 2).numpy(), a + 2, rtol=1e-6)
        npt.assert_allclose((3 * t).numpy(), 3 * a, rtol=1e-6)
        npt.assert_allclose((2 - t).numpy(), 2 - a, rtol=1e-6)
        npt.assert_allclose((t - 0.5).numpy(), a - 0.5, rtol=1e-6)
        npt.assert_allclose((t / 4).numpy(), a / 4, rtol=1e-6)
        npt.assert_allclose((1 / u).numpy(), 1 / b, rtol=1e-6)
        npt.assert_allclose((u ** 2).numpy(), b ** 2, rtol=1e-6)
        npt.assert_array_equal((-t).numpy(), -a)

    def test_division_by_zero_scalar(self, cpu):
        t = wg.tensor([1.0, -2.0, 0.0], device=cpu)
        by_scalar = (t / 0.0).numpy()
        npt.assert_array_equal(by_scalar, [np.inf, -np.inf, np.nan])
        npt.assert_array_equal((t / wg.zeros(3, device=cpu)).numpy(), by_scalar)

    def test_power_of_negative_base(self, cpu):
        data = host([-2.0, -1.5, 0.5, 3.0])
        t = wg.from_numpy(data, cpu)
        npt.assert_allclose((t ** 2).numpy(), data ** 2, rtol=1e-6)
        npt.assert_allclose((t ** 3).numpy(), data ** 3, rtol=1e-6)
        npt.assert_array_equal((t ** 0).numpy(), np.ones(4))

    def test_unary(self, cpu, pair):
        a, b = pair
        t, u = wg.from_numpy(a, cpu), wg.from_numpy(b, cpu)
        npt.assert_allclose(t.exp().numpy(), np.exp(a), rtol=1e-6)
        npt.assert_allclose(u.log().numpy(), np.log(b), rtol=1e-6)
        npt.assert_array_equal(t.relu().numpy(), np.maximum(a, 0))
        npt.assert_allclose(t.sigmoid().numpy(), 1 / (1 + np.exp(-a)), rtol=1e-6)
        npt.assert_allclose(t.tanh().numpy(), np.tanh(a), rtol=1e-6)

    def test_integer_arithmetic(self, cpu):
        a = np.array([1, -2, 3], dtype=np.int32)
        t = wg.from_numpy(a, cpu)
        npt.assert_array_equal((t + t).numpy(), a + a)
        npt.assert_array_equal((t * 3).numpy(), a * 3)
        npt.assert_array_equal((t - 1).numpy(), a - 1)
        npt.assert_array_equal((t + (2 ** 32 + 1)).numpy(), a + 1)

    def test_unsigned_wraps(self, cpu):
        t = wg.tensor([1, 0], dtype="uint32", device=cpu)
        npt.assert_array_equal((-t).numpy(), np.array([2 ** 32 - 1, 0], dtype=np.uint32))

    def test_float_only_ops_reject_integers(self, cpu):
        t = wg.tensor([1, 2], device=cpu)
        with pytest.raises(TypeError):
            t / t
        with pytest.raises(TypeError):
            t / 2
        with pytest.raises(TypeError):
            t.exp()
        with pytest.raises(TypeError):
            t * 0.5

    def test_mixed_element_types(self, cpu):
        with pytest.raises(TypeError, match="Element type mismatch"):
            wg.tensor([1, 2], device=cpu) + wg.tensor([1.0, 2.0], device=cpu)

    def test_device_mismatch(self, cpu, scratch_device):
        a = wg.ones(3, device=cpu)
        b = wg.ones(3, device=scratch_device)
        with pytest.raises(wg.DeviceMismatchError):
            a + b
        npt.assert_array_equal((a + b.to(cpu)).numpy(), [2, 2, 2])

    def test_seven_dimensions(self, cpu):
        data = np.arange(2 ** 7, dtype=np.float32).reshape((2,) * 7)
        t = wg.from_numpy(data, cpu)
        npt.assert_array_equal((t + t).numpy(), data * 2)
        npt.assert_array_equal(t.T.numpy(), data.T)
        npt.assert_array_equal((t.T + t).numpy(), data.T + data)
        npt.assert_allclose((t.T * 0.5).exp().numpy(), np.exp(data.T * 0.5), rtol=1e-6)
        npt.assert_array_equal(t.T.cast("int32").numpy(), data.T.astype(np.int32))
        unit = wg.ones((1,) * 6 + (2,), device=cpu)
        npt.assert_array_equal((unit + unit).numpy(), np.full((1,) * 6 + (2,), 2.0))

    def test_seven_dimensional_fill(self, cpu):
        t = wg.zeros((2,) * 6 + (4,), device=cpu)
        t[..., ::2].T.fill_(3)
        expected = np.zeros((2,) * 6 + (4,))
        expected[..., ::2] = 3
        npt.assert_array_equal(t.numpy(), expected)

    def test_empty_operands(self, cpu):
        out = wg.zeros((0, 3), device=cpu) + wg.ones(3, device=cpu)
        assert out.shape == (0, 3)
        assert out.numpy().shape == (0, 3)

    def test_float64(self, cpu):
        x = np.array([0.5, 1.5], dtype=np.float64)
        t = wg.from_numpy(x, cpu)
        out = (t * t).exp()
        assert out.dtype == "float64"
        npt.assert_allclose(out.numpy(), np.exp(x * x), rtol=1e-12)


class TestReductions:
    @pytest.fixture
    def data(self, rng):
        return rng.standard_normal((3, 4, 5)).astype(np.float32)

    def test_sum(self, cpu, data):
        t = wg.from_numpy(data, cpu)
        npt.assert_allclose(t.sum().item(), data.sum(), rtol=1e-5, atol=1e-5)
        for axis in (0, 1, 2, -1):
            npt.assert_allclose(t.sum(axis).numpy(), data.sum(axis), rtol=1e-5, atol=1e-6)
        kept = t.sum(1, keepdims=True)
        assert kept.shape == (3, 1, 5)
        assert t.sum(keepdims=True).shape == (1, 1, 1)

    def test_sum_of_view(self, cpu, data):
        t = wg.from_numpy(data, cpu)
        npt.assert_allclose(t.T[1:].sum(0).numpy(), data.T[1:].sum(0), rtol=1e-5, atol=1e-6)

    def test_mean_and_max(self, cpu, data):
        t = wg.from_numpy(data, cpu)
        npt.assert_allclose(t.mean().item(), data.mean(), rtol=1e-5, atol=1e-6)
        npt.assert_allclose(t.mean(2).numpy(), data.mean(2), rtol=1e-5, atol=1e-6)
        npt.assert_array_equal(t.max(1).numpy(), data.max(1))
        assert t.max().item() == data.max()

    def test_integer_sum(self, cpu):
        t = wg.tensor([[1, 2, 3], [4, 5, 6]], device=cpu)
        npt.assert_array_equal(t.sum(0).numpy(), [5, 7, 9])
        with pytest.raises(TypeError):
            t.mean()

    def test_empty_reductions(self, cpu):
        empty = wg.zeros((0,), device=cpu)
        assert empty.sum().item() == 0
        npt.assert_array_equal(wg.zeros((3, 0), device=cpu).sum(1).numpy(), [0, 0, 0])
        with pytest.raises(wg.DivideByZeroError):
            empty.mean()
        with pytest.raises(ZeroDivisionError):
            wg.zeros((2, 0), device=cpu).mean(1)
        with pytest.raises(wg.ShapeError):
            empty.max()


class TestMatmul:
    def test_matches_numpy(self, cpu, rng):
        a = rng.standard_normal((3, 4)).astype(np.float32)
        b = rng.standard_normal((4, 5)).astype(np.float32)
        out = wg.from_numpy(a, cpu) @ wg.from_numpy(b, cpu)
        npt.assert_allclose(out.numpy(), a @ b, rtol=1e-5, atol=1e-6)

    def test_transposed_operands(self, cpu, rng):
        a = rng.standard_normal((4, 3)).astype(np.float32)
        b = rng.standard_normal((5, 4)).astype(np.float32)
        ta, tb = wg.from_numpy(a, cpu), wg.from_numpy(b, cpu)
        out = ta.T.matmul(tb.T)
        npt.assert_allclose(out.numpy(), a.T @ b.T, rtol=1e-5, atol=1e-6)
        flipped = ta[::-1].T @ tb[:, ::-1].T
        npt.assert_allclose(flipped.numpy(), a[::-1].T @ b[:, ::-1].T, rtol=1e-5, atol=1e-6)

    def test_shape_errors(self, cpu):
        with pytest.raises(wg.ShapeError):
            wg.zeros((2, 3), device=cpu) @ wg.zeros((2, 3), device=cpu)
        with pytest.raises(wg.ShapeError):
            wg.zeros((2, 3, 4), device=cpu) @ wg.zeros((4, 2), device=cpu)

    def test_dot(self, cpu):
        a = wg.tensor([1.0, 2.0, 3.0], device=cpu)
        b = wg.tensor([4.0, 5.0, 6.0], device=cpu)
        d = a.dot(b)
        assert d.shape == ()
        assert d.item() == 32.0

    def test_zero_inner_dimension(self, cpu):
        out = wg.zeros((2, 0), device=cpu) @ wg.zeros((0, 3), device=cpu)
        npt.assert_array_equal(out.numpy(), np.zeros((2, 3)))


class TestConversions:
    def test_cast(self, cpu):
        t = wg.tensor([1.7, -1.7, 2.0], device=cpu)
        as_int = t.cast("int32")
        assert as_int.dtype == "int32"
        npt.assert_array_equal(as_int.numpy(), [1, -1, 2])
        assert t.astype("float32") is t
        npt.assert_array_equal(as_int.cast("float64").numpy(), [1.0, -1.0, 2.0])

    def test_contiguous(self, cpu):
        data = np.arange(6, dtype=np.float32).reshape(2, 3)
        t = wg.from_numpy(data, cpu)
        assert t.contiguous() is t
        c = t.T.contiguous()
        assert c.is_contiguous()
        assert c.buffer is not t.buffer
        npt.assert_array_equal(c.numpy(), data.T)

    def test_to(self, cpu, scratch_device):
        t = wg.tensor([[1.0, 2.0]], device=cpu)
        assert t.to(cpu) is t
        moved = t.to(scratch_device)
        assert moved.device is scratch_device
        npt.assert_array_equal(moved.numpy(), [[1.0, 2.0]])

    def test_numpy_protocol(self, cpu):
        t = wg.tensor([1.0, 2.0], device=cpu)
        npt.assert_array_equal(np.asarray(t), [1.0, 2.0])
        assert np.asarray(t, dtype=np.float64).dtype == np.float64


class TestInPlace:
    def test_arithmetic(self, cpu):
        t = wg.ones((2, 3), device=cpu)
        t.add_(2).mul_(wg.tensor([1.0, 2.0, 3.0], device=cpu)).sub_(1)
        npt.assert_array_equal(t.numpy(), np.array([[2, 5, 8], [2, 5, 8]]))

    def test_writes_through_views(self, cpu):
        t = wg.zeros((3, 4), device=cpu)
        t[:, 1].add_(1)
        t[0].fill_(5)
        expected = np.zeros((3, 4))
        expected[:, 1] = 1
        expected[0] = 5
        npt.assert_array_equal(t.numpy(), expected)

    def test_copy_and_zero(self, cpu):
        t = wg.ones((2, 3), device=cpu)
        t.copy_(wg.tensor([7.0, 8.0, 9.0], device=cpu))
        npt.assert_array_equal(t.numpy(), [[7, 8, 9], [7, 8, 9]])
        t.zero_()
        npt.assert_array_equal(t.numpy(), np.zeros((2, 3)))

    def test_copy_from_overlapping_view(self, cpu):
        t = wg.arange(5, device=cpu)
        t[1:].copy_(t[:4])
        npt.assert_array_equal(t.numpy(), [0, 0, 1, 2, 3])

    def test_scaled_add(self, cpu):
        y = wg.ones(3, device=cpu)
        y.scaled_add(2.0, wg.tensor([1.0, 2.0, 3.0], device=cpu))
        npt.assert_array_equal(y.numpy(), [3, 5, 7])
        m = wg.zeros((2, 2), device=cpu)
        m.T.scaled_add(1.0, wg.tensor([[1.0, 2.0], [3.0, 4.0]], device=cpu))
        npt.assert_array_equal(m.numpy(), [[1, 3], [2, 4]])

    def test_shape_must_match(self, cpu):
        t = wg.zeros(3, device=cpu)
        with pytest.raises(wg.BroadcastError):
            t.add_(wg.zeros((2, 3), device=cpu))

    def test_rejected_on_grad_tracked_tensor(self, cpu):
        w = wg.ones(3, device=cpu, requires_grad=True)
        with pytest.raises(RuntimeError, match="in-place"):
            w.add_(1)
        with wg.no_grad():
            w.sub_(1)
        npt.assert_array_equal(w.numpy(), np.zeros(3))


class TestLaunchHelpers:
    def test_scalar_value(self):
        assert wt.scalar_value("int32", 2 ** 31) == -2 ** 31
        assert wt.scalar_value("uint32", -1) == 2 ** 32 - 1
        assert wt.scalar_value("float32", 2) == 2.0
        with pytest.raises(TypeError):
            wt.scalar_value("int32", 1.5)
        with pytest.raises(TypeError):
            wt.scalar_value("float32", True)

    def test_kernels_are_cached_per_device(self, cpu):
        wg.ones(2, device=cpu) + 1
        first = cpu._module_cache[("add_scalar", "float32")]
        wg.ones(2, device=cpu) + 1
        assert cpu._module_cache[("add_scalar", "float32")] is first

    def test_collapse_layout(self):
        shape, strides = wgpu_shaders.collapse_layout(
            (2, 1, 3, 4), [(12, 12, 4, 1), (0, 0, 0, 1)]
        )
        assert shape == (6, 4)
        assert strides == [(4, 1), (0, 1)]
        assert wgpu_shaders.collapse_layout((1, 1), [(5, 7)]) == ((), [()])

    def test_layout_params_rank_limit(self):
        reversed_strides = tuple(2 ** i for i in range(7))
        with pytest.raises(wg.ShapeError, match="at most 6"):
            wgpu_shaders.layout_params((2,) * 7, [(0, reversed_strides)])
        params = wgpu_shaders.layout_params((1,) * 7 + (3,), [(4, (9,) * 7 + (1,))])
        assert params[:3] == [3, 1, 3]
        assert params[8:10] == [4, 1]
