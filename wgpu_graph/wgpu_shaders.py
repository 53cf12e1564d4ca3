"""
Built-in compute kernels.

Every kernel exists as a WGSL template (instantiated per element type and
packed into a kernel module container) and as a numpy host kernel used by the
CPU device. Modules are loaded lazily and cached on the device.

Elementwise kernels address their inputs through a strided layout so that
views (transposes, slices, broadcast expansions) are consumed without an
extra copy. The layout is passed as scalar parameters:

    params[0]            n, number of output elements
    params[1]            ndim
    params[2..7]         shape (padded to MAX_DIMS)
    params[8]            operand 0 offset (elements, signed)
    params[9..14]        operand 0 strides (elements, signed)
    params[15..21]       operand 1 offset + strides
    ...                  kernel specific scalars
"""

import logging
from string import Template
from typing import Dict, Sequence, Tuple

import numpy as np
from numpy.lib.stride_tricks import as_strided

from wgpu_graph import wgpu_dtypes
from wgpu_graph.wgpu_errors import ShapeError
from wgpu_graph.wgpu_kernels import (
    KernelModule, load_module, pack_module, register_host_kernel,
)

logger = logging.getLogger(__name__)

WORKGROUP_SIZE = 64
MAX_DIMS = 6

# scalar parameter type for an element type
_SCALAR_PARAM = {"float32": "f32", "float64": "f64", "int32": "i32", "uint32": "u32"}


# ============================================================================
# WGSL Sources
# ============================================================================

_MAIN = """
@compute @workgroup_size($WG)
fn main(@builtin(global_invocation_id) gid: vec3<u32>,
        @builtin(num_workgroups) nwg: vec3<u32>) {
    let idx = gid.x + gid.y * nwg.x * ${WG}u;
    if (idx >= $LIMIT) {
        return;
    }
$BODY
}
"""

_LOCATE = """
fn locate(idx: u32, base: u32) -> u32 {
    let ndim = params[1];
    var rem = idx;
    var pos = bitcast<i32>(params[base]);
    for (var k = 0u; k < ndim; k = k + 1u) {
        let axis = ndim - 1u - k;
        let extent = params[2u + axis];
        pos = pos + i32(rem % extent) * bitcast<i32>(params[base + 1u + axis]);
        rem = rem / extent;
    }
    return u32(pos);
}
"""

# pow() is undefined for a negative base; integral exponents keep their sign rule
_POW_REAL = """
fn pow_real(x: $T, s: $T) -> $T {
    if (s == $T(0)) {
        return $T(1);
    }
    if (x >= $T(0) || s != floor(s)) {
        return pow(x, s);
    }
    let m = pow(-x, s);
    if (s - $T(2) * floor(s * $T(0.5)) == $T(1)) {
        return -m;
    }
    return m;
}
"""

BINARY_OPS = {
    "add": "a + b",
    "sub": "a - b",
    "mul": "a * b",
    "div": "a / b",
    "maximum": "max(a, b)",
    "eq": "select($T(0), $T(1), a == b)",
    "relu_grad": "select($T(0), b, a > $T(0))",
}

UNARY_OPS = {
    "neg": "$T(0) - x",
    "exp": "exp(x)",
    "log": "log(x)",
    "relu": "max(x, $T(0))",
    "sigmoid": "$T(1) / ($T(1) + exp(-x))",
    "tanh": "tanh(x)",
}

SCALAR_OPS = {
    "add_scalar": "x + s",
    "mul_scalar": "x * s",
    "rsub_scalar": "s - x",
    "div_scalar": "x / s",
    "rdiv_scalar": "s / x",
    "pow_scalar": "pow_real(x, s)",
}

FLOAT_ONLY = {"div", "exp", "log", "sigmoid", "tanh", "div_scalar", "rdiv_scalar",
              "pow_scalar"}


def _shader_type(dtype: str) -> str:
    # f64 modules are only ever run by the host kernels
    return wgpu_dtypes.wgsl_type(dtype) or "f64"


def _wgsl(bindings, body, limit="params[0]", helpers=""):
    lines = []
    for i, (name, t, access) in enumerate(bindings):
        mode = "read" if access == "read" else "read_write"
        lines.append(f"@group(0) @binding({i}) var<storage, {mode}> {name}: array<{t}>;")
    lines.append(
        f"@group(0) @binding({len(bindings)}) var<storage, read> params: array<u32>;"
    )
    main = Template(_MAIN).substitute(WG=WORKGROUP_SIZE, LIMIT=limit, BODY=body)
    return "\n".join(lines) + "\n" + helpers + main


def _layout_specs(operands: int):
    specs = [("n", "u32"), ("ndim", "u32")]
    specs += [(f"shape{i}", "u32") for i in range(MAX_DIMS)]
    for k in range(operands):
        specs.append((f"offset{k}", "i32"))
        specs += [(f"stride{k}_{i}", "i32") for i in range(MAX_DIMS)]
    return specs


def _scalar_base(operands: int) -> int:
    return 2 + MAX_DIMS + operands * (1 + MAX_DIMS)


def _pack(name, dtypes, wgsl, bindings, params, host):
    requires = ["shader-f64"] if "float64" in dtypes else []
    return pack_module(
        name=name,
        payload=wgsl,
        bindings=[(b_name, dtype, access) for b_name, dtype, access in bindings],
        params=params,
        workgroup_size=WORKGROUP_SIZE,
        requires=requires,
        host_kernel=host,
    )


# ============================================================================
# Module Builders
# ============================================================================

_BUILDERS = {}


def _builder(*names):
    def decorator(fn):
        for name in names:
            _BUILDERS[name] = fn
        return fn
    return decorator


@_builder("fill")
def _build_fill(name, dtype):
    t = _shader_type(dtype)
    body = f"    out[idx] = bitcast<{t}>(params[1]);"
    return _pack(name, (dtype,), _wgsl([("out", t, "read_write")], body),
                 [("out", dtype, "read_write")],
                 [("n", "u32"), ("value", _SCALAR_PARAM[dtype])], "fill")


@_builder("copy")
def _build_copy(name, dtype):
    t = _shader_type(dtype)
    body = "    dst[locate(idx, 15u)] = src[locate(idx, 8u)];"
    wgsl = _wgsl([("src", t, "read"), ("dst", t, "read_write")], body, helpers=_LOCATE)
    return _pack(name, (dtype,), wgsl,
                 [("src", dtype, "read"), ("dst", dtype, "read_write")],
                 _layout_specs(2), "copy")


@_builder("cast")
def _build_cast(name, dtype, out_dtype):
    t, u = _shader_type(dtype), _shader_type(out_dtype)
    body = f"    out[idx] = {u}(src[locate(idx, 8u)]);"
    wgsl = _wgsl([("src", t, "read"), ("out", u, "read_write")], body, helpers=_LOCATE)
    return _pack(name, (dtype, out_dtype), wgsl,
                 [("src", dtype, "read"), ("out", out_dtype, "read_write")],
                 _layout_specs(1), "cast")


@_builder(*BINARY_OPS)
def _build_binary(name, dtype):
    t = _shader_type(dtype)
    expr = Template(BINARY_OPS[name]).substitute(T=t)
    body = (
        "    let a = lhs[locate(idx, 8u)];\n"
        "    let b = rhs[locate(idx, 15u)];\n"
        f"    out[idx] = {expr};"
    )
    bindings = [("lhs", dtype, "read"), ("rhs", dtype, "read"), ("out", dtype, "read_write")]
    wgsl = _wgsl([(b, t, a) for b, _, a in bindings], body, helpers=_LOCATE)
    return _pack(name, (dtype,), wgsl, bindings, _layout_specs(2), f"binary.{name}")


@_builder(*UNARY_OPS)
def _build_unary(name, dtype):
    t = _shader_type(dtype)
    expr = Template(UNARY_OPS[name]).substitute(T=t)
    body = f"    let x = src[locate(idx, 8u)];\n    out[idx] = {expr};"
    wgsl = _wgsl([("src", t, "read"), ("out", t, "read_write")], body, helpers=_LOCATE)
    return _pack(name, (dtype,), wgsl,
                 [("src", dtype, "read"), ("out", dtype, "read_write")],
                 _layout_specs(1), f"unary.{name}")


@_builder(*SCALAR_OPS)
def _build_scalar(name, dtype):
    t = _shader_type(dtype)
    base = _scalar_base(1)
    body = (
        f"    let s = bitcast<{t}>(params[{base}u]);\n"
        "    let x = src[locate(idx, 8u)];\n"
        f"    out[idx] = {SCALAR_OPS[name]};"
    )
    helpers = _LOCATE
    if name == "pow_scalar":
        helpers += Template(_POW_REAL).substitute(T=t)
    wgsl = _wgsl([("src", t, "read"), ("out", t, "read_write")], body, helpers=helpers)
    return _pack(name, (dtype,), wgsl,
                 [("src", dtype, "read"), ("out", dtype, "read_write")],
                 _layout_specs(1) + [("scalar", _SCALAR_PARAM[dtype])], f"scalar.{name}")


@_builder("axpy")
def _build_axpy(name, dtype):
    t = _shader_type(dtype)
    base = _scalar_base(1)
    body = (
        f"    let alpha = bitcast<{t}>(params[{base}u]);\n"
        "    y[idx] = y[idx] + alpha * x[locate(idx, 8u)];"
    )
    wgsl = _wgsl([("x", t, "read"), ("y", t, "read_write")], body, helpers=_LOCATE)
    return _pack(name, (dtype,), wgsl,
                 [("x", dtype, "read"), ("y", dtype, "read_write")],
                 _layout_specs(1) + [("alpha", _SCALAR_PARAM[dtype])], "axpy")


_REDUCE_BODY = {
    "reduce_sum": (
        "    var acc = $T(0);\n"
        "    for (var i = 0u; i < n; i = i + 1u) {\n"
        "        acc = acc + x[row * n + i];\n"
        "    }\n"
    ),
    "reduce_max": (
        "    var acc = x[row * n];\n"
        "    for (var i = 1u; i < n; i = i + 1u) {\n"
        "        acc = max(acc, x[row * n + i]);\n"
        "    }\n"
    ),
}


@_builder(*_REDUCE_BODY)
def _build_reduce(name, dtype):
    t = _shader_type(dtype)
    body = (
        "    let row = idx;\n"
        "    let n = params[1];\n"
        + Template(_REDUCE_BODY[name]).substitute(T=t)
        + "    out[row] = acc;"
    )
    wgsl = _wgsl([("x", t, "read"), ("out", t, "read_write")], body)
    return _pack(name, (dtype,), wgsl,
                 [("x", dtype, "read"), ("out", dtype, "read_write")],
                 [("rows", "u32"), ("n", "u32")], name)


@_builder("matmul")
def _build_matmul(name, dtype):
    t = _shader_type(dtype)
    body = (
        "    let k_dim = params[1];\n"
        "    let n_dim = params[2];\n"
        "    let row = i32(idx / n_dim);\n"
        "    let col = i32(idx % n_dim);\n"
        "    var a_pos = bitcast<i32>(params[3]) + row * bitcast<i32>(params[4]);\n"
        "    var b_pos = bitcast<i32>(params[6]) + col * bitcast<i32>(params[8]);\n"
        "    let a_step = bitcast<i32>(params[5]);\n"
        "    let b_step = bitcast<i32>(params[7]);\n"
        f"    var acc = {t}(0);\n"
        "    for (var k = 0u; k < k_dim; k = k + 1u) {\n"
        "        acc = acc + a[u32(a_pos)] * b[u32(b_pos)];\n"
        "        a_pos = a_pos + a_step;\n"
        "        b_pos = b_pos + b_step;\n"
        "    }\n"
        "    out[idx] = acc;"
    )
    bindings = [("a", dtype, "read"), ("b", dtype, "read"), ("out", dtype, "read_write")]
    wgsl = _wgsl([(b, t, a) for b, _, a in bindings], body, limit="params[0] * params[2]")
    params = [("m", "u32"), ("k", "u32"), ("n", "u32"),
              ("a_offset", "i32"), ("a_stride0", "i32"), ("a_stride1", "i32"),
              ("b_offset", "i32"), ("b_stride0", "i32"), ("b_stride1", "i32")]
    return _pack(name, (dtype,), wgsl, bindings, params, "matmul")


def build_module(name: str, *dtypes) -> bytes:
    """Module container for a built-in kernel instantiated for dtypes."""
    builder = _BUILDERS.get(name)
    if builder is None:
        raise KeyError(f"Unknown built-in kernel {name!r}")
    return builder(name, *(wgpu_dtypes.canonical(d) for d in dtypes))


def get_module(device, name: str, *dtypes) -> KernelModule:
    """Load (once per device) the built-in kernel name for dtypes."""
    key = (name,) + tuple(wgpu_dtypes.canonical(d) for d in dtypes)
    module = device._module_cache.get(key)
    if module is None:
        module = load_module(device, build_module(name, *key[1:]))
        device._module_cache[key] = module
        logger.debug(f"Cached built-in kernel {key} on {device}")
    return module


def collapse_layout(shape: Sequence[int], strides: Sequence[Sequence[int]]):
    """Drop extent-1 dimensions and merge neighbours contiguous in every operand.

    Row-major element order is preserved, so a dense output indexed by the
    flat position needs no strides of its own.
    """
    merged = []
    for i, extent in enumerate(shape):
        if extent == 1:
            continue
        dim = [s[i] for s in strides]
        if merged:
            prev_extent, prev = merged[-1]
            if all(p == d * extent for p, d in zip(prev, dim)):
                merged[-1] = (prev_extent * extent, dim)
                continue
        merged.append((extent, dim))
    return (tuple(extent for extent, _ in merged),
            [tuple(dim[k] for _, dim in merged) for k in range(len(strides))])


def layout_rank(shape: Sequence[int], strides: Sequence[Sequence[int]]) -> int:
    """Dimensions left after collapse_layout."""
    return len(collapse_layout(shape, strides)[0])


def layout_params(shape: Sequence[int], operands: Sequence[Tuple[int, Sequence[int]]]):
    """Pack n, shape and (offset, strides) per operand into kernel parameters."""
    n = int(np.prod(shape, dtype=np.int64))
    shape, strides = collapse_layout(shape, [s for _, s in operands])
    ndim = len(shape)
    if ndim > MAX_DIMS:
        raise ShapeError(f"Kernels support at most {MAX_DIMS} dimensions, got {ndim}")
    params = [n, ndim] + list(shape) + [1] * (MAX_DIMS - ndim)
    for (offset, _), dims in zip(operands, strides):
        params.append(offset)
        params += list(dims) + [0] * (MAX_DIMS - ndim)
    return params


# ============================================================================
# Host Kernels
# ============================================================================

def _operand(flat: np.ndarray, params, base: int) -> np.ndarray:
    """Strided view of operand at params[base] over a flat host array."""
    ndim = params[1]
    shape = params[2:2 + ndim]
    offset = params[base]
    strides = tuple(s * flat.itemsize for s in params[base + 1:base + 1 + ndim])
    return as_strided(flat[offset:], shape=shape, strides=strides,
                      writeable=flat.flags.writeable)


def _dense_out(out: np.ndarray, params) -> np.ndarray:
    return out.reshape(params[2:2 + params[1]])


@register_host_kernel("fill")
def _host_fill(arrays, params, n):
    arrays[0][:n] = params[1]


@register_host_kernel("copy")
def _host_copy(arrays, params, n):
    if n == 0:
        return
    src, dst = arrays
    np.copyto(_operand(dst, params, 15), _operand(src, params, 8))


@register_host_kernel("cast")
def _host_cast(arrays, params, n):
    if n == 0:
        return
    src, out = arrays
    np.copyto(_dense_out(out, params), _operand(src, params, 8), casting="unsafe")


_HOST_BINARY = {
    "add": np.add,
    "sub": np.subtract,
    "mul": np.multiply,
    "div": np.divide,
    "maximum": np.maximum,
    "eq": np.equal,
    "relu_grad": lambda a, b: np.where(a > 0, b, 0),
}

_HOST_UNARY = {
    "neg": np.negative,
    "exp": np.exp,
    "log": np.log,
    "relu": lambda x: np.maximum(x, 0),
    "sigmoid": lambda x: 1 / (1 + np.exp(-x)),
    "tanh": np.tanh,
}

_HOST_SCALAR = {
    "add_scalar": lambda x, s: x + s,
    "mul_scalar": lambda x, s: x * s,
    "rsub_scalar": lambda x, s: s - x,
    "div_scalar": lambda x, s: x / s,
    "rdiv_scalar": lambda x, s: s / x,
    "pow_scalar": np.power,
}


def _register_elementwise(prefix: str, table: Dict, operands: int, scalar: bool):
    for op, fn in table.items():
        def kernel(arrays, params, n, fn=fn):
            if n == 0:
                return
            out = arrays[-1]
            inputs = [_operand(arrays[k], params, 8 + 7 * k) for k in range(operands)]
            if scalar:
                inputs.append(out.dtype.type(params[_scalar_base(operands)]))
            with np.errstate(all="ignore"):
                result = fn(*inputs)
            np.copyto(_dense_out(out, params), result, casting="unsafe")

        register_host_kernel(f"{prefix}.{op}")(kernel)


_register_elementwise("binary", _HOST_BINARY, 2, False)
_register_elementwise("unary", _HOST_UNARY, 1, False)
_register_elementwise("scalar", _HOST_SCALAR, 1, True)


@register_host_kernel("axpy")
def _host_axpy(arrays, params, n):
    if n == 0:
        return
    x, y = arrays
    alpha = y.dtype.type(params[_scalar_base(1)])
    with np.errstate(all="ignore"):
        y[:n] += alpha * _operand(x, params, 8).reshape(-1)


@register_host_kernel("reduce_sum")
def _host_reduce_sum(arrays, params, n):
    x, out = arrays
    rows, width = params
    out[:rows] = x[:rows * width].reshape(rows, width).sum(axis=1, dtype=x.dtype)


@register_host_kernel("reduce_max")
def _host_reduce_max(arrays, params, n):
    x, out = arrays
    rows, width = params
    if rows == 0:
        return
    out[:rows] = x[:rows * width].reshape(rows, width).max(axis=1)


@register_host_kernel("matmul")
def _host_matmul(arrays, params, n):
    a, b, out = arrays
    m, k, cols = params[:3]
    item = a.itemsize
    a_view = as_strided(a[params[3]:], shape=(m, k),
                        strides=(params[4] * item, params[5] * item), writeable=False)
    b_view = as_strided(b[params[6]:], shape=(k, cols),
                        strides=(params[7] * item, params[8] * item), writeable=False)
    np.matmul(a_view, b_view, out=out[:m * cols].reshape(m, cols))
