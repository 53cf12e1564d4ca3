"""Element types understood by buffers, kernels and tensors."""

import numpy as np

# name -> (numpy dtype, WGSL scalar type or None when WGSL has no equivalent)
_DTYPES = {
    "float32": (np.dtype(np.float32), "f32"),
    "float64": (np.dtype(np.float64), None),
    "int32": (np.dtype(np.int32), "i32"),
    "uint32": (np.dtype(np.uint32), "u32"),
}

_ALIASES = {
    "f32": "float32",
    "f64": "float64",
    "i32": "int32",
    "u32": "uint32",
}

FLOAT_DTYPES = ("float32", "float64")
ALL_DTYPES = tuple(_DTYPES)


def canonical(dtype) -> str:
    """Normalize a dtype spec (name, alias, numpy dtype) to its canonical name.

    Raises:
        TypeError: if the element type is not supported.
    """
    if isinstance(dtype, str):
        name = _ALIASES.get(dtype, dtype)
        if name in _DTYPES:
            return name
    else:
        try:
            np_dtype = np.dtype(dtype)
        except TypeError:
            np_dtype = None
        if np_dtype is not None:
            for name, (candidate, _) in _DTYPES.items():
                if candidate == np_dtype:
                    return name
    raise TypeError(f"Unsupported element type: {dtype!r}")


def numpy_dtype(dtype) -> np.dtype:
    return _DTYPES[canonical(dtype)][0]


def itemsize(dtype) -> int:
    return numpy_dtype(dtype).itemsize


def wgsl_type(dtype):
    """WGSL scalar type for dtype, or None if shaders cannot express it."""
    return _DTYPES[canonical(dtype)][1]


def is_float(dtype) -> bool:
    return canonical(dtype) in FLOAT_DTYPES


def from_numpy(np_dtype) -> str:
    """Map a host array dtype to the element type used on device.

    float64 data is kept as float64 (the CPU device stores it); int64 is
    narrowed to int32 since no device stores 64-bit ints.
    """
    np_dtype = np.dtype(np_dtype)
    if np_dtype == np.int64:
        return "int32"
    if np_dtype == np.bool_:
        return "uint32"
    return canonical(np_dtype)
