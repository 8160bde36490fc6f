"""
input_synthesis.py
Build a deterministic input buffer for a model's first declared input.

    int32   -> all zeros   (token ids for a GPT-2 style model)
    float32 -> all 0.5

Anything else is rejected before the runtime ever sees it.
"""

from __future__ import annotations

import numpy as np

from errors import UnsupportedDtypeError

FILL_VALUES = {
    "int32":   0,
    "float32": 0.5,
}


def concrete_shape(shape) -> list[int]:
    """Replace dynamic dims (None, -1, symbolic names) with 1."""
    dims = []
    for d in shape:
        if isinstance(d, (int, np.integer)) and d >= 0:
            dims.append(int(d))
        else:
            dims.append(1)
    return dims


def synthesize_input(shape, dtype: str) -> np.ndarray:
    if dtype not in FILL_VALUES:
        raise UnsupportedDtypeError(dtype)
    dims = concrete_shape(shape)
    return np.full(dims, FILL_VALUES[dtype], dtype=np.dtype(dtype))
