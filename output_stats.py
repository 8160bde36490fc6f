"""
output_stats.py
---------------
Summary statistics and result records for model output tensors.

Statistics semantics
--------------------
* min / max / sum are taken over the elements that are not NaN.
* mean and the variance are divided by the TOTAL element count, NaNs
  included.  A buffer with NaNs therefore has a mean pulled towards 0.
* An empty buffer yields min=+inf, max=-inf, sum=0, mean=NaN, std=NaN.

Usage
-----
    stats  = output_stats(np.array([1, 2, 3, 4]))
    result = make_result("logits", [1, 4], "float32", buffer)
"""

from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field

import numpy as np

MAX_DATA_SAMPLE = 10_000   # raw values kept per output (memory / export bound)


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------

@dataclass
class OutputStats:
    min:  float
    max:  float
    mean: float
    sum:  float
    std:  float

    def as_dict(self) -> dict[str, float]:
        return asdict(self)


@dataclass
class TensorDescriptor:
    name:           str
    shape:          list[int]
    dtype:          str
    total_elements: int


@dataclass
class InferenceResult:
    descriptor: TensorDescriptor
    stats:      OutputStats
    data:       list = field(default_factory=list)   # sample, len <= MAX_DATA_SAMPLE

    @property
    def name(self) -> str:
        return self.descriptor.name

    @property
    def shape(self) -> list[int]:
        return self.descriptor.shape

    @property
    def dtype(self) -> str:
        return self.descriptor.dtype

    @property
    def total_elements(self) -> int:
        return self.descriptor.total_elements

    @property
    def truncated(self) -> bool:
        return self.total_elements > len(self.data)

    def as_dict(self) -> dict:
        """Field layout used by the JSON export."""
        return {
            "name":          self.name,
            "data":          list(self.data),
            "shape":         list(self.shape),
            "dtype":         self.dtype,
            "stats":         self.stats.as_dict(),
            "totalElements": self.total_elements,
        }


# ---------------------------------------------------------------------------
# Reduction
# ---------------------------------------------------------------------------

def output_stats(data) -> OutputStats:
    """
    Two-pass min/max/sum then variance reduction over a flat buffer.

    *data* may be any array-like; it is flattened and widened to float64
    so int and float outputs accumulate the same way.
    """
    values = np.asarray(data, dtype=np.float64).ravel()
    n      = values.size
    valid  = values[~np.isnan(values)]

    if valid.size:
        lo, hi = float(valid.min()), float(valid.max())
        total  = float(valid.sum())
    else:
        lo, hi, total = math.inf, -math.inf, 0.0

    if n == 0:
        return OutputStats(min=lo, max=hi, mean=math.nan, sum=total, std=math.nan)

    mean = total / n
    with np.errstate(invalid="ignore", over="ignore"):
        variance = float(np.sum((valid - mean) ** 2)) / n
    return OutputStats(min=lo, max=hi, mean=mean, sum=total, std=math.sqrt(variance))


def sample_values(data, cap: int = MAX_DATA_SAMPLE) -> list:
    """The first *cap* values of *data* as plain Python numbers."""
    flat = np.asarray(data).ravel()
    return flat[:cap].tolist()


def make_result(name: str, shape, dtype: str, data,
                cap: int = MAX_DATA_SAMPLE) -> InferenceResult:
    """Reduce one materialized output buffer to an InferenceResult."""
    flat = np.asarray(data).ravel()
    descriptor = TensorDescriptor(
        name           = name,
        shape          = [int(d) for d in shape],
        dtype          = dtype,
        total_elements = int(flat.size),
    )
    return InferenceResult(
        descriptor = descriptor,
        stats      = output_stats(flat),
        data       = sample_values(flat, cap),
    )
