"""
result_export.py
----------------
Two presentations of a finished run's results:

  export_document(results)  -> dict ready for json.dumps (file download)
  render_text(results)      -> condensed plain text (clipboard copy)

Both are pure: they read the result list and never modify it.
"""

from __future__ import annotations

import json
import math
from datetime import datetime, timezone

from output_stats import InferenceResult

COPY_PREVIEW  = 100    # values per output in the text rendering
DEFAULT_MODEL = "GPT-2 LiteRT Model"

GLOSSARY = {
    "outputs":       "Array of model outputs - each represents one output tensor from your model",
    "data":          "The actual numbers/predictions from the model - these are the raw values",
    "shape":         "Dimensions of the tensor (e.g., [1, 64, 50257] means 1 batch, 64 positions, 50257 possible tokens)",
    "dtype":         "Data type: 'float32' for decimal numbers, 'int32' for integers",
    "stats":         "Statistics calculated from the data: min, max, mean, standard deviation, sum",
    "totalElements": "Total number of values in this output tensor",
}


# ── Timestamps ────────────────────────────────────────────────────────────────

def iso_timestamp(now: datetime | None = None) -> str:
    """UTC ISO-8601 with millisecond precision and a trailing Z."""
    now = (now or datetime.now(timezone.utc)).astimezone(timezone.utc)
    return now.strftime("%Y-%m-%dT%H:%M:%S.") + f"{now.microsecond // 1000:03d}Z"


def export_filename(now: datetime | None = None) -> str:
    stamp = iso_timestamp(now).replace(":", "-").replace(".", "-")
    return f"inference_results_{stamp}.json"


# ── JSON document ─────────────────────────────────────────────────────────────

def json_safe(value):
    """NaN / +-inf have no JSON spelling; export them as null."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, dict):
        return {k: json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [json_safe(v) for v in value]
    return value


def export_document(results: list[InferenceResult],
                    model: str = DEFAULT_MODEL,
                    now: datetime | None = None) -> dict:
    return {
        "metadata": {
            "description": "LiteRT Model Inference Results",
            "timestamp":   iso_timestamp(now),
            "model":       model,
            "explanation": (
                "This JSON contains the raw output tensors from your model inference. "
                "Each output includes the tensor data (numbers), shape (dimensions), "
                "data type, and statistics."
            ),
        },
        "outputs":      [json_safe(r.as_dict()) for r in results],
        "what_is_this": dict(GLOSSARY),
    }


def dumps_document(document: dict) -> str:
    return json.dumps(document, indent=2, allow_nan=False)


# ── Condensed text ────────────────────────────────────────────────────────────

def format_number(value) -> str:
    """Print numbers the way the browser page does (1.0 -> '1', nan -> 'NaN')."""
    if isinstance(value, float):
        if math.isnan(value):
            return "NaN"
        if math.isinf(value):
            return "Infinity" if value > 0 else "-Infinity"
        if value.is_integer():
            return str(int(value))
        return repr(value)
    return str(value)


def render_text(results: list[InferenceResult], preview: int = COPY_PREVIEW) -> str:
    blocks = []
    for i, r in enumerate(results):
        values = ", ".join(format_number(v) for v in r.data[:preview])
        more   = "..." if len(r.data) > preview else ""
        blocks.append(
            f"Output {i} ({r.name}):\n"
            f"  Shape: [{', '.join(str(d) for d in r.shape)}]\n"
            f"  Dtype: {r.dtype}\n"
            f"  Data: [{values}{more}]\n"
        )
    return "\n".join(blocks)
