"""
run_inference.py
Headless version of the browser harness: one session, one model, one run.

Initializes the runtime, compiles MODEL, feeds it a synthetic input
(int32 -> zeros, float32 -> 0.5), reduces every output tensor to
min/max/mean/std/sum and writes the timestamped JSON export.

Usage:
    python run_inference.py gpt2.tflite
    python run_inference.py gpt2.tflite --out results/ --summary -
    python run_inference.py model.onnx --backend onnx --summary summary.txt
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

from errors import HarnessError
from inference_session import InferenceSession
from litert_runtime import RUNTIMES, get_runtime
from output_stats import MAX_DATA_SAMPLE


def make_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Run one inference pass over a model file.")
    ap.add_argument("model", type=Path, help="Path to a .tflite (or .onnx) model")
    ap.add_argument("--backend", default="litert", choices=sorted(RUNTIMES))
    ap.add_argument("--out", type=Path, default=Path("."),
                    help="Directory for the JSON export")
    ap.add_argument("--summary", default=None,
                    help="Also write the condensed text summary to this path ('-' = stdout)")
    ap.add_argument("--sample-cap", type=int, default=MAX_DATA_SAMPLE)
    ap.add_argument("-v", "--verbose", action="store_true")
    return ap


def _summary_sink(target: str):
    if target == "-":
        return sys.stdout.write
    return Path(target).write_text


def main(argv=None, runtime=None) -> int:
    args = make_parser().parse_args(argv)
    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO,
                        format="%(asctime)s - %(message)s", datefmt="%H:%M:%S")

    if not args.model.exists():
        print(f"Model not found: {args.model}")
        return 2

    session = InferenceSession(runtime or get_runtime(args.backend),
                               sample_cap=args.sample_cap)
    try:
        session.init_runtime()
        session.load_model(args.model.read_bytes(), args.model.name)
        results = session.run()
        path = session.download_results(args.out)
        if args.summary:
            session.copy_results(_summary_sink(args.summary))
    except HarnessError as e:
        print(f"{session.status}")
        print(f"Failed in state {session.state.value!r}: {e}")
        return 1

    print(f"\n{len(results)} output(s)")
    for i, r in enumerate(results):
        st = r.stats
        print(f"  [{i}] {r.name:<24} shape={r.shape}  dtype={r.dtype}  "
              f"min={st.min:.4f}  max={st.max:.4f}  mean={st.mean:.4f}  std={st.std:.4f}")
    print(f"\nSaved to {path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
