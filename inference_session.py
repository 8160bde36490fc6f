"""
inference_session.py
--------------------
One user's inference session: runtime, compiled model, last results and the
status / log panes the page shows.

Lifecycle
---------
    IDLE -> RUNTIME_LOADING -> RUNTIME_READY -> MODEL_LOADING -> MODEL_READY
         -> INPUT_PREPARED -> INFERRING -> OUTPUTS_READY -> RESULTS_EXPORTED

Every public method is one user command.  A failing command reports the
error (status line, "ERROR: ..." log line, logger.error), drops back to
the nearest stable state and re-raises.  Nothing is retried.

Usage
-----
    session = InferenceSession(get_runtime("litert"))
    session.init_runtime()
    session.load_model(Path("gpt2.tflite").read_bytes(), "gpt2.tflite")
    results = session.run()
    path    = session.download_results(Path("."))
"""

from __future__ import annotations

import json
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path

from codetiming import Timer

from errors import (
    ClipboardError,
    HarnessError,
    InferenceError,
    InvalidTransitionError,
    MissingInputError,
    ModelLoadError,
    ModelNotLoadedError,
    NoResultsError,
    RuntimeInitError,
    SessionBusyError,
)
from input_synthesis import synthesize_input
from litert_runtime import DEFAULT_ACCELERATOR, TensorHandle
from output_stats import MAX_DATA_SAMPLE, InferenceResult, make_result
from result_export import (
    DEFAULT_MODEL,
    dumps_document,
    export_document,
    export_filename,
    format_number,
    render_text,
)

logger = logging.getLogger(__name__)

LOG_PREVIEW = 10   # values echoed to the log per output


class SessionState(str, Enum):
    IDLE             = "idle"
    RUNTIME_LOADING  = "runtime_loading"
    RUNTIME_READY    = "runtime_ready"
    MODEL_LOADING    = "model_loading"
    MODEL_READY      = "model_ready"
    INPUT_PREPARED   = "input_prepared"
    INFERRING        = "inferring"
    OUTPUTS_READY    = "outputs_ready"
    RESULTS_EXPORTED = "results_exported"


S = SessionState

# Forward moves a command may make.  Failure fallbacks are not listed here.
TRANSITIONS: dict[SessionState, frozenset[SessionState]] = {
    S.IDLE:             frozenset({S.RUNTIME_LOADING}),
    S.RUNTIME_LOADING:  frozenset({S.RUNTIME_READY}),
    S.RUNTIME_READY:    frozenset({S.MODEL_LOADING}),
    S.MODEL_LOADING:    frozenset({S.MODEL_READY}),
    S.MODEL_READY:      frozenset({S.MODEL_LOADING, S.INPUT_PREPARED}),
    S.INPUT_PREPARED:   frozenset({S.INFERRING}),
    S.INFERRING:        frozenset({S.OUTPUTS_READY}),
    S.OUTPUTS_READY:    frozenset({S.RESULTS_EXPORTED, S.MODEL_LOADING, S.INPUT_PREPARED}),
    S.RESULTS_EXPORTED: frozenset({S.RESULTS_EXPORTED, S.MODEL_LOADING, S.INPUT_PREPARED}),
}


def _fmt_shape(shape) -> str:
    return "[" + ", ".join(str(d) for d in shape) + "]"


class InferenceSession:
    """
    Parameters
    ----------
    runtime    : adapter from litert_runtime (anything with load() / compile())
    sample_cap : raw values stored per output
    """

    def __init__(self, runtime, sample_cap: int = MAX_DATA_SAMPLE):
        self.runtime      = runtime
        self.sample_cap   = sample_cap
        self.state        = S.IDLE
        self.status       = "Idle"
        self.log_lines:   list[str] = []
        self.model        = None
        self.model_name:  str | None = None
        self.last_results: list[InferenceResult] | None = None
        self._run_guard   = threading.Lock()

    # ------------------------------------------------------------------
    # State / reporting helpers
    # ------------------------------------------------------------------

    def can(self, target: SessionState) -> bool:
        return target in TRANSITIONS[self.state]

    def _transition(self, target: SessionState) -> None:
        if not self.can(target):
            raise InvalidTransitionError(self.state, target)
        logger.debug("session %s -> %s", self.state.value, target.value)
        self.state = target

    def log(self, message: str) -> None:
        stamp = datetime.now().strftime("%H:%M:%S")
        self.log_lines.append(f"[{stamp}] {message}")
        logger.info(message)

    def _report(self, err: Exception, fallback: SessionState, prefix: str) -> None:
        self.status = f"{prefix}: {err}"
        self.log(f"ERROR: {err}")
        logger.error("%s", err, exc_info=err)
        self.state = fallback

    @contextmanager
    def _step(self, fallback: SessionState, wrap: type[HarnessError], prefix: str = "Error"):
        """Catch at the step boundary, report, fall back, re-raise."""
        try:
            yield
        except HarnessError as e:
            self._report(e, fallback, prefix)
            raise
        except Exception as e:
            err = wrap(str(e))
            self._report(err, fallback, prefix)
            raise err from e

    @property
    def busy(self) -> bool:
        return self._run_guard.locked()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def init_runtime(self) -> None:
        self._transition(S.RUNTIME_LOADING)
        self.status = "Loading runtime..."
        with self._step(S.IDLE, RuntimeInitError):
            description = self.runtime.load()
            self._transition(S.RUNTIME_READY)
            self.log(f"{description} initialized successfully")
            self.status = "Ready. Upload a .tflite model file to begin."

    def load_model(self, model_bytes: bytes, name: str = "model.tflite") -> None:
        if not self._run_guard.acquire(blocking=False):
            raise SessionBusyError()
        try:
            self._load_model_locked(model_bytes, name)
        finally:
            self._run_guard.release()

    def _load_model_locked(self, model_bytes: bytes, name: str) -> None:
        fallback = S.MODEL_READY if self.model is not None else S.RUNTIME_READY
        self._transition(S.MODEL_LOADING)

        size_kb = f"{len(model_bytes) / 1024:.2f} KB"
        self.status = f"Loading model: {name} ({size_kb})"
        self.log(f"Loading model: {name} ({size_kb})")

        with self._step(fallback, ModelLoadError, prefix="Error loading model"):
            timer = Timer(name="compile", logger=None)
            with timer:
                model = self.runtime.compile(model_bytes)

            self.model        = model
            self.model_name   = name
            self.last_results = None
            self._transition(S.MODEL_READY)
            self.log(f"Model loaded successfully ({timer.last * 1000:.1f} ms)")

            inputs  = [d.as_dict() for d in model.input_details()]
            outputs = [d.as_dict() for d in model.output_details()]
            self.log(f"Input details: {json.dumps(inputs, indent=2)}")
            self.log(f"Output details: {json.dumps(outputs, indent=2)}")
            self.status = "Model ready. Click Run Inference to execute."

    def prepare_input(self) -> TensorHandle:
        details = self.model.input_details()
        if not details:
            raise MissingInputError()
        first = details[0]
        array = synthesize_input(first.shape, first.dtype)
        self.log(f"Creating input tensor with dtype: {first.dtype}, "
                 f"shape: {_fmt_shape(array.shape)}")
        return TensorHandle.from_array(array)

    def run(self) -> list[InferenceResult]:
        if self.model is None:
            err = ModelNotLoadedError()
            self.log(f"ERROR: {err}")
            raise err
        if not self._run_guard.acquire(blocking=False):
            raise SessionBusyError()
        try:
            if not self.can(S.INPUT_PREPARED):
                raise InvalidTransitionError(self.state, S.INPUT_PREPARED)
            with self._step(S.MODEL_READY, InferenceError):
                return self._run_locked()
        finally:
            self._run_guard.release()

    def _run_locked(self) -> list[InferenceResult]:
        self.last_results = None
        self.status = "Preparing input tensor..."
        input_tensor = self.prepare_input()
        self._transition(S.INPUT_PREPARED)

        try:
            self._transition(S.INFERRING)
            self.status = "Running inference..."
            self.log("Running model inference...")
            timer = Timer(name="inference", logger=None)
            with timer:
                outputs = self.model.run(input_tensor)
            details = self.model.output_details()
            self.log(f"Got {len(outputs)} output(s) in {timer.last * 1000:.1f} ms")

            results: list[InferenceResult] = []
            for i, out in enumerate(outputs):
                if out is None:
                    continue
                results.append(self._collect_output(i, out, details))
        finally:
            input_tensor.release()

        self.last_results = results
        self._transition(S.OUTPUTS_READY)
        self.status = "Inference complete. Results available for download."
        return results

    def _collect_output(self, i: int, out: TensorHandle, details) -> InferenceResult:
        host = out.move_to(DEFAULT_ACCELERATOR)
        try:
            data = host.to_numpy()
            name = details[i].name if i < len(details) and details[i].name else f"output_{i}"
            result = make_result(name, data.shape, data.dtype.name, data, cap=self.sample_cap)
        finally:
            # only copies made by move_to() belong to us
            if host.owned:
                host.release()

        st = result.stats
        n  = result.total_elements
        first = ", ".join(format_number(v) for v in result.data[:LOG_PREVIEW])
        self.log(f"Output {i} ({name}):")
        self.log(f"  Shape: {_fmt_shape(result.shape)}")
        self.log(f"  Dtype: {result.dtype}")
        self.log(f"  Stats: min={st.min:.4f}, max={st.max:.4f}, "
                 f"mean={st.mean:.4f}, std={st.std:.4f}")
        self.log(f"  First {LOG_PREVIEW} values: [{first}...]")
        suffix = f" (stored sample of {self.sample_cap})" if n > self.sample_cap else ""
        self.log(f"  Total elements: {n}{suffix}")
        return result

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def _require_results(self) -> list[InferenceResult]:
        if self.last_results is None:
            raise NoResultsError()
        return self.last_results

    def export_document(self, now: datetime | None = None) -> tuple[str, dict]:
        """(file name, JSON document) for the current results."""
        results = self._require_results()
        self._transition(S.RESULTS_EXPORTED)
        now = now or datetime.now(timezone.utc)
        doc = export_document(results, model=self.model_name or DEFAULT_MODEL, now=now)
        self.log("Results downloaded as JSON with metadata")
        self.log("JSON contains: model outputs, tensor data, shapes, statistics, and explanations")
        return export_filename(now), doc

    def download_results(self, out_dir: Path, now: datetime | None = None) -> Path:
        filename, doc = self.export_document(now)
        out_dir = Path(out_dir)
        out_dir.mkdir(parents=True, exist_ok=True)
        path = out_dir / filename
        path.write_text(dumps_document(doc))
        return path

    def summary_text(self) -> str:
        return render_text(self._require_results())

    def copy_results(self, sink) -> str:
        """Render the condensed text and hand it to *sink* (the clipboard)."""
        text = self.summary_text()
        try:
            sink(text)
        except Exception as e:
            self.record_copy(error=str(e))
        self.record_copy()
        return text

    def record_copy(self, error: str | None = None) -> None:
        """
        Record the outcome of a clipboard write done elsewhere (the page
        writes with navigator.clipboard and reports back).
        """
        self._require_results()
        if error is not None:
            err = ClipboardError(f"Failed to copy to clipboard: {error}")
            self._report(err, self.state, prefix="Error")
            raise err
        self._transition(S.RESULTS_EXPORTED)
        self.log("Results copied to clipboard!")

    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        return {
            "state":       self.state.value,
            "status":      self.status,
            "log":         list(self.log_lines),
            "model":       self.model_name,
            "busy":        self.busy,
            "has_results": self.last_results is not None,
        }
