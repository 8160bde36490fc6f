import json
import threading

import numpy as np
import pytest

from errors import (
    ClipboardError,
    InferenceError,
    InvalidTransitionError,
    MissingInputError,
    ModelLoadError,
    ModelNotLoadedError,
    NoResultsError,
    RuntimeInitError,
    SessionBusyError,
    UnsupportedDtypeError,
)
from fakes import FakeModel, FakeRuntime, float_model
from inference_session import InferenceSession, SessionState
from litert_runtime import TensorDetails, TensorHandle


def ready_session(model, **kwargs) -> InferenceSession:
    session = InferenceSession(FakeRuntime(model), **kwargs)
    session.init_runtime()
    session.load_model(b"\x00" * 2048, "gpt2.tflite")
    return session


def test_end_to_end_float32():
    model = float_model()
    session = ready_session(model)
    assert session.state is SessionState.MODEL_READY

    results = session.run()

    assert model.run_inputs[0].tolist() == [[0.5, 0.5, 0.5, 0.5]]
    assert session.state is SessionState.OUTPUTS_READY
    assert session.last_results is results
    st = results[0].stats
    assert (st.min, st.max, st.mean, st.sum) == (1, 4, 2.5, 10)
    assert st.std == pytest.approx(1.118, abs=1e-3)
    assert results[0].name == "out0"
    assert results[0].shape == [1, 4]
    assert session.status == "Inference complete. Results available for download."


def test_int32_input_is_zero():
    model = FakeModel([TensorDetails("ids", [1, 8], "int32")],
                      [(np.zeros(3, dtype=np.float32), "cpu")])
    ready_session(model).run()
    assert model.run_inputs[0].dtype == np.int32
    assert not model.run_inputs[0].any()


def test_log_lines():
    session = ready_session(float_model())
    session.run()
    text = "\n".join(session.log_lines)
    assert "Loading model: gpt2.tflite (2.00 KB)" in text
    assert "Input details:" in text
    assert "Creating input tensor with dtype: float32, shape: [1, 4]" in text
    assert "Stats: min=1.0000, max=4.0000, mean=2.5000, std=1.1180" in text
    assert all(line.startswith("[") for line in session.log_lines)


def test_unsupported_dtype_aborts_before_runtime():
    model = FakeModel([TensorDetails("ids", [1, 8], "int64")], [])
    session = ready_session(model)
    with pytest.raises(UnsupportedDtypeError):
        session.run()
    assert model.run_inputs == []
    assert session.state is SessionState.MODEL_READY
    assert session.status == "Error: Unsupported input dtype: int64"
    assert session.log_lines[-1].endswith("ERROR: Unsupported input dtype: int64")
    assert not session.busy


def test_missing_input_descriptor():
    session = ready_session(FakeModel([], []))
    with pytest.raises(MissingInputError):
        session.run()
    assert session.state is SessionState.MODEL_READY


def test_inference_failure_is_wrapped_and_run_control_reenabled():
    session = ready_session(float_model(error=RuntimeError("kernel exploded")))
    with pytest.raises(InferenceError, match="kernel exploded") as exc:
        session.run()
    assert isinstance(exc.value.__cause__, RuntimeError)
    assert session.state is SessionState.MODEL_READY
    assert session.last_results is None
    assert not session.busy


def test_runtime_init_failure_returns_to_idle():
    session = InferenceSession(FakeRuntime(load_error=OSError("no wasm")))
    with pytest.raises(RuntimeInitError, match="no wasm"):
        session.init_runtime()
    assert session.state is SessionState.IDLE
    assert session.status == "Error: no wasm"


def test_model_load_failure_falls_back():
    runtime = FakeRuntime(float_model(), compile_error=ValueError("bad flatbuffer"))
    session = InferenceSession(runtime)
    session.init_runtime()
    with pytest.raises(ModelLoadError):
        session.load_model(b"junk", "junk.bin")
    assert session.state is SessionState.RUNTIME_READY
    assert session.status == "Error loading model: bad flatbuffer"
    assert session.model is None


def test_model_load_failure_keeps_previous_model():
    model = float_model()
    runtime = FakeRuntime(model)
    session = InferenceSession(runtime)
    session.init_runtime()
    session.load_model(b"good", "good.tflite")
    runtime.compile_error = ValueError("bad flatbuffer")
    with pytest.raises(ModelLoadError):
        session.load_model(b"junk", "junk.bin")
    assert session.state is SessionState.MODEL_READY
    assert session.model is model
    assert session.model_name == "good.tflite"


def test_commands_out_of_order():
    session = InferenceSession(FakeRuntime(float_model()))
    with pytest.raises(InvalidTransitionError):
        session.load_model(b"x")
    with pytest.raises(ModelNotLoadedError):
        session.run()
    with pytest.raises(NoResultsError):
        session.export_document()
    session.init_runtime()
    with pytest.raises(InvalidTransitionError):
        session.init_runtime()


def test_overlapping_run_is_refused():
    session = ready_session(float_model())
    gate = threading.Event()
    release = threading.Event()

    def slow_run(inputs):
        gate.set()
        release.wait(5)
        return [TensorHandle(np.ones(2))]

    session.model.run = slow_run
    worker = threading.Thread(target=session.run)
    worker.start()
    assert gate.wait(5)
    try:
        assert session.busy
        with pytest.raises(SessionBusyError):
            session.run()
        with pytest.raises(SessionBusyError):
            session.load_model(b"other")
    finally:
        release.set()
        worker.join(5)
    assert session.state is SessionState.OUTPUTS_READY


def test_only_copied_outputs_are_released(monkeypatch):
    outputs = [
        (np.array([1.0, 2.0], dtype=np.float32), "cpu"),
        (np.array([5.0, 6.0], dtype=np.float32), "gpu"),
    ]
    model = float_model(outputs=outputs)
    session = ready_session(model)

    released = []
    original = TensorHandle.release

    def spy(self):
        released.append(self)
        original(self)

    monkeypatch.setattr(TensorHandle, "release", spy)
    results = session.run()

    resident, on_device = model.last_handles
    assert not resident.released
    assert not on_device.released
    assert resident not in released and on_device not in released
    # the synthesized input plus the host copy of the device output
    assert len(released) == 2
    assert all(h.owned for h in released)
    assert results[1].data == [5.0, 6.0]


def test_results_replaced_each_run():
    session = ready_session(float_model())
    first = session.run()
    second = session.run()
    assert second is not first
    assert session.last_results is second


def test_missing_output_names_get_placeholders():
    model = float_model(outputs=[(np.ones(2), "cpu"), (np.ones(3), "cpu")], names=[""])
    results = ready_session(model).run()
    assert [r.name for r in results] == ["output_0", "output_1"]


def test_large_output_is_sampled():
    big = np.arange(25_000, dtype=np.float32)
    session = ready_session(float_model(outputs=[(big, "cpu")]))
    r = session.run()[0]
    assert r.total_elements == 25_000
    assert len(r.data) == 10_000
    assert r.data == big[:10_000].tolist()
    assert any("(stored sample of 10000)" in line for line in session.log_lines)


def test_download_results(tmp_path):
    session = ready_session(float_model())
    session.run()
    path = session.download_results(tmp_path)
    assert path.name.startswith("inference_results_")
    doc = json.loads(path.read_text())
    assert doc["metadata"]["model"] == "gpt2.tflite"
    assert doc["outputs"][0]["data"] == [1, 2, 3, 4]
    assert session.state is SessionState.RESULTS_EXPORTED
    # exporting again and re-running stay legal
    session.export_document()
    session.run()
    assert session.state is SessionState.OUTPUTS_READY


def test_copy_results():
    session = ready_session(float_model())
    session.run()
    copied = []
    text = session.copy_results(copied.append)
    assert copied == [text]
    assert text.startswith("Output 0 (out0):")
    assert session.log_lines[-1].endswith("Results copied to clipboard!")


def test_clipboard_failure_is_reported():
    session = ready_session(float_model())
    session.run()

    def broken(_text):
        raise PermissionError("denied")

    with pytest.raises(ClipboardError, match="denied"):
        session.copy_results(broken)
    assert session.state is SessionState.OUTPUTS_READY
    assert "ERROR: Failed to copy to clipboard: denied" in session.log_lines[-1]


def test_new_model_discards_results():
    session = ready_session(float_model())
    session.run()
    session.load_model(b"again", "again.tflite")
    assert session.last_results is None
    assert session.snapshot()["has_results"] is False


def test_run_refused_while_model_is_loading():
    model = float_model()
    runtime = FakeRuntime(model)
    session = InferenceSession(runtime)
    session.init_runtime()
    session.load_model(b"first", "first.tflite")

    compiling = threading.Event()
    release = threading.Event()

    def slow_compile(model_bytes):
        compiling.set()
        release.wait(5)
        return model

    runtime.compile = slow_compile
    worker = threading.Thread(target=session.load_model, args=(b"second", "second.tflite"))
    worker.start()
    assert compiling.wait(5)
    try:
        assert session.state is SessionState.MODEL_LOADING
        with pytest.raises(SessionBusyError):
            session.run()
        assert session.state is SessionState.MODEL_LOADING
    finally:
        release.set()
        worker.join(5)
    assert session.state is SessionState.MODEL_READY
    assert session.model_name == "second.tflite"


def test_logged_values_match_text_rendering():
    session = ready_session(float_model())
    session.run()
    assert any(line.endswith("First 10 values: [1, 2, 3, 4...]") for line in session.log_lines)


def test_record_copy_outcomes():
    session = ready_session(float_model())
    session.run()
    with pytest.raises(ClipboardError):
        session.record_copy(error="NotAllowedError")
    assert session.status == "Error: Failed to copy to clipboard: NotAllowedError"
    assert session.state is SessionState.OUTPUTS_READY
    session.record_copy()
    assert session.state is SessionState.RESULTS_EXPORTED
