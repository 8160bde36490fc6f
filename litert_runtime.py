"""
litert_runtime.py
-----------------
Thin adapters over the inference runtimes the harness can drive.

    runtime = get_runtime("litert")     # TFLite / LiteRT interpreter
    runtime.load()                      # import + initialize the runtime
    model   = runtime.compile(model_bytes)
    model.input_details()               # [TensorDetails(name, shape, dtype, index)]
    outputs = model.run(TensorHandle(array))

Tensor handles
--------------
Every tensor crossing the adapter boundary is a TensorHandle tagged with the
accelerator it lives on and whether the caller owns it.  Handles the runtime
returns on the default accelerator are *borrowed*; handles produced by
move_to() (a copy onto the default accelerator) are *owned* and must be
released once their data has been copied out.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from errors import InferenceError, ModelLoadError, RuntimeInitError

DEFAULT_ACCELERATOR = "cpu"


@dataclass
class TensorDetails:
    name:  str
    shape: list
    dtype: str
    index: int = 0

    def as_dict(self) -> dict:
        return {"name": self.name, "index": self.index,
                "shape": list(self.shape), "dtype": self.dtype}


# ---------------------------------------------------------------------------
# Tensor handle
# ---------------------------------------------------------------------------

class TensorHandle:
    """
    A runtime value plus its placement and ownership.

    data        : np.ndarray on the default accelerator, or a runtime object
                  exposing .numpy() (e.g. an onnxruntime OrtValue) elsewhere
    accelerator : where the data physically lives
    owned       : True if the holder of this handle must release it
    """

    def __init__(self, data, accelerator: str = DEFAULT_ACCELERATOR, owned: bool = False):
        self.data        = data
        self.accelerator = accelerator
        self.owned       = owned
        self.released    = False

    @classmethod
    def from_array(cls, array: np.ndarray) -> "TensorHandle":
        """Wrap a host buffer created by the caller (so the caller owns it)."""
        return cls(array, DEFAULT_ACCELERATOR, owned=True)

    @property
    def on_default(self) -> bool:
        return self.accelerator == DEFAULT_ACCELERATOR

    def move_to(self, accelerator: str = DEFAULT_ACCELERATOR) -> "TensorHandle":
        """Return a handle on *accelerator*; self if already there, else an owned copy."""
        if self.accelerator == accelerator:
            return self
        if accelerator != DEFAULT_ACCELERATOR:
            raise ValueError(f"Can only move tensors to {DEFAULT_ACCELERATOR!r}")
        if hasattr(self.data, "numpy"):
            host = np.array(self.data.numpy(), copy=True)
        else:
            host = np.array(self.data, copy=True)
        return TensorHandle(host, accelerator, owned=True)

    def to_numpy(self) -> np.ndarray:
        if self.released:
            raise ValueError("Tensor has already been released")
        if not self.on_default:
            raise ValueError(
                f"Tensor lives on {self.accelerator!r}; move_to({DEFAULT_ACCELERATOR!r}) first"
            )
        return np.asarray(self.data)

    def release(self) -> None:
        if not self.owned:
            raise ValueError("Refusing to release a borrowed tensor")
        self.data     = None
        self.released = True


# ---------------------------------------------------------------------------
# TFLite / LiteRT
# ---------------------------------------------------------------------------

class LiteRtModel:
    def __init__(self, interpreter):
        self._interp = interpreter
        self._interp.allocate_tensors()

    @staticmethod
    def _details(raw: list[dict]) -> list[TensorDetails]:
        return [
            TensorDetails(
                name  = d.get("name") or "",
                shape = [int(x) for x in d["shape"]],
                dtype = np.dtype(d["dtype"]).name,
                index = int(d["index"]),
            )
            for d in raw
        ]

    def input_details(self) -> list[TensorDetails]:
        return self._details(self._interp.get_input_details())

    def output_details(self) -> list[TensorDetails]:
        return self._details(self._interp.get_output_details())

    def run(self, inputs: TensorHandle) -> list[TensorHandle]:
        first = self.input_details()[0]
        array = inputs.to_numpy()
        try:
            if list(array.shape) != first.shape:
                self._interp.resize_tensor_input(first.index, list(array.shape))
                self._interp.allocate_tensors()
            self._interp.set_tensor(first.index, array)
            self._interp.invoke()
            # get_tensor returns a copy that lives on the host
            return [TensorHandle(self._interp.get_tensor(d.index))
                    for d in self.output_details()]
        except (RuntimeError, ValueError) as e:
            raise InferenceError(str(e)) from e


class LiteRtRuntime:
    name = "litert"

    def __init__(self, num_threads: int | None = None):
        self.num_threads  = num_threads
        self._interpreter = None
        self.version      = None

    @property
    def loaded(self) -> bool:
        return self._interpreter is not None

    def load(self) -> str:
        try:
            import tensorflow as tf
        except ImportError as e:
            raise RuntimeInitError(
                f"TFLite interpreter unavailable ({e}). Install with: pip install tensorflow"
            ) from e
        self._interpreter = tf.lite.Interpreter
        self.version      = tf.__version__
        return f"TensorFlow Lite {self.version}"

    def compile(self, model_bytes: bytes) -> LiteRtModel:
        if not self.loaded:
            raise RuntimeInitError("Runtime not initialized")
        try:
            interp = self._interpreter(model_content=bytes(model_bytes),
                                       num_threads=self.num_threads)
            return LiteRtModel(interp)
        except (RuntimeError, ValueError) as e:
            raise ModelLoadError(str(e)) from e


# ---------------------------------------------------------------------------
# ONNX Runtime
# ---------------------------------------------------------------------------

_ORT_TYPES = {
    "tensor(float)":   "float32",
    "tensor(double)":  "float64",
    "tensor(float16)": "float16",
    "tensor(int32)":   "int32",
    "tensor(int64)":   "int64",
    "tensor(int8)":    "int8",
    "tensor(uint8)":   "uint8",
    "tensor(bool)":    "bool",
}


class OnnxModel:
    """
    Outputs stay on the execution provider's device when it is not the CPU
    (bound through IO binding), so the session has to move them.
    """

    def __init__(self, session, device: str = DEFAULT_ACCELERATOR):
        self._session = session
        self.device   = device

    @staticmethod
    def _details(args) -> list[TensorDetails]:
        return [
            TensorDetails(
                name  = a.name,
                shape = list(a.shape),
                dtype = _ORT_TYPES.get(a.type, a.type),
                index = i,
            )
            for i, a in enumerate(args)
        ]

    def input_details(self) -> list[TensorDetails]:
        return self._details(self._session.get_inputs())

    def output_details(self) -> list[TensorDetails]:
        return self._details(self._session.get_outputs())

    def run(self, inputs: TensorHandle) -> list[TensorHandle]:
        name  = self._session.get_inputs()[0].name
        array = inputs.to_numpy()
        try:
            if self.device == DEFAULT_ACCELERATOR:
                outs = self._session.run(None, {name: array})
                return [TensorHandle(o) for o in outs]

            binding = self._session.io_binding()
            binding.bind_cpu_input(name, array)
            for o in self._session.get_outputs():
                binding.bind_output(o.name, self.device)
            self._session.run_with_iobinding(binding)
            return [TensorHandle(v, self.device) for v in binding.get_outputs()]
        except Exception as e:
            raise InferenceError(str(e)) from e


class OnnxRuntime:
    name = "onnx"

    def __init__(self, providers: list[str] | None = None):
        self.providers = providers
        self._ort      = None
        self.version   = None

    @property
    def loaded(self) -> bool:
        return self._ort is not None

    def load(self) -> str:
        try:
            import onnxruntime as ort
        except ImportError as e:
            raise RuntimeInitError(
                f"onnxruntime unavailable ({e}). Install with: pip install onnxruntime"
            ) from e
        self._ort    = ort
        self.version = ort.__version__
        if self.providers is None:
            self.providers = ["CPUExecutionProvider"]
        return f"ONNX Runtime {self.version} ({', '.join(self.providers)})"

    def compile(self, model_bytes: bytes) -> OnnxModel:
        if not self.loaded:
            raise RuntimeInitError("Runtime not initialized")
        try:
            sess = self._ort.InferenceSession(bytes(model_bytes), providers=self.providers)
        except Exception as e:
            raise ModelLoadError(str(e)) from e
        device = "cuda" if sess.get_providers()[0] == "CUDAExecutionProvider" else DEFAULT_ACCELERATOR
        return OnnxModel(sess, device)


RUNTIMES = {
    LiteRtRuntime.name: LiteRtRuntime,
    OnnxRuntime.name:   OnnxRuntime,
}


def get_runtime(name: str, **kwargs):
    try:
        cls = RUNTIMES[name]
    except KeyError:
        raise ValueError(f"Unknown backend {name!r}; choose from {sorted(RUNTIMES)}") from None
    return cls(**kwargs)
