"""
errors.py
---------
Error taxonomy for the inference harness.  Every step of an inference
session raises one of these; the session reports it (status line + log)
before re-raising so callers can map it to an HTTP status or exit code.
"""

from __future__ import annotations


class HarnessError(Exception):
    """Base class for every error the harness reports to the user."""


# ── Session step failures ─────────────────────────────────────────────────────

class RuntimeInitError(HarnessError):
    """The inference runtime could not be initialized."""


class ModelLoadError(HarnessError):
    """The runtime rejected the model bytes or failed to compile them."""


class UnsupportedDtypeError(HarnessError):
    def __init__(self, dtype: str):
        super().__init__(f"Unsupported input dtype: {dtype}")
        self.dtype = dtype


class MissingInputError(HarnessError):
    def __init__(self, message: str = "Model has no input details"):
        super().__init__(message)


class InferenceError(HarnessError):
    """The runtime failed while executing the model."""


class ClipboardError(HarnessError):
    """Writing the condensed results to the clipboard sink failed."""


# ── Control misuse ────────────────────────────────────────────────────────────

class ModelNotLoadedError(HarnessError):
    def __init__(self, message: str = "No model loaded. Please upload a model first."):
        super().__init__(message)


class NoResultsError(HarnessError):
    def __init__(self, message: str = "No inference results available yet."):
        super().__init__(message)


class SessionBusyError(HarnessError):
    def __init__(self, message: str = "An inference run is already in progress."):
        super().__init__(message)


class InvalidTransitionError(HarnessError):
    def __init__(self, current, target):
        super().__init__(f"Cannot go from {current.value!r} to {target.value!r}")
        self.current = current
        self.target  = target
