"""
browser_demo/app.py
Flask server for the LiteRT inference harness.

Serves the harness page and the LiteRT runtime support files (wasm + js
loaders), and exposes one inference session over a small JSON API that the
page drives button by button.

API
---
GET  /                   → harness page
GET  /wasm/<name>        → runtime support file (COOP/COEP headers set)
GET  /api/session        → { state, status, log, model, busy, has_results }
POST /api/runtime        → initialize the runtime
POST /api/model          → multipart "model" file; load + compile
POST /api/run            → synthesize input, run once, reduce outputs
GET  /api/results.json   → JSON export (attachment, timestamped name)
GET  /api/results.txt    → condensed text for the clipboard
POST /api/copied         → { ok, error } outcome of the page's clipboard write

Usage:
    python browser_demo/app.py
    python browser_demo/app.py --backend onnx --port 3000
    python browser_demo/app.py --wasm-dir node_modules/@litertjs/core/wasm
    # then open http://localhost:3000 in your browser
"""

import sys
from pathlib import Path

# Allow importing the harness modules from the parent directory
REPO = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(REPO))

import argparse
import logging

from flask import Flask, Response, jsonify, request, send_from_directory
from werkzeug.security import safe_join

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
    UnsupportedDtypeError,
)
from inference_session import InferenceSession, SessionState
from litert_runtime import RUNTIMES, get_runtime
from result_export import dumps_document, json_safe

# -- Config -------------------------------------------------------------------

STATIC          = Path(__file__).parent / "static"
WASM_DIR        = REPO / "node_modules/@litertjs/core/wasm"
HOST            = "0.0.0.0"
PORT            = 3000
DEFAULT_BACKEND = "litert"

ISOLATION_HEADERS = {
    "Cross-Origin-Embedder-Policy": "require-corp",
    "Cross-Origin-Opener-Policy":   "same-origin",
}

CONTENT_TYPES = {
    ".wasm": "application/wasm",
    ".js":   "application/javascript",
}

ERROR_STATUS = {
    SessionBusyError:       409,
    InvalidTransitionError: 409,
    ModelNotLoadedError:    409,
    NoResultsError:         409,
    ModelLoadError:         400,
    UnsupportedDtypeError:  400,
    MissingInputError:      400,
    RuntimeInitError:       500,
    InferenceError:         500,
    ClipboardError:         500,
}


def content_type_for(name: str) -> str:
    return CONTENT_TYPES.get(Path(name).suffix, "application/octet-stream")


def _result_summary(result) -> dict:
    """Result record without the raw sample (the export carries that)."""
    d = result.as_dict()
    d.pop("data")
    d["sampled"] = len(result.data)
    return json_safe(d)


# -- App ----------------------------------------------------------------------

def create_app(
    wasm_dir:   Path = WASM_DIR,
    static_dir: Path = STATIC,
    session:    InferenceSession | None = None,
    backend:    str  = DEFAULT_BACKEND,
) -> Flask:
    app = Flask(__name__, static_folder=str(static_dir))
    app.config["WASM_DIR"] = Path(wasm_dir)
    session = session or InferenceSession(get_runtime(backend))
    app.extensions["inference_session"] = session

    @app.errorhandler(HarnessError)
    def harness_error(e: HarnessError):
        code = ERROR_STATUS.get(type(e), 500)
        return jsonify(error=str(e), status=session.status, state=session.state.value), code

    @app.get("/")
    def index():
        return send_from_directory(str(static_dir), "index.html")

    # ── Runtime support files ────────────────────────────────────────────────

    @app.get("/wasm/")
    def wasm_missing_name():
        return Response("File name required", status=400, mimetype="text/plain")

    @app.get("/wasm/<path:name>")
    def wasm_file(name: str):
        root = app.config["WASM_DIR"]
        path = safe_join(str(root), name)
        if path is None or not Path(path).is_file():
            return Response("File not found", status=404, mimetype="text/plain")
        try:
            data = Path(path).read_bytes()
        except OSError as e:
            app.logger.error("Failed to read %s: %s", path, e)
            return Response(f"Error: {e}", status=500, mimetype="text/plain")
        return Response(data, mimetype=content_type_for(name), headers=ISOLATION_HEADERS)

    # ── Session API ──────────────────────────────────────────────────────────

    @app.get("/api/session")
    def api_session():
        return jsonify(session.snapshot())

    @app.post("/api/runtime")
    def api_runtime():
        if session.state is SessionState.IDLE:
            session.init_runtime()
        return jsonify(session.snapshot())

    @app.post("/api/model")
    def api_model():
        upload = request.files.get("model")
        if upload is None or not upload.filename:
            return jsonify(error="No model file uploaded", status=session.status,
                           state=session.state.value), 400
        session.load_model(upload.read(), upload.filename)
        return jsonify(session.snapshot())

    @app.post("/api/run")
    def api_run():
        results = session.run()
        return jsonify(results=[_result_summary(r) for r in results], **session.snapshot())

    @app.get("/api/results.json")
    def api_results_json():
        filename, doc = session.export_document()
        return Response(
            dumps_document(doc),
            mimetype="application/json",
            headers={"Content-Disposition": f'attachment; filename="{filename}"'},
        )

    @app.get("/api/results.txt")
    def api_results_txt():
        return Response(session.summary_text(), mimetype="text/plain")

    @app.post("/api/copied")
    def api_copied():
        body = request.get_json(silent=True) or {}
        if body.get("ok", False):
            session.record_copy()
        else:
            session.record_copy(error=str(body.get("error") or "unknown error"))
        return jsonify(session.snapshot())

    return app


if __name__ == "__main__":
    p = argparse.ArgumentParser()
    p.add_argument("--host",     default=HOST)
    p.add_argument("--port",     type=int, default=PORT)
    p.add_argument("--wasm-dir", default=str(WASM_DIR),
                   help="Directory holding the LiteRT wasm / js runtime files")
    p.add_argument("--backend",  default=DEFAULT_BACKEND, choices=sorted(RUNTIMES))
    args = p.parse_args()

    logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(message)s",
                        datefmt="%H:%M:%S")

    app = create_app(wasm_dir=Path(args.wasm_dir), backend=args.backend)
    print(f"Wasm dir : {Path(args.wasm_dir).resolve()}")
    print(f"Backend  : {args.backend}")
    print(f"Server running at http://localhost:{args.port}")
    print("Open your browser to run LiteRT inference")
    app.run(host=args.host, port=args.port, debug=False)
