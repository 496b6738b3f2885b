"""Product Studio Shot: Flask web application."""

from __future__ import annotations

import hmac
import logging
import os
from typing import Dict, List

from dotenv import load_dotenv
from flask import Flask, jsonify, request
from flask_cors import CORS

load_dotenv()

import log_setup
log_setup.configure()

import db
import model_registry
import studio_core
import vendors

log = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# App setup
# ---------------------------------------------------------------------------

app = Flask(__name__)
CORS(app)

db.init_db()

ADMIN_LOG_LIMIT = 50


def _error(message: str, status: int):
    return jsonify({"error": message}), status


# ---------------------------------------------------------------------------
# Routes: generation
# ---------------------------------------------------------------------------

@app.post("/api/generate")
def api_generate():
    upload = request.files.get("image")
    image_bytes = upload.read() if upload else None

    pipeline = studio_core.StudioPipeline(
        title=request.form.get("title", ""),
        image_bytes=image_bytes,
        mime=upload.mimetype if upload else None,
        user_concept=request.form.get("concept", ""),
        engine_config=request.form.get("engineConfig"),
    )

    try:
        result = pipeline.run()
    except studio_core.PipelineError as exc:
        log.warning("Generate rejected (%d): %s", exc.status, exc)
        return _error(str(exc), exc.status)
    except vendors.VendorError as exc:
        return _error(str(exc), 500)
    except Exception as exc:
        log.exception("Generate failed unexpectedly")
        return _error(str(exc) or "unknown error", 500)

    return jsonify({
        "concept_used": result["concept_used"],
        "image_base64": result["image_base64"],
    })


# ---------------------------------------------------------------------------
# Routes: settings UI support
# ---------------------------------------------------------------------------

@app.get("/api/providers")
def api_providers():
    return jsonify(studio_core.provider_availability())


@app.get("/api/models")
def api_models():
    payload = model_registry.catalog()
    payload["providers"] = studio_core.provider_availability()
    return jsonify(payload)


# ---------------------------------------------------------------------------
# Routes: admin
# ---------------------------------------------------------------------------

def _admin_ok() -> bool:
    admin_key = os.environ.get("ADMIN_KEY", "")
    supplied = request.args.get("key", "")
    return bool(admin_key) and hmac.compare_digest(supplied, admin_key)


def _summarise(row: Dict) -> Dict:
    items: List[Dict] = row.get("line_items") or []
    stage_costs: Dict[str, float] = {}
    for it in items:
        stage = it.get("stage") or "UNKNOWN"
        stage_costs[stage] = round(stage_costs.get(stage, 0.0) + (it.get("cost_usd") or 0.0), 6)
    row["total_tokens"] = sum(it.get("total_tokens") or 0 for it in items)
    row["stage_costs"] = stage_costs
    return row


@app.get("/api/admin/logs")
def api_admin_logs():
    if not _admin_ok():
        return _error("a valid admin key is required", 401)
    rows = db.list_request_logs(limit=ADMIN_LOG_LIMIT)
    return jsonify([_summarise(r) for r in rows])


@app.get("/api/admin/logs/<request_id>")
def api_admin_log(request_id: str):
    if not _admin_ok():
        return _error("a valid admin key is required", 401)
    row = db.get_request_log(request_id)
    if not row:
        return _error("Not found", 404)
    return jsonify(_summarise(row))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

if __name__ == "__main__":
    port = int(os.environ.get("PORT", 5000))
    print(f"\n  Product Studio Shot → http://localhost:{port}\n")
    app.run(host="0.0.0.0", port=port, debug=False, threaded=True)
