#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: RFP Studio
# CUI Category: PROPIN
# Distribution: D
# POC: RFP Studio System Administrator
"""RFP Studio API — Flask JSON surface over the document pipeline.

Routes:
    /api/health                                        — Health check
    /api/proposals                                     — List (seeding the first) / create (POST)
    /api/proposals/<id>                                — Delete (DELETE)
    /api/proposals/<id>/subtasks/<key>/complete        — Complete a checklist entry (POST)
    /api/proposals/<id>/upload-rfp                     — RFP upload (POST multipart: rfpFile, last_modified)
    /api/proposals/<id>/upload-organization            — Organization upload (POST multipart: orgFile)
    /api/proposals/<id>/refresh                        — Re-run the analysis (POST)
    /api/proposals/<id>/artifacts/<name>               — Artifact content (GET) / manual edit (PUT)
    /api/proposals/<id>/artifacts/<name>/download      — File download
    /api/proposals/<id>/generate-document              — Render the response .docx (POST JSON: variables)

The caller's identity arrives in the X-Owner-Id header (X-Owner-Name is an
optional display name); authentication happens upstream.

Usage:
    python -m rfpstudio.dashboard.app [--port 5001] [--debug]
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from dotenv import load_dotenv
from flask import Flask, jsonify, request, send_file
from werkzeug.exceptions import HTTPException, RequestEntityTooLarge
from werkzeug.utils import secure_filename

BASE_DIR = Path(__file__).resolve().parent.parent.parent

# ── Load .env file if present (development convenience) ──────────────────────
_env_path = BASE_DIR / ".env"
if _env_path.exists():
    load_dotenv(_env_path, override=False)  # override=False: real env vars win

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger("rfpstudio")

DB_PATH = Path(os.environ.get(
    "RFPSTUDIO_DB_PATH", str(BASE_DIR / "data" / "rfpstudio.db")
))
OUTPUT_DIR = Path(os.environ.get(
    "RFPSTUDIO_OUTPUT_DIR", str(BASE_DIR / "data" / "generated")
))
UPLOAD_DIR = Path(os.environ.get(
    "RFPSTUDIO_UPLOAD_DIR", str(BASE_DIR / "data" / "uploads")
))
MAX_UPLOAD_MB = int(os.environ.get("RFPSTUDIO_MAX_UPLOAD_MB", "10"))

ALLOWED_SUFFIXES = {".pdf", ".doc", ".docx", ".txt", ".md", ".rtf"}

from rfpstudio.proposal import proposal_service  # noqa: E402
from rfpstudio.proposal.artifact_store import ArtifactNotFoundError, ArtifactStore  # noqa: E402
from rfpstudio.proposal.document_pipeline import DocumentPipeline  # noqa: E402
from rfpstudio.proposal.proposal_service import (  # noqa: E402
    ProposalNotFoundError, ProposalValidationError, StaleProposalError,
)
from rfpstudio.rfx.analysis_engine import AllModelsFailedError, LLMUnavailableError  # noqa: E402
from rfpstudio.rfx.document_renderer import MissingVariablesError  # noqa: E402

# =========================================================================
# APP SETUP
# =========================================================================
app = Flask(__name__)
app.secret_key = os.environ.get("RFPSTUDIO_SECRET", "dev-secret-change-in-prod")
app.config["MAX_CONTENT_LENGTH"] = MAX_UPLOAD_MB * 1024 * 1024

_API_KEY = os.environ.get("RFPSTUDIO_API_KEY", "").strip()

# Lazy pipeline (router + providers are built on first use)
_pipeline = None


def _get_pipeline() -> DocumentPipeline:
    global _pipeline
    if _pipeline is None:
        from rfpstudio.llm.router import LLMRouter
        _pipeline = DocumentPipeline.from_router(
            LLMRouter(), store=ArtifactStore(OUTPUT_DIR), db_path=DB_PATH,
        )
    return _pipeline


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _owner():
    owner_id = request.headers.get("X-Owner-Id", "").strip()
    username = request.headers.get("X-Owner-Name", "").strip() or owner_id
    return owner_id, username


# =========================================================================
# ERROR HANDLERS
# =========================================================================
@app.errorhandler(ProposalNotFoundError)
@app.errorhandler(ArtifactNotFoundError)
def _not_found(e):
    return jsonify({"error": str(e)}), 404


@app.errorhandler(MissingVariablesError)
def _missing_variables(e):
    return jsonify({
        "error": str(e),
        "missingVariable": e.first,
        "totalMissing": e.total,
    }), 400


@app.errorhandler(ProposalValidationError)
@app.errorhandler(ValueError)
def _bad_request(e):
    return jsonify({"error": str(e)}), 400


@app.errorhandler(StaleProposalError)
def _conflict(e):
    return jsonify({"error": str(e)}), 409


@app.errorhandler(LLMUnavailableError)
def _llm_unavailable(e):
    body = {"error": str(e)}
    if isinstance(e, AllModelsFailedError):
        body["attemptedModels"] = e.attempted
    return jsonify(body), 503


@app.errorhandler(RequestEntityTooLarge)
def _too_large(e):
    return jsonify({"error": f"File too large. Maximum upload size is {MAX_UPLOAD_MB} MB."}), 413


@app.errorhandler(HTTPException)
def _http_error(e):
    return jsonify({"error": e.description or e.name}), e.code


@app.errorhandler(500)
def internal_server_error(e):
    logger.error("500 Internal Server Error: %s", e)
    return jsonify({"error": "Internal server error"}), 500


# =========================================================================
# AUTH (before_request)
# =========================================================================
@app.before_request
def _before_request():
    path = request.path
    if not path.startswith("/api/") or path == "/api/health":
        return None

    # ── Optional API key auth for /api/* routes ──────────────────────────
    if _API_KEY:
        provided = request.headers.get("X-Api-Key", "") or request.args.get("api_key", "")
        if provided != _API_KEY:
            return jsonify({"error": "Unauthorized. Provide X-Api-Key header."}), 401

    if not request.headers.get("X-Owner-Id", "").strip():
        return jsonify({"error": "Missing X-Owner-Id header."}), 401
    return None


# =========================================================================
# ROUTES
# =========================================================================
@app.route("/api/health")
def health():
    """Health check endpoint."""
    return jsonify({
        "status": "healthy",
        "service": "rfpstudio-api",
        "db_path": str(DB_PATH),
        "timestamp": _now(),
    })


@app.route("/api/proposals", methods=["GET"])
def api_list_proposals():
    owner_id, username = _owner()
    proposals = proposal_service.ensure_seed_proposals(owner_id, username, db_path=DB_PATH)
    return jsonify({"proposals": proposals})


@app.route("/api/proposals", methods=["POST"])
def api_create_proposal():
    owner_id, username = _owner()
    body = request.get_json(silent=True) or {}
    proposal = proposal_service.create_proposal(owner_id, username, body.get("name", ""),
                                                db_path=DB_PATH)
    return jsonify({"proposal": proposal}), 201


@app.route("/api/proposals/<proposal_id>", methods=["DELETE"])
def api_delete_proposal(proposal_id):
    owner_id, _ = _owner()
    return jsonify(_get_pipeline().delete_proposal(owner_id, proposal_id))


@app.route("/api/proposals/<proposal_id>/subtasks/<task_key>/complete", methods=["POST"])
def api_complete_subtask(proposal_id, task_key):
    owner_id, _ = _owner()
    proposal = proposal_service.complete_subtask(owner_id, proposal_id, task_key,
                                                 db_path=DB_PATH)
    return jsonify({"proposal": proposal})


# ── uploads ──────────────────────────────────────────────────────────────────

def _save_upload(field: str):
    """Spool a multipart file to UPLOAD_DIR. Returns (path, original_name, modified_at)."""
    if field not in request.files or not request.files[field].filename:
        raise ProposalValidationError("No file uploaded")
    f = request.files[field]
    original_name = f.filename
    if Path(original_name).suffix.lower() not in ALLOWED_SUFFIXES:
        raise ProposalValidationError("Only PDF, Word, TXT, Markdown, and RTF files are allowed")

    modified_at = None
    raw_ms = request.form.get("last_modified", "").strip()
    if raw_ms:
        try:
            modified_at = datetime.fromtimestamp(int(raw_ms) / 1000.0, tz=timezone.utc)
        except (ValueError, OverflowError, OSError):
            logger.info("Ignoring unparseable last_modified=%r", raw_ms)

    UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
    safe = secure_filename(original_name) or "upload"
    path = UPLOAD_DIR / f"{uuid.uuid4().hex}-{safe}"
    f.save(str(path))
    return path, original_name, modified_at


@app.route("/api/proposals/<proposal_id>/upload-rfp", methods=["POST"])
def api_upload_rfp(proposal_id):
    owner_id, _ = _owner()
    path, original_name, modified_at = _save_upload("rfpFile")
    result = _get_pipeline().process_document(
        owner_id, proposal_id, path, original_name,
        media_type=request.files["rfpFile"].mimetype or "",
        modified_at=modified_at,
    )
    return jsonify({
        "success": True,
        "proposal": result["proposal"],
        "analysis": result["analysis"],
        "artifacts": result["artifacts"],
        "fromCache": result["from_cache"],
    })


@app.route("/api/proposals/<proposal_id>/upload-organization", methods=["POST"])
def api_upload_organization(proposal_id):
    owner_id, _ = _owner()
    path, original_name, modified_at = _save_upload("orgFile")
    result = _get_pipeline().process_organization_document(
        owner_id, proposal_id, path, original_name,
        media_type=request.files["orgFile"].mimetype or "",
        modified_at=modified_at,
    )
    return jsonify({
        "success": True,
        "proposal": result["proposal"],
        "organizationAnalysis": result["organization_analysis"],
        "mapping": result["mapping"],
        "artifacts": result["artifacts"],
    })


@app.route("/api/proposals/<proposal_id>/refresh", methods=["POST"])
def api_refresh(proposal_id):
    owner_id, _ = _owner()
    result = _get_pipeline().refresh_analysis(owner_id, proposal_id)
    return jsonify({"success": True, **result})


# ── artifacts ────────────────────────────────────────────────────────────────

@app.route("/api/proposals/<proposal_id>/artifacts/<name>", methods=["GET"])
def api_get_artifact(proposal_id, name):
    owner_id, _ = _owner()
    return jsonify(_get_pipeline().get_artifact_content(proposal_id, name, owner_id=owner_id))


@app.route("/api/proposals/<proposal_id>/artifacts/<name>", methods=["PUT"])
def api_update_artifact(proposal_id, name):
    owner_id, _ = _owner()
    body = request.get_json(silent=True) or {}
    if "content" not in body:
        raise ProposalValidationError("Content is required")
    result = _get_pipeline().update_artifact_content(proposal_id, name, body["content"],
                                                     owner_id=owner_id)
    return jsonify({"success": True, **result})


@app.route("/api/proposals/<proposal_id>/artifacts/<name>/download")
def api_download_artifact(proposal_id, name):
    owner_id, _ = _owner()
    path = _get_pipeline().artifact_path(proposal_id, name, owner_id=owner_id)
    return send_file(str(path), as_attachment=True, download_name=name)


@app.route("/api/proposals/<proposal_id>/generate-document", methods=["POST"])
def api_generate_document(proposal_id):
    owner_id, _ = _owner()
    body = request.get_json(silent=True) or {}
    result = _get_pipeline().generate_response_document(owner_id, proposal_id,
                                                        body.get("variables"))
    return jsonify({
        "success": True,
        "fileName": result["file_name"],
        "artifact": result["artifact"],
        "downloadUrl": f"/api/proposals/{proposal_id}/artifacts/{result['file_name']}/download",
    })


if __name__ == "__main__":
    import argparse

    from rfpstudio.db.init_db import init_db

    parser = argparse.ArgumentParser(description="RFP Studio API")
    parser.add_argument("--port", type=int, default=5001)
    parser.add_argument("--debug", action="store_true")
    parser.add_argument("--host", default="127.0.0.1")
    args = parser.parse_args()

    init_db(str(DB_PATH))
    print(f"RFP Studio API starting on http://{args.host}:{args.port}")
    print(f"Database: {DB_PATH}")
    print(f"Artifacts: {OUTPUT_DIR}")
    app.run(host=args.host, port=args.port, debug=args.debug)
