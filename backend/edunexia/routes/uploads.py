# Overview: Flask API routes for course material uploads and PDF serving.

# backend/edunexia/routes/uploads.py
"""
Upload routes.

- POST /pdf, /video: admin only, multipart field "pdf" / "video"
- GET /pdfs: stored handouts with public URLs
- GET /apostilas/<filename>: serve one handout inline

SECURITY: stored names are sanitized and timestamped; served names are
checked against path traversal before touching the filesystem.
"""

from pathlib import Path

from flask import Blueprint, request, jsonify, current_app, send_file
from werkzeug.exceptions import RequestEntityTooLarge

from ..services import upload_service
from ..services.upload_service import UploadError
from ..decorators import require_auth, require_admin
from ..validation import NotFoundError

uploads_bp = Blueprint("uploads", __name__, url_prefix="/api/uploads")


def upload_root() -> Path:
    """UPLOAD_ROOT, relative paths resolved against the backend directory."""
    root = Path(current_app.config["UPLOAD_ROOT"])
    if not root.is_absolute():
        root = Path(current_app.root_path).parent / root
    return root


def _store(field: str, allowed_mimetypes: set[str]):
    try:
        file = request.files.get(field)
        info = upload_service.save_upload(
            file,
            upload_root(),
            allowed_mimetypes=allowed_mimetypes,
            max_bytes=current_app.config.get("MAX_CONTENT_LENGTH") or upload_service.MAX_UPLOAD_BYTES,
        )
    except RequestEntityTooLarge:
        return jsonify({"error": "File exceeds the upload size limit"}), 413
    except UploadError as e:
        return jsonify({"error": str(e)}), e.status_code
    except OSError:
        current_app.logger.exception("Failed to store upload")
        return jsonify({"error": "Internal server error"}), 500

    current_app.logger.info("Stored upload %s (%d bytes)", info["path"], info["size"])
    return jsonify({"message": "File uploaded", "file": info}), 201


@uploads_bp.post("/pdf")
@require_auth
@require_admin
def upload_pdf():
    return _store("pdf", upload_service.PDF_MIMETYPES)


@uploads_bp.post("/video")
@require_auth
@require_admin
def upload_video():
    return _store("video", upload_service.VIDEO_MIMETYPES)


@uploads_bp.get("/pdfs")
@require_auth
def list_pdfs():
    base_url = upload_service.public_base_url(
        request.host,
        current_app.config.get("IS_PRODUCTION", False),
        current_app.config.get("REPLIT_DOMAINS") or [],
    )
    files = upload_service.list_pdfs(upload_root(), base_url)
    return jsonify({"files": files, "count": len(files)})


@uploads_bp.get("/apostilas/<path:filename>")
@require_auth
def serve_pdf(filename: str):
    """Serve a stored PDF inline (browser viewer, not a download)."""
    try:
        path = upload_service.resolve_pdf_path(upload_root(), filename)
    except UploadError as e:
        return jsonify({"error": str(e)}), e.status_code
    except NotFoundError as e:
        return jsonify({"error": str(e)}), 404

    return send_file(
        path,
        mimetype="application/pdf",
        as_attachment=False,
        download_name=path.name,
    )
