# Overview: Service-layer operations for uploads; filename sanitizing, storage layout and PDF lookup.

"""
Upload Storage

LAYOUT (under UPLOAD_ROOT):
- apostilas/  course handout PDFs (anything whose mimetype is not a video)
- videos/     video lessons (mimetype contains "video")

FILENAMES: characters outside [a-zA-Z0-9. \\-()] are removed and the
result is prefixed with a UTC timestamp, so two uploads of the same name
never overwrite each other.

SECURITY: served filenames must be plain basenames that resolve inside
the apostilas directory.
"""
from __future__ import annotations

import os
import re
from datetime import datetime, timezone
from pathlib import Path

from werkzeug.datastructures import FileStorage

from ..validation import NotFoundError
from edunexia.time_utils import to_utc_z, utcnow


PDF_MIMETYPES = {"application/pdf"}
VIDEO_MIMETYPES = {"video/mp4", "video/webm", "video/quicktime"}
ALLOWED_MIMETYPES = PDF_MIMETYPES | VIDEO_MIMETYPES

MAX_UPLOAD_BYTES = 100 * 1024 * 1024

PDF_DIR = "apostilas"
VIDEO_DIR = "videos"

_UNSAFE_CHARS = re.compile(r"[^a-zA-Z0-9. \-()]")


class UploadError(Exception):
    """Rejected upload; status_code is 400 or 413."""

    def __init__(self, message: str, status_code: int = 400):
        super().__init__(message)
        self.status_code = status_code


def sanitize_filename(name: str | None, now: datetime | None = None) -> str:
    """
    Safe, collision-resistant storage name.

    "Apostila #1/Módulo.pdf" -> "20240105T103000123456-Apostila 1Mdulo.pdf"
    """
    cleaned = _UNSAFE_CHARS.sub("", name or "").strip().lstrip(".")
    if not cleaned:
        cleaned = "arquivo"
    stamp = (now or utcnow()).strftime("%Y%m%dT%H%M%S%f")
    return f"{stamp}-{cleaned}"


def destination_for(mimetype: str) -> str:
    """Subdirectory for a mimetype: videos/ for any video, apostilas/ otherwise."""
    return VIDEO_DIR if "video" in (mimetype or "") else PDF_DIR


def _stream_size(file: FileStorage) -> int:
    stream = file.stream
    position = stream.tell()
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(position)
    return size


def save_upload(
    file: FileStorage | None,
    upload_root: str | os.PathLike,
    allowed_mimetypes: set[str] = ALLOWED_MIMETYPES,
    max_bytes: int = MAX_UPLOAD_BYTES,
) -> dict:
    """
    Validate and store an uploaded file.

    Returns originalName, filename, mimetype, size and path (relative to the
    upload root's parent, with forward slashes, e.g. "uploads/apostilas/x.pdf").
    """
    if file is None or not file.filename:
        raise UploadError("No file was uploaded")

    mimetype = (file.mimetype or "").lower()
    if mimetype not in allowed_mimetypes:
        kinds = ", ".join(sorted(allowed_mimetypes))
        raise UploadError(f"Unsupported file type '{mimetype or 'unknown'}'; allowed: {kinds}")

    size = _stream_size(file)
    if size > max_bytes:
        raise UploadError(f"File exceeds the {max_bytes // (1024 * 1024)}MB limit", status_code=413)

    root = Path(upload_root)
    subdir = destination_for(mimetype)
    target_dir = root / subdir
    target_dir.mkdir(parents=True, exist_ok=True)

    filename = sanitize_filename(file.filename)
    target = target_dir / filename
    file.save(str(target))

    return {
        "originalName": file.filename,
        "filename": filename,
        "mimetype": mimetype,
        "size": size,
        "path": f"{root.name}/{subdir}/{filename}",
    }


def public_base_url(request_host: str, is_production: bool, domains: list[str] | None = None) -> str:
    """https in production, http otherwise; first REPLIT_DOMAINS entry wins over the request host."""
    scheme = "https" if is_production else "http"
    host = domains[0] if domains else request_host
    return f"{scheme}://{host}"


def list_pdfs(upload_root: str | os.PathLike, base_url: str) -> list[dict]:
    """PDFs in apostilas/, sorted by name. A missing directory yields an empty list."""
    pdf_dir = Path(upload_root) / PDF_DIR
    if not pdf_dir.is_dir():
        return []

    files = []
    for entry in sorted(pdf_dir.iterdir(), key=lambda p: p.name):
        if not entry.is_file() or not entry.name.lower().endswith(".pdf"):
            continue
        stats = entry.stat()
        files.append({
            "name": entry.name,
            "size": stats.st_size,
            "lastModified": to_utc_z(datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc)),
            "url": f"{base_url}/api/uploads/{PDF_DIR}/{entry.name}",
        })
    return files


def resolve_pdf_path(upload_root: str | os.PathLike, filename: str) -> Path:
    """
    Absolute path of a stored PDF.

    Raises UploadError for traversal attempts or non-PDF names, NotFoundError when missing.
    """
    if not filename or filename != os.path.basename(filename) or filename in (".", ".."):
        raise UploadError("Invalid filename")
    if not filename.lower().endswith(".pdf"):
        raise UploadError("Only PDF files are served here")

    pdf_dir = (Path(upload_root) / PDF_DIR).resolve()
    path = (pdf_dir / filename).resolve()
    if path.parent != pdf_dir:
        raise UploadError("Invalid filename")
    if not path.is_file():
        raise NotFoundError("PDF not found")
    return path
