"""Course material uploads: storage layout, filename hygiene and PDF serving."""

import io
from datetime import datetime

import pytest
from werkzeug.datastructures import FileStorage

from edunexia.services import upload_service
from edunexia.services.upload_service import UploadError
from edunexia.validation import NotFoundError


PDF_BYTES = b"%PDF-1.4\n%\xe2\xe3\xcf\xd3\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


def _file(name="Apostila.pdf", content_type="application/pdf", data=PDF_BYTES):
    return FileStorage(stream=io.BytesIO(data), filename=name, content_type=content_type)


class TestSanitizeFilename:

    def test_strips_unsafe_characters(self):
        now = datetime(2024, 1, 5, 10, 30, 0, 123456)
        assert upload_service.sanitize_filename("Apostila #1/Módulo.pdf", now) == (
            "20240105T103000123456-Apostila 1Mdulo.pdf"
        )

    def test_keeps_allowed_punctuation(self):
        now = datetime(2024, 1, 5)
        assert upload_service.sanitize_filename("Aula (1) - intro.pdf", now).endswith("-Aula (1) - intro.pdf")

    @pytest.mark.parametrize("name", [None, "", "###", "../"])
    def test_fallback_name(self, name):
        assert upload_service.sanitize_filename(name).endswith("-arquivo")

    def test_destination(self):
        assert upload_service.destination_for("video/mp4") == "videos"
        assert upload_service.destination_for("application/pdf") == "apostilas"
        assert upload_service.destination_for("") == "apostilas"


class TestSaveUpload:

    def test_pdf_goes_to_apostilas(self, tmp_path):
        info = upload_service.save_upload(_file(), tmp_path / "uploads")
        assert info["originalName"] == "Apostila.pdf"
        assert info["mimetype"] == "application/pdf"
        assert info["size"] == len(PDF_BYTES)
        assert info["path"] == f"uploads/apostilas/{info['filename']}"
        assert (tmp_path / "uploads" / "apostilas" / info["filename"]).read_bytes() == PDF_BYTES

    def test_video_goes_to_videos(self, tmp_path):
        info = upload_service.save_upload(_file("aula.mp4", "video/mp4", b"\x00" * 32), tmp_path)
        assert (tmp_path / "videos" / info["filename"]).exists()

    def test_same_name_never_overwrites(self, tmp_path):
        first = upload_service.save_upload(_file(), tmp_path)
        second = upload_service.save_upload(_file(), tmp_path)
        assert first["filename"] != second["filename"]

    def test_missing_file(self, tmp_path):
        with pytest.raises(UploadError):
            upload_service.save_upload(None, tmp_path)
        with pytest.raises(UploadError):
            upload_service.save_upload(_file(name=""), tmp_path)

    def test_wrong_type(self, tmp_path):
        with pytest.raises(UploadError) as exc:
            upload_service.save_upload(_file("x.exe", "application/octet-stream"), tmp_path)
        assert exc.value.status_code == 400

    def test_too_large(self, tmp_path):
        with pytest.raises(UploadError) as exc:
            upload_service.save_upload(_file(), tmp_path, max_bytes=10)
        assert exc.value.status_code == 413
        assert not (tmp_path / "apostilas").exists()


class TestPdfLookup:

    def test_list_pdfs(self, tmp_path):
        pdf_dir = tmp_path / "apostilas"
        pdf_dir.mkdir()
        (pdf_dir / "b.pdf").write_bytes(PDF_BYTES)
        (pdf_dir / "a.pdf").write_bytes(b"%PDF")
        (pdf_dir / "notes.txt").write_text("skip")

        files = upload_service.list_pdfs(tmp_path, "https://edu.example")
        assert [f["name"] for f in files] == ["a.pdf", "b.pdf"]
        assert files[0]["url"] == "https://edu.example/api/uploads/apostilas/a.pdf"
        assert files[1]["size"] == len(PDF_BYTES)
        assert files[0]["lastModified"].endswith("Z")

    def test_list_without_directory(self, tmp_path):
        assert upload_service.list_pdfs(tmp_path, "http://x") == []

    def test_public_base_url(self):
        assert upload_service.public_base_url("localhost:5000", False) == "http://localhost:5000"
        assert upload_service.public_base_url("internal", True, ["edu.replit.app", "other"]) == "https://edu.replit.app"

    @pytest.mark.parametrize("name", ["../secret.pdf", "sub/x.pdf", "..", "", "x.txt"])
    def test_resolve_rejects(self, tmp_path, name):
        (tmp_path / "apostilas").mkdir()
        with pytest.raises(UploadError):
            upload_service.resolve_pdf_path(tmp_path, name)

    def test_resolve_missing(self, tmp_path):
        with pytest.raises(NotFoundError):
            upload_service.resolve_pdf_path(tmp_path, "nope.pdf")

    def test_resolve_existing(self, tmp_path):
        pdf_dir = tmp_path / "apostilas"
        pdf_dir.mkdir()
        (pdf_dir / "ok.pdf").write_bytes(PDF_BYTES)
        assert upload_service.resolve_pdf_path(tmp_path, "ok.pdf") == (pdf_dir / "ok.pdf").resolve()


class TestUploadRoutes:

    @pytest.fixture
    def upload_root(self, app, tmp_path, monkeypatch):
        monkeypatch.setitem(app.config, "UPLOAD_ROOT", str(tmp_path))
        return tmp_path

    def test_admin_upload_list_and_serve(self, client, admin_headers, upload_root):
        resp = client.post(
            "/api/uploads/pdf",
            data={"pdf": (io.BytesIO(PDF_BYTES), "Aula 1.pdf", "application/pdf")},
            content_type="multipart/form-data",
            headers=admin_headers,
        )
        assert resp.status_code == 201
        stored = resp.get_json()["file"]
        assert stored["originalName"] == "Aula 1.pdf"
        assert (upload_root / "apostilas" / stored["filename"]).exists()

        resp = client.get("/api/uploads/pdfs", headers=admin_headers)
        body = resp.get_json()
        assert body["count"] == 1
        assert body["files"][0]["url"].startswith("http://localhost/api/uploads/apostilas/")

        resp = client.get(f"/api/uploads/apostilas/{stored['filename']}", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.mimetype == "application/pdf"
        assert "inline" in resp.headers.get("Content-Disposition", "inline")
        assert resp.data == PDF_BYTES
        resp.close()

    def test_video_upload(self, client, admin_headers, upload_root):
        resp = client.post(
            "/api/uploads/video",
            data={"video": (io.BytesIO(b"\x00" * 64), "aula.mp4", "video/mp4")},
            content_type="multipart/form-data",
            headers=admin_headers,
        )
        assert resp.status_code == 201
        assert resp.get_json()["file"]["path"].split("/")[1] == "videos"

    def test_pdf_endpoint_rejects_video(self, client, admin_headers, upload_root):
        resp = client.post(
            "/api/uploads/pdf",
            data={"pdf": (io.BytesIO(b"\x00"), "aula.mp4", "video/mp4")},
            content_type="multipart/form-data",
            headers=admin_headers,
        )
        assert resp.status_code == 400

    def test_missing_field(self, client, admin_headers, upload_root):
        resp = client.post("/api/uploads/pdf", data={}, content_type="multipart/form-data", headers=admin_headers)
        assert resp.status_code == 400

    def test_student_can_read_but_not_upload(self, client, student_headers, upload_root):
        resp = client.post(
            "/api/uploads/video",
            data={"video": (io.BytesIO(b"\x00"), "aula.mp4", "video/mp4")},
            content_type="multipart/form-data",
            headers=student_headers,
        )
        assert resp.status_code == 403
        assert client.get("/api/uploads/pdfs", headers=student_headers).status_code == 200

    def test_serve_missing_and_invalid(self, client, student_headers, upload_root):
        assert client.get("/api/uploads/apostilas/missing.pdf", headers=student_headers).status_code == 404
        assert client.get("/api/uploads/apostilas/sub/x.pdf", headers=student_headers).status_code == 400
        assert client.get("/api/uploads/apostilas/notes.txt", headers=student_headers).status_code == 400
