"""Tests for attachment validation, naming, storage and the upload endpoint."""
import asyncio
from urllib.parse import urlparse

import pytest

from taskchat.files import service as service_module
from taskchat.files.schemas import UploadedFile, is_allowed_type
from taskchat.files.service import (
    AttachmentService,
    NoAcceptedFiles,
    SizeLimitExceeded,
    TooManyFiles,
    UnsupportedAttachmentType,
    sanitize_filename,
)

DOCX = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def stored_files(service):
    return sorted(p.name for p in service.upload_dir.iterdir())


# =============================================================================
# Type rules
# =============================================================================


class TestAllowedTypes:

    @pytest.mark.parametrize("mime_type, filename", [
        ("image/png", "a.png"),
        ("image/jpeg", "a.jpg"),
        ("image/svg+xml", "logo.svg"),
        ("application/pdf", "doc.pdf"),
        ("application/msword", "old.doc"),
        (DOCX, "new.docx"),
        ("application/vnd.ms-excel", "sheet.xls"),
        ("application/vnd.ms-powerpoint", "deck.ppt"),
        ("text/plain", "notes.txt"),
        ("application/zip", "bundle.zip"),
        ("application/x-rar-compressed", "bundle.rar"),
        ("application/octet-stream", "report.docx"),
        ("application/octet-stream", "REPORT.XLSX"),
        ("", "slides.pptx"),
    ])
    def test_allowed(self, mime_type, filename):
        assert is_allowed_type(mime_type, filename) is True

    @pytest.mark.parametrize("mime_type, filename", [
        ("application/octet-stream", "setup.exe"),
        ("application/octet-stream", "archive.zip"),
        ("application/octet-stream", "no_extension"),
        ("application/x-msdownload", "setup.exe"),
        ("text/html", "page.html"),
        ("video/mp4", "clip.mp4"),
        ("application/pdfx", "doc.pdf"),
    ])
    def test_rejected(self, mime_type, filename):
        assert is_allowed_type(mime_type, filename) is False


class TestSanitize:

    def test_strips_unsafe_characters(self):
        assert sanitize_filename("my report (v2).docx") == "myreportv2.docx"

    def test_keeps_safe_characters(self):
        assert sanitize_filename("a-b_c.1.txt") == "a-b_c.1.txt"

    def test_path_separators_removed(self):
        assert sanitize_filename("../../etc/passwd") == "....etcpasswd"

    def test_non_ascii_removed(self):
        assert sanitize_filename("résumé.pdf") == "rsum.pdf"


# =============================================================================
# AttachmentService
# =============================================================================


class TestAttachmentService:

    def test_accept_stores_file_and_returns_metadata(self, upload_service):
        upload = UploadedFile.from_bytes("my report.pdf", b"%PDF-1.4", "application/pdf")

        [attachment] = asyncio.run(upload_service.accept([upload]))

        assert attachment.name == "my report.pdf"
        assert attachment.type == "application/pdf"
        assert attachment.size == 8
        assert attachment.url.startswith("http://testserver/uploads/")
        storage_name = attachment.url.rsplit("/", 1)[1]
        assert storage_name.endswith("-myreport.pdf")
        assert (upload_service.upload_dir / storage_name).read_bytes() == b"%PDF-1.4"

    def test_identical_names_get_distinct_storage_names(self, upload_service):
        uploads = [
            UploadedFile.from_bytes("same.txt", b"one", "text/plain"),
            UploadedFile.from_bytes("same.txt", b"two", "text/plain"),
        ]
        first = asyncio.run(upload_service.accept(uploads))
        second = asyncio.run(upload_service.accept(uploads[:1]))

        urls = {a.url for a in first + second}
        assert len(urls) == 3
        assert len(stored_files(upload_service)) == 3

    def test_storage_name_falls_back_when_nothing_survives(self, upload_service):
        name = upload_service.storage_name("日本語")
        assert name.endswith("-file")

    def test_too_many_files_persists_nothing(self, upload_service):
        uploads = [
            UploadedFile.from_bytes(f"f{i}.txt", b"x", "text/plain") for i in range(6)
        ]
        with pytest.raises(TooManyFiles):
            asyncio.run(upload_service.accept(uploads))
        assert stored_files(upload_service) == []

    def test_five_files_accepted(self, upload_service):
        uploads = [
            UploadedFile.from_bytes(f"f{i}.txt", b"x", "text/plain") for i in range(5)
        ]
        assert len(asyncio.run(upload_service.accept(uploads))) == 5

    def test_no_files(self, upload_service):
        with pytest.raises(NoAcceptedFiles):
            asyncio.run(upload_service.accept([]))

    def test_unsupported_type_rejects_whole_batch(self, upload_service):
        uploads = [
            UploadedFile.from_bytes("ok.png", b"png", "image/png"),
            UploadedFile.from_bytes("setup.exe", b"MZ", "application/octet-stream"),
        ]
        with pytest.raises(UnsupportedAttachmentType) as exc_info:
            asyncio.run(upload_service.accept(uploads))

        assert exc_info.value.mime_type == "application/octet-stream"
        assert exc_info.value.filename == "setup.exe"
        assert "setup.exe" in str(exc_info.value)
        assert stored_files(upload_service) == []

    def test_size_limit(self, tmp_path):
        service = AttachmentService(
            upload_dir=str(tmp_path / "small"),
            base_url="http://testserver",
            max_file_size_bytes=4,
        )
        with pytest.raises(SizeLimitExceeded):
            asyncio.run(service.accept([UploadedFile.from_bytes("big.txt", b"12345", "text/plain")]))
        assert stored_files(service) == []

        [ok] = asyncio.run(service.accept([UploadedFile.from_bytes("ok.txt", b"1234", "text/plain")]))
        assert ok.size == 4

    def test_write_failure_removes_files_from_same_call(self, upload_service, monkeypatch):
        real_open = service_module.aiofiles.open
        calls = {"n": 0}

        def flaky_open(*args, **kwargs):
            calls["n"] += 1
            if calls["n"] == 2:
                raise OSError("disk full")
            return real_open(*args, **kwargs)

        monkeypatch.setattr(service_module.aiofiles, "open", flaky_open)
        uploads = [
            UploadedFile.from_bytes("a.txt", b"a", "text/plain"),
            UploadedFile.from_bytes("b.txt", b"b", "text/plain"),
        ]
        with pytest.raises(OSError):
            asyncio.run(upload_service.accept(uploads))
        assert stored_files(upload_service) == []

    def test_url_uses_base_and_prefix(self, tmp_path):
        service = AttachmentService(
            upload_dir=str(tmp_path / "u"),
            base_url="https://chat.example.com/",
            url_prefix="/files/",
        )
        assert service.public_url("1-ab-x.txt") == "https://chat.example.com/files/1-ab-x.txt"


# =============================================================================
# Upload endpoint
# =============================================================================


def multipart(*files):
    return [("files", f) for f in files]


class TestUploadEndpoint:

    def test_upload_success(self, api_client, upload_service):
        response = api_client.post("/upload", files=multipart(
            ("photo.png", b"\x89PNG", "image/png"),
            ("notes.txt", b"hello", "text/plain"),
        ))

        assert response.status_code == 200
        files = response.json()["files"]
        assert [f["name"] for f in files] == ["photo.png", "notes.txt"]
        assert [f["type"] for f in files] == ["image/png", "text/plain"]
        assert [f["size"] for f in files] == [4, 5]
        assert all(f["url"].startswith("http://testserver/uploads/") for f in files)
        assert len(stored_files(upload_service)) == 2

    def test_six_files_rejected_and_nothing_persisted(self, api_client, upload_service):
        response = api_client.post("/upload", files=multipart(
            *[(f"f{i}.txt", b"x", "text/plain") for i in range(6)]
        ))

        assert response.status_code == 400
        assert "Too many files" in response.json()["error"]
        assert stored_files(upload_service) == []

    def test_octet_stream_docx_accepted(self, api_client, upload_service):
        response = api_client.post("/upload", files=multipart(
            ("report.docx", b"PK\x03\x04", "application/octet-stream"),
        ))
        assert response.status_code == 200
        assert response.json()["files"][0]["name"] == "report.docx"

    def test_octet_stream_exe_rejected(self, api_client, upload_service):
        response = api_client.post("/upload", files=multipart(
            ("setup.exe", b"MZ", "application/octet-stream"),
        ))
        assert response.status_code == 400
        error = response.json()["error"]
        assert "application/octet-stream" in error
        assert "setup.exe" in error
        assert stored_files(upload_service) == []

    def test_no_files(self, api_client, upload_service):
        response = api_client.post("/upload", data={"unused": "1"})
        assert response.status_code == 400
        assert "No files" in response.json()["error"]

    def test_same_name_twice_gives_distinct_urls(self, api_client, upload_service):
        urls = []
        for content in (b"one", b"two"):
            response = api_client.post("/upload", files=multipart(("dup.txt", content, "text/plain")))
            assert response.status_code == 200
            urls.append(response.json()["files"][0]["url"])

        assert urls[0] != urls[1]
        assert len(stored_files(upload_service)) == 2

    def test_size_limit_returns_400(self, api_client, tmp_path):
        AttachmentService.set_instance(AttachmentService(
            upload_dir=str(tmp_path / "tiny"),
            base_url="http://testserver",
            max_file_size_bytes=3,
        ))
        try:
            response = api_client.post("/upload", files=multipart(("a.txt", b"abcd", "text/plain")))
        finally:
            AttachmentService.reset_instance()

        assert response.status_code == 400
        assert "too large" in response.json()["error"]

    def test_uploaded_file_is_served_back(self, api_client):
        AttachmentService.reset_instance()
        try:
            response = api_client.post("/upload", files=multipart(
                ("hello world.txt", b"served bytes", "text/plain"),
            ))
            assert response.status_code == 200
            url = response.json()["files"][0]["url"]

            served = api_client.get(urlparse(url).path)
            assert served.status_code == 200
            assert served.content == b"served bytes"
        finally:
            AttachmentService.reset_instance()
