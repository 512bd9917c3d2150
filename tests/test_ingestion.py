import base64
from io import BytesIO

import docx
import pytest

from fakes import make_document
from quizmaster.errors import IngestionError
from quizmaster.ingestion import DOCX_MIME, PDF_MIME, check_upload_limits, ingest_file, ingest_files
from quizmaster.schemas import MimeKind


PDF_BYTES = b"%PDF-1.4\n1 0 obj\n<<>>\nendobj\ntrailer\n<<>>\n%%EOF\n"


def docx_bytes(*paragraphs: str) -> bytes:
    document = docx.Document()
    for text in paragraphs:
        document.add_paragraph(text)
    buffer = BytesIO()
    document.save(buffer)
    return buffer.getvalue()


class TestIngestFile:

    def test_pdf_is_base64_encoded(self):
        doc = ingest_file("lecture.pdf", PDF_MIME, PDF_BYTES)

        assert doc.mime_kind == MimeKind.PDF
        assert doc.name == "lecture.pdf"
        assert doc.size_bytes == len(PDF_BYTES)
        assert base64.b64decode(doc.payload) == PDF_BYTES

    def test_pdf_detected_by_extension(self):
        doc = ingest_file("LECTURE.PDF", "application/octet-stream", PDF_BYTES)
        assert doc.mime_kind == MimeKind.PDF

    def test_docx_text_is_extracted(self):
        data = docx_bytes("Photosynthesis happens in chloroplasts.", "", "Light reactions make ATP.")

        doc = ingest_file("notes.docx", DOCX_MIME, data)

        assert doc.mime_kind == MimeKind.DOCX
        assert doc.payload == "Photosynthesis happens in chloroplasts.\nLight reactions make ATP."
        assert doc.size_bytes == len(data)

    def test_corrupt_docx(self):
        with pytest.raises(IngestionError) as info:
            ingest_file("broken.docx", DOCX_MIME, b"this is not a zip archive")
        assert "broken.docx" in info.value.message

    def test_docx_without_text(self):
        with pytest.raises(IngestionError):
            ingest_file("blank.docx", DOCX_MIME, docx_bytes("   "))

    def test_unsupported_type(self):
        with pytest.raises(IngestionError) as info:
            ingest_file("slides.pptx", "application/vnd.ms-powerpoint", b"data")
        assert "Unsupported" in info.value.message

    def test_empty_file(self):
        with pytest.raises(IngestionError):
            ingest_file("empty.pdf", PDF_MIME, b"")

    def test_ingest_many_stops_at_first_bad_file(self):
        with pytest.raises(IngestionError):
            ingest_files([("a.pdf", PDF_MIME, PDF_BYTES), ("b.txt", "text/plain", b"hello")])

        docs = ingest_files([("a.pdf", PDF_MIME, PDF_BYTES), ("b.docx", DOCX_MIME, docx_bytes("Hi"))])
        assert [d.mime_kind for d in docs] == [MimeKind.PDF, MimeKind.DOCX]


class TestUploadLimits:

    def test_within_limits(self):
        check_upload_limits([make_document(size_bytes=10)] * 5, max_count=5, max_total_bytes=100)

    def test_no_documents(self):
        with pytest.raises(IngestionError) as info:
            check_upload_limits([], max_count=1, max_total_bytes=100)
        assert info.value.message == "Please select at least one file."

    def test_too_many_documents(self):
        with pytest.raises(IngestionError) as info:
            check_upload_limits([make_document()] * 2, max_count=1, max_total_bytes=10**9)
        assert "no more than 1 file" in info.value.message

    def test_total_size(self):
        mb = 1024 * 1024
        with pytest.raises(IngestionError) as info:
            check_upload_limits([make_document(size_bytes=30 * mb)] * 2, max_count=5, max_total_bytes=40 * mb)
        assert info.value.message == "Total size exceeds 40MB."
