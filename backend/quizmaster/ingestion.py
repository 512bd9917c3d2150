from __future__ import annotations

import base64
import logging
import zipfile
from io import BytesIO
from typing import Iterable, List, Optional, Sequence, Tuple

import docx
from docx.opc.exceptions import PackageNotFoundError

from .errors import IngestionError
from .schemas import MimeKind, SourceDocument


logger = logging.getLogger(__name__)

PDF_MIME = "application/pdf"
DOCX_MIME = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"


def _detect_kind(name: str, content_type: Optional[str]) -> MimeKind:
    lowered = (name or "").lower()
    if content_type == PDF_MIME or lowered.endswith(".pdf"):
        return MimeKind.PDF
    if content_type == DOCX_MIME or lowered.endswith(".docx"):
        return MimeKind.DOCX
    raise IngestionError(f"Unsupported file type: {name or 'unnamed file'}. Upload PDF or DOCX files.")


def _docx_text(name: str, data: bytes) -> str:
    try:
        document = docx.Document(BytesIO(data))
    except (PackageNotFoundError, zipfile.BadZipFile, ValueError, KeyError) as exc:
        logger.warning("Could not open %s as DOCX: %s", name, exc)
        raise IngestionError(f"Error processing {name}. Please check the file format.") from exc
    return "\n".join(p.text for p in document.paragraphs if p.text.strip())


def ingest_file(name: str, content_type: Optional[str], data: bytes) -> SourceDocument:
    if not data:
        raise IngestionError(f"{name or 'The file'} is empty.")
    kind = _detect_kind(name, content_type)
    if kind == MimeKind.PDF:
        payload = base64.b64encode(data).decode("ascii")
    else:
        payload = _docx_text(name, data)
        if not payload:
            raise IngestionError(f"No readable text found in {name}.")
    return SourceDocument(name=name, mime_kind=kind, payload=payload, size_bytes=len(data))


def ingest_files(files: Iterable[Tuple[str, Optional[str], bytes]]) -> List[SourceDocument]:
    return [ingest_file(name, content_type, data) for name, content_type, data in files]


def check_upload_size(count: int, total_bytes: int, max_count: int, max_total_bytes: int) -> None:
    if count < 1:
        raise IngestionError("Please select at least one file.")
    if count > max_count:
        raise IngestionError(f"Please select no more than {max_count} file(s) for this mode.")
    if total_bytes > max_total_bytes:
        raise IngestionError(f"Total size exceeds {max_total_bytes // (1024 * 1024)}MB.")


def check_upload_limits(documents: Sequence[SourceDocument], max_count: int, max_total_bytes: int) -> None:
    check_upload_size(len(documents), sum(d.size_bytes for d in documents), max_count, max_total_bytes)
