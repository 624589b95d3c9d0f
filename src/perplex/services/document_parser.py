"""
Document text extraction.

Runs before the orchestrator; only the extracted text reaches the model.
PDFs are read with pypdf, Word documents with python-docx, everything else
is decoded as UTF-8.
"""

import io
import logging
import zipfile
from typing import Any, Dict, Optional

import docx
from docx.opc.exceptions import PackageNotFoundError
from pypdf import PdfReader
from pypdf.errors import PyPdfError

from src.perplex.config import get_settings
from src.perplex.models import DocumentAttachment
from src.perplex.utils.error_handler import validation_error

logger = logging.getLogger(__name__)

DOCX_MIME_TYPE = "application/vnd.openxmlformats-officedocument.wordprocessingml.document"

SUPPORTED_DOCUMENT_TYPES = {
    "application/pdf": "pdf",
    DOCX_MIME_TYPE: "docx",
    "text/plain": "txt",
    "text/markdown": "md",
    "text/csv": "csv",
    "application/json": "json",
    "text/html": "html",
    "application/rtf": "rtf",
}

TRUNCATION_MARKER = "\n\n[Document truncated due to length...]"


def is_supported_document(mime_type: Optional[str]) -> bool:
    return (mime_type or "").split(";")[0].strip() in SUPPORTED_DOCUMENT_TYPES


def parse_pdf(data: bytes) -> str:
    reader = PdfReader(io.BytesIO(data))
    return "\n".join(page.extract_text() or "" for page in reader.pages)


def parse_docx(data: bytes) -> str:
    document = docx.Document(io.BytesIO(data))
    return "\n".join(paragraph.text for paragraph in document.paragraphs)


def parse_text(data: bytes) -> str:
    return data.decode("utf-8")


PARSERS = {
    "pdf": parse_pdf,
    "docx": parse_docx,
}


def extract_text(
    data: bytes,
    mime_type: str,
    filename: str = "document",
    max_chars: Optional[int] = None
) -> Dict[str, Any]:
    """
    Extract text from an uploaded document.

    Args:
        data: Raw document bytes
        mime_type: Declared MIME type (parameters such as charset are ignored)
        filename: Original filename, kept for framing and metadata
        max_chars: Truncation limit, defaults to settings.max_document_chars

    Returns:
        {text, metadata: {filename, mimetype, extension, original_size, extracted_length}}

    Raises:
        ServiceError: validation category for unsupported or unreadable documents
    """
    base_type = (mime_type or "").split(";")[0].strip()
    if base_type not in SUPPORTED_DOCUMENT_TYPES:
        raise validation_error(f"Unsupported document type: {mime_type}", mime_type=mime_type)

    extension = SUPPORTED_DOCUMENT_TYPES[base_type]
    max_chars = max_chars or get_settings().max_document_chars
    parser = PARSERS.get(extension, parse_text)

    try:
        text = parser(data)
    except UnicodeDecodeError as e:
        raise validation_error(f"Document is not valid UTF-8 text: {e}", filename=filename)
    except (PyPdfError, PackageNotFoundError, zipfile.BadZipFile, KeyError, ValueError) as e:
        logger.warning(f"Failed to parse {extension} document {filename}: {e}")
        raise validation_error(f"Failed to parse {extension.upper()} document: {e}", filename=filename)

    text = text.strip()
    if len(text) > max_chars:
        logger.info(f"Document {filename} truncated from {len(text)} to {max_chars} characters")
        text = text[:max_chars] + TRUNCATION_MARKER

    return {
        "text": text,
        "metadata": {
            "filename": filename,
            "mimetype": base_type,
            "extension": extension,
            "original_size": len(data),
            "extracted_length": len(text),
        },
    }


def to_attachment(extracted: Dict[str, Any]) -> DocumentAttachment:
    metadata = extracted["metadata"]
    return DocumentAttachment(
        text=extracted["text"],
        filename=metadata["filename"],
        mime_type=metadata["mimetype"],
        extracted_length=metadata["extracted_length"],
    )
