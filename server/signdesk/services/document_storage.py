from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import DocumentValidationError, ESignatureProvider

logger = get_logger(__name__)

MAX_UPLOAD_BYTES = 100 * 1024 * 1024

MIME_TYPES: dict[str, str] = {
    ".pdf": "application/pdf",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


def validate_upload(file_path: str) -> tuple[Path, str]:
    """Check a local file before any network call; returns the path and its MIME type."""
    if not file_path:
        raise DocumentValidationError("Document has no stored file")
    path = Path(file_path)
    if not path.is_file():
        raise DocumentValidationError(f"File not found: {file_path}")

    size = os.path.getsize(path)
    if size == 0:
        raise DocumentValidationError(f"File is empty: {path.name}")
    if size > MAX_UPLOAD_BYTES:
        raise DocumentValidationError(
            f"File {path.name} is {size} bytes; the upload limit is {MAX_UPLOAD_BYTES} bytes"
        )

    mime_type = MIME_TYPES.get(path.suffix.lower())
    if mime_type is None:
        raise DocumentValidationError(
            f"Unsupported file type '{path.suffix or path.name}'; expected one of {', '.join(sorted(MIME_TYPES))}"
        )
    return path, mime_type


class ProviderDocumentStorage:
    """Uploads stored files to the provider as transient documents."""

    def __init__(self, provider: ESignatureProvider):
        self.provider = provider

    async def upload(self, file_path: str, display_name: Optional[str] = None) -> str:
        path, mime_type = validate_upload(file_path)
        file_name = _file_name(display_name, path)
        transient_document_id = await self.provider.upload_transient_document(str(path), file_name, mime_type)
        logger.info("storage.transient_document.uploaded", file_name=file_name, mime_type=mime_type)
        return transient_document_id


def _file_name(display_name: Optional[str], path: Path) -> str:
    if not display_name:
        return path.name
    if Path(display_name).suffix.lower() == path.suffix.lower():
        return display_name
    return f"{display_name}{path.suffix.lower()}"
