"""Plain in-memory views of a document and its recipients.

Services operate on these records instead of ORM rows so that the status
reconciler can stay a pure function and the repository owns every write.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from signdesk.integrations.esignature.base import SigningFlow
from signdesk.models.document import AGREEMENT_BACKED_STATUSES, DocumentStatus, RecipientStatus


@dataclass(slots=True)
class RecipientRecord:
    name: str
    email: str
    order: int = 1
    status: RecipientStatus = RecipientStatus.PENDING
    signed_at: Optional[datetime] = None
    last_accessed_at: Optional[datetime] = None
    signing_url: Optional[str] = None

    @property
    def email_key(self) -> str:
        return self.email.strip().lower()


@dataclass(slots=True)
class DocumentRecord:
    id: str
    name: str
    file_path: str
    status: DocumentStatus = DocumentStatus.UPLOADED
    recipients: list[RecipientRecord] = field(default_factory=list)
    provider_agreement_id: Optional[str] = None
    signing_flow: SigningFlow = SigningFlow.SEQUENTIAL
    auto_detected_fields: list[dict[str, Any]] = field(default_factory=list)
    provider_metadata: dict[str, Any] = field(default_factory=dict)
    error_message: Optional[str] = None
    pdf_file_path: Optional[str] = None
    version: int = 1
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def upload_path(self) -> str:
        return self.pdf_file_path or self.file_path

    @property
    def has_agreement(self) -> bool:
        return self.status in AGREEMENT_BACKED_STATUSES

    def clone(self) -> "DocumentRecord":
        return copy.deepcopy(self)

    def recipient_by_email(self, email: str) -> Optional[RecipientRecord]:
        key = email.strip().lower()
        for recipient in self.recipients:
            if recipient.email_key == key:
                return recipient
        return None
