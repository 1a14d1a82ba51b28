from __future__ import annotations

import uuid
from datetime import datetime
from enum import Enum
from typing import Annotated

from sqlalchemy import DateTime, Enum as SAEnum, ForeignKey, Integer, JSON, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from signdesk.db.base import Base
from signdesk.integrations.esignature.base import SigningFlow
from signdesk.models.mixins import TimestampMixin, VersionedMixin

Identifier = Annotated[str, mapped_column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))]


class DocumentStatus(str, Enum):
    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY_FOR_SIGNATURE = "ready_for_signature"
    SENT_FOR_SIGNATURE = "sent_for_signature"
    OUT_FOR_SIGNATURE = "out_for_signature"
    PARTIALLY_SIGNED = "partially_signed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    FAILED = "failed"
    SIGNATURE_ERROR = "signature_error"


class RecipientStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    VIEWED = "viewed"
    WAITING = "waiting"
    SIGNED = "signed"
    DECLINED = "declined"
    EXPIRED = "expired"


# Statuses that only exist once the provider holds an agreement.
AGREEMENT_BACKED_STATUSES = frozenset({
    DocumentStatus.SENT_FOR_SIGNATURE,
    DocumentStatus.OUT_FOR_SIGNATURE,
    DocumentStatus.PARTIALLY_SIGNED,
    DocumentStatus.COMPLETED,
    DocumentStatus.CANCELLED,
    DocumentStatus.EXPIRED,
})

TERMINAL_DOCUMENT_STATUSES = frozenset({
    DocumentStatus.COMPLETED,
    DocumentStatus.CANCELLED,
    DocumentStatus.EXPIRED,
})

TERMINAL_RECIPIENT_STATUSES = frozenset({
    RecipientStatus.SIGNED,
    RecipientStatus.DECLINED,
    RecipientStatus.EXPIRED,
})


class SignatureDocument(VersionedMixin, TimestampMixin, Base):
    __tablename__ = "signature_documents"

    id: Mapped[Identifier]
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    file_path: Mapped[str] = mapped_column(Text, nullable=False)
    pdf_file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[DocumentStatus] = mapped_column(
        SAEnum(DocumentStatus), default=DocumentStatus.UPLOADED, nullable=False, index=True
    )
    provider_agreement_id: Mapped[str | None] = mapped_column(String(128), nullable=True, unique=True, index=True)
    signing_flow: Mapped[SigningFlow] = mapped_column(SAEnum(SigningFlow), default=SigningFlow.SEQUENTIAL, nullable=False)
    auto_detected_fields: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    provider_metadata: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    recipients: Mapped[list["DocumentRecipient"]] = relationship(
        back_populates="document",
        cascade="all,delete-orphan",
        order_by="DocumentRecipient.position",
        lazy="selectin",
    )


class DocumentRecipient(TimestampMixin, Base):
    __tablename__ = "document_recipients"
    __table_args__ = (UniqueConstraint("document_id", "email_key", name="uq_document_recipient_email"),)

    id: Mapped[Identifier]
    document_id: Mapped[str] = mapped_column(
        ForeignKey("signature_documents.id", ondelete="CASCADE"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    email_key: Mapped[str] = mapped_column(String(320), nullable=False)
    order: Mapped[int] = mapped_column("signing_order", Integer, nullable=False, default=1)
    status: Mapped[RecipientStatus] = mapped_column(
        SAEnum(RecipientStatus), default=RecipientStatus.PENDING, nullable=False
    )
    signed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_accessed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    signing_url: Mapped[str | None] = mapped_column(Text, nullable=True)

    document: Mapped["SignatureDocument"] = relationship(back_populates="recipients")
