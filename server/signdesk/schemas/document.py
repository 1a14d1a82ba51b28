from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from signdesk.integrations.esignature.base import SigningFlow
from signdesk.models.document import DocumentStatus, RecipientStatus
from signdesk.services.signature_service import SendStatus


class ORMModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class RecipientCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    email: EmailStr
    order: int = Field(default=1, ge=1)


class DocumentCreate(BaseModel):
    name: str = Field(min_length=1, max_length=255)
    file_path: str = Field(min_length=1)
    pdf_file_path: str | None = None
    signing_flow: SigningFlow = SigningFlow.SEQUENTIAL
    recipients: list[RecipientCreate] = Field(min_length=1)
    auto_detected_fields: list[dict[str, Any]] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_recipients(self) -> "DocumentCreate":
        emails = [recipient.email.lower() for recipient in self.recipients]
        if len(set(emails)) != len(emails):
            raise ValueError("recipient emails must be unique")
        if self.signing_flow is SigningFlow.SEQUENTIAL:
            orders = [recipient.order for recipient in self.recipients]
            if len(set(orders)) != len(orders):
                raise ValueError("sequential signing requires a distinct order per recipient")
        return self


class RecipientRead(ORMModel):
    name: str
    email: str
    order: int
    status: RecipientStatus
    signed_at: datetime | None = None
    last_accessed_at: datetime | None = None
    signing_url: str | None = None


class DocumentRead(ORMModel):
    id: str
    name: str
    file_path: str
    pdf_file_path: str | None = None
    status: DocumentStatus
    provider_agreement_id: str | None = None
    signing_flow: SigningFlow
    recipients: list[RecipientRead]
    provider_metadata: dict[str, Any] = Field(default_factory=dict)
    error_message: str | None = None
    version: int
    created_at: datetime | None = None
    updated_at: datetime | None = None


class SendResultRead(ORMModel):
    status: SendStatus
    agreement_id: str | None = None
    method_used: str | None = None
    error: str | None = None
    retry_after: int | None = None
    message: str | None = None
    recovery_applied: bool = False
    document: DocumentRead


class RecoverResultRead(ORMModel):
    recovered: bool
    evidence: str | None = None
    reason: str | None = None
    document: DocumentRead


class RateLimitStatusRead(ORMModel):
    is_rate_limited: bool
    retry_after_seconds: int
    blocked_until: datetime | None = None
    hits: int
    last_hit_at: datetime | None = None
    message: str


class WebhookParticipant(BaseModel):
    email: str | None = None


class WebhookAgreement(BaseModel):
    id: str
    status: str | None = None


class WebhookPayload(BaseModel):
    """Subset of the provider notification body the service relies on."""

    event: str
    agreement: WebhookAgreement | None = None
    participant: WebhookParticipant | None = None
    participant_user_email: str | None = Field(default=None, alias="participantUserEmail")
    acting_user_email: str | None = Field(default=None, alias="actingUserEmail")

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    @property
    def participant_email(self) -> str | None:
        if self.participant is not None and self.participant.email:
            return self.participant.email
        return self.participant_user_email or self.acting_user_email
