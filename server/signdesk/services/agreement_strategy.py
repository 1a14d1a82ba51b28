"""
Agreement creation strategy.

Two mutually exclusive creation methods exist. The choice is made once, up
front, from the document's detected fields:

* text tags present: the tag-driven method, with provider-side auto-positioning
  disabled (tags plus auto-placed fields produce duplicate signature boxes);
* otherwise: the basic method, letting the provider place fields.

A failure of the chosen method is final. There is no fallback to the other
method, because that would silently drop the intended field placement.
"""

from __future__ import annotations

import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional, Sequence

from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import (
    AgreementRequest,
    AmbiguousCreationError,
    CreationError,
    DocumentValidationError,
    ESignatureProvider,
    FormField,
    NetworkError,
    ParticipantInfo,
    ParticipantSet,
    RateLimitError,
    RateLimitInEffectError,
    SignatureError,
    SigningFlow,
)
from signdesk.services.rate_limit_gate import RateLimitGate
from signdesk.services.records import DocumentRecord, RecipientRecord
from signdesk.services.recovery_verifier import Found, RecoveryVerifier

logger = get_logger(__name__)

TEXT_TAG_PATTERN = re.compile(r"\{\{[^{}]*(?:\*ES_|_es_)[^{}]*\}\}", re.IGNORECASE)
TAG_TEXT_KEYS = ("name", "tag", "text")


class CreationMethod(str, Enum):
    TEXT_TAGS = "text_tags"
    BASIC = "basic"


@dataclass
class SigningOptions:
    document_id: str
    idempotency_token: str
    signing_flow: SigningFlow = SigningFlow.SEQUENTIAL
    auto_detected_fields: list[Any] = field(default_factory=list)


@dataclass
class CreationAttemptResult:
    agreement_id: Optional[str]
    method_used: Optional[CreationMethod]
    rate_limited: bool = False
    retry_after: Optional[int] = None
    recovered: bool = False
    evidence: Optional[str] = None


def is_tag_marker(detected: Any) -> bool:
    if isinstance(detected, str):
        return bool(TEXT_TAG_PATTERN.search(detected))
    if not isinstance(detected, dict):
        return False
    if detected.get("text_tag") is True or detected.get("textTag") is True:
        return True
    return any(
        isinstance(detected.get(key), str) and TEXT_TAG_PATTERN.search(detected[key])
        for key in TAG_TEXT_KEYS
    )


def has_tag_markers(detected_fields: Optional[Sequence[Any]]) -> bool:
    return any(is_tag_marker(detected) for detected in detected_fields or ())


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def form_fields_from(detected_fields: Optional[Sequence[Any]]) -> list[FormField]:
    form_fields = []
    for detected in detected_fields or ():
        if not isinstance(detected, dict) or not detected.get("name"):
            continue
        page = detected.get("page")
        form_fields.append(FormField(
            name=str(detected["name"]),
            field_type=str(detected.get("type") or "SIGNATURE").upper(),
            required=detected.get("required") is not False,
            x=_number(detected.get("x")),
            y=_number(detected.get("y")),
            width=_number(detected.get("width")),
            height=_number(detected.get("height")),
            page=page if isinstance(page, int) and page > 0 else 1,
        ))
    return form_fields


def participant_sets_for(recipients: Sequence[RecipientRecord], flow: SigningFlow) -> list[ParticipantSet]:
    if flow is SigningFlow.PARALLEL:
        return [ParticipantSet(
            members=[ParticipantInfo(email=recipient.email, name=recipient.name) for recipient in recipients],
            order=1,
        )]
    ordered = sorted(recipients, key=lambda recipient: recipient.order)
    return [
        ParticipantSet(members=[ParticipantInfo(email=recipient.email, name=recipient.name)], order=recipient.order)
        for recipient in ordered
    ]


def validate_recipients(recipients: Sequence[RecipientRecord], flow: SigningFlow) -> None:
    if not recipients:
        raise DocumentValidationError("Document has no recipients")
    seen: set[str] = set()
    orders: set[int] = set()
    for recipient in recipients:
        if not recipient.email or "@" not in recipient.email:
            raise DocumentValidationError(f"Recipient '{recipient.name}' has an invalid email address")
        if recipient.email_key in seen:
            raise DocumentValidationError(f"Recipient {recipient.email} is listed more than once")
        seen.add(recipient.email_key)
        if recipient.order < 1:
            raise DocumentValidationError(f"Recipient {recipient.email} has an invalid signing order")
        if flow is SigningFlow.SEQUENTIAL and recipient.order in orders:
            raise DocumentValidationError(f"Signing order {recipient.order} is used by more than one recipient")
        orders.add(recipient.order)


class AgreementMethod(ABC):
    method: CreationMethod

    @abstractmethod
    def build_request(
        self,
        transient_document_id: str,
        recipients: Sequence[RecipientRecord],
        document_name: str,
        options: SigningOptions,
    ) -> AgreementRequest:
        ...


class TextTagMethod(AgreementMethod):
    method = CreationMethod.TEXT_TAGS

    def build_request(self, transient_document_id, recipients, document_name, options) -> AgreementRequest:
        return AgreementRequest(
            name=document_name,
            transient_document_id=transient_document_id,
            participant_sets=participant_sets_for(recipients, options.signing_flow),
            external_id=options.idempotency_token,
            signature_flow=options.signing_flow,
            auto_positioning=False,
        )


class BasicMethod(AgreementMethod):
    method = CreationMethod.BASIC

    def build_request(self, transient_document_id, recipients, document_name, options) -> AgreementRequest:
        return AgreementRequest(
            name=document_name,
            transient_document_id=transient_document_id,
            participant_sets=participant_sets_for(recipients, options.signing_flow),
            external_id=options.idempotency_token,
            signature_flow=options.signing_flow,
            auto_positioning=True,
            form_fields=form_fields_from(options.auto_detected_fields),
        )


class AgreementCreationStrategy:
    def __init__(
        self,
        provider: ESignatureProvider,
        gate: RateLimitGate,
        verifier: RecoveryVerifier,
        tag_method: Optional[AgreementMethod] = None,
        basic_method: Optional[AgreementMethod] = None,
    ):
        self.provider = provider
        self.gate = gate
        self.verifier = verifier
        self.tag_method = tag_method or TextTagMethod()
        self.basic_method = basic_method or BasicMethod()

    def select_method(self, options: SigningOptions) -> AgreementMethod:
        if has_tag_markers(options.auto_detected_fields):
            return self.tag_method
        return self.basic_method

    async def create(
        self,
        transient_document_id: str,
        recipients: Sequence[RecipientRecord],
        document_name: str,
        options: SigningOptions,
    ) -> CreationAttemptResult:
        decision = self.gate.check_allowed()
        if not decision.allowed:
            logger.info("agreement.create.blocked", document_id=options.document_id, blocked_for=decision.blocked_for)
            raise RateLimitInEffectError(decision.blocked_for)

        validate_recipients(recipients, options.signing_flow)
        method = self.select_method(options)
        request = method.build_request(transient_document_id, recipients, document_name, options)
        probe = self._probe_document(transient_document_id, recipients, document_name, options)
        logger.info(
            "agreement.create.started",
            document_id=options.document_id,
            method=method.method.value,
            participant_sets=len(request.participant_sets),
            auto_positioning=request.auto_positioning,
        )

        async def resend_guard() -> Optional[dict[str, Any]]:
            result = await self.verifier.verify(probe)
            return {"id": result.agreement_id} if isinstance(result, Found) else None

        try:
            agreement_id = await self.provider.create_agreement(request, resend_guard=resend_guard)
        except RateLimitError as e:
            self.gate.record_rate_limited(e.retry_after)
            logger.warning("agreement.create.rate_limited", document_id=options.document_id, retry_after=e.retry_after)
            return CreationAttemptResult(None, method.method, rate_limited=True, retry_after=e.retry_after)
        except NetworkError as e:
            if not e.exhausted:
                raise CreationError(f"{method.method.value} creation failed: {e.error_message}", cause=e, method=method.method.value) from e
            logger.warning("agreement.create.ambiguous", document_id=options.document_id, attempts=e.attempts)
            verification = await self.verifier.verify(probe)
            if isinstance(verification, Found):
                return CreationAttemptResult(
                    verification.agreement_id,
                    method.method,
                    recovered=True,
                    evidence=verification.evidence,
                )
            raise AmbiguousCreationError(
                f"Connection lost while creating the agreement and no evidence of it was found: {e.error_message}",
                cause=e,
                method=method.method.value,
            ) from e
        except SignatureError as e:
            logger.error("agreement.create.failed", document_id=options.document_id, method=method.method.value, error=e.error_message)
            raise CreationError(f"{method.method.value} creation failed: {e.error_message}", cause=e, method=method.method.value) from e

        logger.info("agreement.created", document_id=options.document_id, agreement_id=agreement_id, method=method.method.value)
        return CreationAttemptResult(agreement_id, method.method)

    @staticmethod
    def _probe_document(
        transient_document_id: str,
        recipients: Sequence[RecipientRecord],
        document_name: str,
        options: SigningOptions,
    ) -> DocumentRecord:
        return DocumentRecord(
            id=options.document_id,
            name=document_name,
            file_path="",
            recipients=list(recipients),
            signing_flow=options.signing_flow,
            provider_metadata={
                "idempotencyToken": options.idempotency_token,
                "transientDocumentId": transient_document_id,
            },
        )
