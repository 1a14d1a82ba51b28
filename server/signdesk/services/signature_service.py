"""
Signature orchestration service.

Entry point for the document signing lifecycle: registering documents,
sending them for signature, reconciling provider status (on demand or from
webhooks), recovering interrupted sends and refreshing signing URLs.

Every operation on a document runs under the repository's per-document lock,
so a webhook and a manual status check for the same document never interleave.
"""

from __future__ import annotations

import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Sequence

from signdesk.core.logging import bind_document_context, clear_document_context, get_logger
from signdesk.integrations.esignature.base import (
    AgreementSnapshot,
    AmbiguousCreationError,
    CreationError,
    DocumentValidationError,
    ESignatureProvider,
    RateLimitError,
    RateLimitInEffectError,
    SignatureError,
    SigningFlow,
    WebhookEvent,
)
from signdesk.models.document import DocumentStatus, RecipientStatus
from signdesk.services.agreement_strategy import (
    AgreementCreationStrategy,
    CreationAttemptResult,
    CreationMethod,
    SigningOptions,
    validate_recipients,
)
from signdesk.services.document_repository import DocumentRepository
from signdesk.services.document_storage import ProviderDocumentStorage
from signdesk.services.rate_limit_gate import RateLimitGate, RateLimitStatus, format_wait
from signdesk.services.records import DocumentRecord, RecipientRecord
from signdesk.services.recovery_verifier import Found, NotFound, RecoveryVerifier
from signdesk.services.state_machine import SENDABLE_STATUSES, InvalidTransitionError, require_transition
from signdesk.services.status_reconciler import StatusReconciler

logger = get_logger(__name__)


class SendStatus(str, Enum):
    SENT = "sent"
    RATE_LIMITED = "rate_limited"
    FAILED = "failed"
    RECOVERED = "recovered"


@dataclass
class SendResult:
    status: SendStatus
    document: DocumentRecord
    agreement_id: Optional[str] = None
    method_used: Optional[str] = None
    error: Optional[str] = None
    retry_after: Optional[int] = None
    message: Optional[str] = None
    recovery_applied: bool = False


@dataclass
class RecoverResult:
    recovered: bool
    document: DocumentRecord
    evidence: Optional[str] = None
    reason: Optional[str] = None


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


async def register_document(
    repository: DocumentRepository,
    *,
    name: str,
    file_path: str,
    recipients: Sequence[RecipientRecord],
    signing_flow: SigningFlow = SigningFlow.SEQUENTIAL,
    auto_detected_fields: Optional[list[dict[str, Any]]] = None,
    pdf_file_path: Optional[str] = None,
) -> DocumentRecord:
    """Register an already stored file so it can be sent for signature."""
    validate_recipients(recipients, signing_flow)
    document = DocumentRecord(
        id=str(uuid.uuid4()),
        name=name,
        file_path=file_path,
        pdf_file_path=pdf_file_path,
        status=DocumentStatus.READY_FOR_SIGNATURE,
        recipients=list(recipients),
        signing_flow=signing_flow,
        auto_detected_fields=list(auto_detected_fields or []),
    )
    return await repository.add(document)


class SignatureService:
    def __init__(
        self,
        repository: DocumentRepository,
        provider: ESignatureProvider,
        storage: ProviderDocumentStorage,
        strategy: AgreementCreationStrategy,
        reconciler: StatusReconciler,
        verifier: RecoveryVerifier,
        gate: RateLimitGate,
    ):
        self.repository = repository
        self.provider = provider
        self.storage = storage
        self.strategy = strategy
        self.reconciler = reconciler
        self.verifier = verifier
        self.gate = gate

    async def send_for_signature(self, document_id: str) -> SendResult:
        """
        Create the provider agreement for a document.

        Rate limiting and ambiguous creation are reported through the result
        rather than raised. Validation problems raise DocumentValidationError
        before anything is uploaded.
        """
        async with self.repository.lock(document_id):
            bind_document_context(document_id)
            try:
                document = await self.repository.get(document_id)
                self._ensure_sendable(document)

                decision = self.gate.check_allowed()
                if not decision.allowed:
                    logger.info("signature.send.blocked", blocked_for=decision.blocked_for)
                    return await self._rate_limited(document, int(round(decision.blocked_for)) or 1)

                validate_recipients(document.recipients, document.signing_flow)
                working = document.clone()
                token = working.provider_metadata.get("idempotencyToken") or uuid.uuid4().hex

                try:
                    transient_document_id = await self.storage.upload(working.upload_path, working.name)
                except DocumentValidationError:
                    raise
                except RateLimitError as e:
                    self.gate.record_rate_limited(e.retry_after)
                    return await self._rate_limited(working, e.retry_after)
                except SignatureError as e:
                    logger.error("signature.upload.failed", error=e.error_message, error_code=e.error_code)
                    return await self._failed(working, f"Document upload failed: {e.error_message}")

                working.provider_metadata.update({
                    "idempotencyToken": token,
                    "transientDocumentId": transient_document_id,
                })
                working = await self.repository.save(working)

                options = SigningOptions(
                    document_id=working.id,
                    idempotency_token=token,
                    signing_flow=working.signing_flow,
                    auto_detected_fields=list(working.auto_detected_fields),
                )
                try:
                    result = await self.strategy.create(
                        transient_document_id,
                        working.recipients,
                        working.name,
                        options,
                    )
                except asyncio.CancelledError:
                    await self._flag_in_flight(working)
                    raise
                except RateLimitInEffectError as e:
                    return await self._rate_limited(working, int(round(e.blocked_for_seconds)) or 1)
                except AmbiguousCreationError as e:
                    return await self._ambiguous(working, e)
                except CreationError as e:
                    return await self._failed(working, e.reason, method=e.method)

                if result.rate_limited:
                    return await self._rate_limited(working, result.retry_after, method=result.method_used)
                return await self._sent(working, result)
            finally:
                clear_document_context()

    def _ensure_sendable(self, document: DocumentRecord) -> None:
        if document.provider_agreement_id:
            raise InvalidTransitionError(
                f"Document {document.id} already has agreement {document.provider_agreement_id}"
            )
        if document.provider_metadata.get("creationInFlight"):
            raise InvalidTransitionError(
                f"A previous send of document {document.id} was interrupted; recover it before sending again"
            )
        if document.status not in SENDABLE_STATUSES:
            raise InvalidTransitionError(
                f"Document {document.id} cannot be sent from status {document.status.value}"
            )

    async def _sent(self, document: DocumentRecord, result: CreationAttemptResult) -> SendResult:
        method = result.method_used.value if result.method_used else None
        for key in ("rateLimited", "retryAfter", "rateLimitedAt", "ambiguousCreation"):
            document.provider_metadata.pop(key, None)

        if result.recovered:
            self.verifier.apply_posture(document, Found(result.agreement_id, result.evidence or "agreement_search"))
        else:
            document.provider_agreement_id = result.agreement_id
            require_transition(document, DocumentStatus.SENT_FOR_SIGNATURE)
            for recipient in document.recipients:
                if recipient.status is RecipientStatus.PENDING:
                    recipient.status = RecipientStatus.SENT
            document.error_message = None
            document.provider_metadata["agreementId"] = result.agreement_id

        document.provider_metadata.update({"methodUsed": method, "sentAt": _now_iso()})
        saved = await self.repository.save(document)
        logger.info(
            "signature.agreement.created",
            agreement_id=result.agreement_id,
            method=method,
            recovered=result.recovered,
        )
        return SendResult(
            status=SendStatus.RECOVERED if result.recovered else SendStatus.SENT,
            document=saved,
            agreement_id=result.agreement_id,
            method_used=method,
        )

    async def _rate_limited(
        self,
        document: DocumentRecord,
        retry_after: int,
        method: Optional[CreationMethod] = None,
    ) -> SendResult:
        message = format_wait(retry_after)
        document.error_message = message
        document.provider_metadata.update({
            "rateLimited": True,
            "retryAfter": retry_after,
            "rateLimitedAt": _now_iso(),
        })
        saved = await self.repository.save(document)
        logger.warning("signature.send.rate_limited", retry_after=retry_after)
        return SendResult(
            status=SendStatus.RATE_LIMITED,
            document=saved,
            method_used=method.value if method else None,
            error=message,
            retry_after=retry_after,
            message=message,
        )

    async def _failed(self, document: DocumentRecord, reason: str, *, method: Optional[str] = None) -> SendResult:
        if document.status is not DocumentStatus.SIGNATURE_ERROR:
            require_transition(document, DocumentStatus.SIGNATURE_ERROR)
        document.error_message = reason
        if method:
            document.provider_metadata["methodUsed"] = method
        saved = await self.repository.save(document)
        logger.error("signature.send.failed", reason=reason, method=method)
        return SendResult(status=SendStatus.FAILED, document=saved, method_used=method, error=reason)

    async def _ambiguous(self, document: DocumentRecord, error: AmbiguousCreationError) -> SendResult:
        document.provider_metadata["ambiguousCreation"] = True
        if self.verifier.apply_posture(document, NotFound(error.reason)):
            document.provider_metadata["methodUsed"] = error.method
            saved = await self.repository.save(document)
            return SendResult(
                status=SendStatus.RECOVERED,
                document=saved,
                method_used=error.method,
                recovery_applied=True,
                message="Agreement creation could not be confirmed; document marked sent by aggressive recovery",
            )
        return await self._failed(document, error.reason, method=error.method)

    async def _flag_in_flight(self, document: DocumentRecord) -> None:
        document.provider_metadata["creationInFlight"] = True
        logger.warning("signature.send.cancelled")
        await asyncio.shield(self.repository.save(document))

    async def check_status(self, document_id: str) -> DocumentRecord:
        async with self.repository.lock(document_id):
            document = await self.repository.get(document_id)
            if not document.provider_agreement_id:
                logger.debug("signature.status.no_agreement", document_id=document_id)
                return document
            snapshot = await self.provider.get_agreement_snapshot(document.provider_agreement_id)
            return await self._apply_snapshot(document, snapshot)

    async def _apply_snapshot(self, document: DocumentRecord, snapshot: AgreementSnapshot) -> DocumentRecord:
        outcome = self.reconciler.reconcile(document, snapshot)
        if not outcome.changed:
            return document
        outcome.document.provider_metadata["lastStatusSync"] = _now_iso()
        saved = await self.repository.save(outcome.document)
        logger.info(
            "signature.status.updated",
            document_id=document.id,
            status=saved.status.value,
            changes=len(outcome.changes),
        )
        return saved

    async def recover_send(self, document_id: str) -> RecoverResult:
        async with self.repository.lock(document_id):
            document = await self.repository.get(document_id)
            if document.provider_agreement_id:
                return RecoverResult(True, document, evidence="existing_id")

            result = await self.verifier.verify(document)
            updated = document.clone()
            if self.verifier.apply_posture(updated, result):
                saved = await self.repository.save(updated)
                return RecoverResult(
                    True,
                    saved,
                    evidence=result.evidence if isinstance(result, Found) else None,
                    reason=result.reason if isinstance(result, NotFound) else None,
                )

            if updated.provider_metadata.get("creationInFlight") and not result.inconclusive:
                updated.provider_metadata.pop("creationInFlight")
                require_transition(updated, DocumentStatus.FAILED)
                updated.error_message = f"Interrupted send could not be confirmed: {result.reason}"
                document = await self.repository.save(updated)
                logger.warning("signature.recover.marked_failed", document_id=document_id)
            return RecoverResult(False, document, reason=result.reason)

    async def handle_webhook(self, event: WebhookEvent) -> Optional[DocumentRecord]:
        """Reconcile the document behind a provider notification; provider failures are logged, not raised."""
        located = await self.repository.find_by_agreement_id(event.agreement_id)
        if located is None:
            logger.info("signature.webhook.unmatched", agreement_id=event.agreement_id, event_type=event.event_type)
            return None

        async with self.repository.lock(located.id):
            document = await self.repository.get(located.id)
            try:
                snapshot = await self.provider.get_agreement_snapshot(event.agreement_id)
            except SignatureError as e:
                logger.warning(
                    "signature.webhook.snapshot_failed",
                    agreement_id=event.agreement_id,
                    error=e.error_message,
                )
                return document
            logger.info(
                "signature.webhook.received",
                agreement_id=event.agreement_id,
                event_type=event.event_type,
                participant=event.participant_email,
            )
            return await self._apply_snapshot(document, snapshot)

    async def refresh_signing_urls(self, document_id: str) -> DocumentRecord:
        async with self.repository.lock(document_id):
            document = await self.repository.get(document_id)
            if not document.provider_agreement_id:
                raise InvalidTransitionError(f"Document {document_id} has not been sent for signature")

            urls = await self.provider.get_signing_urls(document.provider_agreement_id)
            updated = document.clone()
            changed = False
            for recipient in updated.recipients:
                url = urls.get(recipient.email_key)
                if url and url != recipient.signing_url:
                    recipient.signing_url = url
                    changed = True
            if not changed:
                return document
            return await self.repository.save(updated)

    def rate_limit_status(self) -> RateLimitStatus:
        return self.gate.status()
