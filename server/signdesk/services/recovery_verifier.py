"""
Recovery verification after ambiguous agreement creation.

When the connection drops after the create request was sent but before the
response was read, the agreement may exist on the provider side. The verifier
looks for evidence in a fixed order and reports ``Found`` or ``NotFound``.
Probe failures are logged and treated as inconclusive; they never escape.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional, TypeVar, Union

from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import AgreementSummary, ESignatureProvider, SignatureError, SigningFlow
from signdesk.models.document import DocumentStatus, RecipientStatus
from signdesk.services.records import DocumentRecord
from signdesk.services.state_machine import require_transition

logger = get_logger(__name__)

T = TypeVar("T")

VERIFIED = "verified"
AGGRESSIVE = "aggressive"


@dataclass(frozen=True)
class Found:
    agreement_id: str
    evidence: str


@dataclass(frozen=True)
class NotFound:
    reason: str
    inconclusive: bool = False


VerificationResult = Union[Found, NotFound]


class RecoveryVerifier:
    def __init__(
        self,
        provider: ESignatureProvider,
        *,
        posture: str = VERIFIED,
        search_window: timedelta = timedelta(minutes=60),
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        if posture not in (VERIFIED, AGGRESSIVE):
            raise ValueError(f"unknown recovery posture '{posture}'")
        self.provider = provider
        self.posture = posture
        self.search_window = search_window
        self._clock = clock

    async def verify(self, document: DocumentRecord) -> VerificationResult:
        if document.provider_agreement_id:
            return Found(document.provider_agreement_id, "existing_id")

        errored = False
        token = document.provider_metadata.get("idempotencyToken")
        if token:
            matches, errored = await self._probe(
                "external_id", lambda: self.provider.search_agreements(external_id=token)
            )
            if matches:
                return self._found(document, matches[0].agreement_id, "external_id")
            if not errored:
                # The token rides on every create; an answered search is final.
                logger.info("recovery.verify.not_found", document_id=document.id, inconclusive=False)
                return NotFound("no agreement carries the idempotency token")

        since = self._clock() - self.search_window
        candidates, failed = await self._probe(
            "agreement_search", lambda: self.provider.search_agreements(name=document.name, since=since)
        )
        errored |= failed

        for candidate in candidates or []:
            if not self._correlates(candidate, token):
                continue
            urls, failed = await self._probe(
                "signing_urls", lambda: self.provider.get_signing_urls(candidate.agreement_id)
            )
            errored |= failed
            if urls and self._urls_cover_recipients(document, urls):
                return self._found(document, candidate.agreement_id, "signing_urls")

        logger.info("recovery.verify.not_found", document_id=document.id, inconclusive=errored)
        return NotFound("no matching agreement or signing URL evidence", inconclusive=errored)

    @staticmethod
    def _correlates(candidate: AgreementSummary, token: Optional[str]) -> bool:
        """
        A name match alone never identifies our agreement.

        With a token the candidate must carry it. Without one only agreements
        that carry no external id at all qualify.
        """
        if token:
            return candidate.external_id == token
        return not candidate.external_id

    def _found(self, document: DocumentRecord, agreement_id: str, evidence: str) -> Found:
        logger.info("recovery.verify.found", document_id=document.id, agreement_id=agreement_id, evidence=evidence)
        return Found(agreement_id, evidence)

    async def _probe(self, name: str, call: Callable[[], Awaitable[T]]) -> tuple[Optional[T], bool]:
        try:
            return await call(), False
        except SignatureError as e:
            logger.warning("recovery.probe.failed", probe=name, error=e.error_message, error_code=e.error_code)
            return None, True

    @staticmethod
    def _urls_cover_recipients(document: DocumentRecord, urls: dict[str, str]) -> bool:
        expected = {recipient.email_key for recipient in document.recipients}
        if not expected or not set(urls) <= expected:
            return False
        if document.signing_flow is SigningFlow.PARALLEL:
            active = expected
        else:
            first = min(recipient.order for recipient in document.recipients)
            active = {recipient.email_key for recipient in document.recipients if recipient.order == first}
        return bool(active & set(urls))

    def apply_posture(self, document: DocumentRecord, result: VerificationResult) -> bool:
        """
        Fold a verification result into ``document`` according to the posture.

        Returns True when the document now counts as sent.
        """
        now = self._clock().isoformat()
        if isinstance(result, Found):
            document.provider_agreement_id = result.agreement_id
            if not document.has_agreement:
                require_transition(document, DocumentStatus.SENT_FOR_SIGNATURE)
                _mark_recipients_sent(document)
            document.error_message = None
            document.provider_metadata.pop("creationInFlight", None)
            document.provider_metadata.update({
                "agreementId": result.agreement_id,
                "verifiedRecovery": True,
                "recoveryTimestamp": now,
                "recoveryEvidence": result.evidence,
            })
            return True

        if self.posture != AGGRESSIVE:
            return False

        require_transition(document, DocumentStatus.SENT_FOR_SIGNATURE, allow_missing_agreement=True)
        _mark_recipients_sent(document)
        document.error_message = None
        document.provider_metadata.pop("creationInFlight", None)
        document.provider_metadata.update({
            "recoveryApplied": True,
            "recoveryTimestamp": now,
            "recoveryMethod": AGGRESSIVE,
            "recoveryReason": result.reason,
        })
        logger.warning("recovery.aggressive.applied", document_id=document.id, reason=result.reason)
        return True


def _mark_recipients_sent(document: DocumentRecord) -> None:
    for recipient in document.recipients:
        if recipient.status is RecipientStatus.PENDING:
            recipient.status = RecipientStatus.SENT
