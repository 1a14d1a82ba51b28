from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable

from signdesk.models.document import AGREEMENT_BACKED_STATUSES, DocumentStatus
from signdesk.services.records import DocumentRecord


ALLOWED_TRANSITIONS: dict[DocumentStatus, tuple[DocumentStatus, ...]] = {
    DocumentStatus.UPLOADED: (DocumentStatus.PROCESSING, DocumentStatus.READY_FOR_SIGNATURE, DocumentStatus.FAILED),
    DocumentStatus.PROCESSING: (DocumentStatus.READY_FOR_SIGNATURE, DocumentStatus.FAILED),
    DocumentStatus.READY_FOR_SIGNATURE: (
        DocumentStatus.SENT_FOR_SIGNATURE,
        DocumentStatus.SIGNATURE_ERROR,
        DocumentStatus.FAILED,
    ),
    DocumentStatus.SIGNATURE_ERROR: (
        DocumentStatus.SENT_FOR_SIGNATURE,
        DocumentStatus.READY_FOR_SIGNATURE,
        DocumentStatus.FAILED,
    ),
    DocumentStatus.FAILED: (
        DocumentStatus.SENT_FOR_SIGNATURE,
        DocumentStatus.READY_FOR_SIGNATURE,
        DocumentStatus.SIGNATURE_ERROR,
    ),
    DocumentStatus.SENT_FOR_SIGNATURE: (
        DocumentStatus.OUT_FOR_SIGNATURE,
        DocumentStatus.PARTIALLY_SIGNED,
        DocumentStatus.COMPLETED,
        DocumentStatus.CANCELLED,
        DocumentStatus.EXPIRED,
    ),
    DocumentStatus.OUT_FOR_SIGNATURE: (
        DocumentStatus.SENT_FOR_SIGNATURE,
        DocumentStatus.PARTIALLY_SIGNED,
        DocumentStatus.COMPLETED,
        DocumentStatus.CANCELLED,
        DocumentStatus.EXPIRED,
    ),
    DocumentStatus.PARTIALLY_SIGNED: (
        DocumentStatus.COMPLETED,
        DocumentStatus.CANCELLED,
        DocumentStatus.EXPIRED,
    ),
    DocumentStatus.COMPLETED: (),
    DocumentStatus.CANCELLED: (),
    DocumentStatus.EXPIRED: (),
}

SENDABLE_STATUSES = frozenset({
    DocumentStatus.READY_FOR_SIGNATURE,
    DocumentStatus.SIGNATURE_ERROR,
    DocumentStatus.FAILED,
})


class InvalidTransitionError(ValueError):
    pass


@dataclass(slots=True)
class TransitionResult:
    succeeded: bool
    reason: str | None = None


def can_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
    allowed: Iterable[DocumentStatus] | None = ALLOWED_TRANSITIONS.get(current)
    return allowed is not None and target in allowed


def advance_status(
    document: DocumentRecord,
    target: DocumentStatus,
    *,
    allow_missing_agreement: bool = False,
) -> TransitionResult:
    if document.status == target:
        return TransitionResult(succeeded=True)

    if not can_transition(document.status, target):
        return TransitionResult(False, f"status transition {document.status.value} → {target.value} not permitted")

    if target in AGREEMENT_BACKED_STATUSES and not document.provider_agreement_id and not allow_missing_agreement:
        return TransitionResult(False, f"cannot move to {target.value} without a provider agreement id")

    document.status = target
    return TransitionResult(succeeded=True)


def require_transition(document: DocumentRecord, target: DocumentStatus, **kwargs) -> None:
    result = advance_status(document, target, **kwargs)
    if not result.succeeded:
        raise InvalidTransitionError(result.reason)
