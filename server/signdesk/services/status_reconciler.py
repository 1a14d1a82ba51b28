"""
Provider status reconciliation.

Maps the provider's agreement and participant vocabulary onto the local
document and recipient state machine. This module holds the only copy of
that vocabulary; every caller (manual status checks, webhooks, recovery)
goes through :meth:`StatusReconciler.reconcile`.

The reconciler is a pure function of (previous document, snapshot). It never
performs I/O, never raises on malformed input and never mutates the document
it was given. Applying the same snapshot twice yields no changes the second
time, so callers persist only when ``outcome.changed`` is true.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Iterable, Optional

from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import AgreementEvent, AgreementSnapshot, ParticipantSnapshot
from signdesk.models.document import DocumentStatus, RecipientStatus, TERMINAL_RECIPIENT_STATUSES
from signdesk.services.records import DocumentRecord, RecipientRecord
from signdesk.services.state_machine import can_transition

logger = get_logger(__name__)


class AgreementPhase(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    EXPIRED = "expired"
    IN_FLIGHT = "in_flight"


AGREEMENT_STATUS_TABLE: dict[str, AgreementPhase] = {
    "SIGNED": AgreementPhase.COMPLETED,
    "APPROVED": AgreementPhase.COMPLETED,
    "ACCEPTED": AgreementPhase.COMPLETED,
    "FORM_FILLED": AgreementPhase.COMPLETED,
    "DELIVERED": AgreementPhase.COMPLETED,
    "COMPLETED": AgreementPhase.COMPLETED,
    "CANCELLED": AgreementPhase.CANCELLED,
    "ABORTED": AgreementPhase.CANCELLED,
    "DECLINED": AgreementPhase.CANCELLED,
    "EXPIRED": AgreementPhase.EXPIRED,
    "IN_PROCESS": AgreementPhase.IN_FLIGHT,
    "OUT_FOR_SIGNATURE": AgreementPhase.IN_FLIGHT,
    "OUT_FOR_APPROVAL": AgreementPhase.IN_FLIGHT,
    "OUT_FOR_ACCEPTANCE": AgreementPhase.IN_FLIGHT,
    "OUT_FOR_DELIVERY": AgreementPhase.IN_FLIGHT,
    "OUT_FOR_FORM_FILLING": AgreementPhase.IN_FLIGHT,
}

IN_FLIGHT_PREFIXES = ("OUT_FOR_", "WAITING_FOR_")
AWAITING_ACTION_PREFIX = "WAITING_FOR_MY_"

PARTICIPANT_STATUS_TABLE: dict[str, RecipientStatus] = {
    "SIGNED": RecipientStatus.SIGNED,
    "APPROVED": RecipientStatus.SIGNED,
    "ACCEPTED": RecipientStatus.SIGNED,
    "FORM_FILLED": RecipientStatus.SIGNED,
    "DELIVERED": RecipientStatus.SIGNED,
    "COMPLETED": RecipientStatus.SIGNED,
    "DELEGATED": RecipientStatus.SIGNED,
    "WAITING_FOR_MY_SIGNATURE": RecipientStatus.SENT,
    "WAITING_FOR_MY_APPROVAL": RecipientStatus.SENT,
    "WAITING_FOR_MY_ACCEPTANCE": RecipientStatus.SENT,
    "WAITING_FOR_MY_ACKNOWLEDGEMENT": RecipientStatus.SENT,
    "WAITING_FOR_MY_FORM_FILLING": RecipientStatus.SENT,
    "WAITING_FOR_MY_DELEGATION": RecipientStatus.SENT,
    "WAITING_FOR_MY_VERIFICATION": RecipientStatus.SENT,
    "WAITING_FOR_MY_DELIVERY": RecipientStatus.SENT,
    "ACTIVE": RecipientStatus.SENT,
    "WAITING_FOR_OTHERS": RecipientStatus.WAITING,
    "NOT_YET_VISIBLE": RecipientStatus.WAITING,
    "DECLINED": RecipientStatus.DECLINED,
    "REJECTED": RecipientStatus.DECLINED,
    "EXPIRED": RecipientStatus.EXPIRED,
}

SIGNED_EVENT_TYPES = frozenset({
    "ESIGNED",
    "DIGSIGNED",
    "SIGNED",
    "APPROVED",
    "ACCEPTED",
    "FORM_FILLED",
    "DELIVERED",
    "ACTION_COMPLETED",
})

VIEWED_EVENT_TYPES = frozenset({"VIEWED", "EMAIL_VIEWED", "ACTION_VIEWED"})


@dataclass(frozen=True)
class FieldChange:
    field: str
    old: Any
    new: Any


@dataclass
class ReconcileOutcome:
    document: DocumentRecord
    changes: list[FieldChange] = field(default_factory=list)
    unrecognized: list[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return bool(self.changes)


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _latest(candidates: Iterable[Optional[datetime]]) -> Optional[datetime]:
    present = [_aware(candidate) for candidate in candidates if isinstance(candidate, datetime)]
    return max(present) if present else None


def map_participant_status(raw: Optional[str]) -> Optional[RecipientStatus]:
    if not raw or not isinstance(raw, str):
        return None
    key = raw.strip().upper()
    status = PARTICIPANT_STATUS_TABLE.get(key)
    if status is None and key.startswith(AWAITING_ACTION_PREFIX):
        return RecipientStatus.SENT
    return status


def map_agreement_status(raw: Optional[str]) -> Optional[AgreementPhase]:
    if not raw or not isinstance(raw, str):
        return None
    key = raw.strip().upper()
    phase = AGREEMENT_STATUS_TABLE.get(key)
    if phase is None and key.startswith(IN_FLIGHT_PREFIXES):
        return AgreementPhase.IN_FLIGHT
    return phase


class StatusReconciler:
    """Folds provider snapshots into local document state."""

    def reconcile(self, document: DocumentRecord, snapshot: Optional[AgreementSnapshot]) -> ReconcileOutcome:
        updated = document.clone()
        outcome = ReconcileOutcome(document=updated)
        if snapshot is None:
            return outcome

        events = [event for event in (snapshot.events or []) if isinstance(event, AgreementEvent)]
        for participant in snapshot.participants or []:
            if not isinstance(participant, ParticipantSnapshot) or not participant.email:
                continue
            recipient = updated.recipient_by_email(participant.email)
            if recipient is None:
                logger.debug("reconciler.participant.unmatched", agreement_id=snapshot.agreement_id)
                continue
            self._reconcile_recipient(recipient, participant, events, outcome)

        self._reconcile_document_status(updated, snapshot, outcome)

        if outcome.changed:
            logger.info(
                "reconciler.document.changed",
                document_id=updated.id,
                agreement_id=snapshot.agreement_id,
                changes=[change.field for change in outcome.changes],
            )
        return outcome

    def _reconcile_recipient(
        self,
        recipient: RecipientRecord,
        participant: ParticipantSnapshot,
        events: list[AgreementEvent],
        outcome: ReconcileOutcome,
    ) -> None:
        prefix = f"recipients[{recipient.email_key}]"
        own_events = [
            event for event in events
            if event.participant_email and event.participant_email.strip().lower() == recipient.email_key
        ]

        accessed = _latest(
            list(participant.accessed_dates or [])
            + [event.date for event in own_events if event.event_type in VIEWED_EVENT_TYPES]
        )
        current_accessed = _aware(recipient.last_accessed_at)
        if accessed is not None and (current_accessed is None or accessed > current_accessed):
            outcome.changes.append(FieldChange(f"{prefix}.last_accessed_at", recipient.last_accessed_at, accessed))
            recipient.last_accessed_at = accessed

        mapped = map_participant_status(participant.status)
        if participant.status and mapped is None:
            logger.warning(
                "reconciler.participant_status.unrecognized",
                status=participant.status,
                recipient=recipient.email_key,
            )
            outcome.unrecognized.append(str(participant.status))
        if mapped is RecipientStatus.SENT and recipient.last_accessed_at is not None:
            mapped = RecipientStatus.VIEWED

        if mapped is not None and mapped != recipient.status:
            if recipient.status in TERMINAL_RECIPIENT_STATUSES:
                logger.debug(
                    "reconciler.recipient.terminal_kept",
                    recipient=recipient.email_key,
                    status=recipient.status.value,
                    reported=mapped.value,
                )
            else:
                outcome.changes.append(FieldChange(f"{prefix}.status", recipient.status, mapped))
                recipient.status = mapped

        if recipient.status is RecipientStatus.SIGNED:
            signed = _latest(
                list(participant.signed_dates or [])
                + [event.date for event in own_events if event.event_type in SIGNED_EVENT_TYPES]
            )
            current_signed = _aware(recipient.signed_at)
            if signed is not None and (current_signed is None or signed > current_signed):
                outcome.changes.append(FieldChange(f"{prefix}.signed_at", recipient.signed_at, signed))
                recipient.signed_at = signed

        if isinstance(participant.order, int) and participant.order > 0 and participant.order != recipient.order:
            outcome.changes.append(FieldChange(f"{prefix}.order", recipient.order, participant.order))
            recipient.order = participant.order

    def _reconcile_document_status(
        self,
        document: DocumentRecord,
        snapshot: AgreementSnapshot,
        outcome: ReconcileOutcome,
    ) -> None:
        phase = map_agreement_status(snapshot.status)
        if phase is None:
            if snapshot.status:
                logger.warning(
                    "reconciler.agreement_status.unrecognized",
                    status=snapshot.status,
                    agreement_id=snapshot.agreement_id,
                )
                outcome.unrecognized.append(str(snapshot.status))
            return

        if phase is AgreementPhase.COMPLETED:
            target = DocumentStatus.COMPLETED
        elif phase is AgreementPhase.CANCELLED:
            target = DocumentStatus.CANCELLED
        elif phase is AgreementPhase.EXPIRED:
            target = DocumentStatus.EXPIRED
        elif any(recipient.status is RecipientStatus.SIGNED for recipient in document.recipients):
            target = DocumentStatus.PARTIALLY_SIGNED
        else:
            target = DocumentStatus.SENT_FOR_SIGNATURE

        if target == document.status:
            return
        if not can_transition(document.status, target):
            logger.debug(
                "reconciler.status.transition_skipped",
                document_id=document.id,
                current=document.status.value,
                reported=target.value,
            )
            return
        outcome.changes.append(FieldChange("status", document.status, target))
        document.status = target
