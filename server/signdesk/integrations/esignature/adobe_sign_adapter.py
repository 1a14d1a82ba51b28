"""
Adobe Sign E-signature Adapter

Speaks the Adobe Sign REST v6 API through :class:`RetryingTransport` and turns
its responses into the normalized types of :mod:`.base`.
"""

import asyncio
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .base import (
    AgreementEvent,
    AgreementRequest,
    AgreementSnapshot,
    AgreementSummary,
    ConfigurationError,
    DocumentValidationError,
    ESignatureProvider,
    ESignatureType,
    NetworkError,
    ParticipantSnapshot,
    ProviderError,
    ResendGuard,
    SignatureError,
)
from .transport import MultipartFile, ProviderRequest, RetryingTransport, RetryPolicy

logger = logging.getLogger(__name__)

API_PREFIX = "api/rest/v6"

# Candidate date fields, in no particular order; the reconciler keeps the latest.
SIGNED_DATE_FIELDS = ("completedDate", "signedDate", "statusUpdateDate", "lastModifiedDate")
ACCESSED_DATE_FIELDS = ("lastViewedDate", "viewedDate", "lastAccessedDate")


def parse_provider_datetime(value: Any) -> Optional[datetime]:
    """Parse an Adobe Sign timestamp (``2024-05-01T10:00:00Z``) into an aware datetime."""
    if not value or not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class AdobeSignAdapter(ESignatureProvider):
    """Adobe Sign e-signature adapter."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        access_token: Optional[str] = None,
        policy: Optional[RetryPolicy] = None,
        default_retry_after: int = 3600,
        transport: Optional[RetryingTransport] = None,
        **config
    ):
        """
        Initialize Adobe Sign adapter.

        Args:
            base_url: API access point of the account's shard
            access_token: Integration key or OAuth access token
            policy: Retry policy for every call
            default_retry_after: Wait assumed when a 429 carries no hint
            transport: Pre-built transport, mainly for tests
            **config: Additional configuration

        Raises:
            ConfigurationError: If the endpoint or credential is missing
        """
        super().__init__(base_url=base_url, **config)
        self.transport = transport or RetryingTransport(
            base_url,
            access_token,
            policy,
            default_retry_after=default_retry_after,
        )

    @classmethod
    def from_settings(cls, settings) -> "AdobeSignAdapter":
        return cls(
            base_url=settings.esign_base_url,
            access_token=settings.esign_access_token,
            policy=RetryPolicy.from_settings(settings),
            default_retry_after=settings.esign_default_retry_after_seconds,
        )

    def _get_provider_type(self) -> ESignatureType:
        """Return the provider type identifier."""
        return ESignatureType.ADOBE_SIGN

    async def upload_transient_document(self, file_path: str, file_name: str, mime_type: str) -> str:
        content = await asyncio.to_thread(Path(file_path).read_bytes)
        request = ProviderRequest(
            method="POST",
            path=f"{API_PREFIX}/transientDocuments",
            operation="upload_transient_document",
            form_fields=(("File-Name", file_name), ("Mime-Type", mime_type)),
            file=MultipartFile("File", file_name, content, mime_type),
            mutating=True,
        )
        try:
            response = await self.transport.execute(request)
        except ProviderError as e:
            if e.status == 413:
                raise DocumentValidationError("Document is too large for the signing provider") from e
            if e.status == 415:
                raise DocumentValidationError("Document type is not supported by the signing provider") from e
            raise

        transient_id = response.body.get("transientDocumentId")
        if not transient_id:
            raise ProviderError(response.status, response.body, message="upload response carried no transientDocumentId")
        logger.info("Uploaded transient document %s as %s", file_name, transient_id)
        return transient_id

    @staticmethod
    def build_agreement_payload(request: AgreementRequest) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "fileInfos": [{"transientDocumentId": request.transient_document_id}],
            "name": request.name,
            "participantSetsInfo": [
                {
                    "memberInfos": [{"email": member.email} for member in participant_set.members],
                    "order": participant_set.order,
                    "role": participant_set.role,
                }
                for participant_set in request.participant_sets
            ],
            "signatureType": request.signature_type,
            "state": request.state,
            "externalId": {"id": request.external_id},
        }

        positioned = [form_field for form_field in request.form_fields if form_field.positioned]
        if request.auto_positioning and positioned:
            payload["formFieldLayerTemplates"] = [{
                "formFields": [
                    {
                        "name": form_field.name,
                        "inputType": form_field.field_type.upper(),
                        "required": form_field.required,
                        "locations": [{
                            "pageNumber": form_field.page,
                            "left": form_field.x,
                            "top": form_field.y,
                            "width": form_field.width or 200,
                            "height": form_field.height or 50,
                        }],
                    }
                    for form_field in positioned
                ]
            }]
        return payload

    async def create_agreement(self, request: AgreementRequest, resend_guard: Optional[ResendGuard] = None) -> str:
        provider_request = ProviderRequest(
            method="POST",
            path=f"{API_PREFIX}/agreements",
            operation="create_agreement",
            json=self.build_agreement_payload(request),
            mutating=True,
            idempotency_key=request.external_id,
        )
        response = await self.transport.execute(provider_request, resend_guard=resend_guard)
        agreement_id = response.body.get("id")
        if not agreement_id:
            raise ProviderError(response.status, response.body, message="agreement response carried no id")
        return agreement_id

    async def _get(self, path: str, operation: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        response = await self.transport.execute(
            ProviderRequest(method="GET", path=f"{API_PREFIX}/{path}", operation=operation, params=params)
        )
        return response.body

    async def get_agreement_snapshot(self, agreement_id: str) -> AgreementSnapshot:
        info = await self._get(f"agreements/{agreement_id}", "get_agreement_info")
        members = await self._get(f"agreements/{agreement_id}/members", "get_agreement_members")
        try:
            events_body = await self._get(f"agreements/{agreement_id}/events", "get_agreement_events")
        except (NetworkError, ProviderError) as e:
            logger.warning("Events unavailable for agreement %s: %s", agreement_id, e.error_message)
            events_body = {}

        return AgreementSnapshot(
            agreement_id=agreement_id,
            status=info.get("status"),
            name=info.get("name"),
            participants=self._parse_participants(members),
            events=self._parse_events(events_body),
        )

    def _parse_participants(self, members: Dict[str, Any]) -> List[ParticipantSnapshot]:
        participants: List[ParticipantSnapshot] = []
        participant_sets = members.get("participantSets")
        if not isinstance(participant_sets, list):
            return participants

        for participant_set in participant_sets:
            if not isinstance(participant_set, dict):
                continue
            order = participant_set.get("order")
            for member in participant_set.get("memberInfos") or []:
                if not isinstance(member, dict) or not member.get("email"):
                    continue
                participants.append(ParticipantSnapshot(
                    email=member["email"],
                    status=member.get("status") or participant_set.get("status"),
                    name=member.get("name"),
                    order=order if isinstance(order, int) and order > 0 else None,
                    signed_dates=self._collect_dates(member, participant_set, SIGNED_DATE_FIELDS),
                    accessed_dates=self._collect_dates(member, participant_set, ACCESSED_DATE_FIELDS),
                ))
        return participants

    @staticmethod
    def _collect_dates(member: Dict[str, Any], participant_set: Dict[str, Any], names) -> List[datetime]:
        dates = []
        for source in (member, participant_set):
            for name in names:
                parsed = parse_provider_datetime(source.get(name))
                if parsed is not None:
                    dates.append(parsed)
        return dates

    @staticmethod
    def _parse_events(body: Dict[str, Any]) -> List[AgreementEvent]:
        events = []
        for raw in body.get("events") or []:
            if not isinstance(raw, dict) or not raw.get("type"):
                continue
            events.append(AgreementEvent(
                event_type=str(raw["type"]).upper(),
                participant_email=raw.get("participantEmail") or raw.get("actingUserEmail"),
                date=parse_provider_datetime(raw.get("date")),
            ))
        return events

    async def get_signing_urls(self, agreement_id: str) -> Dict[str, str]:
        body = await self._get(f"agreements/{agreement_id}/signingUrls", "get_signing_urls")
        urls: Dict[str, str] = {}
        for url_set in body.get("signingUrlSetInfos") or []:
            for entry in url_set.get("signingUrls") or []:
                email = entry.get("email")
                url = entry.get("esignUrl")
                if email and url:
                    urls[email.lower()] = url
        return urls

    async def search_agreements(
        self,
        external_id: Optional[str] = None,
        name: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[AgreementSummary]:
        params = {"externalId": external_id} if external_id else None
        body = await self._get("agreements", "search_agreements", params=params)

        results = []
        for row in body.get("userAgreementList") or []:
            if not isinstance(row, dict) or not row.get("id"):
                continue
            summary = AgreementSummary(
                agreement_id=row["id"],
                name=row.get("name"),
                status=row.get("status"),
                display_date=parse_provider_datetime(row.get("displayDate")),
                external_id=self._external_id_of(row),
            )
            if external_id and summary.external_id != external_id:
                continue
            if name and summary.name != name:
                continue
            if since and (summary.display_date is None or summary.display_date < since):
                continue
            results.append(summary)

        results.sort(
            key=lambda item: item.display_date or datetime.min.replace(tzinfo=timezone.utc),
            reverse=True,
        )
        return results

    @staticmethod
    def _external_id_of(row: Dict[str, Any]) -> Optional[str]:
        value = row.get("externalId")
        if isinstance(value, dict):
            return value.get("id")
        return value

    async def create_webhook(self, url: str, name: str, events: List[str]) -> Dict[str, Any]:
        if not url.startswith("https://"):
            raise ConfigurationError("Webhook URL must use https")
        request = ProviderRequest(
            method="POST",
            path=f"{API_PREFIX}/webhooks",
            operation="create_webhook",
            json={
                "name": name,
                "scope": "ACCOUNT",
                "state": "ACTIVE",
                "webhookSubscriptionEvents": list(events),
                "webhookUrlInfo": {"url": url},
            },
            mutating=True,
        )
        try:
            response = await self.transport.execute(request)
        except SignatureError as e:
            logger.error("Webhook registration failed: %s", e.error_message)
            raise
        logger.info("Registered webhook %s for %s", response.body.get("id"), url)
        return response.body

    async def close(self) -> None:
        await self.transport.close()
