"""
Signature service tests.

The provider is a mock unless a test wires the real adapter over a scripted
session; storage, creation strategy, recovery verifier, reconciler and
rate-limit gate are the real implementations.
"""

import asyncio
from datetime import datetime, timezone
from unittest.mock import AsyncMock

import aiohttp
import pytest

from signdesk.integrations.esignature.adobe_sign_adapter import AdobeSignAdapter
from signdesk.integrations.esignature.base import (
    AgreementSnapshot,
    AgreementSummary,
    DocumentValidationError,
    NetworkError,
    ParticipantSnapshot,
    ProviderError,
    RateLimitError,
    SigningFlow,
    WebhookEvent,
)
from signdesk.integrations.esignature.transport import RetryingTransport, RetryPolicy
from signdesk.models.document import DocumentStatus, RecipientStatus
from signdesk.services.agreement_strategy import AgreementCreationStrategy
from signdesk.services.document_repository import DocumentNotFoundError
from signdesk.services.document_storage import ProviderDocumentStorage
from signdesk.services.recovery_verifier import AGGRESSIVE, RecoveryVerifier
from signdesk.services.records import RecipientRecord
from signdesk.services.signature_service import SendStatus, SignatureService, register_document
from signdesk.services.state_machine import InvalidTransitionError
from signdesk.services.status_reconciler import StatusReconciler

SIGNED_AT = datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)


def build_service(repository, provider, gate, posture="verified"):
    verifier = RecoveryVerifier(provider, posture=posture)
    return SignatureService(
        repository=repository,
        provider=provider,
        storage=ProviderDocumentStorage(provider),
        strategy=AgreementCreationStrategy(provider, gate, verifier),
        reconciler=StatusReconciler(),
        verifier=verifier,
        gate=gate,
    )


@pytest.fixture
def service(repository, provider, gate):
    return build_service(repository, provider, gate)


@pytest.fixture
def aggressive_service(repository, provider, gate):
    return build_service(repository, provider, gate, posture=AGGRESSIVE)


@pytest.fixture
def stored(repository, document_factory, pdf_file):
    """Store a document backed by a real file and return its id."""

    async def _store(**fields):
        document = await repository.add(document_factory(file_path=pdf_file, **fields))
        return document.id

    return _store


@pytest.fixture
def sent(stored):
    async def _sent(**fields):
        return await stored(
            status=DocumentStatus.SENT_FOR_SIGNATURE,
            provider_agreement_id="agreement-1",
            **fields,
        )

    return _sent


class TestRegisterDocument:
    @pytest.mark.asyncio
    async def test_registers_ready_document(self, repository, pdf_file):
        document = await register_document(
            repository,
            name="NDA",
            file_path=pdf_file,
            recipients=[RecipientRecord(name="Alice", email="alice@example.com", order=1)],
        )

        assert document.status is DocumentStatus.READY_FOR_SIGNATURE
        assert document.version == 1
        assert document.id in repository.documents

    @pytest.mark.asyncio
    async def test_duplicate_recipients_rejected(self, repository, pdf_file):
        with pytest.raises(DocumentValidationError):
            await register_document(
                repository,
                name="NDA",
                file_path=pdf_file,
                recipients=[
                    RecipientRecord(name="Alice", email="alice@example.com", order=1),
                    RecipientRecord(name="Alice again", email="ALICE@example.com", order=2),
                ],
            )
        assert repository.documents == {}


class TestSendForSignature:
    @pytest.mark.asyncio
    async def test_sequential_send_uses_basic_method(self, service, provider, repository, stored, pdf_file):
        document_id = await stored()

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.SENT
        assert result.agreement_id == "agreement-1"
        assert result.method_used == "basic"
        request = provider.create_agreement.await_args.args[0]
        assert [s.order for s in request.participant_sets] == [1, 2]
        assert [s.members[0].email for s in request.participant_sets] == ["alice@example.com", "Bob@Example.com"]
        assert request.auto_positioning is True
        assert request.transient_document_id == "transient-1"
        provider.upload_transient_document.assert_awaited_once_with(
            pdf_file, "Master Services Agreement.pdf", "application/pdf"
        )

        saved = repository.documents[document_id]
        assert saved.status is DocumentStatus.SENT_FOR_SIGNATURE
        assert saved.provider_agreement_id == "agreement-1"
        assert {r.status for r in saved.recipients} == {RecipientStatus.SENT}
        assert saved.provider_metadata["methodUsed"] == "basic"
        assert saved.provider_metadata["idempotencyToken"] == request.external_id

    @pytest.mark.asyncio
    async def test_send_survives_dropped_connection_over_real_adapter(
        self, repository, gate, stored, scripted_session, http_response
    ):
        session = scripted_session(
            http_response(201, '{"transientDocumentId": "transient-1"}'),
            aiohttp.ServerDisconnectedError(),
            http_response(200, '{"userAgreementList": []}'),
            http_response(201, '{"id": "agreement-1"}'),
        )
        transport = RetryingTransport(
            "https://api.example.com/",
            "token-123",
            RetryPolicy(),
            sleep=AsyncMock(),
            rng=lambda: 0.5,
            session=session,
        )
        service = build_service(repository, AdobeSignAdapter(transport=transport), gate)
        document_id = await stored()

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.SENT
        assert result.agreement_id == "agreement-1"
        assert result.method_used == "basic"
        creates = [
            call for call in session.calls
            if call["method"] == "POST" and call["url"] == "https://api.example.com/api/rest/v6/agreements"
        ]
        assert len(creates) == 2
        assert creates[0]["json"] == creates[1]["json"]
        assert [s["order"] for s in creates[1]["json"]["participantSetsInfo"]] == [1, 2]

        token = repository.documents[document_id].provider_metadata["idempotencyToken"]
        search = session.calls[2]
        assert search["method"] == "GET"
        assert search["params"] == {"externalId": token}
        assert creates[1]["json"]["externalId"] == {"id": token}
        assert session.script == []

    @pytest.mark.asyncio
    async def test_text_tags_selected_when_markers_detected(self, service, provider, stored):
        document_id = await stored(auto_detected_fields=[{"name": "{{Sig_es_:signer1:signature}}"}])

        result = await service.send_for_signature(document_id)

        assert result.method_used == "text_tags"
        assert provider.create_agreement.await_args.args[0].auto_positioning is False

    @pytest.mark.asyncio
    async def test_rate_limit_reported_and_gate_blocks_next_send(self, service, provider, repository, stored):
        document_id = await stored()
        provider.create_agreement.side_effect = RateLimitError(120, {"retryAfter": 120})

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.RATE_LIMITED
        assert result.retry_after == 120
        assert result.message == "Rate limited. Retry after 120 seconds (2 minutes)"
        saved = repository.documents[document_id]
        assert saved.status is DocumentStatus.READY_FOR_SIGNATURE
        assert saved.provider_metadata["rateLimited"] is True
        assert saved.provider_metadata["retryAfter"] == 120

        provider.upload_transient_document.reset_mock()
        provider.create_agreement.reset_mock()

        second = await service.send_for_signature(document_id)

        assert second.status is SendStatus.RATE_LIMITED
        assert second.retry_after == 120
        provider.upload_transient_document.assert_not_awaited()
        provider.create_agreement.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rate_limit_on_upload(self, service, provider, gate, stored):
        document_id = await stored()
        provider.upload_transient_document.side_effect = RateLimitError(60)

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.RATE_LIMITED
        assert gate.check_allowed().allowed is False
        provider.create_agreement.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_validation_happens_before_upload(self, service, provider, stored):
        document_id = await stored(recipients=[
            RecipientRecord(name="Alice", email="alice@example.com", order=1),
            RecipientRecord(name="Bob", email="bob@example.com", order=1),
        ])

        with pytest.raises(DocumentValidationError):
            await service.send_for_signature(document_id)

        provider.upload_transient_document.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_parallel_flow_shares_one_order(self, service, provider, stored):
        document_id = await stored(signing_flow=SigningFlow.PARALLEL, recipients=[
            RecipientRecord(name="Alice", email="alice@example.com", order=1),
            RecipientRecord(name="Bob", email="bob@example.com", order=1),
        ])

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.SENT
        request = provider.create_agreement.await_args.args[0]
        assert len(request.participant_sets) == 1
        assert len(request.participant_sets[0].members) == 2

    @pytest.mark.asyncio
    async def test_provider_rejection_marks_signature_error(self, service, provider, repository, stored):
        document_id = await stored()
        provider.create_agreement.side_effect = ProviderError(400, {"code": "INVALID_ARGUMENTS", "message": "bad"})

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.FAILED
        assert result.method_used == "basic"
        saved = repository.documents[document_id]
        assert saved.status is DocumentStatus.SIGNATURE_ERROR
        assert saved.error_message == result.error

    @pytest.mark.asyncio
    async def test_failed_upload_marks_signature_error(self, service, provider, repository, stored):
        document_id = await stored()
        provider.upload_transient_document.side_effect = ProviderError(500, {"message": "boom"}, exhausted=True, attempts=5)

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.FAILED
        assert result.error.startswith("Document upload failed")
        provider.create_agreement.assert_not_awaited()
        assert repository.documents[document_id].status is DocumentStatus.SIGNATURE_ERROR

    @pytest.mark.asyncio
    async def test_already_sent_document_is_refused(self, service, provider, sent):
        document_id = await sent()

        with pytest.raises(InvalidTransitionError):
            await service.send_for_signature(document_id)

        provider.upload_transient_document.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_document(self, service):
        with pytest.raises(DocumentNotFoundError):
            await service.send_for_signature("missing")


class TestAmbiguousCreation:
    @pytest.mark.asyncio
    async def test_exhausted_send_recovered_by_external_id(self, service, provider, repository, stored):
        document_id = await stored(provider_metadata={"idempotencyToken": "token-abc"})
        provider.create_agreement.side_effect = NetworkError("socket hang up", exhausted=True, attempts=5)
        provider.search_agreements.return_value = [AgreementSummary("agreement-7", external_id="token-abc")]

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.RECOVERED
        assert result.agreement_id == "agreement-7"
        saved = repository.documents[document_id]
        assert saved.provider_agreement_id == "agreement-7"
        assert saved.status is DocumentStatus.SENT_FOR_SIGNATURE
        assert saved.provider_metadata["verifiedRecovery"] is True
        assert saved.provider_metadata["recoveryEvidence"] == "external_id"

    @pytest.mark.asyncio
    async def test_unconfirmed_send_fails_and_keeps_token(self, service, provider, repository, stored):
        document_id = await stored(provider_metadata={"idempotencyToken": "token-abc"})
        provider.create_agreement.side_effect = NetworkError("socket hang up", exhausted=True, attempts=5)

        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.FAILED
        saved = repository.documents[document_id]
        assert saved.status is DocumentStatus.SIGNATURE_ERROR
        assert saved.provider_agreement_id is None
        assert saved.provider_metadata["ambiguousCreation"] is True
        assert saved.provider_metadata["idempotencyToken"] == "token-abc"

    @pytest.mark.asyncio
    async def test_retry_after_ambiguous_failure_reuses_token(self, service, provider, repository, stored):
        document_id = await stored(provider_metadata={"idempotencyToken": "token-abc"})
        provider.create_agreement.side_effect = [
            NetworkError("socket hang up", exhausted=True, attempts=5),
            "agreement-2",
        ]

        await service.send_for_signature(document_id)
        result = await service.send_for_signature(document_id)

        assert result.status is SendStatus.SENT
        assert provider.create_agreement.await_args.args[0].external_id == "token-abc"
        assert "ambiguousCreation" not in repository.documents[document_id].provider_metadata

    @pytest.mark.asyncio
    async def test_aggressive_posture_marks_sent_without_id(self, aggressive_service, provider, repository, stored):
        document_id = await stored()
        provider.create_agreement.side_effect = NetworkError("socket hang up", exhausted=True, attempts=5)

        result = await aggressive_service.send_for_signature(document_id)

        assert result.status is SendStatus.RECOVERED
        assert result.recovery_applied is True
        saved = repository.documents[document_id]
        assert saved.status is DocumentStatus.SENT_FOR_SIGNATURE
        assert saved.provider_agreement_id is None
        assert saved.provider_metadata["recoveryApplied"] is True


class TestInterruptedSend:
    @pytest.mark.asyncio
    async def test_cancellation_flags_creation_in_flight(self, service, provider, repository, stored):
        document_id = await stored()
        provider.create_agreement.side_effect = asyncio.CancelledError()

        with pytest.raises(asyncio.CancelledError):
            await service.send_for_signature(document_id)

        assert repository.documents[document_id].provider_metadata["creationInFlight"] is True
        with pytest.raises(InvalidTransitionError):
            await service.send_for_signature(document_id)

    @pytest.mark.asyncio
    async def test_recover_without_evidence_marks_failed(self, service, provider, repository, stored):
        document_id = await stored(provider_metadata={"idempotencyToken": "token-abc", "creationInFlight": True})

        result = await service.recover_send(document_id)

        assert result.recovered is False
        saved = repository.documents[document_id]
        assert saved.status is DocumentStatus.FAILED
        assert "creationInFlight" not in saved.provider_metadata
        assert saved.error_message.startswith("Interrupted send could not be confirmed")

    @pytest.mark.asyncio
    async def test_inconclusive_recover_leaves_flag(self, service, provider, repository, stored):
        document_id = await stored(provider_metadata={"idempotencyToken": "token-abc", "creationInFlight": True})
        provider.search_agreements.side_effect = NetworkError("reset", exhausted=True, attempts=5)

        result = await service.recover_send(document_id)

        assert result.recovered is False
        saved = repository.documents[document_id]
        assert saved.status is DocumentStatus.READY_FOR_SIGNATURE
        assert saved.provider_metadata["creationInFlight"] is True
        assert repository.saves == 0

    @pytest.mark.asyncio
    async def test_recover_with_evidence(self, service, provider, repository, stored):
        document_id = await stored(provider_metadata={"idempotencyToken": "token-abc", "creationInFlight": True})
        provider.search_agreements.return_value = [AgreementSummary("agreement-3", external_id="token-abc")]

        result = await service.recover_send(document_id)

        assert result.recovered is True
        assert result.evidence == "external_id"
        saved = repository.documents[document_id]
        assert saved.provider_agreement_id == "agreement-3"
        assert saved.status is DocumentStatus.SENT_FOR_SIGNATURE

    @pytest.mark.asyncio
    async def test_recover_existing_agreement(self, service, provider, sent):
        document_id = await sent()

        result = await service.recover_send(document_id)

        assert result.recovered is True
        assert result.evidence == "existing_id"
        provider.search_agreements.assert_not_awaited()


class TestCheckStatus:
    @pytest.mark.asyncio
    async def test_unsent_document_returned_without_provider_call(self, service, provider, stored):
        document_id = await stored()

        document = await service.check_status(document_id)

        assert document.status is DocumentStatus.READY_FOR_SIGNATURE
        provider.get_agreement_snapshot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_persists_only_on_change(self, service, provider, repository, sent):
        document_id = await sent()
        provider.get_agreement_snapshot.return_value = AgreementSnapshot(
            agreement_id="agreement-1",
            status="OUT_FOR_SIGNATURE",
            participants=[
                ParticipantSnapshot(email="alice@example.com", status="SIGNED", signed_dates=[SIGNED_AT]),
                ParticipantSnapshot(email="bob@example.com", status="WAITING_FOR_MY_SIGNATURE"),
            ],
        )

        first = await service.check_status(document_id)
        second = await service.check_status(document_id)

        assert first.status is DocumentStatus.PARTIALLY_SIGNED
        assert first.recipients[0].signed_at == SIGNED_AT
        assert "lastStatusSync" in first.provider_metadata
        assert second.version == first.version
        assert repository.saves == 1


class TestHandleWebhook:
    @pytest.mark.asyncio
    async def test_unmatched_agreement_is_ignored(self, service, provider):
        result = await service.handle_webhook(WebhookEvent("agreement-unknown", "AGREEMENT_SIGNED"))

        assert result is None
        provider.get_agreement_snapshot.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_matched_agreement_is_reconciled(self, service, provider, repository, sent):
        document_id = await sent()
        provider.get_agreement_snapshot.return_value = AgreementSnapshot(
            agreement_id="agreement-1",
            status="SIGNED",
            participants=[
                ParticipantSnapshot(email="alice@example.com", status="SIGNED", signed_dates=[SIGNED_AT]),
                ParticipantSnapshot(email="bob@example.com", status="SIGNED", signed_dates=[SIGNED_AT]),
            ],
        )

        result = await service.handle_webhook(
            WebhookEvent("agreement-1", "AGREEMENT_ACTION_COMPLETED", participant_email="bob@example.com")
        )

        assert result.id == document_id
        assert result.status is DocumentStatus.COMPLETED
        assert repository.documents[document_id].status is DocumentStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_snapshot_failure_returns_stored_document(self, service, provider, repository, sent):
        document_id = await sent()
        provider.get_agreement_snapshot.side_effect = ProviderError(503, {})

        result = await service.handle_webhook(WebhookEvent("agreement-1", "AGREEMENT_SIGNED"))

        assert result.status is DocumentStatus.SENT_FOR_SIGNATURE
        assert repository.saves == 0


class TestRefreshSigningUrls:
    @pytest.mark.asyncio
    async def test_urls_matched_case_insensitively(self, service, provider, repository, sent):
        document_id = await sent()
        provider.get_signing_urls.return_value = {
            "alice@example.com": "https://sign/alice",
            "bob@example.com": "https://sign/bob",
        }

        document = await service.refresh_signing_urls(document_id)

        assert [r.signing_url for r in document.recipients] == ["https://sign/alice", "https://sign/bob"]
        assert repository.saves == 1

    @pytest.mark.asyncio
    async def test_unchanged_urls_not_saved(self, service, provider, repository, sent):
        document_id = await sent()

        await service.refresh_signing_urls(document_id)

        assert repository.saves == 0

    @pytest.mark.asyncio
    async def test_unsent_document_rejected(self, service, stored):
        document_id = await stored()

        with pytest.raises(InvalidTransitionError):
            await service.refresh_signing_urls(document_id)
