"""
Adobe Sign adapter tests: payload building and response parsing.
"""

from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import pytest

from signdesk.integrations.esignature.adobe_sign_adapter import AdobeSignAdapter, parse_provider_datetime
from signdesk.integrations.esignature.base import (
    AgreementRequest,
    ConfigurationError,
    DocumentValidationError,
    ESignatureType,
    FormField,
    NetworkError,
    ParticipantInfo,
    ParticipantSet,
    ProviderError,
    SigningFlow,
)
from signdesk.integrations.esignature.transport import RetryingTransport, TransportResponse


def response(body, status=200):
    return TransportResponse(status=status, body=body)


@pytest.fixture
def transport():
    mock = Mock(spec=RetryingTransport)
    mock.execute = AsyncMock()
    mock.close = AsyncMock()
    return mock


@pytest.fixture
def adapter(transport):
    return AdobeSignAdapter(transport=transport)


@pytest.fixture
def agreement_request():
    return AgreementRequest(
        name="MSA",
        transient_document_id="transient-1",
        participant_sets=[
            ParticipantSet(members=[ParticipantInfo("alice@example.com", "Alice")], order=1),
            ParticipantSet(members=[ParticipantInfo("bob@example.com", "Bob")], order=2),
        ],
        external_id="token-abc",
        signature_flow=SigningFlow.SEQUENTIAL,
    )


class TestParseProviderDatetime:
    def test_zulu_suffix(self):
        assert parse_provider_datetime("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, tzinfo=timezone.utc)

    def test_naive_value_assumed_utc(self):
        assert parse_provider_datetime("2024-05-01T10:00:00").tzinfo == timezone.utc

    def test_garbage_is_none(self):
        assert parse_provider_datetime("yesterday") is None
        assert parse_provider_datetime(None) is None


class TestAgreementPayload:
    def test_sequential_sets_and_external_id(self, agreement_request):
        payload = AdobeSignAdapter.build_agreement_payload(agreement_request)

        assert payload["fileInfos"] == [{"transientDocumentId": "transient-1"}]
        assert [s["order"] for s in payload["participantSetsInfo"]] == [1, 2]
        assert payload["participantSetsInfo"][0]["memberInfos"] == [{"email": "alice@example.com"}]
        assert payload["participantSetsInfo"][0]["role"] == "SIGNER"
        assert payload["externalId"] == {"id": "token-abc"}
        assert payload["state"] == "IN_PROCESS"
        assert "formFieldLayerTemplates" not in payload

    def test_positioned_fields_become_layer_templates(self, agreement_request):
        agreement_request.form_fields = [
            FormField(name="sig_1", x=100, y=600, page=2),
            FormField(name="unplaced"),
        ]

        payload = AdobeSignAdapter.build_agreement_payload(agreement_request)

        fields = payload["formFieldLayerTemplates"][0]["formFields"]
        assert [f["name"] for f in fields] == ["sig_1"]
        assert fields[0]["locations"][0]["pageNumber"] == 2
        assert fields[0]["inputType"] == "SIGNATURE"

    def test_no_layer_templates_without_auto_positioning(self, agreement_request):
        agreement_request.form_fields = [FormField(name="sig_1", x=100, y=600)]
        agreement_request.auto_positioning = False

        payload = AdobeSignAdapter.build_agreement_payload(agreement_request)

        assert "formFieldLayerTemplates" not in payload


class TestAdobeSignAdapter:
    def test_provider_type(self, adapter):
        assert adapter.provider_type is ESignatureType.ADOBE_SIGN

    def test_requires_configuration(self):
        with pytest.raises(ConfigurationError):
            AdobeSignAdapter(base_url=None, access_token=None)

    @pytest.mark.asyncio
    async def test_create_agreement_is_mutating_and_idempotent(self, adapter, transport, agreement_request):
        transport.execute.return_value = response({"id": "agreement-1"}, status=201)
        guard = AsyncMock()

        agreement_id = await adapter.create_agreement(agreement_request, resend_guard=guard)

        assert agreement_id == "agreement-1"
        sent = transport.execute.await_args.args[0]
        assert sent.mutating is True
        assert sent.idempotency_key == "token-abc"
        assert sent.path == "api/rest/v6/agreements"
        assert transport.execute.await_args.kwargs["resend_guard"] is guard

    @pytest.mark.asyncio
    async def test_create_agreement_without_id_is_provider_error(self, adapter, transport, agreement_request):
        transport.execute.return_value = response({}, status=201)

        with pytest.raises(ProviderError):
            await adapter.create_agreement(agreement_request)

    @pytest.mark.asyncio
    async def test_upload_sends_multipart(self, adapter, transport, tmp_path):
        path = tmp_path / "contract.pdf"
        path.write_bytes(b"%PDF-1.4")
        transport.execute.return_value = response({"transientDocumentId": "transient-9"}, status=201)

        transient_id = await adapter.upload_transient_document(str(path), "contract.pdf", "application/pdf")

        assert transient_id == "transient-9"
        sent = transport.execute.await_args.args[0]
        assert ("Mime-Type", "application/pdf") in sent.form_fields
        assert sent.file.content == b"%PDF-1.4"

    @pytest.mark.asyncio
    async def test_upload_too_large_is_validation_error(self, adapter, transport, tmp_path):
        path = tmp_path / "contract.pdf"
        path.write_bytes(b"%PDF-1.4")
        transport.execute.side_effect = ProviderError(413, {"code": "FILE_TOO_LARGE"})

        with pytest.raises(DocumentValidationError):
            await adapter.upload_transient_document(str(path), "contract.pdf", "application/pdf")

    @pytest.mark.asyncio
    async def test_snapshot_merges_info_members_and_events(self, adapter, transport):
        transport.execute.side_effect = [
            response({"status": "OUT_FOR_SIGNATURE", "name": "MSA"}),
            response({"participantSets": [
                {
                    "order": 1,
                    "status": "COMPLETED",
                    "memberInfos": [{"email": "alice@example.com", "completedDate": "2024-05-01T10:00:00Z"}],
                },
                {
                    "order": 2,
                    "memberInfos": [{"email": "bob@example.com", "status": "WAITING_FOR_MY_SIGNATURE"}],
                },
            ]}),
            response({"events": [
                {"type": "esigned", "participantEmail": "alice@example.com", "date": "2024-05-01T10:00:05Z"},
                {"description": "no type"},
            ]}),
        ]

        snapshot = await adapter.get_agreement_snapshot("agreement-1")

        assert snapshot.status == "OUT_FOR_SIGNATURE"
        alice, bob = snapshot.participants
        assert alice.status == "COMPLETED"
        assert alice.signed_dates == [datetime(2024, 5, 1, 10, tzinfo=timezone.utc)]
        assert bob.order == 2
        assert [event.event_type for event in snapshot.events] == ["ESIGNED"]

    @pytest.mark.asyncio
    async def test_snapshot_tolerates_missing_events(self, adapter, transport):
        transport.execute.side_effect = [
            response({"status": "SIGNED"}),
            response({"participantSets": "malformed"}),
            NetworkError("reset", exhausted=True, attempts=5),
        ]

        snapshot = await adapter.get_agreement_snapshot("agreement-1")

        assert snapshot.status == "SIGNED"
        assert snapshot.participants == []
        assert snapshot.events == []

    @pytest.mark.asyncio
    async def test_signing_urls_keyed_by_lowercase_email(self, adapter, transport):
        transport.execute.return_value = response({"signingUrlSetInfos": [
            {"signingUrls": [{"email": "Alice@Example.com", "esignUrl": "https://sign/alice"}]},
        ]})

        urls = await adapter.get_signing_urls("agreement-1")

        assert urls == {"alice@example.com": "https://sign/alice"}

    @pytest.mark.asyncio
    async def test_search_filters_and_sorts_newest_first(self, adapter, transport):
        transport.execute.return_value = response({"userAgreementList": [
            {"id": "old", "name": "MSA", "displayDate": "2024-05-01T09:00:00Z"},
            {"id": "new", "name": "MSA", "displayDate": "2024-05-01T10:00:00Z"},
            {"id": "other", "name": "NDA", "displayDate": "2024-05-01T10:30:00Z"},
            {"id": "stale", "name": "MSA", "displayDate": "2024-04-01T10:00:00Z"},
        ]})

        results = await adapter.search_agreements(
            name="MSA",
            since=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )

        assert [item.agreement_id for item in results] == ["new", "old"]

    @pytest.mark.asyncio
    async def test_search_by_external_id(self, adapter, transport):
        transport.execute.return_value = response({"userAgreementList": [
            {"id": "match", "externalId": {"id": "token-abc"}},
            {"id": "miss", "externalId": {"id": "token-xyz"}},
        ]})

        results = await adapter.search_agreements(external_id="token-abc")

        assert [item.agreement_id for item in results] == ["match"]
        assert transport.execute.await_args.args[0].params == {"externalId": "token-abc"}

    @pytest.mark.asyncio
    async def test_webhook_requires_https(self, adapter):
        with pytest.raises(ConfigurationError):
            await adapter.create_webhook("http://example.com/hook", "hook", ["AGREEMENT_SIGNED"])

    @pytest.mark.asyncio
    async def test_webhook_registration_payload(self, adapter, transport):
        transport.execute.return_value = response({"id": "webhook-1"}, status=201)

        created = await adapter.create_webhook("https://example.com/hook", "hook", ["AGREEMENT_SIGNED"])

        assert created == {"id": "webhook-1"}
        body = transport.execute.await_args.args[0].json
        assert body["scope"] == "ACCOUNT"
        assert body["state"] == "ACTIVE"
        assert body["webhookUrlInfo"] == {"url": "https://example.com/hook"}
