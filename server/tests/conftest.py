"""
Shared test configuration and fixtures for the SignDesk test suite.
"""

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, Optional
from unittest.mock import Mock

import pytest

from signdesk.integrations.esignature.base import ESignatureProvider, SigningFlow
from signdesk.models.document import DocumentStatus
from signdesk.services.document_repository import ConcurrentUpdateError, DocumentNotFoundError, DocumentRepository
from signdesk.services.rate_limit_gate import RateLimitGate
from signdesk.services.records import DocumentRecord, RecipientRecord


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeResponse:
    def __init__(self, status: int, text: str = "", headers=None):
        self.status = status
        self._text = text
        self.headers = headers or {}

    async def text(self) -> str:
        return self._text


class FakeSession:
    """Plays back scripted responses or exceptions, one per request."""

    def __init__(self, *script):
        self.script = list(script)
        self.calls = []
        self.closed = False

    @asynccontextmanager
    async def _respond(self, item):
        if isinstance(item, BaseException):
            raise item
        yield item

    def request(self, method, url, **kwargs):
        self.calls.append({"method": method, "url": url, **kwargs})
        return self._respond(self.script.pop(0))

    async def close(self):
        self.closed = True


class InMemoryDocumentRepository(DocumentRepository):
    """Repository double with the same versioning contract as the SQL one."""

    def __init__(self) -> None:
        super().__init__()
        self.documents: Dict[str, DocumentRecord] = {}
        self.saves = 0

    async def add(self, document: DocumentRecord) -> DocumentRecord:
        stored = document.clone()
        stored.version = 1
        stored.created_at = stored.updated_at = datetime.now(timezone.utc)
        self.documents[stored.id] = stored
        return stored.clone()

    async def load(self, document_id: str) -> Optional[DocumentRecord]:
        stored = self.documents.get(document_id)
        return stored.clone() if stored is not None else None

    async def save(self, document: DocumentRecord) -> DocumentRecord:
        current = self.documents.get(document.id)
        if current is None:
            raise DocumentNotFoundError(document.id)
        if current.version != document.version:
            raise ConcurrentUpdateError(document.id)
        stored = document.clone()
        stored.version = current.version + 1
        stored.updated_at = datetime.now(timezone.utc)
        self.documents[stored.id] = stored
        self.saves += 1
        return stored.clone()

    async def find_by_agreement_id(self, agreement_id: str) -> Optional[DocumentRecord]:
        for stored in self.documents.values():
            if stored.provider_agreement_id == agreement_id:
                return stored.clone()
        return None


def make_document(
    document_id: str = "doc-1",
    *,
    status: DocumentStatus = DocumentStatus.READY_FOR_SIGNATURE,
    signing_flow: SigningFlow = SigningFlow.SEQUENTIAL,
    file_path: str = "/tmp/contract.pdf",
    recipients=None,
    **fields,
) -> DocumentRecord:
    if recipients is None:
        recipients = [
            RecipientRecord(name="Alice Signer", email="alice@example.com", order=1),
            RecipientRecord(name="Bob Signer", email="Bob@Example.com", order=2),
        ]
    return DocumentRecord(
        id=document_id,
        name="Master Services Agreement",
        file_path=file_path,
        status=status,
        signing_flow=signing_flow,
        recipients=recipients,
        **fields,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def gate(clock) -> RateLimitGate:
    return RateLimitGate(clock=clock)


@pytest.fixture
def repository() -> InMemoryDocumentRepository:
    return InMemoryDocumentRepository()


@pytest.fixture
def provider() -> Mock:
    """Provider double; every coroutine method is an AsyncMock."""
    mock = Mock(spec=ESignatureProvider)
    mock.upload_transient_document.return_value = "transient-1"
    mock.create_agreement.return_value = "agreement-1"
    mock.search_agreements.return_value = []
    mock.get_signing_urls.return_value = {}
    return mock


@pytest.fixture
def pdf_file(tmp_path) -> str:
    path = tmp_path / "contract.pdf"
    path.write_bytes(b"%PDF-1.4 signed content")
    return str(path)


@pytest.fixture
def document_factory():
    return make_document


@pytest.fixture
def http_response():
    return FakeResponse


@pytest.fixture
def scripted_session():
    return FakeSession
