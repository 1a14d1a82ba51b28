from __future__ import annotations

import asyncio
import weakref
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.attributes import flag_modified
from sqlalchemy.orm.exc import StaleDataError

from signdesk.core.logging import get_logger
from signdesk.models.document import DocumentRecipient, SignatureDocument
from signdesk.services.records import DocumentRecord, RecipientRecord

logger = get_logger(__name__)


class DocumentNotFoundError(LookupError):
    def __init__(self, document_id: str):
        super().__init__(f"Document {document_id} not found")
        self.document_id = document_id


class ConcurrentUpdateError(RuntimeError):
    def __init__(self, document_id: str):
        super().__init__(f"Document {document_id} was modified concurrently")
        self.document_id = document_id


class DocumentRepository(ABC):
    """Atomic load/save of documents with an exclusive guard per document id."""

    def __init__(self) -> None:
        self._locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()

    @asynccontextmanager
    async def lock(self, document_id: str) -> AsyncIterator[None]:
        guard = self._locks.get(document_id)
        if guard is None:
            guard = asyncio.Lock()
            self._locks[document_id] = guard
        async with guard:
            yield

    @abstractmethod
    async def add(self, document: DocumentRecord) -> DocumentRecord:
        ...

    @abstractmethod
    async def load(self, document_id: str) -> DocumentRecord | None:
        ...

    @abstractmethod
    async def save(self, document: DocumentRecord) -> DocumentRecord:
        """Persist ``document``; raises ConcurrentUpdateError when its version is stale."""

    @abstractmethod
    async def find_by_agreement_id(self, agreement_id: str) -> DocumentRecord | None:
        ...

    async def get(self, document_id: str) -> DocumentRecord:
        document = await self.load(document_id)
        if document is None:
            raise DocumentNotFoundError(document_id)
        return document


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes even for timezone-aware columns.
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def to_record(row: SignatureDocument) -> DocumentRecord:
    return DocumentRecord(
        id=row.id,
        name=row.name,
        file_path=row.file_path,
        pdf_file_path=row.pdf_file_path,
        status=row.status,
        provider_agreement_id=row.provider_agreement_id,
        signing_flow=row.signing_flow,
        auto_detected_fields=list(row.auto_detected_fields or []),
        provider_metadata=dict(row.provider_metadata or {}),
        error_message=row.error_message,
        version=row.version,
        created_at=row.created_at,
        updated_at=row.updated_at,
        recipients=[
            RecipientRecord(
                name=recipient.name,
                email=recipient.email,
                order=recipient.order,
                status=recipient.status,
                signed_at=_as_utc(recipient.signed_at),
                last_accessed_at=_as_utc(recipient.last_accessed_at),
                signing_url=recipient.signing_url,
            )
            for recipient in row.recipients
        ],
    )


def apply_record(row: SignatureDocument, document: DocumentRecord) -> None:
    row.name = document.name
    row.file_path = document.file_path
    row.pdf_file_path = document.pdf_file_path
    row.status = document.status
    row.provider_agreement_id = document.provider_agreement_id
    row.signing_flow = document.signing_flow
    row.auto_detected_fields = list(document.auto_detected_fields)
    # JSON columns only detect reassignment, so always hand over a fresh dict.
    row.provider_metadata = dict(document.provider_metadata)
    row.error_message = document.error_message

    existing = {recipient.email_key: recipient for recipient in row.recipients}
    rows: list[DocumentRecipient] = []
    for position, recipient in enumerate(document.recipients):
        target = existing.pop(recipient.email_key, None) or DocumentRecipient(email_key=recipient.email_key)
        target.position = position
        target.name = recipient.name
        target.email = recipient.email
        target.order = recipient.order
        target.status = recipient.status
        target.signed_at = recipient.signed_at
        target.last_accessed_at = recipient.last_accessed_at
        target.signing_url = recipient.signing_url
        rows.append(target)
    row.recipients = rows


class SqlAlchemyDocumentRepository(DocumentRepository):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        super().__init__()
        self._session_factory = session_factory

    async def add(self, document: DocumentRecord) -> DocumentRecord:
        async with self._session_factory() as session:
            row = SignatureDocument(id=document.id)
            apply_record(row, document)
            session.add(row)
            await session.commit()
            row = await session.get(SignatureDocument, row.id, populate_existing=True)
            logger.info("document.created", document_id=row.id, recipients=len(row.recipients))
            return to_record(row)

    async def load(self, document_id: str) -> DocumentRecord | None:
        async with self._session_factory() as session:
            row = await session.get(SignatureDocument, document_id)
            return to_record(row) if row is not None else None

    async def save(self, document: DocumentRecord) -> DocumentRecord:
        async with self._session_factory() as session:
            row = await session.get(SignatureDocument, document.id)
            if row is None:
                raise DocumentNotFoundError(document.id)
            if row.version != document.version:
                raise ConcurrentUpdateError(document.id)
            apply_record(row, document)
            # Recipient-only changes must still bump the document version.
            flag_modified(row, "provider_metadata")
            try:
                await session.commit()
            except StaleDataError as exc:
                await session.rollback()
                raise ConcurrentUpdateError(document.id) from exc
            row = await session.get(SignatureDocument, row.id, populate_existing=True)
            logger.info("document.saved", document_id=row.id, status=row.status.value, version=row.version)
            return to_record(row)

    async def find_by_agreement_id(self, agreement_id: str) -> DocumentRecord | None:
        async with self._session_factory() as session:
            result = await session.execute(
                select(SignatureDocument).where(SignatureDocument.provider_agreement_id == agreement_id)
            )
            row = result.scalar_one_or_none()
            return to_record(row) if row is not None else None
