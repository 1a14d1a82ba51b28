from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse

from signdesk.api.dependencies.database import get_document_repository
from signdesk.api.dependencies.signature import get_signature_service
from signdesk.schemas.document import DocumentCreate, DocumentRead, RecoverResultRead, SendResultRead
from signdesk.services.document_repository import DocumentRepository
from signdesk.services.records import RecipientRecord
from signdesk.services.signature_service import SendStatus, SignatureService, register_document


router = APIRouter(prefix="/documents", tags=["documents"])


@router.post("", response_model=DocumentRead, status_code=status.HTTP_201_CREATED)
async def create_document_endpoint(
    payload: DocumentCreate,
    repository: DocumentRepository = Depends(get_document_repository),
) -> DocumentRead:
    document = await register_document(
        repository,
        name=payload.name,
        file_path=payload.file_path,
        pdf_file_path=payload.pdf_file_path,
        signing_flow=payload.signing_flow,
        auto_detected_fields=payload.auto_detected_fields,
        recipients=[
            RecipientRecord(name=recipient.name, email=str(recipient.email), order=recipient.order)
            for recipient in payload.recipients
        ],
    )
    return DocumentRead.model_validate(document)


@router.get("/{document_id}", response_model=DocumentRead)
async def get_document_endpoint(
    document_id: str,
    repository: DocumentRepository = Depends(get_document_repository),
) -> DocumentRead:
    document = await repository.get(document_id)
    return DocumentRead.model_validate(document)


@router.post("/{document_id}/send", response_model=SendResultRead)
async def send_document_endpoint(
    document_id: str,
    service: SignatureService = Depends(get_signature_service),
):
    result = await service.send_for_signature(document_id)
    body = SendResultRead.model_validate(result)
    if result.status is SendStatus.RATE_LIMITED:
        return JSONResponse(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            content=body.model_dump(mode="json"),
            headers={"Retry-After": str(result.retry_after)},
        )
    if result.status is SendStatus.FAILED:
        return JSONResponse(status_code=status.HTTP_502_BAD_GATEWAY, content=body.model_dump(mode="json"))
    return body


@router.get("/{document_id}/status", response_model=DocumentRead)
async def check_status_endpoint(
    document_id: str,
    service: SignatureService = Depends(get_signature_service),
) -> DocumentRead:
    document = await service.check_status(document_id)
    return DocumentRead.model_validate(document)


@router.post("/{document_id}/recover", response_model=RecoverResultRead)
async def recover_send_endpoint(
    document_id: str,
    service: SignatureService = Depends(get_signature_service),
) -> RecoverResultRead:
    result = await service.recover_send(document_id)
    return RecoverResultRead.model_validate(result)


@router.post("/{document_id}/signing-urls", response_model=DocumentRead)
async def refresh_signing_urls_endpoint(
    document_id: str,
    service: SignatureService = Depends(get_signature_service),
) -> DocumentRead:
    document = await service.refresh_signing_urls(document_id)
    return DocumentRead.model_validate(document)
