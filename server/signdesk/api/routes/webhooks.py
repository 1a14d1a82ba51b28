from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse

from signdesk.api.dependencies.signature import get_signature_service
from signdesk.core.config import Settings, get_settings
from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import SignatureError, WebhookEvent
from signdesk.schemas.document import WebhookPayload
from signdesk.services.document_repository import ConcurrentUpdateError
from signdesk.services.signature_service import SignatureService
from signdesk.services.state_machine import InvalidTransitionError

logger = get_logger(__name__)
router = APIRouter(prefix="/webhooks", tags=["webhooks"])

CLIENT_ID_HEADER = "X-AdobeSign-ClientId"


def _echo_headers(request: Request) -> Dict[str, str]:
    client_id = request.headers.get(CLIENT_ID_HEADER)
    return {CLIENT_ID_HEADER: client_id} if client_id else {}


def _ack(request: Request, processed: bool, **details: Optional[str]) -> JSONResponse:
    content: Dict[str, Any] = {"received": True, "processed": processed}
    content.update({key: value for key, value in details.items() if value is not None})
    return JSONResponse(status_code=status.HTTP_200_OK, content=content, headers=_echo_headers(request))


@router.get("/esign")
async def verify_webhook_endpoint(request: Request, settings: Settings = Depends(get_settings)) -> JSONResponse:
    """Provider verification handshake: echo the client id back."""
    client_id = request.headers.get(CLIENT_ID_HEADER)
    if not client_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Missing {CLIENT_ID_HEADER} header")
    if settings.esign_client_id and client_id != settings.esign_client_id:
        logger.warning("webhook.verification.client_mismatch")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown client id")
    return JSONResponse(content={"xAdobeSignClientId": client_id}, headers={CLIENT_ID_HEADER: client_id})


@router.post("/esign")
async def receive_webhook_endpoint(
    payload: WebhookPayload,
    request: Request,
    service: SignatureService = Depends(get_signature_service),
) -> JSONResponse:
    if payload.agreement is None:
        logger.warning("webhook.agreement_missing", event_type=payload.event)
        return _ack(request, False, event=payload.event)

    event = WebhookEvent(
        agreement_id=payload.agreement.id,
        event_type=payload.event,
        participant_email=payload.participant_email,
        payload=payload.model_dump(by_alias=True, exclude_none=True),
    )
    try:
        document = await service.handle_webhook(event)
    except (SignatureError, ConcurrentUpdateError, InvalidTransitionError) as exc:
        # Acknowledged regardless; the next status check reconciles.
        logger.error("webhook.processing_failed", agreement_id=event.agreement_id, error=str(exc))
        return _ack(request, False, event=payload.event, agreementId=event.agreement_id)

    return _ack(
        request,
        document is not None,
        event=payload.event,
        agreementId=event.agreement_id,
        documentId=document.id if document is not None else None,
    )
