from collections.abc import AsyncIterator
from datetime import timedelta
from functools import lru_cache

from fastapi import Depends

from signdesk.api.dependencies.database import get_document_repository
from signdesk.core.config import Settings, get_settings
from signdesk.integrations.esignature import AdobeSignAdapter, ESignatureProvider
from signdesk.services.agreement_strategy import AgreementCreationStrategy
from signdesk.services.document_repository import DocumentRepository
from signdesk.services.document_storage import ProviderDocumentStorage
from signdesk.services.rate_limit_gate import RateLimitGate
from signdesk.services.recovery_verifier import RecoveryVerifier
from signdesk.services.signature_service import SignatureService
from signdesk.services.status_reconciler import StatusReconciler


@lru_cache(maxsize=None)
def get_rate_limit_gate() -> RateLimitGate:
    return RateLimitGate()


def build_signature_service(
    settings: Settings,
    provider: ESignatureProvider,
    repository: DocumentRepository,
    gate: RateLimitGate,
) -> SignatureService:
    verifier = RecoveryVerifier(
        provider,
        posture=settings.recovery_posture,
        search_window=timedelta(minutes=settings.recovery_search_window_minutes),
    )
    return SignatureService(
        repository=repository,
        provider=provider,
        storage=ProviderDocumentStorage(provider),
        strategy=AgreementCreationStrategy(provider, gate, verifier),
        reconciler=StatusReconciler(),
        verifier=verifier,
        gate=gate,
    )


async def get_signature_service(
    settings: Settings = Depends(get_settings),
    repository: DocumentRepository = Depends(get_document_repository),
    gate: RateLimitGate = Depends(get_rate_limit_gate),
) -> AsyncIterator[SignatureService]:
    provider = AdobeSignAdapter.from_settings(settings)
    try:
        yield build_signature_service(settings, provider, repository, gate)
    finally:
        await provider.close()
