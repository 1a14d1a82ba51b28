from signdesk.services import (
    agreement_strategy,
    document_repository,
    document_storage,
    rate_limit_gate,
    records,
    recovery_verifier,
    signature_service,
    state_machine,
    status_reconciler,
)

__all__ = [
    "agreement_strategy",
    "document_repository",
    "document_storage",
    "rate_limit_gate",
    "records",
    "recovery_verifier",
    "signature_service",
    "state_machine",
    "status_reconciler",
]
