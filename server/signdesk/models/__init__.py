from signdesk.models.document import (
    AGREEMENT_BACKED_STATUSES,
    TERMINAL_DOCUMENT_STATUSES,
    TERMINAL_RECIPIENT_STATUSES,
    DocumentRecipient,
    DocumentStatus,
    RecipientStatus,
    SignatureDocument,
)

__all__ = [
    "AGREEMENT_BACKED_STATUSES",
    "TERMINAL_DOCUMENT_STATUSES",
    "TERMINAL_RECIPIENT_STATUSES",
    "DocumentRecipient",
    "DocumentStatus",
    "RecipientStatus",
    "SignatureDocument",
]
