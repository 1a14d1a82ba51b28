from signdesk.schemas.document import (
    DocumentCreate,
    DocumentRead,
    RateLimitStatusRead,
    RecipientCreate,
    RecipientRead,
    RecoverResultRead,
    SendResultRead,
    WebhookPayload,
)

__all__ = [
    "DocumentCreate",
    "DocumentRead",
    "RateLimitStatusRead",
    "RecipientCreate",
    "RecipientRead",
    "RecoverResultRead",
    "SendResultRead",
    "WebhookPayload",
]
