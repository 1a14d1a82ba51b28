from .adobe_sign_adapter import AdobeSignAdapter
from .base import (
    AgreementEvent,
    AgreementRequest,
    AgreementSnapshot,
    AgreementSummary,
    AmbiguousCreationError,
    ConfigurationError,
    CreationError,
    DocumentValidationError,
    ESignatureProvider,
    ESignatureType,
    FormField,
    NetworkError,
    ParticipantInfo,
    ParticipantSet,
    ParticipantSnapshot,
    ProviderError,
    RateLimitError,
    RateLimitInEffectError,
    SignatureError,
    SigningFlow,
    WebhookEvent,
    WebhookEventType,
)
from .transport import ProviderRequest, RetryingTransport, RetryPolicy, TransportResponse

__all__ = [
    "AdobeSignAdapter",
    "AgreementEvent",
    "AgreementRequest",
    "AgreementSnapshot",
    "AgreementSummary",
    "AmbiguousCreationError",
    "ConfigurationError",
    "CreationError",
    "DocumentValidationError",
    "ESignatureProvider",
    "ESignatureType",
    "FormField",
    "NetworkError",
    "ParticipantInfo",
    "ParticipantSet",
    "ParticipantSnapshot",
    "ProviderError",
    "ProviderRequest",
    "RateLimitError",
    "RateLimitInEffectError",
    "RetryingTransport",
    "RetryPolicy",
    "SignatureError",
    "SigningFlow",
    "TransportResponse",
    "WebhookEvent",
    "WebhookEventType",
]
