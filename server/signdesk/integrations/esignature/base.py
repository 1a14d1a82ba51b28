"""
E-signature Base Classes and Interfaces

Defines the provider contract, the normalized agreement snapshot consumed by
the status reconciler, and the error taxonomy shared by the transport, the
provider adapters and the signature services.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional


class ESignatureType(str, Enum):
    """Supported e-signature provider types."""
    ADOBE_SIGN = "adobe_sign"


class SigningFlow(str, Enum):
    """How participant sets are ordered on the provider side."""
    SEQUENTIAL = "SEQUENTIAL"
    PARALLEL = "PARALLEL"


class WebhookEventType(str, Enum):
    """Provider webhook events the service subscribes to."""
    AGREEMENT_ACTION_COMPLETED = "AGREEMENT_ACTION_COMPLETED"
    AGREEMENT_SIGNED = "AGREEMENT_SIGNED"
    AGREEMENT_ACTION_DELEGATED = "AGREEMENT_ACTION_DELEGATED"
    AGREEMENT_ACTION_DECLINED = "AGREEMENT_ACTION_DECLINED"
    AGREEMENT_EMAIL_VIEWED = "AGREEMENT_EMAIL_VIEWED"
    AGREEMENT_ACTION_VIEWED = "AGREEMENT_ACTION_VIEWED"


@dataclass
class ParticipantInfo:
    """A single member of a participant set."""
    email: str
    name: Optional[str] = None


@dataclass
class ParticipantSet:
    """Participants that act at the same position of the signing order."""
    members: List[ParticipantInfo]
    order: int
    role: str = "SIGNER"


@dataclass
class FormField:
    """A positioned form field to place on the uploaded document."""
    name: str
    field_type: str = "SIGNATURE"
    required: bool = True
    x: Optional[float] = None
    y: Optional[float] = None
    width: Optional[float] = None
    height: Optional[float] = None
    page: int = 1

    @property
    def positioned(self) -> bool:
        return self.x is not None and self.y is not None


@dataclass
class AgreementRequest:
    """Everything the provider needs to create an agreement from a transient document."""
    name: str
    transient_document_id: str
    participant_sets: List[ParticipantSet]
    external_id: str
    signature_flow: SigningFlow = SigningFlow.SEQUENTIAL
    auto_positioning: bool = True
    form_fields: List[FormField] = field(default_factory=list)
    signature_type: str = "ESIGN"
    state: str = "IN_PROCESS"


@dataclass
class AgreementEvent:
    """One entry of an agreement's audit trail."""
    event_type: str
    participant_email: Optional[str] = None
    date: Optional[datetime] = None


@dataclass
class ParticipantSnapshot:
    """Provider view of one participant, with every candidate date it exposed."""
    email: str
    status: Optional[str] = None
    name: Optional[str] = None
    order: Optional[int] = None
    signed_dates: List[datetime] = field(default_factory=list)
    accessed_dates: List[datetime] = field(default_factory=list)


@dataclass
class AgreementSnapshot:
    """Normalized provider state of an agreement at one point in time."""
    agreement_id: str
    status: Optional[str] = None
    name: Optional[str] = None
    participants: List[ParticipantSnapshot] = field(default_factory=list)
    events: List[AgreementEvent] = field(default_factory=list)


@dataclass
class AgreementSummary:
    """Search result row."""
    agreement_id: str
    name: Optional[str] = None
    status: Optional[str] = None
    display_date: Optional[datetime] = None
    external_id: Optional[str] = None


@dataclass
class WebhookEvent:
    """Inbound provider notification."""
    agreement_id: str
    event_type: str
    participant_email: Optional[str] = None
    payload: Dict[str, Any] = field(default_factory=dict)


class SignatureError(Exception):
    """E-signature provider specific errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        provider: Optional[str] = None,
        provider_response: Optional[Dict[str, Any]] = None,
        agreement_id: Optional[str] = None
    ):
        super().__init__(message)
        self.error_message = message
        self.error_code = error_code
        self.provider = provider
        self.provider_response = provider_response
        self.agreement_id = agreement_id


class ConfigurationError(SignatureError):
    """Missing credentials or endpoint. Never retried."""

    def __init__(self, message: str):
        super().__init__(message, error_code="CONFIGURATION_ERROR")


class DocumentValidationError(SignatureError):
    """Rejected before any network call."""

    def __init__(self, message: str):
        super().__init__(message, error_code="VALIDATION_ERROR")


class NetworkError(SignatureError):
    """Connection-level failure: reset, hang-up, timeout, DNS or connect error."""

    def __init__(self, message: str, *, exhausted: bool = False, attempts: int = 1, cause: Optional[BaseException] = None):
        super().__init__(message, error_code="NETWORK_ERROR")
        self.exhausted = exhausted
        self.attempts = attempts
        self.cause = cause


class RateLimitError(SignatureError):
    """The provider asked us to stop sending for ``retry_after`` seconds."""

    def __init__(self, retry_after: int, provider_response: Optional[Dict[str, Any]] = None):
        super().__init__(
            f"Provider rate limit reached, retry after {retry_after} seconds",
            error_code="RATE_LIMITED",
            provider_response=provider_response,
        )
        self.retry_after = retry_after


class ProviderError(SignatureError):
    """Non-success HTTP response from the provider."""

    def __init__(
        self,
        status: int,
        body: Optional[Dict[str, Any]] = None,
        *,
        exhausted: bool = False,
        attempts: int = 1,
        message: Optional[str] = None,
    ):
        body = body or {}
        detail = message or body.get("message") or body.get("code") or "provider request failed"
        super().__init__(
            f"Provider returned HTTP {status}: {detail}",
            error_code=body.get("code") or f"HTTP_{status}",
            provider_response=body,
        )
        self.status = status
        self.body = body
        self.exhausted = exhausted
        self.attempts = attempts

    @property
    def retryable(self) -> bool:
        return self.status >= 500


class CreationError(SignatureError):
    """Agreement creation failed for ``reason``."""

    def __init__(self, reason: str, *, cause: Optional[BaseException] = None, method: Optional[str] = None):
        super().__init__(reason, error_code="CREATION_FAILED")
        self.reason = reason
        self.cause = cause
        self.method = method


class RateLimitInEffectError(CreationError):
    """A previous 429 is still in force; no network call was made."""

    def __init__(self, blocked_for_seconds: float):
        super().__init__(f"Rate limit in effect for another {int(blocked_for_seconds)} seconds")
        self.error_code = "RATE_LIMIT_IN_EFFECT"
        self.blocked_for_seconds = blocked_for_seconds


class AmbiguousCreationError(CreationError):
    """The creation request may have landed but no evidence of it could be found."""

    def __init__(self, reason: str, *, cause: Optional[BaseException] = None, method: Optional[str] = None):
        super().__init__(reason, cause=cause, method=method)
        self.error_code = "AMBIGUOUS_CREATION"


ResendGuard = Callable[[], Awaitable[Optional[Dict[str, Any]]]]


class ESignatureProvider(ABC):
    """Abstract base class for e-signature providers."""

    def __init__(self, **config):
        """Initialize the e-signature provider with configuration."""
        self.config = config
        self.provider_type = self._get_provider_type()

    @abstractmethod
    def _get_provider_type(self) -> ESignatureType:
        """Return the provider type identifier."""
        pass

    @abstractmethod
    async def upload_transient_document(self, file_path: str, file_name: str, mime_type: str) -> str:
        """
        Upload a local file as a transient document.

        Args:
            file_path: Path of the file on local storage
            file_name: Name the provider should show for the file
            mime_type: MIME type sent along with the file

        Returns:
            The transient document id

        Raises:
            SignatureError: If the upload fails
        """
        pass

    @abstractmethod
    async def create_agreement(self, request: AgreementRequest, resend_guard: Optional[ResendGuard] = None) -> str:
        """
        Create an agreement and send it out for signature.

        Args:
            request: Agreement payload description
            resend_guard: Called before a retry that follows a network failure.
                When it returns a body, that body is used instead of sending again.

        Returns:
            The agreement id

        Raises:
            NetworkError: If retries were exhausted on connection failures
            RateLimitError: If the provider answered 429
            ProviderError: If the provider rejected the request
        """
        pass

    @abstractmethod
    async def get_agreement_snapshot(self, agreement_id: str) -> AgreementSnapshot:
        """Fetch agreement status, participants and events as one snapshot."""
        pass

    @abstractmethod
    async def get_signing_urls(self, agreement_id: str) -> Dict[str, str]:
        """Return signing URLs keyed by lower-cased participant email."""
        pass

    @abstractmethod
    async def search_agreements(
        self,
        external_id: Optional[str] = None,
        name: Optional[str] = None,
        since: Optional[datetime] = None,
    ) -> List[AgreementSummary]:
        """
        Search agreements visible to the API user.

        Args:
            external_id: Exact client-side idempotency token to match
            name: Agreement name to match when no token is available
            since: Ignore agreements displayed before this moment

        Returns:
            Matching agreement summaries, most recent first
        """
        pass

    @abstractmethod
    async def create_webhook(self, url: str, name: str, events: List[str]) -> Dict[str, Any]:
        """Register an account-wide webhook for the given events."""
        pass

    async def close(self) -> None:
        """Release network resources."""
        return None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

