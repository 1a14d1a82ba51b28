"""
Retrying HTTP transport for signing provider calls.

A single network call is performed by :meth:`RetryingTransport.attempt`, which
classifies what happened instead of raising. :meth:`RetryingTransport.execute`
composes attempts with the explicit :class:`RetryPolicy` backoff schedule.
"""

from __future__ import annotations

import asyncio
import json
import random
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Tuple

import aiohttp
from aiohttp import ClientTimeout

from signdesk.core.logging import get_logger
from signdesk.integrations.esignature.base import (
    ConfigurationError,
    NetworkError,
    ProviderError,
    RateLimitError,
    ResendGuard,
)

logger = get_logger(__name__)

NETWORK_EXCEPTIONS: Tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
    ConnectionError,
)


@dataclass(frozen=True)
class MultipartFile:
    field_name: str
    file_name: str
    content: bytes
    content_type: str


@dataclass(frozen=True)
class ProviderRequest:
    """Immutable description of one provider call; safe to replay on every attempt."""
    method: str
    path: str
    operation: str
    json: Optional[Dict[str, Any]] = None
    params: Optional[Dict[str, Any]] = None
    form_fields: Tuple[Tuple[str, str], ...] = ()
    file: Optional[MultipartFile] = None
    mutating: bool = False
    idempotency_key: Optional[str] = None
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])

    def build_form(self) -> Optional[aiohttp.FormData]:
        if self.file is None and not self.form_fields:
            return None
        form = aiohttp.FormData()
        for name, value in self.form_fields:
            form.add_field(name, value)
        if self.file is not None:
            form.add_field(
                self.file.field_name,
                self.file.content,
                filename=self.file.file_name,
                content_type=self.file.content_type,
            )
        return form


@dataclass(frozen=True)
class TransportResponse:
    status: int
    body: Dict[str, Any]
    headers: Mapping[str, str] = field(default_factory=dict)
    attempts: int = 1
    resend_suppressed: bool = False


class OutcomeKind(str, Enum):
    SUCCESS = "success"
    NETWORK_FAILURE = "network_failure"
    RATE_LIMITED = "rate_limited"
    PROVIDER_FAILURE = "provider_failure"


@dataclass(frozen=True)
class AttemptOutcome:
    kind: OutcomeKind
    attempt: int
    response: Optional[TransportResponse] = None
    error: Optional[BaseException] = None
    retry_after: Optional[int] = None

    @property
    def retryable(self) -> bool:
        if self.kind is OutcomeKind.NETWORK_FAILURE:
            return True
        return (
            self.kind is OutcomeKind.PROVIDER_FAILURE
            and self.response is not None
            and self.response.status >= 500
        )


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 5
    base_delay: float = 3.0
    jitter: float = 1.0
    timeout: float = 180.0
    timeout_step: float = 30.0
    connect_timeout: float = 30.0

    @classmethod
    def from_settings(cls, settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.esign_max_attempts,
            base_delay=settings.esign_retry_base_delay_seconds,
            jitter=settings.esign_retry_jitter_seconds,
            timeout=settings.esign_timeout_seconds,
            timeout_step=settings.esign_timeout_step_seconds,
            connect_timeout=settings.esign_connect_timeout_seconds,
        )

    def timeout_for(self, attempt: int) -> float:
        """Total timeout of ``attempt`` (1-based); grows so large uploads get more room."""
        return self.timeout + (attempt - 1) * self.timeout_step

    def backoff_delay(self, retry_number: int, rng: Callable[[], float] = random.random) -> float:
        """Delay before retry ``retry_number`` (1-based)."""
        return self.base_delay * (2 ** (retry_number - 1)) + rng() * self.jitter

    def schedule(self, rng: Callable[[], float] = random.random) -> List[float]:
        return [self.backoff_delay(n, rng) for n in range(1, self.max_attempts)]


def parse_retry_after(body: Mapping[str, Any], headers: Mapping[str, str], default: int) -> int:
    for candidate in (body.get("retryAfter"), headers.get("Retry-After")):
        if candidate is None:
            continue
        try:
            value = int(float(candidate))
        except (TypeError, ValueError):
            continue
        if value > 0:
            return value
    return default


class RetryingTransport:
    """Executes provider requests with escalating timeouts, retries and backoff."""

    def __init__(
        self,
        base_url: Optional[str],
        access_token: Optional[str],
        policy: Optional[RetryPolicy] = None,
        *,
        default_retry_after: int = 3600,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rng: Callable[[], float] = random.random,
    ):
        if not base_url:
            raise ConfigurationError("Signing provider base URL is not configured")
        if not access_token:
            raise ConfigurationError("Signing provider access token is not configured")
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.policy = policy or RetryPolicy()
        self.default_retry_after = default_retry_after
        self._session = session
        self._sleep = sleep
        self._rng = rng

    @property
    def session(self) -> aiohttp.ClientSession:
        """Get or create aiohttp session."""
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()

    def _url(self, path: str) -> str:
        return f"{self.base_url}/{path.lstrip('/')}"

    def _headers(self, request: ProviderRequest, attempt: int) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Accept": "application/json",
            "Connection": "close",
            "X-Retry-ID": f"{request.request_id}-{attempt}",
        }
        if request.idempotency_key:
            headers["X-Idempotency-Key"] = request.idempotency_key
        return headers

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Dict[str, Any]:
        text = await response.text()
        if not text.strip():
            return {}
        try:
            payload = json.loads(text)
        except ValueError:
            return {"message": text[:500]}
        if isinstance(payload, dict):
            return payload
        return {"data": payload}

    async def attempt(self, request: ProviderRequest, attempt: int) -> AttemptOutcome:
        """Perform exactly one network call and classify the result."""
        timeout = ClientTimeout(total=self.policy.timeout_for(attempt), connect=self.policy.connect_timeout)
        try:
            async with self.session.request(
                request.method,
                self._url(request.path),
                headers=self._headers(request, attempt),
                json=request.json,
                params=request.params,
                data=request.build_form(),
                timeout=timeout,
            ) as response:
                body = await self._read_body(response)
                result = TransportResponse(
                    status=response.status,
                    body=body,
                    headers=dict(response.headers),
                    attempts=attempt,
                )
        except NETWORK_EXCEPTIONS as exc:
            return AttemptOutcome(OutcomeKind.NETWORK_FAILURE, attempt, error=exc)

        if 200 <= result.status < 300:
            return AttemptOutcome(OutcomeKind.SUCCESS, attempt, response=result)
        if result.status == 429:
            retry_after = parse_retry_after(result.body, result.headers, self.default_retry_after)
            return AttemptOutcome(OutcomeKind.RATE_LIMITED, attempt, response=result, retry_after=retry_after)
        return AttemptOutcome(OutcomeKind.PROVIDER_FAILURE, attempt, response=result)

    async def execute(self, request: ProviderRequest, resend_guard: Optional[ResendGuard] = None) -> TransportResponse:
        """
        Run ``request`` until it succeeds, fails terminally or runs out of attempts.

        Args:
            request: The call to perform
            resend_guard: For mutating calls, consulted before re-sending after a
                network failure. A non-None result is returned as the response body.

        Raises:
            RateLimitError: On HTTP 429, without retrying
            ProviderError: On a non-retryable status, or 5xx after the last attempt
            NetworkError: On a connection-level failure after the last attempt
        """
        last: Optional[AttemptOutcome] = None
        for attempt in range(1, self.policy.max_attempts + 1):
            if last is not None:
                delay = self.policy.backoff_delay(attempt - 1, self._rng)
                logger.warning(
                    "transport.retry.scheduled",
                    operation=request.operation,
                    attempt=attempt,
                    delay_seconds=round(delay, 3),
                    reason=last.kind.value,
                    error=str(last.error) if last.error else None,
                )
                await self._sleep(delay)
                if resend_guard is not None and request.mutating and last.kind is OutcomeKind.NETWORK_FAILURE:
                    evidence = await resend_guard()
                    if evidence is not None:
                        logger.info("transport.retry.resend_suppressed", operation=request.operation, attempt=attempt)
                        return TransportResponse(status=200, body=evidence, attempts=attempt - 1, resend_suppressed=True)

            outcome = await self.attempt(request, attempt)
            if outcome.kind is OutcomeKind.SUCCESS:
                if attempt > 1:
                    logger.info("transport.retry.succeeded", operation=request.operation, attempt=attempt)
                return outcome.response
            if outcome.kind is OutcomeKind.RATE_LIMITED:
                logger.warning("transport.rate_limited", operation=request.operation, retry_after=outcome.retry_after)
                raise RateLimitError(outcome.retry_after, provider_response=outcome.response.body)
            if not outcome.retryable:
                raise ProviderError(outcome.response.status, outcome.response.body, attempts=attempt)
            last = outcome

        logger.error("transport.retry.exhausted", operation=request.operation, attempts=self.policy.max_attempts)
        raise self._exhausted_error(last) from last.error

    @staticmethod
    def _exhausted_error(last: AttemptOutcome) -> Exception:
        if last.kind is OutcomeKind.NETWORK_FAILURE:
            return NetworkError(
                f"{type(last.error).__name__}: {last.error}" if last.error else "network failure",
                exhausted=True,
                attempts=last.attempt,
                cause=last.error,
            )
        return ProviderError(last.response.status, last.response.body, exhausted=True, attempts=last.attempt)
