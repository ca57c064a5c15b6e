"""Provider error types and retryable-vs-fatal classification."""

from __future__ import annotations

import asyncio
import re
from typing import Iterator

import httpx

# Status codes worth retrying: throttling and transient upstream failures
_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504, 529})
# Requests that will fail the same way again
_FATAL_STATUS = frozenset({400, 401, 403, 404, 422})

_FATAL_PATTERN = re.compile(
    r"\b(400|401|403)\b|unauthori[sz]ed|forbidden|invalid_api_key|invalid api key"
    r"|authentication failed|access denied|bad request|malformed|invalid request"
    r"|not configured",
)
_RETRYABLE_PATTERN = re.compile(
    r"\b(429|502|503|504)\b|timeout|timed out|connection|rate.?limit|throttl"
    r"|i/o error|quota|overloaded|capacity|temporarily unavailable"
    r"|service unavailable|internal server error",
)


class ProviderError(Exception):
    """A provider call failed.

    Attributes:
        provider: Provider id the call went to.
        status_code: HTTP status code, when the provider answered.
    """

    def __init__(
        self,
        provider: str,
        message: str,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.provider = provider
        self.status_code = status_code


class ProviderTimeoutError(ProviderError):
    """The provider did not answer in time."""


class ProviderConnectionError(ProviderError):
    """The provider could not be reached."""


class MalformedResponseError(ProviderError):
    """The provider answered, but the reply could not be used."""


class CircuitOpenError(Exception):
    """The circuit breaker for a stage is open."""


class RateLimitExceededError(Exception):
    """The local rate limit budget for a provider is exhausted."""


def _cause_chain(error: BaseException) -> Iterator[BaseException]:
    seen: set[int] = set()
    current: BaseException | None = error
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        yield current
        current = current.__cause__ or current.__context__


def _status_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    status = getattr(exc, "status_code", None)
    return status if isinstance(status, int) else None


def _is_fatal(exc: BaseException) -> bool:
    if isinstance(exc, (MalformedResponseError, CircuitOpenError)):
        return True
    # An explicit status decides; reply bodies often quote unrelated numbers
    status = _status_of(exc)
    if status is not None:
        return status in _FATAL_STATUS
    return bool(_FATAL_PATTERN.search(str(exc).lower()))


def _is_transient(exc: BaseException) -> bool:
    if isinstance(
        exc,
        (
            ProviderTimeoutError,
            ProviderConnectionError,
            RateLimitExceededError,
            TimeoutError,
            asyncio.TimeoutError,
            ConnectionError,
            httpx.TransportError,
        ),
    ):
        return True
    status = _status_of(exc)
    if status is not None:
        return status in _RETRYABLE_STATUS
    return bool(_RETRYABLE_PATTERN.search(str(exc).lower()))


def is_retryable_error(error: BaseException) -> bool:
    """Check whether a failed provider call is worth retrying.

    The whole cause chain is inspected. Any fatal signal (authentication,
    bad request, unusable reply, open breaker) wins over transient ones;
    errors matching neither are not retried.
    """
    chain = list(_cause_chain(error))
    if any(_is_fatal(exc) for exc in chain):
        return False
    return any(_is_transient(exc) for exc in chain)
