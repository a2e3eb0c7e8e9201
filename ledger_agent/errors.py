"""Structured error types for ledger_agent.

Tool-level failures are converted into error ``ToolCallResult`` values at the
Wrapper and Runner seams, so most of these never reach the agent loop as
exceptions. Two are hard stops and do propagate:

    from ledger_agent.errors import CredentialError, RegistryFetchError

    try:
        pages = await retriever.retrieve()
    except CredentialError:
        # Re-authenticate the company profile; retrying won't help
        ...
"""

from __future__ import annotations

from typing import Any

import httpx


class LedgerAgentError(Exception):
    """Base for all ledger_agent errors."""

    def __init__(self, message: str, original: Exception | None = None) -> None:
        super().__init__(message)
        self.original = original


class TransportError(LedgerAgentError):
    """Connectivity, timeout or HTTP-status failure from an external API."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        original: Exception | None = None,
    ) -> None:
        super().__init__(message, original=original)
        self.status_code = status_code


class ToolValidationError(LedgerAgentError, ValueError):
    """Tool arguments failed a tool-specific check; the model can retry."""


class ToolNotFoundError(LedgerAgentError):
    """No tool is registered under the requested name."""


class InvalidToolTypeError(LedgerAgentError):
    """Tool call request has a type other than ``function``."""


class ToolArgumentError(LedgerAgentError):
    """Tool arguments are missing or not valid JSON."""


class NoDataError(LedgerAgentError):
    """External API answered but the result set was empty."""


class ProviderError(LedgerAgentError):
    """Model provider call failed or returned an unusable response."""


class CredentialError(LedgerAgentError):
    """Connection yielded no usable access token. Not retried."""


class RegistryFetchError(LedgerAgentError):
    """Tool registry endpoint failed or returned no tools. Not retried."""


class RegistryMismatchError(LedgerAgentError):
    """Local tool factories and published descriptors disagree."""


UNKNOWN_ERROR = "UnknownError"


def error_type_name(error: Any) -> str:
    """Model-facing error kind: the exception class name."""
    if isinstance(error, BaseException):
        return type(error).__name__
    return UNKNOWN_ERROR


def error_message_of(error: Any) -> str:
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    return str(error)


def status_code_of(error: Any) -> int | None:
    """HTTP status carried by a transport failure, if any."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code
    if isinstance(error, TransportError):
        return error.status_code
    status = getattr(error, "status_code", None)
    return status if isinstance(status, int) else None
