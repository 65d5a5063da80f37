"""Error types raised across the Stability AI MCP server.

Each error also derives from the built-in exception callers already catch
(``ValueError``, ``RuntimeError``, ``LookupError``), so generic handlers keep
working.
"""
from __future__ import annotations

from typing import List, Optional


class StabilityMcpError(Exception):
    """Base class for all errors raised by this package."""


class ConfigurationError(StabilityMcpError, ValueError):
    """Missing or invalid startup configuration."""


class ToolArgumentError(StabilityMcpError, ValueError):
    """Tool arguments failed schema validation."""

    def __init__(self, problems: List[str]) -> None:
        self.problems = list(problems)
        super().__init__(f"Invalid arguments: {', '.join(self.problems)}")


class UnknownToolError(StabilityMcpError, LookupError):
    """No tool is registered under the requested name."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ProviderError(StabilityMcpError, RuntimeError):
    """The upstream image provider rejected or mangled a request."""


class InvalidParametersError(ProviderError):
    """The provider answered 400 with validation messages."""

    def __init__(self, errors: List[str]) -> None:
        self.errors = list(errors)
        super().__init__(f"Invalid parameters: {', '.join(self.errors)}")


class ProviderApiError(ProviderError):
    """Any other non-success provider response."""

    def __init__(self, status_code: int, body: str) -> None:
        self.status_code = status_code
        self.body = body
        super().__init__(f"API error ({status_code}): {body}")


class UnexpectedStatusError(ProviderError):
    """A job poll returned a status that is neither complete nor in progress."""

    def __init__(self, status_code: int) -> None:
        self.status_code = status_code
        super().__init__(f"Unexpected status: {status_code}")


class JobTimeoutError(ProviderError):
    """A job was still in progress when the poll policy ran out of attempts."""

    def __init__(self, job_id: str, attempts: int) -> None:
        self.job_id = job_id
        self.attempts = attempts
        super().__init__(f"Generation {job_id} still in progress after {attempts} polls")


class ProviderResponseError(ProviderError):
    """The provider answered successfully but without a usable image."""


class StorageError(StabilityMcpError, RuntimeError):
    """A read or write against the resource store failed."""


class ResourceNotFoundError(StorageError, LookupError):
    """The identifier does not resolve in the resource store."""

    def __init__(self, uri: str, detail: Optional[str] = None) -> None:
        self.uri = uri
        message = f"Resource not found: {uri}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class SessionLookupError(StabilityMcpError, LookupError):
    """A posted message could not be routed to an open event-stream connection."""
