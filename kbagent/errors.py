from __future__ import annotations

from typing import Optional


class AgentError(Exception):
    """Base class for failures that terminate or reject a run."""

    code = "agent_error"


class IndexNotReady(AgentError):
    code = "index_not_ready"


class InvalidModelId(AgentError, ValueError):
    code = "invalid_model_id"


class ProviderError(AgentError):
    code = "provider_error"

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        model: str = "",
        status_code: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.model = model
        self.status_code = status_code
        super().__init__(message)


class ProviderTransient(ProviderError):
    code = "provider_transient"


class ProviderFatal(ProviderError):
    code = "provider_fatal"


class ResponseTimeout(ProviderTransient):
    """A single streamed response ran past its per-response deadline."""

    code = "response_timeout"


class BudgetExceeded(AgentError):
    code = "budget_exceeded"

    def __init__(self, kind: str, message: Optional[str] = None) -> None:
        self.kind = kind
        super().__init__(message or f"Budget exceeded: {kind}")


class RunCancelled(AgentError):
    code = "cancelled"


class RunBusy(AgentError):
    """The conversation's previous run did not stop in time for a new one."""

    code = "run_busy"


class WriteVerificationFailed(AgentError):
    code = "write_verification_failed"


_TRANSIENT_MARKERS = (
    "429",
    "500",
    "502",
    "503",
    "504",
    "timeout",
    "timed out",
    "temporar",
    "rate limit",
    "connection reset",
    "connection aborted",
    "overloaded",
)
_FATAL_MARKERS = (
    "400",
    "401",
    "403",
    "unauthorized",
    "forbidden",
    "invalid api key",
    "invalid_api_key",
)
_TRANSIENT_STATUS = {408, 409, 425, 429, 500, 502, 503, 504, 529}
_FATAL_STATUS = {400, 401, 403, 404, 422}


def is_retryable_message(message: str) -> bool:
    lowered = message.lower()
    if any(marker in lowered for marker in _FATAL_MARKERS):
        return False
    return any(marker in lowered for marker in _TRANSIENT_MARKERS)


def classify_provider_error(
    message: str,
    *,
    provider: str = "",
    model: str = "",
    status_code: Optional[int] = None,
) -> ProviderError:
    """Map a raw provider failure onto ProviderTransient or ProviderFatal."""
    if status_code in _TRANSIENT_STATUS:
        cls: type[ProviderError] = ProviderTransient
    elif status_code in _FATAL_STATUS:
        cls = ProviderFatal
    elif is_retryable_message(message):
        cls = ProviderTransient
    else:
        cls = ProviderFatal
    return cls(message, provider=provider, model=model, status_code=status_code)
