"""Errors that cross the engine boundary.

Only precondition failures, provider invocation failures and run timeouts are
raised to callers. Tool failures are folded into the response instead.
"""

from __future__ import annotations

from typing import Any


class EngineError(RuntimeError):
    """Base class for structured engine failures."""

    code = "engine_error"

    def __init__(self, message: str, *, details: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            payload["details"] = dict(self.details)
        return payload


class PreconditionError(EngineError):
    """Raised before any remote call when an exchange cannot start."""

    code = "precondition_failed"


class MissingApiKeyError(PreconditionError):
    code = "missing_api_key"

    def __init__(self, provider: str, *, tenant_id: str | None = None) -> None:
        super().__init__(
            f"No API key configured for provider '{provider}'",
            details={"provider": provider, "tenant_id": tenant_id},
        )
        self.provider = provider
        self.tenant_id = tenant_id


class UnknownProviderError(PreconditionError):
    code = "unknown_provider"

    def __init__(self, provider_key: str) -> None:
        super().__init__(f"Unsupported provider: {provider_key!r}", details={"provider": provider_key})
        self.provider_key = provider_key


class AssistantNotFoundError(PreconditionError):
    code = "assistant_not_found"

    def __init__(self, assistant_id: str) -> None:
        super().__init__(f"Assistant '{assistant_id}' not found", details={"assistant_id": assistant_id})
        self.assistant_id = assistant_id


class PromptTooLargeError(PreconditionError):
    """The system prompt plus the newest user turn exceed the model budget."""

    code = "prompt_too_large"

    def __init__(self, budget: int, required: int) -> None:
        super().__init__(
            f"Prompt requires {required} tokens but the model budget is {budget}",
            details={"budget": budget, "required": required},
        )
        self.budget = budget
        self.required = required


class ProviderInvocationError(EngineError):
    """A model call failed (network, auth, rate limit or timeout)."""

    code = "provider_error"

    def __init__(self, provider: str, model: str, message: str) -> None:
        super().__init__(
            f"{provider} call to {model} failed: {message}",
            details={"provider": provider, "model": model},
        )
        self.provider = provider
        self.model = model


class RunTimeoutError(EngineError):
    """Run polling gave up before the provider reported a terminal status."""

    code = "run_timeout"

    def __init__(self, thread_id: str, run_id: str, timeout: float, last_status: str | None) -> None:
        super().__init__(
            f"Run {run_id} on thread {thread_id} did not finish within {timeout:g}s",
            details={"thread_id": thread_id, "run_id": run_id, "timeout": timeout, "last_status": last_status},
        )
        self.thread_id = thread_id
        self.run_id = run_id
        self.timeout = timeout
        self.last_status = last_status


__all__ = [
    "EngineError",
    "PreconditionError",
    "MissingApiKeyError",
    "UnknownProviderError",
    "AssistantNotFoundError",
    "PromptTooLargeError",
    "ProviderInvocationError",
    "RunTimeoutError",
]
