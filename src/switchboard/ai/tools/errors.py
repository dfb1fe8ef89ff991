"""Error types raised by integrations and by action registration.

Integrations may raise these from inside an action; the executor turns them
into ``Exception: <message>`` tool results instead of letting them escape.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar


class ErrorCode:
    """Constants for error codes carried by action errors."""

    ACTION_FAILED = "action_failed"
    INVALID_ARGUMENTS = "invalid_arguments"
    SERVICE_UNAVAILABLE = "service_unavailable"
    INVALID_CONTRACT = "invalid_contract"
    NOT_IMPLEMENTED = "not_implemented"
    TIMEOUT = "timeout"


@dataclass
class ActionError(Exception):
    """Base exception for failures inside an action.

    Attributes:
        error_code: Machine-readable error identifier.
        message: Human-readable error description.
        details: Additional structured error information.
    """

    error_code: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    status_code: ClassVar[int] = 500

    def __post_init__(self) -> None:
        Exception.__init__(self, self.message)

    def to_dict(self) -> dict[str, Any]:
        result: dict[str, Any] = {
            "error": self.error_code,
            "message": self.message,
            "status": self.status_code,
        }
        if self.details:
            result["details"] = dict(self.details)
        return result

    def __str__(self) -> str:
        return self.message


@dataclass
class ActionExecutionError(ActionError):
    """The action ran but its upstream call failed."""

    error_code: str = field(default=ErrorCode.ACTION_FAILED)
    message: str = field(default="Action failed")
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class ActionValidationError(ActionError):
    """Arguments were rejected by the integration itself."""

    error_code: str = field(default=ErrorCode.INVALID_ARGUMENTS)
    message: str = field(default="Invalid action arguments")
    details: dict[str, Any] = field(default_factory=dict)
    field_errors: dict[str, str] = field(default_factory=dict)

    status_code: ClassVar[int] = 400

    def to_dict(self) -> dict[str, Any]:
        result = ActionError.to_dict(self)
        if self.field_errors:
            result["field_errors"] = dict(self.field_errors)
        return result


@dataclass
class ActionServiceError(ActionError):
    """The integration's backing service could not be reached."""

    error_code: str = field(default=ErrorCode.SERVICE_UNAVAILABLE)
    message: str = field(default="Service unavailable")
    details: dict[str, Any] = field(default_factory=dict)
    service: str = ""

    status_code: ClassVar[int] = 502


@dataclass
class ActionContractError(ActionError):
    """An action declared a malformed parameter contract."""

    error_code: str = field(default=ErrorCode.INVALID_CONTRACT)
    message: str = field(default="Invalid parameter contract")
    details: dict[str, Any] = field(default_factory=dict)
    action_name: str = ""

    status_code: ClassVar[int] = 400


__all__ = [
    "ErrorCode",
    "ActionError",
    "ActionExecutionError",
    "ActionValidationError",
    "ActionServiceError",
    "ActionContractError",
]
