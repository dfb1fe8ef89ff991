"""Action discovery, schema adaptation and tool execution."""

from .errors import (
    ActionContractError,
    ActionError,
    ActionExecutionError,
    ActionServiceError,
    ActionValidationError,
    ErrorCode,
)
from .executor import ExecutorConfig, ToolExecutor, ToolOutcome, coerce_arguments, serialize_result
from .registry import (
    ActionRegistry,
    BoundTool,
    BoundToolSet,
    DuplicateIntegrationError,
    EmptyAllowListPolicy,
    ToolSetCache,
    ToolSetKey,
    sanitize_function_name,
)
from .schema import StrictSchema, adapt_contract
from .types import ActionDescriptor, ActionProvider, ActionResult, FunctionActionProvider

__all__ = [
    "ActionContractError",
    "ActionDescriptor",
    "ActionError",
    "ActionExecutionError",
    "ActionProvider",
    "ActionRegistry",
    "ActionResult",
    "ActionServiceError",
    "ActionValidationError",
    "BoundTool",
    "BoundToolSet",
    "DuplicateIntegrationError",
    "EmptyAllowListPolicy",
    "ErrorCode",
    "ExecutorConfig",
    "FunctionActionProvider",
    "StrictSchema",
    "ToolExecutor",
    "ToolOutcome",
    "ToolSetCache",
    "ToolSetKey",
    "adapt_contract",
    "coerce_arguments",
    "sanitize_function_name",
    "serialize_result",
]
