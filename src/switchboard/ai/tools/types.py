"""Action descriptors and the provider interface integrations implement."""

from __future__ import annotations

import inspect
import json
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ..ai_types import ActionContext

__all__ = [
    "ActionResult",
    "ActionImplementation",
    "ActionDescriptor",
    "ActionProvider",
    "FunctionActionProvider",
]


# -----------------------------------------------------------------------------
# Action Result
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ActionResult:
    """What an action implementation reports back.

    Attributes:
        success: Whether the action did what was asked.
        data: Payload for the model when ``success`` is true.
        error: Message or structured error when ``success`` is false.
    """

    success: bool
    data: Any = None
    error: str | Mapping[str, Any] | None = None

    def __post_init__(self) -> None:
        if not self.success and self.error in (None, ""):
            object.__setattr__(self, "error", "Action failed")

    @property
    def error_message(self) -> str:
        if self.error is None:
            return ""
        if isinstance(self.error, str):
            return self.error
        message = self.error.get("message") if isinstance(self.error, Mapping) else None
        if isinstance(message, str) and message:
            return message
        try:
            return json.dumps(self.error, ensure_ascii=False, sort_keys=True, default=str)
        except (TypeError, ValueError):
            return str(self.error)

    @classmethod
    def coerce(cls, value: Any) -> ActionResult:
        """Normalize whatever an implementation returned.

        Mappings with a boolean ``success`` key are read as result envelopes;
        anything else is treated as successful data.
        """

        if isinstance(value, ActionResult):
            return value
        if isinstance(value, Mapping) and isinstance(value.get("success"), bool):
            return cls(success=value["success"], data=value.get("data"), error=value.get("error"))
        return cls(success=True, data=value)


# -----------------------------------------------------------------------------
# Action Descriptor
# -----------------------------------------------------------------------------

ActionImplementation = Callable[[Mapping[str, Any]], Awaitable[Any] | Any]


@dataclass(slots=True, frozen=True)
class ActionDescriptor:
    """A named capability offered by an integration.

    Attributes:
        name: Action name without the integration prefix.
        description: Text shown to the model.
        parameters: JSON-schema-like parameter contract.
        implementation: Callable receiving validated arguments.
        integration: Name of the integration that produced the action.
    """

    name: str
    description: str
    implementation: ActionImplementation = field(compare=False, repr=False)
    parameters: Mapping[str, Any] = field(default_factory=dict)
    integration: str = ""

    @property
    def qualified_name(self) -> str:
        return f"{self.integration}.{self.name}" if self.integration else self.name


# -----------------------------------------------------------------------------
# Provider Protocol
# -----------------------------------------------------------------------------


@runtime_checkable
class ActionProvider(Protocol):
    """One integration's source of actions.

    ``list_actions`` may be sync or async and may raise; the registry logs and
    skips a provider that fails.
    """

    @property
    def integration(self) -> str:
        ...

    def list_actions(self, context: ActionContext) -> Sequence[ActionDescriptor] | Awaitable[Sequence[ActionDescriptor]]:
        ...


class FunctionActionProvider:
    """Adapts a factory callable into an :class:`ActionProvider`.

    The factory receives the :class:`ActionContext` and returns descriptors,
    either as a sequence or as a mapping keyed by action name.
    """

    def __init__(
        self,
        integration: str,
        factory: Callable[[ActionContext], Any],
    ) -> None:
        if not integration:
            raise ValueError("integration name is required")
        self._integration = integration
        self._factory = factory

    @property
    def integration(self) -> str:
        return self._integration

    async def list_actions(self, context: ActionContext) -> Sequence[ActionDescriptor]:
        produced = self._factory(context)
        if inspect.isawaitable(produced):
            produced = await produced
        return [self._own(descriptor) for descriptor in self._iter_descriptors(produced)]

    def _own(self, descriptor: ActionDescriptor) -> ActionDescriptor:
        if descriptor.integration == self._integration:
            return descriptor
        return ActionDescriptor(
            name=descriptor.name,
            description=descriptor.description,
            implementation=descriptor.implementation,
            parameters=descriptor.parameters,
            integration=self._integration,
        )

    @staticmethod
    def _iter_descriptors(produced: Any) -> Iterable[ActionDescriptor]:
        if produced is None:
            return ()
        if isinstance(produced, Mapping):
            return produced.values()
        return produced

    def __repr__(self) -> str:
        return f"FunctionActionProvider(integration={self._integration!r})"
