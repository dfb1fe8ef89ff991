"""Action discovery, allow-list filtering and bound tool sets.

The registry enumerates an explicit list of :class:`ActionProvider` objects,
flattens their actions into one namespace and binds each allowed action to its
adapted schema. Resolved sets are cached per ``ToolSetKey`` on the registry
instance; entries are only ever inserted.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import re
import threading
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Sequence

from ..ai_types import ActionContext, AssistantConfig
from .errors import ActionContractError
from .schema import StrictSchema, adapt_contract
from .types import ActionDescriptor, ActionProvider

LOGGER = logging.getLogger(__name__)

_UNSAFE_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_-]")

__all__ = [
    "ActionRegistry",
    "BoundTool",
    "BoundToolSet",
    "DuplicateIntegrationError",
    "EmptyAllowListPolicy",
    "ToolSetCache",
    "ToolSetKey",
    "sanitize_function_name",
]


def sanitize_function_name(name: str) -> str:
    """Map an action name onto the character set model APIs accept."""

    return _UNSAFE_NAME_CHARS.sub("", name.replace(".", "_"))


class DuplicateIntegrationError(ValueError):
    """Raised when two providers claim the same integration name."""

    def __init__(self, integration: str) -> None:
        self.integration = integration
        super().__init__(f"Integration '{integration}' is already registered")


class EmptyAllowListPolicy(str, Enum):
    """What an assistant with no allowed actions gets."""

    ALLOW_ALL = "allow_all"
    DENY_ALL = "deny_all"


# -----------------------------------------------------------------------------
# Bound tools
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class BoundTool:
    """An allowed action with its adapted schema and exposed name."""

    exposed_name: str
    descriptor: ActionDescriptor
    schema: StrictSchema

    @property
    def qualified_name(self) -> str:
        return self.descriptor.qualified_name

    def as_openai_tool(self) -> dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.exposed_name,
                "description": self.descriptor.description,
                "parameters": self.schema.parameters,
            },
        }

    async def invoke(self, arguments: Mapping[str, Any]) -> Any:
        """Call the implementation, awaiting it when it is async."""

        result = self.descriptor.implementation(arguments)
        if inspect.isawaitable(result):
            result = await result
        return result


class BoundToolSet(Mapping[str, BoundTool]):
    """Immutable mapping of exposed name to :class:`BoundTool`."""

    __slots__ = ("_tools", "_aliases")

    def __init__(self, tools: Iterable[BoundTool] = ()) -> None:
        self._tools: Dict[str, BoundTool] = {tool.exposed_name: tool for tool in tools}
        self._aliases: Dict[str, BoundTool] = {}
        for tool in self._tools.values():
            self._aliases.setdefault(tool.qualified_name, tool)
            self._aliases.setdefault(sanitize_function_name(tool.qualified_name), tool)

    def __getitem__(self, name: str) -> BoundTool:
        return self._tools[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._tools)

    def __len__(self) -> int:
        return len(self._tools)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, BoundToolSet):
            return NotImplemented
        return self._tools == other._tools

    def __hash__(self) -> int:
        return hash(tuple(sorted(self._tools)))

    def lookup(self, name: str) -> BoundTool | None:
        """Find a tool by exposed name, then by qualified or sanitized qualified name."""

        return self._tools.get(name) or self._aliases.get(name) or self._aliases.get(sanitize_function_name(name))

    def openai_tools(self) -> List[dict[str, Any]]:
        return [tool.as_openai_tool() for tool in self._tools.values()]

    def __repr__(self) -> str:
        return f"BoundToolSet({sorted(self._tools)!r})"


# -----------------------------------------------------------------------------
# Cache
# -----------------------------------------------------------------------------


@dataclass(slots=True, frozen=True)
class ToolSetKey:
    """Cache identity of a resolved tool set."""

    company_id: str
    assistant_id: str
    allowed: tuple[str, ...] = ()

    @classmethod
    def for_assistant(cls, assistant: AssistantConfig) -> ToolSetKey:
        return cls(
            company_id=assistant.company_id,
            assistant_id=assistant.assistant_id,
            allowed=tuple(sorted(set(assistant.allowed_actions))),
        )


@dataclass(slots=True)
class ToolSetCache:
    """Insert-only map of :class:`ToolSetKey` to :class:`BoundToolSet`."""

    _entries: Dict[ToolSetKey, BoundToolSet] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock)

    def get(self, key: ToolSetKey) -> BoundToolSet | None:
        return self._entries.get(key)

    def insert(self, key: ToolSetKey, tools: BoundToolSet) -> BoundToolSet:
        """Store ``tools`` unless ``key`` is present; return the stored value."""

        with self._lock:
            return self._entries.setdefault(key, tools)

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)


# -----------------------------------------------------------------------------
# Registry
# -----------------------------------------------------------------------------


class ActionRegistry:
    """Resolves the tools an assistant may call.

    Args:
        providers: Integrations to enumerate, in priority order.
        empty_allow_list_policy: Outcome for an empty allow-list.
        strict_contracts: Skip actions whose contract is malformed instead of
            adapting them leniently.
        cache: Shared cache; a fresh one is created when omitted.
    """

    def __init__(
        self,
        providers: Iterable[ActionProvider] = (),
        *,
        empty_allow_list_policy: EmptyAllowListPolicy | str = EmptyAllowListPolicy.ALLOW_ALL,
        strict_contracts: bool = False,
        cache: ToolSetCache | None = None,
    ) -> None:
        self._providers: Dict[str, ActionProvider] = {}
        self._empty_policy = EmptyAllowListPolicy(empty_allow_list_policy)
        self._strict_contracts = strict_contracts
        self._cache = cache if cache is not None else ToolSetCache()
        for provider in providers:
            self.register_provider(provider)

    @property
    def cache(self) -> ToolSetCache:
        return self._cache

    @property
    def empty_allow_list_policy(self) -> EmptyAllowListPolicy:
        return self._empty_policy

    @property
    def integrations(self) -> List[str]:
        return list(self._providers)

    def register_provider(self, provider: ActionProvider) -> None:
        name = provider.integration
        if name in self._providers:
            raise DuplicateIntegrationError(name)
        self._providers[name] = provider
        LOGGER.debug("Registered action provider: %s", name)

    async def discover(self, context: ActionContext) -> List[ActionDescriptor]:
        """Collect actions from every provider, skipping providers that fail."""

        batches = await asyncio.gather(
            *(self._load_provider(provider, context) for provider in self._providers.values())
        )
        return [descriptor for batch in batches for descriptor in batch]

    async def resolve(self, allow_list: Sequence[str], context: ActionContext) -> BoundToolSet:
        """Bind the actions named in ``allow_list``.

        Entries may be ``"integration.action"`` or bare ``"action"``. Names no
        provider offers are dropped without error.
        """

        descriptors = await self.discover(context)
        exposed = self._expose(descriptors)
        selected = self._filter(exposed, allow_list, context)
        return BoundToolSet(tool for tool in (self._bind(name, d) for name, d in selected) if tool is not None)

    async def resolve_for_assistant(self, assistant: AssistantConfig, context: ActionContext) -> BoundToolSet:
        """Resolve through the cache keyed by the assistant and its sorted allow-list."""

        key = ToolSetKey.for_assistant(assistant)
        cached = self._cache.get(key)
        if cached is not None:
            LOGGER.debug("Tool set cache hit for assistant %s", assistant.assistant_id)
            return cached
        tools = await self.resolve(key.allowed, context)
        return self._cache.insert(key, tools)

    async def _load_provider(self, provider: ActionProvider, context: ActionContext) -> List[ActionDescriptor]:
        try:
            produced = provider.list_actions(context)
            if inspect.isawaitable(produced):
                produced = await produced
            return [item for item in produced or () if isinstance(item, ActionDescriptor)]
        except Exception:
            LOGGER.warning("Skipping integration %s: failed to load actions", provider.integration, exc_info=True)
            return []

    @staticmethod
    def _expose(descriptors: Sequence[ActionDescriptor]) -> List[tuple[str, ActionDescriptor]]:
        counts = Counter(descriptor.name for descriptor in descriptors)
        exposed: List[tuple[str, ActionDescriptor]] = []
        seen: set[str] = set()
        for descriptor in descriptors:
            if counts[descriptor.name] > 1:
                name = sanitize_function_name(f"{descriptor.integration}.{descriptor.name}")
            else:
                name = sanitize_function_name(descriptor.name)
            if not name or name in seen:
                LOGGER.warning("Dropping action %s: exposed name %r collides", descriptor.qualified_name, name)
                continue
            seen.add(name)
            exposed.append((name, descriptor))
        return exposed

    def _filter(
        self,
        exposed: List[tuple[str, ActionDescriptor]],
        allow_list: Sequence[str],
        context: ActionContext,
    ) -> List[tuple[str, ActionDescriptor]]:
        entries = [entry.strip() for entry in allow_list if entry and entry.strip()]
        if not entries:
            if self._empty_policy is EmptyAllowListPolicy.DENY_ALL:
                return []
            LOGGER.warning(
                "Assistant %s has an empty allow-list; exposing all %d discovered action(s)",
                context.assistant_id,
                len(exposed),
            )
            return list(exposed)

        qualified = {descriptor.qualified_name for _, descriptor in exposed}
        wanted_qualified: set[str] = set()
        wanted_bare: set[str] = set()
        for entry in entries:
            if "." not in entry:
                wanted_bare.add(entry)
            elif entry in qualified:
                wanted_qualified.add(entry)

        selected = [
            (name, descriptor)
            for name, descriptor in exposed
            if descriptor.qualified_name in wanted_qualified or descriptor.name in wanted_bare
        ]
        matched = {descriptor.qualified_name for _, descriptor in selected} | {d.name for _, d in selected}
        dropped = [entry for entry in entries if entry not in matched]
        if dropped:
            LOGGER.debug("Allow-list entries with no matching action: %s", ", ".join(dropped))
        return selected

    def _bind(self, exposed_name: str, descriptor: ActionDescriptor) -> BoundTool | None:
        try:
            schema = adapt_contract(descriptor.parameters, name=exposed_name, strict=self._strict_contracts)
        except ActionContractError:
            LOGGER.warning("Skipping action %s: malformed parameter contract", descriptor.qualified_name, exc_info=True)
            return None
        except Exception:
            LOGGER.warning(
                "Skipping action %s: parameter contract could not be adapted", descriptor.qualified_name, exc_info=True
            )
            return None
        return BoundTool(exposed_name=exposed_name, descriptor=descriptor, schema=schema)
