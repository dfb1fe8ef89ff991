"""AI client, providers, tools and orchestration."""

from .client import AIClient, ClientSettings
from .orchestration.engine import AssistantEngine, ThreadReply
from .orchestration.runs import RunState, RunStateMachine, TerminalRun
from .orchestration.stateless import StatelessExecutor, StreamHandle
from .providers import ProviderKind, get_client
from .utils.tokens import TokenCounterRegistry

__all__ = [
    "AIClient",
    "AssistantEngine",
    "ClientSettings",
    "ProviderKind",
    "RunState",
    "RunStateMachine",
    "StatelessExecutor",
    "StreamHandle",
    "TerminalRun",
    "ThreadReply",
    "TokenCounterRegistry",
    "get_client",
]
