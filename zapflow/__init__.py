"""zapflow: workflow-driven WhatsApp conversations."""

from .contracts import ConnectionStatus, HistoryEntry, Message, SendReceipt, WorkflowSession
from .persistence import get_stores
from .providers import ProviderAdapter, get_provider, register_provider
from .router import MessageRouter, RouteOutcome
from .workflow import StepResult, Workflow, WorkflowDraft, WorkflowEngine

__version__ = "0.1.0"
__all__ = [
    "ConnectionStatus",
    "HistoryEntry",
    "Message",
    "MessageRouter",
    "ProviderAdapter",
    "RouteOutcome",
    "SendReceipt",
    "StepResult",
    "Workflow",
    "WorkflowDraft",
    "WorkflowEngine",
    "WorkflowSession",
    "get_provider",
    "get_stores",
    "register_provider",
]
