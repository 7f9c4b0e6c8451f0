from importlib.metadata import version

from .analysis import AnalysisAgent, LLMAnalysisAgent, PermissionOffer, load_agent_result, permission_offer
from .canonical import to_canonical_json
from .catalog import FeedCatalog, InMemoryFeedCatalog, OptimizationCatalog
from .control import AutopilotControl
from .engine import ExecutionEngine, StepOutcome, StepResult
from .errors import (
    AlreadyResolvedError,
    AutopilotError,
    DuplicatePriorityError,
    ExecutionFailure,
    InvalidModeError,
    InvalidTransitionError,
    ItemBusyError,
    NotGrantedError,
    NotRollbackableError,
    UnknownItemError,
)
from .ledger import ActionLedger, LedgerView, RollbackService
from .models import (
    AgentResult,
    AutomationMode,
    CategoryKey,
    CategoryStatus,
    Decision,
    LedgerEntry,
    LedgerStatus,
    OptimizationCategory,
    OptimizationPlan,
    PermissionRequest,
    PermissionState,
    ProposedChange,
    QueueItem,
    QueueItemStatus,
)
from .permissions import PermissionGate
from .queue import OptimizationQueue
from .settings import AutopilotSettings
from .state_store import AutopilotStateStore


def get_version() -> str:
    try:
        return version("feed-autopilot")
    except Exception:
        return "0.0.0"


__all__ = [
    "ActionLedger",
    "AgentResult",
    "AlreadyResolvedError",
    "AnalysisAgent",
    "AutomationMode",
    "AutopilotControl",
    "AutopilotError",
    "AutopilotSettings",
    "AutopilotStateStore",
    "CategoryKey",
    "CategoryStatus",
    "Decision",
    "DuplicatePriorityError",
    "ExecutionEngine",
    "ExecutionFailure",
    "FeedCatalog",
    "InMemoryFeedCatalog",
    "InvalidModeError",
    "InvalidTransitionError",
    "ItemBusyError",
    "LLMAnalysisAgent",
    "LedgerEntry",
    "LedgerStatus",
    "LedgerView",
    "NotGrantedError",
    "NotRollbackableError",
    "OptimizationCatalog",
    "OptimizationCategory",
    "OptimizationPlan",
    "OptimizationQueue",
    "PermissionGate",
    "PermissionOffer",
    "PermissionRequest",
    "PermissionState",
    "ProposedChange",
    "QueueItem",
    "QueueItemStatus",
    "RollbackService",
    "StepOutcome",
    "StepResult",
    "UnknownItemError",
    "get_version",
    "load_agent_result",
    "permission_offer",
    "to_canonical_json",
]
