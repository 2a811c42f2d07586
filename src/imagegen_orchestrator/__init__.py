from importlib.metadata import PackageNotFoundError, version

from .completion import CompletionDecision, resolve_completion, select_final_image
from .continuation import ContinuationManager
from .costs import PriceSheet, PricingFunction, apply_cost_delta, default_pricing
from .errors import (
    ConcurrencyError,
    ExternalProviderError,
    NotFoundError,
    OrchestratorError,
    StateError,
    ValidationError,
)
from .events import GenerationEvent, GenerationEvents, GenerationEventType
from .lifecycle import GenerationRequestService
from .loops import IterationLoop, LoopResult
from .models import (
    AgentEvaluationSnapshot,
    CompletionReason,
    CostDelta,
    GeneratedImage,
    GenerationRequest,
    GenerationRequestCreate,
    ImageParams,
    IterationSnapshot,
    JudgeAgent,
    RequestCosts,
    RequestStatus,
    TopIssue,
    UserContext,
    UserRole,
)
from .plateau import is_plateauing, is_score_plateauing
from .providers import JudgeVerdict, PriorFeedback, RetryPolicy, SynthesizedImage
from .registry import AgentRegistry, InMemoryAgentRegistry
from .state_store import GenerationStateStore
from .storage import FilesystemObjectStorage, ObjectStorage
from .worker import GenerationWorker


def get_version() -> str:
    try:
        return version("imagegen-orchestrator")
    except PackageNotFoundError:
        return "0.0.0"


__all__ = [
    "AgentEvaluationSnapshot",
    "AgentRegistry",
    "CompletionDecision",
    "CompletionReason",
    "ConcurrencyError",
    "ContinuationManager",
    "CostDelta",
    "ExternalProviderError",
    "FilesystemObjectStorage",
    "GeneratedImage",
    "GenerationEvent",
    "GenerationEventType",
    "GenerationEvents",
    "GenerationRequest",
    "GenerationRequestCreate",
    "GenerationRequestService",
    "GenerationStateStore",
    "GenerationWorker",
    "ImageParams",
    "InMemoryAgentRegistry",
    "IterationLoop",
    "IterationSnapshot",
    "JudgeAgent",
    "JudgeVerdict",
    "LoopResult",
    "NotFoundError",
    "ObjectStorage",
    "OrchestratorError",
    "PriceSheet",
    "PricingFunction",
    "PriorFeedback",
    "RequestCosts",
    "RequestStatus",
    "RetryPolicy",
    "StateError",
    "SynthesizedImage",
    "TopIssue",
    "UserContext",
    "UserRole",
    "ValidationError",
    "apply_cost_delta",
    "default_pricing",
    "get_version",
    "is_plateauing",
    "is_score_plateauing",
    "resolve_completion",
    "select_final_image",
]
