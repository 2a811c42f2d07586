from __future__ import annotations

MAX_ERROR_MESSAGE_LENGTH = 2_000


class OrchestratorError(Exception):
    """Base class for all orchestration errors."""


class ValidationError(OrchestratorError, ValueError):
    """Creation or continuation input was rejected before anything was persisted."""


class NotFoundError(OrchestratorError, LookupError):
    """A request, image, or agent id does not resolve in the caller's scope."""


class ExternalProviderError(OrchestratorError, RuntimeError):
    """An optimizer, synthesizer, judge, or storage call failed."""


class ConcurrencyError(OrchestratorError, RuntimeError):
    """Another worker won the claim on a pending request."""


class StateError(OrchestratorError, RuntimeError):
    """The requested mutation is not legal for the request's current status."""


def truncate_error_message(message: str, limit: int = MAX_ERROR_MESSAGE_LENGTH) -> str:
    if len(message) <= limit:
        return message
    return message[:limit]
