from __future__ import annotations

import logging

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import ContinuationRequest, GenerationRequest
from .registry import AgentRegistry, resolve_judges
from .state_store import GenerationStateStore

logger = logging.getLogger(__name__)


class ContinuationManager:
    """Reopens terminated requests for more iterations."""

    def __init__(self, *, store: GenerationStateStore, registry: AgentRegistry) -> None:
        self.store = store
        self.registry = registry

    def prepare_for_continuation(
        self,
        request_id: str,
        extra_iterations: int,
        new_judge_ids: list[str] | None = None,
        *,
        prompt_override: str | None = None,
        organization_id: str | None = None,
    ) -> GenerationRequest:
        """Return a terminated request to PENDING with ``extra_iterations`` more budget.

        Iterations, ``current_iteration`` and costs carry over, so the next run
        resumes numbering at ``current_iteration + 1``. ``new_judge_ids``
        replaces the judge set wholesale and ``prompt_override`` becomes the
        first prompt of the next run.

        Raises:
            ValidationError: If the arguments are out of bounds or a new judge
                does not resolve in the request's organization.
            NotFoundError: If the request is unknown or outside ``organization_id``.
            StateError: If the request has not terminated.
        """
        try:
            params = ContinuationRequest(
                extra_iterations=extra_iterations,
                judge_ids=new_judge_ids,
                prompt_override=prompt_override,
            )
        except PydanticValidationError as exc:
            raise ValidationError(f"invalid continuation: {exc}") from exc

        request = self.store.find_request(request_id, organization_id=organization_id)
        judge_ids = None
        if params.judge_ids is not None:
            judges = resolve_judges(
                self.registry,
                list(dict.fromkeys(judge_id.strip() for judge_id in params.judge_ids if judge_id.strip())),
                request.organization_id,
            )
            judge_ids = [judge.id for judge in judges]

        reopened = self.store.reopen(
            request_id,
            params.extra_iterations,
            judge_ids=judge_ids,
            prompt_override=params.prompt_override,
        )
        logger.info(
            "reopened generation request %s: max_iterations %d -> %d",
            request_id,
            request.max_iterations,
            reopened.max_iterations,
        )
        return reopened
