from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from .errors import NotFoundError, ValidationError
from .models import (
    CompletionReason,
    GeneratedImage,
    GenerationRequest,
    GenerationRequestCreate,
    ImageParams,
    RequestStatus,
    UserContext,
)
from .registry import AgentRegistry, resolve_judges
from .settings import RuntimeSettings
from .state_store import GenerationStateStore

logger = logging.getLogger(__name__)


class GenerationRequestService:
    """Tenant-scoped create/query surface over the state store."""

    def __init__(
        self,
        *,
        store: GenerationStateStore,
        registry: AgentRegistry,
        settings: RuntimeSettings | None = None,
    ) -> None:
        self.store = store
        self.registry = registry
        self.settings = settings if settings is not None else RuntimeSettings.from_env()

    def _default_image_params(self) -> ImageParams:
        return ImageParams(
            images_per_generation=self.settings.default_images_per_generation,
            plateau_window_size=self.settings.default_plateau_window_size,
            plateau_threshold=self.settings.default_plateau_threshold,
        )

    def create(self, payload: GenerationRequestCreate | Mapping[str, Any]) -> GenerationRequest:
        """Validate and persist a new PENDING request.

        Args:
            payload: Creation input, either validated already or as a raw mapping.

        Returns:
            The stored request with zero iterations and zeroed costs.

        Raises:
            ValidationError: If the input is malformed or any judge id does not
                resolve to a judge-capable agent of the same organization.
        """
        if not isinstance(payload, GenerationRequestCreate):
            try:
                payload = GenerationRequestCreate.model_validate(payload)
            except PydanticValidationError as exc:
                raise ValidationError(f"invalid generation request: {exc}") from exc
        resolve_judges(self.registry, payload.judge_ids, payload.organization_id)

        request = GenerationRequest(
            organization_id=payload.organization_id,
            project_id=payload.project_id,
            space_id=payload.space_id,
            created_by=payload.created_by,
            brief=payload.brief,
            initial_prompt=payload.initial_prompt,
            reference_image_urls=payload.reference_image_urls,
            negative_prompts=payload.negative_prompts,
            judge_ids=payload.judge_ids,
            image_params=payload.image_params if payload.image_params is not None else self._default_image_params(),
            threshold=payload.threshold if payload.threshold is not None else self.settings.default_threshold,
            max_iterations=(
                payload.max_iterations if payload.max_iterations is not None else self.settings.default_max_iterations
            ),
        )
        return self.store.insert_request(request)

    def get(
        self,
        request_id: str,
        *,
        organization_id: str | None = None,
        user_context: UserContext | None = None,
    ) -> GenerationRequest:
        return self.store.find_request(request_id, organization_id=organization_id, user_context=user_context)

    def find_by_organization(
        self,
        organization_id: str,
        *,
        status: RequestStatus | None = None,
        project_id: str | None = None,
        space_id: str | None = None,
        limit: int = 50,
        offset: int = 0,
        user_context: UserContext | None = None,
    ) -> list[GenerationRequest]:
        return self.store.find_by_organization(
            organization_id,
            status=status,
            project_id=project_id,
            space_id=space_id,
            limit=limit,
            offset=offset,
            user_context=user_context,
        )

    def update_status(self, request_id: str, status: RequestStatus) -> GenerationRequest:
        return self.store.update_status(request_id, status)

    def get_pending_requests(self, limit: int | None = None) -> list[GenerationRequest]:
        return self.store.get_pending_requests(limit)

    def get_active_requests(self) -> list[GenerationRequest]:
        return self.store.get_active_requests()

    def complete(
        self, request_id: str, final_image_id: str, reason: CompletionReason = CompletionReason.SUCCESS
    ) -> GenerationRequest:
        return self.store.complete(request_id, final_image_id, reason)

    def fail(self, request_id: str, message: str) -> GenerationRequest:
        return self.store.fail(request_id, message)

    def cancel(self, request_id: str, *, organization_id: str | None = None) -> GenerationRequest:
        """Cancel a request: immediately when pending, cooperatively when running."""
        if organization_id is not None:
            self.get(request_id, organization_id=organization_id)
        request = self.store.request_cancellation(request_id)
        logger.info("cancellation requested for %s (now %s)", request_id, request.status.value)
        return request

    # ------------------------------------------------------------------
    # Generated images
    # ------------------------------------------------------------------

    def get_image(self, image_id: str, *, organization_id: str | None = None) -> GeneratedImage:
        image = self.store.get_image(image_id)
        if organization_id is not None:
            try:
                self.get(image.request_id, organization_id=organization_id)
            except NotFoundError as exc:
                raise NotFoundError(f"generated image not found: {image_id}") from exc
        return image

    def list_images(
        self,
        request_id: str,
        *,
        iteration_number: int | None = None,
        organization_id: str | None = None,
    ) -> list[GeneratedImage]:
        if organization_id is not None:
            self.get(request_id, organization_id=organization_id)
        if iteration_number is None:
            return self.store.get_images_by_request(request_id)
        return self.store.get_images_by_iteration(request_id, iteration_number)
