from __future__ import annotations

import math
import os
from collections.abc import Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import TypeVar

NumberT = TypeVar("NumberT", int, float)


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime settings loaded from environment with fail-fast validation."""

    database_path: str = "state_store/imagegen.sqlite3"
    storage_root: str = "state_store/objects"
    checkpoint_db: str = ""
    default_threshold: int = 75
    default_max_iterations: int = 5
    default_images_per_generation: int = 3
    default_plateau_window_size: int = 3
    default_plateau_threshold: float = 0.02
    max_concurrent_requests: int = 3
    poll_interval_seconds: float = 2.0
    run_deadline_seconds: int = 600
    recursion_limit: int = 1_000
    provider_max_attempts: int = 3
    provider_retry_base_delay: float = 1.0
    optimizer_model: str = "gpt-4o"
    judge_model: str = "gpt-4o"
    image_model: str = "gpt-image-1"
    price_per_image: float = 0.04
    price_per_1k_llm_tokens: float = 0.005
    price_per_1k_embedding_tokens: float = 0.0001

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        return cls(
            database_path=os.getenv("IMAGEGEN_DATABASE_PATH", "state_store/imagegen.sqlite3"),
            storage_root=os.getenv("IMAGEGEN_STORAGE_ROOT", "state_store/objects"),
            checkpoint_db=os.getenv("IMAGEGEN_CHECKPOINT_DB", ""),
            default_threshold=_get_env_int("IMAGEGEN_DEFAULT_THRESHOLD", default=75, minimum=1, maximum=100),
            default_max_iterations=_get_env_int("IMAGEGEN_DEFAULT_MAX_ITERATIONS", default=5, minimum=1, maximum=20),
            default_images_per_generation=_get_env_int(
                "IMAGEGEN_DEFAULT_IMAGES_PER_GENERATION", default=3, minimum=1, maximum=4
            ),
            default_plateau_window_size=_get_env_int(
                "IMAGEGEN_DEFAULT_PLATEAU_WINDOW_SIZE", default=3, minimum=2, maximum=10
            ),
            default_plateau_threshold=_get_env_float(
                "IMAGEGEN_DEFAULT_PLATEAU_THRESHOLD", default=0.02, minimum=0.001, maximum=0.5
            ),
            max_concurrent_requests=_get_env_int("IMAGEGEN_MAX_CONCURRENT_REQUESTS", default=3, minimum=1, maximum=64),
            poll_interval_seconds=_get_env_float("IMAGEGEN_POLL_INTERVAL_SECONDS", default=2.0, minimum=0.05),
            run_deadline_seconds=_get_env_int("IMAGEGEN_RUN_DEADLINE_SECONDS", default=600, minimum=0),
            recursion_limit=_get_env_int("IMAGEGEN_RECURSION_LIMIT", default=1_000, minimum=100),
            provider_max_attempts=_get_env_int("IMAGEGEN_PROVIDER_MAX_ATTEMPTS", default=3, minimum=1, maximum=10),
            provider_retry_base_delay=_get_env_float("IMAGEGEN_PROVIDER_RETRY_BASE_DELAY", default=1.0, minimum=0.0),
            optimizer_model=os.getenv("IMAGEGEN_OPTIMIZER_MODEL", "gpt-4o"),
            judge_model=os.getenv("IMAGEGEN_JUDGE_MODEL", "gpt-4o"),
            image_model=os.getenv("IMAGEGEN_IMAGE_MODEL", "gpt-image-1"),
            price_per_image=_get_env_float("IMAGEGEN_PRICE_PER_IMAGE", default=0.04, minimum=0.0),
            price_per_1k_llm_tokens=_get_env_float("IMAGEGEN_PRICE_PER_1K_LLM_TOKENS", default=0.005, minimum=0.0),
            price_per_1k_embedding_tokens=_get_env_float(
                "IMAGEGEN_PRICE_PER_1K_EMBEDDING_TOKENS", default=0.0001, minimum=0.0
            ),
        ).normalized()

    def normalized(self) -> "RuntimeSettings":
        """Validate and normalize all fields. Raises ValueError on invalid configuration."""
        # -- Model name validation --
        optimizer_model = self.optimizer_model.strip()
        if not optimizer_model:
            raise ValueError("IMAGEGEN_OPTIMIZER_MODEL must be non-empty")
        judge_model = self.judge_model.strip()
        if not judge_model:
            raise ValueError("IMAGEGEN_JUDGE_MODEL must be non-empty")
        image_model = self.image_model.strip()
        if not image_model:
            raise ValueError("IMAGEGEN_IMAGE_MODEL must be non-empty")

        # -- Path validation --
        if not self.database_path.strip():
            raise ValueError("IMAGEGEN_DATABASE_PATH must be non-empty")
        if not self.storage_root.strip():
            raise ValueError("IMAGEGEN_STORAGE_ROOT must be non-empty")

        # -- Numeric bounds validation --
        if not 1 <= self.default_threshold <= 100:
            raise ValueError(f"IMAGEGEN_DEFAULT_THRESHOLD must be within 1..100, got: {self.default_threshold}")
        if self.recursion_limit > 100_000:
            raise ValueError(f"IMAGEGEN_RECURSION_LIMIT must be <= 100000, got: {self.recursion_limit}")
        if self.max_concurrent_requests < 1:
            raise ValueError(
                f"IMAGEGEN_MAX_CONCURRENT_REQUESTS must be >= 1, got: {self.max_concurrent_requests}"
            )
        return replace(
            self,
            optimizer_model=optimizer_model,
            judge_model=judge_model,
            image_model=image_model,
            database_path=self.database_path.strip(),
            storage_root=self.storage_root.strip(),
            checkpoint_db=self.checkpoint_db.strip(),
        )

    def database_file(self, root: Path | None = None) -> Path:
        return _resolve(self.database_path, root)

    def storage_path(self, root: Path | None = None) -> Path:
        return _resolve(self.storage_root, root)

    def checkpoint_path(self, root: Path | None = None) -> Path | None:
        """Return the langgraph checkpoint database, or None when checkpointing is disabled."""
        if not self.checkpoint_db:
            return None
        return _resolve(self.checkpoint_db, root)


def _resolve(raw: str, root: Path | None) -> Path:
    path = Path(raw)
    if path.is_absolute():
        return path
    return (root if root is not None else Path.cwd()) / path


def _env_number(name: str, default: NumberT, parse: Callable[[str], NumberT], low: NumberT, high: NumberT) -> NumberT:
    """Read a bounded number from the environment; unset means ``default``.

    Raises:
        ValueError: If the value does not parse or falls outside ``[low, high]``.
    """
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = parse(raw.strip())
    except ValueError as exc:
        raise ValueError(f"{name}={raw!r} is not a valid {parse.__name__}") from exc
    if math.isnan(value) or not low <= value <= high:
        raise ValueError(f"{name}={raw!r} is outside [{low}, {high}]")
    return value


def _get_env_int(name: str, default: int, minimum: int, maximum: int = 10_000_000) -> int:
    return _env_number(name, default, int, minimum, maximum)


def _get_env_float(name: str, default: float, minimum: float, maximum: float = 1_000_000.0) -> float:
    return _env_number(name, default, float, minimum, maximum)
