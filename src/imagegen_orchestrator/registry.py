from __future__ import annotations

import json
import logging
import threading
from collections.abc import Iterable, Sequence
from pathlib import Path
from typing import Protocol

from pydantic import ValidationError as PydanticValidationError

from .errors import ValidationError
from .models import JudgeAgent

logger = logging.getLogger(__name__)


class AgentRegistry(Protocol):
    """Resolves judge ids within one organization."""

    def find_by_ids(self, ids: Sequence[str], organization_id: str) -> list[JudgeAgent]:
        """Return the non-deleted agents of ``organization_id`` among ``ids``; unknown ids are omitted."""
        ...


class InMemoryAgentRegistry:
    """Thread-safe registry backed by a dict, loadable from a JSON file."""

    def __init__(self, agents: Iterable[JudgeAgent] = ()) -> None:
        self._lock = threading.Lock()
        self._agents: dict[str, JudgeAgent] = {}
        for agent in agents:
            self.register(agent)

    @classmethod
    def from_json_file(cls, path: Path) -> "InMemoryAgentRegistry":
        """Load agents from a JSON array of agent objects.

        Raises:
            FileNotFoundError: If the file does not exist.
            ValueError: If the file is not a JSON array of valid agents.
        """
        if not path.is_file():
            raise FileNotFoundError(f"agents file not found: {path}")
        try:
            raw = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise ValueError(f"agents file {path} is not valid JSON: {exc}") from exc
        if not isinstance(raw, list):
            raise ValueError(f"agents file {path} must contain a JSON array")
        try:
            agents = [JudgeAgent.model_validate(item) for item in raw]
        except PydanticValidationError as exc:
            raise ValueError(f"agents file {path} failed validation: {exc}") from exc
        logger.info("loaded %d judge agents from %s", len(agents), path)
        return cls(agents)

    def register(self, agent: JudgeAgent) -> None:
        with self._lock:
            self._agents[agent.id] = agent

    def find_by_ids(self, ids: Sequence[str], organization_id: str) -> list[JudgeAgent]:
        with self._lock:
            return [
                agent
                for agent_id in ids
                if (agent := self._agents.get(agent_id)) is not None
                and agent.organization_id == organization_id
                and not agent.deleted
            ]


def resolve_judges(registry: AgentRegistry, judge_ids: Sequence[str], organization_id: str) -> list[JudgeAgent]:
    """Resolve ``judge_ids`` to judge-capable agents of one organization, preserving order.

    Raises:
        ValidationError: If an id is unknown, belongs to another organization,
            or names an agent that cannot judge.
    """
    if not judge_ids:
        raise ValidationError("at least one judge id is required")
    found = {agent.id: agent for agent in registry.find_by_ids(list(judge_ids), organization_id)}
    missing = [judge_id for judge_id in judge_ids if judge_id not in found]
    if missing:
        raise ValidationError(f"judge agents not found in organization {organization_id}: {', '.join(missing)}")
    not_judges = [judge_id for judge_id in judge_ids if not found[judge_id].can_judge]
    if not_judges:
        raise ValidationError(f"agents are not judge-capable: {', '.join(not_judges)}")
    return [found[judge_id] for judge_id in judge_ids]
