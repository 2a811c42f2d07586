from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Generic, Protocol, TypeVar

from dotenv import load_dotenv
from langchain_core.messages import BaseMessage
from langchain_openai import ChatOpenAI
from pydantic import BaseModel, ValidationError

from .errors import ExternalProviderError

logger = logging.getLogger(__name__)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

CHAT_TIMEOUT_SECONDS = 120
CHAT_CLIENT_RETRIES = 2


class Runnable(Protocol):
    def invoke(self, input: Any) -> Any:  # noqa: ANN401
        ...


def load_openai_api_key(root: Path | None = None) -> str:
    """Return OPENAI_API_KEY, reading ``<root>/.env`` first when it exists.

    Raises:
        RuntimeError: If no key is configured.
    """
    env_file = (root if root is not None else Path.cwd()) / ".env"
    if env_file.is_file():
        load_dotenv(env_file)
    key = os.getenv("OPENAI_API_KEY", "").strip()
    if not key:
        raise RuntimeError("OPENAI_API_KEY is required for the LLM and image providers")
    return key


def build_chat_model(model_name: str, *, temperature: float = 0.0, root: Path | None = None) -> ChatOpenAI:
    model_name = (model_name or "").strip()
    if not model_name:
        raise ValueError("model_name must be a non-empty string")
    load_openai_api_key(root)
    return ChatOpenAI(
        model=model_name,
        temperature=temperature,
        timeout=CHAT_TIMEOUT_SECONDS,
        max_retries=CHAT_CLIENT_RETRIES,
    )


def usage_tokens(message: Any) -> int:  # noqa: ANN401
    """Total tokens a chat response reported, 0 when usage is missing."""
    usage = getattr(message, "usage_metadata", None) or {}
    return int(usage.get("total_tokens") or 0)


def coerce_structured_payload(envelope: Any, schema: type[SchemaT]) -> SchemaT:  # noqa: ANN401
    """Turn a ``with_structured_output(include_raw=True)`` result into ``schema``.

    A bare model instance or dict is accepted too.

    Raises:
        ExternalProviderError: If the model output did not parse or validate.
    """
    payload = envelope
    if isinstance(envelope, dict) and "parsing_error" in envelope:
        if envelope["parsing_error"] is not None:
            raise ExternalProviderError(
                f"{schema.__name__} output could not be parsed: {envelope['parsing_error']!r}"
            ) from envelope["parsing_error"]
        payload = envelope.get("parsed")

    if isinstance(payload, schema):
        return payload
    if isinstance(payload, BaseModel):
        payload = payload.model_dump(mode="json")
    if not isinstance(payload, dict):
        raise ExternalProviderError(f"{schema.__name__} output was {type(payload).__name__}, expected an object")
    try:
        return schema.model_validate(payload)
    except ValidationError as exc:
        raise ExternalProviderError(f"{schema.__name__} output failed validation: {exc}") from exc


@dataclass(frozen=True)
class StructuredReply(Generic[SchemaT]):
    value: SchemaT
    tokens: int = 0


@dataclass
class StructuredChat(Generic[SchemaT]):
    """A chat model bound to one response schema that also reports token usage."""

    schema: type[SchemaT]
    runnable: Runnable

    @classmethod
    def for_schema(
        cls,
        schema: type[SchemaT],
        *,
        model_name: str,
        temperature: float = 0.0,
        root: Path | None = None,
    ) -> StructuredChat[SchemaT]:
        model = build_chat_model(model_name, temperature=temperature, root=root)
        runnable = model.with_structured_output(schema, method="function_calling", include_raw=True)
        return cls(schema=schema, runnable=runnable)

    def ask(self, messages: list[BaseMessage]) -> StructuredReply[SchemaT]:
        envelope = self.runnable.invoke(messages)
        value = coerce_structured_payload(envelope, self.schema)
        raw = envelope.get("raw") if isinstance(envelope, dict) else None
        tokens = usage_tokens(raw)
        logger.debug("%s reply used %d tokens", self.schema.__name__, tokens)
        return StructuredReply(value=value, tokens=tokens)
