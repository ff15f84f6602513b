"""Parsing helpers for structured model output.

Models wrap their payloads in markdown fences, add prose around them, or
return YAML instead of JSON. These helpers normalize the text and turn
every parse or schema failure into StructuredOutputError, so a
misbehaving model fails fast instead of being retried.
"""

import json
import re
from typing import Any, Type, TypeVar

import yaml
from pydantic import BaseModel, ValidationError

from src.issueflow.agents.contracts import FormalSpec, StructuredOutputError


ModelT = TypeVar("ModelT", bound=BaseModel)

_FENCE_RE = re.compile(r"```(?:json|yaml|yml)?\s*([\s\S]*?)\s*```", re.IGNORECASE)


def strip_code_fences(text: str) -> str:
    """Return the content of the first fenced block, or the stripped text."""
    stripped = text.strip()
    match = _FENCE_RE.search(stripped)
    if match:
        return match.group(1).strip()
    return stripped


def extract_json_object(text: str) -> str:
    """Extract the JSON object from a model response.

    Accepts a bare object, an object inside a code fence, or an object
    surrounded by prose (first ``{`` to last ``}``).

    Raises:
        StructuredOutputError: If the text is empty or holds no object.
    """
    trimmed = text.strip()
    if not trimmed:
        raise StructuredOutputError("Model output was empty")

    if trimmed.startswith("{") and trimmed.endswith("}"):
        return trimmed

    inner = strip_code_fences(trimmed)
    if inner.startswith("{") and inner.endswith("}"):
        return inner

    start = trimmed.find("{")
    end = trimmed.rfind("}")
    if start == -1 or end <= start:
        raise StructuredOutputError("Model output did not contain a JSON object")

    return trimmed[start : end + 1]


def parse_structured(model: Type[ModelT], text: str, label: str) -> ModelT:
    """Parse ``text`` as JSON and validate it against ``model``.

    Args:
        model: Pydantic model describing the contract.
        text: Raw model response.
        label: Short description used in error messages.

    Raises:
        StructuredOutputError: On invalid JSON or schema mismatch.
    """
    raw = extract_json_object(text)
    try:
        data: Any = json.loads(raw)
    except json.JSONDecodeError as e:
        raise StructuredOutputError(
            f"{label} was not valid JSON: {e}", cause=e
        ) from e

    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise StructuredOutputError(
            f"{label} violated {model.__name__} schema: {e}", cause=e
        ) from e


def parse_yaml_spec(text: str) -> FormalSpec:
    """Parse a YAML (or JSON, which is valid YAML) formal spec.

    Raises:
        StructuredOutputError: On invalid YAML or schema mismatch.
    """
    body = strip_code_fences(text)
    try:
        data = yaml.safe_load(body)
    except yaml.YAMLError as e:
        raise StructuredOutputError(f"Spec output was not valid YAML: {e}", cause=e) from e

    if not isinstance(data, dict):
        raise StructuredOutputError("Spec output was not a YAML mapping")

    try:
        return FormalSpec.model_validate(data)
    except ValidationError as e:
        raise StructuredOutputError(
            f"Spec output violated FormalSpec schema: {e}", cause=e
        ) from e


def message_text(message: Any) -> str:
    """Flatten a chat model response into plain text."""
    content = message.content
    if isinstance(content, str):
        return content.strip()
    parts = []
    for part in content:
        if isinstance(part, str):
            parts.append(part)
        elif isinstance(part, dict) and part.get("type") == "text":
            parts.append(part.get("text", ""))
    return "\n".join(parts).strip()
