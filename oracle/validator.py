"""Validation layer for raw oracle output.

Parses JSON strings and validates them against a response model.
Anything that is not a JSON object with the required keys is an
oracle failure.
"""

import json
import re
from typing import Type, TypeVar

from pydantic import BaseModel, ValidationError

from oracle.errors import OracleResponseError

ModelT = TypeVar("ModelT", bound=BaseModel)


def _strip_markdown_fences(text: str) -> str:
    """Remove optional markdown code fences wrapping JSON.

    Models sometimes wrap output in ```json ... ``` despite instructions.

    Args:
        text: Raw oracle response string.

    Returns:
        The text with leading/trailing code fences removed, if present.
    """
    stripped = text.strip()
    match = re.match(
        r"^```(?:json)?\s*\n?(.*?)\n?\s*```$",
        stripped,
        re.DOTALL,
    )
    if match:
        return match.group(1).strip()
    return stripped


def validate_oracle_output(raw_response: str, response_model: Type[ModelT]) -> ModelT:
    """Parse and validate a raw oracle response string.

    Args:
        raw_response: The raw string returned by the adapter.
        response_model: Pydantic model describing the expected shape.

    Returns:
        A validated ``response_model`` instance.

    Raises:
        OracleResponseError: If JSON parsing or schema validation fails.
    """
    if not isinstance(raw_response, str) or not raw_response.strip():
        raise OracleResponseError(
            stage="json_parse",
            errors=["empty response"],
            raw_response=str(raw_response or ""),
        )

    cleaned = _strip_markdown_fences(raw_response)

    try:
        data = json.loads(cleaned)
    except (json.JSONDecodeError, TypeError) as exc:
        raise OracleResponseError(
            stage="json_parse",
            errors=[str(exc)],
            raw_response=raw_response,
        ) from exc

    if not isinstance(data, dict):
        raise OracleResponseError(
            stage="schema",
            errors=["top-level JSON must be an object"],
            raw_response=raw_response,
        )

    try:
        return response_model.model_validate(data)
    except ValidationError as exc:
        errors = [
            f"{'.'.join(str(part) for part in error['loc']) or '<root>'}: {error['msg']}"
            for error in exc.errors()
        ]
        raise OracleResponseError(
            stage="schema",
            errors=errors,
            raw_response=raw_response,
        ) from exc
