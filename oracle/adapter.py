"""Oracle adapters.

Provides a base interface, an adapter for OpenAI-compatible chat APIs and
a scripted mock for tests and offline runs.
"""

import json
import logging
import threading
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from app.config import OracleSettings
from oracle.errors import OracleConfigurationError, OracleTransportError

logger = logging.getLogger(__name__)

TASK_PREFIX = "TASK:"


def extract_task(prompt: str) -> str:
    """Return the task name declared on the first line of a prompt."""
    first_line = prompt.lstrip().splitlines()[0] if prompt.strip() else ""
    if first_line.startswith(TASK_PREFIX):
        return first_line[len(TASK_PREFIX):].strip()
    return ""


class BaseOracleAdapter(ABC):
    """Abstract base for all oracle adapters."""

    @abstractmethod
    def generate(self, prompt: str) -> str:
        """Send a prompt and return the raw response text.

        Args:
            prompt: The fully formatted prompt string.

        Returns:
            Raw string response (expected to be a JSON object).
        """


class OpenAIOracleAdapter(BaseOracleAdapter):
    """Adapter for OpenAI-compatible chat completion APIs.

    Configured for deterministic JSON-object output.
    """

    def __init__(
        self,
        model: str = "gpt-4o-mini",
        max_tokens: int = 2048,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: float = 15.0,
    ) -> None:
        """Initialise the OpenAI adapter.

        Args:
            model: Model identifier.
            max_tokens: Maximum tokens in the completion.
            api_key: API key. Required.
            base_url: Optional base URL for OpenAI-compatible endpoints.
            timeout_seconds: Client-side request timeout.
        """
        if not api_key:
            raise OracleConfigurationError(
                "Oracle API key is not set. Provide LLM_API_KEY or OPENAI_API_KEY, "
                "or set ORACLE_MODE=heuristic."
            )

        from openai import OpenAI, OpenAIError

        client_kwargs: Dict[str, Any] = {
            "api_key": api_key,
            "timeout": timeout_seconds,
            "max_retries": 0,
        }
        if base_url:
            client_kwargs["base_url"] = base_url

        self._client = OpenAI(**client_kwargs)
        self._error_type = OpenAIError
        self._model = model
        self._max_tokens = max_tokens

    def generate(self, prompt: str) -> str:
        """Call the chat completion API.

        Raises:
            OracleTransportError: If the API call fails.
        """
        try:
            response = self._client.chat.completions.create(
                model=self._model,
                messages=[{"role": "user", "content": prompt}],
                temperature=0,
                top_p=1,
                max_tokens=self._max_tokens,
                response_format={"type": "json_object"},
                stream=False,
                seed=42,
            )
        except self._error_type as exc:
            raise OracleTransportError(f"Oracle request failed: {exc}") from exc
        return response.choices[0].message.content or ""


ScriptedResponse = Union[str, Mapping[str, Any], Callable[[str], str], Exception]


class MockOracleAdapter(BaseOracleAdapter):
    """Deterministic adapter that answers from a script keyed by task.

    Each script entry is either a single response or a list consumed in
    order (the last one repeats). A response may be a JSON string, a dict
    (serialized), a callable receiving the prompt, or an exception to raise.
    """

    def __init__(self, responses: Optional[Mapping[str, Any]] = None) -> None:
        self._responses: Dict[str, List[ScriptedResponse]] = {}
        for task, value in (responses or {}).items():
            self._responses[task] = list(value) if isinstance(value, list) else [value]
        self._lock = threading.Lock()
        self.prompts: List[str] = []

    def generate(self, prompt: str) -> str:
        task = extract_task(prompt)
        with self._lock:
            self.prompts.append(prompt)
            queue = self._responses.get(task)
            if not queue:
                return "{}"
            response = queue.pop(0) if len(queue) > 1 else queue[0]

        if isinstance(response, Exception):
            raise response
        if callable(response):
            return response(prompt)
        if isinstance(response, Mapping):
            return json.dumps(dict(response), default=str)
        return str(response)

    def calls_for(self, task: str) -> int:
        with self._lock:
            return sum(1 for prompt in self.prompts if extract_task(prompt) == task)


def build_adapter(settings: OracleSettings) -> BaseOracleAdapter:
    """Construct the adapter named by ``LLM_ADAPTER``."""
    if settings.adapter == "mock":
        logger.warning("LLM_ADAPTER=mock: oracle answers are scripted, not model-generated")
        return MockOracleAdapter()
    return OpenAIOracleAdapter(
        model=settings.model,
        api_key=settings.api_key,
        base_url=settings.base_url,
        timeout_seconds=settings.timeout_seconds,
    )
