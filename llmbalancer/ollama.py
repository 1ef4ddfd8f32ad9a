"""Client for the Ollama text generation API."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

import requests

DEFAULT_BASE_URL = "http://localhost:11434"
DEFAULT_MODEL = "qwen2.5"
DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 500
DEFAULT_TIMEOUT = 300.0


class OllamaError(Exception):
    """Raised when Ollama cannot be reached or answers with an error."""


@dataclass
class OllamaResponse:
    """A non-streaming generation response."""

    model: str = ""
    created_at: str = ""
    response: str = ""
    done: bool = False
    context: list[int] = field(default_factory=list)
    total_duration: int = 0
    load_duration: int = 0
    prompt_eval_count: int = 0
    prompt_eval_duration: int = 0
    eval_count: int = 0
    eval_duration: int = 0

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> OllamaResponse:
        return cls(
            model=data.get("model") or "",
            created_at=data.get("created_at") or "",
            response=data.get("response") or "",
            done=bool(data.get("done", False)),
            context=list(data.get("context") or []),
            total_duration=int(data.get("total_duration") or 0),
            load_duration=int(data.get("load_duration") or 0),
            prompt_eval_count=int(data.get("prompt_eval_count") or 0),
            prompt_eval_duration=int(data.get("prompt_eval_duration") or 0),
            eval_count=int(data.get("eval_count") or 0),
            eval_duration=int(data.get("eval_duration") or 0),
        )


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


class OllamaClient:
    """Talks to an Ollama server over HTTP."""

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        timeout: float = DEFAULT_TIMEOUT,
        session: requests.Session | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session = session or requests.Session()

    def generate(self, prompt: str, parameters: dict[str, Any] | None = None) -> OllamaResponse:
        """Generate a completion for prompt; model, temperature and max_tokens come from parameters."""
        parameters = parameters or {}
        model = parameters.get("model")
        if not isinstance(model, str) or not model:
            model = DEFAULT_MODEL
        temperature = parameters.get("temperature")
        temperature = float(temperature) if _is_number(temperature) else DEFAULT_TEMPERATURE
        max_tokens = parameters.get("max_tokens")
        if not (isinstance(max_tokens, int) and not isinstance(max_tokens, bool) and max_tokens > 0):
            max_tokens = DEFAULT_MAX_TOKENS

        body: dict[str, Any] = {"model": model, "prompt": prompt, "stream": False}
        if temperature:
            body["temperature"] = temperature
        body["max_tokens"] = max_tokens

        try:
            resp = self._session.post(
                f"{self.base_url}/api/generate", json=body, timeout=self.timeout
            )
        except requests.RequestException as exc:
            raise OllamaError(f"failed to send request to Ollama: {exc}") from exc
        with resp:
            if resp.status_code != 200:
                raise OllamaError(f"Ollama returned status {resp.status_code}: {resp.text}")
            try:
                data = resp.json()
            except ValueError as exc:
                raise OllamaError(f"failed to decode Ollama response: {exc}") from exc
        if not isinstance(data, dict):
            raise OllamaError("failed to decode Ollama response: expected a JSON object")
        try:
            return OllamaResponse.from_dict(data)
        except (TypeError, ValueError) as exc:
            raise OllamaError(f"failed to decode Ollama response: {exc}") from exc

    def _get_tags(self, failure: str) -> requests.Response:
        try:
            return self._session.get(f"{self.base_url}/api/tags", timeout=self.timeout)
        except requests.RequestException as exc:
            raise OllamaError(f"{failure}: {exc}") from exc

    def list_models(self) -> list[str]:
        """Names of the models the server has available."""
        resp = self._get_tags("failed to get models")
        with resp:
            if resp.status_code != 200:
                raise OllamaError(f"Ollama returned status {resp.status_code}")
            try:
                data = resp.json()
                return [model["name"] for model in data.get("models") or []]
            except (ValueError, TypeError, KeyError, AttributeError) as exc:
                raise OllamaError(f"failed to decode models response: {exc}") from exc

    def health_check(self) -> None:
        """Raise OllamaError unless the server answers."""
        resp = self._get_tags("Ollama health check failed")
        with resp:
            if resp.status_code != 200:
                raise OllamaError(f"Ollama health check returned status {resp.status_code}")