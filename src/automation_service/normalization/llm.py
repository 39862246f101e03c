from __future__ import annotations

import json
import logging
import time
from typing import Any, Protocol
from urllib import error, request

from automation_service.config.settings import Settings
from automation_service.errors import InfrastructureError

logger = logging.getLogger(__name__)

_RETRYABLE_STATUS = frozenset({408, 429, 500, 502, 503, 504})


class TextGenerator(Protocol):
    """Interface for plain chat completions."""

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        timeout_s: float,
    ) -> str: ...


class OpenAIChatCompletionsGenerator:
    """Small OpenAI client using the chat completions REST API."""

    def __init__(
        self,
        *,
        api_key: str,
        model: str = "gpt-4",
        base_url: str = "https://api.openai.com/v1",
        max_retries: int = 1,
        backoff_s: float = 0.2,
    ) -> None:
        self.api_key = api_key
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max(0, max_retries)
        self.backoff_s = max(0.0, backoff_s)

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        temperature: float,
        timeout_s: float,
    ) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": user_prompt},
            ],
            "temperature": temperature,
        }
        return self._reply_text(self._post_with_retry(payload, timeout_s=timeout_s))

    def _post_with_retry(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        """POST with retries on timeouts, network errors and retryable HTTP statuses.

        Anything else (bad key, malformed request, unreadable body) fails on
        the first attempt.
        """
        attempts = self.max_retries + 1
        last_error: Exception | None = None
        for attempt in range(1, attempts + 1):
            try:
                return self._post(payload, timeout_s=timeout_s)
            except error.HTTPError as exc:
                detail = exc.read().decode("utf-8", errors="replace")[:500]
                if exc.code not in _RETRYABLE_STATUS:
                    raise InfrastructureError(
                        f"Chat completion rejected with HTTP {exc.code}: {detail}"
                    ) from exc
                last_error = exc
            except (TimeoutError, error.URLError) as exc:
                last_error = exc
            except ValueError as exc:
                raise InfrastructureError(f"Chat completion returned invalid JSON: {exc}") from exc
            logger.warning(
                "llm event=request_failed attempt=%d/%d model=%s reason=%s",
                attempt,
                attempts,
                self.model,
                last_error,
            )
            if attempt < attempts and self.backoff_s > 0:
                time.sleep(self.backoff_s * attempt)
        raise InfrastructureError(
            f"Chat completion failed after {attempts} attempt(s): {last_error}"
        ) from last_error

    def _post(self, payload: dict[str, Any], timeout_s: float) -> dict[str, Any]:
        url = f"{self.base_url}/chat/completions"
        logger.debug("llm event=request model=%s url=%s timeout_s=%s", self.model, url, timeout_s)
        req = request.Request(
            url=url,
            data=json.dumps(payload).encode("utf-8"),
            method="POST",
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
        )
        with request.urlopen(req, timeout=timeout_s) as response:
            body = response.read().decode("utf-8")
        logger.debug("llm event=response model=%s bytes=%d", self.model, len(body))
        return json.loads(body)

    @staticmethod
    def _reply_text(response_json: dict[str, Any]) -> str:
        """Text of the first choice; list-form content has its text parts joined."""
        choices = response_json.get("choices") or []
        if not choices:
            raise InfrastructureError("Chat completion response has no choices")
        content = (choices[0].get("message") or {}).get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            text = "".join(
                part["text"]
                for part in content
                if isinstance(part, dict) and isinstance(part.get("text"), str)
            ).strip()
            if text:
                return text
        raise InfrastructureError("Chat completion response has no text content")


def build_text_generator(settings: Settings) -> TextGenerator | None:
    """Return a configured generator, or None when no provider/key is available."""
    if settings.llm_provider.lower() != "openai":
        return None

    api_key = settings.resolved_openai_api_key()
    if not api_key:
        return None

    return OpenAIChatCompletionsGenerator(
        api_key=api_key,
        model=settings.llm_model,
        base_url=settings.llm_base_url,
        max_retries=settings.llm_max_retries,
        backoff_s=settings.llm_backoff_s,
    )
