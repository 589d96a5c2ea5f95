"""HTTP client for the external conversational agent.

The agent exposes a single endpoint, ``POST {AGENT_URL}/ask``, taking
``{"text", "metadata": {"user", "templateContext", "conversationHistory",
"language"}}`` and answering ``{"responses": [...]}`` (or the older
``{"response": "..."}``).  Timeouts, connection errors and 5xx answers
are retried with exponential backoff; 4xx answers are not.
"""

from __future__ import annotations

import logging
import time
from typing import Any

import httpx

from src.config import AGENT_TIMEOUT_SECONDS, AGENT_URL
from src.services.metrics import metrics
from src.templates import AGENT_FALLBACK_REPLY

logger = logging.getLogger(__name__)

# ── Retry configuration ─────────────────────────────────────────────
MAX_RETRIES = 3
INITIAL_BACKOFF_SECONDS = 1.0


class AgentServiceError(Exception):
    """Raised when the agent service call fails after all retries."""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)


def build_agent_metadata(
    user: dict[str, Any] | None,
    conversation_history: list[dict[str, str]],
    template_context: dict[str, Any] | None = None,
    language: str | None = None,
) -> dict[str, Any]:
    """Assemble the ``metadata`` block of an ``/ask`` request.

    *language* defaults to the user's profile preference, then English.
    """
    if language is None:
        language = ((user or {}).get("profile") or {}).get("language") or "en"
    return {
        "user": user,
        "templateContext": template_context,
        "conversationHistory": conversation_history,
        "language": language,
    }


def extract_reply(data: dict[str, Any]) -> str:
    """Pick the reply text out of an agent answer."""
    responses = data.get("responses")
    if isinstance(responses, list) and responses and responses[0]:
        return str(responses[0])
    if data.get("response"):
        return str(data["response"])
    return AGENT_FALLBACK_REPLY


class AgentClient:
    """Thin wrapper around the agent's ``/ask`` endpoint with retries."""

    def __init__(
        self,
        base_url: str | None = None,
        *,
        timeout: float = AGENT_TIMEOUT_SECONDS,
        client: httpx.Client | None = None,
    ):
        self._base_url = (base_url or AGENT_URL).rstrip("/")
        self._client = client or httpx.Client(
            base_url=self._base_url,
            headers={"Content-Type": "application/json"},
            timeout=timeout,
        )

    def _request(self, method: str, path: str, *, json_body: dict[str, Any]) -> dict[str, Any]:
        """Execute an HTTP request with exponential-backoff retries."""
        last_error: Exception | None = None
        for attempt in range(1, MAX_RETRIES + 1):
            try:
                with metrics.timed("agent", f"{method} {path}"):
                    response = self._client.request(method, path, json=json_body)
                    if response.status_code >= 400:
                        raise AgentServiceError(
                            f"Agent service responded with status: {response.status_code}",
                            status_code=response.status_code,
                        )
                return response.json()

            except (httpx.TimeoutException, httpx.ConnectError) as exc:
                last_error = exc
                logger.warning(
                    "Agent call attempt %d/%d failed (%s). Retrying in %.1fs…",
                    attempt,
                    MAX_RETRIES,
                    type(exc).__name__,
                    INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)),
                )
            except AgentServiceError as exc:
                if exc.status_code and exc.status_code >= 500:
                    last_error = exc
                    logger.warning(
                        "Agent server error on attempt %d/%d. Retrying…",
                        attempt,
                        MAX_RETRIES,
                    )
                else:
                    raise  # 4xx errors are not retried
            except ValueError as exc:
                raise AgentServiceError(f"Agent service returned invalid JSON: {exc}") from exc

            if attempt < MAX_RETRIES:
                time.sleep(INITIAL_BACKOFF_SECONDS * (2 ** (attempt - 1)))

        raise AgentServiceError(
            f"Agent request failed after {MAX_RETRIES} attempts: {last_error}"
        )

    def ask(self, text: str, metadata: dict[str, Any]) -> str:
        """Forward *text* with its *metadata* and return the agent's reply."""
        data = self._request("POST", "/ask", json_body={"text": text, "metadata": metadata})
        return extract_reply(data if isinstance(data, dict) else {})

    def close(self) -> None:
        self._client.close()
