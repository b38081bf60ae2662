"""
Remote summary and tagging via an OpenAI-compatible chat API.
"""

import asyncio
import json
import logging
from typing import Any, Optional

from openai import AsyncOpenAI

from ..config import DEFAULT_MODEL, DEFAULT_TIMEOUT
from ..errors import AnnotationParseError

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are concise. Return a compact summary (1-2 sentences) and 3-5 short, "
    "lowercase tags. Respond ONLY valid JSON: "
    '{"summary": string, "tags": string[]}.'
)


def build_user_prompt(text: str) -> str:
    return f"Text:\n{text}\n\nReturn JSON with keys: summary, tags."


def extract_json_object(content: str) -> dict[str, Any]:
    """
    Parse a model response into a dict.

    Models sometimes wrap the JSON in prose or code fences despite being
    told not to. Strict parsing is tried first, then one recovery attempt
    on the slice from the first ``{`` to the last ``}``.

    Raises:
        AnnotationParseError: If neither attempt yields a JSON object
    """
    content = (content or "").strip()
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        start = content.find("{")
        end = content.rfind("}")
        if start < 0 or end <= start:
            raise AnnotationParseError("No JSON object in response") from None
        try:
            parsed = json.loads(content[start:end + 1])
        except json.JSONDecodeError as e:
            raise AnnotationParseError(f"Unparsable response: {e}") from e
    if not isinstance(parsed, dict):
        raise AnnotationParseError(f"Expected JSON object, got {type(parsed).__name__}")
    return parsed


class OpenAIAnnotation:
    """
    Annotation endpoint using OpenAI's chat completions API.

    The API key is supplied per call (it is a user setting that can change
    at any time); one client is kept per key.

    Default model is gpt-4o-mini. Retries are disabled: a failed call falls
    through to the local heuristic instead of stalling the capture.
    """

    def __init__(
        self,
        model: str = DEFAULT_MODEL,
        *,
        base_url: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT,
        max_tokens: int = 300,
    ):
        self.model = model
        self.base_url = base_url
        self.timeout = timeout
        self.max_tokens = max_tokens
        self._clients: dict[str, AsyncOpenAI] = {}

    def _client(self, api_key: str) -> AsyncOpenAI:
        client = self._clients.get(api_key)
        if client is None:
            client = AsyncOpenAI(
                api_key=api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
            )
            self._clients[api_key] = client
        return client

    async def summarize(self, text: str, api_key: str) -> dict[str, Any]:
        """Request a summary and tags; returns the parsed JSON payload."""
        if not api_key:
            raise ValueError("OpenAI API key required")

        request = self._client(api_key).chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": build_user_prompt(text)},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
            max_tokens=self.max_tokens,
        )
        # The SDK timeout is per request phase; bound the whole call as well
        response = await asyncio.wait_for(request, timeout=self.timeout)

        if not response.choices:
            raise AnnotationParseError("Response has no choices")
        content = response.choices[0].message.content or ""
        return extract_json_object(content)

    async def close(self) -> None:
        for client in self._clients.values():
            await client.close()
        self._clients.clear()
