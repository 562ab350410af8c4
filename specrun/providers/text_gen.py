"""Review backends: single-turn text generation over HTTP or Claude Code SDK."""

from __future__ import annotations

import anyio
import httpx

from ..review import ReviewCall

ENDPOINTS: dict[str, str] = {
    "anthropic": "https://api.anthropic.com/v1/messages",
    "openai": "https://api.openai.com/v1/chat/completions",
}

# Short names accepted in config for Anthropic models.
MODEL_ALIASES = {
    "haiku": "claude-haiku-4-5",
    "sonnet": "claude-sonnet-4-5",
    "opus": "claude-opus-4-1",
}

REVIEW_SYSTEM = "You are a meticulous code reviewer. Answer with the requested JSON only."


class HttpReviewer:
    """Review backend over the Anthropic or OpenAI HTTP API.

    Does not retry; the review service owns the retry policy. Failures come
    back as an unsuccessful ReviewCall whose output names the HTTP status.
    """

    def __init__(self, provider: str, model: str, api_key: str):
        if provider not in ENDPOINTS:
            raise ValueError(f"Unknown provider: {provider}")
        self.provider = provider
        self.model = MODEL_ALIASES.get(model, model) if provider == "anthropic" else model
        self.api_key = api_key

    async def execute(self, prompt: str, timeout: float) -> ReviewCall:
        try:
            async with httpx.AsyncClient(timeout=timeout) as client:
                if self.provider == "anthropic":
                    text = await self._call_anthropic(client, prompt)
                else:
                    text = await self._call_openai(client, prompt)
        except httpx.HTTPStatusError as e:
            body = e.response.text[:500]
            return ReviewCall(False, f"HTTP {e.response.status_code}: {body}")
        except httpx.TimeoutException:
            return ReviewCall(False, f"Review timed out after {timeout:g}s")
        except httpx.HTTPError as e:
            return ReviewCall(False, f"Request failed: {e}")
        except (KeyError, IndexError, ValueError) as e:
            return ReviewCall(False, f"Unexpected response shape: {e}")
        return ReviewCall(True, text)

    async def _call_anthropic(self, client: httpx.AsyncClient, prompt: str) -> str:
        resp = await client.post(
            ENDPOINTS["anthropic"],
            headers={
                "x-api-key": self.api_key,
                "anthropic-version": "2023-06-01",
                "content-type": "application/json",
            },
            json={
                "model": self.model,
                "max_tokens": 4096,
                "system": REVIEW_SYSTEM,
                "messages": [{"role": "user", "content": prompt}],
            },
        )
        resp.raise_for_status()
        return resp.json()["content"][0]["text"]

    async def _call_openai(self, client: httpx.AsyncClient, prompt: str) -> str:
        resp = await client.post(
            ENDPOINTS["openai"],
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "Content-Type": "application/json",
            },
            json={
                "model": self.model,
                "messages": [
                    {"role": "system", "content": REVIEW_SYSTEM},
                    {"role": "user", "content": prompt},
                ],
            },
        )
        resp.raise_for_status()
        return resp.json()["choices"][0]["message"]["content"]


class ClaudeCodeReviewer:
    """Review via local Claude Code CLI auth, no API key needed.

    Uses claude_code_sdk.query() with max_turns=1 and no tools.
    """

    def __init__(self, model: str):
        self.model = model

    async def execute(self, prompt: str, timeout: float) -> ReviewCall:
        try:
            from claude_code_sdk import ClaudeCodeOptions, query
        except ImportError:
            return ReviewCall(False, "claude-code-sdk not installed")

        options = ClaudeCodeOptions(
            model=self.model,
            max_turns=1,
            allowed_tools=[],
            system_prompt=REVIEW_SYSTEM,
        )
        parts: list[str] = []
        try:
            with anyio.fail_after(timeout):
                async for message in query(prompt=prompt, options=options):
                    for block in getattr(message, "content", None) or []:
                        if hasattr(block, "text"):
                            parts.append(block.text)
        except TimeoutError:
            return ReviewCall(False, f"Review timed out after {timeout:g}s")
        except Exception as e:
            return ReviewCall(False, f"Review backend error: {e}")
        return ReviewCall(True, "".join(parts))
