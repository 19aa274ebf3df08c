"""
Decision oracle client.

Talks to an LLM through the OpenAI SDK (any OpenAI-compatible endpoint) or,
in Claude mode, through the Anthropic SDK. Both SDKs are synchronous, so
calls run in a worker thread via asyncio.to_thread.

==============================================================================
FEATURES IN THIS MODULE:
==============================================================================

1. RATE LIMIT HANDLING WITH EXPONENTIAL BACKOFF
   - 429 / "rate limit" / "too many requests" errors are retried with
     doubling delays plus 0-10% jitter; other errors propagate at once

2. TOLERANT PARSING
   - One leading/trailing ``` fence is stripped before parsing
   - A decision that is not valid JSON, or does not match the schema, comes
     back as UnparsedDecision carrying the raw text (never raised)
   - A plan that is not a JSON array falls back to one step per line

==============================================================================
"""

import asyncio
import json
import logging
import random
import re
from typing import List, Optional, Sequence

import httpx
from pydantic import ValidationError

from .models import Decision, OracleReply, ParsedRequest, UnparsedDecision

logger = logging.getLogger(__name__)


class PlanningError(Exception):
    """The oracle could not produce a usable plan."""


# ==============================================================================
# EXPONENTIAL BACKOFF RETRY WRAPPER
# ==============================================================================

def _is_rate_limit(error: Exception) -> bool:
    error_str = str(error).lower()
    return (
        "429" in error_str
        or ("rate" in error_str and "limit" in error_str)
        or "ratelimitreached" in error_str
        or "too many requests" in error_str
    )


async def retry_with_backoff(func, *args, max_attempts=5, base_delay=2.0, max_delay=60.0, **kwargs):
    """Retry an async function with exponential backoff for rate limit errors.

    Raises the last exception if all attempts hit rate limits, or any
    non-rate-limit error immediately.
    """
    last_exception = None
    for attempt in range(max_attempts):
        try:
            return await func(*args, **kwargs)
        except Exception as e:
            if not _is_rate_limit(e):
                raise
            last_exception = e
            if attempt < max_attempts - 1:
                delay = min(base_delay * (2 ** attempt), max_delay)
                wait_time = delay + random.uniform(0, delay * 0.1)
                logger.warning(
                    f"Rate limit hit (attempt {attempt + 1}/{max_attempts}). "
                    f"Retrying in {wait_time:.1f}s... Error: {str(e)[:100]}"
                )
                await asyncio.sleep(wait_time)
            else:
                logger.error(f"Max retries ({max_attempts}) exceeded for rate limit error: {str(e)[:200]}")
    raise last_exception


# ── Parsing helpers ───────────────────────────────────────────────────────

def strip_fence(raw: str) -> str:
    """Remove a single surrounding ```lang ... ``` fence, if present."""
    content = (raw or "").strip()
    if content.startswith("```"):
        parts = content.split("\n", 1)
        if len(parts) == 2:
            content = parts[1].strip()
            end = content.rfind("```")
            if end != -1:
                content = content[:end].strip()
    return content


def parse_decision(raw: str) -> OracleReply:
    content = strip_fence(raw)
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        return UnparsedDecision(raw=raw)
    if not isinstance(data, dict):
        return UnparsedDecision(raw=raw)
    try:
        return Decision.model_validate(data)
    except ValidationError:
        return UnparsedDecision(raw=raw)


_LIST_MARKER_RE = re.compile(r"^(?:- |\*\s*|\d+\.\s*)")


def parse_plan(raw: str) -> List[str]:
    content = strip_fence(raw)
    try:
        data = json.loads(content)
    except json.JSONDecodeError:
        data = None

    if isinstance(data, list):
        steps = [str(step).strip() for step in data if str(step).strip()]
    else:
        steps = []
        for line in content.splitlines():
            line = _LIST_MARKER_RE.sub("", line.strip(), count=1).strip()
            if line:
                steps.append(line)

    if not steps:
        raise PlanningError(f"could not parse a plan from oracle output: {raw[:200]!r}")
    return steps


def parse_request(raw: str, user_input: str) -> ParsedRequest:
    content = strip_fence(raw)
    try:
        return ParsedRequest.model_validate(json.loads(content))
    except (json.JSONDecodeError, ValidationError):
        return ParsedRequest(task=user_input, reasoning="Could not parse, treating as direct task")


# ── Prompts ───────────────────────────────────────────────────────────────

PLANNER_SYSTEM_PROMPT = "You convert user tasks into step-by-step actionable plans for a browser automation agent."

PLANNER_PROMPT = """You are a planner for a web automation agent.
Given the high-level task: "{task}"
and the current page context (brief):
{page}

Break the task into a concise, ordered list of concrete steps that an automated agent can perform in sequence. Each step should be a single short sentence or instruction. Return the result as a JSON array of strings only. Example:
["Open the images tab", "Click the first image", "Save image URL"]
"""

REQUEST_PARSER_PROMPT = """You are a request parser for a web automation agent. Parse the user's request and extract:
1. Whether a URL is needed or should be extracted
2. The actual task to perform
3. Any URLs mentioned
4. Your reasoning

Respond as valid JSON with: {"task": "...", "url": "...", "needs_url": boolean, "reasoning": "..."}"""


# ── Clients ───────────────────────────────────────────────────────────────

class DecisionOracle:
    """OpenAI-compatible chat completion oracle."""

    def __init__(
        self,
        api_key: str,
        base_url: str = "https://api.openai.com/v1",
        model: str = "gpt-4-turbo-preview",
        max_tokens: int = 3000,
        temperature: float = 0.7,
        retry_max_attempts: int = 5,
        retry_base_delay: float = 2.0,
        retry_max_delay: float = 60.0,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.retry_max_attempts = retry_max_attempts
        self.retry_base_delay = retry_base_delay
        self.retry_max_delay = retry_max_delay
        self._client = None

    @property
    def label(self) -> str:
        return self.model

    def _get_client(self):
        if self._client is None:
            from openai import OpenAI  # Lazy import to speed up server startup
            self._client = OpenAI(base_url=self.base_url, api_key=self.api_key)
        return self._client

    async def _create(self, messages: list, temperature: float, max_tokens: Optional[int]) -> str:
        kwargs = {"model": self.model, "messages": messages, "temperature": temperature}
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        response = await asyncio.to_thread(self._get_client().chat.completions.create, **kwargs)
        if not response.choices:
            raise RuntimeError("empty response from oracle")
        return response.choices[0].message.content or ""

    async def complete(
        self,
        system: str,
        user: str,
        history: Sequence[dict] = (),
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
    ) -> str:
        """Send one system + (history) + user exchange and return the reply text."""
        messages = [{"role": "system", "content": system}]
        messages += [m for m in history if m.get("role") in ("user", "assistant")]
        messages.append({"role": "user", "content": user})
        return await retry_with_backoff(
            self._create,
            messages,
            self.temperature if temperature is None else temperature,
            max_tokens,
            max_attempts=self.retry_max_attempts,
            base_delay=self.retry_base_delay,
            max_delay=self.retry_max_delay,
        )

    async def decide(self, system: str, user: str, history: Sequence[dict] = ()) -> tuple:
        """Return (reply, raw_text). Transport errors propagate to the caller."""
        raw = await self.complete(system, user, history)
        reply = parse_decision(raw)
        if isinstance(reply, UnparsedDecision):
            logger.warning(f"Oracle reply did not parse as a decision: {raw[:300]!r}")
        return reply, raw

    async def plan(self, task: str, page_description: str) -> List[str]:
        try:
            raw = await self.complete(
                PLANNER_SYSTEM_PROMPT,
                PLANNER_PROMPT.format(task=task, page=page_description),
                temperature=0.0,
                max_tokens=800,
            )
        except Exception as e:
            raise PlanningError(f"planning call failed: {e}") from e
        return parse_plan(raw)

    async def parse_user_request(self, user_input: str) -> ParsedRequest:
        raw = await self.complete(REQUEST_PARSER_PROMPT, user_input, temperature=0.0)
        return parse_request(raw, user_input)

    async def check_reachable(self) -> tuple:
        """Cheap pre-flight: is the endpoint up and is a key configured?"""
        if not self.api_key and "localhost" not in self.base_url:
            return False, "No API key set. Set OPENAI_API_KEY (or LLM_API_KEY) in your environment or .env file."
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                r = await client.get(
                    f"{self.base_url}/models",
                    headers={"Authorization": f"Bearer {self.api_key}"} if self.api_key else {},
                )
        except httpx.HTTPError as e:
            return False, f"Oracle endpoint not reachable at {self.base_url}: {e}"
        if r.status_code >= 500:
            return False, f"Oracle endpoint returned {r.status_code}"
        return True, "ok"


class ClaudeOracle(DecisionOracle):
    """Same contract, backed by the Anthropic messages API."""

    def __init__(self, api_key: str, model: str = "claude-sonnet-4-5-20250929", **kwargs):
        kwargs.setdefault("base_url", "https://api.anthropic.com")
        super().__init__(api_key=api_key, model=model, **kwargs)

    def _get_client(self):
        if self._client is None:
            import anthropic
            self._client = anthropic.Anthropic(api_key=self.api_key)
        return self._client

    async def _create(self, messages: list, temperature: float, max_tokens: Optional[int]) -> str:
        system = messages[0]["content"]
        turns = messages[1:]
        # Claude requires the conversation to open with a user turn
        while turns and turns[0]["role"] != "user":
            turns = turns[1:]
        response = await asyncio.to_thread(
            self._get_client().messages.create,
            model=self.model,
            system=system,
            messages=turns,
            temperature=temperature,
            max_tokens=max_tokens or self.max_tokens,
        )
        text = "".join(block.text for block in response.content if getattr(block, "type", "") == "text")
        if not text:
            raise RuntimeError("empty response from oracle")
        return text

    async def check_reachable(self) -> tuple:
        key = self.api_key
        if not key:
            return False, "No API key set for Claude. Set ANTHROPIC_API_KEY (or LLM_API_KEY)."
        if not key.startswith("sk-"):
            return False, f"API key looks malformed (starts with {key[:10]!r}). Expected 'sk-ant-...'."
        return True, f"API key configured (model: {self.model})"


def build_oracle(config) -> DecisionOracle:
    """Create the oracle selected by config.oracle_mode."""
    retry = dict(
        retry_max_attempts=config.retry_max_attempts,
        retry_base_delay=config.retry_base_delay,
        retry_max_delay=config.retry_max_delay,
    )
    if config.oracle_mode == "claude":
        return ClaudeOracle(
            api_key=config.anthropic_api_key,
            model=config.claude_model,
            max_tokens=config.oracle_max_tokens,
            **retry,
        )
    return DecisionOracle(
        api_key=config.llm_api_key,
        base_url=config.llm_base_url,
        model=config.llm_model,
        max_tokens=config.oracle_max_tokens,
        **retry,
    )
