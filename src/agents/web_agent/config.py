"""
Configuration Module

Loads environment variables once and exposes them as a single immutable
AgentConfig. Components receive the values they need through their
constructors; nothing below this module reads the environment directly.

==============================================================================
SETTINGS GROUPED IN THIS MODULE:
==============================================================================

1. ORACLE
   - ORACLE_MODE: "openai" (any OpenAI-compatible endpoint) or "claude"
   - LLM_BASE_URL / LLM_MODEL / OPENAI_API_KEY (or LLM_API_KEY)
   - CLAUDE_MODEL / ANTHROPIC_API_KEY

2. BROWSER
   - BROWSER_USER_DATA_DIR: persistent profile so manual logins survive restarts
   - PLAYWRIGHT_BROWSER: preferred engine, falls back to chromium/firefox/webkit

3. TASK LOOP BUDGETS
   - AGENT_MAX_TOKENS / AGENT_MAX_HISTORY / AGENT_MAX_ITERATIONS
   - CHALLENGE_POLL_INTERVAL / CHALLENGE_TIMEOUT

4. RETRY CONFIGURATION FOR RATE LIMITING
   - RETRY_MAX_ATTEMPTS / RETRY_BASE_DELAY / RETRY_MAX_DELAY

==============================================================================
"""

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv


def _env_bool(name: str, default: str = "false") -> bool:
    return os.getenv(name, default).lower().strip() in ("true", "1", "yes")


@dataclass(frozen=True)
class AgentConfig:
    # Oracle
    oracle_mode: str = "openai"
    llm_base_url: str = "https://api.openai.com/v1"
    llm_api_key: str = ""
    llm_model: str = "gpt-4-turbo-preview"
    claude_model: str = "claude-sonnet-4-5-20250929"
    anthropic_api_key: str = ""
    oracle_max_tokens: int = 3000

    # Browser
    user_data_dir: str = ".pw_user_data"
    browser_engine: str = ""
    headless: bool = False
    storage_state_path: Optional[str] = None

    # Task loop
    max_tokens: int = 8000
    max_history: int = 20
    max_iterations: int = 20
    challenge_poll_interval: float = 2.0
    challenge_timeout: float = 300.0
    action_pause: float = 1.0
    wait_action_seconds: float = 2.0
    error_pause: float = 1.0
    body_excerpt_chars: int = 2000
    max_elements: int = 60

    # Rate-limit retry
    retry_max_attempts: int = 5
    retry_base_delay: float = 2.0
    retry_max_delay: float = 60.0

    # Server / logging
    port: int = 8001
    debug: bool = False


def load_config() -> AgentConfig:
    """Read .env and the process environment into an AgentConfig."""
    load_dotenv()

    return AgentConfig(
        oracle_mode=os.getenv("ORACLE_MODE", "openai").lower().strip(),
        llm_base_url=os.getenv("LLM_BASE_URL", "https://api.openai.com/v1"),
        # Key resolution order: OPENAI_API_KEY → LLM_API_KEY → ""
        llm_api_key=os.getenv("OPENAI_API_KEY") or os.getenv("LLM_API_KEY") or "",
        llm_model=os.getenv("LLM_MODEL", "gpt-4-turbo-preview"),
        claude_model=os.getenv("CLAUDE_MODEL", "claude-sonnet-4-5-20250929"),
        anthropic_api_key=os.getenv("ANTHROPIC_API_KEY") or os.getenv("LLM_API_KEY") or "",
        oracle_max_tokens=int(os.getenv("ORACLE_MAX_TOKENS", "3000")),
        user_data_dir=os.getenv("BROWSER_USER_DATA_DIR") or ".pw_user_data",
        browser_engine=os.getenv("PLAYWRIGHT_BROWSER", "").lower().strip(),
        headless=_env_bool("BROWSER_HEADLESS"),
        storage_state_path=os.getenv("STORAGE_STATE_PATH") or None,
        max_tokens=int(os.getenv("AGENT_MAX_TOKENS", "8000")),
        max_history=int(os.getenv("AGENT_MAX_HISTORY", "20")),
        max_iterations=int(os.getenv("AGENT_MAX_ITERATIONS", "20")),
        challenge_poll_interval=float(os.getenv("CHALLENGE_POLL_INTERVAL", "2.0")),
        challenge_timeout=float(os.getenv("CHALLENGE_TIMEOUT", "300")),
        action_pause=float(os.getenv("ACTION_PAUSE", "1.0")),
        wait_action_seconds=float(os.getenv("WAIT_ACTION_SECONDS", "2.0")),
        error_pause=float(os.getenv("ERROR_PAUSE", "1.0")),
        body_excerpt_chars=int(os.getenv("BODY_EXCERPT_CHARS", "2000")),
        max_elements=int(os.getenv("MAX_ELEMENTS", "60")),
        retry_max_attempts=int(os.getenv("RETRY_MAX_ATTEMPTS", "5")),
        retry_base_delay=float(os.getenv("RETRY_BASE_DELAY", "2.0")),
        retry_max_delay=float(os.getenv("RETRY_MAX_DELAY", "60.0")),
        port=int(os.getenv("AGENT_PORT", "8001")),
        debug=_env_bool("DEBUG"),
    )
