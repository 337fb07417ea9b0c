"""
Operator configuration.

Tunables are plain module constants read from the environment. Credentials
and ids are collected into ``OperatorSettings`` and validated once at
startup, so a missing key fails the process instead of the first request.
"""

import os
from dataclasses import dataclass
from typing import Optional

from operator_errors import ConfigurationError

# ─── Tunables ───────────────────────────────────────────────────────────────────

VIEWPORT_WIDTH = int(os.environ.get("VIEWPORT_WIDTH", "1024"))
VIEWPORT_HEIGHT = int(os.environ.get("VIEWPORT_HEIGHT", "768"))
OPERATOR_PORT = int(os.environ.get("OPERATOR_PORT", "8888"))

MAX_DURATION_SECONDS = int(os.environ.get("MAX_DURATION_SECONDS", "800"))
TIMEOUT_MARGIN_SECONDS = int(os.environ.get("TIMEOUT_MARGIN_SECONDS", "5"))
SESSION_TIMEOUT_SECONDS = int(os.environ.get("SESSION_TIMEOUT_SECONDS", "3600"))
STARTING_URL_TIMEOUT_SECONDS = float(os.environ.get("STARTING_URL_TIMEOUT_SECONDS", "5"))
CDP_CONNECT_TIMEOUT_MS = 60_000
AGENT_MAX_STEPS = int(os.environ.get("AGENT_MAX_STEPS", "30"))

DEFAULT_SEARCH_URL = "https://www.google.com"
STARTING_URL_MODEL = os.environ.get("STARTING_URL_MODEL", "gpt-4o")
DEFAULT_AGENT_MODEL = "claude-3-7-sonnet-20250219"
DEFAULT_AGENT_PROVIDER = "anthropic"
STOP_KEYWORD = "stop"
LIVE_VIEW_BASE_URL = "https://www.browserbase.com/sessions"

PROVIDER_KEY_ENV = {
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
}


def invocation_budget_seconds() -> float:
    """Wall-clock budget for one invocation, leaving time to clean up."""
    return float(max(1, MAX_DURATION_SECONDS - TIMEOUT_MARGIN_SECONDS))


def _env(name: str) -> Optional[str]:
    value = os.environ.get(name)
    if value and value.strip():
        return value.strip()
    return None


@dataclass(frozen=True)
class OperatorSettings:
    browserbase_api_key: str
    browserbase_project_id: str
    model: str
    provider: str
    provider_api_key: str
    openai_api_key: Optional[str] = None
    slack_bot_token: Optional[str] = None
    slack_bot_user_id: Optional[str] = None
    state_bucket: Optional[str] = None
    state_prefix: str = ""
    aws_region: Optional[str] = None

    @property
    def slack_configured(self) -> bool:
        return bool(self.slack_bot_token and self.slack_bot_user_id)

    @classmethod
    def from_env(cls) -> "OperatorSettings":
        """Load settings, raising ConfigurationError listing every missing variable."""
        provider = (_env("OPERATOR_PROVIDER") or DEFAULT_AGENT_PROVIDER).lower()
        if provider not in PROVIDER_KEY_ENV:
            raise ConfigurationError(
                f"Unsupported OPERATOR_PROVIDER '{provider}' (expected one of {sorted(PROVIDER_KEY_ENV)})"
            )
        key_env = PROVIDER_KEY_ENV[provider]

        required = ["BROWSERBASE_API_KEY", "BROWSERBASE_PROJECT_ID", key_env]
        missing = [name for name in required if not _env(name)]
        if missing:
            raise ConfigurationError(f"Missing required environment variables: {', '.join(missing)}")

        return cls(
            browserbase_api_key=_env("BROWSERBASE_API_KEY"),
            browserbase_project_id=_env("BROWSERBASE_PROJECT_ID"),
            model=_env("OPERATOR_MODEL") or DEFAULT_AGENT_MODEL,
            provider=provider,
            provider_api_key=_env(key_env),
            openai_api_key=_env("OPENAI_API_KEY"),
            slack_bot_token=_env("SLACK_BOT_TOKEN"),
            slack_bot_user_id=_env("SLACK_BOT_USER_ID"),
            state_bucket=_env("STATE_BUCKET"),
            state_prefix=_env("STATE_PREFIX") or "",
            aws_region=_env("AWS_REGION"),
        )
