"""Configuration for the browser agent."""

import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from a .env file when present.
load_dotenv()


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


DEFAULT_PROVIDER = os.getenv("BROWSER_AGENT_PROVIDER", "openai").lower()

DEFAULT_MODEL = os.getenv("BROWSER_AGENT_MODEL", "gpt-4o-mini")

DEFAULT_ANTHROPIC_MODEL = os.getenv("BROWSER_AGENT_ANTHROPIC_MODEL", "claude-3-5-sonnet-latest")

PRICING_URL = os.getenv(
    "BROWSER_AGENT_PRICING_URL",
    "https://raw.githubusercontent.com/BerriAI/litellm/main/model_prices_and_context_window.json",
)

_xdg_cache = os.getenv("XDG_CACHE_HOME") or str(Path.home() / ".cache")
PRICING_CACHE_DIR = Path(os.getenv("BROWSER_AGENT_PRICING_CACHE_DIR", str(Path(_xdg_cache) / "browser_agent" / "token_cost")))

INCLUDE_COST = _env_flag("BROWSER_AGENT_CALCULATE_COST", False)

LOG_LEVEL = os.getenv("BROWSER_AGENT_LOG_LEVEL", "INFO")

LOG_DIR = Path(os.getenv("BROWSER_AGENT_LOG_DIR", "logs"))

DEFAULT_BROWSER = os.getenv("BROWSER_AGENT_BROWSER", "chromium").lower()

HEADLESS = _env_flag("BROWSER_AGENT_HEADLESS", False)

PLAYWRIGHT_CHANNEL = os.getenv("PLAYWRIGHT_CHANNEL")

PLAYWRIGHT_EXECUTABLE = os.getenv("PLAYWRIGHT_EXECUTABLE")

USER_DATA_DIR = Path(os.getenv("BROWSER_AGENT_PROFILE_DIR", "profiles/default"))


def get_openai_api_key() -> str | None:
    """Return the OpenAI API key or None when it is not configured."""
    return os.getenv("OPENAI_API_KEY") or None


def get_anthropic_api_key() -> str | None:
    """Return the Anthropic API key or None when it is not configured."""
    return os.getenv("ANTHROPIC_API_KEY") or None
