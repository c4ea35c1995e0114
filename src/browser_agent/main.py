"""CLI entrypoint for the browser agent."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from browser_agent.agent import Agent
from browser_agent.config import (
    DEFAULT_ANTHROPIC_MODEL,
    DEFAULT_BROWSER,
    DEFAULT_MODEL,
    DEFAULT_PROVIDER,
    HEADLESS,
    LOG_DIR,
    LOG_LEVEL,
    get_anthropic_api_key,
    get_openai_api_key,
)
from browser_agent.llm import BaseChatModel
from browser_agent.llm_anthropic import ChatAnthropic
from browser_agent.llm_openai import ChatOpenAI
from browser_agent.models import AgentSettings
from browser_agent.playwright_env import PlaywrightEnvironment


def parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run a browser agent against a natural-language task.")
    parser.add_argument("--task", required=True, help="Natural-language task for the agent to complete.")
    parser.add_argument("--provider", default=DEFAULT_PROVIDER, choices=["openai", "anthropic"])
    parser.add_argument("--model", help="Model name; defaults depend on the provider.")
    parser.add_argument("--max-steps", type=int, default=100, help="Maximum agent steps before giving up.")
    parser.add_argument("--max-failures", type=int, default=3, help="Consecutive failures tolerated.")
    parser.add_argument("--headless", action="store_true", default=HEADLESS, help="Run the browser headless.")
    parser.add_argument(
        "--browser",
        default=DEFAULT_BROWSER,
        help="Browser engine to use (chromium, firefox, or webkit).",
    )
    parser.add_argument("--profile-dir", help="Optional user data directory to reuse between runs.")
    parser.add_argument(
        "--allowed-domain",
        action="append",
        default=[],
        help="Domain glob the browser may navigate to; repeatable.",
    )
    parser.add_argument("--no-vision", action="store_true", help="Do not send screenshots to the model.")
    parser.add_argument("--sensitive-data", help="Path to a JSON file of secret placeholders.")
    parser.add_argument("--history-out", default="AgentHistory.json", help="Where to save the run history.")
    parser.add_argument("--telemetry", help="Optional JSONL file for run events.")
    parser.add_argument("--save-conversation", help="Directory for per-step conversation dumps.")
    parser.add_argument("--workspace", help="Directory for the agent's file workspace.")
    parser.add_argument("--log-level", default=LOG_LEVEL, help="Python logging level.")
    return parser.parse_args(argv)


def main(argv: Optional[list] = None) -> None:
    args = parse_args(argv)
    log_file = _configure_logging(args.log_level)
    logging.info("Log file: %s", log_file)
    sensitive_data = _load_sensitive_data(args.sensitive_data)
    llm = _build_llm(args.provider, args.model)

    history = asyncio.run(_run(args, llm, sensitive_data))
    if history.is_successful():
        logging.info("Final result: %s", history.final_result())
    else:
        errors = [error for error in history.errors() if error]
        raise SystemExit(f"Task did not complete successfully: {errors[-1] if errors else 'no result'}")


async def _run(args: argparse.Namespace, llm: BaseChatModel, sensitive_data: Optional[dict]):
    environment = await PlaywrightEnvironment.launch(
        browser=args.browser,
        headless=args.headless,
        user_data_dir=args.profile_dir,
        allowed_domains=args.allowed_domain,
    )
    settings = AgentSettings.from_env(
        max_failures=args.max_failures,
        use_vision=not args.no_vision,
        save_conversation_path=args.save_conversation,
    )
    agent = Agent(
        task=args.task,
        llm=llm,
        environment=environment,
        settings=settings,
        sensitive_data=sensitive_data,
        file_system_path=args.workspace,
        telemetry_path=args.telemetry,
    )
    try:
        history = await agent.run(max_steps=args.max_steps)
        agent.save_history(args.history_out)
        logging.info("History saved to %s", args.history_out)
        return history
    finally:
        await agent.close()


def _build_llm(provider: str, model: Optional[str]) -> BaseChatModel:
    if provider == "anthropic":
        api_key = get_anthropic_api_key()
        if not api_key:
            raise SystemExit("ANTHROPIC_API_KEY is not set.")
        return ChatAnthropic(model or DEFAULT_ANTHROPIC_MODEL, api_key=api_key)
    api_key = get_openai_api_key()
    if not api_key:
        raise SystemExit("OPENAI_API_KEY is not set.")
    return ChatOpenAI(model or DEFAULT_MODEL, api_key=api_key)


def _load_sensitive_data(path: Optional[str]) -> Optional[dict]:
    if not path:
        return None
    data_path = Path(path).expanduser()
    if not data_path.is_file():
        raise SystemExit(f"Sensitive data file not found: {data_path}")
    try:
        data = json.loads(data_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise SystemExit(f"Sensitive data file is not valid JSON: {exc}") from exc
    if not isinstance(data, dict):
        raise SystemExit("Sensitive data file must contain a JSON object")
    return data


def _configure_logging(log_level: str) -> Path:
    level = getattr(logging, log_level.upper(), logging.INFO)
    LOG_DIR.mkdir(parents=True, exist_ok=True)
    log_file = LOG_DIR / f"browser-agent-{datetime.now(timezone.utc).strftime('%Y%m%d-%H%M%S')}.log"
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")
    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logging.basicConfig(level=level, handlers=[stream_handler, file_handler])
    for noisy in ("httpx", "openai", "anthropic"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))
    return log_file


if __name__ == "__main__":
    main()
