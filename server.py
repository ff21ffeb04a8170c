"""Run the AI chat relay control plane."""

from __future__ import annotations

import argparse
import logging
from typing import Optional

import uvicorn

from agent_module import AgentConfig, AgentLLMConfig
from agent_module.api import DEFAULT_REAP_INTERVAL_SECONDS, create_app
from agent_module.config import PROVIDER_CHAT_COMPLETIONS, PROVIDER_GEMINI

logger = logging.getLogger(__name__)


# ---------- CLI ----------
def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    defaults = AgentConfig()
    parser = argparse.ArgumentParser(description="Relay channel messages to a streaming completion service.")
    parser.add_argument("--host", default="0.0.0.0", help="Host interface to bind.")
    parser.add_argument("--port", type=int, default=3000, help="Port to bind.")
    parser.add_argument("--log_dir", default="./logs", help="Directory for application logs.")
    parser.add_argument(
        "--provider",
        choices=[PROVIDER_GEMINI, PROVIDER_CHAT_COMPLETIONS],
        default=PROVIDER_GEMINI,
        help="Completion provider.",
    )
    parser.add_argument("--llm_model", default=None, help="Model name for completions (provider default if unset).")
    parser.add_argument(
        "--llm_endpoint",
        default=defaults.llm.endpoint,
        help="Chat-completions endpoint (chat-completions provider only).",
    )
    parser.add_argument("--temperature", type=float, default=defaults.llm.temperature, help="Sampling temperature.")
    parser.add_argument("--request_timeout", type=int, default=defaults.llm.request_timeout, help="Timeout for LLM calls (seconds).")
    parser.add_argument("--flush_interval", type=float, default=defaults.flush_interval, help="Seconds between partial message writes.")
    parser.add_argument("--min_call_spacing", type=float, default=defaults.min_call_spacing, help="Minimum seconds between upstream calls per channel.")
    parser.add_argument("--max_retries", type=int, default=defaults.max_retries, help="Retries on rate-limited upstream calls.")
    parser.add_argument("--idle_timeout", type=float, default=defaults.idle_timeout, help="Dispose agents idle for this many seconds (0 disables).")
    parser.add_argument("--reap_interval", type=float, default=DEFAULT_REAP_INTERVAL_SECONDS, help="Seconds between idle agent sweeps.")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> AgentConfig:
    llm = AgentLLMConfig(
        provider=args.provider,
        endpoint=args.llm_endpoint,
        temperature=args.temperature,
        request_timeout=args.request_timeout,
    )
    if args.llm_model:
        llm.model = args.llm_model
    elif args.provider == PROVIDER_CHAT_COMPLETIONS:
        llm.model = "gpt-4o-mini"
    return AgentConfig(
        llm=llm,
        flush_interval=args.flush_interval,
        min_call_spacing=args.min_call_spacing,
        max_retries=args.max_retries,
        idle_timeout=args.idle_timeout,
    )


def main(argv: Optional[list[str]] = None) -> None:
    args = parse_args(argv)
    app = create_app(build_config(args), log_dir=args.log_dir, reap_interval=args.reap_interval)
    logger.info("Starting AI chat relay on %s:%d (provider=%s)", args.host, args.port, args.provider)
    uvicorn.run(app, host=args.host, port=args.port)


if __name__ == "__main__":
    main()
