from __future__ import annotations

import argparse
import os

import yaml

from llm_balancer.config import BalancerConfig, ConfigLoadError, load_balancer_config
from llm_balancer.settings import get_settings

DEFAULT_CONFIG_PATH = "config.yaml"


def _config_summary(config: BalancerConfig) -> dict[str, object]:
    return {
        "port": config.server.port,
        "timeout_seconds": config.timeout,
        "retry": config.retry,
        "mode": config.mode,
        "selection_mode": config.selection_mode.value,
        "backends": [
            {
                "name": backend.name,
                "url": backend.url,
                "weight": backend.effective_weight,
                "default_model": backend.resolved_default_model() or None,
                "models": list(backend.models),
            }
            for backend in config.backends
        ],
    }


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="llm-balancer",
        description="Load-balancing reverse proxy for OpenAI-compatible chat completions.",
    )
    parser.add_argument(
        "-c",
        "--config",
        default=os.getenv("BALANCER_CONFIG_PATH", DEFAULT_CONFIG_PATH),
        help="Path to the balancer YAML config.",
    )
    parser.add_argument("--host", default=None)
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Listen port; overrides server.port from the config.",
    )
    parser.add_argument("--log-level", default=None)
    parser.add_argument(
        "--check",
        action="store_true",
        help="Validate the config, print a summary and exit.",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = load_balancer_config(args.config)
    except ConfigLoadError as exc:
        parser.exit(2, f"error: {exc}\n")

    if args.check:
        print(yaml.safe_dump(_config_summary(config), sort_keys=False).rstrip())
        return 0

    os.environ["BALANCER_CONFIG_PATH"] = args.config
    get_settings.cache_clear()
    settings = get_settings()

    from llm_balancer.main import run

    run(
        host=args.host,
        port=args.port or settings.balancer_port or config.server.port,
        log_level=args.log_level,
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
