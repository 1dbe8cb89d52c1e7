"""
Command line entry point.

Usage:
    python -m model_lifecycle status --config lifecycle.yaml
    python -m model_lifecycle ensure --url https://example.com/model.onnx --version 2.0
    python -m model_lifecycle check-update
    python -m model_lifecycle reset
"""

import argparse
import asyncio
import json
import sys
from dataclasses import replace
from typing import List, Optional

from loguru import logger

from .config import LifecycleConfig
from .errors import AssetLifecycleError
from .manager import AssetLifecycleManager


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="model_lifecycle",
        description="Fetch, cache and refresh a single inference model asset.",
    )
    parser.add_argument("--config", help="YAML configuration file")
    parser.add_argument("--url", help="Override remote_url")
    parser.add_argument("--version", dest="target_version", help="Override target_version")
    parser.add_argument("--cache-dir", help="Override cache_dir")
    parser.add_argument("--log-level", default="INFO", help="Log level (default: INFO)")

    sub = parser.add_subparsers(dest="command", required=True)
    sub.add_parser("ensure", help="Make sure the asset is cached and opens")
    sub.add_parser("check-update", help="Refresh the asset if it is stale")
    sub.add_parser("status", help="Print cache slot status as JSON")
    sub.add_parser("reset", help="Delete the cached asset")
    return parser


def load_config(args: argparse.Namespace) -> LifecycleConfig:
    if args.config:
        config = LifecycleConfig.from_yaml_file(args.config)
    else:
        config = LifecycleConfig()
    config = config.with_env_overrides()

    overrides = {
        "remote_url": args.url,
        "target_version": args.target_version,
        "cache_dir": args.cache_dir,
    }
    overrides = {k: v for k, v in overrides.items() if v is not None}
    if overrides:
        config = replace(config, **overrides)
    return config


async def run_command(command: str, manager: AssetLifecycleManager) -> int:
    try:
        if command == "ensure":
            handle = await manager.ensure_ready()
            print(f"ready: version={handle.version_id} generation={handle.generation}")
        elif command == "check-update":
            installed = await manager.check_for_update()
            print("updated" if installed else "no update installed")
        elif command == "reset":
            await manager.reset_cache()
            print("cache cleared")
        print(json.dumps(manager.get_status(), indent=2, sort_keys=True))
        return 0
    except AssetLifecycleError as e:
        logger.error(f"{e.kind.value}: {e}")
        return 1
    finally:
        await manager.close()


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    logger.remove()
    logger.add(sys.stderr, level=args.log_level.upper())

    try:
        config = load_config(args)
    except (OSError, ValueError) as e:
        logger.error(f"Invalid configuration: {e}")
        return 2

    manager = AssetLifecycleManager(config)
    return asyncio.run(run_command(args.command, manager))


if __name__ == "__main__":
    sys.exit(main())
