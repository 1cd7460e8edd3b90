"""
Entry point - runs the read API with every agent's decision loop behind it,
or a single cycle per agent with --once.
"""
import argparse
import asyncio
import logging
import sys

import uvicorn

from .config import load_config
from .errors import ConfigurationError
from .fleet import build_fleet


def _configure_logging(level: str):
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s [TRADING] %(levelname)s: %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


async def _run_once(cfg) -> int:
    """Run one cycle for every agent that passes its startup checks."""
    fleet = build_fleet(cfg)
    failures = 0
    try:
        for cycle in fleet.cycles:
            try:
                cycle.check_ready()
            except ConfigurationError:
                failures += 1
                continue
            result = await cycle.run_once()
            print(
                f"[{cycle.agent_id}] cycle #{result.cycle_number}: "
                f"{'OK' if result.success else 'FAILED'} - "
                f"{len(result.executions)} filled, {len(result.rejections)} rejected"
                + (f" ({result.error})" if result.error else "")
            )
            if not result.success:
                failures += 1
    finally:
        await fleet.aclose()
    return 1 if failures else 0


def main():
    """Entry point."""
    parser = argparse.ArgumentParser(prog="arena-trader", description="Multi-agent perpetual futures arena")
    parser.add_argument("--once", action="store_true", help="run a single cycle per agent and exit")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=None, help="API port (default: API_PORT or 8080)")
    parser.add_argument("--log-level", default="info")
    args = parser.parse_args()

    _configure_logging(args.log_level)

    print("Loading configuration...")
    try:
        cfg = load_config()
    except ConfigurationError as e:
        print(f"CONFIGURATION ERROR: {e}")
        sys.exit(1)

    print(f"Mode: {cfg.get_mode_description()}")
    print(f"Agents: {[a.agent_id for a in cfg.agents]}")
    for agent in cfg.agents:
        if not agent.oracle_api_key:
            print(f"WARNING: [{agent.agent_id}] oracle API key not set - this agent will be halted.")

    if args.once:
        sys.exit(asyncio.run(_run_once(cfg)))

    from .api import create_app

    app = create_app(build_fleet(cfg))
    uvicorn.run(app, host=args.host, port=args.port or cfg.api_port, log_level=args.log_level.lower())


if __name__ == "__main__":
    main()
