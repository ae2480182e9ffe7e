#!/usr/bin/env python3
"""
Command-line entry point.

    python -m cross_venue_arbitrage --config config/engine.example.yaml --mode monitoring

Secrets are read from the environment variables named in the configuration;
a ``.env`` file in the working directory is loaded first.
"""

import argparse
import asyncio
import logging
import signal
import sys
import time

from dotenv import load_dotenv

from . import logging_config
from .config_loader import build_engine_config, load_yaml_config, resolve_secret
from .engine import build_engine
from .exceptions import ArbitrageError
from .metrics import ArbitrageMetrics
from .utils import format_duration
from .version import __version__
from .venues.cex import CcxtCexClient
from .venues.dex import Web3DexClient

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Cross-venue CEX/DEX arbitrage and rebalancing engine"
    )
    parser.add_argument(
        "--config", required=True, help="Path to engine YAML configuration file"
    )
    parser.add_argument(
        "--mode",
        choices=["monitoring", "live"],
        help="Execution mode (overrides YAML config)",
    )
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (overrides YAML config)",
    )
    parser.add_argument(
        "--metrics-port",
        type=int,
        help="Serve Prometheus metrics on this port (enables the metrics server)",
    )
    parser.add_argument(
        "--version", action="version", version=f"%(prog)s {__version__}"
    )
    return parser.parse_args(argv)


def apply_overrides(raw: dict, args: argparse.Namespace) -> dict:
    """Fold CLI overrides into the raw mapping so they are schema-validated."""
    if args.mode:
        raw.setdefault("execution", {})["mode"] = args.mode
    observability = raw.setdefault("observability", {})
    if args.log_level:
        observability.setdefault("logging", {})["level"] = args.log_level
    if args.metrics_port:
        metrics = observability.setdefault("metrics", {})
        metrics["enabled"] = True
        metrics["port"] = args.metrics_port
    return raw


async def run(args: argparse.Namespace) -> int:
    config = build_engine_config(apply_overrides(load_yaml_config(args.config), args))
    logging_config.setup(config.observability.log_level)

    live = not config.execution.is_monitoring
    cex_client = CcxtCexClient.from_config(
        config.cex,
        resolve_secret(config.cex.api_key_env, required=live),
        resolve_secret(config.cex.secret_env, required=live),
    )
    dex_client = Web3DexClient.from_config(
        config.dex,
        config.pair,
        resolve_secret(config.dex.rpc_url_env),
        resolve_secret(config.dex.private_key_env, required=live),
    )

    metrics = ArbitrageMetrics() if config.observability.metrics_enabled else None
    engine = build_engine(config, cex_client, dex_client, metrics=metrics)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows: Ctrl+C surfaces as KeyboardInterrupt instead
            pass

    await engine.start()
    try:
        await stop_event.wait()
    finally:
        logger.info("Shutting down")
        await engine.shutdown()

    performance = engine.monitoring.compute_performance()
    uptime = time.time() - (engine.started_at or time.time())
    logger.info(
        f"Session ({format_duration(uptime)}): {performance.total_trades} trades, "
        f"{performance.successful_trades} completed, "
        f"net {performance.net_profit:+.4f} {config.pair.quote_asset}"
    )
    if config.execution.is_monitoring:
        logger.info(f"Virtual balances: {engine.get_virtual_balances()}")
    return 0


def main(argv=None) -> int:
    args = parse_args(argv)
    logging_config.setup(args.log_level or "INFO")
    load_dotenv()

    try:
        return asyncio.run(run(args))
    except ArbitrageError as e:
        logger.error(f"Startup failed: {e}")
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
