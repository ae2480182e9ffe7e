"""
Logging configuration for console output.

Usage:
    from cross_venue_arbitrage import logging_config
    logging_config.setup()
"""

import logging
import sys

_NOISY_LOGGERS = ("ccxt", "ccxt.base.exchange", "web3", "urllib3", "aiohttp.access")


def setup(level=logging.INFO):
    """
    Configure the root logger for readable engine output.

    - Uses a short timestamp format (HH:MM:SS)
    - Caps exchange/RPC client libraries at WARNING
    """
    if isinstance(level, str):
        level = getattr(logging, level.upper())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    console.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s | %(levelname)-7s | %(message)s", datefmt="%H:%M:%S"
        )
    )
    root.addHandler(console)

    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    logging.getLogger("cross_venue_arbitrage").setLevel(level)
