"""
Venue adapters: the ccxt-backed CEX, the web3-backed DEX and the simulated
venue used in monitoring mode.

Submodules are imported explicitly by callers (``from .venues.cex import
CexVenue``) so that ``price_feed`` and the adapters can depend on each other's
helpers without an import cycle through this package.
"""
