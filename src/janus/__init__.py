"""Janus - cross-venue arbitrage coordinator with a scoped emergency stop."""

__version__ = "0.1.0"
