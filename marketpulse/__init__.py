"""marketpulse - real-time market-data and trading-state engine."""

__version__ = "1.0.0"
